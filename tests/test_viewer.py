from pathlib import Path

import pytest

from voxcrawl.cli.viewer import AsciiViewer, SimulationController, _parse_command, run_demo
from voxcrawl.content.io import load_game_json, load_scenario_json
from voxcrawl.content.registry import load_content_json
from voxcrawl.sim.config import SimulationConfig
from voxcrawl.sim.geometry import Pos


def _keep():
    content = load_content_json("content/content.json")
    return load_scenario_json("content/examples/keep.json", seed=7, content=content, config=SimulationConfig())


def test_render_shows_explored_area_and_entities() -> None:
    sim = _keep()

    rendered = AsciiViewer().render(sim.view(), viewer_id="delver")
    lines = rendered.splitlines()

    assert lines[0] == "turn=0 state=awaiting_intent result=none"
    assert lines[2].startswith("#@...#")
    assert lines[3][5] == "+"
    assert lines[6].strip() == ""
    assert any(line.startswith("entity[delver] pos=(1, 1, 0) faction=player") for line in lines)


def test_controller_submits_for_the_prompted_player() -> None:
    sim = _keep()
    controller = SimulationController(sim)

    assert controller.submit("move", direction="east") == "ok"
    assert sim.entity("delver").pos == Pos(2, 1, 0)
    assert sim.prompt().actor_id == "delver"
    assert controller.submit("move", direction="north") == "rejected: blocked"


def test_parse_command() -> None:
    assert _parse_command("n") == ("move", {"direction": "north"})
    assert _parse_command("travel 3 4 0") == ("travel", {"goal": [3, 4, 0]})
    assert _parse_command("use healing_draught") == ("use_item", {"item_id": "healing_draught"})
    assert _parse_command("climb up") == ("climb", {"direction": "up"})
    assert _parse_command("dance") is None
    assert _parse_command("") is None


@pytest.mark.parametrize("interrupt", [EOFError, KeyboardInterrupt])
def test_demo_treats_end_of_input_as_quit(tmp_path: Path, capsys, monkeypatch, interrupt) -> None:
    save_path = tmp_path / "exit.json"

    def closed_input(prompt: str) -> str:
        raise interrupt

    monkeypatch.setattr("builtins.input", closed_input)

    exit_code = run_demo(["--save-on-exit", str(save_path)])

    assert exit_code == 0
    assert f"saved={save_path}" in capsys.readouterr().out
    loaded = load_game_json(save_path, content=load_content_json("content/content.json"))
    assert [module.name for module in loaded.rule_modules] == ["victory"]
