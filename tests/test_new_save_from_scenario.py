import json
from pathlib import Path

from voxcrawl.cli.new_save_from_scenario import main
from voxcrawl.content.io import load_game_json
from voxcrawl.content.registry import load_content_json

SCENARIO_PATH = "content/examples/keep.json"


def test_new_save_from_scenario_writes_loadable_save(tmp_path: Path, capsys) -> None:
    save_path = tmp_path / "new_save.json"

    exit_code = main([SCENARIO_PATH, str(save_path), "--seed", "3", "--print-summary"])

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "summary size=12x7 z_range=0..1" in output
    assert "entity_count=3 turn_index=0" in output
    assert f"ok save_path={save_path} seed=3" in output
    payload = json.loads(save_path.read_text(encoding="utf-8"))
    assert payload["input_log"] == []
    simulation = load_game_json(save_path, content=load_content_json("content/content.json"))
    assert simulation.seed == 3
    assert sorted(simulation.state.entities) == ["delver", "hermit", "ratman-1"]


def test_new_save_from_scenario_refuses_to_overwrite(tmp_path: Path, capsys) -> None:
    save_path = tmp_path / "new_save.json"
    save_path.write_text("{}", encoding="utf-8")

    exit_code = main([SCENARIO_PATH, str(save_path)])

    assert exit_code == 1
    assert "output exists" in capsys.readouterr().out
    assert main([SCENARIO_PATH, str(save_path), "--force"]) == 0


def test_new_save_from_scenario_reports_missing_input(tmp_path: Path, capsys) -> None:
    exit_code = main([str(tmp_path / "missing.json"), str(tmp_path / "out.json")])

    assert exit_code == 1
    assert "input scenario_path does not exist" in capsys.readouterr().out
