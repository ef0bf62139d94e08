from pathlib import Path

from voxcrawl.cli.replay_tool import _build_parser, main
from voxcrawl.content.io import load_game_json, load_scenario_json, save_game_json
from voxcrawl.content.registry import load_content_json
from voxcrawl.sim.ai import run_ai_turns
from voxcrawl.sim.config import SimulationConfig
from voxcrawl.sim.core import Simulation
from voxcrawl.sim.hash import simulation_hash


def _keep() -> Simulation:
    content = load_content_json("content/content.json")
    return load_scenario_json("content/examples/keep.json", seed=11, content=content, config=SimulationConfig())


def _build_saves(initial_path: Path, played_path: Path) -> Simulation:
    sim = _keep()
    save_game_json(initial_path, sim)
    for direction in ("east", "east", "south", "north"):
        sim.submit(sim.prompt().intent("move", direction=direction))
        run_ai_turns(sim)
    save_game_json(played_path, sim)
    return sim


def test_replay_tool_parser_accepts_flags() -> None:
    parser = _build_parser()
    args = parser.parse_args(["save.json", "--intents", "log.json", "--per-intent", "--debug"])

    assert args.intents == "log.json"
    assert args.per_intent is True
    assert args.debug is True


def test_replay_tool_reproduces_played_session(tmp_path: Path, capsys) -> None:
    initial_path = tmp_path / "initial.json"
    played_path = tmp_path / "played.json"
    dumped_path = tmp_path / "replayed.json"
    played = _build_saves(initial_path, played_path)

    exit_code = main(
        [
            str(initial_path),
            "--intents",
            str(played_path),
            "--print-input-summary",
            "--print-outcomes",
            "--dump-final-save",
            str(dumped_path),
        ]
    )

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "integrity=OK" in output
    assert "input_summary none" in output
    assert f"start_hash={simulation_hash(_keep())}" in output
    assert f"end_hash={simulation_hash(played)}" in output
    assert "artifacts.outcomes.limit=20" in output
    assert "artifacts.outcome " in output
    assert dumped_path.exists()
    dumped = load_game_json(dumped_path, content=played.content)
    assert simulation_hash(dumped) == simulation_hash(played)


def test_replay_tool_per_intent_prints_each_outcome(tmp_path: Path, capsys) -> None:
    initial_path = tmp_path / "initial.json"
    played_path = tmp_path / "played.json"
    played = _build_saves(initial_path, played_path)

    exit_code = main([str(initial_path), "--intents", str(played_path), "--per-intent"])

    lines = capsys.readouterr().out.splitlines()
    per_intent = [line for line in lines if line.startswith("turn_index=")]
    assert exit_code == 0
    assert len(per_intent) == len(played.input_log)
    assert per_intent[-1].endswith(f"hash={simulation_hash(played)}")


def test_replay_tool_reports_corrupted_save(tmp_path: Path, capsys) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{}", encoding="utf-8")

    exit_code = main([str(broken)])

    assert exit_code == 1
    assert capsys.readouterr().out.startswith("error: save payload missing fields")
