from __future__ import annotations

import argparse
import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any, Sequence

from voxcrawl.content.io import load_game_json, save_game_json
from voxcrawl.content.registry import DEFAULT_CONTENT_PATH, load_content_json
from voxcrawl.sim.config import SimulationConfig
from voxcrawl.sim.core import INTENT_OUTCOME_EVENT_TYPE, Simulation, run_replay
from voxcrawl.sim.hash import simulation_hash
from voxcrawl.sim.intents import Intent

ARTIFACT_PRINT_OUTCOME_LIMIT = 20

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="voxcrawl-replay",
        description=(
            "Deterministic replay forensic tool. Replay starts from the CURRENT saved simulation "
            "state and submits intents from a JSON list (or a save file's input_log) in order."
        ),
    )
    parser.add_argument("save_path", help="Path to canonical game save JSON")
    parser.add_argument(
        "--intents",
        help="JSON file holding a list of intents, or a save whose input_log should be replayed",
    )
    parser.add_argument("--content", default=DEFAULT_CONTENT_PATH, help="Content registry JSON")
    parser.add_argument("--debug", action="store_true", help="Allow debug intents during replay")
    parser.add_argument(
        "--per-intent",
        action="store_true",
        help="Print outcome and simulation hash after each replayed intent",
    )
    parser.add_argument(
        "--print-input-summary",
        action="store_true",
        help="Print intent counts grouped by intent_type",
    )
    parser.add_argument(
        "--print-outcomes",
        action="store_true",
        help="Print the most recent intent outcomes from the event trace after replay",
    )
    parser.add_argument(
        "--dump-final-save",
        help="Optional path to write canonical save payload after replay",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def _load_intents(path: str) -> list[Intent]:
    payload: Any = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, dict) and "input_log" in payload:
        payload = payload["input_log"]
    if not isinstance(payload, list):
        raise ValueError("intents file must contain a list or a save with input_log")
    return [Intent.from_dict(row) for row in payload]


def _print_header(simulation: Simulation) -> None:
    print(
        "header "
        f"turn_index={simulation.state.turn_index} "
        f"now={simulation.state.now} "
        f"scheduler_state={simulation.scheduler_state} "
        f"entity_count={len(simulation.state.entities)} "
        f"input_log_length={len(simulation.input_log)}"
    )
    print("integrity=OK")


def _print_input_summary(simulation: Simulation) -> None:
    counts = Counter(intent.intent_type for intent in simulation.input_log)
    if not counts:
        print("input_summary none")
        return
    summary = " ".join(f"{intent_type}={counts[intent_type]}" for intent_type in sorted(counts))
    print(f"input_summary {summary}")


def _print_outcomes(simulation: Simulation) -> None:
    print(f"artifacts.outcomes.limit={ARTIFACT_PRINT_OUTCOME_LIMIT}")
    outcomes = [
        entry
        for entry in simulation.event_trace()
        if entry.get("event_type") == INTENT_OUTCOME_EVENT_TYPE
    ]
    recent_outcomes = list(reversed(outcomes[-ARTIFACT_PRINT_OUTCOME_LIMIT:]))
    if not recent_outcomes:
        print("artifacts.outcome none")
    for entry in recent_outcomes:
        params = entry.get("params")
        params = params if isinstance(params, dict) else {}
        print(
            "artifacts.outcome "
            f"turn_index={entry.get('turn_index', '?')} "
            f"actor_id={params.get('actor_id', '?')} "
            f"intent_type={params.get('intent_type', '?')} "
            f"status={params.get('status', '?')} "
            f"reason={params.get('reason', '?')}"
        )


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        content = load_content_json(args.content)
        config = SimulationConfig(debug_mode=args.debug)
        simulation = load_game_json(args.save_path, content=content, config=config)
        intents = _load_intents(args.intents) if args.intents else []

        _print_header(simulation)
        if args.print_input_summary:
            _print_input_summary(simulation)

        start_hash = simulation_hash(simulation)
        print(f"start_hash={start_hash}")

        if args.per_intent:
            simulation = run_replay(simulation, [])
            for intent in intents:
                outcome = simulation.submit(intent)
                print(
                    f"turn_index={intent.turn_index} intent_type={intent.intent_type} "
                    f"status={outcome.status} reason={outcome.reason} hash={simulation_hash(simulation)}"
                )
        else:
            simulation = run_replay(simulation, intents)

        end_hash = simulation_hash(simulation)
        print(f"end_hash={end_hash}")

        if args.print_outcomes:
            _print_outcomes(simulation)

        if args.dump_final_save:
            save_game_json(args.dump_final_save, simulation)
            print(f"dumped_final_save={args.dump_final_save}")

    except Exception as exc:
        logger.debug("replay failed", exc_info=True)
        print(f"error: {exc}")
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
