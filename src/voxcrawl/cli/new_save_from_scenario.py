from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Sequence

from voxcrawl.content.io import load_scenario_json, save_game_json
from voxcrawl.content.registry import DEFAULT_CONTENT_PATH, load_content_json
from voxcrawl.sim.config import SimulationConfig
from voxcrawl.sim.hash import map_hash


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="voxcrawl-new-save",
        description=(
            "Convert a scenario map JSON (ASCII layers + spawns) into a canonical game save JSON "
            "(simulation_state + input_log + save_hash)."
        ),
    )
    parser.add_argument("scenario_path", help="Path to scenario map JSON")
    parser.add_argument("save_path", help="Output path for canonical game save JSON")
    parser.add_argument("--seed", type=int, default=0, help="Simulation seed for the new canonical save (default: 0)")
    parser.add_argument("--content", default=DEFAULT_CONTENT_PATH, help="Content registry JSON")
    parser.add_argument("--force", action="store_true", help="Overwrite output path if it already exists")
    parser.add_argument(
        "--print-summary",
        action="store_true",
        help="Print concise map/entity/turn summary",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    scenario_path = Path(args.scenario_path)
    save_path = Path(args.save_path)

    try:
        if not scenario_path.exists():
            raise ValueError(f"input scenario_path does not exist: {scenario_path}")
        if save_path.exists() and not args.force:
            raise ValueError(f"output exists: {save_path} (use --force to overwrite)")

        content = load_content_json(args.content)
        simulation = load_scenario_json(
            scenario_path,
            seed=args.seed,
            content=content,
            config=SimulationConfig(),
        )
        save_game_json(save_path, simulation)

        save_payload = json.loads(save_path.read_text(encoding="utf-8"))
        voxel_map = simulation.voxel_map
        if args.print_summary:
            print(
                "summary "
                f"size={voxel_map.width}x{voxel_map.height} "
                f"z_range={voxel_map.z_min}..{voxel_map.z_max} "
                f"explored={len(voxel_map.explored_cells())} "
                f"entity_count={len(simulation.state.entities)} "
                f"turn_index={simulation.state.turn_index}"
            )

        print(
            "ok "
            f"save_path={save_path} "
            f"seed={simulation.seed} "
            f"map_hash={map_hash(voxel_map)} "
            f"save_hash={save_payload['save_hash']}"
        )
    except Exception as exc:
        print(f"error: {exc}")
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
