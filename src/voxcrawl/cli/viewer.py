from __future__ import annotations

import argparse
import logging
from typing import Sequence

from voxcrawl.content.io import load_scenario_json, save_game_json
from voxcrawl.content.registry import DEFAULT_CONTENT_PATH, load_content_json
from voxcrawl.sim.ai import run_ai_turns
from voxcrawl.sim.config import SimulationConfig
from voxcrawl.sim.core import Simulation
from voxcrawl.sim.geometry import Pos
from voxcrawl.sim.intents import (
    INTENT_CLIMB,
    INTENT_DIG,
    INTENT_EXPLORE,
    INTENT_MOVE,
    INTENT_TRAVEL,
    INTENT_USE_ITEM,
    INTENT_WAIT,
    Intent,
)
from voxcrawl.sim.view import SimulationView
from voxcrawl.sim.voxel import (
    SURFACE_FLOOR,
    SURFACE_RAMP_DOWN,
    SURFACE_RAMP_UP,
    SURFACE_WALL,
    TERRAIN_DOOR,
    TERRAIN_GLYPHS,
    TERRAIN_STAIRS,
)

DEFAULT_SCENARIO_PATH = "content/examples/keep.json"
DEFAULT_SEED = 7

SURFACE_GLYPHS = {
    SURFACE_FLOOR: ".",
    SURFACE_RAMP_UP: "<",
    SURFACE_RAMP_DOWN: ">",
    SURFACE_WALL: "#",
}
FACTION_GLYPHS = {"player": "@", "monster": "m", "neutral": "n", "none": "?"}
UNEXPLORED_GLYPH = " "
VOID_GLYPH = ":"

logger = logging.getLogger(__name__)


class AsciiViewer:
    """Read-only projection of simulation state for terminal display."""

    def render(self, view: SimulationView, *, viewer_id: str | None = None, z: int | None = None) -> str:
        lines: list[str] = []
        lines.append(f"turn={view.turn_index} state={view.scheduler_state} result={view.result}")

        viewer = view.entity(viewer_id) if viewer_id is not None else None
        level = z if z is not None else (viewer.pos.z if viewer is not None else view.z_range[0])
        visible = view.visible_from(viewer.entity_id) if viewer is not None else None

        occupants = {entity.pos: entity for entity in view.entities()}
        for y in range(view.height):
            row: list[str] = []
            for x in range(view.width):
                row.append(self._glyph(view, x, y, level, occupants, visible))
            lines.append("".join(row))

        for entity in view.entities():
            lines.append(
                f"entity[{entity.entity_id}] pos={tuple(entity.pos.to_list())} faction={entity.faction} "
                f"wounds={entity.stat('wounds')}/{entity.stat('max_wounds')} acts_next={entity.acts_next}"
            )
        return "\n".join(lines)

    @staticmethod
    def _glyph(view, x, y, level, occupants, visible) -> str:
        column = [Pos(x, y, level + dz) for dz in (0, 1, -1)]
        if not any(view.is_explored(pos) for pos in column):
            return UNEXPLORED_GLYPH
        for pos in column:
            entity = occupants.get(pos)
            if entity is not None and (visible is None or pos in visible):
                return FACTION_GLYPHS.get(entity.faction, "?")
        here = Pos(x, y, level)
        if view.terrain_at(here) in (TERRAIN_DOOR, TERRAIN_STAIRS):
            return TERRAIN_GLYPHS[view.terrain_at(here)]
        surface = view.surface_at(x, y, level)
        return SURFACE_GLYPHS.get(surface.kind, VOID_GLYPH)


class SimulationController:
    """Turns typed commands into intents for the prompted player entity."""

    def __init__(self, sim: Simulation) -> None:
        self.sim = sim

    def submit(self, intent_type: str, **params: object) -> str:
        prompt = self.sim.prompt()
        if prompt is None:
            return "nobody can act"
        outcome = self.sim.submit(Intent(intent_type, prompt.actor_id, prompt.turn_index, dict(params)))
        if not outcome.accepted:
            return f"rejected: {outcome.reason}"
        run_ai_turns(self.sim)
        return "ok"


def _parse_command(raw: str) -> tuple[str, dict[str, object]] | None:
    parts = raw.split()
    if not parts:
        return None
    verb, args = parts[0], parts[1:]
    if verb in {"n", "e", "s", "w"} and not args:
        return INTENT_MOVE, {"direction": {"n": "north", "e": "east", "s": "south", "w": "west"}[verb]}
    if verb == "move" and len(args) == 1:
        return INTENT_MOVE, {"direction": args[0]}
    if verb == "wait" and not args:
        return INTENT_WAIT, {}
    if verb == "explore" and not args:
        return INTENT_EXPLORE, {}
    if verb == "climb" and len(args) == 1:
        return INTENT_CLIMB, {"direction": args[0]}
    if verb == "dig" and len(args) == 1:
        return INTENT_DIG, {"direction": args[0]}
    if verb == "use" and len(args) == 1:
        return INTENT_USE_ITEM, {"item_id": args[0]}
    if verb == "travel" and len(args) == 3 and all(arg.lstrip("-").isdigit() for arg in args):
        return INTENT_TRAVEL, {"goal": [int(arg) for arg in args]}
    return None


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="voxcrawl-viewer", description="Terminal ASCII viewer for voxcrawl scenarios.")
    parser.add_argument("--scenario", default=DEFAULT_SCENARIO_PATH, help="Scenario map JSON with spawns")
    parser.add_argument("--content", default=DEFAULT_CONTENT_PATH, help="Content registry JSON")
    parser.add_argument("--seed", type=int, default=DEFAULT_SEED, help="Master seed for the new simulation")
    parser.add_argument("--save-on-exit", help="Write a canonical save to this path when quitting")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def run_demo(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    content = load_content_json(args.content)
    sim = load_scenario_json(args.scenario, seed=args.seed, content=content, config=SimulationConfig.from_env())
    run_ai_turns(sim)

    view = sim.view()
    viewer = AsciiViewer()
    controller = SimulationController(sim)
    player_id = next((entity.entity_id for entity in view.entities() if entity.faction == "player"), None)

    print("voxcrawl demo. Commands: show | n/e/s/w | move <dir> | wait | explore | travel <x> <y> <z>")
    print("                         climb up|down | dig <dir> | use <item_id> | quit")
    print(viewer.render(view, viewer_id=player_id))

    while True:
        try:
            raw = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            break
        if raw in {"quit", "exit"}:
            break
        if raw == "show":
            print(viewer.render(view, viewer_id=player_id))
            continue
        parsed = _parse_command(raw)
        if parsed is None:
            print("unknown command")
            continue
        intent_type, params = parsed
        print(controller.submit(intent_type, **params))
        if player_id is not None and player_id not in sim.state.entities:
            player_id = None
        print(viewer.render(view, viewer_id=player_id))

    if args.save_on_exit:
        save_game_json(args.save_on_exit, sim)
        print(f"saved={args.save_on_exit}")
    return 0


if __name__ == "__main__":
    raise SystemExit(run_demo())
