from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Iterable

from voxcrawl.content.registry import ContentRegistry
from voxcrawl.content.schema import validate_save_payload
from voxcrawl.sim.config import SimulationConfig
from voxcrawl.sim.core import Simulation
from voxcrawl.sim.errors import CorruptedState
from voxcrawl.sim.geometry import Pos
from voxcrawl.sim.hash import map_hash, save_hash
from voxcrawl.sim.rules import VICTORY_MODULE_NAME, RuleModule, build_rule_module
from voxcrawl.sim.voxel import VoxelMap

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
CANONICAL_JSON_INDENT = 2
CANONICAL_JSON_SEPARATORS = (",", ": ")
DEFAULT_SCENARIO_RULE_MODULES = (VICTORY_MODULE_NAME,)


def _simulation_state_payload(simulation: Simulation) -> dict[str, Any]:
    payload = simulation.simulation_payload()
    payload.pop("input_log", None)
    return payload


def build_game_payload(simulation: Simulation) -> dict[str, Any]:
    metadata = simulation.save_metadata if isinstance(simulation.save_metadata, dict) else {}
    payload: dict[str, Any] = {
        "schema_version": SCHEMA_VERSION,
        "simulation_state": _simulation_state_payload(simulation),
        "input_log": [intent.to_dict() for intent in simulation.input_log],
        "metadata": metadata,
    }
    payload["save_hash"] = save_hash(payload)
    return payload


def canonical_json(payload: dict[str, Any]) -> str:
    return json.dumps(
        payload,
        indent=CANONICAL_JSON_INDENT,
        separators=CANONICAL_JSON_SEPARATORS,
        sort_keys=True,
    )


def _write_atomic_json(path: str | Path, payload: dict[str, Any]) -> None:
    destination = Path(path)
    destination.parent.mkdir(parents=True, exist_ok=True)
    serialized = canonical_json(payload)

    temp_path: Path | None = None
    try:
        with NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=destination.parent,
            delete=False,
            suffix=".tmp",
        ) as temp_file:
            temp_file.write(serialized)
            temp_file.flush()
            os.fsync(temp_file.fileno())
            temp_path = Path(temp_file.name)
        os.replace(temp_path, destination)
    except Exception:
        if temp_path is not None:
            temp_path.unlink(missing_ok=True)
        raise


def _read_json(path: str | Path) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise CorruptedState(f"{path} is not valid JSON: {exc}") from exc


def load_game_payload(
    payload: dict[str, Any],
    *,
    content: ContentRegistry | None = None,
    config: SimulationConfig | None = None,
    rule_modules: Iterable[RuleModule] = (),
) -> Simulation:
    validate_save_payload(payload)

    expected_hash = payload["save_hash"]
    actual_hash = save_hash(payload)
    if expected_hash != actual_hash:
        raise CorruptedState(
            f"save_hash mismatch while loading save (stored={expected_hash}, recomputed={actual_hash})"
        )

    simulation_payload = {
        **payload["simulation_state"],
        "input_log": payload["input_log"],
    }
    simulation = Simulation.from_simulation_payload(
        simulation_payload,
        content=content,
        config=config,
        rule_modules=rule_modules,
    )
    metadata = payload.get("metadata", {})
    simulation.save_metadata = metadata if isinstance(metadata, dict) else {}
    return simulation


def save_game_json(path: str | Path, simulation: Simulation) -> None:
    payload = build_game_payload(simulation)
    validate_save_payload(payload)
    _write_atomic_json(path, payload)
    logger.info("saved turn %d to %s", simulation.state.turn_index, path)


def load_game_json(
    path: str | Path,
    *,
    content: ContentRegistry | None = None,
    config: SimulationConfig | None = None,
    rule_modules: Iterable[RuleModule] = (),
) -> Simulation:
    payload = _read_json(path)
    return load_game_payload(payload, content=content, config=config, rule_modules=rule_modules)


def save_map_json(path: str | Path, voxel_map: VoxelMap) -> None:
    payload = {
        "schema_version": SCHEMA_VERSION,
        "map_hash": map_hash(voxel_map),
        "voxel_map": voxel_map.to_dict(),
    }
    _write_atomic_json(path, payload)


def load_map_json(path: str | Path) -> VoxelMap:
    """Load a map file: either a hashed ``voxel_map`` dump or an ASCII layer document.

    ASCII documents look like ``{"width": w, "height": h, "z_min": 0,
    "z_max": 1, "layers": {"0": ["#####", ...], "1": [...]}}``.
    """
    payload = _read_json(path)
    if not isinstance(payload, dict):
        raise CorruptedState("map file must contain an object")
    if "layers" in payload:
        return _map_from_ascii_payload(payload)
    if payload.get("schema_version") != SCHEMA_VERSION:
        raise CorruptedState(f"unsupported map schema_version: {payload.get('schema_version')}")
    voxel_map = VoxelMap.from_dict(payload.get("voxel_map"))
    expected_hash = payload.get("map_hash")
    actual_hash = map_hash(voxel_map)
    if expected_hash != actual_hash:
        raise CorruptedState(f"map_hash mismatch while loading map (stored={expected_hash}, recomputed={actual_hash})")
    return voxel_map


def load_scenario_json(
    path: str | Path,
    *,
    seed: int,
    content: ContentRegistry,
    config: SimulationConfig | None = None,
) -> Simulation:
    """Build a fresh simulation from an ASCII map document with a ``spawns`` list.

    The optional ``rule_modules`` list names the rule modules to register
    before spawning; it defaults to ``["victory"]``.
    """
    payload = _read_json(path)
    if not isinstance(payload, dict) or "layers" not in payload:
        raise CorruptedState("scenario file must be an ASCII map document")
    simulation = Simulation(_map_from_ascii_payload(payload), seed=seed, content=content, config=config)
    module_names = payload.get("rule_modules", list(DEFAULT_SCENARIO_RULE_MODULES))
    if not isinstance(module_names, list):
        raise CorruptedState("scenario.rule_modules must be a list")
    for module_name in module_names:
        try:
            simulation.register_rule_module(build_rule_module(module_name))
        except (TypeError, ValueError) as exc:
            raise CorruptedState(f"scenario.rule_modules is invalid: {exc}") from exc
    spawns = payload.get("spawns", [])
    if not isinstance(spawns, list):
        raise CorruptedState("scenario.spawns must be a list")
    for index, row in enumerate(spawns):
        if not isinstance(row, dict):
            raise CorruptedState(f"scenario.spawns[{index}] must be an object")
        try:
            simulation.spawn(row["template_id"], row["entity_id"], Pos.from_list(row["pos"]))
        except (KeyError, ValueError) as exc:
            raise CorruptedState(f"scenario.spawns[{index}] is invalid: {exc}") from exc
    logger.info("loaded scenario %s with %d entities", path, len(simulation.state.entities))
    return simulation


def _map_from_ascii_payload(payload: dict[str, Any]) -> VoxelMap:
    layers = payload["layers"]
    if not isinstance(layers, dict):
        raise CorruptedState("map.layers must be an object keyed by z")
    try:
        voxel_map = VoxelMap(
            width=payload["width"],
            height=payload["height"],
            z_min=payload.get("z_min", 0),
            z_max=payload.get("z_max", 0),
        )
        parsed_layers = {int(z): rows for z, rows in layers.items()}
        voxel_map.load_ascii_layers(parsed_layers)
    except CorruptedState:
        raise
    except (KeyError, TypeError, ValueError) as exc:
        raise CorruptedState(f"map file is invalid: {exc}") from exc
    explored = payload.get("explored_all", False)
    if explored is True:
        for pos in voxel_map.positions():
            voxel_map.mark_explored(pos)
    return voxel_map
