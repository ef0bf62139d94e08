from __future__ import annotations

from typing import Any

from voxcrawl.sim.errors import CorruptedState

SUPPORTED_SCHEMA_VERSIONS = {1}
REQUIRED_SAVE_FIELDS = {"schema_version", "simulation_state", "input_log", "save_hash"}
REQUIRED_SIMULATION_FIELDS = {
    "seed",
    "master_seed",
    "turn_index",
    "now",
    "rng_state",
    "voxel_map",
    "entities",
    "turn_queue",
}
REQUIRED_INTENT_FIELDS = {"intent_type", "actor_id", "turn_index", "params"}


def _is_json_primitive(value: Any) -> bool:
    return value is None or isinstance(value, (bool, int, float, str))


def _validate_json_value(value: Any, *, field_name: str) -> None:
    if _is_json_primitive(value):
        return
    if isinstance(value, list):
        for item in value:
            _validate_json_value(item, field_name=field_name)
        return
    if isinstance(value, dict):
        for key, nested_value in value.items():
            if not isinstance(key, str):
                raise CorruptedState(f"{field_name} keys must be strings")
            _validate_json_value(nested_value, field_name=field_name)
        return
    raise CorruptedState(f"{field_name} must contain only canonical JSON primitives")


def _validate_intent_rows(rows: Any, *, field_name: str) -> None:
    if not isinstance(rows, list):
        raise CorruptedState(f"{field_name} must be a list")
    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            raise CorruptedState(f"{field_name}[{index}] must be an object")
        missing = REQUIRED_INTENT_FIELDS - set(row.keys())
        if missing:
            raise CorruptedState(f"{field_name}[{index}] missing fields: {sorted(missing)}")
        if not isinstance(row["params"], dict):
            raise CorruptedState(f"{field_name}[{index}].params must be an object")


def validate_save_payload(payload: Any) -> None:
    """Shape check of a save file before its hash and contents are trusted."""
    if not isinstance(payload, dict):
        raise CorruptedState("save payload must be an object")
    missing = REQUIRED_SAVE_FIELDS - set(payload.keys())
    if missing:
        raise CorruptedState(f"save payload missing fields: {sorted(missing)}")

    schema_version = payload["schema_version"]
    if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
        raise CorruptedState(f"unsupported schema_version: {schema_version}")
    if not isinstance(payload["save_hash"], str) or not payload["save_hash"]:
        raise CorruptedState("save_hash must be a non-empty string")

    simulation_state = payload["simulation_state"]
    if not isinstance(simulation_state, dict):
        raise CorruptedState("simulation_state must be an object")
    missing = REQUIRED_SIMULATION_FIELDS - set(simulation_state.keys())
    if missing:
        raise CorruptedState(f"simulation_state missing fields: {sorted(missing)}")
    if not isinstance(simulation_state["voxel_map"], dict):
        raise CorruptedState("simulation_state.voxel_map must be an object")
    for field_name in ("entities", "turn_queue"):
        if not isinstance(simulation_state[field_name], list):
            raise CorruptedState(f"simulation_state.{field_name} must be a list")
    _validate_json_value(simulation_state, field_name="simulation_state")

    _validate_intent_rows(payload["input_log"], field_name="input_log")
    _validate_json_value(payload["input_log"], field_name="input_log")

    metadata = payload.get("metadata", {})
    if not isinstance(metadata, dict):
        raise CorruptedState("metadata must be an object")
    _validate_json_value(metadata, field_name="metadata")
