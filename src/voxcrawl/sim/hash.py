from __future__ import annotations

import hashlib
import json
from typing import Any

from voxcrawl.sim.core import Simulation
from voxcrawl.sim.voxel import VoxelMap


def _canonical_digest(payload: Any) -> str:
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def map_hash(voxel_map: VoxelMap) -> str:
    return _canonical_digest(voxel_map.to_dict())


def save_hash(payload: dict[str, Any]) -> str:
    hash_payload = {
        "schema_version": payload["schema_version"],
        "simulation_state": payload["simulation_state"],
        "input_log": payload["input_log"],
    }
    return _canonical_digest(hash_payload)


def simulation_hash(simulation: Simulation) -> str:
    """Digest of everything that influences future outcomes of ``simulation``."""
    return _canonical_digest(simulation.simulation_payload())
