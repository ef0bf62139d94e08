from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from voxcrawl.sim.fov import DEFAULT_FOV_RADIUS
from voxcrawl.sim.pathing import DEFAULT_PATH_MARGIN

DEBUG_ENV_VAR = "VOXCRAWL_DEBUG"
_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SimulationConfig:
    """Out-of-band switches that are not part of the saved game state."""

    debug_mode: bool = False
    fov_radius: int = DEFAULT_FOV_RADIUS
    path_margin: int = DEFAULT_PATH_MARGIN

    def __post_init__(self) -> None:
        if not isinstance(self.debug_mode, bool):
            raise ValueError("config.debug_mode must be a boolean")
        if isinstance(self.fov_radius, bool) or not isinstance(self.fov_radius, int) or self.fov_radius < 0:
            raise ValueError("config.fov_radius must be an integer >= 0")
        if isinstance(self.path_margin, bool) or not isinstance(self.path_margin, int) or self.path_margin < 0:
            raise ValueError("config.path_margin must be an integer >= 0")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SimulationConfig":
        env = os.environ if environ is None else environ
        raw = env.get(DEBUG_ENV_VAR, "")
        return cls(debug_mode=raw.strip().lower() in _TRUTHY)
