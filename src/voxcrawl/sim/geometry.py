from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, order=True)
class Pos:
    """Voxel coordinate; z is the vertical layer, y grows southward."""

    x: int
    y: int
    z: int

    def offset(self, dx: int = 0, dy: int = 0, dz: int = 0) -> "Pos":
        return Pos(self.x + dx, self.y + dy, self.z + dz)

    def above(self) -> "Pos":
        return Pos(self.x, self.y, self.z + 1)

    def below(self) -> "Pos":
        return Pos(self.x, self.y, self.z - 1)

    def to_list(self) -> list[int]:
        return [self.x, self.y, self.z]

    def to_dict(self) -> dict[str, int]:
        return {"x": self.x, "y": self.y, "z": self.z}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Pos":
        return cls(x=int(data["x"]), y=int(data["y"]), z=int(data["z"]))

    @classmethod
    def from_list(cls, data: Any) -> "Pos":
        if not isinstance(data, (list, tuple)) or len(data) != 3:
            raise ValueError("position must be a list of three integers")
        for value in data:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError("position must be a list of three integers")
        return cls(x=data[0], y=data[1], z=data[2])


# Fixed enumeration order; every search and tie-break walks directions in this order.
DIRECTIONS: dict[str, tuple[int, int]] = {
    "north": (0, -1),
    "east": (1, 0),
    "south": (0, 1),
    "west": (-1, 0),
}
DIRECTION_NAMES: tuple[str, ...] = tuple(DIRECTIONS)
VERTICAL_DIRECTIONS: dict[str, int] = {"up": 1, "down": -1}


def step_offset(direction: str) -> tuple[int, int]:
    if direction not in DIRECTIONS:
        raise ValueError(f"unknown direction: {direction}")
    return DIRECTIONS[direction]


def manhattan(a: Pos, b: Pos) -> int:
    return abs(a.x - b.x) + abs(a.y - b.y) + abs(a.z - b.z)


def taxi_2d(a: Pos, b: Pos) -> int:
    return abs(a.x - b.x) + abs(a.y - b.y)
