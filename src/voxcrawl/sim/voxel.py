from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

from voxcrawl.sim.errors import CorruptedState, InvariantViolation
from voxcrawl.sim.geometry import DIRECTION_NAMES, Pos, VERTICAL_DIRECTIONS, step_offset

logger = logging.getLogger(__name__)

TERRAIN_OPEN = "open"
TERRAIN_WALL = "wall"
TERRAIN_DOOR = "door"
TERRAIN_SLOPE_UP = "slope_up"
TERRAIN_SLOPE_DOWN = "slope_down"
TERRAIN_STAIRS = "stairs"
TERRAIN_KINDS = (
    TERRAIN_OPEN,
    TERRAIN_WALL,
    TERRAIN_DOOR,
    TERRAIN_SLOPE_UP,
    TERRAIN_SLOPE_DOWN,
    TERRAIN_STAIRS,
)
SLOPE_KINDS = frozenset({TERRAIN_SLOPE_UP, TERRAIN_SLOPE_DOWN})
SELF_SUPPORTING_KINDS = frozenset({TERRAIN_SLOPE_UP, TERRAIN_SLOPE_DOWN, TERRAIN_STAIRS})

SURFACE_FLOOR = "floor"
SURFACE_RAMP_UP = "ramp_up"
SURFACE_RAMP_DOWN = "ramp_down"
SURFACE_WALL = "wall"
SURFACE_VOID = "void"

ASCII_GLYPHS: dict[str, str] = {
    "#": TERRAIN_WALL,
    ".": TERRAIN_OPEN,
    "+": TERRAIN_DOOR,
    "<": TERRAIN_SLOPE_UP,
    ">": TERRAIN_SLOPE_DOWN,
    "X": TERRAIN_STAIRS,
}
TERRAIN_GLYPHS: dict[str, str] = {kind: glyph for glyph, kind in ASCII_GLYPHS.items()}

CHANGE_TERRAIN = "terrain"
CHANGE_EXPLORED = "explored"
CHANGE_RESET = "reset"

# Listener receives (changed position, change kind); position is None on CHANGE_RESET.
ChangeListener = Callable[[Pos | None, str], None]


@dataclass(frozen=True)
class Surface:
    """What a top-down renderer shows for one map column at a viewer's z."""

    kind: str
    z: int | None = None


@dataclass(frozen=True)
class VoxelMapSnapshot:
    cells: dict[Pos, str]
    explored: frozenset[Pos]
    revision: int


class VoxelMap:
    """Bounded voxel terrain with per-cell exploration state.

    Cells that were never assigned hold ``fill`` terrain. Every mutation goes
    through ``set_terrain`` (or the bulk loaders, which validate the whole map
    afterwards), so the door and step-height rules hold at all times.
    """

    def __init__(
        self,
        width: int,
        height: int,
        *,
        z_min: int = 0,
        z_max: int = 0,
        fill: str = TERRAIN_WALL,
    ) -> None:
        if not isinstance(width, int) or width <= 0 or not isinstance(height, int) or height <= 0:
            raise ValueError("voxel map width and height must be integers > 0")
        if not isinstance(z_min, int) or not isinstance(z_max, int) or z_max < z_min:
            raise ValueError("voxel map z range must be integers with z_max >= z_min")
        if fill not in (TERRAIN_WALL, TERRAIN_OPEN):
            raise ValueError("voxel map fill must be wall or open")
        self.width = width
        self.height = height
        self.z_min = z_min
        self.z_max = z_max
        self.fill = fill
        self.revision = 0
        self._cells: dict[Pos, str] = {}
        self._explored: set[Pos] = set()
        self._listeners: list[ChangeListener] = []

    # -- queries -----------------------------------------------------------

    def in_bounds(self, pos: Pos) -> bool:
        return 0 <= pos.x < self.width and 0 <= pos.y < self.height and self.z_min <= pos.z <= self.z_max

    def terrain_at(self, pos: Pos) -> str:
        if not self.in_bounds(pos):
            return TERRAIN_WALL
        return self._cells.get(pos, self.fill)

    def is_passable(self, pos: Pos) -> bool:
        return self.in_bounds(pos) and self.terrain_at(pos) != TERRAIN_WALL

    def is_opaque(self, pos: Pos, open_doors: Iterable[Pos] = ()) -> bool:
        kind = self.terrain_at(pos)
        if kind == TERRAIN_WALL:
            return True
        if kind == TERRAIN_DOOR:
            return pos not in open_doors
        return False

    def is_standable(self, pos: Pos) -> bool:
        if not self.is_passable(pos):
            return False
        kind = self.terrain_at(pos)
        if kind in SELF_SUPPORTING_KINDS:
            return True
        below = self.terrain_at(pos.below())
        return below in (TERRAIN_WALL, TERRAIN_STAIRS)

    def is_explored(self, pos: Pos) -> bool:
        return pos in self._explored

    def explored_cells(self) -> tuple[Pos, ...]:
        return tuple(sorted(self._explored))

    def cells(self) -> Iterator[tuple[Pos, str]]:
        for pos in sorted(self._cells):
            yield pos, self._cells[pos]

    def positions(self, z: int | None = None) -> Iterator[Pos]:
        z_values = range(self.z_min, self.z_max + 1) if z is None else (z,)
        for level in z_values:
            for y in range(self.height):
                for x in range(self.width):
                    yield Pos(x, y, level)

    # -- movement ----------------------------------------------------------

    def walk_step(self, pos: Pos, direction: str) -> Pos | None:
        """Resolve one horizontal move, stepping up or down at most one z."""
        dx, dy = step_offset(direction)
        target = pos.offset(dx, dy)
        if self.is_standable(target):
            return target
        up = target.above()
        if not self.is_passable(target) and self.is_standable(up) and self.is_passable(pos.above()):
            return up
        down = target.below()
        if self.is_passable(target) and self.is_standable(down):
            return down
        return None

    def climb_step(self, pos: Pos, vertical: str) -> Pos | None:
        """Move straight up or down a stairwell."""
        if vertical not in VERTICAL_DIRECTIONS:
            raise ValueError(f"unknown vertical direction: {vertical}")
        if vertical == "up":
            if self.terrain_at(pos) == TERRAIN_STAIRS and self.is_standable(pos.above()):
                return pos.above()
            return None
        below = pos.below()
        if self.terrain_at(below) == TERRAIN_STAIRS and self.in_bounds(below):
            return below
        return None

    def walk_neighbors(self, pos: Pos) -> list[tuple[str, Pos]]:
        neighbors: list[tuple[str, Pos]] = []
        for direction in DIRECTION_NAMES:
            target = self.walk_step(pos, direction)
            if target is not None:
                neighbors.append((direction, target))
        for vertical in VERTICAL_DIRECTIONS:
            target = self.climb_step(pos, vertical)
            if target is not None:
                neighbors.append((vertical, target))
        return neighbors

    def surface_at(self, x: int, y: int, viewer_z: int) -> Surface:
        """Classify a column for display relative to ``viewer_z``.

        Floors are drawn only at viewer z and one step above or below. A
        single step renders as flat floor; the ramp markers appear only when
        the slope continues past that one step.
        """
        for dz in (0, 1, -1):
            pos = Pos(x, y, viewer_z + dz)
            if not self.in_bounds(pos) or not self.is_standable(pos):
                continue
            kind = self.terrain_at(pos)
            if dz == 1 and kind == TERRAIN_SLOPE_UP:
                return Surface(SURFACE_RAMP_UP, pos.z)
            if dz == -1 and kind == TERRAIN_SLOPE_DOWN:
                return Surface(SURFACE_RAMP_DOWN, pos.z)
            return Surface(SURFACE_FLOOR, pos.z)
        if self.terrain_at(Pos(x, y, viewer_z)) == TERRAIN_WALL:
            return Surface(SURFACE_WALL)
        return Surface(SURFACE_VOID)

    # -- mutation ----------------------------------------------------------

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        self._listeners = [existing for existing in self._listeners if existing != listener]

    def set_terrain(self, pos: Pos, kind: str) -> None:
        if kind not in TERRAIN_KINDS:
            raise ValueError(f"unknown terrain kind: {kind}")
        if not self.in_bounds(pos):
            raise InvariantViolation(f"position out of bounds: {pos.to_list()}", pos=pos)
        if self.terrain_at(pos) == kind:
            return
        changes = self._plan_terrain_change(pos, kind)
        for changed_pos, changed_kind in changes:
            self._assign(changed_pos, changed_kind)
        self.revision += 1
        for changed_pos, _ in changes:
            self._notify(changed_pos, CHANGE_TERRAIN)

    def mark_explored(self, pos: Pos) -> bool:
        """Mark a cell explored; returns True when the flag changed."""
        if not self.in_bounds(pos) or pos in self._explored:
            return False
        self._explored.add(pos)
        self._notify(pos, CHANGE_EXPLORED)
        return True

    def load_ascii_layers(self, layers: Mapping[int, Sequence[str]], *, origin: tuple[int, int] = (0, 0)) -> None:
        """Bulk-assign terrain from glyph rows keyed by z, then validate the map.

        Glyphs: ``#`` wall, ``.`` open, ``+`` door, ``<`` slope up, ``>``
        slope down, ``X`` stairs, space leaves the cell untouched.
        """
        changes: list[tuple[Pos, str]] = []
        for z in sorted(layers):
            for row_index, row in enumerate(layers[z]):
                for column_index, glyph in enumerate(row):
                    if glyph == " ":
                        continue
                    if glyph not in ASCII_GLYPHS:
                        raise ValueError(f"unknown terrain glyph {glyph!r} at z={z} row={row_index}")
                    pos = Pos(origin[0] + column_index, origin[1] + row_index, z)
                    if not self.in_bounds(pos):
                        raise InvariantViolation(f"glyph out of bounds: {pos.to_list()}", pos=pos)
                    changes.append((pos, ASCII_GLYPHS[glyph]))
        self.apply_bulk(changes)

    def load_ascii_layer(self, z: int, rows: Sequence[str], *, origin: tuple[int, int] = (0, 0)) -> None:
        self.load_ascii_layers({z: rows}, origin=origin)

    def apply_bulk(self, changes: Sequence[tuple[Pos, str]]) -> None:
        """Assign many cells at once; the whole batch is refused on any violation."""
        for pos, kind in changes:
            if kind not in TERRAIN_KINDS:
                raise ValueError(f"unknown terrain kind: {kind}")
        snapshot = self.snapshot()
        for pos, kind in changes:
            self._assign(pos, kind)
        try:
            self.validate()
        except InvariantViolation:
            self.restore(snapshot)
            raise
        self.revision += 1
        self._notify(None, CHANGE_RESET)

    def validate(self) -> None:
        for pos in sorted(self._cells):
            self._check_cell(pos, self._cells[pos])

    def snapshot(self) -> VoxelMapSnapshot:
        return VoxelMapSnapshot(cells=dict(self._cells), explored=frozenset(self._explored), revision=self.revision)

    def restore(self, snapshot: VoxelMapSnapshot) -> None:
        self._cells = dict(snapshot.cells)
        self._explored = set(snapshot.explored)
        self.revision = snapshot.revision
        self._notify(None, CHANGE_RESET)

    def _assign(self, pos: Pos, kind: str) -> None:
        if kind == self.fill:
            self._cells.pop(pos, None)
        else:
            self._cells[pos] = kind

    def _check_cell(self, pos: Pos, kind: str) -> None:
        above = pos.above()
        below = pos.below()
        # Out-of-bounds voxels read as wall, so a door may sit on the map's bedrock or under its ceiling.
        if kind == TERRAIN_DOOR:
            if self.terrain_at(above) != TERRAIN_WALL:
                raise InvariantViolation(f"door at {pos.to_list()} needs a wall lintel above", pos=pos)
            if self.terrain_at(below) != TERRAIN_WALL:
                raise InvariantViolation(f"door at {pos.to_list()} needs a wall threshold below", pos=pos)
        if kind in SELF_SUPPORTING_KINDS and not self.is_passable(above):
            raise InvariantViolation(f"{kind} at {pos.to_list()} needs open headroom above", pos=pos)
        if kind in SLOPE_KINDS and (self.terrain_at(above) in SLOPE_KINDS or self.terrain_at(below) in SLOPE_KINDS):
            raise InvariantViolation(f"stacked slope at {pos.to_list()} would make a two-voxel step", pos=pos)

    def _plan_terrain_change(self, pos: Pos, kind: str) -> list[tuple[Pos, str]]:
        previous = self.terrain_at(pos)
        changes: list[tuple[Pos, str]] = [(pos, kind)]
        self._check_planned(pos, kind)
        if kind != TERRAIN_WALL:
            for neighbor in (pos.above(), pos.below()):
                if self.terrain_at(neighbor) == TERRAIN_DOOR:
                    logger.debug("door at %s lost its wall support; replacing with open", neighbor.to_list())
                    changes.append((neighbor, TERRAIN_OPEN))
        if kind == TERRAIN_WALL and previous != TERRAIN_WALL:
            below_kind = self.terrain_at(pos.below())
            if below_kind in SELF_SUPPORTING_KINDS:
                raise InvariantViolation(
                    f"wall at {pos.to_list()} would remove headroom of {below_kind} below",
                    pos=pos,
                )
        return changes

    def _check_planned(self, pos: Pos, kind: str) -> None:
        original = self._cells.get(pos)
        self._assign(pos, kind)
        try:
            self._check_cell(pos, kind)
        finally:
            if original is None:
                self._cells.pop(pos, None)
            else:
                self._cells[pos] = original

    def _notify(self, pos: Pos | None, change: str) -> None:
        for listener in list(self._listeners):
            listener(pos, change)

    # -- persistence -------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "z_min": self.z_min,
            "z_max": self.z_max,
            "fill": self.fill,
            "cells": [[*pos.to_list(), kind] for pos, kind in self.cells()],
            "explored": [pos.to_list() for pos in self.explored_cells()],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "VoxelMap":
        if not isinstance(payload, dict):
            raise CorruptedState("voxel_map must be an object")
        try:
            voxel_map = cls(
                width=payload["width"],
                height=payload["height"],
                z_min=payload.get("z_min", 0),
                z_max=payload.get("z_max", 0),
                fill=payload.get("fill", TERRAIN_WALL),
            )
        except (KeyError, ValueError) as exc:
            raise CorruptedState(f"voxel_map header is invalid: {exc}") from exc

        cells = payload.get("cells", [])
        if not isinstance(cells, list):
            raise CorruptedState("voxel_map.cells must be a list")
        for index, row in enumerate(cells):
            if not isinstance(row, list) or len(row) != 4:
                raise CorruptedState(f"voxel_map.cells[{index}] must be [x, y, z, kind]")
            try:
                pos = Pos.from_list(row[:3])
            except ValueError as exc:
                raise CorruptedState(f"voxel_map.cells[{index}] has an invalid position") from exc
            if row[3] not in TERRAIN_KINDS:
                raise CorruptedState(f"voxel_map.cells[{index}] has unknown terrain kind: {row[3]}")
            if not voxel_map.in_bounds(pos):
                raise CorruptedState(f"voxel_map.cells[{index}] is out of bounds")
            voxel_map._assign(pos, row[3])

        explored = payload.get("explored", [])
        if not isinstance(explored, list):
            raise CorruptedState("voxel_map.explored must be a list")
        for index, row in enumerate(explored):
            try:
                pos = Pos.from_list(row)
            except ValueError as exc:
                raise CorruptedState(f"voxel_map.explored[{index}] has an invalid position") from exc
            if not voxel_map.in_bounds(pos):
                raise CorruptedState(f"voxel_map.explored[{index}] is out of bounds")
            voxel_map._explored.add(pos)

        try:
            voxel_map.validate()
        except InvariantViolation as exc:
            raise CorruptedState(f"voxel_map violates terrain invariants: {exc}") from exc
        return voxel_map
