from __future__ import annotations

from collections import OrderedDict
from typing import Iterable

from voxcrawl.sim.geometry import Pos
from voxcrawl.sim.voxel import CHANGE_EXPLORED, CHANGE_RESET, VoxelMap

DEFAULT_FOV_RADIUS = 8
FOV_CACHE_SIZE = 64
# Voxel layers around the viewer that a visible column contributes.
VISIBLE_Z_BAND = 1

# Octant transforms (xx, xy, yx, yy) for recursive shadow casting.
_OCTANTS: tuple[tuple[int, int, int, int], ...] = (
    (1, 0, 0, 1),
    (0, 1, 1, 0),
    (0, -1, 1, 0),
    (-1, 0, 0, 1),
    (-1, 0, 0, -1),
    (0, -1, -1, 0),
    (0, 1, -1, 0),
    (1, 0, 0, -1),
)


def visible_from(
    origin: Pos,
    voxel_map: VoxelMap,
    radius: int = DEFAULT_FOV_RADIUS,
    open_doors: Iterable[Pos] = (),
) -> frozenset[Pos]:
    """Voxels visible from ``origin``.

    Sight is traced on the viewer's z plane against actual terrain, whether
    or not the player has explored it yet; every lit column then contributes
    the voxels one layer above and below. Doors in ``open_doors`` are held
    open by an occupant and do not block sight.
    """
    if radius < 0:
        raise ValueError("fov radius must be >= 0")
    if not voxel_map.in_bounds(origin):
        return frozenset()

    held_open = frozenset(open_doors)
    lit_columns: set[tuple[int, int]] = {(origin.x, origin.y)}
    z = origin.z

    def blocks(x: int, y: int) -> bool:
        return voxel_map.is_opaque(Pos(x, y, z), held_open)

    def cast(row: int, start: float, end: float, xx: int, xy: int, yx: int, yy: int) -> None:
        if start < end:
            return
        radius_sq = radius * radius
        new_start = 0.0
        for distance in range(row, radius + 1):
            dx = -distance - 1
            dy = -distance
            blocked = False
            while dx <= 0:
                dx += 1
                x = origin.x + dx * xx + dy * xy
                y = origin.y + dx * yx + dy * yy
                left_slope = (dx - 0.5) / (dy + 0.5)
                right_slope = (dx + 0.5) / (dy - 0.5)
                if start < right_slope:
                    continue
                if end > left_slope:
                    break
                if dx * dx + dy * dy <= radius_sq and voxel_map.in_bounds(Pos(x, y, z)):
                    lit_columns.add((x, y))
                if blocked:
                    if blocks(x, y):
                        new_start = right_slope
                        continue
                    blocked = False
                    start = new_start
                elif blocks(x, y) and distance < radius:
                    blocked = True
                    cast(distance + 1, start, left_slope, xx, xy, yx, yy)
                    new_start = right_slope
            if blocked:
                break

    if radius > 0:
        for xx, xy, yx, yy in _OCTANTS:
            cast(1, 1.0, 0.0, xx, xy, yx, yy)

    visible: set[Pos] = set()
    for x, y in lit_columns:
        for dz in range(-VISIBLE_Z_BAND, VISIBLE_Z_BAND + 1):
            pos = Pos(x, y, z + dz)
            if voxel_map.in_bounds(pos):
                visible.add(pos)
    return frozenset(visible)


class FovCache:
    """Memoized ``visible_from`` results, dropped when nearby terrain changes.

    Holds at most ``max_entries`` results; the least recently used one is evicted first.
    """

    def __init__(self, voxel_map: VoxelMap, *, max_entries: int = FOV_CACHE_SIZE) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._voxel_map = voxel_map
        self._max_entries = max_entries
        self._entries: OrderedDict[tuple[Pos, int, tuple[Pos, ...]], frozenset[Pos]] = OrderedDict()
        voxel_map.add_listener(self._on_map_change)

    def __len__(self) -> int:
        return len(self._entries)

    def visible_from(self, origin: Pos, radius: int = DEFAULT_FOV_RADIUS, open_doors: Iterable[Pos] = ()) -> frozenset[Pos]:
        key = (origin, radius, tuple(sorted(open_doors)))
        cached = self._entries.get(key)
        if cached is None:
            cached = visible_from(origin, self._voxel_map, radius, key[2])
            self._entries[key] = cached
            if len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
        else:
            self._entries.move_to_end(key)
        return cached

    def clear(self) -> None:
        self._entries.clear()

    def detach(self) -> None:
        self._voxel_map.remove_listener(self._on_map_change)

    def _on_map_change(self, pos: Pos | None, change: str) -> None:
        if change == CHANGE_EXPLORED:
            return
        if change == CHANGE_RESET or pos is None:
            self._entries.clear()
            return
        stale = [
            key
            for key in self._entries
            if abs(key[0].x - pos.x) <= key[1]
            and abs(key[0].y - pos.y) <= key[1]
            and abs(key[0].z - pos.z) <= VISIBLE_Z_BAND
        ]
        for key in stale:
            del self._entries[key]
