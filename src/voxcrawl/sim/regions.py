from __future__ import annotations

from collections import deque

from voxcrawl.sim.geometry import DIRECTIONS, Pos
from voxcrawl.sim.voxel import VoxelMap


def room_cells(voxel_map: VoxelMap, z: int) -> frozenset[Pos]:
    """Standable cells on level ``z`` that belong to at least one 2x2 floor square."""
    cells: set[Pos] = set()
    for y in range(voxel_map.height - 1):
        for x in range(voxel_map.width - 1):
            square = (Pos(x, y, z), Pos(x + 1, y, z), Pos(x, y + 1, z), Pos(x + 1, y + 1, z))
            if all(voxel_map.is_standable(pos) for pos in square):
                cells.update(square)
    return frozenset(cells)


def room_regions(voxel_map: VoxelMap, z: int) -> list[frozenset[Pos]]:
    """Connected room-space regions on one level, ordered by their smallest cell."""
    remaining = set(room_cells(voxel_map, z))
    regions: list[frozenset[Pos]] = []
    for seed in sorted(remaining):
        if seed not in remaining:
            continue
        region = {seed}
        remaining.discard(seed)
        frontier = deque([seed])
        while frontier:
            current = frontier.popleft()
            for dx, dy in DIRECTIONS.values():
                neighbor = current.offset(dx, dy)
                if neighbor in remaining:
                    remaining.discard(neighbor)
                    region.add(neighbor)
                    frontier.append(neighbor)
        regions.append(frozenset(region))
    return regions


def is_room_space(voxel_map: VoxelMap, pos: Pos) -> bool:
    """True for cells inside a room as opposed to corridor or stairwell space."""
    if not voxel_map.is_standable(pos):
        return False
    for dx in (-1, 0):
        for dy in (-1, 0):
            square = (
                pos.offset(dx, dy),
                pos.offset(dx + 1, dy),
                pos.offset(dx, dy + 1),
                pos.offset(dx + 1, dy + 1),
            )
            if all(voxel_map.is_standable(cell) for cell in square):
                return True
    return False
