from __future__ import annotations

import heapq
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Sequence

from voxcrawl.sim.geometry import DIRECTION_NAMES, DIRECTIONS, Pos, VERTICAL_DIRECTIONS, manhattan, step_offset
from voxcrawl.sim.voxel import CHANGE_RESET, VoxelMap

FOG_IGNORE = "ignore"
FOG_EXPLORE = "explore"
FOG_AVOID = "avoid"
FOG_POLICIES = (FOG_IGNORE, FOG_EXPLORE, FOG_AVOID)

DEFAULT_PATH_MARGIN = 16
MAX_SEARCH_NODES = 50_000
PATH_CACHE_SIZE = 256


@dataclass(frozen=True)
class SearchDomain:
    """Axis-aligned box the search is allowed to expand into."""

    min_x: int
    min_y: int
    max_x: int
    max_y: int

    @classmethod
    def around(cls, start: Pos, goal: Pos, margin: int, voxel_map: VoxelMap) -> "SearchDomain":
        return cls(
            min_x=max(0, min(start.x, goal.x) - margin),
            min_y=max(0, min(start.y, goal.y) - margin),
            max_x=min(voxel_map.width - 1, max(start.x, goal.x) + margin),
            max_y=min(voxel_map.height - 1, max(start.y, goal.y) + margin),
        )

    def contains(self, pos: Pos) -> bool:
        return self.min_x <= pos.x <= self.max_x and self.min_y <= pos.y <= self.max_y


def _heuristic(a: Pos, b: Pos) -> int:
    # One action moves at most one cell horizontally and one z, so this never overestimates.
    return max(abs(a.x - b.x) + abs(a.y - b.y), abs(a.z - b.z))


def path_neighbors(voxel_map: VoxelMap, pos: Pos, fog: str) -> list[Pos]:
    """Successor cells of ``pos`` under a fog policy, in fixed enumeration order.

    ``explore`` is the optimistic policy: an unexplored column is assumed to
    be open ground reachable at the same z or one step up or down.
    """
    neighbors: list[Pos] = []
    for direction in DIRECTION_NAMES:
        dx, dy = step_offset(direction)
        column = pos.offset(dx, dy)
        if fog == FOG_IGNORE or voxel_map.is_explored(column):
            target = voxel_map.walk_step(pos, direction)
            if target is not None:
                neighbors.append(target)
        elif fog == FOG_EXPLORE:
            for dz in (0, 1, -1):
                candidate = column.offset(dz=dz)
                if voxel_map.in_bounds(candidate):
                    neighbors.append(candidate)
    if fog == FOG_IGNORE or voxel_map.is_explored(pos):
        for vertical in VERTICAL_DIRECTIONS:
            target = voxel_map.climb_step(pos, vertical)
            if target is not None:
                neighbors.append(target)
    return neighbors


def find_path(
    start: Pos,
    goal: Pos,
    voxel_map: VoxelMap,
    *,
    fog: str = FOG_EXPLORE,
    margin: int = DEFAULT_PATH_MARGIN,
) -> list[Pos] | None:
    """Shortest route from ``start`` to ``goal``, excluding ``start``.

    Returns an empty list when already at the goal and ``None`` when no route
    exists even with unexplored terrain assumed open. Never returns a partial
    path.
    """
    if fog not in FOG_POLICIES:
        raise ValueError(f"unknown fog policy: {fog}")
    if not voxel_map.in_bounds(start) or not voxel_map.in_bounds(goal):
        return None
    if start == goal:
        return []
    goal_known = fog == FOG_IGNORE or voxel_map.is_explored(goal)
    if goal_known and not voxel_map.is_standable(goal):
        return None
    if fog == FOG_AVOID and not voxel_map.is_explored(goal):
        return None

    domain = SearchDomain.around(start, goal, margin, voxel_map)
    counter = 0
    frontier: list[tuple[int, int, int, int, Pos]] = [(_heuristic(start, goal), 0, 0, counter, start)]
    best_cost: dict[Pos, int] = {start: 0}
    came_from: dict[Pos, Pos] = {}
    closed: set[Pos] = set()

    while frontier:
        _, _, _, _, current = heapq.heappop(frontier)
        if current in closed:
            continue
        if current == goal:
            path = [current]
            while path[-1] in came_from:
                path.append(came_from[path[-1]])
            path.pop()
            path.reverse()
            return path
        closed.add(current)
        if len(closed) > MAX_SEARCH_NODES:
            return None
        cost = best_cost[current] + 1
        for neighbor in path_neighbors(voxel_map, current, fog):
            if neighbor in closed or not domain.contains(neighbor):
                continue
            if cost >= best_cost.get(neighbor, cost + 1):
                continue
            best_cost[neighbor] = cost
            came_from[neighbor] = current
            counter += 1
            h = _heuristic(neighbor, goal)
            heapq.heappush(frontier, (cost + h, h, manhattan(neighbor, goal), counter, neighbor))
    return None


def path_is_stale(start: Pos, path: Sequence[Pos], voxel_map: VoxelMap) -> bool:
    """True when a step of ``path`` is now known to be illegal.

    Steps into cells that are still unexplored keep the optimistic benefit of
    the doubt.
    """
    previous = start
    for step in path:
        if voxel_map.is_explored(step) and step not in path_neighbors(voxel_map, previous, FOG_IGNORE):
            return True
        previous = step
    return False


class PathCache:
    """Memoized ``find_path`` results invalidated by terrain or exploration changes.

    Holds at most ``max_entries`` results; the least recently used one is evicted first.
    """

    def __init__(
        self,
        voxel_map: VoxelMap,
        *,
        margin: int = DEFAULT_PATH_MARGIN,
        max_entries: int = PATH_CACHE_SIZE,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._voxel_map = voxel_map
        self._margin = margin
        self._max_entries = max_entries
        self._entries: OrderedDict[tuple[Pos, Pos, str], tuple[SearchDomain, tuple[Pos, ...] | None]] = OrderedDict()
        voxel_map.add_listener(self._on_map_change)

    def __len__(self) -> int:
        return len(self._entries)

    def find_path(self, start: Pos, goal: Pos, *, fog: str = FOG_EXPLORE) -> list[Pos] | None:
        key = (start, goal, fog)
        entry = self._entries.get(key)
        if entry is None:
            path = find_path(start, goal, self._voxel_map, fog=fog, margin=self._margin)
            domain = SearchDomain.around(start, goal, self._margin + 1, self._voxel_map)
            entry = (domain, tuple(path) if path is not None else None)
            self._entries[key] = entry
            if len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
        else:
            self._entries.move_to_end(key)
        return list(entry[1]) if entry[1] is not None else None

    def clear(self) -> None:
        self._entries.clear()

    def detach(self) -> None:
        self._voxel_map.remove_listener(self._on_map_change)

    def _on_map_change(self, pos: Pos | None, change: str) -> None:
        if change == CHANGE_RESET or pos is None:
            self._entries.clear()
            return
        stale = [key for key, (domain, _) in self._entries.items() if domain.contains(pos)]
        for key in stale:
            del self._entries[key]


def autoexplore_map(voxel_map: VoxelMap, start: Pos) -> dict[Pos, int]:
    """Distance map from known floor toward the unexplored frontier.

    Sources are explored standable cells next to an unexplored column on the
    same level. Returns an empty map when ``start`` cannot reach any source.
    """
    sources: list[Pos] = []
    for pos in voxel_map.explored_cells():
        if not voxel_map.is_standable(pos):
            continue
        for dx, dy in DIRECTIONS.values():
            neighbor = pos.offset(dx, dy)
            if voxel_map.in_bounds(neighbor) and not voxel_map.is_explored(neighbor):
                sources.append(pos)
                break

    distances: dict[Pos, int] = {}
    frontier: deque[tuple[Pos, int]] = deque((source, 0) for source in sources)
    while frontier:
        current, distance = frontier.popleft()
        if current in distances:
            continue
        distances[current] = distance
        for neighbor in path_neighbors(voxel_map, current, FOG_AVOID):
            if neighbor not in distances:
                frontier.append((neighbor, distance + 1))

    if start not in distances:
        return {}
    return distances


def autoexplore_step(voxel_map: VoxelMap, pos: Pos, distances: dict[Pos, int]) -> Pos | None:
    """Neighbor of ``pos`` that moves strictly closer to the frontier, if any."""
    current = distances.get(pos)
    if current is None:
        return None
    best: Pos | None = None
    best_distance = current
    for neighbor in path_neighbors(voxel_map, pos, FOG_AVOID):
        distance = distances.get(neighbor)
        if distance is not None and distance < best_distance:
            best = neighbor
            best_distance = distance
    return best
