import pytest

from voxcrawl.sim.errors import CorruptedState, InvariantViolation
from voxcrawl.sim.geometry import Pos
from voxcrawl.sim.voxel import (
    CHANGE_EXPLORED,
    CHANGE_RESET,
    CHANGE_TERRAIN,
    SURFACE_FLOOR,
    SURFACE_RAMP_UP,
    SURFACE_VOID,
    SURFACE_WALL,
    TERRAIN_DOOR,
    TERRAIN_OPEN,
    TERRAIN_SLOPE_UP,
    TERRAIN_STAIRS,
    TERRAIN_WALL,
    Surface,
    VoxelMap,
)


def _layered_map(width: int, height: int, layers: dict[int, list[str]]) -> VoxelMap:
    voxel_map = VoxelMap(width, height, z_min=min(layers), z_max=max(layers))
    voxel_map.load_ascii_layers(layers)
    return voxel_map


def test_out_of_bounds_reads_as_wall() -> None:
    voxel_map = VoxelMap(4, 4, fill=TERRAIN_OPEN)

    assert voxel_map.terrain_at(Pos(-1, 0, 0)) == TERRAIN_WALL
    assert voxel_map.terrain_at(Pos(0, 0, 1)) == TERRAIN_WALL
    assert not voxel_map.is_passable(Pos(4, 0, 0))
    assert voxel_map.is_standable(Pos(0, 0, 0))


def test_door_requires_wall_above_and_below() -> None:
    voxel_map = VoxelMap(5, 5, z_min=0, z_max=1, fill=TERRAIN_OPEN)

    with pytest.raises(InvariantViolation, match="lintel"):
        voxel_map.set_terrain(Pos(2, 2, 0), TERRAIN_DOOR)
    assert voxel_map.terrain_at(Pos(2, 2, 0)) == TERRAIN_OPEN

    voxel_map.set_terrain(Pos(2, 2, 1), TERRAIN_WALL)
    voxel_map.set_terrain(Pos(2, 2, 0), TERRAIN_DOOR)
    assert voxel_map.terrain_at(Pos(2, 2, 0)) == TERRAIN_DOOR


def test_opening_a_door_lintel_removes_the_door() -> None:
    voxel_map = VoxelMap(10, 10, z_min=-1, z_max=1)
    voxel_map.set_terrain(Pos(5, 5, 0), TERRAIN_DOOR)
    events: list[tuple[Pos | None, str]] = []
    voxel_map.add_listener(lambda pos, change: events.append((pos, change)))

    voxel_map.set_terrain(Pos(5, 5, 1), TERRAIN_OPEN)

    assert voxel_map.terrain_at(Pos(5, 5, 1)) == TERRAIN_OPEN
    assert voxel_map.terrain_at(Pos(5, 5, 0)) == TERRAIN_OPEN
    assert events == [(Pos(5, 5, 1), CHANGE_TERRAIN), (Pos(5, 5, 0), CHANGE_TERRAIN)]


def test_slopes_need_headroom_and_cannot_stack() -> None:
    voxel_map = VoxelMap(5, 5, z_min=0, z_max=2)

    with pytest.raises(InvariantViolation, match="headroom"):
        voxel_map.set_terrain(Pos(2, 2, 0), TERRAIN_SLOPE_UP)

    voxel_map.set_terrain(Pos(2, 2, 1), TERRAIN_OPEN)
    voxel_map.set_terrain(Pos(2, 2, 2), TERRAIN_OPEN)
    voxel_map.set_terrain(Pos(2, 2, 0), TERRAIN_SLOPE_UP)

    with pytest.raises(InvariantViolation, match="stacked slope"):
        voxel_map.set_terrain(Pos(2, 2, 1), TERRAIN_SLOPE_UP)
    assert voxel_map.terrain_at(Pos(2, 2, 1)) == TERRAIN_OPEN


def test_wall_cannot_cap_stairs() -> None:
    voxel_map = VoxelMap(5, 5, z_min=0, z_max=1)
    voxel_map.set_terrain(Pos(2, 2, 1), TERRAIN_OPEN)
    voxel_map.set_terrain(Pos(2, 2, 0), TERRAIN_STAIRS)

    with pytest.raises(InvariantViolation, match="headroom"):
        voxel_map.set_terrain(Pos(2, 2, 1), TERRAIN_WALL)
    assert voxel_map.terrain_at(Pos(2, 2, 1)) == TERRAIN_OPEN


def test_standing_needs_support_below() -> None:
    voxel_map = VoxelMap(3, 3, z_min=0, z_max=1, fill=TERRAIN_OPEN)

    assert voxel_map.is_standable(Pos(1, 1, 0))
    assert not voxel_map.is_standable(Pos(1, 1, 1))

    voxel_map.set_terrain(Pos(1, 1, 0), TERRAIN_WALL)
    assert voxel_map.is_standable(Pos(1, 1, 1))


def test_walk_step_climbs_one_level_with_headroom() -> None:
    voxel_map = _layered_map(
        5,
        3,
        {
            0: ["#####", "#.###", "#####"],
            1: ["#####", "#..##", "#####"],
            2: ["#####", "#####", "#####"],
        },
    )

    assert voxel_map.walk_step(Pos(1, 1, 0), "east") == Pos(2, 1, 1)
    assert voxel_map.walk_step(Pos(2, 1, 1), "west") == Pos(1, 1, 0)
    assert voxel_map.walk_step(Pos(1, 1, 0), "north") is None


def test_walk_step_refuses_step_up_without_headroom() -> None:
    voxel_map = _layered_map(
        5,
        3,
        {
            0: ["#####", "#.###", "#####"],
            1: ["#####", "##.##", "#####"],
        },
    )

    assert voxel_map.is_standable(Pos(2, 1, 1))
    assert voxel_map.walk_step(Pos(1, 1, 0), "east") is None


def test_walk_step_refuses_two_level_drop() -> None:
    voxel_map = _layered_map(
        5,
        3,
        {
            0: ["#####", "##.##", "#####"],
            1: ["#####", "##.##", "#####"],
            2: ["#####", "#..##", "#####"],
        },
    )

    assert voxel_map.is_standable(Pos(1, 1, 2))
    assert voxel_map.walk_step(Pos(1, 1, 2), "east") is None


def test_stairs_connect_levels_vertically() -> None:
    voxel_map = _layered_map(
        5,
        3,
        {
            0: ["#####", "#X..#", "#####"],
            1: ["#####", "#.###", "#####"],
        },
    )

    assert voxel_map.climb_step(Pos(1, 1, 0), "up") == Pos(1, 1, 1)
    assert voxel_map.climb_step(Pos(1, 1, 1), "down") == Pos(1, 1, 0)
    assert voxel_map.climb_step(Pos(2, 1, 0), "up") is None
    assert voxel_map.walk_neighbors(Pos(1, 1, 1)) == [("down", Pos(1, 1, 0))]
    assert voxel_map.walk_neighbors(Pos(2, 1, 0)) == [("east", Pos(3, 1, 0)), ("west", Pos(1, 1, 0))]
    with pytest.raises(ValueError, match="vertical direction"):
        voxel_map.climb_step(Pos(1, 1, 0), "sideways")


def test_surface_classification_for_display() -> None:
    voxel_map = _layered_map(
        5,
        3,
        {
            0: ["#####", "#..##", "#####"],
            1: ["#####", "#..<#", "#####"],
            2: ["#####", "#...#", "#####"],
        },
    )

    assert voxel_map.surface_at(1, 1, 0) == Surface(SURFACE_FLOOR, 0)
    assert voxel_map.surface_at(3, 1, 0) == Surface(SURFACE_RAMP_UP, 1)
    assert voxel_map.surface_at(3, 1, 1) == Surface(SURFACE_FLOOR, 1)
    assert voxel_map.surface_at(2, 1, 2) == Surface(SURFACE_VOID)
    assert voxel_map.surface_at(4, 1, 0) == Surface(SURFACE_WALL)


def test_listeners_and_exploration_flags() -> None:
    voxel_map = VoxelMap(4, 4, fill=TERRAIN_OPEN)
    events: list[tuple[Pos | None, str]] = []

    def listener(pos: Pos | None, change: str) -> None:
        events.append((pos, change))

    voxel_map.add_listener(listener)

    assert voxel_map.mark_explored(Pos(1, 1, 0)) is True
    assert voxel_map.mark_explored(Pos(1, 1, 0)) is False
    assert voxel_map.mark_explored(Pos(9, 9, 0)) is False
    voxel_map.set_terrain(Pos(2, 2, 0), TERRAIN_WALL)
    voxel_map.load_ascii_layer(0, ["#"])
    voxel_map.remove_listener(listener)
    voxel_map.set_terrain(Pos(3, 3, 0), TERRAIN_WALL)

    assert events == [
        (Pos(1, 1, 0), CHANGE_EXPLORED),
        (Pos(2, 2, 0), CHANGE_TERRAIN),
        (None, CHANGE_RESET),
    ]
    assert voxel_map.explored_cells() == (Pos(1, 1, 0),)


def test_bulk_load_is_refused_as_a_whole() -> None:
    voxel_map = VoxelMap(4, 4, z_min=0, z_max=1, fill=TERRAIN_OPEN)
    revision = voxel_map.revision

    with pytest.raises(InvariantViolation, match="lintel"):
        voxel_map.load_ascii_layer(0, ["##", "#+"])

    assert voxel_map.terrain_at(Pos(0, 0, 0)) == TERRAIN_OPEN
    assert voxel_map.terrain_at(Pos(1, 1, 0)) == TERRAIN_OPEN
    assert voxel_map.revision == revision
    with pytest.raises(ValueError, match="unknown terrain glyph"):
        voxel_map.load_ascii_layer(0, ["?"])


def test_map_dict_round_trip() -> None:
    voxel_map = _layered_map(
        5,
        3,
        {
            0: ["#####", "#X..#", "#####"],
            1: ["#####", "#.###", "#####"],
        },
    )
    voxel_map.mark_explored(Pos(1, 1, 0))

    restored = VoxelMap.from_dict(voxel_map.to_dict())

    assert restored.to_dict() == voxel_map.to_dict()
    assert restored.terrain_at(Pos(1, 1, 0)) == TERRAIN_STAIRS
    assert restored.is_explored(Pos(1, 1, 0))


def test_map_from_dict_rejects_bad_payloads() -> None:
    base = VoxelMap(3, 3, z_min=0, z_max=1, fill=TERRAIN_OPEN).to_dict()

    with pytest.raises(CorruptedState, match="unknown terrain kind"):
        VoxelMap.from_dict({**base, "cells": [[0, 0, 0, "lava"]]})
    with pytest.raises(CorruptedState, match="out of bounds"):
        VoxelMap.from_dict({**base, "cells": [[5, 0, 0, "wall"]]})
    with pytest.raises(CorruptedState, match="terrain invariants"):
        VoxelMap.from_dict({**base, "cells": [[1, 1, 0, "door"]]})
    with pytest.raises(CorruptedState, match="header"):
        VoxelMap.from_dict({**base, "width": 0})
