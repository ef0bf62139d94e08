from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping

from voxcrawl.sim.geometry import Pos
from voxcrawl.sim.intents import Prompt
from voxcrawl.sim.pathing import FOG_EXPLORE
from voxcrawl.sim.voxel import Surface

if TYPE_CHECKING:
    from voxcrawl.sim.core import EntityState, Simulation


@dataclass(frozen=True)
class EntitySnapshot:
    entity_id: str
    creation_index: int
    pos: Pos
    template_id: str | None
    faction: str
    stats: Mapping[str, int]
    flags: tuple[str, ...]
    inventory: Mapping[str, int]
    acts_next: int

    def stat(self, key: str) -> int:
        return self.stats.get(key, 0)

    @classmethod
    def of(cls, entity: EntityState) -> "EntitySnapshot":
        return cls(
            entity_id=entity.entity_id,
            creation_index=entity.creation_index,
            pos=entity.pos,
            template_id=entity.template_id,
            faction=entity.faction,
            stats=MappingProxyType(dict(entity.stats)),
            flags=tuple(entity.flags),
            inventory=MappingProxyType(dict(entity.inventory)),
            acts_next=entity.acts_next,
        )


class SimulationView:
    """Read-only window onto a simulation for renderers and intent producers.

    Exposes terrain, exploration, visibility and path queries plus entity
    snapshots. It offers no way to submit intents, mutate state or reach the
    RNG streams.
    """

    def __init__(self, sim: Simulation) -> None:
        self._sim = sim

    @property
    def width(self) -> int:
        return self._sim.voxel_map.width

    @property
    def height(self) -> int:
        return self._sim.voxel_map.height

    @property
    def z_range(self) -> tuple[int, int]:
        return (self._sim.voxel_map.z_min, self._sim.voxel_map.z_max)

    @property
    def turn_index(self) -> int:
        return self._sim.state.turn_index

    @property
    def scheduler_state(self) -> str:
        return self._sim.scheduler_state

    @property
    def result(self) -> str:
        return self._sim.result

    def prompt(self) -> Prompt | None:
        return self._sim.prompt()

    def terrain_at(self, pos: Pos) -> str:
        return self._sim.voxel_map.terrain_at(pos)

    def is_explored(self, pos: Pos) -> bool:
        return self._sim.voxel_map.is_explored(pos)

    def is_standable(self, pos: Pos) -> bool:
        return self._sim.voxel_map.is_standable(pos)

    def surface_at(self, x: int, y: int, viewer_z: int) -> Surface:
        return self._sim.voxel_map.surface_at(x, y, viewer_z)

    def visible_from(self, entity_id: str) -> frozenset[Pos]:
        return self._sim.visible_from(entity_id)

    def find_path(self, start: Pos, goal: Pos, *, fog: str = FOG_EXPLORE) -> list[Pos] | None:
        return self._sim.find_path(start, goal, fog=fog)

    def entity(self, entity_id: str) -> EntitySnapshot:
        return EntitySnapshot.of(self._sim.entity(entity_id))

    def entity_at(self, pos: Pos) -> EntitySnapshot | None:
        entity = self._sim.entity_at(pos)
        return EntitySnapshot.of(entity) if entity is not None else None

    def entities(self) -> list[EntitySnapshot]:
        return [EntitySnapshot.of(entity) for entity in self._sim.entities_in_creation_order()]

    def event_trace(self) -> list[dict]:
        return self._sim.event_trace()
