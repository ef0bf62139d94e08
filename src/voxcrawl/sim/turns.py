from __future__ import annotations

import heapq
from dataclasses import dataclass
from typing import Any, Iterator

PHASES_IN_TURN = 12
SPEED_NORMAL = 3


def action_delay(cost_phases: int, speed: int) -> int:
    """Phases until an entity of ``speed`` may act again after an action of ``cost_phases``."""
    if speed <= 0:
        raise ValueError("speed must be > 0 for acting entities")
    if cost_phases <= 0:
        return 0
    return max(1, cost_phases * SPEED_NORMAL // speed)


@dataclass(frozen=True, order=True)
class TurnEntry:
    acts_next: int
    creation_index: int
    entity_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "acts_next": self.acts_next,
            "creation_index": self.creation_index,
            "entity_id": self.entity_id,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TurnEntry":
        if not isinstance(payload, dict):
            raise ValueError("turn_queue entries must be objects")
        acts_next = payload.get("acts_next")
        creation_index = payload.get("creation_index")
        entity_id = payload.get("entity_id")
        if isinstance(acts_next, bool) or not isinstance(acts_next, int):
            raise ValueError("turn_queue.acts_next must be an integer")
        if isinstance(creation_index, bool) or not isinstance(creation_index, int) or creation_index < 0:
            raise ValueError("turn_queue.creation_index must be a non-negative integer")
        if not isinstance(entity_id, str) or not entity_id:
            raise ValueError("turn_queue.entity_id must be a non-empty string")
        return cls(acts_next=acts_next, creation_index=creation_index, entity_id=entity_id)


class TurnQueue:
    """Entities waiting to act, earliest ``acts_next`` first.

    Ties break on creation order, then on identifier, so the order never
    depends on insertion history.
    """

    def __init__(self, entries: list[TurnEntry] | None = None) -> None:
        self._heap: list[TurnEntry] = []
        self._members: dict[str, TurnEntry] = {}
        for entry in entries or []:
            self.push(entry)

    def __len__(self) -> int:
        return len(self._heap)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._members

    def __iter__(self) -> Iterator[TurnEntry]:
        return iter(self.entries())

    def push(self, entry: TurnEntry) -> None:
        if entry.entity_id in self._members:
            raise ValueError(f"entity already queued: {entry.entity_id}")
        self._members[entry.entity_id] = entry
        heapq.heappush(self._heap, entry)

    def peek(self) -> TurnEntry | None:
        return self._heap[0] if self._heap else None

    def remove(self, entity_id: str) -> bool:
        if entity_id not in self._members:
            return False
        del self._members[entity_id]
        self._heap = [entry for entry in self._heap if entry.entity_id != entity_id]
        heapq.heapify(self._heap)
        return True

    def reschedule(self, entity_id: str, acts_next: int) -> TurnEntry:
        current = self._members.get(entity_id)
        if current is None:
            raise KeyError(entity_id)
        self.remove(entity_id)
        updated = TurnEntry(acts_next=acts_next, creation_index=current.creation_index, entity_id=entity_id)
        self.push(updated)
        return updated

    def get(self, entity_id: str) -> TurnEntry | None:
        return self._members.get(entity_id)

    def entries(self) -> list[TurnEntry]:
        return sorted(self._heap)

    def copy(self) -> "TurnQueue":
        return TurnQueue(self.entries())

    def to_list(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.entries()]

    @classmethod
    def from_list(cls, payload: Any) -> "TurnQueue":
        if not isinstance(payload, list):
            raise ValueError("turn_queue must be a list")
        return cls([TurnEntry.from_dict(row) for row in payload])
