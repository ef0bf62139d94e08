from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

INTENT_MOVE = "move"
INTENT_TRAVEL = "travel"
INTENT_ATTACK = "attack"
INTENT_WAIT = "wait"
INTENT_USE_ITEM = "use_item"
INTENT_DIG = "dig"
INTENT_CLIMB = "climb"
INTENT_EXPLORE = "explore"
INTENT_DEBUG_TELEPORT = "debug_teleport"
INTENT_DEBUG_SET_TERRAIN = "debug_set_terrain"
INTENT_DEBUG_REVEAL = "debug_reveal"

GAMEPLAY_INTENT_TYPES = (
    INTENT_MOVE,
    INTENT_TRAVEL,
    INTENT_ATTACK,
    INTENT_WAIT,
    INTENT_USE_ITEM,
    INTENT_DIG,
    INTENT_CLIMB,
    INTENT_EXPLORE,
)
DEBUG_INTENT_TYPES = (INTENT_DEBUG_TELEPORT, INTENT_DEBUG_SET_TERRAIN, INTENT_DEBUG_REVEAL)
INTENT_TYPES = GAMEPLAY_INTENT_TYPES + DEBUG_INTENT_TYPES

OUTCOME_ACCEPTED = "accepted"
OUTCOME_REJECTED = "rejected"

REASON_NONE = "none"
REASON_SIMULATION_ENDED = "simulation_ended"
REASON_NO_ACTOR = "no_actor"
REASON_STALE_INTENT = "stale_intent"
REASON_NOT_ACTOR_TURN = "not_actor_turn"
REASON_UNKNOWN_INTENT_TYPE = "unknown_intent_type"
REASON_DEBUG_DISABLED = "debug_disabled"
REASON_INVALID_PARAMS = "invalid_params"
REASON_BLOCKED = "blocked"
REASON_OCCUPIED = "occupied"
REASON_NO_PATH = "no_path"
REASON_ALREADY_THERE = "already_there"
REASON_NO_TARGET = "no_target"
REASON_OUT_OF_REACH = "out_of_reach"
REASON_NOT_HOSTILE = "not_hostile"
REASON_NOT_IN_INVENTORY = "not_in_inventory"
REASON_UNKNOWN_ITEM = "unknown_item"
REASON_NO_EFFECT = "no_effect"
REASON_NOT_DIGGABLE = "not_diggable"
REASON_NOTHING_TO_EXPLORE = "nothing_to_explore"
REASON_INVARIANT_VIOLATION = "invariant_violation"


def _is_json_primitive(value: Any) -> bool:
    return value is None or isinstance(value, (bool, int, str))


def _validate_json_value(value: Any, *, field_name: str) -> None:
    if _is_json_primitive(value):
        return
    if isinstance(value, list):
        for item in value:
            _validate_json_value(item, field_name=field_name)
        return
    if isinstance(value, dict):
        for key, nested_value in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{field_name} keys must be strings")
            _validate_json_value(nested_value, field_name=field_name)
        return
    raise ValueError(f"{field_name} must contain only canonical JSON primitives")


@dataclass(frozen=True)
class Intent:
    """One requested action, bound to the turn it was produced for.

    Intents are immutable: ``params`` is copied on construction and handed
    out as a fresh copy by ``to_dict``.
    """

    intent_type: str
    actor_id: str
    turn_index: int
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.intent_type, str) or not self.intent_type:
            raise ValueError("intent_type must be a non-empty string")
        if not isinstance(self.actor_id, str) or not self.actor_id:
            raise ValueError("actor_id must be a non-empty string")
        if isinstance(self.turn_index, bool) or not isinstance(self.turn_index, int) or self.turn_index < 0:
            raise ValueError("turn_index must be a non-negative integer")
        if not isinstance(self.params, dict):
            raise ValueError("params must be a dict")
        _validate_json_value(self.params, field_name="params")
        object.__setattr__(self, "params", copy.deepcopy(self.params))

    def param(self, key: str, default: Any = None) -> Any:
        return copy.deepcopy(self.params.get(key, default))

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent_type": self.intent_type,
            "actor_id": self.actor_id,
            "turn_index": self.turn_index,
            "params": copy.deepcopy(self.params),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Intent":
        if not isinstance(data, dict):
            raise ValueError("intent must be an object")
        return cls(
            intent_type=data.get("intent_type"),
            actor_id=data.get("actor_id"),
            turn_index=data.get("turn_index"),
            params=dict(data.get("params", {})),
        )


@dataclass(frozen=True)
class Prompt:
    """The scheduler's request for one intent from ``actor_id``."""

    actor_id: str
    turn_index: int
    acts_next: int

    def intent(self, intent_type: str, **params: Any) -> Intent:
        return Intent(intent_type=intent_type, actor_id=self.actor_id, turn_index=self.turn_index, params=params)


@dataclass(frozen=True)
class IntentOutcome:
    status: str
    reason: str
    intent: Intent
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.status == OUTCOME_ACCEPTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "reason": self.reason,
            "intent": self.intent.to_dict(),
            "details": copy.deepcopy(self.details),
        }


class InvalidIntent(Exception):
    """Raised inside validation; the scheduler turns it into a rejected outcome."""

    def __init__(self, reason: str, message: str = "") -> None:
        super().__init__(message or reason)
        self.reason = reason
