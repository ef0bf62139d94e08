from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from voxcrawl.content.registry import EMPTY_CONTENT, FACTIONS, ContentRegistry
from voxcrawl.sim.config import SimulationConfig
from voxcrawl.sim.errors import CorruptedState, InvariantViolation
from voxcrawl.sim.fov import VISIBLE_Z_BAND, FovCache
from voxcrawl.sim.geometry import DIRECTION_NAMES, VERTICAL_DIRECTIONS, Pos, step_offset, taxi_2d
from voxcrawl.sim.intents import (
    DEBUG_INTENT_TYPES,
    INTENT_ATTACK,
    INTENT_CLIMB,
    INTENT_DEBUG_REVEAL,
    INTENT_DEBUG_SET_TERRAIN,
    INTENT_DEBUG_TELEPORT,
    INTENT_DIG,
    INTENT_EXPLORE,
    INTENT_MOVE,
    INTENT_TRAVEL,
    INTENT_TYPES,
    INTENT_USE_ITEM,
    INTENT_WAIT,
    OUTCOME_ACCEPTED,
    OUTCOME_REJECTED,
    REASON_ALREADY_THERE,
    REASON_BLOCKED,
    REASON_DEBUG_DISABLED,
    REASON_INVALID_PARAMS,
    REASON_INVARIANT_VIOLATION,
    REASON_NO_ACTOR,
    REASON_NO_EFFECT,
    REASON_NO_PATH,
    REASON_NO_TARGET,
    REASON_NONE,
    REASON_NOT_ACTOR_TURN,
    REASON_NOT_DIGGABLE,
    REASON_NOT_HOSTILE,
    REASON_NOT_IN_INVENTORY,
    REASON_NOTHING_TO_EXPLORE,
    REASON_OCCUPIED,
    REASON_OUT_OF_REACH,
    REASON_SIMULATION_ENDED,
    REASON_STALE_INTENT,
    REASON_UNKNOWN_INTENT_TYPE,
    REASON_UNKNOWN_ITEM,
    Intent,
    IntentOutcome,
    InvalidIntent,
    Prompt,
)
from voxcrawl.sim.pathing import FOG_EXPLORE, FOG_IGNORE, PathCache, autoexplore_map, autoexplore_step
from voxcrawl.sim.rng import DeterministicRng, Odds, derive_stream_seed
from voxcrawl.sim.rules import RESULT_NONE, SIMULATION_RESULTS, RuleModule, build_rule_module
from voxcrawl.sim.turns import PHASES_IN_TURN, TurnEntry, TurnQueue, action_delay
from voxcrawl.sim.view import SimulationView
from voxcrawl.sim.voxel import TERRAIN_DOOR, TERRAIN_KINDS, TERRAIN_OPEN, TERRAIN_WALL, VoxelMap, VoxelMapSnapshot

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
RNG_COMBAT_STREAM_NAME = "rng_combat"
MAX_EVENT_TRACE = 256
INTENT_OUTCOME_EVENT_TYPE = "intent_outcome"
ATTACK_EVENT_TYPE = "attack"
ENTITY_DIED_EVENT_TYPE = "entity_died"
SIMULATION_ENDED_EVENT_TYPE = "simulation_ended"

STATE_AWAITING_INTENT = "awaiting_intent"
STATE_VALIDATING = "validating"
STATE_APPLYING = "applying"
STATE_REJECTED = "rejected"
STATE_ADVANCING_QUEUE = "advancing_queue"
STATE_SIMULATION_ENDED = "simulation_ended"
SCHEDULER_STATES = (
    STATE_AWAITING_INTENT,
    STATE_VALIDATING,
    STATE_APPLYING,
    STATE_REJECTED,
    STATE_ADVANCING_QUEUE,
    STATE_SIMULATION_ENDED,
)
# Only these states can be observed between two submit() calls.
RESTING_SCHEDULER_STATES = (STATE_AWAITING_INTENT, STATE_SIMULATION_ENDED)

TRAIT_NONE = "none"
FACTION_TRAIT = "faction"
HOSTILE_FACTIONS = {"player": "monster", "monster": "player"}

ACTION_COST_PHASES = PHASES_IN_TURN
DIG_COST_PHASES = 2 * PHASES_IN_TURN
DEBUG_COST_PHASES = 0


def _normalize_int_mapping(value: Any, *, field_name: str, allow_negative: bool = True) -> dict[str, int]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{field_name} must be an object")
    normalized: dict[str, int] = {}
    for key, raw in value.items():
        if not isinstance(key, str) or not key:
            raise ValueError(f"{field_name} keys must be non-empty strings")
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ValueError(f"{field_name}[{key}] must be an integer")
        if not allow_negative and raw < 0:
            raise ValueError(f"{field_name}[{key}] must be >= 0")
        # Absent and zero mean the same thing; only non-zero values are stored.
        if raw != 0:
            normalized[key] = raw
    return dict(sorted(normalized.items()))


def _normalize_traits(value: Any) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("entity.traits must be an object")
    normalized: dict[str, str] = {}
    for key, raw in value.items():
        if not isinstance(key, str) or not key:
            raise ValueError("entity.traits keys must be non-empty strings")
        if not isinstance(raw, str) or not raw:
            raise ValueError(f"entity.traits[{key}] must be a non-empty string")
        if raw != TRAIT_NONE:
            normalized[key] = raw
    faction = normalized.get(FACTION_TRAIT, TRAIT_NONE)
    if faction not in FACTIONS:
        raise ValueError(f"entity.traits[faction] must be one of: {', '.join(FACTIONS)}")
    return dict(sorted(normalized.items()))


def _normalize_flags(value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValueError("entity.flags must be a list")
    for flag in value:
        if not isinstance(flag, str) or not flag:
            raise ValueError("entity.flags entries must be non-empty strings")
    return sorted(set(value))


@dataclass
class EntityState:
    """A mob on the voxel map.

    Numeric components read as 0 when absent and enumerated traits read as
    ``"none"``; only non-default values are stored.
    """

    entity_id: str
    pos: Pos
    template_id: str | None = None
    stats: dict[str, int] = field(default_factory=dict)
    traits: dict[str, str] = field(default_factory=dict)
    flags: list[str] = field(default_factory=list)
    inventory: dict[str, int] = field(default_factory=dict)
    creation_index: int | None = None
    acts_next: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.entity_id, str) or not self.entity_id:
            raise ValueError("entity.entity_id must be a non-empty string")
        if not isinstance(self.pos, Pos):
            raise ValueError("entity.pos must be a Pos")
        if self.template_id is not None and (not isinstance(self.template_id, str) or not self.template_id):
            raise ValueError("entity.template_id must be a non-empty string or None")
        if self.creation_index is not None and (
            isinstance(self.creation_index, bool) or not isinstance(self.creation_index, int) or self.creation_index < 0
        ):
            raise ValueError("entity.creation_index must be a non-negative integer")
        if isinstance(self.acts_next, bool) or not isinstance(self.acts_next, int):
            raise ValueError("entity.acts_next must be an integer")
        self.stats = _normalize_int_mapping(self.stats, field_name="entity.stats")
        self.traits = _normalize_traits(self.traits)
        self.flags = _normalize_flags(self.flags)
        self.inventory = _normalize_int_mapping(self.inventory, field_name="entity.inventory", allow_negative=False)

    def stat(self, key: str) -> int:
        return self.stats.get(key, 0)

    def set_stat(self, key: str, value: int) -> None:
        if value == 0:
            self.stats.pop(key, None)
        else:
            self.stats[key] = value
            self.stats = dict(sorted(self.stats.items()))

    def trait(self, key: str) -> str:
        return self.traits.get(key, TRAIT_NONE)

    def has_flag(self, flag: str) -> bool:
        return flag in self.flags

    @property
    def faction(self) -> str:
        return self.trait(FACTION_TRAIT)

    @property
    def speed(self) -> int:
        return self.stat("speed")

    @property
    def is_dead(self) -> bool:
        max_wounds = self.stat("max_wounds")
        return max_wounds > 0 and self.stat("wounds") >= max_wounds

    def is_hostile_to(self, other: "EntityState") -> bool:
        return HOSTILE_FACTIONS.get(self.faction) == other.faction

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "creation_index": self.creation_index,
            "pos": self.pos.to_list(),
            "template_id": self.template_id,
            "stats": dict(self.stats),
            "traits": dict(self.traits),
            "flags": list(self.flags),
            "inventory": dict(self.inventory),
            "acts_next": self.acts_next,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "EntityState":
        if not isinstance(payload, dict):
            raise ValueError("entity must be an object")
        creation_index = payload.get("creation_index")
        if creation_index is None:
            raise ValueError("entity.creation_index is required")
        return cls(
            entity_id=payload.get("entity_id"),
            pos=Pos.from_list(payload.get("pos")),
            template_id=payload.get("template_id"),
            stats=payload.get("stats", {}),
            traits=payload.get("traits", {}),
            flags=payload.get("flags", []),
            inventory=payload.get("inventory", {}),
            creation_index=creation_index,
            acts_next=payload.get("acts_next", 0),
        )


@dataclass
class SimulationState:
    voxel_map: VoxelMap
    turn_index: int = 0
    now: int = 0
    entities: dict[str, EntityState] = field(default_factory=dict)
    rules_state: dict[str, dict[str, Any]] = field(default_factory=dict)
    event_trace: list[dict[str, Any]] = field(default_factory=list)
    scheduler_state: str = STATE_AWAITING_INTENT
    result: str = RESULT_NONE


@dataclass
class _PlannedAction:
    cost_phases: int
    apply: Callable[[], dict[str, Any]]


@dataclass
class _Transaction:
    voxel_map: VoxelMapSnapshot
    entities: dict[str, EntityState]
    turn_queue: TurnQueue
    rng_states: dict[str, list[int]]
    now: int
    rules_state: dict[str, dict[str, Any]]
    event_trace: list[dict[str, Any]]
    result: str
    next_creation_index: int
    next_event_id: int


class Simulation:
    """Turn scheduler and owner of all mutable game state.

    Callers obtain a ``Prompt`` for the entity whose turn it is and hand back
    exactly one ``Intent`` through ``submit``. Nothing else mutates the map,
    the entities or the RNG streams.
    """

    def __init__(
        self,
        voxel_map: VoxelMap,
        seed: int,
        *,
        content: ContentRegistry | None = None,
        config: SimulationConfig | None = None,
    ) -> None:
        if isinstance(seed, bool) or not isinstance(seed, int):
            raise ValueError("seed must be an integer")
        self.state = SimulationState(voxel_map=voxel_map)
        self.seed = seed
        self.master_seed = seed
        self.content = content if content is not None else EMPTY_CONTENT
        self.config = config if config is not None else SimulationConfig.from_env()
        self.rule_modules: list[RuleModule] = []
        self.input_log: list[Intent] = []
        self.save_metadata: dict[str, Any] = {}
        self.last_outcome: IntentOutcome | None = None
        self.turn_queue = TurnQueue()
        self._rng_streams: dict[str, DeterministicRng] = {
            RNG_COMBAT_STREAM_NAME: DeterministicRng(
                derive_stream_seed(master_seed=self.master_seed, stream_name=RNG_COMBAT_STREAM_NAME)
            ),
        }
        self._next_creation_index = 0
        self._next_event_id = 1
        self._fov_cache = FovCache(voxel_map)
        self._path_cache = PathCache(voxel_map, margin=self.config.path_margin)

    @property
    def voxel_map(self) -> VoxelMap:
        return self.state.voxel_map

    @property
    def scheduler_state(self) -> str:
        return self.state.scheduler_state

    @property
    def result(self) -> str:
        return self.state.result

    def view(self) -> SimulationView:
        return SimulationView(self)

    # -- entities ----------------------------------------------------------

    def add_entity(self, entity: EntityState) -> EntityState:
        if entity.entity_id in self.state.entities:
            raise ValueError(f"duplicate entity_id: {entity.entity_id}")
        if not self.voxel_map.in_bounds(entity.pos):
            raise ValueError(f"entity '{entity.entity_id}' position is out of bounds: {entity.pos.to_list()}")
        if self.entity_at(entity.pos) is not None:
            raise ValueError(f"entity '{entity.entity_id}' position is occupied: {entity.pos.to_list()}")
        if entity.template_id is not None and self.content.template(entity.template_id) is None:
            raise ValueError(f"entity '{entity.entity_id}' references unknown template '{entity.template_id}'")
        entity.creation_index = self._next_creation_index
        self._next_creation_index += 1
        entity.acts_next = max(entity.acts_next, self.state.now)
        self.state.entities[entity.entity_id] = entity
        if entity.speed > 0 and not entity.is_dead:
            self.turn_queue.push(
                TurnEntry(acts_next=entity.acts_next, creation_index=entity.creation_index, entity_id=entity.entity_id)
            )
            self._sync_now()
        if entity.faction == "player":
            self.reveal_for(entity)
        return entity

    def spawn(self, template_id: str, entity_id: str, pos: Pos) -> EntityState:
        template = self.content.template(template_id)
        if template is None:
            raise ValueError(f"unknown template_id: {template_id}")
        entity = EntityState(
            entity_id=entity_id,
            pos=pos,
            template_id=template_id,
            stats=dict(template.stats),
            traits={FACTION_TRAIT: template.faction},
            flags=list(template.flags),
            inventory=dict(template.inventory),
        )
        return self.add_entity(entity)

    def entity(self, entity_id: str) -> EntityState:
        return self.state.entities[entity_id]

    def entities_in_creation_order(self) -> list[EntityState]:
        return sorted(self.state.entities.values(), key=lambda entity: entity.creation_index)

    def entity_at(self, pos: Pos) -> EntityState | None:
        for entity in self.state.entities.values():
            if entity.pos == pos:
                return entity
        return None

    def open_doors(self) -> frozenset[Pos]:
        """Door cells held open by whoever stands in them."""
        return frozenset(
            entity.pos for entity in self.state.entities.values() if self.voxel_map.terrain_at(entity.pos) == TERRAIN_DOOR
        )

    # -- queries -----------------------------------------------------------

    def visible_from(self, entity_id: str) -> frozenset[Pos]:
        entity = self.entity(entity_id)
        return self._fov_cache.visible_from(entity.pos, self.config.fov_radius, self.open_doors())

    def find_path(self, start: Pos, goal: Pos, *, fog: str = FOG_EXPLORE) -> list[Pos] | None:
        return self._path_cache.find_path(start, goal, fog=fog)

    def reveal_for(self, entity: EntityState) -> int:
        revealed = 0
        for pos in sorted(self.visible_from(entity.entity_id)):
            if self.voxel_map.mark_explored(pos):
                revealed += 1
        return revealed

    def current_actor(self) -> EntityState | None:
        if self.state.scheduler_state == STATE_SIMULATION_ENDED:
            return None
        head = self.turn_queue.peek()
        if head is None:
            return None
        return self.state.entities[head.entity_id]

    def prompt(self) -> Prompt | None:
        actor = self.current_actor()
        if actor is None:
            return None
        return Prompt(actor_id=actor.entity_id, turn_index=self.state.turn_index, acts_next=actor.acts_next)

    def event_trace(self) -> list[dict[str, Any]]:
        return copy.deepcopy(self.state.event_trace)

    # -- rule modules ------------------------------------------------------

    def get_rule_module(self, module_name: str) -> RuleModule | None:
        for module in self.rule_modules:
            if module.name == module_name:
                return module
        return None

    def register_rule_module(self, module: RuleModule) -> None:
        if any(existing.name == module.name for existing in self.rule_modules):
            raise ValueError(f"duplicate rule module name: {module.name}")
        self.rule_modules.append(module)
        module.on_simulation_start(self)

    def get_rules_state(self, module_name: str) -> dict[str, Any]:
        return copy.deepcopy(self.state.rules_state.get(module_name, {}))

    def set_rules_state(self, module_name: str, state: dict[str, Any]) -> None:
        if not isinstance(module_name, str) or not module_name:
            raise ValueError("module_name must be a non-empty string")
        if not isinstance(state, dict):
            raise ValueError("rules_state value must be a dict")
        self.state.rules_state[module_name] = copy.deepcopy(state)

    def end_simulation(self, result: str) -> None:
        if result not in SIMULATION_RESULTS or result == RESULT_NONE:
            raise ValueError(f"simulation result must be one of: {', '.join(SIMULATION_RESULTS[1:])}")
        if self.state.result != RESULT_NONE:
            return
        self.state.result = result
        self._append_event(SIMULATION_ENDED_EVENT_TYPE, {"result": result})
        logger.info("simulation ended at turn %d: %s", self.state.turn_index, result)
        if self.state.scheduler_state in RESTING_SCHEDULER_STATES:
            self.state.scheduler_state = STATE_SIMULATION_ENDED

    # -- scheduler ---------------------------------------------------------

    def submit(self, intent: Intent | dict[str, Any]) -> IntentOutcome:
        """Validate and apply one intent; the returned outcome reports what happened."""
        normalized = intent if isinstance(intent, Intent) else Intent.from_dict(intent)
        self.input_log.append(normalized)

        if self.state.scheduler_state == STATE_SIMULATION_ENDED:
            return self._finish_rejected(normalized, REASON_SIMULATION_ENDED, "simulation has ended")

        self.state.scheduler_state = STATE_VALIDATING
        try:
            actor = self._validate_common(normalized)
            action = self._plan(normalized, actor)
        except InvalidIntent as exc:
            self.state.scheduler_state = STATE_REJECTED
            return self._finish_rejected(normalized, exc.reason, str(exc))

        self.state.scheduler_state = STATE_APPLYING
        transaction = self._begin_transaction()
        try:
            details = action.apply()
            outcome = IntentOutcome(status=OUTCOME_ACCEPTED, reason=REASON_NONE, intent=normalized, details=details)
            self._resolve_after_apply(normalized, outcome)
        except InvariantViolation as exc:
            self._rollback(transaction)
            logger.info("intent %s rolled back: %s", normalized.intent_type, exc)
            self.state.scheduler_state = STATE_REJECTED
            return self._finish_rejected(normalized, REASON_INVARIANT_VIOLATION, str(exc))

        self.state.scheduler_state = STATE_ADVANCING_QUEUE
        self._advance_queue(actor.entity_id, action.cost_phases)
        self._append_event(INTENT_OUTCOME_EVENT_TYPE, self._outcome_event_params(outcome))
        self.last_outcome = outcome
        self.state.turn_index += 1
        if self.state.result != RESULT_NONE:
            self.state.scheduler_state = STATE_SIMULATION_ENDED
        else:
            self.state.scheduler_state = STATE_AWAITING_INTENT
        logger.debug("turn %d: %s by %s accepted", self.state.turn_index - 1, normalized.intent_type, actor.entity_id)
        return outcome

    def _finish_rejected(self, intent: Intent, reason: str, message: str) -> IntentOutcome:
        outcome = IntentOutcome(
            status=OUTCOME_REJECTED,
            reason=reason,
            intent=intent,
            details={"message": message},
        )
        self._append_event(INTENT_OUTCOME_EVENT_TYPE, self._outcome_event_params(outcome))
        self.last_outcome = outcome
        if self.state.scheduler_state != STATE_SIMULATION_ENDED:
            self.state.scheduler_state = STATE_AWAITING_INTENT
        logger.debug("turn %d: %s by %s rejected (%s)", self.state.turn_index, intent.intent_type, intent.actor_id, reason)
        return outcome

    @staticmethod
    def _outcome_event_params(outcome: IntentOutcome) -> dict[str, Any]:
        return {
            "status": outcome.status,
            "reason": outcome.reason,
            "intent_type": outcome.intent.intent_type,
            "actor_id": outcome.intent.actor_id,
            "details": copy.deepcopy(outcome.details),
        }

    def _validate_common(self, intent: Intent) -> EntityState:
        if intent.turn_index != self.state.turn_index:
            raise InvalidIntent(
                REASON_STALE_INTENT,
                f"intent bound to turn {intent.turn_index}, current turn is {self.state.turn_index}",
            )
        actor = self.current_actor()
        if actor is None:
            raise InvalidIntent(REASON_NO_ACTOR, "no entity is waiting to act")
        if intent.actor_id != actor.entity_id:
            raise InvalidIntent(REASON_NOT_ACTOR_TURN, f"it is {actor.entity_id}'s turn")
        if intent.intent_type not in INTENT_TYPES:
            raise InvalidIntent(REASON_UNKNOWN_INTENT_TYPE, f"unknown intent_type: {intent.intent_type}")
        if intent.intent_type in DEBUG_INTENT_TYPES and not self.config.debug_mode:
            raise InvalidIntent(REASON_DEBUG_DISABLED, f"{intent.intent_type} requires debug mode")
        return actor

    def _plan(self, intent: Intent, actor: EntityState) -> _PlannedAction:
        planners: dict[str, Callable[[Intent, EntityState], _PlannedAction]] = {
            INTENT_MOVE: self._plan_move,
            INTENT_TRAVEL: self._plan_travel,
            INTENT_ATTACK: self._plan_attack,
            INTENT_WAIT: self._plan_wait,
            INTENT_USE_ITEM: self._plan_use_item,
            INTENT_DIG: self._plan_dig,
            INTENT_CLIMB: self._plan_climb,
            INTENT_EXPLORE: self._plan_explore,
            INTENT_DEBUG_TELEPORT: self._plan_debug_teleport,
            INTENT_DEBUG_SET_TERRAIN: self._plan_debug_set_terrain,
            INTENT_DEBUG_REVEAL: self._plan_debug_reveal,
        }
        return planners[intent.intent_type](intent, actor)

    # -- intent planners ---------------------------------------------------

    @staticmethod
    def _direction_param(intent: Intent, allowed: Iterable[str]) -> str:
        direction = intent.param("direction")
        allowed = tuple(allowed)
        if direction not in allowed:
            raise InvalidIntent(REASON_INVALID_PARAMS, f"direction must be one of: {', '.join(allowed)}")
        return direction

    @staticmethod
    def _pos_param(intent: Intent, key: str) -> Pos:
        try:
            return Pos.from_list(intent.param(key))
        except ValueError as exc:
            raise InvalidIntent(REASON_INVALID_PARAMS, f"{key} must be a list of three integers") from exc

    def _move_action(self, actor: EntityState, target: Pos, *, cost_phases: int = ACTION_COST_PHASES) -> _PlannedAction:
        occupant = self.entity_at(target)
        if occupant is not None and occupant.entity_id != actor.entity_id:
            raise InvalidIntent(REASON_OCCUPIED, f"{target.to_list()} is occupied by {occupant.entity_id}")

        def apply() -> dict[str, Any]:
            origin = actor.pos
            actor.pos = target
            return {"from": origin.to_list(), "to": target.to_list()}

        return _PlannedAction(cost_phases=cost_phases, apply=apply)

    def _plan_move(self, intent: Intent, actor: EntityState) -> _PlannedAction:
        direction = self._direction_param(intent, DIRECTION_NAMES)
        target = self.voxel_map.walk_step(actor.pos, direction)
        if target is None:
            raise InvalidIntent(REASON_BLOCKED, f"cannot step {direction} from {actor.pos.to_list()}")
        occupant = self.entity_at(target)
        if occupant is not None and actor.is_hostile_to(occupant):
            return self._attack_action(actor, occupant)
        return self._move_action(actor, target)

    def _plan_travel(self, intent: Intent, actor: EntityState) -> _PlannedAction:
        goal = self._pos_param(intent, "goal")
        if goal == actor.pos:
            raise InvalidIntent(REASON_ALREADY_THERE, "actor is already at the goal")
        fog = FOG_EXPLORE if actor.faction == "player" else FOG_IGNORE
        path = self.find_path(actor.pos, goal, fog=fog)
        if not path:
            raise InvalidIntent(REASON_NO_PATH, f"no path to {goal.to_list()}")
        step = path[0]
        legal_steps = {target for _, target in self.voxel_map.walk_neighbors(actor.pos)}
        if step not in legal_steps:
            raise InvalidIntent(REASON_BLOCKED, f"next step {step.to_list()} is not walkable")
        action = self._move_action(actor, step)
        move = action.apply

        def apply() -> dict[str, Any]:
            details = move()
            details["goal"] = goal.to_list()
            details["remaining"] = len(path) - 1
            return details

        return _PlannedAction(cost_phases=action.cost_phases, apply=apply)

    def _plan_attack(self, intent: Intent, actor: EntityState) -> _PlannedAction:
        target_id = intent.param("target_id")
        if not isinstance(target_id, str) or not target_id:
            raise InvalidIntent(REASON_INVALID_PARAMS, "target_id must be a non-empty string")
        if target_id == actor.entity_id:
            raise InvalidIntent(REASON_INVALID_PARAMS, "an entity cannot attack itself")
        target = self.state.entities.get(target_id)
        if target is None:
            raise InvalidIntent(REASON_NO_TARGET, f"unknown target: {target_id}")
        if taxi_2d(actor.pos, target.pos) != 1 or abs(actor.pos.z - target.pos.z) > 1:
            raise InvalidIntent(REASON_OUT_OF_REACH, f"{target_id} is not adjacent")
        if not actor.is_hostile_to(target):
            raise InvalidIntent(REASON_NOT_HOSTILE, f"{target_id} is not hostile")
        return self._attack_action(actor, target)

    def _attack_action(self, actor: EntityState, target: EntityState) -> _PlannedAction:
        def apply() -> dict[str, Any]:
            odds = Odds(actor.stat("level") + actor.stat("hit") - target.stat("ev"))
            hit = self._rng_stream(RNG_COMBAT_STREAM_NAME).roll(odds)
            damage = max(1, actor.stat("dmg")) if hit else 0
            if damage:
                target.set_stat("wounds", target.stat("wounds") + damage)
            params = {
                "attacker_id": actor.entity_id,
                "target_id": target.entity_id,
                "odds": odds.decibans,
                "hit": hit,
                "damage": damage,
            }
            self._append_event(ATTACK_EVENT_TYPE, params)
            return dict(params)

        return _PlannedAction(cost_phases=ACTION_COST_PHASES, apply=apply)

    def _plan_wait(self, intent: Intent, actor: EntityState) -> _PlannedAction:
        return _PlannedAction(cost_phases=ACTION_COST_PHASES, apply=lambda: {})

    def _plan_use_item(self, intent: Intent, actor: EntityState) -> _PlannedAction:
        item_id = intent.param("item_id")
        if not isinstance(item_id, str) or not item_id:
            raise InvalidIntent(REASON_INVALID_PARAMS, "item_id must be a non-empty string")
        if actor.inventory.get(item_id, 0) <= 0:
            raise InvalidIntent(REASON_NOT_IN_INVENTORY, f"{actor.entity_id} carries no {item_id}")
        item = self.content.item(item_id)
        if item is None:
            raise InvalidIntent(REASON_UNKNOWN_ITEM, f"unknown item: {item_id}")
        if item.effect == "none":
            raise InvalidIntent(REASON_NO_EFFECT, f"{item_id} cannot be used")

        def apply() -> dict[str, Any]:
            remaining = actor.inventory[item_id] - 1
            if remaining:
                actor.inventory[item_id] = remaining
            else:
                del actor.inventory[item_id]
            details: dict[str, Any] = {"item_id": item_id, "effect": item.effect}
            if item.effect == "heal":
                before = actor.stat("wounds")
                actor.set_stat("wounds", max(0, before - item.power))
                details["healed"] = before - actor.stat("wounds")
            elif item.effect == "reveal":
                details["revealed"] = self._reveal_area(actor.pos, item.power)
            return details

        return _PlannedAction(cost_phases=ACTION_COST_PHASES, apply=apply)

    def _plan_dig(self, intent: Intent, actor: EntityState) -> _PlannedAction:
        direction = self._direction_param(intent, DIRECTION_NAMES)
        dx, dy = step_offset(direction)
        target = actor.pos.offset(dx, dy)
        if not self.voxel_map.in_bounds(target) or self.voxel_map.terrain_at(target) != TERRAIN_WALL:
            raise InvalidIntent(REASON_NOT_DIGGABLE, f"no diggable wall at {target.to_list()}")
        if self.entity_at(target.above()) is not None:
            raise InvalidIntent(REASON_OCCUPIED, f"someone stands on {target.to_list()}")

        def apply() -> dict[str, Any]:
            self.voxel_map.set_terrain(target, TERRAIN_OPEN)
            return {"dug": target.to_list()}

        return _PlannedAction(cost_phases=DIG_COST_PHASES, apply=apply)

    def _plan_climb(self, intent: Intent, actor: EntityState) -> _PlannedAction:
        direction = self._direction_param(intent, VERTICAL_DIRECTIONS)
        target = self.voxel_map.climb_step(actor.pos, direction)
        if target is None:
            raise InvalidIntent(REASON_BLOCKED, f"no stairs to climb {direction} at {actor.pos.to_list()}")
        return self._move_action(actor, target)

    def _plan_explore(self, intent: Intent, actor: EntityState) -> _PlannedAction:
        distances = autoexplore_map(self.voxel_map, actor.pos)
        step = autoexplore_step(self.voxel_map, actor.pos, distances)
        if step is None:
            raise InvalidIntent(REASON_NOTHING_TO_EXPLORE, "no reachable unexplored frontier")
        return self._move_action(actor, step)

    def _plan_debug_teleport(self, intent: Intent, actor: EntityState) -> _PlannedAction:
        target = self._pos_param(intent, "pos")
        if not self.voxel_map.in_bounds(target):
            raise InvalidIntent(REASON_INVALID_PARAMS, f"pos {target.to_list()} is out of bounds")
        return self._move_action(actor, target, cost_phases=DEBUG_COST_PHASES)

    def _plan_debug_set_terrain(self, intent: Intent, actor: EntityState) -> _PlannedAction:
        target = self._pos_param(intent, "pos")
        kind = intent.param("kind")
        if kind not in TERRAIN_KINDS:
            raise InvalidIntent(REASON_INVALID_PARAMS, f"kind must be one of: {', '.join(TERRAIN_KINDS)}")

        def apply() -> dict[str, Any]:
            self.voxel_map.set_terrain(target, kind)
            return {"pos": target.to_list(), "kind": kind}

        return _PlannedAction(cost_phases=DEBUG_COST_PHASES, apply=apply)

    def _plan_debug_reveal(self, intent: Intent, actor: EntityState) -> _PlannedAction:
        def apply() -> dict[str, Any]:
            revealed = 0
            for pos in self.voxel_map.positions():
                if self.voxel_map.mark_explored(pos):
                    revealed += 1
            return {"revealed": revealed}

        return _PlannedAction(cost_phases=DEBUG_COST_PHASES, apply=apply)

    def _reveal_area(self, center: Pos, radius: int) -> int:
        revealed = 0
        for z in range(center.z - VISIBLE_Z_BAND, center.z + VISIBLE_Z_BAND + 1):
            for y in range(center.y - radius, center.y + radius + 1):
                for x in range(center.x - radius, center.x + radius + 1):
                    if self.voxel_map.mark_explored(Pos(x, y, z)):
                        revealed += 1
        return revealed

    # -- applying and advancing --------------------------------------------

    def _resolve_after_apply(self, intent: Intent, outcome: IntentOutcome) -> None:
        for entity in self.entities_in_creation_order():
            if entity.faction == "player":
                self.reveal_for(entity)
        for entity in self.entities_in_creation_order():
            if entity.is_dead:
                self._remove_dead(entity)
        for module in self.rule_modules:
            module.on_intent_applied(self, intent, outcome)

    def _remove_dead(self, entity: EntityState) -> None:
        del self.state.entities[entity.entity_id]
        self.turn_queue.remove(entity.entity_id)
        self._append_event(ENTITY_DIED_EVENT_TYPE, {"entity_id": entity.entity_id, "pos": entity.pos.to_list()})
        logger.debug("entity %s died at %s", entity.entity_id, entity.pos.to_list())
        for module in self.rule_modules:
            module.on_entity_died(self, entity)

    def _advance_queue(self, actor_id: str, cost_phases: int) -> None:
        actor = self.state.entities.get(actor_id)
        if actor is not None and actor_id in self.turn_queue and cost_phases > 0:
            if actor.speed > 0:
                actor.acts_next = max(actor.acts_next, self.state.now) + action_delay(cost_phases, actor.speed)
                self.turn_queue.reschedule(actor_id, actor.acts_next)
            else:
                self.turn_queue.remove(actor_id)
        self._sync_now()

    def _sync_now(self) -> None:
        head = self.turn_queue.peek()
        if head is not None:
            self.state.now = max(self.state.now, head.acts_next)

    def _begin_transaction(self) -> _Transaction:
        return _Transaction(
            voxel_map=self.voxel_map.snapshot(),
            entities=copy.deepcopy(self.state.entities),
            turn_queue=self.turn_queue.copy(),
            rng_states={name: stream.getstate() for name, stream in self._rng_streams.items()},
            now=self.state.now,
            rules_state=copy.deepcopy(self.state.rules_state),
            event_trace=copy.deepcopy(self.state.event_trace),
            result=self.state.result,
            next_creation_index=self._next_creation_index,
            next_event_id=self._next_event_id,
        )

    def _rollback(self, transaction: _Transaction) -> None:
        self.voxel_map.restore(transaction.voxel_map)
        self.state.entities = transaction.entities
        self.turn_queue = transaction.turn_queue
        self._rng_streams = {
            name: self._restored_stream(name, state) for name, state in sorted(transaction.rng_states.items())
        }
        self.state.now = transaction.now
        self.state.rules_state = transaction.rules_state
        self.state.event_trace = transaction.event_trace
        self.state.result = transaction.result
        self._next_creation_index = transaction.next_creation_index
        self._next_event_id = transaction.next_event_id

    # -- rng ---------------------------------------------------------------

    def _rng_stream(self, name: str) -> DeterministicRng:
        if name not in self._rng_streams:
            self._rng_streams[name] = DeterministicRng(derive_stream_seed(master_seed=self.master_seed, stream_name=name))
        return self._rng_streams[name]

    def _restored_stream(self, name: str, state: list[int]) -> DeterministicRng:
        stream = DeterministicRng(derive_stream_seed(master_seed=self.master_seed, stream_name=name))
        stream.setstate(state)
        return stream

    def rng_state_payload(self) -> dict[str, Any]:
        return {
            "master_seed": self.master_seed,
            "rng_stream_states": {name: stream.getstate() for name, stream in sorted(self._rng_streams.items())},
        }

    def restore_rng_state(self, payload: dict[str, Any]) -> None:
        if not isinstance(payload, dict):
            raise ValueError("rng_state must be an object")
        master_seed = payload.get("master_seed")
        if isinstance(master_seed, bool) or not isinstance(master_seed, int):
            raise ValueError("rng_state.master_seed must be an integer")
        stream_states = payload.get("rng_stream_states")
        if not isinstance(stream_states, dict):
            raise ValueError("rng_state.rng_stream_states must be an object")
        self.master_seed = master_seed
        self._rng_streams = {name: self._restored_stream(name, stream_states[name]) for name in sorted(stream_states)}

    # -- event trace -------------------------------------------------------

    def _append_event(self, event_type: str, params: dict[str, Any]) -> None:
        self._append_event_trace_entry(
            {
                "turn_index": self.state.turn_index,
                "event_id": self._next_event_id,
                "event_type": event_type,
                "params": copy.deepcopy(params),
            }
        )
        self._next_event_id += 1

    def _append_event_trace_entry(self, entry: dict[str, Any]) -> None:
        if not isinstance(entry, dict):
            raise ValueError("event_trace entries must be objects")
        required = {"turn_index", "event_id", "event_type", "params"}
        if not required.issubset(entry):
            raise ValueError("event_trace entries missing required fields")
        if isinstance(entry["turn_index"], bool) or not isinstance(entry["turn_index"], int) or entry["turn_index"] < 0:
            raise ValueError("event_trace turn_index must be a non-negative integer")
        if isinstance(entry["event_id"], bool) or not isinstance(entry["event_id"], int):
            raise ValueError("event_trace event_id must be an integer")
        if not isinstance(entry["event_type"], str) or not entry["event_type"]:
            raise ValueError("event_trace event_type must be a non-empty string")
        if not isinstance(entry["params"], dict):
            raise ValueError("event_trace params must be an object")
        self.state.event_trace.append(copy.deepcopy(entry))
        if len(self.state.event_trace) > MAX_EVENT_TRACE:
            overflow = len(self.state.event_trace) - MAX_EVENT_TRACE
            del self.state.event_trace[:overflow]

    # -- persistence -------------------------------------------------------

    def simulation_payload(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "seed": self.seed,
            "master_seed": self.master_seed,
            "turn_index": self.state.turn_index,
            "now": self.state.now,
            "scheduler_state": self.state.scheduler_state,
            "result": self.state.result,
            "next_creation_index": self._next_creation_index,
            "next_event_id": self._next_event_id,
            "rng_state": self.rng_state_payload(),
            "rule_modules": [module.name for module in self.rule_modules],
            "rules_state": dict(sorted(copy.deepcopy(self.state.rules_state).items())),
            "voxel_map": self.voxel_map.to_dict(),
            "entities": [entity.to_dict() for entity in self.entities_in_creation_order()],
            "turn_queue": self.turn_queue.to_list(),
            "input_log": [intent.to_dict() for intent in self.input_log],
            "event_trace": copy.deepcopy(self.state.event_trace),
        }

    @classmethod
    def from_simulation_payload(
        cls,
        payload: dict[str, Any],
        *,
        content: ContentRegistry | None = None,
        config: SimulationConfig | None = None,
        rule_modules: Iterable[RuleModule] = (),
    ) -> "Simulation":
        """Rebuild a simulation; any structural problem raises ``CorruptedState``.

        Rule modules named in the payload are re-registered in their saved order.
        Instances passed in ``rule_modules`` are used for matching names; other
        names are built from ``RULE_MODULE_TYPES``.
        """
        try:
            return cls._from_simulation_payload(payload, content=content, config=config, rule_modules=rule_modules)
        except CorruptedState:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptedState(f"simulation payload is invalid: {exc}") from exc

    @classmethod
    def _from_simulation_payload(
        cls,
        payload: dict[str, Any],
        *,
        content: ContentRegistry | None,
        config: SimulationConfig | None,
        rule_modules: Iterable[RuleModule],
    ) -> "Simulation":
        if not isinstance(payload, dict):
            raise CorruptedState("simulation payload must be an object")
        schema_version = payload.get("schema_version")
        if schema_version != SCHEMA_VERSION:
            raise CorruptedState(f"unsupported simulation schema_version: {schema_version}")

        sim = cls(VoxelMap.from_dict(payload["voxel_map"]), seed=payload["seed"], content=content, config=config)
        for key in ("turn_index", "now", "next_creation_index", "next_event_id"):
            value = payload[key]
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise CorruptedState(f"simulation_state.{key} must be a non-negative integer")
        sim.state.turn_index = payload["turn_index"]
        sim.state.now = payload["now"]
        sim._next_creation_index = payload["next_creation_index"]
        sim._next_event_id = payload["next_event_id"]

        scheduler_state = payload.get("scheduler_state", STATE_AWAITING_INTENT)
        if scheduler_state not in RESTING_SCHEDULER_STATES:
            raise CorruptedState(f"simulation_state.scheduler_state cannot be resumed: {scheduler_state}")
        result = payload.get("result", RESULT_NONE)
        if result not in SIMULATION_RESULTS:
            raise CorruptedState(f"simulation_state.result is unknown: {result}")
        if (scheduler_state == STATE_SIMULATION_ENDED) != (result != RESULT_NONE):
            raise CorruptedState("simulation_state.result does not match scheduler_state")
        sim.state.scheduler_state = scheduler_state
        sim.state.result = result

        raw_rules_state = payload.get("rules_state", {})
        if not isinstance(raw_rules_state, dict):
            raise CorruptedState("rules_state must be an object")
        for module_name, module_state in sorted(raw_rules_state.items()):
            if not isinstance(module_state, dict):
                raise CorruptedState("rules_state entries must be objects")
            sim.set_rules_state(module_name, module_state)

        provided = {module.name: module for module in rule_modules}
        module_names = payload.get("rule_modules", [])
        if not isinstance(module_names, list) or len(set(module_names)) != len(module_names):
            raise CorruptedState("rule_modules must be a list of distinct names")
        for module_name in module_names:
            module = provided.get(module_name)
            if module is None:
                try:
                    module = build_rule_module(module_name)
                except ValueError as exc:
                    raise CorruptedState(str(exc)) from exc
            # Module state was restored above; on_simulation_start is not re-run.
            sim.rule_modules.append(module)

        raw_entities = payload.get("entities", [])
        if not isinstance(raw_entities, list):
            raise CorruptedState("entities must be a list")
        occupied: dict[Pos, str] = {}
        creation_indices: set[int] = set()
        for row in raw_entities:
            entity = EntityState.from_dict(row)
            if entity.entity_id in sim.state.entities:
                raise CorruptedState(f"duplicate entity_id: {entity.entity_id}")
            if entity.creation_index in creation_indices or entity.creation_index >= sim._next_creation_index:
                raise CorruptedState(f"entity '{entity.entity_id}' has an inconsistent creation_index")
            if not sim.voxel_map.in_bounds(entity.pos):
                raise CorruptedState(f"entity '{entity.entity_id}' is out of bounds")
            if entity.pos in occupied:
                raise CorruptedState(f"entities '{occupied[entity.pos]}' and '{entity.entity_id}' share a cell")
            if entity.template_id is not None and sim.content.template(entity.template_id) is None:
                raise CorruptedState(f"entity '{entity.entity_id}' references unknown template '{entity.template_id}'")
            if entity.is_dead:
                raise CorruptedState(f"entity '{entity.entity_id}' is dead but still present")
            occupied[entity.pos] = entity.entity_id
            creation_indices.add(entity.creation_index)
            sim.state.entities[entity.entity_id] = entity

        sim.turn_queue = TurnQueue.from_list(payload.get("turn_queue", []))
        queued = {entry.entity_id for entry in sim.turn_queue}
        for entry in sim.turn_queue:
            entity = sim.state.entities.get(entry.entity_id)
            if entity is None:
                raise CorruptedState(f"turn_queue references unknown entity: {entry.entity_id}")
            if entry.creation_index != entity.creation_index or entry.acts_next != entity.acts_next:
                raise CorruptedState(f"turn_queue entry for '{entry.entity_id}' disagrees with the entity")
            if entry.acts_next < sim.state.now:
                raise CorruptedState(f"turn_queue entry for '{entry.entity_id}' is in the past")
        for entity in sim.state.entities.values():
            if entity.speed > 0 and entity.entity_id not in queued:
                raise CorruptedState(f"acting entity '{entity.entity_id}' is missing from turn_queue")

        raw_input_log = payload.get("input_log", [])
        if not isinstance(raw_input_log, list):
            raise CorruptedState("input_log must be a list")
        sim.input_log = [Intent.from_dict(row) for row in raw_input_log]

        raw_event_trace = payload.get("event_trace", [])
        if not isinstance(raw_event_trace, list):
            raise CorruptedState("event_trace must be a list")
        for entry in raw_event_trace:
            sim._append_event_trace_entry(entry)

        sim.restore_rng_state(payload["rng_state"])
        return sim


def run_replay(initial: Simulation, intents: Iterable[Intent | dict[str, Any]]) -> Simulation:
    """Resubmit ``intents`` in order against a copy of ``initial``."""
    simulation = Simulation.from_simulation_payload(
        initial.simulation_payload(),
        content=initial.content,
        config=initial.config,
        rule_modules=initial.rule_modules,
    )
    for intent in intents:
        simulation.submit(intent)
    return simulation
