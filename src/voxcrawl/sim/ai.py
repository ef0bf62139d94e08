from __future__ import annotations

import logging

from voxcrawl.sim.core import HOSTILE_FACTIONS, Simulation
from voxcrawl.sim.geometry import manhattan, taxi_2d
from voxcrawl.sim.intents import INTENT_ATTACK, INTENT_TRAVEL, INTENT_WAIT, Intent, IntentOutcome
from voxcrawl.sim.pathing import FOG_IGNORE
from voxcrawl.sim.view import EntitySnapshot, SimulationView

logger = logging.getLogger(__name__)

AI_FLAG = "ai"
MAX_AI_TURNS = 1_000


def _is_adjacent(a: EntitySnapshot, b: EntitySnapshot) -> bool:
    return taxi_2d(a.pos, b.pos) == 1 and abs(a.pos.z - b.pos.z) <= 1


def nearest_visible_enemy(view: SimulationView, actor: EntitySnapshot) -> EntitySnapshot | None:
    enemy_faction = HOSTILE_FACTIONS.get(actor.faction)
    if enemy_faction is None:
        return None
    visible = view.visible_from(actor.entity_id)
    candidates = [
        other
        for other in view.entities()
        if other.faction == enemy_faction and other.pos in visible
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda other: (manhattan(actor.pos, other.pos), other.creation_index))


def decide_intent(view: SimulationView) -> Intent | None:
    """Choose an intent for the entity the view is currently prompting.

    Only reads through the view and never draws random numbers, so the
    choice depends on visible state alone.
    """
    prompt = view.prompt()
    if prompt is None:
        return None
    actor = view.entity(prompt.actor_id)
    if AI_FLAG not in actor.flags:
        return prompt.intent(INTENT_WAIT)

    enemy = nearest_visible_enemy(view, actor)
    if enemy is None:
        return prompt.intent(INTENT_WAIT)
    if _is_adjacent(actor, enemy):
        return prompt.intent(INTENT_ATTACK, target_id=enemy.entity_id)

    path = view.find_path(actor.pos, enemy.pos, fog=FOG_IGNORE)
    if not path or view.entity_at(path[0]) is not None:
        return prompt.intent(INTENT_WAIT)
    return prompt.intent(INTENT_TRAVEL, goal=enemy.pos.to_list())


def run_ai_turns(sim: Simulation, *, max_turns: int = MAX_AI_TURNS) -> list[IntentOutcome]:
    """Submit intents for non-player actors until a player-faction entity is prompted."""
    view = sim.view()
    outcomes: list[IntentOutcome] = []
    for _ in range(max_turns):
        prompt = view.prompt()
        if prompt is None or view.entity(prompt.actor_id).faction == "player":
            break
        intent = decide_intent(view)
        outcome = sim.submit(intent)
        if not outcome.accepted:
            logger.debug("ai intent for %s rejected (%s); waiting instead", prompt.actor_id, outcome.reason)
            outcome = sim.submit(prompt.intent(INTENT_WAIT))
        outcomes.append(outcome)
    return outcomes
