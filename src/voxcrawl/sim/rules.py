from __future__ import annotations

from typing import TYPE_CHECKING

from voxcrawl.content.registry import FACTIONS

if TYPE_CHECKING:
    from voxcrawl.sim.core import EntityState, Simulation
    from voxcrawl.sim.intents import Intent, IntentOutcome

RESULT_NONE = "none"
RESULT_VICTORY = "victory"
RESULT_DEFEAT = "defeat"
SIMULATION_RESULTS = (RESULT_NONE, RESULT_VICTORY, RESULT_DEFEAT)

VICTORY_MODULE_NAME = "victory"


class RuleModule:
    """Deterministic simulation rule-module substrate.

    Rule modules are registered on a ``Simulation`` instance and are executed in
    stable registration order for every lifecycle hook. Hooks run inside the
    applying transaction, so anything they mutate is rolled back together with
    the intent that triggered them.
    """

    name: str

    def on_simulation_start(self, sim: Simulation) -> None:
        """Called once, immediately when the module is registered."""

    def on_intent_applied(self, sim: Simulation, intent: Intent, outcome: IntentOutcome) -> None:
        """Called after an accepted intent has been applied, before the queue advances."""

    def on_entity_died(self, sim: Simulation, entity: EntityState) -> None:
        """Called once for each entity removed by a resolved death."""


class VictoryRule(RuleModule):
    """Ends the run when the last player-faction or monster-faction entity dies."""

    name = VICTORY_MODULE_NAME

    def on_simulation_start(self, sim: Simulation) -> None:
        state = sim.get_rules_state(self.name)
        state.setdefault("deaths", 0)
        sim.set_rules_state(self.name, state)

    def on_entity_died(self, sim: Simulation, entity: EntityState) -> None:
        state = sim.get_rules_state(self.name)
        state["deaths"] = int(state.get("deaths", 0)) + 1
        sim.set_rules_state(self.name, state)

        counts = {faction: 0 for faction in FACTIONS}
        for other in sim.state.entities.values():
            counts[other.faction] += 1
        if entity.faction == "player" and counts["player"] == 0:
            sim.end_simulation(RESULT_DEFEAT)
        elif entity.faction == "monster" and counts["monster"] == 0:
            sim.end_simulation(RESULT_VICTORY)


# Rule modules a save file may name; saves persist module names, not code.
RULE_MODULE_TYPES: dict[str, type[RuleModule]] = {
    VICTORY_MODULE_NAME: VictoryRule,
}


def build_rule_module(module_name: str) -> RuleModule:
    module_type = RULE_MODULE_TYPES.get(module_name)
    if module_type is None:
        raise ValueError(f"unknown rule module: {module_name}")
    return module_type()
