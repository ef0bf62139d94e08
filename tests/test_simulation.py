import pytest

from voxcrawl.content.registry import load_content_json
from voxcrawl.sim.config import SimulationConfig
from voxcrawl.sim.core import (
    ATTACK_EVENT_TYPE,
    ENTITY_DIED_EVENT_TYPE,
    MAX_EVENT_TRACE,
    SIMULATION_ENDED_EVENT_TYPE,
    STATE_AWAITING_INTENT,
    STATE_SIMULATION_ENDED,
    EntityState,
    Simulation,
)
from voxcrawl.sim.errors import InvariantViolation
from voxcrawl.sim.geometry import Pos
from voxcrawl.sim.intents import INTENT_MOVE, Intent
from voxcrawl.sim.rules import RESULT_DEFEAT, RESULT_NONE, RESULT_VICTORY, RuleModule, VictoryRule
from voxcrawl.sim.voxel import TERRAIN_OPEN, TERRAIN_STAIRS, TERRAIN_WALL, VoxelMap


def _room(width: int = 10, height: int = 10, *, z_max: int = 0) -> VoxelMap:
    voxel_map = VoxelMap(width, height, z_min=0, z_max=z_max)
    interior = "#" + "." * (width - 2) + "#"
    rows = ["#" * width] + [interior] * (height - 2) + ["#" * width]
    voxel_map.load_ascii_layer(0, rows)
    return voxel_map


def _sim(voxel_map: VoxelMap | None = None, *, seed: int = 42, debug: bool = False, content=None) -> Simulation:
    return Simulation(
        voxel_map if voxel_map is not None else _room(),
        seed=seed,
        content=content,
        config=SimulationConfig(debug_mode=debug),
    )


def _mob(entity_id: str, x: int, y: int, *, z: int = 0, faction: str = "none", flags=(), **stats: int) -> EntityState:
    stats.setdefault("speed", 3)
    return EntityState(
        entity_id=entity_id,
        pos=Pos(x, y, z),
        stats=stats,
        traits={"faction": faction},
        flags=list(flags),
    )


def _act(sim: Simulation, intent_type: str, **params):
    prompt = sim.prompt()
    assert prompt is not None
    return sim.submit(prompt.intent(intent_type, **params))


def test_two_entities_alternate_and_move() -> None:
    sim = _sim(seed=42)
    sim.add_entity(_mob("A", 4, 5))
    sim.add_entity(_mob("B", 6, 5))

    assert sim.prompt().actor_id == "A"
    assert _act(sim, "move", direction="north").accepted
    assert sim.prompt().actor_id == "B"
    assert _act(sim, "wait").accepted
    assert sim.prompt().actor_id == "A"
    assert _act(sim, "move", direction="north").accepted

    assert sim.entity("A").pos == Pos(4, 3, 0)
    assert sim.entity("B").pos == Pos(6, 5, 0)
    assert sim.state.turn_index == 3
    assert sim.scheduler_state == STATE_AWAITING_INTENT


def test_equal_speed_entities_take_turns_in_creation_order() -> None:
    sim = _sim()
    for index, entity_id in enumerate(("A", "B", "C")):
        sim.add_entity(_mob(entity_id, 2 + index, 2))

    actors = []
    for _ in range(9):
        actors.append(sim.prompt().actor_id)
        _act(sim, "wait")

    assert actors == ["A", "B", "C"] * 3


def test_faster_entity_acts_more_often() -> None:
    sim = _sim()
    sim.add_entity(_mob("fast", 2, 2, speed=6))
    sim.add_entity(_mob("slow", 4, 2, speed=3))

    actors = []
    for _ in range(5):
        actors.append(sim.prompt().actor_id)
        _act(sim, "wait")

    assert actors == ["fast", "slow", "fast", "fast", "slow"]
    assert sim.entity("fast").acts_next == 18
    assert sim.entity("slow").acts_next == 24


def test_entities_without_speed_never_act() -> None:
    sim = _sim()
    sim.add_entity(_mob("statue", 2, 2, speed=0))
    sim.add_entity(_mob("A", 4, 4))

    for _ in range(3):
        assert sim.prompt().actor_id == "A"
        _act(sim, "wait")
    assert "statue" not in sim.turn_queue


def test_stale_and_out_of_turn_intents_are_rejected_without_mutation() -> None:
    sim = _sim()
    sim.add_entity(_mob("A", 4, 5))
    sim.add_entity(_mob("B", 6, 5))
    prompt = sim.prompt()

    out_of_turn = sim.submit(Intent("wait", "B", 0))
    assert out_of_turn.reason == "not_actor_turn"
    assert sim.submit(prompt.intent("wait")).accepted

    stale = sim.submit(prompt.intent("move", direction="north"))

    assert stale.reason == "stale_intent"
    assert sim.entity("A").pos == Pos(4, 5, 0)
    assert sim.state.turn_index == 1
    assert sim.prompt().actor_id == "B"
    assert len(sim.input_log) == 3
    assert [event["params"]["reason"] for event in sim.event_trace()] == ["not_actor_turn", "none", "stale_intent"]


def test_invalid_actions_report_reasons() -> None:
    sim = _sim()
    sim.add_entity(_mob("A", 1, 1))
    sim.add_entity(_mob("B", 2, 1))

    assert _act(sim, "move", direction="north").reason == "blocked"
    assert _act(sim, "move", direction="east").reason == "occupied"
    assert _act(sim, "move", direction="up").reason == "invalid_params"
    assert _act(sim, "fly").reason == "unknown_intent_type"
    assert _act(sim, "attack", target_id="B").reason == "not_hostile"
    assert _act(sim, "attack", target_id="ghost").reason == "no_target"
    assert _act(sim, "travel", goal=[1, 1, 0]).reason == "already_there"
    assert _act(sim, "travel", goal=[0, 0, 0]).reason == "no_path"
    assert _act(sim, "climb", direction="up").reason == "blocked"
    assert sim.state.turn_index == 0
    assert sim.prompt().actor_id == "A"


def test_debug_intents_need_debug_mode() -> None:
    sim = _sim(debug=False)
    sim.add_entity(_mob("A", 4, 5))

    assert _act(sim, "debug_teleport", pos=[2, 2, 0]).reason == "debug_disabled"

    debug_sim = _sim(debug=True)
    debug_sim.add_entity(_mob("A", 4, 5))
    debug_sim.add_entity(_mob("B", 6, 5))

    assert _act(debug_sim, "debug_teleport", pos=[2, 2, 0]).accepted
    assert debug_sim.entity("A").pos == Pos(2, 2, 0)
    assert debug_sim.state.turn_index == 1
    assert debug_sim.prompt().actor_id == "A"
    assert debug_sim.entity("A").acts_next == 0


def test_debug_mode_reads_environment() -> None:
    assert SimulationConfig.from_env({"VOXCRAWL_DEBUG": "yes"}).debug_mode is True
    assert SimulationConfig.from_env({"VOXCRAWL_DEBUG": "0"}).debug_mode is False
    assert SimulationConfig.from_env({}).debug_mode is False
    with pytest.raises(ValueError, match="fov_radius"):
        SimulationConfig(fov_radius=-1)


def test_terrain_invariant_violation_rolls_back_the_intent() -> None:
    voxel_map = _room(z_max=1)
    voxel_map.load_ascii_layer(1, ["#" * 10] + ["#" + "." * 8 + "#"] * 8 + ["#" * 10])
    sim = _sim(voxel_map, debug=True)
    sim.add_entity(_mob("A", 4, 5))
    before = sim.simulation_payload()

    outcome = _act(sim, "debug_set_terrain", pos=[2, 2, 0], kind="door")

    after = sim.simulation_payload()
    assert outcome.reason == "invariant_violation"
    assert "lintel" in outcome.details["message"]
    assert sim.voxel_map.terrain_at(Pos(2, 2, 0)) == TERRAIN_OPEN
    for key in ("voxel_map", "entities", "turn_queue", "rng_state", "turn_index", "now"):
        assert after[key] == before[key]


class _RefuseMovesRule(RuleModule):
    name = "refuse_moves"

    def on_intent_applied(self, sim, intent, outcome) -> None:
        sim.set_rules_state(self.name, {"seen": sim.get_rules_state(self.name).get("seen", 0) + 1})
        if intent.intent_type == INTENT_MOVE:
            raise InvariantViolation("moves are refused here")


def test_rule_module_failure_undoes_the_whole_action() -> None:
    sim = _sim()
    sim.add_entity(_mob("A", 4, 5))
    sim.register_rule_module(_RefuseMovesRule())

    refused = _act(sim, "move", direction="north")

    assert refused.reason == "invariant_violation"
    assert sim.entity("A").pos == Pos(4, 5, 0)
    assert sim.get_rules_state("refuse_moves") == {}
    assert _act(sim, "wait").accepted
    assert sim.get_rules_state("refuse_moves") == {"seen": 1}
    with pytest.raises(ValueError, match="duplicate rule module"):
        sim.register_rule_module(_RefuseMovesRule())


def test_bump_attack_kills_and_ends_with_victory() -> None:
    sim = _sim()
    sim.register_rule_module(VictoryRule())
    sim.add_entity(_mob("hero", 4, 5, faction="player", level=100, dmg=2, max_wounds=10))
    sim.add_entity(_mob("rat", 5, 5, faction="monster", max_wounds=1))

    outcome = _act(sim, "move", direction="east")

    assert outcome.accepted
    assert outcome.details["hit"] is True
    assert outcome.details["damage"] == 2
    assert "rat" not in sim.state.entities
    assert sim.result == RESULT_VICTORY
    assert sim.scheduler_state == STATE_SIMULATION_ENDED
    assert sim.prompt() is None
    event_types = [event["event_type"] for event in sim.event_trace()]
    assert event_types[:3] == [ATTACK_EVENT_TYPE, ENTITY_DIED_EVENT_TYPE, SIMULATION_ENDED_EVENT_TYPE]
    assert sim.get_rules_state("victory") == {"deaths": 1}

    after_end = sim.submit(Intent("wait", "hero", sim.state.turn_index))
    assert after_end.reason == "simulation_ended"


def test_monster_attack_can_end_in_defeat() -> None:
    sim = _sim()
    sim.register_rule_module(VictoryRule())
    sim.add_entity(_mob("brute", 5, 5, faction="monster", level=100, dmg=5))
    sim.add_entity(_mob("hero", 4, 5, faction="player", max_wounds=3))

    outcome = _act(sim, "attack", target_id="hero")

    assert outcome.accepted
    assert sim.result == RESULT_DEFEAT
    assert sim.prompt() is None


def test_missed_attacks_leave_target_unharmed() -> None:
    sim = _sim()
    sim.add_entity(_mob("hero", 4, 5, faction="player", level=-100))
    sim.add_entity(_mob("rat", 5, 5, faction="monster", max_wounds=1))

    outcome = _act(sim, "attack", target_id="rat")

    assert outcome.details["hit"] is False
    assert sim.entity("rat").stat("wounds") == 0
    assert sim.result == RESULT_NONE
    assert _act(sim, "attack", target_id="hero").accepted
    assert _act(sim, "attack", target_id="rat").accepted
    assert sim.entity("rat").acts_next == 12


def test_out_of_reach_attack_is_rejected() -> None:
    sim = _sim()
    sim.add_entity(_mob("hero", 2, 2, faction="player"))
    sim.add_entity(_mob("rat", 5, 5, faction="monster"))

    assert _act(sim, "attack", target_id="rat").reason == "out_of_reach"


def test_items_heal_and_reveal() -> None:
    content = load_content_json("content/content.json")
    sim = _sim(_room(30, 10), content=content)
    hero = EntityState(
        entity_id="hero",
        pos=Pos(2, 2, 0),
        template_id="delver",
        stats={"speed": 3, "max_wounds": 12, "wounds": 5},
        inventory={"healing_draught": 1, "lantern_oil": 1, "rope": 1},
    )
    sim.add_entity(hero)

    healed = _act(sim, "use_item", item_id="healing_draught")
    assert healed.details == {"item_id": "healing_draught", "effect": "heal", "healed": 4}
    assert sim.entity("hero").stat("wounds") == 1
    assert "healing_draught" not in sim.entity("hero").inventory

    assert not sim.voxel_map.is_explored(Pos(14, 2, 0))
    revealed = _act(sim, "use_item", item_id="lantern_oil")
    assert revealed.details["revealed"] > 0
    assert sim.voxel_map.is_explored(Pos(14, 2, 0))

    assert _act(sim, "use_item", item_id="healing_draught").reason == "not_in_inventory"
    assert _act(sim, "use_item", item_id="rope").reason == "no_effect"


def test_spawn_uses_content_templates() -> None:
    content = load_content_json("content/content.json")
    sim = _sim(content=content)

    delver = sim.spawn("delver", "hero", Pos(2, 2, 0))

    assert delver.faction == "player"
    assert delver.speed == 4
    assert delver.inventory == {"healing_draught": 2}
    assert sim.voxel_map.is_explored(Pos(2, 2, 0))
    with pytest.raises(ValueError, match="unknown template_id"):
        sim.spawn("dragon", "smaug", Pos(3, 3, 0))


def test_add_entity_rejects_bad_placements() -> None:
    sim = _sim()
    sim.add_entity(_mob("A", 2, 2))

    with pytest.raises(ValueError, match="duplicate entity_id"):
        sim.add_entity(_mob("A", 3, 3))
    with pytest.raises(ValueError, match="occupied"):
        sim.add_entity(_mob("B", 2, 2))
    with pytest.raises(ValueError, match="out of bounds"):
        sim.add_entity(_mob("C", 20, 2))
    with pytest.raises(ValueError, match="unknown template"):
        sim.add_entity(EntityState(entity_id="D", pos=Pos(3, 3, 0), template_id="missing"))


def test_dig_opens_wall_and_costs_double() -> None:
    sim = _sim()
    sim.add_entity(_mob("A", 1, 1, speed=4))

    dug = _act(sim, "dig", direction="west")

    assert dug.accepted
    assert sim.voxel_map.terrain_at(Pos(0, 1, 0)) == TERRAIN_OPEN
    assert sim.entity("A").acts_next == 18
    assert _act(sim, "dig", direction="east").reason == "not_diggable"


def test_climb_uses_stairs() -> None:
    voxel_map = _room(z_max=1)
    voxel_map.set_terrain(Pos(2, 2, 1), TERRAIN_OPEN)
    voxel_map.set_terrain(Pos(2, 2, 0), TERRAIN_STAIRS)
    sim = _sim(voxel_map)
    sim.add_entity(_mob("A", 2, 2))

    assert _act(sim, "climb", direction="up").accepted
    assert sim.entity("A").pos == Pos(2, 2, 1)
    assert _act(sim, "climb", direction="up").reason == "blocked"
    assert _act(sim, "climb", direction="down").accepted
    assert sim.entity("A").pos == Pos(2, 2, 0)


def test_travel_takes_one_step_along_the_path() -> None:
    sim = _sim()
    sim.add_entity(_mob("A", 1, 1))

    outcome = _act(sim, "travel", goal=[5, 1, 0])

    assert outcome.accepted
    assert sim.entity("A").pos == Pos(2, 1, 0)
    assert outcome.details["remaining"] == 3


def test_player_reveals_and_explores_the_frontier() -> None:
    corridor = VoxelMap(30, 3)
    corridor.load_ascii_layer(0, ["#" * 30, "#" + "." * 28 + "#", "#" * 30])
    sim = _sim(corridor)
    sim.add_entity(_mob("hero", 1, 1, faction="player"))

    assert sim.voxel_map.is_explored(Pos(9, 1, 0))
    assert not sim.voxel_map.is_explored(Pos(10, 1, 0))

    assert _act(sim, "explore").accepted
    assert sim.entity("hero").pos == Pos(2, 1, 0)
    assert sim.voxel_map.is_explored(Pos(10, 1, 0))


def test_explore_reports_when_nothing_is_left() -> None:
    sim = _sim()
    sim.add_entity(_mob("hero", 4, 5, faction="player"))

    assert _act(sim, "explore").reason == "nothing_to_explore"


def test_doors_are_held_open_by_occupants() -> None:
    voxel_map = VoxelMap(9, 3)
    voxel_map.load_ascii_layer(0, ["#########", "#...+...#", "#########"])
    sim = _sim(voxel_map)
    sim.add_entity(_mob("hero", 1, 1, faction="player"))
    assert not sim.voxel_map.is_explored(Pos(6, 1, 0))

    sim.add_entity(_mob("porter", 4, 1, speed=0))

    assert sim.open_doors() == frozenset({Pos(4, 1, 0)})
    assert Pos(6, 1, 0) in sim.visible_from("hero")
    _act(sim, "wait")
    assert sim.voxel_map.is_explored(Pos(6, 1, 0))


def test_event_trace_is_bounded() -> None:
    sim = _sim()
    sim.add_entity(_mob("A", 4, 5))

    for _ in range(MAX_EVENT_TRACE + 20):
        _act(sim, "wait")

    trace = sim.event_trace()
    assert len(trace) == MAX_EVENT_TRACE
    assert trace[-1]["event_id"] == MAX_EVENT_TRACE + 20
    assert sim.state.turn_index == MAX_EVENT_TRACE + 20


def test_view_exposes_snapshots_only() -> None:
    sim = _sim()
    sim.add_entity(_mob("A", 4, 5, faction="player"))
    view = sim.view()

    snapshot = view.entity("A")

    assert snapshot.pos == Pos(4, 5, 0)
    assert snapshot.stat("speed") == 3
    assert view.entity_at(Pos(4, 5, 0)).entity_id == "A"
    assert view.terrain_at(Pos(0, 0, 0)) == TERRAIN_WALL
    assert view.prompt().actor_id == "A"
    with pytest.raises(TypeError):
        snapshot.stats["speed"] = 9
    assert not hasattr(view, "submit")
