from voxcrawl.content.io import load_scenario_json
from voxcrawl.content.registry import load_content_json
from voxcrawl.sim.ai import decide_intent, nearest_visible_enemy, run_ai_turns
from voxcrawl.sim.config import SimulationConfig
from voxcrawl.sim.core import EntityState, Simulation
from voxcrawl.sim.geometry import Pos
from voxcrawl.sim.voxel import VoxelMap


def _arena(hero_x: int, brute_x: int) -> Simulation:
    voxel_map = VoxelMap(10, 10)
    voxel_map.load_ascii_layer(0, ["#" * 10] + ["#" + "." * 8 + "#"] * 8 + ["#" * 10])
    sim = Simulation(voxel_map, seed=5, config=SimulationConfig())
    sim.add_entity(
        EntityState(entity_id="hero", pos=Pos(hero_x, 5, 0), stats={"speed": 3, "max_wounds": 50}, traits={"faction": "player"})
    )
    sim.add_entity(
        EntityState(
            entity_id="brute",
            pos=Pos(brute_x, 5, 0),
            stats={"speed": 3, "max_wounds": 50},
            traits={"faction": "monster"},
            flags=["ai"],
        )
    )
    return sim


def test_adjacent_monster_attacks() -> None:
    sim = _arena(4, 5)
    sim.submit(sim.prompt().intent("wait"))

    outcomes = run_ai_turns(sim)

    assert [outcome.intent.intent_type for outcome in outcomes] == ["attack"]
    assert outcomes[0].accepted
    assert outcomes[0].intent.params == {"target_id": "hero"}
    assert sim.prompt().actor_id == "hero"


def test_distant_monster_closes_in() -> None:
    sim = _arena(2, 6)
    sim.submit(sim.prompt().intent("wait"))

    outcomes = run_ai_turns(sim)

    assert outcomes[0].intent.intent_type == "travel"
    assert sim.entity("brute").pos == Pos(5, 5, 0)


def test_decisions_do_not_touch_state() -> None:
    sim = _arena(4, 5)
    sim.submit(sim.prompt().intent("wait"))
    before = sim.simulation_payload()

    intent = decide_intent(sim.view())

    assert intent.actor_id == "brute"
    assert sim.simulation_payload() == before
    view = sim.view()
    assert nearest_visible_enemy(view, view.entity("brute")).entity_id == "hero"


def test_monsters_without_sight_of_the_player_wait() -> None:
    content = load_content_json("content/content.json")
    sim = load_scenario_json("content/examples/keep.json", seed=3, content=content, config=SimulationConfig())
    sim.submit(sim.prompt().intent("wait"))

    outcomes = run_ai_turns(sim)

    assert [(outcome.intent.actor_id, outcome.intent.intent_type) for outcome in outcomes] == [
        ("ratman-1", "wait"),
        ("hermit", "wait"),
    ]
    assert sim.prompt().actor_id == "delver"
