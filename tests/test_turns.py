import pytest

from voxcrawl.sim.turns import PHASES_IN_TURN, SPEED_NORMAL, TurnEntry, TurnQueue, action_delay


def test_action_delay_scales_with_speed() -> None:
    assert action_delay(PHASES_IN_TURN, SPEED_NORMAL) == 12
    assert action_delay(PHASES_IN_TURN, 6) == 6
    assert action_delay(PHASES_IN_TURN, 2) == 18
    assert action_delay(1, 12) == 1
    assert action_delay(0, 3) == 0
    with pytest.raises(ValueError, match="speed"):
        action_delay(12, 0)


def test_queue_orders_by_time_then_creation() -> None:
    queue = TurnQueue()
    queue.push(TurnEntry(acts_next=12, creation_index=0, entity_id="a"))
    queue.push(TurnEntry(acts_next=6, creation_index=2, entity_id="c"))
    queue.push(TurnEntry(acts_next=6, creation_index=1, entity_id="b"))

    assert [entry.entity_id for entry in queue.entries()] == ["b", "c", "a"]
    assert queue.peek() == TurnEntry(acts_next=6, creation_index=1, entity_id="b")


def test_reschedule_and_remove() -> None:
    queue = TurnQueue(
        [
            TurnEntry(acts_next=0, creation_index=0, entity_id="a"),
            TurnEntry(acts_next=0, creation_index=1, entity_id="b"),
        ]
    )

    queue.reschedule("a", 12)

    assert queue.peek().entity_id == "b"
    assert queue.get("a") == TurnEntry(acts_next=12, creation_index=0, entity_id="a")
    assert queue.remove("b") is True
    assert queue.remove("b") is False
    assert "b" not in queue
    assert len(queue) == 1
    with pytest.raises(KeyError):
        queue.reschedule("b", 3)
    with pytest.raises(ValueError, match="already queued"):
        queue.push(TurnEntry(acts_next=1, creation_index=0, entity_id="a"))


def test_queue_list_round_trip_and_validation() -> None:
    queue = TurnQueue(
        [
            TurnEntry(acts_next=5, creation_index=1, entity_id="b"),
            TurnEntry(acts_next=3, creation_index=0, entity_id="a"),
        ]
    )

    payload = queue.to_list()

    assert payload == [
        {"acts_next": 3, "creation_index": 0, "entity_id": "a"},
        {"acts_next": 5, "creation_index": 1, "entity_id": "b"},
    ]
    assert TurnQueue.from_list(payload).entries() == queue.entries()
    assert queue.copy().entries() == queue.entries()
    with pytest.raises(ValueError, match="creation_index"):
        TurnQueue.from_list([{"acts_next": 0, "creation_index": -1, "entity_id": "a"}])
    with pytest.raises(ValueError, match="must be a list"):
        TurnQueue.from_list({})
