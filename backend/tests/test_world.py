"""World state geometry and transcript bookkeeping."""

import pytest

from doppelganger.world import Item, WorldState, role_offset


def test_initial_layout_places_agents_on_circle_around_board_center():
    world = WorldState.initial(["agent1", "agent2"], [], width=600, height=400)

    assert world.agent_positions["agent1"].x == pytest.approx(400)
    assert world.agent_positions["agent1"].y == pytest.approx(200)
    assert world.agent_positions["agent2"].x == pytest.approx(200)
    assert world.agent_positions["agent2"].y == pytest.approx(200)


def test_role_offsets_differ_per_role_and_grow_after_four():
    assert role_offset("agent1") == (-10, -10)
    assert role_offset("agent2") == (10, 10)
    assert role_offset("agent3") == (10, -10)
    assert role_offset("agent4") == (-10, 10)
    assert role_offset("agent5") == (-20, -20)


def test_move_to_item_applies_role_offset():
    couch = Item(name="Couch", x=200, y=150)
    world = WorldState.initial(["agent1", "agent2"], [couch])

    world.move_agent_to_item("agent1", couch)
    world.move_agent_to_item("agent2", couch)

    assert world.agent_positions["agent1"].to_dict() == {"x": 190, "y": 140}
    assert world.agent_positions["agent2"].to_dict() == {"x": 210, "y": 160}


def test_positions_are_clamped_to_board():
    corner = Item(name="Door", x=0, y=400)
    world = WorldState.initial(["agent1", "agent2"], [corner])

    world.move_agent_to_item("agent1", corner)
    world.move_agent_to_item("agent2", corner)

    assert world.agent_positions["agent1"].to_dict() == {"x": 0, "y": 390}
    assert world.agent_positions["agent2"].to_dict() == {"x": 10, "y": 400}


def test_gather_spreads_agents_within_gather_radius():
    bar = Item(name="Bar", x=300, y=200)
    world = WorldState.initial(["agent1", "agent2", "agent3"], [bar])

    world.gather_agents_at_item(["agent1", "agent2", "agent3"], bar)

    coords = {(round(p.x, 6), round(p.y, 6)) for p in world.agent_positions.values()}
    assert len(coords) == 3
    for pos in world.agent_positions.values():
        assert ((pos.x - 300) ** 2 + (pos.y - 200) ** 2) ** 0.5 == pytest.approx(20)


def test_find_item_is_case_insensitive():
    world = WorldState.initial(["agent1", "agent2"], [Item(name="Snack Table", x=10, y=10)])

    assert world.find_item("snack table").name == "Snack Table"
    assert world.find_item("  SNACK TABLE ") is not None
    assert world.find_item("Stage") is None
    assert world.find_item(None) is None


def test_transcript_keeps_utterances_and_bracketed_events_in_order():
    world = WorldState.initial(["agent1", "agent2"], [])
    world.append_utterance("AnnaBit", "Hello!")
    world.append_narrative("AnnaBit moves to the Couch")
    world.append_utterance("BenBit", "Hi there.")

    assert world.transcript == "AnnaBit: Hello!\n[AnnaBit moves to the Couch]\nBenBit: Hi there."
    assert world.narrative_events == ["AnnaBit moves to the Couch"]
    assert world.trailing_lines(2) == ["[AnnaBit moves to the Couch]", "BenBit: Hi there."]


def test_snapshot_is_detached_from_live_world():
    world = WorldState.initial(["agent1", "agent2"], [Item(name="Couch", x=200, y=150)])
    world.append_narrative("first")
    snap = world.snapshot(1)

    world.place_agent("agent1", 5, 5)
    world.append_narrative("second")

    assert snap.timestamp == 1
    assert snap.narrative_events == ["first"]
    assert snap.agent_positions["agent1"] != {"x": 5, "y": 5}
    assert snap.items == [{"name": "Couch", "x": 200, "y": 150}]
