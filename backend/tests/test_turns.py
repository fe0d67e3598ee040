"""Single-turn generation: context, failure policy and action resolution."""

import asyncio

import pytest

from doppelganger.agents.adapters.base import TurnAction
from doppelganger.agents.adapters.rule_based import FALLBACK_UTTERANCE
from doppelganger.errors import GenerationError
from doppelganger.profiles import Identity
from doppelganger.turns import GenerationPolicy, Participant, TurnGenerator, resolve_action
from doppelganger.world import Item, WorldState

from fakes import ScriptedAdapter, participants, say


def _world() -> WorldState:
    return WorldState.initial(["agent1", "agent2"], [Item(name="Couch", x=200, y=150)])


def test_move_target_matches_case_insensitively_and_uses_canonical_name():
    world = _world()
    anna, _ = participants("Anna", "Ben")

    action, event = resolve_action(world, anna, TurnAction(type="move", target="couch"))

    assert action.type == "move"
    assert action.target == "Couch"
    assert event == "AnnaBit moves to the Couch"
    assert world.agent_positions["agent1"].to_dict() == {"x": 190, "y": 140}


def test_unknown_move_target_degrades_to_none_without_event():
    world = _world()
    before = world.position_of("agent1")
    anna, _ = participants("Anna", "Ben")

    action, event = resolve_action(world, anna, TurnAction(type="move", target="Jukebox", reasoning="music"))

    assert action.type == "none"
    assert action.target is None
    assert event is None
    assert world.position_of("agent1") == before


def test_fallback_policy_substitutes_neutral_turn_on_adapter_error():
    adapter = ScriptedAdapter(lambda ctx: RuntimeError("upstream down"))
    generator = TurnGenerator(adapter, policy=GenerationPolicy.fallback)
    anna, ben = participants("Anna", "Ben")

    result = asyncio.run(generator.generate_turn(anna, ben, _world(), "find a friend", 1))

    assert result.utterance == FALLBACK_UTTERANCE
    assert result.action.type == "none"
    assert result.fallback is True
    assert "upstream down" in (result.error or "")


def test_strict_policy_raises_generation_error_naming_agent():
    adapter = ScriptedAdapter(lambda ctx: ValueError("bad json"))
    generator = TurnGenerator(adapter, policy=GenerationPolicy.strict)
    anna, ben = participants("Anna", "Ben")

    with pytest.raises(GenerationError) as excinfo:
        asyncio.run(generator.generate_turn(anna, ben, _world(), "find a friend", 1))

    assert excinfo.value.agent_name == "AnnaBit"


def test_timeout_counts_as_generation_failure():
    class SlowAdapter(ScriptedAdapter):
        async def generate_turn(self, ctx):
            await asyncio.sleep(1)
            return say("too late")

    generator = TurnGenerator(SlowAdapter(), policy=GenerationPolicy.fallback, timeout_s=0.01)
    anna, ben = participants("Anna", "Ben")

    result = asyncio.run(generator.generate_turn(anna, ben, _world(), "", 1))

    assert result.fallback is True
    assert result.utterance == FALLBACK_UTTERANCE


def test_context_is_bounded_and_fidelity_guard_applies_to_sparse_profiles():
    sparse = Participant(role="agent1", identity=Identity(user_id=1, name="Anna", bit_name="AnnaBit"))
    rich = Participant(
        role="agent2",
        identity=Identity(
            user_id=2,
            name="Ben",
            bit_name="BenBit",
            knowledge_base={"hobbies": ["climbing", "chess", "baking"], "work": {"job": "nurse", "shift": "nights"}},
        ),
    )
    world = _world()
    for idx in range(10):
        world.append_utterance("AnnaBit", f"line {idx}")
    generator = TurnGenerator(ScriptedAdapter(), fidelity_guard=True, context_lines=4)

    sparse_ctx = generator.build_context(sparse, rich, world, "find a friend", 2)
    rich_ctx = generator.build_context(rich, sparse, world, "find a friend", 2)

    assert sparse_ctx.conversation == ["AnnaBit: line 6", "AnnaBit: line 7", "AnnaBit: line 8", "AnnaBit: line 9"]
    assert sparse_ctx.fidelity_guard is True
    assert rich_ctx.fidelity_guard is False
    assert "work.job: nurse" in rich_ctx.agent_knowledge
    assert sparse_ctx.counterpart_name == "BenBit"
