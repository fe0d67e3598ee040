"""Schema completeness and validation retry for strict OpenAI output formats."""

import asyncio
from types import SimpleNamespace

import pytest

from doppelganger.agents.adapters.base import ScoreContext, ScorePairing, TurnContext
from doppelganger.agents.adapters.openai_adapter import OpenAIAdapter
from doppelganger.errors import GenerationError


def _ctx(**overrides) -> TurnContext:
    base = dict(
        goal="find a friend",
        round_number=2,
        max_rounds=10,
        agent_role="agent1",
        agent_name="AnnaBit",
        agent_owner="Anna",
        counterpart_role="agent2",
        counterpart_name="BenBit",
        agent_position={"x": 400, "y": 200},
        counterpart_position={"x": 200, "y": 200},
        items=[{"name": "Couch", "x": 200, "y": 150}],
        conversation=["BenBit: Hi Anna!"],
    )
    base.update(overrides)
    return TurnContext(**base)


def _assert_strict(node: dict) -> None:
    if node.get("type") != "object":
        return
    assert set(node["properties"].keys()) == set(node["required"])
    assert node["additionalProperties"] is False
    for child in node["properties"].values():
        _assert_strict(child)
        if child.get("type") == "array":
            _assert_strict(child["items"])


def test_turn_and_score_schemas_require_every_property_for_strict_mode():
    adapter = OpenAIAdapter.__new__(OpenAIAdapter)
    for schema in (adapter._turn_schema(), adapter._score_schema()):
        assert schema["type"] == "json_schema"
        assert schema["strict"] is True
        _assert_strict(schema["schema"])


def test_turn_retries_on_invalid_json(monkeypatch):
    adapter = OpenAIAdapter.__new__(OpenAIAdapter)
    responses = [
        SimpleNamespace(output_text="{not-json"),
        SimpleNamespace(
            output_text='{"utterance":"Want to sit?","action":{"type":"move","target":"Couch","reasoning":"comfy"}}'
        ),
    ]
    prompts: list[str] = []

    async def fake_request(prompt, text_format, token_floor):
        prompts.append(prompt)
        return responses.pop(0)

    monkeypatch.setattr(adapter, "_request_with_retry", fake_request)

    decision = asyncio.run(adapter.generate_turn(_ctx()))

    assert decision.utterance == "Want to sit?"
    assert decision.action.type == "move"
    assert decision.action.target == "Couch"
    assert len(prompts) == 2
    assert "Previous response failed validation" in prompts[1]


def test_turn_gives_up_after_validation_attempts(monkeypatch):
    adapter = OpenAIAdapter.__new__(OpenAIAdapter)

    async def fake_request(prompt, text_format, token_floor):
        return SimpleNamespace(output_text="not json at all")

    monkeypatch.setattr(adapter, "_request_with_retry", fake_request)

    with pytest.raises(GenerationError):
        asyncio.run(adapter.generate_turn(_ctx()))


def test_fenced_json_and_unknown_action_are_normalized(monkeypatch):
    adapter = OpenAIAdapter.__new__(OpenAIAdapter)

    async def fake_request(prompt, text_format, token_floor):
        return SimpleNamespace(
            output_text='```json\n{"utterance":"Hi","action":{"type":"dance","target":"Floor","reasoning":""}}\n```'
        )

    monkeypatch.setattr(adapter, "_request_with_retry", fake_request)

    decision = asyncio.run(adapter.generate_turn(_ctx()))

    assert decision.utterance == "Hi"
    assert decision.action.type == "none"
    assert decision.action.target is None


def test_score_parsing_requires_every_candidate(monkeypatch):
    adapter = OpenAIAdapter.__new__(OpenAIAdapter)
    ctx = ScoreContext(
        goal="find a friend",
        subject_user_id=1,
        subject_name="Anna",
        subject_profile=["Name: Anna"],
        pairings=[
            ScorePairing(user_id=2, name="Ben", bit_name="BenBit", profile=[], transcript="BenBit: hi"),
            ScorePairing(user_id=3, name="Cleo", bit_name="CleoBit", profile=[], transcript="CleoBit: hey"),
        ],
    )
    responses = [
        SimpleNamespace(output_text='{"scores":[{"user_id":2,"score":61,"dealbreaker":false,"reasoning":"ok"}]}'),
        SimpleNamespace(
            output_text=(
                '{"scores":[{"user_id":2,"score":61,"dealbreaker":false,"reasoning":"ok"},'
                '{"user_id":3,"score":120,"dealbreaker":false,"reasoning":"great"}]}'
            )
        ),
    ]

    async def fake_request(prompt, text_format, token_floor):
        return responses.pop(0)

    monkeypatch.setattr(adapter, "_request_with_retry", fake_request)

    results = asyncio.run(adapter.generate_scores(ctx))

    assert {r.user_id: r.score for r in results} == {2: 61, 3: 100}
    assert all(r.subject_user_id == 1 for r in results)


def test_fidelity_rules_only_added_when_guard_applies():
    adapter = OpenAIAdapter.__new__(OpenAIAdapter)

    guarded = adapter._build_turn_prompt(_ctx(fidelity_guard=True))
    open_prompt = adapter._build_turn_prompt(_ctx(fidelity_guard=False))

    assert len(guarded) > len(open_prompt)
    assert "Couch" in open_prompt
    assert "BenBit: Hi Anna!" in open_prompt
