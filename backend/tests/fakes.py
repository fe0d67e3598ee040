"""Scripted adapters and identity builders for deterministic engine tests."""

from collections.abc import Callable

from doppelganger.agents.adapters.base import (
    GenerationAdapter,
    ScoreContext,
    ScoreResult,
    TurnAction,
    TurnContext,
    TurnDecision,
)
from doppelganger.profiles import Identity
from doppelganger.turns import Participant


def say(text: str, move: str | None = None) -> TurnDecision:
    if move:
        return TurnDecision(utterance=text, action=TurnAction(type="move", target=move, reasoning="scripted"))
    return TurnDecision(utterance=text)


def identity(user_id: int, name: str, **profile) -> Identity:
    return Identity(user_id=user_id, name=name, bit_name=f"{name}Bit", profile=profile)


def participants(*names: str) -> list[Participant]:
    return [Participant(role=f"agent{idx + 1}", identity=identity(idx + 1, name)) for idx, name in enumerate(names)]


class ScriptedAdapter(GenerationAdapter):
    """Turns come from `script(ctx)`; returning an exception raises it."""

    def __init__(
        self,
        script: Callable[[TurnContext], TurnDecision | Exception] | None = None,
        scores: dict[int, int] | Exception | None = None,
    ) -> None:
        self.script = script or (lambda ctx: say(f"Round {ctx.round_number} from {ctx.agent_name}"))
        self.scores = scores
        self.calls: list[TurnContext] = []
        self.score_calls: list[ScoreContext] = []

    async def generate_turn(self, ctx: TurnContext) -> TurnDecision:
        self.calls.append(ctx)
        result = self.script(ctx)
        if isinstance(result, Exception):
            raise result
        return result

    async def generate_scores(self, ctx: ScoreContext) -> list[ScoreResult]:
        self.score_calls.append(ctx)
        if isinstance(self.scores, Exception):
            raise self.scores
        scores = self.scores or {}
        return [
            ScoreResult(user_id=p.user_id, score=scores.get(p.user_id, 50), reasoning=f"scripted for {p.name}")
            for p in ctx.pairings
        ]


class RecordingManager:
    """Stands in for the websocket manager and keeps every payload."""

    def __init__(self) -> None:
        self.payloads: list[tuple[int, dict]] = []

    async def broadcast(self, simulation_id: int, payload: dict) -> None:
        self.payloads.append((simulation_id, payload))

    def of_type(self, kind: str) -> list[dict]:
        return [payload for _, payload in self.payloads if payload.get("type") == kind]
