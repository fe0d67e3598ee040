"""Turn orchestrator: the bounded round-robin conversation loop.

One orchestrator drives one world through rounds of strictly sequential
agent turns, resolves mutual moves at the end of each round, and decides
termination (farewell phrase, round cap, or fatal generation error).
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import GenerationError, InsufficientParticipants, SimulationCancelled
from .turns import GenerationPolicy, Participant, TurnGenerator, TurnResult
from .world import TurnRecord, WorldSnapshot, WorldState

logger = logging.getLogger(__name__)

FAREWELL_PHRASES = ("goodbye", "see you", "nice meeting you")
DEFAULT_MAX_ROUNDS = 10


class PairingPolicy(str, Enum):
    """Who the current speaker addresses in a round."""

    first_other = "first_other"
    previous_speaker = "previous_speaker"


class OrchestratorState(str, Enum):
    initialized = "initialized"
    round_in_progress = "round_in_progress"
    round_complete = "round_complete"
    terminated = "terminated"
    done = "done"


@dataclass
class EnginePolicy:
    generation: GenerationPolicy = GenerationPolicy.fallback
    fidelity_guard: bool = False
    pairing: PairingPolicy = PairingPolicy.first_other
    max_rounds: int = DEFAULT_MAX_ROUNDS

    def to_dict(self) -> dict[str, Any]:
        return {
            "generation": self.generation.value,
            "fidelity_guard": self.fidelity_guard,
            "pairing": self.pairing.value,
            "max_rounds": self.max_rounds,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "EnginePolicy":
        raw = raw or {}
        return cls(
            generation=GenerationPolicy(raw.get("generation", GenerationPolicy.fallback.value)),
            fidelity_guard=bool(raw.get("fidelity_guard", False)),
            pairing=PairingPolicy(raw.get("pairing", PairingPolicy.first_other.value)),
            max_rounds=int(raw.get("max_rounds", DEFAULT_MAX_ROUNDS)),
        )


@dataclass
class RoundOutcome:
    round_number: int
    turns: list[TurnResult] = field(default_factory=list)
    consolidated_events: list[str] = field(default_factory=list)
    farewell: bool = False
    error: str | None = None


@dataclass
class OrchestratorOutcome:
    history: str
    agent_positions: dict[str, dict[str, float]]
    done: bool
    rounds: int
    state: OrchestratorState
    error: str | None = None


RoundCallback = Callable[[WorldSnapshot, RoundOutcome | None], Awaitable[None]]


def is_farewell(text: str) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in FAREWELL_PHRASES)


def join_names(names: list[str]) -> str:
    if len(names) <= 1:
        return "".join(names)
    return f"{', '.join(names[:-1])} and {names[-1]}"


def resolve_mutual_moves(world: WorldState, turns: list[TurnResult]) -> list[str]:
    """Gather agents that moved to the same item this round around it.

    Emits one consolidated narrative event per shared item and overrides the
    per-agent offsets computed during the individual turns.
    """

    groups: dict[str, list[TurnResult]] = {}
    for turn in turns:
        if turn.moved_to:
            groups.setdefault(turn.moved_to.lower(), []).append(turn)
    events: list[str] = []
    for key, movers in groups.items():
        if len(movers) < 2:
            continue
        item = world.find_item(key)
        if item is None:
            continue
        world.gather_agents_at_item([m.role for m in movers], item)
        event = f"{join_names([m.speaker for m in movers])} move to the {item.name}"
        world.append_narrative(event)
        events.append(event)
    return events


class TurnOrchestrator:
    """Owns the world for the duration of each round it runs."""

    def __init__(
        self,
        participants: list[Participant],
        generator: TurnGenerator,
        *,
        goal: str = "",
        policy: EnginePolicy | None = None,
        completed_rounds: int = 0,
    ) -> None:
        if len(participants) < 2:
            raise InsufficientParticipants(len(participants))
        roles = [p.role for p in participants]
        if len(set(roles)) != len(roles):
            raise ValueError(f"Participant roles must be unique: {roles}")
        self.participants = list(participants)
        self.generator = generator
        self.goal = goal
        self.policy = policy or EnginePolicy()
        self.state = OrchestratorState.initialized
        self.rounds_completed = completed_rounds
        self.error: str | None = None
        self._last_speaker: int | None = None

    @property
    def finished(self) -> bool:
        return self.state in {OrchestratorState.done, OrchestratorState.terminated}

    def counterpart_for(self, index: int) -> Participant:
        if self.policy.pairing is PairingPolicy.previous_speaker:
            if self._last_speaker is not None and self._last_speaker != index:
                return self.participants[self._last_speaker]
        return self.participants[1] if index == 0 else self.participants[0]

    async def run_round(self, world: WorldState) -> RoundOutcome:
        if self.finished:
            raise RuntimeError(f"Cannot run a round in state={self.state.value}")
        self.state = OrchestratorState.round_in_progress
        outcome = RoundOutcome(round_number=self.rounds_completed + 1)

        for index, agent in enumerate(self.participants):
            other = self.counterpart_for(index)
            try:
                result = await self.generator.generate_turn(agent, other, world, self.goal, outcome.round_number)
            except GenerationError as exc:
                outcome.error = str(exc)
                break
            self._record_turn(world, outcome.round_number, result)
            outcome.turns.append(result)
            self._last_speaker = index
            if is_farewell(result.utterance):
                outcome.farewell = True
                break

        self.rounds_completed = outcome.round_number
        if outcome.error:
            self.error = outcome.error
            self.state = OrchestratorState.terminated
            logger.warning("round terminated round=%s error=%s", outcome.round_number, outcome.error)
            return outcome

        outcome.consolidated_events = resolve_mutual_moves(world, outcome.turns)
        if outcome.farewell or outcome.round_number >= self.policy.max_rounds:
            self.state = OrchestratorState.done
        else:
            self.state = OrchestratorState.round_complete
        return outcome

    async def run(
        self,
        world: WorldState,
        *,
        on_round: RoundCallback | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> OrchestratorOutcome:
        """Drive rounds until done; `on_round` sees the initial and every completed round."""

        if on_round:
            await on_round(world.snapshot(0), None)
        while not self.finished:
            if should_stop and should_stop():
                raise SimulationCancelled(f"Stopped after round {self.rounds_completed}")
            outcome = await self.run_round(world)
            if outcome.error:
                break
            if on_round:
                await on_round(world.snapshot(outcome.round_number), outcome)
        return OrchestratorOutcome(
            history=world.transcript,
            agent_positions={role: pos.to_dict() for role, pos in world.agent_positions.items()},
            done=self.state is OrchestratorState.done,
            rounds=self.rounds_completed,
            state=self.state,
            error=self.error,
        )

    def _record_turn(self, world: WorldState, round_number: int, result: TurnResult) -> None:
        world.append_utterance(result.speaker, result.utterance)
        if result.narrative_event:
            world.append_narrative(result.narrative_event)
        world.turns.append(
            TurnRecord(
                round_number=round_number,
                role=result.role,
                speaker=result.speaker,
                utterance=result.utterance,
                action_type=result.action.type,
                action_target=result.action.target,
                narrative_event=result.narrative_event,
                fallback=result.fallback,
            )
        )
