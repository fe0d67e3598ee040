"""Session runner.

Owns one background task per simulation. A simulation is a sequence of
runs; each run builds a fresh world, drives the turn orchestrator to
termination, persists one snapshot per round, broadcasts progress and, when
the simulation has a goal, scores the finished transcript.
"""

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlmodel import Session

from .agents.adapters.base import GenerationAdapter, ScoreResult
from .agents.adapters.mock_adapter import MockAdapter
from .agents.adapters.openai_adapter import OpenAIAdapter
from .agents.adapters.rule_based import RuleBasedAdapter
from .config import settings
from .db import new_session
from .engine import EnginePolicy, OrchestratorState, RoundOutcome, TurnOrchestrator
from .errors import (
    DoppelgangerError,
    GenerationError,
    InsufficientParticipants,
    InvalidConfiguration,
    SimulationCancelled,
)
from .models import TERMINAL_STATUSES, SimulationMode, SimulationRun, SimulationState, SimulationStatus
from .persistence import SimulationStore, serialize_snapshot
from .profiles import Identity, ProfileProvider
from .scoring import CompatibilityScorer, Pairing
from .turns import GenerationPolicy, Participant, TurnGenerator
from .utils import utc_iso_now
from .world import Item, Position, WorldSnapshot, WorldState, role_for_index

logger = logging.getLogger(__name__)


def pick_adapter() -> GenerationAdapter:
    if settings.ai_mode == "mock":
        return MockAdapter()
    if settings.ai_mode == "openai":
        try:
            return OpenAIAdapter()
        except RuntimeError as exc:
            logger.warning("openai adapter unavailable, using rule adapter reason=%s", exc)
            return RuleBasedAdapter()
    return RuleBasedAdapter()


def default_policy(mode: SimulationMode) -> EnginePolicy:
    if mode == SimulationMode.pairwise:
        return EnginePolicy(generation=GenerationPolicy.strict, fidelity_guard=True, max_rounds=settings.max_rounds)
    return EnginePolicy(max_rounds=settings.max_rounds)


def build_generator(adapter: GenerationAdapter, policy: EnginePolicy) -> TurnGenerator:
    return TurnGenerator(
        adapter,
        policy=policy.generation,
        fidelity_guard=policy.fidelity_guard,
        timeout_s=settings.turn_timeout_ms / 1000 if settings.turn_timeout_ms > 0 else None,
        max_rounds=policy.max_rounds,
    )


@dataclass
class ParticipantSlot:
    user_id: Optional[int] = None
    is_random: bool = False


@dataclass
class SessionConfig:
    participants: list[ParticipantSlot]
    items: list[Item] = field(default_factory=list)
    goal: str = ""
    repetitions: int = 1
    name: str = "Untitled Simulation"
    mode: SimulationMode = SimulationMode.group
    policy: Optional[EnginePolicy] = None
    score_runs: bool = True
    owner_user_id: Optional[int] = None


@dataclass
class RunOutcome:
    run_index: int
    status: SimulationStatus
    rounds: int = 0
    transcript: str = ""
    snapshot_count: int = 0
    scores: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class SessionOutcome:
    simulation_id: int
    status: SimulationStatus
    runs: list[RunOutcome] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "simulation_id": self.simulation_id,
            "status": self.status.value,
            "error": self.error,
            "runs": [
                {
                    "run_index": r.run_index,
                    "status": r.status.value,
                    "rounds": r.rounds,
                    "snapshot_count": r.snapshot_count,
                    "scores": r.scores,
                    "error": r.error,
                }
                for r in self.runs
            ],
        }


class ParticipantResolver:
    """Resolve configured slots to identities for one repetition.

    Explicit identities are claimed first. Random slots then draw from
    eligible identities outside the chosen set; once that pool is exhausted
    repeats are allowed. The result is aligned with the slots and holds None
    for a random slot that nothing could fill.
    """

    def __init__(self, profiles: ProfileProvider, rng: random.Random | None = None) -> None:
        self.profiles = profiles
        self.rng = rng or random.Random()

    def resolve(self, slots: list[ParticipantSlot]) -> list[Identity | None]:
        resolved: list[Identity | None] = [None] * len(slots)
        chosen: set[int] = set()
        for idx, slot in enumerate(slots):
            if not slot.is_random and slot.user_id is not None:
                resolved[idx] = self.profiles.get_identity(slot.user_id)
                chosen.add(slot.user_id)

        eligible = self.profiles.list_eligible_identities()
        for idx, slot in enumerate(slots):
            if not slot.is_random:
                continue
            pool = [identity for identity in eligible if identity.user_id not in chosen]
            if not pool:
                pool = eligible
            if not pool:
                logger.warning("no eligible identity for random slot=%s", idx)
                continue
            pick = self.rng.choice(pool)
            resolved[idx] = pick
            chosen.add(pick.user_id)

        count = sum(1 for identity in resolved if identity is not None)
        if count < 2:
            raise InsufficientParticipants(count)
        return resolved


class SessionRunner:
    """Owns active simulation tasks and executes each session loop."""

    def __init__(
        self,
        ws_manager=None,
        session_factory: Callable[[], Session] = new_session,
        *,
        adapter_factory: Callable[[], GenerationAdapter] = pick_adapter,
        rng: random.Random | None = None,
    ) -> None:
        self.ws_manager = ws_manager
        self.store = SimulationStore(session_factory)
        self.profiles = ProfileProvider(session_factory)
        self.resolver = ParticipantResolver(self.profiles, rng)
        self.adapter_factory = adapter_factory
        self._tasks: dict[int, asyncio.Task] = {}
        self._stop_requested: set[int] = set()

    def configure(self, config: SessionConfig) -> int:
        """Validate `config` and persist a pending simulation with its run records."""

        slots = list(config.participants)
        if len(slots) < 2:
            raise InsufficientParticipants(len(slots))
        if config.repetitions < 1:
            raise InvalidConfiguration("repetitions must be at least 1")
        for slot in slots:
            if slot.is_random:
                continue
            if slot.user_id is None:
                raise InvalidConfiguration("Participant needs a user_id unless it is random")
            # raises IdentityNotFound
            self.profiles.get_identity(slot.user_id)
        if any(slot.is_random for slot in slots) and not self.profiles.list_eligible_identities():
            explicit = sum(1 for slot in slots if not slot.is_random)
            if explicit < 2:
                raise InsufficientParticipants(explicit)

        seen: set[str] = set()
        for item in config.items:
            key = item.name.strip().lower()
            if not key:
                raise InvalidConfiguration("Item names must be non-empty")
            if key in seen:
                raise InvalidConfiguration(f"Duplicate item name: {item.name}")
            seen.add(key)
            if not (0 <= item.x <= settings.board_width and 0 <= item.y <= settings.board_height):
                raise InvalidConfiguration(
                    f"Item {item.name} at ({item.x}, {item.y}) is outside the "
                    f"{settings.board_width:g}x{settings.board_height:g} board"
                )

        policy = config.policy or default_policy(config.mode)
        if policy.max_rounds < 1:
            raise InvalidConfiguration("max_rounds must be at least 1")
        sim = self.store.create_simulation(
            name=config.name,
            goal=config.goal,
            mode=config.mode,
            num_runs=config.repetitions,
            items=[item.to_dict() for item in config.items],
            policy=policy.to_dict(),
            slots=[(slot.user_id, slot.is_random) for slot in slots],
            score_runs=config.score_runs,
            owner_user_id=config.owner_user_id,
        )
        logger.info(
            "configured simulation=%s mode=%s participants=%s repetitions=%s",
            sim.id,
            config.mode.value,
            len(slots),
            config.repetitions,
        )
        return int(sim.id or 0)

    async def configure_and_start(self, config: SessionConfig) -> int:
        simulation_id = self.configure(config)
        await self.start(simulation_id)
        return simulation_id

    async def start(self, simulation_id: int) -> None:
        if simulation_id in self._tasks and not self._tasks[simulation_id].done():
            return
        self._ensure_startable(simulation_id)
        self._tasks[simulation_id] = asyncio.create_task(self.run_session(simulation_id))

    async def run(self, simulation_id: int) -> SessionOutcome:
        """Run the simulation to completion and return its outcome."""

        task = self._tasks.get(simulation_id)
        if task is None or task.done():
            self._ensure_startable(simulation_id)
            task = asyncio.create_task(self.run_session(simulation_id))
            self._tasks[simulation_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            return self.outcome_from_store(simulation_id)

    async def stop(self, simulation_id: int, *, graceful: bool = False) -> None:
        """Stop a simulation.

        A graceful stop lets the current round finish; otherwise the task is
        cancelled, interrupting any in-flight generation call.
        """

        task = self._tasks.get(simulation_id)
        if task and not task.done():
            self._stop_requested.add(simulation_id)
            if not graceful:
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        # A task cancelled before its first step never reaches its own handlers.
        sim = self.store.get_simulation(simulation_id)
        if sim.status not in TERMINAL_STATUSES:
            self._finish_stopped(simulation_id, None, "Stopped by operator")
            await self._broadcast_status(simulation_id, SimulationStatus.stopped)
        self._stop_requested.discard(simulation_id)

    def get_run_status(self, simulation_id: int) -> dict[str, Any]:
        return self.store.get_run_status(simulation_id)

    def get_snapshots(self, simulation_id: int, run_index: int) -> list[SimulationState]:
        run = self.store.get_run(simulation_id, run_index)
        if run is None:
            return []
        return self.store.get_snapshots(int(run.id or 0))

    def outcome_from_store(self, simulation_id: int) -> SessionOutcome:
        sim = self.store.get_simulation(simulation_id)
        outcome = SessionOutcome(simulation_id=simulation_id, status=sim.status, error=sim.error)
        for run in self.store.list_runs(simulation_id):
            snapshots = self.store.get_snapshots(int(run.id or 0))
            outcome.runs.append(
                RunOutcome(
                    run_index=run.run_index,
                    status=run.status,
                    rounds=run.rounds,
                    transcript=snapshots[-1].transcript if snapshots else "",
                    snapshot_count=len(snapshots),
                    scores=list(run.scores or []),
                    error=run.error,
                )
            )
        return outcome

    async def step(
        self,
        *,
        agents: list[tuple[int, str, Position | None]],
        items: list[Item],
        history: str,
        goal: str,
        round_number: int = 1,
    ) -> dict[str, Any]:
        """Run one strict round over caller-held state; nothing is persisted."""

        participants = [Participant(role=role, identity=self.profiles.get_identity(uid)) for uid, role, _ in agents]
        world = WorldState.initial(
            [p.role for p in participants],
            items,
            width=settings.board_width,
            height=settings.board_height,
        )
        for _, role, pos in agents:
            if pos is not None:
                world.place_agent(role, pos.x, pos.y)
        world.history_lines = [line for line in history.splitlines() if line.strip()]

        policy = EnginePolicy(generation=GenerationPolicy.strict, fidelity_guard=True, max_rounds=settings.max_rounds)
        orchestrator = TurnOrchestrator(
            participants,
            build_generator(self.adapter_factory(), policy),
            goal=goal,
            policy=policy,
            completed_rounds=round_number - 1,
        )
        outcome = await orchestrator.run_round(world)
        if outcome.error:
            raise GenerationError(outcome.error)
        return {
            "round_number": outcome.round_number,
            "turns": [turn.to_dict() for turn in outcome.turns],
            "consolidated_events": outcome.consolidated_events,
            "agent_positions": {role: pos.to_dict() for role, pos in world.agent_positions.items()},
            "history": world.transcript,
            "done": orchestrator.state is OrchestratorState.done,
        }

    async def score(self, goal: str, subject_user_id: int, pairings: list[tuple[int, str]]) -> list[ScoreResult]:
        subject = self.profiles.get_identity(subject_user_id)
        resolved = [Pairing(counterpart=self.profiles.get_identity(uid), transcript=text) for uid, text in pairings]
        return await CompatibilityScorer(self.adapter_factory()).score(goal, subject, resolved)

    async def run_session(self, simulation_id: int) -> SessionOutcome:
        sim = self.store.update_simulation(
            simulation_id, status=SimulationStatus.running, current_run_index=0, error=None
        )
        await self._broadcast_status(simulation_id, SimulationStatus.running)
        logger.info("simulation started simulation=%s mode=%s", simulation_id, sim.mode.value)

        policy = EnginePolicy.from_dict(sim.policy)
        adapter = self.adapter_factory()
        generator = build_generator(adapter, policy)
        scorer = CompatibilityScorer(adapter)
        slots = [ParticipantSlot(p.user_id, p.is_random) for p in self.store.list_participants(simulation_id)]
        items = [Item.from_dict(raw) for raw in sim.items or []]
        resolved_by_repetition: dict[int, list[Identity | None]] = {}
        current: SimulationRun | None = None

        try:
            for run in self.store.list_runs(simulation_id):
                if run.status != SimulationStatus.pending:
                    continue
                current = run
                self.store.update_simulation(simulation_id, current_run_index=run.run_index)
                if run.repetition_index not in resolved_by_repetition:
                    resolved_by_repetition[run.repetition_index] = self.resolver.resolve(slots)
                participants = self._participants_for_run(sim.mode, run, resolved_by_repetition[run.repetition_index])
                await self._execute_run(sim.id, run, participants, items, generator, scorer, policy)
                current = None
        except SimulationCancelled as exc:
            self._finish_stopped(simulation_id, current, str(exc))
            await self._broadcast_status(simulation_id, SimulationStatus.stopped)
        except asyncio.CancelledError:
            self._finish_stopped(simulation_id, current, "Stopped by operator")
            self._stop_requested.discard(simulation_id)
            await asyncio.shield(self._broadcast_status(simulation_id, SimulationStatus.stopped))
            raise
        except DoppelgangerError as exc:
            logger.error("simulation failed simulation=%s error=%s", simulation_id, exc)
            await self._finish_failed(simulation_id, current, str(exc))
        except Exception as exc:
            logger.exception("simulation crashed simulation=%s", simulation_id)
            await self._finish_failed(simulation_id, current, f"{type(exc).__name__}: {exc}")
        else:
            self.store.update_simulation(simulation_id, status=SimulationStatus.completed, completed_at=utc_iso_now())
            await self._broadcast_status(simulation_id, SimulationStatus.completed)
            logger.info("simulation completed simulation=%s", simulation_id)
        finally:
            self._stop_requested.discard(simulation_id)
        return self.outcome_from_store(simulation_id)

    async def _execute_run(
        self,
        simulation_id: int,
        run: SimulationRun,
        participants: list[Participant],
        items: list[Item],
        generator: TurnGenerator,
        scorer: CompatibilityScorer,
        policy: EnginePolicy,
    ) -> None:
        run_id = int(run.id or 0)
        sim = self.store.get_simulation(simulation_id)
        world = WorldState.initial(
            [p.role for p in participants],
            items,
            width=settings.board_width,
            height=settings.board_height,
        )
        self.store.set_run_status(
            run_id,
            SimulationStatus.running,
            participants={p.role: p.identity.user_id for p in participants},
        )
        await self._broadcast_status(simulation_id, SimulationStatus.running, run_index=run.run_index)
        logger.info("run started simulation=%s run=%s participants=%s", simulation_id, run.run_index, len(participants))

        state_index = 0

        async def on_round(snapshot: WorldSnapshot, outcome: RoundOutcome | None) -> None:
            nonlocal state_index
            state = self.store.persist_state_snapshot(
                run_id,
                state_index,
                snapshot.agent_positions,
                snapshot.transcript,
                snapshot.items,
                snapshot.narrative_events,
                snapshot.timestamp,
            )
            state_index += 1
            payload: dict[str, Any] = {
                "type": "snapshot",
                "run_index": run.run_index,
                "snapshot": serialize_snapshot(state),
            }
            if outcome is not None:
                payload["turns"] = [turn.to_dict() for turn in outcome.turns]
                payload["consolidated_events"] = outcome.consolidated_events
            await self._broadcast(simulation_id, payload)
            if outcome is not None and settings.round_interval_ms > 0:
                await asyncio.sleep(settings.round_interval_ms / 1000)

        orchestrator = TurnOrchestrator(participants, generator, goal=sim.goal, policy=policy)
        result = await orchestrator.run(
            world,
            on_round=on_round,
            should_stop=lambda: simulation_id in self._stop_requested,
        )
        if result.state is OrchestratorState.terminated:
            self.store.set_run_status(run_id, SimulationStatus.failed, error=result.error, rounds=result.rounds)
            await self._broadcast_status(
                simulation_id, SimulationStatus.failed, run_index=run.run_index, error=result.error
            )
            raise GenerationError(result.error or "Turn generation failed")

        scores: list[dict[str, Any]] = []
        score_error: str | None = None
        if sim.score_runs and sim.goal.strip():
            scores, score_error = await self._score_run(scorer, sim.goal, participants, result.history)
            if scores:
                await self._broadcast(simulation_id, {"type": "scores", "run_index": run.run_index, "scores": scores})

        self.store.set_run_status(
            run_id,
            SimulationStatus.completed,
            rounds=result.rounds,
            scores=scores,
            score_error=score_error,
        )
        await self._broadcast_status(simulation_id, SimulationStatus.completed, run_index=run.run_index)
        logger.info("run completed simulation=%s run=%s rounds=%s", simulation_id, run.run_index, result.rounds)

    async def _score_run(
        self,
        scorer: CompatibilityScorer,
        goal: str,
        participants: list[Participant],
        transcript: str,
    ) -> tuple[list[dict[str, Any]], str | None]:
        subject = participants[0].identity
        pairings: list[Pairing] = []
        seen = {subject.user_id}
        for participant in participants[1:]:
            if participant.identity.user_id in seen:
                continue
            seen.add(participant.identity.user_id)
            pairings.append(Pairing(counterpart=participant.identity, transcript=transcript))
        if not pairings:
            return [], None
        try:
            results = await scorer.score(goal, subject, pairings)
        except DoppelgangerError as exc:
            logger.warning("scoring failed subject=%s reason=%s", subject.user_id, exc)
            return [], str(exc)
        return [result.to_dict() for result in results], None

    def _participants_for_run(
        self,
        mode: SimulationMode,
        run: SimulationRun,
        resolved: list[Identity | None],
    ) -> list[Participant]:
        if mode == SimulationMode.pairwise:
            slot = run.pairing_slot or 1
            pair = [resolved[0], resolved[slot] if slot < len(resolved) else None]
            if any(identity is None for identity in pair):
                raise InsufficientParticipants(sum(1 for identity in pair if identity is not None))
            identities = [identity for identity in pair if identity is not None]
        else:
            identities = [identity for identity in resolved if identity is not None]
        return [Participant(role=role_for_index(idx), identity=identity) for idx, identity in enumerate(identities)]

    def _ensure_startable(self, simulation_id: int) -> None:
        sim = self.store.get_simulation(simulation_id)
        if sim.status != SimulationStatus.pending:
            raise InvalidConfiguration(f"Simulation {simulation_id} is already {sim.status.value}")

    def _finish_stopped(self, simulation_id: int, current: SimulationRun | None, reason: str) -> None:
        logger.info("simulation stopped simulation=%s reason=%s", simulation_id, reason)
        if current is not None:
            self.store.set_run_status(int(current.id or 0), SimulationStatus.stopped, error=reason)
        self._mark_pending_runs_stopped(simulation_id)
        self.store.update_simulation(simulation_id, status=SimulationStatus.stopped, completed_at=utc_iso_now())

    async def _finish_failed(self, simulation_id: int, current: SimulationRun | None, error: str) -> None:
        if current is not None:
            self.store.set_run_status(int(current.id or 0), SimulationStatus.failed, error=error)
        self.store.update_simulation(simulation_id, status=SimulationStatus.failed, error=error, completed_at=utc_iso_now())
        try:
            await self._broadcast_status(simulation_id, SimulationStatus.failed, error=error)
        except Exception:
            logger.warning("failed status not delivered simulation=%s", simulation_id, exc_info=True)

    def _mark_pending_runs_stopped(self, simulation_id: int) -> None:
        for run in self.store.list_runs(simulation_id):
            if run.status == SimulationStatus.pending:
                self.store.set_run_status(int(run.id or 0), SimulationStatus.stopped)

    async def _broadcast_status(
        self,
        simulation_id: int,
        status: SimulationStatus,
        *,
        run_index: int | None = None,
        error: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {"type": "status", "status": status.value}
        if run_index is not None:
            payload["run_index"] = run_index
        if error:
            payload["error"] = error
        await self._broadcast(simulation_id, payload)

    async def _broadcast(self, simulation_id: int, payload: dict[str, Any]) -> None:
        if self.ws_manager is None:
            return
        await self.ws_manager.broadcast(simulation_id, payload)
