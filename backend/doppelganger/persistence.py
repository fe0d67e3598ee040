"""Simulation, run and snapshot storage over SQLModel sessions.

State snapshots are append-only: a run's snapshot indices must arrive as a
contiguous sequence from 0 and are never updated or deleted here.
"""

from collections.abc import Callable
from typing import Any, Optional

from sqlmodel import Session, select

from .errors import SimulationNotFound
from .models import (
    Simulation,
    SimulationMode,
    SimulationParticipant,
    SimulationRun,
    SimulationState,
    SimulationStatus,
)
from .utils import utc_iso_now
from .world import role_for_index


def serialize_snapshot(state: SimulationState) -> dict[str, Any]:
    return {
        "state_index": state.state_index,
        "agent_positions": state.agent_positions,
        "transcript": state.transcript,
        "items": state.items,
        "narrative_events": state.narrative_events,
        "timestamp": state.timestamp,
    }


class SimulationStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def create_simulation(
        self,
        *,
        name: str,
        goal: str,
        mode: SimulationMode,
        num_runs: int,
        items: list[dict[str, Any]],
        policy: dict[str, Any],
        slots: list[tuple[Optional[int], bool]],
        score_runs: bool = True,
        owner_user_id: Optional[int] = None,
    ) -> Simulation:
        """Create the simulation with its participant slots and pending run records."""

        with self._session_factory() as session:
            sim = Simulation(
                owner_user_id=owner_user_id,
                name=name,
                goal=goal,
                mode=mode,
                num_runs=num_runs,
                items=items,
                policy=policy,
                score_runs=score_runs,
                status=SimulationStatus.pending,
            )
            session.add(sim)
            session.commit()
            session.refresh(sim)
            for slot, (user_id, is_random) in enumerate(slots):
                session.add(
                    SimulationParticipant(
                        simulation_id=sim.id,
                        slot=slot,
                        role=role_for_index(slot),
                        user_id=None if is_random else user_id,
                        is_random=is_random,
                    )
                )
            pairing_slots: list[Optional[int]] = [None]
            if mode == SimulationMode.pairwise:
                pairing_slots = list(range(1, len(slots)))
            run_index = 0
            for repetition in range(num_runs):
                for pairing_slot in pairing_slots:
                    session.add(
                        SimulationRun(
                            simulation_id=sim.id,
                            run_index=run_index,
                            repetition_index=repetition,
                            pairing_slot=pairing_slot,
                        )
                    )
                    run_index += 1
            session.commit()
            session.refresh(sim)
            return sim

    def get_simulation(self, simulation_id: int) -> Simulation:
        with self._session_factory() as session:
            sim = session.get(Simulation, simulation_id)
            if not sim:
                raise SimulationNotFound(simulation_id)
            return sim

    def update_simulation(self, simulation_id: int, **fields: Any) -> Simulation:
        with self._session_factory() as session:
            sim = session.get(Simulation, simulation_id)
            if not sim:
                raise SimulationNotFound(simulation_id)
            for key, value in fields.items():
                setattr(sim, key, value)
            session.add(sim)
            session.commit()
            session.refresh(sim)
            return sim

    def list_participants(self, simulation_id: int) -> list[SimulationParticipant]:
        with self._session_factory() as session:
            stmt = (
                select(SimulationParticipant)
                .where(SimulationParticipant.simulation_id == simulation_id)
                .order_by(SimulationParticipant.slot)
            )
            return list(session.exec(stmt).all())

    def list_runs(self, simulation_id: int) -> list[SimulationRun]:
        with self._session_factory() as session:
            stmt = (
                select(SimulationRun)
                .where(SimulationRun.simulation_id == simulation_id)
                .order_by(SimulationRun.run_index)
            )
            return list(session.exec(stmt).all())

    def get_run(self, simulation_id: int, run_index: int) -> SimulationRun | None:
        with self._session_factory() as session:
            stmt = (
                select(SimulationRun)
                .where(SimulationRun.simulation_id == simulation_id)
                .where(SimulationRun.run_index == run_index)
            )
            return session.exec(stmt).first()

    def set_run_status(
        self,
        run_id: int,
        status: SimulationStatus,
        *,
        error: Optional[str] = None,
        **extra: Any,
    ) -> SimulationRun:
        with self._session_factory() as session:
            run = session.get(SimulationRun, run_id)
            if not run:
                raise ValueError(f"Simulation run {run_id} not found")
            run.status = status
            if error is not None:
                run.error = error
            if status == SimulationStatus.running and not run.started_at:
                run.started_at = utc_iso_now()
            if status in {SimulationStatus.completed, SimulationStatus.failed, SimulationStatus.stopped}:
                run.completed_at = utc_iso_now()
            for key, value in extra.items():
                setattr(run, key, value)
            session.add(run)
            session.commit()
            session.refresh(run)
            return run

    def persist_state_snapshot(
        self,
        run_id: int,
        state_index: int,
        agent_positions: dict[str, Any],
        transcript: str,
        items: list[dict[str, Any]],
        narrative_events: list[str],
        round_number: int,
    ) -> SimulationState:
        with self._session_factory() as session:
            existing = session.exec(select(SimulationState).where(SimulationState.run_id == run_id)).all()
            if state_index != len(existing):
                raise ValueError(
                    f"Snapshot index {state_index} out of sequence for run {run_id} (expected {len(existing)})"
                )
            state = SimulationState(
                run_id=run_id,
                state_index=state_index,
                agent_positions=agent_positions,
                transcript=transcript,
                items=items,
                narrative_events=narrative_events,
                timestamp=round_number,
            )
            session.add(state)
            session.commit()
            session.refresh(state)
            return state

    def get_snapshots(self, run_id: int) -> list[SimulationState]:
        with self._session_factory() as session:
            stmt = select(SimulationState).where(SimulationState.run_id == run_id).order_by(SimulationState.state_index)
            return list(session.exec(stmt).all())

    def get_run_status(self, simulation_id: int) -> dict[str, Any]:
        sim = self.get_simulation(simulation_id)
        runs = self.list_runs(simulation_id)
        completed = sum(1 for run in runs if run.status == SimulationStatus.completed)
        total = len(runs)
        return {
            "status": sim.status.value,
            "current_run_index": sim.current_run_index,
            "total_runs": total,
            "completed_runs": completed,
            "progress": (completed / total) * 100 if total else 0.0,
            "error": sim.error,
        }
