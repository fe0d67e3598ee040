"""FastAPI application entrypoint and REST/WebSocket surface."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .db import init_db
from .engine import EnginePolicy, PairingPolicy
from .errors import (
    DoppelgangerError,
    GenerationError,
    IdentityNotFound,
    InsufficientParticipants,
    InvalidConfiguration,
    InvalidScoringInput,
    SimulationNotFound,
)
from .messaging import ConnectionManager
from .models import SimulationMode, SimulationStatus
from .persistence import serialize_snapshot
from .runner import ParticipantSlot, SessionConfig, SessionRunner, default_policy
from .scenarios import get_scenario, list_scenarios
from .schemas import ParticipantIn, PolicyIn, ScenarioSimulationCreate, ScoreRequest, SimulationCreate, StepRequest
from .turns import GenerationPolicy
from .world import Item, Position


@asynccontextmanager
async def lifespan(_app: FastAPI):
    init_db()
    yield


app = FastAPI(title="Doppelganger Simulation Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ws_manager = ConnectionManager()
runner = SessionRunner(ws_manager)


def _http_error(exc: DoppelgangerError) -> HTTPException:
    if isinstance(exc, (IdentityNotFound, SimulationNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InsufficientParticipants, InvalidConfiguration, InvalidScoringInput)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, GenerationError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@app.get("/api/v1/identities")
def list_identities():
    return [
        {"user_id": identity.user_id, "name": identity.name, "bit_name": identity.display_name}
        for identity in runner.profiles.list_eligible_identities()
    ]


@app.get("/api/v1/scenarios")
def get_scenarios():
    return list_scenarios()


@app.post("/api/v1/scenarios/{scenario_id}/simulations")
async def create_simulation_from_scenario(scenario_id: str, payload: ScenarioSimulationCreate):
    scenario = get_scenario(scenario_id)
    if not scenario:
        raise HTTPException(status_code=404, detail="Scenario not found")
    mode = SimulationMode(payload.mode or scenario["mode"])
    config = SessionConfig(
        participants=_slots(payload.participants),
        items=[Item.from_dict(raw) for raw in scenario["items"]],
        goal=scenario["goal"],
        repetitions=payload.repetitions or scenario["repetitions"],
        name=scenario["title"],
        mode=mode,
        owner_user_id=payload.owner_user_id,
    )
    simulation_id = await _configure(config, start=payload.start)
    return {"scenario_id": scenario_id, **_simulation_view(simulation_id)}


@app.post("/api/v1/simulations")
async def create_simulation(payload: SimulationCreate):
    mode = SimulationMode(payload.mode)
    config = SessionConfig(
        participants=_slots(payload.participants),
        items=[Item(name=item.name, x=item.x, y=item.y) for item in payload.items],
        goal=payload.goal,
        repetitions=payload.repetitions,
        name=payload.name,
        mode=mode,
        policy=_policy(mode, payload.policy),
        score_runs=payload.score_runs,
        owner_user_id=payload.owner_user_id,
    )
    simulation_id = await _configure(config, start=payload.start)
    return _simulation_view(simulation_id)


@app.post("/api/v1/simulations/step")
async def step_simulation(payload: StepRequest):
    try:
        return await runner.step(
            agents=[
                (
                    agent.user_id,
                    agent.role,
                    Position(x=agent.x, y=agent.y) if agent.x is not None and agent.y is not None else None,
                )
                for agent in payload.agents
            ],
            items=[Item(name=item.name, x=item.x, y=item.y) for item in payload.items],
            history=payload.history,
            goal=payload.goal,
            round_number=payload.round_number,
        )
    except DoppelgangerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/v1/simulations/score")
async def score_pairings(payload: ScoreRequest):
    try:
        results = await runner.score(
            payload.goal,
            payload.subject_user_id,
            [(pairing.user_id, pairing.transcript) for pairing in payload.pairings],
        )
    except DoppelgangerError as exc:
        raise _http_error(exc) from exc
    return {"goal": payload.goal, "subject_user_id": payload.subject_user_id, "scores": [r.to_dict() for r in results]}


@app.get("/api/v1/simulations/{simulation_id}")
def get_simulation(simulation_id: int):
    return _simulation_view(simulation_id)


@app.post("/api/v1/simulations/{simulation_id}/start")
async def start_simulation(simulation_id: int):
    _require_pending(simulation_id)
    try:
        await runner.start(simulation_id)
    except DoppelgangerError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "status": SimulationStatus.running}


@app.post("/api/v1/simulations/{simulation_id}/run")
async def run_simulation(simulation_id: int):
    _require_pending(simulation_id)
    try:
        outcome = await runner.run(simulation_id)
    except DoppelgangerError as exc:
        raise _http_error(exc) from exc
    return outcome.to_dict()


@app.post("/api/v1/simulations/{simulation_id}/stop")
async def stop_simulation(simulation_id: int, graceful: bool = False):
    try:
        await runner.stop(simulation_id, graceful=graceful)
    except DoppelgangerError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, **runner.get_run_status(simulation_id)}


@app.get("/api/v1/simulations/{simulation_id}/status")
def get_simulation_status(simulation_id: int):
    try:
        return runner.get_run_status(simulation_id)
    except DoppelgangerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/v1/simulations/{simulation_id}/runs/{run_index}")
def get_simulation_run(simulation_id: int, run_index: int):
    run = runner.store.get_run(simulation_id, run_index)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    snapshots = runner.get_snapshots(simulation_id, run_index)
    return {"run": run.model_dump(), "snapshots": [serialize_snapshot(state) for state in snapshots]}


@app.websocket("/ws/simulations/{simulation_id}")
async def simulation_ws(websocket: WebSocket, simulation_id: int):
    await ws_manager.connect(simulation_id, websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(simulation_id, websocket)


async def _configure(config: SessionConfig, *, start: bool) -> int:
    try:
        if start:
            return await runner.configure_and_start(config)
        return runner.configure(config)
    except DoppelgangerError as exc:
        raise _http_error(exc) from exc


def _slots(participants: list[ParticipantIn]) -> list[ParticipantSlot]:
    return [ParticipantSlot(user_id=p.user_id, is_random=p.is_random) for p in participants]


def _policy(mode: SimulationMode, payload: PolicyIn | None) -> EnginePolicy:
    policy = default_policy(mode)
    if payload is None:
        return policy
    if payload.generation is not None:
        policy.generation = GenerationPolicy(payload.generation)
    if payload.fidelity_guard is not None:
        policy.fidelity_guard = payload.fidelity_guard
    if payload.pairing is not None:
        policy.pairing = PairingPolicy(payload.pairing)
    if payload.max_rounds is not None:
        policy.max_rounds = payload.max_rounds
    return policy


def _require_pending(simulation_id: int) -> None:
    try:
        sim = runner.store.get_simulation(simulation_id)
    except SimulationNotFound as exc:
        raise _http_error(exc) from exc
    if sim.status != SimulationStatus.pending:
        raise HTTPException(status_code=409, detail=f"Cannot start simulation in status={sim.status.value}")


def _simulation_view(simulation_id: int) -> dict[str, Any]:
    try:
        sim = runner.store.get_simulation(simulation_id)
    except SimulationNotFound as exc:
        raise _http_error(exc) from exc
    return {
        "simulation": sim.model_dump(),
        "participants": [p.model_dump() for p in runner.store.list_participants(simulation_id)],
        "runs": [r.model_dump() for r in runner.store.list_runs(simulation_id)],
    }
