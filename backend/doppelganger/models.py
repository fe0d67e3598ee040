from enum import Enum
from typing import Any, Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, JSON, SQLModel

from .utils import utc_iso_now


class SimulationStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    stopped = "stopped"


TERMINAL_STATUSES = frozenset({SimulationStatus.completed, SimulationStatus.failed, SimulationStatus.stopped})


class SimulationMode(str, Enum):
    group = "group"
    pairwise = "pairwise"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    bit_name: str = ""
    email: Optional[str] = None
    is_trained: bool = Field(default=False)
    profile_data: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    knowledge_base: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    created_at: str = Field(default_factory=utc_iso_now)


class TrainingUtterance(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    user_message: str
    agent_response: str = ""
    created_at: str = Field(default_factory=utc_iso_now)


class Simulation(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_user_id: Optional[int] = Field(default=None, index=True)
    name: str = "Untitled Simulation"
    goal: str = ""
    mode: SimulationMode = Field(default=SimulationMode.group)
    num_runs: int = Field(default=1)
    items: list[dict[str, Any]] = Field(default_factory=list, sa_type=JSON)
    policy: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    score_runs: bool = Field(default=True)
    status: SimulationStatus = Field(default=SimulationStatus.pending)
    current_run_index: int = Field(default=0)
    error: Optional[str] = None
    created_at: str = Field(default_factory=utc_iso_now)
    completed_at: Optional[str] = None


class SimulationParticipant(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    simulation_id: int = Field(index=True)
    slot: int
    role: str
    user_id: Optional[int] = None
    is_random: bool = Field(default=False)


class SimulationRun(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    simulation_id: int = Field(index=True)
    run_index: int
    repetition_index: int = Field(default=0)
    pairing_slot: Optional[int] = None
    status: SimulationStatus = Field(default=SimulationStatus.pending)
    error: Optional[str] = None
    participants: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    rounds: int = Field(default=0)
    scores: list[dict[str, Any]] = Field(default_factory=list, sa_type=JSON)
    score_error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class SimulationState(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("run_id", "state_index"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: int = Field(index=True)
    state_index: int
    agent_positions: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    transcript: str = ""
    items: list[dict[str, Any]] = Field(default_factory=list, sa_type=JSON)
    narrative_events: list[str] = Field(default_factory=list, sa_type=JSON)
    timestamp: int = Field(default=0)
