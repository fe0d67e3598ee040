"""Pydantic request schemas for the REST surface."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import settings


class ItemIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=80)
    x: float
    y: float

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("item name must not be blank")
        return value

    @model_validator(mode="after")
    def check_inside_board(self) -> "ItemIn":
        if not (0 <= self.x <= settings.board_width and 0 <= self.y <= settings.board_height):
            raise ValueError(
                f"item {self.name} must lie inside the {settings.board_width:g}x{settings.board_height:g} board"
            )
        return self


def _unique_item_names(items: list[ItemIn]) -> list[ItemIn]:
    names = [item.name.lower() for item in items]
    if len(set(names)) != len(names):
        raise ValueError("item names must be unique")
    return items


class ParticipantIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: int | None = None
    is_random: bool = False

    @model_validator(mode="after")
    def check_identity_or_random(self) -> "ParticipantIn":
        if not self.is_random and self.user_id is None:
            raise ValueError("participant needs user_id unless is_random is set")
        return self


class PolicyIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    generation: Literal["fallback", "strict"] | None = None
    fidelity_guard: bool | None = None
    pairing: Literal["first_other", "previous_speaker"] | None = None
    max_rounds: int | None = Field(default=None, ge=1, le=50)


class SimulationCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="Untitled Simulation", max_length=200)
    goal: str = Field(default="", max_length=2000)
    mode: Literal["group", "pairwise"] = "group"
    participants: list[ParticipantIn] = Field(min_length=2)
    items: list[ItemIn] = Field(default_factory=list)
    repetitions: int = Field(default=1, ge=1, le=50)
    policy: PolicyIn | None = None
    score_runs: bool = True
    owner_user_id: int | None = None
    start: bool = False

    @field_validator("items")
    @classmethod
    def check_unique_items(cls, items: list[ItemIn]) -> list[ItemIn]:
        return _unique_item_names(items)


class ScenarioSimulationCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    participants: list[ParticipantIn] = Field(min_length=2)
    repetitions: int | None = Field(default=None, ge=1, le=50)
    mode: Literal["group", "pairwise"] | None = None
    owner_user_id: int | None = None
    start: bool = False


class StepAgent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: int
    role: str = Field(pattern=r"^agent\d+$")
    x: float | None = None
    y: float | None = None


class StepRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    agents: list[StepAgent] = Field(min_length=2)
    items: list[ItemIn] = Field(default_factory=list)
    history: str = ""
    goal: str = Field(default="", max_length=2000)
    round_number: int = Field(default=1, ge=1)

    @field_validator("items")
    @classmethod
    def check_unique_items(cls, items: list[ItemIn]) -> list[ItemIn]:
        return _unique_item_names(items)

    @field_validator("agents")
    @classmethod
    def check_unique_roles(cls, agents: list[StepAgent]) -> list[StepAgent]:
        roles = [agent.role for agent in agents]
        if len(set(roles)) != len(roles):
            raise ValueError("agent roles must be unique")
        return agents


class PairingIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: int
    transcript: str = Field(min_length=1)


class ScoreRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    goal: str
    subject_user_id: int
    pairings: list[PairingIn]
