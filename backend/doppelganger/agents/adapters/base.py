"""Shared data contracts for pluggable turn and score generation adapters."""

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

ACTION_TYPES = ("none", "move", "interact")


@dataclass
class TurnAction:
    type: str = "none"
    target: Optional[str] = None
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TurnContext:
    """Bounded context an adapter receives for one agent turn."""

    goal: str
    round_number: int
    max_rounds: int
    agent_role: str
    agent_name: str
    agent_owner: str
    counterpart_role: str
    counterpart_name: str
    agent_position: dict[str, float]
    counterpart_position: dict[str, float]
    items: list[dict[str, Any]]
    conversation: list[str]
    agent_profile: list[str] = field(default_factory=list)
    agent_knowledge: list[str] = field(default_factory=list)
    training_utterances: list[str] = field(default_factory=list)
    counterpart_profile: list[str] = field(default_factory=list)
    fidelity_guard: bool = False


@dataclass
class TurnDecision:
    """Normalized adapter output consumed by the turn generator."""

    utterance: str
    action: TurnAction = field(default_factory=TurnAction)


@dataclass
class ScorePairing:
    user_id: int
    name: str
    bit_name: str
    profile: list[str]
    transcript: str


@dataclass
class ScoreContext:
    goal: str
    subject_user_id: int
    subject_name: str
    subject_profile: list[str]
    pairings: list[ScorePairing]


@dataclass
class ScoreResult:
    user_id: int
    score: int
    reasoning: str
    dealbreaker: bool = False
    subject_user_id: Optional[int] = None
    rank: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class GenerationAdapter:
    """Minimal interface implemented by all generation backends."""

    async def generate_turn(self, ctx: TurnContext) -> TurnDecision:
        raise NotImplementedError

    async def generate_scores(self, ctx: ScoreContext) -> list[ScoreResult]:
        raise NotImplementedError
