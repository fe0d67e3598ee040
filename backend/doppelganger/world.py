"""Shared mutable world state for one simulation run.

A `WorldState` is owned by exactly one orchestrator at a time. Turn
generation only ever receives copies of the pieces it needs, and snapshots
are deep copies, so nothing outside the orchestrator can alias the live
positions or transcript.
"""

from dataclasses import dataclass, field
from typing import Any

from .utils import circle_points, clamp

DEFAULT_BOARD_WIDTH = 600.0
DEFAULT_BOARD_HEIGHT = 400.0
START_RADIUS_RATIO = 0.25
MOVE_OFFSET = 10.0
GATHER_OFFSET = 20.0

# agent1 sits up-left of an item, agent2 down-right, and so on.
_ROLE_OFFSETS = ((-1.0, -1.0), (1.0, 1.0), (1.0, -1.0), (-1.0, 1.0))


@dataclass
class Position:
    x: float
    y: float

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Position":
        return cls(x=float(raw["x"]), y=float(raw["y"]))


@dataclass(frozen=True)
class Item:
    name: str
    x: float
    y: float

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Item":
        return cls(name=str(raw["name"]).strip(), x=float(raw["x"]), y=float(raw["y"]))


@dataclass
class TurnRecord:
    """Structured view of one agent turn, parallel to the transcript lines."""

    round_number: int
    role: str
    speaker: str
    utterance: str
    action_type: str = "none"
    action_target: str | None = None
    narrative_event: str | None = None
    fallback: bool = False


@dataclass(frozen=True)
class WorldSnapshot:
    agent_positions: dict[str, dict[str, float]]
    transcript: str
    items: list[dict[str, Any]]
    narrative_events: list[str]
    timestamp: int


def role_for_index(index: int) -> str:
    return f"agent{index + 1}"


def role_offset(role: str, distance: float = MOVE_OFFSET) -> tuple[float, float]:
    """Small per-role delta so agents converging on one item do not overlap."""

    try:
        index = max(0, int(role.removeprefix("agent")) - 1)
    except ValueError:
        index = 0
    dx, dy = _ROLE_OFFSETS[index % len(_ROLE_OFFSETS)]
    scale = 1 + index // len(_ROLE_OFFSETS)
    return dx * distance * scale, dy * distance * scale


@dataclass
class WorldState:
    items: list[Item]
    agent_positions: dict[str, Position]
    width: float = DEFAULT_BOARD_WIDTH
    height: float = DEFAULT_BOARD_HEIGHT
    history_lines: list[str] = field(default_factory=list)
    narrative_events: list[str] = field(default_factory=list)
    turns: list[TurnRecord] = field(default_factory=list)

    @classmethod
    def initial(
        cls,
        roles: list[str],
        items: list[Item],
        *,
        width: float = DEFAULT_BOARD_WIDTH,
        height: float = DEFAULT_BOARD_HEIGHT,
    ) -> "WorldState":
        """Place agents evenly on a circle inscribed in the board."""

        radius = min(width, height) * START_RADIUS_RATIO
        points = circle_points(len(roles), width / 2, height / 2, radius)
        positions = {role: Position(x=px, y=py) for role, (px, py) in zip(roles, points)}
        return cls(items=list(items), agent_positions=positions, width=width, height=height)

    @property
    def transcript(self) -> str:
        return "\n".join(self.history_lines)

    def trailing_lines(self, limit: int) -> list[str]:
        return list(self.history_lines[-limit:]) if limit > 0 else []

    def find_item(self, name: str | None) -> Item | None:
        if not name:
            return None
        wanted = name.strip().lower()
        for item in self.items:
            if item.name.lower() == wanted:
                return item
        return None

    def position_of(self, role: str) -> Position:
        pos = self.agent_positions[role]
        return Position(x=pos.x, y=pos.y)

    def place_agent(self, role: str, x: float, y: float) -> Position:
        pos = Position(x=clamp(x, 0.0, self.width), y=clamp(y, 0.0, self.height))
        self.agent_positions[role] = pos
        return pos

    def move_agent_to_item(self, role: str, item: Item) -> Position:
        dx, dy = role_offset(role)
        return self.place_agent(role, item.x + dx, item.y + dy)

    def gather_agents_at_item(self, roles: list[str], item: Item) -> None:
        """Spread `roles` evenly around `item` at the gather offset."""

        for role, (px, py) in zip(roles, circle_points(len(roles), item.x, item.y, GATHER_OFFSET)):
            self.place_agent(role, px, py)

    def append_utterance(self, speaker: str, text: str) -> None:
        self.history_lines.append(f"{speaker}: {text}")

    def append_narrative(self, event: str) -> None:
        self.narrative_events.append(event)
        self.history_lines.append(f"[{event}]")

    def snapshot(self, round_number: int) -> WorldSnapshot:
        return WorldSnapshot(
            agent_positions={role: pos.to_dict() for role, pos in self.agent_positions.items()},
            transcript=self.transcript,
            items=[item.to_dict() for item in self.items],
            narrative_events=list(self.narrative_events),
            timestamp=round_number,
        )
