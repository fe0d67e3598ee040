"""Agent profile provider backed by the user tables.

The simulation core only sees `Identity` values; it never reads user rows
directly and never copies identity data into world state.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlmodel import Session, select

from .errors import IdentityNotFound
from .models import TrainingUtterance, User

SPARSE_KNOWLEDGE_THRESHOLD = 5
PROFILE_FIELDS = ("age", "gender_identity", "sexual_orientation", "race", "height")


@dataclass(frozen=True)
class Identity:
    user_id: int
    name: str
    bit_name: str
    profile: dict[str, Any] = field(default_factory=dict)
    knowledge_base: dict[str, Any] = field(default_factory=dict)
    training_utterances: tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        return self.bit_name or self.name

    def knowledge_facts(self) -> list[str]:
        """Flatten the nested knowledge base into `section.key: value` lines."""

        facts: list[str] = []
        _flatten_knowledge(self.knowledge_base, "", facts)
        return facts

    @property
    def is_sparse(self) -> bool:
        return len(self.knowledge_facts()) < SPARSE_KNOWLEDGE_THRESHOLD

    def profile_lines(self) -> list[str]:
        lines = [f"Name: {self.name}"]
        for key in PROFILE_FIELDS:
            value = self.profile.get(key)
            if value not in (None, ""):
                lines.append(f"{key.replace('_', ' ').capitalize()}: {value}")
        return lines


def _flatten_knowledge(node: Any, prefix: str, out: list[str]) -> None:
    if isinstance(node, dict):
        for key, value in node.items():
            _flatten_knowledge(value, f"{prefix}.{key}" if prefix else str(key), out)
    elif isinstance(node, list):
        for value in node:
            if isinstance(value, (dict, list)):
                _flatten_knowledge(value, prefix, out)
            elif str(value).strip():
                out.append(f"{prefix}: {str(value).strip()}")
    elif node not in (None, "") and str(node).strip():
        out.append(f"{prefix}: {str(node).strip()}")


class ProfileProvider:
    """Read-only identity lookups over a session factory."""

    def __init__(self, session_factory: Callable[[], Session], *, utterance_limit: int = 50) -> None:
        self._session_factory = session_factory
        self._utterance_limit = utterance_limit

    def get_identity(self, user_id: int) -> Identity:
        with self._session_factory() as session:
            user = session.get(User, user_id)
            if not user:
                raise IdentityNotFound(user_id)
            return self._to_identity(session, user)

    def list_eligible_identities(self) -> list[Identity]:
        """Return trained identities in id order."""

        with self._session_factory() as session:
            users = session.exec(select(User).where(User.is_trained == True).order_by(User.id)).all()  # noqa: E712
            return [self._to_identity(session, user) for user in users]

    def _to_identity(self, session: Session, user: User) -> Identity:
        stmt = (
            select(TrainingUtterance)
            .where(TrainingUtterance.user_id == user.id)
            .order_by(TrainingUtterance.id)
            .limit(self._utterance_limit)
        )
        utterances = tuple(row.user_message for row in session.exec(stmt).all() if row.user_message.strip())
        return Identity(
            user_id=int(user.id or 0),
            name=user.name,
            bit_name=user.bit_name,
            profile=dict(user.profile_data or {}),
            knowledge_base=dict(user.knowledge_base or {}),
            training_utterances=utterances,
        )
