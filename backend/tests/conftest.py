"""Shared pytest fixtures: reset database, force mock AI, seed identities."""

import pytest

from doppelganger.config import settings
from doppelganger.db import new_session, reset_db
from doppelganger.models import TrainingUtterance, User


@pytest.fixture(autouse=True)
def reset_database():
    original_mode = settings.ai_mode
    original_interval = settings.round_interval_ms
    settings.ai_mode = "mock"
    settings.round_interval_ms = 0
    reset_db()
    yield
    settings.ai_mode = original_mode
    settings.round_interval_ms = original_interval


@pytest.fixture
def make_user():
    def _make(
        name: str,
        bit_name: str = "",
        *,
        profile: dict | None = None,
        knowledge: dict | None = None,
        utterances: list[str] | None = None,
        trained: bool = True,
    ) -> int:
        with new_session() as session:
            user = User(
                name=name,
                bit_name=bit_name or f"{name}Bit",
                email=f"{name.lower()}@example.com",
                is_trained=trained,
                profile_data=profile or {},
                knowledge_base=knowledge or {},
            )
            session.add(user)
            session.commit()
            session.refresh(user)
            for text in utterances or []:
                session.add(TrainingUtterance(user_id=user.id, user_message=text))
            session.commit()
            return int(user.id)

    return _make
