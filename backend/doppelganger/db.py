"""Database bootstrap for SQLModel storage.

Exposes the shared engine, the session factory handed to the runner and
profile provider, and the table (re)creation helpers used by the FastAPI
lifespan and tests.
"""

from pathlib import Path

from sqlmodel import Session, SQLModel, create_engine

from .config import settings


def _ensure_sqlite_parent_dir(database_url: str) -> None:
    """Create the parent directory of a file-based SQLite URL."""

    if not database_url.startswith("sqlite:///"):
        return
    raw_path = database_url[len("sqlite:///") :].split("?", 1)[0].strip()
    if not raw_path or raw_path == ":memory:" or raw_path.startswith("file:"):
        return
    parent = Path(raw_path).expanduser().parent
    if str(parent) and not parent.exists():
        parent.mkdir(parents=True, exist_ok=True)


_ensure_sqlite_parent_dir(settings.database_url)
engine = create_engine(settings.database_url, echo=False)


def new_session() -> Session:
    """Open a session on the shared engine; callers own closing it."""

    return Session(engine, expire_on_commit=False)


def init_db() -> None:
    """Create all registered SQLModel tables."""

    from . import models  # noqa: F401
    SQLModel.metadata.create_all(engine)


def reset_db() -> None:
    """Drop and recreate every table."""

    from . import models  # noqa: F401
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
