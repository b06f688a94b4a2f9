"""SQLModel database engine and session management."""

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from session_guard.config import settings


def make_engine(database_url: str) -> Engine:
    """Create an engine; SQLite needs check_same_thread=False, PostgreSQL does not."""
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # In-memory databases live on a single connection
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, echo=False, connect_args=connect_args, **kwargs)


engine = make_engine(settings.database_url)


def create_db_and_tables(bind: Engine | None = None):
    """Create all tables and indexes. Called on startup."""
    import session_guard.models  # noqa: F401  (register tables on the metadata)

    SQLModel.metadata.create_all(bind or engine)
