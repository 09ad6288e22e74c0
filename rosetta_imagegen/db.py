"""Database engine and session management for the local build history.

The history (build records, shipped binaries and image tag pointers) lives
in a single SQLite file next to the build directories by default. This
module creates its engine and sessions and the declarative base for the
ORM models in rosetta_imagegen.builds.models.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from rosetta_imagegen.config import get_settings


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def get_engine(db_url: str | None = None) -> Any:
    """Create and return a SQLAlchemy engine.

    Args:
        db_url: Database URL. If not provided, uses settings default.

    Returns:
        SQLAlchemy Engine instance.
    """
    if db_url is None:
        settings = get_settings()
        db_url = settings.db_url

    # SQLite-specific connect args for better concurrency
    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        db_file = db_url.removeprefix("sqlite:///")
        if db_file != db_url and db_file and db_file != ":memory:":
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(
        db_url,
        connect_args=connect_args,
        echo=False,
    )


def get_session_factory(engine: Any | None = None) -> sessionmaker[Session]:
    """Create and return a session factory.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.

    Returns:
        Session factory (sessionmaker).
    """
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Args:
        session_factory: Optional session factory. Creates one if not provided.

    Yields:
        SQLAlchemy Session instance.
    """
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Any | None = None) -> None:
    """Create all tables defined by ORM models.

    The local build history is a single SQLite file; tables are created
    on first use by the CLI and the web app.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.
    """
    # Import all models to ensure they are registered with SQLAlchemy's mapper
    # before creating tables. This resolves relationship references.
    from rosetta_imagegen.builds import models as builds_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


def drop_all_tables(engine: Any | None = None) -> None:
    """Drop all tables defined by ORM models.

    WARNING: This is destructive. Only use in testing.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.
    """
    if engine is None:
        engine = get_engine()
    Base.metadata.drop_all(bind=engine)


__all__ = [
    "Base",
    "create_all_tables",
    "drop_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
