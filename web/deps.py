"""Request dependencies for FastAPI.

Provides a database session and the effective pipeline to route handlers
via FastAPI dependency injection.

Transaction boundaries are managed here:
- Session is created at request start
- On success (no exception): session is committed automatically
- On exception: session is rolled back automatically
- Session is closed after request completes
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

from fastapi import Depends, HTTPException, Request
from fastapi import status as http_status
from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from rosetta_imagegen.config import get_settings
from rosetta_imagegen.pipeline.io import get_pipeline as load_effective_pipeline
from rosetta_imagegen.pipeline.schema import PipelineSchema


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Get session factory from app state.

    Args:
        request: FastAPI request object.

    Returns:
        SQLAlchemy session factory.
    """
    factory: Any = request.app.state.session_factory
    return factory  # type: ignore[no-any-return]


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Provide a database session for a request.

    Yields:
        Database session.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_pipeline() -> PipelineSchema:
    """Load the configured pipeline for a request.

    Raises:
        HTTPException: 400 if the configured pipeline file is missing or invalid.
    """
    try:
        return load_effective_pipeline(get_settings())
    except (OSError, ValidationError, ValueError) as e:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_pipeline", "message": str(e)},
        ) from None
