"""FastAPI dependencies for database access and settings."""

from typing import Generator

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from replyready.core.config import Settings, get_settings
from replyready.db.session import SessionLocal


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_app_settings() -> Settings:
    return get_settings()


def verify_internal_secret(
    x_internal_secret: str | None = Header(default=None),
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if x_internal_secret != expected:
        raise HTTPException(status_code=403, detail="Invalid internal secret")
