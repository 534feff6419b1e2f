"""Externally configurable prompts."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Float, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from replyready.db.base import Base
from replyready.db.models._common import now_utc


class AiPrompt(Base):
    """Versioned prompt; the active row per key overrides the built-in default."""

    __tablename__ = "ai_prompts"
    __table_args__ = (
        UniqueConstraint("key", "version", name="uq_ai_prompts_key_version"),
        Index("idx_ai_prompts_key_active", "key", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    user_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    temperature: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=now_utc, nullable=False)
