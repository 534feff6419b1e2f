"""Mail provider connection (OAuth credential + sync cursor)."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from replyready.db.base import Base
from replyready.db.enums import ConnectionStatus
from replyready.db.models._common import now_utc

if TYPE_CHECKING:
    from replyready.db.models.agents import Agent


class Connection(Base):
    """
    Per-agent, per-provider mailbox connection.

    `sync_cursor` is the Gmail historyId (stored as text) or the Graph delta
    link; `watch_expiration` tracks the Gmail watch or Graph subscription.
    Tokens are Fernet-encrypted.
    """

    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("agent_id", "provider", name="uq_connections_agent_provider"),
        Index("idx_connections_mailbox", "provider", "mailbox_address"),
        Index("idx_connections_subscription", "subscription_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    mailbox_address: Mapped[str] = mapped_column(String(320), nullable=False)

    access_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    sync_cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    watch_expiration: Mapped[datetime | None] = mapped_column(nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(30), default=ConnectionStatus.CONNECTED.value, nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_backfill_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=now_utc, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=now_utc, onupdate=now_utc, nullable=False)

    agent: Mapped["Agent"] = relationship()
