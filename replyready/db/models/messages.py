"""Message model: the pipeline's central entity."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from replyready.db.base import Base
from replyready.db.enums import SendStatus
from replyready.db.models._common import now_utc
from replyready.db.types import JSONType


class Message(Base):
    """
    Inbound mail, outbound draft, or sent reply.

    `status` is the state-machine cursor; it only moves through
    `services.pipeline.state_machine.advance_status`. The
    (`send_status`, `send_locked_at`) pair is the send lock.
    `email_type`/`classification_confidence` cache the latest
    ClassificationArtifact.
    """

    __tablename__ = "messages"
    __table_args__ = (
        Index("uq_messages_provider_message_id", "provider_message_id", unique=True),
        Index("idx_messages_status_timestamp", "status", "timestamp"),
        Index("idx_messages_lead_timestamp", "lead_id", "timestamp"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leads.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    sender: Mapped[str] = mapped_column(String(10), nullable=False)

    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    snippet: Mapped[str | None] = mapped_column(Text, nullable=True)
    from_address: Mapped[str | None] = mapped_column(String(320), nullable=True)
    to_address: Mapped[str | None] = mapped_column(String(320), nullable=True)

    # Provider ids; provider_message_id is the natural dedupe key
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_thread_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    rfc_message_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Draft threading: inbound message this draft answers
    reply_to_message_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("messages.id", ondelete="SET NULL"), nullable=True
    )
    draft_revision: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    attachments: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    timestamp: Mapped[datetime] = mapped_column(default=now_utc, nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    approval_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    email_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    classification_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)

    send_status: Mapped[str] = mapped_column(
        String(20), default=SendStatus.PENDING.value, nullable=False
    )
    send_locked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    send_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=now_utc, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=now_utc, onupdate=now_utc, nullable=False)
