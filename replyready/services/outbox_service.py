"""Operator actions on drafts: unlock, retry, approve, stuck list, draft retry."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy.orm import Session

from replyready.core.structured_logging import build_log_context
from replyready.db.enums import MessageStatus, Sender, SendStatus
from replyready.db.models import Agent, Message
from replyready.services.pipeline.state_machine import advance_status

logger = logging.getLogger(__name__)

ADMIN_UNLOCK_ERROR = "admin_unlock"


class OutboxActionError(ValueError):
    """Action not applicable to the message in its current state."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _get_draft(db: Session, message_id: UUID) -> Message:
    draft = db.get(Message, message_id)
    if draft is None:
        raise LookupError(f"Message {message_id} not found")
    if draft.sender != Sender.AGENT.value:
        raise OutboxActionError("Not an outbound draft")
    return draft


def unlock_send(db: Session, message_id: UUID) -> Message:
    """Clear a stuck send lock; the draft becomes retryable (send_status=failed)."""
    draft = _get_draft(db, message_id)
    if draft.send_status == SendStatus.SENT.value:
        raise OutboxActionError("Message already sent")
    (
        db.query(Message)
        .filter(Message.id == message_id, Message.send_status != SendStatus.SENT.value)
        .update(
            {
                Message.send_locked_at: None,
                Message.send_status: SendStatus.FAILED.value,
                Message.send_error: ADMIN_UNLOCK_ERROR,
                Message.updated_at: _now_utc(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    db.refresh(draft)
    logger.info("Send lock cleared by operator", extra=build_log_context(message_id=message_id, stage="send"))
    return draft


def retry_send(db: Session, message_id: UUID) -> Message:
    """
    Re-queue a failed draft: ready_to_send when the agent has autosend and no
    approval is required, else the approval queue.
    """
    draft = _get_draft(db, message_id)
    if draft.send_status != SendStatus.FAILED.value or draft.send_locked_at is not None:
        raise OutboxActionError("Only unlocked, failed sends can be retried")

    agent = db.get(Agent, draft.agent_id)
    autosend = bool(agent and agent.autosend_enabled) and not draft.approval_required
    target = MessageStatus.READY_TO_SEND if autosend else MessageStatus.NEEDS_APPROVAL
    current = MessageStatus(draft.status)
    fields = {"send_status": SendStatus.PENDING.value, "send_error": None}

    if current == target:
        (
            db.query(Message)
            .filter(Message.id == message_id, Message.send_status == SendStatus.FAILED.value)
            .update({getattr(Message, name): value for name, value in fields.items()}, synchronize_session=False)
        )
        db.commit()
    elif current in (MessageStatus.READY_TO_SEND, MessageStatus.NEEDS_APPROVAL):
        if not advance_status(db, message_id, current, target, **fields):
            raise OutboxActionError("Message changed state; retry again")
    else:
        raise OutboxActionError(f"Cannot retry a draft in status {current.value}")

    db.refresh(draft)
    return draft


def approve(db: Session, message_id: UUID) -> Message:
    """Operator approval: needs_approval -> ready_to_send."""
    draft = _get_draft(db, message_id)
    advanced = advance_status(
        db,
        message_id,
        MessageStatus.NEEDS_APPROVAL,
        MessageStatus.READY_TO_SEND,
        approval_required=False,
    )
    if not advanced:
        raise OutboxActionError(f"Cannot approve a draft in status {draft.status}")
    db.refresh(draft)
    return draft


def list_stuck(db: Session, *, older_than_minutes: int) -> list[Message]:
    cutoff = _now_utc() - timedelta(minutes=older_than_minutes)
    return (
        db.query(Message)
        .filter(
            Message.send_status == SendStatus.SENDING.value,
            Message.send_locked_at.is_not(None),
            Message.send_locked_at <= cutoff,
        )
        .order_by(Message.send_locked_at.asc())
        .all()
    )


def retry_draft(db: Session, message_id: UUID) -> Message:
    """failed_draft -> route_resolved, so the draft stage picks it up again."""
    message = db.get(Message, message_id)
    if message is None:
        raise LookupError(f"Message {message_id} not found")
    if not advance_status(db, message_id, MessageStatus.FAILED_DRAFT, MessageStatus.ROUTE_RESOLVED):
        raise OutboxActionError(f"Cannot retry drafting a message in status {message.status}")
    db.refresh(message)
    return message
