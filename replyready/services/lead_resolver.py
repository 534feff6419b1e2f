"""Maps a provider thread to a Lead; only inbound mail may create one."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replyready.core.structured_logging import build_log_context
from replyready.db.enums import Sender
from replyready.db.models import Lead
from replyready.services.mail_envelope import MailEnvelope
from replyready.services.mail_signals import is_no_reply_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeadDetails:
    """Fields recorded on a newly created Lead (and refreshed on touch)."""

    email: str | None = None
    name: str | None = None
    subject: str | None = None
    email_type: str | None = None
    conversation_id: str | None = None
    preview: str | None = None
    timestamp: datetime | None = None


def pick_lead_email(envelope: MailEnvelope, *, mailbox_address: str | None, prefer_reply_to: bool) -> str | None:
    """
    Address replies should go to. Portal relays and no-reply senders answer
    through Reply-To; the agent's own mailbox is never a lead address.
    """
    mailbox = (mailbox_address or "").strip().lower()
    from_address = envelope.from_address
    reply_to = envelope.reply_to_address

    if prefer_reply_to or is_no_reply_address(from_address):
        candidates = [reply_to, from_address]
    else:
        candidates = [from_address, reply_to]

    for candidate in candidates:
        if not candidate or "@" not in candidate:
            continue
        if candidate == mailbox or is_no_reply_address(candidate):
            continue
        return candidate
    return None


def find_lead(db: Session, *, agent_id: UUID, thread_id: str) -> Lead | None:
    return (
        db.query(Lead)
        .filter(Lead.agent_id == agent_id, Lead.provider_thread_id == thread_id)
        .first()
    )


def _touch(lead: Lead, details: LeadDetails | None) -> None:
    timestamp = (details.timestamp if details else None) or datetime.now(timezone.utc)
    if lead.last_message_at is None or timestamp >= lead.last_message_at:
        lead.last_message_at = timestamp
        if details and details.preview:
            lead.last_message_preview = details.preview[:500]
    if details and details.conversation_id and not lead.conversation_id:
        lead.conversation_id = details.conversation_id


def resolve(
    db: Session,
    *,
    agent_id: UUID,
    provider: str,
    thread_id: str | None,
    sender: Sender,
    details: LeadDetails | None = None,
) -> Lead | None:
    """
    Existing lead for (agent, thread) is touched and returned. A missing lead
    is created for inbound mail only; outbound mail on an unknown thread
    returns None and the caller skips the message.
    """
    if not thread_id:
        return None

    lead = find_lead(db, agent_id=agent_id, thread_id=thread_id)
    if lead is not None:
        _touch(lead, details)
        db.commit()
        return lead

    if sender == Sender.AGENT:
        logger.info(
            "Outbound message on unknown thread; no lead created",
            extra=build_log_context(agent_id=agent_id, provider=provider),
        )
        return None

    details = details or LeadDetails()
    lead = Lead(
        agent_id=agent_id,
        provider=provider,
        provider_thread_id=thread_id,
        conversation_id=details.conversation_id,
        email=details.email,
        name=details.name,
        subject=details.subject,
        email_type=details.email_type,
        last_message_at=details.timestamp or datetime.now(timezone.utc),
        last_message_preview=(details.preview or "")[:500] or None,
        suggested_property_ids=[],
    )
    db.add(lead)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent ingestion created the same thread first.
        db.rollback()
        lead = find_lead(db, agent_id=agent_id, thread_id=thread_id)
        if lead is None:
            raise
        _touch(lead, details)
        db.commit()
        return lead

    db.refresh(lead)
    logger.info("Lead created", extra=build_log_context(agent_id=agent_id, provider=provider))
    return lead
