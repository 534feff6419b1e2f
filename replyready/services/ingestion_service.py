"""Per-message ingestion: dedupe, safety gate, lead resolution, row insert."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replyready.core.config import Settings
from replyready.core.structured_logging import build_log_context
from replyready.db.enums import Decision, MessageStatus, Sender, SendStatus
from replyready.db.models import ClassificationArtifact, Connection, Message
from replyready.services import lead_resolver
from replyready.services.lead_resolver import LeadDetails
from replyready.services.mail_envelope import MailEnvelope
from replyready.services.safety_classifier import SafetyClassifier

logger = logging.getLogger(__name__)

SNIPPET_MAX_CHARS = 500

# Gmail labels: saved drafts are never mail; spam and trash are not leads.
DRAFT_LABEL = "DRAFT"
INBOUND_SKIP_LABELS = frozenset({"SPAM", "TRASH"})


@dataclass(frozen=True)
class IngestResult:
    outcome: str  # created | duplicate | ignored | skipped_outbound | skipped_no_thread | skipped_label
    message_id: UUID | None = None
    decision: str | None = None


def _message_exists(db: Session, provider_message_id: str) -> bool:
    return (
        db.query(Message.id).filter(Message.provider_message_id == provider_message_id).first()
        is not None
    )


def _is_own_send(db: Session, agent_id: UUID, rfc_message_id: str | None) -> bool:
    """True when the Message-ID belongs to a reply this service sent or is sending."""
    if not rfc_message_id:
        return False
    return (
        db.query(Message.id)
        .filter(
            Message.agent_id == agent_id,
            Message.sender == Sender.AGENT.value,
            Message.rfc_message_id == rfc_message_id,
        )
        .first()
        is not None
    )


def _insert_message(db: Session, message: Message) -> bool:
    """Insert; a duplicate provider_message_id counts as already ingested."""
    db.add(message)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    db.refresh(message)
    return True


def _link_artifact(db: Session, artifact: ClassificationArtifact, message_id: UUID) -> None:
    if artifact.message_id is None:
        artifact.message_id = message_id
        db.commit()


class IngestionService:
    """Turns provider envelopes into Message rows for one connection."""

    def __init__(self, settings: Settings, classifier: SafetyClassifier | None = None):
        self.settings = settings
        self.classifier = classifier or SafetyClassifier(settings)

    def ingest(
        self,
        db: Session,
        connection: Connection,
        envelope: MailEnvelope,
        *,
        load_full: Callable[[], MailEnvelope] | None = None,
    ) -> IngestResult:
        """
        Ingest one message. `envelope` may be metadata-only; `load_full` is
        called for the body only once the message is going to be stored.
        """
        context = build_log_context(
            agent_id=connection.agent_id, connection_id=connection.id, provider=connection.provider
        )
        if _message_exists(db, envelope.provider_message_id):
            return IngestResult(outcome="duplicate")

        if not envelope.provider_thread_id:
            logger.warning("Message without thread id skipped", extra=context)
            return IngestResult(outcome="skipped_no_thread")

        labels = set(envelope.label_ids)
        if DRAFT_LABEL in labels:
            return IngestResult(outcome="skipped_label")

        mailbox = (connection.mailbox_address or "").lower()
        if envelope.from_address and envelope.from_address == mailbox:
            return self._ingest_outbound(db, connection, envelope, load_full=load_full)

        if labels & INBOUND_SKIP_LABELS:
            logger.info("Inbound message in spam or trash skipped", extra=context)
            return IngestResult(outcome="skipped_label")

        classification, artifact = self.classifier.classify_and_record(
            db, agent_id=connection.agent_id, envelope=envelope
        )

        if classification.decision == Decision.IGNORE:
            lead = lead_resolver.find_lead(
                db, agent_id=connection.agent_id, thread_id=envelope.provider_thread_id
            )
            if lead is None:
                logger.info(f"Ignored inbound message ({classification.reason})", extra=context)
                return IngestResult(outcome="ignored", decision=classification.decision.value)

        full = load_full() if load_full else envelope
        lead_email = lead_resolver.pick_lead_email(
            full,
            mailbox_address=mailbox,
            prefer_reply_to=bool(classification.signals.get("is_portal_relay")),
        )
        lead = lead_resolver.resolve(
            db,
            agent_id=connection.agent_id,
            provider=connection.provider,
            thread_id=envelope.provider_thread_id,
            sender=Sender.USER,
            details=LeadDetails(
                email=lead_email,
                name=full.from_name,
                subject=full.subject or None,
                email_type=classification.email_type.value,
                conversation_id=full.conversation_id,
                preview=(full.snippet or full.text)[:SNIPPET_MAX_CHARS],
                timestamp=full.timestamp,
            ),
        )
        if lead is None:
            return IngestResult(outcome="skipped_no_thread")
        if classification.decision != Decision.IGNORE and not lead.email and lead_email:
            lead.email = lead_email

        status = (
            MessageStatus.IGNORED
            if classification.decision == Decision.IGNORE
            else MessageStatus.INTENT_PENDING
        )
        message = Message(
            agent_id=connection.agent_id,
            lead_id=lead.id,
            provider=connection.provider,
            sender=Sender.USER.value,
            subject=full.subject or None,
            text=full.text,
            snippet=(full.snippet or "")[:SNIPPET_MAX_CHARS] or None,
            from_address=full.from_address,
            to_address=mailbox,
            provider_message_id=envelope.provider_message_id,
            provider_thread_id=envelope.provider_thread_id,
            rfc_message_id=full.rfc_message_id,
            timestamp=full.timestamp,
            status=status.value,
            approval_required=classification.decision == Decision.NEEDS_APPROVAL,
            email_type=classification.email_type.value,
            classification_confidence=classification.confidence,
            send_status=SendStatus.PENDING.value,
        )
        if not _insert_message(db, message):
            return IngestResult(outcome="duplicate", decision=classification.decision.value)

        _link_artifact(db, artifact, message.id)
        logger.info(
            f"Inbound message stored: status={status.value} decision={classification.decision.value}",
            extra={**context, "message_id": str(message.id)},
        )
        return IngestResult(
            outcome="created", message_id=message.id, decision=classification.decision.value
        )

    def _ingest_outbound(
        self,
        db: Session,
        connection: Connection,
        envelope: MailEnvelope,
        *,
        load_full: Callable[[], MailEnvelope] | None,
    ) -> IngestResult:
        """Mail sent from the agent's mailbox: recorded only on a known thread."""
        if _is_own_send(db, connection.agent_id, envelope.rfc_message_id):
            # The send dispatcher records its own replies.
            return IngestResult(outcome="duplicate")

        lead = lead_resolver.resolve(
            db,
            agent_id=connection.agent_id,
            provider=connection.provider,
            thread_id=envelope.provider_thread_id,
            sender=Sender.AGENT,
            details=LeadDetails(timestamp=envelope.timestamp, preview=envelope.snippet),
        )
        if lead is None:
            return IngestResult(outcome="skipped_outbound")

        full = load_full() if load_full else envelope
        mailbox = (connection.mailbox_address or "").lower()
        recipients = [address for address in full.to_addresses if address != mailbox]
        message = Message(
            agent_id=connection.agent_id,
            lead_id=lead.id,
            provider=connection.provider,
            sender=Sender.AGENT.value,
            subject=full.subject or None,
            text=full.text,
            snippet=(full.snippet or "")[:SNIPPET_MAX_CHARS] or None,
            from_address=full.from_address,
            to_address=recipients[0] if recipients else None,
            provider_message_id=envelope.provider_message_id,
            provider_thread_id=envelope.provider_thread_id,
            rfc_message_id=full.rfc_message_id,
            timestamp=full.timestamp,
            status=MessageStatus.SENT.value,
            send_status=SendStatus.SENT.value,
            sent_at=full.timestamp,
        )
        if not _insert_message(db, message):
            return IngestResult(outcome="duplicate")
        return IngestResult(outcome="created", message_id=message.id)
