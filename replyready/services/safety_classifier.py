"""Fail-closed safety gate for inbound mail.

Order of evaluation:
1. Deterministic hard block (no model call): sensitive subject plus any
   bulk/no-reply signal, or a bounce/mailer-daemon sender -> ignore/SYSTEM.
2. Model classification. Missing configuration, timeouts, non-2xx, invalid
   JSON and shape violations all resolve to needs_approval.
3. Gate: auto_reply only for LEAD/PORTAL at confidence >= 0.97, never for a
   no-reply sender without a portal relay. Anything else degrades to
   needs_approval unless the model said ignore.

Every result is written to message_classifications, keyed by
(provider_message_id, model_version).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replyready.core.config import Settings
from replyready.core.exceptions import ClassifierError
from replyready.core.structured_logging import build_log_context
from replyready.db.enums import (
    AUTO_REPLY_EMAIL_TYPES,
    AUTO_REPLY_MIN_CONFIDENCE,
    Decision,
    EmailType,
)
from replyready.db.models import ClassificationArtifact
from replyready.services.ai_prompt_registry import EMAIL_CLASSIFY
from replyready.services.classifier_client import ClassifierClient, ClassifierRequest
from replyready.services.mail_envelope import MailEnvelope
from replyready.services.mail_signals import MailSignals, compute_signals
from replyready.services.prompt_service import get_active_prompt

logger = logging.getLogger(__name__)

HARD_BLOCK_CONFIDENCE = 0.99


@dataclass(frozen=True)
class Classification:
    decision: Decision
    email_type: EmailType
    confidence: float
    reason: str
    signals: dict = field(default_factory=dict)
    model_called: bool = False


def hard_block(signals: MailSignals) -> Classification | None:
    """Deterministic short-circuit; None means the model decides."""
    if signals.sensitive_subject and signals.bulk_or_no_reply:
        return Classification(
            decision=Decision.IGNORE,
            email_type=EmailType.SYSTEM,
            confidence=HARD_BLOCK_CONFIDENCE,
            reason="hard_block_sensitive_bulk",
            signals=signals.as_dict(),
        )
    if signals.is_mailer_daemon:
        return Classification(
            decision=Decision.IGNORE,
            email_type=EmailType.SYSTEM,
            confidence=HARD_BLOCK_CONFIDENCE,
            reason="system_or_bounce",
            signals=signals.as_dict(),
        )
    return None


def gate_decision(
    model_decision: Decision | None, email_type: EmailType, confidence: float
) -> Decision:
    """
    Final decision from the model output. The model's own `auto_reply` is
    never trusted on its own: the type/confidence floor decides.
    """
    if model_decision == Decision.IGNORE:
        return Decision.IGNORE
    if model_decision == Decision.NEEDS_APPROVAL:
        return Decision.NEEDS_APPROVAL
    if email_type in AUTO_REPLY_EMAIL_TYPES and confidence >= AUTO_REPLY_MIN_CONFIDENCE:
        return Decision.AUTO_REPLY
    return Decision.NEEDS_APPROVAL


def fail_closed(reason: str, signals: MailSignals, *, model_called: bool) -> Classification:
    return Classification(
        decision=Decision.NEEDS_APPROVAL,
        email_type=EmailType.UNKNOWN,
        confidence=0.0,
        reason=f"classifier_unavailable:{reason}"[:120],
        signals=signals.as_dict(),
        model_called=model_called,
    )


class SafetyClassifier:
    """Classifies inbound envelopes and persists the decision."""

    def __init__(self, settings: Settings, client: ClassifierClient | None = None):
        self.settings = settings
        self.client = client or ClassifierClient(settings)

    def classify(self, db: Session, envelope: MailEnvelope) -> tuple[Classification, str]:
        """Returns (classification, model_version). Does not persist."""
        prompt = get_active_prompt(db, EMAIL_CLASSIFY)
        signals = compute_signals(envelope)

        blocked = hard_block(signals)
        if blocked is not None:
            return blocked, prompt.version

        request = ClassifierRequest(
            system_prompt=prompt.render_system(),
            user_prompt=prompt.render_user(
                SUBJECT=envelope.subject[:200],
                FROM=envelope.header("from")[:300],
                TO=envelope.header("to")[:300],
                REPLY_TO=envelope.header("reply-to")[:300],
                SIGNALS="\n".join(f"{name}: {value}" for name, value in signals.as_dict().items()),
                SNIPPET=(envelope.snippet or "")[:600],
            ),
            temperature=prompt.temperature,
            max_tokens=prompt.max_tokens,
        )
        try:
            verdict = self.client.classify_safety(request)
        except ClassifierError as exc:
            logger.warning(
                f"Safety classifier failed closed: {exc.reason}",
                extra=build_log_context(provider=envelope.provider),
            )
            return fail_closed(exc.reason, signals, model_called=exc.reason != "not_configured"), prompt.version

        decision = gate_decision(verdict.decision, verdict.email_type, verdict.confidence)
        reason = verdict.reason
        if decision == Decision.AUTO_REPLY and signals.is_no_reply and not signals.is_portal_relay:
            decision = Decision.NEEDS_APPROVAL
            reason = "no_reply_guard"

        return (
            Classification(
                decision=decision,
                email_type=verdict.email_type,
                confidence=verdict.confidence,
                reason=reason,
                signals=signals.as_dict(),
                model_called=True,
            ),
            prompt.version,
        )

    def classify_and_record(
        self, db: Session, *, agent_id: UUID, envelope: MailEnvelope
    ) -> tuple[Classification, ClassificationArtifact]:
        """
        Classify once per (provider message, model version). A redelivered
        message reuses the stored decision without a second model call.
        """
        prompt_version = get_active_prompt(db, EMAIL_CLASSIFY).version
        existing = get_artifact(db, envelope.provider_message_id, prompt_version)
        if existing is not None:
            return classification_from_artifact(existing), existing

        classification, model_version = self.classify(db, envelope)
        artifact = ClassificationArtifact(
            agent_id=agent_id,
            provider_message_id=envelope.provider_message_id,
            model_version=model_version,
            decision=classification.decision.value,
            email_type=classification.email_type.value,
            confidence=classification.confidence,
            reason=classification.reason,
            signals=classification.signals,
        )
        db.add(artifact)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = get_artifact(db, envelope.provider_message_id, model_version)
            if existing is None:
                raise
            return classification_from_artifact(existing), existing
        db.refresh(artifact)

        logger.info(
            f"Classified inbound message: decision={classification.decision.value} "
            f"type={classification.email_type.value} confidence={classification.confidence:.2f}",
            extra=build_log_context(agent_id=agent_id, provider=envelope.provider),
        )
        return classification, artifact


def get_artifact(db: Session, provider_message_id: str, model_version: str) -> ClassificationArtifact | None:
    return (
        db.query(ClassificationArtifact)
        .filter(
            ClassificationArtifact.provider_message_id == provider_message_id,
            ClassificationArtifact.model_version == model_version,
        )
        .first()
    )


def classification_from_artifact(artifact: ClassificationArtifact) -> Classification:
    return Classification(
        decision=Decision(artifact.decision),
        email_type=EmailType(artifact.email_type),
        confidence=artifact.confidence,
        reason=artifact.reason or "",
        signals=dict(artifact.signals or {}),
    )
