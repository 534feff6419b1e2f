"""Intent stage: intent_pending -> intent_done."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from replyready.core.exceptions import ClassifierError
from replyready.core.structured_logging import build_log_context
from replyready.db.enums import Intent, MessageStatus
from replyready.db.models import IntentArtifact, Message
from replyready.services.ai_prompt_registry import INTENT_CLASSIFY
from replyready.services.ai_prompt_schemas import IntentClassifierOutput, IntentEntities
from replyready.services.ai_response_validation import validate_model
from replyready.services.classifier_client import ClassifierRequest, clamp01
from replyready.services.pipeline.runner import StageResult, StageRunner
from replyready.services.pipeline.state_machine import advance_status
from replyready.services.prompt_service import get_active_prompt

logger = logging.getLogger(__name__)

MIN_INTENT_CONFIDENCE = 0.6
MIN_SPAM_CONFIDENCE = 0.98

# Labels emitted by earlier prompt versions
INTENT_ALIASES = {
    "PROPERTY_MATCH": Intent.PROPERTY_SEARCH,
    "FAQ": Intent.QNA_GENERAL,
    "VIEWING_SCHEDULING": Intent.VIEWING_REQUEST,
    "AVAILABILITY": Intent.PROPERTY_SPECIFIC,
    "DOCUMENTS": Intent.APPLICATION_PROCESS,
    "GENERAL_QUESTION": Intent.OTHER,
    "PRICE_NEGOTIATION": Intent.QNA_GENERAL,
}


def normalize_intent(label: str | None) -> Intent:
    value = (label or "").strip().upper()
    try:
        return Intent(value)
    except ValueError:
        return INTENT_ALIASES.get(value, Intent.OTHER)


def apply_confidence_floor(intent: Intent, confidence: float) -> Intent:
    if confidence < MIN_INTENT_CONFIDENCE:
        return Intent.OTHER
    if intent == Intent.SPAM_OR_IRRELEVANT and confidence < MIN_SPAM_CONFIDENCE:
        return Intent.OTHER
    return intent


class IntentStage(StageRunner):
    stage = "intent"
    input_status = MessageStatus.INTENT_PENDING

    def process(self, db: Session, message: Message) -> StageResult:
        prompt = get_active_prompt(db, INTENT_CLASSIFY)
        if self._artifact_exists(db, message, prompt.version):
            advance_status(db, message.id, MessageStatus.INTENT_PENDING, MessageStatus.INTENT_DONE)
            return StageResult(str(message.id), "skipped", "artifact_exists")

        request = ClassifierRequest(
            system_prompt=prompt.render_system(),
            user_prompt=prompt.render_user(
                THREAD_CONTEXT=self.format_thread(self.thread_context(db, message)),
                SUBJECT=message.subject or "",
                MESSAGE=(message.text or message.snippet or "")[:6000],
            ),
            temperature=prompt.temperature,
            max_tokens=prompt.max_tokens,
        )
        intent, confidence, entities, reason, model = self._classify(request, message)

        db.add(
            IntentArtifact(
                message_id=message.id,
                prompt_version=prompt.version,
                intent=intent.value,
                confidence=confidence,
                entities=entities.model_dump(),
                reason=reason,
                model=model,
            )
        )
        db.flush()
        advanced = advance_status(
            db, message.id, MessageStatus.INTENT_PENDING, MessageStatus.INTENT_DONE, commit=False
        )
        if not advanced:
            db.rollback()
            return StageResult(str(message.id), "lost_race")
        if not self.commit_or_lost(db):
            return StageResult(str(message.id), "lost_race")
        return StageResult(str(message.id), "intent_done", intent.value)

    def _classify(
        self, request: ClassifierRequest, message: Message
    ) -> tuple[Intent, float, IntentEntities, str, str | None]:
        try:
            data, model = self.client.complete_json(
                request, timeout=self.settings.CLASSIFIER_TIMEOUT_SECONDS
            )
        except ClassifierError as exc:
            logger.warning(
                f"Intent classification failed: {exc.reason}",
                extra=build_log_context(message_id=message.id, stage=self.stage),
            )
            return Intent.OTHER, 0.0, IntentEntities(), f"intent_unavailable:{exc.reason}", None

        output = validate_model(IntentClassifierOutput, data)
        if output is None:
            return Intent.OTHER, 0.0, IntentEntities(), "intent_unavailable:schema_invalid", model

        confidence = clamp01(output.confidence)
        intent = apply_confidence_floor(normalize_intent(output.intent), confidence)
        return intent, confidence, output.entities, (output.reason or "")[:300], model

    @staticmethod
    def _artifact_exists(db: Session, message: Message, version: str) -> bool:
        return (
            db.query(IntentArtifact.id)
            .filter(IntentArtifact.message_id == message.id, IntentArtifact.prompt_version == version)
            .first()
            is not None
        )
