"""Rewrite stage: rewrite_pending draft -> qa_pending (next revision) | needs_human."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from replyready.core.exceptions import ClassifierError
from replyready.core.structured_logging import build_log_context
from replyready.db.enums import MessageStatus
from replyready.db.models import Lead, Message, QaArtifact, RewriteArtifact
from replyready.services.ai_prompt_registry import REWRITE_REPLY
from replyready.services.classifier_client import ClassifierRequest
from replyready.services.pipeline.draft_stage import is_escalation
from replyready.services.pipeline.qa_stage import qa_version
from replyready.services.pipeline.runner import StageResult, StageRunner
from replyready.services.pipeline.state_machine import advance_status
from replyready.services.prompt_service import get_active_prompt

logger = logging.getLogger(__name__)


class RewriteStage(StageRunner):
    stage = "rewrite"
    input_status = MessageStatus.REWRITE_PENDING

    def process(self, db: Session, message: Message) -> StageResult:
        prompt = get_active_prompt(db, REWRITE_REPLY)
        revision = message.draft_revision + 1
        version = qa_version(prompt.version, revision)

        exists = (
            db.query(RewriteArtifact.id)
            .filter(RewriteArtifact.message_id == message.id, RewriteArtifact.prompt_version == version)
            .first()
        )
        if exists is not None:
            return StageResult(str(message.id), "skipped", "artifact_exists")

        if message.draft_revision >= self.settings.MAX_REWRITES:
            return self._escalate(db, message, version, "max_rewrites_reached")

        qa = (
            db.query(QaArtifact)
            .filter(QaArtifact.message_id == message.id)
            .order_by(QaArtifact.created_at.desc())
            .first()
        )
        inbound = db.get(Message, message.reply_to_message_id) if message.reply_to_message_id else None
        active_property, suggested_properties = self.property_context(db, db.get(Lead, message.lead_id))
        request = ClassifierRequest(
            system_prompt=prompt.render_system(),
            user_prompt=prompt.render_user(
                QA_REASON=(qa.reason if qa else "") or "(no notes)",
                INBOUND_MESSAGE=((inbound.text or inbound.snippet or "") if inbound else "")[:6000],
                PROPERTY_CONTEXT=f"{active_property}\n\n{suggested_properties}",
                DRAFT=message.text or "",
            ),
            temperature=prompt.temperature,
            max_tokens=prompt.max_tokens,
        )

        try:
            completion = self.client.write_text(request)
        except ClassifierError as exc:
            logger.warning(
                f"Rewrite failed: {exc.reason}",
                extra=build_log_context(agent_id=message.agent_id, message_id=message.id, stage=self.stage),
            )
            return self._escalate(db, message, version, f"rewrite_unavailable:{exc.reason}")

        text = completion.content.strip()
        if is_escalation(text):
            return self._escalate(db, message, version, "escalated")

        db.add(
            RewriteArtifact(
                message_id=message.id,
                prompt_version=version,
                previous_text=message.text,
                outcome="rewritten",
                reason=(qa.reason if qa else None),
            )
        )
        db.flush()
        advanced = advance_status(
            db,
            message.id,
            MessageStatus.REWRITE_PENDING,
            MessageStatus.QA_PENDING,
            commit=False,
            text=text,
            draft_revision=revision,
        )
        if not advanced:
            db.rollback()
            return StageResult(str(message.id), "lost_race")
        if not self.commit_or_lost(db):
            return StageResult(str(message.id), "lost_race")
        return StageResult(str(message.id), MessageStatus.QA_PENDING.value, f"r{revision}")

    def _escalate(self, db: Session, message: Message, version: str, reason: str) -> StageResult:
        db.add(
            RewriteArtifact(
                message_id=message.id,
                prompt_version=version,
                previous_text=message.text,
                outcome="needs_human",
                reason=reason,
            )
        )
        db.flush()
        advanced = advance_status(
            db, message.id, MessageStatus.REWRITE_PENDING, MessageStatus.NEEDS_HUMAN, commit=False
        )
        if not advanced:
            db.rollback()
            return StageResult(str(message.id), "lost_race")
        if not self.commit_or_lost(db):
            return StageResult(str(message.id), "lost_race")
        return StageResult(str(message.id), MessageStatus.NEEDS_HUMAN.value, reason)
