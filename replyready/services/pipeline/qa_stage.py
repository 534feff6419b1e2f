"""QA stage: qa_pending draft -> ready_to_send | needs_approval | rewrite_pending | needs_human."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from replyready.core.exceptions import ClassifierError
from replyready.core.structured_logging import build_log_context
from replyready.db.enums import MessageStatus, QaVerdict
from replyready.db.models import Agent, Lead, Message, QaArtifact
from replyready.services.ai_prompt_registry import QA_REPLY
from replyready.services.classifier_client import ClassifierRequest, QaReview
from replyready.services.pipeline.runner import StageResult, StageRunner
from replyready.services.pipeline.state_machine import advance_status
from replyready.services.prompt_service import get_active_prompt

logger = logging.getLogger(__name__)


def qa_version(prompt_version: str, revision: int) -> str:
    return f"{prompt_version}-r{revision}"


def route_after_qa(
    verdict: QaVerdict,
    *,
    autosend_enabled: bool,
    approval_required: bool,
    revision: int,
    max_rewrites: int,
) -> MessageStatus:
    if verdict == QaVerdict.PASS:
        if autosend_enabled and not approval_required:
            return MessageStatus.READY_TO_SEND
        return MessageStatus.NEEDS_APPROVAL
    if verdict == QaVerdict.WARN:
        if revision >= max_rewrites:
            return MessageStatus.NEEDS_HUMAN
        return MessageStatus.REWRITE_PENDING
    return MessageStatus.NEEDS_HUMAN


class QaStage(StageRunner):
    stage = "qa"
    input_status = MessageStatus.QA_PENDING

    @property
    def batch_size(self) -> int:
        return self.settings.QA_BATCH_SIZE

    def process(self, db: Session, message: Message) -> StageResult:
        prompt = get_active_prompt(db, QA_REPLY)
        version = qa_version(prompt.version, message.draft_revision)
        inbound = db.get(Message, message.reply_to_message_id) if message.reply_to_message_id else None
        agent = db.get(Agent, message.agent_id)
        approval_required = message.approval_required or bool(inbound and inbound.approval_required)

        existing = (
            db.query(QaArtifact)
            .filter(QaArtifact.message_id == message.id, QaArtifact.prompt_version == version)
            .first()
        )
        if existing is not None:
            target = self._target(QaVerdict(existing.verdict), agent, approval_required, message)
            advance_status(db, message.id, MessageStatus.QA_PENDING, target)
            return StageResult(str(message.id), "skipped", "artifact_exists")

        active_property, suggested_properties = self.property_context(db, db.get(Lead, message.lead_id))
        request = ClassifierRequest(
            system_prompt=prompt.render_system(),
            user_prompt=prompt.render_user(
                INBOUND_MESSAGE=((inbound.text or inbound.snippet or "") if inbound else "")[:6000],
                PROPERTY_CONTEXT=f"{active_property}\n\n{suggested_properties}",
                DRAFT=message.text or "",
            ),
            temperature=prompt.temperature,
            max_tokens=prompt.max_tokens,
        )
        review = self._review(request, message)
        target = self._target(review.verdict, agent, approval_required, message)

        db.add(
            QaArtifact(
                message_id=message.id,
                prompt_version=version,
                verdict=review.verdict.value,
                score=review.score,
                reason=review.reason,
                model=review.model,
            )
        )
        db.flush()
        advanced = advance_status(db, message.id, MessageStatus.QA_PENDING, target, commit=False)
        if not advanced:
            db.rollback()
            return StageResult(str(message.id), "lost_race")
        if not self.commit_or_lost(db):
            return StageResult(str(message.id), "lost_race")
        return StageResult(str(message.id), target.value, review.verdict.value)

    def _review(self, request: ClassifierRequest, message: Message) -> QaReview:
        try:
            return self.client.review_qa(request)
        except ClassifierError as exc:
            # Unusable review: fixable, never a silent drop
            logger.warning(
                f"QA review unavailable: {exc.reason}",
                extra=build_log_context(agent_id=message.agent_id, message_id=message.id, stage=self.stage),
            )
            return QaReview(verdict=QaVerdict.WARN, reason=f"qa_unavailable:{exc.reason}", score=None)

    def _target(
        self, verdict: QaVerdict, agent: Agent | None, approval_required: bool, message: Message
    ) -> MessageStatus:
        return route_after_qa(
            verdict,
            autosend_enabled=bool(agent and agent.autosend_enabled),
            approval_required=approval_required,
            revision=message.draft_revision,
            max_rewrites=self.settings.MAX_REWRITES,
        )
