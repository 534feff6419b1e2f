"""Draft stage: route_resolved -> draft_created (+ a qa_pending draft Message).

A DraftLink row (inbound message, prompt version) is committed before the
writer call and acts as the claim; a duplicate insert means another runner
owns the message. Claims abandoned without an outcome are reclaimed after
STUCK_SEND_MINUTES.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replyready.core.exceptions import ClassifierError
from replyready.core.structured_logging import build_log_context
from replyready.db.enums import MessageStatus, Sender, SendStatus
from replyready.db.models import Agent, DraftLink, Lead, Message, RouteArtifact
from replyready.services.ai_prompt_registry import DRAFT_REPLY, ESCALATE_TOKEN
from replyready.services.classifier_client import ClassifierRequest
from replyready.services.pipeline.runner import StageResult, StageRunner
from replyready.services.pipeline.state_machine import advance_status
from replyready.services.prompt_service import get_active_prompt

logger = logging.getLogger(__name__)


def reply_subject(subject: str | None) -> str:
    subject = (subject or "").strip()
    if not subject:
        return "Re:"
    if subject.lower().startswith(("re:", "aw:")):
        return subject
    return f"Re: {subject}"


def is_escalation(text: str) -> bool:
    return not text.strip() or ESCALATE_TOKEN in text


class DraftStage(StageRunner):
    stage = "draft"
    input_status = MessageStatus.ROUTE_RESOLVED

    def process(self, db: Session, message: Message) -> StageResult:
        prompt = get_active_prompt(db, DRAFT_REPLY)
        link = self._claim(db, message, prompt.version)
        if link is None:
            return StageResult(str(message.id), "skipped", "claimed_elsewhere")

        lead = db.get(Lead, message.lead_id)
        agent = db.get(Agent, message.agent_id)
        route = (
            db.query(RouteArtifact)
            .filter(RouteArtifact.message_id == message.id)
            .order_by(RouteArtifact.created_at.desc())
            .first()
        )
        active_property, suggested_properties = self.property_context(db, lead)
        request = ClassifierRequest(
            system_prompt=prompt.render_system(LANGUAGE_HINT=(agent.language if agent else "de")),
            user_prompt=prompt.render_user(
                ROUTE=route.route if route else "OTHER",
                AGENT_BRAND=(agent.brand_name or agent.display_name or "") if agent else "",
                AGENT_STYLE="\n".join(
                    part for part in ((agent.tone_notes, agent.signature) if agent else ()) if part
                ),
                CLIENT_NAME=(lead.name or "") if lead else "",
                CLIENT_EMAIL=(lead.email or "") if lead else "",
                ACTIVE_PROPERTY=active_property,
                SUGGESTED_PROPERTIES=suggested_properties,
                THREAD_CONTEXT=self.format_thread(self.thread_context(db, message)),
                INBOUND_MESSAGE=(message.text or message.snippet or "")[:6000],
            ),
            temperature=prompt.temperature,
            max_tokens=prompt.max_tokens,
        )

        try:
            completion = self.client.write_text(request)
        except ClassifierError as exc:
            logger.warning(
                f"Draft writer failed: {exc.reason}",
                extra=build_log_context(agent_id=message.agent_id, message_id=message.id, stage=self.stage),
            )
            return self._finish(db, message, link, "failed", MessageStatus.FAILED_DRAFT)

        text = completion.content.strip()
        if is_escalation(text):
            return self._finish(db, message, link, "escalated", MessageStatus.NEEDS_HUMAN)

        draft = Message(
            agent_id=message.agent_id,
            lead_id=message.lead_id,
            provider=message.provider,
            sender=Sender.AGENT.value,
            subject=reply_subject(message.subject),
            text=text,
            from_address=message.to_address,
            to_address=lead.email if lead else None,
            provider_thread_id=message.provider_thread_id,
            reply_to_message_id=message.id,
            timestamp=datetime.now(timezone.utc),
            status=MessageStatus.QA_PENDING.value,
            approval_required=message.approval_required,
            email_type=message.email_type,
            send_status=SendStatus.PENDING.value,
        )
        db.add(draft)
        db.flush()
        link.draft_message_id = draft.id
        return self._finish(db, message, link, "created", MessageStatus.DRAFT_CREATED)

    def _finish(
        self, db: Session, message: Message, link: DraftLink, outcome: str, target: MessageStatus
    ) -> StageResult:
        link.outcome = outcome
        db.flush()
        advanced = advance_status(
            db, message.id, MessageStatus.ROUTE_RESOLVED, target, commit=False
        )
        if not advanced:
            db.rollback()
            return StageResult(str(message.id), "lost_race")
        db.commit()
        return StageResult(str(message.id), target.value)

    def _claim(self, db: Session, message: Message, version: str) -> DraftLink | None:
        existing = (
            db.query(DraftLink)
            .filter(DraftLink.message_id == message.id, DraftLink.prompt_version == version)
            .first()
        )
        if existing is not None:
            if not self._reclaim(db, existing):
                return None

        link = DraftLink(message_id=message.id, prompt_version=version)
        db.add(link)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return None
        return link

    def _reclaim(self, db: Session, link: DraftLink) -> bool:
        """
        Drop a failed claim (manual retry) or one left without an outcome for
        too long. True if dropped.
        """
        link_id, message_id = link.id, link.message_id
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=self.settings.STUCK_SEND_MINUTES)
        if link.outcome == "failed":
            outcome_filter = DraftLink.outcome == "failed"
        elif link.outcome is None and link.created_at <= cutoff:
            outcome_filter = DraftLink.outcome.is_(None)
        else:
            return False
        deleted = (
            db.query(DraftLink)
            .filter(DraftLink.id == link_id, outcome_filter)
            .delete(synchronize_session=False)
        )
        db.commit()
        if deleted:
            logger.info(
                "Reclaimed abandoned draft claim",
                extra=build_log_context(message_id=message_id, stage=self.stage),
            )
        return bool(deleted)
