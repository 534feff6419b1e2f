"""Send stage: ready_to_send drafts -> SendDispatcher."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from replyready.core.config import Settings
from replyready.db.enums import MessageStatus, Sender, SendStatus
from replyready.db.models import Agent, Lead, Message
from replyready.services.classifier_client import ClassifierClient
from replyready.services.pipeline.runner import StageResult, StageRunner
from replyready.services.pipeline.state_machine import advance_status
from replyready.services.send_dispatcher import LOCKABLE_SEND_STATUSES, SendDispatcher

logger = logging.getLogger(__name__)


class SendStage(StageRunner):
    stage = "send"
    input_status = MessageStatus.READY_TO_SEND

    def __init__(
        self,
        settings: Settings,
        client: ClassifierClient | None = None,
        *,
        dispatcher: SendDispatcher | None = None,
    ):
        super().__init__(settings, client)
        self.dispatcher = dispatcher or SendDispatcher(settings)

    def select_batch(self, db: Session) -> list[Message]:
        return (
            db.query(Message)
            .filter(
                Message.status == self.input_status.value,
                Message.sender == Sender.AGENT.value,
                Message.approval_required.is_(False),
                Message.send_status.in_(LOCKABLE_SEND_STATUSES),
                Message.send_locked_at.is_(None),
            )
            .order_by(Message.timestamp.asc(), Message.created_at.asc())
            .limit(self.batch_size)
            .all()
        )

    def process(self, db: Session, message: Message) -> StageResult:
        agent = db.get(Agent, message.agent_id)
        if agent is None or not agent.autosend_enabled:
            # Autosend switched off after QA: back to the approval queue
            advance_status(db, message.id, MessageStatus.READY_TO_SEND, MessageStatus.NEEDS_APPROVAL)
            return StageResult(str(message.id), MessageStatus.NEEDS_APPROVAL.value, "autosend_disabled")

        lead = db.get(Lead, message.lead_id)
        reason = None
        if lead is None or not lead.email:
            reason = "missing_lead_email"
        elif not (message.text or "").strip():
            reason = "empty_text"
        if reason:
            advance_status(
                db,
                message.id,
                MessageStatus.READY_TO_SEND,
                MessageStatus.NEEDS_HUMAN,
                send_status=SendStatus.FAILED.value,
                send_error=reason,
            )
            return StageResult(str(message.id), MessageStatus.NEEDS_HUMAN.value, reason)

        result = self.dispatcher.dispatch(db, message.id)
        return StageResult(str(message.id), result.outcome, result.detail)
