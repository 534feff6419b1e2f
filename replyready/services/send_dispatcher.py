"""Send dispatcher: lock, re-validate, send, record.

The (`send_status`, `send_locked_at`) pair on the draft is the lock. It is
taken with a conditional update; zero affected rows means another
dispatcher owns the draft, reported as `already_in_progress`. A failure
before the provider accepts the mail releases the lock with
`send_status=failed` and a truncated error, which makes the draft eligible
for retry. Once the provider accepted it, the draft is never released for
another send: it is recorded as sent, or parked in needs_human.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import make_msgid
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replyready.core.config import Settings
from replyready.core.exceptions import ConnectionNotFoundError
from replyready.core.structured_logging import build_log_context, mask_email
from replyready.db.enums import MailProvider, MessageStatus, Sender, SendStatus
from replyready.db.models import Connection, Lead, Message
from replyready.services import connection_service
from replyready.services.attachment_service import AttachmentFetcher, FetchedAttachment
from replyready.services.audit_webhook import AuditWebhook
from replyready.services.gmail_client import GmailClient, build_reply_mime
from replyready.services.oauth_service import TokenRefresher
from replyready.services.outlook_client import OutlookClient
from replyready.services.pipeline.state_machine import advance_status

logger = logging.getLogger(__name__)

LOCKABLE_SEND_STATUSES = (SendStatus.PENDING.value, SendStatus.FAILED.value)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _same_address(left: str | None, right: str | None) -> bool:
    return bool(left and right) and left.strip().lower() == right.strip().lower()


@dataclass(frozen=True)
class DispatchResult:
    outcome: str  # sent | already_in_progress | not_ready | needs_human | failed
    detail: str | None = None
    provider_message_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"outcome": self.outcome}
        if self.detail:
            payload["detail"] = self.detail
        if self.provider_message_id:
            payload["provider_message_id"] = self.provider_message_id
        return payload


@dataclass(frozen=True)
class SentIds:
    message_id: str
    thread_id: str | None


class SendDispatcher:
    def __init__(
        self,
        settings: Settings,
        *,
        gmail: GmailClient | None = None,
        outlook: OutlookClient | None = None,
        token_refresher: TokenRefresher | None = None,
        attachments: AttachmentFetcher | None = None,
        audit: AuditWebhook | None = None,
    ):
        self.settings = settings
        self.gmail = gmail or GmailClient(settings)
        self.outlook = outlook or OutlookClient(settings)
        self.token_refresher = token_refresher or TokenRefresher(settings)
        self.attachments = attachments or AttachmentFetcher(settings)
        self.audit = audit or AuditWebhook(settings)

    # ------------------------------------------------------------------
    # Lock
    # ------------------------------------------------------------------

    def acquire_lock(self, db: Session, message_id: UUID) -> bool:
        now = _now_utc()
        updated = (
            db.query(Message)
            .filter(
                Message.id == message_id,
                Message.sender == Sender.AGENT.value,
                Message.status == MessageStatus.READY_TO_SEND.value,
                Message.send_status.in_(LOCKABLE_SEND_STATUSES),
                Message.send_locked_at.is_(None),
            )
            .update(
                {
                    Message.send_status: SendStatus.SENDING.value,
                    Message.send_locked_at: now,
                    Message.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        return bool(updated)

    def release_lock(self, db: Session, message_id: UUID, error: str) -> None:
        (
            db.query(Message)
            .filter(Message.id == message_id, Message.send_status == SendStatus.SENDING.value)
            .update(
                {
                    Message.send_status: SendStatus.FAILED.value,
                    Message.send_locked_at: None,
                    Message.send_error: error[: self.settings.SEND_ERROR_MAX_CHARS],
                    Message.updated_at: _now_utc(),
                },
                synchronize_session=False,
            )
        )
        db.commit()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def dispatch(self, db: Session, message_id: UUID) -> DispatchResult:
        draft = db.get(Message, message_id)
        if draft is None or draft.sender != Sender.AGENT.value:
            return DispatchResult(outcome="not_ready", detail="not_a_draft")
        if draft.status != MessageStatus.READY_TO_SEND.value:
            return DispatchResult(outcome="not_ready", detail=draft.status)
        if draft.send_status == SendStatus.SENT.value:
            return DispatchResult(outcome="not_ready", detail="already_sent")

        if not self.acquire_lock(db, message_id):
            logger.info(
                "Send already in progress",
                extra=build_log_context(agent_id=draft.agent_id, message_id=message_id, stage="send"),
            )
            return DispatchResult(outcome="already_in_progress")

        db.refresh(draft)
        context = build_log_context(agent_id=draft.agent_id, message_id=message_id, stage="send")
        try:
            return self._dispatch_locked(db, draft, context)
        except Exception as exc:
            db.rollback()
            error = f"{type(exc).__name__}: {exc}"
            self.release_lock(db, message_id, error)
            logger.warning(f"Send failed, lock released: {type(exc).__name__}", extra=context)
            return DispatchResult(outcome="failed", detail=error[:200])

    def _dispatch_locked(self, db: Session, draft: Message, context: dict) -> DispatchResult:
        lead = db.get(Lead, draft.lead_id)
        if lead is None or not lead.email or not _same_address(draft.to_address, lead.email):
            logger.warning(
                f"Recipient {mask_email(draft.to_address)} does not match lead address", extra=context
            )
            return self._needs_human(db, draft, "recipient_mismatch")
        if not (draft.text or "").strip():
            return self._needs_human(db, draft, "empty_text")

        inbound = db.get(Message, draft.reply_to_message_id) if draft.reply_to_message_id else None
        provider = MailProvider(draft.provider)
        if not self._has_anchor(provider, inbound):
            logger.warning("No reply anchor; refusing an unthreaded send", extra=context)
            return self._needs_human(db, draft, "missing_anchor")

        connection = connection_service.get_connection(db, agent_id=draft.agent_id, provider=provider)
        if connection is None:
            raise ConnectionNotFoundError(f"No {provider.value} connection for agent")

        access_token = self.token_refresher.get_access_token(db, connection)
        files = self.attachments.fetch_all(draft.attachments)

        if provider == MailProvider.GMAIL:
            sent = self._send_gmail(db, access_token, connection, lead, draft, inbound, files)
        else:
            sent = self._send_outlook(db, access_token, lead, draft, inbound, files)
            if sent.thread_id:
                lead.conversation_id = sent.thread_id

        draft_id, agent_id, lead_id = draft.id, draft.agent_id, draft.lead_id
        try:
            self._record_sent(db, draft, inbound, lead, sent)
        except Exception as exc:
            db.rollback()
            return self._sent_unrecorded(db, draft_id, sent, exc, context)

        logger.info(f"Reply sent via {provider.value}", extra=context)
        self.audit.queue(
            db,
            {
                "event": "message.sent",
                "message_id": str(draft_id),
                "agent_id": str(agent_id),
                "lead_id": str(lead_id),
                "provider": provider.value,
                "provider_message_id": sent.message_id,
                "sent_at": _now_utc().isoformat(),
            },
            agent_id=agent_id,
        )
        return DispatchResult(outcome="sent", provider_message_id=sent.message_id)

    # ------------------------------------------------------------------
    # Provider sends
    # ------------------------------------------------------------------

    @staticmethod
    def _has_anchor(provider: MailProvider, inbound: Message | None) -> bool:
        if inbound is None:
            return False
        if provider == MailProvider.GMAIL:
            return bool(inbound.rfc_message_id and inbound.provider_thread_id)
        return bool(inbound.provider_message_id)

    def _send_gmail(
        self,
        db: Session,
        access_token: str,
        connection: Connection,
        lead: Lead,
        draft: Message,
        inbound: Message,
        files: list[FetchedAttachment],
    ) -> SentIds:
        _, _, domain = (connection.mailbox_address or "").rpartition("@")
        rfc_message_id = make_msgid(domain=domain or None)
        self._remember_rfc_message_id(db, draft.id, rfc_message_id)
        raw = build_reply_mime(
            from_address=connection.mailbox_address,
            to_address=lead.email,
            subject=draft.subject or "",
            body=draft.text or "",
            in_reply_to=inbound.rfc_message_id,
            references=[inbound.rfc_message_id] if inbound.rfc_message_id else [],
            attachments=[(item.filename, item.mime, item.content) for item in files],
            message_id=rfc_message_id,
        )
        result = self.gmail.send_raw(
            access_token=access_token, raw=raw, thread_id=inbound.provider_thread_id
        )
        return SentIds(message_id=str(result["id"]), thread_id=result.get("threadId"))

    def _send_outlook(
        self,
        db: Session,
        access_token: str,
        lead: Lead,
        draft: Message,
        inbound: Message,
        files: list[FetchedAttachment],
    ) -> SentIds:
        reply = self.outlook.create_reply(
            access_token=access_token, anchor_message_id=inbound.provider_message_id
        )
        reply_id = str(reply["id"])
        if reply.get("internetMessageId"):
            self._remember_rfc_message_id(db, draft.id, str(reply["internetMessageId"]))
        self.outlook.update_draft(
            access_token=access_token, draft_id=reply_id, body_text=draft.text or "", to_address=lead.email
        )
        for item in files:
            self.outlook.add_attachment(
                access_token=access_token,
                draft_id=reply_id,
                filename=item.filename,
                mime=item.mime,
                content=item.content,
            )
        self.outlook.send_draft(access_token=access_token, draft_id=reply_id)
        return SentIds(message_id=reply_id, thread_id=reply.get("conversationId"))

    @staticmethod
    def _remember_rfc_message_id(db: Session, draft_id: UUID, rfc_message_id: str) -> None:
        """Committed before the provider call; ingestion skips mail carrying this id."""
        (
            db.query(Message)
            .filter(Message.id == draft_id, Message.send_status == SendStatus.SENDING.value)
            .update(
                {Message.rfc_message_id: rfc_message_id, Message.updated_at: _now_utc()},
                synchronize_session=False,
            )
        )
        db.commit()

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    @staticmethod
    def _set_send_fields(db: Session, draft_id: UUID, **fields: Any) -> None:
        """Send bookkeeping by id alone, whatever the lock state is now."""
        values: dict[Any, Any] = {Message.updated_at: _now_utc()}
        for name, value in fields.items():
            values[getattr(Message, name)] = value
        db.query(Message).filter(Message.id == draft_id).update(values, synchronize_session=False)

    @staticmethod
    def _mark_answered(db: Session, inbound_id: UUID, lead_id: UUID, text: str | None, now: datetime) -> None:
        inbound = db.get(Message, inbound_id)
        if inbound is not None and inbound.status == MessageStatus.DRAFT_CREATED.value:
            advance_status(db, inbound_id, MessageStatus.DRAFT_CREATED, MessageStatus.SENT, commit=False)
        lead = db.get(Lead, lead_id)
        lead.last_message_at = now
        lead.last_message_preview = (text or "")[:500]

    def _record_sent(self, db: Session, draft: Message, inbound: Message, lead: Lead, sent: SentIds) -> None:
        """
        Mark the draft sent and its inbound message answered, in one commit.

        The provider already accepted the mail, so the provider ids and
        `send_status=sent` are written even when an operator unlocked the
        draft meanwhile; they are what stops a second send.
        """
        draft_id, inbound_id, lead_id = draft.id, inbound.id, lead.id
        text, attachments = draft.text, draft.attachments
        thread_id = sent.thread_id or draft.provider_thread_id
        now = _now_utc()
        try:
            self._set_send_fields(
                db,
                draft_id,
                send_status=SendStatus.SENT.value,
                send_locked_at=None,
                send_error=None,
                sent_at=now,
                provider_message_id=sent.message_id,
                provider_thread_id=thread_id,
            )
            if not advance_status(
                db, draft_id, MessageStatus.READY_TO_SEND, MessageStatus.SENT, commit=False, timestamp=now
            ):
                logger.warning(
                    "Draft left ready_to_send during the send; provider ids recorded, status kept",
                    extra={
                        **build_log_context(message_id=draft_id, stage="send"),
                        "provider_message_id": sent.message_id,
                    },
                )
            self._mark_answered(db, inbound_id, lead_id, text, now)
            db.commit()
        except IntegrityError:
            db.rollback()
            if not self._adopt_echo(db, draft_id, inbound_id, lead_id, sent, text, attachments):
                raise

    def _adopt_echo(
        self,
        db: Session,
        draft_id: UUID,
        inbound_id: UUID,
        lead_id: UUID,
        sent: SentIds,
        text: str | None,
        attachments: list,
    ) -> bool:
        """
        History sync stored this sent mail before it was recorded here. The
        stored row takes over the reply link and the draft retires as ignored.
        """
        echo = (
            db.query(Message)
            .filter(
                Message.provider_message_id == sent.message_id,
                Message.id != draft_id,
                Message.sender == Sender.AGENT.value,
            )
            .one_or_none()
        )
        if echo is None:
            return False

        now = _now_utc()
        echo.reply_to_message_id = inbound_id
        echo.text = text or echo.text
        echo.attachments = attachments or echo.attachments
        self._set_send_fields(
            db, draft_id, send_status=SendStatus.SENT.value, send_locked_at=None, send_error=None, sent_at=now
        )
        advance_status(db, draft_id, MessageStatus.READY_TO_SEND, MessageStatus.IGNORED, commit=False)
        self._mark_answered(db, inbound_id, lead_id, text, now)
        db.commit()
        logger.info(
            f"Sent mail already ingested as {echo.id}; linked to the reply",
            extra=build_log_context(message_id=draft_id, stage="send"),
        )
        return True

    def _sent_unrecorded(
        self, db: Session, draft_id: UUID, sent: SentIds, exc: Exception, context: dict
    ) -> DispatchResult:
        """The provider accepted the mail but recording failed: park it, never retry."""
        logger.error(
            f"Reply sent but not recorded: {type(exc).__name__}",
            extra={**context, "provider_message_id": sent.message_id},
        )
        error = f"sent_unrecorded:{sent.message_id}: {type(exc).__name__}"
        self._set_send_fields(
            db,
            draft_id,
            send_status=SendStatus.SENT.value,
            send_locked_at=None,
            send_error=error[: self.settings.SEND_ERROR_MAX_CHARS],
        )
        advance_status(db, draft_id, MessageStatus.READY_TO_SEND, MessageStatus.NEEDS_HUMAN, commit=False)
        db.commit()
        return DispatchResult(outcome="needs_human", detail="sent_unrecorded", provider_message_id=sent.message_id)

    def _needs_human(self, db: Session, draft: Message, reason: str) -> DispatchResult:
        advance_status(
            db,
            draft.id,
            MessageStatus.READY_TO_SEND,
            MessageStatus.NEEDS_HUMAN,
            extra_filters=(Message.send_status == SendStatus.SENDING.value,),
            send_status=SendStatus.FAILED.value,
            send_locked_at=None,
            send_error=reason,
        )
        return DispatchResult(outcome="needs_human", detail=reason)
