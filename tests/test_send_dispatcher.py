"""Tests for the send dispatcher and the send stage."""

import base64
import email
import email.message
import json

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from replyready.db.enums import JobType, MailProvider, MessageStatus, Sender, SendStatus
from replyready.db.models import Job, Message
from replyready.services import outbox_service
from replyready.services.gmail_client import GmailClient
from replyready.services.outlook_client import OutlookClient
from replyready.services.pipeline.send_stage import SendStage
from replyready.services.send_dispatcher import SendDispatcher

MAILBOX = "makler@example.com"


class MailApi:
    """Records provider calls; `fail_with` turns every call into that status.

    `on_send` runs while the Gmail send request is in flight.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None
        self.sent_id = "sent-1"
        self.on_send = None

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"error": {"message": "Backend Error " * 20}})
        path = request.url.path
        if path == "/gmail/v1/users/me/messages/send":
            if self.on_send:
                self.on_send()
            body = json.loads(request.content)
            return httpx.Response(200, json={"id": self.sent_id, "threadId": body.get("threadId")})
        if path.endswith("/createReply"):
            return httpx.Response(201, json={"id": "reply-draft-1", "conversationId": "conv-1"})
        if path.endswith("/send"):
            return httpx.Response(202)
        if request.method == "PATCH":
            return httpx.Response(200, json={"id": "reply-draft-1"})
        return httpx.Response(500, json={"error": {"message": f"unexpected {path}"}})

    def sent_mime(self) -> email.message.Message:
        request = next(r for r in self.requests if r.url.path == "/gmail/v1/users/me/messages/send")
        raw = json.loads(request.content)["raw"]
        return email.message_from_bytes(base64.urlsafe_b64decode(raw))


def _gmail_sends(mail_api: MailApi) -> int:
    return sum(1 for r in mail_api.requests if r.url.path == "/gmail/v1/users/me/messages/send")


@pytest.fixture
def mail_api() -> MailApi:
    return MailApi()


@pytest.fixture
def dispatcher(test_settings, mail_api):
    return SendDispatcher(
        test_settings,
        gmail=GmailClient(test_settings, transport=mail_api.transport()),
        outlook=OutlookClient(test_settings, transport=mail_api.transport()),
    )


@pytest.fixture
def conversation(agent, connection, make_lead, make_message):
    """An answered inbound message and its ready_to_send draft."""
    lead = make_lead(agent, provider_thread_id="thread-1")
    inbound = make_message(
        lead,
        status=MessageStatus.DRAFT_CREATED.value,
        provider_message_id="in-1",
        rfc_message_id="<in-1@mail.example.org>",
    )
    draft = make_message(
        lead,
        sender=Sender.AGENT.value,
        status=MessageStatus.READY_TO_SEND.value,
        subject="Re: Anfrage Wohnung",
        text="Guten Tag, die Wohnung ist noch verfügbar.",
        reply_to_message_id=inbound.id,
    )
    return lead, inbound, draft


# =============================================================================
# Success
# =============================================================================


def test_dispatch_sends_threaded_reply_and_records_it(db, dispatcher, mail_api, conversation):
    lead, inbound, draft = conversation

    result = dispatcher.dispatch(db, draft.id)

    assert result.outcome == "sent"
    assert result.provider_message_id == "sent-1"

    send_request = mail_api.requests[-1]
    assert json.loads(send_request.content)["threadId"] == "thread-1"
    assert send_request.headers["Authorization"] == "Bearer access-1"
    mime = mail_api.sent_mime()
    assert mime["In-Reply-To"] == "<in-1@mail.example.org>"
    assert mime["References"] == "<in-1@mail.example.org>"
    assert mime["To"] == "mieter@example.org"
    assert mime["From"] == MAILBOX

    db.refresh(draft)
    db.refresh(inbound)
    db.refresh(lead)
    assert draft.status == MessageStatus.SENT.value
    assert draft.send_status == SendStatus.SENT.value
    assert draft.send_locked_at is None
    assert draft.provider_message_id == "sent-1"
    assert draft.sent_at is not None
    assert inbound.status == MessageStatus.SENT.value
    assert lead.last_message_preview.startswith("Guten Tag")


def test_dispatch_replies_through_outlook_draft(db, agent, make_connection, make_lead, make_message, dispatcher, mail_api):
    make_connection(agent, provider=MailProvider.OUTLOOK.value)
    lead = make_lead(agent, provider=MailProvider.OUTLOOK.value, provider_thread_id="conv-1")
    inbound = make_message(lead, status=MessageStatus.DRAFT_CREATED.value, provider_message_id="AAMk-in")
    draft = make_message(
        lead,
        sender=Sender.AGENT.value,
        status=MessageStatus.READY_TO_SEND.value,
        reply_to_message_id=inbound.id,
    )

    result = dispatcher.dispatch(db, draft.id)

    assert result.outcome == "sent"
    assert [(r.method, r.url.path) for r in mail_api.requests] == [
        ("POST", "/v1.0/me/messages/AAMk-in/createReply"),
        ("PATCH", "/v1.0/me/messages/reply-draft-1"),
        ("POST", "/v1.0/me/messages/reply-draft-1/send"),
    ]
    db.refresh(draft)
    assert draft.provider_message_id == "reply-draft-1"
    assert draft.provider_thread_id == "conv-1"


def test_sent_echo_from_history_sync_takes_over_the_reply(db, dispatcher, make_message, conversation):
    lead, inbound, draft = conversation
    echo = make_message(
        lead,
        sender=Sender.AGENT.value,
        status=MessageStatus.SENT.value,
        send_status=SendStatus.SENT.value,
        provider_message_id="sent-1",
        text="Guten Tag, die Wohnung ist noch",
    )
    rows_before = db.query(Message).count()

    result = dispatcher.dispatch(db, draft.id)

    assert result.outcome == "sent"
    assert db.query(Message).count() == rows_before
    db.refresh(echo)
    db.refresh(draft)
    db.refresh(inbound)
    assert echo.reply_to_message_id == inbound.id
    assert echo.text == "Guten Tag, die Wohnung ist noch verfügbar."
    assert echo.status == MessageStatus.SENT.value
    assert draft.status == MessageStatus.IGNORED.value
    assert draft.send_status == SendStatus.SENT.value
    assert draft.send_locked_at is None
    assert inbound.status == MessageStatus.SENT.value


def test_gmail_reply_carries_the_message_id_stored_on_the_draft(db, dispatcher, mail_api, conversation):
    _, _, draft = conversation

    dispatcher.dispatch(db, draft.id)

    db.refresh(draft)
    assert draft.rfc_message_id
    assert mail_api.sent_mime()["Message-ID"] == draft.rfc_message_id
    assert draft.rfc_message_id.endswith("@example.com>")


def test_unlock_during_send_still_records_sent(db, session_factory, dispatcher, mail_api, conversation):
    _, _, draft = conversation

    def unlock_elsewhere():
        other = session_factory()
        try:
            outbox_service.unlock_send(other, draft.id)
        finally:
            other.close()

    mail_api.on_send = unlock_elsewhere

    result = dispatcher.dispatch(db, draft.id)

    assert result.outcome == "sent"
    db.refresh(draft)
    assert draft.status == MessageStatus.SENT.value
    assert draft.send_status == SendStatus.SENT.value
    assert draft.provider_message_id == "sent-1"
    assert draft.send_error is None

    mail_api.on_send = None
    again = dispatcher.dispatch(db, draft.id)

    assert again.outcome == "not_ready"
    assert _gmail_sends(mail_api) == 1


def test_recording_failure_after_send_parks_draft_without_resend(db, dispatcher, mail_api, conversation, monkeypatch):
    _, _, draft = conversation

    def broken_record(db, inbound_id, lead_id, text, now):
        raise OperationalError("UPDATE leads", {}, Exception("database is locked"))

    monkeypatch.setattr(SendDispatcher, "_mark_answered", staticmethod(broken_record))

    result = dispatcher.dispatch(db, draft.id)

    assert result.outcome == "needs_human"
    assert result.detail == "sent_unrecorded"
    assert result.provider_message_id == "sent-1"
    db.refresh(draft)
    assert draft.status == MessageStatus.NEEDS_HUMAN.value
    assert draft.send_status == SendStatus.SENT.value
    assert draft.send_locked_at is None
    assert draft.send_error.startswith("sent_unrecorded:sent-1")

    with pytest.raises(outbox_service.OutboxActionError):
        outbox_service.retry_send(db, draft.id)
    assert dispatcher.dispatch(db, draft.id).outcome == "not_ready"
    assert _gmail_sends(mail_api) == 1


def test_sent_reply_queues_audit_event(db, test_settings, mail_api, conversation):
    _, _, draft = conversation
    settings = test_settings.model_copy(update={"AUDIT_WEBHOOK_URL": "https://audit.example.com/hook"})
    dispatcher = SendDispatcher(settings, gmail=GmailClient(settings, transport=mail_api.transport()))

    dispatcher.dispatch(db, draft.id)

    job = db.query(Job).filter(Job.job_type == JobType.AUDIT_WEBHOOK.value).one()
    assert job.agent_id == draft.agent_id
    assert job.payload["event"]["event"] == "message.sent"
    assert job.payload["event"]["message_id"] == str(draft.id)
    assert job.payload["event"]["provider_message_id"] == "sent-1"


def test_audit_disabled_queues_nothing(db, dispatcher, conversation):
    _, _, draft = conversation

    dispatcher.dispatch(db, draft.id)

    assert db.query(Job).count() == 0



# =============================================================================
# Lock
# =============================================================================


def test_dispatch_reports_lock_held_elsewhere(db, session_factory, test_settings, dispatcher, mail_api, conversation):
    _, _, draft = conversation
    other = session_factory()
    try:
        assert SendDispatcher(test_settings).acquire_lock(other, draft.id) is True
    finally:
        other.close()

    result = dispatcher.dispatch(db, draft.id)

    assert result.outcome == "already_in_progress"
    assert mail_api.requests == []


def test_provider_failure_releases_lock_and_allows_retry(db, test_settings, mail_api, conversation):
    _, _, draft = conversation
    settings = test_settings.model_copy(update={"SEND_ERROR_MAX_CHARS": 40})
    dispatcher = SendDispatcher(settings, gmail=GmailClient(settings, transport=mail_api.transport()))
    mail_api.fail_with = 500

    failed = dispatcher.dispatch(db, draft.id)

    assert failed.outcome == "failed"
    assert failed.detail.startswith("ProviderError")
    db.refresh(draft)
    assert draft.status == MessageStatus.READY_TO_SEND.value
    assert draft.send_status == SendStatus.FAILED.value
    assert draft.send_locked_at is None
    assert len(draft.send_error) == 40

    mail_api.fail_with = None
    assert dispatcher.dispatch(db, draft.id).outcome == "sent"


# =============================================================================
# Re-validation
# =============================================================================


def test_missing_anchor_goes_to_needs_human(db, dispatcher, mail_api, conversation):
    _, inbound, draft = conversation
    inbound.rfc_message_id = None
    db.commit()

    result = dispatcher.dispatch(db, draft.id)

    assert result.outcome == "needs_human"
    assert result.detail == "missing_anchor"
    assert mail_api.requests == []
    db.refresh(draft)
    assert draft.status == MessageStatus.NEEDS_HUMAN.value
    assert draft.send_status == SendStatus.FAILED.value
    assert draft.send_locked_at is None


def test_draft_without_reply_link_has_no_anchor(db, dispatcher, conversation):
    _, _, draft = conversation
    draft.reply_to_message_id = None
    db.commit()

    assert dispatcher.dispatch(db, draft.id).detail == "missing_anchor"


def test_recipient_mismatch_goes_to_needs_human(db, dispatcher, mail_api, conversation):
    _, _, draft = conversation
    draft.to_address = "someone-else@example.org"
    db.commit()

    result = dispatcher.dispatch(db, draft.id)

    assert result.outcome == "needs_human"
    assert result.detail == "recipient_mismatch"
    assert mail_api.requests == []


def test_recipient_check_ignores_case(db, dispatcher, conversation):
    _, _, draft = conversation
    draft.to_address = " Mieter@Example.org"
    db.commit()

    assert dispatcher.dispatch(db, draft.id).outcome == "sent"


def test_dispatch_refuses_messages_not_ready(db, dispatcher, conversation):
    _, inbound, draft = conversation
    draft.status = MessageStatus.NEEDS_APPROVAL.value
    db.commit()

    assert dispatcher.dispatch(db, draft.id).as_dict() == {"outcome": "not_ready", "detail": "needs_approval"}
    assert dispatcher.dispatch(db, inbound.id).detail == "not_a_draft"


# =============================================================================
# Send stage
# =============================================================================


def test_send_stage_sends_ready_drafts(db, test_settings, dispatcher, conversation):
    _, _, draft = conversation

    results = SendStage(test_settings, dispatcher=dispatcher).run(db)

    assert [(r.message_id, r.outcome) for r in results] == [(str(draft.id), "sent")]


def test_send_stage_skips_drafts_requiring_approval(db, test_settings, dispatcher, mail_api, conversation):
    _, _, draft = conversation
    draft.approval_required = True
    db.commit()

    assert SendStage(test_settings, dispatcher=dispatcher).run(db) == []
    assert mail_api.requests == []


def test_send_stage_returns_draft_to_approval_when_autosend_off(db, test_settings, dispatcher, mail_api, agent, conversation):
    _, _, draft = conversation
    agent.autosend_enabled = False
    db.commit()

    results = SendStage(test_settings, dispatcher=dispatcher).run(db)

    assert results[0].outcome == MessageStatus.NEEDS_APPROVAL.value
    assert results[0].detail == "autosend_disabled"
    assert mail_api.requests == []
    db.refresh(draft)
    assert draft.status == MessageStatus.NEEDS_APPROVAL.value


def test_send_stage_parks_empty_draft(db, test_settings, dispatcher, conversation):
    _, _, draft = conversation
    draft.text = "   "
    db.commit()

    results = SendStage(test_settings, dispatcher=dispatcher).run(db)

    assert results[0].detail == "empty_text"
    db.refresh(draft)
    assert draft.status == MessageStatus.NEEDS_HUMAN.value
    assert draft.send_error == "empty_text"
