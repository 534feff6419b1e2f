"""Tests for Gmail push and Outlook change-notification endpoints."""

import base64
import json

import pytest

from replyready.db.enums import JobType, MailProvider
from replyready.db.models import Job
from replyready.services import push_service
from replyready.services.push_service import PushIngestion, bearer_token, decode_push_body

MAILBOX = "makler@example.com"

GOOGLE_CLAIMS = {"iss": "https://accounts.google.com", "email": "push@test.iam.gserviceaccount.com"}


def _push_body(email_address: str = MAILBOX, history_id: str | int = "1234") -> bytes:
    data = json.dumps({"emailAddress": email_address, "historyId": history_id}).encode()
    return json.dumps(
        {
            "message": {
                "data": base64.urlsafe_b64encode(data).decode(),
                "messageId": "pubsub-1",
            },
            "subscription": "projects/test/subscriptions/gmail",
        }
    ).encode()


@pytest.fixture
def accept_token(monkeypatch):
    calls = []

    def _verify(token, audience):
        calls.append((token, audience))
        return dict(GOOGLE_CLAIMS)

    monkeypatch.setattr(push_service, "google_token_verifier", _verify)
    return calls


@pytest.fixture
def reject_token(monkeypatch):
    def _verify(token, audience):
        raise ValueError("Token expired")

    monkeypatch.setattr(push_service, "google_token_verifier", _verify)


# =============================================================================
# Decoding
# =============================================================================


def test_bearer_token_parsing():
    assert bearer_token("Bearer abc") == "abc"
    assert bearer_token("bearer  abc ") == "abc"
    assert bearer_token("Basic abc") is None
    assert bearer_token("Bearer ") is None
    assert bearer_token(None) is None


def test_decode_push_body_accepts_unpadded_urlsafe_data():
    raw = json.dumps({"emailAddress": "Makler@Example.com", "historyId": 99}).encode()
    body = json.dumps({"message": {"data": base64.urlsafe_b64encode(raw).decode().rstrip("=")}}).encode()

    notification, failure = decode_push_body(body)

    assert failure is None
    assert notification.mailbox_address == "makler@example.com"
    assert notification.history_id == "99"


@pytest.mark.parametrize(
    "body,reason",
    [
        (b"not json", "invalid_json"),
        (b"[]", "invalid_json"),
        (json.dumps({"message": {}}).encode(), "missing_message_data"),
        (json.dumps({"message": {"data": "!!!"}}).encode(), "decode_parse_failed"),
        (
            json.dumps({"message": {"data": base64.b64encode(b'{"historyId": 1}').decode()}}).encode(),
            "missing_email_or_history",
        ),
    ],
)
def test_decode_push_body_failures(body, reason):
    notification, failure = decode_push_body(body)
    assert notification is None
    assert failure == reason


# =============================================================================
# Push ingestion (service)
# =============================================================================


def test_push_enqueues_history_sync_once(db, test_settings, connection):
    ingestion = PushIngestion(test_settings, verifier=lambda token, audience: dict(GOOGLE_CLAIMS))

    first = ingestion.handle(db, authorization="Bearer t", raw_body=_push_body(), request_url="http://test/")
    second = ingestion.handle(db, authorization="Bearer t", raw_body=_push_body(), request_url="http://test/")

    assert first.status == "accepted"
    assert first.job_id is not None
    assert second.status == "accepted"
    assert second.reason == "duplicate"

    jobs = db.query(Job).all()
    assert len(jobs) == 1
    assert jobs[0].job_type == JobType.HISTORY_SYNC.value
    assert jobs[0].payload == {"connection_id": str(connection.id), "new_cursor": "1234"}
    assert jobs[0].idempotency_key == f"history_sync:{connection.id}:1234"


def test_push_uses_configured_audience(db, test_settings, connection):
    seen = []

    def _verify(token, audience):
        seen.append(audience)
        return dict(GOOGLE_CLAIMS)

    PushIngestion(test_settings, verifier=_verify).handle(
        db, authorization="Bearer t", raw_body=_push_body(), request_url="http://internal/webhooks/gmail/push"
    )
    assert seen == [test_settings.GMAIL_PUSH_AUDIENCE]


def test_push_rejects_foreign_issuer(db, test_settings, connection):
    ingestion = PushIngestion(test_settings, verifier=lambda token, audience: {"iss": "https://evil.example"})
    result = ingestion.handle(db, authorization="Bearer t", raw_body=_push_body(), request_url="http://test/")

    assert result.status == "ignored"
    assert result.reason == "jwt_verify_failed"
    assert db.query(Job).count() == 0


def test_push_checks_service_account_when_configured(db, test_settings, connection):
    settings = test_settings.model_copy(update={"GMAIL_PUSH_SERVICE_ACCOUNT": "other@test.iam.gserviceaccount.com"})
    ingestion = PushIngestion(settings, verifier=lambda token, audience: {**GOOGLE_CLAIMS, "email_verified": True})

    result = ingestion.handle(db, authorization="Bearer t", raw_body=_push_body(), request_url="http://test/")

    assert result.reason == "jwt_verify_failed"


def test_push_for_unknown_mailbox_is_ignored(db, test_settings, connection):
    ingestion = PushIngestion(test_settings, verifier=lambda token, audience: dict(GOOGLE_CLAIMS))
    result = ingestion.handle(
        db,
        authorization="Bearer t",
        raw_body=_push_body("someone-else@example.com"),
        request_url="http://test/",
    )

    assert result.status == "ignored"
    assert result.reason == "connection_not_found"
    assert db.query(Job).count() == 0


def test_push_matches_mailbox_case_insensitively(db, test_settings, connection):
    ingestion = PushIngestion(test_settings, verifier=lambda token, audience: dict(GOOGLE_CLAIMS))
    result = ingestion.handle(
        db, authorization="Bearer t", raw_body=_push_body(MAILBOX.upper()), request_url="http://test/"
    )
    assert result.status == "accepted"


# =============================================================================
# Endpoints
# =============================================================================


@pytest.mark.asyncio
async def test_gmail_push_endpoint_accepts(client, db, connection, accept_token):
    response = await client.post(
        "/webhooks/gmail/push",
        content=_push_body(history_id=555),
        headers={"Authorization": "Bearer signed-token", "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "accepted"
    assert accept_token[0][0] == "signed-token"
    job = db.query(Job).one()
    assert job.payload["new_cursor"] == "555"


@pytest.mark.asyncio
async def test_gmail_push_endpoint_answers_200_on_bad_token(client, db, connection, reject_token):
    response = await client.post(
        "/webhooks/gmail/push",
        content=_push_body(),
        headers={"Authorization": "Bearer forged"},
    )

    assert response.status_code == 200
    assert response.json() == {"status": "ignored", "reason": "jwt_verify_failed"}
    assert db.query(Job).count() == 0


@pytest.mark.asyncio
async def test_gmail_push_endpoint_answers_200_without_bearer(client, db, connection, accept_token):
    response = await client.post("/webhooks/gmail/push", content=_push_body())

    assert response.status_code == 200
    assert response.json()["reason"] == "missing_bearer"
    assert accept_token == []


@pytest.mark.asyncio
async def test_gmail_push_endpoint_answers_200_on_garbage(client, db, connection, accept_token):
    response = await client.post(
        "/webhooks/gmail/push", content=b"{{{", headers={"Authorization": "Bearer t"}
    )

    assert response.status_code == 200
    assert response.json()["reason"] == "invalid_json"


@pytest.mark.asyncio
async def test_gmail_push_redelivery_is_duplicate(client, db, connection, accept_token):
    headers = {"Authorization": "Bearer t"}
    await client.post("/webhooks/gmail/push", content=_push_body(), headers=headers)
    response = await client.post("/webhooks/gmail/push", content=_push_body(), headers=headers)

    assert response.json() == {"status": "accepted", "reason": "duplicate"}
    assert db.query(Job).count() == 1


@pytest.mark.asyncio
async def test_outlook_validation_token_is_echoed(client):
    response = await client.post("/webhooks/outlook", params={"validationToken": "Validation: abc 123"})

    assert response.status_code == 200
    assert response.text == "Validation: abc 123"
    assert response.headers["content-type"].startswith("text/plain")


@pytest.mark.asyncio
async def test_outlook_notification_queues_sync_once(client, db, agent, make_connection):
    connection = make_connection(
        agent,
        provider=MailProvider.OUTLOOK.value,
        subscription_id="sub-1",
        sync_cursor="https://graph.microsoft.com/v1.0/me/mailFolders/inbox/messages/delta?$deltatoken=x",
    )
    body = json.dumps(
        {"value": [{"subscriptionId": "sub-1", "clientState": "client-state", "changeType": "created"}]}
    )

    first = await client.post("/webhooks/outlook", content=body)
    second = await client.post("/webhooks/outlook", content=body)

    assert first.status_code == 202
    assert first.json() == {"status": "accepted"}
    assert second.status_code == 202
    assert second.json()["reason"] == "nothing_queued"
    job = db.query(Job).one()
    assert job.payload == {"connection_id": str(connection.id)}


@pytest.mark.asyncio
async def test_outlook_notification_with_bad_client_state_is_dropped(client, db, agent, make_connection):
    make_connection(agent, provider=MailProvider.OUTLOOK.value, subscription_id="sub-1")
    body = json.dumps({"value": [{"subscriptionId": "sub-1", "clientState": "wrong"}]})

    response = await client.post("/webhooks/outlook", content=body)

    assert response.status_code == 202
    assert response.json()["reason"] == "nothing_queued"
    assert db.query(Job).count() == 0
