"""Tests for the history diff engine (Gmail history, stale cursor reset, backfill)."""

import base64

import httpx
import pytest

from replyready.core.exceptions import HistoryExpiredError
from replyready.db.enums import ConnectionStatus, MessageStatus
from replyready.db.models import Lead, Message
from replyready.services.gmail_client import GmailClient
from replyready.services.history_sync_service import HistorySyncEngine
from replyready.services.ingestion_service import IngestionService
from replyready.services.safety_classifier import SafetyClassifier

LEAD_VERDICT = {"decision": "auto_reply", "email_type": "LEAD", "confidence": 0.99, "reason": "inquiry"}


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode()


def gmail_message(
    message_id: str,
    *,
    thread_id: str | None = None,
    sender: str = "Max Mieter <max@example.org>",
    to: str = "makler@example.com",
    subject: str = "Anfrage Wohnung",
    body: str = "Guten Tag, ist die Wohnung noch frei?",
    internal_date: int = 1760000000000,
) -> dict:
    payload = {
        "mimeType": "text/plain",
        "headers": [
            {"name": "From", "value": sender},
            {"name": "To", "value": to},
            {"name": "Subject", "value": subject},
            {"name": "Message-ID", "value": f"<{message_id}@mail.example.org>"},
        ],
        "body": {"data": _b64(body)},
    }
    return {
        "id": message_id,
        "threadId": thread_id or f"thread-{message_id}",
        "snippet": body[:50],
        "internalDate": str(internal_date),
        "labelIds": ["INBOX"],
        "payload": payload,
    }


class GmailApi:
    """Scripted Gmail API behind httpx.MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.history_pages: dict[str | None, dict] = {}
        self.history_status = 200
        self.messages: dict[str, dict] = {}
        self.recent_ids: list[str] = []
        self.profile_history_id = "5000"

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = request.url.params
        if path == "/gmail/v1/users/me/history":
            if self.history_status != 200:
                return httpx.Response(self.history_status, json={"error": {"message": "Requested entity was not found."}})
            return httpx.Response(200, json=self.history_pages[params.get("pageToken")])
        if path == "/gmail/v1/users/me/profile":
            return httpx.Response(200, json={"emailAddress": "makler@example.com", "historyId": self.profile_history_id})
        if path == "/gmail/v1/users/me/messages":
            return httpx.Response(200, json={"messages": [{"id": mid} for mid in self.recent_ids]})
        if path.startswith("/gmail/v1/users/me/messages/"):
            message_id = path.rsplit("/", 1)[-1]
            if message_id not in self.messages:
                return httpx.Response(404, json={"error": {"message": "Not Found"}})
            message = self.messages[message_id]
            if params.get("format") != "full":
                message = {**message, "payload": {**message["payload"], "body": {}}}
            return httpx.Response(200, json=message)
        return httpx.Response(500, json={"error": {"message": f"unexpected {path}"}})

    def paths(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]


@pytest.fixture
def gmail_api() -> GmailApi:
    return GmailApi()


@pytest.fixture
def build_engine(test_settings, fake_model, gmail_api):
    def _build(*verdicts, settings=None):
        settings = settings or test_settings
        provider, client = fake_model(*verdicts)
        engine = HistorySyncEngine(
            settings,
            gmail=GmailClient(settings, transport=gmail_api.transport()),
            ingestion=IngestionService(settings, SafetyClassifier(settings, client)),
        )
        return engine, provider

    return _build


# =============================================================================
# Baseline
# =============================================================================


def test_first_sync_stores_push_history_id_as_baseline(db, agent, make_connection, build_engine, gmail_api):
    connection = make_connection(agent, sync_cursor=None, status=ConnectionStatus.CONNECTED.value)
    engine, provider = build_engine()

    report = engine.sync(db, connection, new_cursor="777")

    db.refresh(connection)
    assert report.outcome == "baseline"
    assert connection.sync_cursor == "777"
    assert connection.status == ConnectionStatus.ACTIVE.value
    assert gmail_api.requests == []
    assert provider.calls == []


def test_first_sync_without_push_reads_profile_history_id(db, agent, make_connection, build_engine, gmail_api):
    connection = make_connection(agent, sync_cursor=None, status=ConnectionStatus.CONNECTED.value)
    engine, _ = build_engine()

    report = engine.sync(db, connection)

    assert report.cursor == "5000"
    assert connection.sync_cursor == "5000"
    assert len(gmail_api.paths("/gmail/v1/users/me/history")) == 0


def test_sync_skips_connection_needing_reconnect(db, agent, make_connection, build_engine, gmail_api):
    connection = make_connection(agent, status=ConnectionStatus.NEEDS_RECONNECT.value)
    engine, _ = build_engine()

    assert engine.sync(db, connection).outcome == "skipped"
    assert gmail_api.requests == []


# =============================================================================
# Incremental diff
# =============================================================================


def test_sync_follows_every_history_page(db, connection, build_engine, gmail_api):
    gmail_api.history_pages = {
        None: {
            "history": [{"id": "1001", "messagesAdded": [{"message": {"id": "m1"}}]}],
            "historyId": "1002",
            "nextPageToken": "page-2",
        },
        "page-2": {
            "history": [
                {"id": "1005", "messagesAdded": [{"message": {"id": "m2"}}, {"message": {"id": "m1"}}]}
            ],
            "historyId": "1006",
        },
    }
    gmail_api.messages = {"m1": gmail_message("m1"), "m2": gmail_message("m2", sender="Erika <erika@example.net>")}
    engine, provider = build_engine(LEAD_VERDICT, LEAD_VERDICT)

    report = engine.sync(db, connection)

    history_requests = gmail_api.paths("/gmail/v1/users/me/history")
    assert [r.url.params.get("pageToken") for r in history_requests] == [None, "page-2"]
    assert all(r.url.params["startHistoryId"] == "1000" for r in history_requests)
    assert report.outcome == "synced"
    assert report.created == 2
    assert connection.sync_cursor == "1006"
    assert connection.last_error is None
    assert len(provider.calls) == 2

    messages = db.query(Message).order_by(Message.provider_message_id).all()
    assert [m.provider_message_id for m in messages] == ["m1", "m2"]
    assert all(m.status == MessageStatus.INTENT_PENDING.value for m in messages)
    assert messages[0].text == "Guten Tag, ist die Wohnung noch frei?"
    assert messages[0].rfc_message_id == "<m1@mail.example.org>"
    assert db.query(Lead).count() == 2


def test_sync_cursor_takes_push_history_id_when_higher(db, connection, build_engine, gmail_api):
    gmail_api.history_pages = {None: {"history": [], "historyId": "1001"}}
    engine, _ = build_engine()

    report = engine.sync(db, connection, new_cursor="1500")

    assert report.cursor == "1500"
    assert connection.sync_cursor == "1500"


def test_sync_is_idempotent_for_already_ingested_messages(db, connection, build_engine, gmail_api):
    gmail_api.history_pages = {None: {"history": [{"id": "1001", "messagesAdded": [{"message": {"id": "m1"}}]}]}}
    gmail_api.messages = {"m1": gmail_message("m1")}
    engine, provider = build_engine(LEAD_VERDICT)

    engine.sync(db, connection)
    connection.sync_cursor = "1000"
    db.commit()
    report = engine.sync(db, connection)

    assert report.results == ["duplicate"]
    assert db.query(Message).count() == 1
    assert len(provider.calls) == 1


def test_message_deleted_before_fetch_is_skipped(db, connection, build_engine, gmail_api):
    gmail_api.history_pages = {None: {"history": [{"id": "1001", "messagesAdded": [{"message": {"id": "gone"}}]}]}}
    engine, _ = build_engine()

    report = engine.sync(db, connection)

    assert report.outcome == "synced"
    assert report.fetched == 0
    assert db.query(Message).count() == 0


def test_provider_error_is_recorded_and_raised(db, connection, build_engine, gmail_api):
    gmail_api.history_status = 500
    engine, _ = build_engine()

    with pytest.raises(Exception) as exc_info:
        engine.sync(db, connection)

    assert not isinstance(exc_info.value, HistoryExpiredError)
    db.refresh(connection)
    assert connection.sync_cursor == "1000"
    assert "500" in connection.last_error


# =============================================================================
# Stale cursor
# =============================================================================


def test_stale_cursor_resets_to_push_cursor_and_backfills_bounded(db, connection, test_settings, build_engine, gmail_api):
    settings = test_settings.model_copy(update={"BACKFILL_MAX_MESSAGES": 2, "BACKFILL_WINDOW_DAYS": 3})
    gmail_api.history_status = 404
    gmail_api.recent_ids = ["m3", "m2", "m1"]  # newest first
    gmail_api.messages = {
        "m1": gmail_message("m1", internal_date=1760000000000),
        "m2": gmail_message("m2", internal_date=1760000100000),
        "m3": gmail_message("m3", internal_date=1760000200000),
    }
    engine, provider = build_engine(LEAD_VERDICT, LEAD_VERDICT, settings=settings)

    report = engine.sync(db, connection, new_cursor="2000")

    db.refresh(connection)
    assert report.outcome == "reset_backfill"
    assert connection.sync_cursor == "2000"
    assert "404" in connection.last_error
    assert connection.last_backfill_at is not None

    list_request = gmail_api.paths("/gmail/v1/users/me/messages")[0]
    assert list_request.url.params["q"].startswith("newer_than:3d")
    assert list_request.url.params["maxResults"] == "2"

    # Capped to the two newest, ingested oldest first
    fetched = [
        r.url.path.rsplit("/", 1)[-1]
        for r in gmail_api.requests
        if r.url.path.startswith("/gmail/v1/users/me/messages/") and r.url.params["format"] == "metadata"
    ]
    assert fetched == ["m2", "m3"]
    assert {m.provider_message_id for m in db.query(Message).all()} == {"m2", "m3"}
    assert len(provider.calls) == 2


def test_stale_cursor_without_push_uses_profile(db, connection, build_engine, gmail_api):
    gmail_api.history_status = 404
    gmail_api.recent_ids = []
    engine, _ = build_engine()

    report = engine.sync(db, connection)

    assert report.outcome == "reset_backfill"
    assert connection.sync_cursor == "5000"


def test_list_added_message_ids_dedupes_and_tracks_highest(test_settings, gmail_api):
    gmail_api.history_pages = {
        None: {
            "history": [
                {"id": "1001", "messagesAdded": [{"message": {"id": "a"}}]},
                {"id": "1003", "messagesAdded": [{"message": {"id": "b"}}, {"message": {"id": "a"}}]},
            ],
            "nextPageToken": "x",
        },
        "x": {"history": [{"id": "1009", "messagesAdded": [{"message": {"id": "c"}}]}], "historyId": "1004"},
    }
    client = GmailClient(test_settings, transport=gmail_api.transport())

    ids, highest = client.list_added_message_ids(access_token="t", start_history_id="1000")

    assert ids == ["a", "b", "c"]
    assert highest == 1009
    assert gmail_api.requests[0].headers["Authorization"] == "Bearer t"


def test_list_history_404_raises_history_expired(test_settings, gmail_api):
    gmail_api.history_status = 404
    client = GmailClient(test_settings, transport=gmail_api.transport())

    with pytest.raises(HistoryExpiredError):
        client.list_history(access_token="t", start_history_id="1", page_token=None)


def test_metadata_fetch_requests_header_allowlist(test_settings, gmail_api):
    gmail_api.messages = {"m1": gmail_message("m1")}
    client = GmailClient(test_settings, transport=gmail_api.transport())

    metadata = client.get_message_metadata(access_token="t", message_id="m1")

    request = gmail_api.requests[0]
    assert request.url.params["format"] == "metadata"
    assert "Message-ID" in request.url.params.get_list("metadataHeaders")
    assert metadata["payload"]["body"] == {}
