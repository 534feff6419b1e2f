"""History diff engine: cursor-based incremental sync with self-healing reset.

Per connection:
- no stored cursor: store the new cursor as baseline, mark active, stop.
- stored cursor: fetch every added message since the cursor (all pages),
  ingest each, then advance the cursor and clear last_error.
- stale cursor (Gmail 404, Graph 410/syncStateNotFound): record the error,
  reset the cursor to a fresh baseline and run a bounded backfill (recency
  window + count cap) through the same ingestion path.

Gmail cursors are historyIds; Outlook cursors are Graph inbox delta links.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from replyready.core.config import Settings
from replyready.core.exceptions import HistoryExpiredError, ProviderError
from replyready.core.structured_logging import build_log_context
from replyready.db.enums import ConnectionStatus, MailProvider
from replyready.db.models import Connection
from replyready.services import connection_service
from replyready.services.gmail_client import GmailClient
from replyready.services.ingestion_service import IngestionService, IngestResult
from replyready.services.mail_envelope import envelope_from_gmail, envelope_from_graph
from replyready.services.oauth_service import TokenRefresher
from replyready.services.outlook_client import OutlookClient

logger = logging.getLogger(__name__)

WATCH_RENEW_WINDOW = timedelta(hours=24)
OUTLOOK_SUBSCRIPTION_LIFETIME = timedelta(days=2)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _max_history_id(*values: str | int | None) -> str | None:
    numbers = []
    for value in values:
        try:
            if value is not None:
                numbers.append(int(value))
        except (TypeError, ValueError):
            continue
    return str(max(numbers)) if numbers else None


def _parse_epoch_ms(value: object | None) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _parse_iso(value: object | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class SyncReport:
    connection_id: str
    outcome: str  # baseline | synced | reset_backfill | skipped
    fetched: int = 0
    created: int = 0
    cursor: str | None = None
    results: list[str] = field(default_factory=list)

    def add(self, result: IngestResult) -> None:
        self.fetched += 1
        self.results.append(result.outcome)
        if result.outcome == "created":
            self.created += 1

    def as_dict(self) -> dict:
        return {
            "connection_id": self.connection_id,
            "outcome": self.outcome,
            "fetched": self.fetched,
            "created": self.created,
        }


class HistorySyncEngine:
    """Drives Gmail history / Graph delta sync for one connection at a time."""

    def __init__(
        self,
        settings: Settings,
        *,
        gmail: GmailClient | None = None,
        outlook: OutlookClient | None = None,
        token_refresher: TokenRefresher | None = None,
        ingestion: IngestionService | None = None,
    ):
        self.settings = settings
        self.gmail = gmail or GmailClient(settings)
        self.outlook = outlook or OutlookClient(settings)
        self.token_refresher = token_refresher or TokenRefresher(settings)
        self.ingestion = ingestion or IngestionService(settings)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def sync(self, db: Session, connection: Connection, new_cursor: str | None = None) -> SyncReport:
        context = build_log_context(
            agent_id=connection.agent_id, connection_id=connection.id, provider=connection.provider
        )
        report = SyncReport(connection_id=str(connection.id), outcome="skipped")
        if connection.status not in {status.value for status in ConnectionStatus.usable()}:
            logger.info(f"Sync skipped for connection status={connection.status}", extra=context)
            return report

        access_token = self.token_refresher.get_access_token(db, connection)
        provider = MailProvider(connection.provider)

        if not connection.sync_cursor:
            baseline = self._baseline_cursor(provider, access_token, new_cursor)
            connection_service.set_baseline_cursor(db, connection, baseline)
            report.outcome = "baseline"
            report.cursor = baseline
            logger.info("Baseline cursor stored; no diff on first sync", extra=context)
            return report

        try:
            if provider == MailProvider.GMAIL:
                cursor = self._sync_gmail(db, connection, access_token, new_cursor, report)
            else:
                cursor = self._sync_outlook(db, connection, access_token, report)
        except HistoryExpiredError as exc:
            logger.warning("Stored cursor expired; resetting baseline and backfilling", extra=context)
            connection_service.record_error(db, connection, exc)
            baseline = self._baseline_cursor(provider, access_token, new_cursor)
            connection.sync_cursor = baseline
            connection.updated_at = _now_utc()
            db.commit()
            report.outcome = "reset_backfill"
            report.cursor = baseline
            self.backfill(db, connection, access_token=access_token, report=report)
            return report
        except Exception as exc:
            connection_service.record_error(db, connection, exc)
            raise

        connection.sync_cursor = cursor
        connection.last_error = None
        connection.last_sync_at = _now_utc()
        connection.status = ConnectionStatus.ACTIVE.value
        connection.updated_at = _now_utc()
        db.commit()

        report.outcome = "synced"
        report.cursor = cursor
        logger.info(
            f"History sync done: fetched={report.fetched} created={report.created}", extra=context
        )
        return report

    # ------------------------------------------------------------------
    # Provider diffs
    # ------------------------------------------------------------------

    def _baseline_cursor(self, provider: MailProvider, access_token: str, new_cursor: str | None) -> str:
        if provider == MailProvider.GMAIL:
            if new_cursor:
                return str(new_cursor)
            profile = self.gmail.get_profile(access_token=access_token)
            return str(profile["historyId"])
        _, delta_link = self.outlook.list_delta(access_token=access_token, since=_now_utc())
        if not delta_link:
            raise ProviderError("Outlook", 200, "delta round ended without a deltaLink")
        return delta_link

    def _sync_gmail(
        self,
        db: Session,
        connection: Connection,
        access_token: str,
        new_cursor: str | None,
        report: SyncReport,
    ) -> str:
        message_ids, highest = self.gmail.list_added_message_ids(
            access_token=access_token, start_history_id=connection.sync_cursor
        )
        for message_id in message_ids:
            self._ingest_gmail(db, connection, access_token, message_id, report)
        return _max_history_id(connection.sync_cursor, new_cursor, highest) or connection.sync_cursor

    def _sync_outlook(
        self, db: Session, connection: Connection, access_token: str, report: SyncReport
    ) -> str:
        message_ids, delta_link = self.outlook.list_delta(
            access_token=access_token, delta_link=connection.sync_cursor
        )
        for message_id in message_ids:
            self._ingest_outlook(db, connection, access_token, message_id, report)
        return delta_link or connection.sync_cursor

    def _ingest_gmail(
        self, db: Session, connection: Connection, access_token: str, message_id: str, report: SyncReport
    ) -> None:
        try:
            metadata = self.gmail.get_message_metadata(access_token=access_token, message_id=message_id)
        except ProviderError as exc:
            if exc.status_code == 404:
                # Deleted between the history entry and the fetch.
                return
            raise

        def load_full():
            return envelope_from_gmail(
                self.gmail.get_message_full(access_token=access_token, message_id=message_id)
            )

        result = self.ingestion.ingest(db, connection, envelope_from_gmail(metadata), load_full=load_full)
        report.add(result)

    def _ingest_outlook(
        self, db: Session, connection: Connection, access_token: str, message_id: str, report: SyncReport
    ) -> None:
        try:
            message = self.outlook.get_message(access_token=access_token, message_id=message_id)
        except ProviderError as exc:
            if exc.status_code == 404:
                return
            raise
        result = self.ingestion.ingest(db, connection, envelope_from_graph(message))
        report.add(result)

    # ------------------------------------------------------------------
    # Bounded backfill
    # ------------------------------------------------------------------

    def backfill(
        self,
        db: Session,
        connection: Connection,
        *,
        access_token: str | None = None,
        report: SyncReport | None = None,
    ) -> SyncReport:
        """
        Re-ingest recent mail after a cursor reset: at most
        BACKFILL_MAX_MESSAGES messages from the last BACKFILL_WINDOW_DAYS.
        Already ingested messages dedupe on provider_message_id.
        """
        report = report or SyncReport(connection_id=str(connection.id), outcome="backfill")
        access_token = access_token or self.token_refresher.get_access_token(db, connection)
        window_days = self.settings.BACKFILL_WINDOW_DAYS
        max_messages = self.settings.BACKFILL_MAX_MESSAGES
        since = _now_utc() - timedelta(days=window_days)

        if connection.provider == MailProvider.GMAIL.value:
            message_ids = self.gmail.list_recent_message_ids(
                access_token=access_token, newer_than_days=window_days, max_results=max_messages
            )
        else:
            message_ids = self.outlook.list_recent_message_ids(
                access_token=access_token, since=since, max_results=max_messages
            )

        # Newest-first from the provider; ingest oldest-first.
        for message_id in reversed(message_ids[:max_messages]):
            if connection.provider == MailProvider.GMAIL.value:
                self._ingest_gmail(db, connection, access_token, message_id, report)
            else:
                self._ingest_outlook(db, connection, access_token, message_id, report)

        connection.last_backfill_at = _now_utc()
        connection.updated_at = _now_utc()
        db.commit()
        logger.info(
            f"Backfill done: fetched={report.fetched} created={report.created}",
            extra=build_log_context(
                agent_id=connection.agent_id, connection_id=connection.id, provider=connection.provider
            ),
        )
        return report

    # ------------------------------------------------------------------
    # Watch / subscription renewal
    # ------------------------------------------------------------------

    def watch_is_due(self, connection: Connection, *, now: datetime | None = None) -> bool:
        now = now or _now_utc()
        if connection.watch_expiration is None:
            return True
        return connection.watch_expiration <= now + WATCH_RENEW_WINDOW

    def refresh_watch(self, db: Session, connection: Connection, *, force: bool = False) -> bool:
        """Renew the Gmail watch or Graph subscription when due. True if renewed."""
        context = build_log_context(
            agent_id=connection.agent_id, connection_id=connection.id, provider=connection.provider
        )
        if not force and not self.watch_is_due(connection):
            return False

        access_token = self.token_refresher.get_access_token(db, connection)
        try:
            if connection.provider == MailProvider.GMAIL.value:
                self._refresh_gmail_watch(connection, access_token)
            else:
                self._refresh_outlook_subscription(connection, access_token)
        except Exception as exc:
            connection_service.record_error(db, connection, exc)
            raise

        connection.updated_at = _now_utc()
        db.commit()
        logger.info("Watch renewed", extra=context)
        return True

    def _refresh_gmail_watch(self, connection: Connection, access_token: str) -> None:
        topic = self.settings.GMAIL_PUSH_TOPIC
        if not topic:
            raise ProviderError("Gmail", 0, "GMAIL_PUSH_TOPIC not configured")
        payload = self.gmail.watch(access_token=access_token, topic_name=topic, label_ids=["INBOX"])
        connection.watch_expiration = _parse_epoch_ms(payload.get("expiration"))
        if not connection.sync_cursor and payload.get("historyId"):
            connection.sync_cursor = str(payload["historyId"])
            connection.status = ConnectionStatus.ACTIVE.value

    def _refresh_outlook_subscription(self, connection: Connection, access_token: str) -> None:
        expires_at = _now_utc() + OUTLOOK_SUBSCRIPTION_LIFETIME
        payload: dict | None = None
        if connection.subscription_id:
            try:
                payload = self.outlook.renew_subscription(
                    access_token=access_token,
                    subscription_id=connection.subscription_id,
                    expires_at=expires_at,
                )
            except ProviderError as exc:
                if exc.status_code != 404:
                    raise
                payload = None
        if payload is None:
            payload = self.outlook.create_subscription(access_token=access_token, expires_at=expires_at)
            connection.subscription_id = payload.get("id") or connection.subscription_id
        connection.watch_expiration = _parse_iso(payload.get("expirationDateTime")) or expires_at
