"""Mailbox job handlers: history sync, backfill, watch refresh."""

from __future__ import annotations

import logging
from uuid import UUID

import anyio

from replyready.core.config import get_settings
from replyready.services import connection_service
from replyready.services.history_sync_service import HistorySyncEngine

logger = logging.getLogger(__name__)


def _connection_id(job) -> UUID:
    payload = job.payload or {}
    raw = payload.get("connection_id")
    if not raw:
        raise ValueError(f"Missing connection_id in {job.job_type} payload")
    try:
        return UUID(str(raw))
    except ValueError as exc:
        raise ValueError(f"Invalid connection_id in {job.job_type} payload") from exc


def _engine() -> HistorySyncEngine:
    return HistorySyncEngine(get_settings())


async def process_history_sync(db, job) -> None:
    """
    Diff one mailbox from its stored cursor.

    Payload:
      - connection_id (required)
      - new_cursor (optional): historyId announced by the push
    """
    connection = connection_service.get_connection_by_id(db, _connection_id(job))
    new_cursor = (job.payload or {}).get("new_cursor")
    report = await anyio.to_thread.run_sync(_engine().sync, db, connection, new_cursor)
    logger.info(
        "History sync job %s: outcome=%s fetched=%s created=%s",
        job.id,
        report.outcome,
        report.fetched,
        report.created,
    )


async def process_mailbox_backfill(db, job) -> None:
    connection = connection_service.get_connection_by_id(db, _connection_id(job))
    engine = _engine()
    report = await anyio.to_thread.run_sync(lambda: engine.backfill(db, connection))
    logger.info("Backfill job %s: fetched=%s created=%s", job.id, report.fetched, report.created)


async def process_watch_refresh(db, job) -> None:
    """Renew the Gmail watch / Graph subscription; `force` renews even when not due."""
    connection = connection_service.get_connection_by_id(db, _connection_id(job))
    force = bool((job.payload or {}).get("force"))
    engine = _engine()
    renewed = await anyio.to_thread.run_sync(lambda: engine.refresh_watch(db, connection, force=force))
    logger.info("Watch refresh job %s: renewed=%s", job.id, renewed)
