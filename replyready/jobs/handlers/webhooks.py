"""Audit webhook delivery job handler."""

from __future__ import annotations

import logging

import anyio

from replyready.core.config import get_settings
from replyready.services.audit_webhook import AuditWebhook

logger = logging.getLogger(__name__)


async def process_audit_webhook(db, job) -> None:
    """Deliver one queued audit event; a failure raises so the job is retried."""
    event = (job.payload or {}).get("event")
    if not isinstance(event, dict):
        logger.warning("Invalid audit webhook payload: missing event")
        return
    await anyio.to_thread.run_sync(AuditWebhook(get_settings()).deliver, event)
    logger.info("Audit event delivered for job %s", job.id)
