"""Best-effort outbound audit webhook.

Events are queued as `audit_webhook` jobs and delivered by the worker, with
the job table's retries. Queueing and delivery failures are logged and
never reach the send path.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replyready.core.config import Settings
from replyready.core.structured_logging import safe_url
from replyready.db.enums import JobType
from replyready.services import job_service

logger = logging.getLogger(__name__)

AUDIT_TIMEOUT_SECONDS = 5.0


class AuditDeliveryError(RuntimeError):
    """Audit endpoint unreachable or answered with an error status."""


class AuditWebhook:
    def __init__(self, settings: Settings, *, transport: httpx.BaseTransport | None = None):
        self.settings = settings
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.settings.AUDIT_WEBHOOK_URL)

    def queue(self, db: Session, event: dict[str, Any], *, agent_id: UUID | None = None) -> bool:
        """Queue one event for delivery. False when disabled, duplicate or not queued."""
        if not self.enabled:
            return False
        idempotency_key = f"audit:{event.get('event')}:{event.get('message_id')}"
        try:
            job_service.schedule_job(
                db,
                JobType.AUDIT_WEBHOOK,
                {"event": event},
                agent_id=agent_id,
                idempotency_key=idempotency_key,
            )
            return True
        except IntegrityError:
            db.rollback()
            logger.info("Skipping duplicate audit event for key=%s", idempotency_key)
            return False
        except Exception as exc:
            db.rollback()
            logger.warning(f"Audit event not queued: {type(exc).__name__}")
            return False

    def deliver(self, event: dict[str, Any]) -> None:
        """POST one event; raises AuditDeliveryError so the job is retried."""
        url = self.settings.AUDIT_WEBHOOK_URL
        if not url:
            logger.info("Audit webhook disabled; event dropped")
            return
        try:
            with httpx.Client(timeout=AUDIT_TIMEOUT_SECONDS, transport=self._transport) as client:
                response = client.post(url, json=event)
        except httpx.HTTPError as exc:
            raise AuditDeliveryError(f"Audit webhook to {safe_url(url)} failed: {type(exc).__name__}") from exc
        if response.status_code >= 400:
            raise AuditDeliveryError(f"Audit webhook to {safe_url(url)} returned {response.status_code}")
