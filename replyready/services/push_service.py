"""Gmail Pub/Sub push and Outlook change-notification ingestion.

Verifies the push's OIDC identity token, decodes `{emailAddress, historyId}`
and hands off to the history diff engine by enqueueing a HISTORY_SYNC job.
Every outcome is reported as a PushResult; nothing here raises to the
router, because the push endpoint must always answer 2xx.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

from google.auth.exceptions import GoogleAuthError
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from sqlalchemy.orm import Session

from replyready.core.config import Settings
from replyready.core.structured_logging import build_log_context, mask_email
from replyready.db.enums import JobType, MailProvider
from replyready.services import connection_service, job_service

logger = logging.getLogger(__name__)

GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")

TokenVerifier = Callable[[str, str], dict[str, Any]]


@dataclass(frozen=True)
class PushResult:
    status: str  # accepted | ignored
    reason: str | None = None
    job_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status}
        if self.reason:
            payload["reason"] = self.reason
        if self.job_id:
            payload["job_id"] = self.job_id
        return payload


@dataclass(frozen=True)
class PushNotification:
    mailbox_address: str
    history_id: str


def google_token_verifier(token: str, audience: str) -> dict[str, Any]:
    """Signature, expiry and audience check via google-auth (raises ValueError)."""
    return id_token.verify_oauth2_token(token, google_requests.Request(), audience)


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def decode_push_body(raw_body: bytes) -> tuple[PushNotification | None, str | None]:
    """Returns (notification, None) or (None, failure reason)."""
    try:
        envelope = json.loads(raw_body or b"")
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None, "invalid_json"
    if not isinstance(envelope, dict):
        return None, "invalid_json"

    message = envelope.get("message")
    data_b64 = message.get("data") if isinstance(message, dict) else None
    if not data_b64 or not isinstance(data_b64, str):
        return None, "missing_message_data"

    try:
        decoded = base64.b64decode(data_b64 + "=" * (-len(data_b64) % 4), altchars=b"-_")
        data = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return None, "decode_parse_failed"
    if not isinstance(data, dict):
        return None, "decode_parse_failed"

    email_address = str(data.get("emailAddress") or "").strip().lower()
    history_id = data.get("historyId")
    if not email_address or not history_id:
        return None, "missing_email_or_history"
    return PushNotification(mailbox_address=email_address, history_id=str(history_id)), None


class PushIngestion:
    """Verify + decode + hand off. Injected settings; pluggable token verifier."""

    def __init__(self, settings: Settings, verifier: TokenVerifier | None = None):
        self.settings = settings
        self.verifier = verifier or google_token_verifier

    def verify(self, authorization: str | None, request_url: str) -> str | None:
        """None when the identity token is valid, else the failure reason."""
        token = bearer_token(authorization)
        if not token:
            return "missing_bearer"

        audience = self.settings.gmail_push_audience_for(request_url)
        try:
            claims = self.verifier(token, audience)
        except (ValueError, GoogleAuthError) as exc:
            logger.warning(f"Gmail push token rejected: {type(exc).__name__}")
            return "jwt_verify_failed"

        if claims.get("iss") not in GOOGLE_ISSUERS:
            return "jwt_verify_failed"
        expected_account = self.settings.GMAIL_PUSH_SERVICE_ACCOUNT
        if expected_account:
            if claims.get("email") != expected_account or not claims.get("email_verified", False):
                return "jwt_verify_failed"
        return None

    def handle(
        self,
        db: Session,
        *,
        authorization: str | None,
        raw_body: bytes,
        request_url: str,
    ) -> PushResult:
        failure = self.verify(authorization, request_url)
        if failure:
            logger.warning(f"Gmail push ignored: {failure}")
            return PushResult(status="ignored", reason=failure)

        notification, failure = decode_push_body(raw_body)
        if notification is None:
            logger.warning(f"Gmail push ignored: {failure}")
            return PushResult(status="ignored", reason=failure)

        connection = connection_service.find_by_mailbox(
            db, provider=MailProvider.GMAIL, mailbox_address=notification.mailbox_address
        )
        if connection is None:
            logger.warning(
                "Gmail push for unknown mailbox=%s", mask_email(notification.mailbox_address)
            )
            return PushResult(status="ignored", reason="connection_not_found")

        job = job_service.enqueue_once(
            db,
            JobType.HISTORY_SYNC,
            {"connection_id": str(connection.id), "new_cursor": notification.history_id},
            agent_id=connection.agent_id,
            idempotency_key=f"history_sync:{connection.id}:{notification.history_id}",
        )
        context = build_log_context(
            agent_id=connection.agent_id, connection_id=connection.id, provider=MailProvider.GMAIL.value
        )
        if job is None:
            logger.info("Gmail push redelivered; sync already queued", extra=context)
            return PushResult(status="accepted", reason="duplicate")

        logger.info(f"Gmail push accepted historyId={notification.history_id}", extra=context)
        return PushResult(status="accepted", job_id=str(job.id))


def handle_outlook_notifications(db: Session, settings: Settings, raw_body: bytes) -> PushResult:
    """
    Graph change notifications: each valid entry queues one history sync for
    its connection unless one is already pending or running.
    """
    try:
        payload = json.loads(raw_body or b"")
    except (json.JSONDecodeError, UnicodeDecodeError):
        return PushResult(status="ignored", reason="invalid_json")
    notifications = payload.get("value") if isinstance(payload, dict) else None
    if not isinstance(notifications, list):
        return PushResult(status="ignored", reason="missing_value")

    queued = 0
    for item in notifications:
        if not isinstance(item, dict):
            continue
        if settings.OUTLOOK_CLIENT_STATE and item.get("clientState") != settings.OUTLOOK_CLIENT_STATE:
            logger.warning("Outlook notification with bad clientState ignored")
            continue
        connection = connection_service.find_by_subscription(db, str(item.get("subscriptionId") or ""))
        if connection is None:
            continue
        if job_service.has_active_job(db, JobType.HISTORY_SYNC, connection_id=connection.id):
            continue
        job_service.schedule_job(
            db,
            JobType.HISTORY_SYNC,
            {"connection_id": str(connection.id)},
            agent_id=connection.agent_id,
        )
        queued += 1

    if not queued:
        return PushResult(status="accepted", reason="nothing_queued")
    logger.info(f"Outlook notifications queued {queued} history sync job(s)")
    return PushResult(status="accepted")
