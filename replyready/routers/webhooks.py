"""Webhooks router - mail provider push notifications.

Both endpoints always answer 2xx so providers stop retrying; outcomes are
reported in the body and logged. Lost work is recovered by the scheduled
history-sync sweep.
"""

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from replyready.core.config import Settings
from replyready.core.deps import get_app_settings, get_db
from replyready.core.rate_limit import WEBHOOK_LIMIT, limiter
from replyready.services.push_service import PushIngestion, PushResult, handle_outlook_notifications

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/gmail/push")
@limiter.limit(WEBHOOK_LIMIT)
async def receive_gmail_push(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """
    Gmail Pub/Sub push endpoint.

    Security:
    - Verifies the Google-signed OIDC bearer token (audience, issuer and,
      when configured, the push service account)

    Processing:
    - Decodes {emailAddress, historyId}
    - Enqueues one history sync job per (connection, historyId)
    """
    body = await request.body()
    try:
        result = PushIngestion(settings).handle(
            db,
            authorization=request.headers.get("Authorization"),
            raw_body=body,
            request_url=str(request.url),
        )
    except Exception as e:
        db.rollback()
        logger.exception(f"Gmail push processing failed: {type(e).__name__}")
        result = PushResult(status="ignored", reason="internal_error")
    return result.as_dict()


@router.post("/outlook")
@limiter.limit(WEBHOOK_LIMIT)
async def receive_outlook_notification(
    request: Request,
    validation_token: str | None = Query(None, alias="validationToken"),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """
    Microsoft Graph change notifications.

    Subscription validation echoes `validationToken` as plain text.
    """
    if validation_token is not None:
        return PlainTextResponse(validation_token)

    body = await request.body()
    try:
        result = handle_outlook_notifications(db, settings, body)
    except Exception as e:
        db.rollback()
        logger.exception(f"Outlook notification processing failed: {type(e).__name__}")
        result = PushResult(status="ignored", reason="internal_error")
    return JSONResponse(result.as_dict(), status_code=202)
