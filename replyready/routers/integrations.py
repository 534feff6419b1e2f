"""Mailbox integrations router.

Handles the per-agent OAuth flow for Gmail and Outlook. The connect URL is
issued to the back office (internal secret); the provider redirects the
agent's browser to the callback, which is bound to the state cookie.
"""

import logging
from typing import Any
from uuid import UUID

import anyio
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from replyready.core.config import Settings
from replyready.core.deps import get_app_settings, get_db, verify_internal_secret
from replyready.core.security import (
    create_oauth_state_payload,
    generate_oauth_state,
    parse_oauth_state_payload,
    verify_oauth_state,
)
from replyready.core.structured_logging import mask_email
from replyready.db.enums import JobType, MailProvider
from replyready.db.models import Agent
from replyready.services import connection_service, job_service
from replyready.services.gmail_client import GmailClient
from replyready.services.oauth_service import TokenRefresher
from replyready.services.outlook_client import OutlookClient

router = APIRouter(prefix="/integrations", tags=["integrations"])
logger = logging.getLogger(__name__)

OAUTH_STATE_MAX_AGE = 300  # 5 minutes
OAUTH_STATE_COOKIE_PREFIX = "mailbox_oauth_state_"
OAUTH_STATE_COOKIE_PATH = "/integrations"


def _oauth_cookie_name(provider: MailProvider) -> str:
    return f"{OAUTH_STATE_COOKIE_PREFIX}{provider.value}"


def _provider_configured(settings: Settings, provider: MailProvider) -> bool:
    if provider == MailProvider.GMAIL:
        return bool(settings.GOOGLE_CLIENT_ID and settings.GOOGLE_CLIENT_SECRET)
    return bool(settings.MICROSOFT_CLIENT_ID and settings.MICROSOFT_CLIENT_SECRET)


def _redirect_uri(settings: Settings, provider: MailProvider) -> str:
    if provider == MailProvider.GMAIL:
        return settings.GMAIL_REDIRECT_URI
    return settings.OUTLOOK_REDIRECT_URI


def _mailbox_address(settings: Settings, provider: MailProvider, access_token: str) -> str | None:
    if provider == MailProvider.GMAIL:
        profile = GmailClient(settings).get_profile(access_token=access_token)
        return profile.get("emailAddress")
    me = OutlookClient(settings).get_me(access_token=access_token)
    return me.get("mail") or me.get("userPrincipalName")


class ConnectResponse(BaseModel):
    auth_url: str


class ConnectionRead(BaseModel):
    connection_id: UUID
    provider: str
    status: str
    mailbox_address: str


# ============================================================================
# Connect
# ============================================================================


@router.get(
    "/{provider}/connect",
    response_model=ConnectResponse,
    dependencies=[Depends(verify_internal_secret)],
)
def connect_mailbox(
    provider: MailProvider,
    agent_id: UUID,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """Authorization URL for connecting an agent's mailbox."""
    if not _provider_configured(settings, provider):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{provider.value} integration not configured",
        )
    if db.get(Agent, agent_id) is None:
        raise HTTPException(status_code=404, detail="Agent not found")

    state = generate_oauth_state()
    user_agent = request.headers.get("user-agent", "")
    response.set_cookie(
        key=_oauth_cookie_name(provider),
        value=create_oauth_state_payload(state, str(agent_id), user_agent),
        max_age=OAUTH_STATE_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=settings.ENV != "dev",
        path=OAUTH_STATE_COOKIE_PATH,
    )
    return ConnectResponse(auth_url=TokenRefresher(settings).authorization_url(provider, state))


@router.get("/{provider}/callback", response_model=ConnectionRead)
async def oauth_callback(
    provider: MailProvider,
    request: Request,
    response: Response,
    code: str,
    state: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> Any:
    """
    Exchange the authorization code and store the connection.

    The first watch/subscription and the baseline cursor are set up by the
    worker (watch_refresh + history_sync jobs).
    """
    cookie_name = _oauth_cookie_name(provider)
    response.delete_cookie(cookie_name, path=OAUTH_STATE_COOKIE_PATH)

    state_cookie = request.cookies.get(cookie_name)
    if not state_cookie:
        raise HTTPException(status_code=400, detail="invalid_state")
    try:
        stored_payload = parse_oauth_state_payload(state_cookie)
        agent_id = UUID(str(stored_payload.get("agent_id")))
    except (ValueError, AttributeError):
        raise HTTPException(status_code=400, detail="invalid_state")
    valid, _ = verify_oauth_state(stored_payload, state, request.headers.get("user-agent", ""))
    if not valid:
        raise HTTPException(status_code=400, detail="invalid_state")

    try:
        tokens = await TokenRefresher(settings).exchange_code(provider, code, _redirect_uri(settings, provider))
        mailbox_address = await anyio.to_thread.run_sync(
            _mailbox_address, settings, provider, tokens["access_token"]
        )
    except Exception as e:
        logger.warning(f"{provider.value} OAuth callback failed: {type(e).__name__}")
        raise HTTPException(status_code=502, detail=f"{provider.value}_exchange_failed")
    if not mailbox_address:
        raise HTTPException(status_code=502, detail="mailbox_address_unavailable")

    connection = connection_service.save_connection(
        db,
        settings,
        agent_id=agent_id,
        provider=provider,
        mailbox_address=mailbox_address,
        tokens=tokens,
    )
    payload = {"connection_id": str(connection.id)}
    job_service.schedule_job(db, JobType.WATCH_REFRESH, {**payload, "force": True}, agent_id=agent_id)
    if not job_service.has_active_job(db, JobType.HISTORY_SYNC, connection_id=connection.id):
        job_service.schedule_job(db, JobType.HISTORY_SYNC, payload, agent_id=agent_id)

    logger.info(f"{provider.value} mailbox connected: {mask_email(connection.mailbox_address)}")
    return ConnectionRead(
        connection_id=connection.id,
        provider=connection.provider,
        status=connection.status,
        mailbox_address=connection.mailbox_address,
    )
