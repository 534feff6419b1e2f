"""Connection store: per-agent, per-provider credential and sync cursor."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from replyready.core.config import Settings
from replyready.core.encryption import encrypt_token
from replyready.core.exceptions import ConnectionNotFoundError
from replyready.core.structured_logging import build_log_context, mask_email
from replyready.db.enums import ConnectionStatus, MailProvider
from replyready.db.models import Connection

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = value.strip().lower()
    return cleaned or None


def get_connection(db: Session, *, agent_id: UUID, provider: MailProvider) -> Connection | None:
    return (
        db.query(Connection)
        .filter(Connection.agent_id == agent_id, Connection.provider == provider.value)
        .first()
    )


def get_connection_by_id(db: Session, connection_id: UUID) -> Connection:
    connection = db.query(Connection).filter(Connection.id == connection_id).first()
    if connection is None:
        raise ConnectionNotFoundError(f"Connection {connection_id} not found")
    return connection


def find_by_mailbox(db: Session, *, provider: MailProvider, mailbox_address: str) -> Connection | None:
    """Usable connection for a mailbox address (case-insensitive)."""
    normalized = normalize_email(mailbox_address)
    if not normalized:
        return None
    return (
        db.query(Connection)
        .filter(
            Connection.provider == provider.value,
            func.lower(Connection.mailbox_address) == normalized,
            Connection.status.in_([status.value for status in ConnectionStatus.usable()]),
        )
        .first()
    )


def find_by_subscription(db: Session, subscription_id: str) -> Connection | None:
    return (
        db.query(Connection)
        .filter(
            Connection.provider == MailProvider.OUTLOOK.value,
            Connection.subscription_id == subscription_id,
        )
        .first()
    )


def list_usable(db: Session, *, provider: MailProvider | None = None) -> list[Connection]:
    query = db.query(Connection).filter(
        Connection.status.in_([status.value for status in ConnectionStatus.usable()])
    )
    if provider:
        query = query.filter(Connection.provider == provider.value)
    return query.order_by(Connection.created_at).all()


def save_connection(
    db: Session,
    settings: Settings,
    *,
    agent_id: UUID,
    provider: MailProvider,
    mailbox_address: str,
    tokens: dict,
) -> Connection:
    """
    Create or update the connection after an OAuth code exchange.

    A reconnect keeps the stored cursor; the old refresh token is kept when
    the provider did not return a new one.
    """
    now = _now_utc()
    connection = get_connection(db, agent_id=agent_id, provider=provider)
    if connection is None:
        connection = Connection(
            agent_id=agent_id,
            provider=provider.value,
            mailbox_address=normalize_email(mailbox_address) or mailbox_address,
            status=ConnectionStatus.CONNECTED.value,
        )
        db.add(connection)
    else:
        connection.mailbox_address = normalize_email(mailbox_address) or mailbox_address
        connection.status = (
            ConnectionStatus.ACTIVE.value if connection.sync_cursor else ConnectionStatus.CONNECTED.value
        )

    connection.access_token_encrypted = encrypt_token(settings, tokens.get("access_token"))
    if tokens.get("refresh_token"):
        connection.refresh_token_encrypted = encrypt_token(settings, tokens["refresh_token"])
    expires_in = tokens.get("expires_in")
    connection.token_expires_at = now + timedelta(seconds=int(expires_in)) if expires_in else None
    connection.last_error = None
    connection.updated_at = now
    db.commit()
    db.refresh(connection)

    logger.info(
        "Connection saved for mailbox=%s",
        mask_email(connection.mailbox_address),
        extra=build_log_context(
            agent_id=agent_id, connection_id=connection.id, provider=provider.value
        ),
    )
    return connection


def set_baseline_cursor(db: Session, connection: Connection, cursor: str) -> None:
    """Store a cursor as the new baseline and mark the connection active."""
    connection.sync_cursor = str(cursor)
    connection.status = ConnectionStatus.ACTIVE.value
    connection.last_sync_at = _now_utc()
    connection.updated_at = _now_utc()
    db.add(connection)
    db.commit()


def record_error(db: Session, connection: Connection, error: str | Exception) -> None:
    connection.last_error = str(error)[:500]
    connection.updated_at = _now_utc()
    db.add(connection)
    db.commit()


def mark_needs_reconnect(db: Session, connection: Connection, reason: str) -> None:
    connection.status = ConnectionStatus.NEEDS_RECONNECT.value
    connection.last_error = reason[:500]
    connection.updated_at = _now_utc()
    db.add(connection)
    db.commit()
    logger.warning(
        "Connection needs reconnect: %s",
        reason[:200],
        extra=build_log_context(agent_id=connection.agent_id, connection_id=connection.id),
    )
