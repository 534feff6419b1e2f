"""Tests for access-token refresh and reconnect handling."""

from datetime import datetime, timedelta, timezone

import pytest

from replyready.core.encryption import decrypt_token
from replyready.core.exceptions import TokenRefreshError
from replyready.db.enums import ConnectionStatus, MailProvider
from replyready.services.oauth_service import TokenRefresher


@pytest.fixture
def expired_connection(agent, make_connection):
    return make_connection(agent, token_expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))


def _stub_refresh(monkeypatch, refresher, result=None, error=None):
    calls = []

    async def _refresh(provider, refresh_token):
        calls.append((provider, refresh_token))
        if error is not None:
            raise error
        return result

    monkeypatch.setattr(refresher, "refresh", _refresh)
    return calls


def test_valid_token_is_returned_without_refresh(db, test_settings, connection, monkeypatch):
    refresher = TokenRefresher(test_settings)
    calls = _stub_refresh(monkeypatch, refresher, result={"access_token": "never"})

    assert refresher.get_access_token(db, connection) == "access-1"
    assert calls == []


def test_token_inside_margin_is_refreshed(db, test_settings, agent, make_connection, monkeypatch):
    connection = make_connection(agent, token_expires_at=datetime.now(timezone.utc) + timedelta(seconds=30))
    refresher = TokenRefresher(test_settings)
    calls = _stub_refresh(monkeypatch, refresher, result={"access_token": "access-2", "expires_in": 3600})

    assert refresher.get_access_token(db, connection) == "access-2"
    assert calls == [(MailProvider.GMAIL, "refresh-1")]


def test_refreshed_and_rotated_tokens_are_persisted(db, test_settings, expired_connection, monkeypatch):
    refresher = TokenRefresher(test_settings)
    _stub_refresh(
        monkeypatch,
        refresher,
        result={"access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 3599},
    )

    refresher.get_access_token(db, expired_connection)

    db.refresh(expired_connection)
    assert decrypt_token(test_settings, expired_connection.access_token_encrypted) == "access-2"
    assert decrypt_token(test_settings, expired_connection.refresh_token_encrypted) == "refresh-2"
    assert expired_connection.token_expires_at > datetime.now(timezone.utc) + timedelta(minutes=50)


def test_invalid_grant_marks_connection_for_reconnect(db, test_settings, expired_connection, monkeypatch):
    refresher = TokenRefresher(test_settings)
    _stub_refresh(
        monkeypatch,
        refresher,
        error=TokenRefreshError("gmail token refresh failed: 400 invalid_grant", reconnect_required=True),
    )

    with pytest.raises(TokenRefreshError) as exc_info:
        refresher.get_access_token(db, expired_connection)

    assert exc_info.value.reconnect_required is True
    db.refresh(expired_connection)
    assert expired_connection.status == ConnectionStatus.NEEDS_RECONNECT.value
    assert "invalid_grant" in expired_connection.last_error


def test_transient_refresh_failure_keeps_connection_active(db, test_settings, expired_connection, monkeypatch):
    refresher = TokenRefresher(test_settings)
    _stub_refresh(monkeypatch, refresher, error=TokenRefreshError("gmail token refresh failed: 503"))

    with pytest.raises(TokenRefreshError):
        refresher.get_access_token(db, expired_connection)

    db.refresh(expired_connection)
    assert expired_connection.status == ConnectionStatus.ACTIVE.value


def test_missing_refresh_token_requires_reconnect(db, test_settings, agent, make_connection, monkeypatch):
    connection = make_connection(
        agent, refresh_token="", token_expires_at=datetime.now(timezone.utc) - timedelta(minutes=1)
    )
    refresher = TokenRefresher(test_settings)
    calls = _stub_refresh(monkeypatch, refresher, result={"access_token": "never"})

    with pytest.raises(TokenRefreshError):
        refresher.get_access_token(db, connection)

    assert calls == []
    db.refresh(connection)
    assert connection.status == ConnectionStatus.NEEDS_RECONNECT.value
    assert connection.last_error == "missing_refresh_token"
