"""
Test configuration and fixtures.

Provides:
- Throw-away SQLite database per test (schema from Base.metadata)
- Settings with a generated Fernet key and internal secret
- Model factories (agent, connection, lead, property, message)
- A scripted fake model provider
- HTTPX AsyncClient with get_db / get_app_settings overridden
"""
import json
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Generator

# Must be set before the app (and its settings singleton) is imported
os.environ["TESTING"] = "1"
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from cryptography.fernet import Fernet
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from replyready.core.config import Settings
from replyready.core.deps import get_app_settings, get_db
from replyready.core.encryption import encrypt_token
from replyready.db.base import Base
from replyready.db.enums import ConnectionStatus, MailProvider, MessageStatus, Sender, SendStatus
from replyready.db.models import Agent, Connection, Lead, Message, Property
from replyready.main import app
from replyready.services.ai_provider import AIProvider, ChatResponse
from replyready.services.classifier_client import ClassifierClient

INTERNAL_SECRET = "test-internal-secret"
MAILBOX = "makler@example.com"


# =============================================================================
# Database
# =============================================================================

@pytest.fixture(scope="function")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture(scope="function")
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Settings
# =============================================================================

@pytest.fixture(scope="function")
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        ENV="test",
        DATABASE_URL="sqlite://",
        FERNET_KEY=Fernet.generate_key().decode(),
        INTERNAL_SECRET=INTERNAL_SECRET,
        AI_API_KEY="test-key",
        GOOGLE_CLIENT_ID="google-client",
        GOOGLE_CLIENT_SECRET="google-secret",
        MICROSOFT_CLIENT_ID="ms-client",
        MICROSOFT_CLIENT_SECRET="ms-secret",
        GMAIL_PUSH_AUDIENCE="https://replyready.test/webhooks/gmail/push",
        GMAIL_PUSH_TOPIC="projects/test/topics/gmail",
        OUTLOOK_CLIENT_STATE="client-state",
        OUTLOOK_NOTIFICATION_URL="https://replyready.test/webhooks/outlook",
        CLASSIFIER_MAX_RETRIES=0,
    )


# =============================================================================
# Model provider fake
# =============================================================================

class FakeProvider(AIProvider):
    """
    Scripted model: each call pops the next response. Dicts are sent as JSON,
    strings verbatim, exceptions raised.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[list] = []

    async def chat(self, messages, model=None, temperature=0.7, max_tokens=2000, json_mode=False):
        self.calls.append(messages)
        if not self.responses:
            raise AssertionError("Unexpected model call")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, dict):
            item = json.dumps(item)
        return ChatResponse(
            content=item,
            prompt_tokens=0,
            completion_tokens=0,
            total_tokens=0,
            model="fake-model",
        )


@pytest.fixture
def fake_model(test_settings):
    """Returns (provider, client) builders: fake_model(*responses)."""

    def _build(*responses) -> tuple[FakeProvider, ClassifierClient]:
        provider = FakeProvider(*responses)
        return provider, ClassifierClient(test_settings, provider=provider, retry_backoff=0)

    return _build


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def make_agent(db):
    def _make(**overrides) -> Agent:
        agent = Agent(
            email=overrides.pop("email", f"agent-{uuid.uuid4().hex[:8]}@example.com"),
            display_name=overrides.pop("display_name", "Anna Makler"),
            brand_name=overrides.pop("brand_name", "Makler Immobilien"),
            language=overrides.pop("language", "de"),
            autosend_enabled=overrides.pop("autosend_enabled", True),
            **overrides,
        )
        db.add(agent)
        db.commit()
        db.refresh(agent)
        return agent

    return _make


@pytest.fixture
def agent(make_agent) -> Agent:
    return make_agent()


@pytest.fixture
def make_connection(db, test_settings):
    def _make(agent: Agent, **overrides) -> Connection:
        connection = Connection(
            agent_id=agent.id,
            provider=overrides.pop("provider", MailProvider.GMAIL.value),
            mailbox_address=overrides.pop("mailbox_address", MAILBOX),
            access_token_encrypted=encrypt_token(test_settings, overrides.pop("access_token", "access-1")),
            refresh_token_encrypted=encrypt_token(test_settings, overrides.pop("refresh_token", "refresh-1")),
            token_expires_at=overrides.pop(
                "token_expires_at", datetime.now(timezone.utc) + timedelta(hours=1)
            ),
            sync_cursor=overrides.pop("sync_cursor", "1000"),
            status=overrides.pop("status", ConnectionStatus.ACTIVE.value),
            **overrides,
        )
        db.add(connection)
        db.commit()
        db.refresh(connection)
        return connection

    return _make


@pytest.fixture
def connection(make_connection, agent) -> Connection:
    return make_connection(agent)


@pytest.fixture
def make_lead(db):
    def _make(agent: Agent, **overrides) -> Lead:
        lead = Lead(
            agent_id=agent.id,
            provider=overrides.pop("provider", MailProvider.GMAIL.value),
            provider_thread_id=overrides.pop("provider_thread_id", f"thread-{uuid.uuid4().hex[:8]}"),
            email=overrides.pop("email", "mieter@example.org"),
            name=overrides.pop("name", "Max Mieter"),
            suggested_property_ids=overrides.pop("suggested_property_ids", []),
            last_message_at=overrides.pop("last_message_at", datetime.now(timezone.utc)),
            **overrides,
        )
        db.add(lead)
        db.commit()
        db.refresh(lead)
        return lead

    return _make


@pytest.fixture
def make_property(db):
    def _make(agent: Agent, **overrides) -> Property:
        prop = Property(
            agent_id=agent.id,
            title=overrides.pop("title", "2-Zimmer-Wohnung"),
            city=overrides.pop("city", "Berlin"),
            **overrides,
        )
        db.add(prop)
        db.commit()
        db.refresh(prop)
        return prop

    return _make


@pytest.fixture
def make_message(db):
    def _make(lead: Lead, **overrides) -> Message:
        sender = overrides.pop("sender", Sender.USER.value)
        default_status = (
            MessageStatus.INTENT_PENDING.value if sender == Sender.USER.value else MessageStatus.QA_PENDING.value
        )
        message = Message(
            agent_id=lead.agent_id,
            lead_id=lead.id,
            provider=overrides.pop("provider", lead.provider),
            sender=sender,
            subject=overrides.pop("subject", "Anfrage Wohnung"),
            text=overrides.pop("text", "Guten Tag, ist die Wohnung noch frei?"),
            from_address=overrides.pop(
                "from_address", lead.email if sender == Sender.USER.value else MAILBOX
            ),
            to_address=overrides.pop("to_address", MAILBOX if sender == Sender.USER.value else lead.email),
            provider_thread_id=overrides.pop("provider_thread_id", lead.provider_thread_id),
            timestamp=overrides.pop("timestamp", datetime.now(timezone.utc)),
            status=overrides.pop("status", default_status),
            send_status=overrides.pop("send_status", SendStatus.PENDING.value),
            attachments=overrides.pop("attachments", []),
            **overrides,
        )
        db.add(message)
        db.commit()
        db.refresh(message)
        return message

    return _make


# =============================================================================
# Client
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session, test_settings: Settings) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient against the app with the test session and settings."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_app_settings] = lambda: test_settings

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def internal_headers() -> dict[str, str]:
    return {"X-Internal-Secret": INTERNAL_SECRET}
