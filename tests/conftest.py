import asyncio
import os
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.database import Base
from app.schemas.message import InboundMessage, MessageKind
from app.services.llm.base import LLMProvider, LLMResponse
from app.services.transport import ChatTransport

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    """Real SQLite session. Commit before calling code that opens its own session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")


def llm_response(content: str, model: str = "gpt-5-mini") -> LLMResponse:
    return LLMResponse(content=content, model=model)


@pytest.fixture
def provider():
    provider = AsyncMock(spec=LLMProvider)
    provider.complete.return_value = llm_response("Claro! Posso ajudar com o orçamento.")
    provider.transcribe.return_value = "quero saber o preço"
    provider.describe_image.return_value = "foto de um sofá azul"
    provider.synthesize_speech.return_value = b"OggS-audio"
    return provider


@pytest.fixture
def transport():
    return AsyncMock(spec=ChatTransport)


@pytest.fixture
def no_sleep():
    return AsyncMock()


def make_message(
    text: str = "Oi",
    *,
    key: str = "5511999990000@s.whatsapp.net",
    message_id: str = "m1",
    kind: MessageKind = MessageKind.TEXT,
    received_at: datetime = NOW,
    **kwargs,
) -> InboundMessage:
    return InboundMessage(
        message_id=message_id,
        conversation_key=key,
        kind=kind,
        text=text,
        received_at=received_at,
        **kwargs,
    )


class ControlledSleep:
    """Sleep replacement whose waits are released by the test."""

    def __init__(self):
        self.calls: list[float] = []
        self.events: list[asyncio.Event] = []

    async def __call__(self, seconds: float) -> None:
        event = asyncio.Event()
        self.calls.append(seconds)
        self.events.append(event)
        await event.wait()

    def release_all(self) -> None:
        for event in self.events:
            event.set()
