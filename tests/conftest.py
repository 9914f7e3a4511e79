import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MEDIA_SIGNING_SECRET", "test-secret")
os.environ.setdefault("PUBLIC_BASE_URL", "http://testserver")

from datetime import datetime, timezone  # noqa: E402
from unittest.mock import AsyncMock, Mock  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.database import Base, get_db, get_session_factory  # noqa: E402
from app.main import app as fastapi_app  # noqa: E402
from app.models import AdminConfig  # noqa: E402
from app.services.llm import LLMResponse  # noqa: E402
from app.services.zapi_service import SendResult  # noqa: E402

CONTACT = "5511999990000"


@pytest.fixture
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


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    """Real SQLAlchemy session on the in-memory database."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(fastapi_app) as test_client:
        yield test_client
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def ai_settings(db):
    """Seed the ai_settings document with working credentials."""
    db.add(
        AdminConfig(
            key="ai_settings",
            data={
                "systemPrompt": "You help travellers.",
                "openaiApiKey": "sk-test",
                "openaiModel": "gpt-4o-mini",
                "openaiTemperature": "0.3",
                "openaiMaxTokens": "200",
                "fallbackMessage": "Could you rephrase?",
                "zapiApiKey": "token-1",
                "zapiInstanceId": "instance-1",
                "zapiClientToken": "client-token",
            },
            updated_at=datetime.now(timezone.utc),
        )
    )
    db.commit()


@pytest.fixture
def mock_provider():
    """Completion provider double; patch it in as the OpenAIProvider class."""
    provider = Mock()
    provider.generate = AsyncMock(return_value=LLMResponse(content="Hello from Clara", model="gpt-4o-mini"))
    return provider


@pytest.fixture
def mock_send_text():
    return AsyncMock(return_value=SendResult(success=True, provider_message_id="ZAPI-OUT-1"))


def make_payload(**overrides) -> dict:
    """Minimal inbound text webhook body."""
    payload = {
        "type": "ReceivedCallback",
        "phone": CONTACT,
        "messageId": "MSG-1",
        "momment": 1700000000000,
        "fromMe": False,
        "senderName": "Maria",
        "chatName": "Maria",
        "text": {"message": "Hi, any rooms in March?"},
    }
    payload.update(overrides)
    return payload
