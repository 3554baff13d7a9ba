"""
Pytest configuration and shared fixtures.

Test settings are put into the environment before any ``crm`` import, so the
engine binds to the throwaway SQLite file and bcrypt stays fast. Logging
stays at the production INFO level so the request log path is exercised.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_crm.db")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RETURN_RESET_TOKEN", "true")
os.environ["LOG_LEVEL"] = "INFO"
os.environ.setdefault("WHATSAPP_VERIFY_TOKEN", "global-verify-token")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

# Clear settings cache before any app imports to ensure test env vars are used
from crm.config import get_settings  # noqa: E402
get_settings.cache_clear()

from crm.gateway import GatewayCredentials, OutboundGateway, get_gateway  # noqa: E402
from crm.main import app  # noqa: E402
from crm.memory import InMemoryRepository  # noqa: E402
from crm.repository import SqlAlchemyRepository  # noqa: E402
from crm.storage import Base, SessionLocal, engine  # noqa: E402


class FakeGateway(OutboundGateway):
    """Records every call; ``succeed`` decides what the provider answers."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent = []
        self.read = []

    async def send_text(self, credentials: GatewayCredentials, to: str, text: str) -> bool:
        self.sent.append((credentials, to, text))
        return self.succeed

    async def mark_read(self, credentials: GatewayCredentials, message_id: str) -> bool:
        self.read.append((credentials, message_id))
        return self.succeed


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def sql_repository():
    """Repository over a real SQLite session, with fresh tables."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield SqlAlchemyRepository(db)
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(gateway):
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_gateway] = lambda: gateway

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)


def build_payload(messages, phone_number_id="PNID-A", contacts=None, field="messages"):
    """WhatsApp Cloud API delivery with one entry and one change."""
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA-1",
                "changes": [
                    {
                        "field": field,
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {
                                "display_phone_number": "15550001111",
                                "phone_number_id": phone_number_id,
                            },
                            "contacts": contacts or [],
                            "messages": messages,
                        },
                    }
                ],
            }
        ],
    }


def text_message(message_id, sender="5511999990000", body="Hello", timestamp="1736935200"):
    return {
        "from": sender,
        "id": message_id,
        "timestamp": timestamp,
        "type": "text",
        "text": {"body": body},
    }


@pytest.fixture
def make_payload():
    return build_payload


@pytest.fixture
def make_text_message():
    return text_message
