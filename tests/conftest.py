"""
Pytest configuration and shared fixtures.

Test environment defaults must be in place before any cart_notifier import
reads settings; variables already exported take precedence.
"""

import base64
import hashlib
import hmac
import json
import os

import httpx
import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_cart_notifier.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from cart_notifier.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from cart_notifier.main import app, get_provider_client
from cart_notifier.provider import ProviderClient
from cart_notifier.storage import Base, SessionLocal, engine
from cart_notifier.tenants import configure_channel, create_tenant


SHOP_DOMAIN = "test-store.myshopify.com"
VERIFY_TOKEN = "verify-me"


def shopify_signature(body: str, secret: str) -> str:
    """Base64 HMAC-SHA256, as sent in X-Shopify-Hmac-Sha256."""
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def hub_signature(body: str, secret: str) -> str:
    """``sha256=<hex>``, as sent in X-Hub-Signature-256."""
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class FakeProvider:
    """
    Records outbound provider calls and answers them through an
    httpx.MockTransport, so the real ProviderClient code path runs.
    """

    def __init__(self):
        self.requests = []
        self.fail_for = set()
        self.fail_all = False
        self._counter = 0
        self.client = ProviderClient(
            base_url="https://provider.test/v1",
            transport=httpx.MockTransport(self._handle),
        )

    def _handle(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        if self.fail_all or payload["to"] in self.fail_for:
            return httpx.Response(
                400,
                json={"error": {"message": "Recipient phone number not in allowed list"}},
            )
        self._counter += 1
        return httpx.Response(200, json={"messages": [{"id": f"wamid.{self._counter}"}]})

    @property
    def sent_texts(self) -> list[str]:
        return [p["text"]["body"] for p in self.requests if p["type"] == "text"]


@pytest.fixture
def fake_provider():
    provider = FakeProvider()
    yield provider
    provider.client.close()


@pytest.fixture(scope="function")
def client(fake_provider):
    """Create test client with fresh database for each test."""
    # Create tables
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_provider_client] = lambda: fake_provider.client

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(client):
    """Session on the same database the client uses."""
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def tenant(db):
    """Connected store with a configured channel and no webhook secrets."""
    created = create_tenant(db, SHOP_DOMAIN, name="Test Store")
    return configure_channel(
        db,
        created.id,
        access_token="provider-token",
        sender_id="1234567890",
        verify_token=VERIFY_TOKEN,
    )


@pytest.fixture
def opt_in(client, tenant):
    """Active opt-in for +1 555 123 4567 with default preferences."""
    response = client.post(
        f"/api/tenants/{tenant.id}/optins",
        json={"phone_number": "+15551234567", "customer_name": "Ada", "source": "checkout"},
    )
    assert response.status_code == 200
    return response.json()
