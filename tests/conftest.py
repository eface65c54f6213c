# tests/conftest.py

import json

import pytest
from fastapi.testclient import TestClient

from webhook_api.config import Settings
from webhook_api.main import create_app
from webhook_api.metrics import MetricsRecorder
from webhook_api.security import compute_signature
from webhook_api.storage import MessageStore
from webhook_api.validation import ValidMessage


SECRET = "testsecret"


@pytest.fixture
def store():
    """Fresh in-memory store per test."""
    s = MessageStore("sqlite://")
    yield s
    s.dispose()


@pytest.fixture
def metrics():
    return MetricsRecorder()


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", webhook_secret=SECRET, log_level="INFO")


@pytest.fixture
def app(settings, store):
    """Create application for testing."""
    return create_app(settings=settings, store=store)


@pytest.fixture
def client(app):
    """Create a test client for the app (runs the lifespan)."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def message_payload():
    """Generate a webhook message body."""

    def _create_payload(
        message_id="m1",
        from_="+10000000001",
        to="+10000000002",
        ts="2025-01-15T10:00:00Z",
        text="hi",
    ):
        payload = {"message_id": message_id, "from": from_, "to": to, "ts": ts}
        if text is not None:
            payload["text"] = text
        return payload

    return _create_payload


@pytest.fixture
def make_message():
    """Build an already-validated message for store level tests."""

    def _make(message_id, ts="2025-01-15T10:00:00Z", from_="+100", to="+999", text=None):
        return ValidMessage(message_id=message_id, from_=from_, to=to, ts=ts, text=text)

    return _make


def encode(payload) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


@pytest.fixture
def post_webhook(client):
    """POST a body to /webhook, signed with the test secret unless told otherwise."""

    def _post(payload, signature=None, secret=SECRET):
        raw = payload if isinstance(payload, bytes) else encode(payload)
        headers = {"Content-Type": "application/json"}
        sig = compute_signature(secret, raw) if signature is None else signature
        if sig:
            headers["X-Signature"] = sig
        return client.post("/webhook", content=raw, headers=headers)

    return _post
