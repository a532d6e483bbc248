"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite file under tmp_path, so nodes never share
state. Environment defaults are set before any relaychat import so the
module-level app never points at a developer database.
"""

import os

import httpx
import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_messages.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from relaychat.config import Settings, get_settings
get_settings.cache_clear()

from relaychat.main import create_app
from relaychat.storage import MessageStore


def make_settings(db_path, **overrides) -> Settings:
    """Settings for one test node backed by `db_path`."""
    values = {
        "DATABASE_URL": f"sqlite:///{db_path}",
        "LOG_LEVEL": "WARNING",
        "PEER_URL": None,
    }
    values.update(overrides)
    return Settings(**values)


class RecordingPeer:
    """httpx transport handler that records forwarded requests."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"success": True})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path / "messages.db")


@pytest.fixture(scope="function")
def client(settings):
    """Create test client for a node with a fresh database and no peer."""
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def store(tmp_path):
    """An initialized message store on a fresh database."""
    message_store = MessageStore(f"sqlite:///{tmp_path / 'store.db'}")
    message_store.init()
    yield message_store
    message_store.dispose()


def send(client, sender: str, message: str, path: str = "/send"):
    """Helper to submit a local message and assert it was accepted."""
    response = client.post(path, json={"sender": sender, "message": message})
    assert response.status_code == 200, response.text
    return response.json()["data"]
