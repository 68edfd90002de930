"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from chatrelay.gateway.gateway import gateway
from chatrelay.main import app
from chatrelay.rooms.coordinator import coordinator
from chatrelay.store.service import MessageStore


@pytest.fixture(autouse=True)
def memory_store():
    """Use an in-memory MessageStore for each test.

    Keeps tests from creating chatrelay_messages.duckdb in the working
    directory when the app lifespan asks for the singleton.
    """
    MessageStore.reset_instance()
    store = MessageStore.get_instance(db_path=":memory:")
    yield store
    MessageStore.reset_instance()


@pytest.fixture(autouse=True)
def reset_live_state():
    """Clear rooms and sessions after each test to avoid interference."""
    yield
    coordinator.clear()
    gateway.sessions.clear()


@pytest.fixture
def api_client():
    """Provide a TestClient with the app lifespan running.

    All WebSocket sessions opened from this client share one event loop.
    """
    with TestClient(app) as client:
        yield client
