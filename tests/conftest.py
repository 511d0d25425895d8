"""Shared test fixtures and configuration for Parley tests."""
import pytest
from fastapi.testclient import TestClient

from parley.chat.presence import typing_tracker
from parley.chat.registry import registry
from parley.chat.store import ChatStore
from parley.config import (
    AppSettings,
    StorageSettings,
    UploadSettings,
    set_config,
)
from parley.files.service import FileStorageService
from parley.main import app


@pytest.fixture(autouse=True)
def app_settings(tmp_path):
    """Point every test at in-memory DuckDB and a temporary upload dir.

    Prevents tests from opening the file-based parley.duckdb, which can block
    if a dev server is running concurrently (DuckDB file lock contention).
    """
    settings = AppSettings(
        storage=StorageSettings(db_path=":memory:", files_db_path=":memory:"),
        uploads=UploadSettings(upload_dir=str(tmp_path / "uploads")),
    )
    set_config(settings)
    ChatStore.reset_instance()
    FileStorageService.reset_instance()
    ChatStore.get_instance(db_path=":memory:")
    yield settings
    ChatStore.reset_instance()
    FileStorageService.reset_instance()
    set_config(None)


@pytest.fixture(autouse=True)
def clean_presence():
    """Start and end every test with no connections or typing state."""
    registry.clear()
    typing_tracker.clear()
    yield
    registry.clear()
    typing_tracker.clear()


@pytest.fixture
def store():
    return ChatStore.get_instance()


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app.

    Not used as a context manager, so the lifespan (and its default-room
    seeding against the configured database) does not run.
    """
    return TestClient(app)


class FakeWebSocket:
    """Stand-in for a server-side WebSocket that records sent events."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def types(self):
        return [event["type"] for event in self.sent]

    def of_type(self, event_type):
        return [event for event in self.sent if event["type"] == event_type]


@pytest.fixture
def fake_ws():
    return FakeWebSocket


@pytest.fixture
def connect_user():
    """Open and register a connection in the global registry."""

    def _connect(username, *, rooms=(), fail=False):
        ws = FakeWebSocket(fail=fail)
        connection_id = registry.open(ws)
        registry.register(connection_id, username)
        for room in rooms:
            registry.join_room(connection_id, room)
        return connection_id, ws

    return _connect
