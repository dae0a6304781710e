import os

# Must be set before the application (and its settings) is imported.
os.environ["TESTING"] = "1"

from unittest.mock import AsyncMock  # noqa: E402

import dotenv  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import contactsync.database as _db_mod  # noqa: E402
from contactsync.database import Base  # noqa: E402
from contactsync.database import get_db  # noqa: E402
from contactsync.database import make_engine  # noqa: E402
from contactsync.database import make_sessionmaker  # noqa: E402
from contactsync.events.event_bus import EventBus  # noqa: E402
from contactsync.services.entity_store import EntityStore  # noqa: E402
from contactsync.services.sync_engine import SyncEngine  # noqa: E402
from contactsync.services.sync_engine import sync_engine as _global_engine  # noqa: E402
from contactsync.websocket.manager import PresenceTracker  # noqa: E402
from contactsync.websocket.manager import presence_tracker  # noqa: E402

dotenv.load_dotenv()


# Create a test database - using in-memory SQLite for tests
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

# Create test engine and session factory
test_engine = make_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,  # Use StaticPool for in-memory database
)

TestingSessionLocal = make_sessionmaker(test_engine)

# Override default_session_factory so websocket handlers and background
# services open sessions on the test database as well.
_db_mod.default_session_factory = TestingSessionLocal

# Import app after engine setup is in place
from contactsync.main import app  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def cleanup_global_resources():
    """Drop global presence state and event-bus wiring after the session."""
    yield

    presence_tracker.active_connections.clear()
    presence_tracker.client_queues.clear()
    presence_tracker.writer_tasks.clear()
    _global_engine.close()


@pytest.fixture
def db_session():
    """
    Creates a fresh database for each test, then tears it down after the test is done.
    """
    Base.metadata.create_all(bind=test_engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def client(db_session):
    """
    Create a FastAPI TestClient with the test database dependency.
    """

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app, backend="asyncio") as client:
        yield client

    app.dependency_overrides = {}


# ---------------------------------------------------------------------------
# Engine-level fixtures: a private bus/tracker so unit tests never leak into
# the process-wide instances used by the HTTP app.
# ---------------------------------------------------------------------------


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def presence():
    return PresenceTracker(heartbeat_timeout=120, send_timeout=1, queue_size=0, flush_on_send=True)


@pytest.fixture
def engine(presence, bus):
    sync = SyncEngine(presence, session_factory=TestingSessionLocal, bus=bus)
    yield sync
    sync.close()


@pytest.fixture
def store(db_session, bus):
    return EntityStore(db_session, bus=bus)


@pytest.fixture
def mock_websocket():
    """Create a mock WebSocket connection."""
    ws = AsyncMock()
    ws.send_json = AsyncMock()
    ws.close = AsyncMock()
    return ws


@pytest.fixture
def session_factory():
    """Session factory bound to the test database."""
    return TestingSessionLocal


@pytest.fixture
def make_websocket():
    """Factory for independent mock WebSocket connections."""

    def _make():
        ws = AsyncMock()
        ws.send_json = AsyncMock()
        ws.close = AsyncMock()
        return ws

    return _make
