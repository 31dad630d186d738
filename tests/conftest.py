import pathlib
import sys

import mongomock
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from audit import MutationLog  # noqa: E402
from broadcaster import Broadcaster  # noqa: E402
from config import Settings  # noqa: E402
from database import ensure_indexes  # noqa: E402
from directory import DirectoryService  # noqa: E402
from users import UserRepository  # noqa: E402

TEST_SECRET = "test-signing-key-that-is-long-enough-for-hs256"


class RecordingObserver:
    """Stands in for a WebSocket; keeps every message it was sent."""

    def __init__(self):
        self.messages = []
        self.closed = False

    async def send_json(self, message):
        self.messages.append(message)

    async def close(self):
        self.closed = True

    def types(self):
        return [m["type"] for m in self.messages]


@pytest.fixture
def db():
    database = mongomock.MongoClient()["directory_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def settings():
    return Settings(jwt_secret=TEST_SECRET, monitor_enabled=False, totp_issuer="DirectoryTest")


@pytest.fixture
def users(db):
    return UserRepository(db)


@pytest.fixture
def mutation_log(db):
    return MutationLog(db)


@pytest.fixture
def broadcaster(users):
    return Broadcaster(users, send_timeout=1.0)


@pytest.fixture
def directory(users, mutation_log, broadcaster):
    return DirectoryService(users, mutation_log, broadcaster)


@pytest.fixture
def client(settings, db):
    from main import create_app

    with TestClient(create_app(settings=settings, db=db)) as test_client:
        yield test_client


@pytest.fixture
def observer():
    return RecordingObserver()
