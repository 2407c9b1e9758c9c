import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="delivery-core-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["SEED_REFERENCE_DATA"] = "false"
os.environ["OFFER_SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["MARKET_TIMEZONE"] = "UTC"

import pytest
from fastapi.testclient import TestClient

from delivery_core.auth import CurrentUser, get_current_user
from delivery_core.db import engine
from delivery_core.events import Publisher, get_publisher
from delivery_core.main import app
from delivery_core.models import Base


class RecordingPublisher(Publisher):
    def __init__(self):
        super().__init__()
        self.broadcasts = []
        self.notifications = []

    def broadcast(self, channel, event, payload):
        self.broadcasts.append((channel, event, payload))
        return True

    def notify(self, user_id, title, message, type, data=None):
        self.notifications.append((user_id, type, data or {}))
        return True


@pytest.fixture(autouse=True)
def clean_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def client(publisher):
    app.dependency_overrides[get_publisher] = lambda: publisher
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def login():
    def _login(user_id, role="courier"):
        app.dependency_overrides[get_current_user] = lambda: CurrentUser(id=user_id, role=role)

    yield _login
    app.dependency_overrides.pop(get_current_user, None)
