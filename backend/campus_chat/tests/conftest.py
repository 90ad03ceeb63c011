import os
import tempfile

import pytest

# Settings are read once, so the environment has to be in place before the app is imported
_TMP = tempfile.mkdtemp(prefix="campus-chat-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["FILES_DIR"] = os.path.join(_TMP, "files")
os.environ["ENVIRONMENT"] = "test"

from fastapi.testclient import TestClient  # noqa: E402

from campus_chat.controllers import memberships_controller, users_controller  # noqa: E402
from campus_chat.core.rate_limit import default_rate_limiter  # noqa: E402
from campus_chat.db import schemas  # noqa: E402
from campus_chat.db.database import Base, SessionLocal, engine  # noqa: E402
from campus_chat.main import app  # noqa: E402
from campus_chat.ws.ws_manager import manager  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    manager.reset()
    default_rate_limiter.reset()
    yield
    manager.reset()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user(db):
    def _make(username: str, display_name: str = None):
        return users_controller.create_user(
            db, schemas.RegisterIn(username=username, password="pass123", display_name=display_name)
        )
    return _make


@pytest.fixture
def make_chat(db):
    def _make(creator, name: str = "Algorithms 101", category: str = "Academic", **kwargs):
        data = schemas.ChatCreate(name=name, category=category, **kwargs)
        return memberships_controller.create_chat(db, data, creator_id=creator.id)
    return _make


def register(client: TestClient, username: str, **extra) -> str:
    res = client.post("/auth/register", json={"username": username, "password": "pass123", **extra})
    assert res.status_code == 201, res.text
    return res.json()["access_token"]


def auth_headers(token: str):
    return {"Authorization": f"Bearer {token}"}


def receive_until(ws, event_type: str, predicate=None, limit: int = 20) -> dict:
    """Read frames until one of ``event_type`` (matching ``predicate``) shows up."""
    for _ in range(limit):
        frame = ws.receive_json()
        if frame.get("type") == event_type and (predicate is None or predicate(frame)):
            return frame
    raise AssertionError(f"no {event_type} frame within {limit} frames")
