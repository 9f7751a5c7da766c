"""Shared fixtures: throwaway databases, seeded users and an app client."""
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session
from starlette.websockets import WebSocketDisconnect

from app.db.config import build_engine, session_factory
from app.db.init import init_db
from app.main import create_app
from app.middleware.auth import create_access_token
from app.models.user import User
from app.services.friend_graph import FriendGraph


class FakeConnection:
    """In-memory stand-in for a client socket."""

    def __init__(self, connection_id: str = "conn", fail: bool = False):
        self.connection_id = connection_id
        self.fail = fail
        self.events: List[tuple] = []

    async def send_event(self, event: str, data: Dict[str, Any]) -> None:
        if self.fail:
            raise WebSocketDisconnect(code=1006)
        self.events.append((event, data))

    def names(self) -> List[str]:
        return [event for event, _ in self.events]

    def last(self, event: str) -> Optional[Dict[str, Any]]:
        for name, data in reversed(self.events):
            if name == event:
                return data
        return None


@pytest.fixture
def engine():
    eng = build_engine("sqlite://", poolclass=StaticPool)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    with Session(engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture
def open_session(engine):
    return session_factory(engine)


@pytest.fixture
def connection_factory():
    return FakeConnection


def _make_user(session: Session, first_name: str = "Ada", last_name: str = "Lovelace",
               email: Optional[str] = None, is_active: bool = True) -> User:
    user = User(first_name=first_name, last_name=last_name, is_active=is_active)
    user.email = email or f"{first_name.lower()}.{user.id[:8]}@example.com"
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def make_user(db):
    def _factory(first_name: str = "Ada", last_name: str = "Lovelace", **kwargs) -> User:
        return _make_user(db, first_name, last_name, **kwargs)
    return _factory


@pytest.fixture
def befriend(db):
    def _befriend(user_a: User, user_b: User) -> None:
        FriendGraph(db).add(user_a.id, user_b.id)
    return _befriend


# ---------------------------------------------------------------------------
# Application fixtures (file database, shared across threads)
# ---------------------------------------------------------------------------

@pytest.fixture
def app_engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'app.db'}", connect_args={"timeout": 30})
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def app(app_engine):
    return create_app(bind_engine=app_engine, reconcile_on_list=True)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def seed(app_engine):
    """Session on the application database for arranging state."""
    with Session(app_engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture
def app_user(seed):
    def _factory(first_name: str = "Ada", last_name: str = "Lovelace", **kwargs) -> User:
        return _make_user(seed, first_name, last_name, **kwargs)
    return _factory


@pytest.fixture
def app_befriend(seed):
    def _befriend(user_a: User, user_b: User) -> None:
        FriendGraph(seed).add(user_a.id, user_b.id)
    return _befriend


def token_for(user: User, expires_delta: Optional[timedelta] = None) -> str:
    return create_access_token(user.id, user.email, expires_delta=expires_delta)


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token_for(user)}"}
    return _headers


@pytest.fixture
def token():
    return token_for
