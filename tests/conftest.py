"""
Shared fixtures: in-memory SQLite database, seeded users, fake sockets and
a fake subscription store.

The SQLite engine disables pysqlite's own transaction handling and emits
BEGIN itself so that SAVEPOINTs (begin_nested) behave like PostgreSQL.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from guardian.app.core.config import settings
from guardian.app.core.database import Base
from guardian.app.emergencies.models import EmergencyContact, User
from guardian.app.notifications.models import NotificationRecipient
from guardian.app.realtime.rooms import RoomBroadcaster


# ═══════════════════════════════════════════════════════════════════════════
# Database
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


# ═══════════════════════════════════════════════════════════════════════════
# Seed data
# ═══════════════════════════════════════════════════════════════════════════

CREATOR_ID = "user-creator"
RESPONDER_ID = "user-responder"
OTHER_ID = "user-other"
STRANGER_ID = "user-stranger"


@pytest.fixture
async def users(session_factory) -> Dict[str, User]:
    """
    Creator C with contacts: R (registered), O (registered), U (no account),
    plus a stranger S who is nobody's contact.
    """
    rows = {
        "creator": User(id=CREATOR_ID, email="carol@example.com", display_name="Carol"),
        "responder": User(id=RESPONDER_ID, email="ravi@example.com", display_name="Ravi"),
        "other": User(id=OTHER_ID, email="olga@example.com"),
        "stranger": User(id=STRANGER_ID, email="sam@example.com", display_name="Sam"),
    }
    async with session_factory() as s:
        s.add_all(rows.values())
        await s.flush()
        s.add_all([
            EmergencyContact(user_id=CREATOR_ID, contact_user_id=RESPONDER_ID,
                             contact_name="Ravi", contact_email="ravi@example.com"),
            EmergencyContact(user_id=CREATOR_ID, contact_user_id=OTHER_ID,
                             contact_name="Olga", contact_email="olga@example.com"),
            EmergencyContact(user_id=CREATOR_ID, contact_user_id=None,
                             contact_name="Uma", contact_email="uma@example.com"),
        ])
        await s.commit()
    return rows


# ═══════════════════════════════════════════════════════════════════════════
# Realtime fakes
# ═══════════════════════════════════════════════════════════════════════════

class FakeSocket:
    """Records frames; can be told to fail every send."""

    def __init__(self, fail: bool = False):
        self.frames: List[Dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: Dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        # Frames must survive a JSON round trip like on a real socket
        self.frames.append(json.loads(json.dumps(data)))

    def events(self) -> List[str]:
        return [f["event"] for f in self.frames]

    def of(self, event: str) -> List[Dict[str, Any]]:
        return [f["data"] for f in self.frames if f["event"] == event]


@pytest.fixture
def rooms() -> RoomBroadcaster:
    return RoomBroadcaster()


# ═══════════════════════════════════════════════════════════════════════════
# Notification fakes
# ═══════════════════════════════════════════════════════════════════════════

class FakeSubscriptionStore:
    """In-memory delivery handles, same interface as SubscriptionStore."""

    def __init__(self, recipients: Optional[Dict[str, NotificationRecipient]] = None):
        self.recipients = recipients or {}
        self.cleared: List[str] = []
        self.broken: set = set()

    async def get_recipient(self, user_id: str) -> NotificationRecipient:
        if user_id in self.broken:
            raise RuntimeError(f"lookup failed for {user_id}")
        return self.recipients.get(user_id, NotificationRecipient(user_id=user_id))

    async def clear_web_subscription(self, user_id: str) -> None:
        self.cleared.append(user_id)
        recipient = self.recipients.get(user_id)
        if recipient is not None:
            recipient.web_subscription = None


@pytest.fixture
def subscriptions() -> FakeSubscriptionStore:
    return FakeSubscriptionStore()


@pytest.fixture
def push_disabled(monkeypatch):
    """No push provider configured: push channels report SKIPPED."""
    monkeypatch.setattr(settings, "MOBILE_PUSH_URL", None)
    monkeypatch.setattr(settings, "MOBILE_PUSH_AUTH_TOKEN", None)
    monkeypatch.setattr(settings, "VAPID_PUBLIC_KEY", None)
    monkeypatch.setattr(settings, "VAPID_PRIVATE_KEY", None)


@pytest.fixture
def push_enabled(monkeypatch):
    monkeypatch.setattr(settings, "MOBILE_PUSH_URL", "https://push.test/v1/messages:send")
    monkeypatch.setattr(settings, "MOBILE_PUSH_AUTH_TOKEN", "push-token")
    monkeypatch.setattr(settings, "VAPID_PUBLIC_KEY", "vapid-public")
    monkeypatch.setattr(settings, "VAPID_PRIVATE_KEY", "vapid-private")


# ═══════════════════════════════════════════════════════════════════════════
# Auth
# ═══════════════════════════════════════════════════════════════════════════

def make_token(user_id: str, *, expires_in: int = 3600, secret: Optional[str] = None) -> str:
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {
            "userId": user_id,
            "email": f"{user_id}@example.com",
            "role": "user",
            "iat": now,
            "exp": now + timedelta(seconds=expires_in),
        },
        secret or settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


def auth_header(user_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}
