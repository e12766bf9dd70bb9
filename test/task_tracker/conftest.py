"""
Shared fixtures for Task Tracker tests.

Provides an isolated SQLite database per test, seeded reference data for two
users, a recording fake WebSocket, and a lifecycle manager wired to a real
EventBroadcaster.
"""

import json
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "src"))

from task_tracker.broadcaster import EventBroadcaster
from task_tracker.database import TaskDatabase
from task_tracker.lifecycle import TaskLifecycleManager
from task_tracker.models import Tag

ALICE = "user-alice"
BOB = "user-bob"


class FakeWebSocket:
    """Records accepted/sent frames the way a Starlette WebSocket would receive them."""

    def __init__(self, fail_on_send: bool = False):
        self.accepted = False
        self.fail_on_send = fail_on_send
        self.sent: List[str] = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, message: str):
        if self.fail_on_send:
            raise ConnectionError("socket closed")
        self.sent.append(message)

    @property
    def events(self) -> List[Dict[str, Any]]:
        return [json.loads(message) for message in self.sent]


class UserFixture:
    """Ids of one seeded user's default reference data."""

    def __init__(self, db: TaskDatabase, user_id: str):
        db.seed_user_defaults(user_id)
        self.user_id = user_id
        self.categories = {c.name: c.id for c in db.list_categories(user_id)}
        self.priorities = {p.name: p.id for p in db.list_priorities(user_id)}
        self.tag = db.create_tag(Tag(owner_id=user_id, name="errands"))

    @property
    def category_id(self) -> str:
        return self.categories["Work"]

    @property
    def priority_id(self) -> str:
        return self.priorities["Medium"]

    def task_data(self, **overrides) -> Dict[str, Any]:
        data = {
            "title": "Water the plants",
            "category_id": self.category_id,
            "priority_id": self.priority_id,
            "due_date": "2025-01-06T09:00:00Z",
        }
        data.update(overrides)
        return data


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "task_tracker_test.db")


@pytest.fixture
def db(db_path):
    database = TaskDatabase(db_path)
    yield database
    database.close()


@pytest.fixture
def alice(db):
    return UserFixture(db, ALICE)


@pytest.fixture
def bob(db):
    return UserFixture(db, BOB)


@pytest.fixture
def broadcaster():
    return EventBroadcaster(max_connections=10, send_timeout_seconds=1.0)


@pytest.fixture
def manager(db, broadcaster):
    return TaskLifecycleManager(
        store=db, notifications=db, references=db, broadcaster=broadcaster
    )


async def join_room(broadcaster: EventBroadcaster, user_id: str) -> FakeWebSocket:
    """Connect a fake socket and join it to ``user_id``'s room."""
    websocket = FakeWebSocket()
    session_id = await broadcaster.connect(websocket)
    await broadcaster.join(session_id, user_id)
    return websocket


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)
