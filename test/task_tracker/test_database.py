"""
Test suite for TaskDatabase.

Tests cover:
- Database initialization, WAL mode and schema
- Owner-scoped task reads and writes
- Atomic apply_update with version compare-and-swap
- Reference entities, default seeding and notifications
"""

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from conftest import ALICE, BOB, utc
from task_tracker.database import DEFAULT_CATEGORIES, DEFAULT_PRIORITIES, TaskDatabase
from task_tracker.errors import (
    ConflictError,
    DependencyError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from task_tracker.models import (
    Category,
    Notification,
    NotificationType,
    RecurrencePattern,
    Subtask,
    Tag,
    Task,
    TaskStatus,
)


def make_task(user, **overrides) -> Task:
    fields = {
        "owner_id": user.user_id,
        "title": "Pay rent",
        "category_id": user.category_id,
        "priority_id": user.priority_id,
        "due_date": utc(2025, 2, 1),
    }
    fields.update(overrides)
    return Task(**fields)


class TestInitialization:

    def test_wal_mode_and_busy_timeout(self, db):
        cursor = db._connection.cursor()
        cursor.execute("PRAGMA journal_mode")
        assert cursor.fetchone()[0].upper() == "WAL"
        cursor.execute("PRAGMA busy_timeout")
        assert cursor.fetchone()[0] == 5000

    def test_schema_tables(self, db):
        cursor = db._connection.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
        tables = {row[0] for row in cursor.fetchall()}
        assert {"tasks", "categories", "priorities", "tags", "notifications"} <= tables

    def test_schema_rejects_inconsistent_completion(self, db, alice):
        task = make_task(alice)
        db.create(task)
        with pytest.raises(sqlite3.IntegrityError):
            db._connection.execute(
                "UPDATE tasks SET completed = 1 WHERE id = ?", (task.id,)
            )

    def test_reopen_existing_file(self, db_path):
        with TaskDatabase(db_path):
            pass
        with TaskDatabase(db_path) as reopened:
            assert reopened.ping()

    def test_closed_database_raises_dependency_error(self, db_path):
        database = TaskDatabase(db_path)
        database.close()
        with pytest.raises(DependencyError):
            database.find_by_id("anything")

    def test_unopenable_path_raises_dependency_error(self, tmp_path):
        with pytest.raises(DependencyError):
            TaskDatabase(str(tmp_path))

    def test_corrupt_file_raises_dependency_error(self, tmp_path):
        path = tmp_path / "corrupt.db"
        path.write_bytes(b"this is not an sqlite file" * 64)
        with pytest.raises(DependencyError):
            TaskDatabase(str(path))


class TestErrorConversion:

    @pytest.fixture
    def broken_db(self, db):
        connection = db._connection
        db._connection = MagicMock()
        yield db
        db._connection = connection

    def test_database_error_becomes_dependency_error(self, broken_db):
        broken_db._connection.cursor.return_value.execute.side_effect = sqlite3.DatabaseError(
            "file is not a database"
        )
        with pytest.raises(DependencyError) as exc_info:
            broken_db.find_by_id("anything")
        assert isinstance(exc_info.value.__cause__, sqlite3.DatabaseError)

    def test_integrity_error_propagates(self, broken_db):
        broken_db._connection.cursor.return_value.execute.side_effect = sqlite3.IntegrityError(
            "UNIQUE constraint failed: tasks.id"
        )
        with pytest.raises(sqlite3.IntegrityError):
            broken_db.find_by_id("anything")


class TestTaskStorage:

    def test_create_and_find_round_trip(self, db, alice):
        task = make_task(
            alice,
            subtasks=[Subtask(title="Check balance")],
            tags=[alice.tag.id],
            recurrence=RecurrencePattern(frequency="monthly", day_of_month=1),
        )
        db.create(task)

        loaded = db.find_by_id(task.id)
        assert loaded == task
        assert loaded.recurrence.day_of_month == 1
        assert loaded.due_date.tzinfo is not None

    def test_find_missing_returns_none(self, db):
        assert db.find_by_id("missing") is None

    def test_find_by_owner_is_scoped_and_filtered(self, db, alice, bob):
        first = db.create(make_task(alice, title="First"))
        second = db.create(make_task(alice, title="Second", status="in-progress"))
        db.create(make_task(bob, title="Bob's"))

        titles = [task.title for task in db.find_by_owner(ALICE)]
        assert sorted(titles) == ["First", "Second"]

        in_progress = db.find_by_owner(ALICE, status="in-progress")
        assert [task.id for task in in_progress] == [second.id]

        personal = alice.categories["Personal"]
        assert db.find_by_owner(ALICE, category_id=personal) == []
        assert {t.id for t in db.find_by_owner(ALICE, category_id=alice.category_id)} == {
            first.id,
            second.id,
        }

    def test_update_bumps_version_and_timestamp(self, db, alice):
        task = db.create(make_task(alice))
        updated = db.update(task.id, ALICE, {"title": "Pay rent early"})

        assert updated.title == "Pay rent early"
        assert updated.version == task.version + 1
        assert updated.updated_at >= task.updated_at
        assert db.find_by_id(task.id).version == 2

    def test_update_is_owner_scoped(self, db, alice):
        task = db.create(make_task(alice))
        with pytest.raises(NotFoundError):
            db.update(task.id, BOB, {"title": "Hijacked"})
        assert db.find_by_id(task.id).title == "Pay rent"

    def test_update_rejects_invalid_result(self, db, alice):
        task = db.create(make_task(alice))
        with pytest.raises(ValidationError):
            db.update(task.id, ALICE, {"completed": True})
        assert db.find_by_id(task.id).completed is False

    def test_apply_update_creates_tasks_atomically(self, db, alice):
        task = db.create(make_task(alice))
        extra = make_task(alice, title="Follow-up", parent_task_id=task.id)

        updated, created = db.apply_update(
            task.id, ALICE, lambda current: ({"status": TaskStatus.COMPLETED, "completed": True}, [extra])
        )

        assert updated.completed is True
        assert created == [extra]
        assert [t.id for t in db.find_by_parent(ALICE, task.id)] == [extra.id]

    def test_apply_update_rolls_back_when_planner_fails(self, db, alice):
        task = db.create(make_task(alice))

        def failing_planner(current):
            raise NotFoundError("Subtask x not found")

        with pytest.raises(NotFoundError):
            db.apply_update(task.id, ALICE, failing_planner)
        assert db.find_by_id(task.id).version == 1
        assert not db._connection.in_transaction

    def test_apply_update_version_conflict(self, db, alice):
        task = db.create(make_task(alice))

        def concurrent_writer(current):
            # Another writer bumps the version behind the planner's back
            db._connection.execute("UPDATE tasks SET version = version + 1 WHERE id = ?", (task.id,))
            return {"title": "Mine"}, []

        with pytest.raises(ConflictError):
            db.apply_update(task.id, ALICE, concurrent_writer)
        assert db.find_by_id(task.id).title == "Pay rent"

    def test_concurrent_completions_across_connections(self, db, db_path, alice):
        """Two connections racing to complete a task: only one sees it open."""
        task = db.create(make_task(alice))
        barrier = threading.Barrier(2)
        transitions = []
        lock = threading.Lock()

        def complete():
            with TaskDatabase(db_path, busy_timeout_ms=10000) as conn:
                barrier.wait()

                def planner(current):
                    if not current.completed:
                        with lock:
                            transitions.append(current.version)
                        return {"status": TaskStatus.COMPLETED, "completed": True}, [
                            make_task(alice, title="Successor", parent_task_id=task.id)
                        ]
                    return {"status": TaskStatus.COMPLETED, "completed": True}, []

                conn.apply_update(task.id, ALICE, planner)

        with ThreadPoolExecutor(max_workers=2) as executor:
            for future in [executor.submit(complete) for _ in range(2)]:
                future.result()

        assert len(transitions) == 1
        assert len(db.find_by_parent(ALICE, task.id)) == 1
        assert db.find_by_id(task.id).version == 3

    def test_delete(self, db, alice):
        task = db.create(make_task(alice))
        with pytest.raises(NotFoundError):
            db.delete(task.id, BOB)
        db.delete(task.id, ALICE)
        assert db.find_by_id(task.id) is None
        with pytest.raises(NotFoundError):
            db.delete(task.id, ALICE)

    def test_count_tasks(self, db, alice, bob):
        db.create(make_task(alice))
        db.create(make_task(bob))
        assert db.count_tasks() == 2
        assert db.count_tasks(ALICE) == 1


class TestReferenceEntities:

    def test_seed_defaults_once(self, db):
        assert db.seed_user_defaults("carol") == {
            "categories": len(DEFAULT_CATEGORIES),
            "priorities": len(DEFAULT_PRIORITIES),
        }
        assert db.seed_user_defaults("carol") == {"categories": 0, "priorities": 0}

        names = [c.name for c in db.list_categories("carol")]
        assert names == ["Work", "Personal", "Shopping", "Health", "Learning"]
        levels = [p.level.value for p in db.list_priorities("carol")]
        assert levels == ["low", "medium", "high"]

    def test_reference_lookups_are_owner_scoped(self, db, alice, bob):
        assert db.get_category(ALICE, alice.category_id) is not None
        assert db.get_category(BOB, alice.category_id) is None
        assert db.get_priority(BOB, alice.priority_id) is None
        assert db.get_tags(BOB, [alice.tag.id]) == []

    def test_get_tags_preserves_order(self, db, alice):
        second = db.create_tag(Tag(owner_id=ALICE, name="home"))
        tags = db.get_tags(ALICE, [second.id, "missing", alice.tag.id])
        assert [tag.id for tag in tags] == [second.id, alice.tag.id]

    def test_update_category(self, db, alice):
        updated = db.update_category(ALICE, alice.category_id, {"color": "#000000"})
        assert updated.color == "#000000"
        assert updated.name == "Work"
        assert db.get_category(ALICE, alice.category_id).color == "#000000"

    def test_update_other_users_category_forbidden(self, db, alice, bob):
        with pytest.raises(ForbiddenError):
            db.update_category(BOB, alice.category_id, {"name": "Mine now"})

    def test_delete_missing_reference(self, db, alice):
        with pytest.raises(NotFoundError):
            db.delete_tag(ALICE, "missing")

    def test_delete_category(self, db):
        category = db.create_category(Category(owner_id="dave", name="Garden"))
        db.delete_category("dave", category.id)
        assert db.list_categories("dave") == []


class TestNotifications:

    def _notify(self, db, owner, title):
        return db.create_notification(
            Notification(owner_id=owner, type=NotificationType.SYSTEM, title=title, message=title)
        )

    def test_list_newest_first_with_limit(self, db):
        for index in range(3):
            self._notify(db, ALICE, f"n{index}")
        self._notify(db, BOB, "bob")

        titles = [n.title for n in db.list_notifications(ALICE)]
        assert titles == ["n2", "n1", "n0"]
        assert len(db.list_notifications(ALICE, limit=2)) == 2

    def test_mark_read_and_unread_filter(self, db):
        first = self._notify(db, ALICE, "first")
        self._notify(db, ALICE, "second")

        marked = db.mark_notification_read(ALICE, first.id)
        assert marked.read is True
        assert [n.title for n in db.list_notifications(ALICE, unread_only=True)] == ["second"]

    def test_mark_read_requires_owner(self, db):
        notification = self._notify(db, ALICE, "private")
        with pytest.raises(ForbiddenError):
            db.mark_notification_read(BOB, notification.id)
        with pytest.raises(NotFoundError):
            db.mark_notification_read(ALICE, "missing")

    def test_delete_and_clear(self, db):
        first = self._notify(db, ALICE, "first")
        self._notify(db, ALICE, "second")
        self._notify(db, BOB, "bob")

        db.delete_notification(ALICE, first.id)
        assert db.clear_notifications(ALICE) == 1
        assert db.list_notifications(ALICE) == []
        assert len(db.list_notifications(BOB)) == 1
