"""
Task Database Layer with Per-Task Atomic Updates

Provides SQLite-based storage with WAL mode for concurrent access. Implements
the TaskStore and NotificationSink collaborators consumed by the lifecycle
core, plus the owned reference entities (categories, priorities, tags).
Every query is scoped by owner id.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import (
    ConflictError,
    DependencyError,
    ForbiddenError,
    NotFoundError,
    validation_error_from,
)
from .models import (
    Category,
    Notification,
    Priority,
    PriorityLevel,
    Tag,
    Task,
    utc_now,
)
from .store import UpdatePlanner

logger = logging.getLogger(__name__)


DEFAULT_CATEGORIES = [
    ("Work", "#3B82F6"),
    ("Personal", "#10B981"),
    ("Shopping", "#F59E0B"),
    ("Health", "#EF4444"),
    ("Learning", "#8B5CF6"),
]

DEFAULT_PRIORITIES = [
    ("Low", PriorityLevel.LOW, "#10B981"),
    ("Medium", PriorityLevel.MEDIUM, "#F59E0B"),
    ("High", PriorityLevel.HIGH, "#EF4444"),
]

# Column layout of the owned reference tables, keyed by table name
_REFERENCE_TABLES: Dict[str, Tuple[Type[BaseModel], Tuple[str, ...]]] = {
    "categories": (Category, ("id", "owner_id", "name", "color", "icon", "created_at", "updated_at")),
    "priorities": (Priority, ("id", "owner_id", "name", "level", "color", "created_at", "updated_at")),
    "tags": (Tag, ("id", "owner_id", "name", "color", "created_at", "updated_at")),
}

_ENTITY_NAMES = {
    "categories": "Category",
    "priorities": "Priority",
    "tags": "Tag",
    "notifications": "Notification",
}

_TASK_COLUMNS = (
    "id", "owner_id", "title", "description", "category_id", "priority_id",
    "status", "completed", "due_date", "image", "subtasks", "tags",
    "attachments", "recurrence", "parent_task_id", "version",
    "created_at", "updated_at",
)

_TASK_JSON_COLUMNS = ("subtasks", "tags", "attachments", "recurrence")


class TaskDatabase:
    """
    SQLite database with ownership-scoped task storage.

    Features:
    - WAL mode for concurrent read/write access
    - Single shared connection guarded by a reentrant lock
    - ``apply_update`` runs read-decide-write for one task inside a single
      ``BEGIN IMMEDIATE`` transaction with a version compare-and-swap
    - Lock/unavailability errors surface as DependencyError
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000):
        """
        Initialize TaskDatabase with SQLite WAL mode configuration.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_ms: How long SQLite waits on a locked database
        """
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        # Ensure database directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

    def _initialize_database(self) -> None:
        """Open the connection with WAL mode and create the schema if needed."""
        try:
            # Autocommit mode with explicit BEGIN/COMMIT for multi-statement writes
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,
                check_same_thread=False,
            )
            self._connection.row_factory = sqlite3.Row

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            cursor.execute("PRAGMA foreign_keys=ON")

            self._create_schema()
        except sqlite3.Error as e:
            raise DependencyError(f"Failed to initialize database at {self.db_path}: {e}") from e

        logger.info(f"Task database ready at {self.db_path}")

    def _create_schema(self) -> None:
        """Create database schema with owner-scoped indexes."""
        cursor = self._connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                category_id TEXT NOT NULL,
                priority_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'in-progress', 'completed')),
                completed INTEGER NOT NULL DEFAULT 0,
                due_date TEXT NOT NULL,
                image TEXT,
                subtasks TEXT NOT NULL DEFAULT '[]',
                tags TEXT NOT NULL DEFAULT '[]',
                attachments TEXT NOT NULL DEFAULT '[]',
                recurrence TEXT,
                parent_task_id TEXT,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK ((completed = 1) = (status = 'completed'))
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS categories (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                color TEXT NOT NULL,
                icon TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS priorities (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                level TEXT NOT NULL CHECK (level IN ('low', 'medium', 'high')),
                color TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tags (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                color TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                type TEXT NOT NULL
                    CHECK (type IN ('task-due', 'task-completed', 'task-assigned', 'system')),
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                read INTEGER NOT NULL DEFAULT 0,
                task_id TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_owner_status ON tasks(owner_id, status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_owner_due ON tasks(owner_id, due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_owner_category ON tasks(owner_id, category_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks(parent_task_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_categories_owner ON categories(owner_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_priorities_owner ON priorities(owner_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tags_owner ON tags(owner_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_owner_read ON notifications(owner_id, read)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_owner_created ON notifications(owner_id, created_at)")

    # ---- connection helpers ----

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Cursor for single-statement work under the connection lock."""
        with self._connection_lock:
            if self._connection is None:
                raise DependencyError("Task database connection is closed")
            try:
                yield self._connection.cursor()
            except sqlite3.IntegrityError:
                raise
            except sqlite3.DatabaseError as e:
                raise DependencyError(f"Task store unavailable: {e}") from e

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Cursor]:
        """
        Context manager for explicit transaction control.

        Args:
            immediate: Take the write lock at BEGIN so read-decide-write
                sequences cannot interleave with other writers
        """
        with self._cursor() as cursor:
            cursor.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield cursor
                cursor.execute("COMMIT")
            except Exception:
                if self._connection.in_transaction:
                    cursor.execute("ROLLBACK")
                raise

    # ---- serialization ----

    @staticmethod
    def _model_params(model: BaseModel, columns: Sequence[str]) -> Dict[str, Any]:
        data = model.model_dump(mode="json")
        return {column: data.get(column) for column in columns}

    def _task_params(self, task: Task) -> Dict[str, Any]:
        params = self._model_params(task, _TASK_COLUMNS)
        params["completed"] = 1 if task.completed else 0
        for column in _TASK_JSON_COLUMNS:
            value = params[column]
            params[column] = None if value is None else json.dumps(value)
        return params

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        data = dict(row)
        data["completed"] = bool(data["completed"])
        for column in _TASK_JSON_COLUMNS:
            raw = data.get(column)
            data[column] = json.loads(raw) if raw else None
        for column in ("subtasks", "tags", "attachments"):
            if data[column] is None:
                data[column] = []
        return Task.model_validate(data)

    def _insert_task(self, cursor: sqlite3.Cursor, task: Task) -> None:
        params = self._task_params(task)
        placeholders = ", ".join(f":{column}" for column in _TASK_COLUMNS)
        cursor.execute(
            f"INSERT INTO tasks ({', '.join(_TASK_COLUMNS)}) VALUES ({placeholders})",
            params,
        )

    # ---- TaskStore ----

    def find_by_id(self, task_id: str) -> Optional[Task]:
        """
        Load a task by id without owner filtering.

        Used only for the existence/ownership check that precedes every
        mutation; all subsequent reads and writes are owner scoped.
        """
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
            row = cursor.fetchone()
        return self._row_to_task(row) if row else None

    def find_by_owner(
        self,
        owner_id: str,
        status: Optional[str] = None,
        category_id: Optional[str] = None,
    ) -> List[Task]:
        """
        List an owner's tasks, newest first.

        Args:
            owner_id: Owning user id
            status: Optional status filter
            category_id: Optional category filter

        Returns:
            List of Task models
        """
        query = "SELECT * FROM tasks WHERE owner_id = ?"
        params: List[Any] = [owner_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        if category_id:
            query += " AND category_id = ?"
            params.append(category_id)
        query += " ORDER BY created_at DESC, rowid DESC"

        with self._cursor() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    def find_by_parent(self, owner_id: str, parent_task_id: str) -> List[Task]:
        """List the successors spawned from a recurring task."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM tasks
                WHERE owner_id = ? AND parent_task_id = ?
                ORDER BY due_date ASC
                """,
                (owner_id, parent_task_id),
            )
            rows = cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    def create(self, task: Task) -> Task:
        """Persist a new task."""
        with self._transaction() as cursor:
            self._insert_task(cursor, task)
        logger.debug(f"Task created id={task.id} owner={task.owner_id}")
        return task

    def update(self, task_id: str, owner_id: str, patch: Dict[str, Any]) -> Task:
        """Apply a plain field patch to an owned task."""
        updated, _ = self.apply_update(task_id, owner_id, lambda current: (patch, []))
        return updated

    def apply_update(
        self, task_id: str, owner_id: str, planner: UpdatePlanner
    ) -> Tuple[Task, List[Task]]:
        """
        Atomically re-read, plan and persist a task mutation.

        The planner sees the task as stored at the moment the write lock is
        held, so two concurrent completions cannot both observe
        ``completed=False``. The patch and any planned tasks commit together
        or not at all.

        Args:
            task_id: Task to update
            owner_id: Owner the task must belong to
            planner: Callable returning (patch, tasks_to_create)

        Returns:
            Tuple of the updated task and the created tasks

        Raises:
            NotFoundError: If no task with that id belongs to the owner
            ValidationError: If the patched task is invalid
            ConflictError: If the stored version moved during the update
        """
        with self._transaction(immediate=True) as cursor:
            cursor.execute(
                "SELECT * FROM tasks WHERE id = ? AND owner_id = ?",
                (task_id, owner_id),
            )
            row = cursor.fetchone()
            if not row:
                raise NotFoundError(f"Task {task_id} not found")

            current = self._row_to_task(row)
            patch, new_tasks = planner(current)

            merged = current.model_dump()
            merged.update(patch)
            merged["version"] = current.version + 1
            merged["updated_at"] = utc_now()
            try:
                updated = Task.model_validate(merged)
            except PydanticValidationError as e:
                raise validation_error_from(e) from e

            params = self._task_params(updated)
            assignments = ", ".join(
                f"{column} = :{column}" for column in _TASK_COLUMNS if column not in ("id", "owner_id", "created_at")
            )
            params["expected_version"] = current.version
            cursor.execute(
                f"""
                UPDATE tasks SET {assignments}
                WHERE id = :id AND owner_id = :owner_id AND version = :expected_version
                """,
                params,
            )
            if cursor.rowcount != 1:
                raise ConflictError(
                    f"Task {task_id} was modified concurrently",
                    {"expected_version": current.version},
                )

            for task in new_tasks:
                self._insert_task(cursor, task)

        return updated, new_tasks

    def delete(self, task_id: str, owner_id: str) -> None:
        """Delete an owned task."""
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM tasks WHERE id = ? AND owner_id = ?",
                (task_id, owner_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Task {task_id} not found")

    def count_tasks(self, owner_id: Optional[str] = None) -> int:
        with self._cursor() as cursor:
            if owner_id is None:
                cursor.execute("SELECT COUNT(*) FROM tasks")
            else:
                cursor.execute("SELECT COUNT(*) FROM tasks WHERE owner_id = ?", (owner_id,))
            return int(cursor.fetchone()[0])

    # ---- owned reference entities ----

    def _require_owned(self, cursor: sqlite3.Cursor, table: str, owner_id: str, entity_id: str) -> sqlite3.Row:
        cursor.execute(f"SELECT * FROM {table} WHERE id = ?", (entity_id,))
        row = cursor.fetchone()
        if not row:
            raise NotFoundError(f"{_ENTITY_NAMES[table]} {entity_id} not found")
        if row["owner_id"] != owner_id:
            raise ForbiddenError(f"Not authorized to access {_ENTITY_NAMES[table].lower()} {entity_id}")
        return row

    def _create_reference(self, table: str, entity: BaseModel) -> BaseModel:
        _, columns = _REFERENCE_TABLES[table]
        params = self._model_params(entity, columns)
        placeholders = ", ".join(f":{column}" for column in columns)
        with self._cursor() as cursor:
            cursor.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                params,
            )
        return entity

    def _get_reference(self, table: str, owner_id: str, entity_id: str) -> Optional[BaseModel]:
        model_cls, _ = _REFERENCE_TABLES[table]
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM {table} WHERE id = ? AND owner_id = ?",
                (entity_id, owner_id),
            )
            row = cursor.fetchone()
        return model_cls.model_validate(dict(row)) if row else None

    def _list_references(self, table: str, owner_id: str) -> List[BaseModel]:
        model_cls, _ = _REFERENCE_TABLES[table]
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM {table} WHERE owner_id = ? ORDER BY created_at ASC, rowid ASC",
                (owner_id,),
            )
            rows = cursor.fetchall()
        return [model_cls.model_validate(dict(row)) for row in rows]

    def _update_reference(
        self, table: str, owner_id: str, entity_id: str, patch: Dict[str, Any]
    ) -> BaseModel:
        model_cls, columns = _REFERENCE_TABLES[table]
        with self._transaction() as cursor:
            row = self._require_owned(cursor, table, owner_id, entity_id)
            merged = dict(row)
            merged.update({key: value for key, value in patch.items() if key in columns})
            merged["updated_at"] = utc_now()
            try:
                entity = model_cls.model_validate(merged)
            except PydanticValidationError as e:
                raise validation_error_from(e) from e
            params = self._model_params(entity, columns)
            assignments = ", ".join(f"{column} = :{column}" for column in columns if column not in ("id", "owner_id"))
            cursor.execute(
                f"UPDATE {table} SET {assignments} WHERE id = :id AND owner_id = :owner_id",
                params,
            )
        return entity

    def _delete_reference(self, table: str, owner_id: str, entity_id: str) -> None:
        with self._transaction() as cursor:
            self._require_owned(cursor, table, owner_id, entity_id)
            cursor.execute(
                f"DELETE FROM {table} WHERE id = ? AND owner_id = ?",
                (entity_id, owner_id),
            )

    def create_category(self, category: Category) -> Category:
        return self._create_reference("categories", category)

    def get_category(self, owner_id: str, category_id: str) -> Optional[Category]:
        return self._get_reference("categories", owner_id, category_id)

    def list_categories(self, owner_id: str) -> List[Category]:
        return self._list_references("categories", owner_id)

    def update_category(self, owner_id: str, category_id: str, patch: Dict[str, Any]) -> Category:
        return self._update_reference("categories", owner_id, category_id, patch)

    def delete_category(self, owner_id: str, category_id: str) -> None:
        self._delete_reference("categories", owner_id, category_id)

    def create_priority(self, priority: Priority) -> Priority:
        return self._create_reference("priorities", priority)

    def get_priority(self, owner_id: str, priority_id: str) -> Optional[Priority]:
        return self._get_reference("priorities", owner_id, priority_id)

    def list_priorities(self, owner_id: str) -> List[Priority]:
        return self._list_references("priorities", owner_id)

    def update_priority(self, owner_id: str, priority_id: str, patch: Dict[str, Any]) -> Priority:
        return self._update_reference("priorities", owner_id, priority_id, patch)

    def delete_priority(self, owner_id: str, priority_id: str) -> None:
        self._delete_reference("priorities", owner_id, priority_id)

    def create_tag(self, tag: Tag) -> Tag:
        return self._create_reference("tags", tag)

    def get_tags(self, owner_id: str, tag_ids: Sequence[str]) -> List[Tag]:
        """Fetch owned tags by id, preserving the order of ``tag_ids``."""
        if not tag_ids:
            return []
        placeholders = ", ".join("?" for _ in tag_ids)
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM tags WHERE owner_id = ? AND id IN ({placeholders})",
                (owner_id, *tag_ids),
            )
            rows = {row["id"]: row for row in cursor.fetchall()}
        return [Tag.model_validate(dict(rows[tag_id])) for tag_id in tag_ids if tag_id in rows]

    def list_tags(self, owner_id: str) -> List[Tag]:
        return self._list_references("tags", owner_id)

    def update_tag(self, owner_id: str, tag_id: str, patch: Dict[str, Any]) -> Tag:
        return self._update_reference("tags", owner_id, tag_id, patch)

    def delete_tag(self, owner_id: str, tag_id: str) -> None:
        self._delete_reference("tags", owner_id, tag_id)

    def seed_user_defaults(self, owner_id: str) -> Dict[str, int]:
        """
        Create the default categories and priorities for a user.

        Each set is only created when the user has none of that kind yet.

        Returns:
            Dict with the number of categories and priorities created
        """
        created = {"categories": 0, "priorities": 0}
        with self._transaction(immediate=True) as cursor:
            cursor.execute("SELECT COUNT(*) FROM categories WHERE owner_id = ?", (owner_id,))
            if cursor.fetchone()[0] == 0:
                for name, color in DEFAULT_CATEGORIES:
                    category = Category(owner_id=owner_id, name=name, color=color)
                    params = self._model_params(category, _REFERENCE_TABLES["categories"][1])
                    cursor.execute(
                        """
                        INSERT INTO categories (id, owner_id, name, color, icon, created_at, updated_at)
                        VALUES (:id, :owner_id, :name, :color, :icon, :created_at, :updated_at)
                        """,
                        params,
                    )
                    created["categories"] += 1

            cursor.execute("SELECT COUNT(*) FROM priorities WHERE owner_id = ?", (owner_id,))
            if cursor.fetchone()[0] == 0:
                for name, level, color in DEFAULT_PRIORITIES:
                    priority = Priority(owner_id=owner_id, name=name, level=level, color=color)
                    params = self._model_params(priority, _REFERENCE_TABLES["priorities"][1])
                    cursor.execute(
                        """
                        INSERT INTO priorities (id, owner_id, name, level, color, created_at, updated_at)
                        VALUES (:id, :owner_id, :name, :level, :color, :created_at, :updated_at)
                        """,
                        params,
                    )
                    created["priorities"] += 1

        if created["categories"] or created["priorities"]:
            logger.info(
                f"Seeded defaults for user {owner_id}: "
                f"{created['categories']} categories, {created['priorities']} priorities"
            )
        return created

    # ---- NotificationSink ----

    @staticmethod
    def _row_to_notification(row: sqlite3.Row) -> Notification:
        data = dict(row)
        data["read"] = bool(data["read"])
        return Notification.model_validate(data)

    def create_notification(self, notification: Notification) -> Notification:
        params = self._model_params(
            notification,
            ("id", "owner_id", "type", "title", "message", "read", "task_id", "created_at"),
        )
        params["read"] = 1 if notification.read else 0
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO notifications (id, owner_id, type, title, message, read, task_id, created_at)
                VALUES (:id, :owner_id, :type, :title, :message, :read, :task_id, :created_at)
                """,
                params,
            )
        return notification

    def list_notifications(
        self, owner_id: str, limit: int = 50, unread_only: bool = False
    ) -> List[Notification]:
        """List an owner's notifications, newest first."""
        query = "SELECT * FROM notifications WHERE owner_id = ?"
        if unread_only:
            query += " AND read = 0"
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        with self._cursor() as cursor:
            cursor.execute(query, (owner_id, int(limit)))
            rows = cursor.fetchall()
        return [self._row_to_notification(row) for row in rows]

    def mark_notification_read(self, owner_id: str, notification_id: str) -> Notification:
        with self._transaction() as cursor:
            self._require_owned(cursor, "notifications", owner_id, notification_id)
            cursor.execute(
                "UPDATE notifications SET read = 1 WHERE id = ? AND owner_id = ?",
                (notification_id, owner_id),
            )
            cursor.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,))
            row = cursor.fetchone()
        return self._row_to_notification(row)

    def delete_notification(self, owner_id: str, notification_id: str) -> None:
        with self._transaction() as cursor:
            self._require_owned(cursor, "notifications", owner_id, notification_id)
            cursor.execute(
                "DELETE FROM notifications WHERE id = ? AND owner_id = ?",
                (notification_id, owner_id),
            )

    def clear_notifications(self, owner_id: str) -> int:
        """Delete every notification of an owner and return how many were removed."""
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM notifications WHERE owner_id = ?", (owner_id,))
            return cursor.rowcount

    # ---- lifecycle ----

    def ping(self) -> bool:
        """Cheap connectivity probe for health checks."""
        with self._cursor() as cursor:
            cursor.execute("SELECT 1")
            return cursor.fetchone()[0] == 1

    def close(self):
        """Close database connection."""
        with self._connection_lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
