"""
Task Lifecycle Manager

Owns the state-transition contract for tasks: ownership checks, completion
and status consistency, recurrence-driven successor spawning, and subtask
mutation. Every resulting task state is handed to the EventBroadcaster and
user-visible notifications are recorded through the NotificationSink.

Serialization:
    Mutations of one task run under an asyncio lock keyed by task id, and the
    store performs the read-decide-write of each mutation in one atomic
    transaction. A completion transition therefore spawns at most one
    successor even when several completion requests race.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .broadcaster import EventBroadcaster, EventKind
from .errors import ForbiddenError, NotFoundError, ValidationError, validation_error_from
from .models import (
    Notification,
    NotificationType,
    Subtask,
    SubtaskCreate,
    SubtaskUpdate,
    Task,
    TaskCreate,
    TaskStatus,
    TaskUpdate,
    new_id,
)
from .recurrence import compute_next_occurrence
from .resolver import TaskResolver
from .store import NotificationSink, ReferenceLookup, TaskStore

logger = logging.getLogger(__name__)


class TaskLocks:
    """asyncio locks keyed by task id, dropped once nobody holds or awaits them."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, task_id: str):
        lock = self._locks.setdefault(task_id, asyncio.Lock())
        self._users[task_id] = self._users.get(task_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[task_id] -= 1
            if self._users[task_id] == 0:
                del self._users[task_id]
                del self._locks[task_id]

    def __len__(self) -> int:
        return len(self._locks)


def _parse(model_cls, data: Union[BaseModel, Dict[str, Any]]):
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        raise validation_error_from(e) from e


def normalize_completion(current: Task, patch: Dict[str, Any]) -> Dict[str, Any]:
    """
    Keep ``completed`` and ``status`` consistent in a patch.

    Setting one implies the other. ``completed=False`` alone on a completed
    task moves it back to pending; on a pending or in-progress task it
    leaves the status alone.
    """
    patch = dict(patch)
    status = patch.get("status")
    completed = patch.get("completed")

    if completed is not None and status is None:
        if completed:
            patch["status"] = TaskStatus.COMPLETED
        elif current.status == TaskStatus.COMPLETED:
            patch["status"] = TaskStatus.PENDING
    elif status is not None and completed is None:
        patch["completed"] = TaskStatus(status) == TaskStatus.COMPLETED
    return patch


class TaskLifecycleManager:
    """
    Coordinates task mutations with recurrence, notifications and broadcasting.

    Args:
        store: TaskStore used for all task reads and writes
        notifications: NotificationSink recording user-visible notifications
        references: Owner-scoped lookup of categories, priorities and tags
        broadcaster: EventBroadcaster for real-time fan-out (optional)
    """

    def __init__(
        self,
        store: TaskStore,
        notifications: NotificationSink,
        references: ReferenceLookup,
        broadcaster: Optional[EventBroadcaster] = None,
    ):
        self.store = store
        self.notifications = notifications
        self.references = references
        self.broadcaster = broadcaster
        self.resolver = TaskResolver(references)
        self._locks = TaskLocks()

    # ---- reads ----

    def _load_owned(self, owner_id: str, task_id: str) -> Task:
        task = self.store.find_by_id(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        if task.owner_id != owner_id:
            raise ForbiddenError(f"Not authorized to access task {task_id}")
        return task

    def get_task(self, owner_id: str, task_id: str) -> Task:
        return self._load_owned(owner_id, task_id)

    def list_tasks(
        self,
        owner_id: str,
        status: Optional[str] = None,
        category_id: Optional[str] = None,
    ) -> List[Task]:
        return self.store.find_by_owner(owner_id, status=status, category_id=category_id)

    def list_successors(self, owner_id: str, task_id: str) -> List[Task]:
        """Tasks spawned from ``task_id`` by completing it while recurring."""
        self._load_owned(owner_id, task_id)
        return self.store.find_by_parent(owner_id, task_id)

    def resolve(self, task: Task) -> Dict[str, Any]:
        return self.resolver.resolve(task)

    # ---- validation helpers ----

    def _check_references(
        self,
        owner_id: str,
        category_id: Optional[str] = None,
        priority_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> None:
        if category_id is not None and self.references.get_category(owner_id, category_id) is None:
            raise ValidationError(
                f"Category {category_id} does not exist", {"field": "category_id"}
            )
        if priority_id is not None and self.references.get_priority(owner_id, priority_id) is None:
            raise ValidationError(
                f"Priority {priority_id} does not exist", {"field": "priority_id"}
            )
        if tags:
            found = {tag.id for tag in self.references.get_tags(owner_id, tags)}
            missing = [tag_id for tag_id in tags if tag_id not in found]
            if missing:
                raise ValidationError(
                    f"Unknown tag(s): {', '.join(missing)}", {"field": "tags"}
                )

    # ---- side effects ----

    def _notify(
        self,
        owner_id: str,
        kind: NotificationType,
        title: str,
        message: str,
        task_id: Optional[str] = None,
    ) -> None:
        notification = Notification(
            owner_id=owner_id, type=kind, title=title, message=message, task_id=task_id
        )
        try:
            self.notifications.create_notification(notification)
        except Exception as e:
            logger.error(f"Failed to record {kind.value} notification for user {owner_id}: {e}")
            raise

    async def _broadcast(self, owner_id: str, kind: EventKind, payload: Dict[str, Any]) -> None:
        if self.broadcaster is None:
            return
        try:
            await self.broadcaster.publish(owner_id, kind.value, payload)
        except Exception as e:
            # Delivery problems never fail the mutation that triggered them
            logger.warning(f"Broadcast {kind.value} for user {owner_id} failed: {e}")

    async def _broadcast_task(self, kind: EventKind, task: Task) -> None:
        try:
            payload = self.resolver.resolve(task)
        except Exception as e:
            logger.warning(f"Could not resolve task {task.id} for {kind.value}: {e}")
            return
        await self._broadcast(task.owner_id, kind, payload)

    # ---- task operations ----

    async def create_task(self, owner_id: str, data: Union[TaskCreate, Dict[str, Any]]) -> Task:
        """
        Validate and persist a new task for ``owner_id``.

        Raises:
            ValidationError: Missing title, category, priority or due date,
                malformed recurrence, or references the owner does not have
        """
        request = _parse(TaskCreate, data)
        self._check_references(owner_id, request.category_id, request.priority_id, request.tags)

        task = Task(
            owner_id=owner_id,
            title=request.title,
            description=request.description,
            category_id=request.category_id,
            priority_id=request.priority_id,
            status=request.status,
            completed=request.completed,
            due_date=request.due_date,
            image=request.image,
            subtasks=[
                Subtask(title=subtask.title, order=index)
                for index, subtask in enumerate(request.subtasks)
            ],
            tags=request.tags,
            attachments=request.attachments,
            recurrence=request.recurrence,
        )
        created = self.store.create(task)
        logger.info(f"Task {created.id} created for user {owner_id}")

        self._notify(
            owner_id,
            NotificationType.SYSTEM,
            "Task Created",
            f'Task "{created.title}" has been created',
            created.id,
        )
        await self._broadcast_task(EventKind.TASK_CREATED, created)
        return created

    def _build_successor(self, task: Task) -> Optional[Task]:
        next_due = compute_next_occurrence(task.due_date, task.recurrence)
        if next_due is None:
            logger.info(f"Recurring task {task.id} reached the end of its series")
            return None

        return Task(
            owner_id=task.owner_id,
            title=task.title,
            description=task.description,
            category_id=task.category_id,
            priority_id=task.priority_id,
            status=TaskStatus.PENDING,
            completed=False,
            due_date=next_due,
            image=task.image,
            subtasks=[
                subtask.model_copy(update={"id": new_id(), "completed": False})
                for subtask in task.subtasks
            ],
            tags=list(task.tags),
            recurrence=task.recurrence.model_copy(deep=True),
            parent_task_id=task.id,
        )

    async def update_task(
        self, owner_id: str, task_id: str, patch: Union[TaskUpdate, Dict[str, Any]]
    ) -> Task:
        """
        Apply a patch to an owned task.

        When the patch moves the task from not completed to completed and the
        stored task recurs, the next occurrence is computed from the stored
        due date and pattern and a successor is persisted together with the
        patch. No successor is created when the series has ended.

        Raises:
            NotFoundError: Task does not exist
            ForbiddenError: Task belongs to another user
            ValidationError: Malformed patch or unknown references
            ConflictError: Task changed concurrently outside this process
        """
        self._load_owned(owner_id, task_id)
        request = _parse(TaskUpdate, patch)
        try:
            changes = request.to_patch()
        except ValueError as e:
            raise ValidationError(str(e)) from e

        self._check_references(
            owner_id,
            changes.get("category_id"),
            changes.get("priority_id"),
            changes.get("tags"),
        )

        transition = {"completed": False}

        def plan(current: Task) -> Tuple[Dict[str, Any], List[Task]]:
            normalized = normalize_completion(current, changes)
            became_completed = bool(normalized.get("completed")) and not current.completed
            transition["completed"] = became_completed
            successors: List[Task] = []
            if became_completed and current.recurrence is not None:
                successor = self._build_successor(current)
                if successor is not None:
                    successors.append(successor)
            return normalized, successors

        async with self._locks.hold(task_id):
            updated, spawned = self.store.apply_update(task_id, owner_id, plan)

        for successor in spawned:
            logger.info(
                f"Spawned successor {successor.id} of recurring task {task_id} "
                f"due {successor.due_date.isoformat()}"
            )

        if transition["completed"]:
            self._notify(
                owner_id,
                NotificationType.TASK_COMPLETED,
                "Task Completed",
                f'Task "{updated.title}" has been completed',
                updated.id,
            )

        await self._broadcast_task(EventKind.TASK_UPDATED, updated)
        for successor in spawned:
            await self._broadcast_task(EventKind.TASK_CREATED, successor)
        return updated

    async def delete_task(self, owner_id: str, task_id: str) -> None:
        """Delete an owned task and broadcast its id."""
        self._load_owned(owner_id, task_id)
        async with self._locks.hold(task_id):
            self.store.delete(task_id, owner_id)
        logger.info(f"Task {task_id} deleted by user {owner_id}")
        await self._broadcast(owner_id, EventKind.TASK_DELETED, {"id": task_id})

    # ---- subtask operations ----

    async def _mutate_subtasks(self, owner_id: str, task_id: str, mutate) -> Task:
        # Callers check ownership before parsing their input
        def plan(current: Task) -> Tuple[Dict[str, Any], List[Task]]:
            return {"subtasks": mutate(list(current.subtasks))}, []

        async with self._locks.hold(task_id):
            updated, _ = self.store.apply_update(task_id, owner_id, plan)

        await self._broadcast_task(EventKind.TASK_UPDATED, updated)
        return updated

    async def add_subtask(
        self, owner_id: str, task_id: str, title: Union[str, SubtaskCreate]
    ) -> Task:
        """Append a subtask whose order is the current subtask count."""
        self._load_owned(owner_id, task_id)
        request = _parse(SubtaskCreate, {"title": title} if isinstance(title, str) else title)

        def append(subtasks: List[Subtask]) -> List[Subtask]:
            return subtasks + [Subtask(title=request.title, order=len(subtasks))]

        return await self._mutate_subtasks(owner_id, task_id, append)

    async def update_subtask(
        self,
        owner_id: str,
        task_id: str,
        subtask_id: str,
        patch: Union[SubtaskUpdate, Dict[str, Any]],
    ) -> Task:
        """
        Shallow-merge ``patch`` onto one subtask.

        Raises:
            NotFoundError: Task or subtask does not exist
        """
        self._load_owned(owner_id, task_id)
        request = _parse(SubtaskUpdate, patch)
        changes = request.model_dump(exclude_unset=True)
        nulls = [key for key, value in changes.items() if value is None]
        if nulls:
            raise ValidationError(f"{', '.join(nulls)} cannot be null")

        def merge(subtasks: List[Subtask]) -> List[Subtask]:
            for index, subtask in enumerate(subtasks):
                if subtask.id == subtask_id:
                    subtasks[index] = subtask.model_copy(update=changes)
                    return subtasks
            raise NotFoundError(f"Subtask {subtask_id} not found")

        return await self._mutate_subtasks(owner_id, task_id, merge)

    async def delete_subtask(self, owner_id: str, task_id: str, subtask_id: str) -> Task:
        """Remove a subtask; removing an id that is not present is a no-op."""
        self._load_owned(owner_id, task_id)

        def remove(subtasks: List[Subtask]) -> List[Subtask]:
            return [subtask for subtask in subtasks if subtask.id != subtask_id]

        return await self._mutate_subtasks(owner_id, task_id, remove)
