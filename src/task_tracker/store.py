"""
Collaborator interfaces consumed by the lifecycle core.

The core never assumes a particular persistence backend: anything that
satisfies these protocols can back a TaskLifecycleManager. Every read and
write takes an explicit owner id so queries stay ownership scoped even when
a caller-side identity check is bypassed.
"""

from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .models import Category, Notification, Priority, Tag, Task

# Receives the freshly re-read task inside the critical section and returns
# the patch to apply plus any tasks to create alongside it.
UpdatePlanner = Callable[[Task], Tuple[Dict[str, Any], List[Task]]]


class TaskStore(Protocol):
    def find_by_id(self, task_id: str) -> Optional[Task]:
        ...

    def find_by_owner(
        self,
        owner_id: str,
        status: Optional[str] = None,
        category_id: Optional[str] = None,
    ) -> List[Task]:
        ...

    def find_by_parent(self, owner_id: str, parent_task_id: str) -> List[Task]:
        ...

    def create(self, task: Task) -> Task:
        ...

    def update(self, task_id: str, owner_id: str, patch: Dict[str, Any]) -> Task:
        ...

    def apply_update(
        self, task_id: str, owner_id: str, planner: UpdatePlanner
    ) -> Tuple[Task, List[Task]]:
        """Run ``planner`` and persist its patch and new tasks atomically."""
        ...

    def delete(self, task_id: str, owner_id: str) -> None:
        ...


class NotificationSink(Protocol):
    def create_notification(self, notification: Notification) -> Notification:
        ...


class ReferenceLookup(Protocol):
    def get_category(self, owner_id: str, category_id: str) -> Optional[Category]:
        ...

    def get_priority(self, owner_id: str, priority_id: str) -> Optional[Priority]:
        ...

    def get_tags(self, owner_id: str, tag_ids: Sequence[str]) -> List[Tag]:
        ...
