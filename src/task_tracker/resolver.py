"""Reference resolution for task payloads sent to clients."""

import logging
from typing import Any, Dict

from .models import Task
from .store import ReferenceLookup

logger = logging.getLogger(__name__)


class TaskResolver:
    """
    Turn a task's foreign-key ids into embedded objects.

    Category, priority and tags are looked up with owner-scoped queries, so a
    task can never pull another user's reference data into its payload.
    References that no longer exist resolve to ``None`` (or are dropped from
    the tag list).
    """

    def __init__(self, references: ReferenceLookup):
        self.references = references

    def resolve(self, task: Task) -> Dict[str, Any]:
        payload = task.model_dump(mode="json")

        category = self.references.get_category(task.owner_id, task.category_id)
        priority = self.references.get_priority(task.owner_id, task.priority_id)
        tags = self.references.get_tags(task.owner_id, task.tags)

        if len(tags) != len(task.tags):
            logger.debug(f"Task {task.id} references {len(task.tags) - len(tags)} missing tag(s)")

        payload.pop("category_id")
        payload.pop("priority_id")
        payload["category"] = category.model_dump(mode="json") if category else None
        payload["priority"] = priority.model_dump(mode="json") if priority else None
        payload["tags"] = [tag.model_dump(mode="json") for tag in tags]
        return payload
