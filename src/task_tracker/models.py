"""
Pydantic models for the Task Tracker domain and API request/response validation.

Provides the task data model (tasks, subtasks, attachments, recurrence
patterns), the owned reference entities (categories, priorities, tags),
notifications, and the request models used to create and patch them.
"""

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def new_id() -> str:
    """Generate an opaque entity id."""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def coerce_datetime(value: Any) -> Any:
    """
    Coerce common date representations into a timezone-aware datetime.

    Naive datetimes are taken to be UTC. Plain dates and ``YYYY-MM-DD``
    strings become midnight UTC. Anything unrecognised is returned as-is so
    pydantic can report it.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return value
        return coerce_datetime(parsed)
    return value


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class RecurrenceFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class NotificationType(str, Enum):
    TASK_DUE = "task-due"
    TASK_COMPLETED = "task-completed"
    TASK_ASSIGNED = "task-assigned"
    SYSTEM = "system"


class PriorityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RecurrencePattern(BaseModel):
    """Rule describing how the next due date of a repeating task is generated."""

    frequency: RecurrenceFrequency
    interval: int = Field(1, ge=1, description="Number of frequency units between occurrences")
    days_of_week: Optional[List[int]] = Field(
        None, description="Weekdays 0-6 (Sunday=0), weekly frequency only"
    )
    day_of_month: Optional[int] = Field(
        None, ge=1, le=31, description="Forced day of month, monthly frequency only"
    )
    end_date: Optional[datetime] = Field(
        None, description="Last instant an occurrence may fall on"
    )

    @field_validator("days_of_week")
    @classmethod
    def validate_days_of_week(cls, v):
        """Validate weekday numbers and normalise to a sorted, de-duplicated list."""
        if v is None:
            return v
        for day in v:
            if not 0 <= day <= 6:
                raise ValueError(f"Weekday {day} is out of range 0-6")
        return sorted(set(v))

    @field_validator("end_date", mode="before")
    @classmethod
    def _coerce_end_date(cls, v):
        return coerce_datetime(v)


class Subtask(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    completed: bool = False
    order: int = 0
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("created_at", mode="before")
    @classmethod
    def _coerce_created_at(cls, v):
        return coerce_datetime(v)


class Attachment(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    url: str
    size: int = Field(0, ge=0)
    type: str = "application/octet-stream"
    uploaded_at: datetime = Field(default_factory=utc_now)

    @field_validator("uploaded_at", mode="before")
    @classmethod
    def _coerce_uploaded_at(cls, v):
        return coerce_datetime(v)


class Task(BaseModel):
    """
    A persisted task.

    ``completed`` mirrors ``status``: a task is completed if and only if its
    status is ``completed``. ``parent_task_id`` points back to the recurring
    task that spawned this one and carries no ownership meaning.
    """

    id: str = Field(default_factory=new_id)
    owner_id: str
    title: str
    description: str = ""
    category_id: str
    priority_id: str
    status: TaskStatus = TaskStatus.PENDING
    due_date: datetime
    completed: bool = False
    image: Optional[str] = None
    subtasks: List[Subtask] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    recurrence: Optional[RecurrencePattern] = None
    parent_task_id: Optional[str] = None
    version: int = 1
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("due_date", "created_at", "updated_at", mode="before")
    @classmethod
    def _coerce_dates(cls, v):
        return coerce_datetime(v)

    @field_validator("tags")
    @classmethod
    def _unique_tags(cls, v):
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def _check_completion_consistency(self):
        if self.completed != (self.status == TaskStatus.COMPLETED):
            raise ValueError(
                f"completed={self.completed} is inconsistent with status={self.status.value}"
            )
        return self


class Category(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    name: str
    color: str = "#FF6B6B"
    icon: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Priority(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    name: str
    level: PriorityLevel
    color: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Tag(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    name: str
    color: str = "#6B7280"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Notification(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    type: NotificationType
    title: str
    message: str
    read: bool = False
    task_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("created_at", mode="before")
    @classmethod
    def _coerce_created_at(cls, v):
        return coerce_datetime(v)


def _strip_required(value: Optional[str], field_name: str) -> Optional[str]:
    if value is None:
        return value
    value = value.strip()
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    return value


class SubtaskCreate(BaseModel):
    """Request model for appending a subtask."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(max_length=500)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        return _strip_required(v, "Subtask title")


class SubtaskUpdate(BaseModel):
    """Request model for a shallow subtask patch."""

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(None, max_length=500)
    completed: Optional[bool] = None
    order: Optional[int] = Field(None, ge=0)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        return _strip_required(v, "Subtask title")


class TaskCreate(BaseModel):
    """Request model for creating a task with validation of required fields."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(max_length=500)
    description: str = ""
    category_id: str = Field(min_length=1)
    priority_id: str = Field(min_length=1)
    due_date: datetime
    status: Optional[TaskStatus] = None
    completed: Optional[bool] = None
    image: Optional[str] = None
    subtasks: List[SubtaskCreate] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    recurrence: Optional[RecurrencePattern] = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        return _strip_required(v, "Task title")

    @field_validator("due_date", mode="before")
    @classmethod
    def _coerce_due_date(cls, v):
        return coerce_datetime(v)

    @model_validator(mode="after")
    def _align_completion(self):
        if self.status is None:
            self.status = TaskStatus.COMPLETED if self.completed else TaskStatus.PENDING
        is_completed_status = self.status == TaskStatus.COMPLETED
        if self.completed is None:
            self.completed = is_completed_status
        elif self.completed != is_completed_status:
            raise ValueError("completed must be true exactly when status is 'completed'")
        return self


class TaskUpdate(BaseModel):
    """
    Request model for a task patch.

    Only fields explicitly present in the request are applied; ``recurrence``
    may be sent as null to stop a series.
    """

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(None, max_length=500)
    description: Optional[str] = None
    category_id: Optional[str] = Field(None, min_length=1)
    priority_id: Optional[str] = Field(None, min_length=1)
    due_date: Optional[datetime] = None
    status: Optional[TaskStatus] = None
    completed: Optional[bool] = None
    image: Optional[str] = None
    tags: Optional[List[str]] = None
    attachments: Optional[List[Attachment]] = None
    recurrence: Optional[RecurrencePattern] = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        return _strip_required(v, "Task title")

    @field_validator("due_date", mode="before")
    @classmethod
    def _coerce_due_date(cls, v):
        return coerce_datetime(v)

    @model_validator(mode="after")
    def _reject_contradiction(self):
        if self.completed is not None and self.status is not None:
            if self.completed != (self.status == TaskStatus.COMPLETED):
                raise ValueError("completed must be true exactly when status is 'completed'")
        return self

    def to_patch(self) -> Dict[str, Any]:
        """Return only the fields the caller actually sent."""
        patch = self.model_dump(exclude_unset=True)
        for required in ("title", "category_id", "priority_id", "due_date", "status", "completed"):
            if required in patch and patch[required] is None:
                raise ValueError(f"{required} cannot be null")
        return patch


class CategoryCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(max_length=100)
    color: str = "#FF6B6B"
    icon: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _strip_required(v, "Category name")


class CategoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, max_length=100)
    color: Optional[str] = None
    icon: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _strip_required(v, "Category name")


class PriorityCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(max_length=100)
    level: PriorityLevel
    color: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _strip_required(v, "Priority name")


class PriorityUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, max_length=100)
    level: Optional[PriorityLevel] = None
    color: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _strip_required(v, "Priority name")


class TagCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(max_length=100)
    color: str = "#6B7280"

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _strip_required(v, "Tag name")


class TagUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, max_length=100)
    color: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _strip_required(v, "Tag name")


class ErrorResponse(BaseModel):
    """Standard error response model."""

    success: bool = False
    error: Dict[str, Any]


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    database_connected: bool
    active_websocket_connections: int
    timestamp: str


# Utility function to create consistent error responses
def create_error_response(
    kind: str, message: str, details: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Create a standardized error response dictionary."""
    error: Dict[str, Any] = {"kind": kind, "message": message}
    if details:
        error["details"] = details
    return {"success": False, "error": error}


# Utility function to create consistent success responses
def create_success_response(data: Any, count: Optional[int] = None) -> Dict[str, Any]:
    """Create a standardized success response dictionary."""
    response: Dict[str, Any] = {"success": True, "data": data}
    if count is not None:
        response["count"] = count
    return response
