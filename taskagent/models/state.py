from __future__ import annotations

import datetime as _dt
import enum
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> _dt.datetime:
    return _dt.datetime.now(_dt.UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class WireModel(BaseModel):
    """camelCase on the wire and in snapshots; snake_case names are accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TaskPriority(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TaskStatus(enum.StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MessageType(enum.StrEnum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class ActionKind(enum.StrEnum):
    """Closed set of actions the agent can execute on behalf of a chat message."""

    CREATE_TASK = "create_task"
    UPDATE_TASK = "update_task"
    DELETE_TASK = "delete_task"
    SEARCH_TASKS = "search_tasks"
    SET_REMINDER = "set_reminder"


def _as_utc(v: _dt.datetime | None) -> _dt.datetime | None:
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=_dt.UTC)
    return v


def _lower_enum_input(v: Any) -> Any:
    return v.strip().lower() if isinstance(v, str) else v


class Task(WireModel):
    """A task owned by one agent.

    - ``id`` never changes once assigned
    - ``updated_at`` moves forward on every mutation
    - ``tags`` keep insertion order and may repeat
    """

    id: str = Field(default_factory=lambda: new_id("task"))
    title: str = "Untitled Task"
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    due_date: _dt.datetime | None = None
    created_at: _dt.datetime = Field(default_factory=utc_now)
    updated_at: _dt.datetime = Field(default_factory=utc_now)
    tags: list[str] = Field(default_factory=list)

    @field_validator("due_date", mode="after")
    @classmethod
    def assume_utc(cls, v: _dt.datetime | None) -> _dt.datetime | None:
        return _as_utc(v)


class TaskDraft(WireModel):
    """Fields a caller (or the extraction pass) may supply when creating a task."""

    title: str | None = None
    description: str | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    due_date: _dt.datetime | None = None
    tags: list[str] | None = None

    @field_validator("priority", "status", mode="before")
    @classmethod
    def normalize_enums(cls, v: Any) -> Any:
        return _lower_enum_input(v)

    @field_validator("due_date", mode="after")
    @classmethod
    def assume_utc(cls, v: _dt.datetime | None) -> _dt.datetime | None:
        return _as_utc(v)

    @field_validator("due_date", mode="before")
    @classmethod
    def blank_due_date(cls, v: Any) -> Any:
        if isinstance(v, str) and v.strip().lower() in {"", "null", "none"}:
            return None
        return v

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        return v


class TaskUpdate(WireModel):
    """Partial update; only fields explicitly set are merged (``due_date=None`` clears)."""

    title: str | None = None
    description: str | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    due_date: _dt.datetime | None = None
    tags: list[str] | None = None

    @field_validator("priority", "status", mode="before")
    @classmethod
    def normalize_enums(cls, v: Any) -> Any:
        return _lower_enum_input(v)

    @field_validator("due_date", mode="after")
    @classmethod
    def assume_utc(cls, v: _dt.datetime | None) -> _dt.datetime | None:
        return _as_utc(v)

    def changes(self) -> dict[str, Any]:
        data = self.model_dump(exclude_unset=True)
        # Only due_date may be explicitly cleared; other None values mean "leave as is"
        return {k: v for k, v in data.items() if v is not None or k == "due_date"}


class SearchCriteria(WireModel):
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    tags: list[str] = Field(default_factory=list)
    search: str | None = None

    @field_validator("status", "priority", mode="before")
    @classmethod
    def normalize_enums(cls, v: Any) -> Any:
        return _lower_enum_input(v)


class MessageMetadata(WireModel):
    task_id: str | None = None
    action: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class ChatMessage(WireModel):
    id: str = Field(default_factory=lambda: new_id("msg"))
    user_id: str
    content: str
    timestamp: _dt.datetime = Field(default_factory=utc_now)
    type: MessageType
    metadata: MessageMetadata | None = None


class UserPreferences(WireModel):
    timezone: str = "UTC"
    notification_channels: list[str] = Field(default_factory=lambda: ["email", "push"])


class User(WireModel):
    id: str = Field(default_factory=lambda: new_id("user"))
    name: str = "Anonymous User"
    preferences: UserPreferences = Field(default_factory=UserPreferences)


class UserRegistration(WireModel):
    """Fields accepted when registering a user; an existing id returns the stored user."""

    id: str | None = None
    name: str | None = None
    preferences: UserPreferences | None = None


class WorkingHours(WireModel):
    start: int = 9
    end: int = 17


class AgentPreferences(WireModel):
    reminder_intervals: list[float] = Field(default_factory=lambda: [1, 24, 168])
    working_hours: WorkingHours = Field(default_factory=WorkingHours)


class ReminderJob(WireModel):
    """A scheduled reminder recorded in the snapshot so it can be re-armed after restart."""

    task_id: str
    offset_label: str
    fire_at: _dt.datetime

    @property
    def key(self) -> str:
        return reminder_key(self.task_id, self.offset_label)


def reminder_key(task_id: str, offset_label: str) -> str:
    return f"{task_id}:{offset_label}"


class AgentState(WireModel):
    """Aggregate root; serialized and written as one snapshot on every change."""

    tasks: list[Task] = Field(default_factory=list)
    users: list[User] = Field(default_factory=list)
    chat_history: list[ChatMessage] = Field(default_factory=list)
    active_conversations: dict[str, _dt.datetime] = Field(default_factory=dict)
    preferences: AgentPreferences = Field(default_factory=AgentPreferences)
    reminder_jobs: list[ReminderJob] = Field(default_factory=list)
    fired_reminders: set[str] = Field(default_factory=set)


class Analytics(WireModel):
    total_tasks: int
    completed_tasks: int
    pending_tasks: int
    overdue_tasks: int
    productivity_score: int


class Inference(BaseModel):
    """Outcome of interpreting one chat message."""

    reply_text: str
    action: ActionKind | None = None
    task_id: str | None = None
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)


__all__ = [
    "ActionKind",
    "AgentPreferences",
    "AgentState",
    "Analytics",
    "ChatMessage",
    "Inference",
    "MessageMetadata",
    "MessageType",
    "ReminderJob",
    "SearchCriteria",
    "Task",
    "TaskDraft",
    "TaskPriority",
    "TaskStatus",
    "TaskUpdate",
    "User",
    "UserPreferences",
    "UserRegistration",
    "WireModel",
    "WorkingHours",
    "new_id",
    "reminder_key",
    "utc_now",
]
