from __future__ import annotations

import enum
import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from taskagent.errors import InvalidFrame

from .state import SearchCriteria, TaskDraft, TaskUpdate, WireModel


class ChatMessageFrame(WireModel):
    type: Literal["chat_message"]
    user_id: str = "anonymous"
    content: str


class GetTasksFrame(WireModel):
    type: Literal["get_tasks"]
    user_id: str | None = None
    criteria: SearchCriteria = Field(default_factory=SearchCriteria)


class CreateTaskFrame(WireModel):
    type: Literal["create_task"]
    user_id: str | None = None
    task_data: TaskDraft = Field(default_factory=TaskDraft)


class UpdateTaskFrame(WireModel):
    type: Literal["update_task"]
    task_id: str
    updates: TaskUpdate = Field(default_factory=TaskUpdate)


class DeleteTaskFrame(WireModel):
    type: Literal["delete_task"]
    task_id: str


InboundFrame = Annotated[
    ChatMessageFrame | GetTasksFrame | CreateTaskFrame | UpdateTaskFrame | DeleteTaskFrame,
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[Any] = TypeAdapter(InboundFrame)


def parse_frame(raw: str | bytes) -> Any:
    """Decode one client frame, raising InvalidFrame for bad JSON, unknown types or bad fields."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidFrame("frame is not valid JSON") from exc
    if not isinstance(data, dict):
        raise InvalidFrame("frame must be a JSON object")
    try:
        return _inbound_adapter.validate_python(data)
    except ValidationError as exc:
        kind = data.get("type")
        raise InvalidFrame(f"invalid {kind or 'untyped'} frame: {exc.error_count()} error(s)") from exc


class OutboundType(enum.StrEnum):
    CONNECTION_ESTABLISHED = "connection_established"
    MESSAGE_RESPONSE = "message_response"
    TASKS_LIST = "tasks_list"
    TASK_CREATED = "task_created"
    TASK_UPDATED = "task_updated"
    TASK_DELETED = "task_deleted"
    NEW_MESSAGE = "new_message"
    REMINDER = "reminder"
    ERROR = "error"


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list | tuple):
        return [_jsonable(v) for v in value]
    return value


def outbound(kind: OutboundType, **payload: Any) -> dict[str, Any]:
    """Build an outbound frame ``{"type": kind, ...payload}``.

    Payload keys are camelCased (``task_count`` becomes ``taskCount``) and models are
    rendered as JSON by alias.
    """
    frame: dict[str, Any] = {"type": kind.value}
    for key, value in payload.items():
        frame[to_camel(key)] = _jsonable(value)
    return frame


__all__ = [
    "ChatMessageFrame",
    "CreateTaskFrame",
    "DeleteTaskFrame",
    "GetTasksFrame",
    "InboundFrame",
    "OutboundType",
    "UpdateTaskFrame",
    "outbound",
    "parse_frame",
]
