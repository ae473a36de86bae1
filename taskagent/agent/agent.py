from __future__ import annotations

import asyncio
import datetime as _dt
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from taskagent.errors import InvalidFrame, PersistenceError
from taskagent.hub.broadcast import BroadcastHub, Connection
from taskagent.intent.classifier import derive_criteria, derive_updates
from taskagent.intent.extractor import FALLBACK_CONFIDENCE, IntentExtractor, canned_reply
from taskagent.models.frames import (
    ChatMessageFrame,
    CreateTaskFrame,
    DeleteTaskFrame,
    GetTasksFrame,
    OutboundType,
    UpdateTaskFrame,
    outbound,
    parse_frame,
)
from taskagent.models.state import (
    ActionKind,
    AgentState,
    Analytics,
    ChatMessage,
    Inference,
    MessageMetadata,
    MessageType,
    SearchCriteria,
    Task,
    TaskDraft,
    TaskStatus,
    TaskUpdate,
    User,
    UserRegistration,
    utc_now,
)
from taskagent.observability import Tracer, get_json_logger, get_metrics, use_session_context
from taskagent.reminders.scheduler import AsyncioTimer, ReminderScheduler, Timer
from taskagent.store.snapshot import AgentPersistence
from taskagent.tasks.analytics import compute_analytics
from taskagent.tasks.store import TaskStore

RECENT_MESSAGES_ON_CONNECT = 20
EXTRACTION_WINDOW = 5


@dataclass(slots=True)
class ChatTurnResult:
    """Agent reply for one chat message plus what its action produced."""

    message: ChatMessage
    tasks: list[Task] | None = None
    events: list[dict[str, Any]] = field(default_factory=list)


class TaskAgent:
    """Stateful actor owning one session's AgentState.

    - Every inbound event (chat turn, structured request, reminder firing, connect)
      runs to completion under the agent's lock.
    - Each mutation is followed by a snapshot write, then by broadcasts.
    - Reminder jobs live in the snapshot and are re-armed by ``start()``.
    """

    # Dispatch table for chat actions; checked for exhaustiveness at import time
    _action_handlers: dict[ActionKind, str] = {
        ActionKind.CREATE_TASK: "_act_create",
        ActionKind.UPDATE_TASK: "_act_update",
        ActionKind.DELETE_TASK: "_act_delete",
        ActionKind.SEARCH_TASKS: "_act_search",
        ActionKind.SET_REMINDER: "_act_set_reminder",
    }

    def __init__(
        self,
        session_id: str,
        *,
        persistence: AgentPersistence,
        extractor: IntentExtractor,
        hub: BroadcastHub | None = None,
        timer: Timer | None = None,
        reminder_intervals: Sequence[float] | None = None,
        clock: Callable[[], _dt.datetime] = utc_now,
    ) -> None:
        self._session_id = session_id
        self._persistence = persistence
        self._extractor = extractor
        self._hub = hub or BroadcastHub(session_id)
        self._timer = timer or AsyncioTimer()
        self._intervals = list(reminder_intervals) if reminder_intervals else None
        self._clock = clock
        self._lock = asyncio.Lock()
        self._logger = get_json_logger("taskagent.agent")
        self._tracer = Tracer(self._logger)
        self._started = False
        self._state = AgentState()
        self._bind_state()

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def hub(self) -> BroadcastHub:
        return self._hub

    @property
    def scheduler(self) -> ReminderScheduler:
        return self._scheduler

    def _bind_state(self) -> None:
        self._tasks = TaskStore(self._state.tasks, clock=self._clock)
        self._scheduler = ReminderScheduler(
            self._timer,
            self.send_reminder,
            self._state.reminder_jobs,
            self._state.fired_reminders,
            clock=self._clock,
        )

    async def start(self) -> None:
        """Load the persisted snapshot (if any) and re-arm pending reminder jobs."""
        if self._started:
            return
        async with self._lock:
            loaded = await self._persistence.load()
            if loaded is not None:
                self._state = loaded
            if self._intervals is not None:
                self._state.preferences.reminder_intervals = list(self._intervals)
            self._bind_state()
            armed = self._scheduler.rearm()
            self._started = True
            self._logger.info(
                "agent started",
                extra={
                    "event": "agent_started",
                    "session_id": self._session_id,
                    "attributes": {
                        "restored": loaded is not None,
                        "tasks": self._tasks.count(),
                        "reminders_armed": armed,
                    },
                },
            )

    # ----------------------------
    # Chat turns
    # ----------------------------

    async def process_message(self, user_id: str, text: str) -> ChatMessage:
        result = await self.chat_turn(user_id, text)
        return result.message

    async def chat_turn(self, user_id: str, text: str) -> ChatTurnResult:
        async with self._lock:
            with use_session_context(self._session_id, user_id):
                with self._tracer.span("chat_turn", {"session_id": self._session_id}):
                    result = await self._process(user_id, text)
                await self._persist()
                for event in result.events:
                    await self._hub.broadcast(event)
                await self._hub.broadcast(
                    outbound(OutboundType.NEW_MESSAGE, message=result.message)
                )
        return result

    async def _process(self, user_id: str, text: str) -> ChatTurnResult:
        now = self._clock()
        self._state.chat_history.append(
            ChatMessage(user_id=user_id, content=text, timestamp=now, type=MessageType.USER)
        )
        self._state.active_conversations[user_id] = now
        get_metrics().increment("chat_turns", {"session_id": self._session_id})

        context = self._tasks.recent()
        try:
            inference = await self._extractor.infer(text, context, user_id=user_id)
        except Exception:  # noqa: BLE001 - the turn always produces a reply
            self._logger.exception(
                "intent extraction failed",
                extra={"event": "intent_failed", "session_id": self._session_id},
            )
            inference = Inference(reply_text=canned_reply(text), confidence=FALLBACK_CONFIDENCE)

        reply = ChatMessage(
            user_id=user_id,
            content=inference.reply_text,
            timestamp=self._clock(),
            type=MessageType.AGENT,
            metadata=MessageMetadata(
                task_id=inference.task_id,
                action=inference.action.value if inference.action is not None else None,
                confidence=inference.confidence,
            ),
        )
        self._state.chat_history.append(reply)
        result = ChatTurnResult(message=reply)

        if inference.action is not None:
            handler = getattr(self, self._action_handlers[inference.action])
            try:
                await handler(user_id, text, inference, result)
            except Exception:  # noqa: BLE001 - a failed action must not lose the turn
                self._logger.exception(
                    "action failed",
                    extra={
                        "event": "action_failed",
                        "session_id": self._session_id,
                        "action": inference.action.value,
                        "task_id": inference.task_id,
                    },
                )
                get_metrics().increment("action_errors", {"action": inference.action.value})
        return result

    async def _act_create(
        self, user_id: str, text: str, inference: Inference, result: ChatTurnResult
    ) -> None:
        history = [m for m in self._state.chat_history if m.user_id == user_id]
        draft = await self._extractor.extract_task(history[-EXTRACTION_WINDOW:])
        if draft is None:
            self._logger.info(
                "no task extracted",
                extra={
                    "event": "task_not_created",
                    "session_id": self._session_id,
                    "user_id": user_id,
                },
            )
            return
        task = self._create(draft)
        result.events.append(outbound(OutboundType.TASK_CREATED, task=task))

    async def _act_update(
        self, user_id: str, text: str, inference: Inference, result: ChatTurnResult
    ) -> None:
        if inference.task_id is None:
            self._log_not_found(ActionKind.UPDATE_TASK, None)
            return
        task = self._update(inference.task_id, derive_updates(text))
        if task is None:
            self._log_not_found(ActionKind.UPDATE_TASK, inference.task_id)
            return
        result.events.append(outbound(OutboundType.TASK_UPDATED, task=task))

    async def _act_delete(
        self, user_id: str, text: str, inference: Inference, result: ChatTurnResult
    ) -> None:
        if inference.task_id is None or not self._delete(inference.task_id):
            self._log_not_found(ActionKind.DELETE_TASK, inference.task_id)
            return
        result.events.append(
            outbound(OutboundType.TASK_DELETED, success=True, task_id=inference.task_id)
        )

    async def _act_search(
        self, user_id: str, text: str, inference: Inference, result: ChatTurnResult
    ) -> None:
        result.tasks = self._tasks.search(derive_criteria(text))

    async def _act_set_reminder(
        self, user_id: str, text: str, inference: Inference, result: ChatTurnResult
    ) -> None:
        task = self._tasks.get(inference.task_id) if inference.task_id else None
        if task is None:
            self._log_not_found(ActionKind.SET_REMINDER, inference.task_id)
            return
        self._scheduler.schedule_reminders(task, self._state.preferences.reminder_intervals)

    def _log_not_found(self, action: ActionKind, task_id: str | None) -> None:
        self._logger.info(
            "action target not found",
            extra={
                "event": "action_not_found",
                "session_id": self._session_id,
                "action": action.value,
                "task_id": task_id,
            },
        )

    # ----------------------------
    # Structured operations
    # ----------------------------

    async def create_task(self, draft: TaskDraft | None = None) -> Task:
        async with self._lock:
            task = self._create(draft or TaskDraft())
            await self._persist()
            await self._hub.broadcast(outbound(OutboundType.TASK_CREATED, task=task))
            return task

    async def update_task(self, task_id: str, updates: TaskUpdate) -> Task | None:
        async with self._lock:
            task = self._update(task_id, updates)
            if task is None:
                return None
            await self._persist()
            await self._hub.broadcast(outbound(OutboundType.TASK_UPDATED, task=task))
            return task

    async def delete_task(self, task_id: str) -> bool:
        async with self._lock:
            if not self._delete(task_id):
                return False
            await self._persist()
            await self._hub.broadcast(
                outbound(OutboundType.TASK_DELETED, success=True, task_id=task_id)
            )
            return True

    def search_tasks(self, criteria: SearchCriteria | None = None) -> list[Task]:
        return self._tasks.search(criteria)

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    async def register_user(self, registration: UserRegistration | None = None) -> User:
        reg = registration or UserRegistration()
        async with self._lock:
            if reg.id is not None:
                existing = next((u for u in self._state.users if u.id == reg.id), None)
                if existing is not None:
                    return existing
            user = User.model_validate(reg.model_dump(exclude_none=True))
            self._state.users.append(user)
            await self._persist()
            self._logger.info(
                "user registered",
                extra={
                    "event": "user_registered",
                    "session_id": self._session_id,
                    "user_id": user.id,
                },
            )
            return user

    def analytics(self) -> Analytics:
        return compute_analytics(self._tasks.all(), self._clock())

    def _create(self, draft: TaskDraft) -> Task:
        task = self._tasks.create(draft)
        if task.due_date is not None:
            self._scheduler.schedule_reminders(task, self._state.preferences.reminder_intervals)
        self._logger.info(
            "task created",
            extra={"event": "task_created", "session_id": self._session_id, "task_id": task.id},
        )
        return task

    def _update(self, task_id: str, updates: TaskUpdate) -> Task | None:
        previous = self._tasks.get(task_id)
        old_due = previous.due_date if previous is not None else None
        task = self._tasks.update(task_id, updates)
        if task is None:
            return None
        if "due_date" in updates.changes() and task.due_date != old_due:
            if task.due_date is None:
                self._scheduler.cancel_task(task.id)
            else:
                self._scheduler.schedule_reminders(task, self._state.preferences.reminder_intervals)
        return task

    def _delete(self, task_id: str) -> bool:
        if not self._tasks.delete(task_id):
            return False
        self._scheduler.forget_task(task_id)
        return True

    # ----------------------------
    # Reminders
    # ----------------------------

    async def send_reminder(
        self, task_id: str, offset_label: str, fire_at: _dt.datetime | None = None
    ) -> None:
        """Deliver one reminder; a no-op for missing or completed tasks and for repeats."""
        async with self._lock:
            if not self._scheduler.claim(task_id, offset_label, fire_at):
                self._logger.debug(
                    "reminder already handled",
                    extra={"event": "reminder_skipped", "task_id": task_id},
                )
                return
            task = self._tasks.get(task_id)
            if task is None or task.status == TaskStatus.COMPLETED:
                # The claim is still recorded so the job does not re-arm after restart
                await self._persist()
                return
            due = task.due_date.strftime("%Y-%m-%d %H:%M UTC") if task.due_date else "soon"
            message = ChatMessage(
                user_id="system",
                content=f'Reminder: "{task.title}" is due {due}',
                timestamp=self._clock(),
                type=MessageType.SYSTEM,
                metadata=MessageMetadata(task_id=task.id, action="reminder"),
            )
            self._state.chat_history.append(message)
            await self._persist()
            get_metrics().increment("reminders_sent", {"label": offset_label})
            self._logger.info(
                "reminder sent",
                extra={
                    "event": "reminder_sent",
                    "session_id": self._session_id,
                    "task_id": task.id,
                    "attributes": {"label": offset_label},
                },
            )
            await self._hub.broadcast(outbound(OutboundType.REMINDER, message=message, task=task))

    # ----------------------------
    # Connections
    # ----------------------------

    async def connect(self, connection: Connection) -> None:
        async with self._lock:
            await self._hub.send_to(
                connection,
                outbound(
                    OutboundType.CONNECTION_ESTABLISHED,
                    recent_messages=self._state.chat_history[-RECENT_MESSAGES_ON_CONNECT:],
                    task_count=self._tasks.count(),
                ),
            )
            self._hub.register(connection)

    def disconnect(self, connection: Connection) -> None:
        self._hub.unregister(connection)

    async def handle_frame(self, connection: Connection, raw: str | bytes) -> None:
        """Run one client frame; replies go to ``connection`` only."""
        request_id = str(uuid.uuid4())
        try:
            frame = parse_frame(raw)
            reply = await self._run_frame(frame)
        except InvalidFrame as exc:
            self._logger.warning(
                "invalid frame",
                extra={
                    "event": "frame_invalid",
                    "session_id": self._session_id,
                    "connection_id": connection.connection_id,
                    "attributes": {"error": str(exc), "request_id": request_id},
                },
            )
            reply = outbound(OutboundType.ERROR, message=str(exc))
        except Exception:  # noqa: BLE001 - one bad frame must not drop the connection
            self._logger.exception(
                "frame failed",
                extra={
                    "event": "frame_failed",
                    "session_id": self._session_id,
                    "connection_id": connection.connection_id,
                    "attributes": {"request_id": request_id},
                },
            )
            reply = outbound(OutboundType.ERROR, message="Failed to process message")
        await self._hub.send_to(connection, reply)

    async def _run_frame(self, frame: Any) -> dict[str, Any]:
        if isinstance(frame, ChatMessageFrame):
            result = await self.chat_turn(frame.user_id, frame.content)
            if result.tasks is not None:
                return outbound(
                    OutboundType.MESSAGE_RESPONSE, message=result.message, tasks=result.tasks
                )
            return outbound(OutboundType.MESSAGE_RESPONSE, message=result.message)
        if isinstance(frame, GetTasksFrame):
            return outbound(OutboundType.TASKS_LIST, tasks=self.search_tasks(frame.criteria))
        if isinstance(frame, CreateTaskFrame):
            return outbound(OutboundType.TASK_CREATED, task=await self.create_task(frame.task_data))
        if isinstance(frame, UpdateTaskFrame):
            task = await self.update_task(frame.task_id, frame.updates)
            return outbound(OutboundType.TASK_UPDATED, task=task)
        if isinstance(frame, DeleteTaskFrame):
            deleted = await self.delete_task(frame.task_id)
            return outbound(OutboundType.TASK_DELETED, success=deleted, task_id=frame.task_id)
        raise InvalidFrame(f"unsupported frame {type(frame).__name__}")

    # ----------------------------
    # Persistence
    # ----------------------------

    async def _persist(self) -> None:
        try:
            await self._persistence.save(self._state)
        except PersistenceError:
            self._logger.exception(
                "snapshot write failed",
                extra={
                    "event": "persist_error",
                    "session_id": self._session_id,
                    "attributes": {"key": self._persistence.key},
                },
            )
            get_metrics().increment("persist_errors", {"session_id": self._session_id})


_missing_handlers = set(ActionKind) - set(TaskAgent._action_handlers)
if _missing_handlers:
    raise RuntimeError(f"no chat handler for actions: {sorted(_missing_handlers)}")


__all__ = ["ChatTurnResult", "TaskAgent"]
