from __future__ import annotations

import datetime as _dt
from typing import Any

import pytest

from taskagent.agent.agent import TaskAgent
from taskagent.errors import PersistenceError
from taskagent.intent.extractor import IntentExtractor, canned_reply
from taskagent.models.state import (
    MessageType,
    TaskDraft,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
    UserRegistration,
    utc_now,
)
from taskagent.observability import get_metrics
from taskagent.store.memory import InMemoryStateStore
from taskagent.store.snapshot import AgentPersistence, state_key
from tests.helpers.fakes import (
    FakeConnection,
    FlakyStore,
    RecordingTimer,
    ScriptedInference,
    extraction_json,
)

KEY = state_key("test", "main")


async def _agent(
    *replies: Any,
    store: InMemoryStateStore | None = None,
    timer: RecordingTimer | None = None,
) -> tuple[TaskAgent, InMemoryStateStore, RecordingTimer]:
    st = store if store is not None else InMemoryStateStore()
    tm = timer if timer is not None else RecordingTimer()
    agent = TaskAgent(
        "main",
        persistence=AgentPersistence(st, KEY),
        extractor=IntentExtractor(ScriptedInference(*replies)),
        timer=tm,
    )
    await agent.start()
    return agent, st, tm


@pytest.mark.asyncio
async def test_chat_create_task_end_to_end() -> None:
    agent, store, _ = await _agent(
        "Got it, I'll add that.",
        extraction_json(title="Review the proposal", priority="high", tags=["work"]),
    )
    conn = FakeConnection()
    agent.hub.register(conn)

    reply = await agent.process_message("u1", "create a task to review the proposal")

    assert reply.content == "Got it, I'll add that."
    assert reply.type == MessageType.AGENT
    assert reply.metadata is not None and reply.metadata.action == "create_task"
    tasks = agent.search_tasks()
    assert len(tasks) == 1
    assert tasks[0].title == "Review the proposal"
    assert tasks[0].priority == TaskPriority.HIGH
    assert reply.metadata.task_id is None
    assert agent.state.chat_history[-1] is reply
    assert [m.type for m in agent.state.chat_history] == [MessageType.USER, MessageType.AGENT]
    assert conn.types() == ["task_created", "new_message"]
    assert conn.sent[0]["task"]["id"] == tasks[0].id
    assert conn.sent[1]["message"]["metadata"]["taskId"] is None
    assert store.writes == 1


@pytest.mark.asyncio
async def test_chat_create_with_unparsable_extraction_creates_nothing() -> None:
    agent, store, _ = await _agent("Sure.", "not json")
    conn = FakeConnection()
    agent.hub.register(conn)

    reply = await agent.process_message("u1", "create a task to review the proposal")

    assert reply.content == "Sure."
    assert reply.metadata is not None and reply.metadata.action == "create_task"
    assert reply.metadata.task_id is None
    assert agent.search_tasks() == []
    assert conn.types() == ["new_message"]
    assert len(agent.state.chat_history) == 2
    assert store.writes == 1


@pytest.mark.asyncio
async def test_chat_update_unknown_target_is_not_found() -> None:
    agent, _, _ = await _agent("Updating.")
    existing = await agent.create_task(TaskDraft(title="Alpha"))
    before = existing.model_dump()

    await agent.process_message("u1", "update task_" + "f" * 32 + " to done")

    assert len(agent.state.chat_history) == 2
    assert agent.get_task(existing.id).model_dump() == before  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_chat_update_by_title_applies_derived_changes() -> None:
    agent, _, _ = await _agent("Done!")
    task = await agent.create_task(TaskDraft(title="Pay rent"))

    reply = await agent.process_message("u1", "update pay rent, it is done")

    assert agent.get_task(task.id).status == TaskStatus.COMPLETED  # type: ignore[union-attr]
    assert reply.metadata is not None and reply.metadata.task_id == task.id


@pytest.mark.asyncio
async def test_chat_delete_by_title() -> None:
    agent, _, timer = await _agent("Removed.")
    task = await agent.create_task(
        TaskDraft(title="Dentist", due_date=utc_now() + _dt.timedelta(hours=30))
    )
    conn = FakeConnection()
    agent.hub.register(conn)

    await agent.process_message("u1", "remove the dentist task")

    assert agent.get_task(task.id) is None
    assert agent.scheduler.pending() == []
    assert timer.live() == []
    assert conn.types() == ["task_deleted", "new_message"]


@pytest.mark.asyncio
async def test_inference_failure_still_replies_and_persists() -> None:
    agent, store, _ = await _agent(RuntimeError("backend down"))

    reply = await agent.process_message("u1", "create a task to call mom")

    assert reply.content == canned_reply("create a task to call mom")
    assert reply.metadata is not None and reply.metadata.action is None
    assert agent.search_tasks() == []
    assert store.writes == 1


@pytest.mark.asyncio
async def test_persistence_failure_does_not_abort_turn() -> None:
    store = FlakyStore()
    agent, _, _ = await _agent("Hi there.", store=store)
    conn = FakeConnection()
    agent.hub.register(conn)
    store.failing = True

    reply = await agent.process_message("u1", "hello")

    assert reply.content == "Hi there."
    assert conn.types() == ["new_message"]
    assert get_metrics().value("persist_errors", {"session_id": "main"}) == 1


@pytest.mark.asyncio
async def test_start_propagates_load_failure() -> None:
    class _Unreadable(InMemoryStateStore):
        def get(self, key: str) -> str | None:
            raise PersistenceError("read failed")

    agent = TaskAgent(
        "main",
        persistence=AgentPersistence(_Unreadable(), KEY),
        extractor=IntentExtractor(ScriptedInference("x")),
        timer=RecordingTimer(),
    )
    with pytest.raises(PersistenceError):
        await agent.start()


@pytest.mark.asyncio
async def test_reminder_is_sent_once() -> None:
    agent, _, timer = await _agent()
    task = await agent.create_task(
        TaskDraft(title="File taxes", due_date=utc_now() + _dt.timedelta(hours=2))
    )
    conn = FakeConnection()
    agent.hub.register(conn)
    [entry] = timer.live()

    await timer.fire(entry)
    await timer.fire(entry)

    reminders = [m for m in agent.state.chat_history if m.type == MessageType.SYSTEM]
    assert len(reminders) == 1
    assert reminders[0].content.startswith('Reminder: "File taxes" is due ')
    assert reminders[0].content.endswith(" UTC")
    assert reminders[0].metadata is not None and reminders[0].metadata.action == "reminder"
    assert conn.types() == ["reminder"]
    assert conn.sent[0]["task"]["id"] == task.id


@pytest.mark.asyncio
async def test_reminder_noop_for_completed_or_deleted_task() -> None:
    agent, _, timer = await _agent()
    due = utc_now() + _dt.timedelta(hours=48)
    done = await agent.create_task(TaskDraft(title="done", due_date=due))
    gone = await agent.create_task(TaskDraft(title="gone", due_date=due))
    await agent.update_task(done.id, TaskUpdate(status=TaskStatus.COMPLETED))
    conn = FakeConnection()
    agent.hub.register(conn)

    await agent.send_reminder(done.id, "1h_before")
    await agent.delete_task(gone.id)
    await agent.send_reminder(gone.id, "1h_before")

    assert [m for m in agent.state.chat_history if m.type == MessageType.SYSTEM] == []
    assert "reminder" not in conn.types()


@pytest.mark.asyncio
async def test_due_date_change_reschedules_and_stale_timer_is_noop() -> None:
    agent, _, timer = await _agent()
    task = await agent.create_task(
        TaskDraft(title="Launch", due_date=utc_now() + _dt.timedelta(hours=30))
    )
    stale = list(timer.live())
    assert len(stale) == 2

    await agent.update_task(task.id, TaskUpdate(due_date=utc_now() + _dt.timedelta(hours=5)))

    assert all(t.cancelled for t in stale)
    assert [j.offset_label for j in agent.scheduler.pending()] == ["1h_before"]
    for entry in stale:
        await timer.fire(entry)
    assert [m for m in agent.state.chat_history if m.type == MessageType.SYSTEM] == []

    await timer.fire(timer.live()[0])
    assert len([m for m in agent.state.chat_history if m.type == MessageType.SYSTEM]) == 1


@pytest.mark.asyncio
async def test_restart_rearms_pending_jobs_without_double_send() -> None:
    store = InMemoryStateStore()
    agent, _, first_timer = await _agent(store=store)
    task = await agent.create_task(
        TaskDraft(title="Renew passport", due_date=utc_now() + _dt.timedelta(hours=30))
    )
    fired_entry = next(t for t in first_timer.live() if t.delay < 20 * 3600)
    await first_timer.fire(fired_entry)

    restarted, _, second_timer = await _agent(store=store, timer=RecordingTimer())

    pending = restarted.scheduler.pending()
    assert [j.offset_label for j in pending] == ["1h_before"]
    assert len(second_timer.live()) == 1
    await restarted.send_reminder(task.id, "24h_before")
    reminders = [m for m in restarted.state.chat_history if m.type == MessageType.SYSTEM]
    assert len(reminders) == 1


@pytest.mark.asyncio
async def test_structured_ops_broadcast_and_persist() -> None:
    agent, store, _ = await _agent()
    conn = FakeConnection()
    agent.hub.register(conn)

    task = await agent.create_task(TaskDraft(title="x"))
    assert await agent.update_task("task_missing", TaskUpdate(title="y")) is None
    await agent.update_task(task.id, TaskUpdate(title="y"))
    assert await agent.delete_task("task_missing") is False
    assert await agent.delete_task(task.id) is True

    assert conn.types() == ["task_created", "task_updated", "task_deleted"]
    assert conn.sent[2] == {"type": "task_deleted", "success": True, "taskId": task.id}
    assert store.writes == 3


@pytest.mark.asyncio
async def test_register_user_is_idempotent_by_id() -> None:
    agent, _, _ = await _agent()
    first = await agent.register_user(UserRegistration(id="user_ada", name="Ada"))
    again = await agent.register_user(UserRegistration(id="user_ada", name="Other"))
    anon = await agent.register_user()

    assert again is first
    assert anon.name == "Anonymous User"
    assert anon.preferences.notification_channels == ["email", "push"]
    assert [u.id for u in agent.state.users] == ["user_ada", anon.id]


@pytest.mark.asyncio
async def test_analytics_reflects_state() -> None:
    agent, _, _ = await _agent()
    for title in ("a", "b", "c", "d"):
        await agent.create_task(TaskDraft(title=title))
    for task in agent.search_tasks()[:3]:
        await agent.update_task(task.id, TaskUpdate(status=TaskStatus.COMPLETED))

    stats = agent.analytics()
    assert stats.productivity_score == 75
    assert stats.pending_tasks == 1


@pytest.mark.asyncio
async def test_connect_sends_snapshot_then_registers() -> None:
    agent, _, _ = await _agent("ok")
    for i in range(12):
        await agent.process_message("u1", f"hello {i}")
    await agent.create_task(TaskDraft(title="t"))
    conn = FakeConnection()

    await agent.connect(conn)

    [frame] = conn.sent
    assert frame["type"] == "connection_established"
    assert frame["taskCount"] == 1
    assert len(frame["recentMessages"]) == 20
    assert frame["recentMessages"][-1]["content"] == "ok"
    assert frame["recentMessages"][-1]["userId"] == "u1"
    assert len(agent.hub) == 1
    agent.disconnect(conn)
    assert len(agent.hub) == 0


@pytest.mark.asyncio
async def test_handle_frame_replies_to_origin() -> None:
    agent, _, _ = await _agent("Here you go.")
    origin, other = FakeConnection("origin"), FakeConnection("other")
    await agent.connect(origin)
    await agent.connect(other)

    await agent.handle_frame(origin, '{"type": "create_task", "task_data": {"title": "t"}}')
    await agent.handle_frame(origin, '{"type": "get_tasks", "criteria": {}}')
    await agent.handle_frame(origin, '{"type": "update_task", "task_id": "nope", "updates": {}}')
    await agent.handle_frame(origin, '{"type": "bogus"}')
    await agent.handle_frame(origin, '{"type": "chat_message", "user_id": "u1", "content": "show all"}')

    assert origin.types() == [
        "connection_established",
        "task_created",
        "task_created",
        "tasks_list",
        "task_updated",
        "error",
        "new_message",
        "message_response",
    ]
    assert other.types() == ["connection_established", "task_created", "new_message"]
    assert origin.sent[4]["task"] is None
    assert len(origin.sent[-1]["tasks"]) == 1


@pytest.mark.asyncio
async def test_deleting_task_drops_its_fired_reminder_keys() -> None:
    agent, store, timer = await _agent()
    task = await agent.create_task(
        TaskDraft(title="Call bank", due_date=utc_now() + _dt.timedelta(hours=2))
    )
    await timer.fire(timer.live()[0])
    assert agent.state.fired_reminders == {f"{task.id}:1h_before"}

    await agent.delete_task(task.id)

    assert agent.state.fired_reminders == set()
    assert '"firedReminders":[]' in (store.get(KEY) or "")


@pytest.mark.asyncio
async def test_start_refuses_corrupt_snapshot_and_keeps_it() -> None:
    store = InMemoryStateStore()
    store.put(KEY, '{"tasks": "corrupt-but-recoverable"}')
    agent = TaskAgent(
        "main",
        persistence=AgentPersistence(store, KEY),
        extractor=IntentExtractor(ScriptedInference("x")),
        timer=RecordingTimer(),
    )

    with pytest.raises(PersistenceError):
        await agent.start()
    assert store.get(KEY) == '{"tasks": "corrupt-but-recoverable"}'


@pytest.mark.asyncio
async def test_camel_case_frames_are_understood() -> None:
    agent, _, _ = await _agent(
        "On it.",
        extraction_json(title="Book flights", dueDate=None, tags=["travel"]),
    )
    origin = FakeConnection("origin")
    await agent.connect(origin)

    await agent.handle_frame(
        origin, '{"type": "chat_message", "userId": "u42", "content": "add a task to book flights"}'
    )
    [task] = agent.search_tasks()
    assert [m.user_id for m in agent.state.chat_history] == ["u42", "u42"]

    await agent.handle_frame(
        origin,
        '{"type": "update_task", "taskId": "%s", "updates": {"dueDate": "2030-02-01T10:00:00Z"}}'
        % task.id,
    )
    await agent.handle_frame(origin, '{"type": "create_task", "taskData": {"title": "Pack"}}')
    await agent.handle_frame(origin, '{"type": "delete_task", "taskId": "%s"}' % task.id)

    assert "error" not in origin.types()
    updated = next(f for f in origin.sent if f["type"] == "task_updated")
    assert updated["task"]["dueDate"].startswith("2030-02-01T10:00:00")
    assert origin.sent[-1] == {"type": "task_deleted", "success": True, "taskId": task.id}
    assert [t.title for t in agent.search_tasks()] == ["Pack"]
