from __future__ import annotations

import datetime as _dt
import json

import pytest

from taskagent.errors import PersistenceError
from taskagent.models.state import AgentState, ReminderJob, Task, TaskStatus, User
from taskagent.store.memory import InMemoryStateStore
from taskagent.store.snapshot import AgentPersistence, state_key


def test_state_key_layout() -> None:
    assert state_key("taskagent", "main") == "taskagent:agent_state:main"
    assert state_key("prefix:", "s1") == "prefix:agent_state:s1"


@pytest.mark.asyncio
async def test_snapshot_round_trip() -> None:
    store = InMemoryStateStore()
    persistence = AgentPersistence(store, state_key("t", "main"))
    due = _dt.datetime(2030, 1, 1, 9, 30, tzinfo=_dt.UTC)
    state = AgentState(
        tasks=[Task(title="a", due_date=due, status=TaskStatus.IN_PROGRESS, tags=["x", "x"])],
        users=[User(name="Ada")],
        reminder_jobs=[ReminderJob(task_id="task_1", offset_label="1h_before", fire_at=due)],
        fired_reminders={"task_1:24h_before"},
    )
    state.active_conversations["u1"] = due

    await persistence.save(state)
    loaded = await persistence.load()

    assert loaded == state
    assert store.writes == 1


@pytest.mark.asyncio
async def test_load_absent_returns_none() -> None:
    persistence = AgentPersistence(InMemoryStateStore(), "k")
    assert await persistence.load() is None


@pytest.mark.asyncio
@pytest.mark.parametrize("blob", ["{not valid", '{"tasks": "corrupt-but-recoverable"}'])
async def test_load_undecodable_raises_and_keeps_record(blob: str) -> None:
    store = InMemoryStateStore()
    store.put("k", blob)

    with pytest.raises(PersistenceError):
        await AgentPersistence(store, "k").load()
    assert store.get("k") == blob


@pytest.mark.asyncio
async def test_snapshot_uses_camel_case_keys_and_reads_snake_case() -> None:
    store = InMemoryStateStore()
    due = _dt.datetime(2030, 1, 1, 9, 30, tzinfo=_dt.UTC)
    await AgentPersistence(store, "k").save(AgentState(tasks=[Task(title="a", due_date=due)]))

    raw = json.loads(store.get("k") or "{}")
    assert {"chatHistory", "reminderJobs", "firedReminders"} <= set(raw)
    assert _dt.datetime.fromisoformat(raw["tasks"][0]["dueDate"]) == due

    legacy = {"tasks": [{"id": "task_1", "title": "old", "due_date": "2030-01-01T09:30:00Z"}]}
    store.put("k", json.dumps(legacy))
    loaded = await AgentPersistence(store, "k").load()
    assert loaded is not None and loaded.tasks[0].due_date == due


@pytest.mark.asyncio
async def test_save_overwrites_previous_record() -> None:
    store = InMemoryStateStore()
    persistence = AgentPersistence(store, "k")
    await persistence.save(AgentState(tasks=[Task(title="one")]))
    await persistence.save(AgentState())
    loaded = await persistence.load()
    assert loaded is not None and loaded.tasks == []
