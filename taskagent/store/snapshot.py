from __future__ import annotations

import asyncio

from pydantic import ValidationError

from taskagent.errors import PersistenceError
from taskagent.models.state import AgentState
from taskagent.observability import get_json_logger

from .interface import StateStore


def state_key(prefix: str, session_id: str) -> str:
    return f"{prefix.rstrip(':')}:agent_state:{session_id}"


class AgentPersistence:
    """Snapshot persistence of one agent's full state under a fixed key."""

    def __init__(self, store: StateStore, key: str) -> None:
        self._store = store
        self._key = key
        self._logger = get_json_logger("taskagent.store")

    @property
    def key(self) -> str:
        return self._key

    async def save(self, state: AgentState) -> None:
        blob = state.model_dump_json(by_alias=True)
        await asyncio.to_thread(self._store.put, self._key, blob)

    async def load(self) -> AgentState | None:
        blob = await asyncio.to_thread(self._store.get, self._key)
        if blob is None:
            return None
        try:
            return AgentState.model_validate_json(blob)
        except ValidationError as exc:
            # An unreadable record stays in place until an operator repairs it
            self._logger.error(
                "snapshot undecodable",
                extra={
                    "event": "snapshot_invalid",
                    "attributes": {"key": self._key, "errors": exc.error_count()},
                },
            )
            raise PersistenceError(f"snapshot at {self._key} is undecodable") from exc


__all__ = ["AgentPersistence", "state_key"]
