from __future__ import annotations

import asyncio
import re

from taskagent.config import AgentConfig
from taskagent.inference.client import InferenceClient, build_inference_from_config
from taskagent.intent.classifier import build_classifier
from taskagent.intent.extractor import IntentExtractor
from taskagent.observability import get_json_logger
from taskagent.reminders.scheduler import AsyncioTimer, Timer
from taskagent.store.interface import StateStore
from taskagent.store.memory import InMemoryStateStore
from taskagent.store.snapshot import AgentPersistence, state_key

from .agent import TaskAgent

DEFAULT_SESSION = "main"
SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


def valid_session_id(session_id: str) -> bool:
    return bool(SESSION_ID_RE.match(session_id))


class AgentRegistry:
    """One lazily created, started ``TaskAgent`` per session id."""

    def __init__(
        self,
        store: StateStore,
        extractor: IntentExtractor,
        *,
        key_prefix: str = "taskagent",
        timer: Timer | None = None,
        reminder_intervals: list[float] | None = None,
    ) -> None:
        self._store = store
        self._extractor = extractor
        self._key_prefix = key_prefix
        self._timer = timer or AsyncioTimer()
        self._intervals = reminder_intervals
        self._agents: dict[str, TaskAgent] = {}
        self._lock = asyncio.Lock()
        self._logger = get_json_logger("taskagent.registry")

    @property
    def store(self) -> StateStore:
        return self._store

    def sessions(self) -> list[str]:
        return sorted(self._agents)

    async def get(self, session_id: str = DEFAULT_SESSION) -> TaskAgent:
        if not valid_session_id(session_id):
            raise ValueError(f"invalid session id: {session_id!r}")
        agent = self._agents.get(session_id)
        if agent is not None:
            return agent
        async with self._lock:
            agent = self._agents.get(session_id)
            if agent is None:
                agent = TaskAgent(
                    session_id,
                    persistence=AgentPersistence(
                        self._store, state_key(self._key_prefix, session_id)
                    ),
                    extractor=self._extractor,
                    timer=self._timer,
                    reminder_intervals=self._intervals,
                )
                # Only cache once started so a failed load is retried on the next request
                await agent.start()
                self._agents[session_id] = agent
                self._logger.info(
                    "agent created",
                    extra={"event": "agent_created", "session_id": session_id},
                )
            return agent


def build_store(cfg: AgentConfig) -> StateStore:
    if cfg.state_store == "redis":
        from taskagent.store.redis_store import RedisStateStore

        return RedisStateStore(cfg.redis_url)
    return InMemoryStateStore()


def build_registry(
    cfg: AgentConfig,
    *,
    store: StateStore | None = None,
    inference: InferenceClient | None = None,
    timer: Timer | None = None,
) -> AgentRegistry:
    inf = inference or build_inference_from_config(cfg)
    extractor = IntentExtractor(
        inf,
        build_classifier(cfg.intent_strategy, inf, timeout=cfg.inference_timeout),
        timeout=cfg.inference_timeout,
        max_tokens=cfg.max_tokens,
    )
    get_json_logger("taskagent").info(
        "registry configured",
        extra={
            "event": "registry_configured",
            "attributes": {
                "state_store": cfg.state_store,
                "intent_strategy": cfg.intent_strategy,
                "reminder_intervals": cfg.reminder_intervals,
            },
        },
    )
    return AgentRegistry(
        store or build_store(cfg),
        extractor,
        key_prefix=cfg.key_prefix,
        timer=timer,
        reminder_intervals=cfg.reminder_intervals,
    )


__all__ = [
    "DEFAULT_SESSION",
    "AgentRegistry",
    "build_registry",
    "build_store",
    "valid_session_id",
]
