from __future__ import annotations

import os
from typing import Any, cast

import redis

from taskagent.errors import PersistenceError
from taskagent.models.state import utc_now

from .interface import StateStore


class RedisStateStore(StateStore):
    """Redis-backed snapshot store.

    Data structures:
    - Hash per agent: key passed by the caller (``{prefix}:agent_state:{session_id}``)
      with fields ``data`` (serialized state) and ``updated_at`` (ISO timestamp)
    """

    def __init__(self, redis_url: str | None = None, *, client: Any | None = None) -> None:
        if client is not None:
            self._redis = client
        else:
            url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
            # decode_responses=True returns str everywhere for easier JSON handling
            self._redis = redis.Redis.from_url(url, decode_responses=True)

    def get(self, key: str) -> str | None:
        try:
            raw = cast(str | bytes | None, self._redis.hget(key, "data"))
        except redis.exceptions.RedisError as exc:
            raise PersistenceError(f"failed to read {key}") from exc
        if isinstance(raw, bytes):
            return raw.decode("utf-8")
        return raw

    def put(self, key: str, blob: str) -> None:
        try:
            self._redis.hset(key, mapping={"data": blob, "updated_at": utc_now().isoformat()})
        except redis.exceptions.RedisError as exc:
            raise PersistenceError(f"failed to write {key}") from exc

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except redis.exceptions.RedisError:
            return False


__all__ = ["RedisStateStore"]
