from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

DEFAULT_REMINDER_INTERVALS: tuple[float, ...] = (1, 24, 168)


@dataclass(slots=True)
class AgentConfig:
    redis_url: str | None
    state_store: str
    key_prefix: str
    api_key: str | None
    model: str
    max_tokens: int
    temperature: float
    inference_timeout: float
    reminder_intervals: list[float]
    intent_strategy: str
    host: str
    port: int


def _read_int(raw: str | None, default: int, *, minimum: int = 1) -> int:
    try:
        value = int((raw or "").strip()) if (raw or "").strip() else default
    except ValueError:
        value = default
    return max(minimum, value)


def _read_float(raw: str | None, default: float) -> float:
    try:
        return float((raw or "").strip()) if (raw or "").strip() else default
    except ValueError:
        return default


def _read_intervals(raw: str | None) -> list[float]:
    """Parse ``REMINDER_INTERVALS`` ("1,24,168") into hours; bad entries are ignored."""
    text = (raw or "").strip()
    if not text:
        return list(DEFAULT_REMINDER_INTERVALS)
    out: list[float] = []
    for part in text.split(","):
        try:
            value = float(part.strip())
        except ValueError:
            continue
        if value > 0:
            out.append(value)
    return out or list(DEFAULT_REMINDER_INTERVALS)


def load_config(env: dict[str, str] | None = None) -> AgentConfig:
    e: dict[str, Any] = dict(os.environ)
    if env:
        e.update(env)
    redis_url = (e.get("REDIS_URL") or "").strip() or None
    state_store = (e.get("STATE_STORE") or "").strip().lower()
    if state_store not in {"redis", "memory"}:
        state_store = "redis" if redis_url else "memory"
    strategy = (e.get("INTENT_STRATEGY") or "keyword").strip().lower()
    if strategy not in {"keyword", "model"}:
        strategy = "keyword"
    return AgentConfig(
        redis_url=redis_url,
        state_store=state_store,
        key_prefix=(e.get("STATE_KEY_PREFIX") or "taskagent").rstrip(":"),
        api_key=e.get("OPENAI_API_KEY") or None,
        model=e.get("AGENT_MODEL", "gpt-4o-mini"),
        max_tokens=_read_int(e.get("INFERENCE_MAX_TOKENS"), 512),
        temperature=_read_float(e.get("INFERENCE_TEMPERATURE"), 0.3),
        inference_timeout=max(0.1, _read_float(e.get("INFERENCE_TIMEOUT_SECONDS"), 30.0)),
        reminder_intervals=_read_intervals(e.get("REMINDER_INTERVALS")),
        intent_strategy=strategy,
        host=e.get("GATEWAY_HOST", "0.0.0.0"),
        port=_read_int(e.get("GATEWAY_PORT"), 8000),
    )


__all__ = ["AgentConfig", "DEFAULT_REMINDER_INTERVALS", "load_config"]
