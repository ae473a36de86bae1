from __future__ import annotations

import os
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

# ROOT is defined for reference but we don't need to manipulate sys.path
# since we're using proper Python packaging
ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep tests off real inference backends and start each with fresh metrics."""
    from taskagent.observability import reset_metrics

    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    reset_metrics()
    yield


def _wait_until(timeout_s: float, pause_s: float, check: Callable[[], bool]) -> bool:
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        if check():
            return True
        time.sleep(pause_s)
    return False


def _redis_ping(url: str) -> bool:
    try:
        import redis

        r = redis.Redis.from_url(url)
        return bool(r.ping())
    except Exception:
        return False


def _local_redis_available() -> bool:
    url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    return _redis_ping(url)


@pytest.fixture(scope="session")
def redis_url() -> str:
    """Provide a Redis URL, preferring REDIS_URL when reachable, else localhost."""
    env_url = os.getenv("REDIS_URL")
    if env_url and _wait_until(5.0, 0.2, lambda: _redis_ping(env_url)):
        return env_url

    local_url = "redis://localhost:6379/0"
    if _wait_until(1.0, 0.2, lambda: _redis_ping(local_url)):
        return local_url

    pytest.skip("Redis not available; set REDIS_URL or start local Redis")


@pytest.fixture()
def unique_prefix() -> str:
    # millisecond prefix to avoid collisions
    return f"test:{int(time.time() * 1000)}"


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-skip tests that use ``redis_url`` when no Redis is reachable."""
    redis_ok = _local_redis_available()

    for item in items:
        fixt_names = set(getattr(item, "fixturenames", []) or [])
        if "redis_url" in fixt_names and not redis_ok:
            item.add_marker(
                pytest.mark.skip(reason="Redis not available; set REDIS_URL or start local Redis")
            )
