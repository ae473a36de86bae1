from __future__ import annotations

from .interface import StateStore


class InMemoryStateStore(StateStore):
    """Process-local store for tests and single-process development."""

    def __init__(self) -> None:
        self._records: dict[str, str] = {}
        self.writes = 0

    def get(self, key: str) -> str | None:
        return self._records.get(key)

    def put(self, key: str, blob: str) -> None:
        self._records[key] = blob
        self.writes += 1

    def ping(self) -> bool:
        return True


__all__ = ["InMemoryStateStore"]
