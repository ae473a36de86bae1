from __future__ import annotations

from typing import Protocol


class StateStore(Protocol):
    """Minimal key -> blob durable storage.

    Each ``put`` fully overwrites the previous record for that key (last write wins).
    """

    def get(self, key: str) -> str | None:
        """Return the blob stored under key, or None when absent."""

    def put(self, key: str, blob: str) -> None:
        """Store blob under key, replacing whatever was there."""

    def ping(self) -> bool:
        """Return True when the backend is reachable."""


__all__ = ["StateStore"]
