from __future__ import annotations

import json
import uuid
from typing import Any, Protocol

from starlette.websockets import WebSocket, WebSocketState

from taskagent.observability import get_json_logger, get_metrics


class Connection(Protocol):
    """A live client connection; ``send`` reports True when delivered, False when closed."""

    @property
    def connection_id(self) -> str: ...

    async def send(self, text: str) -> bool: ...


class WebSocketConnection:
    """Adapts a Starlette/FastAPI WebSocket to ``Connection``."""

    def __init__(self, websocket: WebSocket, connection_id: str | None = None) -> None:
        self._ws = websocket
        self._id = connection_id or str(uuid.uuid4())

    @property
    def connection_id(self) -> str:
        return self._id

    async def send(self, text: str) -> bool:
        if (
            self._ws.client_state != WebSocketState.CONNECTED
            or self._ws.application_state != WebSocketState.CONNECTED
        ):
            return False
        try:
            await self._ws.send_text(text)
        except (RuntimeError, OSError):
            return False
        return True


def encode_event(event: dict[str, Any]) -> str:
    return json.dumps(event, separators=(",", ":"), default=str)


class BroadcastHub:
    """Fan-out of events to every registered connection of one agent.

    Delivery is fire-and-forget: a failing or closed connection is logged, skipped and
    pruned, and never affects the caller or the other connections.
    """

    def __init__(self, name: str = "main") -> None:
        self._name = name
        self._connections: dict[str, Connection] = {}
        self._logger = get_json_logger("taskagent.hub")

    def register(self, connection: Connection) -> None:
        self._connections[connection.connection_id] = connection
        self._logger.info(
            "connection registered",
            extra={
                "event": "connection_registered",
                "session_id": self._name,
                "connection_id": connection.connection_id,
            },
        )

    def unregister(self, connection: Connection) -> None:
        if self._connections.pop(connection.connection_id, None) is not None:
            self._logger.info(
                "connection unregistered",
                extra={
                    "event": "connection_unregistered",
                    "session_id": self._name,
                    "connection_id": connection.connection_id,
                },
            )

    def __len__(self) -> int:
        return len(self._connections)

    async def broadcast(self, event: dict[str, Any]) -> int:
        """Send ``event`` to all connections; returns how many accepted it."""
        text = encode_event(event)
        delivered = 0
        closed: list[Connection] = []
        for conn in list(self._connections.values()):
            if await self._deliver(conn, text, event.get("type")):
                delivered += 1
            else:
                closed.append(conn)
        for conn in closed:
            self.unregister(conn)
        get_metrics().increment("broadcasts", {"type": str(event.get("type"))})
        return delivered

    async def send_to(self, connection: Connection, event: dict[str, Any]) -> bool:
        return await self._deliver(connection, encode_event(event), event.get("type"))

    async def _deliver(self, conn: Connection, text: str, kind: Any) -> bool:
        try:
            ok = await conn.send(text)
        except Exception:  # noqa: BLE001 - one bad connection must not affect the rest
            self._logger.exception(
                "broadcast send failed",
                extra={
                    "event": "broadcast_skip",
                    "session_id": self._name,
                    "connection_id": conn.connection_id,
                    "attributes": {"type": kind},
                },
            )
            return False
        if not ok:
            self._logger.warning(
                "connection not writable",
                extra={
                    "event": "broadcast_skip",
                    "session_id": self._name,
                    "connection_id": conn.connection_id,
                    "attributes": {"type": kind},
                },
            )
        return ok


__all__ = ["BroadcastHub", "Connection", "WebSocketConnection", "encode_event"]
