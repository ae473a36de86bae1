from __future__ import annotations

import asyncio
import uuid
from typing import Any

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    HTTPException,
    Query,
    WebSocket,
    WebSocketDisconnect,
)
from taskagent.agent.agent import TaskAgent
from taskagent.agent.registry import DEFAULT_SESSION, AgentRegistry, valid_session_id
from taskagent.errors import PersistenceError
from taskagent.hub.broadcast import WebSocketConnection
from taskagent.models.state import (
    SearchCriteria,
    TaskDraft,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
    UserRegistration,
    WireModel,
)
from taskagent.observability import configure_uvicorn_logging, get_json_logger, get_metrics


class ChatRequest(WireModel):
    user_id: str = "anonymous"
    message: str


def create_app(registry: AgentRegistry) -> FastAPI:
    app = FastAPI(title="taskagent")
    # Configure uvicorn logging at app startup to avoid import-time side effects
    configure_uvicorn_logging()
    logger = get_json_logger("taskagent.gateway")
    metrics = get_metrics()

    async def _agent_or_error(session_id: str) -> TaskAgent:
        if not valid_session_id(session_id):
            raise HTTPException(status_code=400, detail="invalid session id")
        try:
            return await registry.get(session_id)
        except PersistenceError as exc:
            logger.error(
                "agent unavailable",
                extra={"event": "gateway_error", "session_id": session_id, "path": "agent"},
            )
            metrics.increment("gateway_agent_errors", {"session_id": session_id})
            raise HTTPException(status_code=503, detail="state store unavailable") from exc

    async def session_agent(session_id: str = DEFAULT_SESSION) -> TaskAgent:
        return await _agent_or_error(session_id)

    @app.get("/health")
    async def health() -> dict[str, str]:  # lightweight healthcheck endpoint
        return {"status": "ok"}

    @app.get("/ready")
    async def ready() -> dict[str, str]:
        ok = await asyncio.to_thread(registry.store.ping)
        if not ok:
            logger.error(
                "gateway not ready",
                extra={"event": "gateway_error", "path": "ready"},
            )
            metrics.increment("gateway_ready_errors", {})
            raise HTTPException(status_code=503, detail="state store not ready")
        return {"status": "ok"}

    router = APIRouter()

    @router.post("/tasks")
    async def create_task(
        draft: TaskDraft, agent: TaskAgent = Depends(session_agent)
    ) -> dict[str, Any]:
        task = await agent.create_task(draft)
        return {"task": task.model_dump(mode="json", by_alias=True)}

    @router.get("/tasks")
    async def list_tasks(
        status: TaskStatus | None = None,
        priority: TaskPriority | None = None,
        tag: list[str] | None = Query(default=None),
        search: str | None = None,
        agent: TaskAgent = Depends(session_agent),
    ) -> dict[str, Any]:
        criteria = SearchCriteria(status=status, priority=priority, tags=tag or [], search=search)
        tasks = agent.search_tasks(criteria)
        return {
            "tasks": [t.model_dump(mode="json", by_alias=True) for t in tasks],
            "total": len(tasks),
        }

    @router.get("/tasks/{task_id}")
    async def get_task(task_id: str, agent: TaskAgent = Depends(session_agent)) -> dict[str, Any]:
        task = agent.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="unknown task_id")
        return {"task": task.model_dump(mode="json", by_alias=True)}

    @router.patch("/tasks/{task_id}")
    async def update_task(
        task_id: str, updates: TaskUpdate, agent: TaskAgent = Depends(session_agent)
    ) -> dict[str, Any]:
        task = await agent.update_task(task_id, updates)
        if task is None:
            raise HTTPException(status_code=404, detail="unknown task_id")
        return {"task": task.model_dump(mode="json", by_alias=True)}

    @router.delete("/tasks/{task_id}")
    async def delete_task(
        task_id: str, agent: TaskAgent = Depends(session_agent)
    ) -> dict[str, Any]:
        if not await agent.delete_task(task_id):
            raise HTTPException(status_code=404, detail="unknown task_id")
        return {"success": True, "taskId": task_id}

    @router.get("/analytics")
    async def analytics(agent: TaskAgent = Depends(session_agent)) -> dict[str, Any]:
        return agent.analytics().model_dump(mode="json", by_alias=True)

    @router.post("/chat")
    async def chat(body: ChatRequest, agent: TaskAgent = Depends(session_agent)) -> dict[str, Any]:
        message = await agent.process_message(body.user_id, body.message)
        metrics.increment("gateway_chats", {"session_id": agent.session_id})
        return {"message": message.model_dump(mode="json", by_alias=True)}

    @router.post("/users")
    async def register_user(
        registration: UserRegistration, agent: TaskAgent = Depends(session_agent)
    ) -> dict[str, Any]:
        user = await agent.register_user(registration)
        return {"user": user.model_dump(mode="json", by_alias=True)}

    app.include_router(router, prefix="/api")
    app.include_router(router, prefix="/api/sessions/{session_id}")

    async def _serve_socket(websocket: WebSocket, session_id: str) -> None:
        if not valid_session_id(session_id):
            await websocket.close(code=1008)
            return
        try:
            agent = await registry.get(session_id)
        except PersistenceError:
            logger.error(
                "agent unavailable",
                extra={"event": "gateway_error", "session_id": session_id, "path": "ws"},
            )
            await websocket.close(code=1011)
            return
        await websocket.accept()
        connection = WebSocketConnection(websocket, str(uuid.uuid4()))
        await agent.connect(connection)
        metrics.increment("gateway_ws_connections", {"session_id": session_id})
        try:
            while True:
                raw = await websocket.receive_text()
                await agent.handle_frame(connection, raw)
        except WebSocketDisconnect:
            logger.info(
                "client disconnected",
                extra={
                    "event": "ws_disconnected",
                    "session_id": session_id,
                    "connection_id": connection.connection_id,
                },
            )
        finally:
            agent.disconnect(connection)

    @app.websocket("/ws")
    async def ws_default(websocket: WebSocket) -> None:
        await _serve_socket(websocket, DEFAULT_SESSION)

    @app.websocket("/ws/{session_id}")
    async def ws_session(websocket: WebSocket, session_id: str) -> None:
        await _serve_socket(websocket, session_id)

    return app


__all__ = ["ChatRequest", "create_app"]
