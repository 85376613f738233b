"""FastAPI app entrypoint for actionlog-recorder."""

from __future__ import annotations

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Awaitable, Callable

from fastapi import Body, FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from actionlog_recorder.config.settings import Settings, get_settings, verify_environment
from actionlog_recorder.recorder.supervisor import INVALID_ACTIONS, ConnectionSupervisor
from actionlog_recorder.storage.base import DocumentStore, StoreError
from actionlog_recorder.storage.models import ActionRecord
from actionlog_recorder.storage.mongo import MotorDocumentStore

logger = logging.getLogger(__name__)


class CreateTaskRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(alias="taskId", min_length=1)


class SubmitResponse(BaseModel):
    accepted: int
    error: str | None = None


def _build_supervisor(settings: Settings, storage_override: DocumentStore | None) -> ConnectionSupervisor:
    if storage_override is None:
        verify_environment(settings)
        store: DocumentStore = MotorDocumentStore(
            settings.resolved_mongodb_uri(),
            settings.database_name,
            server_selection_timeout_ms=settings.server_selection_timeout_ms,
        )
    else:
        store = storage_override
    return ConnectionSupervisor(
        store,
        ignore_invalid_tasks=settings.resolved_ignore_invalid_tasks(),
        retry_delay_s=settings.retry_delay_s,
        store_timeout_s=settings.store_timeout_s,
    )


def create_app(
    *,
    storage: DocumentStore | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(level=settings.log_level.upper())
        supervisor = _build_supervisor(settings, storage)
        app.state.settings = settings
        app.state.supervisor = supervisor
        supervisor.connect()
        logger.info(
            "service event=started app=%s ignore_invalid_tasks=%s",
            settings.app_name,
            supervisor.ignore_invalid_tasks,
        )
        try:
            yield
        finally:
            await supervisor.close()
            logger.info("service event=stopped app=%s", settings.app_name)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    def _get_supervisor(request: Request) -> ConnectionSupervisor:
        supervisor = getattr(request.app.state, "supervisor", None)
        if supervisor is None:
            raise HTTPException(status_code=503, detail="Service is starting")
        return supervisor

    def _authorize(authorization: str | None) -> None:
        expected = settings.resolved_logging_auth_key()
        if not expected:
            return
        if authorization is None or not secrets.compare_digest(authorization, expected):
            raise HTTPException(status_code=401, detail="Invalid authorization key")

    async def _read(call: Callable[[], Awaitable[ActionRecord | None]]) -> ActionRecord:
        try:
            record = await call()
        except (StoreError, asyncio.TimeoutError) as exc:
            logger.warning("lookup event=failed error=%s", exc)
            raise HTTPException(status_code=503, detail="Database unavailable") from exc
        if record is None:
            raise HTTPException(status_code=404, detail="Action log not found")
        return record

    @app.get("/health")
    def health(request: Request) -> dict[str, str]:
        supervisor = getattr(request.app.state, "supervisor", None)
        ready = supervisor is not None and supervisor.connection_ready()
        return {
            "status": "ok",
            "service": settings.app_name,
            "database": "connected" if ready else "disconnected",
        }

    @app.post("/actions", response_model=SubmitResponse, status_code=202)
    async def submit_actions(
        request: Request,
        payload: Any = Body(...),
        authorization: str | None = Header(default=None),
    ) -> SubmitResponse:
        _authorize(authorization)
        error = _get_supervisor(request).submit(payload)
        if error == INVALID_ACTIONS:
            raise HTTPException(status_code=400, detail=INVALID_ACTIONS)
        return SubmitResponse(accepted=len(payload), error=error)

    @app.post("/tasks")
    async def add_task(payload: CreateTaskRequest, request: Request) -> dict[str, Any]:
        saved = await _get_supervisor(request).add_task(payload.task_id)
        return {"taskId": payload.task_id, "saved": saved}

    @app.get("/actionlogs/first", response_model=ActionRecord)
    async def first_action_log(
        request: Request,
        task_id: str = Query(alias="taskId"),
        user_id: str = Query(alias="userId"),
    ) -> ActionRecord:
        supervisor = _get_supervisor(request)
        return await _read(lambda: supervisor.get_first_action_log(task_id, user_id))

    @app.get("/actionlogs/last", response_model=ActionRecord)
    async def last_action_log(
        request: Request,
        task_id: str = Query(alias="taskId"),
        user_id: str = Query(alias="userId"),
    ) -> ActionRecord:
        supervisor = _get_supervisor(request)
        return await _read(lambda: supervisor.get_last_action_log(task_id, user_id))

    @app.get("/actionlogs/next", response_model=ActionRecord)
    async def next_action_log(
        request: Request,
        timestamp: datetime,
        task_id: str = Query(alias="taskId"),
        user_id: str = Query(alias="userId"),
    ) -> ActionRecord:
        supervisor = _get_supervisor(request)
        return await _read(lambda: supervisor.get_next_action_log(task_id, user_id, timestamp))

    @app.get("/actionlogs/previous", response_model=ActionRecord)
    async def previous_action_log(
        request: Request,
        timestamp: datetime,
        task_id: str = Query(alias="taskId"),
        user_id: str = Query(alias="userId"),
    ) -> ActionRecord:
        supervisor = _get_supervisor(request)
        return await _read(
            lambda: supervisor.get_previous_action_log(task_id, user_id, timestamp)
        )

    return app


app = create_app()
