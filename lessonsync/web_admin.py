from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from lessonsync.config_manager import ConfigManager
from lessonsync.errors import (
    AuthError,
    PersistenceError,
    RateLimitError,
    SyncInProgressError,
    TransientIOError,
    WebhookSignatureError,
)
from lessonsync.models import parse_iso_datetime
from lessonsync.scheduler import LAST_SYNC_META_KEY, SyncScheduler
from lessonsync.state_store import StateStore
from lessonsync.sync_engine import SyncEngine
from lessonsync.webhooks import SIGNATURE_HEADER, handle_booking_webhook


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SyncRunRequest(BaseModel):
    source: str | None = None
    start: str | None = None
    end: str | None = None


class StudentCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    full_name: str = ""
    lesson_credits: int = Field(default=0, ge=0)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager, self.state_store)


def _sync_error_response(exc: Exception) -> HTTPException:
    if isinstance(exc, AuthError):
        return HTTPException(status_code=401, detail=f"{exc.user_message} ({exc})")
    if isinstance(exc, RateLimitError):
        return HTTPException(status_code=429, detail=f"{exc.user_message} ({exc})")
    if isinstance(exc, SyncInProgressError):
        return HTTPException(status_code=409, detail=exc.user_message)
    if isinstance(exc, TransientIOError):
        return HTTPException(status_code=502, detail=f"{exc.user_message} ({exc})")
    return HTTPException(status_code=500, detail=f"{type(exc).__name__}: {exc}")


def create_app() -> FastAPI:
    config_path = os.getenv("LESSONSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("LESSONSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Lesson Sync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        if os.getenv("LESSONSYNC_DISABLE_SCHEDULER", "").strip().lower() not in {"1", "true", "yes"}:
            app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        app.state.context.config_manager.update(request.payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/sync/run")
    def run_sync(request: SyncRunRequest | None = None, source: str | None = None) -> dict[str, Any]:
        request = request or SyncRunRequest()
        try:
            start = parse_iso_datetime(request.start)
            end = parse_iso_datetime(request.end)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid start/end datetime") from exc
        try:
            result = app.state.context.sync_engine.run_sync(
                source or request.source,
                window_start=start,
                window_end=end,
                trigger="manual",
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            raise _sync_error_response(exc) from exc
        app.state.context.state_store.set_meta(LAST_SYNC_META_KEY, result.to_dict()["completed_at"])
        return {"message": "sync completed", "result": result.to_dict()}

    @app.post("/api/sync/trigger")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {
            "running": app.state.context.sync_engine.is_running,
            "last_sync_at": app.state.context.state_store.get_meta(LAST_SYNC_META_KEY),
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit),
        }

    @app.get("/api/students")
    def list_students() -> dict[str, Any]:
        return {"students": app.state.context.state_store.list_students()}

    @app.post("/api/students")
    def create_student(request: StudentCreateRequest) -> dict[str, Any]:
        student_id = app.state.context.state_store.add_student(
            email=request.email,
            full_name=request.full_name,
            lesson_credits=request.lesson_credits,
        )
        return {"student": app.state.context.state_store.get_student(student_id)}

    @app.get("/api/lessons")
    def list_lessons(student_id: str | None = None, limit: int = 200) -> dict[str, Any]:
        lessons = app.state.context.state_store.list_lessons(student_id=student_id, limit=limit)
        return {"lessons": [lesson.to_dict() for lesson in lessons]}

    @app.post("/api/webhooks/calcom")
    async def calcom_webhook(request: Request) -> dict[str, Any]:
        body = await request.body()
        config = await run_in_threadpool(app.state.context.config_manager.load)
        try:
            return await run_in_threadpool(
                handle_booking_webhook,
                app.state.context.sync_engine,
                app.state.context.state_store,
                body,
                request.headers.get(SIGNATURE_HEADER),
                config.calcom.webhook_secret,
            )
        except WebhookSignatureError as exc:
            raise HTTPException(status_code=401, detail="Unauthorized") from exc
        except PersistenceError as exc:
            raise HTTPException(status_code=500, detail=f"Failed to create lesson: {exc}") from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    return app
