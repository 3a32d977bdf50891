from __future__ import annotations

import contextlib
import os
from typing import Any

from fastapi import FastAPI
from pydantic import BaseModel, Field

from tripcal.config_manager import ConfigManager
from tripcal.scheduler import SyncScheduler
from tripcal.state_store import StateStore
from tripcal.sync_engine import SyncEngine

SECRET_FIELDS = (("tripit", "token"), ("caldav", "password"))


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    for section, key in SECRET_FIELDS:
        block = sanitized.get(section)
        if not isinstance(block, dict):
            continue
        secret = block.get(key)
        if secret is not None and str(secret).strip() in {"", "***"}:
            if str(current.get(section, {}).get(key, "")):
                block.pop(key, None)
            else:
                block[key] = ""
        if not block:
            sanitized.pop(section, None)
    return sanitized


def create_app(start_scheduler: bool = True) -> FastAPI:
    config_path = os.getenv("TRIPCAL_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("TRIPCAL_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_scheduler:
            app.state.context.scheduler.start()
        try:
            yield
        finally:
            app.state.context.scheduler.stop()

    app = FastAPI(title="tripcal admin", version="0.1.0", lifespan=lifespan)
    app.state.context = context

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok", "scheduler": app.state.context.scheduler.state}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        last = app.state.context.scheduler.last_result
        return {
            "state": app.state.context.scheduler.state,
            "last_result": last.to_dict() if last else None,
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit),
        }

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    return app
