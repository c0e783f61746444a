from __future__ import annotations

import hmac
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from scaler_core.config import resolve_config
from scaler_core.context import EngineContext, build_context
from scaler_core.types import RunOutcome, utc_now_iso
from scaler_core.utils.logs import configure_logging


APP_VERSION = "0.1.0"
ADMIN_TOKEN_ENV = "SCALER_ADMIN_TOKEN"

STATUS_BY_OUTCOME = {
    RunOutcome.TRANSITIONED: 200,
    RunOutcome.ADVISED: 200,
    RunOutcome.TERMINAL: 200,
    RunOutcome.SKIPPED: 409,
    RunOutcome.ABORTED: 503,
    RunOutcome.FAILED: 500,
}


def _admin_token(ctx: EngineContext) -> str:
    return str(os.getenv(ADMIN_TOKEN_ENV) or ctx.config.web.admin_token or "")


def create_app(ctx: EngineContext | None = None) -> FastAPI:
    if ctx is None:
        cfg = resolve_config()
        configure_logging(cfg.logging.level, json_format=cfg.logging.json_format)
        ctx = build_context(cfg)
    engine_ctx = ctx

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if engine_ctx.config.web.start_scheduler:
            engine_ctx.scheduler.start()
        try:
            yield
        finally:
            engine_ctx.scheduler.stop()

    app = FastAPI(title="Outreach Scaler API", version=APP_VERSION, lifespan=lifespan)
    app.state.ctx = engine_ctx

    def require_admin(request: Request) -> str:
        expected = _admin_token(engine_ctx)
        if not expected:
            raise HTTPException(status_code=403, detail="Operator token not configured")
        auth_header = request.headers.get("authorization") or ""
        if auth_header.lower().startswith("bearer "):
            token = auth_header.split(" ", 1)[1].strip()
            if hmac.compare_digest(token, expected):
                return "admin"
        raise HTTPException(status_code=401, detail="Unauthorized")

    @app.get("/api/v1/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "ok": True,
            "time": utc_now_iso(),
            "version": APP_VERSION,
            "scheduler": {"running": engine_ctx.scheduler.is_running, "in_flight": engine_ctx.scheduler.in_flight},
            "phase": engine_ctx.engine.state.current_phase_id,
        }

    @app.get("/api/v1/engine/status")
    def engine_status() -> dict[str, Any]:
        last = engine_ctx.scheduler.last_report
        return {**engine_ctx.engine.status(), "last_run": last.to_dict() if last else None}

    @app.get("/api/v1/engine/catalog")
    def engine_catalog() -> list[dict[str, Any]]:
        return engine_ctx.catalog.to_list()

    @app.get("/api/v1/engine/history")
    def engine_history() -> list[dict[str, Any]]:
        return engine_ctx.engine.history()

    @app.get("/api/v1/engine/targeting")
    def engine_targeting() -> dict[str, Any]:
        return engine_ctx.engine.targeting_criteria()

    @app.get("/api/v1/engine/advisories")
    def engine_advisories(limit: int = Query(20, ge=1, le=200)) -> list[dict[str, Any]]:
        return engine_ctx.engine.advisories(limit=limit)

    @app.post("/api/v1/engine/evaluate")
    def engine_evaluate(_: str = Depends(require_admin)) -> JSONResponse:
        report = engine_ctx.scheduler.trigger_now(trigger="api")
        return JSONResponse(status_code=STATUS_BY_OUTCOME[report.outcome], content=report.to_dict())

    return app


app = create_app()
