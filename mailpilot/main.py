"""
FastAPI application entry point.

Run with:
    uvicorn mailpilot.main:create_app --factory --port 8000
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from mailpilot.api.routes import router as operator_router
from mailpilot.config import Settings, get_settings
from mailpilot.logging.config import cycle_id_var, setup_logging
from mailpilot.pipeline.runtime import Pipeline, build_pipeline

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    pipeline: Optional[Pipeline] = None,
) -> FastAPI:
    """
    Build the application.

    `pipeline` lets tests hand in a pipeline made of fakes; otherwise one is
    built from settings when the app starts.
    """
    settings = settings or get_settings()
    setup_logging(settings.log_level, service=settings.app_name, env=settings.app_env)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.pipeline = pipeline or await build_pipeline(settings)
        logger.info(
            "app.started",
            extra={"action": "app.started", "env": settings.app_env},
        )
        if settings.autostart_poller:
            await app.state.pipeline.poller.start()
        try:
            yield
        finally:
            await app.state.pipeline.aclose()
            logger.info("app.stopped", extra={"action": "app.stopped"})

    app = FastAPI(
        title=settings.app_name,
        docs_url="/docs" if settings.app_env == "development" else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.operator_api_key = settings.operator_api_key
    app.state.pipeline = None

    # --- Middleware: request context + logging ---
    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        req_id = str(uuid.uuid4())[:8]
        token = cycle_id_var.set(f"req-{req_id}")

        start = time.monotonic()
        try:
            response = await call_next(request)
        finally:
            cycle_id_var.reset(token)

        response.headers["X-Request-ID"] = req_id
        latency_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "http.request",
            extra={
                "action": "http.request",
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "latency_ms": latency_ms,
            },
        )
        return response

    app.include_router(operator_router)

    # --- Health check endpoints ---
    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/ready")
    async def ready():
        pipeline_ = app.state.pipeline
        checks = {
            "pipeline_built": pipeline_ is not None,
            "mailbox_known": bool(pipeline_ and pipeline_.store.mailbox),
            "operator_key_set": bool(settings.operator_api_key),
            "classifier_configured": (
                settings.classifier_backend == "keyword" or bool(settings.anthropic_api_key)
            ),
        }
        all_ok = all(checks.values())
        return {"status": "ready" if all_ok else "not_ready", "checks": checks}

    return app
