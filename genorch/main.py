"""FastAPI application entry point."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse

from genorch.api import admin, tasks
from genorch.api.deps import build_services
from genorch.api.errors import error_response
from genorch.core.config import load_config
from genorch.core.exceptions import OrchestratorError
from genorch.logging import configure_logging, get_request_id
from genorch.middleware.request_context import RequestContextMiddleware
from genorch.pool.prober import prober_enabled
from genorch.storage.credentials import init_db
from genorch.telemetry.events import record_event

configure_logging()

logger = logging.getLogger("genorch.app")

app = FastAPI(
    title="Generation Orchestrator",
    version="0.1.0",
    docs_url=None,
    redoc_url=None,
    openapi_url="/api/openapi.json",
)
app.include_router(tasks.router)
app.include_router(admin.router)
app.add_middleware(RequestContextMiddleware)


@app.on_event("startup")
async def on_startup() -> None:
    init_db()
    services = build_services(load_config())
    app.state.services = services
    resumed = await services.orchestrator.resume()
    if prober_enabled():
        services.prober.start()
    logger.info("Orchestrator started", extra={"event": "app_started", "resumed_tasks": resumed})


@app.on_event("shutdown")
async def on_shutdown() -> None:
    services = getattr(app.state, "services", None)
    if services is None:
        return
    await services.prober.stop()
    await services.orchestrator.shutdown()


@app.get("/api/docs", response_class=HTMLResponse)
def swagger_ui() -> HTMLResponse:
    return get_swagger_ui_html(
        openapi_url="/api/openapi.json",
        title="Generation Orchestrator API",
    )


@app.exception_handler(OrchestratorError)
async def orchestrator_exception_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
    logger.info(
        "Request rejected",
        extra={"event": "request_rejected", "path": request.url.path, "code": exc.code},
    )
    return error_response(exc)


@app.exception_handler(Exception)
async def unexpected_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled error",
        extra={
            "event": "request_error",
            "path": request.url.path,
            "request_id": get_request_id(),
        },
    )
    record_event(
        "request_error",
        "ERROR",
        message=str(exc),
        meta={
            "path": request.url.path,
        },
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "message": "Internal server error",
                "type": "internal_server_error",
                "code": "internal_error",
            }
        },
    )
