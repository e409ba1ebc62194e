"""Reconciliation API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from recon_api import __version__
from recon_api.config.env import json_logs_enabled
from recon_api.context import notification_key_var, request_id_var
from recon_api.routers import health, webhooks
from recon_api.utils import configure_json_logging

app = FastAPI(
    title="Marc Aromas Payment Reconciliation API",
    description="Receives Mercado Pago notifications and reconciles orders, gifts and subscriptions.",
    version=__version__,
)

logger = logging.getLogger(__name__)

# Structured JSON logging; set RECON_JSON_LOGS=false to disable
if json_logs_enabled():
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
    logger.info("Structured JSON logging enabled")


# ============================================================================
# HTTP Request Completion Logging Middleware
# ============================================================================


@app.middleware("http")
async def http_completion_logging_middleware(request: Request, call_next):
    """Log every HTTP request completion with method, path, status and duration.

    Logs even on exceptions (status_code=500).
    """
    notification_key_var.set("")

    start_time = time.perf_counter()
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            "http.request.completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )


# ============================================================================
# Request ID Middleware (MUST BE OUTERMOST)
# ============================================================================


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Accept or generate X-Request-ID and expose it to logging.

    Registered last so it wraps every other middleware.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(request_id)

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler: log type only, never echo internals."""
    logger.error(
        "UNHANDLED_EXCEPTION",
        extra={"path": request.url.path, "error_type": type(exc).__name__},
        exc_info=True,
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(health.router, tags=["health"])
app.include_router(webhooks.router)
