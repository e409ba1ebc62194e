"""Health check endpoint."""

import logging

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import text

from recon_api import __version__
from recon_api.db.session import get_session_factory

router = APIRouter()
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]


def check_database() -> str:
    """Check database connectivity.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        db = get_session_factory()()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        return "up"
    except Exception as e:
        logger.error(
            "Database health check failed",
            extra={"event": "health.database.down", "error_type": type(e).__name__},
        )
        return f"down: {str(e)[:50]}"


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Health check endpoint.

    Always returns 200 OK; dependency state is reported in ``services``.
    """
    database = check_database()
    return HealthResponse(
        status="healthy" if database == "up" else "degraded",
        version=__version__,
        services={"api": "up", "database": database},
    )
