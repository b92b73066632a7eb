"""
Health Routes - System Health Check

Reports server status and whether the browser is running.
"""

from fastapi import APIRouter
import logging
from routes import get_deps

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


@router.api_route("/health", methods=["GET", "HEAD"])
async def health_check():
    """
    Health check endpoint

    Supports both GET and HEAD methods for Docker health checks.
    """
    deps = get_deps()
    browser_status = "running" if (deps.browser_bridge and deps.browser_bridge.is_running) else "stopped"
    active = len(deps.orchestrator.sessions) if deps.orchestrator else 0

    return {
        "status": "ok",
        "version": "0.1.0",
        "message": "Longshot is running",
        "browser_status": browser_status,
        "sessions": active,
    }
