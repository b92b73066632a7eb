"""
Capture Routes - Start, Monitor and Cancel Captures

Provides endpoints for:
- Full-page, region and site-center captures of a tab
- Status polling (records are kept for STATUS_RETENTION_SECONDS after a capture ends)
- Cancellation
- Downloading the exported PNG

Progress is also pushed over the /ws/status WebSocket.
"""

import os
from typing import Optional

from fastapi import APIRouter, Body
from fastapi.responses import FileResponse
from pydantic import model_validator
import logging

from capture_models import CaptureConfig, CaptureRect, CaptureStatus, WireModel
from routes import get_deps
from utils.error_handler import (
    SessionNotFoundError,
    create_success_response,
    handle_api_error,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/capture", tags=["capture"])


class RegionCaptureRequest(WireModel):
    selector: Optional[str] = None
    rect: Optional[CaptureRect] = None

    @model_validator(mode="after")
    def _require_target(self):
        if not self.selector and self.rect is None:
            raise ValueError("region capture needs a selector or a rect")
        return self


@router.post("/{tab_id}/start")
async def start_capture(tab_id: str, config: Optional[CaptureConfig] = Body(None)):
    """Start a full-page capture; without a body the saved capture settings apply"""
    deps = get_deps()
    try:
        session_id = await deps.orchestrator.start_capture(tab_id, config or deps.config_manager.get())
        return create_success_response(data={"sessionId": session_id})
    except Exception as e:
        return handle_api_error(e)


@router.post("/{tab_id}/region")
async def start_region_capture(tab_id: str, request: RegionCaptureRequest):
    deps = get_deps()
    try:
        session_id = await deps.orchestrator.start_region_capture(
            tab_id, selector=request.selector, rect=request.rect, config=deps.config_manager.get()
        )
        return create_success_response(data={"sessionId": session_id})
    except Exception as e:
        return handle_api_error(e)


@router.post("/{tab_id}/site-center")
async def start_site_center_capture(tab_id: str):
    deps = get_deps()
    try:
        session_id = await deps.orchestrator.start_site_center_capture(tab_id, deps.config_manager.get())
        return create_success_response(data={"sessionId": session_id})
    except Exception as e:
        return handle_api_error(e)


@router.get("/status/{session_id}")
async def get_capture_status(session_id: str):
    deps = get_deps()
    try:
        record = deps.orchestrator.get_status(session_id=session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return create_success_response(data=record.to_wire())
    except Exception as e:
        return handle_api_error(e)


@router.post("/{session_id}/cancel")
async def cancel_capture(session_id: str):
    deps = get_deps()
    try:
        record = await deps.orchestrator.cancel(session_id)
        return create_success_response(data=record.to_wire())
    except Exception as e:
        return handle_api_error(e)


@router.get("/{session_id}/output")
async def get_capture_output(session_id: str):
    """Download the exported PNG of a completed capture"""
    deps = get_deps()
    try:
        record = deps.orchestrator.get_status(session_id=session_id)
        if record is None or record.status != CaptureStatus.COMPLETED or not record.output_path or not os.path.exists(record.output_path):
            raise SessionNotFoundError(session_id)
        return FileResponse(record.output_path, media_type="image/png")
    except Exception as e:
        return handle_api_error(e)
