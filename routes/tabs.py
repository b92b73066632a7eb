"""
Tab Routes - Browser Tabs and Raw Messages

Opens, lists and closes browser tabs, and exposes the message protocol
entry point used by clients that speak it directly.
"""

from typing import Any, Dict

from fastapi import APIRouter, Body
from pydantic import BaseModel, Field
import logging

from routes import get_deps
from utils.error_handler import handle_api_error, create_success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["tabs"])


class OpenTabRequest(BaseModel):
    url: str = Field(..., min_length=1)


@router.post("/tabs")
async def open_tab(request: OpenTabRequest):
    """Open a new tab on a URL"""
    deps = get_deps()
    try:
        tab_id = await deps.browser_bridge.open_tab(request.url)
        logger.info(f"[API] Opened {tab_id} on {request.url}")
        return create_success_response(data={"tabId": tab_id, "url": request.url})
    except Exception as e:
        return handle_api_error(e)


@router.get("/tabs")
async def list_tabs():
    deps = get_deps()
    return create_success_response(data={"tabs": deps.browser_bridge.list_tabs()})


@router.delete("/tabs/{tab_id}")
async def close_tab(tab_id: str):
    """Close a tab, cancelling any capture running on it"""
    deps = get_deps()
    try:
        active = deps.orchestrator.active_session_for_tab(tab_id)
        if active is not None:
            await deps.orchestrator.cancel(active.session_id)
        deps.browser_bridge.get_page(tab_id)
        await deps.browser_bridge.close_tab(tab_id)
        return create_success_response(message=f"Closed {tab_id}")
    except Exception as e:
        return handle_api_error(e)


@router.post("/tabs/{tab_id}/messages")
async def post_message(tab_id: str, payload: Dict[str, Any] = Body(...)):
    """
    Message protocol entry point

    Body is one protocol message, e.g. {"type": "START_CAPTURE"}. The reply
    is the protocol reply itself ({"success": ...}).
    """
    deps = get_deps()
    try:
        return await deps.message_router.handle(tab_id, payload)
    except Exception as e:
        return handle_api_error(e)
