"""
Settings Routes - Capture Configuration Record
"""

from fastapi import APIRouter
import logging

from capture_models import CaptureConfig
from routes import get_deps
from utils.error_handler import handle_api_error, create_success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("/capture")
async def get_capture_settings():
    deps = get_deps()
    return create_success_response(data=deps.config_manager.get().model_dump(by_alias=True))


@router.put("/capture")
async def update_capture_settings(config: CaptureConfig):
    """Update pre-capture settings (omitted fields are left unchanged)"""
    deps = get_deps()
    try:
        updated = deps.config_manager.update(config)
        return create_success_response(data=updated.model_dump(by_alias=True), message="Config saved")
    except Exception as e:
        return handle_api_error(e)
