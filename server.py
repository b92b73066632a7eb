"""
Longshot - FastAPI Server
Full-page screenshot capture service driving headless Chromium.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from browser_bridge import BrowserBridge
from capture_orchestrator import CaptureOrchestrator
from config.defaults import LongshotDefaults
from config_manager import ConfigManager
from export_manager import ExportManager
from message_router import MessageRouter, StatusBroadcaster
from session_store import SessionStateStore
from site_handlers import SiteHandlerRegistry
from routes import RouteDependencies, set_dependencies, get_deps
from routes import capture as capture_routes
from routes import health as health_routes
from routes import settings as settings_routes
from routes import tabs as tab_routes
from utils.error_handler import InvalidMessageError, handle_api_error

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def build_dependencies(settings: LongshotDefaults, bridge=None) -> RouteDependencies:
    """Wire the capture services together"""
    bridge = bridge or BrowserBridge(settings)
    broadcaster = StatusBroadcaster()
    config_manager = ConfigManager(settings.DATA_DIR)
    orchestrator = CaptureOrchestrator(
        bridge=bridge,
        store=SessionStateStore(settings.DATA_DIR, settings.STATUS_RETENTION_SECONDS),
        exporter=ExportManager(settings.OUTPUT_DIR),
        settings=settings,
        broadcaster=broadcaster,
        site_handlers=SiteHandlerRegistry(),
    )
    return RouteDependencies(
        settings=settings,
        browser_bridge=bridge,
        orchestrator=orchestrator,
        message_router=MessageRouter(orchestrator, config_manager),
        config_manager=config_manager,
        broadcaster=broadcaster,
    )


def create_app(
    settings: Optional[LongshotDefaults] = None,
    bridge=None,
    start_browser: bool = True,
) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        settings: Service settings (environment defaults if None)
        bridge: Browser bridge to use instead of launching Chromium
        start_browser: Start/stop the bridge with the app lifespan
    """
    settings = settings or LongshotDefaults.from_env()
    if settings.DEBUG:
        logging.getLogger().setLevel(logging.DEBUG)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"[Server] Starting Longshot v{VERSION}")
        deps = build_dependencies(settings, bridge)
        set_dependencies(deps)
        if start_browser:
            await deps.browser_bridge.start()
        logger.info(f"[Server] Output directory: {settings.OUTPUT_DIR}")

        yield

        logger.info("[Server] Shutting down Longshot...")
        await deps.orchestrator.shutdown()
        if start_browser:
            await deps.browser_bridge.stop()
        logger.info("[Server] Shutdown complete")

    app = FastAPI(
        title="Longshot API",
        version=VERSION,
        description="Full-page screenshot capture for scrollable pages and nested scroll containers",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors and answer with an INVALID_MESSAGE error"""
        logger.error(f"[VALIDATION ERROR] {request.method} {request.url}: {exc.errors()}")
        errors = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()]
        return handle_api_error(InvalidMessageError(f"{len(errors)} invalid fields", errors=errors))

    app.include_router(health_routes.router)
    app.include_router(tab_routes.router)
    app.include_router(capture_routes.router)
    app.include_router(settings_routes.router)

    @app.websocket("/ws/status")
    async def status_updates(websocket: WebSocket):
        """Push CAPTURE_STATUS messages for every session"""
        await websocket.accept()
        broadcaster = get_deps().broadcaster
        queue = broadcaster.subscribe()
        logger.info(f"[Server] Status client connected ({broadcaster.subscriber_count} total)")
        try:
            while True:
                message = await queue.get()
                await websocket.send_json(message)
        except WebSocketDisconnect:
            logger.info("[Server] Status client disconnected")
        finally:
            broadcaster.unsubscribe(queue)

    return app


app = create_app()


if __name__ == "__main__":
    settings = LongshotDefaults.from_env()

    logger.info(f"Starting Longshot v{VERSION}")
    logger.info(f"Server: http://localhost:{settings.SERVER_PORT}")
    logger.info(f"API: http://localhost:{settings.SERVER_PORT}/api")

    uvicorn.run(
        create_app(settings),
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        log_level="debug" if settings.DEBUG else "info"
    )
