"""
Longshot - Default Configuration Constants

Centralized configuration for the capture service.
Values can be overridden via environment variables.

Usage:
    from config.defaults import LongshotDefaults
    settings = LongshotDefaults.from_env()
    orchestrator = CaptureOrchestrator(..., settings=settings)

The settings object is passed explicitly into each component; nothing reads
it from module state.
"""

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes", "on")


@dataclass
class LongshotDefaults:
    """Service-wide default configuration."""

    # ==========================================================================
    # Server Settings
    # ==========================================================================
    SERVER_PORT: int = 8090
    SERVER_HOST: str = "0.0.0.0"
    DATA_DIR: str = "data"
    OUTPUT_DIR: str = "data/captures"
    DEBUG: bool = False

    # ==========================================================================
    # Browser Settings
    # ==========================================================================
    HEADLESS: bool = True
    VIEWPORT_WIDTH: int = 1280
    VIEWPORT_HEIGHT: int = 800

    # ==========================================================================
    # Scroll/Capture Loop
    # ==========================================================================
    SCROLL_OVERLAP: int = 75  # CSS px shared by consecutive frames
    SETTLE_DELAY_MS: int = 250  # Fixed wait after each scroll; not a render-complete signal
    MAX_CAPTURE_ATTEMPTS: int = 200  # Guards against pages that misreport their height
    CONTAINER_SCROLL_THRESHOLD: int = 10  # Min scrollHeight - clientHeight for a real scroller

    # ==========================================================================
    # Host Capture Rate Limiting (Chrome allows ~2 visible-tab captures/s)
    # ==========================================================================
    CAPTURE_MIN_INTERVAL_MS: int = 500
    CAPTURE_TIMEOUT_MS: int = 10000
    CAPTURE_MAX_RETRIES: int = 3
    CAPTURE_RETRY_BACKOFF_MS: int = 600

    # ==========================================================================
    # Stitching
    # ==========================================================================
    MAX_OUTPUT_HEIGHT: int = 32000  # Raster dimension limit of the output format
    SEAM_ROWS: int = 8  # Rows compared on each side of a seam
    SEAM_TOLERANCE: float = 2.0  # Mean abs difference (0-255) for seam rows to match
    SEAM_SEARCH_RADIUS: int = 6  # Rows searched around the offset-derived seam

    # ==========================================================================
    # Session Lifecycle (seconds)
    # ==========================================================================
    STALE_SESSION_SECONDS: int = 60
    STATUS_RETENTION_SECONDS: int = 300

    @classmethod
    def from_env(cls) -> "LongshotDefaults":
        """Create config from environment variables with defaults."""
        return cls(
            SERVER_PORT=int(os.getenv("SERVER_PORT", cls.SERVER_PORT)),
            SERVER_HOST=os.getenv("SERVER_HOST", cls.SERVER_HOST),
            DATA_DIR=os.getenv("DATA_DIR", cls.DATA_DIR),
            OUTPUT_DIR=os.getenv("OUTPUT_DIR", cls.OUTPUT_DIR),
            DEBUG=_env_bool("DEBUG", cls.DEBUG),
            HEADLESS=_env_bool("HEADLESS", cls.HEADLESS),
            VIEWPORT_WIDTH=int(os.getenv("VIEWPORT_WIDTH", cls.VIEWPORT_WIDTH)),
            VIEWPORT_HEIGHT=int(os.getenv("VIEWPORT_HEIGHT", cls.VIEWPORT_HEIGHT)),
            SCROLL_OVERLAP=int(os.getenv("SCROLL_OVERLAP", cls.SCROLL_OVERLAP)),
            SETTLE_DELAY_MS=int(os.getenv("SETTLE_DELAY_MS", cls.SETTLE_DELAY_MS)),
            MAX_CAPTURE_ATTEMPTS=int(os.getenv("MAX_CAPTURE_ATTEMPTS", cls.MAX_CAPTURE_ATTEMPTS)),
            CONTAINER_SCROLL_THRESHOLD=int(
                os.getenv("CONTAINER_SCROLL_THRESHOLD", cls.CONTAINER_SCROLL_THRESHOLD)
            ),
            CAPTURE_MIN_INTERVAL_MS=int(os.getenv("CAPTURE_MIN_INTERVAL_MS", cls.CAPTURE_MIN_INTERVAL_MS)),
            CAPTURE_TIMEOUT_MS=int(os.getenv("CAPTURE_TIMEOUT_MS", cls.CAPTURE_TIMEOUT_MS)),
            CAPTURE_MAX_RETRIES=int(os.getenv("CAPTURE_MAX_RETRIES", cls.CAPTURE_MAX_RETRIES)),
            CAPTURE_RETRY_BACKOFF_MS=int(os.getenv("CAPTURE_RETRY_BACKOFF_MS", cls.CAPTURE_RETRY_BACKOFF_MS)),
            MAX_OUTPUT_HEIGHT=int(os.getenv("MAX_OUTPUT_HEIGHT", cls.MAX_OUTPUT_HEIGHT)),
            SEAM_ROWS=int(os.getenv("SEAM_ROWS", cls.SEAM_ROWS)),
            SEAM_TOLERANCE=float(os.getenv("SEAM_TOLERANCE", cls.SEAM_TOLERANCE)),
            SEAM_SEARCH_RADIUS=int(os.getenv("SEAM_SEARCH_RADIUS", cls.SEAM_SEARCH_RADIUS)),
            STALE_SESSION_SECONDS=int(os.getenv("STALE_SESSION_SECONDS", cls.STALE_SESSION_SECONDS)),
            STATUS_RETENTION_SECONDS=int(
                os.getenv("STATUS_RETENTION_SECONDS", cls.STATUS_RETENTION_SECONDS)
            ),
        )
