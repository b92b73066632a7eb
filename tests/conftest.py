"""
Shared fakes for Longshot tests.

FakePage stands in for a Playwright page: it renders a synthetic page image
whose rows are all distinct (row index encoded in the red/green channels)
and answers the in-page scripts by identity, so captures can be checked
row by row without a browser.
"""

import io

import numpy as np
import pytest
from PIL import Image
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from browser_bridge import BrowserBridge
from capture_orchestrator import CaptureOrchestrator
from config.defaults import LongshotDefaults
from export_manager import ExportManager
from message_router import StatusBroadcaster
from page_stabilizer import EXPAND_SCRIPT
from session_store import SessionStateStore
from viewport_driver import (
    DETECT_CONTAINER_SCRIPT,
    GEOMETRY_SCRIPT,
    REMEMBER_POSITION_SCRIPT,
    RESTORE_POSITION_SCRIPT,
    SCROLL_INTO_VIEW_SCRIPT,
    SCROLL_TO_SCRIPT,
)


def make_page_image(height: int, width: int = 64) -> np.ndarray:
    """Page raster whose row i is uniquely identified by its color"""
    rows = np.arange(height)
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:, :, 0] = (rows % 256)[:, None]
    image[:, :, 1] = (rows // 256)[:, None]
    image[:, :, 2] = ((rows * 37) % 256)[:, None]
    return image


def row_ids(image: np.ndarray) -> np.ndarray:
    """Recover page row indices from a raster built by make_page_image"""
    return image[:, 0, 0].astype(int) + image[:, 0, 1].astype(int) * 256


def png_bytes(array: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(array).save(buffer, format="PNG")
    return buffer.getvalue()


def decode_png(data: bytes) -> np.ndarray:
    with Image.open(io.BytesIO(data)) as img:
        return np.array(img.convert("RGB"))


def drain(queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


class FakePage:
    """Scrollable page backed by a numpy image"""

    def __init__(
        self,
        image: np.ndarray,
        viewport_height: int = 800,
        url: str = "https://example.com/articles/long-read",
        title: str = "A Long Read",
        device_pixel_ratio: int = 1,
        nested: bool = False,
    ):
        self.image = image
        self.device_pixel_ratio = device_pixel_ratio
        self.nested = nested  # scrolls inside a tagged element instead of the document
        self.tagged = False
        self.viewport_height = viewport_height
        self.url = url
        self._title = title
        self.closed = False

        self.scroll_top = 0
        self.frozen = False  # scrolling has no effect
        self.throttle_failures = 0  # upcoming screenshots that time out
        self.elements = {}  # selector -> (top, height) in page coordinates
        self.expand_results = []  # replies to the stabilizer script

        self.scroll_requests = []
        self.captured_offsets = []
        self.last_capture = None
        self.restored = False

        self.scripts = {
            DETECT_CONTAINER_SCRIPT: self._detect_container,
            GEOMETRY_SCRIPT: self._geometry,
            SCROLL_TO_SCRIPT: self._scroll_to,
            SCROLL_INTO_VIEW_SCRIPT: self._scroll_into_view,
            REMEMBER_POSITION_SCRIPT: self._remember,
            RESTORE_POSITION_SCRIPT: self._restore,
            EXPAND_SCRIPT: self._expand,
        }

    @property
    def height(self) -> int:
        return self.image.shape[0]

    @property
    def width(self) -> int:
        return self.image.shape[1]

    @property
    def max_scroll(self) -> int:
        return max(0, self.height - self.viewport_height)

    def is_closed(self) -> bool:
        return self.closed

    async def close(self):
        self.closed = True

    async def title(self) -> str:
        return self._title

    async def evaluate(self, script, arg=None):
        handler = self.scripts.get(script)
        if handler is None:
            raise AssertionError("FakePage got an unknown script")
        return handler(arg)

    async def screenshot(self, type="png", clip=None, timeout=None):
        if self.throttle_failures > 0:
            self.throttle_failures -= 1
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded")

        clip = clip or {"x": 0, "y": 0, "width": self.width, "height": self.viewport_height}
        x, y = int(round(clip["x"])), int(round(clip["y"]))
        width, height = int(round(clip["width"])), int(round(clip["height"]))
        top = self.scroll_top + y
        self.captured_offsets.append(self.scroll_top)
        region = self.image[top:top + height, x:x + width]
        if self.device_pixel_ratio != 1:
            region = region.repeat(self.device_pixel_ratio, axis=0).repeat(self.device_pixel_ratio, axis=1)
        self.last_capture = png_bytes(np.ascontiguousarray(region))
        return self.last_capture

    # -- in-page script stand-ins ------------------------------------------

    def _detect_container(self, arg):
        if arg.get("selector"):
            return {"container": arg["selector"]}
        if self.nested:
            self.tagged = True
            return {"container": f'[{arg["attribute"]}="1"]'}
        return {"container": "document"}

    def _geometry(self, arg):
        if self.nested and not self.tagged:
            return None
        return {
            "scrollHeight": self.height,
            "clientHeight": self.viewport_height,
            "scrollTop": self.scroll_top,
            "container": arg["container"],
            "rect": {"left": 0, "top": 0, "width": self.width, "height": self.viewport_height},
            "devicePixelRatio": self.device_pixel_ratio,
        }

    def _scroll_to(self, arg):
        self.scroll_requests.append(arg["offset"])
        if not self.frozen:
            self.scroll_top = int(max(0, min(arg["offset"], self.max_scroll)))
        return self.scroll_top

    def _scroll_into_view(self, arg):
        element = self.elements.get(arg["selector"])
        if element is None:
            return None
        top, height = element
        self.scroll_top = min(top, self.max_scroll)
        visible_top = top - self.scroll_top
        return {
            "left": 0,
            "top": visible_top,
            "width": self.width,
            "height": min(height, self.viewport_height - visible_top),
        }

    def _remember(self, arg):
        return {"windowX": 0, "windowY": self.scroll_top, "containerTop": None}

    def _restore(self, arg):
        self.scroll_top = arg["windowY"]
        self.tagged = False
        self.restored = True
        return True

    def _expand(self, arg):
        return self.expand_results.pop(0) if self.expand_results else 0


def build_orchestrator(settings, *pages, **kwargs):
    """Orchestrator over a real BrowserBridge holding fake pages. Call inside a running loop."""
    bridge = BrowserBridge(settings)
    tab_ids = [bridge.register_page(page) for page in pages]
    broadcaster = StatusBroadcaster()
    orchestrator = CaptureOrchestrator(
        bridge=bridge,
        store=SessionStateStore(settings.DATA_DIR, settings.STATUS_RETENTION_SECONDS),
        exporter=ExportManager(settings.OUTPUT_DIR),
        settings=settings,
        broadcaster=broadcaster,
        **kwargs,
    )
    return orchestrator, tab_ids, broadcaster


@pytest.fixture
def make_settings(tmp_path):
    """Settings factory with fast timings and temp storage"""

    def _make(**overrides):
        values = dict(
            DATA_DIR=str(tmp_path / "data"),
            OUTPUT_DIR=str(tmp_path / "captures"),
            VIEWPORT_WIDTH=64,
            VIEWPORT_HEIGHT=800,
            SETTLE_DELAY_MS=0,
            CAPTURE_MIN_INTERVAL_MS=0,
            CAPTURE_RETRY_BACKOFF_MS=1,
        )
        values.update(overrides)
        return LongshotDefaults(**values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()
