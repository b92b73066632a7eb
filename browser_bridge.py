"""
Longshot - Browser Bridge
Owns the headless Chromium instance and its tabs.

Provides the host capabilities the capture pipeline needs: evaluating
scripts inside a tab and snapshotting the visible region of a tab. Visible
captures are serialized and spaced at least CAPTURE_MIN_INTERVAL_MS apart,
mirroring the host rate limit on visible-tab captures.
"""

import asyncio
import itertools
import logging
import time
from typing import Any, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from utils.error_handler import CaptureThrottledError, TargetUnavailableError

logger = logging.getLogger(__name__)

# Host error text that means "too many captures", not "no capturable page"
THROTTLE_MARKERS = ("max_capture_visible_tab_calls_per_second", "rate limit", "too many")


class BrowserBridge:
    """Playwright-backed tab registry and capture capability"""

    def __init__(self, settings):
        self.settings = settings
        self.pages: Dict[str, Any] = {}  # tab_id -> playwright Page
        self._capture_lock = asyncio.Lock()  # One visible-region capture at a time
        self._last_capture = 0.0
        self._tab_ids = itertools.count(1)

        self._playwright = None
        self._browser = None
        self._context = None

    @property
    def is_running(self) -> bool:
        return self._context is not None

    async def start(self):
        """Launch the browser"""
        if self._context is not None:
            return
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self.settings.HEADLESS)
        self._context = await self._browser.new_context(
            viewport={"width": self.settings.VIEWPORT_WIDTH, "height": self.settings.VIEWPORT_HEIGHT}
        )
        logger.info(
            f"[BrowserBridge] Chromium started (headless={self.settings.HEADLESS}, "
            f"viewport={self.settings.VIEWPORT_WIDTH}x{self.settings.VIEWPORT_HEIGHT})"
        )

    async def stop(self):
        """Close every tab and the browser"""
        for tab_id in list(self.pages):
            await self.close_tab(tab_id)
        if self._context is not None:
            await self._context.close()
            self._context = None
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.info("[BrowserBridge] Stopped")

    # =========================================================================
    # Tabs
    # =========================================================================

    async def open_tab(self, url: str) -> str:
        """Open a new tab on `url` and return its id"""
        if self._context is None:
            raise RuntimeError("Browser not started")
        page = await self._context.new_page()
        try:
            await page.goto(url, wait_until="load", timeout=self.settings.CAPTURE_TIMEOUT_MS * 3)
        except PlaywrightError as e:
            await page.close()
            raise TargetUnavailableError(f"Could not load {url}: {e}") from e
        return self.register_page(page)

    def register_page(self, page) -> str:
        """Track an already-open page as a tab"""
        tab_id = f"tab-{next(self._tab_ids)}"
        self.pages[tab_id] = page
        logger.info(f"[BrowserBridge] Tab {tab_id} -> {page.url}")
        return tab_id

    async def close_tab(self, tab_id: str):
        page = self.pages.pop(tab_id, None)
        if page is None:
            return
        try:
            await page.close()
        except PlaywrightError as e:
            logger.warning(f"[BrowserBridge] Closing {tab_id} failed: {e}")

    def get_page(self, tab_id: str):
        page = self.pages.get(tab_id)
        if page is None or page.is_closed():
            raise TargetUnavailableError(f"Tab not found: {tab_id}", tab_id=tab_id)
        return page

    def get_url(self, tab_id: str) -> str:
        return self.get_page(tab_id).url

    async def get_title(self, tab_id: str) -> str:
        try:
            return await self.get_page(tab_id).title()
        except PlaywrightError as e:
            logger.debug(f"[BrowserBridge] Title unavailable for {tab_id}: {e}")
            return ""

    def list_tabs(self) -> List[Dict[str, str]]:
        return [
            {"tabId": tab_id, "url": page.url}
            for tab_id, page in self.pages.items()
            if not page.is_closed()
        ]

    # =========================================================================
    # Capabilities
    # =========================================================================

    async def evaluate(self, tab_id: str, script: str, arg: Any = None) -> Any:
        """Run a script function inside the tab and return its JSON result"""
        page = self.get_page(tab_id)
        try:
            return await page.evaluate(script, arg)
        except PlaywrightError as e:
            raise TargetUnavailableError(f"Page script failed: {e}", tab_id=tab_id) from e

    async def capture_visible(self, tab_id: str, clip: Optional[dict] = None) -> bytes:
        """
        Snapshot the visible region of a tab as PNG bytes.

        Args:
            tab_id: Tab to capture
            clip: Optional {x, y, width, height} in viewport CSS pixels

        Raises:
            CaptureThrottledError: host refused or timed out (retryable)
            TargetUnavailableError: the tab cannot be captured
        """
        page = self.get_page(tab_id)

        async with self._capture_lock:
            min_interval = self.settings.CAPTURE_MIN_INTERVAL_MS / 1000
            wait = min_interval - (time.monotonic() - self._last_capture)
            if wait > 0:
                await asyncio.sleep(wait)

            start_time = time.time()
            try:
                data = await page.screenshot(
                    type="png",
                    clip=clip,
                    timeout=self.settings.CAPTURE_TIMEOUT_MS,
                )
            except PlaywrightTimeoutError as e:
                raise CaptureThrottledError(
                    f"Capture timed out after {self.settings.CAPTURE_TIMEOUT_MS}ms",
                    retry_after=min_interval,
                ) from e
            except PlaywrightError as e:
                if any(marker in str(e).lower() for marker in THROTTLE_MARKERS):
                    raise CaptureThrottledError(str(e), retry_after=min_interval) from e
                raise TargetUnavailableError(f"Capture failed: {e}", tab_id=tab_id) from e
            finally:
                self._last_capture = time.monotonic()

            elapsed = (time.time() - start_time) * 1000
            logger.debug(f"[BrowserBridge] Captured {tab_id}: {len(data)} bytes in {elapsed:.0f}ms")
            return data
