"""
Longshot - Viewport Driver
Scroll control and geometry queries, executed inside the page.

Every operation is a small script function evaluated in the tab through the
BrowserBridge. Replies are validated with pydantic before the orchestrator
sees them; anything malformed (or a container that vanished) surfaces as
TargetUnavailableError.

A nested scroll container is tagged with SCROLL_ATTRIBUTE so later calls can
address it by selector across separate script evaluations.
"""

import logging
from typing import Optional

from pydantic import ValidationError

from capture_models import CaptureRect, ScrollGeometry
from utils.error_handler import TargetUnavailableError

logger = logging.getLogger(__name__)

SCROLL_ATTRIBUTE = "data-longshot-scroll"
DOCUMENT = "document"


# =============================================================================
# IN-PAGE SCRIPTS
# =============================================================================

DETECT_CONTAINER_SCRIPT = """
(arg) => {
  const attr = arg.attribute;
  const threshold = arg.threshold;
  const tagged = `[${attr}="1"]`;
  document.querySelectorAll(tagged).forEach((el) => el.removeAttribute(attr));

  if (arg.selector) {
    const explicit = document.querySelector(arg.selector);
    if (explicit) {
      explicit.setAttribute(attr, '1');
      return { container: tagged };
    }
  }

  const root = document.scrollingElement || document.documentElement;
  if (root.scrollHeight > window.innerHeight + threshold) {
    return { container: 'document' };
  }

  let best = null;
  let bestHeight = 0;
  for (const el of document.querySelectorAll('*')) {
    if (el.clientWidth < 100 || el.clientHeight < 100) continue;
    const overflowY = getComputedStyle(el).overflowY;
    if (overflowY !== 'auto' && overflowY !== 'scroll' && overflowY !== 'overlay') continue;
    if (el.scrollHeight <= el.clientHeight + threshold) continue;
    if (el.scrollHeight > bestHeight) {
      best = el;
      bestHeight = el.scrollHeight;
    }
  }
  if (best) {
    best.setAttribute(attr, '1');
    return { container: tagged };
  }
  return { container: 'document' };
}
"""

GEOMETRY_SCRIPT = """
(arg) => {
  const dpr = window.devicePixelRatio || 1;
  if (arg.container === 'document') {
    const root = document.scrollingElement || document.documentElement;
    return {
      scrollHeight: Math.max(root.scrollHeight, document.body ? document.body.scrollHeight : 0),
      clientHeight: window.innerHeight,
      scrollTop: window.scrollY,
      container: 'document',
      rect: { left: 0, top: 0, width: document.documentElement.clientWidth, height: window.innerHeight },
      devicePixelRatio: dpr,
    };
  }
  const el = document.querySelector(arg.container);
  if (!el) return null;
  const box = el.getBoundingClientRect();
  const left = Math.max(0, box.left);
  const top = Math.max(0, box.top);
  const right = Math.min(box.left + el.clientLeft + el.clientWidth, document.documentElement.clientWidth);
  const bottom = Math.min(box.top + el.clientTop + el.clientHeight, window.innerHeight);
  return {
    scrollHeight: el.scrollHeight,
    clientHeight: el.clientHeight,
    scrollTop: el.scrollTop,
    container: arg.container,
    rect: { left: left, top: top, width: Math.max(1, right - left), height: Math.max(1, bottom - top) },
    devicePixelRatio: dpr,
  };
}
"""

SCROLL_TO_SCRIPT = """
(arg) => {
  if (arg.container === 'document') {
    window.scrollTo(0, arg.offset);
    return window.scrollY;
  }
  const el = document.querySelector(arg.container);
  if (!el) return null;
  el.scrollTop = arg.offset;
  return el.scrollTop;
}
"""

SCROLL_INTO_VIEW_SCRIPT = """
(arg) => {
  const el = document.querySelector(arg.selector);
  if (!el) return null;
  el.scrollIntoView({ block: 'start', inline: 'nearest' });
  const box = el.getBoundingClientRect();
  const left = Math.max(0, box.left);
  const top = Math.max(0, box.top);
  const right = Math.min(box.right, document.documentElement.clientWidth);
  const bottom = Math.min(box.bottom, window.innerHeight);
  if (right <= left || bottom <= top) return null;
  return { left: left, top: top, width: right - left, height: bottom - top };
}
"""

REMEMBER_POSITION_SCRIPT = """
(arg) => {
  const pos = { windowX: window.scrollX, windowY: window.scrollY, containerTop: null };
  if (arg.container !== 'document') {
    const el = document.querySelector(arg.container);
    if (el) pos.containerTop = el.scrollTop;
  }
  return pos;
}
"""

RESTORE_POSITION_SCRIPT = """
(arg) => {
  if (arg.container !== 'document') {
    const el = document.querySelector(arg.container);
    if (el && arg.containerTop !== null) el.scrollTop = arg.containerTop;
  }
  window.scrollTo(arg.windowX, arg.windowY);
  document.querySelectorAll(`[${arg.attribute}]`).forEach((el) => el.removeAttribute(arg.attribute));
  return true;
}
"""


class ViewportDriver:
    """
    Drives scrolling of one tab's scroll surface.

    Bound to a single tab for the lifetime of a capture session.
    """

    def __init__(self, bridge, tab_id: str, settings):
        self.bridge = bridge
        self.tab_id = tab_id
        self.threshold = settings.CONTAINER_SCROLL_THRESHOLD
        self.debug = settings.DEBUG
        self.container = DOCUMENT
        self._saved_position: Optional[dict] = None

    async def _evaluate(self, script: str, arg: dict):
        return await self.bridge.evaluate(self.tab_id, script, arg)

    async def get_scroll_container(self, selector: Optional[str] = None) -> str:
        """
        Locate the scroll surface and remember it.

        Args:
            selector: Container chosen by a site handler (wins over detection)

        Returns:
            "document" or the selector of the tagged nested container
        """
        reply = await self._evaluate(
            DETECT_CONTAINER_SCRIPT,
            {"selector": selector, "threshold": self.threshold, "attribute": SCROLL_ATTRIBUTE},
        )
        if not isinstance(reply, dict) or not isinstance(reply.get("container"), str):
            raise TargetUnavailableError("Malformed scroll container reply", tab_id=self.tab_id)

        self.container = reply["container"]
        logger.debug(f"[ViewportDriver] {self.tab_id} scroll container: {self.container}")
        return self.container

    async def get_scroll_geometry(self) -> ScrollGeometry:
        reply = await self._evaluate(GEOMETRY_SCRIPT, {"container": self.container})
        if reply is None:
            raise TargetUnavailableError("Scroll container is no longer in the page", tab_id=self.tab_id)
        try:
            return ScrollGeometry.model_validate(reply)
        except ValidationError as e:
            raise TargetUnavailableError(
                f"Malformed scroll geometry: {e.error_count()} errors", tab_id=self.tab_id
            ) from e

    async def scroll_to(self, offset: float) -> float:
        """Scroll the container to `offset` and return the offset the page settled at"""
        reply = await self._evaluate(SCROLL_TO_SCRIPT, {"container": self.container, "offset": offset})
        if isinstance(reply, bool) or not isinstance(reply, (int, float)):
            raise TargetUnavailableError("Scroll container is no longer in the page", tab_id=self.tab_id)
        if self.debug:
            logger.debug(f"[ViewportDriver] scroll_to({offset}) -> {reply}")
        return float(reply)

    async def scroll_into_view(self, selector: str) -> CaptureRect:
        """Bring an element into view and return its visible rectangle"""
        reply = await self._evaluate(SCROLL_INTO_VIEW_SCRIPT, {"selector": selector})
        if reply is None:
            raise TargetUnavailableError(f"Element not found or not visible: {selector}", tab_id=self.tab_id)
        try:
            return CaptureRect.model_validate(reply)
        except ValidationError as e:
            raise TargetUnavailableError(f"Malformed element rect for {selector}", tab_id=self.tab_id) from e

    async def remember_position(self):
        reply = await self._evaluate(REMEMBER_POSITION_SCRIPT, {"container": self.container})
        if isinstance(reply, dict):
            self._saved_position = reply

    async def restore_position(self):
        """Return to the remembered position and drop the container tag"""
        position = self._saved_position or {"windowX": 0, "windowY": 0, "containerTop": None}
        await self._evaluate(
            RESTORE_POSITION_SCRIPT,
            {
                "container": self.container,
                "attribute": SCROLL_ATTRIBUTE,
                "windowX": position.get("windowX", 0),
                "windowY": position.get("windowY", 0),
                "containerTop": position.get("containerTop"),
            },
        )
        self._saved_position = None
