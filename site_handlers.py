"""
Longshot - Site Handlers
Site-family detection for center-column captures.

Each handler answers three questions about a tab: is this my site, which
element scrolls the content, and where is the center content column. The
registry asks handlers in priority order and the first positive detection
wins. New site families are added by appending a handler.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from pydantic import ValidationError

from capture_models import CenterBounds, ScrollContainerInfo, SiteDetection
from viewport_driver import SCROLL_ATTRIBUTE

logger = logging.getLogger(__name__)


class SiteHandler(ABC):
    """Base class for site-family handlers"""

    name: str = ""

    @abstractmethod
    async def detect(self, bridge, tab_id: str) -> SiteDetection:
        """Return a positive SiteDetection when the tab belongs to this family"""

    @abstractmethod
    async def find_scroll_container(self, bridge, tab_id: str) -> Optional[ScrollContainerInfo]:
        """Locate (and tag) the element that scrolls the main content"""

    @abstractmethod
    async def get_center_bounds(self, bridge, tab_id: str) -> Optional[CenterBounds]:
        """Bounds of the center content column, or None"""


# =============================================================================
# JIRA
# =============================================================================

JIRA_DETECT_SCRIPT = """
() => {
  const isCloud = window.location.hostname.endsWith('.atlassian.net') &&
    /\\/browse\\/[A-Z]+-\\d+/.test(window.location.pathname);
  if (isCloud) return { detected: true, type: 'jira-cloud' };

  const isServer = !!(document.getElementById('issue-content') &&
    document.querySelector('.issue-view') &&
    document.querySelector('.aui-page-panel'));
  if (isServer) return { detected: true, type: 'jira-server' };

  const hasMarkers = !!(
    document.querySelector('meta[name="application-name"][content*="JIRA"]') ||
    document.querySelector('meta[name="application-name"][content*="Jira"]') ||
    window.JIRA ||
    (window.AJS && window.AJS.Meta && window.AJS.Meta.get && window.AJS.Meta.get('issue-key'))
  );
  if (hasMarkers) return { detected: true, type: 'jira-unknown' };
  return { detected: false };
}
"""

JIRA_FIND_CONTAINER_SCRIPT = """
(arg) => {
  const attr = arg.attribute;
  const scrollable = (el, margin) => {
    const overflowY = getComputedStyle(el).overflowY;
    return (overflowY === 'auto' || overflowY === 'scroll') && el.scrollHeight > el.clientHeight + margin;
  };
  const found = (el, type) => {
    document.querySelectorAll(`[${attr}]`).forEach((other) => other.removeAttribute(attr));
    el.setAttribute(attr, '1');
    return { selector: `[${attr}="1"]`, type: type, scrollHeight: el.scrollHeight, clientHeight: el.clientHeight };
  };

  const server = () => {
    const issueView = document.querySelector('.issue-view');
    return issueView && scrollable(issueView, 10) ? found(issueView, 'jira-server') : null;
  };

  const largest = () => {
    let best = null;
    for (const el of document.querySelectorAll('*')) {
      if (el.offsetWidth < 200 || el.offsetHeight < 200) continue;
      if (scrollable(el, 50) && (!best || el.scrollHeight > best.scrollHeight)) best = el;
    }
    return best ? found(best, 'jira-fallback') : null;
  };

  const cloud = () => {
    for (const selector of arg.cloudSelectors) {
      for (const el of document.querySelectorAll(selector)) {
        if (scrollable(el, 10)) return found(el, 'jira-cloud');
      }
    }
    return largest();
  };

  if (arg.type === 'jira-server') return server();
  if (arg.type === 'jira-cloud') return cloud();
  return server() || cloud();
}
"""

JIRA_CENTER_BOUNDS_SCRIPT = """
(arg) => {
  const bounds = (left, right, top, el) => ({
    left: Math.round(left),
    right: Math.round(right),
    top: Math.round(top),
    width: Math.round(right - left),
    scrollHeight: el.scrollHeight,
    clientHeight: el.clientHeight,
  });

  if (arg.type === 'jira-server') {
    const issueView = document.querySelector('.issue-view');
    if (!issueView) return null;
    const viewRect = issueView.getBoundingClientRect();
    const leftSidebar = document.querySelector('.aui-sidebar');
    const rightSidebar = document.getElementById('viewissuesidebar');
    const left = leftSidebar ? leftSidebar.getBoundingClientRect().right : 0;
    const right = rightSidebar ? rightSidebar.getBoundingClientRect().left : viewRect.right;
    return bounds(left, right, viewRect.top, issueView);
  }

  if (arg.type === 'jira-cloud') {
    const main = document.querySelector('[data-testid="issue.views.issue-base.foundation.content"]') ||
      document.querySelector('[role="main"]');
    if (!main) return null;
    const rect = main.getBoundingClientRect();
    return bounds(rect.left, rect.right, rect.top, main);
  }
  return null;
}
"""

# Jira Cloud scroll containers, most specific first (layouts vary by version)
JIRA_CLOUD_SELECTORS = [
    '[data-testid="issue.views.issue-base.foundation.issue-panel"]',
    '[data-testid="issue-view-scrollable-container"]',
    '[data-testid="issue.views.issue-base.foundation.content"]',
    '.css-1dbjc4n[style*="overflow"]',
    '[role="main"]',
]


class JiraHandler(SiteHandler):
    """Jira Cloud, Server and Data Center issue pages"""

    name = "Jira"

    async def detect(self, bridge, tab_id: str) -> SiteDetection:
        reply = await bridge.evaluate(tab_id, JIRA_DETECT_SCRIPT)
        if not isinstance(reply, dict) or not reply.get("detected"):
            return SiteDetection(detected=False)
        return SiteDetection(detected=True, site_type=self.name, detection_type=reply.get("type"))

    async def find_scroll_container(self, bridge, tab_id: str) -> Optional[ScrollContainerInfo]:
        detection = await self.detect(bridge, tab_id)
        if not detection.detected:
            return None

        reply = await bridge.evaluate(
            tab_id,
            JIRA_FIND_CONTAINER_SCRIPT,
            {
                "type": detection.detection_type,
                "attribute": SCROLL_ATTRIBUTE,
                "cloudSelectors": JIRA_CLOUD_SELECTORS,
            },
        )
        return _validate_reply(ScrollContainerInfo, reply, "scroll container")

    async def get_center_bounds(self, bridge, tab_id: str) -> Optional[CenterBounds]:
        detection = await self.detect(bridge, tab_id)
        if detection.detection_type not in ("jira-server", "jira-cloud"):
            return None

        reply = await bridge.evaluate(tab_id, JIRA_CENTER_BOUNDS_SCRIPT, {"type": detection.detection_type})
        bounds = _validate_reply(CenterBounds, reply, "center bounds")
        if bounds is not None and bounds.width <= 0:
            logger.warning(f"[JiraHandler] Degenerate center bounds: {bounds}")
            return None
        return bounds


def _validate_reply(model, reply, what: str):
    if reply is None:
        return None
    try:
        return model.model_validate(reply)
    except ValidationError as e:
        logger.warning(f"[SiteHandlers] Ignoring malformed {what}: {e.error_count()} errors")
        return None


class SiteHandlerRegistry:
    """Ordered list of site handlers; first positive detection wins"""

    def __init__(self, handlers: Optional[List[SiteHandler]] = None):
        self.handlers: List[SiteHandler] = list(handlers) if handlers is not None else [JiraHandler()]

    def register(self, handler: SiteHandler):
        self.handlers.append(handler)
        logger.info(f"[SiteHandlerRegistry] Registered {handler.name}")

    async def detect(self, bridge, tab_id: str) -> Tuple[Optional[SiteHandler], SiteDetection]:
        for handler in self.handlers:
            detection = await handler.detect(bridge, tab_id)
            if detection.detected:
                logger.info(f"[SiteHandlerRegistry] {tab_id} detected as {detection.detection_type}")
                return handler, detection
        return None, SiteDetection(detected=False)
