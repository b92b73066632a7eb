"""
Longshot - Page Stabilizer
Expands collapsed content before a capture.

Opens <details> elements and clicks "show more" style buttons, repeating
until a pass changes nothing or the time budget runs out.
"""

import asyncio
import logging

from utils.error_handler import StabilizationTimeoutError

logger = logging.getLogger(__name__)

EXPANDED_ATTRIBUTE = "data-longshot-expanded"

EXPAND_SCRIPT = """
(arg) => {
  let changed = 0;
  for (const details of document.querySelectorAll('details:not([open])')) {
    details.open = true;
    changed += 1;
  }
  const pattern = /^\\s*(show|see|read|load|view)\\s+(more|all)|^\\s*expand/i;
  for (const button of document.querySelectorAll('button, [role="button"]')) {
    if (changed >= arg.maxClicks) break;
    if (button.hasAttribute(arg.attribute)) continue;
    if (button.getAttribute('aria-expanded') === 'true') continue;
    if (!pattern.test(button.textContent || '')) continue;
    button.setAttribute(arg.attribute, '1');
    button.click();
    changed += 1;
  }
  return changed;
}
"""


class PageStabilizer:
    """Pre-capture expansion for one tab"""

    def __init__(self, bridge, tab_id: str, pass_delay_ms: int = 200, max_clicks: int = 50):
        self.bridge = bridge
        self.tab_id = tab_id
        self.pass_delay_ms = pass_delay_ms
        self.max_clicks = max_clicks

    async def run(self, max_duration_ms: int) -> int:
        """
        Expand until stable.

        Returns:
            Number of elements expanded

        Raises:
            StabilizationTimeoutError: the budget ran out first
        """
        try:
            return await asyncio.wait_for(self._expand_until_stable(), timeout=max_duration_ms / 1000)
        except asyncio.TimeoutError as e:
            raise StabilizationTimeoutError(max_duration_ms) from e

    async def _expand_until_stable(self) -> int:
        total = 0
        passes = 0
        while True:
            changed = await self.bridge.evaluate(
                self.tab_id, EXPAND_SCRIPT, {"attribute": EXPANDED_ATTRIBUTE, "maxClicks": self.max_clicks}
            )
            passes += 1
            if not changed:
                break
            total += int(changed)
            await asyncio.sleep(self.pass_delay_ms / 1000)

        logger.info(f"[PageStabilizer] {self.tab_id}: expanded {total} elements in {passes} passes")
        return total
