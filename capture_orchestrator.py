"""
Longshot - Capture Orchestrator
Runs capture sessions end to end.

Each session is an asyncio task walking the state machine

    idle -> preparing -> [stabilizing] -> capturing -> [stitching] -> finalizing -> completed

with `error` reachable from every non-terminal state. The orchestrator is the
only writer of session state; every transition is stored and broadcast, and
each session ends with exactly one terminal status.

Scrolling captures step through the scroll surface by (visible height -
SCROLL_OVERLAP), wait SETTLE_DELAY_MS after each scroll, snapshot the visible
region and hand the frame to a StitchWorker. Engine buffers are released and
the original scroll position restored on every exit path.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from capture_models import (
    CaptureConfig,
    CaptureRect,
    CaptureSession,
    CaptureStatus,
    ScrollGeometry,
    SiteDetection,
    StatusRecord,
    TargetDescriptor,
    TargetKind,
    ViewportFrame,
)
from page_stabilizer import PageStabilizer
from screenshot_stitcher import ScreenshotStitcher, StitchWorker, frame_height
from site_handlers import SiteHandlerRegistry
from utils.error_handler import (
    CapacityExceededError,
    CaptureAlreadyActiveError,
    CaptureCancelledError,
    CaptureThrottledError,
    LongshotError,
    SessionNotFoundError,
    StabilizationTimeoutError,
    TargetUnavailableError,
    get_user_friendly_message,
)
from viewport_driver import ViewportDriver

logger = logging.getLogger(__name__)

# Pages the browser will not let us capture
RESTRICTED_URL_PREFIXES = (
    "chrome://",
    "chrome-extension://",
    "brave://",
    "edge://",
    "opera://",
    "about:",
    "view-source:",
    "file://",
)

# Bound on waiting for a superseded session's cleanup
SUPERSEDE_WAIT_SECONDS = 10.0

ALLOWED_TRANSITIONS = {
    CaptureStatus.IDLE: (CaptureStatus.PREPARING, CaptureStatus.ERROR),
    CaptureStatus.PREPARING: (CaptureStatus.STABILIZING, CaptureStatus.CAPTURING, CaptureStatus.ERROR),
    CaptureStatus.STABILIZING: (CaptureStatus.CAPTURING, CaptureStatus.ERROR),
    CaptureStatus.CAPTURING: (CaptureStatus.STITCHING, CaptureStatus.FINALIZING, CaptureStatus.ERROR),
    CaptureStatus.STITCHING: (CaptureStatus.FINALIZING, CaptureStatus.ERROR),
    CaptureStatus.FINALIZING: (CaptureStatus.COMPLETED, CaptureStatus.ERROR),
    CaptureStatus.COMPLETED: (),
    CaptureStatus.ERROR: (),
}


def is_restricted_url(url: str) -> bool:
    return (url or "").lower().startswith(RESTRICTED_URL_PREFIXES)


@dataclass
class _SessionResources:
    """Per-session resources released in the session's finally block"""
    driver: ViewportDriver
    worker: Optional[StitchWorker] = None
    output: Optional[bytes] = None
    position_saved: bool = False
    url: str = ""
    title: str = ""


class CaptureOrchestrator:
    """
    Owns capture sessions.

    Usage:
        session_id = await orchestrator.start_capture(tab_id)
        record = await orchestrator.wait_for(session_id)
    """

    def __init__(
        self,
        bridge,
        store,
        exporter,
        settings,
        broadcaster=None,
        site_handlers: Optional[SiteHandlerRegistry] = None,
        stitcher_factory: Optional[Callable[[], ScreenshotStitcher]] = None,
    ):
        """
        Args:
            bridge: BrowserBridge (tabs, scripts, visible captures)
            store: SessionStateStore for status records
            exporter: ExportManager for finished images
            settings: LongshotDefaults
            broadcaster: Optional StatusBroadcaster notified on every status change
            site_handlers: Registry used by site-center captures
            stitcher_factory: Builds the stitching engine for each session
        """
        self.bridge = bridge
        self.store = store
        self.exporter = exporter
        self.settings = settings
        self.broadcaster = broadcaster
        self.site_handlers = site_handlers or SiteHandlerRegistry()
        self.stitcher_factory = stitcher_factory or (lambda: ScreenshotStitcher(settings))

        self.sessions: Dict[str, CaptureSession] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._active_by_tab: Dict[str, str] = {}

        logger.info("[CaptureOrchestrator] Initialized")

    # =========================================================================
    # Public operations
    # =========================================================================

    async def start_capture(self, tab_id: str, config: Optional[CaptureConfig] = None) -> str:
        """Start a full-page capture and return the session id"""
        target = TargetDescriptor(kind=TargetKind.FULL_PAGE)
        return await self._open_session(tab_id, target, config, self._run_full_page)

    async def start_region_capture(
        self,
        tab_id: str,
        selector: Optional[str] = None,
        rect: Optional[CaptureRect] = None,
        config: Optional[CaptureConfig] = None,
    ) -> str:
        """Start a single-shot capture of an element (by selector) or a viewport rectangle"""
        if selector is None and rect is None:
            raise ValueError("Region capture needs a selector or a rect")
        target = TargetDescriptor(kind=TargetKind.REGION, selector=selector, rect=rect)
        return await self._open_session(tab_id, target, config, self._run_region)

    async def start_site_center_capture(self, tab_id: str, config: Optional[CaptureConfig] = None) -> str:
        """Start a capture of the center column reported by a site handler"""
        target = TargetDescriptor(kind=TargetKind.SITE_CENTER)
        return await self._open_session(tab_id, target, config, self._run_site_center)

    async def cancel(self, session_id: str) -> StatusRecord:
        """
        Cancel a session. Idempotent: cancelling a finished session returns its record.

        Raises:
            SessionNotFoundError: unknown session id
        """
        session = self.sessions.get(session_id)
        if session is None:
            record = self.store.get(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            return record

        if not session.status.is_terminal:
            logger.info(f"[CaptureOrchestrator] Cancelling {session_id}")
            task = self._tasks.get(session_id)
            if task is not None and not task.done():
                task.cancel()
                await asyncio.wait([task])
            self._fail(session, CaptureCancelledError(session_id))

        return StatusRecord.from_session(session)

    def get_status(self, session_id: Optional[str] = None, tab_id: Optional[str] = None) -> Optional[StatusRecord]:
        """Latest status record for a session (or the latest session of a tab); None if unknown"""
        self.store.purge_expired()
        if session_id:
            return self.store.get(session_id)
        if tab_id:
            return self.store.latest_for_tab(tab_id)
        return None

    async def wait_for(self, session_id: str, timeout: Optional[float] = None) -> Optional[StatusRecord]:
        """Wait until a session's task ends and return its final record"""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.wait([task], timeout=timeout)
        return self.store.get(session_id)

    async def detect_site_type(self, tab_id: str) -> SiteDetection:
        self.bridge.get_page(tab_id)
        _, detection = await self.site_handlers.detect(self.bridge, tab_id)
        return detection

    def active_session_for_tab(self, tab_id: str) -> Optional[CaptureSession]:
        session_id = self._active_by_tab.get(tab_id)
        session = self.sessions.get(session_id) if session_id else None
        if session is None or session.status.is_terminal:
            return None
        return session

    async def shutdown(self):
        """Cancel every running session and wait for cleanup"""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"[CaptureOrchestrator] Shutdown complete ({len(tasks)} sessions cancelled)")

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def _open_session(
        self,
        tab_id: str,
        target: TargetDescriptor,
        config: Optional[CaptureConfig],
        runner: Callable[[CaptureSession, _SessionResources], Awaitable[None]],
    ) -> str:
        self._prune_sessions()

        active = self.active_session_for_tab(tab_id)
        if active is not None:
            if active.age_seconds() <= self.settings.STALE_SESSION_SECONDS:
                raise CaptureAlreadyActiveError(tab_id, active.session_id)
            logger.warning(
                f"[CaptureOrchestrator] Superseding stale session {active.session_id} "
                f"(no update for {active.age_seconds():.0f}s)"
            )
            self._fail(active, LongshotError("Capture abandoned", code="CAPTURE_ABANDONED"))
            task = self._tasks.get(active.session_id)
            if task is not None and not task.done():
                # Its cleanup restores scroll and untags the container; let it finish first
                task.cancel()
                await asyncio.wait([task], timeout=SUPERSEDE_WAIT_SECONDS)

            if self._active_by_tab.get(tab_id, active.session_id) != active.session_id:
                raise CaptureAlreadyActiveError(tab_id, self._active_by_tab[tab_id])

        session = CaptureSession(
            session_id=secrets.token_urlsafe(16),
            tab_id=tab_id,
            target=target,
            config=config or CaptureConfig(),
        )
        self.sessions[session.session_id] = session
        self._active_by_tab[tab_id] = session.session_id
        self._publish(session)

        task = asyncio.create_task(self._run_session(session, runner), name=f"capture-{session.session_id}")
        self._tasks[session.session_id] = task
        task.add_done_callback(lambda t: self._on_task_done(session, t))

        logger.info(f"[CaptureOrchestrator] Session {session.session_id} started ({target.kind.value}) on {tab_id}")
        return session.session_id

    async def _run_session(self, session: CaptureSession, runner):
        resources = _SessionResources(driver=ViewportDriver(self.bridge, session.tab_id, self.settings))
        failure: Optional[BaseException] = None
        try:
            await runner(session, resources)
        except asyncio.CancelledError:
            failure = CaptureCancelledError(session.session_id)
        except LongshotError as e:
            logger.error(f"[CaptureOrchestrator] Session {session.session_id} failed: {e.code} {e.message}")
            failure = e
        except Exception as e:
            logger.error(f"[CaptureOrchestrator] Session {session.session_id} crashed: {e}", exc_info=True)
            failure = e
        finally:
            await self._release(session, resources)

        if failure is not None:
            self._fail(session, failure)
            return

        if not session.status.is_terminal:
            message = "Capture complete"
            if session.truncated:
                message += f" (truncated at {self.settings.MAX_OUTPUT_HEIGHT}px)"
            if session.missing_rows:
                message += f" ({session.missing_rows} rows missing)"
            self._transition(session, CaptureStatus.COMPLETED, message)
            logger.info(
                f"[CaptureOrchestrator] Session {session.session_id} completed: "
                f"{session.frame_count} frames, {session.output_height}px -> {session.output_path}"
            )

    async def _release(self, session: CaptureSession, resources: _SessionResources):
        if resources.worker is not None:
            await resources.worker.stop()
            resources.worker = None
        resources.output = None

        if resources.position_saved:
            try:
                await resources.driver.restore_position()
            except LongshotError as e:
                logger.warning(f"[CaptureOrchestrator] Could not restore scroll for {session.session_id}: {e.message}")

    def _on_task_done(self, session: CaptureSession, task: asyncio.Task):
        self._tasks.pop(session.session_id, None)
        if not session.status.is_terminal:
            # Cancelled before the task body ever ran
            self._fail(session, CaptureCancelledError(session.session_id))
        if self._active_by_tab.get(session.tab_id) == session.session_id:
            del self._active_by_tab[session.tab_id]

    def _prune_sessions(self):
        retention = self.settings.STATUS_RETENTION_SECONDS
        expired = [
            session_id
            for session_id, session in self.sessions.items()
            if session.status.is_terminal and session.age_seconds() > retention
        ]
        for session_id in expired:
            del self.sessions[session_id]

    # =========================================================================
    # State
    # =========================================================================

    def _transition(self, session: CaptureSession, status: CaptureStatus, message: Optional[str] = None):
        if status not in ALLOWED_TRANSITIONS[session.status]:
            raise RuntimeError(f"Illegal capture transition {session.status.value} -> {status.value}")
        session.status = status
        if message is not None:
            session.message = message
        if status == CaptureStatus.COMPLETED:
            session.progress = 100
        self._publish(session)

    def _update_progress(self, session: CaptureSession, progress: int, message: str):
        session.progress = max(session.progress, min(99, progress))
        session.message = message
        self._publish(session)

    def _fail(self, session: CaptureSession, error: BaseException):
        if session.status.is_terminal:
            return
        session.error_code = getattr(error, "code", "UNKNOWN_ERROR")
        self._transition(session, CaptureStatus.ERROR, get_user_friendly_message(error))

    def _publish(self, session: CaptureSession):
        session.touch()
        record = StatusRecord.from_session(session)
        self.store.put(record)
        if self.broadcaster is not None:
            self.broadcaster.publish(record)
        if self.settings.DEBUG:
            logger.debug(
                f"[CaptureOrchestrator] {session.session_id} {session.status.value} "
                f"{session.progress}% {session.message}"
            )

    # =========================================================================
    # Runners
    # =========================================================================

    async def _prepare(self, session: CaptureSession, resources: _SessionResources):
        self._transition(session, CaptureStatus.PREPARING, "Preparing capture")
        resources.url = self.bridge.get_url(session.tab_id)
        if is_restricted_url(resources.url):
            raise TargetUnavailableError("Browser-internal pages cannot be captured", tab_id=session.tab_id)
        resources.title = await self.bridge.get_title(session.tab_id)

    async def _locate_container(self, resources: _SessionResources, selector: Optional[str] = None):
        await resources.driver.get_scroll_container(selector)
        await resources.driver.remember_position()
        resources.position_saved = True

    async def _stabilize(self, session: CaptureSession):
        if not session.config.pre_capture:
            return
        self._transition(session, CaptureStatus.STABILIZING, "Expanding page content")
        stabilizer = PageStabilizer(self.bridge, session.tab_id)
        try:
            await stabilizer.run(session.config.pre_capture_max_duration)
        except StabilizationTimeoutError as e:
            logger.warning(f"[CaptureOrchestrator] {e.message}; capturing the page as it is")

    async def _run_full_page(self, session: CaptureSession, resources: _SessionResources):
        await self._prepare(session, resources)
        await self._locate_container(resources)
        await self._stabilize(session)
        await self._scroll_and_capture(session, resources, lambda geometry: geometry.rect)
        await self._finalize(session, resources)

    async def _run_region(self, session: CaptureSession, resources: _SessionResources):
        await self._prepare(session, resources)
        await resources.driver.remember_position()
        resources.position_saved = True
        await self._stabilize(session)

        if session.target.selector:
            rect = await resources.driver.scroll_into_view(session.target.selector)
        else:
            rect = session.target.rect

        self._transition(session, CaptureStatus.CAPTURING, "Capturing region")
        await self._settle()
        resources.output = await self._capture_frame(session, rect)
        session.frame_count = 1
        session.output_height = frame_height(resources.output)
        await self._finalize(session, resources)

    async def _run_site_center(self, session: CaptureSession, resources: _SessionResources):
        await self._prepare(session, resources)

        handler, detection = await self.site_handlers.detect(self.bridge, session.tab_id)
        if handler is None:
            raise TargetUnavailableError("No site handler recognizes this page", tab_id=session.tab_id)
        session.target.site_type = detection.detection_type

        container = await handler.find_scroll_container(self.bridge, session.tab_id)
        bounds = await handler.get_center_bounds(self.bridge, session.tab_id)
        if bounds is None:
            raise TargetUnavailableError(
                f"{handler.name} center column not found", tab_id=session.tab_id
            )

        await self._locate_container(resources, container.selector if container else None)
        await self._stabilize(session)

        def center_clip(geometry: ScrollGeometry) -> CaptureRect:
            top = max(bounds.top, geometry.rect.top, 0)
            bottom = geometry.rect.top + geometry.rect.height
            return CaptureRect(
                left=max(0, bounds.left),
                top=top,
                width=bounds.width,
                height=max(1, bottom - top),
            )

        await self._scroll_and_capture(session, resources, center_clip)
        await self._finalize(session, resources)

    async def _scroll_and_capture(
        self,
        session: CaptureSession,
        resources: _SessionResources,
        clip_for: Callable[[ScrollGeometry], CaptureRect],
    ):
        driver = resources.driver
        geometry = await driver.get_scroll_geometry()
        self._transition(session, CaptureStatus.CAPTURING, "Capturing")

        if not geometry.is_scrollable:
            await driver.scroll_to(0)
            await self._settle()
            resources.output = await self._capture_frame(session, clip_for(geometry))
            session.frame_count = 1
            session.output_height = frame_height(resources.output)
            logger.info(f"[CaptureOrchestrator] {session.session_id}: page fits the viewport, single frame")
            return

        clip = clip_for(geometry)
        scale = geometry.device_pixel_ratio
        resources.worker = StitchWorker(self.stitcher_factory(), name=f"stitch-{session.session_id[:8]}")
        resources.worker.start()
        await resources.worker.begin(
            round(clip.width * scale),
            scale,
            min(self.settings.MAX_OUTPUT_HEIGHT, round(geometry.scroll_height * scale)),
        )

        target = 0.0
        last_settled: Optional[float] = None
        for _ in range(self.settings.MAX_CAPTURE_ATTEMPTS):
            geometry = await driver.get_scroll_geometry()
            settled = await driver.scroll_to(target)
            if last_settled is not None and settled <= last_settled:
                logger.debug(f"[CaptureOrchestrator] Scroll stopped advancing at {settled}")
                break

            clip = clip_for(geometry)
            await self._settle()
            frame = ViewportFrame(
                data=await self._capture_frame(session, clip),
                offset=settled,
                index=session.frame_count,
            )
            try:
                await resources.worker.append(frame)
            except CapacityExceededError as e:
                session.truncated = True
                session.error_code = "CAPTURE_TRUNCATED"
                session.frame_count += 1
                session.output_height = resources.worker.height
                logger.warning(
                    f"[CaptureOrchestrator] {session.session_id}: {e.message}, keeping partial capture"
                )
                break

            session.frame_count += 1
            session.output_height = resources.worker.height
            last_settled = settled

            # Step by the captured clip, which can be shorter than the container
            visible = clip.height
            progress = int((settled + visible) / max(geometry.scroll_height, 1) * 100)
            self._update_progress(session, progress, f"Captured {session.frame_count} frames")

            if settled >= geometry.max_scroll_top - 0.5:
                break
            target = settled + max(1.0, visible - self.settings.SCROLL_OVERLAP)
        else:
            logger.warning(
                f"[CaptureOrchestrator] {session.session_id}: stopped after "
                f"{self.settings.MAX_CAPTURE_ATTEMPTS} frames"
            )

        self._transition(session, CaptureStatus.STITCHING, "Stitching")
        resources.output = await resources.worker.finish()
        session.missing_rows = resources.worker.stats()["missing_rows"]
        if session.missing_rows:
            logger.warning(
                f"[CaptureOrchestrator] {session.session_id}: {session.missing_rows} rows were never captured"
            )
        await resources.worker.stop()
        resources.worker = None

    async def _finalize(self, session: CaptureSession, resources: _SessionResources):
        self._transition(session, CaptureStatus.FINALIZING, "Saving capture")
        output, resources.output = resources.output, None
        session.output_path = await self.exporter.export(output, resources.title, resources.url)

    async def _settle(self):
        await asyncio.sleep(self.settings.SETTLE_DELAY_MS / 1000)

    async def _capture_frame(self, session: CaptureSession, clip: CaptureRect) -> bytes:
        """Capture the visible clip, retrying throttled captures with exponential backoff"""
        max_retries = self.settings.CAPTURE_MAX_RETRIES
        for attempt in range(max_retries + 1):
            try:
                return await self.bridge.capture_visible(session.tab_id, clip.as_clip())
            except CaptureThrottledError as e:
                if attempt >= max_retries:
                    raise
                delay = self.settings.CAPTURE_RETRY_BACKOFF_MS * (2 ** attempt) / 1000
                logger.info(
                    f"[CaptureOrchestrator] Capture throttled ({e.message}), "
                    f"retrying in {delay:.2f}s ({attempt + 1}/{max_retries})"
                )
                await asyncio.sleep(delay)
