"""
Longshot - Screenshot Stitcher
Composites ordered viewport frames into one tall image.

Scroll offsets are authoritative: the overlap between a new frame and the
composite is derived from the frame's offset, then verified against the
composite tail with row signatures and nudged by a few rows when sub-pixel
rounding moved the seam.

Memory bound: the composite plus one pending frame. Frames are released as
soon as they are folded in, and the previous frame is never kept (the seam is
compared against the composite itself).
"""

import asyncio
import io
import logging
from typing import Optional

import cv2
import numpy as np
from PIL import Image

from capture_models import ViewportFrame
from utils.error_handler import CapacityExceededError, ErrorContext, ExportFailedError

logger = logging.getLogger(__name__)

# Columns sampled per row signature
SIGNATURE_COLUMNS = 256


def encode_png(image: Image.Image) -> bytes:
    """Encode a PIL image as PNG bytes"""
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def frame_height(data: bytes) -> int:
    """Height of an encoded frame (reads the header only)"""
    with Image.open(io.BytesIO(data)) as img:
        return img.height


def decode_frame(data: bytes) -> np.ndarray:
    """Decode encoded frame bytes into an RGB uint8 array (rows, width, 3)"""
    with Image.open(io.BytesIO(data)) as img:
        return np.array(img.convert("RGB"), dtype=np.uint8)


class CompositeBuffer:
    """
    Growing output raster.

    Rows are appended sequentially; storage grows geometrically but never past
    max_height, so the composite can always be encoded.
    """

    def __init__(self, width: int, max_height: int, initial_rows: Optional[int] = None):
        if width <= 0:
            raise ValueError(f"Invalid composite width: {width}")
        self.width = width
        self.max_height = max_height
        rows = min(max_height, max(1, initial_rows or 2048))
        self._data: Optional[np.ndarray] = np.zeros((rows, width, 3), dtype=np.uint8)
        self.height = 0

    @property
    def capacity(self) -> int:
        return 0 if self._data is None else self._data.shape[0]

    @property
    def remaining(self) -> int:
        return self.max_height - self.height

    @property
    def released(self) -> bool:
        return self._data is None

    def append(self, rows: np.ndarray) -> int:
        """Append rows below the current content. Returns the number of rows added."""
        if self._data is None:
            raise RuntimeError("Composite buffer already released")
        count = rows.shape[0]
        if self.height + count > self.max_height:
            raise CapacityExceededError(self.max_height)

        self._ensure_capacity(self.height + count)
        self._data[self.height:self.height + count] = rows
        self.height += count
        return count

    def _ensure_capacity(self, needed: int):
        if needed <= self.capacity:
            return
        new_capacity = min(self.max_height, max(needed, self.capacity * 2))
        grown = np.zeros((new_capacity, self.width, 3), dtype=np.uint8)
        grown[:self.height] = self._data[:self.height]
        self._data = grown
        logger.debug(f"[CompositeBuffer] Grew to {new_capacity} rows")

    def tail(self, count: int) -> np.ndarray:
        """Last `count` rows of content"""
        return self._data[max(0, self.height - count):self.height]

    def view(self) -> np.ndarray:
        return self._data[:self.height]

    def release(self):
        self._data = None


class ScreenshotStitcher:
    """
    Stitching engine: folds viewport frames into a CompositeBuffer.

    Usage:
        stitcher.begin_session(expected_width=1280, scale=1.0)
        for frame in frames:
            stitcher.append_frame(frame, frame.offset)
        png = stitcher.finish()
        stitcher.release()
    """

    def __init__(self, settings):
        """
        Args:
            settings: LongshotDefaults (ceiling and seam parameters)
        """
        self.max_height = settings.MAX_OUTPUT_HEIGHT
        self.seam_rows = settings.SEAM_ROWS
        self.seam_tolerance = settings.SEAM_TOLERANCE
        self.seam_search_radius = settings.SEAM_SEARCH_RADIUS
        self.debug = settings.DEBUG

        self._buffer: Optional[CompositeBuffer] = None
        self._expected_width: Optional[int] = None
        self._scale = 1.0
        self._height_hint: Optional[int] = None
        self._origin: Optional[float] = None
        self._reset_counters()

    def _reset_counters(self):
        self.frames_appended = 0
        self.duplicates_skipped = 0
        self.seam_adjustments = 0
        self.seam_mismatches = 0
        self.gaps = 0
        self.missing_rows = 0

    @property
    def height(self) -> int:
        return 0 if self._buffer is None else self._buffer.height

    def begin_session(
        self,
        expected_width: Optional[int] = None,
        scale: float = 1.0,
        height_hint: Optional[int] = None,
    ):
        """
        Start a new composite.

        Args:
            expected_width: Output width in raster pixels (taken from the first frame if None)
            scale: Raster pixels per CSS pixel (device pixel ratio)
            height_hint: Expected raster height, used to size the first allocation
        """
        self.release()
        self._reset_counters()
        self._expected_width = expected_width
        self._scale = scale
        self._height_hint = height_hint
        self._origin = None
        logger.debug(f"[ScreenshotStitcher] Session started (width={expected_width}, scale={scale})")

    def append_frame(self, frame: ViewportFrame, offset: Optional[float] = None) -> int:
        """
        Fold one frame into the composite.

        Args:
            frame: Encoded frame; its data is released once folded
            offset: Scroll offset (CSS px) the frame was taken at; defaults to frame.offset

        Returns:
            Number of rows appended (0 for a duplicate frame)

        Raises:
            CapacityExceededError: the frame did not fit under the ceiling. Rows that
                fit were appended, so the composite sits exactly at the ceiling and
                finish() still works.
        """
        offset = frame.offset if offset is None else offset
        try:
            rows = decode_frame(frame.data)
        finally:
            frame.release()

        try:
            rows = self._normalize_width(rows)

            if self._buffer is None:
                hint = self._height_hint or rows.shape[0] * 4
                self._buffer = CompositeBuffer(rows.shape[1], self.max_height, initial_rows=hint)
                self._origin = offset
                overlap = 0
            else:
                overlap = self._compute_overlap(rows, offset)

            if overlap >= rows.shape[0]:
                self.duplicates_skipped += 1
                logger.info(f"[ScreenshotStitcher] Frame {frame.index} adds no new rows (offset={offset})")
                return 0

            new_rows = rows[overlap:]
            room = self._buffer.remaining
            if new_rows.shape[0] > room:
                if room > 0:
                    self._buffer.append(new_rows[:room])
                logger.warning(
                    f"[ScreenshotStitcher] Ceiling reached at frame {frame.index}: "
                    f"kept {room}/{new_rows.shape[0]} rows"
                )
                raise CapacityExceededError(self.max_height, appended_rows=room)

            appended = self._buffer.append(new_rows)
            self.frames_appended += 1
            if self.debug:
                logger.debug(
                    f"[ScreenshotStitcher] Frame {frame.index}: offset={offset}, trim={overlap}, "
                    f"+{appended} rows -> {self._buffer.height}"
                )
            return appended
        finally:
            del rows

    def _normalize_width(self, rows: np.ndarray) -> np.ndarray:
        width = rows.shape[1]
        if self._expected_width is None:
            self._expected_width = width
            return rows
        if width == self._expected_width:
            return rows

        logger.warning(f"[ScreenshotStitcher] Frame width {width} != {self._expected_width}, normalizing")
        if width > self._expected_width:
            return rows[:, :self._expected_width]
        padded = np.full((rows.shape[0], self._expected_width, 3), 255, dtype=np.uint8)
        padded[:, :width] = rows
        return padded

    def _compute_overlap(self, rows: np.ndarray, offset: float) -> int:
        """Rows at the top of `rows` already present in the composite"""
        start_row = int(round((offset - self._origin) * self._scale))
        overlap = self._buffer.height - start_row

        if overlap < 0:
            self.gaps += 1
            self.missing_rows += -overlap
            logger.warning(f"[ScreenshotStitcher] {-overlap} rows missing before offset {offset}")
            # Re-anchor so later offsets map onto the composite after the skipped rows
            self._origin = offset - self._buffer.height / self._scale
            return 0
        if overlap == 0 or overlap >= rows.shape[0]:
            return overlap
        return self._refine_seam(rows, overlap)

    def _refine_seam(self, rows: np.ndarray, overlap: int) -> int:
        """
        Verify the offset-derived seam with row signatures.

        Frame rows [cut - k, cut) must match the last k composite rows. If they
        do not, cuts within +/- seam_search_radius are tried; when none match
        within tolerance the offset-derived cut stands.
        """
        k = min(self.seam_rows, overlap, self._buffer.height)
        if k <= 0:
            return overlap

        reference = self._row_signature(self._buffer.tail(k))
        best_cut = overlap
        best_score = self._seam_difference(rows, overlap, k, reference)
        if best_score <= self.seam_tolerance:
            return overlap

        for delta in range(1, self.seam_search_radius + 1):
            for cut in (overlap - delta, overlap + delta):
                if cut < k or cut > rows.shape[0]:
                    continue
                score = self._seam_difference(rows, cut, k, reference)
                if score < best_score:
                    best_cut, best_score = cut, score

        if best_score <= self.seam_tolerance:
            self.seam_adjustments += 1
            logger.debug(f"[ScreenshotStitcher] Seam moved {best_cut - overlap:+d} rows (diff={best_score:.2f})")
            return best_cut

        self.seam_mismatches += 1
        logger.debug(f"[ScreenshotStitcher] Seam rows differ (diff={best_score:.2f}), trusting offset")
        return overlap

    def _seam_difference(self, rows: np.ndarray, cut: int, k: int, reference: np.ndarray) -> float:
        candidate = self._row_signature(rows[cut - k:cut])
        return float(np.mean(np.abs(candidate - reference)))

    def _row_signature(self, rows: np.ndarray) -> np.ndarray:
        """Grayscale, column-sampled rows"""
        gray = cv2.cvtColor(np.ascontiguousarray(rows), cv2.COLOR_RGB2GRAY)
        step = max(1, gray.shape[1] // SIGNATURE_COLUMNS)
        return gray[:, ::step].astype(np.float32)

    def finish(self) -> bytes:
        """Encode the composite as PNG"""
        if self._buffer is None or self._buffer.height == 0:
            raise ValueError("No frames to stitch")

        with ErrorContext("encoding composite", raise_as=ExportFailedError):
            data = encode_png(Image.fromarray(self._buffer.view()))
        logger.info(
            f"[ScreenshotStitcher] Encoded {self._buffer.width}x{self._buffer.height} "
            f"({self.frames_appended} frames, {len(data)} bytes)"
        )
        return data

    def stats(self) -> dict:
        return {
            "height": self.height,
            "frames_appended": self.frames_appended,
            "duplicates_skipped": self.duplicates_skipped,
            "seam_adjustments": self.seam_adjustments,
            "seam_mismatches": self.seam_mismatches,
            "gaps": self.gaps,
            "missing_rows": self.missing_rows,
        }

    def release(self):
        """Drop the composite buffer"""
        if self._buffer is not None:
            self._buffer.release()
            self._buffer = None


class StitchWorker:
    """
    Runs a ScreenshotStitcher as its own task.

    Commands go through a mailbox and are executed strictly in arrival order,
    one at a time, with the raster work off the event loop. Callers await each
    acknowledgement, so at most one frame is ever pending.
    """

    def __init__(self, stitcher: ScreenshotStitcher, name: str = "stitch-worker"):
        self.stitcher = stitcher
        self.name = name
        self._mailbox: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._task: Optional[asyncio.Task] = None
        self._handlers = {
            "begin": stitcher.begin_session,
            "append": stitcher.append_frame,
            "finish": stitcher.finish,
            "release": stitcher.release,
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def _run(self):
        while True:
            command, payload, reply = await self._mailbox.get()
            try:
                if command == "stop":
                    if not reply.done():
                        reply.set_result(None)
                    return
                result = await asyncio.to_thread(self._handlers[command], *payload)
                if not reply.done():
                    reply.set_result(result)
            except Exception as e:
                if not reply.done():
                    reply.set_exception(e)
            finally:
                self._mailbox.task_done()

    async def _call(self, command: str, *payload):
        if not self.running:
            raise RuntimeError(f"[{self.name}] not running")
        reply = asyncio.get_running_loop().create_future()
        await self._mailbox.put((command, payload, reply))
        return await reply

    async def begin(self, expected_width: Optional[int], scale: float = 1.0, height_hint: Optional[int] = None):
        await self._call("begin", expected_width, scale, height_hint)

    async def append(self, frame: ViewportFrame) -> int:
        return await self._call("append", frame)

    async def finish(self) -> bytes:
        return await self._call("finish")

    @property
    def height(self) -> int:
        return self.stitcher.height

    def stats(self) -> dict:
        """Engine counters; read between commands, never while one is pending"""
        return self.stitcher.stats()

    async def stop(self, timeout: float = 10.0):
        """Release buffers and end the task; safe to call on every exit path"""
        if self.running:
            try:
                await asyncio.wait_for(self._call("stop"), timeout=timeout)
                await self._task
            except asyncio.TimeoutError:
                logger.warning(f"[{self.name}] Did not stop in {timeout}s, cancelling")
                self._task.cancel()
        self._task = None
        self.stitcher.release()
