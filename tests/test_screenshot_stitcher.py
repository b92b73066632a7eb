"""
Tests for the stitching engine: offset-driven compositing, seam refinement,
the raster ceiling and the worker task.
"""

import asyncio

import numpy as np
import pytest

from capture_models import ViewportFrame
from config.defaults import LongshotDefaults
from screenshot_stitcher import CompositeBuffer, ScreenshotStitcher, StitchWorker, frame_height
from utils.error_handler import CapacityExceededError

from conftest import decode_png, make_page_image, png_bytes, row_ids


def frame_at(image, offset, viewport=800, index=0, reported=None):
    rows = image[offset:offset + viewport]
    return ViewportFrame(data=png_bytes(rows), offset=offset if reported is None else reported, index=index)


def stitch(image, offsets, viewport=800, **settings):
    stitcher = ScreenshotStitcher(LongshotDefaults(**settings))
    stitcher.begin_session(expected_width=image.shape[1])
    for index, offset in enumerate(offsets):
        stitcher.append_frame(frame_at(image, offset, viewport, index))
    return stitcher


class TestCompositeBuffer:

    def test_grows_geometrically(self):
        buffer = CompositeBuffer(width=4, max_height=100, initial_rows=2)
        buffer.append(np.zeros((3, 4, 3), dtype=np.uint8))
        assert buffer.height == 3
        assert buffer.capacity >= 3

        buffer.append(np.ones((10, 4, 3), dtype=np.uint8))
        assert buffer.height == 13
        assert buffer.view()[12, 0, 0] == 1
        assert buffer.capacity <= 100

    def test_never_exceeds_max_height(self):
        buffer = CompositeBuffer(width=4, max_height=10, initial_rows=8)
        buffer.append(np.zeros((10, 4, 3), dtype=np.uint8))
        assert buffer.remaining == 0
        with pytest.raises(CapacityExceededError):
            buffer.append(np.zeros((1, 4, 3), dtype=np.uint8))

    def test_tail_returns_last_rows(self):
        buffer = CompositeBuffer(width=1, max_height=10)
        rows = np.arange(5, dtype=np.uint8).reshape(5, 1, 1).repeat(3, axis=2)
        buffer.append(rows)
        assert buffer.tail(2)[:, 0, 0].tolist() == [3, 4]

    def test_release(self):
        buffer = CompositeBuffer(width=1, max_height=10)
        buffer.release()
        assert buffer.released
        with pytest.raises(RuntimeError):
            buffer.append(np.zeros((1, 1, 3), dtype=np.uint8))


class TestScreenshotStitcher:

    def test_round_trip_reconstructs_page(self):
        image = make_page_image(2000)
        stitcher = stitch(image, [0, 725, 1200])

        output = decode_png(stitcher.finish())
        assert output.shape == (2000, 64, 3)
        assert np.array_equal(row_ids(output), np.arange(2000))
        assert stitcher.seam_mismatches == 0

    def test_round_trip_with_short_viewport(self):
        image = make_page_image(1234)
        offsets = list(range(0, 934, 225)) + [934]
        stitcher = stitch(image, offsets, viewport=300)

        output = decode_png(stitcher.finish())
        assert np.array_equal(row_ids(output), np.arange(1234))

    def test_duplicate_frame_appends_nothing(self):
        image = make_page_image(2000)
        stitcher = ScreenshotStitcher(LongshotDefaults())
        stitcher.begin_session()
        assert stitcher.append_frame(frame_at(image, 0)) == 800
        assert stitcher.append_frame(frame_at(image, 0, index=1)) == 0
        assert stitcher.duplicates_skipped == 1
        assert stitcher.height == 800

    def test_gap_appends_whole_frame(self):
        image = make_page_image(2000)
        stitcher = stitch(image, [0, 1000])
        assert stitcher.gaps == 1
        assert stitcher.height == 1600
        assert stitcher.missing_rows == 200
        assert stitcher.stats()["missing_rows"] == 200

    def test_frames_after_a_gap_line_up_with_the_composite(self):
        image = make_page_image(2000)
        stitcher = stitch(image, [0, 1000, 1200])

        output = decode_png(stitcher.finish())
        expected = np.concatenate([np.arange(800), np.arange(1000, 2000)])
        assert np.array_equal(row_ids(output), expected)
        assert stitcher.seam_mismatches == 0

    def test_device_pixel_ratio_scales_offsets(self):
        image = make_page_image(2000)
        hidpi = image.repeat(2, axis=0).repeat(2, axis=1)
        stitcher = ScreenshotStitcher(LongshotDefaults())
        stitcher.begin_session(expected_width=128, scale=2.0)
        for index, offset in enumerate([0, 725, 1200]):
            rows = hidpi[offset * 2:(offset + 800) * 2]
            stitcher.append_frame(ViewportFrame(data=png_bytes(rows), offset=offset, index=index))

        output = decode_png(stitcher.finish())
        assert output.shape == (4000, 128, 3)
        assert np.array_equal(row_ids(output[::2]), np.arange(2000))
        assert np.array_equal(row_ids(output[1::2]), np.arange(2000))

    def test_seam_refinement_corrects_rounding(self):
        image = make_page_image(2000)
        stitcher = ScreenshotStitcher(LongshotDefaults())
        stitcher.begin_session(expected_width=64)
        stitcher.append_frame(frame_at(image, 0))
        # Frame really taken at 725 but reported two pixels early
        stitcher.append_frame(frame_at(image, 725, reported=723, index=1))

        assert stitcher.seam_adjustments == 1
        output = decode_png(stitcher.finish())
        assert np.array_equal(row_ids(output), np.arange(1525))

    def test_unmatched_seam_keeps_offset_trim(self):
        image = make_page_image(2000)
        other = make_page_image(2000)[::-1].copy()
        stitcher = ScreenshotStitcher(LongshotDefaults())
        stitcher.begin_session(expected_width=64)
        stitcher.append_frame(frame_at(image, 0))
        stitcher.append_frame(frame_at(other, 725, index=1))

        assert stitcher.seam_mismatches == 1
        assert stitcher.height == 1525

    def test_ceiling_fills_exactly_then_raises(self):
        image = make_page_image(2000)
        stitcher = ScreenshotStitcher(LongshotDefaults(MAX_OUTPUT_HEIGHT=1000))
        stitcher.begin_session(expected_width=64)
        stitcher.append_frame(frame_at(image, 0))

        with pytest.raises(CapacityExceededError) as exc_info:
            stitcher.append_frame(frame_at(image, 725, index=1))

        assert exc_info.value.appended_rows == 200
        assert stitcher.height == 1000
        output = decode_png(stitcher.finish())
        assert np.array_equal(row_ids(output), np.arange(1000))

    def test_first_frame_taller_than_ceiling(self):
        image = make_page_image(800)
        stitcher = ScreenshotStitcher(LongshotDefaults(MAX_OUTPUT_HEIGHT=500))
        stitcher.begin_session()
        with pytest.raises(CapacityExceededError):
            stitcher.append_frame(frame_at(image, 0))
        assert stitcher.height == 500

    def test_narrow_frame_is_padded(self):
        image = make_page_image(1000, width=60)
        stitcher = ScreenshotStitcher(LongshotDefaults())
        stitcher.begin_session(expected_width=64)
        stitcher.append_frame(frame_at(image, 0))
        output = decode_png(stitcher.finish())
        assert output.shape[1] == 64
        assert (output[:, 60:] == 255).all()

    def test_frame_released_after_append(self):
        image = make_page_image(1000)
        frame = frame_at(image, 0)
        stitcher = ScreenshotStitcher(LongshotDefaults())
        stitcher.begin_session()
        stitcher.append_frame(frame)
        assert frame.data == b""

    def test_finish_without_frames(self):
        stitcher = ScreenshotStitcher(LongshotDefaults())
        stitcher.begin_session()
        with pytest.raises(ValueError):
            stitcher.finish()

    def test_release_drops_composite(self):
        stitcher = stitch(make_page_image(1000), [0])
        stitcher.release()
        assert stitcher.height == 0

    def test_frame_height_reads_header(self):
        assert frame_height(png_bytes(make_page_image(123))) == 123


class TestStitchWorker:

    def test_appends_in_order_and_releases_on_stop(self):
        image = make_page_image(2000)
        stitcher = ScreenshotStitcher(LongshotDefaults())

        async def run():
            worker = StitchWorker(stitcher)
            worker.start()
            await worker.begin(64, 1.0, 2000)
            appended = [await worker.append(frame_at(image, offset, index=i))
                        for i, offset in enumerate([0, 725, 1200])]
            data = await worker.finish()
            await worker.stop()
            return worker, appended, data

        worker, appended, data = asyncio.run(run())
        assert appended == [800, 725, 475]
        assert np.array_equal(row_ids(decode_png(data)), np.arange(2000))
        assert not worker.running
        assert stitcher.height == 0

    def test_propagates_capacity_error(self):
        image = make_page_image(2000)
        stitcher = ScreenshotStitcher(LongshotDefaults(MAX_OUTPUT_HEIGHT=900))

        async def run():
            worker = StitchWorker(stitcher)
            worker.start()
            await worker.begin(64)
            await worker.append(frame_at(image, 0))
            try:
                with pytest.raises(CapacityExceededError):
                    await worker.append(frame_at(image, 725, index=1))
                return worker.height
            finally:
                await worker.stop()

        assert asyncio.run(run()) == 900

    def test_rejects_calls_when_not_running(self):
        async def run():
            worker = StitchWorker(ScreenshotStitcher(LongshotDefaults()))
            with pytest.raises(RuntimeError):
                await worker.finish()
            await worker.stop()

        asyncio.run(run())
