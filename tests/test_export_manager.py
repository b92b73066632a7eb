"""Tests for writing finished captures."""

import asyncio
from datetime import datetime

import pytest

from export_manager import ExportManager, slugify
from utils.error_handler import ExportFailedError


def test_filename_format(tmp_path):
    exporter = ExportManager(str(tmp_path))
    name = exporter.build_filename(
        "Quarterly Report: Q3 / 2024", "https://docs.example.org/reports/q3", datetime(2024, 10, 1, 9, 5, 7)
    )
    assert name == "quarterly-report-q3-2024_docs.example.org_20241001-090507.png"


def test_slug_fallback_and_length():
    assert slugify("") == "capture"
    assert slugify("!!!") == "capture"
    assert len(slugify("word " * 40)) <= 60
    assert not slugify("word " * 40).endswith("-")


def test_missing_host_uses_local(tmp_path):
    name = ExportManager(str(tmp_path)).build_filename("Notes", "", datetime(2024, 1, 2, 3, 4, 5))
    assert name == "notes_local_20240102-030405.png"


def test_export_writes_without_overwriting(tmp_path):
    exporter = ExportManager(str(tmp_path / "out"))

    async def run():
        first = await exporter.export(b"one", "Same", "https://example.com")
        second = await exporter.export(b"two", "Same", "https://example.com")
        return first, second

    first, second = asyncio.run(run())
    assert first != second
    with open(first, "rb") as f:
        assert f.read() == b"one"
    with open(second, "rb") as f:
        assert f.read() == b"two"


def test_unwritable_output_dir_raises(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    exporter = ExportManager(str(blocker / "nested"))

    with pytest.raises(ExportFailedError) as exc_info:
        asyncio.run(exporter.export(b"png", "Title", "https://example.com"))
    assert exc_info.value.code == "EXPORT_FAILED"
