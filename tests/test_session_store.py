"""Tests for status record persistence and retention."""

import json
import time

from capture_models import CaptureStatus, StatusRecord
from session_store import SessionStateStore


def record(session_id, tab_id="tab-1", status=CaptureStatus.CAPTURING, timestamp=None):
    return StatusRecord(
        session_id=session_id,
        tab_id=tab_id,
        status=status,
        message=status.value,
        progress=40,
        timestamp=time.time() if timestamp is None else timestamp,
    )


def test_put_get_and_latest_for_tab(tmp_path):
    store = SessionStateStore(str(tmp_path))
    store.put(record("a"))
    store.put(record("b"))
    store.put(record("c", tab_id="tab-2"))

    assert store.get("a").session_id == "a"
    assert store.get("missing") is None
    assert store.latest_for_tab("tab-1").session_id == "b"
    assert store.latest_for_tab("tab-2").session_id == "c"
    assert store.latest_for_tab("tab-3") is None


def test_reload_reports_unfinished_sessions_as_interrupted(tmp_path):
    store = SessionStateStore(str(tmp_path))
    store.put(record("running"))
    store.put(record("done", tab_id="tab-2", status=CaptureStatus.COMPLETED))

    reloaded = SessionStateStore(str(tmp_path))

    interrupted = reloaded.get("running")
    assert interrupted.status == CaptureStatus.ERROR
    assert interrupted.message == "Capture interrupted"
    assert reloaded.get("done").status == CaptureStatus.COMPLETED
    assert reloaded.latest_for_tab("tab-1").session_id == "running"


def test_purge_expired_keeps_active_records(tmp_path):
    store = SessionStateStore(str(tmp_path), retention_seconds=300)
    old = time.time() - 600
    store.put(record("old-done", status=CaptureStatus.COMPLETED, timestamp=old))
    store.put(record("old-error", tab_id="tab-2", status=CaptureStatus.ERROR, timestamp=old))
    store.put(record("running", tab_id="tab-3", timestamp=old))
    store.put(record("fresh", tab_id="tab-4", status=CaptureStatus.COMPLETED))

    assert store.purge_expired() == 2
    assert store.get("old-done") is None
    assert store.latest_for_tab("tab-2") is None
    assert store.get("running") is not None
    assert store.get("fresh") is not None


def test_file_contains_json_records(tmp_path):
    store = SessionStateStore(str(tmp_path))
    store.put(record("a"))
    data = json.loads((tmp_path / SessionStateStore.FILE_NAME).read_text())
    assert data["records"][0]["session_id"] == "a"
    assert data["records"][0]["status"] == "capturing"


def test_corrupt_file_starts_empty(tmp_path):
    (tmp_path / SessionStateStore.FILE_NAME).write_text("{not json")
    store = SessionStateStore(str(tmp_path))
    assert store.latest_for_tab("tab-1") is None
    store.put(record("a"))
    assert store.get("a") is not None


def test_progress_updates_are_not_written_until_status_changes(tmp_path):
    store = SessionStateStore(str(tmp_path))
    state_file = tmp_path / SessionStateStore.FILE_NAME

    def saved():
        return json.loads(state_file.read_text())["records"][0]

    store.put(record("a"))
    progressed = record("a")
    progressed.progress = 80
    store.put(progressed)
    assert store.get("a").progress == 80
    assert saved()["progress"] == 40

    store.put(record("a", status=CaptureStatus.STITCHING))
    assert saved()["status"] == "stitching"
