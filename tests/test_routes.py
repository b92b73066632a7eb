"""HTTP and WebSocket surface tests (TestClient, fake browser bridge)."""

import time

import pytest
from fastapi.testclient import TestClient

from browser_bridge import BrowserBridge
from server import create_app

from conftest import FakePage, decode_png, make_page_image, row_ids


@pytest.fixture
def page():
    return FakePage(make_page_image(2000))


@pytest.fixture
def client(settings, page):
    bridge = BrowserBridge(settings)
    bridge.register_page(page)
    app = create_app(settings, bridge=bridge, start_browser=False)
    with TestClient(app) as test_client:
        yield test_client


def wait_until_done(client, session_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        state = client.get(f"/api/capture/status/{session_id}").json()["data"]
        if state["status"] in ("completed", "error"):
            return state
        time.sleep(0.02)
    raise AssertionError(f"capture {session_id} did not finish")


def test_health(client):
    body = client.get("/api/health").json()
    assert body["status"] == "ok"
    assert body["browser_status"] == "stopped"


def test_list_tabs(client):
    tabs = client.get("/api/tabs").json()["data"]["tabs"]
    assert tabs == [{"tabId": "tab-1", "url": "https://example.com/articles/long-read"}]


def test_capture_start_status_and_output(client):
    started = client.post("/api/capture/tab-1/start")
    assert started.status_code == 200
    session_id = started.json()["data"]["sessionId"]

    state = wait_until_done(client, session_id)
    assert state["status"] == "completed"

    output = client.get(f"/api/capture/{session_id}/output")
    assert output.status_code == 200
    assert output.headers["content-type"] == "image/png"
    image = decode_png(output.content)
    assert image.shape[0] == 2000
    assert (row_ids(image) == range(2000)).all()


def test_unknown_session_is_404(client):
    assert client.get("/api/capture/status/missing").status_code == 404
    assert client.post("/api/capture/missing/cancel").status_code == 404
    assert client.get("/api/capture/missing/output").status_code == 404


def test_region_request_needs_a_target(client):
    response = client.post("/api/capture/tab-1/region", json={})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_MESSAGE"


def test_region_capture_by_rect(client):
    response = client.post(
        "/api/capture/tab-1/region", json={"rect": {"left": 0, "top": 0, "width": 10, "height": 20}}
    )
    session_id = response.json()["data"]["sessionId"]
    assert wait_until_done(client, session_id)["status"] == "completed"


def test_capture_settings_round_trip(client):
    assert client.get("/api/settings/capture").json()["data"] == {
        "preCapture": False,
        "preCaptureMaxDuration": 10000,
    }
    updated = client.put("/api/settings/capture", json={"preCaptureMaxDuration": 2500})
    assert updated.json()["data"]["preCaptureMaxDuration"] == 2500
    assert client.get("/api/settings/capture").json()["data"]["preCaptureMaxDuration"] == 2500


def test_message_endpoint(client):
    reply = client.post("/api/tabs/tab-1/messages", json={"type": "GET_CAPTURE_STATUS"}).json()
    assert reply == {"success": True, "captureState": None}

    invalid = client.post("/api/tabs/tab-1/messages", json={"type": "NOPE"}).json()
    assert invalid["success"] is False
    assert invalid["code"] == "INVALID_MESSAGE"


def test_close_tab(client, page):
    assert client.delete("/api/tabs/tab-1").status_code == 200
    assert page.closed
    assert client.delete("/api/tabs/tab-1").status_code == 400


def test_status_websocket_streams_progress(client):
    with client.websocket_connect("/ws/status") as websocket:
        session_id = client.post("/api/capture/tab-1/start").json()["data"]["sessionId"]
        statuses = []
        while not statuses or statuses[-1] not in ("completed", "error"):
            message = websocket.receive_json()
            assert message["type"] == "CAPTURE_STATUS"
            assert message["sessionId"] == session_id
            statuses.append(message["status"])

    assert statuses[-1] == "completed"
