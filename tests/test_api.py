import http.client
import json
from pathlib import Path

import pytest

from bookmark_sync.config import ServerConfig
from bookmark_sync.server.app import start_in_background

OWNER = "owner-1"


@pytest.fixture
def server(tmp_path: Path):
    config = ServerConfig(port=0, db_path=tmp_path / "server.sqlite", max_body_bytes=4096)
    httpd, thread = start_in_background(config)
    yield httpd
    httpd.shutdown()
    httpd.server_close()
    thread.join(timeout=2)


def _request(server, method: str, path: str, body=None, headers=None):
    port = int(server.server_address[1])
    conn = http.client.HTTPConnection("127.0.0.1", port, timeout=5)
    try:
        raw = body if isinstance(body, bytes) else (
            json.dumps(body).encode("utf-8") if body is not None else None
        )
        request_headers = {"Content-Type": "application/json", **(headers or {})}
        conn.request(method, path, body=raw, headers=request_headers)
        resp = conn.getresponse()
        return resp.status, json.loads(resp.read().decode("utf-8"))
    finally:
        conn.close()


def _initial_import(server):
    return _request(
        server,
        "POST",
        "/api/v1/sync/initial",
        {
            "ownerId": OWNER,
            "instanceId": "inst-a",
            "folders": [
                {"id": "F1", "title": "Bar", "position": 0},
                {"id": "F2", "title": "Work", "parentId": "F1", "position": 0},
            ],
            "bookmarks": [
                {
                    "id": "B1",
                    "title": "Example",
                    "url": "https://example.com",
                    "parentId": "F2",
                    "position": 0,
                }
            ],
            "metadata": {"instanceId": "inst-a", "ownerId": OWNER},
        },
    )


def test_health(server) -> None:
    status, payload = _request(server, "GET", "/health")
    assert status == 200
    assert payload["status"] == "ok"


def test_unknown_route_is_404(server) -> None:
    status, payload = _request(server, "GET", "/api/v1/nope")
    assert status == 404
    assert payload["success"] is False
    assert payload["error"]["code"] == "NOT_FOUND_ERROR"


def test_status_requires_owner_header(server) -> None:
    status, payload = _request(server, "GET", "/api/v1/sync/status")
    assert status == 400
    assert payload["error"]["code"] == "VALIDATION_ERROR"


def test_status_then_initial_import_then_status(server) -> None:
    status, payload = _request(
        server, "GET", "/api/v1/sync/status", headers={"X-Owner-ID": OWNER}
    )
    assert status == 200
    assert payload["data"]["needsInitialSync"] is True

    status, payload = _initial_import(server)
    assert status == 200
    assert payload["data"]["action"] == "INITIAL_IMPORT_COMPLETE"
    assert payload["data"]["imported"] == {"folders": 2, "bookmarks": 1}

    status, payload = _request(
        server,
        "GET",
        "/api/v1/sync/status",
        headers={"X-Owner-ID": OWNER, "X-Instance-ID": "inst-a"},
    )
    assert payload["data"]["needsInitialSync"] is False
    assert payload["data"]["pendingChanges"]["adds"] == 0


def test_batch_with_item_error(server) -> None:
    _initial_import(server)
    changes = [
        {
            "id": "r1",
            "type": "UPDATE",
            "entityKind": "bookmark",
            "targetId": "B1",
            "data": {"type": "bookmark_update", "title": "Renamed"},
            "capturedAt": "2026-01-01T00:00:00Z",
        },
        {
            "id": "r2",
            "type": "UPDATE",
            "entityKind": "bookmark",
            "targetId": "missing",
            "data": {"type": "bookmark_update", "title": "x"},
            "capturedAt": "2026-01-01T00:00:01Z",
        },
    ]
    status, payload = _request(
        server,
        "POST",
        "/api/v1/sync",
        {"ownerId": OWNER, "instanceId": "inst-a", "changes": changes},
    )
    assert status == 200
    data = payload["data"]
    assert data["action"] == "SYNC_COMPLETE"
    assert data["changesApplied"] == 1
    assert [r["success"] for r in data["results"]] == [True, False]

    status, payload = _request(
        server,
        "GET",
        "/api/v1/sync/history?limit=1",
        headers={"X-Owner-ID": OWNER},
    )
    assert status == 200
    [entry] = payload["data"]
    assert entry["kind"] == "SYNC"
    assert entry["changesCount"] == 2
    assert entry["errors"][0]["itemId"] == "missing"


def test_batch_before_import_needs_initial_import(server) -> None:
    status, payload = _request(
        server, "POST", "/api/v1/sync", {"ownerId": OWNER, "changes": []}
    )
    assert status == 200
    assert payload["data"]["action"] == "NEED_INITIAL_IMPORT"


def test_batch_validation(server) -> None:
    status, payload = _request(server, "POST", "/api/v1/sync", {"changes": []})
    assert status == 400
    assert "ownerId" in payload["error"]["message"]

    status, payload = _request(
        server, "POST", "/api/v1/sync", {"ownerId": OWNER, "changes": "nope"}
    )
    assert status == 400

    status, payload = _request(server, "POST", "/api/v1/sync", b"{not json")
    assert status == 400
    assert payload["error"]["message"] == "Request body must be valid JSON"


def test_initial_import_validation_details(server) -> None:
    status, payload = _request(
        server,
        "POST",
        "/api/v1/sync/initial",
        {"ownerId": OWNER, "bookmarks": [{"id": "B1"}]},
    )
    assert status == 400
    assert payload["error"]["details"]


def test_failed_initial_import_is_500(server) -> None:
    status, payload = _request(
        server,
        "POST",
        "/api/v1/sync/initial",
        {"ownerId": OWNER, "bookmarks": [{"id": "B1", "url": "bogus"}]},
    )
    assert status == 500
    assert payload["error"]["code"] == "INITIAL_IMPORT_FAILED"


def test_body_too_large(server) -> None:
    # Declared length only; the server must refuse before reading a body.
    status, payload = _request(
        server, "POST", "/api/v1/sync", headers={"Content-Length": "100000"}
    )
    assert status == 413
    assert payload["error"]["code"] == "PAYLOAD_TOO_LARGE"


def test_non_numeric_content_length_is_400(server) -> None:
    status, payload = _request(
        server, "POST", "/api/v1/sync", headers={"Content-Length": "lots"}
    )
    assert status == 400
    assert payload["error"]["code"] == "VALIDATION_ERROR"
    assert "Content-Length" in payload["error"]["message"]


def test_history_limit_must_be_integer(server) -> None:
    status, _ = _request(
        server,
        "GET",
        "/api/v1/sync/history?limit=ten",
        headers={"X-Owner-ID": OWNER},
    )
    assert status == 400


def test_debug_stats(server) -> None:
    _initial_import(server)
    status, payload = _request(server, "GET", "/api/v1/debug/stats")
    assert status == 200
    counts = payload["data"]["counts"]
    assert counts["folders"] == 2
    assert counts["bookmarks"] == 1
    assert counts["client_instances"] == 1
