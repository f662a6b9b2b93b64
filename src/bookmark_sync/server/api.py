"""HTTP wire layer for the ingest service.

Routes:

- ``GET  /health``
- ``GET  /api/v1/sync/status``   (``X-Owner-ID`` required)
- ``POST /api/v1/sync``          incremental batch
- ``POST /api/v1/sync/initial``  full tree upload
- ``GET  /api/v1/sync/history``  (``X-Owner-ID`` required)
- ``GET  /api/v1/debug/stats``

Successful responses are ``{"success": true, "data": ...}``; failures use
the envelope built by ``errors.error_payload``.  Each request opens its own
``EntityStore`` so the handler is safe under ``ThreadingHTTPServer``.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

from pydantic import ValidationError as PydanticValidationError

from ..errors import (
    HttpError,
    NotFoundError,
    PayloadTooLargeError,
    ValidationError,
    error_payload,
)
from ..sync.models import DeviceMetadata, InitialImportRequest
from .db import DEFAULT_DB_PATH
from .ingest import DEFAULT_MAX_CHANGES, IngestService
from .store import EntityStore

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
DEFAULT_MAX_BODY_BYTES = 10 * 1024 * 1024


def _read_body(handler: BaseHTTPRequestHandler, max_bytes: int) -> bytes:
    try:
        length = int(handler.headers.get("Content-Length", "0") or 0)
    except ValueError:
        raise ValidationError("Content-Length must be an integer") from None
    if length <= 0:
        return b""
    if length > max_bytes:
        raise PayloadTooLargeError(
            f"Request body of {length} bytes exceeds {max_bytes} bytes"
        )
    return handler.rfile.read(length)


def _parse_json_body(raw: bytes) -> dict[str, Any]:
    if not raw:
        raise ValidationError("Request body is required")
    try:
        data = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _send_json(
    handler: BaseHTTPRequestHandler, payload: dict[str, Any], status: int = 200
) -> None:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


def _parse_metadata(raw: Any) -> DeviceMetadata | None:
    if raw is None:
        return None
    try:
        return DeviceMetadata.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Invalid device metadata", details=_validation_details(exc)
        ) from None


def _validation_details(exc: PydanticValidationError) -> list[dict[str, str]]:
    return [
        {
            "field": ".".join(str(p) for p in err["loc"]),
            "message": err["msg"],
        }
        for err in exc.errors()
    ]


def _require_str(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value


def build_sync_handler(
    db_path: Path | str | None = None,
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
    max_changes: int = DEFAULT_MAX_CHANGES,
):
    """Return a request handler class bound to *db_path*."""
    resolved_db = Path(
        db_path or os.environ.get("BOOKMARK_SYNC_DB") or DEFAULT_DB_PATH
    )

    class SyncHandler(BaseHTTPRequestHandler):
        server_version = "BookmarkSync/1"

        def log_message(self, format: str, *args: object) -> None:  # noqa: A002
            logger.debug("%s - %s", self.address_string(), format % args)

        # ------------------------------------------------------------------
        # Dispatch
        # ------------------------------------------------------------------

        def do_GET(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            query = parse_qs(parsed.query)
            routes = {
                "/health": self._health,
                f"{API_PREFIX}/sync/status": self._status,
                f"{API_PREFIX}/sync/history": self._history,
                f"{API_PREFIX}/debug/stats": self._stats,
            }
            self._dispatch(routes.get(parsed.path), query)

        def do_POST(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            routes = {
                f"{API_PREFIX}/sync": self._sync,
                f"{API_PREFIX}/sync/initial": self._initial_import,
            }
            self._dispatch(routes.get(parsed.path), {})

        def _dispatch(self, route, query: dict[str, list[str]]) -> None:
            try:
                if route is None:
                    raise NotFoundError(f"Route {self.command} {self.path} not found")
                status, payload = route(query)
            except HttpError as exc:
                if exc.status_code >= 500:
                    logger.error("%s %s failed: %s", self.command, self.path, exc)
                status, payload = error_payload(exc)
            except Exception as exc:
                logger.exception("Unhandled error in %s %s", self.command, self.path)
                status, payload = error_payload(exc)
            _send_json(self, payload, status=status)

        def _service(self) -> tuple[EntityStore, IngestService]:
            store = EntityStore(resolved_db)
            return store, IngestService(store, max_changes=max_changes)

        def _owner_header(self) -> str:
            owner_id = self.headers.get("X-Owner-ID")
            if not owner_id:
                raise ValidationError("X-Owner-ID header is required")
            return owner_id

        # ------------------------------------------------------------------
        # Routes
        # ------------------------------------------------------------------

        def _health(self, query):
            return 200, {
                "status": "ok",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

        def _status(self, query):
            owner_id = self._owner_header()
            instance_id = self.headers.get("X-Instance-ID")
            since = (query.get("since") or [None])[0]
            store, service = self._service()
            try:
                result = service.check_status(
                    owner_id, since=since, instance_id=instance_id
                )
            finally:
                store.close()
            return 200, _ok(result.to_wire())

        def _sync(self, query):
            body = _parse_json_body(_read_body(self, max_body_bytes))
            owner_id = _require_str(body.get("ownerId"), "ownerId")
            changes = body.get("changes")
            if not isinstance(changes, list):
                raise ValidationError("changes must be an array")
            metadata = _parse_metadata(body.get("metadata"))
            store, service = self._service()
            try:
                result = service.apply_batch(
                    owner_id,
                    changes,
                    metadata=metadata,
                    instance_id=body.get("instanceId"),
                    since=body.get("since"),
                )
            finally:
                store.close()
            return 200, _ok(result.to_wire())

        def _initial_import(self, query):
            body = _parse_json_body(_read_body(self, max_body_bytes))
            try:
                request = InitialImportRequest.model_validate(body)
            except PydanticValidationError as exc:
                raise ValidationError(
                    "Invalid initial import request",
                    details=_validation_details(exc),
                ) from None
            _require_str(request.owner_id, "ownerId")
            store, service = self._service()
            try:
                result = service.apply_initial_import(
                    request.owner_id,
                    request.folders,
                    request.bookmarks,
                    metadata=request.metadata,
                    instance_id=request.instance_id,
                )
            finally:
                store.close()
            return 200, _ok(result.to_wire())

        def _history(self, query):
            owner_id = self._owner_header()
            raw_limit = (query.get("limit") or ["10"])[0]
            try:
                limit = max(1, min(int(raw_limit), 100))
            except ValueError:
                raise ValidationError("limit must be an integer") from None
            store, service = self._service()
            try:
                entries = service.history(owner_id, limit=limit)
            finally:
                store.close()
            return 200, _ok(entries)

        def _stats(self, query):
            store, service = self._service()
            try:
                stats = service.stats()
            finally:
                store.close()
            return 200, _ok(stats)

    return SyncHandler
