"""Error taxonomy shared by the local agent and the ingest server.

Agent-side errors:

- ``CaptureError`` -- malformed host notification; logged and dropped.
- ``QueueError`` -- the durable change queue could not be read or written.
- ``TransportError`` -- network failure, non-2xx status or a bad envelope.
- ``SyncInProgressError`` -- a sync attempt was requested while one is running.

Server-side errors carry an HTTP ``status_code`` and a wire ``code`` so the
HTTP layer can render them through ``error_payload()``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


class BookmarkSyncError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# Agent side
# ---------------------------------------------------------------------------


class CaptureError(BookmarkSyncError):
    """A host notification could not be normalized into a change record."""


class QueueError(BookmarkSyncError):
    """The local queue store failed to read or persist its state."""


class TransportError(BookmarkSyncError):
    """A request to the ingest server failed.

    Attributes:
        status_code: HTTP status if a response was received, else ``None``.
        code: Error code from the server envelope, when present.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class SyncInProgressError(BookmarkSyncError):
    """Raised by the orchestrator entry guard when it is not idle."""


# ---------------------------------------------------------------------------
# Server side
# ---------------------------------------------------------------------------


class HttpError(BookmarkSyncError):
    """An error that maps onto an HTTP error response."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(HttpError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(HttpError):
    status_code = 404
    code = "NOT_FOUND_ERROR"


class PayloadTooLargeError(HttpError):
    status_code = 413
    code = "PAYLOAD_TOO_LARGE"


class IngestFatalError(HttpError):
    """An initial import failed and was rolled back as a whole."""

    code = "INITIAL_IMPORT_FAILED"


class IngestItemError(BookmarkSyncError):
    """One change in a batch could not be applied.

    Never aborts the batch; the ingest service turns it into a result
    entry and a persisted history error row.
    """

    def __init__(self, item_id: str, kind: str, message: str) -> None:
        super().__init__(message)
        self.item_id = item_id
        self.kind = kind
        self.message = message


def error_payload(exc: Exception) -> tuple[int, dict[str, Any]]:
    """Render *exc* as ``(status, envelope)`` for the HTTP layer.

    Unknown exceptions become a generic 500 so internal messages never
    leak to clients.
    """
    if isinstance(exc, HttpError):
        status = exc.status_code
        error: dict[str, Any] = {"code": exc.code, "message": exc.message}
        if exc.details is not None:
            error["details"] = exc.details
    else:
        status = 500
        error = {
            "code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
        }
    return status, {
        "success": False,
        "error": error,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
