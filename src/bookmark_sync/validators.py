"""
Input validation for bookmark and folder payloads.

Used by the ingest service before touching the entity store so that a
bad item turns into a per-item error instead of a storage failure.
"""

from urllib.parse import urlparse

MAX_TITLE_LENGTH = 4096
MAX_URL_LENGTH = 8192

# Schemes a browser will happily store as a bookmark.
ALLOWED_URL_SCHEMES = (
    "http",
    "https",
    "ftp",
    "file",
    "about",
    "chrome",
    "data",
    "javascript",
    "mailto",
    "place",
)


# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Bookmark URL")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_local_id(local_id: str | None) -> tuple[bool, str]:
    """
    Validate a host-assigned node id.

    Returns:
        Tuple of (is_valid, error_message).
    """
    if local_id is None or not str(local_id).strip():
        return False, format_validation_error("Item id", "cannot be empty")
    if len(str(local_id)) > 255:
        return False, format_validation_error(
            "Item id", "exceeds maximum length of 255 characters"
        )
    return True, ""


def validate_title(title: str | None) -> tuple[bool, str]:
    """
    Validate a bookmark or folder title.

    Empty titles are allowed (browsers store untitled bookmarks), but the
    value must be a string and reasonably sized.
    """
    if title is None:
        return True, ""
    if not isinstance(title, str):
        return False, format_validation_error("Title", "must be a string")
    if len(title) > MAX_TITLE_LENGTH:
        return False, format_validation_error(
            "Title",
            f"exceeds maximum length of {MAX_TITLE_LENGTH} characters",
        )
    return True, ""


def validate_url(url: str | None) -> tuple[bool, str]:
    """
    Validate a bookmark URL.

    Validation rules:
        - Cannot be empty or whitespace-only
        - Cannot exceed MAX_URL_LENGTH characters
        - Must carry a scheme from ALLOWED_URL_SCHEMES
        - http(s) URLs must include a hostname
    """
    if not url or not url.strip():
        return False, format_validation_error("Bookmark URL", "cannot be empty")

    if len(url) > MAX_URL_LENGTH:
        return False, format_validation_error(
            "Bookmark URL",
            f"exceeds maximum length of {MAX_URL_LENGTH} characters",
        )

    parsed = urlparse(url.strip())
    if parsed.scheme.lower() not in ALLOWED_URL_SCHEMES:
        return False, format_validation_error(
            "Bookmark URL", f"has unsupported scheme '{parsed.scheme}'"
        )

    if parsed.scheme.lower() in ("http", "https") and not parsed.hostname:
        return False, format_validation_error(
            "Bookmark URL", "must include a hostname"
        )

    return True, ""


def validate_position(position: int | None) -> tuple[bool, str]:
    if position is None:
        return True, ""
    if isinstance(position, bool) or not isinstance(position, int):
        return False, format_validation_error("Position", "must be an integer")
    if position < 0:
        return False, format_validation_error("Position", "cannot be negative")
    return True, ""
