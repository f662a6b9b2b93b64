import pytest

from bookmark_sync.validators import (
    MAX_TITLE_LENGTH,
    MAX_URL_LENGTH,
    format_validation_error,
    validate_local_id,
    validate_position,
    validate_title,
    validate_url,
)


def test_format_validation_error():
    assert format_validation_error("Title", "is bad") == "Title is bad"


# validate_url tests
@pytest.mark.parametrize(
    "url",
    [
        "https://example.com",
        "http://localhost:8080/path?q=1",
        "ftp://files.example.com/pub",
        "file:///home/user/notes.html",
        "about:blank",
        "javascript:void(0)",
        "place:sort=8&maxResults=10",
    ],
)
def test_validate_url_accepts_browser_schemes(url):
    assert validate_url(url) == (True, "")


def test_validate_url_empty():
    valid, message = validate_url("   ")
    assert not valid
    assert "cannot be empty" in message


def test_validate_url_none():
    assert validate_url(None)[0] is False


def test_validate_url_unsupported_scheme():
    valid, message = validate_url("gopher://example.com")
    assert not valid
    assert "unsupported scheme 'gopher'" in message


def test_validate_url_without_scheme():
    assert validate_url("example.com")[0] is False


def test_validate_url_http_requires_host():
    valid, message = validate_url("https:///path-only")
    assert not valid
    assert "hostname" in message


def test_validate_url_too_long():
    url = "https://example.com/" + "a" * MAX_URL_LENGTH
    valid, message = validate_url(url)
    assert not valid
    assert "maximum length" in message


# validate_title tests
def test_validate_title_allows_empty_and_none():
    assert validate_title("") == (True, "")
    assert validate_title(None) == (True, "")


def test_validate_title_rejects_non_string():
    assert validate_title(42)[0] is False


def test_validate_title_too_long():
    assert validate_title("x" * (MAX_TITLE_LENGTH + 1))[0] is False


# validate_local_id tests
def test_validate_local_id():
    assert validate_local_id("abc123") == (True, "")
    assert validate_local_id("")[0] is False
    assert validate_local_id(None)[0] is False
    assert validate_local_id("x" * 256)[0] is False


# validate_position tests
def test_validate_position():
    assert validate_position(0) == (True, "")
    assert validate_position(None) == (True, "")
    assert validate_position(-1) == (False, "Position cannot be negative")
    assert validate_position(True)[0] is False
    assert validate_position("3")[0] is False
