"""Bookmark tree synchronization: local agent engine and remote ingest server."""

__version__ = "0.4.0"
