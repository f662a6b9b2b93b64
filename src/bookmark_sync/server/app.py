"""Ingest server lifecycle: build, start in the background, serve forever."""

from __future__ import annotations

import logging
import threading
from http.server import ThreadingHTTPServer

from ..config import ServerConfig
from .api import build_sync_handler
from .store import EntityStore

logger = logging.getLogger(__name__)


def create_server(config: ServerConfig) -> ThreadingHTTPServer:
    """Create the schema if needed and bind the HTTP server.

    ``config.port`` may be 0 to bind an ephemeral port; read the chosen
    port back from ``server.server_address``.
    """
    with EntityStore(config.db_path):
        pass
    handler = build_sync_handler(
        config.db_path,
        max_body_bytes=config.max_body_bytes,
        max_changes=config.max_changes,
    )
    server = ThreadingHTTPServer((config.host, config.port), handler)
    server.daemon_threads = True
    host, port = server.server_address[:2]
    logger.info("Ingest server bound to %s:%s (db=%s)", host, port, config.db_path)
    return server


def start_in_background(
    config: ServerConfig,
) -> tuple[ThreadingHTTPServer, threading.Thread]:
    """Start the server on a daemon thread; call ``server.shutdown()`` to stop."""
    server = create_server(config)
    thread = threading.Thread(
        target=server.serve_forever, name="bookmark-sync-server", daemon=True
    )
    thread.start()
    return server, thread


def serve(config: ServerConfig) -> None:
    """Serve until interrupted."""
    server = create_server(config)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Ingest server interrupted")
    finally:
        server.server_close()
        logger.info("Ingest server stopped")
