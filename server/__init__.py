"""Server package for BioSync.

Provides entry points for both the system tray application (default) and the
console server. All modes serve the HTTP API with Waitress.
"""
import os
from typing import Optional, Tuple

from flask import Flask

from client import SyncService, create_sync_service
from shared.logging_config import get_server_logger
from shared.store import JsonStore

from .server import DEFAULT_SERVER_HOST, DEFAULT_SERVER_PORT, create_app, run_server

__all__ = ["create_app", "create_runtime", "run_server", "run_console_server",
           "run_server_tray", "server_address"]

logger = get_server_logger()


def server_address() -> Tuple[str, int]:
    """Bind address from BIOSYNC_HOST / BIOSYNC_PORT"""
    host = os.getenv('BIOSYNC_HOST', DEFAULT_SERVER_HOST)
    try:
        port = int(os.getenv('BIOSYNC_PORT', DEFAULT_SERVER_PORT))
    except ValueError:
        logger.warning(f"Invalid BIOSYNC_PORT, using {DEFAULT_SERVER_PORT}")
        port = DEFAULT_SERVER_PORT
    return host, port


def create_runtime(store: Optional[JsonStore] = None, resume: bool = True) -> Tuple[Flask, SyncService]:
    """Open the store, wire the sync service and the app, and resume a previous sync"""
    sync_service = create_sync_service(store)
    app = create_app(sync_service)

    if resume:
        result = sync_service.initialize_from_store()
        if not result.success:
            logger.warning(f"Sync not resumed: {result.error}")

    return app, sync_service


def run_console_server(host: Optional[str] = None, port: Optional[int] = None):
    """Run the server directly in console mode using Waitress"""
    default_host, default_port = server_address()
    host = host or default_host
    port = port or default_port

    app, sync_service = create_runtime()
    logger.info(f"Dashboard API available at http://{host}:{port}/api/")
    try:
        run_server(app, host=host, port=port)
    except KeyboardInterrupt:
        logger.info("Server stopped by user.")
    finally:
        sync_service.shutdown()


def run_server_tray():
    """Run the tray application (falls back to console mode without a tray)"""
    from .server_tray import main
    main()
