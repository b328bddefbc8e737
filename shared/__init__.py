"""Shared package for BioSync.

Models, persistence, reconciliation and logging used by the sync engine,
the HTTP server and the tray application.
"""

__VERSION__ = "1.2.0"
APP_NAME = "BioSync"
