"""
Error taxonomy for BioSync.

Raised internally by the store, the API client and the orchestrator, and
converted to ``ApiResponse`` failures at every public boundary.
"""


class SyncError(Exception):
    """Base class for all BioSync failures"""

    @property
    def error_type(self) -> str:
        return type(self).__name__


class RemoteConnectionError(SyncError):
    """Vendor or downstream host unreachable (refused, DNS, timeout)"""


class AuthError(SyncError):
    """Bad credentials (401) or a login response without a token"""


class NotFoundError(SyncError):
    """404 on the auth endpoint, usually a misconfigured server URL"""


class RemoteError(SyncError):
    """Any other remote failure"""


class ConfigError(SyncError):
    """Required settings missing or invalid"""


class NoOpError(SyncError):
    """Stop requested while nothing is running"""
