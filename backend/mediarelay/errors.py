"""Error taxonomy for the ingestion-and-archival pipeline.

Every failure surfaced by a backend, the messaging client or the whitelist
store is wrapped into one of these types at the seam where it happens, so the
pipeline only has to reason about a closed set of outcomes.
"""
from typing import Optional


class RelayError(Exception):
    """Base exception for relay errors."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AuthInitFailure(RelayError):
    """Raised when backend credentials could not be set up.

    The backend stays in degraded mode (refusing uploads) until a later
    ``ensure_ready()`` succeeds.
    """
    def __init__(self, message: str, backend: str):
        self.backend = backend
        super().__init__(f"Backend {backend} auth failed: {message}")


class TokenExpiry(AuthInitFailure):
    """Raised when an access token could not be refreshed."""


class DownloadFailure(RelayError):
    """Raised when message content could not be fetched from the platform."""
    def __init__(self, message: str, message_id: Optional[str] = None):
        self.message_id = message_id
        super().__init__(message)


class FolderResolutionFailure(RelayError):
    """Raised when a folder lookup or create failed on a backend."""
    def __init__(self, message: str, backend: str, segment: Optional[str] = None):
        self.backend = backend
        self.segment = segment
        super().__init__(f"Backend {backend} folder error: {message}")


class UploadFailure(RelayError):
    """Raised when writing file content to a backend failed."""
    def __init__(self, message: str, backend: str):
        self.backend = backend
        super().__init__(f"Backend {backend} upload error: {message}")


class DuplicateNameError(UploadFailure):
    """Raised when a backend rejects a create because the name is taken."""
    def __init__(self, name: str, backend: str):
        self.name = name
        super().__init__(f"name already exists: {name}", backend)


class WhitelistPersistFailure(RelayError):
    """Raised when the durable whitelist could not be read or written."""


class NotifyFailure(RelayError):
    """Raised when a reply or push message could not be delivered."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
