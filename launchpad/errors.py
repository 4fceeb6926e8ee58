"""Exception hierarchy for the sites service.

Every error carries the HTTP status it maps to and a short label. The app
turns them into ``{"error": label, "message": str(exc)}`` responses, so
handlers raise and never build error bodies themselves.
"""

from __future__ import annotations


class LaunchpadError(Exception):
    """Base class for all service errors."""

    status_code: int = 500
    error: str = "Internal error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.error)


class StorageError(LaunchpadError):
    """Blob store read, write or list failure. Retryable by the caller."""

    status_code = 500
    error = "Storage error"


class BlobNotFoundError(LaunchpadError):
    """A single key does not exist in the blob store."""

    status_code = 404
    error = "Not found"

    def __init__(self, key: str) -> None:
        super().__init__(f"Object not found: {key}")
        self.key = key


class AssetNotFoundError(LaunchpadError):
    """Every resolver strategy failed for a path that names a file."""

    status_code = 404
    error = "File not found"

    def __init__(self, path: str, tried: list[str] | None = None) -> None:
        super().__init__(f"File not found: {path}")
        self.path = path
        self.tried = tried or []


class SiteNotFoundError(LaunchpadError):
    """No stored site (or no entry document) for the given id."""

    status_code = 404
    error = "Site not found"


class UploadValidationError(LaunchpadError):
    """Malformed upload request (chunk numbers, missing files, bad site id)."""

    status_code = 400
    error = "Invalid upload"


class PayloadTooLargeError(LaunchpadError):
    """File size or file count limit exceeded."""

    status_code = 413
    error = "Payload too large"


class InvalidPathError(LaunchpadError):
    """Requested or uploaded path escapes the site folder."""

    status_code = 403
    error = "Invalid file path"


class AuthenticationError(LaunchpadError):
    """Owner token missing or invalid while authentication is required."""

    status_code = 401
    error = "Authentication failed"


class UploadFailedError(LaunchpadError):
    """Client side: a chunk could not be delivered after all retries."""

    status_code = 502
    error = "Upload failed"

    def __init__(self, message: str = "", retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable
