"""Exception types raised by the sync core."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for sync failures."""


class AuthError(SyncError):
    """Raised when no usable access token is available for a service."""

    def __init__(self, service: str, message: str | None = None):
        self.service = service
        super().__init__(message or f"Not authenticated with {service}")


class UpstreamError(SyncError):
    """Raised when a catalog service answers with a non-success response."""

    def __init__(self, status: int | None, message: str, *, service: str | None = None):
        self.status = status
        self.message = message
        self.service = service
        prefix = f"{service} " if service else ""
        if status is None:
            super().__init__(f"{prefix}request failed: {message}")
        else:
            super().__init__(f"{prefix}API error {status}: {message}")
