"""
Exception hierarchy shared by the stores, the remote client and the engine.
"""

from __future__ import annotations

from typing import Optional


class ChecksyncError(Exception):
    """Base class for all checksync failures."""


class LocalStoreError(ChecksyncError):
    """A local write could not be completed (quota, IO, serialization)."""


class RemoteStoreError(ChecksyncError):
    """The remote store answered with a non-2xx status.

    Args:
        message: Human-readable description.
        status_code: HTTP status code, if a response was received.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthExpiredError(RemoteStoreError):
    """The remote rejected the bearer token (401/403).

    Not retryable: the user has to sign in again.
    """


class TransportError(RemoteStoreError):
    """The remote could not be reached or returned an unreadable body."""


class ImportFormatError(ChecksyncError):
    """An import file is not a valid snapshot export."""


class AuthError(ChecksyncError):
    """An identity provider could not produce a signed-in identity."""
