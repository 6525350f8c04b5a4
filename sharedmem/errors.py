"""
Error taxonomy for sharedmem.

Every exception here is a business failure: the action dispatcher turns
it into a ``success: false`` payload.  Anything else escaping the core is
an internal fault.

Not-found and unauthorized outcomes are not exceptions; see
``sharedmem.store.DeleteResult``.
"""

from __future__ import annotations


class SharedMemoryError(Exception):
    """Base exception for all sharedmem business failures."""


class InputError(SharedMemoryError):
    """Raised when a required field is missing or malformed."""


# ---------------------------------------------------------------------------
# URL safety
# ---------------------------------------------------------------------------


class SafetyRejection(SharedMemoryError):
    """Raised when the URL validator refuses a fetch target."""


class InvalidURL(SafetyRejection):
    """The URL cannot be parsed or its host cannot be resolved."""


class DisallowedScheme(SafetyRejection):
    """The URL scheme is not http or https."""


class BlockedHost(SafetyRejection):
    """The host is localhost or maps to a private/reserved address."""


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------


class FetchFailure(SharedMemoryError):
    """Raised when a bounded fetch cannot produce a complete body."""


class TooManyRedirects(FetchFailure):
    """The redirect chain exceeded the hop limit."""


class RedirectMissingLocation(FetchFailure):
    """A redirect response carried no Location header."""


class HTTPStatusError(FetchFailure):
    """A non-redirect response had a status other than 200."""

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}")


class ResponseTooLarge(FetchFailure):
    """The streamed body exceeded the byte cap."""


class FetchTimeout(FetchFailure):
    """A hop did not complete within the time limit."""


class NetworkError(FetchFailure):
    """Any other transport-level failure (refused, reset, TLS, ...)."""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class BackendFailure(SharedMemoryError):
    """The active storage backend is unreachable or rejected an operation."""
