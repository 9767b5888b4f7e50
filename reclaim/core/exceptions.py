"""Custom exception hierarchy for Reclaim.

All reclaim-specific exceptions inherit from ReclaimError. Provider
failures are translated into ``ProviderError`` at the client boundary,
carrying a closed ``ErrorKind`` so upper layers never look at vendor
error codes.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

from botocore.exceptions import ClientError


class ErrorKind(StrEnum):
    """Closed classification of provider failures."""

    NOT_FOUND = "not-found"
    ALREADY_EXISTS = "already-exists"
    PERMISSION_DENIED = "permission-denied"
    RATE_LIMITED = "rate-limited"
    RECENTLY_DELETED = "recently-deleted"
    UNKNOWN = "unknown"


_CODES: Final[dict[str, ErrorKind]] = {
    "AWS.SimpleQueueService.NonExistentQueue": ErrorKind.NOT_FOUND,
    "QueueDoesNotExist": ErrorKind.NOT_FOUND,
    "ResourceNotFoundException": ErrorKind.NOT_FOUND,
    "QueueAlreadyExists": ErrorKind.ALREADY_EXISTS,
    "QueueNameExists": ErrorKind.ALREADY_EXISTS,
    "ResourceAlreadyExistsException": ErrorKind.ALREADY_EXISTS,
    "AccessDenied": ErrorKind.PERMISSION_DENIED,
    "AccessDeniedException": ErrorKind.PERMISSION_DENIED,
    "UnauthorizedOperation": ErrorKind.PERMISSION_DENIED,
    "Throttling": ErrorKind.RATE_LIMITED,
    "ThrottlingException": ErrorKind.RATE_LIMITED,
    "RequestThrottled": ErrorKind.RATE_LIMITED,
    "TooManyRequestsException": ErrorKind.RATE_LIMITED,
    "RequestLimitExceeded": ErrorKind.RATE_LIMITED,
    "AWS.SimpleQueueService.QueueDeletedRecently": ErrorKind.RECENTLY_DELETED,
    "QueueDeletedRecently": ErrorKind.RECENTLY_DELETED,
}


class ReclaimError(Exception):
    """Base exception for all Reclaim errors."""


class ConfigurationError(ReclaimError):
    """Raised for invalid configuration or missing required settings."""


class ProviderError(ReclaimError):
    """A cloud provider call failed."""

    def __init__(self, kind: ErrorKind, operation: str, code: str = "", message: str = "") -> None:
        self.kind = kind
        self.operation = operation
        self.code = code
        super().__init__(f"{operation} failed ({kind}): {code} {message}".rstrip())

class MalformedPayloadError(ReclaimError):
    """Raised when a queue message cannot be parsed into a notification."""


def error_kind(code: str) -> ErrorKind:
    return _CODES.get(code, ErrorKind.UNKNOWN)


def translate(exc: ClientError, operation: str) -> ProviderError:
    """Convert a botocore ClientError into a ProviderError."""
    error = exc.response.get("Error", {})
    code = error.get("Code", "")
    return ProviderError(error_kind(code), operation, code, error.get("Message", ""))


def is_kind(exc: BaseException, *kinds: ErrorKind) -> bool:
    return isinstance(exc, ProviderError) and exc.kind in kinds


def is_rate_limited(exc: BaseException) -> bool:
    return is_kind(exc, ErrorKind.RATE_LIMITED)
