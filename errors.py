"""
Error taxonomy for the organizer.

Failures are tagged with an ErrorKind where they happen (storage, LLM, ledger)
so the pipeline can decide between retrying and marking a file permanently done
without inspecting error text.
"""

import socket
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    TIMEOUT = "timeout"
    BAD_REQUEST = "bad_request"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"


# Kinds that will never succeed on redelivery
PERMANENT_KINDS = frozenset({
    ErrorKind.PAYLOAD_TOO_LARGE,
    ErrorKind.TIMEOUT,
    ErrorKind.BAD_REQUEST,
    ErrorKind.RATE_LIMITED,
})


class OrganizerError(Exception):
    """Base exception for the organizer."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str, kind: Optional[ErrorKind] = None, status: Optional[int] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.status = status


class ConfigError(OrganizerError):
    """Raised when configuration is missing or invalid."""


class StorageError(OrganizerError):
    """Raised when a Drive call fails."""


class AIProviderError(OrganizerError):
    """Raised when an LLM call fails or returns a non-2xx status."""


class LedgerError(OrganizerError):
    """Raised when a spreadsheet read or append fails."""


class MalformedMessageError(OrganizerError):
    """Raised when a queue payload lacks fileId or fileName."""

    kind = ErrorKind.BAD_REQUEST


def kind_for_status(status: Optional[int]) -> ErrorKind:
    """Map an HTTP status code to an ErrorKind."""
    if status is None:
        return ErrorKind.TRANSIENT
    if status == 404:
        return ErrorKind.NOT_FOUND
    if status == 413:
        return ErrorKind.PAYLOAD_TOO_LARGE
    if status in (408, 504):
        return ErrorKind.TIMEOUT
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status == 400:
        return ErrorKind.BAD_REQUEST
    return ErrorKind.TRANSIENT


def classify_error(error: BaseException) -> ErrorKind:
    """
    Tag any exception with an ErrorKind.
    Organizer errors keep their own kind; timeouts from the standard library
    become TIMEOUT; everything else is TRANSIENT.
    """
    if isinstance(error, OrganizerError):
        return error.kind
    if isinstance(error, (TimeoutError, socket.timeout)):
        return ErrorKind.TIMEOUT
    return ErrorKind.TRANSIENT


def is_permanent(kind: ErrorKind) -> bool:
    return kind in PERMANENT_KINDS
