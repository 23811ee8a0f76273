"""Error taxonomy for the orchestration engine.

Four classes of failure:
- validation: bad input to a command, rejected before any state change
- guard: a transition precondition is not met
- external: git or provider subprocess failures
- cycle: never raised, reported as data by the resolver

classify_error() buckets arbitrary exceptions coming back from an agent
run so the supervisor can tell a user cancellation apart from a real
failure.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any


class OrchestrationError(Exception):
    """Base class for all engine errors."""

    pass


class ValidationError(OrchestrationError):
    """Command input is malformed or references nothing."""

    pass


class GuardError(OrchestrationError):
    """A transition precondition is not met.

    Attributes:
        reason: Human-readable blocking reason
        blocking: Ids of whatever blocks the transition (dependencies, sessions)
    """

    def __init__(self, reason: str, blocking: list[str] | None = None):
        self.reason = reason
        self.blocking = list(blocking or [])
        super().__init__(reason)


class ExternalError(OrchestrationError):
    """A git or provider subprocess failed."""

    pass


class ErrorType(str, Enum):
    """Classification bucket for agent run failures."""

    AUTHENTICATION = "authentication"
    ABORT = "abort"
    CANCELLATION = "cancellation"
    EXECUTION = "execution"
    UNKNOWN = "unknown"


@dataclass
class ErrorInfo:
    """Result of classify_error()."""

    type: ErrorType
    message: str
    is_abort: bool
    is_auth: bool
    is_cancellation: bool
    original_error: Any = None


_CANCELLATION_PATTERN = re.compile(r"cancelled|canceled|stopped|aborted", re.IGNORECASE)

# Case-sensitive on purpose: provider messages are matched verbatim
_AUTH_MARKERS = (
    "Authentication failed",
    "Invalid API key",
    "authentication_failed",
    "Fix external API key",
)


def _message_of(error: Any) -> str:
    if error is None:
        return ""
    return str(error)


def is_abort_error(error: Any) -> bool:
    """True for cancelled asyncio work or any exception mentioning an abort."""
    if not isinstance(error, BaseException):
        return False
    if isinstance(error, (asyncio.CancelledError, KeyboardInterrupt)):
        return True
    if type(error).__name__ in ("AbortError", "CancelledError"):
        return True
    return "abort" in str(error).lower()


def is_cancellation_error(message: str) -> bool:
    """True if the message describes a user-initiated stop."""
    return bool(_CANCELLATION_PATTERN.search(message or ""))


def is_authentication_error(message: str) -> bool:
    """True if the message looks like a provider authentication failure."""
    if not message:
        return False
    return any(marker in message for marker in _AUTH_MARKERS)


def classify_error(error: Any) -> ErrorInfo:
    """Classify an error from an agent run.

    Priority is authentication > abort > cancellation > execution. Inputs
    that are not exceptions classify as unknown.
    """
    message = _message_of(error)
    is_auth = is_authentication_error(message)
    is_abort = is_abort_error(error)
    is_cancel = is_cancellation_error(message)

    if is_auth:
        error_type = ErrorType.AUTHENTICATION
    elif is_abort:
        error_type = ErrorType.ABORT
    elif is_cancel:
        error_type = ErrorType.CANCELLATION
    elif isinstance(error, BaseException):
        error_type = ErrorType.EXECUTION
    else:
        error_type = ErrorType.UNKNOWN

    if not message:
        if error_type == ErrorType.UNKNOWN:
            message = "Unknown error"
        else:
            message = type(error).__name__

    return ErrorInfo(
        type=error_type,
        message=message,
        is_abort=is_abort,
        is_auth=is_auth,
        is_cancellation=is_cancel,
        original_error=error,
    )


def user_friendly_message(error: Any) -> str:
    """Message suitable for showing to a user."""
    info = classify_error(error)
    if info.is_abort:
        return "Operation was cancelled"
    if info.is_auth:
        return "Authentication failed. Please check your API key."
    return info.message
