"""Error classification for the feedback relay.

Provides the exception hierarchy shared by the broker and the poller and a
small classifier used to decide how an arbitrary failure is reported.
"""

import errno
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """Categories of errors for handling decisions."""

    VALIDATION = "validation"  # Bad tool arguments or request bodies
    NOT_FOUND = "not_found"    # Unknown or already resolved request id
    TRANSIENT = "transient"    # Broker unreachable, timeouts - port has no broker
    FATAL = "fatal"            # Bind failures other than address-in-use


class RelayError(Exception):
    """Base class for all relay errors."""

    category: ErrorCategory = ErrorCategory.FATAL
    status_code: int = 500


class InvalidParamsError(RelayError):
    """A tool-call parameter failed validation."""

    category = ErrorCategory.VALIDATION
    status_code = 400


class InvalidRequestBodyError(RelayError):
    """A submit body could not be parsed or validated."""

    category = ErrorCategory.VALIDATION
    status_code = 400

    def __init__(self, message: str = "Invalid request body"):
        super().__init__(message)


class RequestNotFoundError(RelayError):
    """No pending request matches the submitted id."""

    category = ErrorCategory.NOT_FOUND
    status_code = 404

    def __init__(self, request_id: str):
        super().__init__("Request not found")
        self.request_id = request_id


class PortBindError(RelayError):
    """The HTTP side-channel could not bind for a reason other than EADDRINUSE."""

    category = ErrorCategory.FATAL

    def __init__(self, port: int, cause: OSError):
        super().__init__(f"Failed to bind 127.0.0.1:{port}: {cause}")
        self.port = port
        self.cause = cause


class BrokerUnavailableError(RelayError):
    """A broker could not be reached on the given port."""

    category = ErrorCategory.TRANSIENT

    def __init__(self, port: int, reason: str = ""):
        message = f"No broker reachable on port {port}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.port = port


@dataclass
class ClassifiedError:
    """A classified error with handling metadata."""

    category: ErrorCategory
    message: str
    retryable: bool
    original_exception: Optional[Exception] = None

    def __str__(self) -> str:
        return f"{self.category.value}: {self.message}"


# OSError errno values that mean "nothing is listening there right now"
TRANSIENT_ERRNO = {
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ETIMEDOUT,
    errno.EPIPE,
    errno.ENETUNREACH,
    errno.EHOSTUNREACH,
}

ADDRESS_IN_USE_ERRNO = {errno.EADDRINUSE}
if hasattr(errno, "WSAEADDRINUSE"):
    ADDRESS_IN_USE_ERRNO.add(errno.WSAEADDRINUSE)


def is_address_in_use(error: BaseException) -> bool:
    """Check whether a bind failure means another process owns the port."""
    return isinstance(error, OSError) and error.errno in ADDRESS_IN_USE_ERRNO


def classify_error(error: Exception) -> ClassifiedError:
    """Classify an exception for appropriate handling.

    Args:
        error: The exception to classify

    Returns:
        ClassifiedError with category and retryability
    """
    if isinstance(error, RelayError):
        return ClassifiedError(
            category=error.category,
            message=str(error),
            retryable=error.category == ErrorCategory.TRANSIENT,
            original_exception=error,
        )

    if isinstance(error, (ConnectionError, TimeoutError)):
        return ClassifiedError(
            category=ErrorCategory.TRANSIENT,
            message=str(error) or type(error).__name__,
            retryable=True,
            original_exception=error,
        )

    if isinstance(error, OSError) and error.errno in TRANSIENT_ERRNO:
        return ClassifiedError(
            category=ErrorCategory.TRANSIENT,
            message=str(error),
            retryable=True,
            original_exception=error,
        )

    if isinstance(error, (ValueError, TypeError, KeyError)):
        return ClassifiedError(
            category=ErrorCategory.VALIDATION,
            message=str(error),
            retryable=False,
            original_exception=error,
        )

    # Unknown errors are never retried automatically
    return ClassifiedError(
        category=ErrorCategory.FATAL,
        message=str(error) or type(error).__name__,
        retryable=False,
        original_exception=error,
    )


def is_retryable(error: Exception) -> bool:
    """Quick check if an error is likely transient."""
    return classify_error(error).retryable
