from __future__ import annotations

from typing import Any, Dict, Optional

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

# DynamoDB error codes worth another attempt.
TRANSIENT_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "ThrottlingException",
        "RequestLimitExceeded",
        "InternalServerError",
        "ServiceUnavailable",
        "TransactionConflictException",
    }
)

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


class InteractionError(Exception):
    """Base for every error an interaction can surface to a caller."""

    status_code: int = 500
    default_message: str = "Something went wrong"

    def __init__(self, message: Optional[str] = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context: Dict[str, Any] = context
        super().__init__(self.message)


class NotFound(InteractionError):
    status_code = 404
    default_message = "Resource not found"


class ValidationError(InteractionError):
    status_code = 400
    default_message = "Invalid request"


class Forbidden(InteractionError):
    status_code = 403
    default_message = "Not allowed"


class RateLimited(InteractionError):
    status_code = 429
    default_message = "Too many requests; try again shortly"


class TransientError(InteractionError):
    status_code = 503
    default_message = "Storage temporarily unavailable"


class UnknownError(InteractionError):
    status_code = 500


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def is_conditional_failure(exc: ClientError) -> bool:
    return error_code(exc) == CONDITIONAL_CHECK_FAILED


def from_storage_error(exc: Exception, **context: Any) -> InteractionError:
    if isinstance(exc, ClientError):
        code = error_code(exc)
        msg = exc.response.get("Error", {}).get("Message", "unknown")
        if code in TRANSIENT_CODES:
            return TransientError(f"DynamoDB error: {msg}", code=code, **context)
        return UnknownError(f"DynamoDB error: {msg}", code=code, **context)
    if isinstance(exc, (EndpointConnectionError, ConnectionClosedError, ConnectTimeoutError, ReadTimeoutError)):
        return TransientError(f"DynamoDB unreachable: {exc}", **context)
    return UnknownError(str(exc) or None, **context)
