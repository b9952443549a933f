"""Centralized error taxonomy and logging for DoItTimer services.

Every failure that reaches a caller is a ``ServiceError`` carrying a stable
``code``, a short user-facing message and a retryable flag. Raw causes
(SQL errors, Notion payloads, tokens) only ever go to the server log.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError

logger = logging.getLogger(__name__)

GENERIC_MESSAGE = "Something went wrong. Please try again."


class ServiceError(Exception):
    """Base class for service errors."""

    code = "unknown_error"
    default_message = GENERIC_MESSAGE
    retryable = False
    status_code = 500

    def __init__(self, message: Optional[str] = None, *, details: Any = None, code: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details
        if code is not None:
            self.code = code


class RecoverableError(ServiceError):
    """Known business condition the user can resolve and retry."""

    status_code = 409


class UnrecoverableError(ServiceError):
    """Error that requires the caller to change something first."""


class ActiveSessionExistsError(RecoverableError):
    code = "session_already_active"
    default_message = "A session is already active."


class QueueFullError(RecoverableError):
    code = "queue_full"
    default_message = "Your queue is full (7 items max)."


class AuthRequiredError(UnrecoverableError):
    code = "auth_required"
    default_message = "You must be signed in to continue."
    status_code = 401


class ForbiddenError(UnrecoverableError):
    code = "forbidden"
    default_message = "You do not have permission to do that."
    status_code = 403


class NotFoundError(UnrecoverableError):
    code = "not_found"
    default_message = "We could not find what you were looking for."
    status_code = 404


class SessionNotFoundError(NotFoundError):
    default_message = "Session not found."


class TaskNotFoundError(NotFoundError):
    default_message = "Task not found."


class ProjectNotFoundError(NotFoundError):
    default_message = "Project not found."


class InvalidInputError(UnrecoverableError):
    code = "validation_error"
    default_message = "Invalid request data."
    status_code = 400


class RpcError(UnrecoverableError):
    code = "rpc_error"
    default_message = "Unable to complete the request. Please try again."


class ExternalApiError(UnrecoverableError):
    code = "external_api_error"
    default_message = "The external service request failed. Please try again."
    status_code = 502


class NetworkError(ServiceError):
    code = "network_error"
    default_message = "Network error. Check your connection and try again."
    retryable = True
    status_code = 503


class UnknownServiceError(ServiceError):
    pass


@dataclass
class AppError:
    """Normalized, user-safe view of any exception."""
    code: str
    message: str
    retryable: bool = False
    status_code: int = 500
    details: Any = None
    meta: dict = field(default_factory=dict)

    def to_response(self) -> dict:
        body = {
            "success": False,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details is not None:
            body["details"] = self.details
        return body


NETWORK_PATTERNS = (
    "fetch failed",
    "network",
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "could not connect",
    "econnreset",
    "enotfound",
)
AUTH_PATTERNS = ("jwt", "not authenticated", "unauthorized", "auth session missing", "invalid token")
FORBIDDEN_PATTERNS = ("permission denied", "not allowed", "insufficient privilege", "forbidden")
NOT_FOUND_PATTERNS = ("not found", "does not exist", "no rows")


def _matches(text: str, patterns: tuple[str, ...]) -> bool:
    return any(pattern in text for pattern in patterns)


def map_error(error: BaseException) -> AppError:
    """Classify an exception into the error taxonomy."""
    if isinstance(error, ServiceError):
        return AppError(
            code=error.code,
            message=error.message,
            retryable=error.retryable,
            status_code=error.status_code,
            details=error.details,
        )

    if isinstance(error, httpx.TransportError):
        return _from_class(NetworkError, type(error).__name__)

    if isinstance(error, SQLAlchemyError):
        text = str(getattr(error, "orig", error)).lower()
        if isinstance(error, OperationalError) and _matches(text, NETWORK_PATTERNS + ("database is locked",)):
            return _from_class(NetworkError, type(error).__name__)
        if isinstance(error, IntegrityError):
            return _from_class(RpcError, "integrity")
        if isinstance(error, DBAPIError) and _matches(text, FORBIDDEN_PATTERNS):
            return _from_class(ForbiddenError, type(error).__name__)
        return _from_class(RpcError, type(error).__name__)

    text = str(error).lower()
    if _matches(text, NETWORK_PATTERNS):
        return _from_class(NetworkError, type(error).__name__)
    if _matches(text, AUTH_PATTERNS):
        return _from_class(AuthRequiredError, type(error).__name__)
    if _matches(text, FORBIDDEN_PATTERNS):
        return _from_class(ForbiddenError, type(error).__name__)
    if _matches(text, NOT_FOUND_PATTERNS):
        return _from_class(NotFoundError, type(error).__name__)
    return _from_class(UnknownServiceError, type(error).__name__)


def _from_class(error_class: type[ServiceError], cause: str) -> AppError:
    return AppError(
        code=error_class.code,
        message=error_class.default_message,
        retryable=error_class.retryable,
        status_code=error_class.status_code,
        meta={"cause": cause},
    )


def is_unique_violation(error: BaseException) -> bool:
    """True when ``error`` is a uniqueness violation on any backend."""
    if not isinstance(error, IntegrityError):
        return False
    text = str(error.orig).lower()
    pgcode = getattr(error.orig, "pgcode", None)
    return pgcode == "23505" or "unique" in text or "duplicate key" in text


def log_service_error(
    scope: str,
    error: BaseException,
    user_id: Optional[str] = None,
    request_id: Optional[str] = None,
    extra: Optional[dict] = None,
) -> AppError:
    """Log a service error with consistent formatting.

    Args:
        scope: Dotted operation name (e.g. 'notion.sync', 'import.tasks.insert')
        error: The exception that was raised
        user_id: Optional owner id for correlation
        request_id: Optional request id for correlation
        extra: Optional extra context to include in the log

    Returns:
        The mapped AppError so callers can build a response from it.
    """
    mapped = map_error(error)
    context = {
        "scope": scope,
        "error_type": type(error).__name__,
        "error_message": str(error),
        "code": mapped.code,
        "retryable": mapped.retryable,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if user_id:
        context["user_id"] = user_id

    if request_id:
        context["request_id"] = request_id

    if extra:
        context.update(extra)

    logger.error(
        f"Service error in {scope}: {error}",
        extra=context,
        exc_info=error,
    )
    return mapped
