"""Tests for error handling functionality."""

import logging

import httpx
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from services.error_handler import (
    ActiveSessionExistsError,
    AppError,
    AuthRequiredError,
    InvalidInputError,
    QueueFullError,
    RecoverableError,
    ServiceError,
    TaskNotFoundError,
    UnrecoverableError,
    is_unique_violation,
    log_service_error,
    map_error,
)


class TestExceptionClasses:
    """Test custom exception classes."""

    def test_service_error(self):
        error = ServiceError("test error")
        assert str(error) == "test error"
        assert error.code == "unknown_error"

    def test_default_message(self):
        error = QueueFullError()
        assert error.message == "Your queue is full (7 items max)."
        assert isinstance(error, RecoverableError)
        assert error.status_code == 409

    def test_code_override_is_per_instance(self):
        error = InvalidInputError("nope", code="notion_not_connected")
        assert error.code == "notion_not_connected"
        assert InvalidInputError().code == "validation_error"

    def test_hierarchy(self):
        assert issubclass(TaskNotFoundError, UnrecoverableError)
        assert TaskNotFoundError().status_code == 404
        assert AuthRequiredError().status_code == 401


class TestMapError:
    """Tests for classifying arbitrary exceptions."""

    def test_service_error_passes_through(self):
        mapped = map_error(ActiveSessionExistsError(details={"session_id": "s1"}))
        assert mapped.code == "session_already_active"
        assert mapped.status_code == 409
        assert mapped.details == {"session_id": "s1"}

    def test_transport_error_is_retryable(self):
        mapped = map_error(httpx.ConnectError("connection refused"))
        assert mapped.code == "network_error"
        assert mapped.retryable is True
        assert mapped.meta == {"cause": "ConnectError"}

    def test_integrity_error(self):
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: sessions.user_id"))
        mapped = map_error(error)
        assert mapped.code == "rpc_error"
        assert mapped.meta == {"cause": "integrity"}

    def test_locked_database_is_retryable(self):
        mapped = map_error(OperationalError("UPDATE", {}, Exception("database is locked")))
        assert mapped.code == "network_error"

    @pytest.mark.parametrize(
        "message, code",
        [
            ("fetch failed", "network_error"),
            ("JWT expired", "auth_required"),
            ("permission denied for table tasks", "forbidden"),
            ("row does not exist", "not_found"),
            ("something odd", "unknown_error"),
        ],
    )
    def test_message_patterns(self, message, code):
        assert map_error(RuntimeError(message)).code == code

    def test_unknown_errors_hide_the_cause(self):
        mapped = map_error(RuntimeError("secret_token leaked"))
        assert "secret" not in mapped.message
        assert mapped.message == "Something went wrong. Please try again."


class TestAppError:
    def test_response_without_details(self):
        error = AppError(code="queue_full", message="Full", status_code=409)
        assert error.to_response() == {
            "success": False,
            "code": "queue_full",
            "message": "Full",
            "retryable": False,
        }

    def test_response_with_details(self):
        error = AppError(code="invalid_headers", message="Bad", details={"target": "Tasks"})
        assert error.to_response()["details"] == {"target": "Tasks"}


class TestUniqueViolation:
    def test_sqlite_message(self):
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: sessions.user_id"))
        assert is_unique_violation(error) is True

    def test_other_integrity_error(self):
        error = IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: tasks.title"))
        assert is_unique_violation(error) is False

    def test_not_an_integrity_error(self):
        assert is_unique_violation(ValueError("unique")) is False


class TestLogServiceError:
    """Tests for log_service_error function."""

    def test_logs_with_context(self, caplog):
        error = RuntimeError("boom")
        with caplog.at_level(logging.ERROR, logger="services.error_handler"):
            mapped = log_service_error(
                "import.tasks.insert",
                error,
                user_id="user-a",
                request_id="req-1",
                extra={"row": 3},
            )

        assert mapped.code == "unknown_error"
        record = caplog.records[-1]
        assert record.getMessage() == "Service error in import.tasks.insert: boom"
        assert record.scope == "import.tasks.insert"
        assert record.user_id == "user-a"
        assert record.request_id == "req-1"
        assert record.row == 3
        assert record.error_type == "RuntimeError"
        assert record.exc_info is not None

    def test_optional_context_is_omitted(self, caplog):
        with caplog.at_level(logging.ERROR, logger="services.error_handler"):
            log_service_error("notion.sync", ValueError("x"))

        record = caplog.records[-1]
        assert not hasattr(record, "user_id")
        assert not hasattr(record, "request_id")
