"""
Tests for the error taxonomy and ErrorHandler.
"""

import pytest

from core.error_handler import (
    BoardError,
    ErrorCategory,
    ErrorHandler,
    ErrorSeverity,
    InsufficientFundsError,
    MalformedMessageError,
    ScanPassError,
    SessionClosedError,
    StorageError,
    TransportRejectedError,
    ValidationError,
    get_error_handler,
    set_error_handler,
)


@pytest.fixture
def handler():
    return ErrorHandler()


class TestTaxonomy:
    """Tests for the exception classes."""

    @pytest.mark.parametrize("error, category", [
        (ValidationError("bad"), ErrorCategory.VALIDATION),
        (InsufficientFundsError(100), ErrorCategory.FUNDING),
        (MalformedMessageError("bad"), ErrorCategory.CODEC),
        (TransportRejectedError("ab" * 32, "dust"), ErrorCategory.TRANSPORT),
        (ScanPassError("bad"), ErrorCategory.SCAN),
        (StorageError("bad"), ErrorCategory.STORAGE),
        (SessionClosedError("closed"), ErrorCategory.UNKNOWN),
    ])
    def test_categories(self, error, category):
        """Every board error carries its category."""
        assert isinstance(error, BoardError)
        assert error.category == category

    def test_validation_reference(self):
        """Validation errors can name the offending hash."""
        error = ValidationError("TX abc is unknown", reference="abc")

        assert error.reference == "abc"
        assert str(error) == "TX abc is unknown"

    def test_insufficient_funds_fields(self):
        error = InsufficientFundsError(min_balance=7000, available=5000)

        assert error.min_balance == 7000
        assert error.available == 5000
        assert "7000" in str(error)


class TestErrorHandler:
    """Tests for ErrorHandler.handle_error."""

    def test_board_error_keeps_category(self, handler):
        """Board errors are not re-categorized."""
        context = handler.handle_error(InsufficientFundsError(7000), "post funding")

        assert context.category == ErrorCategory.FUNDING
        assert context.severity == ErrorSeverity.WARNING
        assert "7000" in context.user_message
        assert context.operation == "post funding"

    def test_transport_rejection(self, handler):
        """Rejected broadcasts are errors and name the transaction."""
        txid = "cd" * 32
        context = handler.handle_error(TransportRejectedError(txid, "dust"), "post broadcast", txid=txid)

        assert context.severity == ErrorSeverity.ERROR
        assert txid[:8] in context.user_message
        assert context.txid == txid

    @pytest.mark.parametrize("error, category", [
        (ConnectionError("reset by peer"), ErrorCategory.TRANSPORT),
        (RuntimeError("sqlite is locked"), ErrorCategory.STORAGE),
        (ValueError("json decode failed"), ErrorCategory.CODEC),
        (RuntimeError("something else"), ErrorCategory.UNKNOWN),
    ])
    def test_foreign_errors(self, handler, error, category):
        """Other exceptions are categorized by name and message."""
        assert handler.handle_error(error, "op").category == category

    def test_storage_is_critical(self, handler):
        assert handler.handle_error(StorageError("disk full"), "save").severity == ErrorSeverity.CRITICAL

    def test_notification_callback(self, handler):
        """Notifications carry a title, the user message and the severity."""
        received = []
        handler.set_notification_callback(lambda *args: received.append(args))

        handler.handle_error(ValidationError("Post cost should be at least 5460 or zero"), "post")

        assert received == [("Invalid Post", "Post cost should be at least 5460 or zero", ErrorSeverity.WARNING)]

    def test_notification_suppressed(self, handler):
        received = []
        handler.set_notification_callback(lambda *args: received.append(args))

        handler.handle_error(ScanPassError("pass failed"), "scan", show_notification=False)

        assert received == []

    def test_failing_callback_is_contained(self, handler):
        """A broken notification callback does not break error handling."""
        def broken(*args):
            raise RuntimeError("ui gone")

        handler.set_notification_callback(broken)
        context = handler.handle_error(ScanPassError("pass failed"), "scan")

        assert context.category == ErrorCategory.SCAN

    def test_error_count(self, handler):
        handler.handle_error(ScanPassError("a"), "scan")
        handler.handle_error(ScanPassError("b"), "scan")

        assert handler.get_error_count() == 2
        handler.reset_error_count()
        assert handler.get_error_count() == 0


class TestGlobalHandler:
    """Tests for the process-wide handler."""

    def test_set_and_get(self):
        previous = get_error_handler()
        replacement = ErrorHandler()
        try:
            set_error_handler(replacement)
            assert get_error_handler() is replacement
        finally:
            set_error_handler(previous)
