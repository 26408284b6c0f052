"""
Error Handler for the ledger-backed board

Provides the error taxonomy shared by the codec, the fee engine, the sync
controller and the board session, plus centralized categorization, logging
and event notification.
"""

import logging
import traceback
from enum import Enum
from typing import Optional, Callable
from dataclasses import dataclass


logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Error categories for classification."""
    VALIDATION = "validation"
    FUNDING = "funding"
    CODEC = "codec"
    TRANSPORT = "transport"
    SCAN = "scan"
    STORAGE = "storage"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Error severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Context information for an error."""
    category: ErrorCategory
    severity: ErrorSeverity
    operation: str
    user_message: str
    technical_details: str
    txid: Optional[str] = None
    domain: Optional[str] = None


# Custom Exception Classes

class BoardError(Exception):
    """Base exception for board errors."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN):
        super().__init__(message)
        self.category = category


class ValidationError(BoardError):
    """Malformed post request. Never retried automatically."""

    def __init__(self, message: str, reference: Optional[str] = None):
        super().__init__(message, ErrorCategory.VALIDATION)
        self.reference = reference


class InsufficientFundsError(BoardError):
    """Spendable inputs cannot cover outputs plus fee."""

    def __init__(self, min_balance: int, available: int = 0):
        super().__init__(
            f"Insufficient funds: need at least {min_balance}, have {available}",
            ErrorCategory.FUNDING
        )
        self.min_balance = min_balance
        self.available = available


class MalformedMessageError(BoardError):
    """Transaction outputs do not carry a decodable message."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.CODEC)


class TransportRejectedError(BoardError):
    """The transport refused to relay a transaction."""

    def __init__(self, txid: str, reason: str = ""):
        super().__init__(f"Transaction {txid} rejected: {reason}", ErrorCategory.TRANSPORT)
        self.txid = txid
        self.reason = reason


class ScanPassError(BoardError):
    """A single scan pass failed."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.SCAN)


class StorageError(BoardError):
    """Storage operation errors."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.STORAGE)


class SessionClosedError(BoardError):
    """Operation attempted on a closed session."""
    pass


class ErrorHandler:
    """
    Global error handler for the board.

    Provides centralized error handling with:
    - Error categorization (validation, funding, codec, transport, scan, storage)
    - Severity classification
    - User-friendly error messages
    - Detailed logging for debugging
    - Notification callbacks so sessions can emit error events

    Usage:
        error_handler = ErrorHandler()
        error_handler.set_notification_callback(session_error_event)

        try:
            # Some operation
            pass
        except Exception as e:
            error_handler.handle_error(e, "operation_name")
    """

    def __init__(self):
        """Initialize error handler."""
        self._notification_callback: Optional[Callable] = None
        self._error_count = 0

    def set_notification_callback(self, callback: Optional[Callable]):
        """
        Set callback for error notifications.

        Args:
            callback: Function(title: str, content: str, severity: ErrorSeverity)
        """
        self._notification_callback = callback

    def handle_error(
        self,
        error: Exception,
        context: str,
        txid: Optional[str] = None,
        domain: Optional[str] = None,
        show_notification: bool = True
    ) -> ErrorContext:
        """
        Handle an error with appropriate categorization and response.

        Args:
            error: The exception that occurred
            context: Description of the operation that failed
            txid: Optional transaction id the error relates to
            domain: Optional board domain the error relates to
            show_notification: Whether to invoke the notification callback

        Returns:
            ErrorContext with categorized error information
        """
        self._error_count += 1

        if isinstance(error, BoardError):
            category = error.category
        else:
            category = self._categorize_error(error)

        severity = self._determine_severity(error, category)
        user_message = self._generate_user_message(error, category, context)
        technical_details = self._get_technical_details(error)

        error_context = ErrorContext(
            category=category,
            severity=severity,
            operation=context,
            user_message=user_message,
            technical_details=technical_details,
            txid=txid,
            domain=domain
        )

        self._log_error(error_context)

        if show_notification and self._notification_callback:
            self._show_notification(error_context)

        return error_context

    def _categorize_error(self, error: Exception) -> ErrorCategory:
        """
        Categorize a foreign exception based on its type and message.

        Args:
            error: The exception to categorize

        Returns:
            ErrorCategory
        """
        error_type = type(error).__name__.lower()
        error_msg = str(error).lower()

        if any(keyword in error_type or keyword in error_msg for keyword in [
            'connection', 'network', 'socket', 'timeout', 'peer', 'broadcast'
        ]):
            return ErrorCategory.TRANSPORT

        if any(keyword in error_type or keyword in error_msg for keyword in [
            'database', 'storage', 'disk', 'sqlite', 'integrity'
        ]):
            return ErrorCategory.STORAGE

        if any(keyword in error_type or keyword in error_msg for keyword in [
            'zlib', 'json', 'decode', 'cbor'
        ]):
            return ErrorCategory.CODEC

        return ErrorCategory.UNKNOWN

    def _determine_severity(
        self,
        error: Exception,
        category: ErrorCategory
    ) -> ErrorSeverity:
        """
        Determine the severity of an error.

        Nothing in the board is fatal to the process, so CRITICAL is
        reserved for storage failures.
        """
        if category == ErrorCategory.STORAGE:
            return ErrorSeverity.CRITICAL

        # Corrupted or unrelated ledger data is expected
        if category == ErrorCategory.CODEC:
            return ErrorSeverity.INFO

        # Transient transport hiccups
        if category == ErrorCategory.SCAN:
            return ErrorSeverity.WARNING

        if category in (ErrorCategory.VALIDATION, ErrorCategory.FUNDING):
            return ErrorSeverity.WARNING

        return ErrorSeverity.ERROR

    def _generate_user_message(
        self,
        error: Exception,
        category: ErrorCategory,
        context: str
    ) -> str:
        """
        Generate a user-friendly error message.

        Args:
            error: The exception
            category: Error category
            context: Operation context

        Returns:
            User-friendly error message
        """
        if category == ErrorCategory.VALIDATION:
            return str(error)
        elif category == ErrorCategory.FUNDING:
            if isinstance(error, InsufficientFundsError):
                return f"Not enough funds to post. Minimum balance required: {error.min_balance}."
            return "Not enough funds to post."
        elif category == ErrorCategory.TRANSPORT:
            if isinstance(error, TransportRejectedError):
                return f"The network rejected transaction {error.txid[:8]}: {error.reason or 'no reason given'}."
            return "Network operation failed. Please check your connection."
        elif category == ErrorCategory.SCAN:
            return "Scanning the ledger failed. Retrying shortly."
        elif category == ErrorCategory.CODEC:
            return "Skipped a transaction that does not carry a readable message."
        elif category == ErrorCategory.STORAGE:
            return "Database operation failed. Your data may be corrupted."
        else:
            return f"An error occurred during {context}. Please try again."

    def _get_technical_details(self, error: Exception) -> str:
        """Get technical details for logging."""
        details = [
            f"Exception Type: {type(error).__name__}",
            f"Message: {str(error)}",
            f"Traceback:",
            traceback.format_exc()
        ]
        return "\n".join(details)

    def _log_error(self, error_context: ErrorContext):
        """
        Log error with appropriate level.

        Args:
            error_context: Error context information
        """
        log_message = (
            f"[{error_context.category.value.upper()}] "
            f"{error_context.operation}: {error_context.user_message}"
        )

        extra_info = []
        if error_context.txid:
            extra_info.append(f"txid={error_context.txid}")
        if error_context.domain:
            extra_info.append(f"domain={error_context.domain}")

        if extra_info:
            log_message += f" ({', '.join(extra_info)})"

        if error_context.severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message)
            logger.critical(f"Technical details:\n{error_context.technical_details}")
        elif error_context.severity == ErrorSeverity.ERROR:
            logger.error(log_message)
            logger.debug(f"Technical details:\n{error_context.technical_details}")
        elif error_context.severity == ErrorSeverity.WARNING:
            logger.warning(log_message)
            logger.debug(f"Technical details:\n{error_context.technical_details}")
        else:
            logger.info(log_message)

    def _show_notification(self, error_context: ErrorContext):
        """
        Pass the error on to the notification callback.

        Args:
            error_context: Error context information
        """
        if not self._notification_callback:
            return

        try:
            title_map = {
                ErrorCategory.VALIDATION: "Invalid Post",
                ErrorCategory.FUNDING: "Funding Error",
                ErrorCategory.CODEC: "Unreadable Message",
                ErrorCategory.TRANSPORT: "Broadcast Error",
                ErrorCategory.SCAN: "Scan Error",
                ErrorCategory.STORAGE: "Storage Error",
                ErrorCategory.UNKNOWN: "Error"
            }

            title = title_map.get(error_context.category, "Error")

            self._notification_callback(
                title,
                error_context.user_message,
                error_context.severity
            )

        except Exception as e:
            logger.error(f"Failed to show notification: {e}")

    def get_error_count(self) -> int:
        """
        Get total number of errors handled.

        Returns:
            Error count
        """
        return self._error_count

    def reset_error_count(self):
        """Reset error counter."""
        self._error_count = 0


# Global error handler instance
_global_error_handler: Optional[ErrorHandler] = None


def get_error_handler() -> ErrorHandler:
    """
    Get the global error handler instance.

    Returns:
        Global ErrorHandler instance
    """
    global _global_error_handler
    if _global_error_handler is None:
        _global_error_handler = ErrorHandler()
    return _global_error_handler


def set_error_handler(handler: ErrorHandler):
    """
    Set the global error handler instance.

    Args:
        handler: ErrorHandler instance to use globally
    """
    global _global_error_handler
    _global_error_handler = handler
