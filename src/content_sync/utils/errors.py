"""
Error handling framework for the content sync bridge.

This module provides:
- Hierarchical exception classes
- Error context preservation
- Structured error serialization
- Retry with bounded exponential backoff
"""

from typing import Optional, Dict, Any, List, Callable, Awaitable, TypeVar
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from contextlib import contextmanager
import asyncio
import random

from .logging import get_logger


logger = get_logger("content-sync.errors")

T = TypeVar('T')


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    PARSE = "parse"
    VALIDATION = "validation"
    CONTENT_STORE = "content_store"
    NOTIFICATION = "notification"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=datetime.utcnow)
    correlation_id: Optional[str] = None
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ContentSyncError(Exception):
    """Base exception for all content sync errors."""

    code: str = "CONTENT_SYNC_ERROR"
    default_message: str = "An error occurred in content sync"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
    ):
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "is_retryable": self.is_retryable,
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "correlation_id": self.context.correlation_id,
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "metadata": self.context.metadata,
                }
            }
        }


class ConfigurationError(ContentSyncError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION


# Transport Errors

class TransportError(ContentSyncError):
    """Broker transport errors."""
    code = "TRANSPORT_ERROR"
    default_message = "Broker transport error"
    category = ErrorCategory.TRANSPORT
    is_retryable = True


class BrokerConnectionError(TransportError):
    """Raised when the broker stays unreachable after every connect attempt."""
    code = "BROKER_CONNECTION_ERROR"
    default_message = "Failed to connect to the message broker"
    severity = ErrorSeverity.CRITICAL


class PublishError(TransportError):
    """Publishing a message failed."""
    code = "PUBLISH_ERROR"
    default_message = "Failed to publish message"


# Inbound command errors

class CommandParseError(ContentSyncError):
    """Malformed sync command envelope."""
    code = "COMMAND_PARSE_ERROR"
    default_message = "Malformed sync command"
    category = ErrorCategory.PARSE
    severity = ErrorSeverity.WARNING
    is_retryable = True


class ValidationError(ContentSyncError):
    """Input validation errors."""
    code = "VALIDATION_ERROR"
    default_message = "Validation error"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, field: str, value: Any, constraint: str, **kwargs):
        self.field = field
        self.value = value
        self.constraint = constraint
        super().__init__(constraint, **kwargs)


class UnsupportedOperationError(ContentSyncError):
    """Sync command with an operation type nobody handles."""
    code = "UNSUPPORTED_OPERATION"
    default_message = "Unsupported operation type"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, operation_type: Any, **kwargs):
        self.operation_type = operation_type
        super().__init__(f"Unsupported operation type: {operation_type}", **kwargs)


# Content store errors

class ContentStoreError(ContentSyncError):
    """Errors raised by the content store collaborator."""
    code = "CONTENT_STORE_ERROR"
    default_message = "Content store error"
    category = ErrorCategory.CONTENT_STORE


class RecordNotFoundError(ContentStoreError):
    """Requested record does not exist."""
    code = "RECORD_NOT_FOUND"
    default_message = "Record not found"

    def __init__(self, entity: str, record_id: Any, **kwargs):
        self.entity = entity
        self.record_id = record_id
        super().__init__(f"{entity} {record_id} not found", **kwargs)


class NotificationError(ContentSyncError):
    """Outbound change notification could not be delivered."""
    code = "NOTIFICATION_ERROR"
    default_message = "Change notification failed"
    category = ErrorCategory.NOTIFICATION


@contextmanager
def error_context(
    component: str,
    operation: str,
    reraise: bool = True,
    **metadata
):
    """
    Context manager attaching component/operation context to errors.

    Args:
        component: Component name
        operation: Operation name
        reraise: Whether to reraise exceptions
        **metadata: Additional context metadata
    """
    context = ErrorContext(
        component=component,
        operation=operation,
        metadata=metadata
    )

    try:
        yield context
    except ContentSyncError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        e.context.metadata.update(metadata)
        logger.error("content_sync_error_in_context", error=e.to_dict(), exc_info=True)
        if reraise:
            raise
    except Exception as e:
        wrapped = ContentSyncError(message=str(e), context=context, cause=e)
        logger.error("unexpected_error_in_context", error=wrapped.to_dict(), exc_info=True)
        if reraise:
            raise wrapped from e


class ErrorRecovery:
    """Error recovery strategies."""

    @staticmethod
    def backoff_delay(
        attempt: int,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        jitter: float = 0.1,
    ) -> float:
        """Delay before retry number ``attempt`` (0-based), jittered by +/- ``jitter``."""
        delay = min(base_delay * (2 ** attempt), max_delay)
        if jitter:
            delay += delay * random.uniform(-jitter, jitter)
        return max(delay, 0.0)

    @staticmethod
    async def exponential_backoff(
        func: Callable[[], Awaitable[T]],
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        jitter: float = 0.1,
        exceptions: tuple = (Exception,),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        """
        Retry an async callable with exponential backoff.

        Args:
            func: Coroutine function to retry
            max_retries: Maximum attempts
            base_delay: Base delay in seconds
            max_delay: Maximum delay in seconds
            jitter: Relative jitter applied to every delay
            exceptions: Exceptions to retry on
            sleep: Sleep coroutine, replaceable in tests
        """
        last_exception: Optional[BaseException] = None

        for attempt in range(max_retries):
            try:
                return await func()
            except exceptions as e:
                last_exception = e
                if attempt < max_retries - 1:
                    delay = ErrorRecovery.backoff_delay(attempt, base_delay, max_delay, jitter)
                    logger.warning(
                        "retrying_after_error",
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=round(delay, 3),
                        error=str(e)
                    )
                    await sleep(delay)
                else:
                    logger.error("max_retries_exceeded", attempts=max_retries, error=str(e))

        raise last_exception


def describe_error(error: BaseException) -> str:
    """Message suitable for logs and error responses."""
    return str(error) or type(error).__name__


__all__ = [
    'ContentSyncError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'ConfigurationError',
    'TransportError',
    'BrokerConnectionError',
    'PublishError',
    'CommandParseError',
    'ValidationError',
    'UnsupportedOperationError',
    'ContentStoreError',
    'RecordNotFoundError',
    'NotificationError',
    'error_context',
    'ErrorRecovery',
    'describe_error',
]
