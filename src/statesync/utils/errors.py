"""
Error handling framework for statesync.

This module provides:
- Hierarchical exception classes for the registry, sync and transport layers
- Error context preservation
- Structured error responses
- Decorator and context manager helpers
"""

from typing import Optional, Dict, Any, List, Type, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from contextlib import contextmanager
import traceback
import asyncio
import functools

from .logging import get_logger


logger = get_logger("statesync.errors")


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    REGISTRY = "registry"
    SYNC = "sync"
    NETWORK = "network"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=datetime.utcnow)
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None


@dataclass
class ErrorInfo:
    """Structured error information."""
    code: str
    message: str
    severity: ErrorSeverity
    category: ErrorCategory
    context: ErrorContext
    cause: Optional[Exception] = None
    suggestions: List[str] = field(default_factory=list)
    is_retryable: bool = False


class StateSyncError(Exception):
    """Base exception for all statesync errors."""

    code: str = "STATESYNC_ERROR"
    default_message: str = "An error occurred in statesync"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        **kwargs
    ):
        """Initialize statesync error."""
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        self.kwargs = kwargs

        if not self.context.stack_trace and cause is not None:
            self.context.stack_trace = "".join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )

        super().__init__(self.message)

    def to_info(self) -> ErrorInfo:
        """Convert to structured error info."""
        return ErrorInfo(
            code=self.code,
            message=self.message,
            severity=self.severity,
            category=self.category,
            context=self.context,
            cause=self.cause,
            suggestions=self.get_suggestions(),
            is_retryable=self.is_retryable
        )

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        info = self.to_info()
        return {
            "error": {
                "code": info.code,
                "message": info.message,
                "severity": info.severity.value,
                "category": info.category.value,
                "is_retryable": info.is_retryable,
                "suggestions": info.suggestions,
                "details": {k: repr(v) for k, v in self.kwargs.items()},
                "context": {
                    "timestamp": info.context.timestamp.isoformat(),
                    "component": info.context.component,
                    "operation": info.context.operation,
                    "metadata": info.context.metadata
                }
            }
        }


# Configuration / validation

class ConfigurationError(StateSyncError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Verify STATESYNC_* environment variables"
        ]


class ValidationError(StateSyncError):
    """Input validation errors."""
    code = "VALIDATION_ERROR"
    default_message = "Validation error"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, field: str, value: Any, constraint: str, **kwargs):
        self.field = field
        self.value = value
        self.constraint = constraint
        message = f"Validation failed for field '{field}': {constraint}"
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return [
            f"Check the value of field '{self.field}'",
            f"Ensure it meets the constraint: {self.constraint}"
        ]


# Registry errors

class RegistryError(StateSyncError):
    """Registry topology and lookup errors."""
    code = "REGISTRY_ERROR"
    default_message = "Registry error"
    category = ErrorCategory.REGISTRY


class KeyNotFoundError(RegistryError):
    """A registry key is not registered."""
    code = "KEY_NOT_FOUND"

    def __init__(self, key: str, **kwargs):
        self.key = key
        super().__init__(f"Registry key not found: {key}", **kwargs)


class CycleError(RegistryError):
    """A reference chain revisits a key."""
    code = "REFERENCE_CYCLE"

    def __init__(self, chain: List[str], **kwargs):
        self.chain = list(chain)
        super().__init__(
            f"Reference cycle detected: {' -> '.join(self.chain)}", **kwargs
        )

    def get_suggestions(self) -> List[str]:
        return ["Point one of the references in the chain at a concrete key"]


class DuplicateKeyError(RegistryError):
    """A key is registered twice."""
    code = "DUPLICATE_KEY"
    severity = ErrorSeverity.WARNING

    def __init__(self, key: str, **kwargs):
        self.key = key
        super().__init__(f"Registry key already registered: {key}", **kwargs)

    def get_suggestions(self) -> List[str]:
        return ["Use ensure() for idempotent creation"]


class InvalidKeyError(ValidationError):
    """A registry key does not match the configured name pattern."""
    code = "INVALID_KEY"

    def __init__(self, key: Any, pattern: Optional[str] = None, **kwargs):
        constraint = (
            f"must match {pattern}" if pattern else "must be a non-empty string"
        )
        super().__init__("key", key, constraint, **kwargs)


# Sync errors

class SyncError(StateSyncError):
    """State synchronization errors."""
    code = "SYNC_ERROR"
    default_message = "State synchronization error"
    category = ErrorCategory.SYNC


class StaleUpdateError(SyncError):
    """An incoming update lost the last-write-wins comparison.

    Raised and handled inside the subscriber; never reaches callers.
    """
    code = "STALE_UPDATE"
    severity = ErrorSeverity.DEBUG

    def __init__(self, state_id: str, incoming: Any, current: Any, **kwargs):
        self.state_id = state_id
        self.incoming = incoming
        self.current = current
        super().__init__(
            f"Stale update for {state_id}: {incoming} does not beat {current}",
            **kwargs
        )


class DuplicateRegistrationError(SyncError):
    """A cell is already published under the same state id."""
    code = "DUPLICATE_REGISTRATION"

    def __init__(self, state_id: str, **kwargs):
        self.state_id = state_id
        super().__init__(
            f"Cell already has a publisher for state id: {state_id}", **kwargs
        )


# Transport errors

class TransportError(StateSyncError):
    """Opaque failure from the channel transport."""
    code = "TRANSPORT_ERROR"
    default_message = "Transport error occurred"
    category = ErrorCategory.NETWORK
    is_retryable = True


# Error Handler Decorator

def handle_errors(
    *error_classes: Type[Exception],
    fallback: Optional[Callable] = None,
    reraise: bool = True,
    log_level: ErrorSeverity = ErrorSeverity.ERROR
):
    """
    Decorator for handling errors in functions.

    Args:
        error_classes: Exception classes to catch
        fallback: Fallback function to call on error
        reraise: Whether to reraise the exception
        log_level: Logging level for errors
    """
    error_classes = error_classes or (Exception,)

    def decorator(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except error_classes as e:
                getattr(logger, log_level.value)(
                    f"error_in_{func.__name__}",
                    error=str(e),
                    error_type=type(e).__name__,
                )

                if fallback:
                    if asyncio.iscoroutinefunction(fallback):
                        return await fallback(*args, **kwargs)
                    return fallback(*args, **kwargs)

                if reraise:
                    raise

                return None

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except error_classes as e:
                getattr(logger, log_level.value)(
                    f"error_in_{func.__name__}",
                    error=str(e),
                    error_type=type(e).__name__,
                )

                if fallback:
                    return fallback(*args, **kwargs)

                if reraise:
                    raise

                return None

        return async_wrapper if asyncio.iscoroutinefunction(func) else sync_wrapper

    return decorator


# Error Context Manager

@contextmanager
def error_context(
    component: str,
    operation: str,
    reraise: bool = True,
    **metadata
):
    """
    Context manager for error handling with context.

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
    except StateSyncError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        e.context.metadata.update(metadata)
        logger.error("statesync_error_in_context", error=e.to_dict())
        if reraise:
            raise
    except Exception as e:
        wrapped = StateSyncError(
            message=str(e),
            context=context,
            cause=e
        )
        logger.error("unexpected_error_in_context", error=wrapped.to_dict())
        if reraise:
            raise wrapped from e


__all__ = [
    'StateSyncError',
    'ErrorContext',
    'ErrorInfo',
    'ErrorSeverity',
    'ErrorCategory',
    'ConfigurationError',
    'ValidationError',
    'RegistryError',
    'KeyNotFoundError',
    'CycleError',
    'DuplicateKeyError',
    'InvalidKeyError',
    'SyncError',
    'StaleUpdateError',
    'DuplicateRegistrationError',
    'TransportError',
    'handle_errors',
    'error_context',
]
