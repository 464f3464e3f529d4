"""
VectorLake Domain-Specific Exceptions
=====================================

This module defines a hierarchy of exceptions for consistent error handling
across the tiered vector store.

Exception Hierarchy:
    VectorLakeError (base)
    ├── RecoverableError (transient, retry possible)
    │   ├── StorageConnectionError
    │   ├── StorageTimeoutError
    │   ├── StoreUnavailableError
    │   └── WorkflowTimeoutError
    ├── IrrecoverableError (permanent, requires intervention)
    │   ├── ConfigurationError
    │   ├── DataCorruptionError
    │   ├── ValidationError
    │   ├── NotFoundError
    │   └── BatchMigrationError
    └── Domain Errors (mixed recoverability)
        ├── StorageError
        └── VectorError
            ├── DimensionMismatchError
            └── NoCentroidsError

Usage Guidelines:
    - Return None/False for "not found" on lookups (expected case, not an error)
    - Raise NotFoundError for mutations against unknown ids
    - Dimension and configuration errors are never recovered locally
    - Always include context in error messages
"""

from typing import Any, List, Optional
from enum import Enum


class ErrorCategory(Enum):
    """Categories for error classification."""
    STORAGE = "STORAGE"
    VECTOR = "VECTOR"
    CONFIG = "CONFIG"
    VALIDATION = "VALIDATION"
    MIGRATION = "MIGRATION"
    SYSTEM = "SYSTEM"


class VectorLakeError(Exception):
    """
    Base exception for all VectorLake errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        context: Additional context about the error
        recoverable: Whether the error is potentially recoverable
    """

    error_code: str = "VECTOR_LAKE_ERROR"
    recoverable: bool = True
    category: ErrorCategory = ErrorCategory.SYSTEM

    def __init__(
        self,
        message: str,
        context: Optional[dict] = None,
        error_code: Optional[str] = None,
        recoverable: Optional[bool] = None
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        if error_code is not None:
            self.error_code = error_code
        if recoverable is not None:
            self.recoverable = recoverable

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to a dictionary (for logs and status payloads)."""
        result = {
            "error": self.message,
            "code": self.error_code,
            "recoverable": self.recoverable,
        }
        if self.context:
            result["context"] = self.context
        return result


# =============================================================================
# Base Categories: Recoverable vs Irrecoverable
# =============================================================================

class RecoverableError(VectorLakeError):
    """
    Base class for recoverable errors.

    These are transient errors that may succeed on retry:
    - Connection failures
    - Timeouts
    - Blob store exhausted its retries
    """
    recoverable = True


class IrrecoverableError(VectorLakeError):
    """
    Base class for irrecoverable errors.

    These are permanent errors that require intervention:
    - Invalid configuration
    - Data corruption
    - Validation failures
    - Resource not found
    """
    recoverable = False


# =============================================================================
# Storage Errors
# =============================================================================

class StorageError(VectorLakeError):
    """Base exception for storage-related errors."""
    error_code = "STORAGE_ERROR"
    category = ErrorCategory.STORAGE


class StorageConnectionError(RecoverableError, StorageError):
    """Raised when connection to a storage backend fails."""
    error_code = "STORAGE_CONNECTION_ERROR"

    def __init__(self, backend: str, message: str = "Connection failed", context: Optional[dict] = None):
        ctx = {"backend": backend}
        if context:
            ctx.update(context)
        super().__init__(f"[{backend}] {message}", ctx)
        self.backend = backend


class StorageTimeoutError(RecoverableError, StorageError):
    """Raised when a storage operation times out."""
    error_code = "STORAGE_TIMEOUT_ERROR"

    def __init__(self, backend: str, operation: str, timeout_ms: Optional[int] = None, context: Optional[dict] = None):
        msg = f"[{backend}] Operation '{operation}' timed out"
        ctx = {"backend": backend, "operation": operation}
        if timeout_ms is not None:
            ctx["timeout_ms"] = timeout_ms
        if context:
            ctx.update(context)
        super().__init__(msg, ctx)
        self.backend = backend
        self.operation = operation


class StoreUnavailableError(RecoverableError, StorageError):
    """
    Raised when a blob store operation keeps failing after all retries.

    The original error text is embedded in the message and the original
    exception is chained as ``__cause__``.
    """
    error_code = "STORE_UNAVAILABLE_ERROR"

    def __init__(
        self,
        operation: str,
        key: str,
        attempts: int,
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        reason = str(cause) if cause is not None else "unknown error"
        ctx = {"operation": operation, "key": key, "attempts": attempts}
        if cause is not None:
            ctx["original_exception"] = type(cause).__name__
        if context:
            ctx.update(context)
        super().__init__(
            f"Partition store {operation}('{key}') failed after {attempts} attempt(s): {reason}",
            ctx,
        )
        self.operation = operation
        self.key = key
        self.attempts = attempts


class DataCorruptionError(IrrecoverableError, StorageError):
    """Raised when stored data is corrupt or cannot be deserialized."""
    error_code = "DATA_CORRUPTION_ERROR"

    def __init__(self, resource_id: str, reason: str = "Data corruption detected", context: Optional[dict] = None):
        ctx = {"resource_id": resource_id}
        if context:
            ctx.update(context)
        super().__init__(f"{reason} for resource '{resource_id}'", ctx)
        self.resource_id = resource_id


# =============================================================================
# Vector Errors
# =============================================================================

class VectorError(VectorLakeError):
    """Base exception for vector and clustering operations."""
    error_code = "VECTOR_ERROR"
    category = ErrorCategory.VECTOR


class DimensionMismatchError(IrrecoverableError, VectorError):
    """Raised when vector dimensions do not match."""
    error_code = "DIMENSION_MISMATCH_ERROR"

    def __init__(self, expected: int, actual: int, operation: str = "operation", context: Optional[dict] = None):
        ctx = {"expected": expected, "actual": actual, "operation": operation}
        if context:
            ctx.update(context)
        super().__init__(
            f"Dimension mismatch in {operation}: expected {expected}, got {actual}",
            ctx
        )
        self.expected = expected
        self.actual = actual
        self.operation = operation


class NoCentroidsError(IrrecoverableError, VectorError):
    """Raised when assignment or routing is attempted before centroids are set."""
    error_code = "NO_CENTROIDS_ERROR"

    def __init__(self, operation: str = "assign", context: Optional[dict] = None):
        ctx = {"operation": operation}
        if context:
            ctx.update(context)
        super().__init__(
            f"No centroids configured for {operation}; call set_centroids() first",
            ctx,
        )
        self.operation = operation


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(IrrecoverableError):
    """Raised when configuration is invalid or missing."""
    error_code = "CONFIGURATION_ERROR"
    category = ErrorCategory.CONFIG

    def __init__(self, config_key: str, reason: str, context: Optional[dict] = None):
        ctx = {"config_key": config_key}
        if context:
            ctx.update(context)
        super().__init__(f"Configuration error for '{config_key}': {reason}", ctx)
        self.config_key = config_key


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(IrrecoverableError):
    """Raised when input validation fails."""
    error_code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION

    def __init__(self, field: str, reason: str, value: Any = None, context: Optional[dict] = None):
        ctx = {"field": field}
        if value is not None:
            # Truncate large values
            value_str = str(value)
            if len(value_str) > 100:
                value_str = value_str[:100] + "..."
            ctx["value"] = value_str
        if context:
            ctx.update(context)
        super().__init__(f"Validation error for '{field}': {reason}", ctx)
        self.field = field
        self.reason = reason


# =============================================================================
# Not Found Errors
# =============================================================================

class NotFoundError(IrrecoverableError):
    """Raised when a mutation targets a resource that does not exist."""
    error_code = "NOT_FOUND_ERROR"
    category = ErrorCategory.SYSTEM

    def __init__(self, resource_type: str, resource_id: str, context: Optional[dict] = None):
        ctx = {"resource_type": resource_type, "resource_id": resource_id}
        if context:
            ctx.update(context)
        super().__init__(f"{resource_type} '{resource_id}' not found", ctx)
        self.resource_type = resource_type
        self.resource_id = resource_id


class CentroidNotFoundError(NotFoundError):
    """Raised when a centroid id is unknown."""
    error_code = "CENTROID_NOT_FOUND"

    def __init__(self, cluster_id: str, context: Optional[dict] = None):
        super().__init__("Centroid", cluster_id, context)
        self.cluster_id = cluster_id


# =============================================================================
# Migration Errors
# =============================================================================

class BatchMigrationError(IrrecoverableError):
    """Raised when an atomic batch migration fails; nothing was changed."""
    error_code = "BATCH_MIGRATION_ERROR"
    category = ErrorCategory.MIGRATION

    def __init__(self, failed_ids: List[str], reason: str = "batch migration failed", context: Optional[dict] = None):
        ctx = {"failed_ids": list(failed_ids)[:50], "failed_count": len(failed_ids)}
        if context:
            ctx.update(context)
        super().__init__(f"Batch migration failed: {reason}", ctx)
        self.failed_ids = list(failed_ids)
        self.reason = reason


class WorkflowTimeoutError(RecoverableError):
    """Raised when a multi-step workflow exceeds its caller-supplied deadline."""
    error_code = "WORKFLOW_TIMEOUT_ERROR"
    category = ErrorCategory.MIGRATION

    def __init__(
        self,
        operation: str,
        timeout_ms: float,
        completed_steps: Optional[List[str]] = None,
        context: Optional[dict] = None,
    ):
        ctx = {
            "operation": operation,
            "timeout_ms": timeout_ms,
            "completed_steps": list(completed_steps or []),
        }
        if context:
            ctx.update(context)
        super().__init__(f"Workflow '{operation}' exceeded {timeout_ms}ms", ctx)
        self.operation = operation
        self.timeout_ms = timeout_ms
        self.completed_steps = list(completed_steps or [])


# =============================================================================
# Utility Functions
# =============================================================================

def wrap_storage_exception(backend: str, operation: str, exc: Exception) -> StorageError:
    """
    Wrap a generic exception into an appropriate StorageError.

    Args:
        backend: Name of the storage backend (e.g., 'sqlite', 'filesystem')
        operation: Name of the operation that failed
        exc: The original exception

    Returns:
        An appropriate StorageError subclass
    """
    exc_name = type(exc).__name__
    exc_msg = str(exc)

    if 'timeout' in exc_msg.lower() or 'Timeout' in exc_name:
        return StorageTimeoutError(backend, operation)

    if any(x in exc_name.lower() for x in ['connection', 'connect', 'network']):
        return StorageConnectionError(backend, exc_msg)

    return StorageError(
        f"[{backend}] {operation} failed: {exc_msg}",
        {"backend": backend, "operation": operation, "original_exception": exc_name}
    )


__all__ = [
    # Base
    "VectorLakeError",
    "RecoverableError",
    "IrrecoverableError",
    "ErrorCategory",
    # Storage
    "StorageError",
    "StorageConnectionError",
    "StorageTimeoutError",
    "StoreUnavailableError",
    "DataCorruptionError",
    # Vector
    "VectorError",
    "DimensionMismatchError",
    "NoCentroidsError",
    # Config
    "ConfigurationError",
    # Validation
    "ValidationError",
    # Not Found
    "NotFoundError",
    "CentroidNotFoundError",
    # Migration
    "BatchMigrationError",
    "WorkflowTimeoutError",
    # Utilities
    "wrap_storage_exception",
]
