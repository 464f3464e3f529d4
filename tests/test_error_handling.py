"""
Tests for VectorLake Error Handling
===================================
Tests the exception hierarchy, error codes, context payloads and storage
exception wrapping.
"""

import pytest

from vectorlake.core.exceptions import (
    # Base
    VectorLakeError,
    RecoverableError,
    IrrecoverableError,
    ErrorCategory,
    # Storage
    StorageError,
    StorageConnectionError,
    StorageTimeoutError,
    StoreUnavailableError,
    DataCorruptionError,
    # Vector
    VectorError,
    DimensionMismatchError,
    NoCentroidsError,
    # Config
    ConfigurationError,
    # Validation
    ValidationError,
    # Not Found
    NotFoundError,
    CentroidNotFoundError,
    # Migration
    BatchMigrationError,
    WorkflowTimeoutError,
    # Utilities
    wrap_storage_exception,
)
from vectorlake.storage.sql_substrate import SqliteSubstrate


class TestExceptionHierarchy:
    """Test the exception inheritance hierarchy."""

    def test_base_exception(self):
        exc = VectorLakeError("Test error")
        assert str(exc) == "Test error"
        assert exc.message == "Test error"
        assert exc.context == {}
        assert exc.recoverable is True
        assert exc.error_code == "VECTOR_LAKE_ERROR"

    def test_exception_with_context(self):
        exc = VectorLakeError("Test error", context={"key": "value"})
        assert exc.context == {"key": "value"}
        assert "context=" in str(exc)

    def test_exception_to_dict(self):
        exc = ValidationError(field="location", reason="required for tier 'warm'", value="")
        d = exc.to_dict()
        assert d["error"] == "Validation error for 'location': required for tier 'warm'"
        assert d["code"] == "VALIDATION_ERROR"
        assert d["recoverable"] is False

    def test_overrides(self):
        exc = VectorLakeError("x", error_code="CUSTOM", recoverable=False)
        assert exc.error_code == "CUSTOM"
        assert exc.recoverable is False


class TestRecoverableErrors:
    """Test recoverable error classes."""

    def test_storage_connection_error_is_recoverable(self):
        exc = StorageConnectionError("filesystem", "Mount point unavailable")
        assert isinstance(exc, RecoverableError)
        assert exc.error_code == "STORAGE_CONNECTION_ERROR"
        assert exc.backend == "filesystem"

    def test_storage_timeout_error_is_recoverable(self):
        exc = StorageTimeoutError("memory", "get", timeout_ms=5000)
        assert exc.recoverable is True
        assert exc.operation == "get"
        assert exc.context["timeout_ms"] == 5000

    def test_store_unavailable_keeps_operation_context(self):
        cause = OSError("disk full")
        exc = StoreUnavailableError("put", "vectors/cluster-1.parquet", 4, cause=cause)
        assert exc.recoverable is True
        assert exc.operation == "put"
        assert exc.key == "vectors/cluster-1.parquet"
        assert exc.attempts == 4
        assert "disk full" in str(exc)
        assert exc.context["original_exception"] == "OSError"

    def test_workflow_timeout(self):
        exc = WorkflowTimeoutError("migrate", 250, ["evaluate", "hot_to_warm"])
        assert exc.recoverable is True
        assert exc.completed_steps == ["evaluate", "hot_to_warm"]
        assert "250" in str(exc)


class TestIrrecoverableErrors:
    """Test irrecoverable error classes."""

    def test_validation_error(self):
        exc = ValidationError(field="tier", reason="must be one of hot/warm/cold")
        assert isinstance(exc, IrrecoverableError)
        assert exc.field == "tier"

    def test_configuration_error(self):
        exc = ConfigurationError("search.hot_dimension", "not a supported MRL dimension")
        assert exc.recoverable is False
        assert exc.config_key == "search.hot_dimension"

    def test_data_corruption_error(self):
        exc = DataCorruptionError("vectors/cluster-0.parquet", "Invalid magic bytes")
        assert exc.recoverable is False
        assert exc.resource_id == "vectors/cluster-0.parquet"

    def test_centroid_not_found(self):
        exc = CentroidNotFoundError("cluster-9")
        assert isinstance(exc, NotFoundError)
        assert exc.error_code == "CENTROID_NOT_FOUND"
        assert exc.resource_type == "Centroid"
        assert exc.cluster_id == "cluster-9"

    def test_batch_migration_error(self):
        ids = [f"item-{i}" for i in range(80)]
        exc = BatchMigrationError(ids, reason="unknown ids")
        assert exc.recoverable is False
        assert exc.failed_ids == ids
        assert exc.context["failed_count"] == 80
        assert len(exc.context["failed_ids"]) == 50


class TestVectorErrors:
    """Test vector-related errors."""

    def test_dimension_mismatch_error(self):
        exc = DimensionMismatchError(expected=768, actual=512, operation="assign_vector")
        assert exc.recoverable is False
        assert exc.expected == 768
        assert exc.actual == 512
        assert "expected 768, got 512" in str(exc)

    def test_no_centroids_error(self):
        exc = NoCentroidsError("assign_vector")
        assert isinstance(exc, VectorError)
        assert "set_centroids" in str(exc)


class TestStorageErrorWrapper:
    """Test wrap_storage_exception utility."""

    def test_wrap_timeout_exception(self):
        wrapped = wrap_storage_exception("sqlite", "execute", Exception("database lock timeout"))
        assert isinstance(wrapped, StorageTimeoutError)
        assert wrapped.backend == "sqlite"
        assert wrapped.operation == "execute"

    def test_wrap_connection_exception(self):
        class ConnectionResetError(Exception):
            pass
        wrapped = wrap_storage_exception("filesystem", "get", ConnectionResetError("reset by peer"))
        assert isinstance(wrapped, StorageConnectionError)
        assert wrapped.backend == "filesystem"

    def test_wrap_generic_exception(self):
        wrapped = wrap_storage_exception("sqlite", "execute", Exception("no such table: nope"))
        assert type(wrapped) is StorageError
        assert "sqlite" in str(wrapped)
        assert "no such table" in str(wrapped)

    def test_substrate_wraps_sqlite_errors(self):
        db = SqliteSubstrate(":memory:")
        try:
            with pytest.raises(StorageError) as exc:
                db.execute("SELECT * FROM missing_table")
            assert exc.value.context["backend"] == "sqlite"
        finally:
            db.close()


class TestErrorCategories:
    """Test error category assignments."""

    @pytest.mark.parametrize("exc, category", [
        (StorageError("x"), ErrorCategory.STORAGE),
        (DimensionMismatchError(3, 4), ErrorCategory.VECTOR),
        (ConfigurationError("k", "r"), ErrorCategory.CONFIG),
        (ValidationError("f", "r"), ErrorCategory.VALIDATION),
        (BatchMigrationError(["a"]), ErrorCategory.MIGRATION),
        (WorkflowTimeoutError("migrate", 1), ErrorCategory.MIGRATION),
    ])
    def test_category(self, exc, category):
        assert exc.category == category


class TestErrorContext:
    """Test error context handling."""

    def test_context_preserved_in_subclass(self):
        exc = StorageConnectionError(
            backend="filesystem",
            message="Connection failed",
            context={"retry_count": 3, "last_error": "EIO"},
        )
        assert exc.context["retry_count"] == 3
        assert exc.context["last_error"] == "EIO"
        assert exc.context["backend"] == "filesystem"

    def test_value_truncation_in_validation_error(self):
        exc = ValidationError("metadata", "too long", value="x" * 200)
        assert len(exc.context["value"]) == 103  # 100 + "..."
