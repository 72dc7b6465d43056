"""
Custom exceptions for the sync pipeline with structured error context.

This module provides the exception hierarchy used throughout the
warehouse-to-store sync. Each exception carries context information for
debugging and for the ``error_details`` column of the sync run record.

Exception Hierarchy:
    SyncException (base)
    ├── ExtractionError
    │   └── WarehouseQueryError
    ├── TransformationError
    │   └── ValidationError (non-retryable)
    ├── LoadError
    │   ├── DatabaseError
    │   │   └── SyncLogError
    │   │       └── InvalidStateTransition
    │   └── BatchWriteError
    ├── SyncConnectionError (retryable)
    │   ├── WarehouseConnectionError
    │   ├── PoolExhaustedError
    │   └── PoolClosedError
    ├── ConfigurationError (non-retryable)
    ├── ConcurrencyRejection (non-retryable)
    └── RetryableError / NonRetryableError (mixins)

Data quality problems are never raised. They are persisted as
``DataQualityCheck`` rows with a ``warning`` or ``failed`` status.
"""

from typing import Optional, Dict, Any
from datetime import datetime


class SyncException(Exception):
    """
    Base exception for all sync-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (phase, table, batch, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(SyncException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Warehouse job timeouts or 5xx responses
    - Temporary store connectivity issues
    - Connection pool exhaustion
    """
    pass


class NonRetryableError(SyncException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Structurally invalid warehouse data
    - Rejected concurrent sync requests
    """
    pass


class ConfigurationError(NonRetryableError):
    """Raised when scheduler or pipeline configuration is invalid."""
    pass


# ============================================================================
# Connection Errors
# ============================================================================

class SyncConnectionError(RetryableError):
    """Transient warehouse or store connectivity failure."""
    pass


class WarehouseConnectionError(SyncConnectionError):
    """
    Exception raised when the warehouse cannot be reached.

    Context should include:
        - project_id: Warehouse project
        - location: Job location
    """
    pass


class PoolExhaustedError(SyncConnectionError):
    """Raised when no warehouse client becomes available before the acquire timeout."""
    pass


class PoolClosedError(SyncConnectionError):
    """Raised when acquiring from a pool that has been closed."""
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(SyncException):
    """Base exception for warehouse extraction failures."""
    pass


class WarehouseQueryError(ExtractionError):
    """
    Exception raised when an aggregation query is rejected by the warehouse.

    Context should include:
        - period_type: Aggregation granularity
        - start_date / end_date: Source window
    """
    pass


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(SyncException):
    """Base exception for transformation failures."""
    pass


class ValidationError(TransformationError, NonRetryableError):
    """
    Exception raised when the nested entity/query structure is invalid.

    Always raised before any destination write is attempted.

    Context should include:
        - errors: List of structural violations
        - entity_groups: Number of entity groups inspected
    """
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(SyncException):
    """Base exception for destination write failures."""
    pass


class DatabaseError(LoadError):
    """
    Exception raised when store operations fail.

    Context should include:
        - operation: Type of database operation (INSERT, UPDATE, UPSERT, DELETE)
        - table_name: Name of the table
    """
    pass


class SyncLogError(DatabaseError):
    """Raised when a sync run or data quality record cannot be written or read."""
    pass


class InvalidStateTransition(SyncLogError):
    """
    Raised when a terminal sync run is asked to transition again.

    Context should include:
        - sync_run_id: The run being finalized
        - target_status: The status that was requested
    """
    pass


class BatchWriteError(LoadError):
    """
    Exception describing a single failed upsert batch.

    Never propagated past the loader. Instances are collected into the
    write result's error list.

    Context should include:
        - phase: entity_performance, query_performance, summary or rollup
        - table_name: Destination table
        - batch: Index range of the failed batch, e.g. "0-100"
    """
    pass


# ============================================================================
# Scheduling Errors
# ============================================================================

class ConcurrencyRejection(NonRetryableError):
    """Raised when a sync is requested while another one is running."""
    pass
