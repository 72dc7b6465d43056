"""
Pydantic schemas for data validation and serialization.

This package defines the explicit record types passed between pipeline
phases and returned over the monitoring API:

Schemas:
    warehouse: Nested performance shape built from flat warehouse rows
    sync: Sync run, data quality, write/sync result and alert records
    api: API endpoint request/response schemas

Usage:
    from schemas.warehouse import NestedPerformanceData
    from schemas.sync import SyncResult, SyncJobResult
    from schemas.api import HealthCheckResponse

Validation:
    Warehouse values are parsed by the nested transformer, which also
    enforces the structural rules (non-empty identifiers, all four funnel
    sub-objects) before any write.
"""

from schemas.warehouse import NestedPerformanceData, EntityData, SearchQueryData
from schemas.sync import SyncResult, SyncJobResult, WriteResult, DataQualityCheckCreate
from schemas.api import HealthCheckResponse

__all__ = [
    "NestedPerformanceData",
    "EntityData",
    "SearchQueryData",
    "SyncResult",
    "SyncJobResult",
    "WriteResult",
    "DataQualityCheckCreate",
    "HealthCheckResponse",
]
