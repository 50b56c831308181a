"""Pydantic schemas for the gridfill engine."""

from .base import JobStats, ProviderUsage
from .entity import (
    EnrichedEntityData,
    EnrichmentEntity,
    EntityType,
    ProvenanceRecord,
    TargetCell,
)
from .field_value import (
    DEFAULT_TTL_DAYS,
    SOURCE_TRUST_WEIGHTS,
    FieldValue,
    is_filled,
    merge_field_values,
    trust_weight,
)
from .job import (
    CellSelection,
    CellTask,
    Column,
    CostEstimate,
    EnrichmentJob,
    EnrichRequest,
    EnrichResponse,
    JobProgress,
    JobStatus,
    RowMutation,
    RowState,
    RowStatus,
    TaskStatus,
)

__all__ = [
    "CellSelection",
    "CellTask",
    "Column",
    "CostEstimate",
    "DEFAULT_TTL_DAYS",
    "EnrichedEntityData",
    "EnrichmentEntity",
    "EnrichmentJob",
    "EnrichRequest",
    "EnrichResponse",
    "EntityType",
    "FieldValue",
    "JobProgress",
    "JobStats",
    "JobStatus",
    "ProvenanceRecord",
    "ProviderUsage",
    "RowMutation",
    "RowState",
    "RowStatus",
    "SOURCE_TRUST_WEIGHTS",
    "TargetCell",
    "TaskStatus",
    "is_filled",
    "merge_field_values",
    "trust_weight",
]
