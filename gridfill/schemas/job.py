"""Job, task and request/response schemas."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from .field_value import FieldValue


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.FAILED)


class RowStatus(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    AMBIGUOUS = "ambiguous"


class CellSelection(BaseModel):
    row_id: str = Field(min_length=1)
    column_id: str = Field(min_length=1)


class EnrichRequest(BaseModel):
    """Bulk enrichment request.

    Exactly one mode must be satisfiable:
      - grid mode: ``column_ids`` (+ optional ``row_ids``; ``None`` means
        every row of the table) enriches every column × row combination.
      - explicit mode: ``cell_ids`` enriches the listed cells only.
    """

    table_id: str = Field(min_length=1)
    column_ids: Optional[list[str]] = None
    row_ids: Optional[list[str]] = None
    cell_ids: Optional[list[CellSelection]] = None
    budget_cents: Optional[int] = Field(default=None, ge=0)
    skip_cache: bool = False

    @model_validator(mode="after")
    def exactly_one_mode(self) -> "EnrichRequest":
        grid = bool(self.column_ids)
        explicit = bool(self.cell_ids)
        if grid == explicit:
            raise ValueError(
                "Provide either column_ids (+ row_ids) for grid mode, "
                "or cell_ids for explicit mode, but not both"
            )
        return self

    @property
    def mode(self) -> str:
        return "grid" if self.column_ids else "explicit"


class EnrichResponse(BaseModel):
    job_id: str
    table_id: str
    status: JobStatus
    total_tasks: int
    entity_count: int
    cell_count: int
    estimated_cost_cents: int
    message: str


class EnrichmentJob(BaseModel):
    """Job record.  Status is never derived by scanning tasks."""

    id: str
    table_id: str
    status: JobStatus = JobStatus.PENDING
    total_units: int = 0
    done_units: int = 0
    failed_units: int = 0
    running_units: int = 0
    confidence_sum: float = 0.0
    aggregate_status: RowStatus = RowStatus.IDLE
    budget_cents: Optional[int] = None
    error: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def queued_units(self) -> int:
        return self.total_units - self.done_units - self.failed_units - self.running_units


class CellTask(BaseModel):
    id: str
    job_id: str
    row_id: str
    column_id: str
    column_key: str
    status: TaskStatus = TaskStatus.QUEUED
    result: Optional[FieldValue] = None
    error: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RowState(BaseModel):
    """Row as seen by the enrichment engine."""

    id: str
    table_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    status: RowStatus = RowStatus.IDLE
    confidence: Optional[float] = None
    current_job_id: Optional[str] = None
    total_tasks: int = 0
    done_tasks: int = 0
    failed_tasks: int = 0
    running_tasks: int = 0
    confidence_sum: float = 0.0
    last_run_at: Optional[datetime] = None


class RowMutation(BaseModel):
    """Row change emitted to the collaborator store after a write."""

    row_id: str
    merged_data: dict[str, Any]
    status: RowStatus
    confidence: Optional[float] = None
    last_run_at: Optional[datetime] = None


class JobProgress(BaseModel):
    job_id: str
    status: JobStatus
    aggregate_status: RowStatus
    total_tasks: int
    done_tasks: int
    failed_tasks: int
    running_tasks: int
    progress: float
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


class Column(BaseModel):
    """A table column.  ``key`` is the name used in row data."""

    id: str
    table_id: str
    key: str
    name: Optional[str] = None
    position: int = 0


class CostEstimate(BaseModel):
    """Projected cost of a request, computed without creating a job."""

    table_id: str
    task_count: int
    entity_count: int
    duplicates_avoided: int
    estimated_cost_cents: int
    budget_cents: Optional[int] = None

    @property
    def within_budget(self) -> bool:
        return self.budget_cents is None or self.estimated_cost_cents <= self.budget_cents
