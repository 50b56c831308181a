"""
Custom exceptions for the gridfill enrichment engine.

Provides specific exception types for different failure modes
with helpful error messages and context.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class EnrichmentError(Exception):
    """Base exception for all enrichment-related errors.

    Attributes:
        message: Human-readable error description.
        row_id: Row that triggered the error (``None`` for non-row errors).
        field: Field name involved (``None`` if not field-specific).
    """

    def __init__(self, message: str, row_id: str | None = None, field: str | None = None):
        self.message = message
        self.row_id = row_id
        self.field = field

        # Build descriptive error message
        error_parts = [message]
        if row_id is not None:
            error_parts.append(f"Row: {row_id}")
        if field is not None:
            error_parts.append(f"Field: {field}")

        super().__init__(" | ".join(error_parts))


class ConfigurationError(EnrichmentError):
    """Raised when configuration or registry setup is invalid."""

    pass


class RequestValidationError(EnrichmentError):
    """Raised when an enrichment request cannot be accepted.

    Common causes:
        - Neither or both of grid mode and explicit mode were supplied.
        - The table, a column or a row does not exist.
    """

    pass


class ProviderError(EnrichmentError):
    """Raised when a provider call throws or times out.

    Caught inside plan execution: the failed step leaves its field(s)
    unfilled and the remaining steps still run.

    Attributes:
        provider: Name of the provider that failed.
    """

    def __init__(self, message: str, provider: str | None = None, **kwargs: Any):
        self.provider = provider
        super().__init__(message, **kwargs)


class TaskFailure(EnrichmentError):
    """Raised when a unit of work fails after exhausting its attempts.

    Attributes:
        unit_key: Entity id (entity mode) or task id (cell mode).
        attempts: Attempts made before giving up.
    """

    def __init__(self, message: str, unit_key: str | None = None, attempts: int = 0, **kwargs: Any):
        self.unit_key = unit_key
        self.attempts = attempts
        super().__init__(message, **kwargs)


class JobStateError(EnrichmentError):
    """Raised on an illegal job lifecycle transition."""

    pass


class DuplicateTaskError(EnrichmentError):
    """Raised when a task already exists for a (job, row, column) tuple."""

    pass


@dataclass
class TaskError:
    """Per-task failure record collected on a job result."""

    task_id: str
    row_id: str
    column_key: str
    error: BaseException
    error_type: str = ""

    def __post_init__(self) -> None:
        if not self.error_type:
            self.error_type = type(self.error).__name__

    def __str__(self) -> str:
        return (
            f"TaskError(task={self.task_id}, row={self.row_id}, "
            f"column='{self.column_key}', {self.error_type}: {self.error})"
        )
