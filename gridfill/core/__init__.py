"""
Core functionality for the gridfill enrichment engine.
"""

from .config import EnrichmentConfig
from .exceptions import (
    ConfigurationError,
    DuplicateTaskError,
    EnrichmentError,
    JobStateError,
    ProviderError,
    RequestValidationError,
    TaskError,
    TaskFailure,
)
from .hooks import (
    EnrichmentHooks,
    JobEndEvent,
    JobStartEvent,
    TaskCompleteEvent,
    UnitCompleteEvent,
)

__all__ = [
    "ConfigurationError",
    "DuplicateTaskError",
    "EnrichmentConfig",
    "EnrichmentError",
    "EnrichmentHooks",
    "JobEndEvent",
    "JobStartEvent",
    "JobStateError",
    "ProviderError",
    "RequestValidationError",
    "TaskCompleteEvent",
    "TaskError",
    "TaskFailure",
    "UnitCompleteEvent",
]
