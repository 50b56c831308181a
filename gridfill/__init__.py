"""
Gridfill - Spreadsheet Enrichment Engine

Fills empty cells of a table by resolving each row to a real-world
entity, enriching every unique entity once through a cost-ordered
waterfall of providers, and writing values back with per-row status.
"""

from .core import (
    EnrichmentConfig,
    EnrichmentError,
    EnrichmentHooks,
    JobStateError,
    ProviderError,
    RequestValidationError,
)
from .core.budget import BudgetTracker
from .core.cache import EntityCache
from .core.coordinator import JobCoordinator, JobResult
from .core.store import RecordStore
from .providers import (
    FunctionProvider,
    MockProvider,
    ProviderRegistry,
    SynthesisProvider,
    default_mock_providers,
)
from .schemas import EnrichRequest, FieldValue, RowStatus
from .utils import configure_logging

__version__ = "0.1.0"

__all__ = [
    "BudgetTracker",
    "EnrichmentConfig",
    "EnrichmentError",
    "EnrichmentHooks",
    "EnrichRequest",
    "EntityCache",
    "FieldValue",
    "FunctionProvider",
    "JobCoordinator",
    "JobResult",
    "JobStateError",
    "MockProvider",
    "ProviderError",
    "ProviderRegistry",
    "RecordStore",
    "RequestValidationError",
    "RowStatus",
    "SynthesisProvider",
    "configure_logging",
    "default_mock_providers",
]
