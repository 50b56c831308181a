"""
Unified configuration for the gridfill enrichment engine.

Consolidates concurrency, retry, budget, cache and logging options
into a single dataclass with sensible defaults.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

VALID_GRANULARITIES = ("entity", "cell")


@dataclass
class EnrichmentConfig:
    """
    Configuration for enrichment jobs.

    Passed once to the ``JobCoordinator`` and shared by the executor,
    writer and cache.
    """

    # === Concurrency ===
    max_workers: int = 20
    """Maximum units (entities or cells) in flight per job"""

    max_concurrent_jobs: int = 5
    """Maximum jobs executing at once per coordinator"""

    granularity: str = "entity"
    """``entity``: deduplicate cells by entity; ``cell``: one unit per cell"""

    # === Reliability ===
    max_attempts: int = 3
    """Attempt ceiling for a unit that crashes or times out"""

    retry_base_delay: float = 1.0
    """Base delay in seconds for exponential backoff"""

    retry_max_delay: float = 10.0
    """Upper bound on a single backoff delay"""

    retry_jitter: float = 0.25
    """Jitter added to each delay, as a fraction of that delay"""

    task_timeout: Optional[float] = 30.0
    """Maximum seconds per unit attempt (None = no timeout)"""

    # === Budget ===
    default_budget_cents: Optional[int] = None
    """Job budget when the request carries none (None = uncapped job)"""

    default_entity_budget_cents: int = 50
    """Per-entity allotment when the job budget is uncapped"""

    unit_cost_cents: int = 1
    """Cost of one provider call before its cost multiplier"""

    # === Outcome policy ===
    mandatory_fields: Optional[list[str]] = None
    """Fields that must be filled for an entity to count as a success (None = all)"""

    overwrite_fields: bool = False
    """Create tasks for cells that already hold a value"""

    # === Caching ===
    enable_caching: bool = True
    """Look up and store entity results in the entity cache"""

    cache_dir: Optional[str] = None
    """Directory for ``cache.db`` (None = in-memory)"""

    # === Mock providers ===
    simulate_latency: bool = False
    """Let mock providers sleep to mimic network latency"""

    latency_range: tuple[float, float] = (0.05, 0.3)
    """Min/max simulated latency in seconds"""

    # === Logging & display ===
    log_level: str = "INFO"
    """Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"""

    enable_progress_bar: bool = False
    """Show a tqdm bar while units execute"""

    # === Validation ===
    def __post_init__(self):
        """Validate configuration values after initialization."""
        if self.max_workers <= 0:
            raise ValueError(f"max_workers must be positive, got {self.max_workers}")

        if self.max_concurrent_jobs <= 0:
            raise ValueError(f"max_concurrent_jobs must be positive, got {self.max_concurrent_jobs}")

        if self.granularity not in VALID_GRANULARITIES:
            raise ValueError(f"granularity must be one of {VALID_GRANULARITIES}, got {self.granularity!r}")

        if self.max_attempts <= 0:
            raise ValueError(f"max_attempts must be positive, got {self.max_attempts}")

        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            raise ValueError("retry delays must be non-negative")

        if not 0.0 <= self.retry_jitter <= 1.0:
            raise ValueError(f"retry_jitter must be between 0.0 and 1.0, got {self.retry_jitter}")

        if self.task_timeout is not None and self.task_timeout <= 0:
            raise ValueError(f"task_timeout must be positive, got {self.task_timeout}")

        if self.default_budget_cents is not None and self.default_budget_cents < 0:
            raise ValueError(f"default_budget_cents must be non-negative, got {self.default_budget_cents}")

        if self.default_entity_budget_cents < 0:
            raise ValueError(
                f"default_entity_budget_cents must be non-negative, got {self.default_entity_budget_cents}"
            )

        if self.unit_cost_cents < 0:
            raise ValueError(f"unit_cost_cents must be non-negative, got {self.unit_cost_cents}")

        low, high = self.latency_range
        if low < 0 or high < low:
            raise ValueError(f"latency_range must satisfy 0 <= min <= max, got {self.latency_range}")

    @classmethod
    def for_development(cls) -> "EnrichmentConfig":
        """Create configuration optimized for development."""
        return cls(
            max_workers=5,
            retry_base_delay=0.2,
            simulate_latency=True,
            enable_progress_bar=True,
            log_level="DEBUG",
        )

    @classmethod
    def for_production(cls) -> "EnrichmentConfig":
        """Create configuration optimized for production."""
        return cls(
            max_workers=20,
            max_concurrent_jobs=5,
            cache_dir=".gridfill",
            log_level="INFO",
        )

    @classmethod
    def for_testing(cls) -> "EnrichmentConfig":
        """Create configuration with no delays and no console output."""
        return cls(
            max_workers=4,
            retry_base_delay=0.0,
            retry_max_delay=0.0,
            retry_jitter=0.0,
            task_timeout=5.0,
            enable_progress_bar=False,
            log_level="WARNING",
        )
