"""Cost and statistics schemas reported on job results."""

from pydantic import BaseModel


class ProviderUsage(BaseModel):
    """Aggregated provider spend for one job.

    Attributes:
        calls: Provider calls actually executed (coalesced calls excluded).
        cost_cents: Total cost charged for those calls.
        errors: Calls that raised or timed out.
    """

    calls: int = 0
    cost_cents: int = 0
    errors: int = 0


class JobStats(BaseModel):
    """Execution statistics for a job.

    Attributes:
        entity_count: Units of provider work after deduplication.
        cell_count: Cells targeted by those units.
        duplicates_avoided: ``cell_count - entity_count`` at decomposition.
        entities_by_type: Entity counts keyed by entity type.
        cache_hits: Units served entirely from the entity cache.
        cache_misses: Units that required provider calls.
        total_cost_cents: Sum of all provider charges.
        providers: Per-provider usage keyed by provider name.
        processing_time_ms: Wall time for ``run_job``.
    """

    entity_count: int = 0
    cell_count: int = 0
    duplicates_avoided: int = 0
    entities_by_type: dict[str, int] = {}
    cache_hits: int = 0
    cache_misses: int = 0
    total_cost_cents: int = 0
    providers: dict[str, ProviderUsage] = {}
    processing_time_ms: float = 0.0

    @property
    def cache_hit_rate(self) -> float:
        total = self.cache_hits + self.cache_misses
        return self.cache_hits / total if total > 0 else 0.0

    def record_call(self, provider: str, cost_cents: int, error: bool = False) -> None:
        usage = self.providers.setdefault(provider, ProviderUsage())
        usage.calls += 1
        usage.cost_cents += cost_cents
        if error:
            usage.errors += 1
        self.total_cost_cents += cost_cents
