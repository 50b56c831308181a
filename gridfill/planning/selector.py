"""PlanSelector — cost-ordered waterfall planning under a budget.

For each requested field that is still missing, the plan takes the
cheapest provider that can fill it and whose required inputs are
available.  A provider already in the plan fills every field it
supports in one call, so reusing it costs nothing extra.  Planning
stops as soon as the next step would push projected cost past the
remaining budget.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

from ..providers.base import ProviderInput
from ..providers.registry import ProviderRegistry
from ..schemas.entity import EnrichmentEntity
from ..schemas.field_value import is_filled
from ..utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlanStep:
    """One step of an execution plan."""

    provider: str
    field: str
    reason: str
    cost_cents: int


class PlanSelector:
    """Builds ordered provider steps for an entity.

    Args:
        registry: Providers to choose from.
    """

    def __init__(self, registry: ProviderRegistry) -> None:
        self.registry = registry

    def missing_fields(self, entity: EnrichmentEntity, existing: dict[str, Any] | None = None) -> list[str]:
        """Requested fields without a value in *existing* (gap analysis)."""
        existing = existing or {}
        return [f for f in entity.requested_fields if not is_filled(existing.get(f))]

    def select(
        self,
        entity: EnrichmentEntity,
        existing: dict[str, Any] | None = None,
        remaining_cents: Optional[int] = None,
        tried: dict[str, set[str]] | None = None,
    ) -> list[PlanStep]:
        """Produce the initial plan for *entity*.

        Args:
            entity: Entity to plan for.
            existing: Values already known; fields filled here are skipped.
            remaining_cents: Budget left; ``None`` means unlimited.
            tried: Providers already tried, keyed by field.
        """
        tried = tried or {}
        provider_input = ProviderInput.from_entity(entity, existing=existing)
        steps: list[PlanStep] = []
        planned: set[str] = set()
        projected = 0

        for field in self.missing_fields(entity, existing):
            step = self._cheapest(field, provider_input, tried.get(field, set()))
            if step is None:
                logger.debug("No provider can fill %s for %s", field, entity.entity_id)
                continue
            if step.provider in planned:
                steps.append(PlanStep(step.provider, field, f"already planned via {step.provider}", 0))
                continue
            if remaining_cents is not None and projected + step.cost_cents > remaining_cents:
                logger.debug(
                    "Plan for %s stopped at %s: %dc projected, %dc remaining",
                    entity.entity_id,
                    field,
                    projected + step.cost_cents,
                    remaining_cents,
                )
                break
            steps.append(step)
            planned.add(step.provider)
            projected += step.cost_cents
        return steps

    def next_step(
        self,
        entity: EnrichmentEntity,
        field: str,
        tried: Iterable[str],
        existing: dict[str, Any] | None = None,
    ) -> Optional[PlanStep]:
        """Next-cheapest untried provider for a field that is still unfilled."""
        provider_input = ProviderInput.from_entity(entity, existing=existing)
        step = self._cheapest(field, provider_input, set(tried))
        if step is None:
            return None
        return PlanStep(step.provider, field, f"fallback for {field}", step.cost_cents)

    def estimate_cost(self, entity: EnrichmentEntity, existing: dict[str, Any] | None = None) -> int:
        """Cost of the unbudgeted initial plan."""
        return sum(step.cost_cents for step in self.select(entity, existing))

    def _cheapest(self, field: str, provider_input: ProviderInput, exclude: set[str]) -> Optional[PlanStep]:
        for provider in self.registry.candidates(field):
            if provider.name in exclude or not provider.validate(provider_input):
                continue
            return PlanStep(
                provider=provider.name,
                field=field,
                reason=f"cheapest provider for {field}",
                cost_cents=self.registry.cost_cents(provider),
            )
        return None
