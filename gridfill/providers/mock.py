"""MockProvider — deterministic fake data source for demos and tests.

Values are a pure function of ``(field, normalized identifier)`` so two
cells that resolve to the same entity always receive the same value.
Latency, misses and failures can be simulated.
"""

from __future__ import annotations

import asyncio
import hashlib
import random
from typing import Any

from ..core.config import EnrichmentConfig
from ..core.exceptions import ProviderError
from ..utils.logger import get_logger
from .base import BaseProvider, ProviderContext, ProviderInput

logger = get_logger(__name__)

_CHOICES: dict[str, list[Any]] = {
    "title": ["Head of Growth", "VP Engineering", "Founder & CEO", "Product Manager", "Data Scientist"],
    "industry": ["Software", "Fintech", "Healthcare", "Logistics", "E-commerce"],
    "company_size": ["1-10", "11-50", "51-200", "201-500", "501-1000"],
    "location": ["London, UK", "Berlin, DE", "New York, US", "Austin, US", "Toronto, CA"],
    "funding": ["Bootstrapped", "Seed", "Series A", "Series B", "Public"],
    "tech_stack": [["python", "postgres"], ["typescript", "react"], ["go", "kubernetes"], ["java", "aws"]],
}


def _digest(field: str, key: str) -> int:
    return int(hashlib.sha256(f"{field}|{key}".encode("utf-8")).hexdigest(), 16)


def mock_value(field: str, input: ProviderInput) -> Any:
    """Deterministic value for *field* of the entity in *input*."""
    key = input.normalized_identifier
    seed = _digest(field, key)
    domain = input.domain or f"{key.split(':')[-1].replace('@', '-')}.example"
    slug = domain.split(".")[0]

    if field in _CHOICES:
        options = _CHOICES[field]
        return options[seed % len(options)]
    if field == "email":
        return f"contact@{domain}"
    if field == "website":
        return f"https://{domain}"
    if field == "founded_year":
        return 1990 + seed % 34
    if field == "phone":
        return f"+1-555-{seed % 10000:04d}"
    if field in ("name", "company"):
        return slug.replace("-", " ").title()
    if field == "social_links":
        return [f"https://linkedin.com/company/{slug}"]
    return f"{field} of {slug}"


class MockProvider(BaseProvider):
    """Provider that fabricates plausible, deterministic values.

    Args:
        name: Provider name (also the value source).
        fields: Fields it can fill.
        cost_multiplier: Relative cost of one call.
        required_inputs: Input names that must be available.
        miss_rate: Probability in ``[0, 1]`` that a requested field is
            omitted from the result (a provider miss, not an error).
        failure_rate: Probability in ``[0, 1]`` that a call raises
            ``ProviderError``.
        simulate_latency: Sleep for a random duration in ``latency_range``.
        latency_range: Min/max simulated latency in seconds.
        seed: Seed for the miss/failure/latency generator.
    """

    def __init__(
        self,
        name: str,
        fields: list[str],
        cost_multiplier: float = 1.0,
        required_inputs: list[str] | None = None,
        miss_rate: float = 0.0,
        failure_rate: float = 0.0,
        simulate_latency: bool = False,
        latency_range: tuple[float, float] = (0.05, 0.3),
        seed: int | None = None,
    ):
        for label, rate in (("miss_rate", miss_rate), ("failure_rate", failure_rate)):
            if not 0.0 <= rate <= 1.0:
                raise ValueError(f"{label} must be between 0.0 and 1.0, got {rate}")
        self.name = name
        self.supported_fields = list(fields)
        self.cost_multiplier = cost_multiplier
        self.required_inputs = list(required_inputs or [])
        self.miss_rate = miss_rate
        self.failure_rate = failure_rate
        self.simulate_latency = simulate_latency
        self.latency_range = latency_range
        self._rng = random.Random(seed)
        self.calls = 0

    async def execute(self, input: ProviderInput, context: ProviderContext) -> dict[str, Any]:
        self.calls += 1
        if self.simulate_latency:
            await asyncio.sleep(self._rng.uniform(*self.latency_range))

        if self.failure_rate and self._rng.random() < self.failure_rate:
            raise ProviderError(f"Simulated failure for {input.entity_id}", provider=self.name)

        result: dict[str, Any] = {}
        for field in input.fields:
            if not self.can_enrich(field):
                continue
            if self.miss_rate and self._rng.random() < self.miss_rate:
                logger.debug("%s: simulated miss for %s.%s", self.name, input.entity_id, field)
                continue
            result[field] = mock_value(field, input)
        return result


def default_mock_providers(
    simulate_latency: bool = False,
    latency_range: tuple[float, float] = (0.05, 0.3),
    seed: int | None = None,
    config: EnrichmentConfig | None = None,
) -> list[MockProvider]:
    """A three-tier waterfall: free scraper, cheap search, premium profile API.

    When *config* is given its ``simulate_latency`` and ``latency_range``
    take precedence over the keyword arguments.
    """
    if config is not None:
        simulate_latency, latency_range = config.simulate_latency, config.latency_range
    return [
        MockProvider(
            "website_scrape",
            fields=["website", "company_summary", "industry", "tech_stack", "founded_year"],
            cost_multiplier=0.0,
            required_inputs=["domain"],
            simulate_latency=simulate_latency,
            latency_range=latency_range,
            seed=seed,
        ),
        MockProvider(
            "search_result",
            fields=["name", "company", "title", "location", "industry", "company_size", "website"],
            cost_multiplier=1.0,
            simulate_latency=simulate_latency,
            latency_range=latency_range,
            seed=seed,
        ),
        MockProvider(
            "profile_api",
            fields=[
                "name",
                "company",
                "title",
                "email",
                "phone",
                "location",
                "short_bio",
                "social_links",
                "company_size",
                "funding",
            ],
            cost_multiplier=5.0,
            simulate_latency=simulate_latency,
            latency_range=latency_range,
            seed=seed,
        ),
    ]
