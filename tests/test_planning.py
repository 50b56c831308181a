"""Tests for waterfall plan selection and singleflight coalescing."""

from __future__ import annotations

import asyncio

import pytest

from gridfill.core.exceptions import ProviderError
from gridfill.core.singleflight import Singleflight
from gridfill.entities.resolver import resolve
from gridfill.planning import PlanSelector
from gridfill.providers import ProviderRegistry, default_mock_providers
from gridfill.schemas.entity import EnrichmentEntity


def _entity(identifier: str, *fields: str) -> EnrichmentEntity:
    resolved = resolve(identifier)
    return EnrichmentEntity(
        entity_id=resolved.entity_id,
        type=resolved.type,
        identifier=identifier,
        normalized_identifier=resolved.normalized,
        requested_fields=list(fields),
    )


def _selector() -> PlanSelector:
    return PlanSelector(ProviderRegistry(default_mock_providers()))


# ---------------------------------------------------------------------------
# PlanSelector
# ---------------------------------------------------------------------------


class TestPlanSelector:
    def test_cheapest_provider_per_field(self):
        steps = _selector().select(_entity("acme.com", "industry", "title", "funding"))
        assert [(s.field, s.provider) for s in steps] == [
            ("industry", "website_scrape"),
            ("title", "search_result"),
            ("funding", "profile_api"),
        ]
        assert [s.cost_cents for s in steps] == [0, 1, 5]

    def test_reused_provider_costs_nothing(self):
        steps = _selector().select(_entity("acme.com", "title", "location"))
        assert [(s.provider, s.cost_cents) for s in steps] == [("search_result", 1), ("search_result", 0)]
        assert steps[1].reason == "already planned via search_result"

    def test_required_inputs_respected(self):
        steps = _selector().select(_entity("linkedin.com/in/jane", "industry"))
        assert steps[0].provider == "search_result"

    def test_existing_values_skipped(self):
        steps = _selector().select(_entity("acme.com", "title", "funding"), existing={"title": "CTO"})
        assert [s.field for s in steps] == ["funding"]

    def test_stops_at_budget(self):
        steps = _selector().select(_entity("acme.com", "title", "funding"), remaining_cents=3)
        assert [s.provider for s in steps] == ["search_result"]

    def test_free_steps_fit_zero_budget(self):
        steps = _selector().select(_entity("acme.com", "industry", "title"), remaining_cents=0)
        assert [s.provider for s in steps] == ["website_scrape"]

    def test_unfillable_field_skipped(self):
        assert _selector().select(_entity("acme.com", "shoe_size")) == []

    def test_next_step_falls_back(self):
        selector = _selector()
        entity = _entity("acme.com", "title")
        step = selector.next_step(entity, "title", tried={"search_result"})
        assert step.provider == "profile_api"
        assert step.reason == "fallback for title"
        assert selector.next_step(entity, "title", tried={"search_result", "profile_api"}) is None

    def test_estimate_cost(self):
        assert _selector().estimate_cost(_entity("acme.com", "industry", "title", "funding")) == 6

    def test_missing_fields(self):
        entity = _entity("acme.com", "title", "email")
        assert _selector().missing_fields(entity, {"title": "CTO", "email": " "}) == ["email"]


# ---------------------------------------------------------------------------
# Singleflight
# ---------------------------------------------------------------------------


class TestSingleflight:
    @pytest.mark.asyncio
    async def test_concurrent_calls_coalesce(self):
        flight = Singleflight()
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return "value"

        results = await asyncio.gather(*(flight.do("k", fetch) for _ in range(5)))
        assert calls == 1
        assert [r[0] for r in results] == ["value"] * 5
        assert sum(1 for _, shared in results if not shared) == 1
        assert flight.in_flight == 0

    @pytest.mark.asyncio
    async def test_different_keys_run_separately(self):
        flight = Singleflight()
        calls = []

        async def call():
            calls.append(1)
            await asyncio.sleep(0)
            return len(calls)

        await asyncio.gather(flight.do("a", call), flight.do("b", call))
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_error_shared_with_joiners(self):
        flight = Singleflight()

        async def boom():
            await asyncio.sleep(0.01)
            raise ProviderError("down", provider="p")

        results = await asyncio.gather(*(flight.do("k", boom) for _ in range(3)), return_exceptions=True)
        assert all(isinstance(r, ProviderError) for r in results)
        assert flight.in_flight == 0

    @pytest.mark.asyncio
    async def test_sequential_calls_not_coalesced(self):
        flight = Singleflight()
        calls = []

        async def fetch():
            calls.append(1)
            return len(calls)

        assert await flight.do("k", fetch) == (1, False)
        assert await flight.do("k", fetch) == (2, False)
