"""Tests for provider adapters, the registry and LLM synthesis."""

from __future__ import annotations

import json
from dataclasses import replace
from typing import Any

import pytest

from gridfill.core.config import EnrichmentConfig
from gridfill.core.exceptions import ConfigurationError, ProviderError
from gridfill.entities.resolver import resolve
from gridfill.providers import (
    FunctionProvider,
    MockProvider,
    ProviderContext,
    ProviderInput,
    ProviderRegistry,
    SynthesisProvider,
    default_mock_providers,
    wrap_value,
)
from gridfill.providers.llm import LLMAPIError, LLMResponse
from gridfill.providers.mock import mock_value
from gridfill.schemas.entity import EnrichmentEntity
from gridfill.schemas.field_value import FieldValue

CTX = ProviderContext(job_id="job_test")


def _entity(identifier: str, *fields: str, **source: Any) -> EnrichmentEntity:
    resolved = resolve(identifier)
    return EnrichmentEntity(
        entity_id=resolved.entity_id,
        type=resolved.type,
        identifier=identifier,
        normalized_identifier=resolved.normalized,
        requested_fields=list(fields),
        source_data=source,
    )


def _input(identifier: str, *fields: str, **source: Any) -> ProviderInput:
    return ProviderInput.from_entity(_entity(identifier, *fields, **source))


class FakeLLMClient:
    """Returns canned responses in order and records every request."""

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    async def complete(self, messages, model, temperature, max_tokens, response_format=None):
        self.requests.append({"messages": messages, "model": model, "response_format": response_format})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return LLMResponse(content=response, total_tokens=10)


# ---------------------------------------------------------------------------
# ProviderInput
# ---------------------------------------------------------------------------


class TestProviderInput:
    def test_domain_from_identifier(self):
        assert _input("https://www.acme.com/").domain == "acme.com"

    def test_domain_from_email(self):
        assert _input("jane@acme.com").domain == "acme.com"

    def test_domain_from_existing_data(self):
        assert _input("linkedin.com/in/jane", website="https://globex.io/about").domain == "globex.io"

    def test_no_domain_for_profile(self):
        assert _input("linkedin.com/in/jane").domain is None

    def test_available_inputs(self):
        available = _input("jane@acme.com", company="Acme").available_inputs()
        assert {"identifier", "domain", "email", "company"} <= available
        assert "linkedin" not in available

    def test_existing_overrides_source(self):
        entity = _entity("acme.com", "title", company="Old")
        provider_input = ProviderInput.from_entity(entity, existing={"company": "New", "title": None})
        assert provider_input.existing == {"company": "New"}
        assert provider_input.fields == ("title",)


class TestWrapValue:
    def test_raw_value_gets_trust_weight(self):
        fv = wrap_value("linkedin_api", "title", "CTO")
        assert fv.confidence == 0.95
        assert fv.sources == ["linkedin_api"]
        assert fv.label == "inferred"
        assert fv.ttl_days == 30

    def test_field_value_gets_provider_source(self):
        fv = wrap_value("search_result", "title", FieldValue.create("CTO", 0.6, ["serper"]))
        assert fv.sources == ["serper", "search_result"]
        assert fv.confidence == 0.6

    def test_empty_raw_value(self):
        assert not wrap_value("mock", "title", "").filled


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_candidates_cheapest_first_ties_keep_order(self):
        registry = ProviderRegistry(
            [
                MockProvider("premium", ["title"], cost_multiplier=5.0),
                MockProvider("cheap_a", ["title"], cost_multiplier=1.0),
                MockProvider("cheap_b", ["title"], cost_multiplier=1.0),
                MockProvider("other", ["email"], cost_multiplier=0.0),
            ]
        )
        assert [p.name for p in registry.candidates("title")] == ["cheap_a", "cheap_b", "premium"]
        assert registry.fields == {"title", "email"}
        assert len(registry) == 4
        assert "premium" in registry

    def test_cost_cents_rounds_up(self):
        registry = ProviderRegistry([MockProvider("p", ["x"], cost_multiplier=0.5)], unit_cost_cents=3)
        assert registry.cost_cents("p") == 2

    def test_duplicate_name_rejected(self):
        registry = ProviderRegistry([MockProvider("p", ["x"])])
        with pytest.raises(ConfigurationError, match="already registered"):
            registry.register(MockProvider("p", ["y"]))

    def test_negative_cost_rejected(self):
        with pytest.raises(ConfigurationError, match="negative"):
            ProviderRegistry([MockProvider("p", ["x"], cost_multiplier=-1.0)])

    def test_non_provider_rejected(self):
        with pytest.raises(ConfigurationError, match="Provider protocol"):
            ProviderRegistry().register(object())

    def test_unregister(self):
        registry = ProviderRegistry([MockProvider("p", ["x"])])
        registry.unregister("p")
        assert registry.get("p") is None
        assert registry.candidates("x") == []


# ---------------------------------------------------------------------------
# Mock and function providers
# ---------------------------------------------------------------------------


class TestMockProvider:
    def test_mock_value_deterministic(self):
        a = _input("https://linkedin.com/in/janedoe")
        b = _input("linkedin.com/in/JaneDoe/")
        for field in ("title", "location", "phone", "email", "founded_year"):
            assert mock_value(field, a) == mock_value(field, b)

    def test_mock_value_uses_domain(self):
        provider_input = _input("acme.com")
        assert mock_value("website", provider_input) == "https://acme.com"
        assert mock_value("email", provider_input) == "contact@acme.com"
        assert mock_value("company", provider_input) == "Acme"

    @pytest.mark.asyncio
    async def test_execute_fills_only_supported_fields(self):
        provider = MockProvider("m", ["title", "industry"])
        result = await provider.execute(_input("acme.com", "title", "funding"), CTX)
        assert set(result) == {"title"}
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_failure_rate_one_raises(self):
        provider = MockProvider("m", ["title"], failure_rate=1.0)
        with pytest.raises(ProviderError):
            await provider.execute(_input("acme.com", "title"), CTX)

    @pytest.mark.asyncio
    async def test_miss_rate_one_returns_nothing(self):
        provider = MockProvider("m", ["title"], miss_rate=1.0)
        assert await provider.execute(_input("acme.com", "title"), CTX) == {}

    def test_rates_validated(self):
        with pytest.raises(ValueError, match="miss_rate"):
            MockProvider("m", ["title"], miss_rate=1.5)

    def test_website_scrape_requires_domain(self):
        scrape = default_mock_providers()[0]
        assert scrape.name == "website_scrape"
        assert scrape.validate(_input("acme.com"))
        assert not scrape.validate(_input("linkedin.com/in/jane"))

    def test_latency_follows_config(self):
        config = replace(EnrichmentConfig.for_development(), latency_range=(0.0, 0.01))
        providers = default_mock_providers(config=config)
        assert all(p.simulate_latency for p in providers)
        assert {p.latency_range for p in providers} == {(0.0, 0.01)}
        assert not any(p.simulate_latency for p in default_mock_providers(config=EnrichmentConfig.for_testing()))


class TestFunctionProvider:
    @pytest.mark.asyncio
    async def test_sync_function(self):
        def lookup(provider_input, context):
            return {"title": "CTO", "secret": "dropped", "email": "not requested"}

        provider = FunctionProvider("lookup", lookup, fields=["title", "email"])
        assert await provider.execute(_input("acme.com", "title"), CTX) == {"title": "CTO"}

    @pytest.mark.asyncio
    async def test_async_function_receives_context(self):
        seen = {}

        async def lookup(provider_input, context):
            seen["job"] = context.job_id
            return {"title": provider_input.identifier}

        provider = FunctionProvider("lookup", lookup, fields=["title"])
        assert await provider.execute(_input("acme.com", "title"), CTX) == {"title": "acme.com"}
        assert seen == {"job": "job_test"}

    @pytest.mark.asyncio
    async def test_none_result(self):
        provider = FunctionProvider("lookup", lambda i, c: None, fields=["title"])
        assert await provider.execute(_input("acme.com", "title"), CTX) == {}

    def test_custom_validator(self):
        provider = FunctionProvider(
            "people_only",
            lambda i, c: {},
            fields=["title"],
            validator=lambda i: i.entity_type.value == "person",
        )
        assert provider.validate(_input("jane@gmail.com"))
        assert not provider.validate(_input("acme.com"))


# ---------------------------------------------------------------------------
# SynthesisProvider
# ---------------------------------------------------------------------------


class TestSynthesisProvider:
    @pytest.mark.asyncio
    async def test_generates_labelled_values(self):
        client = FakeLLMClient(json.dumps({"industry": "Software", "funding": "unknown"}))
        provider = SynthesisProvider(client, fields=["industry", "funding"])
        result = await provider.execute(_input("acme.com", "industry", "funding"), CTX)

        assert set(result) == {"industry"}
        value = result["industry"]
        assert value.label == "generated"
        assert value.confidence == 0.4
        assert value.sources == ["llm_synthesis"]
        assert client.requests[0]["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_parse_retry_then_success(self):
        client = FakeLLMClient("not json", json.dumps({"industry": "Fintech"}))
        provider = SynthesisProvider(client, fields=["industry"])
        result = await provider.execute(_input("acme.com", "industry"), CTX)
        assert result["industry"].value == "Fintech"
        assert len(client.requests) == 2
        assert "invalid" in client.requests[1]["messages"][-1]["content"]

    @pytest.mark.asyncio
    async def test_parse_retries_exhausted(self):
        client = FakeLLMClient("[1, 2]", "still not an object")
        provider = SynthesisProvider(client, fields=["industry"])
        with pytest.raises(ProviderError, match="Unparseable"):
            await provider.execute(_input("acme.com", "industry"), CTX)

    @pytest.mark.asyncio
    async def test_api_error_becomes_provider_error(self):
        client = FakeLLMClient(LLMAPIError("rate limited", status_code=429, is_rate_limit=True))
        provider = SynthesisProvider(client, fields=["industry"])
        with pytest.raises(ProviderError, match="LLM call failed"):
            await provider.execute(_input("acme.com", "industry"), CTX)

    @pytest.mark.asyncio
    async def test_no_supported_fields_skips_call(self):
        client = FakeLLMClient()
        provider = SynthesisProvider(client, fields=["industry"])
        assert await provider.execute(_input("acme.com", "title"), CTX) == {}
        assert client.requests == []
