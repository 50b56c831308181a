"""Tests for EnrichmentConfig validation, exceptions and hook firing."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from gridfill.core.config import EnrichmentConfig
from gridfill.core.exceptions import EnrichmentError, ProviderError, TaskError
from gridfill.core.hooks import JobStartEvent, _fire_hook
from gridfill.utils.logger import configure_logging

# ---------------------------------------------------------------------------
# EnrichmentConfig
# ---------------------------------------------------------------------------


class TestEnrichmentConfig:
    def test_defaults(self):
        config = EnrichmentConfig()
        assert config.max_workers == 20
        assert config.granularity == "entity"
        assert config.enable_caching
        assert config.default_budget_cents is None

    @pytest.mark.parametrize(
        "kwargs, match",
        [
            ({"max_workers": 0}, "max_workers"),
            ({"max_concurrent_jobs": 0}, "max_concurrent_jobs"),
            ({"granularity": "row"}, "granularity"),
            ({"max_attempts": 0}, "max_attempts"),
            ({"retry_base_delay": -1}, "retry delays"),
            ({"retry_jitter": 2.0}, "retry_jitter"),
            ({"task_timeout": 0}, "task_timeout"),
            ({"default_budget_cents": -5}, "default_budget_cents"),
            ({"default_entity_budget_cents": -1}, "default_entity_budget_cents"),
            ({"unit_cost_cents": -1}, "unit_cost_cents"),
            ({"latency_range": (0.5, 0.1)}, "latency_range"),
        ],
    )
    def test_invalid_values(self, kwargs, match):
        with pytest.raises(ValueError, match=match):
            EnrichmentConfig(**kwargs)

    def test_no_timeout_allowed(self):
        assert EnrichmentConfig(task_timeout=None).task_timeout is None

    def test_presets(self):
        assert EnrichmentConfig.for_testing().retry_base_delay == 0.0
        assert EnrichmentConfig.for_development().log_level == "DEBUG"
        assert EnrichmentConfig.for_production().cache_dir == ".gridfill"


class TestLogging:
    def test_configure_logging_sets_package_level(self):
        configure_logging("debug")
        assert logging.getLogger("gridfill").level == logging.DEBUG
        configure_logging(logging.WARNING)
        assert logging.getLogger("gridfill").level == logging.WARNING


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TestExceptions:
    def test_message_includes_context(self):
        error = EnrichmentError("lookup failed", row_id="r1", field="title")
        assert str(error) == "lookup failed | Row: r1 | Field: title"

    def test_provider_error_keeps_provider(self):
        error = ProviderError("down", provider="profile_api")
        assert error.provider == "profile_api"
        assert isinstance(error, EnrichmentError)

    def test_task_error_records_type(self):
        record = TaskError("task_1", "r1", "title", ValueError("bad"))
        assert record.error_type == "ValueError"
        assert "column='title'" in str(record)


# ---------------------------------------------------------------------------
# _fire_hook
# ---------------------------------------------------------------------------


class TestFireHook:
    @pytest.mark.asyncio
    async def test_none_hook_is_noop(self):
        await _fire_hook(None, "event")

    @pytest.mark.asyncio
    async def test_sync_callback_called(self):
        mock = MagicMock()
        event = JobStartEvent(job_id="j1", table_id="t1", num_units=1, num_tasks=2)
        await _fire_hook(mock, event)
        mock.assert_called_once_with(event)

    @pytest.mark.asyncio
    async def test_async_callback_awaited(self):
        mock = AsyncMock()
        event = JobStartEvent(job_id="j1", table_id="t1", num_units=1, num_tasks=2)
        await _fire_hook(mock, event)
        mock.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_exception_caught_and_logged(self, caplog):
        def bad_hook(event):
            raise ValueError("hook error")

        with caplog.at_level(logging.WARNING):
            await _fire_hook(bad_hook, "event")

        assert "raised an exception" in caplog.text
