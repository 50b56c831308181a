"""Tests for TaskExecutor: plan execution, retries, timeouts and budgets."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

import pytest

from gridfill.core.budget import BudgetTracker
from gridfill.core.cache import EntityCache
from gridfill.core.config import EnrichmentConfig
from gridfill.core.exceptions import ProviderError, TaskFailure
from gridfill.core.executor import CancelToken, TaskExecutor, UnitStatus
from gridfill.core.store import RecordStore
from gridfill.core.writer import ResultWriter
from gridfill.entities import EnrichmentTarget, build_entity_map
from gridfill.providers import FunctionProvider, MockProvider, ProviderRegistry
from gridfill.schemas.base import JobStats
from gridfill.schemas.entity import EnrichmentEntity
from gridfill.schemas.job import CellTask, EnrichmentJob, TaskStatus


class Harness:
    """A store with one job and one queued task per requested cell."""

    def __init__(self, registry: ProviderRegistry, config: EnrichmentConfig | None = None, **executor_kwargs):
        self.store = RecordStore()
        self.store.create_job(EnrichmentJob(id="j1", table_id="t1"))
        self.writer = ResultWriter(self.store)
        self.config = config or EnrichmentConfig.for_testing()
        self.executor = TaskExecutor(registry, self.writer, config=self.config, **executor_kwargs)
        self.stats = JobStats()

    def entities(self, cells: list[tuple[str, str, str]]) -> dict[str, EnrichmentEntity]:
        """Enqueue ``(row_id, column_key, identifier)`` cells and dedup them."""
        targets = []
        tasks = []
        for row_id, column, identifier in cells:
            if self.store.get_row(row_id) is None:
                self.store.add_row("t1", {"id": identifier}, row_id=row_id)
            task_id = f"{row_id}:{column}"
            tasks.append(CellTask(id=task_id, job_id="j1", row_id=row_id, column_id=column, column_key=column))
            targets.append(EnrichmentTarget(row_id=row_id, column_key=column, identifier=identifier, task_id=task_id))
        self.writer.enqueue("j1", tasks)
        return build_entity_map(targets).entities

    async def run(self, units, budget: BudgetTracker | None = None, **kwargs):
        return await self.executor.run_units("j1", units, budget or BudgetTracker(), self.stats, **kwargs)


# ---------------------------------------------------------------------------
# Plan execution
# ---------------------------------------------------------------------------


class TestPlanExecution:
    @pytest.mark.asyncio
    async def test_waterfall_fills_fields_and_writes_cells(self):
        registry = ProviderRegistry(
            [
                MockProvider("search_result", ["title", "location"], cost_multiplier=1.0),
                MockProvider("profile_api", ["title", "email"], cost_multiplier=5.0),
            ]
        )
        h = Harness(registry)
        units = h.entities([("r1", "title", "acme.com"), ("r1", "location", "acme.com"), ("r1", "email", "acme.com")])

        [outcome] = await h.run(units)

        assert outcome.status is UnitStatus.SUCCESS
        assert set(outcome.data.fields) == {"title", "location", "email"}
        assert outcome.data.fields["title"].sources == ["search_result"]
        assert h.stats.total_cost_cents == 6
        assert h.stats.providers["search_result"].calls == 1
        assert registry.get("search_result").calls == 1
        assert all(t.status is TaskStatus.DONE for t in h.store.list_tasks("j1"))
        assert h.store.get_row("r1").data["email"] == "contact@acme.com"

    @pytest.mark.asyncio
    async def test_provider_error_falls_back_to_next_provider(self, caplog):
        async def broken(provider_input, context):
            raise RuntimeError("upstream 500")

        registry = ProviderRegistry(
            [
                FunctionProvider("broken", broken, fields=["title"], cost_multiplier=1.0),
                MockProvider("backup", ["title"], cost_multiplier=2.0),
            ]
        )
        h = Harness(registry)
        units = h.entities([("r1", "title", "acme.com")])

        with caplog.at_level(logging.WARNING, logger="gridfill"):
            [outcome] = await h.run(units)

        assert outcome.status is UnitStatus.SUCCESS
        assert outcome.attempts == 1
        assert outcome.data.fields["title"].sources == ["backup"]
        assert h.stats.providers["broken"].errors == 1
        assert "Provider broken failed" in caplog.text

    @pytest.mark.asyncio
    async def test_not_found_is_a_failed_cell_without_retry(self):
        provider = MockProvider("empty", ["title"], miss_rate=1.0)
        h = Harness(ProviderRegistry([provider]))
        units = h.entities([("r1", "title", "acme.com")])

        [outcome] = await h.run(units)

        assert outcome.status is UnitStatus.FAILED
        assert outcome.failed_fields == {"title": "not found"}
        assert provider.calls == 1
        assert h.store.get_task("r1:title").error == "not found"

    @pytest.mark.asyncio
    async def test_no_provider_for_field(self):
        h = Harness(ProviderRegistry([MockProvider("m", ["title"])]))
        units = h.entities([("r1", "title", "acme.com"), ("r1", "shoe_size", "acme.com")])

        [outcome] = await h.run(units)

        assert outcome.status is UnitStatus.PARTIAL
        assert outcome.failed_fields == {"shoe_size": "no provider available for shoe_size"}
        assert h.store.get_row("r1").status.value == "ambiguous"

    @pytest.mark.asyncio
    async def test_mandatory_fields_decide_success(self):
        config = replace(EnrichmentConfig.for_testing(), mandatory_fields=["title"])
        h = Harness(ProviderRegistry([MockProvider("m", ["title"])]), config=config)
        units = h.entities([("r1", "title", "acme.com"), ("r1", "shoe_size", "acme.com")])

        [outcome] = await h.run(units)

        assert outcome.status is UnitStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_duplicate_cells_share_one_call(self):
        provider = MockProvider("m", ["title"])
        h = Harness(ProviderRegistry([provider]))
        units = h.entities(
            [("r1", "title", "https://linkedin.com/in/janedoe"), ("r2", "title", "linkedin.com/in/JaneDoe/")]
        )

        [outcome] = await h.run(units)

        assert provider.calls == 1
        assert h.stats.total_cost_cents == 1
        assert h.store.get_row("r1").data["title"] == h.store.get_row("r2").data["title"]
        assert len(outcome.entity.target_cells) == 2


# ---------------------------------------------------------------------------
# Retries and timeouts
# ---------------------------------------------------------------------------


class TestRetries:
    @pytest.mark.asyncio
    async def test_all_calls_failing_is_retried(self):
        attempts = []

        def flaky(provider_input, context):
            attempts.append(context.attempt)
            if context.attempt < 2:
                raise ProviderError("temporarily unavailable", provider="flaky")
            return {"title": "CTO"}

        h = Harness(ProviderRegistry([FunctionProvider("flaky", flaky, fields=["title"])]))
        units = h.entities([("r1", "title", "acme.com")])

        [outcome] = await h.run(units)

        assert attempts == [1, 2]
        assert outcome.status is UnitStatus.SUCCESS
        assert outcome.attempts == 2
        assert h.store.get_task("r1:title").attempts == 2

    @pytest.mark.asyncio
    async def test_exhausted_attempts_fail_cells(self, caplog):
        provider = MockProvider("down", ["title"], failure_rate=1.0)
        h = Harness(ProviderRegistry([provider]))
        units = h.entities([("r1", "title", "acme.com")])

        with caplog.at_level(logging.ERROR, logger="gridfill"):
            [outcome] = await h.run(units)

        assert provider.calls == h.config.max_attempts
        assert outcome.status is UnitStatus.FAILED
        assert isinstance(outcome.error, TaskFailure)
        assert outcome.attempts == h.config.max_attempts
        task = h.store.get_task("r1:title")
        assert task.status is TaskStatus.FAILED
        assert "provider error from down" in task.error
        assert "failed after 3 attempts" in caplog.text

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(provider_input, context):
            await asyncio.sleep(5)
            return {"title": "never"}

        config = replace(EnrichmentConfig.for_testing(), task_timeout=0.05, max_attempts=2)
        h = Harness(ProviderRegistry([FunctionProvider("slow", slow, fields=["title"])]), config=config)
        units = h.entities([("r1", "title", "acme.com")])

        [outcome] = await h.run(units)

        assert outcome.status is UnitStatus.FAILED
        assert isinstance(outcome.error, TaskFailure)
        assert "timed out" in h.store.get_task("r1:title").error


# ---------------------------------------------------------------------------
# Budget and cancellation
# ---------------------------------------------------------------------------


class TestBudgetAndCancel:
    @pytest.mark.asyncio
    async def test_entity_budget_stops_waterfall(self):
        registry = ProviderRegistry(
            [
                MockProvider("cheap", ["title"], cost_multiplier=1.0),
                MockProvider("premium", ["funding"], cost_multiplier=5.0),
            ]
        )
        h = Harness(registry)
        units = h.entities([("r1", "title", "acme.com"), ("r1", "funding", "acme.com")])

        [outcome] = await h.run(units, entity_budget_cents=3)

        assert outcome.status is UnitStatus.PARTIAL
        assert outcome.budget_exhausted
        assert outcome.failed_fields == {"funding": "budget exhausted"}
        assert registry.get("premium").calls == 0
        assert h.stats.total_cost_cents == 1

    @pytest.mark.asyncio
    async def test_job_budget_never_exceeded(self):
        registry = ProviderRegistry([MockProvider("paid", ["title"], cost_multiplier=2.0)])
        config = replace(EnrichmentConfig.for_testing(), max_workers=1)
        h = Harness(registry, config=config)
        units = h.entities([(f"r{i}", "title", f"company{i}.com") for i in range(5)])
        budget = BudgetTracker(4)
        token = CancelToken()

        outcomes = await h.run(units, budget=budget, token=token)

        assert budget.spent_cents <= 4
        assert h.stats.total_cost_cents == budget.spent_cents == 4
        statuses = [o.status for o in outcomes]
        assert statuses.count(UnitStatus.SUCCESS) == 2
        assert statuses.count(UnitStatus.CANCELLED) == 3
        assert token.reason == "budget exhausted"
        failed = h.store.list_tasks("j1", TaskStatus.FAILED)
        assert failed
        assert {t.error for t in failed} == {"budget exhausted"}

    @pytest.mark.asyncio
    async def test_cancelled_token_skips_everything(self):
        provider = MockProvider("m", ["title"])
        h = Harness(ProviderRegistry([provider]))
        units = h.entities([("r1", "title", "acme.com"), ("r2", "title", "globex.com")])
        token = CancelToken()
        token.cancel("cancelled")

        outcomes = await h.run(units, token=token)

        assert [o.status for o in outcomes] == [UnitStatus.CANCELLED] * 2
        assert provider.calls == 0
        assert {t.error for t in h.store.list_tasks("j1")} == {"cancelled"}

    @pytest.mark.asyncio
    async def test_cache_hit_skips_providers(self):
        provider = MockProvider("m", ["title"])
        cache = EntityCache()
        h = Harness(ProviderRegistry([provider]), cache=cache)
        units = h.entities([("r1", "title", "acme.com")])
        await h.run(units)
        assert len(cache) == 1

        h.store.create_job(EnrichmentJob(id="j2", table_id="t1"))
        h.writer.enqueue("j2", [CellTask(id="again", job_id="j2", row_id="r1", column_id="title", column_key="title")])
        entity = units["company:acme_2ecom"].model_copy(deep=True)
        entity.target_cells[0].task_id = "again"
        hits, misses = cache.partition({entity.entity_id: entity})

        [outcome] = await h.executor.run_units("j2", {entity.entity_id: entity}, BudgetTracker(), h.stats, cached=hits)

        assert outcome.from_cache
        assert provider.calls == 1
        assert h.store.get_task("again").status is TaskStatus.DONE
