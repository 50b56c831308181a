"""TaskExecutor — runs units of work under a bounded worker pool.

A unit is one entity's waterfall plan (entity granularity) or a single
cell (cell granularity).  Provider errors inside a plan are caught per
step; a unit that crashes, times out, or sees every provider call fail
is retried with exponential backoff and jitter, then marked failed.
Outcomes are written back cell by cell through the ``ResultWriter``.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections import defaultdict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from tqdm.auto import tqdm

from ..planning.selector import PlanSelector
from ..providers.base import ProviderContext, ProviderInput, wrap_value
from ..providers.registry import ProviderRegistry
from ..schemas.base import JobStats
from ..schemas.entity import EnrichedEntityData, EnrichmentEntity, ProvenanceRecord
from ..schemas.field_value import FieldValue, merge_field_values
from ..utils.logger import get_logger
from .budget import BudgetTracker
from .cache import EntityCache, compute_call_key
from .config import EnrichmentConfig
from .exceptions import ProviderError, TaskFailure
from .hooks import EnrichmentHooks, TaskCompleteEvent, UnitCompleteEvent, _fire_hook
from .singleflight import Singleflight
from .writer import ResultWriter, TaskRef

logger = get_logger(__name__)


class UnitStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class UnitOutcome:
    """Result of executing one unit.

    Attributes:
        unit_key: Entity id (entity mode) or task id (cell mode).
        entity: The unit's entity.
        status: ``success`` when every mandatory field was filled,
            ``partial`` when only some fields were, ``failed`` when none.
        data: Filled field values and provenance.
        failed_fields: Reason per requested field left unfilled.
        attempts: Attempts used.
        from_cache: Served from the entity cache.
        budget_exhausted: Plan execution stopped early on budget.
        calls: Provider calls made on the final attempt.
        errors: Provider calls that raised on the final attempt.
        error: The error behind a failed outcome, if any.
    """

    unit_key: str
    entity: EnrichmentEntity
    status: UnitStatus
    data: EnrichedEntityData
    failed_fields: dict[str, str] = field(default_factory=dict)
    attempts: int = 0
    from_cache: bool = False
    budget_exhausted: bool = False
    calls: int = 0
    errors: int = 0
    error: Optional[BaseException] = None

    @property
    def retryable(self) -> bool:
        """Nothing was filled and every provider call raised."""
        return self.status is UnitStatus.FAILED and self.calls > 0 and self.errors == self.calls


class CancelToken:
    """Cooperative cancellation signal shared by the workers of one job."""

    def __init__(self) -> None:
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def cancel(self, reason: str = "cancelled") -> None:
        if self.reason is None:
            self.reason = reason


class _BudgetStop(Exception):
    pass


class _PlanRun:
    """State of one attempt at one unit's plan."""

    def __init__(
        self,
        executor: "TaskExecutor",
        entity: EnrichmentEntity,
        budget: BudgetTracker,
        context: ProviderContext,
        stats: JobStats,
    ) -> None:
        self.executor = executor
        self.entity = entity
        self.budget = budget
        self.context = context
        self.stats = stats
        self.collected: dict[str, list[FieldValue]] = defaultdict(list)
        self.called: set[str] = set()
        self.tried: dict[str, set[str]] = defaultdict(set)
        self.field_errors: dict[str, str] = {}
        self.provenance: list[ProvenanceRecord] = []
        self.calls = 0
        self.errors = 0
        self.cost_cents = 0
        self.budget_exhausted = False
        self.last_error: Optional[BaseException] = None
        self.started = time.perf_counter()

    def is_filled(self, field_name: str) -> bool:
        return any(v.filled for v in self.collected.get(field_name, []))

    def missing(self) -> list[str]:
        return [f for f in self.entity.requested_fields if not self.is_filled(f)]

    def known(self) -> dict[str, Any]:
        return {f: merge_field_values(vs).value for f, vs in self.collected.items() if vs}

    async def call(self, provider_name: str) -> bool:
        """Call one provider for every still-missing field it supports.

        Returns False when the budget cannot cover the call.
        """
        registry = self.executor.registry
        provider = registry.get(provider_name)
        self.called.add(provider_name)
        if provider is None:
            return True
        fields = [f for f in self.missing() if provider.can_enrich(f)]
        if not fields:
            return True

        cost = registry.cost_cents(provider)
        if not self.budget.can_afford(cost):
            self.budget_exhausted = True
            logger.warning(
                "Budget exhausted for %s before %s (%dc needed, %sc left)",
                self.entity.entity_id,
                provider_name,
                cost,
                self.budget.remaining_cents,
            )
            return False

        for f in fields:
            self.tried[f].add(provider_name)
        provider_input = ProviderInput.from_entity(self.entity, fields, existing=self.known())
        charged = False

        async def invoke() -> dict[str, Any]:
            nonlocal charged
            if not self.budget.try_charge(cost, label=f"{provider_name}:{self.entity.entity_id}"):
                raise _BudgetStop()
            charged = True
            return await provider.execute(provider_input, self.context)

        key = compute_call_key(provider=provider_name, entity_id=self.entity.entity_id, fields=sorted(fields))
        try:
            raw, _shared = await self.executor.singleflight.do(key, invoke)
        except _BudgetStop:
            self.budget_exhausted = True
            return False
        except Exception as exc:
            self.calls += 1
            self.errors += 1
            if charged:
                self.cost_cents += cost
                self.stats.record_call(provider_name, cost, error=True)
            error = exc if isinstance(exc, ProviderError) else ProviderError(str(exc), provider=provider_name)
            self.last_error = error
            for f in fields:
                self.field_errors[f] = f"provider error from {provider_name}: {exc}"
            logger.warning("Provider %s failed for %s: %s", provider_name, self.entity.entity_id, exc)
            return True

        self.calls += 1
        if charged:
            self.cost_cents += cost
            self.stats.record_call(provider_name, cost)
        for f, value in (raw or {}).items():
            if f not in self.entity.requested_fields:
                continue
            wrapped = wrap_value(provider_name, f, value)
            if wrapped.filled:
                self.collected[f].append(wrapped)
                self.provenance.append(
                    ProvenanceRecord(
                        field=f,
                        source=provider_name,
                        confidence=wrapped.confidence,
                        cost_cents=cost if charged else 0,
                    )
                )
        return True

    def outcome(self, unit_key: str, mandatory: Optional[list[str]]) -> UnitOutcome:
        requested = self.entity.requested_fields
        fields = {f: merge_field_values(vs) for f, vs in self.collected.items() if vs}
        filled = {f for f, v in fields.items() if v.filled}
        required = set(mandatory) & set(requested) if mandatory is not None else set(requested)

        if not filled:
            status = UnitStatus.FAILED
        elif required <= filled:
            status = UnitStatus.SUCCESS
        else:
            status = UnitStatus.PARTIAL

        failed_fields: dict[str, str] = {}
        for f in requested:
            if f in filled:
                continue
            if f in self.field_errors:
                failed_fields[f] = self.field_errors[f]
            elif self.budget_exhausted:
                failed_fields[f] = "budget exhausted"
            elif not self.tried.get(f):
                failed_fields[f] = f"no provider available for {f}"
            else:
                failed_fields[f] = "not found"

        all_failed = self.calls > 0 and self.errors == self.calls
        return UnitOutcome(
            unit_key=unit_key,
            entity=self.entity,
            status=status,
            data=EnrichedEntityData(
                entity_id=self.entity.entity_id,
                type=self.entity.type,
                fields={f: fields[f] for f in requested if f in filled},
                provenance=self.provenance,
                cost_cents=self.cost_cents,
                processing_time_ms=(time.perf_counter() - self.started) * 1000,
            ),
            failed_fields=failed_fields,
            budget_exhausted=self.budget_exhausted,
            calls=self.calls,
            errors=self.errors,
            error=self.last_error if status is UnitStatus.FAILED and all_failed else None,
        )


class TaskExecutor:
    """Executes units concurrently and writes their outcomes back.

    Args:
        registry: Providers available to plans.
        writer: Sole writer of task state.
        config: Concurrency, retry, timeout and budget settings.
        hooks: Lifecycle hooks fired per unit and per task.
        cache: Entity cache written after successful units.
        singleflight: Coalescer for identical concurrent provider calls;
            share one across executors to coalesce across jobs.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        writer: ResultWriter,
        config: EnrichmentConfig | None = None,
        hooks: EnrichmentHooks | None = None,
        cache: EntityCache | None = None,
        singleflight: Singleflight | None = None,
    ) -> None:
        self.registry = registry
        self.selector = PlanSelector(registry)
        self.writer = writer
        self.config = config or EnrichmentConfig()
        self.hooks = hooks or EnrichmentHooks()
        self.cache = cache
        self.singleflight = singleflight or Singleflight()

    # -- single unit -----------------------------------------------------

    async def run_plan(
        self,
        unit_key: str,
        entity: EnrichmentEntity,
        budget: BudgetTracker,
        context: ProviderContext,
        stats: JobStats,
    ) -> UnitOutcome:
        """One attempt at a unit: the planned waterfall, then per-field fallbacks."""
        run = _PlanRun(self, entity, budget, context, stats)

        for step in self.selector.select(entity, existing=run.known(), remaining_cents=budget.remaining_cents):
            if run.is_filled(step.field) or step.provider in run.called:
                continue
            if not await run.call(step.provider):
                break

        if not run.budget_exhausted:
            for field_name in entity.requested_fields:
                while not run.is_filled(field_name):
                    step = self.selector.next_step(
                        entity, field_name, run.tried[field_name] | run.called, existing=run.known()
                    )
                    if step is None or not await run.call(step.provider):
                        break
                if run.budget_exhausted:
                    break

        return run.outcome(unit_key, self.config.mandatory_fields)

    async def run_unit(
        self,
        job_id: str,
        unit_key: str,
        entity: EnrichmentEntity,
        budget: BudgetTracker,
        stats: JobStats,
    ) -> UnitOutcome:
        """Run a unit with timeout and retry; never raises for unit failures."""
        config = self.config
        refs = _task_refs(entity)
        last_error: Optional[BaseException] = None
        outcome: Optional[UnitOutcome] = None

        for attempt in range(1, config.max_attempts + 1):
            self.writer.mark_running(job_id, refs, attempt)
            context = ProviderContext(job_id=job_id, attempt=attempt, config=config)
            try:
                outcome = await self._with_timeout(self.run_plan(unit_key, entity, budget, context, stats))
            except asyncio.TimeoutError:
                outcome = None
                last_error = TaskFailure(
                    f"Unit timed out after {config.task_timeout}s", unit_key=unit_key, attempts=attempt
                )
            except Exception as exc:
                outcome = None
                last_error = exc
            else:
                outcome.attempts = attempt
                if not outcome.retryable:
                    return outcome
                last_error = outcome.error

            if attempt < config.max_attempts:
                delay = min(config.retry_base_delay * (2 ** (attempt - 1)), config.retry_max_delay)
                delay += random.uniform(0, delay * config.retry_jitter)
                logger.warning(
                    "Unit %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    unit_key,
                    attempt,
                    config.max_attempts,
                    delay,
                    last_error,
                )
                await asyncio.sleep(delay)

        error = TaskFailure(
            f"Unit failed after {config.max_attempts} attempts: {last_error}",
            unit_key=unit_key,
            attempts=config.max_attempts,
        )
        logger.error("%s", error)
        if outcome is not None:
            return replace(outcome, error=error, attempts=config.max_attempts)
        return UnitOutcome(
            unit_key=unit_key,
            entity=entity,
            status=UnitStatus.FAILED,
            data=EnrichedEntityData(entity_id=entity.entity_id, type=entity.type),
            failed_fields={f: str(last_error) for f in entity.requested_fields},
            attempts=config.max_attempts,
            error=error,
        )

    async def _with_timeout(self, coro: Any) -> UnitOutcome:
        if self.config.task_timeout is None:
            return await coro
        return await asyncio.wait_for(coro, timeout=self.config.task_timeout)

    # -- pool ------------------------------------------------------------

    async def run_units(
        self,
        job_id: str,
        units: dict[str, EnrichmentEntity],
        budget: BudgetTracker,
        stats: JobStats,
        token: CancelToken | None = None,
        cached: dict[str, EnrichedEntityData] | None = None,
        entity_budget_cents: Optional[int] = None,
    ) -> list[UnitOutcome]:
        """Execute every unit under ``max_workers`` and write outcomes back.

        Units not yet dispatched when *token* is cancelled have their
        tasks failed with the cancel reason; units already running finish
        and are recorded normally.

        Args:
            job_id: Owning job.
            units: Units keyed by unit key.
            budget: Job-level budget; each unit draws on a child tracker.
            stats: Job statistics, updated in place.
            token: Cancellation signal; set here when the job budget runs out.
            cached: Cache hits keyed by unit key, written without provider calls.
            entity_budget_cents: Per-unit allotment (``None`` = job budget only).
        """
        token = token or CancelToken()
        cached = cached or {}
        semaphore = asyncio.Semaphore(self.config.max_workers)
        bar = tqdm(
            total=len(units),
            desc=f"Job {job_id[:8]}",
            unit="unit",
            disable=not self.config.enable_progress_bar,
        )

        async def process(unit_key: str, entity: EnrichmentEntity) -> UnitOutcome:
            try:
                if token.cancelled:
                    return await self._skip(job_id, unit_key, entity, token.reason)
                async with semaphore:
                    if token.cancelled:
                        return await self._skip(job_id, unit_key, entity, token.reason)

                    hit = cached.get(unit_key)
                    if hit is not None:
                        self.writer.mark_running(job_id, _task_refs(entity))
                        outcome = UnitOutcome(
                            unit_key=unit_key,
                            entity=entity,
                            status=UnitStatus.SUCCESS,
                            data=hit,
                            from_cache=True,
                        )
                    else:
                        child = budget.allot(entity_budget_cents, name=entity.entity_id)
                        outcome = await self.run_unit(job_id, unit_key, entity, child, stats)

                    await self._distribute(job_id, outcome)
                    if self.cache is not None and outcome.status is UnitStatus.SUCCESS and not outcome.from_cache:
                        self.cache.put(entity.entity_id, outcome.data)
                    if budget.exhausted and not token.cancelled:
                        logger.warning("Job %s budget exhausted; no further units will be dispatched", job_id)
                        token.cancel("budget exhausted")
                    return outcome
            finally:
                bar.update(1)

        try:
            results = await asyncio.gather(
                *(process(key, entity) for key, entity in units.items()),
                return_exceptions=True,
            )
        finally:
            bar.close()

        outcomes: list[UnitOutcome] = []
        for (unit_key, entity), result in zip(units.items(), results):
            if isinstance(result, BaseException):
                logger.error("Unit %s crashed outside its retry loop: %s", unit_key, result)
                outcome = UnitOutcome(
                    unit_key=unit_key,
                    entity=entity,
                    status=UnitStatus.FAILED,
                    data=EnrichedEntityData(entity_id=entity.entity_id, type=entity.type),
                    failed_fields={f: str(result) for f in entity.requested_fields},
                    error=result,
                )
                await self._distribute(job_id, outcome)
                outcomes.append(outcome)
            else:
                outcomes.append(result)
        return outcomes

    async def _skip(self, job_id: str, unit_key: str, entity: EnrichmentEntity, reason: Optional[str]) -> UnitOutcome:
        outcome = UnitOutcome(
            unit_key=unit_key,
            entity=entity,
            status=UnitStatus.CANCELLED,
            data=EnrichedEntityData(entity_id=entity.entity_id, type=entity.type),
            failed_fields={f: reason or "cancelled" for f in entity.requested_fields},
        )
        await self._distribute(job_id, outcome)
        return outcome

    async def _distribute(self, job_id: str, outcome: UnitOutcome) -> None:
        """Write the unit's result into every target cell."""
        for cell in outcome.entity.target_cells:
            if cell.task_id is None:
                continue
            ref = TaskRef(task_id=cell.task_id, row_id=cell.row_id, column_key=cell.column_key)
            value = outcome.data.fields.get(cell.column_key)
            if value is not None and value.filled:
                written = self.writer.write_success(job_id, ref, value)
            else:
                reason = outcome.failed_fields.get(cell.column_key) or str(outcome.error or "not found")
                written = self.writer.write_failure(job_id, ref, reason)
            if written is None:
                continue
            await _fire_hook(
                self.hooks.on_task_complete,
                TaskCompleteEvent(
                    job_id=job_id,
                    task_id=ref.task_id,
                    row_id=ref.row_id,
                    column_key=ref.column_key,
                    status=written.status.value,
                    value=written.value.value if written.value is not None else None,
                    row_status=written.row_mutation.status.value,
                ),
            )

        await _fire_hook(
            self.hooks.on_unit_complete,
            UnitCompleteEvent(
                job_id=job_id,
                unit_key=outcome.unit_key,
                outcome=outcome.status.value,
                filled_fields=sorted(outcome.data.fields),
                cost_cents=outcome.data.cost_cents if not outcome.from_cache else 0,
                attempts=outcome.attempts,
                from_cache=outcome.from_cache,
                error=outcome.error,
            ),
        )


def _task_refs(entity: EnrichmentEntity) -> list[TaskRef]:
    return [
        TaskRef(task_id=c.task_id, row_id=c.row_id, column_key=c.column_key)
        for c in entity.target_cells
        if c.task_id is not None
    ]
