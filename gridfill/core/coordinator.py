"""JobCoordinator — lifecycle of an enrichment job.

``submit`` validates a request, creates one queued task per cell that
needs a value and deduplicates those cells into units.  ``run_job``
moves the job ``pending -> running``, executes the units and settles the
terminal state from the aggregated counters:

- ``completed`` when every task is terminal and at least one is done
  (or the job had no tasks),
- ``failed`` when every task failed,
- ``cancelled`` when an abort or an exhausted job budget stopped
  dispatch before every unit ran.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError

from ..entities.dedup import (
    DedupResult,
    EnrichmentTarget,
    EntityDeduplicator,
    EntityMap,
    build_entity_map,
    deserialize_entities,
    serialize_entity_map,
)
from ..entities.resolver import find_identifier
from ..planning.selector import PlanSelector
from ..providers.mock import default_mock_providers
from ..providers.registry import ProviderRegistry
from ..schemas.base import JobStats
from ..schemas.entity import EnrichmentEntity
from ..schemas.field_value import is_filled
from ..schemas.job import (
    CellTask,
    CostEstimate,
    EnrichmentJob,
    EnrichRequest,
    EnrichResponse,
    JobProgress,
    JobStatus,
    RowState,
    TaskStatus,
)
from ..utils.logger import configure_logging, get_logger
from .budget import BudgetTracker
from .cache import EntityCache
from .config import EnrichmentConfig
from .exceptions import EnrichmentError, JobStateError, RequestValidationError, TaskError
from .executor import CancelToken, TaskExecutor, UnitOutcome, UnitStatus
from .hooks import EnrichmentHooks, JobEndEvent, JobStartEvent, _fire_hook
from .singleflight import Singleflight
from .store import RecordStore
from .writer import ResultWriter, TaskRef

logger = get_logger(__name__)

NO_IDENTIFIER = "no identifier found"


@dataclass
class JobResult:
    """Final state of a job run.

    Attributes:
        job: The job record after its terminal transition.
        progress: Counter snapshot at completion.
        stats: Cache, provider and cost statistics.
        errors: One record per failed task.
        outcomes: Per-unit outcomes in dispatch order.
    """

    job: EnrichmentJob
    progress: JobProgress
    stats: JobStats
    errors: list[TaskError] = field(default_factory=list)
    outcomes: list[UnitOutcome] = field(default_factory=list)

    @property
    def status(self) -> JobStatus:
        return self.job.status

    @property
    def success_rate(self) -> float:
        total = self.progress.total_tasks
        return self.progress.done_tasks / total if total else 0.0


@dataclass
class _Cell:
    row: RowState
    column_id: str
    column_key: str


@dataclass
class _Decomposition:
    cells: list[_Cell]
    targets: list[EnrichmentTarget]
    missing_identifier: list[_Cell]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobCoordinator:
    """Top-level entry point: decompose, dedup, plan, execute, aggregate, finalize.

    Args:
        store: Record store holding the table being enriched.
        registry: Providers available to this coordinator; defaults to
            ``default_mock_providers`` with latency taken from ``config``.
        config: Engine configuration; defaults to ``EnrichmentConfig()``.
        hooks: Lifecycle hooks.
        cache: Entity cache; built from ``config`` when omitted and
            caching is enabled.
    """

    def __init__(
        self,
        store: RecordStore,
        registry: ProviderRegistry | None = None,
        config: EnrichmentConfig | None = None,
        hooks: EnrichmentHooks | None = None,
        cache: EntityCache | None = None,
    ) -> None:
        self.config = config or EnrichmentConfig()
        configure_logging(self.config.log_level)
        self.store = store
        if registry is None:
            registry = ProviderRegistry(default_mock_providers(config=self.config))
        self.registry = registry
        self.registry.unit_cost_cents = self.config.unit_cost_cents
        self.hooks = hooks or EnrichmentHooks()
        if cache is None and self.config.enable_caching:
            cache = EntityCache(self.config.cache_dir)
        self.cache = cache if self.config.enable_caching else None
        self.selector = PlanSelector(registry)
        self.writer = ResultWriter(store)
        self.executor = TaskExecutor(
            registry,
            self.writer,
            config=self.config,
            hooks=self.hooks,
            cache=self.cache,
            singleflight=Singleflight(),
        )
        self._tokens: dict[str, CancelToken] = {}
        self._slots: Optional[tuple[asyncio.AbstractEventLoop, asyncio.Semaphore]] = None

    # ------------------------------------------------------------------
    # Decomposition
    # ------------------------------------------------------------------

    def _decompose(self, request: EnrichRequest) -> _Decomposition:
        columns = {c.id: c for c in self.store.list_columns(request.table_id)}
        if not columns:
            raise RequestValidationError(f"Unknown table '{request.table_id}'")

        cells: list[_Cell] = []
        if request.mode == "grid":
            unknown = [c for c in request.column_ids or [] if c not in columns]
            if unknown:
                raise RequestValidationError(f"Unknown columns: {unknown}")
            rows = self.store.list_rows(request.table_id, request.row_ids)
            if request.row_ids is not None:
                missing = set(request.row_ids) - {r.id for r in rows}
                if missing:
                    raise RequestValidationError(f"Unknown rows: {sorted(missing)}")
            for row in rows:
                for column_id in dict.fromkeys(request.column_ids or []):
                    cells.append(_Cell(row, column_id, columns[column_id].key))
        else:
            rows_by_id: dict[str, RowState] = {}
            seen: set[tuple[str, str]] = set()
            for selection in request.cell_ids or []:
                if selection.column_id not in columns:
                    raise RequestValidationError(f"Unknown column '{selection.column_id}'")
                row = rows_by_id.get(selection.row_id) or self.store.get_row(selection.row_id)
                if row is None or row.table_id != request.table_id:
                    raise RequestValidationError(f"Unknown row '{selection.row_id}'", row_id=selection.row_id)
                rows_by_id[row.id] = row
                if (row.id, selection.column_id) in seen:
                    continue
                seen.add((row.id, selection.column_id))
                cells.append(_Cell(row, selection.column_id, columns[selection.column_id].key))

        if not self.config.overwrite_fields:
            cells = [c for c in cells if not is_filled(c.row.data.get(c.column_key))]

        requested_keys = {c.column_key for c in cells}
        targets: list[EnrichmentTarget] = []
        missing_identifier: list[_Cell] = []
        for cell in cells:
            identifier = find_identifier(cell.row.data, exclude=requested_keys)
            if identifier is None:
                missing_identifier.append(cell)
                continue
            targets.append(
                EnrichmentTarget(
                    row_id=cell.row.id,
                    column_key=cell.column_key,
                    identifier=identifier,
                    source_data={k: v for k, v in cell.row.data.items() if is_filled(v)},
                )
            )
        return _Decomposition(cells, targets, missing_identifier)

    def _units(self, targets: list[EnrichmentTarget]) -> tuple[EntityMap, DedupResult]:
        """Build the unit map for the configured granularity plus dedup statistics."""
        dedup = build_entity_map(targets)
        if self.config.granularity == "entity":
            return dedup.entities, dedup
        units: EntityMap = {}
        for target in targets:
            entity = EntityDeduplicator().add(target)
            units[target.task_id or f"{target.row_id}:{target.column_key}"] = entity
        return units, dedup

    def _unit_key(self, entity: EnrichmentEntity) -> str:
        if self.config.granularity == "entity":
            return entity.entity_id
        return entity.target_cells[0].task_id or entity.entity_id

    def _estimate(self, units: EntityMap) -> int:
        return sum(self.selector.estimate_cost(entity) for entity in units.values())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def estimate(self, request: EnrichRequest) -> CostEstimate:
        """Projected cost of *request* without creating a job or tasks."""
        decomposition = self._decompose(request)
        units, dedup = self._units(decomposition.targets)
        return CostEstimate(
            table_id=request.table_id,
            task_count=len(decomposition.cells),
            entity_count=len(units),
            duplicates_avoided=dedup.duplicates_avoided,
            estimated_cost_cents=self._estimate(units),
            budget_cents=self._budget_for(request),
        )

    def _budget_for(self, request: EnrichRequest) -> Optional[int]:
        return request.budget_cents if request.budget_cents is not None else self.config.default_budget_cents

    def submit(self, request: EnrichRequest | dict) -> EnrichResponse:
        """Accept *request*: create the job and its queued tasks, and dedup cells into units.

        The job stays ``pending`` until ``run_job`` is called.

        Raises:
            RequestValidationError: If the request is malformed or names an
                unknown table, column or row.
        """
        if isinstance(request, dict):
            try:
                request = EnrichRequest.model_validate(request)
            except ValidationError as exc:
                raise RequestValidationError(f"Invalid enrichment request: {exc}") from exc

        decomposition = self._decompose(request)
        job = EnrichmentJob(
            id=f"job_{uuid.uuid4().hex[:12]}",
            table_id=request.table_id,
            budget_cents=self._budget_for(request),
            created_at=_utcnow(),
        )
        self.store.create_job(job)

        tasks = [
            CellTask(
                id=f"task_{uuid.uuid4().hex[:16]}",
                job_id=job.id,
                row_id=cell.row.id,
                column_id=cell.column_id,
                column_key=cell.column_key,
            )
            for cell in decomposition.cells
        ]
        created = self.writer.enqueue(job.id, tasks)
        task_ids = {(t.row_id, t.column_key): t.id for t in created}

        targets = [
            EnrichmentTarget(
                row_id=t.row_id,
                column_key=t.column_key,
                identifier=t.identifier,
                task_id=task_ids.get((t.row_id, t.column_key)),
                source_data=t.source_data,
            )
            for t in decomposition.targets
            if (t.row_id, t.column_key) in task_ids
        ]
        no_identifier = [
            {"task_id": task_ids[(c.row.id, c.column_key)], "row_id": c.row.id, "column_key": c.column_key}
            for c in decomposition.missing_identifier
            if (c.row.id, c.column_key) in task_ids
        ]
        units, dedup = self._units(targets)
        estimated = self._estimate(units)

        self.store.update_job(
            job.id,
            metadata={
                "mode": request.mode,
                "granularity": self.config.granularity,
                "skip_cache": request.skip_cache,
                "entities": serialize_entity_map(units),
                "no_identifier": no_identifier,
                "cell_count": dedup.cell_count,
                "entity_count": dedup.entity_count,
                "duplicates_avoided": dedup.duplicates_avoided,
                "entities_by_type": dedup.entities_by_type,
                "estimated_cost_cents": estimated,
            },
        )

        message = (
            f"Created {len(created)} tasks for {dedup.entity_count} entities "
            f"({dedup.duplicates_avoided} duplicates avoided)"
        )
        if job.budget_cents is not None and estimated > job.budget_cents:
            message += f"; estimated cost {estimated}c exceeds budget {job.budget_cents}c"
        logger.info("Job %s submitted: %s", job.id, message)

        return EnrichResponse(
            job_id=job.id,
            table_id=request.table_id,
            status=JobStatus.PENDING,
            total_tasks=len(created),
            entity_count=dedup.entity_count,
            cell_count=len(created),
            estimated_cost_cents=estimated,
            message=message,
        )

    def _require_job(self, job_id: str) -> EnrichmentJob:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobStateError(f"Unknown job '{job_id}'")
        return job

    def _job_slots(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._slots is None or self._slots[0] is not loop:
            self._slots = (loop, asyncio.Semaphore(self.config.max_concurrent_jobs))
        return self._slots[1]

    async def run_job(self, job_id: str) -> JobResult:
        """Execute a pending job to its terminal state.

        The job is claimed (``pending`` to ``running``) only once a job
        slot is free.  A job cancelled while waiting for a slot is never
        dispatched; its cancelled state is returned as is.

        Raises:
            JobStateError: If the job does not exist or is not pending.
        """
        job = self._require_job(job_id)
        if job.status is not JobStatus.PENDING:
            raise JobStateError(f"Job '{job_id}' is {job.status.value}, expected pending")
        token = self._tokens.setdefault(job_id, CancelToken())

        async with self._job_slots():
            claimed = self.store.update_job(
                job_id, expected_status=JobStatus.PENDING, status=JobStatus.RUNNING, started_at=_utcnow()
            )
            if not claimed:
                current = self._require_job(job_id)
                if current.status is not JobStatus.CANCELLED:
                    raise JobStateError(f"Job '{job_id}' is {current.status.value}, expected pending")
                self._tokens.pop(job_id, None)
                logger.info("Job %s was cancelled before it got a slot", job_id)
                return JobResult(job=current, progress=self.get_progress(job_id), stats=_job_stats(current, {}))
            return await self._run(job, token)

    async def _run(self, job: EnrichmentJob, token: CancelToken) -> JobResult:
        meta = job.metadata
        entities = deserialize_entities(meta.get("entities", []))
        units = {self._unit_key(e): e for e in entities}
        stats = _job_stats(job, units)

        logger.info("Job %s running: %d units, %d tasks", job.id, len(units), job.total_units)
        await _fire_hook(
            self.hooks.on_job_start,
            JobStartEvent(job_id=job.id, table_id=job.table_id, num_units=len(units), num_tasks=job.total_units),
        )

        t0 = time.perf_counter()
        outcomes: list[UnitOutcome] = []
        errors: list[TaskError] = []
        budget = BudgetTracker(job.budget_cents, name=f"job:{job.id}")
        try:
            for item in meta.get("no_identifier", []):
                ref = TaskRef(task_id=item["task_id"], row_id=item["row_id"], column_key=item["column_key"])
                self.writer.write_failure(job.id, ref, NO_IDENTIFIER)
                error = EnrichmentError(NO_IDENTIFIER, row_id=ref.row_id, field=ref.column_key)
                errors.append(TaskError(ref.task_id, ref.row_id, ref.column_key, error))

            cached: dict = {}
            if self.cache is not None and not meta.get("skip_cache", False):
                cached, misses = self.cache.partition(units)
                stats.cache_hits, stats.cache_misses = len(cached), len(misses)
            else:
                stats.cache_misses = len(units)

            outcomes = await self.executor.run_units(
                job.id,
                units,
                budget,
                stats,
                token=token,
                cached=cached,
                entity_budget_cents=self.config.default_entity_budget_cents,
            )
        except Exception as exc:
            logger.error("Job %s crashed: %s", job.id, exc)
            reason = f"{type(exc).__name__}: {exc}"
            self._fail_unsettled(job.id, f"job crashed: {reason}")
            self._finish(job.id, JobStatus.FAILED, reason)
            await self._fire_end(job.id, stats, t0)
            raise
        finally:
            self._tokens.pop(job.id, None)

        errors.extend(_task_errors(outcomes))
        stats.processing_time_ms = (time.perf_counter() - t0) * 1000

        settled = self._require_job(job.id)
        skipped = any(o.status is UnitStatus.CANCELLED for o in outcomes)
        if token.cancelled and skipped:
            status, error = JobStatus.CANCELLED, token.reason
        elif settled.total_units and settled.failed_units == settled.total_units:
            status, error = JobStatus.FAILED, f"{settled.failed_units} of {settled.total_units} tasks failed"
        else:
            status, error = JobStatus.COMPLETED, None
        self._finish(job.id, status, error)

        logger.info(
            "Job %s %s: %d done, %d failed, %dc spent, cache hit rate %.0f%%",
            job.id,
            status.value,
            settled.done_units,
            settled.failed_units,
            stats.total_cost_cents,
            stats.cache_hit_rate * 100,
        )
        await self._fire_end(job.id, stats, t0)

        final = self._require_job(job.id)
        return JobResult(
            job=final,
            progress=self.get_progress(job.id),
            stats=stats,
            errors=errors,
            outcomes=outcomes,
        )

    def _finish(
        self,
        job_id: str,
        status: JobStatus,
        error: Optional[str],
        expected: JobStatus = JobStatus.RUNNING,
    ) -> None:
        finished = self.store.update_job(
            job_id, expected_status=expected, status=status, error=error, completed_at=_utcnow()
        )
        if not finished:
            current = self._require_job(job_id)
            raise JobStateError(f"Job '{job_id}' is {current.status.value}, expected {expected.value}")

    def _fail_unsettled(self, job_id: str, error: str) -> None:
        """Fail every queued or running task so the counters settle."""
        for status in (TaskStatus.RUNNING, TaskStatus.QUEUED):
            for task in self.store.list_tasks(job_id, status):
                ref = TaskRef(task_id=task.id, row_id=task.row_id, column_key=task.column_key)
                self.writer.write_failure(job_id, ref, error)

    async def _fire_end(self, job_id: str, stats: JobStats, t0: float) -> None:
        job = self._require_job(job_id)
        await _fire_hook(
            self.hooks.on_job_end,
            JobEndEvent(
                job_id=job_id,
                status=job.status.value,
                done_tasks=job.done_units,
                failed_tasks=job.failed_units,
                cost_cents=stats.total_cost_cents,
                elapsed_seconds=time.perf_counter() - t0,
            ),
        )

    async def enrich(self, request: EnrichRequest | dict) -> JobResult:
        """Submit and run *request* in one call."""
        response = self.submit(request)
        return await self.run_job(response.job_id)

    def enrich_sync(self, request: EnrichRequest | dict) -> JobResult:
        """Synchronous wrapper around ``enrich``.

        Raises ``RuntimeError`` if called from inside a running event loop
        (use ``await coordinator.enrich(...)`` in that case).
        """
        try:
            asyncio.get_running_loop()
            raise RuntimeError(
                "JobCoordinator.enrich_sync() cannot be called from inside an async context. "
                "Use 'await coordinator.enrich(...)' instead."
            )
        except RuntimeError as exc:
            if "enrich(" in str(exc):
                raise
        return asyncio.run(self.enrich(request))

    def cancel(self, job_id: str) -> JobProgress:
        """Cooperatively cancel a job.

        A running job stops dispatching units; in-flight units finish and
        are recorded, and undispatched tasks fail with ``cancelled``.  A
        pending job is cancelled outright.

        Raises:
            JobStateError: If the job is unknown or already terminal.
        """
        job = self._require_job(job_id)
        if job.status.is_terminal:
            raise JobStateError(f"Job '{job_id}' is already {job.status.value}")

        if job.status is JobStatus.PENDING:
            self._finish(job_id, JobStatus.CANCELLED, "cancelled", expected=JobStatus.PENDING)
            self._fail_unsettled(job_id, "cancelled")
            logger.info("Job %s cancelled before it started", job_id)
        else:
            self._tokens.setdefault(job_id, CancelToken()).cancel("cancelled")
            logger.info("Job %s cancellation requested", job_id)
        return self.get_progress(job_id)

    def get_progress(self, job_id: str) -> JobProgress:
        """Counter snapshot of a job; O(1), never scans tasks."""
        job = self._require_job(job_id)
        settled = job.done_units + job.failed_units
        if job.total_units:
            progress = settled / job.total_units * 100
        else:
            progress = 100.0 if job.status.is_terminal else 0.0
        return JobProgress(
            job_id=job.id,
            status=job.status,
            aggregate_status=job.aggregate_status,
            total_tasks=job.total_units,
            done_tasks=job.done_units,
            failed_tasks=job.failed_units,
            running_tasks=job.running_units,
            progress=round(progress, 2),
            started_at=job.started_at,
            completed_at=job.completed_at,
            error=job.error,
        )

    def close(self) -> None:
        if self.cache is not None:
            self.cache.close()


def _task_errors(outcomes: list[UnitOutcome]) -> list[TaskError]:
    errors: list[TaskError] = []
    for outcome in outcomes:
        for cell in outcome.entity.target_cells:
            value = outcome.data.fields.get(cell.column_key)
            if cell.task_id is None or (value is not None and value.filled):
                continue
            reason = outcome.failed_fields.get(cell.column_key, "not found")
            error = outcome.error or EnrichmentError(reason, row_id=cell.row_id, field=cell.column_key)
            errors.append(TaskError(cell.task_id, cell.row_id, cell.column_key, error))
    return errors


def _job_stats(job: EnrichmentJob, units: EntityMap) -> JobStats:
    meta = job.metadata
    return JobStats(
        entity_count=meta.get("entity_count", len(units)),
        cell_count=meta.get("cell_count", 0),
        duplicates_avoided=meta.get("duplicates_avoided", 0),
        entities_by_type=meta.get("entities_by_type", {}),
    )
