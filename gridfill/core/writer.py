"""ResultWriter — atomic write-back of task outcomes.

A success merges the value into the row, marks the task done and
advances job and row counters in one transaction.  A failure marks the
task failed and advances the failed counters; row data is untouched.
Writes for tasks that are already terminal are ignored, so a unit can
never be counted twice.
"""

from __future__ import annotations

import json
import sqlite3
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from ..schemas.field_value import FieldValue
from ..schemas.job import CellTask, RowMutation, RowStatus, TaskStatus
from ..utils.logger import get_logger
from .status import CounterDelta, StatusAggregator, StatusCounters
from .store import RecordStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class TaskRef:
    """Identifies one cell task."""

    task_id: str
    row_id: str
    column_key: str


@dataclass
class WriteResult:
    """What a single task write changed."""

    task: TaskRef
    status: TaskStatus
    job_counters: StatusCounters
    row_mutation: RowMutation
    value: Optional[FieldValue] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ResultWriter:
    """Sole writer of task state; every write also drives the counters."""

    def __init__(self, store: RecordStore, aggregator: StatusAggregator | None = None) -> None:
        self.store = store
        self.aggregator = aggregator or StatusAggregator()

    def _task_status(self, conn: sqlite3.Connection, task_id: str) -> Optional[TaskStatus]:
        found = conn.execute("SELECT status FROM cell_tasks WHERE id = ?", (task_id,)).fetchone()
        return TaskStatus(found[0]) if found is not None else None

    def enqueue(self, job_id: str, tasks: list[CellTask], strict: bool = False) -> list[CellTask]:
        """Create *tasks* as ``queued`` and count them on the job and their rows.

        Each touched row is re-pointed at *job_id* with fresh counters.
        Duplicate ``(job, row, column)`` tuples collapse to one task, or
        raise ``DuplicateTaskError`` when *strict*.
        """
        with self.store.transaction() as conn:
            created = self.store.insert_tasks(tasks, strict=strict, conn=conn)
            per_row = Counter(task.row_id for task in created)
            self.aggregator.apply_job(conn, job_id, CounterDelta.enqueued(len(created)))
            for row_id, count in per_row.items():
                self.aggregator.reset_row(conn, job_id, row_id, count)
        return created

    def mark_running(self, job_id: str, tasks: list[TaskRef], attempt: int = 1) -> None:
        """Move queued tasks to ``running``; already-running tasks just record the attempt."""
        now = _now()
        with self.store.transaction() as conn:
            for task in tasks:
                status = self._task_status(conn, task.task_id)
                if status is TaskStatus.QUEUED:
                    self.store.update_task(
                        task.task_id, conn=conn, status=TaskStatus.RUNNING, started_at=now, attempts=attempt
                    )
                    self.aggregator.apply(conn, job_id, task.row_id, CounterDelta.started())
                elif status is TaskStatus.RUNNING:
                    self.store.update_task(task.task_id, conn=conn, attempts=attempt)

    def write_success(self, job_id: str, task: TaskRef, value: FieldValue) -> Optional[WriteResult]:
        """Merge *value* into the row and mark the task done, atomically."""
        now = _now()
        with self.store.transaction() as conn:
            status = self._task_status(conn, task.task_id)
            if status is None or status.is_terminal:
                logger.debug("Ignoring success for task %s in state %s", task.task_id, status)
                return None
            merged = self.store.merge_row_data(task.row_id, {task.column_key: value.value}, last_run_at=now, conn=conn)
            self.store.update_task(
                task.task_id, conn=conn, status=TaskStatus.DONE, result=value, error=None, completed_at=now
            )
            delta = CounterDelta.succeeded(value.confidence, from_running=status is TaskStatus.RUNNING)
            job_counters, row_counters = self.aggregator.apply(conn, job_id, task.row_id, delta)
            mutation = self._mutation(conn, task.row_id, merged, row_counters)
        return WriteResult(task, TaskStatus.DONE, job_counters, mutation, value)

    def write_failure(self, job_id: str, task: TaskRef, error: str) -> Optional[WriteResult]:
        """Mark the task failed; the row's data is left as it was."""
        now = _now()
        with self.store.transaction() as conn:
            status = self._task_status(conn, task.task_id)
            if status is None or status.is_terminal:
                logger.debug("Ignoring failure for task %s in state %s", task.task_id, status)
                return None
            self.store.update_task(
                task.task_id, conn=conn, status=TaskStatus.FAILED, error=error, completed_at=now
            )
            delta = CounterDelta.failed_task(from_running=status is TaskStatus.RUNNING)
            job_counters, row_counters = self.aggregator.apply(conn, job_id, task.row_id, delta)
            mutation = self._mutation(conn, task.row_id, None, row_counters)
        return WriteResult(task, TaskStatus.FAILED, job_counters, mutation)

    def _mutation(
        self,
        conn: sqlite3.Connection,
        row_id: str,
        merged: Optional[dict],
        counters: Optional[StatusCounters],
    ) -> RowMutation:
        row = conn.execute(
            "SELECT data, status, confidence, last_run_at FROM rows WHERE id = ?", (row_id,)
        ).fetchone()
        if merged is None:
            merged = json.loads(row["data"])
        return RowMutation(
            row_id=row_id,
            merged_data=merged,
            status=counters.status if counters is not None else RowStatus(row["status"]),
            confidence=counters.confidence if counters is not None else row["confidence"],
            last_run_at=row["last_run_at"],
        )
