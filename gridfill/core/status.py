"""Counter-based status aggregation.

Row and job status are derived in O(1) from four counters
``(total, done, failed, running)`` and never by scanning tasks.  The
``StatusAggregator`` is the only writer of derived status: it applies
``CounterDelta`` increments inside the caller's transaction and
recomputes status from the resulting counters.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Optional

from ..schemas.job import RowStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)


def calculate_status(total: int, done: int, failed: int, running: int) -> RowStatus:
    """Map counters to a status.

    Priority, checked in order: running > all done > all failed >
    queued remaining > ambiguous > idle.  ``9 done + 1 failed`` with
    nothing running is ``ambiguous``, never ``done``.
    """
    if total == 0:
        return RowStatus.IDLE
    queued = total - done - failed - running
    if running > 0:
        return RowStatus.RUNNING
    if done == total:
        return RowStatus.DONE
    if failed == total:
        return RowStatus.FAILED
    if queued > 0:
        return RowStatus.QUEUED
    if done > 0 and failed > 0:
        return RowStatus.AMBIGUOUS
    return RowStatus.IDLE


def average_confidence(confidence_sum: float, done_count: int) -> Optional[float]:
    """Running-sum average; ``None`` until at least one unit is done."""
    if done_count <= 0:
        return None
    return confidence_sum / done_count


@dataclass(frozen=True)
class CounterDelta:
    """Increment applied to a counter set by one task transition."""

    total: int = 0
    done: int = 0
    failed: int = 0
    running: int = 0
    confidence: float = 0.0

    @classmethod
    def enqueued(cls, count: int) -> "CounterDelta":
        return cls(total=count)

    @classmethod
    def started(cls, count: int = 1) -> "CounterDelta":
        return cls(running=count)

    @classmethod
    def succeeded(cls, confidence: float, from_running: bool = True) -> "CounterDelta":
        return cls(done=1, running=-1 if from_running else 0, confidence=confidence)

    @classmethod
    def failed_task(cls, from_running: bool = True) -> "CounterDelta":
        return cls(failed=1, running=-1 if from_running else 0)


@dataclass(frozen=True)
class StatusCounters:
    total: int = 0
    done: int = 0
    failed: int = 0
    running: int = 0
    confidence_sum: float = 0.0

    @property
    def queued(self) -> int:
        return self.total - self.done - self.failed - self.running

    @property
    def status(self) -> RowStatus:
        return calculate_status(self.total, self.done, self.failed, self.running)

    @property
    def confidence(self) -> Optional[float]:
        return average_confidence(self.confidence_sum, self.done)

    @property
    def is_settled(self) -> bool:
        """True when every unit is done or failed."""
        return self.total > 0 and self.done + self.failed == self.total

    def apply(self, delta: CounterDelta) -> "StatusCounters":
        """Return new counters with *delta* applied.

        Raises:
            ValueError: If the result would break
                ``done + failed + running + queued == total`` with every
                term non-negative.
        """
        new = StatusCounters(
            total=self.total + delta.total,
            done=self.done + delta.done,
            failed=self.failed + delta.failed,
            running=self.running + delta.running,
            confidence_sum=self.confidence_sum + delta.confidence,
        )
        new.check()
        return new

    def check(self) -> None:
        if min(self.total, self.done, self.failed, self.running, self.queued) < 0:
            raise ValueError(f"counter invariant violated: {self}")


class StatusAggregator:
    """Applies counter deltas to job and row records and recomputes status.

    Every method takes an open connection so the increment, the status
    recomputation and the caller's own writes commit together.
    """

    def apply(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        row_id: str,
        delta: CounterDelta,
    ) -> tuple[StatusCounters, Optional[StatusCounters]]:
        """Apply *delta* to the job and to the row.

        The row is only updated while *job_id* is its current job.

        Returns:
            ``(job_counters, row_counters)``; ``row_counters`` is ``None``
            when the row has moved on to a newer job.
        """
        return self.apply_job(conn, job_id, delta), self.apply_row(conn, job_id, row_id, delta)

    def apply_job(self, conn: sqlite3.Connection, job_id: str, delta: CounterDelta) -> StatusCounters:
        conn.execute(
            "UPDATE jobs SET total_units = total_units + ?, done_units = done_units + ?, "
            "failed_units = failed_units + ?, running_units = running_units + ?, "
            "confidence_sum = confidence_sum + ? WHERE id = ?",
            (delta.total, delta.done, delta.failed, delta.running, delta.confidence, job_id),
        )
        row = conn.execute(
            "SELECT total_units, done_units, failed_units, running_units, confidence_sum "
            "FROM jobs WHERE id = ?",
            (job_id,),
        ).fetchone()
        if row is None:
            raise KeyError(f"job not found: {job_id}")
        counters = StatusCounters(*row)
        counters.check()
        conn.execute(
            "UPDATE jobs SET aggregate_status = ? WHERE id = ?",
            (counters.status.value, job_id),
        )
        return counters

    def apply_row(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        row_id: str,
        delta: CounterDelta,
    ) -> Optional[StatusCounters]:
        cursor = conn.execute(
            "UPDATE rows SET total_tasks = total_tasks + ?, done_tasks = done_tasks + ?, "
            "failed_tasks = failed_tasks + ?, running_tasks = running_tasks + ?, "
            "confidence_sum = confidence_sum + ? WHERE id = ? AND current_job_id = ?",
            (delta.total, delta.done, delta.failed, delta.running, delta.confidence, row_id, job_id),
        )
        if cursor.rowcount == 0:
            logger.debug("Row %s no longer tracks job %s; row counters untouched", row_id, job_id)
            return None
        return self._refresh_row(conn, row_id)

    def reset_row(self, conn: sqlite3.Connection, job_id: str, row_id: str, total: int) -> StatusCounters:
        """Point the row at *job_id* with *total* freshly queued tasks."""
        conn.execute(
            "UPDATE rows SET current_job_id = ?, total_tasks = ?, done_tasks = 0, "
            "failed_tasks = 0, running_tasks = 0, confidence_sum = 0 WHERE id = ?",
            (job_id, total, row_id),
        )
        return self._refresh_row(conn, row_id)

    def _refresh_row(self, conn: sqlite3.Connection, row_id: str) -> StatusCounters:
        row = conn.execute(
            "SELECT total_tasks, done_tasks, failed_tasks, running_tasks, confidence_sum "
            "FROM rows WHERE id = ?",
            (row_id,),
        ).fetchone()
        if row is None:
            raise KeyError(f"row not found: {row_id}")
        counters = StatusCounters(*row)
        counters.check()
        conn.execute(
            "UPDATE rows SET status = ?, confidence = ? WHERE id = ?",
            (counters.status.value, counters.confidence, row_id),
        )
        return counters
