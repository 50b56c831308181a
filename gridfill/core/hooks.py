"""Lifecycle hooks for job observability.

Typed event dataclasses + ``EnrichmentHooks`` container.  Hook callables
are optional; ``_fire_hook`` silently catches errors so observability
failures never crash an enrichment job.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JobStartEvent:
    """Fired once when a job transitions to ``running``."""

    job_id: str
    table_id: str
    num_units: int
    num_tasks: int


@dataclass(frozen=True)
class JobEndEvent:
    """Fired once when a job reaches a terminal status (including on error)."""

    job_id: str
    status: str
    done_tasks: int
    failed_tasks: int
    cost_cents: int
    elapsed_seconds: float


@dataclass(frozen=True)
class UnitCompleteEvent:
    """Fired after an entity (or cell) unit finishes, successfully or not."""

    job_id: str
    unit_key: str
    outcome: str
    filled_fields: list[str]
    cost_cents: int
    attempts: int
    from_cache: bool
    error: BaseException | None = None


@dataclass(frozen=True)
class TaskCompleteEvent:
    """Fired after each cell task reaches ``done`` or ``failed``."""

    job_id: str
    task_id: str
    row_id: str
    column_key: str
    status: str
    value: Any
    row_status: str


# ---------------------------------------------------------------------------
# EnrichmentHooks container
# ---------------------------------------------------------------------------


@dataclass
class EnrichmentHooks:
    """User-facing hook container, passed to the ``JobCoordinator``.

    All fields are optional callables. Sync and async callables both work.
    Hook errors are caught and logged; they never crash a job.
    """

    on_job_start: Optional[Callable[[JobStartEvent], Any]] = None
    on_job_end: Optional[Callable[[JobEndEvent], Any]] = None
    on_unit_complete: Optional[Callable[[UnitCompleteEvent], Any]] = None
    on_task_complete: Optional[Callable[[TaskCompleteEvent], Any]] = None


# ---------------------------------------------------------------------------
# Fire helper
# ---------------------------------------------------------------------------


async def _fire_hook(hook: Optional[Callable], event: Any) -> None:
    """Call *hook* with *event*, awaiting if async.  Silently catches errors."""
    if hook is None:
        return
    try:
        result = hook(event)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.warning("Hook %s raised an exception", hook, exc_info=True)
