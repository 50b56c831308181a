"""Tests for counter-based status derivation."""

from __future__ import annotations

import pytest

from gridfill.core.status import (
    CounterDelta,
    StatusCounters,
    average_confidence,
    calculate_status,
)
from gridfill.schemas.job import RowStatus


class TestCalculateStatus:
    @pytest.mark.parametrize(
        "total, done, failed, running, expected",
        [
            (0, 0, 0, 0, RowStatus.IDLE),
            (3, 0, 0, 0, RowStatus.QUEUED),
            (3, 1, 0, 1, RowStatus.RUNNING),
            (3, 1, 1, 1, RowStatus.RUNNING),
            (3, 3, 0, 0, RowStatus.DONE),
            (3, 0, 3, 0, RowStatus.FAILED),
            (3, 2, 0, 0, RowStatus.QUEUED),
            (10, 9, 1, 0, RowStatus.AMBIGUOUS),
            (6, 5, 1, 0, RowStatus.AMBIGUOUS),
        ],
    )
    def test_priority(self, total, done, failed, running, expected):
        assert calculate_status(total, done, failed, running) is expected

    def test_one_failure_never_reads_as_done(self):
        assert calculate_status(10, 9, 1, 0) is not RowStatus.DONE


class TestConfidence:
    def test_none_until_something_done(self):
        assert average_confidence(0.0, 0) is None

    def test_running_average(self):
        assert average_confidence(2.4, 3) == pytest.approx(0.8)


class TestCounters:
    def test_lifecycle(self):
        counters = StatusCounters()
        counters = counters.apply(CounterDelta.enqueued(2))
        assert counters.queued == 2
        assert counters.status is RowStatus.QUEUED

        counters = counters.apply(CounterDelta.started())
        assert counters.status is RowStatus.RUNNING

        counters = counters.apply(CounterDelta.succeeded(0.9))
        counters = counters.apply(CounterDelta.started())
        counters = counters.apply(CounterDelta.failed_task())
        assert counters.done + counters.failed + counters.running + counters.queued == counters.total
        assert counters.status is RowStatus.AMBIGUOUS
        assert counters.confidence == pytest.approx(0.9)
        assert counters.is_settled

    def test_success_straight_from_queued(self):
        counters = StatusCounters(total=1).apply(CounterDelta.succeeded(0.5, from_running=False))
        assert counters.status is RowStatus.DONE
        assert counters.running == 0

    def test_overcount_rejected(self):
        with pytest.raises(ValueError, match="counter invariant"):
            StatusCounters(total=1, done=1).apply(CounterDelta.failed_task(from_running=False))

    def test_negative_running_rejected(self):
        with pytest.raises(ValueError):
            StatusCounters(total=1).apply(CounterDelta.succeeded(0.5))

    def test_empty_counters_not_settled(self):
        assert not StatusCounters().is_settled
