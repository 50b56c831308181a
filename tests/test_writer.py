"""Tests for ResultWriter: atomic write-back and counter maintenance."""

from __future__ import annotations

from gridfill.core.store import RecordStore
from gridfill.core.writer import ResultWriter, TaskRef
from gridfill.schemas.field_value import FieldValue
from gridfill.schemas.job import CellTask, EnrichmentJob, RowStatus, TaskStatus


def _setup(columns=("title", "industry")) -> tuple[RecordStore, ResultWriter, list[TaskRef]]:
    store = RecordStore()
    for key in ("email", *columns):
        store.add_column("t1", key)
    store.add_row("t1", {"email": "jane@acme.com"}, row_id="r1")
    store.create_job(EnrichmentJob(id="j1", table_id="t1"))
    writer = ResultWriter(store)
    tasks = [
        CellTask(id=f"task_{key}", job_id="j1", row_id="r1", column_id=key, column_key=key) for key in columns
    ]
    writer.enqueue("j1", tasks)
    return store, writer, [TaskRef(t.id, t.row_id, t.column_key) for t in tasks]


def _value(value: str, confidence: float = 0.8) -> FieldValue:
    return FieldValue.create(value, confidence, ["mock"])


class TestEnqueue:
    def test_counts_job_and_row(self):
        store, _, _ = _setup()
        job = store.get_job("j1")
        row = store.get_row("r1")
        assert job.total_units == 2
        assert job.queued_units == 2
        assert job.aggregate_status is RowStatus.QUEUED
        assert row.current_job_id == "j1"
        assert row.total_tasks == 2
        assert row.status is RowStatus.QUEUED

    def test_duplicates_counted_once(self):
        store, writer, _ = _setup(columns=("title",))
        extra = CellTask(id="dup", job_id="j1", row_id="r1", column_id="title", column_key="title")
        assert writer.enqueue("j1", [extra]) == []
        assert store.get_job("j1").total_units == 1


class TestWrites:
    def test_success_merges_row_and_counts(self):
        store, writer, (title, _) = _setup()
        writer.mark_running("j1", [title])
        assert store.get_row("r1").status is RowStatus.RUNNING

        result = writer.write_success("j1", title, _value("CTO", 0.9))
        assert result.status is TaskStatus.DONE
        assert result.row_mutation.merged_data == {"email": "jane@acme.com", "title": "CTO"}
        assert result.row_mutation.status is RowStatus.QUEUED
        assert result.job_counters.done == 1
        assert result.job_counters.running == 0

        task = store.get_task(title.task_id)
        assert task.status is TaskStatus.DONE
        assert task.result.value == "CTO"
        assert store.get_row("r1").last_run_at is not None

    def test_failure_leaves_row_data(self):
        store, writer, (title, _) = _setup()
        result = writer.write_failure("j1", title, "not found")
        assert result.status is TaskStatus.FAILED
        assert store.get_row("r1").data == {"email": "jane@acme.com"}
        assert store.get_task(title.task_id).error == "not found"

    def test_terminal_task_written_once(self):
        store, writer, (title, _) = _setup()
        assert writer.write_success("j1", title, _value("CTO")) is not None
        assert writer.write_failure("j1", title, "late failure") is None
        assert writer.write_success("j1", title, _value("CEO")) is None
        job = store.get_job("j1")
        assert (job.done_units, job.failed_units) == (1, 0)
        assert store.get_row("r1").data["title"] == "CTO"

    def test_mixed_outcomes_are_ambiguous(self):
        store, writer, (title, industry) = _setup()
        writer.mark_running("j1", [title, industry])
        writer.write_success("j1", title, _value("CTO", 0.6))
        writer.write_failure("j1", industry, "not found")

        row = store.get_row("r1")
        assert row.status is RowStatus.AMBIGUOUS
        assert row.confidence == 0.6
        job = store.get_job("j1")
        assert job.aggregate_status is RowStatus.AMBIGUOUS
        assert job.done_units + job.failed_units + job.running_units + job.queued_units == job.total_units

    def test_all_done(self):
        store, writer, refs = _setup()
        for ref in refs:
            writer.write_success("j1", ref, _value("x", 0.5))
        assert store.get_row("r1").status is RowStatus.DONE
        assert store.get_job("j1").aggregate_status is RowStatus.DONE

    def test_mark_running_records_attempts(self):
        store, writer, (title, _) = _setup()
        writer.mark_running("j1", [title], attempt=1)
        writer.mark_running("j1", [title], attempt=2)
        task = store.get_task(title.task_id)
        assert task.status is TaskStatus.RUNNING
        assert task.attempts == 2
        assert store.get_job("j1").running_units == 1

    def test_row_moved_to_newer_job(self):
        store, writer, (title, _) = _setup()
        store.create_job(EnrichmentJob(id="j2", table_id="t1"))
        writer.enqueue(
            "j2", [CellTask(id="new", job_id="j2", row_id="r1", column_id="title", column_key="title")]
        )
        result = writer.write_failure("j1", title, "stale job")
        assert result.job_counters.failed == 1
        row = store.get_row("r1")
        assert row.current_job_id == "j2"
        assert row.failed_tasks == 0
