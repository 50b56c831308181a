"""RecordStore — SQLite-backed tables, rows, jobs and cell tasks.

Stands in for the collaborator CRUD store.  One connection, serialized
by a re-entrant lock; ``transaction()`` yields that connection inside a
single atomic SQLite transaction so callers can group writes (row data,
task state, counters) that must commit together.

Write methods accept an optional ``conn``: pass the one yielded by
``transaction()`` to join an open transaction, or omit it to run in a
transaction of their own.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

import pandas as pd

from ..schemas.field_value import FieldValue
from ..schemas.job import CellTask, Column, EnrichmentJob, JobStatus, RowState, TaskStatus
from ..utils.logger import get_logger
from .exceptions import DuplicateTaskError

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS columns (
    table_id   TEXT NOT NULL,
    id         TEXT NOT NULL,
    key        TEXT NOT NULL,
    name       TEXT,
    position   INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (table_id, id)
);

CREATE TABLE IF NOT EXISTS rows (
    id              TEXT PRIMARY KEY,
    table_id        TEXT NOT NULL,
    position        INTEGER NOT NULL DEFAULT 0,
    data            TEXT NOT NULL DEFAULT '{}',
    status          TEXT NOT NULL DEFAULT 'idle',
    confidence      REAL,
    current_job_id  TEXT,
    total_tasks     INTEGER NOT NULL DEFAULT 0,
    done_tasks      INTEGER NOT NULL DEFAULT 0,
    failed_tasks    INTEGER NOT NULL DEFAULT 0,
    running_tasks   INTEGER NOT NULL DEFAULT 0,
    confidence_sum  REAL NOT NULL DEFAULT 0,
    last_run_at     TEXT
);
CREATE INDEX IF NOT EXISTS idx_rows_table ON rows(table_id, position);

CREATE TABLE IF NOT EXISTS jobs (
    id               TEXT PRIMARY KEY,
    table_id         TEXT NOT NULL,
    status           TEXT NOT NULL,
    total_units      INTEGER NOT NULL DEFAULT 0,
    done_units       INTEGER NOT NULL DEFAULT 0,
    failed_units     INTEGER NOT NULL DEFAULT 0,
    running_units    INTEGER NOT NULL DEFAULT 0,
    confidence_sum   REAL NOT NULL DEFAULT 0,
    aggregate_status TEXT NOT NULL DEFAULT 'idle',
    budget_cents     INTEGER,
    error            TEXT,
    metadata         TEXT NOT NULL DEFAULT '{}',
    created_at       TEXT,
    started_at       TEXT,
    completed_at     TEXT
);

CREATE TABLE IF NOT EXISTS cell_tasks (
    id            TEXT PRIMARY KEY,
    job_id        TEXT NOT NULL,
    row_id        TEXT NOT NULL,
    column_id     TEXT NOT NULL,
    column_key    TEXT NOT NULL,
    status        TEXT NOT NULL DEFAULT 'queued',
    result        TEXT,
    error         TEXT,
    attempts      INTEGER NOT NULL DEFAULT 0,
    started_at    TEXT,
    completed_at  TEXT,
    UNIQUE (job_id, row_id, column_id)
);
CREATE INDEX IF NOT EXISTS idx_tasks_job ON cell_tasks(job_id, status);
"""

_JOB_FIELDS = (
    "status",
    "budget_cents",
    "error",
    "metadata",
    "created_at",
    "started_at",
    "completed_at",
)
_TASK_FIELDS = ("status", "result", "error", "attempts", "started_at", "completed_at")


def _encode(value: Any) -> Any:
    """Convert a Python value to something sqlite3 can bind."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, FieldValue):
        return value.model_dump_json()
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    if isinstance(value, Enum):
        return value.value
    return value


def _clean_cell(value: Any) -> Any:
    """Normalise a DataFrame cell: NaN becomes ``None``, numpy scalars become Python."""
    if isinstance(value, (list, dict)):
        return value
    if pd.isna(value):
        return None
    if hasattr(value, "item") and not isinstance(value, (str, bytes)):
        return value.item()
    return value


class RecordStore:
    """SQLite store for the tables an enrichment job reads and writes.

    Args:
        path: Database file, or ``":memory:"`` (the default) for a
            private in-memory database.
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        self._path = str(path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def _ensure_connection(self) -> sqlite3.Connection:
        if self._conn is not None:
            return self._conn

        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if self._path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection inside one atomic transaction.

        Commits on normal exit and rolls back if the block raises.
        """
        with self._lock:
            conn = self._ensure_connection()
            with conn:
                yield conn

    @contextmanager
    def _use(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with self.transaction() as own:
                yield own

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._ensure_connection().execute(sql, params).fetchall()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ------------------------------------------------------------------
    # Columns and rows
    # ------------------------------------------------------------------

    def add_column(
        self,
        table_id: str,
        key: str,
        column_id: str | None = None,
        name: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Column:
        """Add a column; ``column_id`` defaults to ``key``."""
        column_id = column_id or key
        with self._use(conn) as c:
            position = c.execute(
                "SELECT COUNT(*) FROM columns WHERE table_id = ?", (table_id,)
            ).fetchone()[0]
            c.execute(
                "INSERT INTO columns (table_id, id, key, name, position) VALUES (?, ?, ?, ?, ?)",
                (table_id, column_id, key, name, position),
            )
        return Column(id=column_id, table_id=table_id, key=key, name=name, position=position)

    def list_columns(self, table_id: str) -> list[Column]:
        rows = self._query(
            "SELECT * FROM columns WHERE table_id = ? ORDER BY position", (table_id,)
        )
        return [Column(**dict(r)) for r in rows]

    def get_column(self, table_id: str, column_id: str) -> Optional[Column]:
        rows = self._query(
            "SELECT * FROM columns WHERE table_id = ? AND id = ?", (table_id, column_id)
        )
        return Column(**dict(rows[0])) if rows else None

    def add_row(
        self,
        table_id: str,
        data: dict[str, Any],
        row_id: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> RowState:
        row_id = row_id or f"row_{uuid.uuid4().hex[:12]}"
        with self._use(conn) as c:
            position = c.execute(
                "SELECT COUNT(*) FROM rows WHERE table_id = ?", (table_id,)
            ).fetchone()[0]
            c.execute(
                "INSERT INTO rows (id, table_id, position, data) VALUES (?, ?, ?, ?)",
                (row_id, table_id, position, json.dumps(data, default=str)),
            )
        return RowState(id=row_id, table_id=table_id, data=data)

    def get_row(self, row_id: str) -> Optional[RowState]:
        rows = self._query("SELECT * FROM rows WHERE id = ?", (row_id,))
        return self._row_state(rows[0]) if rows else None

    def list_rows(self, table_id: str, row_ids: list[str] | None = None) -> list[RowState]:
        """Rows of *table_id* in insertion order, optionally restricted to *row_ids*."""
        rows = self._query(
            "SELECT * FROM rows WHERE table_id = ? ORDER BY position", (table_id,)
        )
        states = [self._row_state(r) for r in rows]
        if row_ids is None:
            return states
        wanted = set(row_ids)
        return [s for s in states if s.id in wanted]

    def merge_row_data(
        self,
        row_id: str,
        updates: dict[str, Any],
        last_run_at: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, Any]:
        """Merge *updates* into the row's data blob and return the merged data."""
        with self._use(conn) as c:
            found = c.execute("SELECT data FROM rows WHERE id = ?", (row_id,)).fetchone()
            if found is None:
                raise KeyError(f"row not found: {row_id}")
            data = {**json.loads(found["data"]), **updates}
            c.execute(
                "UPDATE rows SET data = ?, last_run_at = COALESCE(?, last_run_at) WHERE id = ?",
                (json.dumps(data, default=str), _encode(last_run_at), row_id),
            )
        return data

    @staticmethod
    def _row_state(r: sqlite3.Row) -> RowState:
        return RowState(
            id=r["id"],
            table_id=r["table_id"],
            data=json.loads(r["data"]),
            status=r["status"],
            confidence=r["confidence"],
            current_job_id=r["current_job_id"],
            total_tasks=r["total_tasks"],
            done_tasks=r["done_tasks"],
            failed_tasks=r["failed_tasks"],
            running_tasks=r["running_tasks"],
            confidence_sum=r["confidence_sum"],
            last_run_at=r["last_run_at"],
        )

    # ------------------------------------------------------------------
    # pandas import / export
    # ------------------------------------------------------------------

    def load_dataframe(
        self,
        table_id: str,
        df: pd.DataFrame,
        id_column: str | None = None,
    ) -> list[str]:
        """Create a table from *df*: one column per DataFrame column, one row per record.

        Args:
            table_id: Table to create or append to.
            df: Source data.  Missing values (NaN/None) are stored as ``None``.
            id_column: Column whose values become row ids; it is not stored
                as a data column.  Generated ids are used when omitted.

        Returns:
            The row ids in DataFrame order.
        """
        data_columns = [c for c in df.columns if c != id_column]
        row_ids: list[str] = []
        with self.transaction() as conn:
            existing = {c.key for c in self.list_columns(table_id)}
            for col in data_columns:
                if str(col) not in existing:
                    self.add_column(table_id, str(col), conn=conn)
            for _, series in df.iterrows():
                data = {str(col): _clean_cell(series[col]) for col in data_columns}
                row_id = str(series[id_column]) if id_column else None
                row_ids.append(self.add_row(table_id, data, row_id=row_id, conn=conn).id)
        logger.info("Loaded %d rows x %d columns into table %s", len(row_ids), len(data_columns), table_id)
        return row_ids

    def to_dataframe(self, table_id: str, include_status: bool = False) -> pd.DataFrame:
        """Export a table as a DataFrame indexed by row id.

        Args:
            include_status: Append ``_status`` and ``_confidence`` columns.
        """
        keys = [c.key for c in self.list_columns(table_id)]
        records = []
        index = []
        for row in self.list_rows(table_id):
            record = {k: row.data.get(k) for k in keys}
            if include_status:
                record["_status"] = row.status.value
                record["_confidence"] = row.confidence
            records.append(record)
            index.append(row.id)
        columns = keys + (["_status", "_confidence"] if include_status else [])
        return pd.DataFrame(records, index=pd.Index(index, name="row_id"), columns=columns)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(self, job: EnrichmentJob, conn: sqlite3.Connection | None = None) -> None:
        with self._use(conn) as c:
            c.execute(
                "INSERT INTO jobs (id, table_id, status, budget_cents, metadata, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    job.id,
                    job.table_id,
                    job.status.value,
                    job.budget_cents,
                    json.dumps(job.metadata, default=str),
                    _encode(job.created_at),
                ),
            )

    def get_job(self, job_id: str) -> Optional[EnrichmentJob]:
        rows = self._query("SELECT * FROM jobs WHERE id = ?", (job_id,))
        if not rows:
            return None
        record = dict(rows[0])
        record["metadata"] = json.loads(record["metadata"])
        return EnrichmentJob(**record)

    def list_jobs(self, table_id: str) -> list[EnrichmentJob]:
        ids = [r["id"] for r in self._query("SELECT id FROM jobs WHERE table_id = ?", (table_id,))]
        return [job for job in (self.get_job(i) for i in ids) if job is not None]

    def update_job(
        self,
        job_id: str,
        conn: sqlite3.Connection | None = None,
        expected_status: JobStatus | None = None,
        **fields: Any,
    ) -> bool:
        """Update lifecycle fields of a job.  Counters are owned by ``StatusAggregator``.

        With *expected_status* the update only applies while the job is
        still in that status, as one conditional ``UPDATE``.

        Returns:
            Whether a job row was updated.
        """
        unknown = set(fields) - set(_JOB_FIELDS)
        if unknown:
            raise ValueError(f"cannot update job fields: {sorted(unknown)}")
        if not fields:
            return False
        assignments = ", ".join(f"{name} = ?" for name in fields)
        sql = f"UPDATE jobs SET {assignments} WHERE id = ?"
        params = [*(_encode(v) for v in fields.values()), job_id]
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(expected_status.value)
        with self._use(conn) as c:
            return c.execute(sql, tuple(params)).rowcount > 0

    # ------------------------------------------------------------------
    # Cell tasks
    # ------------------------------------------------------------------

    def insert_tasks(
        self,
        tasks: list[CellTask],
        strict: bool = False,
        conn: sqlite3.Connection | None = None,
    ) -> list[CellTask]:
        """Insert tasks, keeping at most one per ``(job_id, row_id, column_id)``.

        Args:
            tasks: Tasks to insert.
            strict: Raise ``DuplicateTaskError`` on a repeated tuple instead
                of silently collapsing it.

        Returns:
            The tasks actually inserted.
        """
        created: list[CellTask] = []
        with self._use(conn) as c:
            for task in tasks:
                verb = "INSERT" if strict else "INSERT OR IGNORE"
                try:
                    cursor = c.execute(
                        f"{verb} INTO cell_tasks (id, job_id, row_id, column_id, column_key, status) "
                        "VALUES (?, ?, ?, ?, ?, ?)",
                        (task.id, task.job_id, task.row_id, task.column_id, task.column_key, task.status.value),
                    )
                except sqlite3.IntegrityError as exc:
                    raise DuplicateTaskError(
                        f"Task already exists for job {task.job_id}",
                        row_id=task.row_id,
                        field=task.column_key,
                    ) from exc
                if cursor.rowcount:
                    created.append(task)
                else:
                    logger.debug(
                        "Collapsed duplicate task for (%s, %s, %s)", task.job_id, task.row_id, task.column_id
                    )
        return created

    def get_task(self, task_id: str) -> Optional[CellTask]:
        rows = self._query("SELECT * FROM cell_tasks WHERE id = ?", (task_id,))
        return self._task(rows[0]) if rows else None

    def list_tasks(self, job_id: str, status: TaskStatus | None = None) -> list[CellTask]:
        if status is None:
            rows = self._query("SELECT * FROM cell_tasks WHERE job_id = ? ORDER BY rowid", (job_id,))
        else:
            rows = self._query(
                "SELECT * FROM cell_tasks WHERE job_id = ? AND status = ? ORDER BY rowid",
                (job_id, status.value),
            )
        return [self._task(r) for r in rows]

    def update_task(self, task_id: str, conn: sqlite3.Connection | None = None, **fields: Any) -> None:
        unknown = set(fields) - set(_TASK_FIELDS)
        if unknown:
            raise ValueError(f"cannot update task fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self._use(conn) as c:
            c.execute(
                f"UPDATE cell_tasks SET {assignments} WHERE id = ?",
                (*(_encode(v) for v in fields.values()), task_id),
            )

    @staticmethod
    def _task(r: sqlite3.Row) -> CellTask:
        record = dict(r)
        if record["result"] is not None:
            record["result"] = FieldValue.model_validate_json(record["result"])
        return CellTask(**record)
