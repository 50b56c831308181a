"""EntityCache — SQLite-backed cache of enriched entity data.

One entry per entity id holding its filled ``FieldValue``s.  Staleness is
decided per field from each value's own TTL, so a hit never needs to be
re-validated with the provider that produced it.  In-memory by default;
pass ``cache_dir`` for a WAL-mode ``cache.db`` that survives restarts.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from ..schemas.entity import EnrichedEntityData, EnrichmentEntity
from ..utils.logger import get_logger

logger = get_logger(__name__)


class EntityCache:
    """Keyed lookup/store of ``EnrichedEntityData`` with TTL-based staleness.

    A lookup is a hit only when the entry holds *every* requested field
    and none of those fields is stale.  Entries are written only from
    successful enrichments (last writer wins).

    Args:
        cache_dir: Directory for ``cache.db``. ``None`` keeps the cache in
            memory for the lifetime of this object.
    """

    def __init__(self, cache_dir: str | None = None) -> None:
        self._cache_dir = Path(cache_dir) if cache_dir else None
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _ensure_connection(self) -> sqlite3.Connection:
        if self._conn is not None:
            return self._conn

        if self._cache_dir is None:
            self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        else:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._cache_dir / "cache.db"), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA cache_size=-8000")  # 8 MB

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS entity_cache (
                entity_id   TEXT PRIMARY KEY,
                entity_type TEXT NOT NULL,
                value       TEXT NOT NULL,
                created_at  REAL NOT NULL,
                expires_at  REAL
            )
        """)
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_expires ON entity_cache(expires_at)")
        self._conn.commit()
        return self._conn

    def get(
        self,
        entity_id: str,
        fields: Iterable[str],
        now: datetime | None = None,
    ) -> Optional[EnrichedEntityData]:
        """Return the cached data restricted to *fields*, or ``None`` on a miss."""
        fields = list(fields)
        with self._lock:
            conn = self._ensure_connection()
            row = conn.execute(
                "SELECT value FROM entity_cache WHERE entity_id = ?", (entity_id,)
            ).fetchone()

        if row is None:
            self.misses += 1
            return None

        data = EnrichedEntityData.model_validate_json(row[0])
        for field in fields:
            value = data.fields.get(field)
            if value is None or not value.filled or value.is_stale(now):
                self.misses += 1
                return None

        self.hits += 1
        return data.model_copy(update={"fields": {f: data.fields[f] for f in fields}})

    def put(self, entity_id: str, data: EnrichedEntityData) -> None:
        """Store the filled fields of *data*, merged over any existing entry."""
        filled = data.filled_fields()
        if not filled:
            return

        with self._lock:
            conn = self._ensure_connection()
            existing = conn.execute(
                "SELECT value FROM entity_cache WHERE entity_id = ?", (entity_id,)
            ).fetchone()
            merged = dict(filled)
            if existing is not None:
                previous = EnrichedEntityData.model_validate_json(existing[0])
                merged = {**previous.filled_fields(), **filled}

            entry = data.model_copy(update={"entity_id": entity_id, "fields": merged})
            now = time.time()
            expires_at = max(v.expires_at.timestamp() for v in merged.values())
            conn.execute(
                "INSERT OR REPLACE INTO entity_cache (entity_id, entity_type, value, created_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (entity_id, entry.type.value, entry.model_dump_json(), now, expires_at),
            )
            conn.commit()

    def partition(
        self,
        entities: dict[str, EnrichmentEntity],
        now: datetime | None = None,
    ) -> tuple[dict[str, EnrichedEntityData], dict[str, EnrichmentEntity]]:
        """Split a unit map into ``(hits, misses)`` in one pass.

        Keys are preserved; lookups use each entity's ``entity_id``.
        """
        hits: dict[str, EnrichedEntityData] = {}
        misses: dict[str, EnrichmentEntity] = {}
        for unit_key, entity in entities.items():
            cached = self.get(entity.entity_id, entity.requested_fields, now=now)
            if cached is not None:
                hits[unit_key] = cached
            else:
                misses[unit_key] = entity
        logger.info("Entity cache: %d hits, %d misses", len(hits), len(misses))
        return hits, misses

    def delete(self, entity_id: str) -> bool:
        with self._lock:
            conn = self._ensure_connection()
            cursor = conn.execute("DELETE FROM entity_cache WHERE entity_id = ?", (entity_id,))
            conn.commit()
            return cursor.rowcount > 0

    def delete_all(self) -> int:
        """Delete all cache entries. Returns count deleted."""
        with self._lock:
            conn = self._ensure_connection()
            cursor = conn.execute("DELETE FROM entity_cache")
            conn.commit()
            return cursor.rowcount

    def cleanup_expired(self) -> int:
        """Remove entries whose every field is past its TTL. Returns count deleted."""
        with self._lock:
            conn = self._ensure_connection()
            cursor = conn.execute(
                "DELETE FROM entity_cache WHERE expires_at IS NOT NULL AND expires_at < ?",
                (time.time(),),
            )
            conn.commit()
            return cursor.rowcount

    def __len__(self) -> int:
        with self._lock:
            conn = self._ensure_connection()
            return conn.execute("SELECT COUNT(*) FROM entity_cache").fetchone()[0]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


# ---------------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------------


def canonical_json(obj: Any) -> str:
    """Deterministic JSON: sorted keys, compact separators, str fallback."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def compute_call_key(**components: Any) -> str:
    """SHA-256 hex digest of canonical JSON of *components*."""
    payload = canonical_json(components)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
