"""Entity deduplication: collapse cell targets into unique entities.

Targets that resolve to the same entity id become one
``EnrichmentEntity`` with every target cell attached and the union of
requested fields, so each real-world entity is enriched once no matter
how many cells need it.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from ..schemas.entity import EnrichmentEntity, EntityType, TargetCell
from ..utils.logger import get_logger
from .resolver import resolve

logger = get_logger(__name__)

EntityMap = dict[str, EnrichmentEntity]


@dataclass(frozen=True)
class EnrichmentTarget:
    """One cell that needs a value, plus the identifier it should be derived from."""

    row_id: str
    column_key: str
    identifier: str
    task_id: Optional[str] = None
    declared_type: Optional[EntityType] = None
    source_data: dict[str, Any] = field(default_factory=dict)


@dataclass
class DedupResult:
    """Entity map plus the statistics recorded while building it."""

    entities: EntityMap
    cell_count: int
    entities_by_type: dict[str, int]

    @property
    def entity_count(self) -> int:
        return len(self.entities)

    @property
    def duplicates_avoided(self) -> int:
        return self.cell_count - self.entity_count


class EntityDeduplicator:
    """Accumulates targets into an ``EntityMap`` keyed by entity id."""

    def __init__(self) -> None:
        self._entities: EntityMap = {}
        self._cell_count = 0

    def add(self, target: EnrichmentTarget) -> EnrichmentEntity:
        """Resolve *target* and merge it into the map; return its entity."""
        resolved = resolve(target.identifier, target.declared_type)
        cell = TargetCell(row_id=target.row_id, column_key=target.column_key, task_id=target.task_id)
        self._cell_count += 1

        existing = self._entities.get(resolved.entity_id)
        if existing is not None:
            existing.absorb([cell], [target.column_key], target.source_data)
            return existing

        entity = EnrichmentEntity(
            entity_id=resolved.entity_id,
            type=resolved.type,
            identifier=resolved.identifier,
            normalized_identifier=resolved.normalized,
            requested_fields=[target.column_key],
            target_cells=[cell],
            source_data=dict(target.source_data),
        )
        self._entities[resolved.entity_id] = entity
        return entity

    def result(self) -> DedupResult:
        by_type = Counter(entity.type.value for entity in self._entities.values())
        result = DedupResult(
            entities=dict(self._entities),
            cell_count=self._cell_count,
            entities_by_type=dict(by_type),
        )
        logger.info(
            "Deduplicated %d cells into %d entities (%d duplicates avoided)",
            result.cell_count,
            result.entity_count,
            result.duplicates_avoided,
        )
        return result


def build_entity_map(targets: Iterable[EnrichmentTarget]) -> DedupResult:
    """Deduplicate *targets* in one pass."""
    dedup = EntityDeduplicator()
    for target in targets:
        dedup.add(target)
    return dedup.result()


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


def serialize_entity_map(entities: EntityMap) -> list[dict[str, Any]]:
    """Flatten an entity map into JSON-safe records (``target_cells`` as a list)."""
    return [entity.model_dump(mode="json") for entity in entities.values()]


def deserialize_entities(records: list[dict[str, Any]]) -> list[EnrichmentEntity]:
    """Rebuild entities from ``serialize_entity_map`` output, in order."""
    return [EnrichmentEntity.model_validate(record) for record in records]
