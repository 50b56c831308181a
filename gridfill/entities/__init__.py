"""Entity resolution and deduplication."""

from .dedup import (
    DedupResult,
    EnrichmentTarget,
    EntityDeduplicator,
    EntityMap,
    build_entity_map,
    deserialize_entities,
    serialize_entity_map,
)
from .resolver import (
    ResolvedIdentifier,
    calculate_entity_id,
    detect_entity_type,
    find_identifier,
    normalize_identifier,
    resolve,
)

__all__ = [
    "DedupResult",
    "EnrichmentTarget",
    "EntityDeduplicator",
    "EntityMap",
    "ResolvedIdentifier",
    "build_entity_map",
    "calculate_entity_id",
    "deserialize_entities",
    "detect_entity_type",
    "find_identifier",
    "normalize_identifier",
    "resolve",
    "serialize_entity_map",
]
