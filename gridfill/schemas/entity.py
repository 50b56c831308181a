"""Entity schemas — deduplicated real-world referents and their results."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .field_value import FieldValue


class EntityType(str, Enum):
    COMPANY = "company"
    PERSON = "person"
    UNKNOWN = "unknown"


class TargetCell(BaseModel):
    """A (row, column) cell that consumes an entity's enriched data."""

    row_id: str
    column_key: str
    task_id: Optional[str] = None


class EnrichmentEntity(BaseModel):
    """A unique entity to enrich, backing one or more target cells.

    ``entity_id`` is a pure function of ``(type, normalized_identifier)``;
    two targets resolving to the same id are merged into one entity.

    Attributes:
        entity_id: Stable id, ``"<type>:<normalized identifier>"`` filtered
            to safe characters.
        type: Company, person or unknown.
        identifier: The raw identifier as first seen.
        normalized_identifier: Identifier after normalisation.
        requested_fields: Union of every field requested by any target.
        target_cells: Every cell that needs this entity's data.
        source_data: Merged row data from all target rows, used as
            provider context.
    """

    entity_id: str
    type: EntityType
    identifier: str
    normalized_identifier: str
    requested_fields: list[str] = Field(default_factory=list)
    target_cells: list[TargetCell] = Field(default_factory=list)
    source_data: dict[str, Any] = Field(default_factory=dict)

    def absorb(self, cells: list[TargetCell], fields: list[str], source_data: dict[str, Any] | None = None) -> None:
        """Append *cells* and union *fields* into this entity.

        *source_data* only adds keys this entity does not have yet; on a
        conflict the first row's value is kept.
        """
        self.target_cells.extend(cells)
        for f in fields:
            if f not in self.requested_fields:
                self.requested_fields.append(f)
        if source_data:
            self.source_data = {**source_data, **self.source_data}

    @property
    def row_ids(self) -> list[str]:
        seen: list[str] = []
        for cell in self.target_cells:
            if cell.row_id not in seen:
                seen.append(cell.row_id)
        return seen


class ProvenanceRecord(BaseModel):
    field: str
    source: str
    confidence: float
    cost_cents: int = 0


class EnrichedEntityData(BaseModel):
    """Result of enriching one entity, as cached and distributed to cells."""

    entity_id: str
    type: EntityType = EntityType.UNKNOWN
    fields: dict[str, FieldValue] = Field(default_factory=dict)
    provenance: list[ProvenanceRecord] = Field(default_factory=list)
    cost_cents: int = 0
    processing_time_ms: float = 0.0

    def filled_fields(self) -> dict[str, FieldValue]:
        return {k: v for k, v in self.fields.items() if v.filled}
