"""Provider protocol and the data passed to and from provider adapters."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Protocol, runtime_checkable

from ..schemas.entity import EnrichmentEntity, EntityType
from ..schemas.field_value import FieldValue, is_filled, trust_weight

if TYPE_CHECKING:
    from ..core.config import EnrichmentConfig

_DOMAIN_KEYS = ("domain", "website", "url", "site")
_EMAIL_DOMAIN_RE = re.compile(r"^[^@\s]+@([^@\s]+\.[a-z]{2,})$")
_BARE_DOMAIN_RE = re.compile(r"^([a-z0-9-]+(\.[a-z0-9-]+)*\.[a-z]{2,})(/.*)?$")


@dataclass(frozen=True)
class ProviderInput:
    """Immutable input handed to ``Provider.execute``.

    Attributes:
        entity_id: Stable id of the entity being enriched.
        entity_type: Company, person or unknown.
        identifier: Raw identifier as first seen.
        normalized_identifier: Identifier after normalisation.
        fields: Fields this call should try to fill.
        existing: Known data for the entity (row data plus values filled
            by earlier steps).
    """

    entity_id: str
    entity_type: EntityType
    identifier: str
    normalized_identifier: str
    fields: tuple[str, ...]
    existing: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_entity(
        cls,
        entity: EnrichmentEntity,
        fields: list[str] | tuple[str, ...] | None = None,
        existing: dict[str, Any] | None = None,
    ) -> "ProviderInput":
        known = dict(entity.source_data)
        if existing:
            known.update({k: v for k, v in existing.items() if is_filled(v)})
        return cls(
            entity_id=entity.entity_id,
            entity_type=entity.type,
            identifier=entity.identifier,
            normalized_identifier=entity.normalized_identifier,
            fields=tuple(fields if fields is not None else entity.requested_fields),
            existing=known,
        )

    @property
    def domain(self) -> Optional[str]:
        """Company domain derived from the identifier or known data, if any."""
        for key, value in self.existing.items():
            if any(k in key.lower() for k in _DOMAIN_KEYS) and isinstance(value, str) and is_filled(value):
                match = _BARE_DOMAIN_RE.match(_strip_url(value))
                if match:
                    return match.group(1)
        normalized = self.normalized_identifier
        email = _EMAIL_DOMAIN_RE.match(normalized)
        if email:
            return email.group(1)
        if not normalized.startswith("linkedin:"):
            match = _BARE_DOMAIN_RE.match(normalized)
            if match:
                return match.group(1)
        return None

    def available_inputs(self) -> set[str]:
        """Names a provider may list in ``required_inputs``.

        ``identifier`` is always available; ``domain``, ``email`` and
        ``linkedin`` when derivable; plus every filled key of ``existing``.
        """
        available = {"identifier"}
        if self.domain:
            available.add("domain")
        if _EMAIL_DOMAIN_RE.match(self.normalized_identifier):
            available.add("email")
        if self.normalized_identifier.startswith("linkedin:"):
            available.add("linkedin")
        available.update(k for k, v in self.existing.items() if is_filled(v))
        return available


def _strip_url(value: str) -> str:
    value = value.strip().lower()
    for prefix in ("https://", "http://"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    if value.startswith("www."):
        value = value[4:]
    return value.rstrip("/")


@dataclass(frozen=True)
class ProviderContext:
    """Per-call context: which job is calling and on which attempt."""

    job_id: str
    attempt: int = 1
    config: EnrichmentConfig | None = None


@runtime_checkable
class Provider(Protocol):
    """Protocol all provider adapters must satisfy.

    ``execute`` returns a partial field map.  A field the provider could
    not find is simply omitted; only genuine failures raise.  Values may
    be raw or ``FieldValue`` instances.
    """

    name: str
    supported_fields: list[str]
    cost_multiplier: float
    required_inputs: list[str]

    def can_enrich(self, field: str) -> bool: ...

    def validate(self, input: ProviderInput) -> bool: ...

    async def execute(self, input: ProviderInput, context: ProviderContext) -> dict[str, Any]: ...


class BaseProvider:
    """Shared ``can_enrich`` / ``validate`` behaviour for the built-in adapters."""

    name: str
    supported_fields: list[str]
    cost_multiplier: float = 1.0
    required_inputs: list[str] = []

    def can_enrich(self, field: str) -> bool:
        return field in self.supported_fields

    def validate(self, input: ProviderInput) -> bool:
        return set(self.required_inputs) <= input.available_inputs()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, cost={self.cost_multiplier})"


def wrap_value(provider: str, field: str, value: Any) -> FieldValue:
    """Normalise a provider's raw output into a ``FieldValue``.

    ``FieldValue`` instances get the provider added to their sources;
    raw values use the provider's trust weight as confidence.
    """
    if isinstance(value, FieldValue):
        if value.value is not None and provider not in value.sources:
            return value.model_copy(update={"sources": [*value.sources, provider]})
        return value
    if not is_filled(value):
        return FieldValue.empty()
    return FieldValue.create(value, trust_weight(provider), [provider], field=field, label="inferred")
