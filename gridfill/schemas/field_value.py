"""FieldValue — the canonical envelope for every enriched value.

Every provider result is normalised into a ``FieldValue`` before it is
merged, cached or written back to a row.  Confidence is clamped to
``[0, 1]`` on construction and a non-null value must always carry at
least one source.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# Days before a value becomes eligible for re-enrichment.
DEFAULT_TTL_DAYS: dict[str, int] = {
    "name": 90,
    "company": 60,
    "title": 30,
    "email": 14,
    "email_candidates": 14,
    "phone": 30,
    "location": 60,
    "short_bio": 60,
    "social_links": 30,
    "company_size": 90,
    "company_summary": 90,
    "industry": 90,
    "tech_stack": 60,
    "funding": 30,
    "founded_year": 365,
    "website": 90,
}

FALLBACK_TTL_DAYS = 30

# Trust weight used as the default confidence for a source.
SOURCE_TRUST_WEIGHTS: dict[str, float] = {
    "linkedin_api": 0.95,
    "linkedin_parser": 0.85,
    "github_api": 0.9,
    "hunter_api": 0.9,
    "zerobounce": 0.95,
    "serper": 0.7,
    "open_corporates": 0.9,
    "company_scraper": 0.7,
    "website_scrape": 0.8,
    "search_result": 0.7,
    "profile_api": 0.9,
    "email_pattern": 0.3,
    "llm_synthesis": 0.4,
    "mock": 0.5,
}

DEFAULT_TRUST_WEIGHT = 0.5
AGREEMENT_BONUS = 0.1

Label = Literal["verified", "inferred", "generated"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_filled(value: Any) -> bool:
    """True when *value* counts as present in a row (not None, not blank)."""
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    if isinstance(value, float) and value != value:  # NaN from pandas
        return False
    return True


def ttl_for_field(field: str) -> int:
    return DEFAULT_TTL_DAYS.get(field, FALLBACK_TTL_DAYS)


def trust_weight(source: str) -> float:
    return SOURCE_TRUST_WEIGHTS.get(source, DEFAULT_TRUST_WEIGHT)


class FieldValue(BaseModel):
    """A single enriched value plus its provenance.

    Attributes:
        value: The enriched value, or ``None`` when nothing was found.
        confidence: Score in ``[0, 1]``; out-of-range input is clamped.
        sources: Names of the sources that produced the value.  Never
            empty when ``value`` is not ``None``.
        verified: Whether the value was independently verified.
        timestamp: When the value was obtained (UTC).
        ttl_days: Days until the value is stale.
        label: ``verified`` / ``inferred`` / ``generated``.
        raw: Raw provider payload kept for audit; excluded from dumps.
    """

    value: Any = None
    confidence: float = 0.0
    sources: list[str] = Field(default_factory=list)
    verified: Optional[bool] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    ttl_days: int = FALLBACK_TTL_DAYS
    label: Optional[Label] = None
    raw: Any = Field(default=None, exclude=True)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        v = float(v if v is not None else 0.0)
        return max(0.0, min(1.0, v))

    @field_validator("ttl_days")
    @classmethod
    def non_negative_ttl(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"ttl_days must be non-negative, got {v}")
        return v

    @model_validator(mode="after")
    def sources_required_for_value(self) -> "FieldValue":
        if self.value is not None and not self.sources:
            raise ValueError("a FieldValue with a value must name at least one source")
        return self

    # -- constructors ----------------------------------------------------

    @classmethod
    def create(
        cls,
        value: Any,
        confidence: float,
        sources: list[str],
        *,
        field: str | None = None,
        ttl_days: int | None = None,
        verified: bool | None = None,
        label: Label | None = None,
        raw: Any = None,
    ) -> "FieldValue":
        """Build a FieldValue, deriving ``ttl_days`` from the field name if omitted."""
        if ttl_days is None:
            ttl_days = ttl_for_field(field) if field else FALLBACK_TTL_DAYS
        return cls(
            value=value,
            confidence=confidence,
            sources=list(sources),
            verified=verified,
            ttl_days=ttl_days,
            label=label,
            raw=raw,
        )

    @classmethod
    def empty(cls) -> "FieldValue":
        return cls(value=None, confidence=0.0, sources=[])

    # -- state -----------------------------------------------------------

    @property
    def filled(self) -> bool:
        return is_filled(self.value)

    @property
    def expires_at(self) -> datetime:
        return self.timestamp + timedelta(days=self.ttl_days)

    def is_stale(self, now: datetime | None = None) -> bool:
        """True once ``now`` is past ``timestamp + ttl_days``."""
        now = now or _utcnow()
        return now > self.expires_at


def merge_field_values(
    values: list[FieldValue],
    pick_best: Callable[[list[FieldValue]], Any] | None = None,
) -> FieldValue:
    """Consensus-merge several FieldValues for the same field.

    Sources are unioned (order preserved) and confidence is the maximum
    input confidence, plus an agreement bonus when at least two inputs
    carry the chosen value.  TTL is the shortest input TTL, and the
    result is verified if any input was.

    Args:
        values: Values to merge.
        pick_best: Chooses the merged value; defaults to the value of the
            most confident input.
    """
    filled = [v for v in values if v.filled]
    if not filled:
        return FieldValue.empty()
    if len(filled) == 1:
        return filled[0]

    if pick_best is None:
        def pick_best(vs: list[FieldValue]) -> Any:
            return max(vs, key=lambda v: v.confidence).value

    chosen = pick_best(filled)
    sources: list[str] = []
    for v in filled:
        for s in v.sources:
            if s not in sources:
                sources.append(s)

    confidence = max(v.confidence for v in filled)
    if sum(1 for v in filled if v.value == chosen) >= 2:
        confidence += AGREEMENT_BONUS

    labels = {v.label for v in filled if v.label}
    return FieldValue(
        value=chosen,
        confidence=min(1.0, confidence),
        sources=sources,
        verified=any(bool(v.verified) for v in filled),
        ttl_days=min(v.ttl_days for v in filled),
        label="verified" if "verified" in labels else (labels.pop() if len(labels) == 1 else None),
    )
