"""Entity resolution: normalise raw identifiers into stable entity ids.

Every function here is pure.  ``resolve`` is idempotent: feeding a
normalised identifier back in yields the same type and entity id as the
raw identifier it came from.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from ..schemas.entity import EntityType
from ..schemas.field_value import is_filled

PERSONAL_EMAIL_DOMAINS = frozenset(
    {
        "gmail",
        "googlemail",
        "yahoo",
        "hotmail",
        "outlook",
        "live",
        "icloud",
        "me",
        "aol",
        "protonmail",
        "proton",
        "gmx",
    }
)

_PROTOCOL_RE = re.compile(r"^(https?://|mailto:)")
_LINKEDIN_PERSON_RE = re.compile(r"linkedin\.com/in/([^/?#]+)")
_LINKEDIN_COMPANY_RE = re.compile(r"linkedin\.com/company/([^/?#]+)")
_EMAIL_RE = re.compile(r"^[^@\s]+@([a-z0-9-]+)(\.[a-z0-9.-]+)$")
_DOMAIN_RE = re.compile(r"^[a-z0-9-]+(\.[a-z0-9-]+)*\.[a-z]{2,}(/\S*)?$")
_UNSAFE_RE = re.compile(r"[^a-z0-9:]")


@dataclass(frozen=True)
class ResolvedIdentifier:
    """Outcome of resolving one raw identifier."""

    type: EntityType
    identifier: str
    normalized: str
    entity_id: str


def normalize_identifier(identifier: str) -> str:
    """Lowercase and strip protocol, ``www.`` and trailing slash.

    LinkedIn URLs collapse to ``linkedin:<slug>`` for profiles and
    ``linkedin:company:<slug>`` for company pages.

    >>> normalize_identifier("https://www.LinkedIn.com/in/JaneDoe/")
    'linkedin:janedoe'
    """
    normalized = identifier.strip().lower()
    normalized = _PROTOCOL_RE.sub("", normalized)
    if normalized.startswith("www."):
        normalized = normalized[4:]
    normalized = normalized.rstrip("/")

    match = _LINKEDIN_PERSON_RE.search(normalized)
    if match:
        return f"linkedin:{match.group(1)}"
    match = _LINKEDIN_COMPANY_RE.search(normalized)
    if match:
        return f"linkedin:company:{match.group(1)}"
    return normalized


def detect_entity_type(identifier: str) -> EntityType:
    """Infer the entity type of a raw or already-normalised identifier."""
    lower = identifier.strip().lower()

    if "linkedin.com/in/" in lower:
        return EntityType.PERSON
    if "linkedin.com/company/" in lower or lower.startswith("linkedin:company:"):
        return EntityType.COMPANY
    if lower.startswith("linkedin:"):
        return EntityType.PERSON

    bare = _PROTOCOL_RE.sub("", lower)
    email = _EMAIL_RE.match(bare)
    if email:
        if email.group(1) in PERSONAL_EMAIL_DOMAINS:
            return EntityType.PERSON
        return EntityType.COMPANY

    if bare.startswith("www."):
        bare = bare[4:]
    if _DOMAIN_RE.match(bare.rstrip("/")):
        return EntityType.COMPANY
    return EntityType.UNKNOWN


def _escape_unsafe(match: re.Match) -> str:
    return "".join(f"_{byte:02x}" for byte in match.group(0).encode("utf-8"))


def calculate_entity_id(entity_type: EntityType | str, normalized: str) -> str:
    """``"<type>:<normalized>"`` restricted to ``[a-z0-9:_]``.

    Every other UTF-8 byte, ``_`` included, becomes ``_xx`` (lowercase
    hex), so distinct normalised identifiers never share an id.

    >>> calculate_entity_id("company", "my-site.com")
    'company:my_2dsite_2ecom'
    """
    type_value = entity_type.value if isinstance(entity_type, EntityType) else str(entity_type)
    return _UNSAFE_RE.sub(_escape_unsafe, f"{type_value}:{normalized}".lower())


def resolve(identifier: str, declared_type: EntityType | str | None = None) -> ResolvedIdentifier:
    """Resolve *identifier* to its entity type, normalised form and entity id.

    Args:
        identifier: Raw identifier (URL, email, LinkedIn link, domain, name).
        declared_type: Type to use instead of inferring one.
    """
    if declared_type is not None:
        entity_type = EntityType(declared_type)
    else:
        entity_type = detect_entity_type(identifier)
    normalized = normalize_identifier(identifier)
    return ResolvedIdentifier(
        type=entity_type,
        identifier=identifier,
        normalized=normalized,
        entity_id=calculate_entity_id(entity_type, normalized),
    )


# ---------------------------------------------------------------------------
# Identifier discovery within a row
# ---------------------------------------------------------------------------

# Column-key fragments, highest priority first.
IDENTIFIER_KEY_PRIORITY: tuple[tuple[str, ...], ...] = (
    ("linkedin",),
    ("email", "e_mail", "mail"),
    ("domain", "website", "url", "site"),
    ("name", "company", "person"),
)


def find_identifier(row_data: dict[str, Any], exclude: Iterable[str] = ()) -> Optional[str]:
    """Pick the best identifier in a row.

    Priority is LinkedIn > email > domain/website/url > name, matched
    first by the value's shape and then by column key.  Falls back to the
    first non-empty string value.  Columns in *exclude* (typically the
    columns being enriched) are ignored.

    Returns:
        The identifier string, or ``None`` when the row has none.
    """
    excluded = set(exclude)
    candidates = [
        (key, value.strip())
        for key, value in row_data.items()
        if key not in excluded and isinstance(value, str) and is_filled(value)
    ]
    if not candidates:
        return None

    for _, value in candidates:
        if "linkedin.com/" in value.lower():
            return value
    for _, value in candidates:
        if _EMAIL_RE.match(value.lower()):
            return value

    for fragments in IDENTIFIER_KEY_PRIORITY:
        for key, value in candidates:
            if any(fragment in key.lower() for fragment in fragments):
                return value

    for _, value in candidates:
        if detect_entity_type(value) is not EntityType.UNKNOWN:
            return value
    return candidates[0][1]
