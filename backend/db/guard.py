"""Immutability guard.

A record is immutable when it was seeded as founding knowledge, when it is a
hard constraint, when it is a core value, or when its metadata pins it. The
``immutable`` column is derived from these rules at write time, so readers can
filter on it without inspecting the metadata bag.
"""

from typing import Any, Dict, List, Mapping, Optional

FOUNDING_SOURCE = "founding"
HARD_CONSTRAINT_CATEGORY = "hard_constraint"
VALUE_CATEGORY = "value"
CORE_SUBCATEGORY = "core"


def _truthy_flag(value: Any) -> bool:
    # JSON round-trips keep booleans, but older rows may carry strings.
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return False


def immutability_reasons(
    *,
    source: Optional[str] = None,
    category: Optional[str] = None,
    subcategory: Optional[str] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> List[str]:
    reasons: List[str] = []
    if source == FOUNDING_SOURCE:
        reasons.append("founding_source")
    if category == HARD_CONSTRAINT_CATEGORY:
        reasons.append("hard_constraint")
    if category == VALUE_CATEGORY and subcategory == CORE_SUBCATEGORY:
        reasons.append("core_value")
    if metadata and _truthy_flag(metadata.get("immutable")):
        reasons.append("metadata_immutable")
    return reasons


def is_immutable(record: Mapping[str, Any]) -> bool:
    """Return True when ``record`` may never be mutated by a write operation."""
    return bool(record_immutability_reasons(record))


def record_immutability_reasons(record: Mapping[str, Any]) -> List[str]:
    metadata = record.get("metadata")
    if not isinstance(metadata, dict):
        metadata = None
    return immutability_reasons(
        source=record.get("source"),
        category=record.get("category"),
        subcategory=record.get("subcategory"),
        metadata=metadata,
    )


def derive_immutable_flag(values: Dict[str, Any]) -> bool:
    return bool(
        immutability_reasons(
            source=values.get("source"),
            category=values.get("category"),
            subcategory=values.get("subcategory"),
            metadata=values.get("metadata") or None,
        )
    )
