"""Response normaliser for the extraction service.

The upload endpoint has answered in several layouts over time: fields at
the top level, under ``extracted_data``, under ``expense`` (optionally
wrapped in ``data``), or only in the echoed ``request_data``. Rather than
probing ad hoc, each canonical field declares an ordered tuple of
accessor functions. An accessor returns the value it found or ``None``,
and ``first_present`` short-circuits on the first hit. Every field can
therefore be tested on its own by calling its accessors directly.

Containers are probed in this order, and within a container the field's
candidate keys are tried in order::

    expense, extracted_data, data.expense, data.extracted_data, data,
    <top level>, request_data

AI enhancement is derived from *triggers*: the server attempted an
enhancement pass if it lists trigger reasons, marks the result
validated, or includes reasoning text. Whether the pass improved
anything is irrelevant to the progress projector.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from snaptrack.models.schemas import DEFAULT_ENTITY, Confidence, NormalizedReceipt, ReceiptFields
from snaptrack.utils.helpers import (
    is_blank,
    normalize_tags,
    parse_amount,
    parse_iso_date,
    tags_to_string,
)

Accessor = Callable[[Mapping[str, Any]], Optional[Any]]

CONTAINER_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("expense",),
    ("extracted_data",),
    ("data", "expense"),
    ("data", "extracted_data"),
    ("data",),
    (),
    ("request_data",),
)

VENDOR_KEYS = ("vendor", "corrected_vendor", "parsed_vendor", "vendor_name", "business_name", "merchant")
AMOUNT_KEYS = ("amount", "corrected_amount", "parsed_amount", "total_amount", "total", "price")
DATE_KEYS = ("expense_date", "date", "corrected_date", "parsed_date", "receipt_date", "transaction_date")
TAG_KEYS = ("tags", "parsed_tags")
NOTES_KEYS = ("notes", "ai_notes", "generated_notes", "description")
ENTITY_KEYS = ("entity",)
CONFIDENCE_KEYS = ("confidence_score", "validation_confidence", "confidence")
REASONING_KEYS = ("ai_reasoning",)
AI_VALIDATED_KEYS = ("ai_validated",)

# Ids the client fabricates locally; they never exist on the server
PLACEHOLDER_ID_PREFIXES = ("mock_", "sim_", "offline_", "local_")
PLACEHOLDER_IDS = {"temp", ""}

_BLANK_ENTITIES = {"null", "undefined", "none"}


# ---------------------------------------------------------------------------
# Accessor building blocks


def _dig(raw: Any, path: Sequence[str]) -> Optional[Mapping[str, Any]]:
    node = raw
    for key in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    return node if isinstance(node, Mapping) else None


def _present(value: Any) -> bool:
    return not is_blank(value)


def _amount_like(value: Any) -> bool:
    try:
        amount = parse_amount(value)
    except ValueError:
        return False
    # A zero total means extraction found nothing; let later keys win
    return amount is not None and amount != 0


def _date_like(value: Any) -> bool:
    return parse_iso_date(value) is not None


def _numeric(value: Any) -> bool:
    if isinstance(value, bool) or value is None:
        return False
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def key_accessor(path: Sequence[str], key: str, accept: Callable[[Any], bool] = _present) -> Accessor:
    """Accessor for ``raw[path...][key]`` that yields None unless ``accept`` passes."""

    def access(raw: Mapping[str, Any]) -> Optional[Any]:
        container = _dig(raw, path)
        if container is None:
            return None
        value = container.get(key)
        return value if accept(value) else None

    access.__name__ = "access_" + "_".join((*path, key))
    return access


def accessors_for(keys: Sequence[str], accept: Callable[[Any], bool] = _present) -> Tuple[Accessor, ...]:
    return tuple(key_accessor(path, key, accept) for path in CONTAINER_PATHS for key in keys)


def nested_accessors(child: str, key: str, accept: Callable[[Any], bool] = _present) -> Tuple[Accessor, ...]:
    """Accessors for ``<container>.child.key`` across every container path."""
    return tuple(key_accessor((*path, child), key, accept) for path in CONTAINER_PATHS)


def first_present(raw: Mapping[str, Any], accessors: Sequence[Accessor]) -> Optional[Any]:
    for accessor in accessors:
        value = accessor(raw)
        if value is not None:
            return value
    return None


FIELD_ACCESSORS: Dict[str, Tuple[Accessor, ...]] = {
    "vendor": accessors_for(VENDOR_KEYS),
    "amount": accessors_for(AMOUNT_KEYS, _amount_like),
    "date": accessors_for(DATE_KEYS, _date_like),
    "tags": accessors_for(TAG_KEYS),
    "notes": accessors_for(NOTES_KEYS),
    "entity": accessors_for(ENTITY_KEYS),
}

CONFIDENCE_ACCESSORS: Tuple[Accessor, ...] = nested_accessors("confidence", "amount", _numeric) + accessors_for(
    CONFIDENCE_KEYS, _numeric
)

REASONING_ACCESSORS: Tuple[Accessor, ...] = nested_accessors("ai_validation", "reasoning") + accessors_for(
    REASONING_KEYS
)

VALIDATED_ACCESSORS: Tuple[Accessor, ...] = nested_accessors("ai_validation", "validated", bool) + accessors_for(
    AI_VALIDATED_KEYS, bool
)

TRIGGER_ACCESSORS: Tuple[Accessor, ...] = nested_accessors("ai_validation", "triggers") + accessors_for(
    ("validation_triggers",)
)

REMOTE_ID_ACCESSORS: Tuple[Accessor, ...] = (
    key_accessor(("expense",), "id", lambda v: v is not None and v != ""),
    key_accessor(("data", "expense"), "id", lambda v: v is not None and v != ""),
    key_accessor((), "id", lambda v: v is not None and v != ""),
    key_accessor(("data",), "id", lambda v: v is not None and v != ""),
)


# ---------------------------------------------------------------------------
# Public helpers


def _round_half_up(value: float) -> int:
    return int(Decimal(repr(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_confidence(value: Any) -> Confidence:
    """Detect the 0-1 vs 0-100 convention and return both representations.

    Values up to 1.0 are fractions; larger values are percentages capped
    at 100. Missing, non-numeric and negative values map to zero.
    """
    if not _numeric(value):
        return Confidence()
    score = float(value)
    if score <= 0:
        return Confidence()
    if score <= 1:
        return Confidence(fraction=score, percent=_round_half_up(score * 100))
    return Confidence(fraction=min(1.0, score / 100.0), percent=min(100, _round_half_up(score)))


def is_placeholder_id(remote_id: Any) -> bool:
    """True for ids fabricated on the client (mock/simulator/offline/local)."""
    if remote_id is None:
        return True
    text = str(remote_id).strip()
    return text in PLACEHOLDER_IDS or text.startswith(PLACEHOLDER_ID_PREFIXES)


def extract_remote_id(raw: Any) -> Optional[str]:
    if not isinstance(raw, Mapping):
        return None
    value = first_present(raw, REMOTE_ID_ACCESSORS)
    return str(value) if value is not None else None


def detect_ai_enhancement(raw: Any) -> Tuple[bool, Tuple[str, ...], str]:
    """Return ``(ai_enhanced, triggers, reasoning)`` for a raw response."""
    if not isinstance(raw, Mapping):
        return False, (), ""
    triggers = normalize_tags(first_present(raw, TRIGGER_ACCESSORS))
    reasoning = first_present(raw, REASONING_ACCESSORS)
    validated = first_present(raw, VALIDATED_ACCESSORS) is not None
    reasoning_text = str(reasoning).strip() if reasoning is not None else ""
    return bool(triggers) or validated or bool(reasoning_text), triggers, reasoning_text


def _normalize_entity(value: Any, default_entity: str) -> str:
    if value is None:
        return default_entity
    text = str(value).strip()
    if not text or text.lower() in _BLANK_ENTITIES:
        return default_entity
    return text


def normalize(raw: Any, default_entity: str = DEFAULT_ENTITY) -> NormalizedReceipt:
    """Map any known response layout onto the canonical field set."""
    if not isinstance(raw, Mapping):
        raw = {}

    vendor = first_present(raw, FIELD_ACCESSORS["vendor"])
    amount = first_present(raw, FIELD_ACCESSORS["amount"])
    date = first_present(raw, FIELD_ACCESSORS["date"])
    tags = first_present(raw, FIELD_ACCESSORS["tags"])
    notes = first_present(raw, FIELD_ACCESSORS["notes"])
    entity = first_present(raw, FIELD_ACCESSORS["entity"])

    fields = ReceiptFields(
        vendor=vendor if vendor is not None else "",
        amount=amount,
        date=date,
        entity=_normalize_entity(entity, default_entity),
        tags=tags,
        notes=notes if notes is not None else "",
    )
    ai_enhanced, triggers, reasoning = detect_ai_enhancement(raw)
    return NormalizedReceipt(
        fields=fields,
        confidence=normalize_confidence(first_present(raw, CONFIDENCE_ACCESSORS)),
        ai_enhanced=ai_enhanced,
        ai_triggers=triggers,
        ai_reasoning=reasoning,
        remote_id=extract_remote_id(raw),
    )


__all__ = [
    "normalize",
    "normalize_confidence",
    "normalize_tags",
    "tags_to_string",
    "detect_ai_enhancement",
    "extract_remote_id",
    "is_placeholder_id",
    "first_present",
    "FIELD_ACCESSORS",
]
