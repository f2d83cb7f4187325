"""Miscellaneous helper functions."""

from __future__ import annotations

import datetime as dt
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Tuple

_AMOUNT_NOISE = re.compile(r"[\s$€£¥,]")


def parse_iso_date(value: Any) -> Optional[dt.date]:
    """Parse an ISO8601 date or datetime string into a :class:`date`.

    The standard ``datetime.fromisoformat`` helper does not accept a lowercase
    ``z`` as the UTC designator. Some data sources provide timestamps that end
    with ``z`` instead of the canonical ``Z``. This function normalises that
    case and returns ``None`` if the value cannot be parsed.
    """
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    value = value.strip()
    try:
        if value[-1] in "zZ":
            value = value[:-1] + "+00:00"
        if len(value) == 10:
            return dt.date.fromisoformat(value)
        return dt.datetime.fromisoformat(value).date()
    except ValueError:
        return None


def parse_amount(value: Any) -> Optional[Decimal]:
    """Coerce a user or server supplied amount into a :class:`Decimal`.

    Accepts numbers and strings such as ``"$1,234.50"``. Empty values map to
    ``None``; anything else that is not a number raises ``ValueError``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        # str() keeps the short repr so 7.25 stays 7.25
        return Decimal(str(value))
    text = _AMOUNT_NOISE.sub("", str(value))
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation as exc:
        raise ValueError(f"not a valid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"not a valid amount: {value!r}")
    return amount


def is_blank(value: Any) -> bool:
    """True for ``None``, empty/whitespace strings and empty collections."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        return len(value) == 0
    return False


def normalize_tags(value: Any) -> Tuple[str, ...]:
    """Return tags as an ordered, de-duplicated tuple.

    Accepts a comma separated string or any collection of strings. Each
    entry is split on commas, trimmed and dropped when empty, so the
    function is idempotent: ``normalize_tags(normalize_tags(x)) == normalize_tags(x)``.
    """
    if value is None:
        return ()
    if isinstance(value, str):
        raw: Iterable[Any] = [value]
    elif isinstance(value, (list, tuple, set, frozenset)):
        raw = value
    else:
        raw = [str(value)]
    seen: set[str] = set()
    tags: list[str] = []
    for entry in raw:
        if entry is None:
            continue
        for piece in str(entry).split(","):
            tag = piece.strip()
            if not tag or tag in seen:
                continue
            seen.add(tag)
            tags.append(tag)
    return tuple(tags)


def tags_to_string(value: Any) -> str:
    """Return tags as the ``"a, b"`` string the upload form expects."""
    return ", ".join(normalize_tags(value))
