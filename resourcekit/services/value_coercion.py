from __future__ import annotations

import logging
import math
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Pattern, Union

from resourcekit.schemas.resource import FieldType

_LOG = logging.getLogger("resourcekit.query")

DEFAULT_ID_PATTERN = re.compile(r"(^|\.|_)id$")
SENTINEL_SELECTORS = {"eq", "ne"}
_SENTINELS = {"null": None, "true": True, "false": False}
_QUOTED_SENTINELS = {'"null"', '"true"', '"false"'}

_INT_PREFIX_RE = re.compile(r"^\s*([+-]?\d+)")
_DAY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")
_YEAR_RE = re.compile(r"^(\d{4})$")
_EPOCH_MS_RE = re.compile(r"^-?\d+$")
_ISO_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[T ](\d{2}:\d{2})(:\d{2})?(?:\.(\d+))?(Z|[+-]\d{2}:?\d{2})?$",
    re.IGNORECASE,
)

IdMatcher = Union[Pattern[str], Callable[[str], bool]]


@dataclass(frozen=True)
class FilterOptions:
    """Per-resource switches of the filter translator.

    ``query_filter`` drops query keys that do not name a model field instead of
    passing them through as raw equality predicates. ``convert_ids`` selects the
    field names whose values are converted to identifiers.
    """

    query_filter: bool = False
    convert_ids: IdMatcher | None = None

    @classmethod
    def from_options(cls, options: dict[str, Any] | None) -> "FilterOptions":
        options = options or {}
        convert_ids = options.get("convert_ids")
        if convert_ids is True:
            convert_ids = DEFAULT_ID_PATTERN
        elif isinstance(convert_ids, str):
            convert_ids = re.compile(convert_ids)
        elif not convert_ids:
            convert_ids = None
        return cls(query_filter=bool(options.get("query_filter")), convert_ids=convert_ids)


def parse_int(value: Any) -> int | float:
    """Base-10 integer prefix of ``value``; ``nan`` when there is none."""
    if isinstance(value, bool):
        return math.nan
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else math.nan
    match = _INT_PREFIX_RE.match(str(value))
    if not match:
        return math.nan
    return int(match.group(1))


def _utc(year: int, month: int = 1, day: int = 1) -> datetime | None:
    try:
        return datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_day(text: str) -> datetime | None:
    match = _DAY_RE.match(text)
    return _utc(int(match.group(1)), int(match.group(2)), int(match.group(3))) if match else None


def _parse_month(text: str) -> datetime | None:
    match = _MONTH_RE.match(text)
    return _utc(int(match.group(1)), int(match.group(2))) if match else None


def _parse_year(text: str) -> datetime | None:
    match = _YEAR_RE.match(text)
    return _utc(int(match.group(1))) if match else None


def _parse_epoch_ms(text: str) -> datetime | None:
    if not _EPOCH_MS_RE.match(text):
        return None
    try:
        return datetime.fromtimestamp(int(text) / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_iso(text: str) -> datetime | None:
    match = _ISO_RE.match(text)
    if not match:
        return None
    day, hm, seconds, fraction, offset = match.groups()
    normalized = f"{day}T{hm}{seconds or ':00'}"
    if fraction:
        normalized += "." + fraction[:6].ljust(6, "0")
    if offset:
        offset = "+00:00" if offset.upper() == "Z" else offset
        if ":" not in offset:
            offset = offset[:3] + ":" + offset[3:]
        normalized += offset
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# Strict formats, tried in order; the first one that parses wins.
DATE_PARSERS = (
    ("YYYY-MM-DD", _parse_day),
    ("YYYY-MM", _parse_month),
    ("YYYY", _parse_year),
    ("x", _parse_epoch_ms),
    ("ISO-8601", _parse_iso),
)


def parse_date(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _parse_epoch_ms(str(int(value)))
    text = str(value or "").strip()
    if not text:
        return None
    for _, parser in DATE_PARSERS:
        parsed = parser(text)
        if parsed is not None:
            return parsed
    return None


def is_identifier(value: Any) -> bool:
    if isinstance(value, uuid.UUID):
        return True
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value.strip())
    except ValueError:
        return False
    return True


def _matches(matcher: IdMatcher, name: str) -> bool:
    if callable(matcher):
        return bool(matcher(name))
    return bool(matcher.search(name))


def coerce_value(
    name: str,
    raw: Any,
    field_type: FieldType,
    options: FilterOptions | None = None,
    selector: str | None = None,
) -> Any:
    """Turn one raw query-string value into the value a filter compares against.

    Literal sentinels (``null``/``true``/``false``) apply to ``eq``/``ne`` only;
    their double-quoted spelling asks for the plain string instead. Numbers are
    parsed like ``parseInt`` and may come back as ``nan``; dates that match none
    of the strict formats and identifiers that do not parse stay as given.
    """
    options = options or FilterOptions()
    if selector in SENTINEL_SELECTORS and isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in _SENTINELS:
            return _SENTINELS[lowered]
        if lowered in _QUOTED_SENTINELS:
            return raw.strip()[1:-1]

    if field_type is FieldType.NUMBER:
        return parse_int(raw)

    if field_type is FieldType.DATE:
        parsed = parse_date(raw)
        return raw if parsed is None else parsed

    if options.convert_ids is not None and isinstance(raw, str) and _matches(options.convert_ids, name):
        if is_identifier(raw):
            return uuid.UUID(raw.strip())
        _LOG.warning("Invalid identifier for %s: %r", name, raw)

    return raw
