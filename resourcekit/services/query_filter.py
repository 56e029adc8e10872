from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, Mapping

from resourcekit.schemas.resource import FieldDescriptor, FieldType
from resourcekit.services.value_coercion import FilterOptions, coerce_value

_LOG = logging.getLogger("resourcekit.query")

RESERVED_PARAMS = {"limit", "skip", "select", "sort", "populate"}
LIST_SELECTORS = {"in", "nin"}
_WORD_RE = re.compile(r"[^, ]+")
_REGEX_VALUE_RE = re.compile(r"/?([^/]+)/?([^/]+)?")
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "u": 0, "g": 0, "y": 0}
_NESTED_SELECT_RE = re.compile(r"^(.+?)\.data\..+$")

QueryParams = Mapping[str, Any] | Iterable[tuple[str, Any]]


def query_pairs(params: QueryParams) -> list[tuple[str, Any]]:
    """Flatten query parameters into ordered ``(key, value)`` pairs, one per repetition."""
    if hasattr(params, "multi_items"):
        return list(params.multi_items())
    items = params.items() if isinstance(params, Mapping) else params
    pairs: list[tuple[str, Any]] = []
    for key, value in items:
        if isinstance(value, list) and key.split("__", 1)[-1] not in LIST_SELECTORS and not key.startswith("$"):
            pairs.extend((key, item) for item in value)
        else:
            pairs.append((key, value))
    return pairs


def param_query(params: QueryParams, name: str) -> str | None:
    """Value of ``select``/``sort``/``populate`` as unique space separated words."""
    values = [value for key, value in query_pairs(params) if key == name]
    if not values:
        return "" if name == "populate" else None
    words: list[str] = []
    for value in values:
        for word in _WORD_RE.findall(str(value)):
            if word not in words:
                words.append(word)
    return " ".join(words)


def parse_sort(value: str | None) -> dict[str, int]:
    sort: dict[str, int] = {}
    for word in (value or "").split():
        if word.startswith("-"):
            sort[word[1:]] = -1
        else:
            sort[word.lstrip("+")] = 1
    return sort


def parse_select(value: str | None, *, expand_nested: bool = False) -> list[str]:
    fields = (value or "").split()
    if not expand_nested:
        return fields
    expanded: list[str] = []
    for name in fields:
        expanded.append(name)
        match = _NESTED_SELECT_RE.match(name)
        # Sub-document selections must keep the identifier of their parent.
        if match and f"{match.group(1)}._id" not in fields + expanded:
            expanded.append(f"{match.group(1)}._id")
    return expanded


def parse_populate(value: str | None) -> list[str]:
    return (value or "").split()


def parse_regex(value: Any) -> re.Pattern | None:
    match = _REGEX_VALUE_RE.match(str(value or ""))
    if not match:
        _LOG.debug("Dropping regex filter with empty pattern: %r", value)
        return None
    pattern, flag_text = match.group(1), match.group(2) or "i"
    flags = 0
    for flag in flag_text:
        if flag not in _REGEX_FLAGS:
            _LOG.debug("Dropping regex filter %r: invalid flag %r", value, flag)
            return None
        flags |= _REGEX_FLAGS[flag]
    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        _LOG.debug("Dropping regex filter %r: %s", value, exc)
        return None


def parse_exists(value: Any) -> bool:
    if value in ("true", "1"):
        return True
    if value in ("false", "0"):
        return False
    return bool(value)


def _nested_value(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return value
    try:
        return json.loads(str(value))
    except ValueError:
        _LOG.debug("Dropping nested query that is not JSON: %r", value)
        return None


class _Conjunction:
    """Ordered predicate groups; repeating a field opens a new group instead of overwriting."""

    def __init__(self):
        self.groups: list[dict[str, Any]] = []

    def _current(self) -> dict[str, Any]:
        if not self.groups:
            self.groups.append({})
        return self.groups[-1]

    def set(self, name: str, value: Any) -> None:
        group = self._current()
        if name in group:
            group = {}
            self.groups.append(group)
        group[name] = value

    def set_operator(self, name: str, operator: str, value: Any) -> None:
        group = self._current()
        existing = group.get(name)
        if name in group and not (isinstance(existing, dict) and operator not in existing):
            group = {}
            self.groups.append(group)
        group.setdefault(name, {})[operator] = value

    def append(self, predicate: dict[str, Any]) -> None:
        self.groups.append(predicate)
        self.groups.append({})

    def replace(self, predicates: list[dict[str, Any]]) -> None:
        self.groups = list(predicates)

    def result(self) -> dict[str, Any]:
        groups = [group for group in self.groups if group]
        return {"$and": groups} if groups else {}


def _unwrap(spec: dict[str, Any]) -> dict[str, Any]:
    conjuncts = spec.get("$and") if len(spec) == 1 else None
    if conjuncts is not None and len(conjuncts) == 1:
        return conjuncts[0]
    return spec


def _sub_predicates(value: Any, fields: Mapping[str, FieldDescriptor], options: FilterOptions) -> list[dict[str, Any]] | None:
    nested = _nested_value(value)
    if nested is None:
        return None
    if isinstance(nested, dict):
        nested = [nested]
    if not isinstance(nested, list):
        _LOG.debug("Dropping nested query that is not a list of objects: %r", value)
        return None
    predicates = []
    for item in nested:
        if not isinstance(item, dict):
            continue
        translated = _unwrap(translate(item, fields, options))
        if translated:
            predicates.append(translated)
    return predicates


def translate(
    params: QueryParams,
    fields: Mapping[str, FieldDescriptor],
    options: FilterOptions | None = None,
) -> dict[str, Any]:
    """Build the find filter for an index request from its query parameters.

    Keys are ``<field>`` or ``<field>__<selector>``; the result is
    ``{"$and": [group, ...]}`` or ``{}`` when nothing filters.
    """
    options = options or FilterOptions()
    conjunction = _Conjunction()

    for key, value in query_pairs(params):
        if key in RESERVED_PARAMS:
            continue
        name, _, selector = key.partition("__")
        selector = selector or None

        if name == "$or":
            alternatives = _sub_predicates(value, fields, options)
            if alternatives:
                conjunction.append({"$or": alternatives})
            continue
        if name == "$and":
            predicates = _sub_predicates(value, fields, options)
            if predicates is not None:
                conjunction.replace(predicates)
            continue

        descriptor = fields.get(name.split(".")[0])
        if descriptor is None:
            if options.query_filter:
                _LOG.debug("Ignoring filter on unknown field %s", name)
                continue
            conjunction.set(name, value)
            continue

        field_type = descriptor.type if isinstance(descriptor.type, FieldType) else FieldType.OTHER
        if selector is None:
            conjunction.set(name, coerce_value(name, value, field_type, options))
        elif selector == "regex":
            regex = parse_regex(value)
            if regex is not None:
                conjunction.set(name, regex)
        elif selector == "exists":
            conjunction.set_operator(name, "$exists", parse_exists(value))
        elif selector in LIST_SELECTORS:
            items = value if isinstance(value, list) else str(value).split(",")
            coerced = [coerce_value(name, item, field_type, options, selector) for item in items]
            conjunction.set_operator(name, f"${selector}", coerced)
        else:
            conjunction.set_operator(name, f"${selector}", coerce_value(name, value, field_type, options, selector))

    return conjunction.result()
