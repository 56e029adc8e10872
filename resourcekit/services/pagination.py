from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Protocol

from resourcekit.core.config import settings
from resourcekit.schemas.resource import Aggregation, ModelQuery, PageWindow
from resourcekit.services.value_coercion import parse_int

_LOG = logging.getLogger("resourcekit.index")

COUNT_STAGE = {"$group": {"_id": None, "count": {"$sum": 1}}}
EXPOSED_RANGE_HEADERS = "Content-Range, Accept-Ranges, Range-Unit, Link"
_RANGE_RE = re.compile(r"^(\d+)-(\d*)$")


class CountingStore(Protocol):
    def count(self, db: Any, filter: dict[str, Any]) -> int:
        ...

    def aggregate(self, db: Any, stages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        ...

    def find(self, db: Any, query: ModelQuery) -> list[dict[str, Any]]:
        ...


def _aggregate_count(db: Any, store: CountingStore, stages: list[dict[str, Any]]) -> int:
    rows = store.aggregate(db, [*stages, COUNT_STAGE])
    return int(rows[0]["count"]) if rows else 0


def count_documents(
    db: Any,
    store: CountingStore,
    query: ModelQuery,
    pipeline: list[dict[str, Any]] | None,
    *,
    ceiling: int | None = None,
) -> int:
    """Total for an index request.

    With a pipeline the count is bounded: a cheap count over the base match
    runs first and, when it already exceeds ``ceiling``, the ceiling itself is
    reported instead of running the whole pipeline. Totals past the ceiling
    are therefore capped on purpose.
    """
    if query.has_special_options or not pipeline:
        return store.count(db, query.filter)

    ceiling = settings.RESOURCE_COUNT_CEILING if ceiling is None else ceiling
    match = [{"$match": query.filter}]
    cheap = _aggregate_count(db, store, match)
    if cheap > ceiling:
        _LOG.debug("Count %s exceeds ceiling %s; skipping pipeline count", cheap, ceiling)
        return ceiling
    return _aggregate_count(db, store, [*match, *pipeline])


def _is_multi_match(stage: Mapping[str, Any]) -> bool:
    condition = stage.get("$match")
    if not isinstance(condition, Mapping):
        return False
    return len(condition) > 1 or "$and" in condition or "$or" in condition


def window_pipeline(
    pipeline: list[dict[str, Any]],
    query: ModelQuery,
    *,
    floor: int | None = None,
) -> tuple[list[dict[str, Any]], ModelQuery]:
    """Push the page window ahead of the model pipeline.

    Pipelines that sort or filter on their own only get a generous candidate
    limit up front; the exact page is cut after them. Otherwise skip and limit
    move in front and the trailing skip is consumed.
    """
    floor = settings.RESOURCE_PIPELINE_MIN_LIMIT if floor is None else floor
    has_sort = any("$sort" in stage for stage in pipeline)
    nested = has_sort or any(_is_multi_match(stage) for stage in pipeline)

    head: list[dict[str, Any]] = []
    if query.sort and not has_sort:
        head.append({"$sort": dict(query.sort)})
        query = replace(query, sort={})

    limit = query.limit or 0
    skip = query.skip or 0
    if nested:
        head.append({"$limit": max(floor, skip + limit)})
    else:
        head.append({"$skip": skip})
        head.append({"$limit": limit})
        query = replace(query, skip=0)
    return [*head, *pipeline], query


def build_index_query(query: ModelQuery, pipeline: list[dict[str, Any]] | None) -> ModelQuery | Aggregation:
    if not pipeline or query.has_special_options:
        return query
    stages: list[dict[str, Any]] = [{"$match": query.filter}, *pipeline]
    if query.sort:
        stages.append({"$sort": dict(query.sort)})
    if query.skip is not None:
        stages.append({"$skip": query.skip})
    if query.limit is not None:
        stages.append({"$limit": query.limit})
    projection = _projection(query.select)
    if projection:
        stages.append({"$project": projection})
    return Aggregation(stages=stages)


def _projection(select: list[str]) -> dict[str, int]:
    projection: dict[str, int] = {}
    for name in select:
        if name.startswith("-"):
            projection[name[1:]] = 0
        else:
            projection[name] = 1
    return projection


def fetch_page(db: Any, store: CountingStore, executable: ModelQuery | Aggregation) -> list[dict[str, Any]]:
    if isinstance(executable, Aggregation):
        return store.aggregate(db, executable.stages)
    return store.find(db, executable)


@dataclass
class RangeResult:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    window: PageWindow | None = None


def _parse_range(header: str | None) -> tuple[int, float] | None:
    match = _RANGE_RE.match(str(header or "").strip())
    if not match:
        return None
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else math.inf
    return start, end


def _link(url: str, rel: str, start: int, end: float) -> str:
    end_text = "" if end == math.inf else str(int(end))
    return f'<{url}>; rel="{rel}"; items="{start}-{end_text}"'


def paginate_range(
    headers: Mapping[str, str],
    total: int,
    max_range_size: int,
    *,
    url: str = "",
) -> RangeResult:
    """Range-header pagination over a collection of ``total`` items.

    Reads ``Range-Unit: items`` and ``Range: <from>-<to>`` and answers with
    the status, the ``Content-Range``/``Link`` headers and, for a usable
    range, the window to fetch.
    """
    out = {
        "Accept-Ranges": "items",
        "Range-Unit": "items",
        "Access-Control-Expose-Headers": EXPOSED_RANGE_HEADERS,
    }
    start, end = 0, total - 1
    if str(headers.get("range-unit", "")).lower() == "items":
        parsed = _parse_range(headers.get("range"))
        if parsed is not None:
            start, end = parsed

    if start > end or (start > 0 and start >= total):
        status = 416 if total > 0 or start != 0 else 204
        out["Content-Range"] = f"*/{total}"
        return RangeResult(status=status, headers=out)

    available_to = int(min(end, total - 1, start + max_range_size - 1))
    available_limit = available_to - start + 1
    if available_limit <= 0:
        out["Content-Range"] = "*/0"
        return RangeResult(status=204, headers=out)

    out["Content-Range"] = f"{start}-{available_to}/{total}"
    status = 206 if available_to < total - 1 else 200

    requested_limit = end - start + 1
    links: list[str] = []
    if available_to < total - 1:
        links.append(_link(url, "next", available_to + 1, available_to + requested_limit))
        last_start = ((total - 1) // available_limit) * available_limit
        links.append(_link(url, "last", last_start, last_start + requested_limit - 1))
    if start > 0:
        previous_from = max(0, start - min(requested_limit, max_range_size))
        links.append(_link(url, "prev", previous_from, previous_from + requested_limit - 1))
        links.append(_link(url, "first", 0, requested_limit - 1))
    if links:
        out["Link"] = ", ".join(links)
    return RangeResult(status=status, headers=out, window=PageWindow(limit=available_limit, skip=start))


def _window_value(raw: Any, default: int) -> int:
    if raw is None:
        return default
    value = parse_int(raw)
    if isinstance(value, float) or value < 0:
        return default
    return value


def resolve_page_window(
    params: Mapping[str, Any],
    headers: dict[str, str],
    total: int,
    *,
    url: str = "",
    default_limit: int | None = None,
) -> tuple[PageWindow, RangeResult]:
    """Window for an index request from ``limit``/``skip`` and range headers.

    A ``skip`` without a ``Range`` header is turned into one so the range
    responder computes headers the same way for both styles. ``headers`` is
    the request's lower-cased header map and is updated in place.
    """
    default_limit = settings.RESOURCE_DEFAULT_LIMIT if default_limit is None else default_limit
    limit = _window_value(params.get("limit"), default_limit)
    skip = _window_value(params.get("skip"), 0)

    if skip and not headers.get("range"):
        headers["range-unit"] = "items"
        headers["range"] = f"{skip}-{skip + limit - 1}"

    result = paginate_range(headers, total, limit, url=url)
    window = PageWindow(limit=limit, skip=skip)
    if headers.get("range") and result.window is not None:
        window = result.window
    return window, result
