from __future__ import annotations

import math
import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, Integer, Numeric, String, and_, cast, false, func, not_, null, or_, select, true
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.sql.expression import Select

from resourcekit.services.errors import QueryError
from resourcekit.services.value_coercion import parse_date

LOGICAL_OPERATORS = {"$and", "$or", "$nor"}
COMPARISON_OPERATORS = {"$eq", "$ne", "$gt", "$gte", "$lt", "$lte"}
NEGATED_OPERATORS = {"$ne", "$nin"}
_INLINE_FLAGS = ((re.IGNORECASE, "i"), (re.MULTILINE, "m"), (re.DOTALL, "s"))


class UncastableValue(ValueError):
    pass


def column_kind(column: Any) -> str:
    col_type = column.type
    if isinstance(col_type, Boolean):
        return "boolean"
    if isinstance(col_type, (Integer, Numeric, Float)):
        return "number"
    if isinstance(col_type, DateTime):
        return "datetime"
    if isinstance(col_type, Date):
        return "date"
    if isinstance(col_type, JSON):
        return "json"
    try:
        python_type = col_type.python_type
    except NotImplementedError:
        python_type = None
    if python_type is uuid.UUID:
        return "uuid"
    return "text"


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    text = str(value).strip().lower()
    if text in {"true", "1"}:
        return True
    if text in {"false", "0"}:
        return False
    raise UncastableValue()


def _to_number(name: str, value: Any) -> Any:
    if isinstance(value, bool):
        raise UncastableValue()
    if isinstance(value, float) and math.isnan(value):
        raise QueryError(f'Cast to Number failed for value "NaN" at path "{name}"')
    if isinstance(value, (int, float, Decimal)):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = Decimal(text)
    except InvalidOperation:
        raise QueryError(f'Cast to Number failed for value "{value}" at path "{name}"')
    if not number.is_finite():
        raise QueryError(f'Cast to Number failed for value "{value}" at path "{name}"')
    return number


def _to_datetime(value: Any) -> datetime:
    parsed = parse_date(value)
    if parsed is None:
        raise UncastableValue()
    return parsed.astimezone(timezone.utc)


def cast_value(name: str, kind: str, value: Any) -> Any:
    """Cast a filter operand to the Python type of the column it is compared with."""
    if value is None:
        return None
    if kind == "uuid":
        if isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(str(value).strip())
        except ValueError:
            raise UncastableValue()
    if kind == "boolean":
        return _to_bool(value)
    if kind == "number":
        return _to_number(name, value)
    if kind == "datetime":
        return _to_datetime(value)
    if kind == "date":
        if isinstance(value, date) and not isinstance(value, datetime):
            return value
        return _to_datetime(value).date()
    if kind == "text":
        if isinstance(value, (bool, dict, list)):
            raise UncastableValue()
        return str(value)
    return value


@dataclass(frozen=True)
class _Target:
    name: str
    column: Any
    kind: str
    path: tuple = ()

    def expression(self, operand: Any = None) -> Any:
        if not self.path:
            return self.column
        element = self.column[self.path]
        if isinstance(operand, bool):
            return element.as_boolean()
        if isinstance(operand, int):
            return element.as_integer()
        if isinstance(operand, float):
            return element.as_float()
        return element.as_string()

    def cast(self, value: Any) -> Any:
        if not self.path:
            return cast_value(self.name, self.kind, value)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, uuid.UUID):
            return str(value)
        return value


def _json_token(token: str) -> Any:
    return int(token) if token.isdigit() else token


def _resolve(name: str, columns: Mapping[str, Any]) -> _Target | None:
    if name in columns:
        column = columns[name]
        return _Target(name=name, column=column, kind=column_kind(column))
    root, _, rest = name.partition(".")
    column = columns.get(root)
    if column is None or not rest or column_kind(column) != "json":
        return None
    return _Target(name=name, column=column, kind="json", path=tuple(_json_token(token) for token in rest.split(".")))


def _regex_clause(target: _Target, pattern: Any, options: str = "") -> ColumnElement:
    if isinstance(pattern, re.Pattern):
        flags = "".join(letter for flag, letter in _INLINE_FLAGS if pattern.flags & flag)
        pattern = pattern.pattern
    else:
        flags = "".join(letter for letter in str(options or "") if letter in "ims")
    if flags:
        pattern = f"(?{flags}){pattern}"
    expression = target.expression("")
    if target.kind not in {"text", "json"}:
        expression = cast(expression, String)
    return expression.regexp_match(str(pattern))


def _comparison(target: _Target, operator: str, operand: Any) -> ColumnElement:
    try:
        value = target.cast(operand)
    except UncastableValue:
        return true() if operator == "$ne" else false()
    expression = target.expression(value)
    if value is None:
        if operator == "$eq":
            return expression.is_(None)
        if operator == "$ne":
            return expression.is_not(None)
        return false()
    if operator == "$eq":
        return expression == value
    if operator == "$ne":
        return or_(expression != value, expression.is_(None))
    if operator == "$gt":
        return expression > value
    if operator == "$gte":
        return expression >= value
    if operator == "$lt":
        return expression < value
    return expression <= value


def _membership(target: _Target, operator: str, operands: Any) -> ColumnElement:
    if not isinstance(operands, (list, tuple, set)):
        raise QueryError(f'"{operator}" needs an array at path "{target.name}"')
    values: list[Any] = []
    wants_null = False
    for operand in operands:
        try:
            value = target.cast(operand)
        except UncastableValue:
            continue
        if value is None:
            wants_null = True
        else:
            values.append(value)
    expression = target.expression(values[0] if values else None)
    matched = or_(expression.in_(values) if values else false(), expression.is_(None) if wants_null else false())
    if operator == "$in":
        return matched
    if wants_null:
        return and_(expression.not_in(values), expression.is_not(None)) if values else expression.is_not(None)
    return or_(expression.not_in(values), expression.is_(None)) if values else true()


def _unknown_field(name: str, predicate: Any) -> ColumnElement:
    # A document without the field only satisfies negative predicates.
    if isinstance(predicate, Mapping) and predicate and all(key.startswith("$") for key in predicate):
        for operator, operand in predicate.items():
            if operator == "$exists" and not operand:
                continue
            if operator in NEGATED_OPERATORS:
                continue
            if operator == "$options":
                continue
            return false()
        return true()
    return false()


def _field_clause(name: str, predicate: Any, columns: Mapping[str, Any]) -> ColumnElement:
    target = _resolve(name, columns)
    if target is None:
        return _unknown_field(name, predicate)
    if isinstance(predicate, re.Pattern):
        return _regex_clause(target, predicate)
    if not (isinstance(predicate, Mapping) and predicate and all(str(key).startswith("$") for key in predicate)):
        if target.kind == "json" and not target.path:
            raise QueryError(f'Cannot compare the structured field "{name}" directly')
        return _comparison(target, "$eq", predicate)

    if target.kind == "json" and not target.path and set(predicate) - {"$exists"}:
        raise QueryError(f'Cannot compare the structured field "{name}" directly')

    clauses = []
    for operator, operand in predicate.items():
        if operator in COMPARISON_OPERATORS:
            clauses.append(_comparison(target, operator, operand))
        elif operator in {"$in", "$nin"}:
            clauses.append(_membership(target, operator, operand))
        elif operator == "$exists":
            expression = target.expression()
            clauses.append(expression.is_not(None) if operand else expression.is_(None))
        elif operator == "$regex":
            clauses.append(_regex_clause(target, operand, predicate.get("$options", "")))
        elif operator == "$options":
            continue
        else:
            raise QueryError(f'Unsupported filter operator "{operator}" at path "{name}"')
    return and_(*clauses) if clauses else true()


def compile_filter(spec: Mapping[str, Any] | None, columns: Mapping[str, Any]) -> ColumnElement:
    """Compile a document-store style filter into a SQLAlchemy boolean expression.

    ``columns`` maps field names to the column expressions they resolve to,
    so the same filter can target a mapped table or a sub-select.
    """
    clauses = []
    for key, value in (spec or {}).items():
        if key in LOGICAL_OPERATORS:
            if not isinstance(value, (list, tuple)):
                raise QueryError(f'"{key}" needs an array')
            parts = [compile_filter(item, columns) for item in value]
            if key == "$and":
                clauses.append(and_(*parts) if parts else true())
            elif key == "$or":
                clauses.append(or_(*parts) if parts else false())
            else:
                clauses.append(not_(or_(*parts)) if parts else true())
        elif str(key).startswith("$"):
            raise QueryError(f'Unsupported filter operator "{key}"')
        else:
            clauses.append(_field_clause(key, value, columns))
    if not clauses:
        return true()
    return and_(*clauses) if len(clauses) > 1 else clauses[0]


def order_by_clauses(sort: Mapping[str, Any], columns: Mapping[str, Any]) -> list:
    clauses = []
    for name, direction in sort.items():
        column = columns.get(name)
        if column is None:
            continue
        descending = direction in (-1, "-1", "desc", "descending")
        clauses.append(column.desc() if descending else column.asc())
    return clauses


class _PipelineBuilder:
    """Folds aggregation stages into one statement, nesting a sub-select when a
    stage has to see the result of the ones before it."""

    def __init__(self, columns: Mapping[str, Any], source: Any):
        self.columns = dict(columns)
        self.stmt = select(*[column.label(name) for name, column in self.columns.items()]).select_from(source)
        self.sort: dict[str, Any] = {}
        self.limit: int | None = None
        self.offset = 0
        self.grouped = False

    def wrap(self) -> None:
        sub = self.stmt.subquery()
        self.columns = {name: sub.c[name] for name in self.columns}
        self.stmt = select(*[sub.c[name] for name in self.columns])
        sort = {name: direction for name, direction in self.sort.items() if name in self.columns}
        if sort:
            self.stmt = self.stmt.order_by(*order_by_clauses(sort, self.columns))
        self.sort = sort
        self.limit = None
        self.offset = 0
        self.grouped = False

    def _select_columns(self) -> None:
        self.stmt = self.stmt.with_only_columns(*[column.label(name) for name, column in self.columns.items()])

    def match(self, condition: Any) -> None:
        if self.limit is not None or self.offset or self.grouped:
            self.wrap()
        self.stmt = self.stmt.where(compile_filter(condition, self.columns))

    def order(self, sort: Any) -> None:
        if not isinstance(sort, Mapping):
            raise QueryError('"$sort" needs an object')
        if self.limit is not None or self.offset:
            self.wrap()
        self.sort = dict(sort)
        self.stmt = self.stmt.order_by(None).order_by(*order_by_clauses(self.sort, self.columns))

    def skip(self, count: Any) -> None:
        count = _stage_int("$skip", count)
        if self.limit is not None:
            self.wrap()
        self.offset += count
        self.stmt = self.stmt.offset(self.offset)

    def take(self, count: Any) -> None:
        count = _stage_int("$limit", count)
        self.limit = count if self.limit is None else min(self.limit, count)
        self.stmt = self.stmt.limit(self.limit)

    def project(self, projection: Any) -> None:
        if not isinstance(projection, Mapping) or not projection:
            raise QueryError('"$project" needs a non-empty object')
        excluded = {name for name, flag in projection.items() if flag in (0, False)}
        included = [name for name, flag in projection.items() if flag not in (0, False)]
        if included:
            keep = [name for name in self.columns if name in included or (name in ("id", "_id") and name not in excluded)]
        else:
            keep = [name for name in self.columns if name not in excluded]
        self.columns = {name: self.columns[name] for name in keep}
        self._select_columns()

    def group(self, spec: Any) -> None:
        if not isinstance(spec, Mapping) or "_id" not in spec:
            raise QueryError('"$group" needs an "_id"')
        if self.limit is not None or self.offset or self.grouped:
            self.wrap()
        key = spec["_id"]
        grouped: dict[str, Any] = {}
        if key is None:
            grouped["_id"] = null()
        elif isinstance(key, str) and key.startswith("$") and key[1:] in self.columns:
            grouped["_id"] = self.columns[key[1:]]
        else:
            raise QueryError('"$group" supports an "_id" of null or "$<field>" only')
        for name, accumulator in spec.items():
            if name == "_id":
                continue
            grouped[name] = self._accumulator(name, accumulator)

        self.stmt = self.stmt.order_by(None).with_only_columns(*[column.label(name) for name, column in grouped.items()])
        if key is not None:
            self.stmt = self.stmt.group_by(grouped["_id"])
        self.columns = grouped
        self.sort = {}
        self.grouped = True

    def _accumulator(self, name: str, accumulator: Any) -> Any:
        if not isinstance(accumulator, Mapping) or len(accumulator) != 1:
            raise QueryError(f'Accumulator "{name}" must be an object with one operator')
        operator, operand = next(iter(accumulator.items()))
        if operator == "$sum" and isinstance(operand, (int, float)) and not isinstance(operand, bool):
            return func.count() if operand == 1 else func.count() * operand
        if not (isinstance(operand, str) and operand.startswith("$") and operand[1:] in self.columns):
            raise QueryError(f'Accumulator "{name}" references an unknown field')
        column = self.columns[operand[1:]]
        if operator == "$sum":
            return func.coalesce(func.sum(column), 0)
        if operator == "$avg":
            return func.avg(column)
        if operator == "$min":
            return func.min(column)
        if operator == "$max":
            return func.max(column)
        raise QueryError(f'Unsupported accumulator "{operator}"')

    def count(self, name: Any) -> None:
        if not isinstance(name, str) or not name or name.startswith("$"):
            raise QueryError('"$count" needs a field name')
        sub = self.stmt.subquery()
        counted = func.count()
        self.stmt = select(counted.label(name)).select_from(sub)
        self.columns = {name: counted}
        self.sort = {}
        self.limit = None
        self.offset = 0
        self.grouped = True


def _stage_int(stage: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0 or int(value) != value:
        raise QueryError(f'"{stage}" needs a non-negative integer')
    return int(value)


def compile_pipeline(columns: Mapping[str, Any], source: Any, stages: list[dict[str, Any]]) -> Select:
    """Compile aggregation stages over ``source`` into one ``SELECT``."""
    builder = _PipelineBuilder(columns, source)
    for stage in stages:
        if not isinstance(stage, Mapping) or len(stage) != 1:
            raise QueryError("Each pipeline stage must be an object with exactly one key")
        name, argument = next(iter(stage.items()))
        if name == "$match":
            builder.match(argument)
        elif name == "$sort":
            builder.order(argument)
        elif name == "$skip":
            builder.skip(argument)
        elif name == "$limit":
            builder.take(argument)
        elif name == "$project":
            builder.project(argument)
        elif name == "$group":
            builder.group(argument)
        elif name == "$count":
            builder.count(argument)
        else:
            raise QueryError(f'Unsupported pipeline stage "{name}"')
    return builder.stmt
