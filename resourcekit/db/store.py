from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import func, inspect as sa_inspect, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from resourcekit.db.filters import UncastableValue, cast_value, column_kind, compile_filter, compile_pipeline, order_by_clauses
from resourcekit.schemas.resource import FieldDescriptor, FieldError, FieldType, ModelQuery
from resourcekit.services.errors import PopulateError, QueryError, SaveFailed, ValidationFailed

_LOG = logging.getLogger("resourcekit.store")

DEFAULT_VERSION_KEY = "__v"
_FIELD_TYPES = {
    "number": FieldType.NUMBER,
    "datetime": FieldType.DATE,
    "date": FieldType.DATE,
    "uuid": FieldType.IDENTIFIER,
}
_CAST_NAMES = {
    "number": "Number",
    "datetime": "Date",
    "date": "Date",
    "uuid": "ObjectId",
    "boolean": "Boolean",
    "text": "String",
}


def serialize_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: serialize_value(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    return value


def _split_select(select_fields: Iterable[str]) -> tuple[set[str], set[str]]:
    included: set[str] = set()
    excluded: set[str] = set()
    for name in select_fields:
        if name.startswith("-"):
            excluded.add(name[1:].split(".")[0])
        elif name.startswith("+"):
            included.add(name[1:].split(".")[0])
        else:
            included.add(name.split(".")[0])
    return included, excluded


class ModelStore:
    """Everything the resource engines need from one mapped model."""

    def __init__(self, model: type):
        self.model = model
        self.mapper = sa_inspect(model)
        self.columns = {key: column for key, column in self.mapper.columns.items()}
        self.relationships = {rel.key: rel for rel in self.mapper.relationships}
        self.primary_key = self.mapper.get_property_by_column(self.mapper.primary_key[0]).key
        version_col = self.mapper.version_id_col
        self.version_key = (
            self.mapper.get_property_by_column(version_col).key if version_col is not None else DEFAULT_VERSION_KEY
        )
        self.fields = {
            key: FieldDescriptor(name=key, type=_FIELD_TYPES.get(column_kind(column), FieldType.OTHER))
            for key, column in self.columns.items()
        }

    # Reads

    def _where(self, filter: dict[str, Any] | None):
        return compile_filter(filter, self.columns)

    def count(self, db: Session, filter: dict[str, Any]) -> int:
        stmt = select(func.count()).select_from(self.model).where(self._where(filter))
        return int(db.scalar(stmt) or 0)

    def _populate_options(self, populate: Iterable[str]) -> list:
        options = []
        for name in populate:
            relationship = self.relationships.get(name)
            if relationship is None:
                raise PopulateError(
                    f"Cannot populate path `{name}` because it is not in your schema.",
                    errors={name: FieldError(path=name, name="CastError", message=f"`{name}` is not a relationship")},
                )
            options.append(selectinload(getattr(self.model, name)))
        return options

    def find(self, db: Session, query: ModelQuery) -> list[dict[str, Any]]:
        stmt = select(self.model).where(self._where(query.filter))
        stmt = stmt.options(*self._populate_options(query.populate))
        order = order_by_clauses(query.sort, self.columns)
        if order:
            stmt = stmt.order_by(*order)
        if query.skip:
            stmt = stmt.offset(query.skip)
        if query.limit is not None:
            stmt = stmt.limit(query.limit)
        rows = db.scalars(stmt).all()
        return [self.to_document(row, select=query.select, populate=query.populate) for row in rows]

    def aggregate(self, db: Session, stages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        stmt = compile_pipeline(self.columns, self.model.__table__, stages)
        return [serialize_value(dict(row._mapping)) for row in db.execute(stmt)]

    def documents(self, db: Session, stmt: Any) -> list[dict[str, Any]]:
        """Run an arbitrary ``SELECT``; mapped entities become documents, other rows plain dicts."""
        documents = []
        for row in db.execute(stmt):
            if len(row) == 1 and hasattr(row[0], "__mapper__"):
                entity = row[0]
                store = self if isinstance(entity, self.model) else ModelStore(type(entity))
                documents.append(store.to_document(entity))
            else:
                documents.append(serialize_value(dict(row._mapping)))
        return documents

    def get(self, db: Session, identifier: Any, filter: dict[str, Any] | None = None, *, populate: Iterable[str] = ()) -> Any:
        try:
            key = cast_value(self.primary_key, column_kind(self.columns[self.primary_key]), identifier)
        except (UncastableValue, QueryError):
            _LOG.debug("Identifier %r does not fit %s.%s", identifier, self.model.__name__, self.primary_key)
            return None
        search: dict[str, Any] = {self.primary_key: key}
        if filter:
            search = {"$and": [search, filter]}
        stmt = select(self.model).where(self._where(search)).options(*self._populate_options(populate)).limit(1)
        return db.scalars(stmt).first()

    # Writes

    def _cast(self, key: str, value: Any) -> Any:
        kind = column_kind(self.columns[key])
        if value is None or kind == "json":
            return value
        try:
            casted = cast_value(key, kind, value)
        except (UncastableValue, QueryError):
            raise ValidationFailed(
                f"{self.model.__name__} validation failed",
                errors={
                    key: FieldError(
                        path=key,
                        name="CastError",
                        message=f'Cast to {_CAST_NAMES.get(kind, kind)} failed for value "{value}" at path "{key}"',
                    )
                },
            )
        if isinstance(casted, Decimal) and self.columns[key].type.python_type in (int, float):
            casted = self.columns[key].type.python_type(casted)
        return casted

    def assign(self, entity: Any, payload: dict[str, Any], *, creating: bool = False) -> Any:
        errors: dict[str, FieldError] = {}
        for key, value in payload.items():
            if key not in self.columns or key == self.version_key:
                continue
            if key == self.primary_key and not creating:
                continue
            try:
                setattr(entity, key, self._cast(key, value))
            except ValidationFailed as exc:
                errors.update(exc.errors)
        if errors:
            raise ValidationFailed(f"{self.model.__name__} validation failed", errors=errors)
        return entity

    def create(self, payload: dict[str, Any]) -> Any:
        return self.assign(self.model(), payload, creating=True)

    def _required(self) -> list[str]:
        required = []
        version_col = self.mapper.version_id_col
        for key, column in self.columns.items():
            if column.nullable or column.primary_key or column is version_col:
                continue
            if column.default is not None or column.server_default is not None:
                continue
            required.append(key)
        return required

    def validate(self, entity: Any) -> None:
        errors = {
            key: FieldError(path=key, name="ValidatorError", message=f"Path `{key}` is required.")
            for key in self._required()
            if getattr(entity, key) is None
        }
        if errors:
            raise ValidationFailed(f"{self.model.__name__} validation failed", errors=errors)

    def save(self, db: Session, entity: Any) -> Any:
        self.validate(entity)
        try:
            db.add(entity)
            db.commit()
        except (IntegrityError, StaleDataError) as exc:
            db.rollback()
            raise SaveFailed(str(getattr(exc, "orig", None) or exc))
        except SQLAlchemyError:
            db.rollback()
            raise
        db.refresh(entity)
        return entity

    def remove(self, db: Session, entity: Any) -> None:
        try:
            db.delete(entity)
            db.commit()
        except (IntegrityError, StaleDataError) as exc:
            db.rollback()
            raise SaveFailed(str(getattr(exc, "orig", None) or exc))

    # Documents

    def to_document(self, entity: Any, *, select: Iterable[str] = (), populate: Iterable[str] = ()) -> dict[str, Any]:
        included, excluded = _split_select(select)
        populate = list(populate)
        document: dict[str, Any] = {}
        for key in self.columns:
            if included and key not in included and key != self.primary_key:
                continue
            if key in excluded:
                continue
            document[key] = serialize_value(getattr(entity, key))
        for name in populate:
            if name not in self.relationships or (included and name not in included) or name in excluded:
                continue
            related = getattr(entity, name)
            store = ModelStore(self.relationships[name].mapper.class_)
            if related is None:
                document[name] = None
            elif isinstance(related, (list, tuple, set)):
                document[name] = [store.to_document(item) for item in related]
            else:
                document[name] = store.to_document(related)
        return document
