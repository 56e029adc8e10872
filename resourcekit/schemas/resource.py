from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional


class FieldType(str, Enum):
    NUMBER = "Number"
    DATE = "Date"
    IDENTIFIER = "Identifier"
    OTHER = "Other"


@dataclass(frozen=True)
class FieldDescriptor:
    name: str
    type: FieldType = FieldType.OTHER


@dataclass(frozen=True)
class FieldError:
    path: str
    name: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"path": self.path, "name": self.name, "message": self.message}


@dataclass(frozen=True)
class ErrorInfo:
    message: str
    name: str = "Error"
    errors: dict[str, FieldError] = field(default_factory=dict)


@dataclass(frozen=True)
class Outcome:
    """Result of one core operation; mapped to the wire exactly once."""

    status: int
    item: Any = None
    error: Optional[ErrorInfo] = None
    deleted: bool = False
    patch: Any = None


@dataclass(frozen=True)
class PageWindow:
    limit: int
    skip: int


@dataclass(frozen=True)
class ModelQuery:
    """A find request against one model: filter plus the options a cursor would carry."""

    filter: dict[str, Any] = field(default_factory=dict)
    limit: Optional[int] = None
    skip: Optional[int] = None
    sort: dict[str, int] = field(default_factory=dict)
    select: List[str] = field(default_factory=list)
    populate: List[str] = field(default_factory=list)

    @property
    def has_special_options(self) -> bool:
        # Populated reads need hydrated rows, which the aggregation path never produces.
        return bool(self.populate)


@dataclass(frozen=True)
class Aggregation:
    stages: List[dict[str, Any]]

