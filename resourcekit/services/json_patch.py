from __future__ import annotations

import copy
import re
from typing import Any

from resourcekit.services.errors import MalformedPatch, PatchErrorKind, PatchFailed, PreconditionFailed

OPERATIONS = {"add", "remove", "replace", "move", "copy", "test"}
VALUE_OPERATIONS = {"add", "replace", "test"}
FROM_OPERATIONS = {"move", "copy"}
_ARRAY_INDEX_RE = re.compile(r"^(0|[1-9][0-9]*)$")
_MISSING = object()


class _TestMismatch(Exception):
    pass


def parse_pointer(pointer: str) -> list[str]:
    if pointer == "":
        return []
    return [token.replace("~1", "/").replace("~0", "~") for token in pointer.split("/")[1:]]


def _is_json_value(value: Any) -> bool:
    if value is None or isinstance(value, (str, bool, int, float)):
        return True
    if isinstance(value, list):
        return all(_is_json_value(item) for item in value)
    if isinstance(value, dict):
        return all(isinstance(key, str) and _is_json_value(item) for key, item in value.items())
    return False


def json_equal(left: Any, right: Any) -> bool:
    """Structural equality that keeps booleans apart from numbers."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(json_equal(left[key], right[key]) for key in left)
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(json_equal(a, b) for a, b in zip(left, right))
    return type(left) is type(right) and left == right


def validate_operation(operation: Any, index: int) -> None:
    if not isinstance(operation, dict):
        raise MalformedPatch(PatchErrorKind.OPERATION_NOT_AN_OBJECT, index=index, operation=operation)
    op = operation.get("op")
    if op not in OPERATIONS:
        raise MalformedPatch(PatchErrorKind.OPERATION_OP_INVALID, index=index, operation=operation)
    path = operation.get("path")
    if not isinstance(path, str) or (path and not path.startswith("/")):
        raise MalformedPatch(PatchErrorKind.OPERATION_PATH_INVALID, index=index, operation=operation)
    if op in FROM_OPERATIONS and not isinstance(operation.get("from"), str):
        raise MalformedPatch(PatchErrorKind.OPERATION_FROM_REQUIRED, index=index, operation=operation)
    if op in VALUE_OPERATIONS:
        if "value" not in operation:
            raise MalformedPatch(PatchErrorKind.OPERATION_VALUE_REQUIRED, index=index, operation=operation)
        if not _is_json_value(operation["value"]):
            raise MalformedPatch(PatchErrorKind.OPERATION_VALUE_UNDEFINED, index=index, operation=operation)


class _Applier:
    """Applies single operations to one document, raising the taxonomy errors."""

    def __init__(self, document: Any, operation: dict[str, Any], index: int):
        self.document = document
        self.operation = operation
        self.index = index

    def fail(self, kind: PatchErrorKind) -> MalformedPatch:
        return MalformedPatch(kind, index=self.index, operation=self.operation)

    def _array_index(self, container: list, token: str, *, allow_end: bool, missing: PatchErrorKind) -> int:
        if token == "-" and allow_end:
            return len(container)
        if not _ARRAY_INDEX_RE.match(token):
            raise self.fail(PatchErrorKind.OPERATION_PATH_ILLEGAL_ARRAY_INDEX)
        position = int(token)
        limit = len(container) if allow_end else len(container) - 1
        if position > limit:
            raise self.fail(PatchErrorKind.OPERATION_VALUE_OUT_OF_BOUNDS if allow_end else missing)
        return position

    def _parent(self, tokens: list[str], missing: PatchErrorKind) -> Any:
        current = self.document
        for token in tokens[:-1]:
            if isinstance(current, dict):
                if token not in current:
                    raise self.fail(missing)
                current = current[token]
            elif isinstance(current, list):
                current = current[self._array_index(current, token, allow_end=False, missing=missing)]
            else:
                raise self.fail(missing)
        if not isinstance(current, (dict, list)):
            raise self.fail(missing)
        return current

    def get(self, pointer: str, missing: PatchErrorKind) -> Any:
        tokens = parse_pointer(pointer)
        if not tokens:
            return self.document
        parent = self._parent(tokens, missing)
        token = tokens[-1]
        if isinstance(parent, dict):
            if token not in parent:
                raise self.fail(missing)
            return parent[token]
        return parent[self._array_index(parent, token, allow_end=False, missing=missing)]

    def add(self, pointer: str, value: Any) -> Any:
        tokens = parse_pointer(pointer)
        if not tokens:
            if not isinstance(value, dict):
                raise self.fail(PatchErrorKind.OPERATION_PATH_CANNOT_ADD)
            return value
        parent = self._parent(tokens, PatchErrorKind.OPERATION_PATH_CANNOT_ADD)
        token = tokens[-1]
        if isinstance(parent, dict):
            parent[token] = value
        else:
            position = self._array_index(parent, token, allow_end=True, missing=PatchErrorKind.OPERATION_PATH_CANNOT_ADD)
            parent.insert(position, value)
        return self.document

    def remove(self, pointer: str, missing: PatchErrorKind) -> Any:
        tokens = parse_pointer(pointer)
        if not tokens:
            raise self.fail(missing)
        parent = self._parent(tokens, missing)
        token = tokens[-1]
        if isinstance(parent, dict):
            if token not in parent:
                raise self.fail(missing)
            return parent.pop(token)
        return parent.pop(self._array_index(parent, token, allow_end=False, missing=missing))

    def replace(self, pointer: str, value: Any) -> Any:
        tokens = parse_pointer(pointer)
        if not tokens:
            if not isinstance(value, dict):
                raise self.fail(PatchErrorKind.OPERATION_PATH_CANNOT_ADD)
            return value
        missing = PatchErrorKind.OPERATION_PATH_UNRESOLVABLE
        parent = self._parent(tokens, missing)
        token = tokens[-1]
        if isinstance(parent, dict):
            if token not in parent:
                raise self.fail(missing)
            parent[token] = value
        else:
            parent[self._array_index(parent, token, allow_end=False, missing=missing)] = value
        return self.document

    def test(self, pointer: str, expected: Any) -> Any:
        try:
            actual = self.get(pointer, PatchErrorKind.OPERATION_PATH_UNRESOLVABLE)
        except MalformedPatch as exc:
            if exc.kind is PatchErrorKind.OPERATION_PATH_ILLEGAL_ARRAY_INDEX:
                raise
            actual = _MISSING
        if actual is _MISSING or not json_equal(actual, expected):
            raise _TestMismatch()
        return self.document

    def apply(self) -> Any:
        operation = self.operation
        op, path = operation["op"], operation["path"]
        if op == "test":
            return self.test(path, operation["value"])
        if op == "add":
            return self.add(path, copy.deepcopy(operation["value"]))
        if op == "replace":
            return self.replace(path, copy.deepcopy(operation["value"]))
        if op == "remove":
            self.remove(path, PatchErrorKind.OPERATION_PATH_UNRESOLVABLE)
            return self.document
        value = self.get(operation["from"], PatchErrorKind.OPERATION_FROM_UNRESOLVABLE)
        if op == "copy":
            return self.add(path, copy.deepcopy(value))
        if operation["from"] == path:
            return self.document
        self.remove(operation["from"], PatchErrorKind.OPERATION_FROM_UNRESOLVABLE)
        return self.add(path, value)


def apply_operation(document: Any, operation: Any, index: int = 0) -> Any:
    validate_operation(operation, index)
    try:
        return _Applier(document, operation, index).apply()
    except _TestMismatch:
        raise PreconditionFailed(operation, index=index, document=document) from None


def apply_patch(document: dict[str, Any], operations: Any) -> dict[str, Any]:
    """Apply a JSON Patch to a copy of ``document`` and return the copy.

    Every ``test`` operation is first checked on its own against the
    untouched document; a failing one raises ``PreconditionFailed`` before
    anything is applied. The whole sequence is then applied in order to a
    deep copy, so the caller's document never changes on failure.
    """
    if not isinstance(operations, list):
        raise MalformedPatch(PatchErrorKind.SEQUENCE_NOT_AN_ARRAY, operation=operations)

    current = None
    try:
        for index, operation in enumerate(operations):
            if isinstance(operation, dict) and operation.get("op") == "test":
                current = operation
                apply_operation(document, operation, index)

        patched = copy.deepcopy(document)
        for index, operation in enumerate(operations):
            current = operation
            try:
                patched = apply_operation(patched, operation, index)
            except PreconditionFailed:
                raise PreconditionFailed(operation, index=index, document=document) from None
    except (MalformedPatch, PreconditionFailed):
        raise
    except Exception as exc:
        raise PatchFailed(exc, operation=current) from exc
    return patched
