from __future__ import annotations

from enum import Enum
from typing import Any

from resourcekit.schemas.resource import ErrorInfo, FieldError


class ResourceError(Exception):
    status = 400
    name = "Error"

    def __init__(self, message: str, *, errors: dict[str, FieldError] | None = None, name: str | None = None):
        super().__init__(message)
        self.message = message
        self.errors = dict(errors or {})
        if name is not None:
            self.name = name

    def info(self) -> ErrorInfo:
        return ErrorInfo(message=self.message, name=self.name, errors=self.errors)


class NotFound(ResourceError):
    status = 404
    name = "NotFound"


class ValidationFailed(ResourceError):
    name = "ValidationError"


class SaveFailed(ResourceError):
    name = "SaveError"


class QueryError(ResourceError):
    name = "QueryError"


class PopulateError(ResourceError):
    name = "CastError"


class HookFailure(ResourceError):
    """Raised by a hook to stop the chain; the request is answered with ``status``."""

    name = "HookFailure"

    def __init__(self, message: str, *, status: int = 400, errors: dict[str, FieldError] | None = None):
        super().__init__(message, errors=errors)
        self.status = status


class PatchErrorKind(str, Enum):
    SEQUENCE_NOT_AN_ARRAY = "sequence-not-array"
    OPERATION_NOT_AN_OBJECT = "operation-not-object"
    OPERATION_OP_INVALID = "op-invalid"
    OPERATION_PATH_INVALID = "path-invalid"
    OPERATION_FROM_REQUIRED = "from-required"
    OPERATION_VALUE_REQUIRED = "value-required"
    OPERATION_VALUE_UNDEFINED = "value-undefined"
    OPERATION_PATH_CANNOT_ADD = "path-cannot-add"
    OPERATION_PATH_UNRESOLVABLE = "path-unresolvable"
    OPERATION_FROM_UNRESOLVABLE = "from-unresolvable"
    OPERATION_PATH_ILLEGAL_ARRAY_INDEX = "illegal-array-index"
    OPERATION_VALUE_OUT_OF_BOUNDS = "value-out-of-bounds"


PATCH_ERROR_MESSAGES = {
    PatchErrorKind.SEQUENCE_NOT_AN_ARRAY: "Patch sequence must be an array",
    PatchErrorKind.OPERATION_NOT_AN_OBJECT: "Operation is not an object",
    PatchErrorKind.OPERATION_OP_INVALID: "Operation `op` property is not one of operations defined in RFC-6902",
    PatchErrorKind.OPERATION_PATH_INVALID: "Operation `path` property is not a string",
    PatchErrorKind.OPERATION_FROM_REQUIRED: "Operation `from` property is not present (applicable in `move` and `copy` operations)",
    PatchErrorKind.OPERATION_VALUE_REQUIRED: "Operation `value` property is not present (applicable in `add`, `replace` and `test` operations)",
    PatchErrorKind.OPERATION_VALUE_UNDEFINED: "Operation `value` property is not present or contains a value that cannot be represented in JSON",
    PatchErrorKind.OPERATION_PATH_CANNOT_ADD: "Cannot perform an `add` operation at the desired path",
    PatchErrorKind.OPERATION_PATH_UNRESOLVABLE: "Cannot perform the operation at a path that does not exist",
    PatchErrorKind.OPERATION_FROM_UNRESOLVABLE: "Cannot perform the operation from a path that does not exist",
    PatchErrorKind.OPERATION_PATH_ILLEGAL_ARRAY_INDEX: "Expected an unsigned base-10 integer value, making the new referenced value the array element with the zero-based index",
    PatchErrorKind.OPERATION_VALUE_OUT_OF_BOUNDS: "The specified index MUST NOT be greater than the number of elements in the array",
}


class MalformedPatch(ResourceError):
    name = "MalformedPatch"

    def __init__(self, kind: PatchErrorKind, *, index: int | None = None, operation: Any = None):
        super().__init__(PATCH_ERROR_MESSAGES[kind])
        self.kind = kind
        self.index = index
        self.operation = operation
        path = operation.get("path") if isinstance(operation, dict) else None
        key = str(index) if index is not None else "patch"
        self.errors = {key: FieldError(path=str(path or ""), name=kind.value, message=self.message)}

    def info(self) -> ErrorInfo:
        return ErrorInfo(message=self.message, name=self.kind.value, errors=self.errors)


class PreconditionFailed(ResourceError):
    status = 412
    name = "Precondition Failed"

    def __init__(self, operation: Any, *, index: int | None = None, document: Any = None):
        super().__init__("A json-patch test op has failed. No changes have been applied to the document")
        self.operation = operation
        self.index = index
        self.document = document


class PatchFailed(ResourceError):
    status = 500
    name = "PatchError"

    def __init__(self, cause: Exception, *, operation: Any = None):
        super().__init__(str(cause) or cause.__class__.__name__)
        self.cause = cause
        self.operation = operation
