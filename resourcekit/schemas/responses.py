from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Literal, Optional

PatchOp = Literal["add", "remove", "replace", "move", "copy", "test"]

class FieldErrorBody(BaseModel):
    path: str
    name: str
    message: str

class ErrorBody(BaseModel):
    status: int
    message: str
    errors: Dict[str, FieldErrorBody] = {}

class NotFoundBody(BaseModel):
    status: Literal[404] = 404
    errors: List[str] = ["Resource not found"]

class PatchOperation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    op: PatchOp
    path: str
    value: Any = None
    from_: Optional[str] = Field(default=None, alias="from")

class PreconditionFailedBody(BaseModel):
    status: Literal[412] = 412
    message: str
    item: Dict[str, Any]
    patch: PatchOperation

ERROR_RESPONSES = {
    400: {"model": ErrorBody, "description": "Invalid filter, body or write"},
    404: {"model": NotFoundBody, "description": "Resource not found"},
}
PATCH_RESPONSES = {
    **ERROR_RESPONSES,
    412: {"model": PreconditionFailedBody, "description": "A test operation failed"},
}
