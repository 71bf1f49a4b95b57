from enum import Enum
from pydantic import BaseModel


class ErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    INVALID = "invalid"
    SELF_TARGET = "self_target"


# HTTP-like status carried alongside each code
ERROR_STATUS: dict[ErrorCode, int] = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.CONFLICT: 409,
    ErrorCode.INVALID: 400,
    ErrorCode.SELF_TARGET: 400,
}


class ErrorPayload(BaseModel):
    code: ErrorCode
    message: str
    status: int
