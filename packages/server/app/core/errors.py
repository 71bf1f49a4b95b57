"""
Typed errors raised by the membership and social graph services.

Messages are safe to show to end users: they never carry row ids or
driver error codes.
"""

from __future__ import annotations

from capsules_shared.schemas.common import ERROR_STATUS, ErrorCode, ErrorPayload


class ServiceError(Exception):
    """Base class for expected, user-facing failures."""

    def __init__(self, code: ErrorCode, message: str, status: int | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status if status is not None else ERROR_STATUS[code]

    def to_payload(self) -> ErrorPayload:
        return ErrorPayload(code=self.code, message=self.message, status=self.status)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"

    # Convenience constructors

    @classmethod
    def not_found(cls, message: str) -> "ServiceError":
        return cls(ErrorCode.NOT_FOUND, message)

    @classmethod
    def forbidden(cls, message: str) -> "ServiceError":
        return cls(ErrorCode.FORBIDDEN, message)

    @classmethod
    def conflict(cls, message: str) -> "ServiceError":
        return cls(ErrorCode.CONFLICT, message)

    @classmethod
    def invalid(cls, message: str) -> "ServiceError":
        return cls(ErrorCode.INVALID, message)

    @classmethod
    def self_target(cls, message: str) -> "ServiceError":
        return cls(ErrorCode.SELF_TARGET, message)


class MembershipError(ServiceError):
    """Raised by capsule membership operations."""


class SocialGraphError(ServiceError):
    """Raised by social graph operations."""
