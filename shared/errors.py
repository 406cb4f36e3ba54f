"""
shared/errors.py
Error taxonomy for the verification engine and the tagged Result type that
carries failures across the engine boundary.

Tracks raise VerificationError subclasses internally; VerificationEngine
catches them and hands back Result.failure(...). Routers turn a failed
Result into an HTTPException with raise_for_result().
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from fastapi import HTTPException, status

T = TypeVar("T")


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    STATE_CONFLICT = "state_conflict"
    EXPIRED = "expired"
    AUTHORIZATION = "authorization"
    PROVIDER = "provider"


class VerificationError(Exception):
    category: ErrorCategory = ErrorCategory.VALIDATION
    code: str = "verification_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "category": self.category.value, "message": self.message}


class ValidationError(VerificationError):
    category = ErrorCategory.VALIDATION
    code = "validation_error"


class NotFoundError(VerificationError):
    category = ErrorCategory.NOT_FOUND
    code = "not_found"


class StateConflictError(VerificationError):
    category = ErrorCategory.STATE_CONFLICT
    code = "state_conflict"


class ExpiredError(VerificationError):
    category = ErrorCategory.EXPIRED
    code = "expired"


class AuthorizationError(VerificationError):
    category = ErrorCategory.AUTHORIZATION
    code = "forbidden"


class ProviderError(VerificationError):
    category = ErrorCategory.PROVIDER
    code = "provider_error"


# ── Track-specific errors ─────────────────────────────────────

class DisallowedDocumentType(ValidationError):
    code = "disallowed_document_type"


class InvalidFormat(ValidationError):
    code = "invalid_format"


class InvalidCode(ValidationError):
    code = "invalid_code"


class InvalidRequest(NotFoundError):
    code = "invalid_request"


class ExpiredChallenge(ExpiredError):
    code = "expired_challenge"


class TokenNotFound(NotFoundError):
    code = "token_not_found"


class TokenExpired(ExpiredError):
    code = "token_expired"


# ── Result ────────────────────────────────────────────────────

@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[VerificationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(value=value)

    @classmethod
    def failure(cls, error: VerificationError) -> "Result":
        return cls(error=error)


HTTP_STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCategory.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCategory.STATE_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCategory.EXPIRED: status.HTTP_410_GONE,
    ErrorCategory.AUTHORIZATION: status.HTTP_403_FORBIDDEN,
    ErrorCategory.PROVIDER: status.HTTP_502_BAD_GATEWAY,
}


def raise_for_result(result: Result[T]) -> T:
    """Unwrap a Result in a route, translating failures to HTTP errors."""
    if result.ok:
        return result.value
    raise HTTPException(
        status_code=HTTP_STATUS_BY_CATEGORY[result.error.category],
        detail=result.error.to_dict(),
    )
