"""
Remote Call Results.

``RemoteResult`` is the discriminated success/failure value returned by
the service facade, so callers branch on ``success`` instead of catching
exceptions.
"""

from __future__ import annotations

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

from expenditure.errors import (
    AuthenticationError,
    ConfigurationError,
    DataAccessError,
    NotFoundError,
    RemoteError,
    SubscriptionError,
    ValidationError,
)
from expenditure.models.enums import DataErrorCode

T = TypeVar("T")

_ERROR_CODES: tuple[tuple[type[DataAccessError], DataErrorCode], ...] = (
    (ConfigurationError, DataErrorCode.CONFIGURATION),
    (ValidationError, DataErrorCode.VALIDATION),
    (NotFoundError, DataErrorCode.NOT_FOUND),
    (RemoteError, DataErrorCode.REMOTE),
    (SubscriptionError, DataErrorCode.SUBSCRIPTION),
    (AuthenticationError, DataErrorCode.UNAUTHENTICATED),
)


class RemoteResult(BaseModel, Generic[T]):
    """Outcome of one remote call.

    Attributes
    ----------
    success:
        ``True`` when the call completed; ``value`` then holds the result.
    value:
        The returned record(s), or ``None`` for calls with no payload.
    error_code:
        Structured error category (``None`` on success).
    error_message:
        Human-readable error description (``None`` on success).
    status:
        Server-side error code for remote failures.
    fields:
        Offending field names for validation failures.
    """

    success: bool
    value: Optional[T] = None
    error_code: Optional[DataErrorCode] = None
    error_message: Optional[str] = None
    status: Optional[str] = None
    fields: list[str] = []

    @classmethod
    def ok(cls, value: Optional[T] = None) -> "RemoteResult[T]":
        return cls(success=True, value=value)

    @classmethod
    def from_error(cls, exc: DataAccessError) -> "RemoteResult[T]":
        code = DataErrorCode.REMOTE
        for error_type, error_code in _ERROR_CODES:
            if isinstance(exc, error_type):
                code = error_code
                break
        return cls(
            success=False,
            error_code=code,
            error_message=str(exc),
            status=exc.status if isinstance(exc, RemoteError) else None,
            fields=exc.fields if isinstance(exc, ValidationError) else [],
        )
