"""
Error Taxonomy.

Every failure raised by the data layer is a ``DataAccessError`` subclass,
so callers can handle the whole family with one ``except`` clause or
branch on the concrete type.
"""

from __future__ import annotations

from typing import Optional


class DataAccessError(Exception):
    """Base class for all expenditure data-layer errors."""


class ConfigurationError(DataAccessError):
    """Endpoint or credential missing or malformed.  Fatal at startup."""


class ValidationError(DataAccessError):
    """Fields are missing or invalid; raised before any remote call.

    Attributes
    ----------
    fields:
        Names of the offending fields, in a stable order.
    """

    def __init__(self, message: str, fields: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.fields: list[str] = list(fields or [])


class NotFoundError(DataAccessError):
    """The target record does not exist in the collection."""

    def __init__(self, collection: str, record_id: str) -> None:
        super().__init__(f"{collection}/{record_id} not found")
        self.collection: str = collection
        self.record_id: str = record_id


class RemoteError(DataAccessError):
    """Transport or server fault reported by the hosted service.

    ``status`` carries the PostgREST / Postgres error code when the
    server produced one, or ``None`` for transport-level failures.
    """

    def __init__(self, status: Optional[str], message: str) -> None:
        super().__init__(f"[{status}] {message}" if status else message)
        self.status: Optional[str] = status
        self.message: str = message


class SubscriptionError(DataAccessError):
    """A change stream failed to open or was dropped beyond recovery."""


class AuthenticationError(DataAccessError):
    """The operation requires an authenticated session."""
