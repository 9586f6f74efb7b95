"""
Base Service Class.

Minimal base class standardizing the logger pattern for all services,
plus the conversion of data-layer exceptions into ``RemoteResult``
values.  Services extend this and add their own repository dependencies
via __init__.
"""

from __future__ import annotations

from collections.abc import Awaitable
from typing import TypeVar

from expenditure.errors import DataAccessError
from expenditure.logger import StructuredLogger
from expenditure.models.results import RemoteResult

T = TypeVar("T")


class BaseService:
    """Base class for all service classes. Provides a logger."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger

    async def _as_result(
        self, call: Awaitable[T], *, operation_name: str,
    ) -> RemoteResult[T]:
        """Await *call* and wrap its outcome in a ``RemoteResult``.

        Only ``DataAccessError`` is converted; anything else is a bug
        and propagates.
        """
        try:
            value = await call
        except DataAccessError as exc:
            self._logger.warning(
                "%s failed: %s", operation_name, exc,
                extra={"error_type": type(exc).__name__},
            )
            return RemoteResult.from_error(exc)
        return RemoteResult.ok(value)
