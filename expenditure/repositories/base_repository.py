"""
Base Repository.

Provides shared infrastructure for all collection repositories:
- ClientHandle reference (PostgREST request builders)
- Logger reference
- Client-side field validation before any remote call
- Mapping of PostgREST / transport failures onto the error taxonomy
- list / get / create / update / delete over one collection
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, ClassVar, Generic, NamedTuple, Optional, TypeVar, Union

import httpx
from postgrest.exceptions import APIError
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import to_jsonable_python

from expenditure.client import ClientHandle
from expenditure.errors import NotFoundError, RemoteError, ValidationError
from expenditure.logger import StructuredLogger
from expenditure.models.enums import Collection

RecordT = TypeVar("RecordT", bound=BaseModel)

FieldsInput = Union[Mapping[str, Any], BaseModel]


class OrderBy(NamedTuple):
    """One server-side ordering term."""

    column: str
    descending: bool = False


def _error_fields(exc: PydanticValidationError) -> list[str]:
    names: list[str] = []
    for err in exc.errors():
        name = ".".join(str(part) for part in err.get("loc", ())) or "__root__"
        if name not in names:
            names.append(name)
    return names


class BaseRepository(Generic[RecordT]):
    """Base class for all repositories. Receives dependencies via __init__.

    Subclasses set ``TABLE`` and ``MODEL`` and either pydantic
    ``CREATE_MODEL`` / ``UPDATE_MODEL`` schemas or a plain
    ``REQUIRED_FIELDS`` set for the generic validation path.
    """

    TABLE: ClassVar[Collection]
    MODEL: ClassVar[type[BaseModel]]
    CREATE_MODEL: ClassVar[Optional[type[BaseModel]]] = None
    UPDATE_MODEL: ClassVar[Optional[type[BaseModel]]] = None
    REQUIRED_FIELDS: ClassVar[frozenset[str]] = frozenset()
    # Columns the server owns; never accepted in create payloads.
    SERVER_COLUMNS: ClassVar[frozenset[str]] = frozenset({"id", "created_at", "updated_at"})
    RELATIONS: ClassVar[frozenset[str]] = frozenset()
    DEFAULT_EXPAND: ClassVar[frozenset[str]] = frozenset()
    DEFAULT_ORDER: ClassVar[tuple[OrderBy, ...]] = (OrderBy("id"),)

    def __init__(
        self,
        client: ClientHandle,
        logger: StructuredLogger,
        *,
        idempotent_delete: bool = True,
    ) -> None:
        self._client = client
        self._logger = logger
        self._idempotent_delete = idempotent_delete

    @property
    def collection(self) -> Collection:
        return self.TABLE

    def _table(self) -> Any:
        return self._client.table(self.TABLE)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_all(
        self,
        order_by: Optional[Sequence[OrderBy]] = None,
        expand: Optional[set[str] | frozenset[str]] = None,
        *,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> list[RecordT]:
        """Fetch every visible row, ordered and expanded server-side.

        Args:
            order_by: Ordering terms; defaults to ``DEFAULT_ORDER``.
            expand: Relation names to inline; defaults to ``DEFAULT_EXPAND``.
            filters: Optional column equality filters.

        Raises:
            ValidationError: If an unknown relation is requested.
            RemoteError: On any failed response.  Never retried here.
        """
        query = self._table().select(self._select_clause(expand))
        for column, value in (filters or {}).items():
            query = query.eq(column, to_jsonable_python(value))
        for term in (order_by if order_by is not None else self.DEFAULT_ORDER):
            query = query.order(term.column, desc=term.descending)

        response = await self._execute(query, operation_name="fetch_all")
        return [self._parse(row) for row in response.data or []]

    async def get_by_id(
        self,
        record_id: str,
        expand: Optional[set[str] | frozenset[str]] = None,
    ) -> Optional[RecordT]:
        """Fetch a single row by primary key, or ``None`` if absent."""
        query = (
            self._table()
            .select(self._select_clause(expand))
            .eq("id", record_id)
            .limit(1)
        )
        response = await self._execute(query, operation_name="get_by_id")
        rows = response.data or []
        return self._parse(rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Writes (never retried)
    # ------------------------------------------------------------------

    async def create(self, fields: FieldsInput) -> RecordT:
        """Insert one row and return the created record.

        PostgREST answers an insert with an array; this returns its single
        element.

        Raises:
            ValidationError: If required fields are missing or invalid.
            RemoteError: If the server rejects the insert.
        """
        payload = self._validate_create(fields)
        response = await self._execute(
            self._table().insert(payload), operation_name="create",
        )
        rows = response.data or []
        if not rows:
            raise RemoteError(None, f"Insert into {self.TABLE} returned no row")
        if len(rows) > 1:
            self._logger.warning(
                "Insert into %s returned %d rows; using the first.",
                self.TABLE,
                len(rows),
            )
        record = self._parse(rows[0])
        self._logger.info(
            "Created %s/%s", self.TABLE, getattr(record, "id", "?"),
        )
        return record

    async def update(self, record_id: str, fields: FieldsInput) -> RecordT:
        """Merge *fields* into the row; unspecified columns are unchanged.

        Raises:
            ValidationError: If *fields* is empty or invalid.
            NotFoundError: If no row has *record_id*.
            RemoteError: If the server rejects the update.
        """
        payload = self._validate_update(fields)
        response = await self._execute(
            self._table().update(payload).eq("id", record_id),
            operation_name="update",
        )
        rows = response.data or []
        if not rows:
            raise NotFoundError(self.TABLE, record_id)
        self._logger.info("Updated %s/%s", self.TABLE, record_id)
        return self._parse(rows[0])

    async def delete(self, record_id: str) -> None:
        """Delete a row by primary key.

        PostgREST reports a delete that matched nothing as an empty 2xx
        result.  With ``idempotent_delete`` (the default) that is a
        success; otherwise it raises ``NotFoundError``.
        """
        response = await self._execute(
            self._table().delete().eq("id", record_id),
            operation_name="delete",
        )
        if not response.data:
            if not self._idempotent_delete:
                raise NotFoundError(self.TABLE, record_id)
            self._logger.debug(
                "Delete of %s/%s matched no row; already absent.",
                self.TABLE,
                record_id,
            )
            return
        self._logger.info("Deleted %s/%s", self.TABLE, record_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _select_clause(self, expand: Optional[set[str] | frozenset[str]]) -> str:
        relations = self.DEFAULT_EXPAND if expand is None else frozenset(expand)
        unknown = sorted(relations - self.RELATIONS)
        if unknown:
            raise ValidationError(
                f"{self.TABLE} cannot expand: {', '.join(unknown)}", unknown,
            )
        return ", ".join(["*", *(f"{name}(*)" for name in sorted(relations))])

    def _parse(self, row: Mapping[str, Any]) -> RecordT:
        try:
            return self.MODEL.model_validate(row)  # type: ignore[return-value]
        except PydanticValidationError as exc:
            raise RemoteError(
                None, f"Malformed {self.TABLE} row from server: {exc}",
            ) from exc

    def _validate_create(self, fields: FieldsInput) -> dict[str, Any]:
        if self.CREATE_MODEL is not None:
            return self._validate_with(self.CREATE_MODEL, fields, "create")

        data = self._as_dict(fields)
        missing = sorted(
            name for name in self.REQUIRED_FIELDS
            if data.get(name) is None or data.get(name) == ""
        )
        if missing:
            raise ValidationError(
                f"Missing required {self.TABLE} fields: {', '.join(missing)}",
                missing,
            )
        self._reject_unknown(data, self.SERVER_COLUMNS)
        return to_jsonable_python(data)

    def _validate_update(self, fields: FieldsInput) -> dict[str, Any]:
        if self.UPDATE_MODEL is not None:
            payload = self._validate_with(self.UPDATE_MODEL, fields, "update")
        else:
            data = self._as_dict(fields)
            self._reject_unknown(data, self.SERVER_COLUMNS | {"id"})
            payload = to_jsonable_python(data)
        if not payload:
            raise ValidationError(f"No {self.TABLE} fields to update")
        return payload

    def _validate_with(
        self, schema: type[BaseModel], fields: FieldsInput, action: str,
    ) -> dict[str, Any]:
        if isinstance(fields, schema):
            model = fields
        else:
            try:
                model = schema.model_validate(self._as_dict(fields))
            except PydanticValidationError as exc:
                names = _error_fields(exc)
                raise ValidationError(
                    f"Invalid {self.TABLE} {action} fields: {', '.join(names)}",
                    names,
                ) from exc
        return model.model_dump(mode="json", exclude_unset=True)

    def _reject_unknown(
        self, data: Mapping[str, Any], read_only: frozenset[str],
    ) -> None:
        # Aliased fields are embedded relations, never columns.
        writable = {
            name for name, info in self.MODEL.model_fields.items()
            if info.alias is None
        } - read_only
        unknown = sorted(set(data) - writable)
        if unknown:
            raise ValidationError(
                f"Fields not writable on {self.TABLE}: {', '.join(unknown)}",
                unknown,
            )

    @staticmethod
    def _as_dict(fields: FieldsInput) -> dict[str, Any]:
        if isinstance(fields, BaseModel):
            return fields.model_dump(exclude_unset=True)
        return dict(fields)

    async def _execute(self, query: Any, *, operation_name: str) -> Any:
        """Await *query* and translate failures into ``RemoteError``."""
        try:
            return await query.execute()
        except APIError as exc:
            self._logger.warning(
                "%s (%s) rejected by server: %s",
                operation_name,
                self.TABLE,
                exc.message,
                extra={"code": exc.code, "details": exc.details},
            )
            raise RemoteError(exc.code, exc.message or str(exc)) from exc
        except httpx.HTTPError as exc:
            self._logger.warning(
                "%s (%s) transport failure: %s", operation_name, self.TABLE, exc,
            )
            raise RemoteError(None, f"Transport failure: {exc}") from exc
