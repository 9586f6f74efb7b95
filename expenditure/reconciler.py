"""
Local State Reconciler.

Owns the in-memory ``LocalSnapshot`` of one collection: records unique by
id, kept in the standing order (``expense_date`` newest first, ties by
``id``).  The snapshot changes only through :meth:`replace_all` and
:meth:`apply_event`; readers get immutable tuples.

Every mutation is a synchronous critical section under an ``RLock``, so
a fetch result and streamed events can never interleave inside one
mutation, whether they arrive on the event loop or from another thread.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel

from expenditure.logger import StructuredLogger
from expenditure.models.enums import ChangeKind
from expenditure.models.events import ChangeEvent

RecordT = TypeVar("RecordT", bound=BaseModel)


class LocalStateReconciler(Generic[RecordT]):
    """Merge fetched snapshots and change events into one ordered view.

    Parameters
    ----------
    logger:
        Structured JSON logger.
    order_field:
        Record attribute holding the primary sort key.
    descending:
        ``True`` to put the largest ``order_field`` first.  Ties are always
        broken by ascending ``id``; records without a sort value go last.
    collection:
        When set, events for any other collection are rejected.
    """

    def __init__(
        self,
        logger: StructuredLogger,
        *,
        order_field: str = "expense_date",
        descending: bool = True,
        collection: Optional[str] = None,
    ) -> None:
        self._logger: StructuredLogger = logger
        self._order_field: str = order_field
        self._descending: bool = descending
        self._collection: Optional[str] = collection
        self._lock: threading.RLock = threading.RLock()
        self._records: dict[str, RecordT] = {}
        self._view: tuple[RecordT, ...] = ()
        self._version: int = 0

    # ------------------------------------------------------------------
    # Read-only access
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> tuple[RecordT, ...]:
        """The current ordered records as an immutable tuple."""
        with self._lock:
            return self._view

    @property
    def version(self) -> int:
        """Incremented on every mutation that changed the snapshot."""
        with self._lock:
            return self._version

    def get(self, record_id: str) -> Optional[RecordT]:
        with self._lock:
            return self._records.get(str(record_id))

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        with self._lock:
            return str(record_id) in self._records

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def replace_all(
        self,
        records: Iterable[RecordT],
        pending: Iterable[ChangeEvent] = (),
    ) -> tuple[RecordT, ...]:
        """Set the snapshot to exactly *records*, then apply *pending*.

        Duplicate ids in *records* keep the last occurrence.  *pending*
        holds events received while the fetch was in flight; they are
        replayed in receipt order inside the same critical section.
        """
        with self._lock:
            self._records = {str(record.id): record for record in records}  # type: ignore[attr-defined]
            replayed = 0
            for event in pending:
                self._apply_locked(event)
                replayed += 1
            self._rebuild_view()
            self._logger.debug(
                "Snapshot replaced with %d records (%d buffered events replayed).",
                len(self._records),
                replayed,
            )
            return self._view

    def apply_event(self, event: ChangeEvent) -> tuple[RecordT, ...]:
        """Apply one change notification and return the new snapshot.

        - inserted: replace in place when the id is already present
          (the fetch may have seen it), else add at its sorted position.
        - updated: replace; an unknown id is treated as an insert.
        - deleted: remove; an unknown id is a no-op.
        """
        with self._lock:
            if self._apply_locked(event):
                self._rebuild_view()
            return self._view

    def apply_events(self, events: Iterable[ChangeEvent]) -> tuple[RecordT, ...]:
        """Apply *events* in order as one critical section."""
        with self._lock:
            changed = False
            for event in events:
                changed = self._apply_locked(event) or changed
            if changed:
                self._rebuild_view()
            return self._view

    def clear(self) -> None:
        with self._lock:
            self._records = {}
            self._rebuild_view()

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _apply_locked(self, event: ChangeEvent) -> bool:
        if self._collection is not None and event.collection != self._collection:
            raise ValueError(
                f"Event for '{event.collection}' applied to the "
                f"'{self._collection}' snapshot."
            )

        record_id = event.record_id
        if event.kind == ChangeKind.DELETED:
            if self._records.pop(record_id, None) is None:
                self._logger.debug("Delete for absent id %s ignored.", record_id)
                return False
            return True

        if event.kind == ChangeKind.UPDATED and record_id not in self._records:
            self._logger.debug("Update for unseen id %s applied as insert.", record_id)

        self._records[record_id] = event.record  # type: ignore[assignment]
        return True

    def _sort_value(self, record: RecordT) -> tuple[bool, Any]:
        value = getattr(record, self._order_field, None)
        # Missing values sort last in either direction.
        present = value is not None
        return (present if self._descending else not present, value)

    def _rebuild_view(self) -> None:
        # Two stable passes: id ascending first, then the primary key.
        by_id = sorted(self._records.values(), key=lambda r: str(r.id))  # type: ignore[attr-defined]
        ordered = sorted(by_id, key=self._sort_value, reverse=self._descending)
        self._view = tuple(ordered)
        self._version += 1
