"""
Live Collection Feed.

Keeps a ``LocalStateReconciler`` in step with one remote collection:

1. subscribe to the change stream first, so nothing committed during the
   initial fetch is missed;
2. fetch the collection (reads are retried with exponential backoff);
3. replace the snapshot with the fetch result and replay the events that
   arrived while the fetch was in flight, in receipt order;
4. from then on apply each event as it arrives;
5. refetch whenever the stream resumes after a reconnect.

Writes are never retried here; they go through the repositories or the
expense service.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

from expenditure.errors import RemoteError
from expenditure.logger import StructuredLogger
from expenditure.models.events import ChangeEvent, StreamEvent, SubscriptionErrorEvent
from expenditure.reconciler import LocalStateReconciler
from expenditure.repositories.base_repository import BaseRepository
from expenditure.services.base_service import BaseService
from expenditure.subscriptions import SubscriptionHandle, SubscriptionManager

RecordT = TypeVar("RecordT", bound=BaseModel)


class CollectionFeed(BaseService, Generic[RecordT]):
    """Live, ordered view of one collection.

    Parameters
    ----------
    repository:
        Repository used for the bulk fetch.
    subscriptions:
        Manager used to open the change stream.
    reconciler:
        Snapshot owner; the feed is its only writer.
    logger:
        Structured JSON logger.
    read_attempts:
        Total fetch attempts before a ``RemoteError`` is surfaced.
    read_retry_base_s:
        Delay before the second attempt; doubles on each further attempt.
    on_change:
        Called with the new snapshot after every mutation.
    on_error:
        Called with every ``SubscriptionErrorEvent``; check ``fatal`` to
        tell a lost stream from a skipped notification.
    """

    _MAX_RETRY_DELAY_S: float = 30.0

    def __init__(
        self,
        repository: BaseRepository[RecordT],
        subscriptions: SubscriptionManager,
        reconciler: LocalStateReconciler[RecordT],
        logger: StructuredLogger,
        *,
        read_attempts: int = 3,
        read_retry_base_s: float = 0.5,
        on_change: Optional[Callable[[tuple[RecordT, ...]], None]] = None,
        on_error: Optional[Callable[[SubscriptionErrorEvent], None]] = None,
    ) -> None:
        super().__init__(logger.bind(collection=str(repository.collection)))
        self._repository = repository
        self._subscriptions = subscriptions
        self._reconciler = reconciler
        self._read_attempts: int = max(1, read_attempts)
        self._read_retry_base_s: float = read_retry_base_s
        self._on_change = on_change
        self._on_error = on_error

        self._subscription: Optional[SubscriptionHandle] = None
        self._buffer: Optional[list[ChangeEvent]] = None
        self._refresh_lock: asyncio.Lock = asyncio.Lock()
        self._last_error: Optional[SubscriptionErrorEvent] = None
        # Bumped by stop(); a refresh started under an older value is discarded.
        self._generation: int = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> tuple[RecordT, ...]:
        return self._reconciler.snapshot

    @property
    def subscription(self) -> Optional[SubscriptionHandle]:
        return self._subscription

    @property
    def last_error(self) -> Optional[SubscriptionErrorEvent]:
        return self._last_error

    @property
    def is_running(self) -> bool:
        return self._subscription is not None

    def set_listeners(
        self,
        on_change: Optional[Callable[[tuple[RecordT, ...]], None]] = None,
        on_error: Optional[Callable[[SubscriptionErrorEvent], None]] = None,
    ) -> None:
        """Replace the change and error callbacks."""
        self._on_change = on_change
        self._on_error = on_error

    async def start(self) -> tuple[RecordT, ...]:
        """Subscribe, fetch and return the first consistent snapshot.

        Idempotent while running.

        Raises:
            RemoteError: If every fetch attempt failed.  The subscription
                is cancelled before the error propagates.
        """
        if self._subscription is not None:
            return self.snapshot

        self._subscription = await self._subscriptions.subscribe(
            self._repository.collection,
            self._on_event,
            on_resumed=self.refresh,
        )
        try:
            return await self.refresh()
        except BaseException:
            await self.stop()
            raise

    async def refresh(self) -> tuple[RecordT, ...]:
        """Refetch the collection and reconcile it with buffered events.

        Cancelling a refresh leaves the fetched data unapplied; events
        buffered meanwhile are still applied.  A refresh still in flight
        when the feed is stopped changes nothing.
        """
        generation = self._generation
        async with self._refresh_lock:
            self._buffer = []
            try:
                records = await self._fetch_with_retry()
            except BaseException:
                pending, self._buffer = self._buffer or [], None
                if pending and generation == self._generation:
                    self._reconciler.apply_events(pending)
                    self._notify()
                raise

            pending, self._buffer = self._buffer, None
            if generation != self._generation:
                self._logger.info(
                    "Discarding %s refresh that finished after stop.",
                    self._repository.collection,
                )
                return self.snapshot
            snapshot = self._reconciler.replace_all(records, pending)
            self._logger.info(
                "%s snapshot refreshed: %d records, %d buffered events.",
                self._repository.collection,
                len(snapshot),
                len(pending),
            )
            self._notify()
            return snapshot

    async def stop(self) -> None:
        """Cancel the change stream.  Safe to call more than once."""
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            self._generation += 1
            await subscription.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _fetch_with_retry(self) -> list[RecordT]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._repository.fetch_all()
            except RemoteError as exc:
                if attempt >= self._read_attempts:
                    self._logger.error(
                        "Fetching %s failed after %d attempts: %s",
                        self._repository.collection,
                        attempt,
                        exc,
                    )
                    raise
                delay = min(
                    self._read_retry_base_s * (2 ** (attempt - 1)),
                    self._MAX_RETRY_DELAY_S,
                )
                self._logger.warning(
                    "Fetching %s failed (attempt %d/%d), retrying in %.1f s: %s",
                    self._repository.collection,
                    attempt,
                    self._read_attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)

    async def _on_event(self, event: StreamEvent) -> None:
        if isinstance(event, SubscriptionErrorEvent):
            self._last_error = event
            if event.fatal:
                self._logger.error(
                    "Change stream for %s lost: %s", event.collection, event.message,
                )
            else:
                self._logger.warning(
                    "Skipped %s notification: %s", event.collection, event.message,
                )
            if self._on_error is not None:
                self._on_error(event)
            return

        if self._buffer is not None:
            self._buffer.append(event)
            return

        self._reconciler.apply_event(event)
        self._notify()

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self._reconciler.snapshot)
