"""
Change Subscription Manager.

Opens one Supabase Realtime ``postgres_changes`` channel per subscription
and turns its callbacks into an ordered stream of :class:`ChangeEvent`
objects.  The realtime callbacks only enqueue (producer); a single
consumer task per subscription drains the queue and invokes the handler,
so events are delivered one at a time in receipt order.

Lifecycle per subscription::

    IDLE -> CONNECTING -> STREAMING -> CLOSED
                 |            |
                 v            v
            RECONNECTING <----+      (bounded exponential backoff)

When the reconnect budget is exhausted a :class:`SubscriptionErrorEvent`
is delivered to the handler and the subscription closes.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from expenditure.client import ClientHandle
from expenditure.errors import SubscriptionError
from expenditure.logger import StructuredLogger
from expenditure.models import RECORD_MODELS
from expenditure.models.enums import ChangeKind, SubscriptionState
from expenditure.models.events import ChangeEvent, StreamEvent, SubscriptionErrorEvent

Handler = Callable[[StreamEvent], Union[Awaitable[None], None]]
ResumeCallback = Callable[[], Union[Awaitable[None], None]]

_CHANGE_KINDS: dict[str, ChangeKind] = {
    "INSERT": ChangeKind.INSERTED,
    "UPDATE": ChangeKind.UPDATED,
    "DELETE": ChangeKind.DELETED,
}

_SUBSCRIBED = "SUBSCRIBED"
_FAILURE_STATES: frozenset[str] = frozenset({"CHANNEL_ERROR", "TIMED_OUT", "CLOSED"})

_handle_ids = itertools.count(1)


def _status_name(status: object) -> str:
    return str(getattr(status, "value", status)).upper()


def decode_change(
    collection: str,
    payload: Mapping[str, Any],
    model: type[BaseModel],
) -> Optional[ChangeEvent]:
    """Build a :class:`ChangeEvent` from a realtime ``postgres_changes`` payload.

    Accepts both the nested realtime-py shape (``{"data": {"type": ...,
    "record": ..., "old_record": ...}}``) and the flat JS-style shape
    (``{"eventType": ..., "new": ..., "old": ...}``).  Returns ``None``
    for payloads that are not row changes.

    Raises:
        SubscriptionError: If the row cannot be decoded.
    """
    data = payload.get("data", payload)
    if not isinstance(data, Mapping):
        return None

    kind = _CHANGE_KINDS.get(str(data.get("type") or data.get("eventType") or "").upper())
    if kind is None:
        return None

    if kind == ChangeKind.DELETED:
        raw = data.get("old_record") or data.get("old") or {}
    else:
        raw = data.get("record") or data.get("new") or {}
    if not raw or raw.get("id") is None:
        raise SubscriptionError(f"{collection} {kind} notification carries no id")

    try:
        record = model.model_validate(raw)
    except PydanticValidationError as exc:
        if kind != ChangeKind.DELETED:
            raise SubscriptionError(
                f"Undecodable {collection} {kind} notification: {exc}"
            ) from exc
        # Prior state of a delete is usually just the primary key.
        record = model.model_construct(**raw)

    try:
        return ChangeEvent(
            kind=kind,
            collection=collection,
            record=record,
            commit_timestamp=data.get("commit_timestamp"),
        )
    except PydanticValidationError:
        return ChangeEvent(kind=kind, collection=collection, record=record)


class SubscriptionHandle:
    """Cancellable handle on one collection's change stream.

    Obtain instances from :meth:`SubscriptionManager.subscribe`.
    """

    def __init__(
        self,
        manager: "SubscriptionManager",
        collection: str,
        handler: Handler,
        model: type[BaseModel],
        on_resumed: Optional[ResumeCallback] = None,
    ) -> None:
        self._manager = manager
        self._client: ClientHandle = manager.client
        self._collection = collection
        self._handler = handler
        self._model = model
        self._on_resumed = on_resumed
        self._id: int = next(_handle_ids)
        self._logger: StructuredLogger = manager.logger.bind(
            collection=collection, subscription=self._id,
        )

        self._state: SubscriptionState = SubscriptionState.IDLE
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._delivery_lock: asyncio.Lock = asyncio.Lock()
        self._consumer: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._resume_task: Optional[asyncio.Task[None]] = None
        self._teardown_task: Optional[asyncio.Task[None]] = None
        self._channel: Any = None
        self._channel_seq: int = 0
        self._attempts: int = 0
        self._cancelled: bool = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def collection(self) -> str:
        return self._collection

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state not in (SubscriptionState.IDLE, SubscriptionState.CLOSED)

    async def cancel(self) -> None:
        """Stop delivery and tear the channel down.

        Idempotent.  Once this returns the handler is never invoked
        again.  A handler invocation already running is allowed to finish
        first, unless ``cancel()`` is called from inside the handler.  A
        resume callback still running is cancelled.
        """
        if self._cancelled:
            return
        self._cancelled = True
        self._state = SubscriptionState.CLOSED

        current = asyncio.current_task()
        if self._reconnect_task is not None and self._reconnect_task is not current:
            self._reconnect_task.cancel()
        self._reconnect_task = None
        if self._resume_task is not None and self._resume_task is not current:
            self._resume_task.cancel()
        self._resume_task = None

        if self._consumer is not None and self._consumer is not current:
            # Wait out an in-progress delivery; later ones see the flag.
            async with self._delivery_lock:
                pass
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
        self._consumer = None

        await self._drop_channel()
        self._manager._forget(self)
        self._logger.info("Subscription to %s cancelled.", self._collection)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def _start(self) -> None:
        self._consumer = asyncio.get_running_loop().create_task(
            self._consume(), name=f"subscription-{self._collection}-{self._id}",
        )
        self._state = SubscriptionState.CONNECTING
        try:
            await self._open()
        except Exception as exc:
            self._logger.warning(
                "Opening %s change stream failed: %s", self._collection, exc,
            )
            self._schedule_reconnect(str(exc))

    async def _open(self) -> None:
        self._channel_seq += 1
        seq = self._channel_seq
        channel = self._client.channel(
            f"{self._collection}-changes-{self._id}-{seq}"
        )
        channel.on_postgres_changes(
            event="*",
            schema=self._manager.schema,
            table=self._collection,
            callback=lambda payload: self._on_payload(seq, payload),
        )
        self._channel = channel
        await channel.subscribe(
            lambda status, err=None: self._on_status(seq, status, err)
        )

    # ------------------------------------------------------------------
    # Producer side (realtime callbacks)
    # ------------------------------------------------------------------

    def _on_payload(self, seq: int, payload: Mapping[str, Any]) -> None:
        if self._cancelled or seq != self._channel_seq:
            return
        try:
            event = decode_change(self._collection, payload, self._model)
        except SubscriptionError as exc:
            self._logger.error("%s", exc)
            self._queue.put_nowait(
                SubscriptionErrorEvent(
                    collection=self._collection, message=str(exc), fatal=False,
                )
            )
            return
        if event is not None:
            self._queue.put_nowait(event)

    def _on_status(self, seq: int, status: object, error: Optional[Exception]) -> None:
        if self._cancelled or seq != self._channel_seq:
            return
        name = _status_name(status)

        if name == _SUBSCRIBED:
            resumed = self._state == SubscriptionState.RECONNECTING
            self._state = SubscriptionState.STREAMING
            self._attempts = 0
            self._logger.info(
                "Streaming %s changes%s.",
                self._collection,
                " (resumed)" if resumed else "",
            )
            if resumed and self._on_resumed is not None:
                if self._resume_task is not None and not self._resume_task.done():
                    self._resume_task.cancel()
                self._resume_task = asyncio.get_running_loop().create_task(
                    self._run_resumed(),
                    name=f"subscription-{self._collection}-{self._id}-resume",
                )
        elif name in _FAILURE_STATES:
            self._logger.warning(
                "%s change stream reported %s: %s",
                self._collection,
                name,
                error,
            )
            self._schedule_reconnect(f"{name}: {error}" if error else name)

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _schedule_reconnect(self, reason: str) -> None:
        if self._cancelled:
            return
        running = self._reconnect_task
        if (
            running is not None
            and not running.done()
            and running is not asyncio.current_task()
        ):
            return
        if self._attempts >= self._manager.max_reconnect_attempts:
            self._fail(reason)
            return
        self._state = SubscriptionState.RECONNECTING
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect()
        )

    def _backoff_delay(self) -> float:
        delay = self._manager.reconnect_base_s * (2 ** max(self._attempts - 1, 0))
        return min(delay, self._manager.reconnect_max_s)

    async def _reconnect(self) -> None:
        self._attempts += 1
        delay = self._backoff_delay()
        self._logger.info(
            "Reconnecting %s change stream in %.1f s (attempt %d/%d).",
            self._collection,
            delay,
            self._attempts,
            self._manager.max_reconnect_attempts,
        )
        await asyncio.sleep(delay)
        if self._cancelled:
            return

        await self._drop_channel()
        try:
            await self._open()
        except Exception as exc:
            self._logger.warning(
                "Reconnect of %s change stream failed: %s", self._collection, exc,
            )
            self._reconnect_task = None
            self._schedule_reconnect(str(exc))

    def _fail(self, reason: str) -> None:
        message = (
            f"{self._collection} change stream lost after "
            f"{self._attempts} reconnect attempts: {reason}"
        )
        self._logger.error(message)
        self._state = SubscriptionState.CLOSED
        self._channel_seq += 1  # ignore late callbacks from the dead channel
        self._queue.put_nowait(
            SubscriptionErrorEvent(
                collection=self._collection,
                message=message,
                attempts=self._attempts,
                fatal=True,
            )
        )
        self._teardown_task = asyncio.get_running_loop().create_task(
            self._drop_channel()
        )
        self._manager._forget(self)

    async def _drop_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is None:
            return
        try:
            await self._client.remove_channel(channel)
        except Exception as exc:
            self._logger.warning(
                "Removing %s channel failed: %s", self._collection, exc,
            )

    async def _run_resumed(self) -> None:
        if self._cancelled or self._on_resumed is None:
            return
        try:
            result = self._on_resumed()
            if inspect.isawaitable(result):
                await result
        except Exception:
            self._logger.error(
                "Resume callback for %s failed.", self._collection, exc_info=True,
            )

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            if self._cancelled:
                return
            async with self._delivery_lock:
                if self._cancelled:
                    return
                await self._deliver(event)
            # The handler may have cancelled its own subscription.
            if self._cancelled:
                return
            if (
                isinstance(event, SubscriptionErrorEvent)
                and self._state == SubscriptionState.CLOSED
            ):
                return

    async def _deliver(self, event: StreamEvent) -> None:
        try:
            result = self._handler(event)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.error(
                "Subscription handler for %s raised.", self._collection,
                exc_info=True,
            )


class SubscriptionManager:
    """Creates and tracks change subscriptions over one ``ClientHandle``.

    Parameters
    ----------
    client:
        The shared client handle.
    logger:
        Structured JSON logger.
    schema:
        Postgres schema the collections live in.
    reconnect_base_s / reconnect_max_s:
        First backoff delay and its cap; the delay doubles per attempt.
    max_reconnect_attempts:
        Consecutive failed attempts tolerated before the subscription is
        closed with a :class:`SubscriptionErrorEvent`.
    record_models:
        Model used to decode rows of each collection.
    """

    def __init__(
        self,
        client: ClientHandle,
        logger: StructuredLogger,
        *,
        schema: str = "public",
        reconnect_base_s: float = 1.0,
        reconnect_max_s: float = 30.0,
        max_reconnect_attempts: int = 5,
        record_models: Optional[Mapping[str, type[BaseModel]]] = None,
    ) -> None:
        self.client: ClientHandle = client
        self.logger: StructuredLogger = logger
        self.schema: str = schema
        self.reconnect_base_s: float = reconnect_base_s
        self.reconnect_max_s: float = reconnect_max_s
        self.max_reconnect_attempts: int = max_reconnect_attempts
        self._record_models: dict[str, type[BaseModel]] = dict(
            record_models if record_models is not None else RECORD_MODELS
        )
        self._active: list[SubscriptionHandle] = []

    @property
    def active(self) -> tuple[SubscriptionHandle, ...]:
        return tuple(self._active)

    async def subscribe(
        self,
        collection: str,
        handler: Handler,
        *,
        on_resumed: Optional[ResumeCallback] = None,
    ) -> SubscriptionHandle:
        """Stream every insert/update/delete on *collection* to *handler*.

        *handler* may be a plain function or a coroutine function.  A
        stream that cannot be opened is retried like a dropped one and,
        once the budget is spent, reported to *handler* as a
        :class:`SubscriptionErrorEvent`.

        Raises:
            SubscriptionError: If *collection* has no record model.
        """
        name = str(collection)
        model = self._record_models.get(name)
        if model is None:
            raise SubscriptionError(f"No record model registered for '{name}'")

        handle = SubscriptionHandle(self, name, handler, model, on_resumed)
        self._active.append(handle)
        await handle._start()
        return handle

    async def close_all(self) -> None:
        """Cancel every active subscription."""
        for handle in list(self._active):
            await handle.cancel()

    def _forget(self, handle: SubscriptionHandle) -> None:
        if handle in self._active:
            self._active.remove(handle)
