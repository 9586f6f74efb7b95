import asyncio

import pytest
from postgrest.exceptions import APIError

from conftest import change_payload, expense_row

from expenditure.errors import RemoteError
from expenditure.models.enums import Collection
from expenditure.reconciler import LocalStateReconciler
from expenditure.repositories import ExpenseRepository
from expenditure.services.collection_feed import CollectionFeed
from expenditure.subscriptions import SubscriptionManager


async def settle(rounds=50):
    for _ in range(rounds):
        await asyncio.sleep(0)


class GatedExpenseRepository(ExpenseRepository):
    """Holds ``fetch_all`` open until the test releases it."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = asyncio.Event()
        self.fetching = asyncio.Event()

    async def fetch_all(self, *args, **kwargs):
        self.fetching.set()
        await self.gate.wait()
        return await super().fetch_all(*args, **kwargs)


@pytest.fixture
def manager(client, logger):
    return SubscriptionManager(client, logger, reconnect_base_s=0.0, max_reconnect_attempts=2)


@pytest.fixture
def reconciler(logger):
    return LocalStateReconciler(logger, collection=Collection.EXPENSES)


def ids(snapshot):
    return [record.id for record in snapshot]


@pytest.mark.asyncio
async def test_start_returns_ordered_snapshot(client, logger, manager, reconciler):
    changes = []
    feed = CollectionFeed(
        ExpenseRepository(client, logger), manager, reconciler, logger,
        on_change=changes.append,
    )

    snapshot = await feed.start()

    assert ids(snapshot) == ["e2", "e1", "e3"]
    assert feed.is_running
    assert changes[-1] == snapshot
    await feed.stop()
    assert not feed.is_running


@pytest.mark.asyncio
async def test_events_during_fetch_are_buffered_and_replayed(client, logger, manager, reconciler, supabase):
    repository = GatedExpenseRepository(client, logger)
    feed = CollectionFeed(repository, manager, reconciler, logger)

    starting = asyncio.ensure_future(feed.start())
    await repository.fetching.wait()
    channel = supabase.channels[-1]

    # Committed after the subscription opened but before the fetch completes.
    channel.emit(change_payload("DELETE", old={"id": "e3"}))
    channel.emit(change_payload("INSERT", expense_row("e4", "2026-02-20")))
    await settle()
    assert feed.snapshot == ()

    repository.gate.set()
    snapshot = await starting

    assert ids(snapshot) == ["e4", "e2", "e1"]
    await feed.stop()


@pytest.mark.asyncio
async def test_live_events_applied_after_start(client, logger, manager, reconciler, supabase):
    changes = []
    feed = CollectionFeed(
        ExpenseRepository(client, logger), manager, reconciler, logger,
        on_change=changes.append,
    )
    await feed.start()

    channel = supabase.channels[-1]
    channel.emit(change_payload("UPDATE", expense_row("e3", "2026-03-01", "approved")))
    await settle()

    assert ids(feed.snapshot) == ["e3", "e2", "e1"]
    assert ids(changes[-1]) == ["e3", "e2", "e1"]
    await feed.stop()


@pytest.mark.asyncio
async def test_fetch_retried_then_succeeds(client, logger, manager, reconciler, supabase):
    supabase.errors.append(APIError({"code": "503", "message": "upstream unavailable"}))
    feed = CollectionFeed(
        ExpenseRepository(client, logger), manager, reconciler, logger,
        read_attempts=2, read_retry_base_s=0.0,
    )

    snapshot = await feed.start()

    assert len(snapshot) == 3
    assert len([call for call in supabase.calls if call["op"] == "select"]) == 2
    await feed.stop()


@pytest.mark.asyncio
async def test_fetch_failure_stops_feed_and_raises(client, logger, manager, reconciler, supabase):
    supabase.errors.extend([
        APIError({"code": "503", "message": "upstream unavailable"}),
        APIError({"code": "503", "message": "upstream unavailable"}),
    ])
    feed = CollectionFeed(
        ExpenseRepository(client, logger), manager, reconciler, logger,
        read_attempts=2, read_retry_base_s=0.0,
    )

    with pytest.raises(RemoteError):
        await feed.start()

    assert not feed.is_running
    assert manager.active == ()


@pytest.mark.asyncio
async def test_stream_loss_reaches_error_listener(client, logger, manager, reconciler, supabase):
    errors = []
    feed = CollectionFeed(ExpenseRepository(client, logger), manager, reconciler, logger)
    feed.set_listeners(on_error=errors.append)
    await feed.start()

    supabase.subscribe_errors.extend([ConnectionError("down"), ConnectionError("down")])
    supabase.channels[-1].report("CHANNEL_ERROR")
    await settle()

    assert len(errors) == 1
    assert feed.last_error is errors[0]
    # The last good snapshot stays readable.
    assert len(feed.snapshot) == 3
    await feed.stop()


@pytest.mark.asyncio
async def test_resumed_stream_triggers_refetch(client, logger, manager, reconciler, supabase):
    feed = CollectionFeed(ExpenseRepository(client, logger), manager, reconciler, logger)
    await feed.start()

    # Missed while disconnected.
    supabase.tables["expenses"].append(expense_row("e5", "2026-02-28"))
    supabase.channels[-1].report("CLOSED")
    await settle()

    assert ids(feed.snapshot)[0] == "e5"
    await feed.stop()


@pytest.mark.asyncio
async def test_undecodable_notification_keeps_feed_running(client, logger, manager, reconciler, supabase):
    errors = []
    feed = CollectionFeed(ExpenseRepository(client, logger), manager, reconciler, logger)
    feed.set_listeners(on_error=errors.append)
    await feed.start()

    channel = supabase.channels[-1]
    channel.emit(change_payload("INSERT", {"id": "e9", "amount": "not-a-number"}))
    channel.emit(change_payload("INSERT", expense_row("e4", "2026-02-20")))
    await settle()

    assert [error.fatal for error in errors] == [False]
    assert feed.is_running
    assert ids(feed.snapshot) == ["e4", "e2", "e1", "e3"]
    await feed.stop()


@pytest.mark.asyncio
async def test_refresh_in_flight_at_stop_is_discarded(client, logger, manager, reconciler, supabase):
    changes = []
    repository = GatedExpenseRepository(client, logger)
    repository.gate.set()
    feed = CollectionFeed(repository, manager, reconciler, logger, on_change=changes.append)
    await feed.start()
    notified = len(changes)

    repository.gate.clear()
    repository.fetching.clear()
    supabase.tables["expenses"].append(expense_row("e5", "2026-02-28"))
    supabase.channels[-1].report("CLOSED")
    await repository.fetching.wait()

    await feed.stop()
    repository.gate.set()
    await settle()

    assert ids(feed.snapshot) == ["e2", "e1", "e3"]
    assert len(changes) == notified
