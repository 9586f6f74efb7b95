import asyncio

import pytest

from conftest import change_payload, expense_row

from expenditure.errors import SubscriptionError
from expenditure.models.enums import ChangeKind, SubscriptionState
from expenditure.models.events import ChangeEvent, SubscriptionErrorEvent
from expenditure.models.expense import Expense
from expenditure.subscriptions import SubscriptionHandle, SubscriptionManager, decode_change


async def settle(rounds=50):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def manager(client, logger):
    return SubscriptionManager(
        client, logger, reconnect_base_s=0.0, reconnect_max_s=0.0, max_reconnect_attempts=3,
    )


# ---------------------------------------------------------------------------
# Payload decoding
# ---------------------------------------------------------------------------

def test_decode_nested_insert():
    event = decode_change(
        "expenses", change_payload("INSERT", expense_row("e9", "2026-03-01")), Expense,
    )
    assert event.kind == ChangeKind.INSERTED
    assert event.record_id == "e9"
    assert event.commit_timestamp is not None


def test_decode_flat_update():
    payload = {"eventType": "UPDATE", "new": expense_row("e1", "2026-03-01", "approved"), "old": {"id": "e1"}}
    event = decode_change("expenses", payload, Expense)
    assert event.kind == ChangeKind.UPDATED
    assert event.record.status == "approved"


def test_decode_delete_with_primary_key_only():
    event = decode_change("expenses", change_payload("DELETE", old={"id": "e1"}), Expense)
    assert event.kind == ChangeKind.DELETED
    assert event.record_id == "e1"


def test_decode_ignores_non_row_payload():
    assert decode_change("expenses", {"data": {"type": "SYSTEM"}}, Expense) is None


def test_decode_without_id_raises():
    with pytest.raises(SubscriptionError):
        decode_change("expenses", change_payload("INSERT", {"amount": "1"}), Expense)


def test_decode_invalid_insert_raises():
    with pytest.raises(SubscriptionError):
        decode_change("expenses", change_payload("INSERT", {"id": "e1", "amount": "x"}), Expense)


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_events_delivered_in_receipt_order(manager, supabase):
    received = []
    handle = await manager.subscribe("expenses", received.append)
    channel = supabase.channels[-1]

    assert channel.params == {"event": "*", "table": "expenses", "schema": "public"}
    assert handle.state == SubscriptionState.STREAMING

    channel.emit(change_payload("INSERT", expense_row("e9", "2026-03-01")))
    channel.emit(change_payload("UPDATE", expense_row("e9", "2026-03-02")))
    channel.emit(change_payload("DELETE", old={"id": "e9"}))
    await settle()

    assert [event.kind for event in received] == [
        ChangeKind.INSERTED, ChangeKind.UPDATED, ChangeKind.DELETED,
    ]
    await handle.cancel()


@pytest.mark.asyncio
async def test_handler_invocations_never_overlap(manager, supabase):
    running = 0
    peak = 0
    seen = []

    async def handler(event):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0)
        seen.append(event.record_id)
        running -= 1

    handle = await manager.subscribe("expenses", handler)
    for n in range(5):
        supabase.channels[-1].emit(change_payload("INSERT", expense_row(f"e{n}", "2026-03-01")))
    await settle()

    assert peak == 1
    assert seen == ["e0", "e1", "e2", "e3", "e4"]
    await handle.cancel()


@pytest.mark.asyncio
async def test_handler_exception_does_not_stop_stream(manager, supabase, log_stream):
    received = []

    def handler(event):
        if event.record_id == "bad":
            raise RuntimeError("boom")
        received.append(event.record_id)

    handle = await manager.subscribe("expenses", handler)
    channel = supabase.channels[-1]
    channel.emit(change_payload("INSERT", expense_row("bad", "2026-03-01")))
    channel.emit(change_payload("INSERT", expense_row("good", "2026-03-01")))
    await settle()

    assert received == ["good"]
    assert "handler for expenses raised" in log_stream.getvalue()
    await handle.cancel()


@pytest.mark.asyncio
async def test_undecodable_event_reported_and_stream_continues(manager, supabase):
    received = []
    handle = await manager.subscribe("expenses", received.append)
    channel = supabase.channels[-1]
    channel.emit(change_payload("INSERT", {"amount": "1"}))
    channel.emit(change_payload("INSERT", expense_row("e9", "2026-03-01")))
    await settle()

    assert isinstance(received[0], SubscriptionErrorEvent)
    assert received[0].fatal is False
    assert isinstance(received[1], ChangeEvent)
    assert handle.is_active
    await handle.cancel()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_is_idempotent_and_stops_delivery(manager, supabase):
    received = []
    handle = await manager.subscribe("expenses", received.append)
    channel = supabase.channels[-1]

    await handle.cancel()
    await handle.cancel()
    channel.emit(change_payload("INSERT", expense_row("e9", "2026-03-01")))
    await settle()

    assert received == []
    assert channel.removed
    assert handle.state == SubscriptionState.CLOSED
    assert manager.active == ()


@pytest.mark.asyncio
async def test_cancel_lets_running_handler_finish(manager, supabase):
    release = asyncio.Event()
    finished = []

    async def handler(event):
        await release.wait()
        finished.append(event.record_id)

    handle = await manager.subscribe("expenses", handler)
    channel = supabase.channels[-1]
    channel.emit(change_payload("INSERT", expense_row("e1", "2026-03-01")))
    channel.emit(change_payload("INSERT", expense_row("e2", "2026-03-01")))
    await settle()

    cancelling = asyncio.ensure_future(handle.cancel())
    await settle()
    assert not cancelling.done()

    release.set()
    await cancelling
    await settle()

    assert finished == ["e1"]


@pytest.mark.asyncio
async def test_cancel_from_inside_handler(manager, supabase):
    received = []
    holder = {}

    async def handler(event):
        received.append(event.record_id)
        await holder["handle"].cancel()

    holder["handle"] = await manager.subscribe("expenses", handler)
    channel = supabase.channels[-1]
    channel.emit(change_payload("INSERT", expense_row("e1", "2026-03-01")))
    channel.emit(change_payload("INSERT", expense_row("e2", "2026-03-01")))
    await settle()

    assert received == ["e1"]
    assert holder["handle"].state == SubscriptionState.CLOSED


@pytest.mark.asyncio
async def test_close_all_cancels_every_subscription(manager, supabase):
    await manager.subscribe("expenses", lambda event: None)
    await manager.subscribe("expense_categories", lambda event: None)
    assert len(manager.active) == 2

    await manager.close_all()

    assert manager.active == ()
    assert supabase.live_channels == []


@pytest.mark.asyncio
async def test_unknown_collection_rejected(manager):
    with pytest.raises(SubscriptionError):
        await manager.subscribe("invoices", lambda event: None)


# ---------------------------------------------------------------------------
# Reconnection
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_dropped_stream_reconnects_and_resumes(manager, supabase):
    received = []
    resumed = []
    handle = await manager.subscribe(
        "expenses", received.append, on_resumed=lambda: resumed.append(True),
    )
    first = supabase.channels[-1]

    first.report("CHANNEL_ERROR", RuntimeError("socket closed"))
    await settle()

    assert len(supabase.channels) == 2
    assert first.removed
    assert handle.state == SubscriptionState.STREAMING
    assert resumed == [True]

    # Late callbacks from the replaced channel are ignored.
    first.emit(change_payload("INSERT", expense_row("old", "2026-03-01")))
    supabase.channels[-1].emit(change_payload("INSERT", expense_row("new", "2026-03-01")))
    await settle()

    assert [event.record_id for event in received] == ["new"]
    await handle.cancel()


@pytest.mark.asyncio
async def test_reconnect_budget_exhausted_reports_error_event(client, logger, supabase):
    manager = SubscriptionManager(
        client, logger, reconnect_base_s=0.0, max_reconnect_attempts=2,
    )
    received = []
    handle = await manager.subscribe("expenses", received.append)

    supabase.subscribe_errors.extend([ConnectionError("down"), ConnectionError("down")])
    supabase.channels[-1].report("TIMED_OUT")
    await settle()

    assert len(received) == 1
    error = received[0]
    assert isinstance(error, SubscriptionErrorEvent)
    assert error.collection == "expenses"
    assert error.attempts == 2
    assert error.fatal
    assert handle.state == SubscriptionState.CLOSED
    assert manager.active == ()
    assert supabase.live_channels == []


@pytest.mark.asyncio
async def test_open_failure_is_reported_not_raised(client, logger, supabase):
    manager = SubscriptionManager(client, logger, max_reconnect_attempts=0)
    supabase.subscribe_errors.append(ConnectionError("refused"))
    received = []

    handle = await manager.subscribe("expenses", received.append)
    await settle()

    assert handle.state == SubscriptionState.CLOSED
    assert isinstance(received[0], SubscriptionErrorEvent)


@pytest.mark.asyncio
async def test_backoff_delay_doubles_and_caps(client, logger):
    manager = SubscriptionManager(
        client, logger, reconnect_base_s=1.0, reconnect_max_s=5.0,
    )
    handle = SubscriptionHandle(manager, "expenses", lambda event: None, Expense)

    delays = []
    for attempts in range(1, 6):
        handle._attempts = attempts
        delays.append(handle._backoff_delay())

    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_cancel_from_inside_handler_ends_consumer_task(manager, supabase):
    holder = {}

    async def handler(event):
        await holder["handle"].cancel()

    holder["handle"] = await manager.subscribe("expenses", handler)
    consumer = holder["handle"]._consumer
    supabase.channels[-1].emit(change_payload("INSERT", expense_row("e1", "2026-03-01")))
    await settle()

    assert consumer.done()
    assert manager.active == ()


@pytest.mark.asyncio
async def test_cancel_stops_running_resume_callback(manager, supabase):
    release = asyncio.Event()
    finished = []

    async def on_resumed():
        await release.wait()
        finished.append(True)

    handle = await manager.subscribe("expenses", lambda event: None, on_resumed=on_resumed)
    supabase.channels[-1].report("CLOSED")
    await settle()
    resume_task = handle._resume_task
    assert resume_task is not None and not resume_task.done()

    await handle.cancel()
    release.set()
    await settle()

    assert resume_task.cancelled()
    assert finished == []
