"""
PosEventBus: per-theater fan-out, ordering, slow clients, heartbeat, shutdown
"""
import asyncio
import threading
import time
import uuid
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest
from starlette.concurrency import run_in_threadpool

from canteen.core.errors import SubscriptionClosedError
from canteen.schemas.pos import PosEvent
from canteen.services.pos_event_bus import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    CLOSE_POLICY_VIOLATION,
    OrderEventPublisher,
    PosEventBus,
    build_order_projection,
)
from conftest import FakeTransport

T1 = uuid.uuid4()
T2 = uuid.uuid4()


def _event(event, order_id="O1", theater_id=T1):
    return PosEvent(theater_id=theater_id, event=event, order_id=order_id, payload={"orderId": order_id})


def _order_events(transport):
    return [(f["event"], f["orderId"]) for f in transport.frames if f["type"] == "pos_order"]


def test_subscribers_see_events_in_broadcast_order():
    bus = PosEventBus(heartbeat_interval=60)
    first, second, late = FakeTransport(), FakeTransport(), FakeTransport()

    async def scenario():
        await bus.subscribe(T1, first)
        await bus.subscribe(T1, second)
        delivered = [bus.broadcast(_event(name)) for name in ("created", "updated", "completed")]
        await asyncio.sleep(0.05)
        await bus.subscribe(T1, late)
        await asyncio.sleep(0.05)
        await bus.shutdown()
        return delivered

    delivered = asyncio.run(scenario())

    assert delivered == [2, 2, 2]
    expected = [("created", "O1"), ("updated", "O1"), ("completed", "O1")]
    assert _order_events(first) == expected
    assert _order_events(second) == expected
    assert _order_events(late) == []
    assert first.frames[0] == {"type": "connected", "theaterId": str(T1)}


def test_interleaved_broadcasts_keep_order_per_subscriber():
    bus = PosEventBus(heartbeat_interval=60, queue_size=500)
    client = FakeTransport()

    async def scenario():
        await bus.subscribe(T1, client)
        for i in range(50):
            bus.broadcast(_event("updated", order_id=f"O{i}"))
            if i % 7 == 0:
                await asyncio.sleep(0)
        await asyncio.sleep(0.1)
        await bus.shutdown()

    asyncio.run(scenario())

    assert [order_id for _, order_id in _order_events(client)] == [f"O{i}" for i in range(50)]


def test_broadcast_from_worker_thread_keeps_order():
    bus = PosEventBus(heartbeat_interval=60, queue_size=100)
    client = FakeTransport()

    def publish_from_thread():
        for i in range(10):
            bus.broadcast_threadsafe(_event("updated", order_id=f"O{i}"))

    async def scenario():
        await bus.subscribe(T1, client)
        worker = threading.Thread(target=publish_from_thread)
        worker.start()
        await run_in_threadpool(worker.join)
        await asyncio.sleep(0.1)
        await bus.shutdown()
        # no-op once the bus is closed
        bus.broadcast_threadsafe(_event("created", order_id="late"))
        await asyncio.sleep(0.01)

    asyncio.run(scenario())

    assert [order_id for _, order_id in _order_events(client)] == [f"O{i}" for i in range(10)]


def test_broadcast_is_scoped_to_theater():
    bus = PosEventBus(heartbeat_interval=60)
    ours, theirs = FakeTransport(), FakeTransport()

    async def scenario():
        await bus.subscribe(T1, ours)
        await bus.subscribe(T2, theirs)
        bus.broadcast(_event("created"))
        await asyncio.sleep(0.05)
        await bus.shutdown()

    asyncio.run(scenario())

    assert _order_events(ours) == [("created", "O1")]
    assert _order_events(theirs) == []


def test_hung_client_does_not_block_broadcast():
    bus = PosEventBus(heartbeat_interval=60, write_timeout=0.1)
    hung = [FakeTransport(hang=True) for _ in range(3)]
    healthy = FakeTransport()

    async def scenario():
        for transport in hung:
            await bus.subscribe(T1, transport)
        await bus.subscribe(T1, healthy)
        start = time.monotonic()
        bus.broadcast(_event("created"))
        elapsed = time.monotonic() - start
        await asyncio.sleep(0.3)
        remaining = bus.subscriber_count(T1)
        await bus.shutdown()
        return elapsed, remaining

    elapsed, remaining = asyncio.run(scenario())

    assert elapsed < 0.05
    assert _order_events(healthy) == [("created", "O1")]
    assert remaining == 1
    assert all(t.closed_with == (CLOSE_INTERNAL_ERROR, "write timeout") for t in hung)


def test_full_queue_drops_subscription():
    bus = PosEventBus(heartbeat_interval=60, write_timeout=5, queue_size=2)
    slow = FakeTransport(hang=True)

    async def scenario():
        await bus.subscribe(T1, slow)
        await asyncio.sleep(0)
        counts = [bus.broadcast(_event("updated", order_id=f"O{i}")) for i in range(4)]
        await asyncio.sleep(0.05)
        return counts

    counts = asyncio.run(scenario())

    assert counts[:2] == [1, 1]
    assert counts[-1] == 0
    assert bus.subscriber_count(T1) == 0


def test_missed_pong_closes_with_policy_violation():
    bus = PosEventBus(heartbeat_interval=0.05)
    client = FakeTransport()

    async def scenario():
        await bus.subscribe(T1, client)
        await asyncio.sleep(0.25)

    asyncio.run(scenario())

    assert any(f["type"] == "ping" for f in client.frames)
    assert client.closed_with == (CLOSE_POLICY_VIOLATION, "heartbeat timeout")
    assert bus.subscriber_count() == 0


def test_pong_keeps_subscription_alive():
    bus = PosEventBus(heartbeat_interval=0.05)
    client = FakeTransport()

    async def scenario():
        sub = await bus.subscribe(T1, client)
        for _ in range(6):
            await asyncio.sleep(0.03)
            bus.mark_pong(sub)
        alive = bus.subscriber_count(T1)
        await bus.unsubscribe(sub)
        await bus.unsubscribe(sub)
        return alive

    assert asyncio.run(scenario()) == 1
    assert client.closed_with == (CLOSE_NORMAL, "")


def test_shutdown_closes_and_refuses_new_subscribers():
    bus = PosEventBus(heartbeat_interval=60)
    existing, newcomer = FakeTransport(), FakeTransport()

    async def scenario():
        await bus.subscribe(T1, existing)
        await bus.shutdown()
        with pytest.raises(SubscriptionClosedError):
            await bus.subscribe(T1, newcomer)
        return bus.broadcast(_event("created"))

    assert asyncio.run(scenario()) == 0
    assert existing.closed_with == (CLOSE_INTERNAL_ERROR, "server shutdown")
    assert newcomer.closed_with == (CLOSE_INTERNAL_ERROR, "server shutdown")
    assert bus.status() == {"closed": True, "total": 0, "theaters": {}}


def _order():
    items = [
        SimpleNamespace(product_id=None, product_name="Cola", quantity=2, unit_price=Decimal("40.00"), position=1),
        SimpleNamespace(product_id=uuid.uuid4(), product_name="Popcorn", quantity=1,
                        unit_price=Decimal("150.50"), position=0),
    ]
    return SimpleNamespace(
        id=uuid.uuid4(),
        theater_id=T1,
        order_number="ORD-0001",
        source="pos",
        status="confirmed",
        items=items,
        subtotal=Decimal("230.50"),
        tax_amount=Decimal("11.53"),
        total_amount=Decimal("242.03"),
        payment_method="upi",
        payment_status="paid",
        customer_name="Walk-in",
        created_at=datetime(2025, 1, 10, 18, 30),
    )


def test_order_projection():
    projection = build_order_projection(_order())

    assert [item["productName"] for item in projection["items"]] == ["Popcorn", "Cola"]
    assert projection["items"][1]["total"] == 80.0
    assert projection["pricing"] == {"subtotal": 230.5, "tax": 11.53, "total": 242.03}
    assert projection["payment"] == {"method": "upi", "status": "paid"}
    assert projection["createdAt"] == "2025-01-10T18:30:00"


def test_publisher_broadcasts_projection():
    bus = PosEventBus(heartbeat_interval=60)
    client = FakeTransport()
    order = _order()

    async def scenario():
        await bus.subscribe(T1, client)
        count = OrderEventPublisher(bus).publish(order, "completed")
        await asyncio.sleep(0.05)
        await bus.shutdown()
        return count

    assert asyncio.run(scenario()) == 1
    frame = client.frames[-1]
    assert frame["event"] == "completed"
    assert frame["orderId"] == str(order.id)
    assert frame["order"]["orderNumber"] == "ORD-0001"
