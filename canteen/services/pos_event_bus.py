"""
POS Event Bus - per-theater fan-out of order events to POS websocket clients

broadcast() never awaits a transport: it drops the frame on each
subscription's bounded outbound queue and returns. One writer task per
subscription drains the queue in FIFO order with a write timeout, so a slow
or hung client only ever tears itself down.
"""
import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from canteen.core.errors import SubscriptionClosedError
from canteen.schemas.pos import PosEvent

logger = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011


@dataclass(eq=False)
class Subscription:
    theater_id: str
    transport: Any  # anything with async send_json(dict) and close(code, reason)
    queue: asyncio.Queue
    handle: str = field(default_factory=lambda: uuid.uuid4().hex)
    is_alive: bool = True
    last_pong_at: float = field(default_factory=time.monotonic)
    closed: bool = False
    writer_task: Optional[asyncio.Task] = None
    heartbeat_task: Optional[asyncio.Task] = None

    def offer(self, frame: dict):
        """Queue a frame; raises SubscriptionClosedError or asyncio.QueueFull"""
        if self.closed:
            raise SubscriptionClosedError(f"Subscription {self.handle} is closed")
        self.queue.put_nowait(frame)


def _money(value) -> float:
    if value is None:
        return 0.0
    return float(value)


def build_order_projection(order) -> Dict[str, Any]:
    """Client-facing view of a PosOrder row (items ordered by position)"""
    items = sorted(order.items, key=lambda item: item.position)
    return {
        "orderId": str(order.id),
        "orderNumber": order.order_number,
        "theaterId": str(order.theater_id),
        "source": order.source,
        "status": order.status,
        "items": [
            {
                "productId": str(item.product_id) if item.product_id else None,
                "productName": item.product_name,
                "quantity": item.quantity,
                "unitPrice": _money(item.unit_price),
                "total": round(_money(item.unit_price) * item.quantity, 2),
            }
            for item in items
        ],
        "pricing": {
            "subtotal": _money(order.subtotal),
            "tax": _money(order.tax_amount),
            "total": _money(order.total_amount),
        },
        "payment": {
            "method": order.payment_method,
            "status": order.payment_status,
        },
        "customerName": order.customer_name,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
    }


class PosEventBus:
    """In-process registry {theater_id -> subscriptions}"""

    def __init__(
        self,
        heartbeat_interval: float = 30.0,
        write_timeout: float = 2.0,
        queue_size: int = 100,
    ):
        self.heartbeat_interval = heartbeat_interval
        self.write_timeout = write_timeout
        self.queue_size = queue_size
        self._registry: Dict[str, Set[Subscription]] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def is_closed(self) -> bool:
        return self._closed

    # ========== Registry ==========

    def _add(self, sub: Subscription):
        with self._lock:
            self._registry.setdefault(sub.theater_id, set()).add(sub)

    def _remove(self, sub: Subscription):
        with self._lock:
            subs = self._registry.get(sub.theater_id)
            if subs is None:
                return
            subs.discard(sub)
            if not subs:
                del self._registry[sub.theater_id]

    def _snapshot(self, theater_id: Optional[str] = None) -> list:
        with self._lock:
            if theater_id is None:
                return [sub for subs in self._registry.values() for sub in subs]
            return list(self._registry.get(theater_id, ()))

    def subscriber_count(self, theater_id: Optional[str] = None) -> int:
        return len(self._snapshot(str(theater_id) if theater_id is not None else None))

    def status(self) -> dict:
        with self._lock:
            theaters = {theater_id: len(subs) for theater_id, subs in self._registry.items()}
        return {
            "closed": self._closed,
            "total": sum(theaters.values()),
            "theaters": theaters,
        }

    # ========== Subscribe / unsubscribe ==========

    async def subscribe(self, theater_id, transport) -> Subscription:
        theater_id = str(theater_id)
        if self._closed:
            await self._close_transport(transport, CLOSE_INTERNAL_ERROR, "server shutdown")
            raise SubscriptionClosedError("POS event bus is shut down")

        self._loop = asyncio.get_running_loop()
        sub = Subscription(
            theater_id=theater_id,
            transport=transport,
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        sub.offer({"type": "connected", "theaterId": theater_id})
        self._add(sub)

        sub.writer_task = asyncio.create_task(self._writer(sub))
        sub.heartbeat_task = asyncio.create_task(self._heartbeat(sub))
        logger.info(f"POS client {sub.handle} subscribed to theater {theater_id}")
        return sub

    def mark_pong(self, sub: Subscription):
        sub.is_alive = True
        sub.last_pong_at = time.monotonic()

    async def unsubscribe(self, sub: Subscription, code: int = CLOSE_NORMAL, reason: str = ""):
        """Idempotent: remove, stop tasks, close transport"""
        await self._teardown(sub, code, reason)

    async def _close_transport(self, transport, code: int, reason: str):
        try:
            await asyncio.wait_for(transport.close(code=code, reason=reason), self.write_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Closing POS transport timed out after {self.write_timeout}s")
        except Exception as e:
            # Transport already gone
            logger.debug(f"Closing POS transport failed: {e}")

    async def _teardown(self, sub: Subscription, code: int, reason: str):
        if sub.closed:
            return
        sub.closed = True
        self._remove(sub)

        current = asyncio.current_task()
        for task in (sub.writer_task, sub.heartbeat_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        await self._close_transport(sub.transport, code, reason)
        logger.info(f"POS client {sub.handle} for theater {sub.theater_id} closed: {code} {reason}")

    def _teardown_later(self, sub: Subscription, code: int, reason: str):
        task = asyncio.get_running_loop().create_task(self._teardown(sub, code, reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ========== Per-subscription tasks ==========

    async def _writer(self, sub: Subscription):
        while True:
            frame = await sub.queue.get()
            try:
                await asyncio.wait_for(sub.transport.send_json(frame), self.write_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"POS client {sub.handle} write timed out; dropping subscription")
                await self._teardown(sub, CLOSE_INTERNAL_ERROR, "write timeout")
                return
            except Exception as e:
                logger.warning(f"POS client {sub.handle} send failed: {e}")
                await self._teardown(sub, CLOSE_INTERNAL_ERROR, "send failed")
                return

    async def _heartbeat(self, sub: Subscription):
        while not sub.closed:
            await asyncio.sleep(self.heartbeat_interval)
            if sub.closed:
                return
            if not sub.is_alive:
                logger.info(f"POS client {sub.handle} missed heartbeat")
                await self._teardown(sub, CLOSE_POLICY_VIOLATION, "heartbeat timeout")
                return
            sub.is_alive = False
            try:
                sub.offer({"type": "ping", "ts": int(time.time() * 1000)})
            except (asyncio.QueueFull, SubscriptionClosedError):
                await self._teardown(sub, CLOSE_INTERNAL_ERROR, "outbound queue full")
                return

    # ========== Broadcast ==========

    def broadcast(self, event: PosEvent) -> int:
        """Enqueue on every subscription of the event's theater; returns accepted count"""
        if self._closed:
            return 0

        frame = event.to_frame()
        delivered = 0
        for sub in self._snapshot(str(event.theater_id)):
            try:
                sub.offer(frame)
            except SubscriptionClosedError:
                continue
            except asyncio.QueueFull:
                logger.warning(f"POS client {sub.handle} outbound queue full; dropping subscription")
                self._teardown_later(sub, CLOSE_INTERNAL_ERROR, "outbound queue full")
                continue
            delivered += 1

        logger.debug(f"POS {event.event} {event.order_id} -> {delivered} client(s) of theater {event.theater_id}")
        return delivered

    def broadcast_threadsafe(self, event: PosEvent):
        """Schedule broadcast() on the bus loop from a worker thread"""
        if self._loop is None or self._closed:
            return
        self._loop.call_soon_threadsafe(self.broadcast, event)

    async def shutdown(self):
        """Close every subscription with 1011; later subscribers are refused"""
        self._closed = True
        subs = self._snapshot()
        if subs:
            logger.info(f"Closing {len(subs)} POS subscription(s)")
        await asyncio.gather(
            *(self._teardown(sub, CLOSE_INTERNAL_ERROR, "server shutdown") for sub in subs)
        )


class OrderEventPublisher:
    """Builds POS events from order rows and hands them to the bus"""

    def __init__(self, bus: PosEventBus):
        self.bus = bus

    def build_event(self, order, event: str) -> PosEvent:
        return PosEvent(
            theater_id=order.theater_id,
            event=event,
            order_id=str(order.id),
            payload=build_order_projection(order),
        )

    def publish(self, order, event: str = "created") -> int:
        return self.bus.broadcast(self.build_event(order, event))
