"""
broadcast.py — Realtime Broadcast Channel

One logical topic per order. Customers, pharmacies and delivery agents subscribe
to an order's topic and receive `status_changed` and `location_updated` events.

Delivery guarantees:
    • at-most-once per event and active subscriber (no replay after reconnect)
    • publish never blocks: a full subscriber buffer drops the event with a warning
    • events of one order reach each subscriber in publish order

WebSocket streams use AsyncSubscription, which hands events to the event loop with
call_soon_threadsafe, so an open stream holds no worker thread while it waits.
"""

import asyncio
import logging
import queue
import threading
import uuid
from typing import Callable, Dict, List, Optional

from . import config
from .models import OrderEvent

log = logging.getLogger(__name__)


class Subscription:
    """
    A subscriber's handle on one order topic.

    Usable as a context manager so the subscription ends with the caller's scope.
    """

    def __init__(self, channel, order_id: str, subscriber_id: str, maxsize: int):
        self.channel = channel
        self.order_id = order_id
        self.subscriber_id = subscriber_id
        self._events = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def offer(self, event: OrderEvent) -> bool:
        try:
            self._events.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            return False

    def get(self, timeout: Optional[float] = None) -> Optional[OrderEvent]:
        """Next event, or None if nothing arrived within timeout."""
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[OrderEvent]:
        events = []
        while True:
            try:
                events.append(self._events.get_nowait())
            except queue.Empty:
                return events

    def close(self):
        self.channel.unsubscribe(self.order_id, self.subscriber_id)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class AsyncSubscription(Subscription):
    """
    Subscription consumed from an asyncio event loop.

    Publishers run on worker or listener threads; offer() only schedules the
    enqueue on the loop and never waits for it.
    """

    def __init__(self, channel, order_id: str, subscriber_id: str, maxsize: int,
                 loop: asyncio.AbstractEventLoop):
        super().__init__(channel, order_id, subscriber_id, maxsize)
        self._loop = loop
        self._events = asyncio.Queue(maxsize=maxsize)

    def offer(self, event: OrderEvent) -> bool:
        try:
            self._loop.call_soon_threadsafe(self._enqueue, event)
        except RuntimeError:
            # loop already closed
            self.dropped += 1
            return False
        return True

    def _enqueue(self, event: OrderEvent):
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            log.warning(
                f"[Order: {self.order_id}] Subscriber {self.subscriber_id} is not "
                f"keeping up; dropped {event.type}."
            )

    async def next_event(self) -> OrderEvent:
        return await self._events.get()

    def get(self, timeout: Optional[float] = None):
        raise TypeError("AsyncSubscription is read with 'await next_event()' on its event loop.")

    def drain(self) -> List[OrderEvent]:
        events = []
        while True:
            try:
                events.append(self._events.get_nowait())
            except asyncio.QueueEmpty:
                return events


class BroadcastChannel:
    """In-process publish/subscribe hub with one topic per order."""

    def __init__(self, queue_size: int = config.SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._topics: Dict[str, Dict[str, Subscription]] = {}
        self._relays: List[Callable[[OrderEvent], None]] = []
        self._lock = threading.Lock()

    def add_relay(self, relay: Callable[[OrderEvent], None]):
        """Registers a sink that receives every event of every order (e.g. the MQ relay)."""
        self._relays.append(relay)

    def subscribe(self, order_id: str, subscriber_id: Optional[str] = None,
                  loop: Optional[asyncio.AbstractEventLoop] = None) -> Subscription:
        """
        Joins the order's topic. Passing an event loop returns an AsyncSubscription
        delivering on that loop.
        """
        subscriber_id = subscriber_id or str(uuid.uuid4())
        with self._lock:
            topic = self._topics.setdefault(order_id, {})
            subscription = topic.get(subscriber_id)
            if subscription is None:
                if loop is not None:
                    subscription = AsyncSubscription(self, order_id, subscriber_id, self.queue_size, loop)
                else:
                    subscription = Subscription(self, order_id, subscriber_id, self.queue_size)
                topic[subscriber_id] = subscription
                log.info(f"[Order: {order_id}] Subscriber {subscriber_id} joined ({len(topic)} active).")
            return subscription

    def unsubscribe(self, order_id: str, subscriber_id: str):
        with self._lock:
            topic = self._topics.get(order_id)
            if not topic or subscriber_id not in topic:
                return
            subscription = topic.pop(subscriber_id)
            subscription.closed = True
            if not topic:
                del self._topics[order_id]
        log.info(f"[Order: {order_id}] Subscriber {subscriber_id} left.")

    def subscriber_count(self, order_id: str) -> int:
        with self._lock:
            return len(self._topics.get(order_id, {}))

    def publish(self, event: OrderEvent):
        """
        Fans the event out to the order's subscribers and relays.

        Never raises: undeliverable events are logged and dropped.
        """
        with self._lock:
            subscribers = list(self._topics.get(event.orderId, {}).values())

        if not subscribers:
            log.debug(f"[Order: {event.orderId}] No subscribers for {event.type}.")
        for subscription in subscribers:
            if not subscription.offer(event):
                log.warning(
                    f"[Order: {event.orderId}] Subscriber {subscription.subscriber_id} is not "
                    f"keeping up; dropped {event.type}."
                )

        for relay in self._relays:
            try:
                relay(event)
            except Exception as e:
                log.error(f"[Order: {event.orderId}] Event relay failed for {event.type}: {e}")
