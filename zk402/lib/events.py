"""
Live lifecycle event fan-out.

Each subscriber owns a bounded queue. publish() delivers to every
subscriber connected at that moment, in publish order, and never blocks or
raises: a subscriber whose queue is full or whose loop is gone is dropped.
There is no history for late subscribers.
"""
import asyncio
import json
import logging
import threading
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from ..models.common import EventStatus, LifecycleEvent

logger = logging.getLogger("events")


class EventStep(str, Enum):
    CONNECTED = "connected"
    FLOW_RESET = "flow_reset"
    FLOW_ERROR = "flow_error"
    PROOF_GENERATING = "zkml_proof_generating"
    PROOF_RECEIVED = "zkml_proof_received"
    PAYMENT_REQUIRED = "payment_required"
    VERIFY_STARTED = "verify_started"
    BINDING_CHECK = "zkml_binding_check"
    PROOF_REJECTED = "zkml_proof_rejected"
    PROOF_VERIFIED = "zkml_proof_verified"
    SETTLEMENT_PENDING = "settlement_pending"
    SETTLEMENT_COMPLETED = "settlement_completed"
    VERIFY_COMPLETED = "verify_completed"


def now_ms() -> int:
    return int(time.time() * 1000)


def make_event(
    step: EventStep,
    title: str,
    description: str,
    actor: str,
    status: EventStatus,
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> LifecycleEvent:
    return LifecycleEvent(
        step=step.value,
        title=title,
        description=description,
        actor=actor,
        status=status,
        details=details,
        timestamp=now_ms(),
        request_id=request_id,
    )


def format_sse(event: LifecycleEvent) -> str:
    """One server-sent-events message."""
    return f"data: {json.dumps(event.wire())}\n\n"


class Subscription:
    def __init__(self, bus: "EventBus", maxsize: int):
        self._bus = bus
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self.closed = False

    def _deliver(self, event: LifecycleEvent) -> None:
        if self.closed:
            raise RuntimeError("subscription closed")
        if self._loop is None:
            self.queue.put_nowait(event)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self.queue.put_nowait(event)
        else:
            if self._loop.is_closed():
                raise RuntimeError("subscriber loop closed")
            if self.queue.full():
                raise asyncio.QueueFull()
            self._loop.call_soon_threadsafe(self._enqueue, event)

    def _enqueue(self, event: LifecycleEvent) -> None:
        # runs on the subscriber loop; the queue may have filled since _deliver looked
        if self.closed:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Dropping event subscriber: QueueFull")
            self._bus.unsubscribe(self)

    async def get(self) -> LifecycleEvent:
        return await self.queue.get()

    def drain(self) -> List[LifecycleEvent]:
        """Everything delivered so far, without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        self._bus.unsubscribe(self)


class EventBus:
    def __init__(self, max_queue: int = 256):
        self.max_queue = max_queue
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self.max_queue)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            sub.closed = True
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def publish(self, event: LifecycleEvent) -> None:
        # the lock spans the whole fan-out so concurrent publishers cannot
        # interleave differently for different subscribers
        with self._lock:
            broken = []
            for sub in self._subscribers:
                try:
                    sub._deliver(event)
                except (asyncio.QueueFull, RuntimeError) as e:
                    logger.warning(f"Dropping event subscriber: {type(e).__name__}")
                    broken.append(sub)
            for sub in broken:
                sub.closed = True
                self._subscribers.remove(sub)

    def emit(
        self,
        step: EventStep,
        title: str,
        description: str,
        actor: str,
        status: EventStatus,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> LifecycleEvent:
        event = make_event(step, title, description, actor, status, details, request_id)
        self.publish(event)
        return event
