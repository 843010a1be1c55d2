"""
Event bus for backtest lifecycle and progress events.

Subscriptions are keyed by run id, or None for every run. Each subscription
owns a bounded queue drained by its own dispatcher task, so:
- publish() never waits on handlers
- every subscriber sees its events in publish order
- a slow or failing handler only affects its own subscription

Events published before a subscription exists are not replayed.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from simtrade_engine.config import get_settings
from simtrade_engine.logging import get_logger

logger = get_logger(__name__)


class BacktestEventType(str, Enum):
    """Types of backtest events."""

    STARTED = "backtest.started"
    STATUS_CHANGED = "backtest.status_changed"
    PROGRESS = "backtest.progress"
    TRADE_EXECUTED = "backtest.trade_executed"
    EQUITY_UPDATE = "backtest.equity_update"
    COMPLETED = "backtest.completed"
    FAILED = "backtest.failed"
    CANCELLED = "backtest.cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            BacktestEventType.COMPLETED,
            BacktestEventType.FAILED,
            BacktestEventType.CANCELLED,
        )


@dataclass
class Event:
    """
    An event for a single run.

    Carries type, run id, timestamp, and a JSON-serializable payload.
    """

    type: BacktestEventType
    run_id: str
    data: dict[str, Any] = field(default_factory=dict)
    id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __hash__(self) -> int:
        return hash(self.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "run_id": self.run_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


# Handlers may be plain callables or coroutine functions
EventHandler = Callable[[Event], Awaitable[None] | None]
Unsubscribe = Callable[[], Awaitable[None]]


@dataclass
class BusStats:
    """Event bus statistics."""

    events_published: int = 0
    events_delivered: int = 0
    events_dropped: int = 0
    handler_errors: int = 0
    last_publish_ts: datetime | None = None


@dataclass(eq=False)
class _Subscription:
    run_id: str | None
    handler: EventHandler
    queue: asyncio.Queue[Event]
    task: asyncio.Task[None] | None = None


class EventBus:
    """
    In-process pub/sub keyed by run id.

    Supports:
    - Per-run and wildcard (run_id=None) subscriptions
    - Sync or async handlers
    - Non-blocking publish with per-subscriber FIFO delivery
    """

    def __init__(self, queue_size: int = 1000) -> None:
        self._queue_size = queue_size
        self._subscriptions: dict[str | None, list[_Subscription]] = {}
        self._lock = asyncio.Lock()
        self.stats = BusStats()

    async def subscribe(self, run_id: str | None, handler: EventHandler) -> Unsubscribe:
        """
        Subscribe to events.

        Args:
            run_id: Run to follow, or None for all runs
            handler: Called once per event, in publish order

        Returns:
            Async callable that removes the subscription
        """
        sub = _Subscription(
            run_id=run_id,
            handler=handler,
            queue=asyncio.Queue(maxsize=self._queue_size),
        )
        sub.task = asyncio.create_task(self._dispatch(sub))

        async with self._lock:
            self._subscriptions.setdefault(run_id, []).append(sub)

        async def unsubscribe() -> None:
            await self._remove(sub)

        return unsubscribe

    async def publish(self, event: Event) -> None:
        """
        Queue an event for every matching subscriber without waiting for delivery.

        Args:
            event: Event to publish
        """
        async with self._lock:
            targets = list(self._subscriptions.get(event.run_id, ()))
            targets.extend(self._subscriptions.get(None, ()))

        self.stats.events_published += 1
        self.stats.last_publish_ts = event.timestamp
        for sub in targets:
            self._enqueue(sub, event)

    def subscriber_count(self, run_id: str | None = None) -> int:
        """Number of subscriptions for a run (None counts wildcard subscriptions)."""
        return len(self._subscriptions.get(run_id, ()))

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        async with self._lock:
            subs = [s for group in self._subscriptions.values() for s in group]
        await asyncio.gather(*(s.queue.join() for s in subs))

    async def close(self) -> None:
        """Cancel all dispatcher tasks and drop every subscription."""
        async with self._lock:
            subs = [s for group in self._subscriptions.values() for s in group]
            self._subscriptions.clear()
        for sub in subs:
            await self._stop(sub)

    # =========================================================================
    # Internals
    # =========================================================================

    def _enqueue(self, sub: _Subscription, event: Event) -> None:
        try:
            sub.queue.put_nowait(event)
            return
        except asyncio.QueueFull:
            pass

        if not event.type.is_terminal:
            self.stats.events_dropped += 1
            logger.warning(
                "Subscriber queue full for run %s, dropped %s",
                sub.run_id or "*",
                event.type.value,
            )
            return

        # Terminal events always get through: evict the oldest queued event
        evicted = sub.queue.get_nowait()
        sub.queue.task_done()
        self.stats.events_dropped += 1
        logger.warning(
            "Subscriber queue full for run %s, evicted %s for %s",
            sub.run_id or "*",
            evicted.type.value,
            event.type.value,
        )
        sub.queue.put_nowait(event)

    async def _dispatch(self, sub: _Subscription) -> None:
        while True:
            event = await sub.queue.get()
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
                self.stats.events_delivered += 1
            except Exception:
                self.stats.handler_errors += 1
                logger.exception(
                    "Event handler failed for %s (run %s)", event.type.value, event.run_id
                )
            finally:
                sub.queue.task_done()

    async def _remove(self, sub: _Subscription) -> None:
        async with self._lock:
            group = self._subscriptions.get(sub.run_id)
            if group and sub in group:
                group.remove(sub)
                if not group:
                    del self._subscriptions[sub.run_id]
        await self._stop(sub)

    async def _stop(self, sub: _Subscription) -> None:
        if sub.task is None or sub.task.done():
            return
        sub.task.cancel()
        try:
            await sub.task
        except asyncio.CancelledError:
            pass


# Application-wide instance used by the HTTP layer
_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the application event bus instance."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus(queue_size=get_settings().event_queue_size)
    return _event_bus


def reset_event_bus() -> None:
    """Reset the application event bus (for testing)."""
    global _event_bus
    _event_bus = None
