"""
Server-Sent Events framing for backtest event streams.

Frames:
- ``data: <json>\\n\\n`` for every event
- ``: heartbeat\\n\\n`` when the stream has been idle for the heartbeat interval

The stream ends shortly after the run's terminal event.
"""

import asyncio
import json
from collections.abc import AsyncIterator

from simtrade_engine.backtest.models import BacktestRun, RunStatus
from simtrade_engine.interfaces.persistence import BacktestStore
from simtrade_engine.logging import get_logger
from simtrade_engine.runtime.event_bus import BacktestEventType, Event, EventBus

logger = get_logger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"

_TERMINAL_EVENTS = {
    RunStatus.COMPLETED: BacktestEventType.COMPLETED,
    RunStatus.FAILED: BacktestEventType.FAILED,
    RunStatus.CANCELLED: BacktestEventType.CANCELLED,
}


def format_sse(event: Event) -> str:
    """Render one event as an SSE data frame."""
    return f"data: {json.dumps(event.to_dict(), default=str)}\n\n"


def terminal_event(run: BacktestRun) -> Event:
    """Synthetic terminal event carrying a finished run's final record."""
    return Event(
        type=_TERMINAL_EVENTS[run.status],
        run_id=run.id,
        data=run.model_dump(mode="json"),
    )


async def stream_run_events(
    bus: EventBus,
    run_id: str | None,
    heartbeat_s: float,
    close_delay_s: float,
    store: BacktestStore | None = None,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for a run's events until shortly after it terminates.

    Args:
        bus: Event bus to subscribe to
        run_id: Run to follow, or None for every run (never closes on its own)
        heartbeat_s: Idle time before a heartbeat comment is sent
        close_delay_s: Grace period after a terminal event before closing
        store: Run store, checked once subscribed so a run that finished
            before the subscription still ends the stream
    """
    queue: asyncio.Queue[Event] = asyncio.Queue()
    unsubscribe = await bus.subscribe(run_id, queue.put_nowait)
    loop = asyncio.get_running_loop()
    close_at: float | None = None

    try:
        # The terminal event may have been published before we subscribed
        if run_id is not None and store is not None:
            run = await store.get_run(run_id)
            if run is not None and run.is_terminal:
                yield format_sse(terminal_event(run))
                return

        while True:
            if close_at is None:
                timeout = heartbeat_s
            else:
                timeout = close_at - loop.time()
                if timeout <= 0:
                    break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=timeout)
            except TimeoutError:
                if close_at is None:
                    yield HEARTBEAT_FRAME
                continue

            yield format_sse(event)
            if run_id is not None and event.type.is_terminal and close_at is None:
                close_at = loop.time() + close_delay_s
    finally:
        await unsubscribe()
        logger.debug("SSE stream for %s closed", run_id or "*")
