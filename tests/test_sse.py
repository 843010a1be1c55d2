"""
Tests for SSE framing of run events.
"""

import asyncio
import json

import pytest

from simtrade_engine.api.sse import HEARTBEAT_FRAME, format_sse, stream_run_events
from simtrade_engine.backtest.models import BacktestRun, RunStatus
from simtrade_engine.runtime.event_bus import BacktestEventType, Event, EventBus
from simtrade_engine.storage.memory import InMemoryBacktestStore
from tests.synthetic_bars import make_config


async def wait_for_subscriber(bus: EventBus, run_id: str) -> None:
    for _ in range(100):
        if bus.subscriber_count(run_id):
            return
        await asyncio.sleep(0)
    raise AssertionError("stream never subscribed")


class TestFormat:
    def test_data_frame(self) -> None:
        event = Event(type=BacktestEventType.PROGRESS, run_id="run-1", data={"bars_processed": 3})
        frame = format_sse(event)
        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        payload = json.loads(frame[len("data: ") :])
        assert payload["type"] == "backtest.progress"
        assert payload["data"]["bars_processed"] == 3


class TestStream:
    """Tests for stream_run_events."""

    @pytest.mark.asyncio
    async def test_stream_closes_after_terminal_event(self) -> None:
        bus = EventBus()

        async def collect() -> list[str]:
            frames = stream_run_events(bus, "run-1", heartbeat_s=5.0, close_delay_s=0.0)
            return [frame async for frame in frames]

        task = asyncio.create_task(collect())
        await wait_for_subscriber(bus, "run-1")

        await bus.publish(Event(type=BacktestEventType.PROGRESS, run_id="run-1"))
        await bus.publish(Event(type=BacktestEventType.PROGRESS, run_id="run-2"))
        await bus.publish(Event(type=BacktestEventType.COMPLETED, run_id="run-1"))
        frames = await asyncio.wait_for(task, timeout=5)

        types = [json.loads(f[len("data: ") :])["type"] for f in frames]
        assert types == ["backtest.progress", "backtest.completed"]
        assert bus.subscriber_count("run-1") == 0
        await bus.close()

    @pytest.mark.asyncio
    async def test_heartbeat_when_idle(self) -> None:
        bus = EventBus()
        frames = stream_run_events(bus, "run-1", heartbeat_s=0.01, close_delay_s=0.0)

        first = await asyncio.wait_for(frames.__anext__(), timeout=5)
        assert first == HEARTBEAT_FRAME

        await frames.aclose()
        assert bus.subscriber_count("run-1") == 0
        await bus.close()

    @pytest.mark.asyncio
    async def test_run_finished_before_subscribing(self) -> None:
        bus = EventBus()
        store = InMemoryBacktestStore()
        run = BacktestRun(id="run-1", config=make_config())
        await store.create_run(run)
        run.transition_to(RunStatus.RUNNING)
        await store.update_run(run)
        run.transition_to(RunStatus.COMPLETED)
        await store.update_run(run)
        # Nobody is listening yet, so this event is lost
        await bus.publish(Event(type=BacktestEventType.COMPLETED, run_id="run-1"))

        frames = stream_run_events(
            bus, "run-1", heartbeat_s=0.01, close_delay_s=0.0, store=store
        )
        collected = await asyncio.wait_for(_collect(frames), timeout=5)

        assert len(collected) == 1
        payload = json.loads(collected[0][len("data: ") :])
        assert payload["type"] == "backtest.completed"
        assert payload["data"]["status"] == "COMPLETED"
        assert bus.subscriber_count("run-1") == 0
        await bus.close()

    @pytest.mark.asyncio
    async def test_running_run_keeps_streaming(self) -> None:
        bus = EventBus()
        store = InMemoryBacktestStore()
        await store.create_run(BacktestRun(id="run-1", config=make_config()))

        frames = stream_run_events(
            bus, "run-1", heartbeat_s=0.01, close_delay_s=0.0, store=store
        )
        first = await asyncio.wait_for(frames.__anext__(), timeout=5)

        assert first == HEARTBEAT_FRAME
        await frames.aclose()
        await bus.close()


async def _collect(frames) -> list[str]:
    return [frame async for frame in frames]
