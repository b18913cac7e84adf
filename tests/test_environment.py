import asyncio

import pytest

from sheetsync.environment import AsyncioEnvironment, SignalSource
from sheetsync.store import FallbackStore


class ManualClock:
    def __init__(self) -> None:
        self.now = 50.0

    def __call__(self) -> float:
        return self.now


class RecordingScheduler:
    def __init__(self) -> None:
        self.calls = []

    def __call__(self, delay, callback):
        handle = _Handle(delay, callback)
        self.calls.append(handle)
        return handle


class _Handle:
    def __init__(self, delay, callback) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


def test_activity_bursts_are_debounced():
    clock = ManualClock()
    schedule = RecordingScheduler()
    signals = SignalSource(debounce_seconds=1.0, monotonic=clock, schedule=schedule)
    notified = []
    signals.add_activity_listener(lambda: notified.append(clock.now))

    signals.record_activity("pointermove")
    signals.record_activity("keydown")
    signals.record_activity("scroll")

    assert [handle.cancelled for handle in schedule.calls] == [True, True, False]
    assert notified == []

    clock.now = 52.0
    schedule.calls[-1].callback()

    assert notified == [52.0]
    assert signals.last_activity_at == 52.0


def test_unknown_activity_events_are_ignored():
    schedule = RecordingScheduler()
    signals = SignalSource(schedule=schedule)

    signals.record_activity("resize")

    assert schedule.calls == []


def test_zero_debounce_commits_immediately():
    clock = ManualClock()
    signals = SignalSource(debounce_seconds=0, monotonic=clock)
    notified = []
    signals.add_activity_listener(lambda: notified.append(True))

    clock.now = 60.0
    signals.record_activity("click")

    assert notified == [True]
    assert signals.last_activity_at == 60.0


def test_becoming_visible_counts_as_activity():
    clock = ManualClock()
    signals = SignalSource(visible=False, monotonic=clock)
    seen = []
    signals.add_visibility_listener(seen.append)

    clock.now = 70.0
    signals.set_visible(True)
    signals.set_visible(True)
    signals.set_visible(False)

    assert seen == [True, False]
    assert signals.last_activity_at == 70.0
    assert not signals.is_visible


def test_detach_and_close_remove_listeners():
    signals = SignalSource(schedule=RecordingScheduler())
    detach = signals.add_visibility_listener(lambda visible: None)
    signals.add_activity_listener(lambda: None)

    detach()
    detach()
    assert signals.listener_count == 1

    signals.close()
    assert signals.listener_count == 0


def test_failing_listener_does_not_block_others():
    signals = SignalSource(visible=False)
    seen = []

    def broken(visible):
        raise RuntimeError("boom")

    signals.add_visibility_listener(broken)
    signals.add_visibility_listener(seen.append)

    signals.set_visible(True)

    assert seen == [True]


@pytest.mark.asyncio
async def test_asyncio_environment_schedules_on_loop(tmp_path):
    environment = AsyncioEnvironment(store=FallbackStore(tmp_path), debounce_seconds=0.01)
    fired = asyncio.Event()

    environment.schedule(0.01, fired.set)
    await asyncio.wait_for(fired.wait(), timeout=1.0)

    environment.persist("key", {"value": 1})
    assert environment.recall("key") == {"value": 1}


@pytest.mark.asyncio
async def test_asyncio_environment_debounces_activity():
    environment = AsyncioEnvironment(debounce_seconds=0.01)
    notified = asyncio.Event()
    environment.add_activity_listener(notified.set)

    environment.signals.record_activity("click")

    await asyncio.wait_for(notified.wait(), timeout=1.0)
    assert environment.recall("anything") is None
