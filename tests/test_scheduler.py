"""Tests for the adaptive poll scheduler.

All timing runs on the manual clock of ``FakeEnvironment``: timers fire only
when a test calls ``env.fire_next()``, which also advances the clock by the
timer's delay.
"""

import asyncio

import pytest

from sheetsync.backoff import FailureKind
from sheetsync.cache import DataCache, TTLSettings
from sheetsync.delta import DeltaDetector
from sheetsync.profiles import SALES_PROFILE
from sheetsync.scheduler import (
    NoDataAvailableError,
    PollIntervals,
    PollScheduler,
    SchedulerState,
    SyncStatus,
)
from sheetsync.source import QuotaExceededError, SourceError, SourceParseError


def _scheduler(env, fetcher, updates, *, statuses=None, intervals=None):
    cache = DataCache(
        fetcher,
        key="sales",
        environment=env,
        ttl=TTLSettings(base_seconds=10, pending_seconds=5, degraded_seconds=120),
        has_pending=SALES_PROFILE.has_pending_items,
    )
    on_status = None
    if statuses is not None:
        on_status = lambda name, status: statuses.append(status)  # noqa: E731
    return PollScheduler(
        cache,
        updates.append,
        environment=env,
        detector=DeltaDetector(SALES_PROFILE.fingerprint_fields),
        intervals=intervals,
        on_status_change=on_status,
    )


async def _settle(scheduler):
    await asyncio.sleep(0)
    task = scheduler._cycle_task
    if task is not None:
        await task


@pytest.mark.asyncio
async def test_initial_load_delivers_records(env, make_fetcher, three_records):
    updates = []
    scheduler = _scheduler(env, make_fetcher(three_records), updates)

    scheduler.start()
    await _settle(scheduler)

    assert len(updates) == 1
    assert len(updates[0].dataset) == 3
    assert scheduler.status is SyncStatus.SYNCED
    assert scheduler.state is SchedulerState.WAITING
    assert [timer.delay for timer in env.pending_timers] == [45]

    await scheduler.stop()


@pytest.mark.asyncio
async def test_unchanged_poll_does_not_notify(env, make_fetcher, make_sales, three_records):
    changed = make_sales(
        ("m-1", "Resolved", "2024-05-01 10:00:00"),
        ("m-2", "Resolved", "2024-05-02 10:00:00"),
        ("m-3", "Resolved", "2024-05-04 10:00:00"),
    )
    fetcher = make_fetcher(three_records, three_records, changed)
    updates = []
    scheduler = _scheduler(env, fetcher, updates)

    scheduler.start()
    await _settle(scheduler)

    env.fire_next()
    await _settle(scheduler)
    assert fetcher.calls == 2
    assert len(updates) == 1
    assert scheduler.status is SyncStatus.SYNCED

    env.fire_next()
    await _settle(scheduler)
    assert fetcher.calls == 3
    assert len(updates) == 2
    assert updates[-1].dataset == changed

    await scheduler.stop()


@pytest.mark.asyncio
async def test_quota_failure_serves_stale_and_lengthens_interval(
    env, make_fetcher, three_records
):
    fetcher = make_fetcher(three_records, QuotaExceededError("quota", status=429))
    updates = []
    scheduler = _scheduler(env, fetcher, updates)

    scheduler.start()
    await _settle(scheduler)
    normal_interval = scheduler.next_interval

    env.fire_next()
    await _settle(scheduler)

    assert fetcher.calls == 2
    assert len(updates) == 1
    assert scheduler.status is SyncStatus.DELAYED
    assert scheduler.last_result.error is FailureKind.QUOTA_EXCEEDED
    assert len(scheduler.last_result.dataset) == 3
    assert scheduler.context().is_degraded
    assert scheduler.next_interval > normal_interval
    assert scheduler.next_interval == 45 + 60

    await scheduler.stop()


@pytest.mark.asyncio
async def test_hidden_dashboard_skips_polls_until_visible(env, make_fetcher, three_records):
    fetcher = make_fetcher(three_records)
    scheduler = _scheduler(env, fetcher, [])

    scheduler.start()
    await _settle(scheduler)

    env.set_visible(False)
    for _ in range(2):
        env.fire_next()
        await _settle(scheduler)
        assert fetcher.calls == 1
        assert len(env.pending_timers) == 1

    env.set_visible(True)
    await _settle(scheduler)

    assert fetcher.calls == 2
    assert len(env.pending_timers) == 1

    await scheduler.stop()


@pytest.mark.asyncio
async def test_pending_items_use_fast_interval(env, make_fetcher, make_sales):
    scheduler = _scheduler(env, make_fetcher(make_sales(("m-1", "Pending", ""))), [])

    scheduler.start()
    await _settle(scheduler)

    assert scheduler.next_interval == 20

    await scheduler.stop()


@pytest.mark.asyncio
async def test_idle_user_gets_slow_interval_then_cutoff(env, make_fetcher, three_records):
    scheduler = _scheduler(env, make_fetcher(three_records), [])
    scheduler.start()
    await _settle(scheduler)

    env.activity_at = env.now - 120
    assert scheduler.current_poll_interval() == 90
    assert scheduler.should_poll()

    env.activity_at = env.now - 400
    assert not scheduler.should_poll()

    await scheduler.stop()


@pytest.mark.asyncio
async def test_idle_cutoff_can_be_disabled(env, make_fetcher, three_records):
    scheduler = _scheduler(
        env,
        make_fetcher(three_records),
        [],
        intervals=PollIntervals(idle_cutoff_seconds=0),
    )

    env.activity_at = env.now - 10_000

    assert scheduler.should_poll()


@pytest.mark.asyncio
async def test_activity_reschedules_waiting_timer(env, make_fetcher, three_records):
    env.activity_at = env.now - 120
    scheduler = _scheduler(env, make_fetcher(three_records), [])
    scheduler.start()
    await _settle(scheduler)

    idle_timer = env.pending_timers[0]
    assert idle_timer.delay == 90

    env.record_activity()

    assert idle_timer.cancelled
    assert [timer.delay for timer in env.pending_timers] == [45]

    await scheduler.stop()


@pytest.mark.asyncio
async def test_steady_activity_does_not_postpone_poll(env, make_fetcher, three_records):
    fetcher = make_fetcher(three_records)
    scheduler = _scheduler(env, fetcher, [])
    scheduler.start()
    await _settle(scheduler)

    timer = env.pending_timers[0]
    assert timer.delay == 45

    for _ in range(5):
        env.advance(10)
        env.record_activity()

    assert not timer.cancelled
    assert env.pending_timers == [timer]

    await scheduler.stop()


@pytest.mark.asyncio
async def test_force_update_always_notifies(env, make_fetcher, three_records):
    fetcher = make_fetcher(three_records)
    updates = []
    scheduler = _scheduler(env, fetcher, updates)
    scheduler.start()
    await _settle(scheduler)

    result = await scheduler.force_update()

    assert fetcher.calls == 2
    assert len(updates) == 2
    assert updates[-1] is result
    assert len(env.pending_timers) == 1

    await scheduler.stop()


@pytest.mark.asyncio
async def test_force_update_without_any_data_raises(env, make_fetcher):
    updates = []
    scheduler = _scheduler(env, make_fetcher(SourceError("offline")), updates)

    with pytest.raises(NoDataAvailableError):
        await scheduler.force_update()

    assert scheduler.status is SyncStatus.ERROR
    assert updates == []


@pytest.mark.asyncio
async def test_force_update_while_paused_without_any_data_raises(env, make_fetcher):
    updates = []
    scheduler = _scheduler(env, make_fetcher(SourceError("offline")), updates)
    scheduler.pause()

    with pytest.raises(NoDataAvailableError):
        await scheduler.force_update()

    assert scheduler.status is SyncStatus.PAUSED
    assert updates == []


@pytest.mark.asyncio
async def test_force_update_while_paused_returns_backup(env, make_fetcher, three_records):
    warm = _scheduler(env, make_fetcher(three_records), [])
    await warm.force_update()

    scheduler = _scheduler(env, make_fetcher(SourceError("offline")), [])
    scheduler.pause()
    result = await scheduler.force_update()

    assert result.dataset == three_records
    assert result.is_stale
    assert scheduler.status is SyncStatus.PAUSED


@pytest.mark.asyncio
async def test_parse_failure_is_not_delivered(env, make_fetcher, three_records):
    fetcher = make_fetcher(three_records, SourceParseError("header changed"))
    updates = []
    scheduler = _scheduler(env, fetcher, updates)
    scheduler.start()
    await _settle(scheduler)

    env.fire_next()
    await _settle(scheduler)

    assert fetcher.calls == 2
    assert len(updates) == 1
    assert scheduler.last_result.error is FailureKind.PARSE
    assert scheduler.status is SyncStatus.DELAYED
    assert not scheduler.cache.backoff.is_active

    await scheduler.stop()


@pytest.mark.asyncio
async def test_pause_and_resume(env, make_fetcher, three_records):
    fetcher = make_fetcher(three_records)
    statuses = []
    scheduler = _scheduler(env, fetcher, [], statuses=statuses)
    scheduler.start()
    await _settle(scheduler)

    scheduler.pause()
    assert scheduler.status is SyncStatus.PAUSED
    assert not scheduler.should_poll()

    env.fire_next()
    await _settle(scheduler)
    assert fetcher.calls == 1

    scheduler.resume()
    await _settle(scheduler)

    assert fetcher.calls == 2
    assert scheduler.status is SyncStatus.SYNCED
    assert SyncStatus.PAUSED in statuses

    await scheduler.stop()


@pytest.mark.asyncio
async def test_stop_detaches_listeners_and_timer(env, make_fetcher, three_records):
    fetcher = make_fetcher(three_records)
    scheduler = _scheduler(env, fetcher, [])
    scheduler.start()
    await _settle(scheduler)

    await scheduler.stop()
    await scheduler.stop()

    assert scheduler.state is SchedulerState.STOPPED
    assert not scheduler.is_running
    assert env.pending_timers == []
    assert env.visibility_listeners == []
    assert env.activity_listeners == []

    env.set_visible(True)
    await asyncio.sleep(0)
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_stop_cancels_inflight_fetch(env, make_fetcher, three_records):
    fetcher = make_fetcher(three_records)
    fetcher.gate = asyncio.Event()
    updates = []
    scheduler = _scheduler(env, fetcher, updates)

    scheduler.start()
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert scheduler.cache.is_fetching

    await scheduler.stop()

    assert not scheduler.cache.is_fetching
    assert updates == []
    assert env.pending_timers == []


@pytest.mark.asyncio
async def test_repeated_failures_hard_stop_inside_backoff_window(env, make_fetcher):
    fetcher = make_fetcher(SourceError("offline"))
    scheduler = _scheduler(
        env, fetcher, [], intervals=PollIntervals(hard_stop_failures=2)
    )
    scheduler.start()
    await _settle(scheduler)
    assert scheduler.status is SyncStatus.ERROR

    env.fire_next()
    await _settle(scheduler)
    assert fetcher.calls == 2
    assert not scheduler.should_poll()

    # A visibility nudge inside the window does not reach the source
    env.set_visible(True)
    await _settle(scheduler)
    assert fetcher.calls == 2

    await scheduler.stop()


@pytest.mark.asyncio
async def test_async_callbacks_are_awaited(env, make_fetcher, three_records):
    received = []
    statuses = []

    async def on_update(result):
        received.append(result)

    async def on_status(name, status):
        statuses.append((name, status))

    cache = DataCache(make_fetcher(three_records), key="sales", environment=env)
    scheduler = PollScheduler(
        cache,
        on_update,
        environment=env,
        detector=DeltaDetector(SALES_PROFILE.fingerprint_fields),
        on_status_change=on_status,
    )

    scheduler.start()
    await _settle(scheduler)
    await asyncio.sleep(0)

    assert len(received) == 1
    assert ("sales", SyncStatus.SYNCED) in statuses

    await scheduler.stop()


@pytest.mark.asyncio
async def test_failing_consumer_does_not_break_polling(env, make_fetcher, three_records):
    def broken(result):
        raise RuntimeError("consumer bug")

    cache = DataCache(make_fetcher(three_records), key="sales", environment=env)
    scheduler = PollScheduler(
        cache,
        broken,
        environment=env,
        detector=DeltaDetector(SALES_PROFILE.fingerprint_fields),
    )

    scheduler.start()
    await _settle(scheduler)

    assert scheduler.status is SyncStatus.SYNCED
    assert len(env.pending_timers) == 1

    await scheduler.stop()
