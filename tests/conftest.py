import asyncio
from collections import deque
from typing import Any, Callable, Optional

import pytest

from sheetsync.dataset import Dataset, decode_values

SALES_HEADER = [
    "Timestamp",
    "Customer Name",
    "Message ID",
    "Status",
    "Escalation",
    "Approval",
    "Processed At",
    "Draft Email",
]


def sales_rows(*rows: tuple[str, str, str]) -> Dataset:
    """Build a sales dataset from (message id, status, processed at) triples."""
    values: list[list[str]] = [list(SALES_HEADER)]
    for index, (message_id, status, processed_at) in enumerate(rows):
        values.append(
            [
                f"2024-05-0{index + 1} 09:00:00",
                f"Customer {index}",
                message_id,
                status,
                "No",
                "No",
                processed_at,
                f"draft {index}",
            ]
        )
    return decode_values(values)


class ManualTimer:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeEnvironment:
    """Environment with a manual clock, manual timers and in-memory persistence."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now
        self.visible = True
        self.activity_at = now
        self.timers: list[ManualTimer] = []
        self.storage: dict[str, dict[str, Any]] = {}
        self.visibility_listeners: list[Callable[[bool], None]] = []
        self.activity_listeners: list[Callable[[], None]] = []

    def is_foreground(self) -> bool:
        return self.visible

    def last_activity_at(self) -> float:
        return self.activity_at

    def monotonic(self) -> float:
        return self.now

    def schedule(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(delay, callback)
        self.timers.append(timer)
        return timer

    def persist(self, key: str, value: dict[str, Any]) -> None:
        self.storage[key] = value

    def recall(self, key: str) -> Optional[dict[str, Any]]:
        return self.storage.get(key)

    def add_visibility_listener(self, listener):
        self.visibility_listeners.append(listener)
        return lambda: self.visibility_listeners.remove(listener)

    def add_activity_listener(self, listener):
        self.activity_listeners.append(listener)
        return lambda: self.activity_listeners.remove(listener)

    # Test controls
    @property
    def pending_timers(self) -> list[ManualTimer]:
        return [timer for timer in self.timers if not timer.cancelled and not timer.fired]

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def fire_next(self) -> ManualTimer:
        pending = self.pending_timers
        assert pending, "no timer armed"
        timer = pending[-1]
        timer.fired = True
        self.now += timer.delay
        timer.callback()
        return timer

    def set_visible(self, visible: bool) -> None:
        self.visible = visible
        if visible:
            self.activity_at = self.now
        for listener in list(self.visibility_listeners):
            listener(visible)

    def record_activity(self) -> None:
        self.activity_at = self.now
        for listener in list(self.activity_listeners):
            listener()


class FakeFetcher:
    """Async fetch callable that replays queued datasets or exceptions.

    The last queued outcome repeats once the queue is drained. Set ``gate``
    to hold every fetch until the event is set.
    """

    def __init__(self, *outcomes: Any) -> None:
        self.calls = 0
        self.outcomes: deque[Any] = deque(outcomes)
        self.gate: Optional[asyncio.Event] = None

    def queue(self, *outcomes: Any) -> None:
        self.outcomes.extend(outcomes)

    async def __call__(self) -> Dataset:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if len(self.outcomes) > 1:
            outcome = self.outcomes.popleft()
        else:
            outcome = self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def env() -> FakeEnvironment:
    return FakeEnvironment()


@pytest.fixture
def three_records() -> Dataset:
    return sales_rows(
        ("m-1", "Resolved", "2024-05-01 10:00:00"),
        ("m-2", "Resolved", "2024-05-02 10:00:00"),
        ("m-3", "Escalated", "2024-05-03 10:00:00"),
    )


@pytest.fixture
def make_fetcher() -> type[FakeFetcher]:
    return FakeFetcher


@pytest.fixture
def make_sales() -> Callable[..., Dataset]:
    return sales_rows
