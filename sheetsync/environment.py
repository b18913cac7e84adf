"""Host environment abstraction for the synchronization engine.

The engine never touches timers, persistence or foreground state directly.
Everything goes through an :class:`Environment`, which keeps the engine
testable headlessly with a manual clock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from .store import FallbackStore

LOGGER = logging.getLogger(__name__)

ACTIVITY_EVENTS = frozenset({"click", "keydown", "scroll", "pointermove"})

VisibilityListener = Callable[[bool], None]
ActivityListener = Callable[[], None]


class CancelHandle(Protocol):
    def cancel(self) -> None:
        ...


class Environment(Protocol):
    """Everything the engine needs from its host."""

    def is_foreground(self) -> bool:
        """Whether the dashboard is currently visible to the user."""
        ...

    def last_activity_at(self) -> float:
        """Monotonic timestamp of the most recent (debounced) user activity."""
        ...

    def monotonic(self) -> float:
        ...

    def schedule(self, delay: float, callback: Callable[[], None]) -> CancelHandle:
        """Run ``callback`` once after ``delay`` seconds."""
        ...

    def persist(self, key: str, value: Dict[str, Any]) -> None:
        ...

    def recall(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def add_visibility_listener(
        self, listener: VisibilityListener
    ) -> Callable[[], None]:
        """Register ``listener``; the returned callable detaches it."""
        ...

    def add_activity_listener(self, listener: ActivityListener) -> Callable[[], None]:
        """Register ``listener``; the returned callable detaches it."""
        ...


@dataclass(frozen=True)
class PollingContext:
    """Point-in-time view of the signals a scheduler consults."""

    is_visible: bool
    last_activity_at: float
    is_degraded: bool


class SignalSource:
    """Visibility state plus a debounced stream of user-activity events.

    Bursts of activity (pointer moves, key presses) collapse into a single
    notification ``debounce_seconds`` after the last event of the burst.
    Becoming visible counts as activity immediately.
    """

    def __init__(
        self,
        *,
        visible: bool = True,
        debounce_seconds: float = 1.0,
        monotonic: Optional[Callable[[], float]] = None,
        schedule: Optional[Callable[[float, Callable[[], None]], CancelHandle]] = None,
    ) -> None:
        self._visible = visible
        self._debounce = max(0.0, debounce_seconds)
        self._monotonic = monotonic or time.monotonic
        self._schedule = schedule
        self._last_activity = self._monotonic()
        self._pending_commit: Optional[CancelHandle] = None
        self._visibility_listeners: list[VisibilityListener] = []
        self._activity_listeners: list[ActivityListener] = []

    @property
    def is_visible(self) -> bool:
        return self._visible

    @property
    def last_activity_at(self) -> float:
        return self._last_activity

    @property
    def listener_count(self) -> int:
        return len(self._visibility_listeners) + len(self._activity_listeners)

    def set_visible(self, visible: bool) -> None:
        if visible == self._visible:
            return
        self._visible = visible
        LOGGER.debug("Visibility changed: %s", "visible" if visible else "hidden")
        if visible:
            self._last_activity = self._monotonic()
        for listener in list(self._visibility_listeners):
            self._notify(listener, visible)

    def record_activity(self, kind: str = "click") -> None:
        if kind not in ACTIVITY_EVENTS:
            LOGGER.debug("Ignoring unknown activity event %r", kind)
            return

        if self._pending_commit is not None:
            self._pending_commit.cancel()
            self._pending_commit = None

        if self._debounce == 0.0:
            self._commit_activity()
            return

        schedule = self._schedule or _loop_schedule
        self._pending_commit = schedule(self._debounce, self._commit_activity)

    def add_visibility_listener(
        self, listener: VisibilityListener
    ) -> Callable[[], None]:
        self._visibility_listeners.append(listener)
        return lambda: _discard(self._visibility_listeners, listener)

    def add_activity_listener(self, listener: ActivityListener) -> Callable[[], None]:
        self._activity_listeners.append(listener)
        return lambda: _discard(self._activity_listeners, listener)

    def close(self) -> None:
        if self._pending_commit is not None:
            self._pending_commit.cancel()
            self._pending_commit = None
        self._visibility_listeners.clear()
        self._activity_listeners.clear()

    def _commit_activity(self) -> None:
        self._pending_commit = None
        self._last_activity = self._monotonic()
        for listener in list(self._activity_listeners):
            self._notify(listener)

    @staticmethod
    def _notify(listener: Callable[..., None], *args: Any) -> None:
        try:
            listener(*args)
        except Exception:
            LOGGER.exception("Signal listener failed")


class AsyncioEnvironment:
    """:class:`Environment` backed by the running asyncio loop.

    Timers use ``loop.call_later``; persistence goes to an optional
    :class:`FallbackStore` (without one, nothing is persisted).
    """

    def __init__(
        self,
        *,
        signals: Optional[SignalSource] = None,
        store: Optional[FallbackStore] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        debounce_seconds: float = 1.0,
    ) -> None:
        self._loop = loop
        self.signals = signals or SignalSource(
            debounce_seconds=debounce_seconds, schedule=self.schedule
        )
        self.store = store

    def is_foreground(self) -> bool:
        return self.signals.is_visible

    def last_activity_at(self) -> float:
        return self.signals.last_activity_at

    def monotonic(self) -> float:
        return time.monotonic()

    def schedule(self, delay: float, callback: Callable[[], None]) -> CancelHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), callback)

    def persist(self, key: str, value: Dict[str, Any]) -> None:
        if self.store is not None:
            self.store.persist(key, value)

    def recall(self, key: str) -> Optional[Dict[str, Any]]:
        if self.store is None:
            return None
        return self.store.recall(key)

    def add_visibility_listener(
        self, listener: VisibilityListener
    ) -> Callable[[], None]:
        return self.signals.add_visibility_listener(listener)

    def add_activity_listener(self, listener: ActivityListener) -> Callable[[], None]:
        return self.signals.add_activity_listener(listener)


def _loop_schedule(delay: float, callback: Callable[[], None]) -> CancelHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


def _discard(listeners: list, listener: Callable[..., None]) -> None:
    try:
        listeners.remove(listener)
    except ValueError:
        pass
