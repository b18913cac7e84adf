"""Exponential backoff for rate-limited sheet fetches."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

LOGGER = logging.getLogger(__name__)


class FailureKind(str, Enum):
    """Classification of a failed fetch."""

    GENERIC = "generic"
    """Transport error, timeout or non-success response other than a quota signal."""

    QUOTA_EXCEEDED = "quota_exceeded"
    """The source answered with a rate-limit signal (HTTP 429 or equivalent)."""

    PARSE = "parse"
    """The response body was malformed or its header did not match the source."""


@dataclass(frozen=True)
class BackoffState:
    """Read-only snapshot of a :class:`BackoffController`."""

    consecutive_failures: int
    multiplier: int
    last_failure_at: Optional[float]
    last_failure_kind: Optional[FailureKind]
    quota_exceeded: bool


class BackoffController:
    """Tracks consecutive source failures and computes the retry delay.

    Quota failures double the delay multiplier up to ``max_multiplier``;
    generic failures count towards the streak without growing it. The delay
    is ``base_delay * multiplier`` capped at ``max_delay`` and snaps back to
    ``base_delay`` on the first success.

    Parse failures are not a source health problem and are ignored here.
    """

    def __init__(
        self,
        *,
        base_delay: float = 30.0,
        max_delay: float = 300.0,
        max_multiplier: int = 32,
        monotonic: Optional[Callable[[], float]] = None,
    ) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be positive")
        self._base_delay = base_delay
        self._max_delay = max(base_delay, max_delay)
        self._max_multiplier = max(1, max_multiplier)
        self._monotonic = monotonic or time.monotonic

        self._failures = 0
        self._multiplier = 1
        self._last_failure_at: Optional[float] = None
        self._last_failure_kind: Optional[FailureKind] = None
        self._quota_exceeded = False

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def multiplier(self) -> int:
        return self._multiplier

    @property
    def last_failure_at(self) -> Optional[float]:
        return self._last_failure_at

    @property
    def is_active(self) -> bool:
        """True while a failure streak is in progress."""
        return self._failures > 0

    @property
    def is_quota_degraded(self) -> bool:
        return self._quota_exceeded

    @property
    def state(self) -> BackoffState:
        return BackoffState(
            consecutive_failures=self._failures,
            multiplier=self._multiplier,
            last_failure_at=self._last_failure_at,
            last_failure_kind=self._last_failure_kind,
            quota_exceeded=self._quota_exceeded,
        )

    def on_success(self) -> None:
        if self._failures:
            LOGGER.info(
                "Source recovered after %d consecutive failure(s)", self._failures
            )
        self._failures = 0
        self._multiplier = 1
        self._quota_exceeded = False
        self._last_failure_kind = None

    def on_failure(self, kind: FailureKind) -> None:
        if kind is FailureKind.PARSE:
            return

        self._failures += 1
        self._last_failure_at = self._monotonic()
        self._last_failure_kind = kind

        if kind is FailureKind.QUOTA_EXCEEDED:
            self._quota_exceeded = True
            self._multiplier = min(self._multiplier * 2, self._max_multiplier)

        LOGGER.debug(
            "Backoff failure recorded (kind=%s, failures=%d, delay=%.1fs)",
            kind.value,
            self._failures,
            self.current_delay(),
        )

    def current_delay(self) -> float:
        return min(self._base_delay * self._multiplier, self._max_delay)

    def remaining_delay(self) -> float:
        """Seconds until the current backoff window closes (0 when inactive)."""
        if not self.is_active or self._last_failure_at is None:
            return 0.0
        elapsed = self._monotonic() - self._last_failure_at
        return max(0.0, self.current_delay() - elapsed)

    def in_backoff_window(self) -> bool:
        return self.remaining_delay() > 0.0
