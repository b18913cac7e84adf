"""Single-flight data cache with TTL and stale fallback.

``DataCache.get_data`` is the only way the engine reads a data source. It
serves a fresh in-memory copy when one exists, joins a fetch already in
flight, respects the backoff window, and otherwise performs one fetch. It
never raises for fetch failures: callers get the best stale data available
(memory, then the persisted backup, then an empty dataset) with the failure
kind attached.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

import aiohttp

from .backoff import BackoffController, FailureKind
from .dataset import Dataset, DatasetError, EMPTY_DATASET
from .environment import Environment
from .source import SourceError, classify_failure

LOGGER = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Dataset]]
TTLPolicy = Callable[["DataCache"], float]


class ResultOrigin(str, Enum):
    """Where the dataset in a :class:`SyncResult` came from."""

    FRESH = "fresh"
    CACHE = "cache"
    STALE = "stale"
    BACKUP = "backup"
    EMPTY = "empty"


@dataclass(frozen=True)
class CacheEntry:
    dataset: Dataset
    fetched_at: float
    fetched_wall: datetime


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a :meth:`DataCache.get_data` call.

    Attributes:
        dataset: Records to show
        last_sync: Wall-clock time the dataset was fetched (None if never)
        is_stale: True when the dataset is older than a successful fetch would give
        origin: Which layer produced the dataset
        error: Failure kind of the attempt that led to a stale result
    """

    dataset: Dataset
    last_sync: Optional[datetime]
    is_stale: bool
    origin: ResultOrigin
    error: Optional[FailureKind] = None

    @property
    def has_data(self) -> bool:
        return not self.dataset.is_empty


@dataclass(frozen=True)
class TTLSettings:
    base_seconds: float = 60.0
    pending_seconds: float = 15.0
    degraded_seconds: float = 120.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DataCache:
    """Cache for one logical data source.

    At most one fetch per cache is outstanding at any instant; concurrent
    callers share its result.
    """

    def __init__(
        self,
        fetch: Fetcher,
        *,
        key: str,
        backoff: Optional[BackoffController] = None,
        environment: Optional[Environment] = None,
        ttl: Optional[TTLSettings] = None,
        ttl_policy: Optional[TTLPolicy] = None,
        has_pending: Optional[Callable[[Dataset], bool]] = None,
        monotonic: Optional[Callable[[], float]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._fetch = fetch
        self._key = key
        self._environment = environment
        if monotonic is None:
            monotonic = environment.monotonic if environment is not None else time.monotonic
        self._monotonic = monotonic
        self._clock = clock or _utcnow
        self._backoff = backoff or BackoffController(monotonic=monotonic)
        self._ttl = ttl or TTLSettings()
        self._ttl_policy = ttl_policy
        self._has_pending = has_pending
        self._entry: Optional[CacheEntry] = None
        self._inflight: Optional[asyncio.Task[SyncResult]] = None

    @property
    def key(self) -> str:
        return self._key

    @property
    def backup_key(self) -> str:
        return f"{self._key}-backup"

    @property
    def backoff(self) -> BackoffController:
        return self._backoff

    @property
    def entry(self) -> Optional[CacheEntry]:
        return self._entry

    @property
    def is_fetching(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def ttl(self) -> float:
        """Maximum age of the cached entry that is still served without I/O."""
        if self._ttl_policy is not None:
            return self._ttl_policy(self)
        if self._backoff.is_quota_degraded:
            return self._ttl.degraded_seconds
        if self.has_pending_items():
            return self._ttl.pending_seconds
        return self._ttl.base_seconds

    def has_pending_items(self) -> bool:
        entry = self._entry
        if entry is None or self._has_pending is None:
            return False
        return self._has_pending(entry.dataset)

    async def get_data(self, force_refresh: bool = False) -> SyncResult:
        entry = self._entry
        if (
            not force_refresh
            and entry is not None
            and self._monotonic() - entry.fetched_at < self.ttl()
        ):
            return SyncResult(
                dataset=entry.dataset,
                last_sync=entry.fetched_wall,
                is_stale=False,
                origin=ResultOrigin.CACHE,
            )

        if self._inflight is not None:
            LOGGER.debug("Joining in-flight fetch for %s", self._key)
            return await self._join(self._inflight)

        if not force_refresh and self._backoff.in_backoff_window():
            LOGGER.debug(
                "Backoff active for %s (%.1fs remaining); serving stale data",
                self._key,
                self._backoff.remaining_delay(),
            )
            return self._stale_result(self._backoff.state.last_failure_kind)

        task = asyncio.create_task(self._fetch_and_settle())
        self._inflight = task
        task.add_done_callback(self._clear_inflight)
        return await self._join(task)

    async def force_refresh(self) -> SyncResult:
        return await self.get_data(force_refresh=True)

    def invalidate(self) -> None:
        self._entry = None

    def cancel_pending(self) -> None:
        """Abort the outstanding fetch, if any."""
        task = self._inflight
        if task is not None and not task.done():
            LOGGER.debug("Cancelling in-flight fetch for %s", self._key)
            task.cancel()

    async def _join(self, task: asyncio.Task[SyncResult]) -> SyncResult:
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            LOGGER.info("Fetch for %s was cancelled; serving last known data", self._key)
            return self._stale_result(None)

    def _clear_inflight(self, task: asyncio.Task[SyncResult]) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _fetch_and_settle(self) -> SyncResult:
        try:
            dataset = await self._fetch()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._on_failure(exc)
        return self._on_success(dataset)

    def _on_success(self, dataset: Dataset) -> SyncResult:
        fetched_wall = self._clock()
        self._entry = CacheEntry(
            dataset=dataset,
            fetched_at=self._monotonic(),
            fetched_wall=fetched_wall,
        )
        self._backoff.on_success()

        if self._environment is not None:
            payload = dataset.to_payload()
            payload["timestamp"] = int(fetched_wall.timestamp() * 1000)
            self._environment.persist(self.backup_key, payload)

        LOGGER.debug("Fetched %d records for %s", len(dataset), self._key)
        return SyncResult(
            dataset=dataset,
            last_sync=fetched_wall,
            is_stale=False,
            origin=ResultOrigin.FRESH,
        )

    def _on_failure(self, exc: Exception) -> SyncResult:
        kind = classify_failure(exc)

        if kind is FailureKind.PARSE:
            LOGGER.error("Discarding malformed response for %s: %s", self._key, exc)
            entry = self._entry
            return SyncResult(
                dataset=EMPTY_DATASET,
                last_sync=entry.fetched_wall if entry is not None else None,
                is_stale=True,
                origin=ResultOrigin.EMPTY,
                error=kind,
            )

        self._backoff.on_failure(kind)

        if kind is FailureKind.QUOTA_EXCEEDED:
            LOGGER.warning(
                "Quota exceeded for %s; backing off %.0fs",
                self._key,
                self._backoff.current_delay(),
            )
        elif isinstance(exc, (SourceError, aiohttp.ClientError, asyncio.TimeoutError, OSError)):
            LOGGER.warning("Fetch failed for %s: %s", self._key, str(exc) or type(exc).__name__)
        else:
            LOGGER.exception("Unexpected error while fetching %s", self._key)

        return self._stale_result(kind)

    def _stale_result(self, error: Optional[FailureKind]) -> SyncResult:
        entry = self._entry
        if entry is not None:
            return SyncResult(
                dataset=entry.dataset,
                last_sync=entry.fetched_wall,
                is_stale=True,
                origin=ResultOrigin.STALE,
                error=error,
            )

        recovered = self._load_backup()
        if recovered is not None:
            dataset, last_sync = recovered
            return SyncResult(
                dataset=dataset,
                last_sync=last_sync,
                is_stale=True,
                origin=ResultOrigin.BACKUP,
                error=error,
            )

        return SyncResult(
            dataset=EMPTY_DATASET,
            last_sync=None,
            is_stale=True,
            origin=ResultOrigin.EMPTY,
            error=error,
        )

    def _load_backup(self) -> Optional[tuple[Dataset, Optional[datetime]]]:
        if self._environment is None:
            return None
        payload = self._environment.recall(self.backup_key)
        if payload is None:
            return None

        try:
            dataset = Dataset.from_payload(payload)
        except DatasetError as exc:
            LOGGER.warning("Ignoring unusable backup for %s: %s", self._key, exc)
            return None

        last_sync: Optional[datetime] = None
        timestamp = payload.get("timestamp")
        if isinstance(timestamp, (int, float)):
            last_sync = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)

        LOGGER.info("Recovered %d records for %s from backup", len(dataset), self._key)
        return dataset, last_sync
