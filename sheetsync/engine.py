"""Wiring of one cache / backoff / detector / scheduler stack per data source."""

from __future__ import annotations

import logging
from typing import Optional

import aiohttp

from .backoff import BackoffController
from .cache import DataCache, TTLSettings
from .config import EngineConfig, SourceConfig
from .delta import DeltaDetector
from .environment import Environment
from .profiles import SourceProfile
from .scheduler import PollIntervals, PollScheduler, StatusCallback, UpdateCallback
from .source import SheetSource

LOGGER = logging.getLogger(__name__)


def ttl_settings(engine: EngineConfig) -> TTLSettings:
    return TTLSettings(
        base_seconds=engine.ttl_seconds,
        pending_seconds=engine.pending_ttl_seconds,
        degraded_seconds=engine.degraded_ttl_seconds,
    )


def poll_intervals(engine: EngineConfig) -> PollIntervals:
    return PollIntervals(
        pending_seconds=engine.pending_poll_seconds,
        active_seconds=engine.active_poll_seconds,
        idle_seconds=engine.idle_poll_seconds,
        active_window_seconds=engine.active_window_seconds,
        idle_cutoff_seconds=engine.idle_cutoff_seconds,
        hard_stop_failures=engine.hard_stop_failures,
    )


class SourceEngine:
    """Everything that keeps one dashboard's data source in sync."""

    def __init__(
        self,
        source_config: SourceConfig,
        engine_config: EngineConfig,
        *,
        environment: Environment,
        on_data_update: UpdateCallback,
        on_status_change: Optional[StatusCallback] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.name = source_config.name
        self.profile: SourceProfile = source_config.resolve_profile()
        self.source = SheetSource(
            source_config.url,
            required_fields=self.profile.required_fields,
            timeout=engine_config.fetch_timeout_seconds,
            api_key=source_config.api_key,
            session=session,
        )
        self.backoff = BackoffController(
            base_delay=engine_config.backoff_base_seconds,
            max_delay=engine_config.backoff_max_seconds,
            max_multiplier=engine_config.backoff_max_multiplier,
            monotonic=environment.monotonic,
        )
        self.cache = DataCache(
            self.source.fetch,
            key=self.name,
            backoff=self.backoff,
            environment=environment,
            ttl=ttl_settings(engine_config),
            has_pending=self.profile.has_pending_items,
        )
        self.scheduler = PollScheduler(
            self.cache,
            on_data_update,
            environment=environment,
            detector=DeltaDetector(self.profile.fingerprint_fields),
            intervals=poll_intervals(engine_config),
            name=self.name,
            on_status_change=on_status_change,
        )

    def start(self) -> None:
        LOGGER.info(
            "Starting %s source (profile=%s, url=%s)",
            self.name,
            self.profile.name,
            self.source.url,
        )
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.source.aclose()
