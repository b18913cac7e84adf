"""Main application entry-point for sheetsync."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

import aiohttp

from .cache import SyncResult
from .config import ConfigurationError, SyncConfig, load_config
from .engine import SourceEngine
from .environment import AsyncioEnvironment
from .health import HealthReporter, HealthServer
from .logging import configure_logging
from .priority import group_by_priority
from .scheduler import NoDataAvailableError, SyncStatus
from .store import FallbackStore

LOGGER = logging.getLogger(__name__)

DataListener = Callable[[str, SyncResult], Awaitable[None] | None]


def build_environment(config: SyncConfig) -> AsyncioEnvironment:
    return AsyncioEnvironment(
        store=FallbackStore(config.storage.backup_dir),
        debounce_seconds=config.engine.activity_debounce_seconds,
    )


class SheetSyncApp:
    """Runs one sync engine per configured data source until shutdown."""

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        *,
        environment: Optional[AsyncioEnvironment] = None,
        on_data_update: Optional[DataListener] = None,
    ) -> None:
        self._config = config or load_config()
        self._environment = environment
        self._listener = on_data_update
        self._engines: Dict[str, SourceEngine] = {}
        self._session: Optional[aiohttp.ClientSession] = None
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def engines(self) -> Dict[str, SourceEngine]:
        return dict(self._engines)

    @property
    def health(self) -> HealthReporter:
        return self._health

    async def run(self) -> None:
        self._shutdown_event = asyncio.Event()

        LOGGER.info("sheetsync starting with config: %s", self._config.path)

        try:
            await self._start_services()
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("sheetsync received shutdown signal")
            raise
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def _start_services(self) -> None:
        sources = self._config.enabled_sources
        if not sources:
            raise ConfigurationError(
                f"No enabled [source:<name>] sections in {self._config.path}"
            )

        if self._environment is None:
            self._environment = build_environment(self._config)
        self._session = aiohttp.ClientSession()

        for source_config in sources:
            engine = SourceEngine(
                source_config,
                self._config.engine,
                environment=self._environment,
                on_data_update=self._make_update_handler(source_config.name),
                on_status_change=self._handle_status_change,
                session=self._session,
            )
            self._engines[engine.name] = engine
            await self._health.update(engine.name, SyncStatus.SYNCING, detail="starting")

        if self._config.health.enabled:
            self._health_server = HealthServer(
                self._health,
                self._config.health.host,
                self._config.health.port,
                schedulers={name: engine.scheduler for name, engine in self._engines.items()},
                signals=self._environment.signals,
            )
            await self._health_server.start()

        for engine in self._engines.values():
            engine.start()

    async def _stop_services(self) -> None:
        for engine in self._engines.values():
            try:
                await engine.stop()
            except Exception:
                LOGGER.warning("Failed to stop %s cleanly", engine.name, exc_info=True)

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        if self._session is not None:
            await self._session.close()
            self._session = None

        if self._environment is not None:
            self._environment.signals.close()
        LOGGER.info("sheetsync stopped")

    def _make_update_handler(self, name: str) -> Callable[[SyncResult], Awaitable[None]]:
        async def _handler(result: SyncResult) -> None:
            engine = self._engines[name]
            groups = group_by_priority(result.dataset.records, engine.profile)
            LOGGER.info(
                "%s updated: %d records (%d escalated, %d need action, stale=%s)",
                name,
                len(result.dataset),
                len(groups["escalated"]),
                len(groups["needs_action"]),
                result.is_stale,
            )
            if self._listener is not None:
                outcome = self._listener(name, result)
                if asyncio.iscoroutine(outcome):
                    await outcome

        return _handler

    async def _handle_status_change(self, name: str, status: SyncStatus) -> None:
        engine = self._engines.get(name)
        result = engine.scheduler.last_result if engine is not None else None
        detail: Optional[str] = None
        if result is not None and result.error is not None:
            detail = result.error.value
        await self._health.update(
            name,
            status,
            last_sync=result.last_sync if result is not None else None,
            records=len(result.dataset) if result is not None else None,
            detail=detail,
        )

    @classmethod
    def start(cls, config: Optional[SyncConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("sheetsync received shutdown signal")


async def fetch_once(
    config: SyncConfig, *, source_name: Optional[str] = None
) -> Dict[str, SyncResult]:
    """Run one manual refresh per selected source and return the results.

    Raises:
        ConfigurationError: If ``source_name`` is not configured
        NoDataAvailableError: If a source has neither live nor backup data
    """
    sources = config.enabled_sources
    if source_name is not None:
        sources = [source for source in sources if source.name == source_name]
        if not sources:
            raise ConfigurationError(f"Unknown source '{source_name}'")

    environment = build_environment(config)
    results: Dict[str, SyncResult] = {}
    async with aiohttp.ClientSession() as session:
        for source_config in sources:
            engine = SourceEngine(
                source_config,
                config.engine,
                environment=environment,
                on_data_update=lambda result: None,
                session=session,
            )
            try:
                results[engine.name] = await engine.scheduler.force_update()
            except NoDataAvailableError:
                LOGGER.error("No data available for %s", engine.name)
                raise
            finally:
                await engine.stop()
    return results
