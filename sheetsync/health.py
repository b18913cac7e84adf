"""Sync-health reporting and the local control endpoint."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional

from aiohttp import web

from .environment import SignalSource
from .scheduler import NoDataAvailableError, PollScheduler, SyncStatus

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SourceHealth:
    name: str
    status: SyncStatus
    last_sync: Optional[datetime] = None
    records: int = 0
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def healthy(self) -> bool:
        return self.status is not SyncStatus.ERROR

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "status": self.status.value,
            "healthy": self.healthy,
            "lastSync": (
                self.last_sync.isoformat(timespec="seconds") if self.last_sync else None
            ),
            "records": self.records,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks the sync status of every data source."""

    def __init__(self) -> None:
        self._sources: Dict[str, SourceHealth] = {}
        self._lock = asyncio.Lock()

    async def update(
        self,
        name: str,
        status: SyncStatus,
        *,
        last_sync: Optional[datetime] = None,
        records: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> None:
        async with self._lock:
            previous = self._sources.get(name)
            self._sources[name] = SourceHealth(
                name=name,
                status=status,
                last_sync=last_sync or (previous.last_sync if previous else None),
                records=records if records is not None else (previous.records if previous else 0),
                detail=detail,
            )

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            entries = list(self._sources.values())

        sources = [entry.as_dict() for entry in entries]
        overall = "ok" if all(entry.healthy for entry in entries) else "degraded"
        return {"status": overall, "sources": sources}


class HealthServer:
    """Local HTTP endpoint exposing sync health and the manual controls.

    Routes:
        GET  /healthz                  per-source sync status
        POST /sources/{name}/sync      manual refresh
        POST /sources/{name}/pause     pause polling
        POST /sources/{name}/resume    resume polling
        POST /activity                 user-activity event
        POST /visibility               ``{"visible": bool}``
    """

    def __init__(
        self,
        reporter: HealthReporter,
        host: str,
        port: int,
        *,
        schedulers: Optional[Mapping[str, PollScheduler]] = None,
        signals: Optional[SignalSource] = None,
    ) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._schedulers = dict(schedulers or {})
        self._signals = signals
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)
        app.router.add_post("/sources/{name}/sync", self._handle_sync)
        app.router.add_post("/sources/{name}/pause", self._handle_pause)
        app.router.add_post("/sources/{name}/resume", self._handle_resume)
        app.router.add_post("/activity", self._handle_activity)
        app.router.add_post("/visibility", self._handle_visibility)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)

    def _scheduler_for(self, request: web.Request) -> PollScheduler:
        name = request.match_info["name"]
        scheduler = self._schedulers.get(name)
        if scheduler is None:
            raise web.HTTPNotFound(text=f"unknown source {name}")
        return scheduler

    async def _handle_sync(self, request: web.Request) -> web.Response:
        scheduler = self._scheduler_for(request)
        try:
            result = await scheduler.force_update()
        except NoDataAvailableError as exc:
            return web.json_response(
                {"source": scheduler.name, "status": scheduler.status.value, "error": str(exc)},
                status=503,
            )
        return web.json_response(
            {
                "source": scheduler.name,
                "status": scheduler.status.value,
                "records": len(result.dataset),
                "stale": result.is_stale,
                "lastSync": (
                    result.last_sync.isoformat(timespec="seconds")
                    if result.last_sync
                    else None
                ),
            }
        )

    async def _handle_pause(self, request: web.Request) -> web.Response:
        scheduler = self._scheduler_for(request)
        scheduler.pause()
        return web.json_response({"source": scheduler.name, "status": scheduler.status.value})

    async def _handle_resume(self, request: web.Request) -> web.Response:
        scheduler = self._scheduler_for(request)
        scheduler.resume()
        return web.json_response({"source": scheduler.name, "status": scheduler.status.value})

    async def _handle_activity(self, request: web.Request) -> web.Response:
        if self._signals is None:
            raise web.HTTPNotFound()
        payload = await _json_body(request)
        kind = payload.get("kind", "click")
        self._signals.record_activity(str(kind))
        return web.json_response({"accepted": True})

    async def _handle_visibility(self, request: web.Request) -> web.Response:
        if self._signals is None:
            raise web.HTTPNotFound()
        payload = await _json_body(request)
        visible = payload.get("visible")
        if not isinstance(visible, bool):
            return web.json_response({"error": "'visible' must be a boolean"}, status=400)
        self._signals.set_visible(visible)
        return web.json_response({"visible": visible})


async def _json_body(request: web.Request) -> Dict[str, object]:
    if not request.can_read_body:
        return {}
    try:
        payload = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(text="request body must be JSON") from None
    if not isinstance(payload, dict):
        raise web.HTTPBadRequest(text="request body must be a JSON object")
    return payload
