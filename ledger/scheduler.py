"""APScheduler-based scheduler for the sync and reconciliation passes."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any

from aiohttp import web
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ledger.config import HTTP_PORT, RECONCILE_INTERVAL, SYNC_INTERVAL
from ledger.exceptions import SyncInProgressError
from ledger.service import LedgerService
from ledger.web import create_app

logger = logging.getLogger(__name__)


class LedgerScheduler:
    """Runs both periodic jobs and the HTTP server until shutdown."""

    def __init__(self, service: LedgerService | None = None) -> None:
        self._service = service or LedgerService.from_config()
        self._scheduler = AsyncIOScheduler()
        self._shutdown_event = asyncio.Event()
        self._http_runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Register jobs, start the scheduler, and block until shutdown."""
        self.register_jobs()
        self._scheduler.start()
        logger.info(
            "scheduler_started",
            extra={"sync_interval": SYNC_INTERVAL, "reconcile_interval": RECONCILE_INTERVAL},
        )

        await self._start_http_server()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._signal_handler)

        # Block until shutdown
        await self._shutdown_event.wait()
        await self._stop()

    def register_jobs(self) -> None:
        self._scheduler.add_job(
            self._job_sync,
            "interval",
            seconds=SYNC_INTERVAL,
            id="holder_sync",
            name="Holder Sync",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._job_reconcile,
            "interval",
            seconds=RECONCILE_INTERVAL,
            id="reconciliation",
            name="Holder Reconciliation",
            max_instances=1,
            coalesce=True,
        )

    async def _stop(self) -> None:
        logger.info("scheduler_stopping")
        self._scheduler.shutdown(wait=False)

        if self._http_runner:
            await self._http_runner.cleanup()

        await self._service.close()
        logger.info("scheduler_stopped")

    def _signal_handler(self) -> None:
        logger.info("shutdown_signal_received")
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Job wrappers (catch exceptions so scheduler keeps running)
    # ------------------------------------------------------------------

    async def _job_sync(self) -> None:
        try:
            await self._service.sync()
        except SyncInProgressError:
            logger.info("holder_sync_skip", extra={"reason": "already_running"})
        except Exception:
            logger.error("holder_sync_error", exc_info=True)

    async def _job_reconcile(self) -> None:
        try:
            await self._service.reconcile()
        except Exception:
            logger.error("reconciliation_error", exc_info=True)

    # ------------------------------------------------------------------
    # HTTP server
    # ------------------------------------------------------------------

    async def _start_http_server(self) -> None:
        app = create_app(self._service, health_extra=self._health_extra)
        self._http_runner = web.AppRunner(app)
        await self._http_runner.setup()
        site = web.TCPSite(self._http_runner, "0.0.0.0", HTTP_PORT)
        await site.start()
        logger.info("http_server_started", extra={"port": HTTP_PORT})

    def _health_extra(self) -> dict[str, Any]:
        return {
            "scheduler_running": self._scheduler.running,
            "sync_state": self._service.orchestrator.state.value,
            "last_sync_error": self._service.orchestrator.last_error,
        }
