"""aiohttp routes: holder listing, manual sync trigger, status and health."""

from __future__ import annotations

import logging
from typing import Any, Callable

from aiohttp import web
from pydantic import ValidationError

from ledger.exceptions import SyncInProgressError
from ledger.holders import HoldersQuery, get_holders
from ledger.service import LedgerService

logger = logging.getLogger(__name__)

SERVICE_KEY = web.AppKey("service", LedgerService)


def create_app(
    service: LedgerService,
    health_extra: Callable[[], dict[str, Any]] | None = None,
) -> web.Application:
    app = web.Application()
    app[SERVICE_KEY] = service

    async def health(request: web.Request) -> web.Response:
        body: dict[str, Any] = {"status": "ok", **service.gate.status()}
        if health_extra is not None:
            body.update(health_extra())
        return web.json_response(body)

    app.router.add_get("/health", health)
    app.router.add_get("/holders", list_holders)
    app.router.add_post("/sync", trigger_sync)
    app.router.add_get("/sync/status", sync_status)
    return app


async def list_holders(request: web.Request) -> web.Response:
    try:
        query = HoldersQuery.model_validate(dict(request.query))
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False)
        return web.json_response(
            {"message": "Invalid query parameters", "errors": errors},
            status=400,
        )
    page = await get_holders(request.app[SERVICE_KEY].store, query)
    return web.json_response(page.model_dump(mode="json", by_alias=True))


async def trigger_sync(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    try:
        result = await service.sync()
    except SyncInProgressError as exc:
        return web.json_response({"message": str(exc)}, status=409)
    except Exception as exc:
        logger.error("manual_sync_failed", exc_info=True)
        return web.json_response(
            {"message": str(exc) or type(exc).__name__}, status=500,
        )
    return web.json_response({
        "message": "Sync completed successfully",
        "fromBlock": result.from_block,
        "toBlock": result.to_block,
        "chunks": result.chunks,
        "transfers": result.transfers,
    })


async def sync_status(request: web.Request) -> web.Response:
    return web.json_response({"syncing": request.app[SERVICE_KEY].is_syncing()})
