"""Internal HTTP surface: health check and the list of keys over quota."""

from __future__ import annotations

from aiohttp import web

from terminus.core.exceptions import LedgerError
from terminus.core.logging_config import get_logger
from terminus.core.protocols import QuotaLedger

logger = get_logger(__name__)

LEDGER_KEY = web.AppKey("ledger", QuotaLedger)

API_PREFIX = "/internal/api/v1"


async def health(_request: web.Request) -> web.Response:
    return web.Response(text="alive!")


async def quota_exceeded(request: web.Request) -> web.Response:
    """``{"Records": [{"Key": ..., "Info": {"UsageBytes": ..., "QuotaBytes": ...}}]}``"""
    ledger = request.app[LEDGER_KEY]
    try:
        exceeded = await ledger.get_exceeded()
    except LedgerError as e:
        logger.error("get_exceeded_failed", error=str(e))
        return web.Response(status=500, text=f"Get keys exceeding quota: {e}")
    return web.json_response({"Records": [r.model_dump(by_alias=True) for r in exceeded]})


def create_app(ledger: QuotaLedger) -> web.Application:
    app = web.Application()
    app[LEDGER_KEY] = ledger
    app.router.add_get("/_health", health)
    app.router.add_get(f"{API_PREFIX}/quota/exceeded", quota_exceeded)
    return app


async def start_server(ledger: QuotaLedger, host: str, port: int) -> web.AppRunner:
    """Start serving in the background; call ``cleanup()`` on the runner to stop."""
    runner = web.AppRunner(create_app(ledger))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("http_server_started", host=host, port=port)
    return runner
