"""
HTTP server for payment proof hosting.

Endpoints:
    GET /health              -> {"status": "ok", ...}
    GET /proofs/{file_name}  -> stored payment proof image
"""

import logging
from datetime import datetime, timezone

from aiohttp import web

from config import CFG
from orders.storage import ProofStorage


logger = logging.getLogger(__name__)

STORAGE_KEY = web.AppKey("proof_storage", ProofStorage)


async def health_handler(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "orders-api",
    })


async def proof_handler(request: web.Request) -> web.StreamResponse:
    """Serve a stored payment proof by file name."""
    storage = request.app[STORAGE_KEY]
    path = storage.resolve(request.match_info.get("file_name", ""))
    if path is None:
        return web.json_response({"status": "error", "message": "Not found"}, status=404)
    return web.FileResponse(path, headers={"Cache-Control": "private, max-age=86400"})


def create_api_app(storage: ProofStorage | None = None) -> web.Application:
    """Build the aiohttp application."""
    app = web.Application()
    app[STORAGE_KEY] = storage or ProofStorage()
    app.router.add_get("/health", health_handler)
    app.router.add_get("/proofs/{file_name}", proof_handler)
    return app


async def start_api_server(app: web.Application) -> web.AppRunner:
    """Start the API server."""
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, "0.0.0.0", CFG.api_port)
    await site.start()

    logger.info("API server started on port %s", CFG.api_port)

    return runner


async def stop_api_server(runner: web.AppRunner):
    """Stop the API server."""
    await runner.cleanup()
    logger.info("API server stopped")
