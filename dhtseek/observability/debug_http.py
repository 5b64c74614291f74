"""Diagnostic HTTP endpoint.

Serves ``GET /debug/vars`` as JSON: DHT engine statistics plus the session's
state and counters. Meant for localhost inspection while a session runs.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from aiohttp import web

logger = logging.getLogger(__name__)

DEBUG_VARS_PATH = "/debug/vars"

StatsProvider = Callable[[], dict[str, Any]]


class DebugHTTPServer:
    """Small aiohttp application exposing runtime counters."""

    def __init__(
        self,
        stats_provider: StatsProvider,
        host: str = "127.0.0.1",
        port: int = 8711,
    ):
        self.stats_provider = stats_provider
        self.host = host
        self.port = port
        self.started_at = time.time()

        self.app = web.Application()
        self.app.router.add_get(DEBUG_VARS_PATH, self._handle_vars)
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None

    async def _handle_vars(self, request: web.Request) -> web.Response:
        try:
            stats = self.stats_provider()
        except Exception as e:
            logger.exception("Failed to collect debug vars")
            return web.json_response({"error": str(e)}, status=500)
        return web.json_response(
            {"uptime": round(time.time() - self.started_at, 3), **stats}
        )

    async def start(self) -> bool:
        """Start serving. Returns False (and logs) if the port is unavailable."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        try:
            await self.site.start()
        except OSError as e:
            logger.warning(
                "Debug HTTP endpoint disabled, cannot bind %s:%d: %s",
                self.host,
                self.port,
                e,
            )
            await self.runner.cleanup()
            self.runner = None
            self.site = None
            return False
        logger.info("Debug vars at http://%s:%d%s", self.host, self.port, DEBUG_VARS_PATH)
        return True

    async def stop(self) -> None:
        """Stop the server."""
        if self.site:
            await self.site.stop()
            self.site = None
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
