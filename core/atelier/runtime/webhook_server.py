"""
Webhook HTTP Server - Receives completion callbacks from external workers.

Uses aiohttp for a lightweight embedded HTTP server that runs within the
existing asyncio loop. There is no auth header: trust comes only from the
HMAC signature the reconciler verifies over the body.
"""

import json
import logging

from aiohttp import web

from atelier.config import WebhookServerConfig
from atelier.runtime.reconciler import CallbackReconciler

logger = logging.getLogger(__name__)


class WebhookServer:
    """
    Embedded HTTP server that hands completion callbacks to the reconciler.

    The server's only job is: receive HTTP -> reconciler.handle -> JSON reply.

    Lifecycle:
        server = WebhookServer(reconciler, config)
        await server.start()
        # ... server running ...
        await server.stop()
    """

    def __init__(
        self,
        reconciler: CallbackReconciler,
        config: WebhookServerConfig | None = None,
    ):
        self._reconciler = reconciler
        self._config = config or WebhookServerConfig()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    @property
    def path(self) -> str:
        return self._reconciler.config.path

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(self.path, self._handle_request)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(
            self._runner,
            self._config.host,
            self._config.port,
        )
        await self._site.start()
        logger.info(
            f"Webhook server started on {self._config.host}:{self.port} "
            f"(POST {self.path})"
        )

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("Webhook server stopped")

    async def _handle_request(self, request: web.Request) -> web.Response:
        """Handle an incoming completion callback."""
        try:
            body = await request.read()
        except Exception:
            return web.json_response(
                {"success": False, "message": "Failed to read request body"},
                status=400,
            )

        try:
            payload = json.loads(body) if body else None
        except (json.JSONDecodeError, ValueError):
            return web.json_response(
                {"success": False, "message": "Request body is not valid JSON"},
                status=400,
            )

        response = await self._reconciler.handle(payload)
        return web.json_response(response.body, status=response.status_code)

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None
