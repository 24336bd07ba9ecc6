"""Transport layer — stitch messages over HTTP between stitch nodes.

Each node runs a small aiohttp server and sends messages to peers via POST
requests carrying the JSON-serialized :class:`StitchMessage`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine

from aiohttp import ClientError, ClientSession, ClientTimeout, web
from pydantic import ValidationError

from stitch_node.models import StitchMessage

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = ClientTimeout(total=10)


class Transport:
    """HTTP transport: an aiohttp server for incoming messages and a client
    session for outgoing ones."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 16150,
    ) -> None:
        self.host = host
        self.port = port
        self._app = web.Application()
        self._runner: web.AppRunner | None = None
        self._session: ClientSession | None = None
        self._message_callback: Callable[..., Coroutine[Any, Any, None]] | None = None

        self._app.router.add_post("/stitch", self._handle_stitch)
        self._app.router.add_get("/health", self._handle_health)

    @property
    def app(self) -> web.Application:
        return self._app

    def on_message(
        self,
        callback: Callable[..., Coroutine[Any, Any, None]],
    ) -> None:
        """Set the async callback receiving (StitchMessage, sender_address)."""
        self._message_callback = callback

    async def start(self, serve: bool = True) -> None:
        """Open the client session and, unless ``serve`` is False, the server."""
        self._session = ClientSession(timeout=DEFAULT_TIMEOUT)
        if not serve:
            return
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Stitch transport listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Stitch transport stopped")

    async def send(self, endpoint: str, message: StitchMessage) -> bool:
        """Send a message to one peer; True if it answered 200."""
        if not self._session:
            logger.error("Transport not started")
            return False

        url = f"http://{endpoint}/stitch"
        try:
            async with self._session.post(
                url,
                data=message.model_dump_json(),
                headers={"Content-Type": "application/json"},
            ) as resp:
                return resp.status == 200
        except (ClientError, asyncio.TimeoutError):
            logger.debug("Failed to send stitch to %s", endpoint, exc_info=True)
            return False

    async def broadcast(
        self,
        endpoints: list[str],
        message: StitchMessage,
        exclude: str | None = None,
    ) -> dict[str, bool]:
        """Send to several peers concurrently; maps endpoint to success."""
        targets = [ep for ep in endpoints if ep != exclude]
        results = await asyncio.gather(
            *(self.send(ep, message) for ep in targets),
            return_exceptions=True,
        )
        return {
            ep: isinstance(r, bool) and r
            for ep, r in zip(targets, results)
        }

    async def _handle_stitch(self, request: web.Request) -> web.Response:
        try:
            message = StitchMessage.model_validate_json(await request.text())
        except ValidationError:
            logger.warning("Rejected malformed stitch message from %s", request.remote)
            return web.json_response(
                {"status": "error", "detail": "invalid message"},
                status=400,
            )

        if self._message_callback:
            await self._message_callback(message, request.remote or "unknown")
        return web.json_response({"status": "ok"})

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy", "port": self.port})
