"""Ledger node client — JSON-RPC over HTTP plus a websocket notification stream.

Requests are ``{"id", "method", "params"}`` objects POSTed to the HTTP
endpoint, which is derived from the configured websocket URL by protocol
substitution (``ws://`` -> ``http://``, ``wss://`` -> ``https://``). Block-added
notifications arrive over the websocket after a ``subscribeBlockAdded`` call.

The notification stream is not restartable: when it ends the client raises
:class:`StreamClosedError` and reconnection is left to the process supervisor.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, AsyncIterator

from aiohttp import ClientError, ClientSession, ClientTimeout, WSMsgType
from pydantic import BaseModel

from stitch_node.errors import LedgerError, StreamClosedError
from stitch_node.models import LedgerBlock

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = ClientTimeout(total=10)

# Seconds between websocket pings
WS_HEARTBEAT = 30.0


def http_url_for(rpc_url: str) -> str:
    """Derive the request/response URL from the websocket URL."""
    return rpc_url.replace("ws", "http", 1)


class LedgerClient:
    """Async client for the ledger node's RPC interface.

    Safe to share between the main loop and healing monitors: every call is
    an independent request on the shared aiohttp session.
    """

    def __init__(
        self,
        rpc_url: str,
        session: ClientSession | None = None,
        timeout: ClientTimeout = DEFAULT_TIMEOUT,
    ) -> None:
        self.ws_url = rpc_url
        self.http_url = http_url_for(rpc_url)
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

    async def start(self) -> None:
        if self._session is None:
            self._session = ClientSession(timeout=self._timeout)

    async def close(self) -> None:
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> LedgerClient:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _call(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._session is None:
            raise LedgerError("Ledger client not started")

        request = {"id": next(self._ids), "method": method, "params": params or {}}
        try:
            async with self._session.post(self.http_url, json=request) as resp:
                if resp.status != 200:
                    raise LedgerError(f"{method} returned HTTP {resp.status}")
                data = await resp.json()
        except (ClientError, asyncio.TimeoutError, json.JSONDecodeError) as e:
            raise LedgerError(f"{method} failed: {e}") from e

        if not isinstance(data, dict):
            raise LedgerError(f"{method} returned a non-object response")
        if data.get("error"):
            raise LedgerError(f"{method} error: {data['error']}")
        result = data.get("params", data.get("result"))
        return result if isinstance(result, dict) else {}

    async def get_tip_hashes(self) -> list[str]:
        """Current DAG tips as reported by the node."""
        result = await self._call("getBlockDagInfo")
        return [str(h) for h in result.get("tipHashes", [])]

    async def get_block(self, block_hash: str) -> LedgerBlock:
        """Fetch a block (with transactions) by hash."""
        result = await self._call("getBlock", {"hash": block_hash, "includeTransactions": True})
        raw = result.get("block")
        if not isinstance(raw, dict):
            raise LedgerError(f"Block {block_hash[:12]} not found")
        try:
            return LedgerBlock.from_rpc(raw)
        except ValueError as e:
            raise LedgerError(f"Malformed block {block_hash[:12]}: {e}") from e

    async def submit_transaction(self, tx: BaseModel) -> str:
        """Submit a transaction; returns its id."""
        result = await self._call(
            "submitTransaction",
            {"transaction": tx.model_dump(mode="json"), "allowOrphan": False},
        )
        txid = result.get("transactionId")
        if not txid:
            raise LedgerError("submitTransaction returned no transaction id")
        return str(txid)

    async def subscribe_block_added(self) -> AsyncIterator[LedgerBlock]:
        """Yield blocks from block-added notifications until the stream ends.

        Raises:
            StreamClosedError: When the websocket closes or cannot be opened.
        """
        if self._session is None:
            raise LedgerError("Ledger client not started")

        try:
            async with self._session.ws_connect(self.ws_url, heartbeat=WS_HEARTBEAT) as ws:
                await ws.send_json({
                    "id": next(self._ids),
                    "method": "subscribeBlockAdded",
                    "params": {},
                })
                logger.info("Subscribed to block-added notifications at %s", self.ws_url)

                async for msg in ws:
                    if msg.type != WSMsgType.TEXT:
                        if msg.type in (WSMsgType.CLOSED, WSMsgType.ERROR):
                            break
                        continue
                    block = self._parse_notification(msg.data)
                    if block is not None:
                        yield block
        except ClientError as e:
            raise StreamClosedError(f"Notification stream failed: {e}") from e

        raise StreamClosedError("Block-added notification stream closed")

    @staticmethod
    def _parse_notification(text: str) -> LedgerBlock | None:
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Dropping non-JSON notification")
            return None
        if not isinstance(data, dict) or data.get("method") != "blockAddedNotification":
            return None  # subscription acks and other notifications
        raw = (data.get("params") or {}).get("block")
        if not isinstance(raw, dict):
            return None
        try:
            return LedgerBlock.from_rpc(raw)
        except ValueError:
            logger.warning("Dropping malformed block-added notification", exc_info=True)
            return None
