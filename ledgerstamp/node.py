"""
Node client — JSON messages to a ledger node over websockets.

Wire format (one JSON object per websocket message):
    request:  {"id": 1, "method": "getUtxosByAddresses", "params": {...}}
    response: {"id": 1, "params": {...}}  or  {"id": 1, "error": {"message": "..."}}

Messages without a matching id (notifications) are skipped.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Sequence

from ledgerstamp.errors import NetworkError

log = logging.getLogger(__name__)


class NodeRPCError(NetworkError):
    """The node answered a request with an error."""


def _import_websockets():
    try:
        import websockets
    except ImportError:
        raise ImportError(
            "websockets is required for node communication. "
            "Install with: pip install websockets"
        )
    return websockets


class NodeClient:
    """Async request/response client for one node.

    Usage:
        async with NodeClient("ws://127.0.0.1:18210") as node:
            info = await node.get_server_info()
    """

    def __init__(self, url: str, timeout: float = 30.0) -> None:
        self.url = url
        self.timeout = timeout
        self._ws = None
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        websockets = _import_websockets()
        try:
            self._ws = await asyncio.wait_for(websockets.connect(self.url), self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Could not connect to node {self.url}: {e}") from e
        log.info("Connected to node %s", self.url)

    async def close(self) -> None:
        if self._ws:
            await self._ws.close()
            self._ws = None

    async def __aenter__(self) -> NodeClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Send one request and wait for the response with the same id."""
        if not self._ws:
            raise RuntimeError("Not connected to node")
        async with self._lock:
            msg_id = next(self._ids)
            await self._ws.send(json.dumps({"id": msg_id, "method": method, "params": params or {}}))
            log.debug("-> %s #%d", method, msg_id)
            while True:
                raw = await asyncio.wait_for(self._ws.recv(), self.timeout)
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError:
                    log.warning("Ignoring non-JSON message from %s", self.url)
                    continue
                if not isinstance(msg, dict) or msg.get("id") != msg_id:
                    continue
                if msg.get("error"):
                    err = msg["error"]
                    text = err.get("message", str(err)) if isinstance(err, dict) else str(err)
                    raise NodeRPCError(f"{method} failed: {text}")
                return msg.get("params", {})

    async def get_server_info(self) -> dict[str, Any]:
        return await self.request("getServerInfo")

    async def get_utxos_by_addresses(self, addresses: Sequence[str]) -> list[dict[str, Any]]:
        result = await self.request("getUtxosByAddresses", {"addresses": list(addresses)})
        return list(result.get("entries", []))


class NodeAddressProvider:
    """AddressProvider backed by a NodeClient."""

    def __init__(self, client: NodeClient, receive_address: str, change_address: str | None = None) -> None:
        self.client = client
        self._receive = receive_address
        self._change = change_address or receive_address

    @property
    def receive_address(self) -> str:
        return self._receive

    @property
    def change_address(self) -> str:
        return self._change

    async def get_utxos(self) -> list[dict[str, Any]]:
        addresses = list(dict.fromkeys([self._receive, self._change]))
        entries = await self.client.get_utxos_by_addresses(addresses)
        log.debug("Node returned %d UTXO(s) for %d address(es)", len(entries), len(addresses))
        return entries
