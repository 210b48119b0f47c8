"""
Minimal JSON-RPC over HTTP client for the chain endpoint.

Used for two read-only calls:
- eth_getBlockByNumber: block timestamps for logs that arrive without one
- eth_call: Vault position reads during enrichment

The aiohttp session is owned by the RelayManager and shared by all HTTP users.
"""

import asyncio
import itertools
import logging
import time
from collections import OrderedDict
from typing import Any, Optional

import aiohttp

logger = logging.getLogger(__name__)


class RpcError(Exception):
    """JSON-RPC call failed (transport, HTTP status or an error object)."""


class RpcClient:
    """Thin async JSON-RPC client. Raises RpcError; callers decide how to degrade."""

    def __init__(self, url: str, session: aiohttp.ClientSession) -> None:
        self._url = url
        self._session = session
        self._ids = itertools.count(1)

    async def call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            async with self._session.post(self._url, json=payload) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise RpcError(f"{method}: HTTP {resp.status}: {text[:200]}")
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise RpcError(f"{method}: {exc}") from exc

        if not isinstance(body, dict):
            raise RpcError(f"{method}: malformed response")
        if body.get("error"):
            raise RpcError(f"{method}: {body['error']}")
        return body.get("result")


class BlockClock:
    """
    Resolves block numbers to block timestamps (seconds), with a bounded LRU.

    Lookups are retried a few times. When they still fail, the newest block
    timestamp seen so far is used: logs arrive in block order, so that value
    never runs ahead of a later log's real block time. Wall clock is the last
    resort, used only before any block time is known (or without an HTTP RPC,
    where every log gets it). Fallback values are never cached.
    """

    MAX_ENTRIES = 2_048
    LOOKUP_ATTEMPTS = 3
    RETRY_DELAY_SECONDS = 0.5

    def __init__(self, rpc: Optional[RpcClient]) -> None:
        self._rpc = rpc
        self._cache: "OrderedDict[int, int]" = OrderedDict()
        self._newest: Optional[int] = None

    def observe(self, ts: int) -> None:
        """Record a block timestamp learned elsewhere (e.g. a node-provided blockTimestamp)."""
        if self._newest is None or ts > self._newest:
            self._newest = ts

    def fallback_timestamp(self) -> int:
        """Newest known block time, or wall clock if none is known yet."""
        if self._newest is not None:
            return self._newest
        return int(time.time())

    async def timestamp_for(self, block_number: int) -> int:
        cached = self._cache.get(block_number)
        if cached is not None:
            self._cache.move_to_end(block_number)
            return cached

        if self._rpc is None:
            return int(time.time())

        ts = await self._lookup(block_number)
        if ts is None:
            if self._newest is None:
                logger.error(
                    "Block timestamp unknown and no block time seen yet — using wall clock | block=%d",
                    block_number,
                )
            else:
                logger.warning(
                    "Block timestamp unknown — using newest known block time | block=%d | ts=%d",
                    block_number,
                    self._newest,
                )
            return self.fallback_timestamp()

        self.observe(ts)
        self._cache[block_number] = ts
        if len(self._cache) > self.MAX_ENTRIES:
            self._cache.popitem(last=False)
        return ts

    async def _lookup(self, block_number: int) -> Optional[int]:
        for attempt in range(self.LOOKUP_ATTEMPTS):
            try:
                block = await self._rpc.call("eth_getBlockByNumber", [hex(block_number), False])
                return int(block["timestamp"], 16)
            except (RpcError, KeyError, TypeError, ValueError) as exc:
                logger.warning(
                    "Block timestamp lookup failed %d/%d | block=%d | error=%s",
                    attempt + 1,
                    self.LOOKUP_ATTEMPTS,
                    block_number,
                    exc,
                )
            if attempt < self.LOOKUP_ATTEMPTS - 1:
                await asyncio.sleep(self.RETRY_DELAY_SECONDS * 2**attempt)
        return None
