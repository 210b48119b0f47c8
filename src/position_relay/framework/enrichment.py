"""
Enrichment pipeline: RawEvent → EnrichedEvent.

Lookups are best-effort. A failed lookup yields None for the fields that needed
it and the event carries on to rendering, where unknown fields show a
placeholder. Nothing in this module raises past Enricher.enrich() for lookup
failures.

Lookups:
1. PriceLookup — USD price by symbol from an HTTP ticker (Binance-style
   /api/v3/ticker/price?symbol=BTCUSDT → {"price": "..."})
2. PositionLookup — Vault getPosition / getPositionDelta through eth_call
   (chain mode only)

Both sit behind a TTLCache that also remembers failures for the same TTL, so a
dead endpoint costs one timed-out call per key per minute, not one per event.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Hashable, Optional

import aiohttp
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError, EncodingError
from web3 import Web3

from position_relay.connectors.rpc_client import RpcClient, RpcError
from position_relay.framework.config_loader import TokenInfo
from position_relay.framework.events import (
    DecreaseEvent,
    EnrichedEvent,
    LiquidationEvent,
    RawEvent,
    to_usd,
)

logger = logging.getLogger(__name__)

# Quote currency appended to a bare symbol for the ticker API
DEFAULT_QUOTE = "USDT"

# Priced at 1 USD without a lookup
STABLE_SYMBOLS = frozenset({"USDT", "USDC", "USDG", "BUSD", "DAI"})

GET_POSITION_SIGNATURE = "getPosition(address,address,address,bool)"
GET_POSITION_DELTA_SIGNATURE = "getPositionDelta(address,address,address,bool)"
_POSITION_ARG_TYPES = ["address", "address", "address", "bool"]
_GET_POSITION_RETURN_TYPES = ["uint256"] * 6 + ["bool", "uint256"]
_GET_POSITION_DELTA_RETURN_TYPES = ["bool", "uint256"]

_MISSING = object()


def function_selector(signature: str) -> bytes:
    """First four bytes of keccak256(signature)."""
    return bytes(Web3.keccak(text=signature)[:4])


class TTLCache:
    """
    Small time-based cache keyed by any hashable.

    Stores (stored_at, value) pairs. None is a legitimate cached value and
    means "lookup failed recently". Entries expire after ttl_seconds.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, Any]] = {}

    def get(self, key: Hashable) -> Any:
        """Return the cached value, or the module-level _MISSING sentinel."""
        entry = self._entries.get(key)
        if entry is None:
            return _MISSING
        stored_at, value = entry
        if self._clock() - stored_at >= self._ttl:
            del self._entries[key]
            return _MISSING
        return value

    def put(self, key: Hashable, value: Any) -> None:
        self._entries[key] = (self._clock(), value)
        if len(self._entries) > 4_096:
            self._evict_expired()

    def _evict_expired(self) -> None:
        now = self._clock()
        for key in [k for k, (at, _) in self._entries.items() if now - at >= self._ttl]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class PriceLookup:
    """USD price by symbol from an HTTP ticker endpoint, cached."""

    def __init__(self, url: str, session: aiohttp.ClientSession, cache_ttl_seconds: float = 60.0) -> None:
        self._url = url
        self._session = session
        self._cache = TTLCache(cache_ttl_seconds)

    async def price(self, symbol: str) -> Optional[Decimal]:
        """
        Return the USD price for a ticker symbol (e.g. "BTCUSDT"), or None.

        Bare stablecoin symbols resolve to 1 without a lookup.
        """
        if symbol.upper() in STABLE_SYMBOLS:
            return Decimal(1)

        cached = self._cache.get(symbol)
        if cached is not _MISSING:
            return cached

        value = await self._fetch(symbol)
        self._cache.put(symbol, value)
        return value

    async def _fetch(self, symbol: str) -> Optional[Decimal]:
        try:
            async with self._session.get(self._url, params={"symbol": symbol}) as resp:
                if resp.status != 200:
                    logger.warning("Price lookup HTTP %d | symbol=%s", resp.status, symbol)
                    return None
                body = await resp.json(content_type=None)
            value = Decimal(str(body["price"]))
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Price lookup failed | symbol=%s | error=%r", symbol, exc)
            return None
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            logger.warning("Price lookup returned garbage | symbol=%s | error=%r", symbol, exc)
            return None
        return value if value > 0 else None


@dataclass(frozen=True)
class PositionSnapshot:
    """
    Vault view of one position after the event, in 1e30 fixed point.

    pnl_delta is signed (negative for a loss) and None when getPositionDelta failed.
    """

    size: int
    collateral: int
    average_price: int
    pnl_delta: Optional[int] = None


class PositionLookup:
    """Reads Vault positions through eth_call on the HTTP JSON-RPC endpoint."""

    def __init__(self, rpc: RpcClient, vault: str, cache_ttl_seconds: float = 60.0) -> None:
        self._rpc = rpc
        self._vault = Web3.to_checksum_address(vault)
        self._cache = TTLCache(cache_ttl_seconds)

    async def position(self, event: RawEvent) -> Optional[PositionSnapshot]:
        """
        Return the position this event touched, or None if it can't be read.

        Keyed by transaction as well as position key: a later event on the same
        position must not reuse an earlier snapshot.
        """
        key = (event.tx_hash, event.account.lower(), event.collateral_token.lower(),
               event.index_token.lower(), event.is_long)
        cached = self._cache.get(key)
        if cached is not _MISSING:
            return cached

        snapshot = await self._read(event)
        self._cache.put(key, snapshot)
        return snapshot

    async def _read(self, event: RawEvent) -> Optional[PositionSnapshot]:
        try:
            args = [
                Web3.to_checksum_address(event.account),
                Web3.to_checksum_address(event.collateral_token),
                Web3.to_checksum_address(event.index_token),
                event.is_long,
            ]
            position = await self._eth_call(GET_POSITION_SIGNATURE, args, _GET_POSITION_RETURN_TYPES)
        except (RpcError, DecodingError, EncodingError, ValueError, TypeError) as exc:
            logger.warning("getPosition failed | account=%s | error=%s", event.account, exc)
            return None

        size, collateral, average_price = position[0], position[1], position[2]
        pnl_delta: Optional[int] = None
        if size > 0:
            try:
                has_profit, delta = await self._eth_call(
                    GET_POSITION_DELTA_SIGNATURE, args, _GET_POSITION_DELTA_RETURN_TYPES
                )
                pnl_delta = delta if has_profit else -delta
            except (RpcError, DecodingError, EncodingError, ValueError, TypeError) as exc:
                logger.warning("getPositionDelta failed | account=%s | error=%s", event.account, exc)

        return PositionSnapshot(size=size, collateral=collateral, average_price=average_price, pnl_delta=pnl_delta)

    async def _eth_call(self, signature: str, args: list[Any], return_types: list[str]) -> tuple:
        data = function_selector(signature) + abi_encode(_POSITION_ARG_TYPES, args)
        result = await self._rpc.call(
            "eth_call", [{"to": self._vault, "data": "0x" + data.hex()}, "latest"]
        )
        if not isinstance(result, str) or not result.startswith("0x"):
            raise ValueError(f"unexpected eth_call result: {result!r}")
        return abi_decode(return_types, bytes.fromhex(result[2:]))


def _ratio(numerator: Optional[Decimal], denominator: Optional[Decimal]) -> Optional[Decimal]:
    if numerator is None or denominator is None or denominator == 0:
        return None
    return numerator / denominator


class Enricher:
    """
    Derives display fields for a RawEvent.

    Field sources, first available wins:
        size / collateral / price   Vault position → event payload
        leverage                    size ÷ collateral of whichever source won
        P/L                         realised P/L on the event → Vault position delta
                                    → estimate from entry price and mark price
        mark price                  PriceLookup

    Usage:
        enricher = Enricher(config.token, prices=PriceLookup(...), positions=None)
        enriched = await enricher.enrich(event)
    """

    def __init__(
        self,
        token_for: Callable[[str], Optional[TokenInfo]],
        prices: Optional[PriceLookup] = None,
        positions: Optional[PositionLookup] = None,
    ) -> None:
        self._token_for = token_for
        self._prices = prices
        self._positions = positions

    async def enrich(self, event: RawEvent) -> EnrichedEvent:
        token = self._token_for(event.index_token)
        enriched = EnrichedEvent(event=event, symbol=token.symbol if token else "UNKNOWN")
        if token is None:
            enriched.degraded.append("symbol")

        enriched.mark_price_usd = await self._mark_price(token, enriched)

        if isinstance(event, LiquidationEvent):
            enriched.size_usd = to_usd(event.size)
            enriched.collateral_usd = to_usd(event.collateral)
            enriched.price_usd = to_usd(event.mark_price)
            enriched.pnl_usd = to_usd(event.realised_pnl)
        else:
            await self._apply_position(event, enriched)

        enriched.leverage = _ratio(enriched.size_usd, enriched.collateral_usd)
        if enriched.pnl_usd is None:
            enriched.degraded.append("pnl")
        else:
            pct = _ratio(enriched.pnl_usd, enriched.collateral_usd)
            enriched.pnl_pct = None if pct is None else pct * 100

        if enriched.degraded:
            logger.info(
                "Event enriched with gaps | id=%s | missing=%s",
                event.id,
                ",".join(enriched.degraded),
            )
        return enriched

    async def _mark_price(self, token: Optional[TokenInfo], enriched: EnrichedEvent) -> Optional[Decimal]:
        if self._prices is None or token is None:
            return None
        symbol = token.price_symbol or f"{token.symbol}{DEFAULT_QUOTE}"
        if token.symbol.upper() in STABLE_SYMBOLS:
            symbol = token.symbol
        value = await self._prices.price(symbol)
        if value is None:
            enriched.degraded.append("mark_price")
        return value

    async def _apply_position(self, event: RawEvent, enriched: EnrichedEvent) -> None:
        snapshot: Optional[PositionSnapshot] = None
        if self._positions is not None:
            snapshot = await self._positions.position(event)
            if snapshot is None:
                enriched.degraded.append("position")

        if snapshot is not None and snapshot.size > 0:
            enriched.size_usd = to_usd(snapshot.size)
            enriched.collateral_usd = to_usd(snapshot.collateral)
            enriched.price_usd = to_usd(snapshot.average_price)
        else:
            # Position closed or unreadable: fall back to the event's own deltas
            enriched.size_usd = to_usd(event.size_delta)
            enriched.collateral_usd = to_usd(event.collateral_delta)
            enriched.price_usd = to_usd(event.price) if event.price else None

        if isinstance(event, DecreaseEvent) and event.realised_pnl is not None:
            enriched.pnl_usd = to_usd(event.realised_pnl)
        elif snapshot is not None and snapshot.pnl_delta is not None:
            enriched.pnl_usd = to_usd(snapshot.pnl_delta)
        elif snapshot is not None and snapshot.size > 0:
            enriched.pnl_usd = self._estimate_pnl(
                event, to_usd(snapshot.size), to_usd(snapshot.average_price), enriched.mark_price_usd
            )

    @staticmethod
    def _estimate_pnl(
        event: RawEvent,
        size_usd: Optional[Decimal],
        entry_usd: Optional[Decimal],
        mark_usd: Optional[Decimal],
    ) -> Optional[Decimal]:
        """Unrealised P/L from entry and mark price, signed by side."""
        move = _ratio(None if mark_usd is None or entry_usd is None else mark_usd - entry_usd, entry_usd)
        if move is None or size_usd is None:
            return None
        pnl = size_usd * move
        return pnl if event.is_long else -pnl
