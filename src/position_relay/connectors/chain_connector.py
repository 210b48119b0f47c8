"""
Chain log subscription connector for real-time position events.

Subscribes over a JSON-RPC WebSocket (eth_subscribe "logs") to the
PositionRouter and Vault contracts, ABI-decodes each log into a RawEvent and
puts it onto an asyncio.Queue for the RelayManager.

Events:
- PositionRouter.ExecuteIncreasePosition  → IncreaseEvent
- PositionRouter.ExecuteDecreasePosition  → DecreaseEvent
- Vault.LiquidatePosition                 → LiquidationEvent

Known limitation: logs emitted while the socket is down are NOT replayed after
reconnect. The gap is logged at every reconnect.
"""

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, Optional

import websockets
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from position_relay.connectors.rpc_client import BlockClock
from position_relay.framework.base_connector import StreamingConnector
from position_relay.framework.events import (
    DecreaseEvent,
    EventKind,
    IncreaseEvent,
    LiquidationEvent,
    RawEvent,
)

logger = logging.getLogger(__name__)

INCREASE_SIGNATURE = (
    "ExecuteIncreasePosition(address,address[],address,uint256,uint256,uint256,"
    "bool,uint256,uint256,uint256,uint256)"
)
DECREASE_SIGNATURE = (
    "ExecuteDecreasePosition(address,address[],address,uint256,uint256,bool,"
    "address,uint256,uint256,uint256,uint256,uint256)"
)
LIQUIDATE_SIGNATURE = (
    "LiquidatePosition(bytes32,address,address,address,bool,uint256,uint256,"
    "uint256,int256,uint256)"
)

# None of these events declare indexed params: every field is in log.data
_FIELD_NAMES: dict[EventKind, tuple[str, ...]] = {
    EventKind.INCREASE: (
        "account", "path", "indexToken", "amountIn", "minOut", "sizeDelta",
        "isLong", "acceptablePrice", "executionFee", "blockGap", "timeGap",
    ),
    EventKind.DECREASE: (
        "account", "path", "indexToken", "collateralDelta", "sizeDelta", "isLong",
        "receiver", "acceptablePrice", "minOut", "executionFee", "blockGap", "timeGap",
    ),
    EventKind.LIQUIDATION: (
        "key", "account", "collateralToken", "indexToken", "isLong", "size",
        "collateral", "reserveAmount", "realisedPnl", "markPrice",
    ),
}

_SIGNATURES: dict[EventKind, str] = {
    EventKind.INCREASE: INCREASE_SIGNATURE,
    EventKind.DECREASE: DECREASE_SIGNATURE,
    EventKind.LIQUIDATION: LIQUIDATE_SIGNATURE,
}


def event_topic(signature: str) -> str:
    """keccak256 topic0 of an event signature as 0x-prefixed lowercase hex."""
    digest = Web3.keccak(text=signature).hex()
    return (digest if digest.startswith("0x") else f"0x{digest}").lower()


def _signature_types(signature: str) -> list[str]:
    return signature[signature.index("(") + 1 : -1].split(",")


def _to_int(value: Any) -> int:
    """Decode a JSON-RPC quantity (0x-hex string or int)."""
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


class ChainConnector(StreamingConnector):
    """
    Streams position events from contract logs over a WebSocket subscription.

    The live socket is an explicit handle (self._ws) owned by this connector. On
    any error or close it is torn down (liveness probe cancelled, handle cleared)
    and replaced by a fresh connection after a fixed delay.

    Usage (RelayManager):
        connector = ChainConnector("chain-ws", ws_url, router, vault, clock)
        connector.connect()
        await asyncio.gather(connector.stream(queue), ...)
    """

    _MAX_MESSAGE_BYTES = 10 * 1024 * 1024

    def __init__(
        self,
        source: str,
        ws_url: str,
        position_router: str,
        vault: str,
        clock: Optional[BlockClock] = None,
        reconnect_delay_seconds: float = 5.0,
        probe_interval_seconds: float = 20.0,
        probe_timeout_seconds: float = 10.0,
    ) -> None:
        super().__init__(source=source)
        self._ws_url = ws_url
        self._addresses = [a for a in (position_router, vault) if a]
        self._clock = clock or BlockClock(None)
        self._reconnect_delay = reconnect_delay_seconds
        self._probe_interval = probe_interval_seconds
        self._probe_timeout = probe_timeout_seconds

        self._specs: dict[str, tuple[EventKind, list[str], tuple[str, ...]]] = {
            event_topic(sig): (kind, _signature_types(sig), _FIELD_NAMES[kind])
            for kind, sig in _SIGNATURES.items()
        }
        self._ws: Optional[Any] = None
        self._subscription_id: Optional[str] = None
        self._last_alive_at: Optional[float] = None  # None until first message or pong
        self._stop: asyncio.Event = asyncio.Event()

    # ------------------------------------------------------------------
    # BaseConnector abstract method implementations
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """
        Setup-only — validates config and logs the subscription filter.

        The WebSocket connection itself is opened inside stream().
        """
        if not self._ws_url:
            raise ValueError("ChainConnector requires a WebSocket RPC url")
        if not self._addresses:
            raise ValueError("ChainConnector requires at least one contract address")
        for address in self._addresses:
            if not Web3.is_address(address):
                raise ValueError(f"ChainConnector got an invalid contract address: {address}")
        logger.info(
            "ChainConnector configured | contracts=%s | topics=%d",
            self._addresses,
            len(self._specs),
        )

    def normalize(self, raw: dict[str, Any], kind: EventKind) -> RawEvent:
        """
        Normalize a decoded log (field name → value, plus txHash, logIndex,
        timestamp) into its RawEvent variant.

        The collateral token of router events is the last hop of the swap path.
        Increase events only report the collateral token amount, so their USD
        collateral_delta is left unknown for enrichment to fill.
        """
        native_id = f"{raw['txHash']}:{raw['logIndex']}"
        common = {
            "id": native_id,
            "timestamp": int(raw["timestamp"]),
            "account": str(raw["account"]),
            "index_token": str(raw["indexToken"]),
            "is_long": bool(raw["isLong"]),
            "tx_hash": str(raw["txHash"]),
        }
        if kind is EventKind.INCREASE:
            return IncreaseEvent(
                **common,
                collateral_token=str(raw["path"][-1]),
                size_delta=int(raw["sizeDelta"]),
                collateral_delta=None,
                price=int(raw["acceptablePrice"]),
            )
        if kind is EventKind.DECREASE:
            return DecreaseEvent(
                **common,
                collateral_token=str(raw["path"][-1]),
                size_delta=int(raw["sizeDelta"]),
                collateral_delta=int(raw["collateralDelta"]),
                price=int(raw["acceptablePrice"]),
            )
        return LiquidationEvent(
            **common,
            collateral_token=str(raw["collateralToken"]),
            size=int(raw["size"]),
            collateral=int(raw["collateral"]),
            mark_price=int(raw["markPrice"]),
            realised_pnl=int(raw["realisedPnl"]),
        )

    def health_check(self) -> bool:
        """True if a message or a pong arrived within three probe intervals."""
        if self._last_alive_at is None:
            return False
        return time.monotonic() - self._last_alive_at < self._probe_interval * 3

    def shutdown(self) -> None:
        """Signal stream() to exit and close the live socket, if any."""
        self._stop.set()
        if self._ws is not None:
            asyncio.ensure_future(self._ws.close())
        logger.info("ChainConnector shutdown requested")

    # ------------------------------------------------------------------
    # Streaming coroutine (called by RelayManager via asyncio.gather)
    # ------------------------------------------------------------------

    async def stream(self, queue: asyncio.Queue[RawEvent]) -> None:
        """
        Streaming coroutine — runs until shutdown() is called.

        Reconnects after a fixed delay on any WebSocket error or close, then
        re-subscribes. Logs emitted during the outage are not replayed.
        """
        while not self._stop.is_set():
            try:
                await self._listen_once(queue)
                if self._stop.is_set():
                    return
                logger.warning(
                    "ChainConnector WebSocket closed — reconnecting in %.0fs",
                    self._reconnect_delay,
                )
            except Exception as exc:
                if self._stop.is_set():
                    return
                logger.warning(
                    "ChainConnector WebSocket error — reconnecting in %.0fs | error=%s",
                    self._reconnect_delay,
                    exc,
                )
            logger.warning("ChainConnector gap: logs emitted while disconnected will not be relayed")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=self._reconnect_delay)

    async def _listen_once(self, queue: asyncio.Queue[RawEvent]) -> None:
        """
        Open one WebSocket session, subscribe, and relay logs until close or stop.

        The liveness probe runs beside the reader and closes the socket when a
        ping goes unanswered, which ends the `async for` and triggers reconnect.
        """
        async with websockets.connect(
            self._ws_url, ping_interval=None, max_size=self._MAX_MESSAGE_BYTES
        ) as ws:
            self._ws = ws
            probe = asyncio.create_task(self._probe(ws))
            try:
                await ws.send(json.dumps(self._subscribe_message()))
                ack = json.loads(await asyncio.wait_for(ws.recv(), timeout=self._probe_timeout))
                if ack.get("error"):
                    raise ConnectionError(f"eth_subscribe rejected: {ack['error']}")
                self._subscription_id = ack.get("result")
                self._last_alive_at = time.monotonic()
                logger.info(
                    "ChainConnector connected and subscribed | subscription=%s",
                    self._subscription_id,
                )

                async for message in ws:
                    if self._stop.is_set():
                        return
                    self._last_alive_at = time.monotonic()
                    await self._handle_message(message, queue)
            finally:
                probe.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await probe
                self._ws = None
                self._subscription_id = None

    async def _probe(self, ws: Any) -> None:
        """Periodic ping; closes the socket when the pong does not arrive in time."""
        while True:
            await asyncio.sleep(self._probe_interval)
            try:
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=self._probe_timeout)
            except (asyncio.TimeoutError, websockets.exceptions.ConnectionClosed) as exc:
                logger.warning("ChainConnector liveness probe failed — closing socket | error=%r", exc)
                await ws.close()
                return
            self._last_alive_at = time.monotonic()

    async def _handle_message(self, message: Any, queue: asyncio.Queue[RawEvent]) -> None:
        """Decode one subscription notification and queue the resulting event."""
        try:
            payload = json.loads(message)
        except ValueError as exc:
            logger.warning("ChainConnector invalid JSON message | error=%s", exc)
            return
        if not isinstance(payload, dict) or payload.get("method") != "eth_subscription":
            return

        log = (payload.get("params") or {}).get("result") or {}
        if log.get("removed"):
            logger.info("ChainConnector ignoring removed log | tx=%s", log.get("transactionHash"))
            return

        decoded = self.decode_log(log)
        if decoded is None:
            return
        kind, raw = decoded
        raw["timestamp"] = await self._resolve_timestamp(log)

        try:
            event = self.normalize_with_lineage(raw, kind)
        except (KeyError, IndexError, ValueError, TypeError) as exc:
            logger.error("ChainConnector could not normalize %s log | tx=%s | error=%s", kind.value, raw.get("txHash"), exc)
            return
        await queue.put(event)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def decode_log(self, log: dict[str, Any]) -> Optional[tuple[EventKind, dict[str, Any]]]:
        """
        ABI-decode a raw log into (kind, field dict).

        Returns None for logs with an unknown topic or undecodable data.
        """
        topics = log.get("topics") or []
        if not topics:
            return None
        spec = self._specs.get(str(topics[0]).lower())
        if spec is None:
            return None
        kind, types, names = spec

        data = log.get("data") or "0x"
        try:
            values = abi_decode(types, bytes.fromhex(data[2:] if data.startswith("0x") else data))
        except (DecodingError, ValueError) as exc:
            logger.warning(
                "ChainConnector failed to decode %s log | tx=%s | error=%s",
                kind.value,
                log.get("transactionHash"),
                exc,
            )
            return None

        raw: dict[str, Any] = dict(zip(names, values))
        raw["txHash"] = log.get("transactionHash", "")
        raw["logIndex"] = _to_int(log.get("logIndex", 0))
        raw["blockNumber"] = _to_int(log.get("blockNumber", 0))
        return kind, raw

    async def _resolve_timestamp(self, log: dict[str, Any]) -> int:
        """Prefer the node-provided blockTimestamp, else look the block up."""
        if log.get("blockTimestamp"):
            ts = _to_int(log["blockTimestamp"])
            self._clock.observe(ts)
            return ts
        if log.get("blockNumber") is None:
            return self._clock.fallback_timestamp()
        return await self._clock.timestamp_for(_to_int(log["blockNumber"]))

    def _subscribe_message(self) -> dict[str, Any]:
        """Build the eth_subscribe request for all monitored contracts and topics."""
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": [
                "logs",
                {
                    "address": [Web3.to_checksum_address(a) for a in self._addresses],
                    "topics": [sorted(self._specs)],
                },
            ],
        }
