"""
Unit tests for RpcClient and BlockClock.

Tests cover:
- call(): JSON-RPC envelope and result extraction
- call(): HTTP, transport, malformed and error-object responses raise RpcError
- BlockClock: hex timestamp parsing, caching, retry, newest-known-block fallback
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from position_relay.connectors.rpc_client import BlockClock, RpcClient, RpcError


def make_response(status: int = 200, json_data=None, text: str = ""):
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=json_data)
    resp.text = AsyncMock(return_value=text)
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=resp)
    ctx.__aexit__ = AsyncMock(return_value=False)
    return ctx


class TestRpcClient:
    """Test JSON-RPC request / response handling."""

    def setup_method(self) -> None:
        self.session = MagicMock()
        self.client = RpcClient("https://rpc.test", self.session)

    def test_returns_result(self) -> None:
        self.session.post.return_value = make_response(json_data={"jsonrpc": "2.0", "id": 1, "result": "0x10"})
        assert asyncio.run(self.client.call("eth_blockNumber", [])) == "0x10"

    def test_request_envelope(self) -> None:
        self.session.post.return_value = make_response(json_data={"result": None})
        asyncio.run(self.client.call("eth_call", [{"to": "0x1"}, "latest"]))

        payload = self.session.post.call_args.kwargs["json"]
        assert payload["jsonrpc"] == "2.0"
        assert payload["method"] == "eth_call"
        assert payload["params"] == [{"to": "0x1"}, "latest"]

    def test_request_ids_increase(self) -> None:
        self.session.post.return_value = make_response(json_data={"result": 1})
        asyncio.run(self.client.call("a", []))
        asyncio.run(self.client.call("b", []))

        ids = [c.kwargs["json"]["id"] for c in self.session.post.call_args_list]
        assert ids == [1, 2]

    def test_error_object_raises(self) -> None:
        self.session.post.return_value = make_response(json_data={"error": {"code": -32000, "message": "execution reverted"}})
        with pytest.raises(RpcError, match="execution reverted"):
            asyncio.run(self.client.call("eth_call", []))

    def test_http_error_raises(self) -> None:
        self.session.post.return_value = make_response(status=503, text="unavailable")
        with pytest.raises(RpcError, match="HTTP 503"):
            asyncio.run(self.client.call("eth_call", []))

    def test_transport_error_raises(self) -> None:
        self.session.post.side_effect = aiohttp.ClientConnectionError("refused")
        with pytest.raises(RpcError):
            asyncio.run(self.client.call("eth_call", []))

    def test_malformed_body_raises(self) -> None:
        self.session.post.return_value = make_response(json_data=["not", "a", "dict"])
        with pytest.raises(RpcError, match="malformed"):
            asyncio.run(self.client.call("eth_call", []))


class TestBlockClock:
    """Test block timestamp resolution."""

    def test_parses_hex_timestamp(self) -> None:
        rpc = MagicMock()
        rpc.call = AsyncMock(return_value={"number": "0x10", "timestamp": "0x6553f100"})
        clock = BlockClock(rpc)

        assert asyncio.run(clock.timestamp_for(16)) == 0x6553F100
        rpc.call.assert_awaited_once_with("eth_getBlockByNumber", ["0x10", False])

    def test_cached(self) -> None:
        rpc = MagicMock()
        rpc.call = AsyncMock(return_value={"timestamp": "0x1"})
        clock = BlockClock(rpc)

        asyncio.run(clock.timestamp_for(5))
        asyncio.run(clock.timestamp_for(5))
        assert rpc.call.await_count == 1

    def test_cache_bounded(self) -> None:
        rpc = MagicMock()
        rpc.call = AsyncMock(return_value={"timestamp": "0x1"})
        clock = BlockClock(rpc)
        clock.MAX_ENTRIES = 2

        for block in (1, 2, 3):
            asyncio.run(clock.timestamp_for(block))
        assert list(clock._cache) == [2, 3]

    def test_transient_failure_retried(self) -> None:
        rpc = MagicMock()
        rpc.call = AsyncMock(side_effect=[RpcError("down"), {"timestamp": "0x3e8"}])
        with patch("position_relay.connectors.rpc_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert asyncio.run(BlockClock(rpc).timestamp_for(100)) == 1000
        sleep.assert_awaited_once_with(0.5)

    def test_failure_uses_newest_known_block_time(self) -> None:
        rpc = MagicMock()
        rpc.call = AsyncMock(side_effect=[{"timestamp": "0x3de"}] + [RpcError("down")] * 3)
        clock = BlockClock(rpc)

        with patch("position_relay.connectors.rpc_client.asyncio.sleep", new_callable=AsyncMock), patch(
            "position_relay.connectors.rpc_client.time.time", return_value=5_000.0
        ):
            assert asyncio.run(clock.timestamp_for(99)) == 990
            assert asyncio.run(clock.timestamp_for(100)) == 990

        assert list(clock._cache) == [99]

    def test_observed_timestamp_used_as_fallback(self) -> None:
        rpc = MagicMock()
        rpc.call = AsyncMock(side_effect=RpcError("down"))
        clock = BlockClock(rpc)
        clock.observe(990)
        clock.observe(980)

        with patch("position_relay.connectors.rpc_client.asyncio.sleep", new_callable=AsyncMock):
            assert asyncio.run(clock.timestamp_for(100)) == 990
        assert rpc.call.await_count == BlockClock.LOOKUP_ATTEMPTS

    def test_wall_clock_only_before_any_block_time(self) -> None:
        rpc = MagicMock()
        rpc.call = AsyncMock(return_value=None)
        with patch("position_relay.connectors.rpc_client.asyncio.sleep", new_callable=AsyncMock), patch(
            "position_relay.connectors.rpc_client.time.time", return_value=1234.9
        ):
            assert asyncio.run(BlockClock(rpc).timestamp_for(1)) == 1234

    def test_without_rpc_uses_wall_clock(self) -> None:
        with patch("position_relay.connectors.rpc_client.time.time", return_value=99.0):
            assert asyncio.run(BlockClock(None).timestamp_for(1)) == 99
