"""
Unit tests for RelayManager.

Tests cover:
- build_connector(): registry lookup per source, ConfigError on bad settings
- build_store(): file vs Redis backend
- build_enricher(): Vault reads only in chain mode with an HTTP RPC endpoint
- _poll_loop(): since = last_ts - 1, immediate re-poll when saturated
- _consume(): queue batches, failed events re-submitted with the next batch
- _bounded_pending(): oldest undelivered events kept
- shutdown(): stops the loops and the connector
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from position_relay.connectors.chain_connector import ChainConnector
from position_relay.connectors.subgraph_connector import SubgraphConnector
from position_relay.framework.base_connector import PollResult
from position_relay.framework.config_loader import (
    ChainSettings,
    ConfigError,
    RelayConfig,
    SubgraphSettings,
)
from position_relay.framework.cursor_store import Cursor, FileCursorStore, RedisCursorStore
from position_relay.framework.dedup_engine import CycleResult
from position_relay.framework.events import IncreaseEvent
from position_relay.producer.relay_manager import RelayManager

VAULT = "0xeB0E5E1a8500317A1B8fDd195097D5509Ef861de"


def subgraph_config(**overrides) -> RelayConfig:
    config = RelayConfig(source="subgraph-poll", subgraph=SubgraphSettings(url="https://subgraph.test"))
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def chain_config(**chain) -> RelayConfig:
    settings = {"ws_url": "wss://node.test", "vault": VAULT, **chain}
    return RelayConfig(source="chain-ws", chain=ChainSettings(**settings))


def make_event(event_id: str, ts: int) -> IncreaseEvent:
    return IncreaseEvent(
        id=event_id,
        timestamp=ts,
        account="0xabc",
        index_token="0xbtc",
        collateral_token="0xusdc",
        is_long=True,
        tx_hash="0xtx",
    )


class FakeEngine:
    """Records run_cycle calls; advances the cursor like the real engine would."""

    def __init__(self, results) -> None:
        self.cursor = Cursor(1000, 0)
        self.results = list(results)
        self.calls: list[tuple[list, object]] = []
        self.on_call = None

    async def run_cycle(self, events, horizon=None) -> CycleResult:
        self.calls.append((list(events), horizon))
        result = self.results.pop(0)
        self.cursor = Cursor(result.watermark, 0)
        if self.on_call is not None:
            self.on_call(len(self.calls))
        return result


class TestBuildComponents:
    """Test component factories."""

    def setup_method(self) -> None:
        self.manager = RelayManager()

    def test_subgraph_source_builds_subgraph_connector(self) -> None:
        connector = self.manager.build_connector(subgraph_config(), MagicMock())
        assert isinstance(connector, SubgraphConnector)

    def test_chain_source_builds_chain_connector(self) -> None:
        connector = self.manager.build_connector(chain_config(), MagicMock())
        assert isinstance(connector, ChainConnector)

    def test_unknown_source_raises_config_error(self) -> None:
        with pytest.raises(ConfigError, match="unknown source"):
            self.manager.build_connector(RelayConfig(source="ftp"), MagicMock())

    def test_connector_validation_becomes_config_error(self) -> None:
        with pytest.raises(ConfigError, match="invalid contract address"):
            self.manager.build_connector(chain_config(vault="0x123"), MagicMock())

    def test_file_store_by_default(self) -> None:
        assert isinstance(self.manager.build_store(subgraph_config()), FileCursorStore)

    def test_redis_store_when_configured(self) -> None:
        config = subgraph_config()
        config.state.redis_url = "redis://localhost:6379/0"
        with patch("position_relay.framework.cursor_store.redis.from_url"):
            assert isinstance(self.manager.build_store(config), RedisCursorStore)

    def test_enricher_without_vault_reads_in_subgraph_mode(self) -> None:
        enricher = self.manager.build_enricher(subgraph_config(), MagicMock())
        assert enricher._positions is None
        assert enricher._prices is not None

    def test_enricher_with_vault_reads_in_chain_mode(self) -> None:
        enricher = self.manager.build_enricher(chain_config(http_url="https://rpc.test"), MagicMock())
        assert enricher._positions is not None

    def test_load_config_propagates_config_error(self, tmp_path, monkeypatch) -> None:
        monkeypatch.delenv("TELEGRAM_TOKEN", raising=False)
        monkeypatch.delenv("TELEGRAM_CHAT_ID", raising=False)
        manager = RelayManager(str(tmp_path / "missing.yaml"))
        with pytest.raises(ConfigError):
            asyncio.run(manager.run())


class TestPollLoop:
    """Test the polling schedule."""

    def setup_method(self) -> None:
        self.manager = RelayManager(config=subgraph_config())
        self.manager._sleep = AsyncMock()
        self.writer = MagicMock()
        self.writer.flush_metrics = AsyncMock()

    def test_polls_from_just_below_watermark(self) -> None:
        connector = MagicMock()
        connector.poll = AsyncMock(return_value=PollResult())
        engine = FakeEngine([CycleResult(watermark=1000)])
        engine.on_call = lambda n: self.manager.shutdown()

        asyncio.run(self.manager._poll_loop(connector, engine, self.writer, 15.0))

        connector.poll.assert_awaited_once_with(since=999)
        self.manager._sleep.assert_awaited_once_with(15.0)
        self.writer.flush_metrics.assert_awaited_once()

    def test_saturated_poll_with_progress_repolls_immediately(self) -> None:
        events = [make_event("a", 1005)]
        connector = MagicMock()
        connector.poll = AsyncMock(side_effect=[PollResult(events, horizon=1005), PollResult()])
        engine = FakeEngine([CycleResult(delivered=1, watermark=1005), CycleResult(watermark=1005)])
        engine.on_call = lambda n: self.manager.shutdown() if n == 2 else None

        asyncio.run(self.manager._poll_loop(connector, engine, self.writer, 15.0))

        assert [c.kwargs["since"] for c in connector.poll.await_args_list] == [999, 1004]
        assert engine.calls[0] == (events, 1005)
        self.manager._sleep.assert_awaited_once()

    def test_saturated_poll_without_progress_waits(self) -> None:
        connector = MagicMock()
        connector.poll = AsyncMock(return_value=PollResult([make_event("a", 1000)], horizon=1000))
        engine = FakeEngine([CycleResult(skipped=1, watermark=1000)])
        engine.on_call = lambda n: self.manager.shutdown()

        asyncio.run(self.manager._poll_loop(connector, engine, self.writer, 15.0))

        self.manager._sleep.assert_awaited_once_with(15.0)


class TestConsume:
    """Test the streaming consumer."""

    def setup_method(self) -> None:
        self.manager = RelayManager(config=chain_config())
        self.writer = MagicMock()
        self.writer.flush_metrics = AsyncMock()

    def test_failed_events_resubmitted_with_next_batch(self) -> None:
        a, b = make_event("a", 1001), make_event("b", 1002)
        engine = FakeEngine([CycleResult(delivered=1, failed=1, watermark=1001, failed_events=[a]),
                             CycleResult(delivered=1, watermark=1002)])
        engine.on_call = lambda n: self.manager.shutdown() if n == 2 else None

        async def scenario() -> None:
            queue: asyncio.Queue = asyncio.Queue()
            queue.put_nowait(a)
            queue.put_nowait(b)
            await self.manager._consume(queue, engine, self.writer, 0.01, 100)

        asyncio.run(scenario())

        assert engine.calls[0] == ([a, b], 1002)
        assert engine.calls[1] == ([a], 1001)
        assert self.manager._pending == []

    def test_idle_consumer_exits_on_shutdown(self) -> None:
        engine = FakeEngine([])
        self.manager.shutdown()

        async def scenario() -> None:
            await self.manager._consume(asyncio.Queue(), engine, self.writer, 0.01, 100)

        asyncio.run(scenario())
        assert engine.calls == []

    def test_bounded_pending_keeps_oldest(self) -> None:
        events = [make_event(str(ts), ts) for ts in (5, 1, 3)]
        kept = RelayManager._bounded_pending(events, 2)
        assert [e.timestamp for e in kept] == [1, 3]


class TestShutdown:
    def test_shutdown_stops_connector(self) -> None:
        manager = RelayManager(config=subgraph_config())
        manager._connector = MagicMock()

        manager.shutdown()

        assert manager._stop.is_set()
        manager._connector.shutdown.assert_called_once()
