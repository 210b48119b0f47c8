"""
RelayManager — reads relay.yaml, wires the pipeline, runs the event loop.

This is the orchestrator for the relay process:
1. Loads config/relay.yaml (+ environment overrides) into a RelayConfig
2. Builds the cursor store, the source connector, the enricher, the renderer
   and the Telegram writer, all sharing one aiohttp session
3. Loads the cursor (DedupEngine.start)
4. Runs the source-specific loop until shutdown():
   - polling: poll(since) → run_cycle → sleep poll_interval
   - streaming: asyncio.gather(connector.stream(queue), self._consume(queue))

The event loop is owned here. The dedup engine serializes cycles with its lock.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from position_relay.connectors.chain_connector import ChainConnector
from position_relay.connectors.rpc_client import BlockClock, RpcClient
from position_relay.connectors.subgraph_connector import SubgraphConnector
from position_relay.framework.base_connector import (
    BaseConnector,
    PollingConnector,
    StreamingConnector,
)
from position_relay.framework.config_loader import (
    SOURCE_CHAIN,
    SOURCE_SUBGRAPH,
    ConfigError,
    ConfigLoader,
    RelayConfig,
)
from position_relay.framework.cursor_store import BaseCursorStore, build_cursor_store
from position_relay.framework.dedup_engine import DedupEngine
from position_relay.framework.enrichment import Enricher, PositionLookup, PriceLookup
from position_relay.framework.events import RawEvent
from position_relay.framework.lineage import get_pipeline_version, hash_config
from position_relay.framework.renderer import MessageRenderer
from position_relay.producer.telegram_writer import TelegramWriter

logger = logging.getLogger(__name__)

# Registry maps config source names → connector class
_CONNECTOR_REGISTRY: dict[str, type[BaseConnector]] = {
    SOURCE_CHAIN: ChainConnector,
    SOURCE_SUBGRAPH: SubgraphConnector,
}


class RelayManager:
    """
    Orchestrates the relay pipeline.

    Reads relay.yaml, builds components, and runs until shutdown() is called
    (SIGTERM in production).

    Usage:
        manager = RelayManager()
        loop.run_until_complete(manager.run())   # called from main.py
        manager.shutdown()                       # called from signal handler
    """

    DEFAULT_CONFIG_PATH = "config/relay.yaml"
    DEFAULT_QUEUE_MAXSIZE = 10_000

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH, config: Optional[RelayConfig] = None) -> None:
        self._config_path = config_path
        self._config = config
        self._connector: Optional[BaseConnector] = None
        self._pending: list[RawEvent] = []
        self._stop: asyncio.Event = asyncio.Event()

    def load_config(self) -> RelayConfig:
        """
        Load relay.yaml with environment overrides applied.

        Raises:
            ConfigError: On missing or invalid mandatory settings.
        """
        if self._config is None:
            self._config = ConfigLoader(self._config_path).load()
        return self._config

    def build_store(self, config: RelayConfig) -> BaseCursorStore:
        return build_cursor_store(
            path=config.state.path,
            redis_url=config.state.redis_url,
            key_prefix=config.state.key_prefix,
            seen_ttl_seconds=config.state.seen_ttl_seconds,
        )

    def build_connector(self, config: RelayConfig, session: aiohttp.ClientSession) -> BaseConnector:
        """
        Instantiate and validate the connector named by config.source.

        Raises:
            ConfigError: Unknown source or connector rejected its settings.
        """
        connector_cls = _CONNECTOR_REGISTRY.get(config.source)
        if connector_cls is None:
            raise ConfigError(f"unknown source '{config.source}'")

        if config.source == SOURCE_SUBGRAPH:
            sub = config.subgraph
            connector: BaseConnector = SubgraphConnector(
                SOURCE_SUBGRAPH,
                sub.url,
                session,
                page_size=sub.page_size,
                max_pages=sub.max_pages,
                rate_limit_wait_seconds=sub.rate_limit_wait_seconds,
                max_rate_limit_retries=sub.max_rate_limit_retries,
            )
        else:
            chain = config.chain
            rpc = RpcClient(chain.http_url, session) if chain.http_url else None
            connector = ChainConnector(
                SOURCE_CHAIN,
                chain.ws_url,
                position_router=chain.position_router,
                vault=chain.vault,
                clock=BlockClock(rpc),
                reconnect_delay_seconds=chain.reconnect_delay_seconds,
                probe_interval_seconds=chain.probe_interval_seconds,
                probe_timeout_seconds=chain.probe_timeout_seconds,
            )

        try:
            connector.connect()
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        logger.info("Registered connector: %s (%s)", config.source, connector_cls.__name__)
        return connector

    def build_enricher(self, config: RelayConfig, session: aiohttp.ClientSession) -> Enricher:
        ttl = config.enrichment.cache_ttl_seconds
        prices = PriceLookup(config.enrichment.price_url, session, ttl) if config.enrichment.price_url else None
        positions = None
        if config.source == SOURCE_CHAIN and config.chain.http_url and config.chain.vault:
            positions = PositionLookup(RpcClient(config.chain.http_url, session), config.chain.vault, ttl)
        return Enricher(config.token, prices=prices, positions=positions)

    def build_writer(self, config: RelayConfig, session: aiohttp.ClientSession) -> TelegramWriter:
        tg = config.telegram
        return TelegramWriter(
            tg.token,
            tg.chat_id,
            session,
            parse_mode=tg.parse_mode or None,
            disable_web_page_preview=tg.disable_web_page_preview,
            max_retries=tg.max_retries,
            cloudwatch_namespace=config.metrics.cloudwatch_namespace,
            region=config.metrics.region,
        )

    async def run(self) -> None:
        """
        Main async entry point. Returns after shutdown() once the current cycle
        has committed.

        Raises:
            ConfigError: Before any network activity if configuration is unusable.
        """
        config = self.load_config()
        logger.info(
            "RelayManager starting | source=%s | version=%s | config_hash=%s",
            config.source,
            get_pipeline_version(),
            hash_config(config.redacted()),
        )

        store = self.build_store(config)
        timeout = aiohttp.ClientTimeout(total=config.http_timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                self._connector = self.build_connector(config, session)
                writer = self.build_writer(config, session)
                engine = DedupEngine(
                    store,
                    self.build_enricher(config, session),
                    MessageRenderer(config.explorer_tx_url),
                    writer,
                )
                await engine.start()

                if isinstance(self._connector, PollingConnector):
                    await self._poll_loop(self._connector, engine, writer, config.poll_interval_seconds)
                elif isinstance(self._connector, StreamingConnector):
                    queue: asyncio.Queue[RawEvent] = asyncio.Queue(maxsize=self.DEFAULT_QUEUE_MAXSIZE)
                    await asyncio.gather(
                        self._connector.stream(queue),
                        self._consume(queue, engine, writer, config.batch_window_seconds, config.max_pending),
                    )
        finally:
            await store.close()
            logger.info("RelayManager stopped")

    def shutdown(self) -> None:
        """
        Signal the loops and the connector to stop gracefully.

        The running cycle finishes (including cursor persistence) before run() returns.
        """
        logger.info("RelayManager shutdown initiated")
        self._stop.set()
        if self._connector is not None:
            self._connector.shutdown()

    # ------------------------------------------------------------------
    # Polling mode
    # ------------------------------------------------------------------

    async def _poll_loop(
        self,
        connector: PollingConnector,
        engine: DedupEngine,
        writer: TelegramWriter,
        interval: float,
    ) -> None:
        """
        One cycle per tick. The next poll starts only after the previous cycle
        committed. A saturated poll that still advanced the watermark re-polls
        immediately.
        """
        while not self._stop.is_set():
            before = engine.cursor.last_ts
            # since = last_ts - 1 re-fetches events AT the watermark for the seen-set check
            result = await connector.poll(since=before - 1)
            cycle = await engine.run_cycle(result.events, horizon=result.horizon)
            await writer.flush_metrics()

            if result.horizon is not None:
                if cycle.watermark > before and cycle.failed == 0:
                    continue
                if cycle.watermark == before and cycle.failed == 0:
                    logger.warning(
                        "Poll window saturated without progress — more events share "
                        "one timestamp than fit in max_pages * page_size | ts=%d",
                        before,
                    )

            await self._sleep(interval)

    # ------------------------------------------------------------------
    # Streaming mode
    # ------------------------------------------------------------------

    async def _consume(
        self,
        queue: asyncio.Queue[RawEvent],
        engine: DedupEngine,
        writer: TelegramWriter,
        window: float,
        max_pending: int,
    ) -> None:
        """
        Drain the connector queue in batches and run one cycle per batch.

        horizon = newest timestamp in the batch: more logs from that block may
        still arrive, so the watermark stays on it. Events whose delivery failed
        are kept in a bounded pending list and re-submitted with the next batch.

        Exits when shutdown() is called AND the queue is empty.
        """
        while True:
            batch = await self._collect(queue, window)
            events = self._pending + batch
            if events:
                horizon = max(e.timestamp for e in events)
                cycle = await engine.run_cycle(events, horizon=horizon)
                self._pending = self._bounded_pending(cycle.failed_events, max_pending)
                await writer.flush_metrics()

            if self._stop.is_set() and queue.empty():
                if self._pending:
                    logger.warning("Shutting down with %d undelivered events", len(self._pending))
                break

    async def _collect(self, queue: asyncio.Queue[RawEvent], window: float) -> list[RawEvent]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + window
        batch: list[RawEvent] = []

        while len(batch) < self.DEFAULT_QUEUE_MAXSIZE:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                batch.append(await asyncio.wait_for(queue.get(), timeout=max(remaining, 0.01)))
            except asyncio.TimeoutError:
                break
        return batch

    @staticmethod
    def _bounded_pending(failed: list[RawEvent], max_pending: int) -> list[RawEvent]:
        if len(failed) <= max_pending:
            return failed
        logger.error(
            "Pending list full — dropping %d newest undelivered events | max_pending=%d",
            len(failed) - max_pending,
            max_pending,
        )
        return sorted(failed, key=lambda e: e.timestamp)[:max_pending]

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early on shutdown()."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
