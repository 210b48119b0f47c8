"""
Deduplication and watermark advancement.

DedupEngine is the only consumer of RawEvents. One run_cycle() call:
1. Drops events below the watermark (already done)
2. Checks the seen-set for events at the watermark, and for events at or below
   seen_through (delivered by an earlier cycle whose watermark was held back)
3. Enriches, renders and delivers the rest; marks each seen only after the sink
   confirmed it
4. Moves the watermark to newest + 1, capped at the first failed timestamp and
   at the cycle horizon, and persists it. The in-memory cursor only moves after
   the store confirmed the save.

Delivery is at-least-once. With a store that has no seen-set (supports_dedup is
False), events sharing the watermark timestamp may be delivered twice.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

from position_relay.framework.cursor_store import BaseCursorStore, Cursor
from position_relay.framework.enrichment import Enricher
from position_relay.framework.events import RawEvent, RenderedMessage
from position_relay.framework.renderer import MessageRenderer

logger = logging.getLogger(__name__)


class MessageSink(Protocol):
    async def deliver(self, message: RenderedMessage) -> bool: ...


@dataclass
class CycleResult:
    delivered: int = 0
    skipped: int = 0
    failed: int = 0
    deferred: int = 0
    watermark: int = 0
    failed_events: list[RawEvent] = field(default_factory=list)


class DedupEngine:
    """
    Filters, relays and commits events against the durable cursor.

    Usage:
        engine = DedupEngine(store, enricher, renderer, writer)
        await engine.start()
        result = await engine.run_cycle(poll_result.events, poll_result.horizon)
    """

    def __init__(
        self,
        store: BaseCursorStore,
        enricher: Enricher,
        renderer: MessageRenderer,
        sink: MessageSink,
    ) -> None:
        self._store = store
        self._enricher = enricher
        self._renderer = renderer
        self._sink = sink
        self._cursor = Cursor()
        self._lock = asyncio.Lock()

    @property
    def cursor(self) -> Cursor:
        return self._cursor

    async def start(self) -> Cursor:
        """Load the persisted cursor. Must be awaited before the first cycle."""
        self._cursor = await self._store.load()
        if not self._store.supports_dedup:
            logger.warning(
                "Cursor store %s has no seen-set — events sharing the watermark "
                "timestamp may be delivered twice",
                type(self._store).__name__,
            )
        logger.info(
            "DedupEngine started | last_ts=%d | seen_through=%d | dedup=%s",
            self._cursor.last_ts,
            self._cursor.seen_through,
            self._store.supports_dedup,
        )
        return self._cursor

    async def run_cycle(self, events: Iterable[RawEvent], horizon: Optional[int] = None) -> CycleResult:
        """
        Process one batch of events. Cycles never overlap.

        Args:
            events: Events from one poll or one subscription batch, any order.
            horizon: Events newer than this are deferred and the watermark may
                not pass it. None means the batch is complete.
        """
        async with self._lock:
            return await self._run_locked(events, horizon)

    async def _run_locked(self, events: Iterable[RawEvent], horizon: Optional[int]) -> CycleResult:
        cursor = self._cursor
        result = CycleResult(watermark=cursor.last_ts)
        newest: Optional[int] = None
        first_failed: Optional[int] = None
        seen_through = cursor.seen_through
        handled_ids: set[str] = set()

        for event in sorted(events, key=lambda e: e.timestamp):
            ts = event.timestamp
            if horizon is not None and ts > horizon:
                result.deferred += 1
                continue
            if event.id in handled_ids:
                result.skipped += 1
                continue
            if ts < cursor.last_ts:
                logger.warning(
                    "Event below watermark skipped | id=%s | ts=%d | watermark=%d",
                    event.id,
                    ts,
                    cursor.last_ts,
                )
                result.skipped += 1
                continue
            handled_ids.add(event.id)

            if ts == cursor.last_ts or ts <= cursor.seen_through:
                if await self._store.is_seen(ts, event.id):
                    result.skipped += 1
                    newest = ts if newest is None else max(newest, ts)
                    continue

            if await self._relay(event):
                await self._store.mark_seen(ts, event.id)
                result.delivered += 1
                newest = ts if newest is None else max(newest, ts)
                seen_through = max(seen_through, ts)
            else:
                result.failed += 1
                result.failed_events.append(event)
                first_failed = ts if first_failed is None else min(first_failed, ts)

        await self._commit(cursor, newest, first_failed, horizon, seen_through)
        result.watermark = self._cursor.last_ts

        if result.delivered or result.failed:
            logger.info(
                "Cycle done | delivered=%d | skipped=%d | failed=%d | deferred=%d | watermark=%d",
                result.delivered,
                result.skipped,
                result.failed,
                result.deferred,
                result.watermark,
            )
        return result

    async def _commit(
        self,
        cursor: Cursor,
        newest: Optional[int],
        first_failed: Optional[int],
        horizon: Optional[int],
        seen_through: int,
    ) -> None:
        target = cursor.last_ts if newest is None else newest + 1
        if first_failed is not None:
            target = min(target, first_failed)
        if horizon is not None:
            target = min(target, horizon)
        target = max(target, cursor.last_ts)

        new_cursor = Cursor(last_ts=target, seen_through=seen_through)
        if new_cursor == cursor:
            return

        if not await self._store.save(new_cursor):
            # Keep the watermark; widening seen_through in memory only adds checks
            self._cursor = Cursor(last_ts=cursor.last_ts, seen_through=seen_through)
            logger.error("Watermark not advanced — save failed | target=%d", target)
            return

        self._cursor = new_cursor
        if target > cursor.last_ts:
            await self._store.rotate(cursor.last_ts, target)
            logger.debug("Watermark advanced | %d → %d", cursor.last_ts, target)

    async def _relay(self, event: RawEvent) -> bool:
        enriched = await self._enricher.enrich(event)
        message = self._renderer.render(enriched)
        return await self._sink.deliver(message)
