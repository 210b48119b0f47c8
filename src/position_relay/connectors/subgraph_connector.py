"""
Subgraph polling connector for position events.

Each poll cycle queries three entity streams of a GMX-style subgraph —
increasePositions, decreasePositions, liquidatePositions — for rows with
timestamp > since, ascending, paging with `skip` up to max_pages pages each.
The merged events are sorted by timestamp and returned as a PollResult.

A failure in ANY stream (transport error, HTTP error, GraphQL errors, garbled
JSON, rows that don't match the schema) makes the whole cycle empty: merging a
partial result would let the shared watermark jump over the failed stream's events.

HTTP 429 is retried inside the cycle, honouring Retry-After when present.
"""

import asyncio
import email.utils
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import aiohttp

from position_relay.framework.base_connector import PollingConnector, PollResult
from position_relay.framework.events import (
    DecreaseEvent,
    EventKind,
    IncreaseEvent,
    LiquidationEvent,
    RawEvent,
)

logger = logging.getLogger(__name__)

_POSITION_FIELDS = "id timestamp account collateralToken indexToken collateralDelta sizeDelta isLong price"
_LIQUIDATION_FIELDS = (
    "id timestamp account collateralToken indexToken isLong size collateral "
    "reserveAmount realisedPnl markPrice"
)

# EventKind → (entity collection, selected fields)
_ENTITIES: dict[EventKind, tuple[str, str]] = {
    EventKind.INCREASE: ("increasePositions", _POSITION_FIELDS),
    EventKind.DECREASE: ("decreasePositions", _POSITION_FIELDS),
    EventKind.LIQUIDATION: ("liquidatePositions", _LIQUIDATION_FIELDS),
}

_QUERY_TEMPLATE = """
query Recent($since: Int!, $first: Int!, $skip: Int!) {
  %s(
    where: { timestamp_gt: $since }
    orderBy: timestamp
    orderDirection: asc
    first: $first
    skip: $skip
  ) { %s }
}
"""


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


class SubgraphConnector(PollingConnector):
    """
    Polls a GraphQL subgraph for position events newer than a watermark.

    Usage (RelayManager):
        connector = SubgraphConnector("subgraph-poll", url, session)
        connector.connect()
        result = await connector.poll(since=cursor.last_ts - 1)
    """

    _HEALTH_WINDOW_SECONDS = 120.0
    _MAX_RETRY_AFTER_SECONDS = 300.0

    def __init__(
        self,
        source: str,
        url: str,
        session: aiohttp.ClientSession,
        page_size: int = 100,
        max_pages: int = 5,
        rate_limit_wait_seconds: float = 5.0,
        max_rate_limit_retries: int = 3,
    ) -> None:
        super().__init__(source=source)
        self._url = url
        self._session = session
        self._page_size = page_size
        self._max_pages = max_pages
        self._rate_limit_wait = rate_limit_wait_seconds
        self._max_rate_limit_retries = max_rate_limit_retries
        self._last_success_at: Optional[float] = None  # None until first good poll
        self._stopped = False

    # ------------------------------------------------------------------
    # BaseConnector abstract method implementations
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Setup-only — validates config. No network I/O."""
        if not self._url:
            raise ValueError("SubgraphConnector requires a subgraph url")
        if self._page_size < 1 or self._max_pages < 1:
            raise ValueError("SubgraphConnector page_size and max_pages must be >= 1")
        logger.info(
            "SubgraphConnector configured | url=%s | page_size=%d | max_pages=%d",
            self._url,
            self._page_size,
            self._max_pages,
        )

    def normalize(self, raw: dict[str, Any], kind: EventKind) -> RawEvent:
        """
        Normalize one subgraph row to its RawEvent variant.

        BigInt fields arrive as decimal strings and are cast to int. Entity ids
        are "<txHash>:<logIndex>", so the tx hash is the id prefix.
        """
        native_id = str(raw["id"])
        common = {
            "id": native_id,
            "timestamp": int(raw["timestamp"]),
            "account": str(raw["account"]),
            "index_token": str(raw["indexToken"]),
            "collateral_token": str(raw["collateralToken"]),
            "is_long": _to_bool(raw["isLong"]),
            "tx_hash": str(raw.get("transactionHash") or native_id.split(":")[0]),
        }
        if kind is EventKind.INCREASE:
            return IncreaseEvent(
                **common,
                size_delta=int(raw["sizeDelta"]),
                collateral_delta=_optional_int(raw.get("collateralDelta")),
                price=int(raw["price"]),
            )
        if kind is EventKind.DECREASE:
            return DecreaseEvent(
                **common,
                size_delta=int(raw["sizeDelta"]),
                collateral_delta=_optional_int(raw.get("collateralDelta")),
                price=int(raw["price"]),
                realised_pnl=_optional_int(raw.get("realisedPnl")),
            )
        return LiquidationEvent(
            **common,
            size=int(raw["size"]),
            collateral=int(raw["collateral"]),
            mark_price=int(raw["markPrice"]),
            realised_pnl=_optional_int(raw.get("realisedPnl")),
        )

    def health_check(self) -> bool:
        """True if a poll succeeded within the last two minutes."""
        if self._last_success_at is None:
            return False
        return time.monotonic() - self._last_success_at < self._HEALTH_WINDOW_SECONDS

    def shutdown(self) -> None:
        """Make further poll() calls return empty results."""
        self._stopped = True
        logger.info("SubgraphConnector shutdown requested")

    # ------------------------------------------------------------------
    # Poll cycle (called by RelayManager once per tick)
    # ------------------------------------------------------------------

    async def poll(self, since: int) -> PollResult:
        """
        Fetch all three streams for timestamp > since and merge them.

        Args:
            since: Exclusive lower bound on timestamp.

        Returns:
            PollResult sorted by timestamp; empty if any stream failed. horizon is
            the lowest last-timestamp among streams that stopped on a full page.
        """
        if self._stopped:
            return PollResult()

        merged: list[RawEvent] = []
        horizon: Optional[int] = None
        for kind in EventKind:
            fetched = await self._fetch_stream(kind, since)
            if fetched is None:
                return PollResult()
            events, exhausted = fetched
            merged.extend(events)
            if not exhausted and events:
                last = events[-1].timestamp
                horizon = last if horizon is None else min(horizon, last)

        merged.sort(key=lambda e: e.timestamp)  # stable: per-stream order kept on ties
        self._last_success_at = time.monotonic()
        logger.debug(
            "SubgraphConnector polled | since=%d | events=%d | horizon=%s",
            since,
            len(merged),
            horizon,
        )
        return PollResult(events=merged, horizon=horizon)

    async def _fetch_stream(
        self, kind: EventKind, since: int
    ) -> Optional[tuple[list[RawEvent], bool]]:
        """
        Page through one entity stream.

        Returns:
            (events, exhausted) where exhausted is False if the last page was full
            after max_pages pages; None if anything went wrong.
        """
        entity, fields = _ENTITIES[kind]
        query = _QUERY_TEMPLATE % (entity, fields)
        events: list[RawEvent] = []

        for page in range(self._max_pages):
            variables = {"since": since, "first": self._page_size, "skip": page * self._page_size}
            data = await self._post_query(query, variables)
            if data is None:
                return None

            rows = data.get(entity)
            if not isinstance(rows, list):
                logger.error("SubgraphConnector response missing '%s' list — skipping cycle", entity)
                return None
            try:
                events.extend(self.normalize_with_lineage(row, kind) for row in rows)
            except (KeyError, ValueError, TypeError, AttributeError) as exc:
                logger.error(
                    "SubgraphConnector row does not match %s schema — skipping cycle | error=%r",
                    entity,
                    exc,
                )
                return None

            if len(rows) < self._page_size:
                return events, True

        return events, False

    async def _post_query(self, query: str, variables: dict[str, Any]) -> Optional[dict[str, Any]]:
        """
        POST one GraphQL query.

        Retries on HTTP 429 up to max_rate_limit_retries times within the cycle.

        Returns:
            The GraphQL `data` object, or None on any failure (already logged).
        """
        payload = {"query": query, "variables": variables}

        for attempt in range(self._max_rate_limit_retries + 1):
            detail = ""
            body: Any = None
            try:
                async with self._session.post(self._url, json=payload) as resp:
                    status = resp.status
                    retry_after = resp.headers.get("Retry-After")
                    if status == 200:
                        body = await resp.json(content_type=None)
                    else:
                        detail = (await resp.text())[:200]
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.error("SubgraphConnector transport error — skipping cycle | error=%r", exc)
                return None
            except ValueError as exc:
                logger.error("SubgraphConnector garbled JSON — skipping cycle | error=%s", exc)
                return None

            if status == 429:
                if attempt >= self._max_rate_limit_retries:
                    logger.error(
                        "SubgraphConnector still rate limited after %d retries — skipping cycle",
                        self._max_rate_limit_retries,
                    )
                    return None
                wait = self._retry_after_seconds(retry_after)
                logger.warning(
                    "SubgraphConnector rate limited — retry %d/%d in %.1fs",
                    attempt + 1,
                    self._max_rate_limit_retries,
                    wait,
                )
                await asyncio.sleep(wait)
                continue

            if status != 200:
                logger.error("SubgraphConnector HTTP %d — skipping cycle | body=%s", status, detail)
                return None

            return self._extract_data(body)

        return None

    def _extract_data(self, body: Any) -> Optional[dict[str, Any]]:
        """Validate the GraphQL envelope and return its data object."""
        if not isinstance(body, dict):
            logger.error("SubgraphConnector response is not a JSON object — skipping cycle")
            return None
        if body.get("errors"):
            logger.error("SubgraphConnector GraphQL errors — skipping cycle | errors=%s", body["errors"])
            return None
        data = body.get("data")
        if not isinstance(data, dict):
            logger.error("SubgraphConnector response has no data — skipping cycle")
            return None
        return data

    def _retry_after_seconds(self, header: Optional[str]) -> float:
        """
        Parse a Retry-After header (delta-seconds or HTTP-date).

        Falls back to rate_limit_wait_seconds; capped at five minutes.
        """
        if not header:
            return self._rate_limit_wait
        try:
            wait = float(header)
        except ValueError:
            try:
                when = email.utils.parsedate_to_datetime(header)
            except (TypeError, ValueError):
                return self._rate_limit_wait
            if when.tzinfo is None:
                when = when.replace(tzinfo=timezone.utc)
            wait = (when - datetime.now(timezone.utc)).total_seconds()
        return min(max(wait, 0.0), self._MAX_RETRY_AFTER_SECONDS)
