"""
Event model shared by every stage of the relay.

Connectors build one of three frozen RawEvent variants at the adapter boundary.
Downstream stages (dedup engine, enricher, renderer, sink) only ever see:
- IncreaseEvent / DecreaseEvent / LiquidationEvent: normalized source events
- EnrichedEvent: a RawEvent plus display-ready derived fields
- RenderedMessage: final HTML text carrying the event id + timestamp for commit

USD amounts stay in the protocol's 1e30 fixed point until enrichment.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Optional

USD_PRECISION = 10**30


class EventKind(str, Enum):
    """Closed set of position actions the relay reports."""

    INCREASE = "increase"
    DECREASE = "decrease"
    LIQUIDATION = "liquidation"


@dataclass(frozen=True)
class RawEvent:
    """
    Common shape of a normalized source event.

    id is stable across retries and reconnect replays. timestamp is in seconds,
    non-decreasing per source, and may be shared by many events.
    """

    kind: ClassVar[EventKind]

    id: str
    timestamp: int
    account: str
    index_token: str
    collateral_token: str
    is_long: bool
    tx_hash: str

    @property
    def side(self) -> str:
        return "LONG" if self.is_long else "SHORT"


@dataclass(frozen=True)
class IncreaseEvent(RawEvent):
    kind: ClassVar[EventKind] = EventKind.INCREASE

    size_delta: int = 0
    # None when the source only reports the collateral token amount
    collateral_delta: Optional[int] = None
    price: int = 0


@dataclass(frozen=True)
class DecreaseEvent(RawEvent):
    kind: ClassVar[EventKind] = EventKind.DECREASE

    size_delta: int = 0
    collateral_delta: Optional[int] = None
    price: int = 0
    realised_pnl: Optional[int] = None


@dataclass(frozen=True)
class LiquidationEvent(RawEvent):
    kind: ClassVar[EventKind] = EventKind.LIQUIDATION

    size: int = 0
    collateral: int = 0
    mark_price: int = 0
    realised_pnl: Optional[int] = None


@dataclass
class EnrichedEvent:
    """
    RawEvent plus derived display fields.

    Every derived field is Optional: None means the value could not be derived
    (lookup failed or data missing) and the renderer shows a placeholder.
    """

    event: RawEvent
    symbol: str = "UNKNOWN"
    size_usd: Optional[Decimal] = None
    collateral_usd: Optional[Decimal] = None
    price_usd: Optional[Decimal] = None
    leverage: Optional[Decimal] = None
    pnl_usd: Optional[Decimal] = None
    pnl_pct: Optional[Decimal] = None
    mark_price_usd: Optional[Decimal] = None
    # names of the lookups that failed, for logging only
    degraded: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RenderedMessage:
    text: str
    event_id: str
    timestamp: int


def to_usd(value: Optional[int]) -> Optional[Decimal]:
    """Convert a 1e30 fixed-point amount to a USD Decimal."""
    if value is None:
        return None
    return Decimal(value) / Decimal(USD_PRECISION)
