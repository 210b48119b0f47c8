"""
Telegram HTML rendering for enriched position events.

Layout per kind:
    📈 <b>Increase LONG</b> / 📉 <b>Decrease SHORT</b> / 💀 <b>Liquidation</b>
    • Trader, Pair, (Side), Size, Collateral, Leverage, Entry/Mark Price, PnL, Market
    🔗 explorer link

Any field the enricher could not derive renders as the placeholder glyph.
Values coming from the source (addresses, symbols, hashes) are HTML-escaped.
"""

import html
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from position_relay.framework.events import EnrichedEvent, EventKind, RenderedMessage

PLACEHOLDER = "❔"

_HEADLINES = {
    EventKind.INCREASE: "📈 <b>Increase {side}</b>",
    EventKind.DECREASE: "📉 <b>Decrease {side}</b>",
    EventKind.LIQUIDATION: "💀 <b>Liquidation</b>",
}


def fmt_usd(value: Optional[Decimal]) -> str:
    if value is None:
        return PLACEHOLDER
    return f"${value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)}"


def fmt_price(value: Optional[Decimal]) -> str:
    """Two decimals above 1 USD, six significant digits below."""
    if value is None:
        return PLACEHOLDER
    if abs(value) >= 1:
        return fmt_usd(value)
    return f"${value:.6g}"


def fmt_leverage(value: Optional[Decimal]) -> str:
    if value is None:
        return PLACEHOLDER
    return f"{value.quantize(Decimal('0.1'), rounding=ROUND_HALF_UP)}x"


def fmt_pnl(pnl_usd: Optional[Decimal], pnl_pct: Optional[Decimal]) -> str:
    if pnl_usd is None:
        return PLACEHOLDER
    color, sign = ("🟢", "+") if pnl_usd >= 0 else ("🔴", "-")
    text = f"{color} {sign}{fmt_usd(abs(pnl_usd))}"
    if pnl_pct is not None:
        text += f" ({sign}{abs(pnl_pct).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)}%)"
    return text


class MessageRenderer:
    """Turns an EnrichedEvent into a RenderedMessage ready for the sink."""

    def __init__(self, explorer_tx_url: str = "https://bscscan.com/tx/{tx}") -> None:
        self._explorer_tx_url = explorer_tx_url

    def render(self, enriched: EnrichedEvent) -> RenderedMessage:
        event = enriched.event
        lines = [
            _HEADLINES[event.kind].format(side=event.side),
            f"• Trader: <code>{html.escape(event.account)}</code>",
            f"• Pair: {html.escape(enriched.symbol)}",
        ]
        if event.kind is EventKind.LIQUIDATION:
            lines.append(f"• Side: {event.side}")
        lines += [
            f"• Size: {fmt_usd(enriched.size_usd)}",
            f"• Collateral: {fmt_usd(enriched.collateral_usd)}",
            f"• Leverage: {fmt_leverage(enriched.leverage)}",
        ]
        if event.kind is EventKind.LIQUIDATION:
            lines.append(f"• Mark Price: {fmt_price(enriched.price_usd)}")
        else:
            lines.append(f"• Entry Price: {fmt_price(enriched.price_usd)}")
        lines += [
            f"• PnL: {fmt_pnl(enriched.pnl_usd, enriched.pnl_pct)}",
            f"• Market: {fmt_price(enriched.mark_price_usd)}",
            self._tx_link(event.tx_hash),
        ]
        return RenderedMessage(text="\n".join(lines), event_id=event.id, timestamp=event.timestamp)

    def _tx_link(self, tx_hash: str) -> str:
        if not tx_hash:
            return f"🔗 tx {PLACEHOLDER}"
        url = self._explorer_tx_url.format(tx=tx_hash)
        return f'🔗 <a href="{html.escape(url, quote=True)}">tx</a>'
