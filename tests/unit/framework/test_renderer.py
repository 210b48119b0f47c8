"""
Unit tests for MessageRenderer.

Tests cover:
- headline per event kind
- value formatting (USD, leverage, P/L colour and sign)
- placeholders for fields the enricher could not derive
- HTML escaping of source-provided strings
- explorer link and RenderedMessage commit fields
"""

from decimal import Decimal

from position_relay.framework.events import (
    DecreaseEvent,
    EnrichedEvent,
    IncreaseEvent,
    LiquidationEvent,
)
from position_relay.framework.renderer import (
    PLACEHOLDER,
    MessageRenderer,
    fmt_leverage,
    fmt_pnl,
    fmt_price,
    fmt_usd,
)

COMMON = dict(
    timestamp=1000,
    account="0xTrader",
    index_token="0xbtc",
    collateral_token="0xusdc",
    tx_hash="0xhash",
)


class TestFormatting:
    """Test the value formatters."""

    def test_usd_two_decimals(self) -> None:
        assert fmt_usd(Decimal("1234.565")) == "$1234.57"

    def test_small_price_keeps_significant_digits(self) -> None:
        assert fmt_price(Decimal("0.0001234567")) == "$0.000123457"

    def test_large_price_two_decimals(self) -> None:
        assert fmt_price(Decimal("65000.129")) == "$65000.13"

    def test_leverage_one_decimal(self) -> None:
        assert fmt_leverage(Decimal("10.04")) == "10.0x"

    def test_profit_is_green(self) -> None:
        assert fmt_pnl(Decimal("12.5"), Decimal("5")) == "🟢 +$12.50 (+5.00%)"

    def test_loss_is_red(self) -> None:
        assert fmt_pnl(Decimal("-3"), None) == "🔴 -$3.00"

    def test_unknown_values_render_placeholder(self) -> None:
        assert fmt_usd(None) == PLACEHOLDER
        assert fmt_price(None) == PLACEHOLDER
        assert fmt_leverage(None) == PLACEHOLDER
        assert fmt_pnl(None, Decimal(1)) == PLACEHOLDER


class TestMessageRenderer:
    """Test full message layout."""

    def setup_method(self) -> None:
        self.renderer = MessageRenderer("https://bscscan.com/tx/{tx}")

    def test_increase_layout(self) -> None:
        event = IncreaseEvent(id="e1", is_long=True, **COMMON)
        enriched = EnrichedEvent(
            event=event,
            symbol="BTC",
            size_usd=Decimal(1000),
            collateral_usd=Decimal(100),
            price_usd=Decimal(50000),
            leverage=Decimal(10),
            pnl_usd=Decimal(5),
            pnl_pct=Decimal(5),
            mark_price_usd=Decimal(50250),
        )
        text = self.renderer.render(enriched).text

        assert text.splitlines() == [
            "📈 <b>Increase LONG</b>",
            "• Trader: <code>0xTrader</code>",
            "• Pair: BTC",
            "• Size: $1000.00",
            "• Collateral: $100.00",
            "• Leverage: 10.0x",
            "• Entry Price: $50000.00",
            "• PnL: 🟢 +$5.00 (+5.00%)",
            "• Market: $50250.00",
            '🔗 <a href="https://bscscan.com/tx/0xhash">tx</a>',
        ]

    def test_decrease_headline_short(self) -> None:
        event = DecreaseEvent(id="e2", is_long=False, **COMMON)
        text = self.renderer.render(EnrichedEvent(event=event)).text
        assert text.startswith("📉 <b>Decrease SHORT</b>")

    def test_liquidation_has_side_and_mark_price(self) -> None:
        event = LiquidationEvent(id="e3", is_long=True, **COMMON)
        text = self.renderer.render(EnrichedEvent(event=event, price_usd=Decimal(45000))).text

        assert text.startswith("💀 <b>Liquidation</b>")
        assert "• Side: LONG" in text
        assert "• Mark Price: $45000.00" in text
        assert "Entry Price" not in text

    def test_unenriched_event_uses_placeholders(self) -> None:
        event = DecreaseEvent(id="e4", is_long=True, **COMMON)
        text = self.renderer.render(EnrichedEvent(event=event)).text

        assert f"• Size: {PLACEHOLDER}" in text
        assert f"• PnL: {PLACEHOLDER}" in text
        assert f"• Market: {PLACEHOLDER}" in text
        assert "• Pair: UNKNOWN" in text

    def test_source_strings_are_escaped(self) -> None:
        event = IncreaseEvent(id="e5", is_long=True, **{**COMMON, "account": "<script>"})
        text = self.renderer.render(EnrichedEvent(event=event, symbol="A&B")).text

        assert "<code>&lt;script&gt;</code>" in text
        assert "• Pair: A&amp;B" in text

    def test_rendered_message_carries_commit_fields(self) -> None:
        event = IncreaseEvent(id="e6", is_long=True, **COMMON)
        message = self.renderer.render(EnrichedEvent(event=event))

        assert message.event_id == "e6"
        assert message.timestamp == 1000

    def test_missing_tx_hash(self) -> None:
        event = IncreaseEvent(id="e7", is_long=True, **{**COMMON, "tx_hash": ""})
        text = self.renderer.render(EnrichedEvent(event=event)).text
        assert text.endswith(f"🔗 tx {PLACEHOLDER}")
