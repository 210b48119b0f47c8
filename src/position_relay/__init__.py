"""Perpetuals position-event relay: chain logs or subgraph → Telegram."""

__version__ = "0.1.0"
