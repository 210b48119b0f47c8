"""
Framework for deduplicated, at-least-once position event relaying.

The relay is built from pluggable parts:
- BaseConnector: Standardizes event source integration (chain logs, subgraph)
- BaseCursorStore: Durable watermark + seen-sets (file or Redis)
- Enricher: Best-effort derived fields (USD values, leverage, P/L, mark price)
- MessageRenderer: Telegram HTML layout with placeholders for unknown fields
- DedupEngine: Filters, relays and commits events against the cursor
- ConfigLoader: Reads relay configuration from YAML + environment

Every event carries a stable id derived from its source-native id, so a replayed
event is recognised wherever it reappears.
"""

from position_relay.framework.base_connector import BaseConnector, PollResult
from position_relay.framework.config_loader import ConfigError, ConfigLoader, RelayConfig
from position_relay.framework.cursor_store import BaseCursorStore, Cursor
from position_relay.framework.dedup_engine import CycleResult, DedupEngine
from position_relay.framework.enrichment import Enricher
from position_relay.framework.lineage import generate_event_id, get_pipeline_version, hash_config
from position_relay.framework.renderer import MessageRenderer

__all__ = [
    "BaseConnector",
    "BaseCursorStore",
    "ConfigError",
    "ConfigLoader",
    "Cursor",
    "CycleResult",
    "DedupEngine",
    "Enricher",
    "MessageRenderer",
    "PollResult",
    "RelayConfig",
    "generate_event_id",
    "get_pipeline_version",
    "hash_config",
]
