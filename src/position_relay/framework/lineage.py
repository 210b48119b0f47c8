"""
Event identity and run lineage for the position relay.

Every RawEvent id is derived here from the source name, the event kind and the
source-native identity (txHash:logIndex for chain logs, the entity id for
subgraph rows). The same logical event therefore always gets the same id,
whether it arrives live, after a reconnect, or from a replayed poll. The seen-set
relies on this.

Startup logging also records:
- config hash: same hash means identical relay configuration
- pipeline version: Git SHA for audit trail
"""

import hashlib
import json
import os
from typing import Any


def generate_event_id(source: str, kind: str, native_id: str) -> str:
    """
    Generate a deterministic event ID from the event's source identity.

    Same source + kind + native id always produces the same ID. Kind is part of
    the key because subgraph entity ids are only unique per entity type.

    Args:
        source: Connector name (e.g., "chain-ws", "subgraph-poll")
        kind: Event kind value (e.g., "increase")
        native_id: Source identity (e.g., "0xabc...:12")

    Returns:
        32-character hex string (sha256[:32])
    """
    combined = f"{source}:{kind}:{native_id.lower()}"
    hash_obj = hashlib.sha256(combined.encode("utf-8"))
    return hash_obj.hexdigest()[:32]


def hash_config(config: dict[str, Any]) -> str:
    """
    Hash a configuration dict for reproducibility tracking.

    Secrets must be stripped by the caller; only the hash is ever logged.

    Args:
        config: Configuration dict

    Returns:
        16-character hex string (sha256[:16])
    """
    # Sort keys for deterministic serialization
    json_str = json.dumps(config, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(json_str.encode("utf-8")).hexdigest()[:16]


def get_pipeline_version() -> str:
    """
    Get the pipeline version from environment or default to 'dev'.

    In CI/CD, set PIPELINE_VERSION to git commit SHA.
    """
    return os.getenv("PIPELINE_VERSION", "dev")
