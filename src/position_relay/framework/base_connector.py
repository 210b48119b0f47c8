"""
Base connector abstraction for event source integration.

Every connector (chain log subscription, subgraph poller) inherits from
BaseConnector and implements the standard interface for:
1. Validating its configuration (connect)
2. Normalizing raw payloads to a RawEvent variant
3. Injecting stable event ids for deduplication
4. Health checks for operational monitoring
5. Graceful shutdown

Two delivery shapes sit on top:
- StreamingConnector: logically infinite stream(queue) coroutine
- PollingConnector: finite poll(since) per cycle, returning a PollResult
"""

import asyncio
import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from position_relay.framework.events import EventKind, RawEvent
from position_relay.framework.lineage import generate_event_id


@dataclass
class PollResult:
    """
    Events from one poll cycle, ascending by timestamp.

    horizon is None when every source stream was exhausted. Otherwise some stream
    stopped on a full page and events at or above horizon may still be missing,
    so the watermark must not move past it this cycle.
    """

    events: list[RawEvent] = field(default_factory=list)
    horizon: Optional[int] = None


class BaseConnector(ABC):
    """
    Abstract base class for event source connectors.

    Subclasses implement specific sources (ChainConnector, SubgraphConnector).
    """

    def __init__(self, source: str):
        """
        Initialize the connector.

        Args:
            source: Connector name from config (e.g., "chain-ws", "subgraph-poll")
        """
        self.source = source

    @abstractmethod
    def connect(self) -> None:
        """
        Validate configuration. Setup-only: no network I/O happens here.

        Raises:
            ValueError: If the connector is misconfigured
        """
        pass

    @abstractmethod
    def normalize(self, raw: dict[str, Any], kind: EventKind) -> RawEvent:
        """
        Normalize a source payload to the RawEvent variant for kind.

        The returned event carries the source-native id; normalize_with_lineage()
        turns it into the stable relay id.

        Raises:
            KeyError / ValueError / TypeError: If the payload doesn't match the schema
        """
        pass

    def normalize_with_lineage(self, raw: dict[str, Any], kind: EventKind) -> RawEvent:
        """
        Normalize raw data and replace the native id with a stable relay id.

        This is the public method used by the connectors' fetch/listen loops.
        """
        event = self.normalize(raw, kind)
        return dataclasses.replace(
            event, id=generate_event_id(self.source, kind.value, event.id)
        )

    @abstractmethod
    def health_check(self) -> bool:
        """
        Check if the connector is healthy and able to receive data.

        Returns:
            True if healthy, False otherwise
        """
        pass

    @abstractmethod
    def shutdown(self) -> None:
        """Stop the connector; used during teardown."""
        pass


class StreamingConnector(BaseConnector):
    """Push-based source: puts RawEvents onto a queue until shutdown()."""

    @abstractmethod
    async def stream(self, queue: asyncio.Queue[RawEvent]) -> None:
        """Run until shutdown(), reconnecting on transport failures."""
        pass


class PollingConnector(BaseConnector):
    """Pull-based source: one bounded fetch per cycle."""

    @abstractmethod
    async def poll(self, since: int) -> PollResult:
        """
        Fetch events with timestamp > since, ascending.

        Never raises for transport or decode problems: those yield an empty
        PollResult and are logged.
        """
        pass
