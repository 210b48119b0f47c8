"""
Position Relay — perpetuals position events to Telegram.

Entry point. Loads .env, reads config/relay.yaml, starts the configured source
(chain log subscription or subgraph polling) and relays increase, decrease and
liquidation events to a Telegram chat.

Environment variables (override relay.yaml):
    TELEGRAM_TOKEN / TELEGRAM_CHAT_ID   Bot credentials and target chat (required)
    RELAY_SOURCE                        "chain-ws" or "subgraph-poll"
    SUBGRAPH_URL                        GraphQL endpoint for subgraph-poll
    RPC_WS_URL / RPC_HTTP_URL           JSON-RPC endpoints for chain-ws
    REDIS_URL                           Enables the deduplicating Redis cursor store
    STATE_PATH                          Cursor file when Redis is not configured
    CLOUDWATCH_NAMESPACE / AWS_REGION   CloudWatch metrics (empty namespace disables)
    RELAY_CONFIG                        Path to relay.yaml (default: config/relay.yaml)

Exit codes:
    0  graceful shutdown (SIGTERM / SIGINT)
    1  unexpected crash
    2  configuration error
"""

import asyncio
import logging
import os
import signal
import sys

from dotenv import load_dotenv

from position_relay.framework.config_loader import ConfigError
from position_relay.producer.relay_manager import RelayManager

logger = logging.getLogger(__name__)


def main() -> None:
    """Start the relay and run until SIGTERM/SIGINT."""
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stdout,
    )

    manager = RelayManager(os.getenv("RELAY_CONFIG", RelayManager.DEFAULT_CONFIG_PATH))
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def _handle_signal(sig: signal.Signals) -> None:
        logger.info("Received %s — initiating graceful shutdown", sig.name)
        manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle_signal, sig)

    try:
        logger.info("Position relay starting")
        loop.run_until_complete(manager.run())
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        sys.exit(2)
    except Exception as exc:
        logger.exception("Relay exited with error: %s", exc)
        sys.exit(1)
    finally:
        loop.close()
        logger.info("Relay stopped")


if __name__ == "__main__":
    main()
