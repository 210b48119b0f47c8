"""
Configuration loading from YAML and environment variables.

Reads:
1. config/relay.yaml — source kind, endpoints, state backend, token registry
2. Environment variables — secrets and per-deployment endpoint overrides

Exposes a ConfigLoader that returns a typed RelayConfig. Missing mandatory values
(Telegram credentials, the endpoint of the selected source) raise ConfigError,
which main.py turns into a non-zero exit before the pipeline starts.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

SOURCE_CHAIN = "chain-ws"
SOURCE_SUBGRAPH = "subgraph-poll"
KNOWN_SOURCES = (SOURCE_CHAIN, SOURCE_SUBGRAPH)

# Environment variable → (section, key). A None section means a top-level key.
_ENV_OVERRIDES: dict[str, tuple[Optional[str], str]] = {
    "RELAY_SOURCE": (None, "source"),
    "TELEGRAM_TOKEN": ("telegram", "token"),
    "TELEGRAM_CHAT_ID": ("telegram", "chat_id"),
    "SUBGRAPH_URL": ("subgraph", "url"),
    "RPC_WS_URL": ("chain", "ws_url"),
    "RPC_HTTP_URL": ("chain", "http_url"),
    "REDIS_URL": ("state", "redis_url"),
    "STATE_PATH": ("state", "path"),
    "CLOUDWATCH_NAMESPACE": ("metrics", "cloudwatch_namespace"),
    "AWS_REGION": ("metrics", "region"),
}

_SECRET_KEYS = frozenset({"token", "redis_url"})


class ConfigError(Exception):
    """Raised when mandatory configuration is missing or invalid."""


@dataclass
class TokenInfo:
    symbol: str
    price_symbol: Optional[str] = None  # ticker symbol for PriceLookup, e.g. "BTCUSDT"


@dataclass
class SubgraphSettings:
    url: str = ""
    page_size: int = 100
    max_pages: int = 5
    rate_limit_wait_seconds: float = 5.0
    max_rate_limit_retries: int = 3


@dataclass
class ChainSettings:
    ws_url: str = ""
    http_url: str = ""
    position_router: str = ""
    vault: str = ""
    reconnect_delay_seconds: float = 5.0
    probe_interval_seconds: float = 20.0
    probe_timeout_seconds: float = 10.0


@dataclass
class StateSettings:
    path: str = "state/cursor.json"
    redis_url: str = ""
    key_prefix: str = "position-relay"
    seen_ttl_seconds: int = 86_400


@dataclass
class EnrichmentSettings:
    price_url: str = "https://api.binance.com/api/v3/ticker/price"
    cache_ttl_seconds: float = 60.0


@dataclass
class TelegramSettings:
    token: str = ""
    chat_id: str = ""
    parse_mode: str = "HTML"
    disable_web_page_preview: bool = True
    max_retries: int = 3


@dataclass
class MetricsSettings:
    cloudwatch_namespace: str = ""  # empty disables CloudWatch publication
    region: str = "us-west-2"


@dataclass
class RelayConfig:
    """Typed view of relay.yaml after environment overrides."""

    source: str = SOURCE_SUBGRAPH
    poll_interval_seconds: float = 15.0
    http_timeout_seconds: float = 10.0
    batch_window_seconds: float = 1.0
    max_pending: int = 1_000
    explorer_tx_url: str = "https://bscscan.com/tx/{tx}"
    subgraph: SubgraphSettings = field(default_factory=SubgraphSettings)
    chain: ChainSettings = field(default_factory=ChainSettings)
    state: StateSettings = field(default_factory=StateSettings)
    enrichment: EnrichmentSettings = field(default_factory=EnrichmentSettings)
    telegram: TelegramSettings = field(default_factory=TelegramSettings)
    metrics: MetricsSettings = field(default_factory=MetricsSettings)
    tokens: dict[str, TokenInfo] = field(default_factory=dict)

    def token(self, address: str) -> Optional[TokenInfo]:
        """Look up a token by address (case-insensitive)."""
        return self.tokens.get(address.lower())

    def redacted(self) -> dict[str, Any]:
        """Config as a dict with secrets blanked, safe to hash or log."""
        data = dataclasses.asdict(self)
        for section in data.values():
            if isinstance(section, dict):
                for key in _SECRET_KEYS & section.keys():
                    section[key] = "***" if section[key] else ""
        return data


class ConfigLoader:
    """
    Loads relay.yaml, applies environment overrides and validates the result.

    Configuration hierarchy (highest to lowest priority):
    1. Environment variables (see _ENV_OVERRIDES)
    2. config/relay.yaml
    3. Dataclass defaults
    """

    DEFAULT_CONFIG_PATH = "config/relay.yaml"

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH) -> None:
        self.config_path = config_path

    def load(self) -> RelayConfig:
        """
        Load, merge and validate configuration.

        Returns:
            RelayConfig ready for the RelayManager.

        Raises:
            ConfigError: If a mandatory value is missing or the source is unknown.
        """
        raw = self.load_yaml()
        self.apply_env_overrides(raw)
        config = self.build(raw)
        self.validate(config)
        return config

    def load_yaml(self) -> dict[str, Any]:
        """
        Read the YAML file. A missing file is not fatal — environment-only
        deployments are allowed and validation reports what is missing.
        """
        try:
            with open(self.config_path) as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Config file not found | path=%s — using env only", self.config_path)
            return {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {self.config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ConfigError(f"{self.config_path} must contain a mapping at top level")
        return data

    def apply_env_overrides(self, raw: dict[str, Any]) -> None:
        """Overlay non-empty environment variables onto the raw config dict in place."""
        for env_name, (section, key) in _ENV_OVERRIDES.items():
            value = os.getenv(env_name, "").strip()
            if not value:
                continue
            if section is None:
                raw[key] = value
            else:
                target = raw.get(section)
                if not isinstance(target, dict):
                    target = {}
                    raw[section] = target
                target[key] = value

    def build(self, raw: dict[str, Any]) -> RelayConfig:
        """Convert the merged raw dict into a RelayConfig."""
        sections = {
            "subgraph": SubgraphSettings,
            "chain": ChainSettings,
            "state": StateSettings,
            "enrichment": EnrichmentSettings,
            "telegram": TelegramSettings,
            "metrics": MetricsSettings,
        }
        kwargs: dict[str, Any] = {}
        for name, cls in sections.items():
            kwargs[name] = _build_section(cls, raw.get(name) or {}, name)

        top_level = {f.name for f in dataclasses.fields(RelayConfig)} - set(sections) - {"tokens"}
        for key in top_level:
            if key in raw and raw[key] is not None:
                kwargs[key] = raw[key]

        kwargs["tokens"] = {
            str(address).lower(): _build_section(TokenInfo, info or {}, f"tokens.{address}")
            for address, info in (raw.get("tokens") or {}).items()
        }

        config = RelayConfig(**kwargs)
        # YAML parses numeric chat ids as int; the Bot API accepts either, logs expect str
        config.telegram.chat_id = str(config.telegram.chat_id)
        config.poll_interval_seconds = float(config.poll_interval_seconds)
        config.http_timeout_seconds = float(config.http_timeout_seconds)
        return config

    def validate(self, config: RelayConfig) -> None:
        """
        Fail fast on missing mandatory configuration.

        Raises:
            ConfigError: Listing every missing or invalid value.
        """
        problems: list[str] = []

        if config.source not in KNOWN_SOURCES:
            problems.append(
                f"source must be one of {', '.join(KNOWN_SOURCES)} (got '{config.source}')"
            )
        if not config.telegram.token:
            problems.append("telegram.token / TELEGRAM_TOKEN is required")
        if not config.telegram.chat_id:
            problems.append("telegram.chat_id / TELEGRAM_CHAT_ID is required")

        if config.source == SOURCE_SUBGRAPH:
            if not config.subgraph.url:
                problems.append("subgraph.url / SUBGRAPH_URL is required for subgraph-poll")
            if config.subgraph.page_size < 1:
                problems.append("subgraph.page_size must be >= 1")
        elif config.source == SOURCE_CHAIN:
            if not config.chain.ws_url:
                problems.append("chain.ws_url / RPC_WS_URL is required for chain-ws")
            if not (config.chain.position_router or config.chain.vault):
                problems.append("chain.position_router or chain.vault is required for chain-ws")

        if config.poll_interval_seconds <= 0:
            problems.append("poll_interval_seconds must be > 0")

        if problems:
            raise ConfigError("; ".join(problems))


def _build_section(cls: type, raw: dict[str, Any], name: str) -> Any:
    """Instantiate a settings dataclass from a dict, ignoring unknown keys with a warning."""
    if not isinstance(raw, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = set(raw) - known
    if unknown:
        logger.warning("Ignoring unknown config keys in '%s': %s", name, sorted(unknown))
    try:
        return cls(**{k: v for k, v in raw.items() if k in known})
    except TypeError as exc:
        raise ConfigError(f"Invalid '{name}' section: {exc}") from exc
