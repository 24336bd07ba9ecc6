"""Daemon configuration, loaded once at startup from a JSON file."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from stitch_node.controller import ControllerConfig
from stitch_node.dag.window import TipPolicy
from stitch_node.errors import ConfigError
from stitch_node.ledger import http_url_for

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.json"


@dataclass
class StitchConfig:
    """Full configuration for a stitch daemon."""

    rpc_url: str

    # P2P stitch transport
    p2p_host: str = "0.0.0.0"
    p2p_port: int = 16150
    p2p_bootstrap_peers: list[str] = field(default_factory=list)

    # Controller
    adaptive: bool = True
    base_min_delta: int = 100
    base_rate_limit: float = 60.0
    base_reward_sompi: int = 100_000_000
    max_reward_sompi: int = 1_000_000_000
    min_rate_limit: float = 10.0
    target_bps: float = 1.0

    # Window
    dag_window: int = 500
    tip_policy: str = TipPolicy.ALL.value

    # Failure policy
    halt_on_broadcast_failure: bool = False

    # Wallet
    wallet_key_file: str = "stitch-wallet.pem"

    # Healing monitor
    heal_attempts: int = 30
    heal_interval: float = 2.0

    @property
    def http_url(self) -> str:
        """Request/response endpoint derived from the websocket URL (ws -> http)."""
        return http_url_for(self.rpc_url)

    def controller_config(self) -> ControllerConfig:
        return ControllerConfig(
            base_min_delta=self.base_min_delta,
            base_rate_limit=self.base_rate_limit,
            base_reward_sompi=self.base_reward_sompi,
            max_reward_sompi=self.max_reward_sompi,
            min_rate_limit=self.min_rate_limit,
            adaptive=self.adaptive,
            target_bps=self.target_bps,
        )


_INT_FIELDS = {
    "p2p_port", "base_min_delta", "base_reward_sompi", "max_reward_sompi",
    "dag_window", "heal_attempts",
}
_FLOAT_FIELDS = {"base_rate_limit", "min_rate_limit", "target_bps", "heal_interval"}
_BOOL_FIELDS = {"adaptive", "halt_on_broadcast_failure"}


def config_from_dict(raw: dict[str, Any]) -> StitchConfig:
    """Build and validate a StitchConfig from a parsed mapping."""
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a JSON object")
    if not raw.get("rpc_url"):
        raise ConfigError("Missing required option: rpc_url")

    known = {f.name for f in fields(StitchConfig)}
    values: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            logger.warning("Ignoring unknown config option: %s", key)
            continue
        if key in _BOOL_FIELDS and not isinstance(value, bool):
            raise ConfigError(f"{key} must be true or false, got {value!r}")
        if key in _INT_FIELDS and (isinstance(value, bool) or not isinstance(value, int)):
            raise ConfigError(f"{key} must be an integer, got {value!r}")
        if key in _FLOAT_FIELDS:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{key} must be a number, got {value!r}")
            value = float(value)
        values[key] = value

    peers = values.get("p2p_bootstrap_peers", [])
    if not isinstance(peers, list) or not all(isinstance(p, str) and ":" in p for p in peers):
        raise ConfigError("p2p_bootstrap_peers must be a list of host:port strings")

    try:
        TipPolicy(values.get("tip_policy", TipPolicy.ALL.value))
    except ValueError:
        raise ConfigError(f"Unknown tip_policy: {values['tip_policy']!r}") from None

    config = StitchConfig(**values)
    if config.dag_window < 1:
        raise ConfigError("dag_window must be at least 1")
    if config.base_min_delta < 1:
        raise ConfigError("base_min_delta must be at least 1")
    if config.target_bps <= 0:
        raise ConfigError("target_bps must be positive")
    if config.heal_attempts < 1:
        raise ConfigError("heal_attempts must be at least 1")
    if config.heal_interval < 0:
        raise ConfigError("heal_interval must not be negative")
    if config.max_reward_sompi < config.base_reward_sompi:
        raise ConfigError("max_reward_sompi must be >= base_reward_sompi")
    if config.min_rate_limit > config.base_rate_limit:
        raise ConfigError("min_rate_limit must be <= base_rate_limit")
    return config


def load_config(path: str | Path = DEFAULT_CONFIG_PATH) -> StitchConfig:
    """Load the daemon configuration from a JSON file."""
    config_path = Path(path).resolve()
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path) as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {config_path}: {e}") from e

    config = config_from_dict(raw)
    logger.info("Config loaded from %s", config_path)
    return config
