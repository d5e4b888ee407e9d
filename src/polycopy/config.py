"""Configuration loading.

Reads the YAML config and JSON wallet list, applies environment overrides
and validates the values the decision engine depends on.
"""

import copy
import json
import os
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from dotenv import load_dotenv

from polycopy.decision.sizing.strategies import CopyStrategy
from polycopy.errors import ConfigurationError

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config") / "config.yaml"
DEFAULT_WALLETS_PATH = Path("config") / "wallets.json"

# Polygon mainnet
POLYMARKET_CONTRACTS = {
    "ctf_exchange": "0xC5d563A36AE78145C45a50134d48A1215220f80a",
    "ctf_exchange_legacy": "0x4bFb41d5B3570DeFd03C39a9A4D8dE6Bd8B8982E",
    "conditional_tokens": "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045",
    "usdc": "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",
}

DEFAULTS: dict[str, Any] = {
    "network": {
        "polygon_rpc": "",
        "user_wallet": "",
    },
    "contracts": dict(POLYMARKET_CONTRACTS),
    "scanner": {
        "window_size": 1000,
        "lookback_blocks": 1000,
        "poll_interval": 1.0,
        "error_backoff": 5.0,
        "scan_transfers": False,
    },
    "decision": {
        "copy_strategy": "exact",
        "scale_factor": 1.0,
        "percentage_of_balance": 0.0,
        "daily_loss_fraction": 0.1,
        "min_order_value": None,
        "risk": {
            "max_position_size": 1000.0,
            "max_order_value": 500.0,
            "max_daily_loss": 100.0,
            "max_slippage": 0.02,
        },
        "filters": {
            "whitelist_markets": [],
            "blacklist_markets": [],
            "min_market_liquidity": 0,
        },
    },
    "market_data": {
        "clob_url": "https://clob.polymarket.com",
        "gamma_url": "https://gamma-api.polymarket.com",
        "cache_ttl_seconds": 3600,
        "request_timeout": 10,
    },
    "ipc": {
        "execution_socket": "/tmp/polycopy/execution.sock",
        "response_timeout": 30,
    },
    "router": {
        "queue_size": 1000,
    },
    "metrics": {
        "enabled": True,
        "port": 9091,
    },
    "logging": {
        "level": "INFO",
    },
}

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "POLYGON_RPC_URL": ("network", "polygon_rpc"),
    "USER_WALLET_ADDRESS": ("network", "user_wallet"),
    "EXECUTION_SOCKET": ("ipc", "execution_socket"),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into a copy of base."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(config: dict) -> dict:
    for env_var, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            config.setdefault(section, {})[key] = value
    return config


def validate_config(config: dict) -> list[str]:
    """Validate a merged configuration.

    Returns:
        List of human-readable errors, empty when the config is usable
    """
    errors = []

    if not config.get("network", {}).get("polygon_rpc"):
        errors.append("network.polygon_rpc is required (or set POLYGON_RPC_URL)")

    decision = config.get("decision", {})
    strategy = decision.get("copy_strategy")
    try:
        strategy = CopyStrategy(strategy)
    except ValueError:
        errors.append(
            "decision.copy_strategy must be one of: "
            + ", ".join(s.value for s in CopyStrategy)
        )
        strategy = None

    if strategy == CopyStrategy.SCALED:
        scale = decision.get("scale_factor")
        if not isinstance(scale, (int, float)) or not 0 < scale <= 1:
            errors.append("decision.scale_factor must be in (0, 1] for scaled strategy")

    if strategy == CopyStrategy.PERCENTAGE:
        pct = decision.get("percentage_of_balance")
        if not isinstance(pct, (int, float)) or not 0 < pct <= 1:
            errors.append(
                "decision.percentage_of_balance must be in (0, 1] for percentage strategy"
            )

    risk = decision.get("risk", {})
    for key in ("max_position_size", "max_order_value", "max_daily_loss"):
        value = risk.get(key)
        if not isinstance(value, (int, float)) or value <= 0:
            errors.append(f"decision.risk.{key} must be a positive number")

    slippage = risk.get("max_slippage")
    if slippage is not None and (not isinstance(slippage, (int, float)) or not 0 <= slippage <= 1):
        errors.append("decision.risk.max_slippage must be between 0 and 1")

    loss_fraction = decision.get("daily_loss_fraction")
    if not isinstance(loss_fraction, (int, float)) or not 0 < loss_fraction <= 1:
        errors.append("decision.daily_loss_fraction must be in (0, 1]")

    scanner = config.get("scanner", {})
    if int(scanner.get("window_size", 0)) <= 0:
        errors.append("scanner.window_size must be positive")

    return errors


def load_config(path: Optional[str] = None) -> dict:
    """Load configuration from YAML, environment and defaults.

    Raises:
        ConfigurationError: file unreadable or values invalid
    """
    load_dotenv()

    config_file = Path(path) if path else DEFAULT_CONFIG_PATH
    file_config: dict = {}
    if config_file.exists():
        try:
            with open(config_file) as f:
                file_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse {config_file}: {e}") from e
    elif path:
        raise ConfigurationError(f"Config file not found: {config_file}")

    config = _apply_env_overrides(_deep_merge(DEFAULTS, file_config))

    errors = validate_config(config)
    if errors:
        raise ConfigurationError("Invalid configuration: " + "; ".join(errors))

    logger.info(
        "config_loaded",
        path=str(config_file),
        strategy=config["decision"]["copy_strategy"]
    )
    return config


def load_wallets(path: Optional[str] = None) -> list[dict]:
    """Load watched wallets from the JSON wallet list.

    Accepts either ``{"wallets": ["0x..."]}`` or
    ``{"wallets": [{"address": "0x...", "enabled": true, ...}]}``.
    """
    wallets_file = Path(path) if path else DEFAULT_WALLETS_PATH
    try:
        with open(wallets_file) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to load tracked wallets from {wallets_file}: {e}") from e

    entries = data.get("wallets") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise ConfigurationError(
            f'Invalid wallet file {wallets_file}: expected {{"wallets": [...]}}'
        )

    wallets = []
    for entry in entries:
        if isinstance(entry, str):
            wallets.append({"address": entry, "enabled": True})
        elif isinstance(entry, dict) and entry.get("address"):
            wallets.append(dict(entry))
        else:
            logger.warning("invalid_wallet_entry", entry=str(entry)[:60])
    return wallets
