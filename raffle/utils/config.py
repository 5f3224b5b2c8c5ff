"""
Configuration Management
"""

import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from raffle.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = Path(__file__).parent.parent.parent / "config" / "raffle.conf"

DEFAULT_CONFIG: Dict[str, Any] = {
    "network": {
        "name": "hardhat",
    },
    "raffle": {
        # ETH; filled from the network defaults when unset
        "entrance_fee": None,
        "interval": None,
    },
    "oracle": {
        "gas_lane": None,
        "subscription_id": None,
        "request_confirmations": 3,
        "callback_gas_limit": None,
        "num_words": 1,
        "auto_fulfill": True,
    },
    "keeper": {
        "check_interval": 10,
        "payout_retry_interval": 30,
        "max_payout_retries": 5,
        "stuck_timeout": 0,
        "callback_wait_timeout": 60,
    },
    "blockchain": {
        "rpc_url": "http://127.0.0.1:8545",
        "rpc_timeout": 10.0,
        "operator_private_key": None,
        "gas_price": None,
        "gas_multiplier": 1.15,
    },
    "accounts": {
        "mnemonic": None,
    },
    "server": {
        "host": "0.0.0.0",
        "port": 6080,
    },
}

ENV_PREFIXES = {
    "RAFFLE_": "raffle",
    "ORACLE_": "oracle",
    "KEEPER_": "keeper",
    "BLOCKCHAIN_": "blockchain",
    "NETWORK_": "network",
    "SERVER_": "server",
}


def load_config(config_file: Optional[str] = None, apply_env: bool = True) -> Dict[str, Any]:
    """Load configuration from defaults, a JSON file and environment variables"""
    config = copy.deepcopy(DEFAULT_CONFIG)

    config_path = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
    if config_path.exists():
        try:
            with open(config_path, 'r') as f:
                file_config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading config file {config_path}: {e}")
            raise
        _merge(config, file_config)
        logger.info(f"Loaded configuration from {config_path}")
    else:
        logger.warning(f"Config file {config_path} not found. Using defaults and environment variables.")

    if apply_env:
        config = _apply_env_overrides(config)

    logger.debug(f"Effective configuration: {json.dumps(_redacted(config), indent=2, default=str)}")
    return config


def _merge(config: Dict[str, Any], overrides: Dict[str, Any]) -> None:
    for section, values in overrides.items():
        if isinstance(values, dict) and isinstance(config.get(section), dict):
            config[section].update(values)
        else:
            config[section] = values


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to configuration"""
    for key, value in os.environ.items():
        for prefix, section in ENV_PREFIXES.items():
            if key.startswith(prefix):
                config.setdefault(section, {})[key[len(prefix):].lower()] = value
                break

    return config


def _redacted(config: Dict[str, Any]) -> Dict[str, Any]:
    shown = copy.deepcopy(config)
    if shown.get("blockchain", {}).get("operator_private_key"):
        shown["blockchain"]["operator_private_key"] = "***"
    if shown.get("accounts", {}).get("mnemonic"):
        shown["accounts"]["mnemonic"] = "***"
    return shown


def save_config(config: Dict[str, Any], config_file: Optional[str] = None):
    """Save configuration to file"""
    config_path = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, 'w') as f:
        json.dump(config, f, indent=2)

    logger.info(f"Configuration saved to {config_path}")


def get_config_value(config: Dict[str, Any], key_path: str, default=None):
    """Get configuration value by dot-separated key path"""
    keys = key_path.split('.')
    value = config

    try:
        for key in keys:
            value = value[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def as_bool(value: Any) -> bool:
    """Interpret config values that may come from the environment as strings."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
