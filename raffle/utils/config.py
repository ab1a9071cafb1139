"""
Configuration Management
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from raffle.lottery.models import DrawRequestParams, RaffleConfig
from raffle.utils.common import as_int
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = Path(__file__).parent.parent.parent / "config" / "raffle.conf"

# Environment variable prefix -> config section
ENV_SECTIONS = {
    "RAFFLE_": "raffle",
    "VRF_": "vrf",
    "BLOCKCHAIN_": "blockchain",
    "OPERATOR_": "operator",
    "SERVER_": "server",
    "EVENT_": "event_manager",
}


def load_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from files and environment variables"""
    config: Dict[str, Any] = {}

    path = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
    if path.exists():
        with open(path, 'r') as f:
            config.update(json.load(f))
        logger.info(f"Loaded configuration from {path}")
    else:
        logger.warning(f"Config file {path} not found. Will only use environment variables.")

    config = _apply_env_overrides(config)

    logger.debug(f"Configuration after applying environment overrides: {json.dumps(config, indent=2)}")

    return config


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to configuration"""
    for key, value in os.environ.items():
        for prefix, section in ENV_SECTIONS.items():
            if key.startswith(prefix):
                config.setdefault(section, {})[key[len(prefix):].lower()] = value
                break

    return config


def get_config_value(config: Dict[str, Any], key_path: str, default=None):
    """Get configuration value by dot-separated key path"""
    keys = key_path.split('.')
    value = config

    try:
        for key in keys:
            value = value[key]
        return value
    except (KeyError, TypeError):
        return default


def build_raffle_config(config: Dict[str, Any]) -> RaffleConfig:
    """Turn the loaded settings into the immutable RaffleConfig.

    Values may arrive as strings from the environment, so every numeric
    field goes through as_int. Raises ValueError when a value is missing
    or out of range.
    """
    raffle_cfg = config.get("raffle", {})
    vrf_cfg = config.get("vrf", {})

    if "entrance_fee" not in raffle_cfg:
        raise ValueError("raffle.entrance_fee is required")

    request = DrawRequestParams(
        gas_lane=str(vrf_cfg.get("gas_lane", "0x" + "00" * 32)),
        subscription_id=as_int(vrf_cfg.get("subscription_id"), 0),
        request_confirmations=as_int(vrf_cfg.get("request_confirmations"), 3),
        callback_gas_limit=as_int(vrf_cfg.get("callback_gas_limit"), 500_000),
        num_words=as_int(vrf_cfg.get("num_words"), 1),
    )

    return RaffleConfig(
        entrance_fee=as_int(raffle_cfg.get("entrance_fee")),
        interval=as_int(raffle_cfg.get("interval"), 30),
        request=request,
        randomness_client_id=str(vrf_cfg.get("coordinator_address", "local-vrf-coordinator")),
        raffle_address=str(raffle_cfg.get("address", "raffle")),
    )
