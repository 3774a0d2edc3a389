# bazaar_flipper/config.py
import copy
from typing import Any, Dict, Optional

import aiofiles
import yaml

DEFAULT_CONFIG: Dict[str, Any] = {
    "filter": {
        "whitelist": [],
        "blacklist": ["ESSENCE_[a-zA-Z]+"],
        "max_diff_day": 0.15,
        "min_price": 10_000,
        "max_price": 20_000_000,
        # sell / buy price ratio bounds
        "min_margin": 1.01,
        "max_margin": 1.5,
        "min_movement": 150,
        "max_usage_product": 15_000_000,
        "max_hourly_undercuts": 60,
    },
    "orders": {
        "max_orders": 14,
        "max_buy_orders": 7,
        "max_sell_orders": 14,
        "relist_ratio": 0.10,
        "max_order_size": 5000,
    },
    "general": {
        "max_usage": 40_000_000,
        "timeouts": [{"start": 12, "end": 16}],
    },
    "failsafe": {
        "coop_failsafe": False,
        "max_context_failures": 5,
        "max_liquidation_failures": 10,
        "recovery_commands": {
            "skyblock": "/is",
            "hub": "/is",
            "limbo": "/l",
            "lobby": "/skyblock",
        },
    },
    "system": {
        "rpc_timeout_seconds": 20.0,
        "action_retries": 3,
        "action_retry_delay_seconds": 0.5,
        "cooldown_backoff_seconds": 60.0,
        "max_cooldown_retries": 10,
        "sync_retries": 5,
        "iteration_delay_seconds": 1.0,
        "metrics_interval_seconds": 180.0,
        "shutdown_save_timeout_seconds": 5.0,
    },
    "market": {
        "bazaar_url": "https://api.hypixel.net/v2/skyblock/bazaar",
        "items_url": "https://api.hypixel.net/v2/resources/skyblock/items",
        "products_max_age_seconds": 1.0,
        "items_max_age_seconds": 300.0,
        "network_timeout_seconds": 10.0,
        "hour_samples_per_hour": 100,
        "day_samples_per_hour": 5,
        "max_stack_overrides": {},
    },
    "audit": {
        "trade_log": "logs/actions.csv",
    },
    "logging": {
        "level": "INFO",
    },
    "accounts": [],
    "game": {
        "client_factory": None,
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path: Optional[str] = "config.yaml") -> Dict[str, Any]:
    """
    Reads the YAML config and lays it over DEFAULT_CONFIG.
    A missing path yields the defaults.
    """
    if path is None:
        return copy.deepcopy(DEFAULT_CONFIG)
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raw = {}
    config = _deep_merge(DEFAULT_CONFIG, raw)
    config["_path"] = path
    return config


async def save_config(config: Dict[str, Any], path: Optional[str] = None) -> None:
    path = path or config.get("_path")
    if not path:
        return
    data = {k: v for k, v in config.items() if not k.startswith("_")}
    async with aiofiles.open(path, mode="w") as f:
        await f.write(yaml.safe_dump(data, sort_keys=False))
