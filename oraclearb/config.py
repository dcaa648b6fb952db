# oraclearb/config.py
import copy
import os
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError
from .models import RiskConfig

DEFAULTS: Dict[str, Dict[str, Any]] = {
    'system': {
        'environment': 'live',
        'dry_run': True,
        'log_level': 'INFO',
    },
    'exchange': {
        'api_key': '',
        'secret': '',
        'password': '',
        'quote_currency': 'USDC',
        'network_timeout_ms': 10000,
        'paper_balance': 1000.0,
    },
    'feed': {
        'reconnect_base_seconds': 1.0,
        'reconnect_max_seconds': 30.0,
    },
    'risk': {
        'fee_buffer_pct': '0.02',
        'max_data_age_seconds': 5.0,
    },
    'engine': {
        'decision_interval_seconds': 1.0,
        'reconcile_interval_seconds': 3.0,
        'max_cancel_retries': 3,
        'max_missing_polls': 3,
        'read_retries': 3,
        'shutdown_timeout_seconds': 60.0,
        'size_precision': 2,
        'price_precision': 3,
    },
    'audit': {
        'trade_log': 'logs/positions.csv',
    },
}

REQUIRED = {
    'exchange': ['name'],
    'market': ['token_id'],
    'feed': ['url', 'instrument'],
    'risk': [
        'price_difference_threshold',
        'take_profit_offset',
        'stop_loss_offset',
        'trade_amount_usd',
        'cooldown_seconds',
        'max_concurrent_positions',
    ],
}

# Environment variables win over the file so secrets can stay out of config.yaml
ENV_OVERRIDES = {
    'EXCHANGE_API_KEY': ('exchange', 'api_key'),
    'EXCHANGE_SECRET': ('exchange', 'secret'),
    'EXCHANGE_PASSWORD': ('exchange', 'password'),
    'ORACLE_FEED_URL': ('feed', 'url'),
}


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _decimal(section: str, key: str, value: Any) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ConfigError(f"{section}.{key} must be a number, got {value!r}") from e
    if not result.is_finite():
        raise ConfigError(f"{section}.{key} must be finite, got {value!r}")
    return result


def validate_config(config: dict) -> dict:
    """
    Fills defaults and checks required keys. Raises ConfigError on the first problem.
    """
    config = _merge(DEFAULTS, config)

    for section, keys in REQUIRED.items():
        block = config.get(section)
        if not isinstance(block, dict):
            raise ConfigError(f"Missing config section '{section}'")
        for key in keys:
            if block.get(key) in (None, ''):
                raise ConfigError(f"Missing required config value '{section}.{key}'")

    risk = build_risk_config(config)
    if risk.price_difference_threshold <= 0:
        raise ConfigError("risk.price_difference_threshold must be positive")
    if risk.trade_amount_usd <= 0:
        raise ConfigError("risk.trade_amount_usd must be positive")
    if risk.take_profit_offset <= 0 or risk.stop_loss_offset <= 0:
        raise ConfigError("risk take_profit_offset and stop_loss_offset must be positive")
    if risk.cooldown_seconds < 0:
        raise ConfigError("risk.cooldown_seconds cannot be negative")
    if risk.max_concurrent_positions < 1:
        raise ConfigError("risk.max_concurrent_positions must be at least 1")

    if not config['system']['dry_run']:
        if not config['exchange']['api_key'] or not config['exchange']['secret']:
            raise ConfigError("Live trading requires exchange.api_key and exchange.secret")

    return config


def build_risk_config(config: dict) -> RiskConfig:
    r = config['risk']
    try:
        cooldown = int(r['cooldown_seconds'])
        max_positions = int(r['max_concurrent_positions'])
        max_age = float(r['max_data_age_seconds'])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid risk setting: {e}") from e

    return RiskConfig(
        price_difference_threshold=_decimal('risk', 'price_difference_threshold', r['price_difference_threshold']),
        take_profit_offset=_decimal('risk', 'take_profit_offset', r['take_profit_offset']),
        stop_loss_offset=_decimal('risk', 'stop_loss_offset', r['stop_loss_offset']),
        trade_amount_usd=_decimal('risk', 'trade_amount_usd', r['trade_amount_usd']),
        cooldown_seconds=cooldown,
        max_concurrent_positions=max_positions,
        fee_buffer_pct=_decimal('risk', 'fee_buffer_pct', r['fee_buffer_pct']),
        max_data_age_seconds=max_age,
    )


def load_config(path: str = "config.yaml", env_file: Optional[str] = None) -> dict:
    """
    Reads the YAML config, applies environment overrides and validates it.
    """
    load_dotenv(env_file)

    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {path} is not valid YAML: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            raw.setdefault(section, {})[key] = value

    return validate_config(raw)
