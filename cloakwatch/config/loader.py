"""
Configuration loader for divergence, scoring and worker settings
"""
import copy
import os
import yaml
from typing import Dict, Any
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


DEFAULT_CONFIG: Dict[str, Any] = {
    'normalization': {
        'strip_whitespace': True,
        'strip_scripts': True,
        'case_fold': False,
    },
    'divergence': {
        'conditions_per_check': 6,
        'stop_on_first_divergence': True,
        'mismatch_floor': 40,
        'snapshot_window_hours': 24,
        'max_redirects': 10,
    },
    'scoring': {
        'divergence_weight': 70,
        'confirmed_divergence_floor': 61,
        'redirect_max': 15,
        'redirect_decay': 0.5,
        'heuristic_weights': {
            'cloaker_token': 10,
            'black_page_markers': 10,
            'domain_reputation': 15,
        },
    },
    'worker': {
        'max_workers': 4,
        'time_budget_seconds': 900,
        'fetch_retries': 2,
        'score_write_retries': 3,
        'daily_limit': 50,
        'intraday_limit': 20,
        'intraday_min_suspicion': 50,
        'status_check_limit': 100,
    },
    'schedules': {
        'daily_at': '02:00',
        'intraday_every_hours': 4,
        'status_check_at': '06:00',
    },
    'alerts': {
        'dedup_window_hours': 24,
        'high_suspicion_threshold': 80,
    },
    'geo_proxies': {},
}


def default_config() -> Dict[str, Any]:
    """Return a fresh copy of the built-in configuration"""
    return copy.deepcopy(DEFAULT_CONFIG)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override onto base (override wins)"""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_watchdog_config(config_path: str = None) -> Dict[str, Any]:
    """
    Load watchdog configuration from YAML file

    Args:
        config_path: Path to watchdog.yaml. If None, uses WATCHDOG_CONFIG or the
            default location.

    Returns:
        Dictionary containing the merged configuration

    Raises:
        ConfigurationError: If configuration is invalid
    """
    if config_path is None:
        config_path = os.getenv('WATCHDOG_CONFIG')
    if config_path is None:
        # Default to config/watchdog.yaml in project root
        project_root = Path(__file__).parent.parent.parent
        config_path = project_root / 'config' / 'watchdog.yaml'

    if not os.path.exists(config_path):
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        raw = yaml.safe_load(f)

    if not raw:
        raise ConfigurationError("Configuration file is empty")
    if not isinstance(raw, dict):
        raise ConfigurationError("Configuration root must be a mapping")

    config = _merge(DEFAULT_CONFIG, raw)

    # Validate configuration structure
    validate_watchdog_config(config)

    return config


def _require_number(section: Dict[str, Any], key: str, name: str,
                    minimum: float = None, maximum: float = None):
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"'{name}.{key}' must be a number")
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"'{name}.{key}' must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise ConfigurationError(f"'{name}.{key}' must be <= {maximum}")


def validate_watchdog_config(config: Dict[str, Any]):
    """
    Validate configuration structure

    Args:
        config: Configuration dictionary

    Raises:
        ConfigurationError: If configuration is invalid
    """
    for section in ('normalization', 'divergence', 'scoring', 'worker', 'schedules', 'alerts'):
        if not isinstance(config.get(section), dict):
            raise ConfigurationError(f"Configuration must contain a '{section}' mapping")

    for flag in ('strip_whitespace', 'strip_scripts', 'case_fold'):
        if not isinstance(config['normalization'].get(flag), bool):
            raise ConfigurationError(f"'normalization.{flag}' must be true or false")

    divergence = config['divergence']
    _require_number(divergence, 'conditions_per_check', 'divergence', minimum=1)
    _require_number(divergence, 'mismatch_floor', 'divergence', minimum=0, maximum=100)
    _require_number(divergence, 'max_redirects', 'divergence', minimum=0)
    if divergence.get('snapshot_window_hours') is not None:
        _require_number(divergence, 'snapshot_window_hours', 'divergence', minimum=0)

    scoring = config['scoring']
    _require_number(scoring, 'divergence_weight', 'scoring', minimum=0, maximum=100)
    _require_number(scoring, 'confirmed_divergence_floor', 'scoring', minimum=0, maximum=100)
    _require_number(scoring, 'redirect_max', 'scoring', minimum=0, maximum=100)
    _require_number(scoring, 'redirect_decay', 'scoring', minimum=0, maximum=1)
    weights = scoring.get('heuristic_weights')
    if not isinstance(weights, dict):
        raise ConfigurationError("'scoring.heuristic_weights' must be a mapping")
    for name in weights:
        _require_number(weights, name, 'scoring.heuristic_weights', minimum=0, maximum=100)

    worker = config['worker']
    for key in ('max_workers', 'daily_limit', 'intraday_limit', 'status_check_limit'):
        _require_number(worker, key, 'worker', minimum=1)
    for key in ('fetch_retries', 'score_write_retries'):
        _require_number(worker, key, 'worker', minimum=1)
    _require_number(worker, 'time_budget_seconds', 'worker', minimum=1)
    _require_number(worker, 'intraday_min_suspicion', 'worker', minimum=0, maximum=100)

    _require_number(config['schedules'], 'intraday_every_hours', 'schedules', minimum=1)

    alerts = config['alerts']
    # Alerts stay idempotent for at least a day
    _require_number(alerts, 'dedup_window_hours', 'alerts', minimum=24)
    _require_number(alerts, 'high_suspicion_threshold', 'alerts', minimum=0, maximum=100)

    if not isinstance(config.get('geo_proxies') or {}, dict):
        raise ConfigurationError("'geo_proxies' must map country codes to proxy URLs")
