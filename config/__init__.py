"""Configuration management."""
import os
import yaml
from pathlib import Path

from utils.errors import ConfigurationError

_config = None
_DEFAULT_CONFIG = Path(__file__).parent / "default_config.yaml"

_REQUIRED_SECTIONS = ["agent", "logging", "database", "store", "collector", "alerting",
                      "remediation", "notifications", "sources", "rules"]

_ENV_MAP = {
    "MYSQLWATCH_DB_HOST": ("database", "host"),
    "MYSQLWATCH_DB_PORT": ("database", "port"),
    "MYSQLWATCH_DB_USER": ("database", "user"),
    "MYSQLWATCH_DB_PASSWORD": ("database", "password"),
    "MYSQLWATCH_STORE_PATH": ("store", "path"),
    "MYSQLWATCH_LOG_LEVEL": ("logging", "level"),
    "MYSQLWATCH_DRY_RUN": ("remediation", "dry_run"),
}

# Values that must stay strings even when they look numeric
_STRING_KEYS = {("database", "password"), ("database", "user")}


def _read_yaml(path):
    try:
        with open(path) as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"{path}: invalid YAML: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"{path}: {e}") from e


def load_config(path=None):
    """Load config from YAML, merging defaults with optional overrides."""
    global _config

    config = _read_yaml(_DEFAULT_CONFIG)

    if path:
        if not Path(path).exists():
            raise ConfigurationError(f"config file not found: {path}")
        overrides = _read_yaml(path)
        if not isinstance(overrides, dict):
            raise ConfigurationError(f"{path}: top level must be a mapping")
        config = _deep_merge(config, overrides)

    # Environment variable overrides
    for env_key, config_path in _ENV_MAP.items():
        val = os.environ.get(env_key)
        if val:
            d = config
            for k in config_path[:-1]:
                d = d.setdefault(k, {})
            d[config_path[-1]] = _coerce(val, config_path)

    _validate_config(config)
    _config = config
    return config


def get_config():
    """Return cached config, loading defaults if needed."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def _coerce(val, config_path):
    if config_path in _STRING_KEYS:
        return val
    if val.lower() in ("true", "yes", "on"):
        return True
    if val.lower() in ("false", "no", "off"):
        return False
    try:
        return int(val)
    except ValueError:
        return val


def _deep_merge(base, override):
    """Recursively merge override into base dict.

    Lists (sources, rules) are replaced, not merged.
    """
    result = base.copy()
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _validate_config(config):
    """Structural validation; sources, rules and allow-list are checked when built."""
    for section in _REQUIRED_SECTIONS:
        if section not in config:
            raise ConfigurationError(f"Missing required config section: {section}")
    if not isinstance(config["sources"], list):
        raise ConfigurationError("sources must be a list")
    if not isinstance(config["rules"], list):
        raise ConfigurationError("rules must be a list")

    port = config["database"].get("port")
    if not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigurationError(f"database.port must be a TCP port, got {port!r}")
    if not config["store"].get("path"):
        raise ConfigurationError("store.path is required")

    collector = config["collector"]
    if collector.get("failure_threshold", 3) < 1:
        raise ConfigurationError("collector.failure_threshold must be >= 1")
    if collector.get("default_interval_seconds", 10) <= 0:
        raise ConfigurationError("collector.default_interval_seconds must be > 0")

    alerting = config["alerting"]
    if alerting.get("cool_down_cycles", 3) < 1:
        raise ConfigurationError("alerting.cool_down_cycles must be >= 1")
    if alerting.get("buffer_size", 100) < 1:
        raise ConfigurationError("alerting.buffer_size must be >= 1")
    if alerting.get("renotify_interval_seconds", 1800) < 0:
        raise ConfigurationError("alerting.renotify_interval_seconds must be >= 0")

    remediation = config["remediation"]
    if not isinstance(remediation.get("dry_run", True), bool):
        raise ConfigurationError("remediation.dry_run must be true or false")
    if remediation.get("rate_limit_seconds", 900) < 0:
        raise ConfigurationError("remediation.rate_limit_seconds must be >= 0")
    if remediation.get("action_timeout_seconds", 30) <= 0:
        raise ConfigurationError("remediation.action_timeout_seconds must be > 0")

    if config["agent"].get("housekeeping_interval_seconds", 10) <= 0:
        raise ConfigurationError("agent.housekeeping_interval_seconds must be > 0")
