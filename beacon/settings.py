"""Load pipeline settings: built-in defaults, config/settings.yaml, environment."""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Mapping

import yaml

logger = logging.getLogger(__name__)

_DEFAULTS: dict[str, Any] = {
    "pipeline": {
        "flush_threshold": 10,
        "max_batch_size": 25,
        "linger_ms": 2000,
        "max_entries": 500,
        # Upper bound on simultaneous requests; 1 gives strictly ordered delivery.
        "max_concurrent": 2,
        "max_attempts": 5,
        "backoff_base_ms": 1000,
        "backoff_max_ms": 60000,
        "backoff_jitter": 0.3,
        "poll_interval": 1.0,
        "send_initial_events": True,
    },
    "transport": {
        "base_url": "https://telemetry.example.invalid",
        "events_path": "/v1/events",
        "ping_path": "/v1/ping",
        "request_timeout": 10.0,
        "api_key_secret": "BEACON_API_KEY",
        "correlation_header": None,
    },
    "storage": {
        "backend": "sqlite",
        "db_path": "data/beacon_state.db",
        "namespace": "beacon",
        "busy_timeout": 5000,
    },
    "gate": {
        "respect_do_not_track": True,
    },
    "tracking": {
        "enabled": False,
        "interval_ms": 1500,
    },
    "logging": {
        "file": "data/logs/beacon.log",
        "level": "INFO",
        "log_to_console": False,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
    },
}

# Environment variables that override single settings, applied after the YAML file.
ENV_OVERRIDES: dict[str, str] = {
    "BEACON_BASE_URL": "transport.base_url",
    "BEACON_DB_PATH": "storage.db_path",
    "BEACON_LOG_LEVEL": "logging.level",
}

_cached: dict[str, Any] | None = None


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base recursively; None in the overlay keeps the default."""
    for key, value in overlay.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def get_default_settings() -> dict[str, Any]:
    """Fresh, mutable copy of the built-in defaults."""
    return copy.deepcopy(_DEFAULTS)


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Get a nested value by dot path (e.g. 'pipeline.max_attempts')."""
    current: Any = settings
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def _set_path(settings: dict[str, Any], path: str, value: Any) -> None:
    *parents, leaf = path.split(".")
    node = settings
    for part in parents:
        node = node.setdefault(part, {})
    node[leaf] = value


def apply_env_overrides(
    settings: dict[str, Any], environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Apply ENV_OVERRIDES in place. Empty variables are ignored."""
    env = os.environ if environ is None else environ
    for var, path in ENV_OVERRIDES.items():
        value = (env.get(var) or "").strip()
        if value:
            _set_path(settings, path, value)
    return settings


def reload_settings() -> None:
    """Clear the settings cache."""
    global _cached
    _cached = None


def load_settings(config_dir: Path | None = None) -> dict[str, Any]:
    """Defaults, overlaid by config/settings.yaml, overlaid by environment. Cached."""
    global _cached
    if _cached is not None:
        return _cached

    if config_dir is None:
        env_dir = os.environ.get("BEACON_CONFIG_DIR")
        config_dir = Path(env_dir) if env_dir else Path(__file__).resolve().parent.parent / "config"
    path = config_dir / "settings.yaml"

    result = get_default_settings()
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as e:
            logger.warning("ignoring unreadable %s: %s", path, e)
            data = None
        if isinstance(data, dict):
            _deep_merge(result, data)
        elif data is not None:
            logger.warning("ignoring %s: top level is not a mapping", path)

    _cached = apply_env_overrides(result)
    return _cached
