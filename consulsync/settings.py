from __future__ import annotations

import os
import socket
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    config_path: str = os.getenv("CONSULSYNC_CONFIG", "consulsync.toml")
    db_path: str = os.getenv("CONSULSYNC_DB_PATH", "consulsync.db")
    hostname: str = os.getenv("CONSULSYNC_HOSTNAME") or socket.gethostname()

    # Registry / KV layout
    kv_prefix: str = os.getenv("CONSULSYNC_KV_PREFIX", "consulsync")
    marker_tag: str = os.getenv("CONSULSYNC_MARKER_TAG", "nixconsul")
    consul_timeout_s: float = _env_float("CONSULSYNC_CONSUL_TIMEOUT_S", 10.0)

    # Loops
    health_interval_s: int = _env_int("CONSULSYNC_HEALTH_INTERVAL_S", 10)
    probe_timeout_s: float = _env_float("CONSULSYNC_PROBE_TIMEOUT_S", 5.0)
    reconcile_interval_s: int = _env_int("CONSULSYNC_RECONCILE_INTERVAL_S", 60)
    watch_interval_s: float = _env_float("CONSULSYNC_WATCH_INTERVAL_S", 1.0)
    watch_debounce_s: float = _env_float("CONSULSYNC_WATCH_DEBOUNCE_S", 0.5)

    # Status API (0 disables it)
    api_host: str = os.getenv("CONSULSYNC_API_HOST", "127.0.0.1")
    api_port: int = _env_int("CONSULSYNC_API_PORT", 0)

    # Skip the probe cycle entirely (registry sync only).
    disable_health: bool = _env_bool("CONSULSYNC_DISABLE_HEALTH", False)


settings = Settings()
