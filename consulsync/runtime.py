from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock

from .config import Config, load_config
from .tags import ResolvedService, resolve_all


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Snapshot:
    config: Config
    services: tuple[ResolvedService, ...]
    loaded_at: str = field(default_factory=utc_now)

    def service(self, name: str) -> ResolvedService | None:
        for s in self.services:
            if s.name == name:
                return s
        return None


def load_snapshot(path: str | Path) -> Snapshot:
    """Load and resolve a config file. Raises ConfigError."""
    cfg = load_config(path)
    return Snapshot(config=cfg, services=resolve_all(cfg.services, cfg.kind_map()))


def apply_log_level(level: str | None) -> None:
    if not level:
        return
    value = logging.getLevelName(level.upper())
    if isinstance(value, int):
        logging.getLogger("consulsync").setLevel(value)
    else:
        logging.getLogger(__name__).warning("Ignoring unknown log level %r", level)


class SnapshotHolder:
    """Publishes whole snapshots; readers never see a partial update."""

    def __init__(self, snapshot: Snapshot) -> None:
        self._lock = Lock()
        self._snapshot = snapshot
        self.generation = 0

    def get(self) -> Snapshot:
        with self._lock:
            return self._snapshot

    def publish(self, snapshot: Snapshot) -> None:
        with self._lock:
            self._snapshot = snapshot
            self.generation += 1
