from __future__ import annotations


class ConfigError(ValueError):
    """Static configuration is unusable. Fatal at startup, ignored on reload."""


class ConsulError(Exception):
    """A registry or KV call failed (transport error or unexpected status)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
