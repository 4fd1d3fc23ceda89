from __future__ import annotations

from typing import Protocol

from .settings import settings

UNAVAILABLE = "unavailable"


class KVBackend(Protocol):
    def kv_put(self, key: str, value: str) -> None: ...

    def kv_delete(self, key: str) -> None: ...

    def kv_keys(self, prefix: str) -> list[str]: ...


class AvailabilityStore:
    """Per-host unavailability markers in the KV store.

    A key ``<prefix>/<host>/<service>`` exists while the service is believed
    unreachable from ``host``. Every method lets ConsulError propagate; the
    caller decides whether to skip the service or the whole pass.
    """

    def __init__(self, kv: KVBackend, prefix: str | None = None):
        self.kv = kv
        self.prefix = (prefix if prefix is not None else settings.kv_prefix).strip("/")

    def key(self, host: str, service_name: str) -> str:
        return f"{self.prefix}/{host}/{service_name}"

    def mark_unavailable(self, host: str, service_name: str) -> None:
        self.kv.kv_put(self.key(host, service_name), UNAVAILABLE)

    def mark_available(self, host: str, service_name: str) -> None:
        self.kv.kv_delete(self.key(host, service_name))

    def list_unavailable(self, host: str) -> list[str]:
        base = f"{self.prefix}/{host}/"
        names = []
        for k in self.kv.kv_keys(base):
            if not k.startswith(base):
                continue
            name = k[len(base):].rsplit("/", 1)[-1]
            if name:
                names.append(name)
        return sorted(set(names))
