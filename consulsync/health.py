from __future__ import annotations

import socket
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Iterable

from . import db
from .availability import AvailabilityStore
from .errors import ConsulError
from .settings import settings
from .tags import ResolvedService

if TYPE_CHECKING:
    from .reconciler import Registry

Probe = Callable[[str, int, float], tuple[bool, str, float | None]]


def check_tcp(host: str, port: int, timeout_s: float = 5.0) -> tuple[bool, str, float | None]:
    """Open (and close) one TCP connection.

    Returns (is_available, message, latency_ms).
    """
    start = time.monotonic()
    try:
        with socket.create_connection((host, port), timeout=timeout_s):
            pass
        latency_ms = round((time.monotonic() - start) * 1000.0, 2)
        return True, "Connected", latency_ms
    except socket.timeout:
        latency_ms = round((time.monotonic() - start) * 1000.0, 2)
        return False, f"Timed out after {timeout_s}s", latency_ms
    except OSError as e:
        latency_ms = round((time.monotonic() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


@dataclass
class HealthReport:
    probed: list[str] = field(default_factory=list)
    became_unavailable: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class HealthMonitor:
    """Probes declared services and keeps availability records in sync.

    State lives in the AvailabilityStore, not in this object, so a restart
    (or another process on the same host) picks it up unchanged:

      available   + probe fails    -> write record, deregister
      unavailable + probe succeeds -> delete record, notify on_recovered
      otherwise                    -> nothing
    """

    def __init__(
        self,
        registry: "Registry",
        store: AvailabilityStore,
        hostname: str | None = None,
        probe: Probe = check_tcp,
        default_timeout_s: float | None = None,
        on_recovered: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.store = store
        self.hostname = hostname or settings.hostname
        self.probe = probe
        self.default_timeout_s = default_timeout_s if default_timeout_s is not None else settings.probe_timeout_s
        self.on_recovered = on_recovered
        self.clock = clock
        self._last_probe: dict[str, float] = {}

    def _timeout_for(self, svc: ResolvedService) -> float:
        if svc.check is not None:
            return svc.check.timeout_s
        return self.default_timeout_s

    def is_due(self, svc: ResolvedService, now: float) -> bool:
        last = self._last_probe.get(svc.name)
        if last is None or svc.check is None:
            return True
        return now - last >= svc.check.interval_s

    def run_cycle(self, services: Iterable[ResolvedService]) -> HealthReport:
        report = HealthReport()
        services = list(services)
        try:
            unavailable = set(self.store.list_unavailable(self.hostname))
        except ConsulError as e:
            db.log_event("ERROR", f"Cannot read availability records, skipping health cycle: {e}")
            report.errors.append(str(e))
            return report

        now = self.clock()
        for svc in services:
            if not self.is_due(svc, now):
                continue
            self._last_probe[svc.name] = now
            host, port = svc.probe_target
            ok, msg, _latency = self.probe(host, port, self._timeout_for(svc))
            report.probed.append(svc.name)

            if not ok and svc.name not in unavailable:
                self._became_unavailable(svc, msg, report)
            elif ok and svc.name in unavailable:
                self._recovered(svc, report)

        declared = {s.name for s in services}
        for name in list(self._last_probe):
            if name not in declared:
                del self._last_probe[name]
        self._prune(unavailable - declared, report)
        return report

    def _became_unavailable(self, svc: ResolvedService, msg: str, report: HealthReport) -> None:
        try:
            self.store.mark_unavailable(self.hostname, svc.name)
        except ConsulError as e:
            db.log_event("ERROR", f"Could not record unavailability: {e}", service_name=svc.name)
            report.errors.append(str(e))
            return
        report.became_unavailable.append(svc.name)
        db.log_event("WARN", f"Service became unavailable: {msg}", service_name=svc.name)

        # A failed deregister is picked up by the next reconcile pass, which
        # excludes services holding an availability record.
        try:
            self.registry.deregister(svc.name)
        except ConsulError as e:
            db.log_event("ERROR", f"Deregister after failed probe failed: {e}", service_name=svc.name)
            report.errors.append(str(e))

    def _recovered(self, svc: ResolvedService, report: HealthReport) -> None:
        try:
            self.store.mark_available(self.hostname, svc.name)
        except ConsulError as e:
            db.log_event("ERROR", f"Could not clear unavailability record: {e}", service_name=svc.name)
            report.errors.append(str(e))
            return
        report.recovered.append(svc.name)
        db.log_event("INFO", "Service recovered", service_name=svc.name)
        if self.on_recovered is not None:
            self.on_recovered(svc.name)

    def _prune(self, stale: set[str], report: HealthReport) -> None:
        """Drop records of services that are no longer declared."""
        for name in sorted(stale):
            try:
                self.store.mark_available(self.hostname, name)
            except ConsulError as e:
                report.errors.append(str(e))
                db.log_event("WARN", f"Could not drop stale availability record: {e}", service_name=name)
