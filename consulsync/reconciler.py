from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Protocol

from . import db
from .availability import AvailabilityStore
from .consul import RegisteredService
from .errors import ConsulError
from .settings import settings
from .tags import ResolvedService


class Registry(Protocol):
    def list_owned_services(self) -> list[RegisteredService]: ...

    def register(self, service: ResolvedService) -> None: ...

    def deregister(self, service_id: str) -> None: ...


def same_service(desired: ResolvedService, observed: RegisteredService, marker_tag: str) -> bool:
    """Equality used for diffing; the ownership marker is ignored."""
    if observed.id != desired.name:
        return False
    if observed.port != desired.port or observed.address != desired.address:
        return False
    if observed.kind != desired.kind:
        return False
    tags = sorted(t for t in observed.tags if t != marker_tag)
    return tags == sorted(t for t in desired.tags if t != marker_tag)


@dataclass
class ReconcilePlan:
    to_register: list[ResolvedService] = field(default_factory=list)
    to_deregister: list[RegisteredService] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.to_register and not self.to_deregister


def diff(
    desired: Iterable[ResolvedService],
    observed: Iterable[RegisteredService],
    marker_tag: str | None = None,
) -> ReconcilePlan:
    marker = marker_tag or settings.marker_tag
    desired = list(desired)
    observed = list(observed)
    plan = ReconcilePlan()

    for o in observed:
        # Services registered by anyone else are never touched.
        if marker not in o.tags:
            continue
        if not any(same_service(d, o, marker) for d in desired):
            plan.to_deregister.append(o)

    for d in desired:
        if not any(same_service(d, o, marker) for o in observed):
            plan.to_register.append(d)
    return plan


@dataclass
class ReconcileResult:
    plan: ReconcilePlan | None = None
    registered: list[str] = field(default_factory=list)
    deregistered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped_unavailable: list[str] = field(default_factory=list)
    error: str | None = None


class ReconcileEngine:
    """Diffs desired services against the registry and applies the difference."""

    def __init__(
        self,
        registry: Registry,
        store: AvailabilityStore | None = None,
        hostname: str | None = None,
        marker_tag: str | None = None,
    ):
        self.registry = registry
        self.store = store
        self.hostname = hostname or settings.hostname
        self.marker_tag = marker_tag or settings.marker_tag

    def plan(self, services: Iterable[ResolvedService]) -> tuple[ReconcilePlan, list[str]]:
        """Compute the diff without applying it.

        Services holding an availability record are left out of the desired
        set, so a down service is deregistered and stays so until it recovers.
        Raises ConsulError when the registry or the store cannot be read.
        """
        services = list(services)
        unavailable: set[str] = set()
        if self.store is not None:
            unavailable = set(self.store.list_unavailable(self.hostname))
        desired = [s for s in services if s.name not in unavailable]
        skipped = [s.name for s in services if s.name in unavailable]
        observed = self.registry.list_owned_services()
        return diff(desired, observed, self.marker_tag), skipped

    def run_pass(self, services: Iterable[ResolvedService]) -> ReconcileResult:
        result = ReconcileResult()
        try:
            plan, result.skipped_unavailable = self.plan(services)
        except ConsulError as e:
            result.error = str(e)
            db.log_event("ERROR", f"Reconcile pass skipped: {e}")
            return result
        result.plan = plan
        self.apply(plan, result)
        if not plan.empty:
            db.log_event(
                "INFO",
                f"Reconcile pass: {len(result.registered)} registered, "
                f"{len(result.deregistered)} deregistered, {len(result.failed)} failed",
            )
        return result

    def apply(self, plan: ReconcilePlan, result: ReconcileResult | None = None) -> ReconcileResult:
        """Deregister first, then register. Failures are logged and skipped."""
        result = result or ReconcileResult(plan=plan)
        for o in plan.to_deregister:
            try:
                self.registry.deregister(o.id)
            except ConsulError as e:
                result.failed.append(o.id)
                db.log_event("ERROR", f"Deregister failed: {e}", service_name=o.id)
                continue
            result.deregistered.append(o.id)
            db.log_event("INFO", "Deregistered", service_name=o.id)

        for d in plan.to_register:
            try:
                self.registry.register(d)
            except ConsulError as e:
                result.failed.append(d.name)
                db.log_event("ERROR", f"Register failed: {e}", service_name=d.name)
                continue
            result.registered.append(d.name)
            db.log_event("INFO", f"Registered at {d.address}:{d.port}", service_name=d.name)
        return result
