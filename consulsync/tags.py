"""Merge service declarations with their kind defaults.

A tag of shape ``key=value`` carries a semantic key (text before the first
``=``); anything else is an opaque flag. Declaration tags replace kind tags
that share a key, in the kind tag's position; the rest are appended.
``SERVICE_NAME`` anywhere in a tag becomes the service's own name.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Mapping

from .errors import ConfigError

if TYPE_CHECKING:
    from .config import KindDefault, ServiceCheck, ServiceDeclaration

PLACEHOLDER = "SERVICE_NAME"


def tag_key(tag: str) -> str | None:
    if "=" not in tag:
        return None
    return tag.split("=", 1)[0]


@dataclass(frozen=True)
class ResolvedService:
    name: str
    kind: str
    address: str
    port: int
    tags: tuple[str, ...]
    check: "ServiceCheck | None" = None
    meta: Mapping[str, str] = field(default_factory=dict)

    @property
    def probe_target(self) -> tuple[str, int]:
        """(host, port) the health monitor connects to."""
        if self.check is not None and self.check.tcp:
            host, _, port = self.check.tcp.rpartition(":")
            return host.strip("[]"), int(port)
        return self.address, self.port


def merge_tags(defaults: Iterable[str], own: Iterable[str], service_name: str) -> list[str]:
    merged: list[str] = []
    positions: dict[str, int] = {}

    # Keys are compared after substitution so a declaration tag spelled
    # with the literal name still replaces a templated default.
    for t in defaults:
        t = t.replace(PLACEHOLDER, service_name)
        key = tag_key(t)
        if key is None:
            if t not in merged:
                merged.append(t)
        elif key in positions:
            # Defaults may only collide once the name is substituted.
            merged[positions[key]] = t
        else:
            positions[key] = len(merged)
            merged.append(t)

    for t in own:
        t = t.replace(PLACEHOLDER, service_name)
        key = tag_key(t)
        if key is None:
            if t not in merged:
                merged.append(t)
            continue
        if key in positions:
            merged[positions[key]] = t
        else:
            positions[key] = len(merged)
            merged.append(t)
    return merged


def resolve(decl: "ServiceDeclaration", kinds: Mapping[str, "KindDefault"]) -> ResolvedService:
    kind = kinds.get(decl.kind)
    if kind is None:
        raise ConfigError(f"service '{decl.name}' references undefined kind '{decl.kind}'")

    address = decl.address if decl.address is not None else kind.address
    port = decl.port if decl.port is not None else kind.port
    if not address:
        raise ConfigError(f"service '{decl.name}' has no address (not set on service or kind '{kind.name}')")
    if port is None:
        raise ConfigError(f"service '{decl.name}' has no port (not set on service or kind '{kind.name}')")

    check = decl.check if decl.check is not None else kind.check
    if check is not None and check.tcp:
        check = check.model_copy(update={"tcp": check.tcp.replace(PLACEHOLDER, decl.name)})
        host, _, tcp_port = check.tcp.rpartition(":")
        if not host or not tcp_port.isdigit():
            raise ConfigError(f"service '{decl.name}': check.tcp must be host:port, got {check.tcp!r}")

    return ResolvedService(
        name=decl.name,
        kind=kind.name,
        address=address,
        port=port,
        tags=tuple(merge_tags(kind.tags, decl.tags, decl.name)),
        check=check,
        meta={**kind.meta, **decl.meta},
    )


def resolve_all(
    declarations: Iterable["ServiceDeclaration"], kinds: Mapping[str, "KindDefault"]
) -> tuple[ResolvedService, ...]:
    return tuple(resolve(d, kinds) for d in declarations)
