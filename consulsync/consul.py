from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from .errors import ConsulError
from .settings import settings
from .tags import ResolvedService

logger = logging.getLogger(__name__)

# Services carry their kind in metadata; "Kind" is reserved by the agent.
KIND_META_KEY = "consulsync-kind"


@dataclass(frozen=True)
class RegisteredService:
    id: str
    name: str
    kind: str
    address: str
    port: int
    tags: tuple[str, ...]
    marker_tag: str = "nixconsul"

    @property
    def owned(self) -> bool:
        return self.marker_tag in self.tags

    @classmethod
    def from_agent(cls, data: dict[str, Any], marker_tag: str) -> "RegisteredService":
        meta = data.get("Meta") or {}
        return cls(
            id=str(data.get("ID") or data.get("Service") or ""),
            name=str(data.get("Service") or data.get("ID") or ""),
            kind=str(meta.get(KIND_META_KEY) or data.get("Kind") or ""),
            address=str(data.get("Address") or ""),
            port=int(data.get("Port") or 0),
            tags=tuple(data.get("Tags") or ()),
            marker_tag=marker_tag,
        )


def registration_payload(service: ResolvedService, marker_tag: str) -> dict[str, Any]:
    """Agent registration body. The ownership marker is always appended."""
    tags = [t for t in service.tags if t != marker_tag]
    tags.append(marker_tag)
    payload: dict[str, Any] = {
        "ID": service.name,
        "Name": service.name,
        "Address": service.address,
        "Port": service.port,
        "Tags": tags,
        "Meta": {**service.meta, KIND_META_KEY: service.kind},
        "EnableTagOverride": True,
    }
    if service.check is not None:
        host, port = service.probe_target
        payload["Check"] = {
            "TCP": f"{host}:{port}",
            "Interval": service.check.interval,
            "Timeout": service.check.timeout,
        }
    return payload


class ConsulClient:
    """Minimal agent + KV client for a single Consul agent."""

    def __init__(
        self,
        url: str,
        datacenter: str | None = None,
        namespace: str | None = None,
        marker_tag: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.datacenter = datacenter
        self.namespace = namespace
        self.marker_tag = marker_tag or settings.marker_tag
        self._client = httpx.Client(
            base_url=self.url,
            timeout=timeout_s if timeout_s is not None else settings.consul_timeout_s,
            follow_redirects=False,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _kv_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.datacenter:
            params["dc"] = self.datacenter
        if self.namespace:
            params["ns"] = self.namespace
        return params

    def _request(self, method: str, path: str, ok: tuple[int, ...] = (200,), **kwargs: Any) -> httpx.Response:
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ConsulError(f"{method} {path}: {type(e).__name__}: {e}") from e
        if resp.status_code not in ok:
            raise ConsulError(f"{method} {path}: HTTP {resp.status_code} {resp.text.strip()}", resp.status_code)
        return resp

    # -- agent services ----------------------------------------------------

    def list_services(self) -> list[RegisteredService]:
        resp = self._request("GET", "/v1/agent/services")
        try:
            data = resp.json()
        except ValueError as e:
            raise ConsulError(f"GET /v1/agent/services: invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConsulError(f"GET /v1/agent/services: unexpected payload {type(data).__name__}")
        return [RegisteredService.from_agent(v, self.marker_tag) for v in data.values()]

    def list_owned_services(self) -> list[RegisteredService]:
        return [s for s in self.list_services() if s.owned]

    def register(self, service: ResolvedService) -> None:
        self._request("PUT", "/v1/agent/service/register", json=registration_payload(service, self.marker_tag))
        logger.debug("Registered %s", service.name)

    def deregister(self, service_id: str) -> None:
        self._request("PUT", f"/v1/agent/service/deregister/{quote(service_id, safe='')}")
        logger.debug("Deregistered %s", service_id)

    # -- KV ------------------------------------------------------------------

    def kv_put(self, key: str, value: str) -> None:
        self._request("PUT", f"/v1/kv/{quote(key)}", content=value.encode("utf-8"), params=self._kv_params())

    def kv_delete(self, key: str) -> None:
        self._request("DELETE", f"/v1/kv/{quote(key)}", params=self._kv_params())

    def kv_keys(self, prefix: str) -> list[str]:
        params = {"keys": "true", **self._kv_params()}
        resp = self._request("GET", f"/v1/kv/{quote(prefix)}", ok=(200, 404), params=params)
        if resp.status_code == 404:
            return []
        try:
            keys = resp.json()
        except ValueError as e:
            raise ConsulError(f"GET /v1/kv/{prefix}: invalid JSON: {e}") from e
        return [str(k) for k in keys or []]
