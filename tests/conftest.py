import dataclasses
import os as _os
import sys

import pytest

# Ensure project root is importable without installing the package.
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from consulsync import db  # noqa: E402
from consulsync.consul import RegisteredService  # noqa: E402
from consulsync.errors import ConsulError  # noqa: E402

MARKER = "nixconsul"

SAMPLE_TOML = """
consul_url = "http://consul.test:8500"
log_level = "debug"

[[kinds]]
name = "http"
port = 80
tags = [
    "traefik.enable=true",
    "traefik.http.routers.SERVICE_NAME.rule=Host(`SERVICE_NAME.example.com`)",
    "role=secondary",
]

[[services]]
name = "web"
kind = "http"
address = "10.0.0.1"
tags = ["role=primary"]
"""


@pytest.fixture(autouse=True)
def isolated_journal(tmp_path, monkeypatch):
    """Each test writes events to its own sqlite file."""
    monkeypatch.setattr(db, "settings", dataclasses.replace(db.settings, db_path=str(tmp_path / "events.db")))
    monkeypatch.setattr(db, "_initialized", set())


class FakeConsul:
    """In-memory agent + KV with the same surface as ConsulClient."""

    def __init__(self, marker_tag: str = MARKER):
        self.marker_tag = marker_tag
        self.services: dict[str, RegisteredService] = {}
        self.kv: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail: set[str] = set()

    def _maybe_fail(self, op: str, arg: str = "") -> None:
        if op in self.fail or f"{op}:{arg}" in self.fail:
            raise ConsulError(f"{op} {arg} failed")

    def add_external(self, sid: str, tags=(), port: int = 80, address: str = "10.9.9.9", kind: str = "") -> None:
        self.services[sid] = RegisteredService(
            id=sid, name=sid, kind=kind, address=address, port=port, tags=tuple(tags), marker_tag=self.marker_tag
        )

    def list_owned_services(self):
        self._maybe_fail("list")
        return [s for s in self.services.values() if s.owned]

    def register(self, service):
        self.calls.append(("register", service.name))
        self._maybe_fail("register", service.name)
        self.services[service.name] = RegisteredService(
            id=service.name,
            name=service.name,
            kind=service.kind,
            address=service.address,
            port=service.port,
            tags=tuple(service.tags) + (self.marker_tag,),
            marker_tag=self.marker_tag,
        )

    def deregister(self, service_id):
        self.calls.append(("deregister", service_id))
        self._maybe_fail("deregister", service_id)
        self.services.pop(service_id, None)

    def kv_put(self, key, value):
        self.calls.append(("kv_put", key))
        self._maybe_fail("kv_put", key)
        self.kv[key] = value

    def kv_delete(self, key):
        self.calls.append(("kv_delete", key))
        self._maybe_fail("kv_delete", key)
        self.kv.pop(key, None)

    def kv_keys(self, prefix):
        self._maybe_fail("kv_keys", prefix)
        return sorted(k for k in self.kv if k.startswith(prefix))

    def close(self):
        pass


@pytest.fixture
def fake_consul():
    return FakeConsul()


@pytest.fixture
def sample_config(tmp_path):
    p = tmp_path / "consulsync.toml"
    p.write_text(SAMPLE_TOML)
    return p
