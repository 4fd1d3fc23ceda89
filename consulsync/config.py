from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .tags import tag_key

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

# Config file fields that may be overridden from the environment.
ENV_OVERRIDES = {
    "consul_url": "CONSULSYNC_CONSUL_URL",
    "log_level": "CONSULSYNC_LOG_LEVEL",
    "datacenter": "CONSULSYNC_DATACENTER",
    "namespace": "CONSULSYNC_NAMESPACE",
}


def parse_duration(raw: str | int | float) -> float:
    """Parse "500ms", "5s", "1m", "2h" or a bare number of seconds."""
    if isinstance(raw, (int, float)):
        if raw < 0:
            raise ValueError(f"negative duration: {raw!r}")
        return float(raw)
    m = _DURATION_RE.match(raw)
    if not m:
        raise ValueError(f"invalid duration: {raw!r}")
    return float(m.group(1)) * _DURATION_UNITS[m.group(2) or "s"]


class _Strict(BaseModel):
    # Unknown keys in any block are rejected at load time.
    model_config = ConfigDict(extra="forbid", frozen=True)


class ServiceCheck(_Strict):
    tcp: str | None = None
    interval: str = "10s"
    timeout: str = "5s"

    @field_validator("interval", "timeout")
    @classmethod
    def valid_duration(cls, v: str) -> str:
        parse_duration(v)
        return v

    @property
    def interval_s(self) -> float:
        return parse_duration(self.interval)

    @property
    def timeout_s(self) -> float:
        return parse_duration(self.timeout)


class KindDefault(_Strict):
    name: str
    tags: tuple[str, ...] = ()
    address: str | None = None
    port: int | None = Field(None, ge=1, le=65535)
    check: ServiceCheck | None = None
    meta: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def unique_tag_keys(self) -> "KindDefault":
        seen: set[str] = set()
        for t in self.tags:
            key = tag_key(t)
            if key is None:
                continue
            if key in seen:
                raise ValueError(f"kind '{self.name}' declares tag key '{key}' more than once")
            seen.add(key)
        return self


class ServiceDeclaration(_Strict):
    name: str = Field(..., min_length=1)
    kind: str
    address: str | None = None
    port: int | None = Field(None, ge=1, le=65535)
    tags: tuple[str, ...] = ()
    check: ServiceCheck | None = None
    meta: dict[str, str] = Field(default_factory=dict)


class Config(_Strict):
    consul_url: str = "http://localhost:8500"
    log_level: str | None = None
    datacenter: str | None = None
    namespace: str | None = None
    kinds: tuple[KindDefault, ...] = ()
    services: tuple[ServiceDeclaration, ...] = ()

    @model_validator(mode="after")
    def check_references(self) -> "Config":
        kind_names = [k.name for k in self.kinds]
        dup_kinds = {n for n in kind_names if kind_names.count(n) > 1}
        if dup_kinds:
            raise ValueError(f"duplicate kind names: {sorted(dup_kinds)}")

        svc_names = [s.name for s in self.services]
        dup_svcs = {n for n in svc_names if svc_names.count(n) > 1}
        if dup_svcs:
            raise ValueError(f"duplicate service names: {sorted(dup_svcs)}")

        known = set(kind_names)
        for s in self.services:
            if s.kind not in known:
                raise ValueError(f"service '{s.name}' references undefined kind '{s.kind}'")
        return self

    def kind_map(self) -> dict[str, KindDefault]:
        return {k.name: k for k in self.kinds}


def _read_file(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}") from e

    try:
        if path.suffix in {".yaml", ".yml"}:
            data = yaml.safe_load(raw.decode("utf-8"))
        else:
            data = tomllib.loads(raw.decode("utf-8"))
    except (tomllib.TOMLDecodeError, yaml.YAMLError, UnicodeDecodeError) as e:
        raise ConfigError(f"cannot parse {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a table/mapping")
    return data


def apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    env = os.environ if environ is None else environ
    out = dict(data)
    for field, var in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            out[field] = value
    return out


def parse_config(data: Mapping[str, Any], source: str = "<config>") -> Config:
    try:
        return Config.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigError(f"{source}: {e}") from e


def load_config(path: str | Path, environ: Mapping[str, str] | None = None) -> Config:
    """Read, env-override and validate a config file.

    Raises ConfigError for anything that prevents a usable config.
    """
    p = Path(path)
    data = apply_env_overrides(_read_file(p), environ)
    return parse_config(data, source=str(p))
