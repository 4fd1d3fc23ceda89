from __future__ import annotations

from pydantic import BaseModel, Field


class ServiceStatus(BaseModel):
    name: str = Field(..., description="Service name, also the registry ID")
    kind: str
    address: str
    port: int = Field(..., ge=1, le=65535)
    tags: list[str]
    available: bool | None = Field(None, description="None when the KV store could not be read")


class ServicesResponse(BaseModel):
    hostname: str
    loaded_at: str
    services: list[ServiceStatus]


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    service_name: str | None = None
    message: str


class ReconcileQueued(BaseModel):
    queued: bool = True
