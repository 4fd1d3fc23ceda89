from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI, Query

from . import db
from .api_models import EventOut, ReconcileQueued, ServicesResponse, ServiceStatus
from .errors import ConsulError

if TYPE_CHECKING:
    from .daemon import Daemon


def create_app(daemon: "Daemon") -> FastAPI:
    app = FastAPI(title="consulsync")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/services", response_model=ServicesResponse)
    def services() -> ServicesResponse:
        snap = daemon.snapshot()
        store = daemon.store_for(daemon.client_for(snap))
        try:
            down: set[str] | None = set(store.list_unavailable(daemon.settings.hostname))
        except ConsulError:
            down = None
        return ServicesResponse(
            hostname=daemon.settings.hostname,
            loaded_at=snap.loaded_at,
            services=[
                ServiceStatus(
                    name=s.name,
                    kind=s.kind,
                    address=s.address,
                    port=s.port,
                    tags=list(s.tags),
                    available=None if down is None else s.name not in down,
                )
                for s in snap.services
            ],
        )

    @app.get("/events", response_model=list[EventOut])
    def events(limit: int = Query(50, ge=1, le=1000)) -> list[dict]:
        return db.latest_events(limit)

    @app.post("/reconcile", response_model=ReconcileQueued)
    def reconcile() -> ReconcileQueued:
        daemon.request_reconcile()
        return ReconcileQueued()

    return app
