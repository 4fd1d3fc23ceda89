from __future__ import annotations

import logging
import queue
import signal
from threading import Event, Lock, Thread
from typing import Callable

from . import db
from .availability import AvailabilityStore
from .consul import ConsulClient
from .errors import ConfigError
from .health import HealthMonitor, HealthReport, Probe, check_tcp
from .reconciler import ReconcileEngine, ReconcileResult
from .runtime import Snapshot, SnapshotHolder, apply_log_level, load_snapshot
from .settings import Settings, settings as default_settings
from .watcher import CHANGED, ConfigWatcher

logger = logging.getLogger(__name__)

RECOVERED = "recovered"
RECONCILE = "reconcile"
_STOP = "stop"

ClientFactory = Callable[[Snapshot], ConsulClient]


class Daemon:
    """Owns the config snapshot and runs the health and config loops.

    Loops never share mutable state: each iteration reads the current
    snapshot once, and reloads publish a new snapshot instead of editing
    the old one.
    """

    def __init__(
        self,
        config_path: str,
        snapshot: Snapshot | None = None,
        client_factory: ClientFactory | None = None,
        probe: Probe = check_tcp,
        cfg: Settings | None = None,
    ):
        self.settings = cfg or default_settings
        self.config_path = config_path
        # ConfigError propagates; nothing has started yet.
        self.holder = SnapshotHolder(snapshot or load_snapshot(config_path))
        apply_log_level(self.holder.get().config.log_level)

        self.events: "queue.Queue[str]" = queue.Queue()
        self.stop_event = Event()
        self.probe = probe
        self.last_reconcile: ReconcileResult | None = None
        self.last_health: HealthReport | None = None

        self._client_factory = client_factory or self._default_client
        self._clients_lock = Lock()
        self._clients: dict[tuple[str, str | None, str | None], ConsulClient] = {}
        self._monitor: HealthMonitor | None = None
        self._monitor_client: ConsulClient | None = None
        self._threads: list[Thread] = []
        self._watcher: ConfigWatcher | None = None
        self._api_server = None

    # -- collaborators -------------------------------------------------------

    def _default_client(self, snap: Snapshot) -> ConsulClient:
        c = snap.config
        return ConsulClient(
            c.consul_url,
            datacenter=c.datacenter,
            namespace=c.namespace,
            marker_tag=self.settings.marker_tag,
            timeout_s=self.settings.consul_timeout_s,
        )

    def client_for(self, snap: Snapshot) -> ConsulClient:
        c = snap.config
        key = (c.consul_url, c.datacenter, c.namespace)
        with self._clients_lock:
            client = self._clients.get(key)
            if client is None:
                client = self._client_factory(snap)
                self._clients[key] = client
            return client

    def store_for(self, client: ConsulClient) -> AvailabilityStore:
        return AvailabilityStore(client, prefix=self.settings.kv_prefix)

    def engine_for(self, snap: Snapshot) -> ReconcileEngine:
        client = self.client_for(snap)
        return ReconcileEngine(
            client,
            store=self.store_for(client),
            hostname=self.settings.hostname,
            marker_tag=self.settings.marker_tag,
        )

    def monitor_for(self, snap: Snapshot) -> HealthMonitor:
        client = self.client_for(snap)
        if self._monitor is None or self._monitor_client is not client:
            self._monitor = HealthMonitor(
                client,
                self.store_for(client),
                hostname=self.settings.hostname,
                probe=self.probe,
                default_timeout_s=self.settings.probe_timeout_s,
                on_recovered=self._on_recovered,
            )
            self._monitor_client = client
        return self._monitor

    def _on_recovered(self, name: str) -> None:
        self.events.put(RECOVERED)

    # -- single passes -------------------------------------------------------

    def snapshot(self) -> Snapshot:
        return self.holder.get()

    def reconcile_once(self) -> ReconcileResult:
        snap = self.holder.get()
        result = self.engine_for(snap).run_pass(snap.services)
        self.last_reconcile = result
        return result

    def health_once(self) -> HealthReport:
        snap = self.holder.get()
        report = self.monitor_for(snap).run_cycle(snap.services)
        self.last_health = report
        return report

    def reload(self) -> bool:
        """Replace the snapshot from disk; keep the old one on any error."""
        try:
            snap = load_snapshot(self.config_path)
        except ConfigError as e:
            db.log_event("WARN", f"Config reload failed, keeping previous config: {e}")
            return False
        self.holder.publish(snap)
        apply_log_level(snap.config.log_level)
        db.log_event("INFO", f"Config reloaded ({len(snap.services)} services)")
        return True

    def request_reconcile(self) -> None:
        self.events.put(RECONCILE)

    # -- loops ---------------------------------------------------------------

    def _health_loop(self) -> None:
        db.log_event("INFO", "Health loop started")
        interval = max(1, self.settings.health_interval_s)
        while not self.stop_event.is_set():
            try:
                self.health_once()
            except Exception as e:
                db.log_event("ERROR", f"Health cycle failed: {type(e).__name__}: {e}")
            self.stop_event.wait(interval)

    def _config_loop(self) -> None:
        db.log_event("INFO", "Config loop started")
        timeout = max(1, self.settings.reconcile_interval_s)
        while not self.stop_event.is_set():
            try:
                pending = {self.events.get(timeout=timeout)}
            except queue.Empty:
                pending = {RECONCILE}
            # Coalesce whatever queued up while the last pass ran.
            while True:
                try:
                    pending.add(self.events.get_nowait())
                except queue.Empty:
                    break
            if _STOP in pending or self.stop_event.is_set():
                break
            try:
                if CHANGED in pending:
                    self.reload()
                self.reconcile_once()
            except Exception as e:
                db.log_event("ERROR", f"Reconcile loop iteration failed: {type(e).__name__}: {e}")

    def _spawn(self, target: Callable[[], None], name: str) -> None:
        thr = Thread(target=target, name=name, daemon=True)
        thr.start()
        self._threads.append(thr)

    def start(self) -> None:
        db.init_db()
        self.reconcile_once()

        self._watcher = ConfigWatcher(
            self.config_path,
            self.events,
            self.stop_event,
            interval_s=self.settings.watch_interval_s,
            debounce_s=self.settings.watch_debounce_s,
        )
        self._watcher.start()
        self._spawn(self._config_loop, "consulsync-config")
        if not self.settings.disable_health:
            self._spawn(self._health_loop, "consulsync-health")
        if self.settings.api_port > 0:
            self._start_api()

    def _start_api(self) -> None:
        import uvicorn

        from .api import create_app

        server = uvicorn.Server(
            uvicorn.Config(
                create_app(self),
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="warning",
            )
        )
        self._api_server = server
        self._spawn(server.run, "consulsync-api")

    def stop(self, timeout: float = 10.0) -> None:
        self.stop_event.set()
        self.events.put(_STOP)
        if self._api_server is not None:
            self._api_server.should_exit = True
        if self._watcher is not None:
            self._watcher.join(timeout)
        for thr in self._threads:
            thr.join(timeout)
        self._threads.clear()
        with self._clients_lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()

    def run_forever(self) -> None:
        def _handle(signum, _frame):
            logger.info("Received signal %s, shutting down", signum)
            self.stop_event.set()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)
        self.start()
        while not self.stop_event.wait(1.0):
            pass
        self.stop()
