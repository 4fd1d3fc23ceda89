from __future__ import annotations

import logging
import os
import queue
import time
from threading import Event, Lock, Thread

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .settings import settings

logger = logging.getLogger(__name__)

CHANGED = "changed"


class _ConfigFileHandler(FileSystemEventHandler):
    """Remembers when the watched file was last touched."""

    def __init__(self, path: str):
        self.path = os.path.realpath(path)
        self._lock = Lock()
        self._last_event: float | None = None

    def _matches(self, p: str | bytes | None) -> bool:
        if not p:
            return False
        if isinstance(p, bytes):
            p = os.fsdecode(p)
        return os.path.realpath(p) == self.path

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in {"modified", "created", "moved", "closed"}:
            return
        # Editors that save atomically write a temp file and move it over the target.
        if self._matches(event.src_path) or self._matches(getattr(event, "dest_path", None)):
            with self._lock:
                self._last_event = time.monotonic()

    def take_if_quiet(self, debounce_s: float) -> bool:
        with self._lock:
            if self._last_event is None or time.monotonic() - self._last_event < debounce_s:
                return False
            self._last_event = None
            return True


class ConfigWatcher:
    """Watches one file and puts CHANGED on a queue when it is modified.

    Bursts of filesystem events within the debounce window produce a single
    event. The watcher owns its watchdog observer; nothing else touches it.
    """

    def __init__(
        self,
        path: str,
        events: "queue.Queue[str]",
        stop: Event,
        interval_s: float | None = None,
        debounce_s: float | None = None,
    ):
        self.path = path
        self.events = events
        self.stop_event = stop
        self.interval_s = max(0.05, interval_s if interval_s is not None else settings.watch_interval_s)
        self.debounce_s = max(0.0, debounce_s if debounce_s is not None else settings.watch_debounce_s)
        self._handler = _ConfigFileHandler(path)
        self._observer: Observer | None = None
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        observer = Observer()
        # Watch the directory so the file can be replaced, not only rewritten.
        observer.schedule(self._handler, os.path.dirname(os.path.realpath(self.path)), recursive=False)
        observer.start()
        self._observer = observer
        self._thr = Thread(target=self._loop, name="consulsync-watch", daemon=True)
        self._thr.start()

    def join(self, timeout: float | None = None) -> None:
        if self._thr:
            self._thr.join(timeout)
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout)
            self._observer = None

    def _loop(self) -> None:
        while not self.stop_event.wait(self.interval_s):
            if self._handler.take_if_quiet(self.debounce_s):
                logger.info("Config file %s changed", self.path)
                self.events.put(CHANGED)
