"""
Cross-process change delivery.

Several processes (server workers, CLI tools) can open DocumentStores on the
same SQLite file. Local writes notify local listeners directly; this module
watches the database files with watchdog and asks the store to pull changes
committed elsewhere.
"""
import logging
import threading
import time
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .errors import TransientNetworkError
from .store import DocumentStore

logger = logging.getLogger(__name__)


class DbChangeHandler(FileSystemEventHandler):
    """Routes modifications of the database (or its WAL) to store.pull_changes()."""

    def __init__(self, store: DocumentStore, debounce_ms: int = 50):
        self.store = store
        self.debounce_ms = debounce_ms
        db = Path(store.db_path).resolve()
        self.watched = {str(db), f"{db}-wal"}
        self._last_pull = None
        self._trailing = None
        self._lock = threading.Lock()

    def on_any_event(self, fs_event):
        if fs_event.is_directory:
            return
        if str(Path(fs_event.src_path).resolve()) not in self.watched:
            return
        window = self.debounce_ms / 1000
        with self._lock:
            now = time.monotonic()
            if self._last_pull is not None and (now - self._last_pull) < window:
                # Events inside the window collapse into one pull at its end,
                # so the tail of a burst is never lost.
                if self._trailing is None:
                    self._trailing = threading.Timer(window - (now - self._last_pull), self._trailing_pull)
                    self._trailing.daemon = True
                    self._trailing.start()
                return
            self._last_pull = now
        self.pull()

    def _trailing_pull(self):
        with self._lock:
            self._trailing = None
            self._last_pull = time.monotonic()
        self.pull()

    def cancel(self) -> None:
        """Drop a pending end-of-window pull."""
        with self._lock:
            if self._trailing is not None:
                self._trailing.cancel()
                self._trailing = None

    def pull(self) -> int:
        try:
            return self.store.pull_changes()
        except TransientNetworkError as e:
            # The next file event retries the pull.
            logger.warning(f"Change pull failed: {e}")
            return 0


class DbChangeWatcher:
    """Observer lifecycle around DbChangeHandler."""

    def __init__(self, store: DocumentStore, debounce_ms: int = 50):
        self.store = store
        self.handler = DbChangeHandler(store, debounce_ms=debounce_ms)
        self._observer = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            return
        directory = str(Path(self.store.db_path).resolve().parent)
        observer = Observer()
        observer.schedule(self.handler, directory, recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info(f"Watching {directory} for changes from other processes")

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None
        self.handler.cancel()
