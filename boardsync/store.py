"""
Document store backend (SQLite).

Documents live at slash-separated paths ("boards/u1/columns/column-1");
a collection is the path minus its last segment. Provides:

  - point reads, merge/replace writes, create-if-absent, updates, deletes
  - ArrayUnion / ArrayRemove field transforms applied inside the write
    transaction (no read-modify-write race across writers)
  - atomic WriteBatch commits
  - document and collection snapshot listeners
  - a change feed so several stores sharing one file see each other's writes
"""
import json
import logging
import sqlite3
import threading
import time
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .errors import AlreadyExists, NotFound, TransientNetworkError

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "boardsync" / "board.db"


# ── Field transforms ─────────────────────────────────────────────────────────

class ArrayUnion:
    """Append values not already present in an array field."""

    def __init__(self, *values: Any):
        self.values = list(values)

    def apply(self, current: Any) -> list:
        result = list(current) if isinstance(current, list) else []
        for value in self.values:
            if value not in result:
                result.append(value)
        return result

    def __repr__(self):
        return f"ArrayUnion({', '.join(repr(v) for v in self.values)})"


class ArrayRemove:
    """Remove every occurrence of the given values from an array field."""

    def __init__(self, *values: Any):
        self.values = list(values)

    def apply(self, current: Any) -> list:
        if not isinstance(current, list):
            return []
        return [item for item in current if item not in self.values]

    def __repr__(self):
        return f"ArrayRemove({', '.join(repr(v) for v in self.values)})"


def _resolve(current: Any, value: Any) -> Any:
    if isinstance(value, (ArrayUnion, ArrayRemove)):
        return value.apply(current)
    return value


def merge_fields(existing: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow merge of `data` into `existing`, resolving field transforms."""
    merged = dict(existing)
    for key, value in data.items():
        merged[key] = _resolve(merged.get(key), value)
    return merged


# ── Paths ────────────────────────────────────────────────────────────────────

def split_path(path: str) -> List[str]:
    segments = str(path).strip("/").split("/")
    if not segments or any(not s for s in segments):
        raise ValueError(f"Invalid path: {path!r}")
    return segments


def is_document_path(path: str) -> bool:
    return len(split_path(path)) % 2 == 0


def parent_collection(path: str) -> Tuple[str, str]:
    """Split a document path into (collection path, document id)."""
    segments = split_path(path)
    if len(segments) % 2:
        raise ValueError(f"Not a document path: {path!r}")
    return "/".join(segments[:-1]), segments[-1]


def normalize_path(path: str) -> str:
    return "/".join(split_path(path))


def join_path(collection_path: str, doc_id: str) -> str:
    return "/".join(split_path(collection_path) + split_path(doc_id))


# ── Snapshots ────────────────────────────────────────────────────────────────

@dataclass
class DocumentSnapshot:
    """State of one document at delivery time. `data` is None when absent."""
    path: str
    id: str
    data: Optional[Dict[str, Any]] = None
    revision: int = 0
    update_time: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.data is not None

    def to_dict(self) -> Optional[Dict[str, Any]]:
        return dict(self.data) if self.data is not None else None


@dataclass
class QuerySnapshot:
    """All documents of one collection at delivery time."""
    collection: str
    documents: List[DocumentSnapshot] = field(default_factory=list)

    def __iter__(self) -> Iterator[DocumentSnapshot]:
        return iter(self.documents)

    def __len__(self) -> int:
        return len(self.documents)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {doc.id: dict(doc.data) for doc in self.documents if doc.data is not None}


class CancelToken:
    """Handle returned by subscribe(). Calling it stops delivery; repeat calls are no-ops."""

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self.cancelled = False

    def __call__(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        self._cancel()


# ── Dispatchers ──────────────────────────────────────────────────────────────

class ImmediateDispatcher:
    """Deliver snapshots on the writing thread right after commit."""

    def dispatch(self, delivery: Callable[[], None]) -> None:
        delivery()


class QueuedDispatcher:
    """
    Hold deliveries until drain() is called.

    Models store-side propagation latency: snapshots are captured at commit
    time and handed to listeners later, possibly after further writes.
    """

    def __init__(self):
        self._pending: deque = deque()

    def dispatch(self, delivery: Callable[[], None]) -> None:
        self._pending.append(delivery)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def drain(self) -> int:
        """Run queued deliveries (including ones queued while draining)."""
        count = 0
        while self._pending:
            delivery = self._pending.popleft()
            delivery()
            count += 1
        return count


# ── Store ────────────────────────────────────────────────────────────────────

def _connect(db_path: str, busy_timeout: float) -> sqlite3.Connection:
    """Open an autocommit connection in WAL mode; transactions are explicit."""
    conn = sqlite3.connect(db_path, timeout=busy_timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


@contextmanager
def _store_errors(action: str):
    """Map connectivity-class SQLite failures to TransientNetworkError."""
    try:
        yield
    except sqlite3.OperationalError as e:
        raise TransientNetworkError(f"{action} failed: {e}") from e


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class _Listener:
    path: str
    callback: Callable[[Any], None]
    is_collection: bool
    active: bool = True


@dataclass
class _Write:
    kind: str  # set | merge | create | update | delete
    path: str
    data: Optional[Dict[str, Any]] = None
    must_exist: bool = False


class WriteBatch:
    """Writes committed as one transaction: all apply or none are visible."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._writes: List[_Write] = []

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> "WriteBatch":
        self._writes.append(_Write("merge" if merge else "set", normalize_path(path), dict(data)))
        return self

    def create(self, path: str, data: Dict[str, Any]) -> "WriteBatch":
        self._writes.append(_Write("create", normalize_path(path), dict(data)))
        return self

    def update(self, path: str, data: Dict[str, Any]) -> "WriteBatch":
        self._writes.append(_Write("update", normalize_path(path), dict(data)))
        return self

    def delete(self, path: str, must_exist: bool = False) -> "WriteBatch":
        self._writes.append(_Write("delete", normalize_path(path), must_exist=must_exist))
        return self

    def __len__(self) -> int:
        return len(self._writes)

    def commit(self) -> List[str]:
        """Apply all writes atomically. Returns the paths that changed."""
        writes, self._writes = self._writes, []
        return self._store._commit(writes)


class DocumentStore:
    """SQLite-backed document store with snapshot listeners."""

    def __init__(
        self,
        db_path: str = None,
        dispatcher=None,
        busy_timeout: float = 5.0,
        origin: str = None,
        change_retention: float = 3600.0,
    ):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(DEFAULT_DB_PATH)
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self.dispatcher = dispatcher or ImmediateDispatcher()
        self.origin = origin or uuid.uuid4().hex
        self.change_retention = change_retention
        self._listeners: Dict[int, _Listener] = {}
        self._next_listener_id = 1
        self._lock = threading.RLock()
        self._init_schema()
        self._last_seq = self._register()

    def _init_schema(self):
        with _store_errors("init"):
            conn = _connect(self.db_path, self.busy_timeout)
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS documents (
                        path TEXT PRIMARY KEY,
                        collection TEXT NOT NULL,
                        doc_id TEXT NOT NULL,
                        data TEXT NOT NULL,       -- JSON object
                        revision INTEGER NOT NULL DEFAULT 1,
                        update_time TEXT NOT NULL
                    )
                """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS changes (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        path TEXT NOT NULL,
                        collection TEXT NOT NULL,
                        origin TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS readers (
                        origin TEXT PRIMARY KEY,
                        last_seq INTEGER NOT NULL,
                        seen_at REAL NOT NULL     -- unix time of the last pull
                    )
                """)
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection)"
                )
            finally:
                conn.close()

    def _register(self) -> int:
        """Record this store as a change reader, positioned at the current end of the feed."""
        with _store_errors("register"):
            conn = _connect(self.db_path, self.busy_timeout)
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute("SELECT MAX(seq) FROM changes").fetchone()
                    last_seq = row[0] or 0
                    conn.execute(
                        "INSERT OR REPLACE INTO readers (origin, last_seq, seen_at) VALUES (?, ?, ?)",
                        (self.origin, last_seq, time.time())
                    )
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
            finally:
                conn.close()
        return last_seq

    def close(self) -> None:
        """Stop reading the change feed; rows no longer wait for this store."""
        with _store_errors("close"):
            conn = _connect(self.db_path, self.busy_timeout)
            try:
                conn.execute("DELETE FROM readers WHERE origin = ?", (self.origin,))
            finally:
                conn.close()
        with self._lock:
            for listener in self._listeners.values():
                listener.active = False
            self._listeners.clear()

    # ── Reads ────────────────────────────────────────────────────────────────

    def get(self, path: str) -> DocumentSnapshot:
        """Point read. An absent document is a snapshot with data=None, not an error."""
        path = normalize_path(path)
        collection, doc_id = parent_collection(path)
        with _store_errors(f"get {path}"):
            conn = _connect(self.db_path, self.busy_timeout)
            try:
                row = conn.execute(
                    "SELECT data, revision, update_time FROM documents WHERE path = ?",
                    (path,)
                ).fetchone()
            finally:
                conn.close()
        if not row:
            return DocumentSnapshot(path=path, id=doc_id)
        return DocumentSnapshot(
            path=path,
            id=doc_id,
            data=json.loads(row["data"]),
            revision=row["revision"],
            update_time=row["update_time"],
        )

    def list(self, collection_path: str) -> QuerySnapshot:
        """All documents directly under a collection, ordered by id."""
        collection = normalize_path(collection_path)
        with _store_errors(f"list {collection}"):
            conn = _connect(self.db_path, self.busy_timeout)
            try:
                rows = conn.execute(
                    "SELECT path, doc_id, data, revision, update_time FROM documents "
                    "WHERE collection = ? ORDER BY doc_id",
                    (collection,)
                ).fetchall()
            finally:
                conn.close()
        return QuerySnapshot(
            collection=collection,
            documents=[
                DocumentSnapshot(
                    path=row["path"],
                    id=row["doc_id"],
                    data=json.loads(row["data"]),
                    revision=row["revision"],
                    update_time=row["update_time"],
                )
                for row in rows
            ],
        )

    def snapshot(self, path: str):
        """Document snapshot for a document path, query snapshot for a collection path."""
        if is_document_path(path):
            return self.get(path)
        return self.list(path)

    # ── Writes ───────────────────────────────────────────────────────────────

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        """Upsert. merge=True shallow-merges fields instead of replacing the document."""
        self.batch().set(path, data, merge=merge).commit()

    def create(self, path: str, data: Dict[str, Any]) -> None:
        """Insert a new document; AlreadyExists if one is present."""
        self.batch().create(path, data).commit()

    def update(self, path: str, data: Dict[str, Any]) -> None:
        """Merge into an existing document; NotFound if it is absent."""
        self.batch().update(path, data).commit()

    def delete(self, path: str, must_exist: bool = False) -> None:
        """Delete a document. Missing documents are a no-op unless must_exist."""
        self.batch().delete(path, must_exist=must_exist).commit()

    def _commit(self, writes: List[_Write]) -> List[str]:
        if not writes:
            return []
        changed: List[str] = []
        with _store_errors("commit"):
            conn = _connect(self.db_path, self.busy_timeout)
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    now = _utc_now()
                    for write in writes:
                        if self._apply(conn, write, now):
                            changed.append(write.path)
                    for path in changed:
                        collection, _ = parent_collection(path)
                        conn.execute(
                            "INSERT INTO changes (path, collection, origin, created_at) "
                            "VALUES (?, ?, ?, ?)",
                            (path, collection, self.origin, now)
                        )
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
            finally:
                conn.close()
        logger.debug(f"Committed {len(writes)} write(s), {len(changed)} changed")
        self._notify(changed)
        return changed

    def _apply(self, conn: sqlite3.Connection, write: _Write, now: str) -> bool:
        """Apply one write inside the open transaction. Returns True if the document changed."""
        collection, doc_id = parent_collection(write.path)
        row = conn.execute(
            "SELECT data, revision FROM documents WHERE path = ?",
            (write.path,)
        ).fetchone()
        existing = json.loads(row["data"]) if row else None

        if write.kind == "delete":
            if existing is None:
                if write.must_exist:
                    raise NotFound(write.path)
                return False
            conn.execute("DELETE FROM documents WHERE path = ?", (write.path,))
            return True

        if write.kind == "create" and existing is not None:
            raise AlreadyExists(write.path)
        if write.kind == "update" and existing is None:
            raise NotFound(write.path)

        if write.kind in ("merge", "update"):
            data = merge_fields(existing or {}, write.data)
        else:
            data = merge_fields({}, write.data)

        revision = (row["revision"] + 1) if row else 1
        conn.execute("""
            INSERT OR REPLACE INTO documents
            (path, collection, doc_id, data, revision, update_time)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (write.path, collection, doc_id, json.dumps(data), revision, now))
        return True

    # ── Listeners ────────────────────────────────────────────────────────────
    #
    # Snapshot reads and dispatches happen under self._lock, so every
    # listener receives snapshots in the order they were read, and a later
    # read never observes an older commit than an earlier one.

    def subscribe(self, path: str, callback: Callable[[Any], None]) -> CancelToken:
        """
        Register a snapshot listener on a document or collection path.

        The callback receives the current state once (through the dispatcher)
        and again after every change, local or pulled from other stores.
        """
        path = normalize_path(path)
        listener = _Listener(path=path, callback=callback, is_collection=not is_document_path(path))

        def cancel():
            listener.active = False
            with self._lock:
                self._listeners.pop(listener_id, None)

        with self._lock:
            listener_id = self._next_listener_id
            self._next_listener_id += 1
            self._listeners[listener_id] = listener
            token = CancelToken(cancel)
            try:
                self._dispatch(listener, self.snapshot(path))
            except TransientNetworkError:
                token()
                raise
        return token

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _dispatch(self, listener: _Listener, snapshot) -> None:
        self.dispatcher.dispatch(partial(self._deliver, listener, snapshot))

    def _deliver(self, listener: _Listener, snapshot) -> None:
        if not listener.active:
            return
        try:
            listener.callback(snapshot)
        except Exception:
            logger.exception(f"Snapshot listener on {listener.path} failed")

    def _notify(self, paths: List[str]) -> None:
        if not paths:
            return
        paths = list(dict.fromkeys(paths))
        collections = list(dict.fromkeys(parent_collection(p)[0] for p in paths))
        with self._lock:
            for listener in list(self._listeners.values()):
                if not listener.active:
                    continue
                if listener.is_collection:
                    if listener.path not in collections:
                        continue
                elif listener.path not in paths:
                    continue
                try:
                    snapshot = self.snapshot(listener.path)
                except TransientNetworkError as e:
                    # Next successful change delivery brings the listener up to date.
                    logger.warning(f"Skipping delivery to {listener.path}: {e}")
                    continue
                self._dispatch(listener, snapshot)

    # ── Change feed ──────────────────────────────────────────────────────────

    def pull_changes(self) -> int:
        """
        Deliver changes committed by other stores sharing this database.

        Returns the number of foreign changes found. Advances this store's
        reader position and prunes feed rows every live reader has seen.
        """
        with self._lock:
            with _store_errors("pull"):
                conn = _connect(self.db_path, self.busy_timeout)
                try:
                    rows = conn.execute(
                        "SELECT seq, path, origin FROM changes WHERE seq > ? ORDER BY seq",
                        (self._last_seq,)
                    ).fetchall()
                    if rows:
                        self._last_seq = rows[-1]["seq"]
                    try:
                        self._prune(conn)
                    except sqlite3.OperationalError as e:
                        # Rows stay until a later pull prunes them.
                        logger.warning(f"Change feed prune skipped: {e}")
                finally:
                    conn.close()
            foreign = [row["path"] for row in rows if row["origin"] != self.origin]
            if foreign:
                logger.debug(f"Pulled {len(foreign)} change(s) from other stores")
                self._notify(foreign)
            return len(foreign)

    def _prune(self, conn: sqlite3.Connection) -> None:
        """
        Record this store's position, forget readers idle past the retention
        window, and delete feed rows at or below the slowest live reader.
        """
        now = time.time()
        conn.execute("BEGIN IMMEDIATE")
        try:
            conn.execute(
                "INSERT OR REPLACE INTO readers (origin, last_seq, seen_at) VALUES (?, ?, ?)",
                (self.origin, self._last_seq, now)
            )
            stale = conn.execute(
                "DELETE FROM readers WHERE origin != ? AND seen_at < ?",
                (self.origin, now - self.change_retention)
            ).rowcount
            if stale:
                logger.info(f"Dropped {stale} idle change reader(s)")
            conn.execute(
                "DELETE FROM changes WHERE seq <= (SELECT MIN(last_seq) FROM readers)"
            )
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
