"""Remote document store protocol and implementations.

The synchronization engine only needs three operations from the shared
store: an upsert-merge ``write``, a ``read``, and a push ``subscribe`` that
delivers the *full* current document (not a diff) whenever it changes.

Two implementations ship with the package:
  - ``InMemoryDocumentStore``: synchronous delivery on write, so the echo of
    a session's own save arrives immediately. Used by tests and demos.
  - ``SQLiteDocumentStore``: WAL-mode database shared between processes,
    with polling delivery (same pattern as the signal bus it grew out of).
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from auditdrill.config import SimulatorConfig
from auditdrill.errors import PersistenceError, PersistenceTimeout

logger = logging.getLogger(__name__)

Document = dict[str, Any]
SnapshotCallback = Callable[[Document], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for the shared progress-document store."""

    def write(
        self,
        session_id: str,
        patch: Mapping[str, Any],
        force_overwrite: bool = False,
    ) -> None:
        """Upsert-merge ``patch`` into the session document.

        Top-level keys in ``patch`` replace the stored values. With
        ``force_overwrite`` the document is replaced entirely.

        Raises:
            PersistenceError: If the write is rejected.
            PersistenceTimeout: If the write exceeds the store's timeout.
        """
        ...

    def read(self, session_id: str) -> Document | None:
        """Return the current document, or None if it does not exist."""
        ...

    def subscribe(
        self,
        session_id: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        """Register for full-document pushes. Returns an unsubscribe function."""
        ...

    def close(self) -> None:
        """Release resources."""
        ...


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _SubscriberEntry:
    """Internal subscriber entry.

    Attributes:
        session_id: Document the subscriber listens to.
        on_snapshot: Called with a deep copy of the document.
        on_error: Called with delivery errors, if set.
        active: Cleared by unsubscribe; inactive entries are never called.
        seen_version: Last document version delivered (polling stores).
    """

    __slots__ = ("session_id", "on_snapshot", "on_error", "active", "seen_version")

    def __init__(
        self,
        session_id: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None,
    ) -> None:
        self.session_id = session_id
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True
        self.seen_version = 0


class _SubscriberRegistry:
    """Thread-safe subscriber bookkeeping shared by both stores."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, list[_SubscriberEntry]] = {}

    def add(self, entry: _SubscriberEntry) -> Unsubscribe:
        with self._lock:
            self._entries.setdefault(entry.session_id, []).append(entry)

        def _unsubscribe() -> None:
            entry.active = False
            with self._lock:
                entries = self._entries.get(entry.session_id, [])
                if entry in entries:
                    entries.remove(entry)
            logger.debug("Unsubscribed from %s", entry.session_id)

        return _unsubscribe

    def for_session(self, session_id: str) -> list[_SubscriberEntry]:
        with self._lock:
            return list(self._entries.get(session_id, []))

    def all(self) -> list[_SubscriberEntry]:
        with self._lock:
            return [entry for entries in self._entries.values() for entry in entries]


def _deliver(entry: _SubscriberEntry, document: Document) -> None:
    """Hand a document to one subscriber, containing callback failures."""
    if not entry.active:
        return
    try:
        entry.on_snapshot(copy.deepcopy(document))
    except Exception:
        logger.exception("Error in snapshot subscriber for %s", entry.session_id)


def _deliver_error(entry: _SubscriberEntry, error: Exception) -> None:
    if not entry.active or entry.on_error is None:
        return
    try:
        entry.on_error(error)
    except Exception:
        logger.exception("Error in error subscriber for %s", entry.session_id)


def _merge(existing: Document | None, patch: Mapping[str, Any], force_overwrite: bool) -> Document:
    base: Document = {} if force_overwrite or existing is None else dict(existing)
    base.update(copy.deepcopy(dict(patch)))
    base["updated_at"] = _utc_now_iso()
    return base


class InMemoryDocumentStore:
    """Process-local document store with synchronous push delivery.

    Args:
        auto_deliver: If True, subscribers are notified inside ``write``.
            If False, notifications queue up until ``deliver_pending``,
            which lets tests control when an echo arrives.
    """

    def __init__(self, auto_deliver: bool = True) -> None:
        self._docs: dict[str, Document] = {}
        self._lock = threading.Lock()
        self._subscribers = _SubscriberRegistry()
        self._auto_deliver = auto_deliver
        self._pending: list[str] = []
        self.write_count = 0

    def write(
        self,
        session_id: str,
        patch: Mapping[str, Any],
        force_overwrite: bool = False,
    ) -> None:
        """Upsert-merge a patch and notify subscribers."""
        if not session_id:
            raise PersistenceError("session_id is required", session_id)
        with self._lock:
            self._docs[session_id] = _merge(self._docs.get(session_id), patch, force_overwrite)
            self.write_count += 1
        logger.debug("Stored document %s (force=%s)", session_id, force_overwrite)
        if self._auto_deliver:
            self._notify(session_id)
        else:
            self._pending.append(session_id)

    def read(self, session_id: str) -> Document | None:
        with self._lock:
            doc = self._docs.get(session_id)
            return copy.deepcopy(doc) if doc is not None else None

    def subscribe(
        self,
        session_id: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        """Subscribe and receive the current document immediately, if any."""
        entry = _SubscriberEntry(session_id, on_snapshot, on_error)
        unsubscribe = self._subscribers.add(entry)
        current = self.read(session_id)
        if current is not None:
            _deliver(entry, current)
        return unsubscribe

    def push(self, session_id: str, document: Mapping[str, Any]) -> None:
        """Replace a document as another writer would, and notify."""
        with self._lock:
            self._docs[session_id] = copy.deepcopy(dict(document))
        self._notify(session_id)

    def fail_subscribers(self, session_id: str, error: Exception) -> None:
        """Report a channel error to every subscriber of a session."""
        for entry in self._subscribers.for_session(session_id):
            _deliver_error(entry, error)

    def deliver_pending(self) -> int:
        """Flush queued notifications. Returns how many were delivered."""
        pending, self._pending = self._pending, []
        for session_id in pending:
            self._notify(session_id)
        return len(pending)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.for_session(session_id))

    def close(self) -> None:
        """No-op for the in-memory store."""

    def _notify(self, session_id: str) -> None:
        document = self.read(session_id)
        if document is None:
            return
        for entry in self._subscribers.for_session(session_id):
            _deliver(entry, document)


_SCHEMA = """\
CREATE TABLE IF NOT EXISTS progress_documents (
    session_id TEXT PRIMARY KEY,
    document_json TEXT NOT NULL,
    version INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class SQLiteDocumentStore:
    """Document store backed by SQLite for cross-process sessions.

    Uses WAL mode for concurrent reads and ``check_same_thread=False``
    for thread-safe access. The connection's busy timeout doubles as the
    write timeout: a write blocked longer than that fails with
    ``PersistenceTimeout`` instead of hanging.

    Subscribers are served by polling. ``poll_once`` compares each
    subscriber's last delivered version against the stored version.
    ``start_polling`` runs that in a background thread; pass a
    ``dispatcher`` such as ``loop.call_soon_threadsafe`` to hop deliveries
    back onto an event loop. Sessions created with ``ExerciseSession.open``
    already hop their own callbacks onto their loop.

    Args:
        db_path: Path to SQLite database file, or ":memory:" for in-memory.
        write_timeout: Seconds a write may wait for the database lock.
        poll_interval: Seconds between background polling cycles.
        dispatcher: Runs a zero-argument delivery function. Defaults to
            calling it directly.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        write_timeout: float = 10.0,
        poll_interval: float = 0.5,
        dispatcher: Callable[[Callable[[], None]], Any] | None = None,
    ) -> None:
        self._db_path = db_path
        self._write_timeout = write_timeout
        self._conn = sqlite3.connect(db_path, timeout=write_timeout, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        self._lock = threading.Lock()
        self._subscribers = _SubscriberRegistry()
        self._poll_interval = poll_interval
        self._dispatcher = dispatcher or (lambda fn: fn())
        self._polling = False
        self._poll_thread: threading.Thread | None = None

    @classmethod
    def from_config(cls, config: SimulatorConfig, **kwargs: Any) -> SQLiteDocumentStore:
        """Store at ``config.db_path`` with ``config.write_timeout_seconds`` as busy timeout."""
        return cls(config.db_path, write_timeout=config.write_timeout_seconds, **kwargs)

    @property
    def write_timeout(self) -> float:
        return self._write_timeout

    def write(
        self,
        session_id: str,
        patch: Mapping[str, Any],
        force_overwrite: bool = False,
    ) -> None:
        """Upsert-merge a patch inside a single transaction."""
        if not session_id:
            raise PersistenceError("session_id is required", session_id)
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT document_json, version FROM progress_documents WHERE session_id = ?",
                    (session_id,),
                ).fetchone()
                existing = json.loads(row["document_json"]) if row else None
                version = (row["version"] if row else 0) + 1
                document = _merge(existing, patch, force_overwrite)
                self._conn.execute(
                    "INSERT OR REPLACE INTO progress_documents "
                    "(session_id, document_json, version, updated_at) VALUES (?, ?, ?, ?)",
                    (session_id, json.dumps(document), version, document["updated_at"]),
                )
                self._conn.commit()
        except sqlite3.OperationalError as exc:
            self._conn.rollback()
            if "locked" in str(exc) or "busy" in str(exc):
                raise PersistenceTimeout(f"write timed out: {exc}", session_id) from exc
            raise PersistenceError(f"write failed: {exc}", session_id) from exc
        except (sqlite3.Error, TypeError, ValueError) as exc:
            self._conn.rollback()
            raise PersistenceError(f"write failed: {exc}", session_id) from exc
        logger.debug("Stored document %s v%d (force=%s)", session_id, version, force_overwrite)

    def read(self, session_id: str) -> Document | None:
        row = self._read_row(session_id)
        return json.loads(row["document_json"]) if row else None

    def version(self, session_id: str) -> int:
        row = self._read_row(session_id)
        return row["version"] if row else 0

    def subscribe(
        self,
        session_id: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        """Register a subscriber; the current document arrives on the next poll."""
        entry = _SubscriberEntry(session_id, on_snapshot, on_error)
        logger.debug("Subscribed to %s", session_id)
        return self._subscribers.add(entry)

    def poll_once(self) -> int:
        """Deliver changed documents to subscribers. Returns deliveries made."""
        delivered = 0
        for entry in self._subscribers.all():
            if not entry.active:
                continue
            try:
                row = self._read_row(entry.session_id)
            except sqlite3.Error as exc:
                self._dispatcher(lambda e=entry, x=exc: _deliver_error(e, PersistenceError(str(x))))
                continue
            if row is None or row["version"] <= entry.seen_version:
                continue
            entry.seen_version = row["version"]
            document = json.loads(row["document_json"])
            self._dispatcher(lambda e=entry, d=document: _deliver(e, d))
            delivered += 1
        return delivered

    def start_polling(self) -> None:
        """Start the background polling thread.

        Raises:
            RuntimeError: If polling is already active.
        """
        if self._polling:
            raise RuntimeError("Polling is already active")
        self._polling = True
        self._poll_thread = threading.Thread(
            target=self._poll_loop, daemon=True, name="document-store-poll"
        )
        self._poll_thread.start()
        logger.info("Document store polling started (interval=%.2fs)", self._poll_interval)

    def stop_polling(self) -> None:
        """Stop the background polling thread."""
        self._polling = False
        if self._poll_thread is not None:
            self._poll_thread.join(timeout=self._poll_interval * 2)
            self._poll_thread = None
        logger.info("Document store polling stopped")

    @property
    def is_polling(self) -> bool:
        return self._polling

    def close(self) -> None:
        """Stop polling and close the database connection."""
        if self._polling:
            self.stop_polling()
        self._conn.close()

    def _read_row(self, session_id: str) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(
                "SELECT document_json, version FROM progress_documents WHERE session_id = ?",
                (session_id,),
            ).fetchone()

    def _poll_loop(self) -> None:
        while self._polling:
            try:
                self.poll_once()
            except Exception:
                logger.exception("Error during document store poll cycle")
            time.sleep(self._poll_interval)
