"""
Local Index: durable record of authored and loaded content, plus the
in-memory cache of bundles currently joined to the swarm.

Durable records live in SQLite under keys `<namespace>-<kind>-<id>`:
- namespace "seed": content this node authored (signs for it)
- namespace "load": foreign content this node fetched
- kind: "address", "infohash" or "message"

Values are msgpack-packed dicts holding the content entry (storage dir,
descriptor options, infohash) and, for pointer entries, the latest
signed record fields.

Key Features:
- Ordered prefix scans for listing, keep-alive sweeps and orphan cleanup
- Single-transaction retire+commit for superseding an entry
- WAL mode, RLock-guarded connections
"""

import asyncio
import logging
import sqlite3
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from threading import RLock
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import msgpack

from btpk.core.errors import InvalidArgument
from btpk.core.record_codec import PointerRecord
from btpk.core.states import ContentState
from btpk.p2p.swarm import SwarmHandle

logger = logging.getLogger(__name__)


SEED = "seed"
LOAD = "load"
NAMESPACES = (SEED, LOAD)
KINDS = ("address", "infohash", "message")

IndexKey = Tuple[str, str, str]  # (namespace, kind, id)


def index_key(namespace: str, kind: str, logical_id: str) -> str:
    """Durable key for (namespace, kind, id)."""
    if namespace not in NAMESPACES:
        raise InvalidArgument(f"unknown namespace: {namespace!r}")
    if kind not in KINDS:
        raise InvalidArgument(f"unknown kind: {kind!r}")
    return f"{namespace}-{kind}-{logical_id}"


class LocalIndex:
    """
    Durable namespaced key-value index backed by SQLite.

    Provides get/put/delete by (namespace, kind, id), ordered prefix
    scans, and atomic replacement of one entry by another.
    """

    def __init__(self, db_path: Path, enable_wal: bool = True):
        """
        Initialize local index.

        Args:
            db_path: Path to SQLite database file
            enable_wal: Enable Write-Ahead Logging for better concurrency
        """
        self.db_path = str(db_path)
        self._lock = RLock()
        self._init_db(enable_wal)

    def _init_db(self, enable_wal: bool) -> None:
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                if enable_wal:
                    conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS entries (
                        key TEXT PRIMARY KEY,
                        value BLOB NOT NULL
                    )
                """)
                conn.commit()
            finally:
                conn.close()

        logger.info(f"Initialized local index at {self.db_path}")

    def get(self, namespace: str, kind: str, logical_id: str) -> Optional[Dict[str, Any]]:
        """Entry value, or None if absent."""
        key = index_key(namespace, kind, logical_id)
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                row = conn.execute("SELECT value FROM entries WHERE key = ?", (key,)).fetchone()
            finally:
                conn.close()

        if not row:
            return None
        return msgpack.unpackb(row[0], raw=False)

    def put(self, namespace: str, kind: str, logical_id: str, value: Dict[str, Any]) -> None:
        """Insert or overwrite an entry."""
        self.replace(None, (namespace, kind, logical_id), value)

    def delete(self, namespace: str, kind: str, logical_id: str) -> bool:
        """
        Delete an entry.

        Returns:
            True if an entry was removed
        """
        key = index_key(namespace, kind, logical_id)
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                cursor = conn.execute("DELETE FROM entries WHERE key = ?", (key,))
                conn.commit()
                removed = cursor.rowcount > 0
            finally:
                conn.close()

        if removed:
            logger.debug(f"Deleted index entry {key[:40]}")
        return removed

    def replace(self, retire: Optional[IndexKey], commit: IndexKey, value: Dict[str, Any]) -> None:
        """
        Retire one entry and write another in a single transaction.

        Args:
            retire: (namespace, kind, id) to delete, or None
            commit: (namespace, kind, id) to write
            value: Value for the committed entry
        """
        new_key = index_key(*commit)
        old_key = index_key(*retire) if retire else None
        packed = msgpack.packb(value, use_bin_type=True)

        with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                with conn:
                    if old_key and old_key != new_key:
                        conn.execute("DELETE FROM entries WHERE key = ?", (old_key,))
                    conn.execute(
                        "INSERT OR REPLACE INTO entries (key, value) VALUES (?, ?)",
                        (new_key, packed)
                    )
            finally:
                conn.close()

        logger.debug(f"Committed index entry {new_key[:40]}")

    def scan(self, namespace: str, kind: str) -> List[Tuple[str, Dict[str, Any]]]:
        """
        All (id, value) pairs under a namespace and kind, ordered by id.
        """
        prefix = index_key(namespace, kind, "")
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                rows = conn.execute(
                    "SELECT key, value FROM entries WHERE key >= ? AND key < ? ORDER BY key ASC",
                    (prefix, prefix + "\uffff")
                ).fetchall()
            finally:
                conn.close()

        return [(key[len(prefix):], msgpack.unpackb(value, raw=False)) for key, value in rows]

    def scan_namespace(self, namespace: str) -> List[Tuple[str, str, Dict[str, Any]]]:
        """All (kind, id, value) triples of a namespace."""
        return [
            (kind, logical_id, value)
            for kind in KINDS
            for logical_id, value in self.scan(namespace, kind)
        ]

    def count(self) -> int:
        with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                return conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]
            finally:
                conn.close()


@dataclass
class ActiveHandle:
    """A content entry while it is joined to the swarm (never persisted)."""

    logical_id: str
    kind: str
    own: bool
    folder: Path
    handle: SwarmHandle
    record: Optional[PointerRecord] = None

    @property
    def done(self) -> bool:
        return self.handle.done

    @property
    def files(self):
        return self.handle.files

    @property
    def infohash(self) -> str:
        return self.handle.infohash


class ActiveHandleCache:
    """
    In-memory registry of joined bundles, keyed by logical id.

    The cache also serializes work per logical id: an in-flight load is
    shared by every caller asking for the same id, and mutations hold a
    per-id claim for their whole duration.
    """

    def __init__(self):
        self._handles: Dict[str, ActiveHandle] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._claims: Dict[str, int] = defaultdict(int)
        self._owners: Dict[str, asyncio.Task] = {}
        self._states: Dict[str, ContentState] = {}
        self._lock = RLock()

    def get(self, logical_id: str) -> Optional[ActiveHandle]:
        with self._lock:
            return self._handles.get(logical_id)

    def put(self, active: ActiveHandle) -> None:
        with self._lock:
            self._handles[active.logical_id] = active
            self._states[active.logical_id] = ContentState.ACTIVE

    def pop(self, logical_id: str) -> Optional[ActiveHandle]:
        with self._lock:
            return self._handles.pop(logical_id, None)

    def active_handles(self) -> List[ActiveHandle]:
        with self._lock:
            return list(self._handles.values())

    def is_busy(self, logical_id: str) -> bool:
        """True while a load or mutation for the id is in flight."""
        with self._lock:
            return logical_id in self._pending or self._claims.get(logical_id, 0) > 0

    def state_of(self, logical_id: str) -> ContentState:
        with self._lock:
            return self._states.get(logical_id, ContentState.ABSENT)

    def set_state(self, logical_id: str, state: ContentState) -> None:
        with self._lock:
            if state is ContentState.ABSENT:
                self._states.pop(logical_id, None)
            else:
                self._states[logical_id] = state

    async def coalesce(
        self,
        logical_id: str,
        factory: Callable[[], Awaitable[ActiveHandle]]
    ) -> ActiveHandle:
        """
        Run factory once per id; concurrent callers share its result.

        A caller that stops waiting does not cancel the shared task; the
        last caller to give up stops it through detach().
        """
        with self._lock:
            task = self._pending.get(logical_id)
            if task is None:
                task = asyncio.ensure_future(self._run(logical_id, factory))
                self._pending[logical_id] = task
            else:
                logger.debug(f"Joining in-flight load of {logical_id[:16]}...")

        return await asyncio.shield(task)

    def pending(self, logical_id: str) -> Optional[asyncio.Future]:
        """In-flight shared load for the id, if any."""
        with self._lock:
            return self._pending.get(logical_id)

    def cancel_pending(self) -> List[asyncio.Future]:
        """Cancel every in-flight load (used on shutdown)."""
        with self._lock:
            tasks = list(self._pending.values())
        for task in tasks:
            task.cancel()
        return tasks

    def detach(self, logical_id: str) -> Optional[asyncio.Future]:
        """
        Cancel the in-flight load for an id and forget it.

        A later coalesce() for the id starts a fresh load instead of
        joining the cancelled one.

        Returns:
            The cancelled task (await it to let its cleanup finish), or None
        """
        with self._lock:
            task = self._pending.pop(logical_id, None)
        if task is not None:
            task.cancel()
            logger.debug(f"Cancelled in-flight load of {logical_id[:16]}...")
        return task

    async def _run(self, logical_id: str, factory: Callable[[], Awaitable[ActiveHandle]]) -> ActiveHandle:
        try:
            active = await factory()
            self.put(active)
            return active
        finally:
            with self._lock:
                if self._pending.get(logical_id) is asyncio.current_task():
                    del self._pending[logical_id]

    @asynccontextmanager
    async def claim(self, logical_id: str):
        """
        Hold the per-id lock for the duration of a mutation.

        Re-entrant within one task: a mutation that already holds the id
        can claim it again without waiting on itself.
        """
        task = asyncio.current_task()
        with self._lock:
            lock = self._locks.setdefault(logical_id, asyncio.Lock())
            self._claims[logical_id] += 1
            nested = self._owners.get(logical_id) is task
        try:
            if nested:
                yield
            else:
                async with lock:
                    self._owners[logical_id] = task
                    try:
                        yield
                    finally:
                        self._owners.pop(logical_id, None)
        finally:
            with self._lock:
                self._claims[logical_id] -= 1
                if self._claims[logical_id] <= 0:
                    del self._claims[logical_id]
                    self._locks.pop(logical_id, None)
