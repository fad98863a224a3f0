from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .models import QueuedPing


logger = logging.getLogger("fleetwatch.queue")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS queue (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  payload_json TEXT NOT NULL,
  created_at TEXT NOT NULL
);
"""

DEFAULT_CAPACITY = 2000

_T = TypeVar("_T")

_CORRUPTION_MARKERS = (
    "database disk image is malformed",
    "malformed database schema",
    "file is not a database",
    "not a database",
    "database corrupt",
)
_DISK_FULL_MARKERS = ("database or disk is full",)

_ALLOWED_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}
_ALLOWED_SYNCHRONOUS = {"OFF", "NORMAL", "FULL", "EXTRA"}


@dataclass
class QueuedEntry:
    seq: int
    payload: Dict[str, Any]
    created_at: str


class OfflineQueue:
    """Ordered, capacity-bounded store of undelivered pings.

    Rows are kept oldest-first by `seq`. Appending past `capacity` evicts from
    the front. `drain` never removes anything; callers remove the prefix they
    confirmed with `remove_through`, so rows appended in between survive.
    """

    def __init__(
        self,
        path: str,
        *,
        capacity: int = DEFAULT_CAPACITY,
        journal_mode: str = "WAL",
        synchronous: str = "NORMAL",
        disk_full_eviction_batch: int = 50,
        recover_corruption: bool = True,
    ) -> None:
        self.path = Path(path)
        self.capacity = max(1, int(capacity))
        self.journal_mode = self._normalize_pragma(
            "journal_mode",
            journal_mode,
            allowed=_ALLOWED_JOURNAL_MODES,
            default="WAL",
        )
        self.synchronous = self._normalize_pragma(
            "synchronous",
            synchronous,
            allowed=_ALLOWED_SYNCHRONOUS,
            default="NORMAL",
        )
        self.disk_full_eviction_batch = max(1, int(disk_full_eviction_batch))
        self.recover_corruption = bool(recover_corruption)
        self.evictions_total = 0

        self._init_db(allow_recovery=True)

    @staticmethod
    def _normalize_pragma(name: str, value: str, *, allowed: set[str], default: str) -> str:
        candidate = (value or "").strip().upper()
        if candidate in allowed:
            return candidate
        logger.warning("invalid queue %s=%r; using %s", name, value, default)
        return default

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path))
        conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
        conn.execute(f"PRAGMA synchronous={self.synchronous}")
        return conn

    def _init_db(self, *, allow_recovery: bool) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with self._conn() as conn:
                conn.execute(SCHEMA_SQL)
                conn.commit()
        except sqlite3.DatabaseError as exc:
            if allow_recovery and self._is_corruption_error(exc) and self._recover_from_corruption():
                return
            raise

    @staticmethod
    def _is_corruption_error(exc: BaseException) -> bool:
        text = str(exc).strip().lower()
        return any(marker in text for marker in _CORRUPTION_MARKERS)

    @staticmethod
    def _is_disk_full_error(exc: BaseException) -> bool:
        text = str(exc).strip().lower()
        return any(marker in text for marker in _DISK_FULL_MARKERS)

    def _corrupt_backup_path(self, source: Path, *, stamp: str) -> Path:
        base = source.with_name(f"{source.name}.corrupt-{stamp}")
        if not base.exists():
            return base
        idx = 1
        while True:
            candidate = source.with_name(f"{source.name}.corrupt-{stamp}-{idx}")
            if not candidate.exists():
                return candidate
            idx += 1

    def _recover_from_corruption(self) -> bool:
        if not self.recover_corruption:
            return False

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        moved: list[Path] = []
        for source in (
            self.path,
            self.path.with_name(f"{self.path.name}-wal"),
            self.path.with_name(f"{self.path.name}-shm"),
        ):
            if not source.exists():
                continue
            target = self._corrupt_backup_path(source, stamp=stamp)
            try:
                source.replace(target)
            except OSError as exc:
                logger.error("failed to move corrupt queue file %s: %r", source, exc)
                return False
            moved.append(target)

        if moved:
            logger.warning("queue database was corrupt; moved aside: %s", ", ".join(str(p) for p in moved))

        try:
            self._init_db(allow_recovery=False)
        except sqlite3.Error as exc:
            logger.error("failed to reinitialize queue after corruption: %r", exc)
            return False
        return True

    def _run_db(self, fn: Callable[[sqlite3.Connection], _T], *, fallback: _T) -> _T:
        try:
            with self._conn() as conn:
                return fn(conn)
        except sqlite3.DatabaseError as exc:
            if self._is_corruption_error(exc) and self._recover_from_corruption():
                try:
                    with self._conn() as conn:
                        return fn(conn)
                except sqlite3.Error as retry_exc:
                    logger.error("queue operation failed after recovery: %r", retry_exc)
                    return fallback
            logger.error("queue database error: %r", exc)
            return fallback
        except sqlite3.Error as exc:
            logger.error("queue sqlite error: %r", exc)
            return fallback

    def _insert(self, conn: sqlite3.Connection, *, payload_json: str, created_at: str) -> None:
        conn.execute(
            "INSERT INTO queue(payload_json, created_at) VALUES(?,?)",
            (payload_json, created_at),
        )

    def _evict_oldest(self, conn: sqlite3.Connection, *, count: int) -> int:
        if count <= 0:
            return 0
        cur = conn.execute(
            "DELETE FROM queue WHERE seq IN (SELECT seq FROM queue ORDER BY seq ASC LIMIT ?)",
            (int(count),),
        )
        return int(cur.rowcount or 0)

    @staticmethod
    def _count(conn: sqlite3.Connection) -> int:
        (n,) = conn.execute("SELECT COUNT(*) FROM queue").fetchone()
        return int(n)

    def append(self, ping: QueuedPing) -> bool:
        """Persist one ping at the tail. Returns False if it could not be stored."""

        payload_json = json.dumps(ping.to_payload(), separators=(",", ":"))
        created_at = datetime.now(timezone.utc).isoformat()

        def _op(conn: sqlite3.Connection) -> bool:
            evicted = 0
            try:
                self._insert(conn, payload_json=payload_json, created_at=created_at)
            except sqlite3.OperationalError as exc:
                if not self._is_disk_full_error(exc):
                    raise

                conn.rollback()
                evicted = self._evict_oldest(conn, count=self.disk_full_eviction_batch)
                conn.commit()
                if evicted <= 0:
                    logger.error("disk full and queue empty; dropping ping for asset=%s", ping.asset_id)
                    return False
                try:
                    self._insert(conn, payload_json=payload_json, created_at=created_at)
                except sqlite3.OperationalError as retry_exc:
                    if self._is_disk_full_error(retry_exc):
                        logger.error(
                            "disk still full after evicting %s pings; dropping ping for asset=%s",
                            evicted,
                            ping.asset_id,
                        )
                        return False
                    raise

            overflow = self._count(conn) - self.capacity
            if overflow > 0:
                evicted += self._evict_oldest(conn, count=overflow)
            conn.commit()

            if evicted:
                self.evictions_total += evicted
                logger.warning("evicted %s oldest queued pings (capacity=%s)", evicted, self.capacity)
            return True

        return bool(self._run_db(_op, fallback=False))

    def drain(self, up_to: Optional[int] = None) -> List[QueuedEntry]:
        """Return the oldest entries (all of them when `up_to` is None) without removing them."""

        def _op(conn: sqlite3.Connection) -> List[QueuedEntry]:
            if up_to is None:
                rows = conn.execute(
                    "SELECT seq, payload_json, created_at FROM queue ORDER BY seq ASC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT seq, payload_json, created_at FROM queue ORDER BY seq ASC LIMIT ?",
                    (max(0, int(up_to)),),
                ).fetchall()

            out: List[QueuedEntry] = []
            unreadable: List[int] = []
            for seq, payload_json, created_at in rows:
                try:
                    payload = json.loads(payload_json)
                except json.JSONDecodeError:
                    payload = None
                if not isinstance(payload, dict):
                    unreadable.append(int(seq))
                    continue
                out.append(QueuedEntry(seq=int(seq), payload=payload, created_at=created_at))

            if unreadable:
                conn.executemany("DELETE FROM queue WHERE seq = ?", [(s,) for s in unreadable])
                conn.commit()
                logger.error("discarded %s unreadable queued pings", len(unreadable))
            return out

        return self._run_db(_op, fallback=[])

    def remove_through(self, seq: int) -> int:
        """Delete every entry with a sequence number <= `seq`. Returns rows removed."""

        def _op(conn: sqlite3.Connection) -> int:
            cur = conn.execute("DELETE FROM queue WHERE seq <= ?", (int(seq),))
            conn.commit()
            return int(cur.rowcount or 0)

        return int(self._run_db(_op, fallback=0))

    def clear(self) -> None:
        def _op(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM queue")
            conn.commit()

        self._run_db(_op, fallback=None)
        logger.info("offline queue cleared")

    def count(self) -> int:
        return int(self._run_db(self._count, fallback=0))

    def metrics(self) -> Dict[str, int]:
        return {
            "queue_depth": int(self.count()),
            "queue_capacity": int(self.capacity),
            "queue_evictions_total": int(self.evictions_total),
        }
