"""
Job Store: one status record and one bounded log list per deployment id.

Both backends expire a deployment's record and its log list ``ttl`` seconds
after their last write and keep at most ``log_cap`` log entries, evicting
the oldest. Records are opaque JSON strings written whole.
"""

import itertools, os, sqlite3, threading, time
from collections import deque
from typing import Callable, Dict, List, Optional, Protocol, Tuple


class JobStore(Protocol):
    def put_status(self, deployment_id: str, record: str) -> None: ...
    def get_status(self, deployment_id: str) -> Optional[str]: ...
    def append_log(self, deployment_id: str, entry: str) -> None: ...
    def get_logs(self, deployment_id: str) -> List[str]: ...
    def list_ids(self) -> List[str]: ...
    def purge_expired(self) -> int: ...
    def ping(self) -> bool: ...


class MemoryJobStore:
    def __init__(self, ttl: int = 86400, log_cap: int = 100, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.log_cap = log_cap
        self._clock = clock
        self._lock = threading.Lock()
        self._writes = itertools.count()
        # id -> (record, write sequence, expires_at)
        self._status: Dict[str, Tuple[str, int, float]] = {}
        self._logs: Dict[str, Tuple[deque, float]] = {}

    def put_status(self, deployment_id, record):
        now = self._clock()
        with self._lock:
            self._status[deployment_id] = (record, next(self._writes), now + self.ttl)

    def get_status(self, deployment_id):
        with self._lock:
            item = self._status.get(deployment_id)
            if not item:
                return None
            if item[2] <= self._clock():
                del self._status[deployment_id]
                return None
            return item[0]

    def append_log(self, deployment_id, entry):
        with self._lock:
            item = self._logs.get(deployment_id)
            if item is None or item[1] <= self._clock():
                entries = deque(maxlen=self.log_cap)
            else:
                entries = item[0]
            entries.append(entry)
            self._logs[deployment_id] = (entries, self._clock() + self.ttl)

    def get_logs(self, deployment_id):
        with self._lock:
            item = self._logs.get(deployment_id)
            if not item:
                return []
            if item[1] <= self._clock():
                del self._logs[deployment_id]
                return []
            return list(item[0])

    def list_ids(self):
        self.purge_expired()
        with self._lock:
            # most recently written first
            return [k for k, _ in sorted(self._status.items(), key=lambda kv: kv[1][1], reverse=True)]

    def purge_expired(self):
        now = self._clock()
        removed = 0
        with self._lock:
            for k in [k for k, v in self._status.items() if v[2] <= now]:
                del self._status[k]
                removed += 1
            for k in [k for k, v in self._logs.items() if v[1] <= now]:
                del self._logs[k]
        return removed

    def ping(self):
        return True


_lock = threading.Lock()

SCHEMA = """
CREATE TABLE IF NOT EXISTS deployments (
  id TEXT PRIMARY KEY,
  record_json TEXT NOT NULL,
  updated_at REAL NOT NULL,
  expires_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS deployment_logs (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  deployment_id TEXT NOT NULL,
  entry_json TEXT NOT NULL,
  expires_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_deployment_logs_id ON deployment_logs(deployment_id, seq);
"""


class SqliteJobStore:
    def __init__(self, db_path: str, ttl: int = 86400, log_cap: int = 100, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self.ttl = ttl
        self.log_cap = log_cap
        self._clock = clock
        with _lock:
            self._connect().close()

    def _connect(self):
        parent = os.path.dirname(self.db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.executescript(SCHEMA)
        return conn

    def put_status(self, deployment_id, record):
        now = self._clock()
        with _lock:
            conn = self._connect()
            try:
                conn.execute(
                    "INSERT INTO deployments(id,record_json,updated_at,expires_at) VALUES(?,?,?,?) "
                    "ON CONFLICT(id) DO UPDATE SET record_json=excluded.record_json, "
                    "updated_at=excluded.updated_at, expires_at=excluded.expires_at",
                    (deployment_id, record, now, now + self.ttl),
                )
            finally:
                conn.close()

    def get_status(self, deployment_id):
        with _lock:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT record_json FROM deployments WHERE id=? AND expires_at>?",
                    (deployment_id, self._clock()),
                ).fetchone()
            finally:
                conn.close()
        return row[0] if row else None

    def append_log(self, deployment_id, entry):
        expires = self._clock() + self.ttl
        with _lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN")
                conn.execute(
                    "DELETE FROM deployment_logs WHERE deployment_id=? AND expires_at<=?",
                    (deployment_id, self._clock()),
                )
                conn.execute(
                    "INSERT INTO deployment_logs(deployment_id,entry_json,expires_at) VALUES(?,?,?)",
                    (deployment_id, entry, expires),
                )
                conn.execute(
                    "DELETE FROM deployment_logs WHERE deployment_id=? AND seq NOT IN "
                    "(SELECT seq FROM deployment_logs WHERE deployment_id=? ORDER BY seq DESC LIMIT ?)",
                    (deployment_id, deployment_id, self.log_cap),
                )
                # the whole list expires together, like a redis EXPIRE on the key
                conn.execute(
                    "UPDATE deployment_logs SET expires_at=? WHERE deployment_id=?",
                    (expires, deployment_id),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()

    def get_logs(self, deployment_id):
        with _lock:
            conn = self._connect()
            try:
                rows = conn.execute(
                    "SELECT entry_json FROM deployment_logs WHERE deployment_id=? AND expires_at>? ORDER BY seq",
                    (deployment_id, self._clock()),
                ).fetchall()
            finally:
                conn.close()
        return [r[0] for r in rows]

    def list_ids(self):
        with _lock:
            conn = self._connect()
            try:
                rows = conn.execute(
                    "SELECT id FROM deployments WHERE expires_at>? ORDER BY updated_at DESC",
                    (self._clock(),),
                ).fetchall()
            finally:
                conn.close()
        return [r[0] for r in rows]

    def purge_expired(self):
        now = self._clock()
        with _lock:
            conn = self._connect()
            try:
                cur = conn.execute("DELETE FROM deployments WHERE expires_at<=?", (now,))
                conn.execute("DELETE FROM deployment_logs WHERE expires_at<=?", (now,))
                return cur.rowcount
            finally:
                conn.close()

    def ping(self):
        try:
            with _lock:
                conn = self._connect()
                conn.execute("SELECT 1").fetchone()
                conn.close()
            return True
        except sqlite3.Error:
            return False


def create_store(settings) -> JobStore:
    if settings.store_backend == "memory":
        return MemoryJobStore(ttl=settings.status_ttl_seconds, log_cap=settings.log_cap)
    return SqliteJobStore(settings.db_path, ttl=settings.status_ttl_seconds, log_cap=settings.log_cap)
