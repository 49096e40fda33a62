"""
SQLite persistent store for tasks, execution logs, Bark servers/devices and
notification records.

Every operation opens its own short-lived connection and runs through
with_retry so that "database is locked" contention under concurrent
writers is retried with capped exponential backoff instead of failing.
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, TypeVar

from barkcron.config import RetryConfig
from barkcron.errors import TaskNotFoundError, TransientStoreError
from barkcron.models import (
    RECORD_SUCCESS,
    TASK_ACTIVE,
    BarkDevice,
    BarkServer,
    ExecutionLog,
    NotificationRecord,
    Task,
    to_db,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_MESSAGES = (
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "cannot start a transaction within a transaction",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for store operations."""
    max_attempts: int = 15
    initial_delay_seconds: float = 0.01
    max_delay_seconds: float = 2.0
    backoff_multiplier: float = 2.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> 'RetryPolicy':
        return cls(
            max_attempts=config.max_attempts,
            initial_delay_seconds=config.initial_delay_seconds,
            max_delay_seconds=config.max_delay_seconds,
            backoff_multiplier=config.backoff_multiplier,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows the given (1-based) attempt."""
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)

    def is_retryable(self, error: Exception) -> bool:
        if not isinstance(error, sqlite3.OperationalError):
            return False
        message = str(error).lower()
        return any(m in message for m in RETRYABLE_MESSAGES)


def with_retry(policy: RetryPolicy, operation: Callable[[], T], description: str = "store operation") -> T:
    """
    Run operation, retrying contention errors according to policy.

    Non-retryable errors propagate immediately. When every attempt hits
    contention, TransientStoreError is raised from the last error.
    """
    last_error = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return operation()
        except sqlite3.OperationalError as e:
            if not policy.is_retryable(e):
                raise
            last_error = e
            if attempt == policy.max_attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{description} hit contention, retrying in {delay:.3f}s "
                f"(attempt {attempt}/{policy.max_attempts}): {e}"
            )
            time.sleep(delay)

    raise TransientStoreError(
        f"{description} failed after {policy.max_attempts} attempts: {last_error}"
    ) from last_error


SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT,
    script TEXT NOT NULL,
    cron_expr TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'inactive',
    bark_config TEXT,
    time_exclusion_config TEXT,
    last_run TEXT,
    next_run TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    start_time TEXT NOT NULL,
    end_time TEXT,
    duration INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    output TEXT,
    error TEXT,
    result TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bark_servers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    url TEXT NOT NULL,
    description TEXT,
    is_default INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bark_devices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    device_key TEXT NOT NULL,
    description TEXT,
    server_id INTEGER REFERENCES bark_servers(id) ON DELETE SET NULL,
    is_default INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bark_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL,
    device_key TEXT NOT NULL,
    fields TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    status TEXT NOT NULL,
    error_message TEXT,
    response_data TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_logs_task ON task_logs(task_id, start_time);
CREATE INDEX IF NOT EXISTS idx_logs_created ON task_logs(created_at);
CREATE INDEX IF NOT EXISTS idx_records_task ON bark_records(task_id, status, created_at);
CREATE INDEX IF NOT EXISTS idx_records_hash ON bark_records(content_hash, status);
CREATE INDEX IF NOT EXISTS idx_records_created ON bark_records(created_at);
"""


class Database:
    """Store facade; one connection per operation."""

    def __init__(self, path: str, retry: Optional[RetryConfig] = None, busy_timeout: float = 5.0):
        self.path = str(path)
        self.retry_policy = RetryPolicy.from_config(retry or RetryConfig())
        self.busy_timeout = busy_timeout

    def __repr__(self):
        return f"Database(path={self.path})"

    # ------------------------------------------------------------------
    # Connection plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        finally:
            conn.close()

    def _read(self, fn: Callable[[sqlite3.Connection], T], description: str) -> T:
        def operation():
            with self._connect() as conn:
                return fn(conn)
        return with_retry(self.retry_policy, operation, description)

    def _write(self, fn: Callable[[sqlite3.Connection], T], description: str) -> T:
        def operation():
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    result = fn(conn)
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
                return result
        return with_retry(self.retry_policy, operation, description)

    def init_schema(self):
        """Create the database file and tables if they don't exist."""
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        def create(conn):
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)

        self._read(create, "init schema")
        logger.info(f"Database ready at {self.path}")

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(self, task: Task) -> Task:
        now = utcnow()

        def insert(conn):
            cur = conn.execute(
                """INSERT INTO tasks (name, description, script, cron_expr, status,
                       bark_config, time_exclusion_config, last_run, next_run,
                       created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (task.name, task.description, task.script, task.cron_expr, task.status,
                 task.bark_config, task.time_exclusion_config, to_db(task.last_run),
                 to_db(task.next_run), to_db(now), to_db(now)),
            )
            return cur.lastrowid

        task.id = self._write(insert, "create task")
        task.created_at = now
        task.updated_at = now
        return task

    def get_task(self, task_id: int) -> Optional[Task]:
        row = self._read(
            lambda conn: conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone(),
            "get task",
        )
        return Task.from_row(row) if row else None

    def require_task(self, task_id: int) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(self, status: Optional[str] = None) -> List[Task]:
        def query(conn):
            if status:
                return conn.execute(
                    "SELECT * FROM tasks WHERE status = ? ORDER BY id", (status,)
                ).fetchall()
            return conn.execute("SELECT * FROM tasks ORDER BY id").fetchall()

        return [Task.from_row(r) for r in self._read(query, "list tasks")]

    def update_task(self, task: Task) -> Task:
        """Persist every user-editable field of an existing task."""
        now = utcnow()

        def update(conn):
            cur = conn.execute(
                """UPDATE tasks SET name = ?, description = ?, script = ?, cron_expr = ?,
                       status = ?, bark_config = ?, time_exclusion_config = ?, updated_at = ?
                   WHERE id = ?""",
                (task.name, task.description, task.script, task.cron_expr, task.status,
                 task.bark_config, task.time_exclusion_config, to_db(now), task.id),
            )
            return cur.rowcount

        if not self._write(update, "update task"):
            raise TaskNotFoundError(task.id)
        task.updated_at = now
        return task

    def set_task_status(self, task_id: int, status: str) -> Task:
        def update(conn):
            return conn.execute(
                "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
                (status, to_db(utcnow()), task_id),
            ).rowcount

        if not self._write(update, "set task status"):
            raise TaskNotFoundError(task_id)
        return self.require_task(task_id)

    def delete_task(self, task_id: int) -> bool:
        def delete(conn):
            conn.execute("DELETE FROM bark_records WHERE task_id = ?", (task_id,))
            return conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,)).rowcount

        return bool(self._write(delete, "delete task"))

    def active_task_ids(self, task_ids: Iterable[int]) -> Set[int]:
        """Subset of task_ids whose task still exists with status active."""
        ids = list(task_ids)
        if not ids:
            return set()
        placeholders = ",".join("?" for _ in ids)

        def query(conn):
            return conn.execute(
                f"SELECT id FROM tasks WHERE status = ? AND id IN ({placeholders})",
                [TASK_ACTIVE, *ids],
            ).fetchall()

        return {row['id'] for row in self._read(query, "query active tasks")}

    def update_run_times(self, task_id: int, last_run=None, next_run=None):
        """Update last_run and/or next_run; None leaves a column untouched."""
        sets, params = [], []
        if last_run is not None:
            sets.append("last_run = ?")
            params.append(to_db(last_run))
        if next_run is not None:
            sets.append("next_run = ?")
            params.append(to_db(next_run))
        if not sets:
            return
        params.append(task_id)

        self._write(
            lambda conn: conn.execute(f"UPDATE tasks SET {', '.join(sets)} WHERE id = ?", params),
            "update run times",
        )

    # ------------------------------------------------------------------
    # Execution logs
    # ------------------------------------------------------------------

    def create_log(self, log: ExecutionLog) -> ExecutionLog:
        now = utcnow()

        def insert(conn):
            cur = conn.execute(
                """INSERT INTO task_logs (task_id, start_time, end_time, duration, status,
                       output, error, result, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (log.task_id, to_db(log.start_time), to_db(log.end_time), log.duration,
                 log.status, log.output, log.error, _dump_result(log.result), to_db(now)),
            )
            return cur.lastrowid

        log.id = self._write(insert, "create execution log")
        log.created_at = now
        return log

    def finalize_log(self, log: ExecutionLog):
        self._write(
            lambda conn: conn.execute(
                """UPDATE task_logs SET end_time = ?, duration = ?, status = ?, output = ?,
                       error = ?, result = ?
                   WHERE id = ?""",
                (to_db(log.end_time), log.duration, log.status, log.output, log.error,
                 _dump_result(log.result), log.id),
            ),
            "finalize execution log",
        )

    def get_latest_log(self, task_id: int) -> Optional[ExecutionLog]:
        row = self._read(
            lambda conn: conn.execute(
                "SELECT * FROM task_logs WHERE task_id = ? ORDER BY start_time DESC, id DESC LIMIT 1",
                (task_id,),
            ).fetchone(),
            "get latest log",
        )
        return ExecutionLog.from_row(row) if row else None

    def list_logs(self, task_id: Optional[int] = None, limit: int = 20, offset: int = 0) -> List[ExecutionLog]:
        def query(conn):
            if task_id is not None:
                return conn.execute(
                    "SELECT * FROM task_logs WHERE task_id = ? ORDER BY start_time DESC, id DESC LIMIT ? OFFSET ?",
                    (task_id, limit, offset),
                ).fetchall()
            return conn.execute(
                "SELECT * FROM task_logs ORDER BY start_time DESC, id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()

        return [ExecutionLog.from_row(r) for r in self._read(query, "list logs")]

    def count_logs(self, task_id: Optional[int] = None) -> int:
        def query(conn):
            if task_id is not None:
                return conn.execute(
                    "SELECT COUNT(*) FROM task_logs WHERE task_id = ?", (task_id,)
                ).fetchone()[0]
            return conn.execute("SELECT COUNT(*) FROM task_logs").fetchone()[0]

        return self._read(query, "count logs")

    def evict_logs(self, cap: int, task_id: Optional[int] = None) -> int:
        """
        Delete the oldest logs beyond cap, per task when task_id is given.

        Count and delete happen in one write transaction so concurrent
        sweeps never delete more than the excess.
        """
        def evict(conn):
            if task_id is not None:
                total = conn.execute(
                    "SELECT COUNT(*) FROM task_logs WHERE task_id = ?", (task_id,)
                ).fetchone()[0]
                excess = total - cap
                if excess <= 0:
                    return 0
                return conn.execute(
                    """DELETE FROM task_logs WHERE id IN (
                           SELECT id FROM task_logs WHERE task_id = ?
                           ORDER BY created_at, id LIMIT ?)""",
                    (task_id, excess),
                ).rowcount

            total = conn.execute("SELECT COUNT(*) FROM task_logs").fetchone()[0]
            excess = total - cap
            if excess <= 0:
                return 0
            return conn.execute(
                """DELETE FROM task_logs WHERE id IN (
                       SELECT id FROM task_logs ORDER BY created_at, id LIMIT ?)""",
                (excess,),
            ).rowcount

        return self._write(evict, "evict logs")

    def log_stats(self) -> Dict[str, int]:
        def query(conn):
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM task_logs GROUP BY status"
            ).fetchall()
            return {row['status']: row['n'] for row in rows}

        stats = self._read(query, "log stats")
        stats['total'] = sum(stats.values())
        return stats

    # ------------------------------------------------------------------
    # Bark servers and devices
    # ------------------------------------------------------------------

    def create_server(self, server: BarkServer) -> BarkServer:
        def insert(conn):
            if server.is_default:
                conn.execute("UPDATE bark_servers SET is_default = 0")
            return conn.execute(
                """INSERT INTO bark_servers (name, url, description, is_default, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (server.name, server.url, server.description, int(server.is_default),
                 server.status, to_db(utcnow())),
            ).lastrowid

        server.id = self._write(insert, "create server")
        return server

    def get_server(self, server_id: int) -> Optional[BarkServer]:
        row = self._read(
            lambda conn: conn.execute(
                "SELECT * FROM bark_servers WHERE id = ?", (server_id,)
            ).fetchone(),
            "get server",
        )
        return BarkServer.from_row(row) if row else None

    def get_default_server(self) -> Optional[BarkServer]:
        """The active server flagged default, if any."""
        row = self._read(
            lambda conn: conn.execute(
                "SELECT * FROM bark_servers WHERE is_default = 1 AND status = ? ORDER BY id LIMIT 1",
                (TASK_ACTIVE,),
            ).fetchone(),
            "get default server",
        )
        return BarkServer.from_row(row) if row else None

    def list_servers(self) -> List[BarkServer]:
        rows = self._read(
            lambda conn: conn.execute("SELECT * FROM bark_servers ORDER BY id").fetchall(),
            "list servers",
        )
        return [BarkServer.from_row(r) for r in rows]

    def create_device(self, device: BarkDevice) -> BarkDevice:
        def insert(conn):
            if device.is_default:
                conn.execute("UPDATE bark_devices SET is_default = 0")
            return conn.execute(
                """INSERT INTO bark_devices (name, device_key, description, server_id,
                       is_default, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (device.name, device.device_key, device.description, device.server_id,
                 int(device.is_default), device.status, to_db(utcnow())),
            ).lastrowid

        device.id = self._write(insert, "create device")
        return device

    def get_active_devices(self, device_ids: Iterable[int]) -> List[BarkDevice]:
        ids = list(device_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = self._read(
            lambda conn: conn.execute(
                f"SELECT * FROM bark_devices WHERE status = ? AND id IN ({placeholders}) ORDER BY id",
                [TASK_ACTIVE, *ids],
            ).fetchall(),
            "get devices",
        )
        return [BarkDevice.from_row(r) for r in rows]

    def get_device_by_key(self, device_key: str) -> Optional[BarkDevice]:
        row = self._read(
            lambda conn: conn.execute(
                "SELECT * FROM bark_devices WHERE device_key = ? ORDER BY id LIMIT 1",
                (device_key,),
            ).fetchone(),
            "get device by key",
        )
        return BarkDevice.from_row(row) if row else None

    def list_devices(self) -> List[BarkDevice]:
        rows = self._read(
            lambda conn: conn.execute("SELECT * FROM bark_devices ORDER BY id").fetchall(),
            "list devices",
        )
        return [BarkDevice.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Notification records
    # ------------------------------------------------------------------

    def insert_record(self, record: NotificationRecord) -> NotificationRecord:
        if record.created_at is None:
            record.created_at = utcnow()

        record.id = self._write(
            lambda conn: conn.execute(
                """INSERT INTO bark_records (task_id, device_key, fields, content_hash, status,
                       error_message, response_data, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (record.task_id, record.device_key,
                 json.dumps(record.fields, ensure_ascii=False, sort_keys=True),
                 record.content_hash, record.status, record.error_message,
                 record.response_data, to_db(record.created_at)),
            ).lastrowid,
            "insert notification record",
        )
        return record

    def recent_success_hashes(self, task_id: int, limit: int) -> List[str]:
        """Fingerprints of the task's `limit` most recent successful records."""
        rows = self._read(
            lambda conn: conn.execute(
                """SELECT content_hash FROM bark_records
                   WHERE task_id = ? AND status = ?
                   ORDER BY created_at DESC, id DESC LIMIT ?""",
                (task_id, RECORD_SUCCESS, limit),
            ).fetchall(),
            "recent success hashes",
        )
        return [row['content_hash'] for row in rows]

    def success_hash_exists(self, content_hash: str, task_id: Optional[int] = None, since=None) -> bool:
        """Whether a successful record with this fingerprint exists, optionally scoped."""
        sql = "SELECT 1 FROM bark_records WHERE content_hash = ? AND status = ?"
        params = [content_hash, RECORD_SUCCESS]
        if task_id is not None:
            sql += " AND task_id = ?"
            params.append(task_id)
        if since is not None:
            sql += " AND created_at >= ?"
            params.append(to_db(since))
        sql += " LIMIT 1"

        row = self._read(lambda conn: conn.execute(sql, params).fetchone(), "hash lookup")
        return row is not None

    def count_records(self, task_id: Optional[int] = None) -> int:
        def query(conn):
            if task_id is not None:
                return conn.execute(
                    "SELECT COUNT(*) FROM bark_records WHERE task_id = ?", (task_id,)
                ).fetchone()[0]
            return conn.execute("SELECT COUNT(*) FROM bark_records").fetchone()[0]

        return self._read(query, "count records")

    def evict_records(self, cap: int) -> int:
        """Delete exactly the oldest records beyond cap, by creation order."""
        def evict(conn):
            total = conn.execute("SELECT COUNT(*) FROM bark_records").fetchone()[0]
            excess = total - cap
            if excess <= 0:
                return 0
            return conn.execute(
                """DELETE FROM bark_records WHERE id IN (
                       SELECT id FROM bark_records ORDER BY created_at, id LIMIT ?)""",
                (excess,),
            ).rowcount

        return self._write(evict, "evict records")

    def list_records(self, task_id: Optional[int] = None, limit: int = 20, offset: int = 0) -> List[NotificationRecord]:
        def query(conn):
            if task_id is not None:
                return conn.execute(
                    """SELECT * FROM bark_records WHERE task_id = ?
                       ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?""",
                    (task_id, limit, offset),
                ).fetchall()
            return conn.execute(
                "SELECT * FROM bark_records ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()

        return [NotificationRecord.from_row(r) for r in self._read(query, "list records")]

    def record_stats(self) -> Dict[str, int]:
        def query(conn):
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM bark_records GROUP BY status"
            ).fetchall()
            return {row['status']: row['n'] for row in rows}

        stats = self._read(query, "record stats")
        stats['total'] = sum(stats.values())
        return stats

    def delete_all_records(self) -> int:
        return self._write(
            lambda conn: conn.execute("DELETE FROM bark_records").rowcount,
            "delete all records",
        )


def _dump_result(result) -> Optional[str]:
    if result is None:
        return None
    return json.dumps(result, ensure_ascii=False)
