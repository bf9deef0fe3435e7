"""SQLite storage for jobs, records, scrape logs and exports."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterator, Sequence

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        source_id TEXT NOT NULL,
        created_at TEXT,
        updated_at TEXT,
        version INTEGER NOT NULL DEFAULT 0,
        payload TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_source ON jobs(source_id)",
    """
    CREATE TABLE IF NOT EXISTS records (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL,
        source_id TEXT,
        job_id TEXT,
        email_key TEXT,
        phone_key TEXT,
        content_hash TEXT,
        duplicate_of TEXT,
        quality_score REAL NOT NULL DEFAULT 0,
        created_at TEXT,
        version INTEGER NOT NULL DEFAULT 0,
        payload TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_records_email ON records(email_key)",
    "CREATE INDEX IF NOT EXISTS idx_records_phone ON records(phone_key)",
    "CREATE INDEX IF NOT EXISTS idx_records_hash ON records(content_hash)",
    "CREATE INDEX IF NOT EXISTS idx_records_status ON records(status)",
    "CREATE INDEX IF NOT EXISTS idx_records_source ON records(source_id)",
    """
    CREATE TABLE IF NOT EXISTS scrape_logs (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL,
        job_id TEXT NOT NULL,
        source_id TEXT,
        level TEXT NOT NULL,
        kind TEXT NOT NULL,
        created_at TEXT,
        payload TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_logs_job ON scrape_logs(job_id)",
    """
    CREATE TABLE IF NOT EXISTS exports (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        created_at TEXT,
        version INTEGER NOT NULL DEFAULT 0,
        payload TEXT NOT NULL
    )
    """,
)


class SQLiteManager:
    """Manage SQLite connections with basic schema guarantees.

    Connections are shared between threads; every statement runs under the
    manager lock so the single connection is never used concurrently.
    """

    def __init__(self) -> None:
        self._connections: Dict[Path, sqlite3.Connection] = {}
        self._lock = RLock()

    def connect(self, path: Path) -> sqlite3.Connection:
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if path not in self._connections:
                conn = sqlite3.connect(path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                self._connections[path] = conn
                self._ensure_schema(conn)
            return self._connections[path]

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        for statement in SCHEMA:
            conn.execute(statement)
        conn.commit()

    @contextmanager
    def transaction(self, path: Path) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside one atomic transaction."""

        conn = self.connect(path)
        with self._lock:
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    def query(self, path: Path, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        conn = self.connect(path)
        with self._lock:
            return conn.execute(sql, tuple(params)).fetchall()

    def reset(self, path: Path) -> None:
        with self._lock:
            if path in self._connections:
                self._connections[path].close()
                del self._connections[path]
        if path.exists():
            path.unlink()

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()


__all__ = ["SCHEMA", "SQLiteManager"]
