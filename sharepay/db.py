"""SQLite storage shared by the balance ledger and the settlement queue.

One durable file holds worker balances, payout records and the job
queue, so a balance lock and the job that settles it can be written in
a single transaction.
"""

from __future__ import annotations

import logging
import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import ConfigError, LedgerWriteConflict

_LOG = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def _env_int(name: str, default: int) -> int:
    raw = str(os.environ.get(name, "")).strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS meta (
      key TEXT PRIMARY KEY,
      value TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS workers (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      address TEXT NOT NULL UNIQUE,
      pending_amount INTEGER NOT NULL DEFAULT 0 CHECK (pending_amount >= 0),
      locked_amount INTEGER NOT NULL DEFAULT 0 CHECK (locked_amount >= 0),
      created_ts_ms INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS credits (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      worker_id INTEGER NOT NULL REFERENCES workers(id),
      amount INTEGER NOT NULL CHECK (amount > 0),
      source TEXT NOT NULL,
      created_ts_ms INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_credits_worker ON credits(worker_id);",
    """
    CREATE TABLE IF NOT EXISTS payouts (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      worker_id INTEGER NOT NULL REFERENCES workers(id),
      job_id TEXT,
      amount INTEGER NOT NULL CHECK (amount >= 0),
      status TEXT NOT NULL CHECK (status IN ('Pending', 'Success', 'Failed')),
      signature TEXT UNIQUE,
      reason TEXT,
      ambiguous INTEGER NOT NULL DEFAULT 0,
      expiry_ref INTEGER,
      created_ts_ms INTEGER NOT NULL,
      updated_ts_ms INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_payouts_worker ON payouts(worker_id, id);",
    "CREATE INDEX IF NOT EXISTS idx_payouts_job ON payouts(job_id);",
    """
    CREATE TABLE IF NOT EXISTS adjustments (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      worker_id INTEGER NOT NULL REFERENCES workers(id),
      payout_id INTEGER NOT NULL UNIQUE REFERENCES payouts(id),
      amount INTEGER NOT NULL,
      approved_by TEXT,
      reason TEXT NOT NULL,
      created_ts_ms INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS settlement_jobs (
      job_id TEXT PRIMARY KEY,
      worker_id INTEGER NOT NULL,
      envelope_json TEXT NOT NULL,
      status TEXT NOT NULL CHECK (status IN ('ready', 'leased', 'done', 'dead')),
      attempts INTEGER NOT NULL DEFAULT 0,
      available_ts_ms INTEGER NOT NULL,
      lease_owner TEXT,
      lease_expires_ts_ms INTEGER,
      last_error TEXT,
      created_ts_ms INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_ready ON settlement_jobs(status, available_ts_ms);",
    "CREATE INDEX IF NOT EXISTS idx_jobs_worker ON settlement_jobs(worker_id, status);",
)


class SqliteDB:
    """SQLite manager for ledger and queue state.

    Connections are never shared: every read and write opens its own, so
    the object is safe to use from a thread pool and from several worker
    processes at once.

    Writers use ``BEGIN IMMEDIATE``, which takes SQLite's single write
    lock up front. Every read-modify-write therefore runs serialized
    against all other writers; this is what makes balance locking
    exclusive per worker. Lock contention is retried with jittered
    backoff until a deadline, then surfaces as LedgerWriteConflict.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str) -> None:
        self.path = str(path)
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        connect_timeout_s = float(_env_int("SHP_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0
        con = sqlite3.connect(
            self.path,
            timeout=connect_timeout_s,
            isolation_level=None,  # we manage BEGIN/COMMIT ourselves
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row

        con.execute("PRAGMA journal_mode=WAL;")
        con.execute("PRAGMA synchronous=FULL;")
        con.execute("PRAGMA foreign_keys=ON;")
        busy_ms = max(0, _env_int("SHP_SQLITE_BUSY_TIMEOUT_MS", int(connect_timeout_s * 1000)))
        con.execute(f"PRAGMA busy_timeout={busy_ms};")
        return con

    def init_schema(self) -> None:
        if self._initialized:
            return
        with self.write_tx() as con:
            for stmt in _SCHEMA:
                con.execute(stmt)
            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute(
                    "INSERT INTO meta(key, value) VALUES('schema_version', ?);",
                    (str(self.SCHEMA_VERSION),),
                )
            elif int(row["value"]) != self.SCHEMA_VERSION:
                raise RuntimeError(
                    f"sqlite schema_version mismatch: have={row['value']} want={self.SCHEMA_VERSION}. "
                    "Refuse to start to avoid corrupting data."
                )
        self._initialized = True

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return "database is locked" in msg or "database is busy" in msg

    def _backoff(self, attempt: int) -> None:
        base_sleep = max(0.001, _env_int("SHP_SQLITE_WRITE_BACKOFF_BASE_MS", 5) / 1000.0)
        max_sleep = max(base_sleep, _env_int("SHP_SQLITE_WRITE_BACKOFF_MAX_MS", 250) / 1000.0)
        sleep_s = min(max_sleep, base_sleep * (2.0 ** min(attempt, 8)))
        time.sleep(sleep_s * (0.5 + random.random()))

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Open a serialized write transaction.

        Raises:
            LedgerWriteConflict: If the write lock (or the commit) cannot be
                obtained before SHP_SQLITE_WRITE_DEADLINE_MS elapses.
        """
        deadline_ms = max(250, _env_int("SHP_SQLITE_WRITE_DEADLINE_MS", 30_000))
        deadline_ts = now_ms() + deadline_ms

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if not self._is_locked_error(e):
                        raise
                    if now_ms() >= deadline_ts:
                        raise LedgerWriteConflict(f"write lock not acquired within {deadline_ms}ms") from e
                    self._backoff(attempt)
                    attempt += 1

            try:
                yield con

                c_attempt = 0
                while True:
                    try:
                        con.execute("COMMIT;")
                        break
                    except sqlite3.OperationalError as e:
                        if not self._is_locked_error(e):
                            raise
                        if now_ms() >= deadline_ts:
                            raise LedgerWriteConflict(f"commit not completed within {deadline_ms}ms") from e
                        self._backoff(c_attempt)
                        c_attempt += 1
            except BaseException:
                try:
                    con.execute("ROLLBACK;")
                except sqlite3.Error:
                    _LOG.warning("rollback failed path=%s", self.path, exc_info=True)
                raise
