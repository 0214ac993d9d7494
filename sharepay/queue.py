"""Durable settlement job queue in the shared SQLite database.

Delivery is at-least-once: a claimed job is leased to one consumer and
comes back to ``ready`` if the lease expires before ``ack``. A worker
never has more than one job leased at a time, which keeps two payouts
for the same worker from running concurrently across all consumers.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

from .db import SqliteDB, now_ms
from .errors import JobError
from .jobs import validate_job
from .ledger import record_failure_in

_LOG = logging.getLogger(__name__)


def _has_pending_payout(con: sqlite3.Connection, job_id: str) -> bool:
    row = con.execute(
        "SELECT 1 FROM payouts WHERE job_id=? AND status='Pending' LIMIT 1;", (job_id,)
    ).fetchone()
    return row is not None


@dataclass(frozen=True)
class ClaimedJob:
    job_id: str
    worker_id: int
    envelope: dict
    attempts: int


class SettlementQueue:
    def __init__(self, db: SqliteDB, lease_seconds: float = 300.0, max_attempts: int = 10):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.db = db
        self.lease_ms = int(lease_seconds * 1000)
        self.max_attempts = max_attempts
        self.db.init_schema()

    def enqueue(self, envelope: dict) -> bool:
        """Add a job. Returns False if the job id is already queued."""
        with self.db.write_tx() as con:
            return self.enqueue_in(con, envelope)

    def enqueue_in(self, con: sqlite3.Connection, envelope: dict) -> bool:
        """Enqueue inside an already open write transaction."""
        payload = validate_job(envelope)
        ts = now_ms()
        cur = con.execute(
            """
            INSERT OR IGNORE INTO settlement_jobs(job_id, worker_id, envelope_json, status,
                                                  available_ts_ms, created_ts_ms)
            VALUES(?, ?, ?, 'ready', ?, ?);
            """,
            (
                envelope["object_id"],
                payload["worker_id"],
                json.dumps(envelope, sort_keys=True, separators=(",", ":")),
                ts,
                ts,
            ),
        )
        added = cur.rowcount == 1
        if added:
            _LOG.info("enqueued job=%s worker=%s", envelope["object_id"], payload["worker_id"])
        return added

    def claim(self, consumer: str) -> Optional[ClaimedJob]:
        """Lease the oldest deliverable job, or return None.

        Expired leases are returned to ready first. Jobs for a worker that
        already has a leased job are skipped. A job delivered more than
        max_attempts times is dead-lettered instead of returned, with a
        Failed payout written for it if it has no payout yet. A job whose
        payout is still Pending is never dead-lettered: its transfer may be
        on chain, so it keeps being delivered until the worker resolves it.
        """
        while True:
            with self.db.write_tx() as con:
                ts = now_ms()
                expired = con.execute(
                    """
                    UPDATE settlement_jobs
                    SET status='ready', lease_owner=NULL, lease_expires_ts_ms=NULL,
                        last_error='lease expired'
                    WHERE status='leased' AND lease_expires_ts_ms <= ?;
                    """,
                    (ts,),
                ).rowcount
                if expired:
                    _LOG.warning("requeued %s job(s) with expired leases", expired)

                row = con.execute(
                    """
                    SELECT job_id, worker_id, envelope_json, attempts, last_error FROM settlement_jobs
                    WHERE status='ready' AND available_ts_ms <= ?
                      AND worker_id NOT IN (
                        SELECT worker_id FROM settlement_jobs WHERE status='leased'
                      )
                    ORDER BY available_ts_ms, rowid
                    LIMIT 1;
                    """,
                    (ts,),
                ).fetchone()
                if row is None:
                    return None

                attempts = int(row["attempts"]) + 1
                if attempts > self.max_attempts:
                    if not _has_pending_payout(con, row["job_id"]):
                        self._dead_letter(con, row, attempts - 1)
                        continue
                    _LOG.warning(
                        "job=%s worker=%s has a pending transfer after %s deliveries; delivering again",
                        row["job_id"], row["worker_id"], attempts - 1,
                    )

                con.execute(
                    """
                    UPDATE settlement_jobs
                    SET status='leased', attempts=?, lease_owner=?, lease_expires_ts_ms=?
                    WHERE job_id=?;
                    """,
                    (attempts, consumer, ts + self.lease_ms, row["job_id"]),
                )
            try:
                envelope = json.loads(row["envelope_json"])
            except ValueError as e:
                raise JobError(f"job {row['job_id']} has undecodable JSON: {e}") from e
            return ClaimedJob(
                job_id=str(row["job_id"]),
                worker_id=int(row["worker_id"]),
                envelope=envelope,
                attempts=attempts,
            )

    def _dead_letter(self, con: sqlite3.Connection, row: sqlite3.Row, deliveries: int) -> None:
        job_id, worker_id = row["job_id"], int(row["worker_id"])
        con.execute("UPDATE settlement_jobs SET status='dead' WHERE job_id=?;", (job_id,))
        _LOG.error("dead-lettered job=%s worker=%s after %s deliveries", job_id, worker_id, deliveries)

        known = con.execute("SELECT 1 FROM payouts WHERE job_id=? LIMIT 1;", (job_id,)).fetchone()
        worker = con.execute("SELECT 1 FROM workers WHERE id=?;", (worker_id,)).fetchone()
        if known is not None or worker is None:
            return
        # nothing was signed for this job, so nothing can have been sent
        amount = int(json.loads(row["envelope_json"])["payload"]["amount"])
        reason = f"dead-lettered after {deliveries} deliveries: {row['last_error'] or 'no error recorded'}"
        record_failure_in(con, worker_id, amount, reason, job_id=job_id)
        _LOG.warning("payout failed worker=%s amount=%s reason=%s", worker_id, amount, reason)

    def ack(self, job_id: str) -> None:
        """Mark a job done; it will never be delivered again."""
        with self.db.write_tx() as con:
            con.execute(
                """
                UPDATE settlement_jobs
                SET status='done', lease_owner=NULL, lease_expires_ts_ms=NULL
                WHERE job_id=?;
                """,
                (job_id,),
            )

    def release(self, job_id: str, delay_seconds: float = 0.0, error: str | None = None) -> None:
        """Give a leased job back for redelivery after *delay_seconds*."""
        with self.db.write_tx() as con:
            con.execute(
                """
                UPDATE settlement_jobs
                SET status='ready', lease_owner=NULL, lease_expires_ts_ms=NULL,
                    available_ts_ms=?, last_error=COALESCE(?, last_error)
                WHERE job_id=? AND status='leased';
                """,
                (now_ms() + int(delay_seconds * 1000), error, job_id),
            )

    def status(self, job_id: str) -> Optional[str]:
        with self.db.connection() as con:
            row = con.execute(
                "SELECT status FROM settlement_jobs WHERE job_id=?;", (job_id,)
            ).fetchone()
        return None if row is None else str(row["status"])

    def counts(self) -> dict[str, int]:
        """Number of jobs per status."""
        with self.db.connection() as con:
            rows = con.execute(
                "SELECT status, COUNT(*) AS n FROM settlement_jobs GROUP BY status;"
            ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}
