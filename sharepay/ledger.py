"""Durable worker balances and the append-only payout record.

Funds move pending -> locked when a payout is requested and
locked -> paid when the on-chain transfer is finalized. Every
read-modify-write runs inside ``SqliteDB.write_tx`` and is therefore
serialized against all other writers.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from .db import SqliteDB, now_ms
from .errors import ApprovalRequired, InsufficientBalance, NotFound, SharepayError
from .types import Balance, LockResult, PayoutRecord, PayoutStatus, WorkerAccount

_LOG = logging.getLogger(__name__)


def _account(row: sqlite3.Row) -> WorkerAccount:
    return WorkerAccount(
        id=int(row["id"]),
        address=str(row["address"]),
        pending_amount=int(row["pending_amount"]),
        locked_amount=int(row["locked_amount"]),
        created_ts_ms=int(row["created_ts_ms"]),
    )


def _payout(row: sqlite3.Row) -> PayoutRecord:
    return PayoutRecord(
        id=int(row["id"]),
        worker_id=int(row["worker_id"]),
        job_id=row["job_id"],
        amount=int(row["amount"]),
        status=PayoutStatus(row["status"]),
        signature=row["signature"],
        reason=row["reason"],
        ambiguous=bool(row["ambiguous"]),
        expiry_ref=row["expiry_ref"],
        created_ts_ms=int(row["created_ts_ms"]),
    )


def record_failure_in(
    con: sqlite3.Connection,
    worker_id: int,
    amount: int,
    reason: str,
    job_id: str | None = None,
    signature: str | None = None,
    ambiguous: bool = False,
) -> int:
    """Write a Failed payout inside an open write transaction. Returns its id.

    A Pending record carrying *signature* moves to Failed; a settled record
    carrying it is left alone. Otherwise a new Failed record is appended.
    """
    ts = now_ms()
    if signature:
        row = con.execute("SELECT id, status FROM payouts WHERE signature=?;", (signature,)).fetchone()
        if row is not None:
            if row["status"] == PayoutStatus.PENDING.value:
                con.execute(
                    "UPDATE payouts SET status='Failed', reason=?, ambiguous=?, updated_ts_ms=? WHERE id=?;",
                    (reason, int(ambiguous), ts, row["id"]),
                )
            return int(row["id"])
    cur = con.execute(
        """
        INSERT INTO payouts(worker_id, job_id, amount, status, signature, reason,
                            ambiguous, created_ts_ms, updated_ts_ms)
        VALUES(?, ?, ?, 'Failed', ?, ?, ?, ?, ?);
        """,
        (worker_id, job_id, amount, signature, reason, int(ambiguous), ts, ts),
    )
    return int(cur.lastrowid)


class BalanceLedger:
    """Worker balances and payout history backed by SQLite."""

    def __init__(self, db: SqliteDB, min_withdrawal: int = 3000):
        if min_withdrawal <= 0:
            raise ValueError("min_withdrawal must be positive")
        self.db = db
        self.min_withdrawal = min_withdrawal
        self.db.init_schema()

    # -- collaborator hooks --------------------------------------------------

    def register_worker(self, address: str) -> WorkerAccount:
        """Return the account for *address*, creating it on first sign-in."""
        if not address:
            raise ValueError("address must be non-empty")
        with self.db.write_tx() as con:
            con.execute(
                "INSERT OR IGNORE INTO workers(address, created_ts_ms) VALUES(?, ?);",
                (address, now_ms()),
            )
            row = con.execute("SELECT * FROM workers WHERE address=?;", (address,)).fetchone()
        return _account(row)

    def credit(self, worker_id: int, amount: int, source: str = "submission") -> WorkerAccount:
        """Add earned *amount* to the worker's pending balance."""
        if amount <= 0:
            raise ValueError("credit amount must be positive")
        with self.db.write_tx() as con:
            self._require_worker(con, worker_id)
            con.execute(
                "UPDATE workers SET pending_amount = pending_amount + ? WHERE id=?;",
                (amount, worker_id),
            )
            con.execute(
                "INSERT INTO credits(worker_id, amount, source, created_ts_ms) VALUES(?, ?, ?, ?);",
                (worker_id, amount, source, now_ms()),
            )
            return _account(self._require_worker(con, worker_id))

    # -- reads ---------------------------------------------------------------

    def get_account(self, worker_id: int) -> WorkerAccount:
        with self.db.connection() as con:
            return _account(self._require_worker(con, worker_id))

    def get_balance(self, worker_id: int) -> Balance:
        """Pending, locked and total successfully paid amounts."""
        with self.db.connection() as con:
            account = _account(self._require_worker(con, worker_id))
            paid = con.execute(
                "SELECT COALESCE(SUM(amount), 0) AS total FROM payouts WHERE worker_id=? AND status='Success';",
                (worker_id,),
            ).fetchone()["total"]
        return Balance(
            pending_amount=account.pending_amount,
            locked_amount=account.locked_amount,
            paid_amount=int(paid),
        )

    def payout_history(self, worker_id: int) -> list[PayoutRecord]:
        """All payout attempts for a worker, oldest first."""
        with self.db.connection() as con:
            self._require_worker(con, worker_id)
            rows = con.execute(
                "SELECT * FROM payouts WHERE worker_id=? ORDER BY id;", (worker_id,)
            ).fetchall()
        return [_payout(r) for r in rows]

    def get_payout(self, payout_id: int) -> PayoutRecord:
        with self.db.connection() as con:
            row = con.execute("SELECT * FROM payouts WHERE id=?;", (payout_id,)).fetchone()
        if row is None:
            raise NotFound(f"Payout not found: {payout_id}")
        return _payout(row)

    def find_job_payout(self, job_id: str) -> Optional[PayoutRecord]:
        """Most relevant payout for a job: Success, then Pending, then Failed."""
        with self.db.connection() as con:
            row = con.execute(
                """
                SELECT * FROM payouts
                WHERE job_id=?
                ORDER BY CASE status WHEN 'Success' THEN 0 WHEN 'Pending' THEN 1 ELSE 2 END, id DESC
                LIMIT 1;
                """,
                (job_id,),
            ).fetchone()
        return _payout(row) if row is not None else None

    def check_conservation(self, worker_id: int) -> bool:
        """credits - successful payouts == pending + locked."""
        with self.db.connection() as con:
            account = _account(self._require_worker(con, worker_id))
            credited = con.execute(
                "SELECT COALESCE(SUM(amount), 0) AS total FROM credits WHERE worker_id=?;",
                (worker_id,),
            ).fetchone()["total"]
            paid = con.execute(
                "SELECT COALESCE(SUM(amount), 0) AS total FROM payouts WHERE worker_id=? AND status='Success';",
                (worker_id,),
            ).fetchone()["total"]
        return int(credited) - int(paid) == account.pending_amount + account.locked_amount

    # -- lock ----------------------------------------------------------------

    def lock(self, worker_id: int) -> int:
        """Move the whole pending balance into locked. Returns new locked_amount.

        Raises:
            NotFound: No such worker.
            InsufficientBalance: pending_amount is below min_withdrawal.
        """
        return self.lock_for_payout(worker_id).locked_amount

    def lock_for_payout(self, worker_id: int) -> LockResult:
        """Like ``lock`` but also reports how much was moved."""
        with self.db.write_tx() as con:
            return self.lock_in(con, worker_id)

    def lock_in(self, con: sqlite3.Connection, worker_id: int) -> LockResult:
        """Lock inside an already open write transaction."""
        account = _account(self._require_worker(con, worker_id))
        if account.pending_amount < self.min_withdrawal:
            raise InsufficientBalance(
                f"pending amount {account.pending_amount} is below the minimum "
                f"withdrawal of {self.min_withdrawal}"
            )
        amount = account.pending_amount
        con.execute(
            """
            UPDATE workers
            SET pending_amount = pending_amount - ?, locked_amount = locked_amount + ?
            WHERE id=?;
            """,
            (amount, amount, worker_id),
        )
        locked = account.locked_amount + amount
        _LOG.info("locked worker=%s amount=%s locked_total=%s", worker_id, amount, locked)
        return LockResult(amount=amount, locked_amount=locked)

    # -- settlement ----------------------------------------------------------

    def record_submission(
        self,
        worker_id: int,
        job_id: str,
        amount: int,
        signature: str,
        expiry_ref: int | None = None,
    ) -> PayoutRecord:
        """Write a Pending payout carrying the signature before it is broadcast.

        Idempotent on *job_id*: an existing Pending record for the job is
        returned unchanged.
        """
        with self.db.write_tx() as con:
            self._require_worker(con, worker_id)
            row = con.execute(
                "SELECT * FROM payouts WHERE job_id=? AND status='Pending' ORDER BY id DESC LIMIT 1;",
                (job_id,),
            ).fetchone()
            if row is not None:
                return _payout(row)
            ts = now_ms()
            cur = con.execute(
                """
                INSERT INTO payouts(worker_id, job_id, amount, status, signature, expiry_ref,
                                    created_ts_ms, updated_ts_ms)
                VALUES(?, ?, ?, 'Pending', ?, ?, ?, ?);
                """,
                (worker_id, job_id, amount, signature, expiry_ref, ts, ts),
            )
            row = con.execute("SELECT * FROM payouts WHERE id=?;", (cur.lastrowid,)).fetchone()
        return _payout(row)

    def finalize_success(
        self, worker_id: int, amount: int, signature: str, job_id: str | None = None
    ) -> bool:
        """Settle *amount* out of locked and record it as paid under *signature*.

        Returns False (and changes nothing) if *signature* was already
        finalized, so redelivered jobs cannot double-decrement.
        """
        if not signature:
            raise ValueError("signature must be non-empty")
        with self.db.write_tx() as con:
            existing = con.execute(
                "SELECT * FROM payouts WHERE signature=?;", (signature,)
            ).fetchone()
            if existing is not None and existing["status"] == PayoutStatus.SUCCESS.value:
                _LOG.info("finalize replay ignored worker=%s signature=%s", worker_id, signature)
                return False

            account = _account(self._require_worker(con, worker_id))
            if account.locked_amount < amount:
                raise SharepayError(
                    f"locked amount {account.locked_amount} is below settled amount {amount} "
                    f"for worker {worker_id}"
                )
            con.execute(
                "UPDATE workers SET locked_amount = locked_amount - ? WHERE id=?;",
                (amount, worker_id),
            )
            ts = now_ms()
            if existing is not None:
                con.execute(
                    "UPDATE payouts SET status='Success', reason=NULL, ambiguous=0, updated_ts_ms=? WHERE id=?;",
                    (ts, existing["id"]),
                )
            else:
                con.execute(
                    """
                    INSERT INTO payouts(worker_id, job_id, amount, status, signature,
                                        created_ts_ms, updated_ts_ms)
                    VALUES(?, ?, ?, 'Success', ?, ?, ?);
                    """,
                    (worker_id, job_id, amount, signature, ts, ts),
                )
        _LOG.info("finalized worker=%s amount=%s signature=%s", worker_id, amount, signature)
        return True

    def finalize_failure(
        self,
        worker_id: int,
        amount: int,
        reason: str,
        job_id: str | None = None,
        signature: str | None = None,
        ambiguous: bool = False,
    ) -> PayoutRecord:
        """Record a failed attempt for audit. Locked funds stay locked.

        If *signature* names the job's Pending record, that record moves to
        Failed instead of a new one being appended.
        """
        with self.db.write_tx() as con:
            self._require_worker(con, worker_id)
            payout_id = record_failure_in(
                con, worker_id, amount, reason, job_id=job_id, signature=signature, ambiguous=ambiguous
            )
            row = con.execute("SELECT * FROM payouts WHERE id=?;", (payout_id,)).fetchone()
        _LOG.warning("payout failed worker=%s amount=%s reason=%s", worker_id, amount, reason)
        return _payout(row)

    def unlock_failed(self, payout_id: int, approved_by: str | None = None) -> WorkerAccount:
        """Return a failed payout's funds from locked to pending.

        Failures whose outcome on the network is ambiguous need an
        *approved_by* operator, since the transfer may in fact have landed.
        A payout can be unlocked once.

        Raises:
            NotFound: No such payout.
            ApprovalRequired: Ambiguous failure without an approver.
            SharepayError: Payout is not Failed, already unlocked, or the
                worker no longer has the amount locked.
        """
        with self.db.write_tx() as con:
            row = con.execute("SELECT * FROM payouts WHERE id=?;", (payout_id,)).fetchone()
            if row is None:
                raise NotFound(f"Payout not found: {payout_id}")
            payout = _payout(row)
            if payout.status is not PayoutStatus.FAILED:
                raise SharepayError(f"payout {payout_id} is {payout.status.value}, not Failed")
            if payout.ambiguous and not approved_by:
                raise ApprovalRequired(
                    f"payout {payout_id} failed with an ambiguous outcome; an approver is required"
                )
            done = con.execute(
                "SELECT 1 FROM adjustments WHERE payout_id=?;", (payout_id,)
            ).fetchone()
            if done is not None:
                raise SharepayError(f"payout {payout_id} was already unlocked")
            account = _account(self._require_worker(con, payout.worker_id))
            if account.locked_amount < payout.amount:
                raise SharepayError(
                    f"worker {payout.worker_id} has {account.locked_amount} locked, "
                    f"cannot unlock {payout.amount}"
                )
            con.execute(
                """
                UPDATE workers
                SET locked_amount = locked_amount - ?, pending_amount = pending_amount + ?
                WHERE id=?;
                """,
                (payout.amount, payout.amount, payout.worker_id),
            )
            con.execute(
                """
                INSERT INTO adjustments(worker_id, payout_id, amount, approved_by, reason, created_ts_ms)
                VALUES(?, ?, ?, ?, ?, ?);
                """,
                (payout.worker_id, payout_id, payout.amount, approved_by, "unlock-on-failure", now_ms()),
            )
            updated = _account(self._require_worker(con, payout.worker_id))
        _LOG.info(
            "unlocked worker=%s payout=%s amount=%s approved_by=%s",
            payout.worker_id, payout_id, payout.amount, approved_by,
        )
        return updated

    # -- internal helpers --

    @staticmethod
    def _require_worker(con: sqlite3.Connection, worker_id: int) -> sqlite3.Row:
        row = con.execute("SELECT * FROM workers WHERE id=?;", (worker_id,)).fetchone()
        if row is None:
            raise NotFound(f"Worker not found: {worker_id}")
        return row
