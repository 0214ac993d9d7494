"""Lock trigger: move a worker's pending balance and enqueue its settlement."""

from __future__ import annotations

import logging

from ..config import PayoutConfig
from ..db import SqliteDB
from ..errors import ConfigError
from ..jobs import DispatcherIdentity, build_job
from ..ledger import BalanceLedger
from ..queue import SettlementQueue
from ..types import LockReceipt

_LOG = logging.getLogger(__name__)


class PayoutDispatcher:
    def __init__(self, ledger: BalanceLedger, queue: SettlementQueue, identity: DispatcherIdentity):
        if ledger.db is not queue.db:
            raise ValueError("ledger and queue must share one database")
        self.ledger = ledger
        self.queue = queue
        self.identity = identity

    @classmethod
    def from_config(cls, config: PayoutConfig) -> "PayoutDispatcher":
        if not config.dispatcher_key_path:
            raise ConfigError("SHP_DISPATCHER_KEY is required to dispatch payouts")
        db = SqliteDB(path=config.db_path)
        return cls(
            BalanceLedger(db, min_withdrawal=config.min_withdrawal),
            SettlementQueue(db, lease_seconds=config.lease_seconds, max_attempts=config.max_attempts),
            DispatcherIdentity.load_or_create(config.dispatcher_key_path),
        )

    def request_payout(self, worker_id: int) -> LockReceipt:
        """Lock the pending balance and enqueue a signed job in one transaction.

        Either both happen or neither does, so funds are never locked
        without a job to settle them.

        Raises:
            NotFound: No such worker.
            InsufficientBalance: Pending amount below the minimum; nothing queued.
            LedgerWriteConflict: Write lock not acquired in time; nothing changed.
        """
        with self.ledger.db.write_tx() as con:
            locked = self.ledger.lock_in(con, worker_id)
            envelope = build_job(worker_id, locked.amount, self.identity)
            self.queue.enqueue_in(con, envelope)
        _LOG.info(
            "payout requested worker=%s job=%s amount=%s",
            worker_id, envelope["object_id"], locked.amount,
        )
        return LockReceipt(
            job_id=envelope["object_id"],
            worker_id=worker_id,
            amount=locked.amount,
            locked_amount=locked.locked_amount,
        )
