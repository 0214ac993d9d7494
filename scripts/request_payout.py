#!/usr/bin/env python3
"""Operator lock trigger: lock a worker's pending balance and queue its payout.

Prerequisites
─────────────
     SHP_DB_PATH           – ledger database shared with the workers
     SHP_DISPATCHER_KEY    – dispatcher key file (created on first use)

Usage:
    python scripts/request_payout.py <worker_id>
    python scripts/request_payout.py --unlock <payout_id> [approved_by]
"""

from __future__ import annotations

import logging
import os
import sys

from sharepay import BalanceLedger, PayoutConfig, PayoutDispatcher, SharepayError, SqliteDB


def _usage() -> None:
    print(__doc__.split("Usage:")[1].rstrip())
    sys.exit(2)


def main() -> None:
    logging.basicConfig(level=os.environ.get("SHP_LOG_LEVEL", "INFO").upper())
    args = sys.argv[1:]
    if not args:
        _usage()
    config = PayoutConfig.from_env()

    try:
        if args[0] == "--unlock":
            if len(args) < 2:
                _usage()
            ledger = BalanceLedger(SqliteDB(path=config.db_path), min_withdrawal=config.min_withdrawal)
            approved_by = args[2] if len(args) > 2 else None
            account = ledger.unlock_failed(int(args[1]), approved_by=approved_by)
            print(f"worker {account.id}: pending={account.pending_amount} locked={account.locked_amount}")
            return

        dispatcher = PayoutDispatcher.from_config(config)
        receipt = dispatcher.request_payout(int(args[0]))
    except SharepayError as e:
        print(f"error: {type(e).__name__}: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"job_id         = {receipt.job_id}")
    print(f"worker_id      = {receipt.worker_id}")
    print(f"amount         = {receipt.amount}")
    print(f"locked_amount  = {receipt.locked_amount}")
    print(f"dispatcher key = {dispatcher.identity.public_key_base64}")


if __name__ == "__main__":
    main()
