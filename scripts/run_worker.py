#!/usr/bin/env python3
"""Run a settlement worker until SIGINT or SIGTERM.

Environment variables are described in sharepay/config.py. At minimum:
     SHP_SHARE_ENDPOINTS   – comma-separated share-holder base URLs
     SHP_CUSTODIAL_ADDRESS – public address of the custodial account

Optional env:
     SHP_LOG_LEVEL         – defaults to INFO

Usage:
    python scripts/run_worker.py
"""

from __future__ import annotations

import logging
import os
import signal

from sharepay import PayoutConfig, SettlementWorker


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("SHP_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    config = PayoutConfig.from_env()
    worker = SettlementWorker.from_config(config)

    def _shutdown(signum, _frame) -> None:
        logging.getLogger(__name__).info("signal %s received, stopping", signum)
        worker.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    worker.run()


if __name__ == "__main__":
    main()
