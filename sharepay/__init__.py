"""sharepay: threshold-custody payout settlement v0.1."""

from .config import PayoutConfig
from .db import SqliteDB
from .ledger import BalanceLedger
from .queue import SettlementQueue
from .jobs import DispatcherIdentity, build_job, verify_job
from .settlement import PayoutDispatcher, SettlementOutcome, SettlementWorker
from .errors import (
    SharepayError,
    ConfigError,
    NotFound,
    InsufficientBalance,
    LedgerWriteConflict,
    ApprovalRequired,
    InsufficientShares,
    CorruptShare,
    SubmissionError,
    SubmissionTimeout,
    SignatureError,
    JobError,
)

__all__ = [
    "PayoutConfig",
    "SqliteDB",
    "BalanceLedger",
    "SettlementQueue",
    "DispatcherIdentity",
    "build_job",
    "verify_job",
    "PayoutDispatcher",
    "SettlementOutcome",
    "SettlementWorker",
    "SharepayError",
    "ConfigError",
    "NotFound",
    "InsufficientBalance",
    "LedgerWriteConflict",
    "ApprovalRequired",
    "InsufficientShares",
    "CorruptShare",
    "SubmissionError",
    "SubmissionTimeout",
    "SignatureError",
    "JobError",
]
