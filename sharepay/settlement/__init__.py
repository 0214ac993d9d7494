"""Payout settlement: lock trigger, job processing and per-job state."""

from .dispatch import PayoutDispatcher
from .states import InvalidTransition, OutcomeStatus, SettlementOutcome, SettlementRun, Stage
from .worker import SettlementWorker

__all__ = [
    "InvalidTransition",
    "OutcomeStatus",
    "PayoutDispatcher",
    "SettlementOutcome",
    "SettlementRun",
    "SettlementWorker",
    "Stage",
]
