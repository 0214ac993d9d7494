"""Record types for balances, payouts and settlement job messages."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, TypedDict


class PayoutStatus(str, Enum):
    PENDING = "Pending"
    SUCCESS = "Success"
    FAILED = "Failed"


@dataclass(frozen=True)
class WorkerAccount:
    id: int
    address: str
    pending_amount: int
    locked_amount: int
    created_ts_ms: int


@dataclass(frozen=True)
class PayoutRecord:
    id: int
    worker_id: int
    job_id: str | None
    amount: int
    status: PayoutStatus
    signature: str | None
    reason: str | None
    ambiguous: bool
    expiry_ref: int | None
    created_ts_ms: int


@dataclass(frozen=True)
class Balance:
    pending_amount: int
    locked_amount: int
    paid_amount: int


@dataclass(frozen=True)
class LockResult:
    amount: int
    locked_amount: int


@dataclass(frozen=True)
class LockReceipt:
    job_id: str
    worker_id: int
    amount: int
    locked_amount: int


class Signer(TypedDict):
    algo: str
    pubkey: str


class JobPayload(TypedDict):
    worker_id: int
    amount: int


class JobEnvelope(TypedDict):
    object_type: str
    object_version: str
    object_id: str
    created_at: str
    payload: dict[str, Any]
    signer: Signer
    signature: str
