"""Per-job settlement state machine and outcome records."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..errors import SharepayError


class Stage(str, Enum):
    LOCKED = "Locked"
    SHARES_REQUESTED = "SharesRequested"
    KEY_RECONSTRUCTED = "KeyReconstructed"
    SUBMITTED = "Submitted"
    FINALIZED = "Finalized"
    FAILED = "Failed"


_NEXT = {
    Stage.LOCKED: Stage.SHARES_REQUESTED,
    Stage.SHARES_REQUESTED: Stage.KEY_RECONSTRUCTED,
    Stage.KEY_RECONSTRUCTED: Stage.SUBMITTED,
    Stage.SUBMITTED: Stage.FINALIZED,
}

# once a transfer is confirmed the job can only end Finalized
_NO_FAIL = frozenset({Stage.SUBMITTED, Stage.FINALIZED, Stage.FAILED})


class InvalidTransition(SharepayError):
    """A settlement run tried to skip or leave a terminal state."""


class OutcomeStatus(str, Enum):
    FINALIZED = "finalized"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    UNRESOLVED = "unresolved"
    ABANDONED = "abandoned"
    REJECTED = "rejected"


@dataclass
class SettlementRun:
    job_id: str
    worker_id: int
    stage: Stage = Stage.LOCKED
    history: list[Stage] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append(self.stage)

    @classmethod
    def resume(cls, job_id: str, worker_id: int, stage: Stage) -> "SettlementRun":
        """Pick up a redelivered job at the stage its durable record proves."""
        if stage in (Stage.FINALIZED, Stage.FAILED):
            raise InvalidTransition(f"cannot resume a {stage.value} run")
        return cls(job_id=job_id, worker_id=worker_id, stage=stage)

    def advance(self, to: Stage) -> None:
        expected = _NEXT.get(self.stage)
        if to is not expected:
            raise InvalidTransition(f"{self.stage.value} -> {to.value} is not allowed")
        self.stage = to
        self.history.append(to)

    def fail(self) -> Stage:
        """Move to Failed; returns the stage the failure happened in."""
        if self.stage in _NO_FAIL:
            raise InvalidTransition(f"{self.stage.value} -> Failed is not allowed")
        failed_at = self.stage
        self.stage = Stage.FAILED
        self.history.append(Stage.FAILED)
        return failed_at


@dataclass(frozen=True)
class SettlementOutcome:
    job_id: str
    worker_id: Optional[int]
    status: OutcomeStatus
    stage: Optional[Stage] = None
    signature: Optional[str] = None
    reason: Optional[str] = None
