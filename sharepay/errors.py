"""Machine-readable error categories for payout settlement failures."""

from __future__ import annotations


class SharepayError(Exception):
    """Base exception for all sharepay errors."""


class ConfigError(SharepayError):
    """Missing or invalid configuration value."""


class NotFound(SharepayError):
    """Worker (or payout record) does not exist."""


class InsufficientBalance(SharepayError):
    """Pending amount is below the minimum withdrawal threshold."""


class LedgerWriteConflict(SharepayError):
    """The ledger write lock could not be acquired before the deadline."""


class ApprovalRequired(SharepayError):
    """A compensating transition needs an administrative approver."""


class InsufficientShares(SharepayError):
    """Fewer key shares were collected than the reconstruction threshold."""


class CorruptShare(SharepayError):
    """Combined shares do not decode into the expected custodial keypair."""


class SubmissionError(SharepayError):
    """Transfer broadcast or confirmation failed.

    ``ambiguous`` is True when the transfer may still land (the broadcast
    was possibly accepted); the outcome must be checked on the network
    before anything is re-sent.
    """

    def __init__(self, message: str, signature: str | None = None, ambiguous: bool = False):
        super().__init__(message)
        self.signature = signature
        self.ambiguous = ambiguous


class SubmissionTimeout(SubmissionError):
    """Confirmation wait expired.

    This doesn't mean the transfer failed - it may still land on the
    network.
    """

    def __init__(self, message: str, signature: str | None = None):
        super().__init__(message, signature=signature, ambiguous=True)


class SignatureError(SharepayError):
    """Malformed signing input or signature verification failure."""


class IdentityError(SharepayError):
    """Identity key loading or generation error."""


class CanonicalizationError(SharepayError):
    """JSON canonicalization failed."""


class JobError(SharepayError):
    """Invalid settlement job message structure or payload."""
