"""The narrow ledger-network capability the settlement worker depends on."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from ..custody.keys import CustodialKey
from ..errors import SignatureError


class TransferStatus(str, Enum):
    CONFIRMED = "confirmed"  # landed at confirmed commitment or better, no error
    FAILED = "failed"        # landed but the transfer instruction errored
    PENDING = "pending"      # seen by the network, not yet confirmed
    EXPIRED = "expired"      # can no longer land; safe to treat as never sent
    UNKNOWN = "unknown"      # the network has no record, expiry not provable


@dataclass
class PreparedTransfer:
    """A signed, not yet broadcast transfer.

    ``signature`` is the identifier the network will know the transfer by;
    it is fixed before broadcast so an attempt can be recorded first and
    looked up later whatever happens to the broadcast.
    """

    signature: str
    raw: bytes
    sender: str
    recipient: str
    native_amount: int
    expiry_ref: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def to_native(amount: int, native_per_coin: int, total_decimals: int) -> int:
    """Convert internal smallest units into the network's smallest units."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise SignatureError(f"amount must be a positive integer, got {amount!r}")
    native = amount * native_per_coin // total_decimals
    if native <= 0:
        raise SignatureError(f"amount {amount} converts to zero native units")
    return native


class LedgerClient(Protocol):
    """Implemented by SolanaLedgerClient and EvmLedgerClient."""

    def decode_keypair(self, secret: bytearray) -> CustodialKey: ...

    def to_native(self, amount: int) -> int: ...

    def prepare_transfer(
        self, keypair: CustodialKey, recipient: str, native_amount: int
    ) -> PreparedTransfer: ...

    def submit(self, prepared: PreparedTransfer) -> str: ...

    def get_transfer_status(
        self, signature: str, expiry_ref: int | None = None
    ) -> TransferStatus: ...
