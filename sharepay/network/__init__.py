"""Ledger-network clients.

The Solana client is always available. The EVM client needs the
optional extra:  pip install -e ".[evm]"
"""

from .base import LedgerClient, PreparedTransfer, TransferStatus, to_native
from .solana import SolanaLedgerClient

__all__ = [
    "LedgerClient",
    "PreparedTransfer",
    "SolanaLedgerClient",
    "TransferStatus",
    "build_ledger_client",
    "to_native",
]


def build_ledger_client(config) -> LedgerClient:
    """Construct the client named by ``config.network``."""
    if config.network == "evm":
        from .evm import EvmLedgerClient

        return EvmLedgerClient.from_config(config)
    return SolanaLedgerClient.from_config(config)
