"""EVM transfer submitter for sharepay settlement.

Pays workers in the chain's native coin with a plain value transfer,
signed locally by ``eth_account`` and sent through web3.py. It is fully
optional and is only imported when SHP_NETWORK=evm.

Install with:  pip install -e ".[evm]"

Environment variables (all overridable via constructor args):
    SHP_RPC_URL           – JSON-RPC endpoint (default http://localhost:8545)
    SHP_EVM_CHAIN_ID      – chain id (default 31337 for Anvil)
    SHP_TOTAL_DECIMALS    – internal units per coin (default 100000)
    SHP_CUSTODIAL_ADDRESS – custodial account, used to prove a transfer expired
    SHP_TX_TIMEOUT        – receipt wait timeout in seconds (default 60)
    SHP_TX_POLL           – poll latency in seconds (default 2)
"""

from __future__ import annotations

import logging
import os
from typing import Any

import requests
from eth_account import Account
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3RPCError

from ..errors import SignatureError, SubmissionError, SubmissionTimeout
from .base import PreparedTransfer, TransferStatus, to_native

_LOG = logging.getLogger(__name__)

WEI_PER_ETHER = 10**18
_TRANSFER_GAS = 21_000


def _hex(value: bytes | str) -> str:
    h = HexBytes(value).hex()
    return h if h.startswith("0x") else f"0x{h}"


class EvmKeypair:
    """In-memory secp256k1 private key, zeroed on context exit."""

    def __init__(self, private_key: bytearray):
        if len(private_key) != 32:
            raise ValueError(f"private key must be 32 bytes, got {len(private_key)}")
        self._key = private_key
        self._address = Account.from_key(bytes(private_key)).address
        self._wiped = False

    @classmethod
    def from_secret(cls, secret: bytes | bytearray) -> "EvmKeypair":
        """Decode hex text (with or without 0x) of a 32-byte private key."""
        text = bytes(secret).decode("ascii").strip()
        if text.startswith(("0x", "0X")):
            text = text[2:]
        if len(text) != 64:
            raise ValueError("private key must be 64 hex characters")
        return cls(bytearray(bytes.fromhex(text)))

    @property
    def address(self) -> str:
        return self._address

    def sign_transaction(self, tx: dict[str, Any]):
        if self._wiped:
            raise SignatureError("keypair has been wiped")
        return Account.from_key(bytes(self._key)).sign_transaction(tx)

    def wipe(self) -> None:
        for i in range(len(self._key)):
            self._key[i] = 0
        self._wiped = True

    def __enter__(self) -> "EvmKeypair":
        return self

    def __exit__(self, *exc) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return f"EvmKeypair(address={self._address})"


class EvmLedgerClient:
    """Ledger client for EVM chains."""

    native_per_coin = WEI_PER_ETHER

    def __init__(
        self,
        rpc_url: str | None = None,
        chain_id: int | None = None,
        total_decimals: int | None = None,
        custodial_address: str | None = None,
        timeout: float | None = None,
        poll_latency: float | None = None,
        w3: Web3 | None = None,
    ):
        self.rpc_url = rpc_url or os.environ.get("SHP_RPC_URL", "http://localhost:8545")
        self.chain_id = chain_id or int(os.environ.get("SHP_EVM_CHAIN_ID", "31337"))
        self.total_decimals = total_decimals or int(os.environ.get("SHP_TOTAL_DECIMALS", "100000"))
        custodial = custodial_address or os.environ.get("SHP_CUSTODIAL_ADDRESS")
        self.custodial_address = Web3.to_checksum_address(custodial) if custodial else None
        self.timeout = timeout or float(os.environ.get("SHP_TX_TIMEOUT", "60"))
        self.poll_latency = poll_latency or float(os.environ.get("SHP_TX_POLL", "2"))
        self.w3 = w3 or Web3(Web3.HTTPProvider(self.rpc_url))

    @classmethod
    def from_config(cls, config) -> "EvmLedgerClient":
        return cls(
            rpc_url=config.rpc_url,
            chain_id=config.evm_chain_id,
            total_decimals=config.total_decimals,
            custodial_address=config.custodial_address,
            timeout=config.tx_timeout,
            poll_latency=config.tx_poll,
        )

    # -- ledger client capability --------------------------------------------

    def decode_keypair(self, secret: bytearray) -> EvmKeypair:
        return EvmKeypair.from_secret(secret)

    def to_native(self, amount: int) -> int:
        return to_native(amount, self.native_per_coin, self.total_decimals)

    def prepare_transfer(
        self, keypair: EvmKeypair, recipient: str, native_amount: int
    ) -> PreparedTransfer:
        """Build and sign a value transfer. The tx hash is known before send.

        Raises:
            SignatureError: Bad recipient, non-positive amount or self-transfer.
            SubmissionError: Nonce or gas price could not be read.
        """
        if not isinstance(keypair, EvmKeypair):
            raise SignatureError(f"expected an EvmKeypair, got {type(keypair).__name__}")
        if isinstance(native_amount, bool) or not isinstance(native_amount, int) or native_amount <= 0:
            raise SignatureError(f"wei must be a positive integer, got {native_amount!r}")
        try:
            to = Web3.to_checksum_address(recipient)
        except (ValueError, TypeError) as e:
            raise SignatureError(f"invalid address {recipient!r}: {e}") from e
        if to == keypair.address:
            raise SignatureError("recipient is the custodial account")

        try:
            nonce = self.w3.eth.get_transaction_count(keypair.address, "pending")
            gas_price = self.w3.eth.gas_price
        except (requests.RequestException, Web3RPCError, ValueError) as e:
            raise SubmissionError(f"could not prepare transfer: {e}") from e

        tx = {
            "to": to,
            "value": native_amount,
            "nonce": nonce,
            "gas": _TRANSFER_GAS,
            "gasPrice": gas_price,
            "chainId": self.chain_id,
        }
        signed = keypair.sign_transaction(tx)
        return PreparedTransfer(
            signature=_hex(signed.hash),
            raw=bytes(signed.raw_transaction),
            sender=keypair.address,
            recipient=to,
            native_amount=native_amount,
            expiry_ref=nonce,
        )

    def submit(self, prepared: PreparedTransfer) -> str:
        """Send the raw transaction and block until it is mined.

        Raises:
            SubmissionError: Node rejected the transaction, transport failed
                mid-send (``ambiguous``), or the transfer reverted.
            SubmissionTimeout: No receipt within ``timeout`` seconds.
        """
        try:
            self.w3.eth.send_raw_transaction(prepared.raw)
        except requests.RequestException as e:
            raise SubmissionError(
                f"broadcast of {prepared.signature} interrupted: {e}",
                signature=prepared.signature,
                ambiguous=True,
            ) from e
        except (Web3RPCError, ValueError) as e:
            raise SubmissionError(f"node rejected transfer: {e}", signature=prepared.signature) from e

        _LOG.info(
            "sent transfer tx=%s wei=%s to=%s",
            prepared.signature, prepared.native_amount, prepared.recipient,
        )
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                HexBytes(prepared.signature), timeout=self.timeout, poll_latency=self.poll_latency
            )
        except TimeExhausted:
            raise SubmissionTimeout(
                f"transfer {prepared.signature} not mined after {self.timeout}s; "
                "this doesn't mean it failed, it may still be mined",
                signature=prepared.signature,
            ) from None

        if int(receipt.get("status", 0)) != 1:
            raise SubmissionError(
                f"transfer {prepared.signature} reverted", signature=prepared.signature
            )
        return prepared.signature

    def get_transfer_status(
        self, signature: str, expiry_ref: int | None = None
    ) -> TransferStatus:
        """Receipt lookup; *expiry_ref* is the nonce the transfer was signed with.

        A transfer with no receipt whose nonce the custodial account has
        already used can never be mined: EXPIRED.
        """
        tx_hash = HexBytes(signature)
        try:
            try:
                receipt = self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                receipt = None
            if receipt is not None:
                if int(receipt.get("status", 0)) == 1:
                    return TransferStatus.CONFIRMED
                return TransferStatus.FAILED
            try:
                self.w3.eth.get_transaction(tx_hash)
                return TransferStatus.PENDING
            except TransactionNotFound:
                pass
            if expiry_ref is not None and self.custodial_address is not None:
                mined_nonce = self.w3.eth.get_transaction_count(self.custodial_address, "latest")
                if mined_nonce > expiry_ref:
                    return TransferStatus.EXPIRED
        except (requests.RequestException, Web3RPCError) as e:
            raise SubmissionError(f"status lookup failed: {e}", signature=signature, ambiguous=True) from e
        return TransferStatus.UNKNOWN
