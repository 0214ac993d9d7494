"""Solana transfer submitter over JSON-RPC.

Builds a legacy transaction holding one System Program transfer from
the custodial account, signs it locally with the reconstructed key and
sends it with ``preflightCommitment: confirmed``. Confirmation is
polled with ``getSignatureStatuses`` up to a bounded timeout.

Environment variables (all overridable via constructor args):
    SHP_RPC_URL        – JSON-RPC endpoint (default http://localhost:8899)
    SHP_TOTAL_DECIMALS – internal units per SOL (default 100000)
    SHP_TX_TIMEOUT     – confirmation wait in seconds (default 60)
    SHP_TX_POLL        – poll interval in seconds (default 2)
"""

from __future__ import annotations

import base64
import itertools
import logging
import os
import struct
import time
from typing import Any, Optional

import base58
import requests

from ..custody.keys import SolanaKeypair
from ..errors import SignatureError, SubmissionError, SubmissionTimeout
from .base import PreparedTransfer, TransferStatus, to_native

_LOG = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000
SYSTEM_PROGRAM_ID = bytes(32)
_SYSTEM_TRANSFER = 2
_CONFIRMED = ("confirmed", "finalized")


class RpcError(SubmissionError):
    """The node answered a JSON-RPC call with an error."""


def encode_length(n: int) -> bytes:
    """Solana compact-u16 length prefix."""
    if not 0 <= n <= 0xFFFF:
        raise ValueError(f"length out of compact-u16 range: {n}")
    out = bytearray()
    while True:
        elem = n & 0x7F
        n >>= 7
        if n == 0:
            out.append(elem)
            return bytes(out)
        out.append(elem | 0x80)


def decode_address(address: str) -> bytes:
    """Base58 address to 32 bytes. Raises SignatureError when malformed."""
    try:
        raw = base58.b58decode(address)
    except ValueError as e:
        raise SignatureError(f"invalid address {address!r}: {e}") from e
    if len(raw) != 32:
        raise SignatureError(f"address {address!r} is not 32 bytes")
    return raw


def transfer_message(sender: bytes, recipient: bytes, lamports: int, blockhash: bytes) -> bytes:
    """Serialize a legacy message with a single system transfer."""
    # header: 1 signer, 0 read-only signed, 1 read-only unsigned (system program)
    header = bytes([1, 0, 1])
    keys = encode_length(3) + sender + recipient + SYSTEM_PROGRAM_ID
    data = struct.pack("<IQ", _SYSTEM_TRANSFER, lamports)
    instruction = bytes([2]) + encode_length(2) + bytes([0, 1]) + encode_length(len(data)) + data
    return header + keys + blockhash + encode_length(1) + instruction


class SolanaLedgerClient:
    """Ledger client for the Solana network."""

    native_per_coin = LAMPORTS_PER_SOL

    def __init__(
        self,
        rpc_url: str | None = None,
        total_decimals: int | None = None,
        timeout: float | None = None,
        poll_latency: float | None = None,
        session: Optional[requests.Session] = None,
        request_timeout: float = 30.0,
    ):
        self.rpc_url = rpc_url or os.environ.get("SHP_RPC_URL", "http://localhost:8899")
        self.total_decimals = total_decimals or int(os.environ.get("SHP_TOTAL_DECIMALS", "100000"))
        self.timeout = timeout or float(os.environ.get("SHP_TX_TIMEOUT", "60"))
        self.poll_latency = poll_latency or float(os.environ.get("SHP_TX_POLL", "2"))
        self.request_timeout = request_timeout
        self._session = session or requests.Session()
        self._ids = itertools.count(1)

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None) -> "SolanaLedgerClient":
        return cls(
            rpc_url=config.rpc_url,
            total_decimals=config.total_decimals,
            timeout=config.tx_timeout,
            poll_latency=config.tx_poll,
            session=session,
        )

    # -- ledger client capability --------------------------------------------

    def decode_keypair(self, secret: bytearray) -> SolanaKeypair:
        return SolanaKeypair.from_secret(secret)

    def to_native(self, amount: int) -> int:
        return to_native(amount, self.native_per_coin, self.total_decimals)

    def prepare_transfer(
        self, keypair: SolanaKeypair, recipient: str, native_amount: int
    ) -> PreparedTransfer:
        """Sign a transfer of *native_amount* lamports without sending it.

        Raises:
            SignatureError: Bad recipient, non-positive amount, self-transfer,
                or a key that cannot sign Solana messages.
            SubmissionError: The recent blockhash could not be fetched.
        """
        if not isinstance(keypair, SolanaKeypair):
            raise SignatureError(f"expected a SolanaKeypair, got {type(keypair).__name__}")
        if isinstance(native_amount, bool) or not isinstance(native_amount, int) or native_amount <= 0:
            raise SignatureError(f"lamports must be a positive integer, got {native_amount!r}")
        if native_amount > 2**64 - 1:
            raise SignatureError("lamports out of u64 range")
        to_key = decode_address(recipient)
        if to_key == keypair.public_key:
            raise SignatureError("recipient is the custodial account")

        # nothing has been sent yet, so none of these failures is ambiguous
        try:
            latest = self._rpc("getLatestBlockhash", [{"commitment": "confirmed"}])["value"]
            blockhash = base58.b58decode(latest["blockhash"])
            last_valid = int(latest["lastValidBlockHeight"])
        except (requests.RequestException, RpcError, KeyError, TypeError, ValueError) as e:
            raise SubmissionError(f"getLatestBlockhash failed: {e}") from e

        message = transfer_message(keypair.public_key, to_key, native_amount, blockhash)
        sig = keypair.sign(message)
        raw = encode_length(1) + sig + message
        return PreparedTransfer(
            signature=base58.b58encode(sig).decode("ascii"),
            raw=raw,
            sender=keypair.address,
            recipient=recipient,
            native_amount=native_amount,
            expiry_ref=last_valid,
        )

    def submit(self, prepared: PreparedTransfer) -> str:
        """Broadcast and wait for confirmed commitment. Returns the signature.

        Raises:
            SubmissionError: Rejected before broadcast, failed on chain or
                expired without landing (``ambiguous`` False), or a transport
                failure during broadcast (``ambiguous`` True).
            SubmissionTimeout: Not confirmed within ``timeout`` seconds.
        """
        params = [
            base64.b64encode(prepared.raw).decode("ascii"),
            {"encoding": "base64", "preflightCommitment": "confirmed", "skipPreflight": False},
        ]
        try:
            sent = self._rpc("sendTransaction", params)
        except requests.RequestException as e:
            raise SubmissionError(
                f"broadcast of {prepared.signature} interrupted: {e}",
                signature=prepared.signature,
                ambiguous=True,
            ) from e
        if sent != prepared.signature:
            _LOG.warning("rpc returned signature=%s expected=%s", sent, prepared.signature)
        _LOG.info(
            "sent transfer signature=%s lamports=%s to=%s",
            prepared.signature, prepared.native_amount, prepared.recipient,
        )
        return self._confirm(prepared)

    def get_transfer_status(
        self, signature: str, expiry_ref: int | None = None
    ) -> TransferStatus:
        """Look a transfer up on the network.

        *expiry_ref* is the transfer's last valid block height; without it
        an unseen transfer is UNKNOWN rather than EXPIRED.
        """
        try:
            status = self._signature_status(signature, search_history=True)
            if status is not None:
                return self._classify(status)
            if expiry_ref is not None and self._block_height() > expiry_ref:
                return TransferStatus.EXPIRED
        except (requests.RequestException, RpcError) as e:
            raise SubmissionError(f"status lookup failed: {e}", signature=signature, ambiguous=True) from e
        return TransferStatus.UNKNOWN

    # -- internal helpers --

    def _confirm(self, prepared: PreparedTransfer) -> str:
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                status = self._signature_status(prepared.signature, search_history=False)
                if status is not None:
                    result = self._classify(status)
                    if result is TransferStatus.CONFIRMED:
                        return prepared.signature
                    if result is TransferStatus.FAILED:
                        raise SubmissionError(
                            f"transfer {prepared.signature} failed on chain: {status.get('err')}",
                            signature=prepared.signature,
                        )
                elif prepared.expiry_ref is not None and self._block_height() > prepared.expiry_ref:
                    raise SubmissionError(
                        f"transfer {prepared.signature} expired without landing",
                        signature=prepared.signature,
                    )
            except (requests.RequestException, RpcError) as e:
                _LOG.warning("confirmation poll failed signature=%s error=%s", prepared.signature, e)

            if time.monotonic() >= deadline:
                raise SubmissionTimeout(
                    f"transfer {prepared.signature} not confirmed after {self.timeout}s; "
                    "it may still land",
                    signature=prepared.signature,
                )
            time.sleep(self.poll_latency)

    @staticmethod
    def _classify(status: dict) -> TransferStatus:
        if status.get("err") is not None:
            return TransferStatus.FAILED
        if status.get("confirmationStatus") in _CONFIRMED:
            return TransferStatus.CONFIRMED
        return TransferStatus.PENDING

    def _signature_status(self, signature: str, search_history: bool) -> Optional[dict]:
        result = self._rpc(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": search_history}],
        )
        values = (result or {}).get("value") or [None]
        return values[0]

    def _block_height(self) -> int:
        return int(self._rpc("getBlockHeight", [{"commitment": "confirmed"}]))

    def _rpc(self, method: str, params: list) -> Any:
        """POST one JSON-RPC call. RPC-level errors become RpcError.

        Transport errors (requests.RequestException) propagate so callers can
        decide whether they make the outcome ambiguous.
        """
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        resp = self._session.post(self.rpc_url, json=body, timeout=self.request_timeout)
        if resp.status_code != 200:
            # a gateway error may hide an accepted request
            raise RpcError(
                f"{method} failed with HTTP {resp.status_code}: {resp.text}",
                ambiguous=resp.status_code >= 500,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise RpcError(f"{method} returned invalid JSON: {e}", ambiguous=True) from e
        if "error" in data:
            err = data["error"] or {}
            raise RpcError(f"{method} rejected: {err.get('message', err)}")
        return data.get("result")
