"""Rebuild the custodial signing key from a quorum of shares."""

from __future__ import annotations

import logging
from typing import Callable, Protocol, Sequence

import base58
from nacl.signing import SigningKey

from ..errors import CorruptShare, InsufficientShares, SignatureError
from .shamir import combine_shares
from .shares import Share

_LOG = logging.getLogger(__name__)


def _wipe(buf: bytearray) -> None:
    for i in range(len(buf)):
        buf[i] = 0


class CustodialKey(Protocol):
    """What the transaction submitters need from a reconstructed key."""

    @property
    def address(self) -> str: ...

    def wipe(self) -> None: ...

    def __enter__(self) -> "CustodialKey": ...

    def __exit__(self, *exc) -> None: ...


class SolanaKeypair:
    """In-memory ed25519 keypair in Solana's 64-byte (seed || pubkey) layout.

    Use as a context manager; the secret is zeroed on exit, whatever the
    exit path. Signing after that raises SignatureError.
    """

    def __init__(self, secret_key: bytearray):
        if len(secret_key) != 64:
            raise ValueError(f"secret key must be 64 bytes, got {len(secret_key)}")
        self._secret = secret_key
        self._public = bytes(secret_key[32:])
        self._wiped = False

    @classmethod
    def from_secret(cls, secret: bytes | bytearray) -> "SolanaKeypair":
        """Decode base58 text of a 64-byte secret key.

        Raises:
            ValueError: If the text is not base58, has the wrong length, or
                its public half does not belong to its seed.
        """
        text = bytes(secret).decode("ascii").strip()
        raw = bytearray(base58.b58decode(text))
        if len(raw) != 64:
            _wipe(raw)
            raise ValueError("decoded secret key is not 64 bytes")
        derived = bytes(SigningKey(bytes(raw[:32])).verify_key)
        if derived != bytes(raw[32:]):
            _wipe(raw)
            raise ValueError("public key does not match seed")
        return cls(raw)

    @classmethod
    def generate(cls) -> "SolanaKeypair":
        sk = SigningKey.generate()
        return cls(bytearray(bytes(sk) + bytes(sk.verify_key)))

    def to_secret(self) -> bytes:
        """Base58 text form, the inverse of from_secret. For share creation only."""
        self._check()
        return base58.b58encode(bytes(self._secret))

    @property
    def public_key(self) -> bytes:
        return self._public

    @property
    def address(self) -> str:
        return base58.b58encode(self._public).decode("ascii")

    def sign(self, message: bytes) -> bytes:
        self._check()
        return SigningKey(bytes(self._secret[:32])).sign(message).signature

    def wipe(self) -> None:
        _wipe(self._secret)
        self._wiped = True

    def _check(self) -> None:
        if self._wiped:
            raise SignatureError("keypair has been wiped")

    def __enter__(self) -> "SolanaKeypair":
        return self

    def __exit__(self, *exc) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return f"SolanaKeypair(address={self.address})"


class KeyReconstructor:
    """Combine at least *threshold* shares into a custodial key.

    Args:
        threshold: K, the number of distinct shares required.
        decode_keypair: Turns the recovered secret bytes into a key object;
            raises ValueError when the bytes are not a valid key.
        expected_address: When set, a key for any other address is
            treated as a mismatched share set.
    """

    def __init__(
        self,
        threshold: int,
        decode_keypair: Callable[[bytearray], CustodialKey] = SolanaKeypair.from_secret,
        expected_address: str | None = None,
    ):
        if threshold < 2:
            raise ValueError("threshold must be at least 2")
        self.threshold = threshold
        self.decode_keypair = decode_keypair
        self.expected_address = expected_address

    def reconstruct(self, shares: Sequence[Share]) -> CustodialKey:
        """Rebuild the key. The shares are wiped whether this succeeds or not.

        Raises:
            InsufficientShares: Fewer than *threshold* distinct shares.
            CorruptShare: Shares are inconsistent or do not yield the key.
        """
        try:
            distinct = len({s.index for s in shares if s.raw})
            if distinct < self.threshold:
                raise InsufficientShares(
                    f"need {self.threshold} shares, collected {distinct}"
                )
            try:
                secret = combine_shares([s.raw for s in shares])
            except ValueError as e:
                raise CorruptShare(f"shares cannot be combined: {e}") from None
        finally:
            for s in shares:
                s.wipe()

        try:
            keypair = self.decode_keypair(secret)
        except (ValueError, TypeError):
            # decoder messages may quote the secret; drop them
            raise CorruptShare("combined shares do not decode into a valid keypair") from None
        finally:
            _wipe(secret)

        if self.expected_address is not None and keypair.address != self.expected_address:
            address = keypair.address
            keypair.wipe()
            raise CorruptShare(
                f"reconstructed key {address} does not match custodial address {self.expected_address}"
            )
        _LOG.info("reconstructed custodial key address=%s", keypair.address)
        return keypair
