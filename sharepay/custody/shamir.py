"""Shamir secret sharing over GF(2^8).

Each byte of the secret is the constant term of its own random
polynomial of degree ``threshold - 1``. A share is the x-coordinate
(1..255) followed by that polynomial's value at x for every secret
byte, so a share is one byte longer than the secret.
"""

from __future__ import annotations

import secrets
from typing import Sequence

# GF(2^8) with the AES reduction polynomial x^8 + x^4 + x^3 + x + 1 and
# generator 3.
_EXP = [0] * 512
_LOG = [0] * 256


def _build_tables() -> None:
    x = 1
    for i in range(255):
        _EXP[i] = x
        _LOG[x] = i
        # multiply by the generator 3 == x * 2 ^ x
        x2 = x << 1
        if x2 & 0x100:
            x2 ^= 0x11B
        x = x2 ^ x
    for i in range(255, 512):
        _EXP[i] = _EXP[i - 255]


_build_tables()

MAX_SHARES = 255


def gf_mul(a: int, b: int) -> int:
    if a == 0 or b == 0:
        return 0
    return _EXP[_LOG[a] + _LOG[b]]


def gf_div(a: int, b: int) -> int:
    if b == 0:
        raise ZeroDivisionError("division by zero in GF(256)")
    if a == 0:
        return 0
    return _EXP[(_LOG[a] - _LOG[b]) % 255]


def _eval_poly(coeffs: Sequence[int], x: int) -> int:
    # Horner, highest degree first
    y = 0
    for c in reversed(coeffs):
        y = gf_mul(y, x) ^ c
    return y


def split_secret(secret: bytes, shares: int, threshold: int) -> list[bytes]:
    """Split *secret* into *shares* shares, any *threshold* of which recover it."""
    if not secret:
        raise ValueError("secret must be non-empty")
    if threshold < 2:
        raise ValueError("threshold must be at least 2")
    if shares < threshold:
        raise ValueError("shares must be >= threshold")
    if shares > MAX_SHARES:
        raise ValueError(f"at most {MAX_SHARES} shares are supported")

    out = [bytearray([x]) for x in range(1, shares + 1)]
    for byte in secret:
        coeffs = [byte] + list(secrets.token_bytes(threshold - 1))
        for share in out:
            share.append(_eval_poly(coeffs, share[0]))
        coeffs[:] = [0] * len(coeffs)
    return [bytes(s) for s in out]


def combine_shares(shares: Sequence[bytes | bytearray]) -> bytearray:
    """Interpolate the secret at x=0 from raw shares.

    All supplied shares are used. Points that do not lie on one
    polynomial (a tampered or foreign share) produce a wrong secret
    rather than an error; callers must validate the result.

    Raises:
        ValueError: On empty input, inconsistent lengths, a zero
            x-coordinate, or one x-coordinate carrying two different values.
    """
    if not shares:
        raise ValueError("no shares supplied")
    by_x: dict[int, bytes | bytearray] = {}
    for share in shares:
        if len(share) < 2:
            raise ValueError("share too short")
        x = share[0]
        if x == 0:
            raise ValueError("share x-coordinate must be non-zero")
        seen = by_x.get(x)
        if seen is not None and seen != share:
            raise ValueError(f"conflicting shares for x={x}")
        by_x[x] = share

    points = list(by_x.values())
    length = len(points[0])
    if any(len(p) != length for p in points):
        raise ValueError("shares have different lengths")

    xs = [p[0] for p in points]
    # Lagrange basis at zero: l_i(0) = prod_{j != i} x_j / (x_j - x_i)
    basis = []
    for i, xi in enumerate(xs):
        num, den = 1, 1
        for j, xj in enumerate(xs):
            if i != j:
                num = gf_mul(num, xj)
                den = gf_mul(den, xj ^ xi)
        basis.append(gf_div(num, den))

    secret = bytearray(length - 1)
    for pos in range(1, length):
        acc = 0
        for li, p in zip(basis, points):
            acc ^= gf_mul(p[pos], li)
        secret[pos - 1] = acc
    return secret


def distinct_indices(shares: Sequence[bytes | bytearray]) -> int:
    """Number of different x-coordinates in *shares*."""
    return len({s[0] for s in shares if len(s) > 0})
