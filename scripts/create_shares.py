#!/usr/bin/env python3
"""Split a custodial secret into threshold shares for the share holders.

The secret is read from stdin (base58 Solana secret key, or hex EVM
private key with --network evm) so it never lands in shell history.
Each share is written to the output file as an env entry in the form the
share endpoints serve:

    # SHARE_1
    SHARE="1,203,17,..."

Optional env:
     SHP_SHARE_THRESHOLD – default for --threshold (3)

Usage:
    python scripts/create_shares.py --shares 5 --threshold 3 --out shares.env < secret.txt
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from sharepay.custody import SolanaKeypair, format_share, split_secret


def _decode(secret: bytes, network: str) -> str:
    """Check the secret is a usable key and return its address."""
    if network == "evm":
        from sharepay.network.evm import EvmKeypair

        with EvmKeypair.from_secret(secret) as kp:
            return kp.address
    with SolanaKeypair.from_secret(secret) as kp:
        return kp.address


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.split("\n")[0])
    parser.add_argument("--shares", type=int, required=True, help="N, shares to create")
    parser.add_argument(
        "--threshold",
        type=int,
        default=int(os.environ.get("SHP_SHARE_THRESHOLD", "3")),
        help="K, shares needed to rebuild the key",
    )
    parser.add_argument("--network", choices=["solana", "evm"], default="solana")
    parser.add_argument("--out", default="shares.env", help="env file to write")
    args = parser.parse_args()

    secret = sys.stdin.buffer.read().strip()
    try:
        address = _decode(secret, args.network)
        shares = split_secret(secret, args.shares, args.threshold)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)

    lines = []
    for share in shares:
        lines.append(f"# SHARE_{share[0]}")
        lines.append(f'SHARE="{format_share(share)}"')
    out = Path(args.out)
    out.write_text("\n".join(lines) + "\n")
    out.chmod(0o600)

    print(f"custodial address = {address}")
    print(f"wrote {len(shares)} shares (threshold {args.threshold}) to {out}")


if __name__ == "__main__":
    main()
