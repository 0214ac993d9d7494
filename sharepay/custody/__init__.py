"""Threshold custody: share collection and key reconstruction."""

from .keys import KeyReconstructor, SolanaKeypair
from .shamir import combine_shares, split_secret
from .shares import Share, ShareFetcher, format_share, parse_share

__all__ = [
    "KeyReconstructor",
    "Share",
    "ShareFetcher",
    "SolanaKeypair",
    "combine_shares",
    "format_share",
    "parse_share",
    "split_secret",
]
