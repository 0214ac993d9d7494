"""Fetch key shares from the independent share-holder services.

Each holder exposes ``GET {endpoint}/share`` returning
``{"share": "<comma separated byte values>"}``. No single holder is
trusted; whether enough shares arrived is decided by the reconstructor.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

import requests

_LOG = logging.getLogger(__name__)


@dataclass
class Share:
    """One fragment: byte 0 is the x-coordinate, the rest are y values."""

    raw: bytearray
    endpoint: str = ""

    @property
    def index(self) -> int:
        return self.raw[0]

    def wipe(self) -> None:
        for i in range(len(self.raw)):
            self.raw[i] = 0

    def __repr__(self) -> str:
        # never expose fragment bytes
        return f"Share(index={self.index if self.raw else None}, endpoint={self.endpoint!r})"


def parse_share(text: str) -> bytearray:
    """Decode ``"12,250,3"`` into bytes.

    Raises:
        ValueError: On anything that is not a list of 0..255 integers.
    """
    if not isinstance(text, str) or not text.strip():
        raise ValueError("share must be a non-empty string")
    out = bytearray()
    for part in text.split(","):
        value = int(part.strip())
        if not 0 <= value <= 255:
            raise ValueError(f"share byte out of range: {value}")
        out.append(value)
    if len(out) < 2:
        raise ValueError("share too short")
    return out


def format_share(raw: bytes) -> str:
    """Inverse of parse_share."""
    return ",".join(str(b) for b in raw)


class ShareFetcher:
    """Parallel, single-shot share collection."""

    def __init__(
        self,
        endpoints: list[str],
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        if not endpoints:
            raise ValueError("At least one share endpoint is required")
        self.endpoints = [url.rstrip("/") for url in endpoints]
        self.timeout = timeout
        self._session = session or requests.Session()

    def fetch(self) -> list[Share]:
        """Ask every endpoint once; return the shares that arrived intact.

        Failed or malformed responses are logged and skipped. No retry.
        """
        with ThreadPoolExecutor(max_workers=len(self.endpoints)) as pool:
            results = list(pool.map(self._fetch_one, self.endpoints))
        shares = [s for s in results if s is not None]
        _LOG.info("collected %s of %s shares", len(shares), len(self.endpoints))
        return shares

    def _fetch_one(self, endpoint: str) -> Optional[Share]:
        url = f"{endpoint}/share"
        try:
            resp = self._session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            _LOG.warning("share endpoint unreachable url=%s error=%s", url, e)
            return None

        if resp.status_code != 200:
            _LOG.warning("share endpoint error url=%s status=%s", url, resp.status_code)
            return None

        try:
            body = resp.json()
            raw = parse_share(body["share"])
        except (ValueError, KeyError, TypeError) as e:
            # error text could echo fragment bytes; log only its type
            _LOG.warning("malformed share payload url=%s error=%s", url, type(e).__name__)
            return None
        return Share(raw=raw, endpoint=endpoint)
