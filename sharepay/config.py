"""Runtime configuration for the settlement pipeline.

Every field can be passed to the constructor directly; ``from_env`` reads
the ``SHP_*`` environment variables:

    SHP_DB_PATH             – SQLite file for ledger + queue (default ./sharepay.sqlite3)
    SHP_MIN_WITHDRAWAL      – minimum pending amount to lock (default 3000)
    SHP_TOTAL_DECIMALS      – internal units per native coin (default 100000)
    SHP_SHARE_ENDPOINTS     – comma-separated share-holder base URLs
    SHP_SHARE_THRESHOLD     – shares needed to rebuild the key (default 3)
    SHP_SHARE_TIMEOUT       – per-endpoint HTTP timeout in seconds (default 10)
    SHP_NETWORK             – "solana" or "evm" (default solana)
    SHP_RPC_URL             – ledger JSON-RPC endpoint (default http://localhost:8899)
    SHP_CUSTODIAL_ADDRESS   – expected address of the reconstructed key
    SHP_EVM_CHAIN_ID        – chain id for the evm network (default 31337)
    SHP_TX_TIMEOUT          – confirmation wait in seconds (default 60)
    SHP_TX_POLL             – confirmation poll interval in seconds (default 2)
    SHP_LEASE_SECONDS       – queue lease length (default 300)
    SHP_MAX_ATTEMPTS        – deliveries before a job is dead-lettered (default 10)
    SHP_UNRESOLVED_DELAY    – seconds before an unknown submission is re-checked (default 30)
    SHP_WORKER_CONCURRENCY  – jobs in flight per process (default 4)
    SHP_DISPATCHER_KEY      – path to the dispatcher ed25519 key file
    SHP_TRUSTED_DISPATCHERS – comma-separated base64 dispatcher public keys
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

from .errors import ConfigError

NETWORKS = frozenset({"solana", "evm"})


def _split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class PayoutConfig:
    db_path: str = "./sharepay.sqlite3"
    min_withdrawal: int = 3000
    total_decimals: int = 100_000
    share_endpoints: list[str] = field(default_factory=list)
    share_threshold: int = 3
    share_timeout: float = 10.0
    network: str = "solana"
    rpc_url: str = "http://localhost:8899"
    custodial_address: str | None = None
    evm_chain_id: int = 31337
    tx_timeout: float = 60.0
    tx_poll: float = 2.0
    lease_seconds: float = 300.0
    max_attempts: int = 10
    unresolved_delay: float = 30.0
    worker_concurrency: int = 4
    dispatcher_key_path: str | None = None
    trusted_dispatchers: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise ConfigError on any out-of-range value."""
        if self.min_withdrawal <= 0:
            raise ConfigError("min_withdrawal must be positive")
        if self.total_decimals <= 0:
            raise ConfigError("total_decimals must be positive")
        if self.share_threshold < 2:
            raise ConfigError("share_threshold must be at least 2")
        if self.share_endpoints and len(self.share_endpoints) < self.share_threshold:
            raise ConfigError(
                f"{len(self.share_endpoints)} share endpoints configured, "
                f"threshold is {self.share_threshold}"
            )
        if self.network not in NETWORKS:
            raise ConfigError(f"Unknown network: {self.network}")
        if self.tx_timeout <= 0 or self.tx_poll <= 0:
            raise ConfigError("tx_timeout and tx_poll must be positive")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        if self.worker_concurrency < 1:
            raise ConfigError("worker_concurrency must be at least 1")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "PayoutConfig":
        """Build config from environment variables."""
        env = os.environ if env is None else env
        return cls(
            db_path=env.get("SHP_DB_PATH") or "./sharepay.sqlite3",
            min_withdrawal=_env_int(env, "SHP_MIN_WITHDRAWAL", 3000),
            total_decimals=_env_int(env, "SHP_TOTAL_DECIMALS", 100_000),
            share_endpoints=[
                url.rstrip("/") for url in _split_csv(env.get("SHP_SHARE_ENDPOINTS"))
            ],
            share_threshold=_env_int(env, "SHP_SHARE_THRESHOLD", 3),
            share_timeout=_env_float(env, "SHP_SHARE_TIMEOUT", 10.0),
            network=(env.get("SHP_NETWORK") or "solana").strip().lower(),
            rpc_url=env.get("SHP_RPC_URL") or "http://localhost:8899",
            custodial_address=env.get("SHP_CUSTODIAL_ADDRESS") or None,
            evm_chain_id=_env_int(env, "SHP_EVM_CHAIN_ID", 31337),
            tx_timeout=_env_float(env, "SHP_TX_TIMEOUT", 60.0),
            tx_poll=_env_float(env, "SHP_TX_POLL", 2.0),
            lease_seconds=_env_float(env, "SHP_LEASE_SECONDS", 300.0),
            max_attempts=_env_int(env, "SHP_MAX_ATTEMPTS", 10),
            unresolved_delay=_env_float(env, "SHP_UNRESOLVED_DELAY", 30.0),
            worker_concurrency=_env_int(env, "SHP_WORKER_CONCURRENCY", 4),
            dispatcher_key_path=env.get("SHP_DISPATCHER_KEY") or None,
            trusted_dispatchers=_split_csv(env.get("SHP_TRUSTED_DISPATCHERS")),
        )
