"""Tests for configuration loading and validation."""

import pytest

from sharepay.config import PayoutConfig
from sharepay.db import SqliteDB
from sharepay.errors import ConfigError
from sharepay.network import SolanaLedgerClient, build_ledger_client
from sharepay.settlement import PayoutDispatcher, SettlementWorker


class TestFromEnv:
    def test_defaults(self):
        config = PayoutConfig.from_env({})
        assert config.min_withdrawal == 3000
        assert config.total_decimals == 100_000
        assert config.share_threshold == 3
        assert config.network == "solana"
        assert config.share_endpoints == []
        assert config.trusted_dispatchers == []

    def test_reads_variables(self):
        config = PayoutConfig.from_env({
            "SHP_DB_PATH": "/tmp/x.sqlite3",
            "SHP_MIN_WITHDRAWAL": "5000",
            "SHP_SHARE_ENDPOINTS": "http://a/, http://b,http://c ",
            "SHP_SHARE_THRESHOLD": "2",
            "SHP_NETWORK": "EVM",
            "SHP_TX_TIMEOUT": "12.5",
            "SHP_TRUSTED_DISPATCHERS": "k1,k2",
        })
        assert config.db_path == "/tmp/x.sqlite3"
        assert config.min_withdrawal == 5000
        assert config.share_endpoints == ["http://a", "http://b", "http://c"]
        assert config.share_threshold == 2
        assert config.network == "evm"
        assert config.tx_timeout == 12.5
        assert config.trusted_dispatchers == ["k1", "k2"]

    def test_non_numeric(self):
        with pytest.raises(ConfigError, match="SHP_MIN_WITHDRAWAL"):
            PayoutConfig.from_env({"SHP_MIN_WITHDRAWAL": "lots"})


class TestValidate:
    def test_threshold_floor(self):
        with pytest.raises(ConfigError):
            PayoutConfig(share_threshold=1)

    def test_fewer_endpoints_than_threshold(self):
        with pytest.raises(ConfigError, match="threshold"):
            PayoutConfig(share_endpoints=["http://a", "http://b"], share_threshold=3)

    def test_unknown_network(self):
        with pytest.raises(ConfigError, match="network"):
            PayoutConfig(network="bitcoin")

    @pytest.mark.parametrize("field", ["min_withdrawal", "total_decimals", "max_attempts", "worker_concurrency"])
    def test_positive_fields(self, field):
        with pytest.raises(ConfigError):
            PayoutConfig(**{field: 0})


class TestWiring:
    def test_solana_client_by_default(self):
        client = build_ledger_client(PayoutConfig(rpc_url="http://rpc.test"))
        assert isinstance(client, SolanaLedgerClient)
        assert client.rpc_url == "http://rpc.test"

    def test_worker_needs_endpoints(self, tmp_path):
        with pytest.raises(ConfigError, match="SHP_SHARE_ENDPOINTS"):
            SettlementWorker.from_config(PayoutConfig(db_path=str(tmp_path / "db.sqlite3")))

    def test_worker_from_config(self, tmp_path):
        config = PayoutConfig(
            db_path=str(tmp_path / "db.sqlite3"),
            share_endpoints=["http://a", "http://b", "http://c"],
            custodial_address="custodial",
            worker_concurrency=2,
        )
        worker = SettlementWorker.from_config(config)
        assert worker.ledger.db is worker.queue.db
        assert worker.reconstructor.threshold == 3
        assert worker.reconstructor.expected_address == "custodial"
        assert worker.max_concurrency == 2

    def test_dispatcher_needs_key(self, tmp_path):
        with pytest.raises(ConfigError, match="SHP_DISPATCHER_KEY"):
            PayoutDispatcher.from_config(PayoutConfig(db_path=str(tmp_path / "db.sqlite3")))

    def test_dispatcher_from_config(self, tmp_path):
        config = PayoutConfig(
            db_path=str(tmp_path / "db.sqlite3"),
            dispatcher_key_path=str(tmp_path / "dispatcher.key"),
        )
        dispatcher = PayoutDispatcher.from_config(config)
        assert (tmp_path / "dispatcher.key").exists()
        assert dispatcher.ledger.db is dispatcher.queue.db


class TestSqliteTuning:
    def test_malformed_value_is_rejected(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHP_SQLITE_BUSY_TIMEOUT_MS", "soon")
        with pytest.raises(ConfigError, match="SHP_SQLITE_BUSY_TIMEOUT_MS"):
            SqliteDB(path=str(tmp_path / "db.sqlite3")).init_schema()

    def test_blank_value_uses_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHP_SQLITE_WRITE_DEADLINE_MS", "  ")
        db = SqliteDB(path=str(tmp_path / "db.sqlite3"))
        db.init_schema()
        with db.connection() as con:
            assert con.execute("SELECT value FROM meta WHERE key='schema_version';").fetchone()["value"] == "1"
