"""Shared fixtures: temporary ledger database, fake share holders, fake network."""

from __future__ import annotations

import pytest

from sharepay.custody import KeyReconstructor, ShareFetcher, SolanaKeypair, split_secret
from sharepay.db import SqliteDB
from sharepay.jobs import DispatcherIdentity
from sharepay.ledger import BalanceLedger
from sharepay.queue import SettlementQueue
from sharepay.settlement import PayoutDispatcher, SettlementWorker

from fakes import ENDPOINTS, FakeLedgerClient, FakeShareSession, share_answers


@pytest.fixture
def db(tmp_path):
    return SqliteDB(path=str(tmp_path / "sharepay.sqlite3"))


@pytest.fixture
def ledger(db):
    return BalanceLedger(db, min_withdrawal=3000)


@pytest.fixture
def queue(db):
    return SettlementQueue(db, lease_seconds=300, max_attempts=3)


@pytest.fixture
def identity():
    return DispatcherIdentity.generate()


@pytest.fixture
def dispatcher(ledger, queue, identity):
    return PayoutDispatcher(ledger, queue, identity)


@pytest.fixture
def custodial():
    return SolanaKeypair.generate()


@pytest.fixture
def shares(custodial):
    """Five shares of the custodial secret, any three rebuild it."""
    return split_secret(custodial.to_secret(), 5, 3)


@pytest.fixture
def share_session(shares):
    return FakeShareSession(share_answers(shares))


@pytest.fixture
def network():
    return FakeLedgerClient()


@pytest.fixture
def worker_address():
    return SolanaKeypair.generate().address


@pytest.fixture
def settlement(ledger, queue, share_session, custodial, network, identity):
    return SettlementWorker(
        ledger=ledger,
        queue=queue,
        fetcher=ShareFetcher(ENDPOINTS, timeout=1.0, session=share_session),
        reconstructor=KeyReconstructor(
            3, decode_keypair=network.decode_keypair, expected_address=custodial.address
        ),
        client=network,
        trusted_dispatchers=[identity.public_key_base64],
        consumer="test-consumer",
        unresolved_delay=0,
        finalize_retries=2,
    )
