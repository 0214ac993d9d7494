"""Tests for the EVM transfer submitter against a fake web3 ``eth`` namespace.

No chain is needed; skipped when the evm extra is not installed.
"""

import pytest

pytestmark = pytest.mark.skipif(
    not __import__("importlib").util.find_spec("eth_account"),
    reason="evm extras not installed (pip install -e '.[evm]')",
)

# Anvil default account #0 and #1
ANVIL_PK0 = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
ANVIL_ADDR0 = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
ANVIL_WORKER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


class FakeEth:
    def __init__(self):
        self.sent = []
        self.receipts = {}
        self.known = set()
        self.nonce = {"pending": 4, "latest": 4}
        self.gas_price = 1_000_000_000
        self.send_error = None
        self.wait_error = None
        self.count_error = None

    def get_transaction_count(self, address, block):
        if self.count_error is not None:
            raise self.count_error
        return self.nonce[block]

    def send_raw_transaction(self, raw):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(raw)

    def wait_for_transaction_receipt(self, tx_hash, timeout=None, poll_latency=None):
        if self.wait_error is not None:
            raise self.wait_error
        return self.receipts[tx_hash.hex().removeprefix("0x")]

    def get_transaction_receipt(self, tx_hash):
        from web3.exceptions import TransactionNotFound

        receipt = self.receipts.get(tx_hash.hex().removeprefix("0x"))
        if receipt is None:
            raise TransactionNotFound("not found")
        return receipt

    def get_transaction(self, tx_hash):
        from web3.exceptions import TransactionNotFound

        if tx_hash.hex().removeprefix("0x") not in self.known:
            raise TransactionNotFound("not found")
        return {"hash": tx_hash}


class FakeWeb3:
    def __init__(self):
        self.eth = FakeEth()


def _key(sig):
    return sig.removeprefix("0x")


@pytest.fixture
def w3():
    return FakeWeb3()


@pytest.fixture
def client(w3):
    from sharepay.network.evm import EvmLedgerClient

    return EvmLedgerClient(
        rpc_url="http://localhost:8545",
        chain_id=31337,
        total_decimals=100_000,
        custodial_address=ANVIL_ADDR0,
        timeout=1,
        poll_latency=0.01,
        w3=w3,
    )


@pytest.fixture
def keypair():
    from sharepay.network.evm import EvmKeypair

    return EvmKeypair.from_secret(ANVIL_PK0.encode())


class TestEvmKeypair:
    def test_address_from_hex_secret(self, keypair):
        assert keypair.address == ANVIL_ADDR0

    def test_secret_without_prefix(self):
        from sharepay.network.evm import EvmKeypair

        assert EvmKeypair.from_secret(ANVIL_PK0[2:].encode()).address == ANVIL_ADDR0

    def test_rejects_short_secret(self):
        from sharepay.network.evm import EvmKeypair

        with pytest.raises(ValueError):
            EvmKeypair.from_secret(b"0x1234")

    def test_wiped_on_exit(self, keypair):
        from sharepay.errors import SignatureError

        with keypair:
            pass
        assert keypair._key == bytearray(32)
        with pytest.raises(SignatureError):
            keypair.sign_transaction({})


class TestEvmTransfer:
    def test_prepare_knows_hash_before_send(self, client, keypair, w3):
        from web3 import Web3

        prepared = client.prepare_transfer(keypair, ANVIL_WORKER, client.to_native(5000))
        assert prepared.native_amount == 5 * 10**16
        assert prepared.expiry_ref == 4
        assert prepared.recipient == ANVIL_WORKER
        assert Web3.keccak(prepared.raw).hex().removeprefix("0x") == _key(prepared.signature)
        assert w3.eth.sent == []

    def test_rejects_self_transfer(self, client, keypair):
        from sharepay.errors import SignatureError

        with pytest.raises(SignatureError):
            client.prepare_transfer(keypair, ANVIL_ADDR0, 10)

    def test_rejects_bad_address(self, client, keypair):
        from sharepay.errors import SignatureError

        with pytest.raises(SignatureError):
            client.prepare_transfer(keypair, "0xnothex", 10)

    def test_submit_mined(self, client, keypair, w3):
        prepared = client.prepare_transfer(keypair, ANVIL_WORKER, 10)
        w3.eth.receipts[_key(prepared.signature)] = {"status": 1}
        assert client.submit(prepared) == prepared.signature
        assert w3.eth.sent == [prepared.raw]

    def test_submit_reverted(self, client, keypair, w3):
        from sharepay.errors import SubmissionError

        prepared = client.prepare_transfer(keypair, ANVIL_WORKER, 10)
        w3.eth.receipts[_key(prepared.signature)] = {"status": 0}
        with pytest.raises(SubmissionError) as exc:
            client.submit(prepared)
        assert exc.value.ambiguous is False

    def test_submit_timeout(self, client, keypair, w3):
        from web3.exceptions import TimeExhausted

        from sharepay.errors import SubmissionTimeout

        prepared = client.prepare_transfer(keypair, ANVIL_WORKER, 10)
        w3.eth.wait_error = TimeExhausted("slow")
        with pytest.raises(SubmissionTimeout):
            client.submit(prepared)

    def test_status(self, client, keypair, w3):
        from sharepay.network.base import TransferStatus

        prepared = client.prepare_transfer(keypair, ANVIL_WORKER, 10)
        sig = prepared.signature
        assert client.get_transfer_status(sig, expiry_ref=4) is TransferStatus.UNKNOWN
        w3.eth.known.add(_key(sig))
        assert client.get_transfer_status(sig, expiry_ref=4) is TransferStatus.PENDING
        w3.eth.receipts[_key(sig)] = {"status": 1}
        assert client.get_transfer_status(sig, expiry_ref=4) is TransferStatus.CONFIRMED
        w3.eth.receipts[_key(sig)] = {"status": 0}
        assert client.get_transfer_status(sig, expiry_ref=4) is TransferStatus.FAILED

    def test_status_expired_when_nonce_reused(self, client, keypair, w3):
        from sharepay.network.base import TransferStatus

        prepared = client.prepare_transfer(keypair, ANVIL_WORKER, 10)
        w3.eth.nonce["latest"] = 5
        assert client.get_transfer_status(prepared.signature, expiry_ref=4) is TransferStatus.EXPIRED

    def test_node_rejection_is_definite(self, client, keypair, w3):
        from web3.exceptions import Web3RPCError

        from sharepay.errors import SubmissionError

        prepared = client.prepare_transfer(keypair, ANVIL_WORKER, 10)
        w3.eth.send_error = Web3RPCError("insufficient funds for gas * price + value")
        with pytest.raises(SubmissionError, match="insufficient funds") as exc:
            client.submit(prepared)
        assert exc.value.ambiguous is False
        assert exc.value.signature == prepared.signature
        assert w3.eth.sent == []

    def test_broadcast_transport_error_is_ambiguous(self, client, keypair, w3):
        import requests

        from sharepay.errors import SubmissionError

        prepared = client.prepare_transfer(keypair, ANVIL_WORKER, 10)
        w3.eth.send_error = requests.ReadTimeout("no answer")
        with pytest.raises(SubmissionError) as exc:
            client.submit(prepared)
        assert exc.value.ambiguous is True

    def test_nonce_rejection_before_signing(self, client, keypair, w3):
        from web3.exceptions import Web3RPCError

        from sharepay.errors import SubmissionError

        w3.eth.count_error = Web3RPCError("header not found")
        with pytest.raises(SubmissionError) as exc:
            client.prepare_transfer(keypair, ANVIL_WORKER, 10)
        assert exc.value.ambiguous is False

    def test_status_rpc_error_is_ambiguous(self, client, w3):
        from web3.exceptions import Web3RPCError

        from sharepay.errors import SubmissionError

        def refuse(tx_hash):
            raise Web3RPCError("rate limited")

        w3.eth.get_transaction_receipt = refuse
        with pytest.raises(SubmissionError) as exc:
            client.get_transfer_status("0x" + "ab" * 32, expiry_ref=4)
        assert exc.value.ambiguous is True
