"""Tests for balance locking, finalize, unlock and the payout record."""

from __future__ import annotations

import threading

import pytest

from sharepay.errors import ApprovalRequired, InsufficientBalance, LedgerWriteConflict, NotFound, SharepayError
from sharepay.types import PayoutStatus


@pytest.fixture
def worker(ledger, worker_address):
    return ledger.register_worker(worker_address)


def _funded(ledger, worker, amount):
    ledger.credit(worker.id, amount)
    return worker.id


class TestAccounts:
    def test_register_is_idempotent(self, ledger, worker_address):
        a = ledger.register_worker(worker_address)
        b = ledger.register_worker(worker_address)
        assert a.id == b.id
        assert a.pending_amount == 0 and a.locked_amount == 0

    def test_credit_adds_to_pending(self, ledger, worker):
        ledger.credit(worker.id, 1200)
        account = ledger.credit(worker.id, 800)
        assert account.pending_amount == 2000

    def test_credit_rejects_non_positive(self, ledger, worker):
        with pytest.raises(ValueError):
            ledger.credit(worker.id, 0)

    def test_unknown_worker(self, ledger):
        with pytest.raises(NotFound):
            ledger.get_balance(999)
        with pytest.raises(NotFound):
            ledger.lock(999)

    def test_schema_init_is_idempotent(self, db, ledger):
        db._initialized = False
        db.init_schema()


class TestLock:
    def test_lock_moves_whole_pending(self, ledger, worker):
        wid = _funded(ledger, worker, 5000)
        assert ledger.lock(wid) == 5000
        balance = ledger.get_balance(wid)
        assert balance.pending_amount == 0
        assert balance.locked_amount == 5000

    def test_below_minimum_is_refused(self, ledger, worker):
        wid = _funded(ledger, worker, 1000)
        with pytest.raises(InsufficientBalance):
            ledger.lock(wid)
        balance = ledger.get_balance(wid)
        assert balance.pending_amount == 1000
        assert balance.locked_amount == 0

    def test_exactly_minimum_locks(self, ledger, worker):
        wid = _funded(ledger, worker, 3000)
        assert ledger.lock_for_payout(wid).amount == 3000

    def test_lock_adds_to_existing_locked(self, ledger, worker):
        wid = _funded(ledger, worker, 3000)
        ledger.lock(wid)
        ledger.credit(wid, 4000)
        result = ledger.lock_for_payout(wid)
        assert result.amount == 4000
        assert result.locked_amount == 7000

    def test_concurrent_locks_move_funds_once(self, ledger, worker):
        wid = _funded(ledger, worker, 6000)
        results, errors = [], []
        barrier = threading.Barrier(8)

        def attempt():
            barrier.wait()
            try:
                results.append(ledger.lock_for_payout(wid))
            except InsufficientBalance as e:
                errors.append(e)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert results[0].amount == 6000
        assert len(errors) == 7
        balance = ledger.get_balance(wid)
        assert balance.pending_amount == 0
        assert balance.locked_amount == 6000

    def test_write_deadline_surfaces_conflict(self, db, ledger, worker, monkeypatch):
        monkeypatch.setenv("SHP_SQLITE_WRITE_DEADLINE_MS", "250")
        monkeypatch.setenv("SHP_SQLITE_BUSY_TIMEOUT_MS", "10")
        monkeypatch.setenv("SHP_SQLITE_CONNECT_TIMEOUT_MS", "10")
        wid = _funded(ledger, worker, 5000)
        with db.write_tx():
            with pytest.raises(LedgerWriteConflict):
                ledger.lock(wid)
        assert ledger.get_balance(wid).pending_amount == 5000


class TestFinalize:
    def test_success_settles_once(self, ledger, worker):
        wid = _funded(ledger, worker, 5000)
        ledger.lock(wid)
        assert ledger.finalize_success(wid, 5000, "SIG1") is True
        assert ledger.finalize_success(wid, 5000, "SIG1") is False

        balance = ledger.get_balance(wid)
        assert balance.locked_amount == 0
        assert balance.paid_amount == 5000
        history = ledger.payout_history(wid)
        assert [(p.status, p.signature) for p in history] == [(PayoutStatus.SUCCESS, "SIG1")]

    def test_success_promotes_pending_record(self, ledger, worker):
        wid = _funded(ledger, worker, 5000)
        ledger.lock(wid)
        pending = ledger.record_submission(wid, "job-1", 5000, "SIG1", expiry_ref=77)
        assert pending.status is PayoutStatus.PENDING
        assert pending.expiry_ref == 77
        ledger.finalize_success(wid, 5000, "SIG1", job_id="job-1")

        history = ledger.payout_history(wid)
        assert len(history) == 1
        assert history[0].status is PayoutStatus.SUCCESS
        assert ledger.find_job_payout("job-1").status is PayoutStatus.SUCCESS

    def test_success_refuses_more_than_locked(self, ledger, worker):
        wid = _funded(ledger, worker, 3000)
        ledger.lock(wid)
        with pytest.raises(SharepayError, match="below settled amount"):
            ledger.finalize_success(wid, 4000, "SIG1")
        assert ledger.get_balance(wid).locked_amount == 3000

    def test_record_submission_is_idempotent_per_job(self, ledger, worker):
        wid = _funded(ledger, worker, 5000)
        first = ledger.record_submission(wid, "job-1", 5000, "SIG1")
        again = ledger.record_submission(wid, "job-1", 5000, "SIG2")
        assert again.id == first.id
        assert again.signature == "SIG1"

    def test_failure_keeps_funds_locked(self, ledger, worker):
        wid = _funded(ledger, worker, 5000)
        ledger.lock(wid)
        record = ledger.finalize_failure(wid, 5000, "SharesRequested: InsufficientShares", job_id="job-1")
        assert record.status is PayoutStatus.FAILED
        assert record.ambiguous is False
        balance = ledger.get_balance(wid)
        assert balance.locked_amount == 5000
        assert balance.pending_amount == 0

    def test_failure_moves_pending_record(self, ledger, worker):
        wid = _funded(ledger, worker, 5000)
        ledger.lock(wid)
        ledger.record_submission(wid, "job-1", 5000, "SIG1")
        record = ledger.finalize_failure(wid, 5000, "expired", job_id="job-1", signature="SIG1")
        assert record.status is PayoutStatus.FAILED
        assert len(ledger.payout_history(wid)) == 1

    def test_find_job_payout_prefers_success(self, ledger, worker):
        wid = _funded(ledger, worker, 5000)
        ledger.lock(wid)
        assert ledger.find_job_payout("job-1") is None
        ledger.finalize_failure(wid, 5000, "first try", job_id="job-1")
        assert ledger.find_job_payout("job-1").status is PayoutStatus.FAILED
        ledger.finalize_success(wid, 5000, "SIG1", job_id="job-1")
        assert ledger.find_job_payout("job-1").status is PayoutStatus.SUCCESS


class TestUnlockFailed:
    def test_unlock_returns_funds_to_pending(self, ledger, worker):
        wid = _funded(ledger, worker, 5000)
        ledger.lock(wid)
        failed = ledger.finalize_failure(wid, 5000, "no quorum", job_id="job-1")
        account = ledger.unlock_failed(failed.id)
        assert account.pending_amount == 5000
        assert account.locked_amount == 0

    def test_unlock_only_once(self, ledger, worker):
        wid = _funded(ledger, worker, 5000)
        ledger.lock(wid)
        failed = ledger.finalize_failure(wid, 5000, "no quorum", job_id="job-1")
        ledger.unlock_failed(failed.id)
        with pytest.raises(SharepayError, match="already unlocked"):
            ledger.unlock_failed(failed.id)

    def test_ambiguous_failure_needs_approver(self, ledger, worker):
        wid = _funded(ledger, worker, 5000)
        ledger.lock(wid)
        ledger.record_submission(wid, "job-1", 5000, "SIG1")
        failed = ledger.finalize_failure(wid, 5000, "timeout", job_id="job-1", signature="SIG1", ambiguous=True)
        with pytest.raises(ApprovalRequired):
            ledger.unlock_failed(failed.id)
        account = ledger.unlock_failed(failed.id, approved_by="ops@example")
        assert account.pending_amount == 5000

    def test_cannot_unlock_success(self, ledger, worker):
        wid = _funded(ledger, worker, 5000)
        ledger.lock(wid)
        ledger.finalize_success(wid, 5000, "SIG1", job_id="job-1")
        payout = ledger.find_job_payout("job-1")
        with pytest.raises(SharepayError, match="not Failed"):
            ledger.unlock_failed(payout.id)

    def test_unknown_payout(self, ledger):
        with pytest.raises(NotFound):
            ledger.unlock_failed(12345)


class TestConservation:
    def test_holds_through_lifecycle(self, ledger, worker):
        wid = _funded(ledger, worker, 4000)
        assert ledger.check_conservation(wid)
        ledger.lock(wid)
        assert ledger.check_conservation(wid)
        failed = ledger.finalize_failure(wid, 4000, "no quorum")
        ledger.unlock_failed(failed.id)
        assert ledger.check_conservation(wid)
        ledger.credit(wid, 1000)
        ledger.lock(wid)
        ledger.finalize_success(wid, 5000, "SIG1")
        assert ledger.check_conservation(wid)
        balance = ledger.get_balance(wid)
        assert (balance.pending_amount, balance.locked_amount, balance.paid_amount) == (0, 0, 5000)
