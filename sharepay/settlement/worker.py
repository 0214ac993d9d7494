"""Settlement worker: turn queued payout jobs into confirmed transfers.

Each job runs Locked -> SharesRequested -> KeyReconstructed -> Submitted
-> Finalized. The transfer is signed before it is broadcast and the
signature is written to the ledger as a Pending payout first, so a job
that is redelivered after a crash or an ambiguous broadcast looks the
transfer up on the network instead of sending a second one.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Iterable, Optional

import requests

from ..config import PayoutConfig
from ..custody.keys import KeyReconstructor
from ..custody.shares import ShareFetcher
from ..db import SqliteDB
from ..errors import ConfigError, JobError, LedgerWriteConflict, NotFound, SharepayError, SignatureError, SubmissionError
from ..jobs import verify_job
from ..ledger import BalanceLedger
from ..network import build_ledger_client
from ..network.base import LedgerClient, PreparedTransfer, TransferStatus
from ..queue import ClaimedJob, SettlementQueue
from ..types import PayoutRecord, PayoutStatus
from .states import OutcomeStatus, SettlementOutcome, SettlementRun, Stage

_LOG = logging.getLogger(__name__)

_ACKED = frozenset({
    OutcomeStatus.FINALIZED,
    OutcomeStatus.FAILED,
    OutcomeStatus.DUPLICATE,
    OutcomeStatus.REJECTED,
})


def default_consumer() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class SettlementWorker:
    """Claims jobs from the queue and settles them.

    Args:
        ledger: Balance ledger sharing a database with *queue*.
        queue: Durable job queue.
        fetcher: Collects key shares from the share holders.
        reconstructor: Rebuilds the custodial key from the shares.
        client: Ledger-network client used to sign, send and look up transfers.
        trusted_dispatchers: Base64 ed25519 keys allowed to sign jobs.
        max_concurrency: Jobs in flight at once in ``run``.
        unresolved_delay: Seconds before a job with an unknown transfer
            outcome is delivered again.
        finalize_retries: Attempts at the final ledger write before the
            job is handed back to the queue.
    """

    def __init__(
        self,
        ledger: BalanceLedger,
        queue: SettlementQueue,
        fetcher: ShareFetcher,
        reconstructor: KeyReconstructor,
        client: LedgerClient,
        trusted_dispatchers: Optional[Iterable[str]] = None,
        consumer: Optional[str] = None,
        max_concurrency: int = 4,
        unresolved_delay: float = 30.0,
        poll_interval: float = 1.0,
        finalize_retries: int = 5,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if finalize_retries < 1:
            raise ValueError("finalize_retries must be at least 1")
        self.ledger = ledger
        self.queue = queue
        self.fetcher = fetcher
        self.reconstructor = reconstructor
        self.client = client
        self.trusted_dispatchers = list(trusted_dispatchers or [])
        self.consumer = consumer or default_consumer()
        self.max_concurrency = max_concurrency
        self.unresolved_delay = unresolved_delay
        self.poll_interval = poll_interval
        self.finalize_retries = finalize_retries
        self._stop = threading.Event()

    @classmethod
    def from_config(cls, config: PayoutConfig, session: Optional[requests.Session] = None) -> "SettlementWorker":
        """Wire a worker from configuration, each collaborator built explicitly."""
        if not config.share_endpoints:
            raise ConfigError("SHP_SHARE_ENDPOINTS is required to run a settlement worker")
        db = SqliteDB(path=config.db_path)
        client = build_ledger_client(config)
        return cls(
            ledger=BalanceLedger(db, min_withdrawal=config.min_withdrawal),
            queue=SettlementQueue(db, lease_seconds=config.lease_seconds, max_attempts=config.max_attempts),
            fetcher=ShareFetcher(config.share_endpoints, timeout=config.share_timeout, session=session),
            reconstructor=KeyReconstructor(
                config.share_threshold,
                decode_keypair=client.decode_keypair,
                expected_address=config.custodial_address,
            ),
            client=client,
            trusted_dispatchers=config.trusted_dispatchers,
            max_concurrency=config.worker_concurrency,
            unresolved_delay=config.unresolved_delay,
        )

    # -- lifecycle -----------------------------------------------------------

    def stop(self) -> None:
        """Ask in-flight jobs that have not submitted yet to give their job back."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def run(self) -> None:
        """Poll the queue until ``stop`` is called, then drain in-flight jobs."""
        _LOG.info("settlement worker started consumer=%s concurrency=%s", self.consumer, self.max_concurrency)
        in_flight: set[Future] = set()
        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="settle") as pool:
            while not self._stop.is_set():
                if len(in_flight) >= self.max_concurrency:
                    _, in_flight = wait(in_flight, timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                    continue
                try:
                    job = self.queue.claim(self.consumer)
                except SharepayError as e:
                    _LOG.warning("claim failed consumer=%s error=%s", self.consumer, e)
                    job = None
                if job is None:
                    self._stop.wait(self.poll_interval)
                    continue
                future = pool.submit(self.handle, job)
                future.add_done_callback(self._report_crash)
                in_flight.add(future)
                in_flight = {f for f in in_flight if not f.done()}
        _LOG.info("settlement worker stopped consumer=%s", self.consumer)

    def _report_crash(self, future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            _LOG.error(
                "settlement handler crashed consumer=%s error=%s", self.consumer, error, exc_info=error
            )

    def run_once(self) -> Optional[SettlementOutcome]:
        """Claim and handle a single job. Returns None when the queue is idle."""
        job = self.queue.claim(self.consumer)
        if job is None:
            return None
        return self.handle(job)

    def handle(self, job: ClaimedJob) -> Optional[SettlementOutcome]:
        """Process *job* and ack or release it according to the outcome."""
        try:
            outcome = self.process(job)
        except Exception as e:
            _LOG.exception("settlement interrupted job=%s worker=%s; releasing", job.job_id, job.worker_id)
            self.queue.release(job.job_id, delay_seconds=self.unresolved_delay, error=f"{type(e).__name__}: {e}")
            return None

        if outcome.status in _ACKED:
            self.queue.ack(job.job_id)
        elif outcome.status is OutcomeStatus.UNRESOLVED:
            self.queue.release(job.job_id, delay_seconds=self.unresolved_delay, error=outcome.reason)
        else:
            self.queue.release(job.job_id, error="abandoned on shutdown")
        return outcome

    # -- pipeline ------------------------------------------------------------

    def process(self, job: ClaimedJob) -> SettlementOutcome:
        """Run one delivery of *job* to an outcome. Does not ack or release."""
        try:
            payload = verify_job(job.envelope, self.trusted_dispatchers)
        except (JobError, SignatureError) as e:
            _LOG.error("rejected job=%s error=%s", job.job_id, e)
            return SettlementOutcome(job.job_id, None, OutcomeStatus.REJECTED, reason=str(e))
        worker_id, amount = payload["worker_id"], payload["amount"]
        if job.envelope["object_id"] != job.job_id or worker_id != job.worker_id:
            _LOG.error("rejected job=%s error=queue entry does not match message", job.job_id)
            return SettlementOutcome(
                job.job_id, worker_id, OutcomeStatus.REJECTED, reason="queue entry does not match message"
            )

        prior = self.ledger.find_job_payout(job.job_id)
        if prior is not None:
            return self._redelivered(job, prior)

        run = SettlementRun(job.job_id, worker_id)
        try:
            account = self.ledger.get_account(worker_id)
            if account.locked_amount < amount:
                raise SharepayError(
                    f"locked amount {account.locked_amount} is below job amount {amount}"
                )
            native = self.client.to_native(amount)
            prepared = self._sign(run, account.address, native)
            if prepared is None:
                _LOG.info("abandoned job=%s worker=%s stage=%s", job.job_id, worker_id, run.stage.value)
                return SettlementOutcome(job.job_id, worker_id, OutcomeStatus.ABANDONED, run.stage)
            record = self.ledger.record_submission(
                worker_id, job.job_id, amount, prepared.signature, prepared.expiry_ref
            )
        except NotFound as e:
            # nothing to record a failure against
            _LOG.error("rejected job=%s worker=%s error=%s", job.job_id, worker_id, e)
            return SettlementOutcome(job.job_id, worker_id, OutcomeStatus.REJECTED, run.stage, reason=str(e))
        except LedgerWriteConflict as e:
            if not self._last_delivery(job):
                # nothing was broadcast; let the queue deliver it again
                raise
            return self._fail(run, amount, e)
        except SharepayError as e:
            return self._fail(run, amount, e)
        except Exception as e:
            # nothing was broadcast, so the failure is definite
            _LOG.exception("unexpected error job=%s worker=%s stage=%s", job.job_id, worker_id, run.stage.value)
            return self._fail(run, amount, e)

        return self._submit(run, job, record, prepared)

    def _last_delivery(self, job: ClaimedJob) -> bool:
        return job.attempts >= self.queue.max_attempts

    def _sign(self, run: SettlementRun, recipient: str, native_amount: int) -> Optional[PreparedTransfer]:
        """Collect shares, rebuild the key and sign. None means stop was requested."""
        if self.stopping:
            return None
        run.advance(Stage.SHARES_REQUESTED)
        shares = self.fetcher.fetch()
        if self.stopping:
            for share in shares:
                share.wipe()
            return None

        with self.reconstructor.reconstruct(shares) as keypair:
            run.advance(Stage.KEY_RECONSTRUCTED)
            if self.stopping:
                return None
            return self.client.prepare_transfer(keypair, recipient, native_amount)

    def _submit(
        self, run: SettlementRun, job: ClaimedJob, record: PayoutRecord, prepared: PreparedTransfer
    ) -> SettlementOutcome:
        # from here on the job is never abandoned
        try:
            self.client.submit(prepared)
        except SubmissionError as e:
            if e.ambiguous:
                _LOG.warning(
                    "submission outcome unknown job=%s worker=%s signature=%s error=%s",
                    run.job_id, run.worker_id, record.signature, e,
                )
                return self._resolve(run, job, record)
            return self._fail(run, record.amount, e, signature=record.signature)
        run.advance(Stage.SUBMITTED)
        return self._finalize(run, record.amount, record.signature)

    def _redelivered(self, job: ClaimedJob, prior: PayoutRecord) -> SettlementOutcome:
        if prior.status is PayoutStatus.SUCCESS:
            _LOG.info(
                "duplicate delivery job=%s worker=%s signature=%s",
                job.job_id, prior.worker_id, prior.signature,
            )
            return SettlementOutcome(
                job.job_id, prior.worker_id, OutcomeStatus.DUPLICATE, Stage.FINALIZED, prior.signature
            )
        if prior.status is PayoutStatus.FAILED:
            _LOG.info("job already failed job=%s worker=%s payout=%s", job.job_id, prior.worker_id, prior.id)
            return SettlementOutcome(
                job.job_id, prior.worker_id, OutcomeStatus.FAILED, Stage.FAILED, prior.signature, prior.reason
            )
        # a Pending record means the transfer was signed and possibly sent
        run = SettlementRun.resume(job.job_id, prior.worker_id, Stage.KEY_RECONSTRUCTED)
        return self._resolve(run, job, prior)

    def _resolve(self, run: SettlementRun, job: ClaimedJob, record: PayoutRecord) -> SettlementOutcome:
        """Decide a recorded submission from what the network knows about it."""
        try:
            status = self.client.get_transfer_status(record.signature, record.expiry_ref)
        except SubmissionError as e:
            _LOG.warning("status lookup failed job=%s signature=%s error=%s", run.job_id, record.signature, e)
            status = TransferStatus.UNKNOWN

        if status is TransferStatus.CONFIRMED:
            run.advance(Stage.SUBMITTED)
            return self._finalize(run, record.amount, record.signature)
        if status in (TransferStatus.FAILED, TransferStatus.EXPIRED):
            return self._fail(
                run,
                record.amount,
                SubmissionError(f"transfer {record.signature} {status.value}", signature=record.signature),
                signature=record.signature,
            )
        if self._last_delivery(job):
            # hand it to an operator; unlocking will need approval
            return self._fail(
                run,
                record.amount,
                SubmissionError(
                    f"transfer {record.signature} still {status.value} after {job.attempts} deliveries",
                    signature=record.signature,
                    ambiguous=True,
                ),
                signature=record.signature,
            )
        _LOG.info(
            "unresolved job=%s worker=%s signature=%s status=%s",
            run.job_id, run.worker_id, record.signature, status.value,
        )
        return SettlementOutcome(
            run.job_id, run.worker_id, OutcomeStatus.UNRESOLVED, run.stage,
            record.signature, reason=f"transfer {status.value}",
        )

    def _finalize(self, run: SettlementRun, amount: int, signature: str) -> SettlementOutcome:
        attempt = 0
        while True:
            attempt += 1
            try:
                applied = self.ledger.finalize_success(run.worker_id, amount, signature, job_id=run.job_id)
                break
            except LedgerWriteConflict as e:
                _LOG.warning(
                    "finalize conflict job=%s signature=%s attempt=%s/%s error=%s",
                    run.job_id, signature, attempt, self.finalize_retries, e,
                )
                if attempt >= self.finalize_retries:
                    raise
                time.sleep(min(0.1 * 2**attempt, 2.0))
        run.advance(Stage.FINALIZED)
        status = OutcomeStatus.FINALIZED if applied else OutcomeStatus.DUPLICATE
        return SettlementOutcome(run.job_id, run.worker_id, status, Stage.FINALIZED, signature)

    def _fail(
        self,
        run: SettlementRun,
        amount: int,
        error: Exception,
        signature: Optional[str] = None,
    ) -> SettlementOutcome:
        failed_at = run.fail()
        ambiguous = isinstance(error, SubmissionError) and error.ambiguous
        reason = f"{failed_at.value}: {type(error).__name__}: {error}"
        _LOG.error(
            "settlement failed job=%s worker=%s stage=%s error=%s",
            run.job_id, run.worker_id, failed_at.value, error,
        )
        self.ledger.finalize_failure(
            run.worker_id,
            amount,
            reason,
            job_id=run.job_id,
            signature=signature,
            ambiguous=ambiguous,
        )
        return SettlementOutcome(run.job_id, run.worker_id, OutcomeStatus.FAILED, failed_at, signature, reason)
