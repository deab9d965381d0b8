"""
Background worker that executes reserved payments.
"""
import logging
import queue
import threading
from dataclasses import dataclass
from typing import List, Optional, Union
from app.services.payment_service import PaymentOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentJob:
    """A reserved payment waiting for its external charge."""
    payment_id: int


@dataclass(frozen=True)
class SettlementJob:
    """A fully paid event whose merchant settlement has not finished."""
    event_id: int


Job = Union[PaymentJob, SettlementJob]


class PaymentWorker:
    """Consumes payment and settlement jobs from a queue on a small pool of threads."""

    def __init__(self, orchestrator: PaymentOrchestrator, threads: int = 2):
        self.orchestrator = orchestrator
        self.thread_count = max(1, threads)
        self.jobs: "queue.Queue[Optional[Job]]" = queue.Queue()
        self._threads: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def submit(self, job: Job):
        self.jobs.put(job)
        logger.debug(f"Queued {job}")

    def recover(self) -> int:
        """
        Re-queue work left unfinished by an interrupted run: payments still
        reserved, then fully paid events that were never settled.
        """
        payment_ids = self.orchestrator.recoverable_payment_ids()
        for payment_id in payment_ids:
            self.submit(PaymentJob(payment_id))
        event_ids = self.orchestrator.settlement.recoverable_event_ids()
        for event_id in event_ids:
            self.submit(SettlementJob(event_id))
        if payment_ids or event_ids:
            logger.info(
                f"Recovered {len(payment_ids)} interrupted payment(s) and {len(event_ids)} settlement(s)"
            )
        return len(payment_ids) + len(event_ids)

    def process_next(self, block: bool = True, timeout: float = None) -> bool:
        """
        Execute one job. Returns False when the queue is empty (non-blocking)
        or a stop sentinel was received.
        """
        try:
            job = self.jobs.get(block=block, timeout=timeout)
        except queue.Empty:
            return False
        try:
            if job is None:
                return False
            self._execute(job)
        except Exception as e:
            # Leave the work in place; recover() picks it up again
            logger.error(f"{job} crashed: {e}", exc_info=True)
        finally:
            self.jobs.task_done()
        return True

    def _execute(self, job: Job):
        if isinstance(job, SettlementJob):
            settlement_id = self.orchestrator.settlement.settle_if_complete(job.event_id)
            logger.info(f"Settlement retry for event {job.event_id}: {settlement_id or 'skipped'}")
            return
        outcome = self.orchestrator.execute(job.payment_id)
        logger.info(f"Payment {job.payment_id} finished as {outcome.status.value}")

    def drain(self) -> int:
        """Process queued jobs on the calling thread until the queue is empty."""
        processed = 0
        while self.process_next(block=False):
            processed += 1
        return processed

    def start(self):
        if self.running:
            return
        self.recover()
        self._threads = [
            threading.Thread(target=self._run, name=f"payment-worker-{i}", daemon=True)
            for i in range(self.thread_count)
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"Payment worker started with {self.thread_count} thread(s)")

    def stop(self, timeout: float = 10.0):
        for _ in self._threads:
            self.jobs.put(None)
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Payment worker stopped")

    def _run(self):
        while self.process_next(block=True):
            pass
