"""
Signal Worker

Drains the persistent raw signal queue. Webhooks enqueue payloads and
return immediately; one or more workers claim pending rows (each row goes
to exactly one worker) and run them through the pipeline.

Rows a worker claimed but did not finish go back to PENDING: at the end of
run_once when processing is interrupted, and through the stale-claim
sweep for workers that died holding a claim.
"""

from datetime import timedelta
from typing import TYPE_CHECKING, List, Optional
import logging
import threading
import uuid

from strikeflow.errors import StoreUnavailableError
from strikeflow.pipeline.pipeline import SignalPipeline
from strikeflow.signals.schemas import utcnow

if TYPE_CHECKING:
    from strikeflow.persistence.store import TradeStore

LOG = logging.getLogger(__name__)


class SignalWorker:
    """Queue consumer running SignalPipeline.process_signal per claimed row"""

    def __init__(
        self,
        pipeline: SignalPipeline,
        store: 'TradeStore',
        worker_id: Optional[str] = None,
        batch_size: Optional[int] = None,
        poll_interval_seconds: Optional[float] = None,
        claim_timeout_seconds: Optional[float] = None,
    ):
        self.pipeline = pipeline
        self.store = store
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.batch_size = batch_size or pipeline.config.worker_batch_size
        self.poll_interval = poll_interval_seconds or pipeline.config.worker_poll_interval_seconds
        self.claim_timeout = claim_timeout_seconds or pipeline.config.worker_claim_timeout_seconds

        self.processed = 0
        self.succeeded = 0
        self.requeued = 0
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._running = False

    def run_once(self) -> int:
        """Claim and process one batch, returns number of rows handled"""
        self.release_stale_claims()
        claimed = self.store.claim_pending_signals(self.worker_id, self.batch_size)
        handled = 0
        try:
            for queue_id, payload in claimed:
                result = self.pipeline.process_signal(payload)
                self.store.complete_raw_signal(queue_id, result.tracking_id, result.success)
                handled += 1
                self.processed += 1
                if result.success:
                    self.succeeded += 1
        finally:
            if handled < len(claimed):
                self._requeue([queue_id for queue_id, _ in claimed[handled:]])
        if claimed:
            LOG.debug(f"{self.worker_id} processed {handled} queued signals")
        return handled

    def release_stale_claims(self) -> int:
        """Put rows claimed longer than the claim timeout back to PENDING"""
        cutoff = utcnow() - timedelta(seconds=self.claim_timeout)
        released = self.store.release_stale_signal_claims(cutoff)
        if released:
            LOG.warning(f"{self.worker_id}: released {released} stale queue claims")
        return released

    def _requeue(self, queue_ids: List[int]):
        try:
            count = self.store.requeue_raw_signals(queue_ids)
        except StoreUnavailableError as e:
            LOG.error(f"{self.worker_id}: could not requeue rows {queue_ids}: {e}")
            return
        self.requeued += count
        LOG.warning(f"{self.worker_id}: requeued {count} unfinished queued signals")

    def start(self):
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name=f"SignalWorker-{self.worker_id}",
            daemon=True
        )
        self._thread.start()
        LOG.info(f"Signal worker {self.worker_id} started")

    def stop(self):
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
        LOG.info(f"Signal worker {self.worker_id} stopped ({self.processed} processed)")

    @property
    def is_running(self) -> bool:
        return self._running

    def get_stats(self) -> dict:
        return {
            'worker_id': self.worker_id,
            'running': self._running,
            'processed': self.processed,
            'succeeded': self.succeeded,
            'requeued': self.requeued,
        }

    def _loop(self):
        while not self._stop_event.is_set():
            try:
                handled = self.run_once()
            except StoreUnavailableError as e:
                LOG.error(f"{self.worker_id}: store unavailable, backing off: {e}")
                handled = 0
            if handled == 0:
                self._stop_event.wait(self.poll_interval)
