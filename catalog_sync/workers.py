import logging
import threading
import time
from typing import Callable, Optional

from django.db import connections

from .exceptions import PermanentError
from .fetcher import FetchClientError, InvalidPayload
from .queue import JobQueue, SyncJob

logger = logging.getLogger(__name__)

_NON_RETRYABLE = (PermanentError, FetchClientError, InvalidPayload)


def is_retryable(exc: BaseException) -> bool:
    """Client errors, undecodable payloads and permanent errors are not worth retrying."""
    return not isinstance(exc, _NON_RETRYABLE)


def _error_text(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class WorkerPool:
    """
    Fixed-size pool of threads pulling jobs from a JobQueue.

    `handler(job)` does the work; returning normally acks the job, raising nacks
    it (retryable unless `is_retryable` says otherwise). `run_inline` processes
    the queue on the calling thread instead, for eager mode.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: Callable[[SyncJob], None],
        concurrency: int = 4,
        poll_interval: float = 0.5,
        name: str = 'sync-worker',
    ):
        if concurrency < 1:
            raise ValueError('concurrency must be at least 1')
        self._queue = queue
        self._handler = handler
        self._concurrency = concurrency
        self._poll_interval = poll_interval
        self._name = name
        self._threads = []
        self._stop = threading.Event()
        self._processed = 0
        self._processed_lock = threading.Lock()

    @property
    def processed(self) -> int:
        with self._processed_lock:
            return self._processed

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self):
        if self.is_running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._worker_loop,
                args=(f"{self._name}-{index}",),
                name=f"{self._name}-{index}",
                daemon=True,
            )
            for index in range(self._concurrency)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started %d worker thread(s).", self._concurrency)

    def stop(self, timeout: Optional[float] = None):
        """Signal workers to exit after their current job and wait for them."""
        self._stop.set()
        self._queue.wake_all()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Worker pool stopped after %d job(s).", self.processed)

    def drain(
        self,
        should_cancel: Optional[Callable[[], bool]] = None,
        on_cancel: Optional[Callable[[list], None]] = None,
        check_interval: float = 0.5,
    ) -> bool:
        """
        Run workers until the queue is empty.

        When `should_cancel()` turns true, pending jobs are discarded (handed to
        `on_cancel`) and in-flight jobs are left to finish. Returns False if the
        drain was cancelled.
        """
        self.start()
        cancelled = False
        try:
            while not self._queue.is_idle:
                if not cancelled and should_cancel is not None and should_cancel():
                    cancelled = True
                    discarded = self._queue.discard_pending()
                    logger.info("Drain cancelled; %d pending job(s) discarded.", len(discarded))
                    if on_cancel is not None:
                        on_cancel(discarded)
                    continue
                self._queue.wait_for_work(check_interval)
        finally:
            self.stop()
        return not cancelled

    def run_inline(
        self,
        should_cancel: Optional[Callable[[], bool]] = None,
        on_cancel: Optional[Callable[[list], None]] = None,
    ) -> bool:
        """Process every job on the calling thread. Same contract as `drain`."""
        cancelled = False
        while True:
            if not cancelled and should_cancel is not None and should_cancel():
                cancelled = True
                discarded = self._queue.discard_pending()
                logger.info("Inline run cancelled; %d pending job(s) discarded.", len(discarded))
                if on_cancel is not None:
                    on_cancel(discarded)

            self._queue.reap_expired()
            job = self._queue.dequeue_next('inline')
            if job is None:
                wait = self._queue.next_ready_in()
                if wait is None:
                    break
                time.sleep(wait)
                continue
            self._process(job, 'inline')
        return not cancelled

    # ------------------------------------------------------------------

    def _worker_loop(self, worker_id: str):
        try:
            while not self._stop.is_set():
                self._queue.reap_expired()
                job = self._queue.dequeue_next(worker_id)
                if job is None:
                    self._queue.wait_for_work(self._poll_interval)
                    continue
                self._process(job, worker_id)
        finally:
            # Django opens one connection per thread; release ours.
            connections.close_all()

    def _process(self, job: SyncJob, worker_id: str) -> bool:
        try:
            self._handler(job)
        except Exception as exc:
            retryable = is_retryable(exc)
            logger.warning(
                "Worker %s: job %s (%s) failed on attempt %d (%s): %s",
                worker_id, job.job_id, job.external_key, job.attempt,
                'retryable' if retryable else 'permanent', exc,
            )
            self._queue.nack(job.job_id, retryable=retryable, error=_error_text(exc), token=job.lease_token)
            return False
        else:
            self._queue.ack(job.job_id, token=job.lease_token)
            return True
        finally:
            with self._processed_lock:
                self._processed += 1
