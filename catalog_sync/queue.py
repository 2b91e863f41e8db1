"""
In-process priority job queue with lease-based ownership.

Jobs are handed out highest priority first and FIFO within a priority. A
dequeued job is leased to one worker until it is acked, nacked, or its lease
expires. At most one job per (supplier_code, external_key) is in flight.
"""
import heapq
import itertools
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from .fetcher import backoff_delay

logger = logging.getLogger(__name__)

PRIORITY_REMOVE = 20
PRIORITY_NEW = 10
PRIORITY_CHANGED = 5

ENTITY_PRODUCT = 'product'
ENTITY_VARIANT = 'variant'

ACTION_UPSERT = 'upsert'
ACTION_REMOVE = 'remove'
# Fetch a new manifest file only to learn which family it belongs to.
ACTION_RESOLVE = 'resolve'


def _new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class SyncJob:
    entity_type: str
    external_key: str
    source_url: str = ''
    priority: int = 0
    attempt: int = 1             # 1-based; the attempt this job represents
    max_attempts: int = 3
    action: str = ACTION_UPSERT
    content_hash: str = ''
    supplier_code: str = ''
    session_id: str = ''
    variant_sku: str = ''
    refs: tuple = ()             # (key, url, hash) manifest files of a family job
    last_error: str = ''
    job_id: str = field(default_factory=_new_job_id)
    lease_token: Optional[str] = None

    @property
    def ownership_key(self) -> tuple:
        return (self.supplier_code, self.external_key)


@dataclass
class _Lease:
    job: SyncJob
    worker_id: str
    expires_at: float


class JobQueue:
    def __init__(
        self,
        backoff_base: float = 10.0,
        backoff_max: float = 300.0,
        lease_timeout: float = 300.0,
        on_dead_letter: Optional[Callable[[SyncJob], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._lease_timeout = lease_timeout
        self._on_dead_letter = on_dead_letter
        self._clock = clock

        self._cond = threading.Condition()
        self._seq = itertools.count()
        self._ready = []        # heap of (-priority, seq, job)
        self._delayed = []      # heap of (ready_at, seq, job)
        self._leases = {}       # job_id -> _Lease
        self._owners = {}       # ownership_key -> job_id
        self._dead_letters = []
        self._stats = {'enqueued': 0, 'acked': 0, 'retried': 0, 'dead_lettered': 0, 'discarded': 0}

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, job: SyncJob, delay: float = 0.0) -> SyncJob:
        with self._cond:
            self._push(job, delay)
            self._stats['enqueued'] += 1
            self._cond.notify_all()
        logger.debug("Enqueued %s job %s for %s (priority %d).",
                     job.action, job.job_id, job.external_key, job.priority)
        return job

    def discard_pending(self, session_id: Optional[str] = None) -> list:
        """
        Drop queued jobs that were never handed to a worker.

        Retries of already dispatched jobs and in-flight jobs are kept so they
        can run to completion.
        """
        def _discard(job):
            return job.attempt == 1 and (session_id is None or job.session_id == session_id)

        with self._cond:
            discarded = [entry[2] for entry in self._ready + self._delayed if _discard(entry[2])]
            self._ready = [entry for entry in self._ready if not _discard(entry[2])]
            self._delayed = [entry for entry in self._delayed if not _discard(entry[2])]
            heapq.heapify(self._ready)
            heapq.heapify(self._delayed)
            self._stats['discarded'] += len(discarded)
            self._cond.notify_all()

        if discarded:
            logger.info("Discarded %d pending job(s).", len(discarded))
        return discarded

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def dequeue_next(self, worker_id: str = '') -> Optional[SyncJob]:
        """Lease the next runnable job to `worker_id`, or return None."""
        with self._cond:
            now = self._clock()
            self._promote_due(now)

            blocked = []
            job = None
            while self._ready:
                entry = heapq.heappop(self._ready)
                if entry[2].ownership_key in self._owners:
                    blocked.append(entry)
                    continue
                job = entry[2]
                break
            for entry in blocked:
                heapq.heappush(self._ready, entry)

            if job is None:
                return None

            leased = replace(job, lease_token=uuid.uuid4().hex)
            self._leases[job.job_id] = _Lease(leased, worker_id, now + self._lease_timeout)
            self._owners[job.ownership_key] = job.job_id

        logger.debug("Worker %s leased job %s (%s, attempt %d).",
                     worker_id, leased.job_id, leased.external_key, leased.attempt)
        return leased

    def ack(self, job_id: str, token: Optional[str] = None) -> bool:
        with self._cond:
            lease = self._take_lease(job_id, token)
            if lease is None:
                return False
            self._stats['acked'] += 1
            self._cond.notify_all()
        return True

    def nack(self, job_id: str, retryable: bool, error: str = '', token: Optional[str] = None) -> bool:
        with self._cond:
            lease = self._take_lease(job_id, token)
            if lease is None:
                return False
            dead = self._retry_or_dead_letter(lease.job, retryable, error)
            self._cond.notify_all()

        if dead is not None:
            self._notify_dead_letter(dead)
        return True

    def reap_expired(self) -> int:
        """Return jobs with expired leases to the queue as if nacked retryably."""
        dead_jobs = []
        with self._cond:
            now = self._clock()
            expired = [job_id for job_id, lease in self._leases.items() if lease.expires_at <= now]
            for job_id in expired:
                lease = self._take_lease(job_id, None)
                logger.warning("Lease on job %s (%s) held by worker %s expired.",
                               job_id, lease.job.external_key, lease.worker_id)
                dead = self._retry_or_dead_letter(lease.job, True, 'lease expired')
                if dead is not None:
                    dead_jobs.append(dead)
            if expired:
                self._cond.notify_all()

        for dead in dead_jobs:
            self._notify_dead_letter(dead)
        return len(expired)

    def wait_for_work(self, timeout: float) -> None:
        """Block until the queue changes or `timeout` seconds pass."""
        with self._cond:
            wait = self._next_ready_in_locked()
            if wait is not None and wait > 0:
                timeout = min(timeout, wait)
            if timeout > 0:
                self._cond.wait(timeout)

    def wake_all(self) -> None:
        with self._cond:
            self._cond.notify_all()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_idle(self) -> bool:
        with self._cond:
            return not (self._ready or self._delayed or self._leases)

    @property
    def pending_count(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._delayed)

    @property
    def in_flight_count(self) -> int:
        with self._cond:
            return len(self._leases)

    @property
    def dead_letters(self) -> list:
        with self._cond:
            return list(self._dead_letters)

    def in_flight(self) -> list:
        with self._cond:
            return [lease.job for lease in self._leases.values()]

    def next_ready_in(self) -> Optional[float]:
        """Seconds until a queued job becomes runnable; None when nothing is queued."""
        with self._cond:
            return self._next_ready_in_locked()

    def stats(self) -> dict:
        with self._cond:
            return dict(
                self._stats,
                pending=len(self._ready) + len(self._delayed),
                in_flight=len(self._leases),
            )

    def __len__(self):
        return self.pending_count

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _push(self, job: SyncJob, delay: float):
        if delay > 0:
            heapq.heappush(self._delayed, (self._clock() + delay, next(self._seq), job))
        else:
            heapq.heappush(self._ready, (-job.priority, next(self._seq), job))

    def _promote_due(self, now: float):
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job = heapq.heappop(self._delayed)
            heapq.heappush(self._ready, (-job.priority, next(self._seq), job))

    def _next_ready_in_locked(self) -> Optional[float]:
        if self._ready:
            return 0.0
        if self._delayed:
            return max(self._delayed[0][0] - self._clock(), 0.0)
        return None

    def _take_lease(self, job_id: str, token: Optional[str]) -> Optional[_Lease]:
        lease = self._leases.get(job_id)
        if lease is None:
            logger.warning("Job %s is not in flight; ignoring ack/nack.", job_id)
            return None
        if token is not None and token != lease.job.lease_token:
            logger.warning("Stale lease token for job %s; ignoring ack/nack.", job_id)
            return None
        del self._leases[job_id]
        if self._owners.get(lease.job.ownership_key) == job_id:
            del self._owners[lease.job.ownership_key]
        return lease

    def _retry_or_dead_letter(self, job: SyncJob, retryable: bool, error: str) -> Optional[SyncJob]:
        if not retryable or job.attempt >= job.max_attempts:
            dead = replace(job, lease_token=None, last_error=error)
            self._dead_letters.append(dead)
            self._stats['dead_lettered'] += 1
            logger.error(
                "Job %s (%s %s) dead-lettered after %d attempt(s): %s",
                job.job_id, job.action, job.external_key, job.attempt, error,
            )
            return dead

        delay = backoff_delay(job.attempt - 1, self._backoff_base, self._backoff_max)
        retry = replace(job, attempt=job.attempt + 1, lease_token=None, last_error=error)
        self._push(retry, delay)
        self._stats['retried'] += 1
        logger.warning(
            "Job %s (%s) failed on attempt %d/%d: %s. Retrying in %.1fs.",
            job.job_id, job.external_key, job.attempt, job.max_attempts, error, delay,
        )
        return None

    def _notify_dead_letter(self, job: SyncJob):
        if self._on_dead_letter is None:
            return
        try:
            self._on_dead_letter(job)
        except Exception:
            logger.exception("Dead-letter callback failed for job %s.", job.job_id)
