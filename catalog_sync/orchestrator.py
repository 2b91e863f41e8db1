import logging
from collections import defaultdict
from typing import Iterable, Optional

from django.utils import timezone

from .diff import DiffResult, classify
from .fanout import FanOut
from .fetcher import FetchError, ResilientFetcher
from .ledger import SessionLedger
from .manifest import family_hash, filter_for_supplier, manifest_url, parse_manifest
from .models import Category, Supplier, SyncJobOutcome, SyncSession
from .queue import (
    ACTION_REMOVE,
    ACTION_RESOLVE,
    ACTION_UPSERT,
    ENTITY_PRODUCT,
    ENTITY_VARIANT,
    PRIORITY_CHANGED,
    PRIORITY_NEW,
    PRIORITY_REMOVE,
    JobQueue,
    SyncJob,
)
from .transformer import family_id, transform_family
from .workers import WorkerPool

logger = logging.getLogger(__name__)

# How many jobs to enqueue between two stop-flag checks.
STOP_CHECK_EVERY = 50


class SyncJobHandler:
    """
    Processes one job.

    Resolve jobs fetch a new manifest file to learn its family id and keep the
    document for the family job. Family jobs fetch (or reuse) every file of the
    family, transform them into one product and fan it out.
    """

    def __init__(self, fetcher: ResilientFetcher, fanout: FanOut, ledger: SessionLedger,
                 document_timeout: Optional[float] = None, known_categories=None):
        self.fetcher = fetcher
        self.fanout = fanout
        self.ledger = ledger
        self.document_timeout = document_timeout
        self.known_categories = known_categories
        self.documents = {}     # source url -> raw document fetched while resolving
        self.resolved = {}      # manifest key -> family id

    def __call__(self, job: SyncJob) -> None:
        if job.action == ACTION_RESOLVE:
            raw = self.fetcher.fetch_json(job.source_url, timeout=self.document_timeout)
            self.documents[job.source_url] = raw
            self.resolved[job.external_key] = family_id(raw, default=job.external_key)
            return

        if job.action == ACTION_REMOVE:
            result = self.fanout.remove_product(job.supplier_code, job.external_key)
            status = SyncJobOutcome.STATUS_REMOVED
        else:
            refs = job.refs or ((job.external_key, job.source_url, job.content_hash),)
            raws = [self._document(url) for _, url, _ in refs]
            content_hash = job.content_hash
            if job.entity_type == ENTITY_VARIANT and not content_hash:
                # Variant refreshes keep the product's feed hash.
                stored = self.fanout.system_of_record.find_by_key(job.supplier_code, job.external_key)
                if stored is not None:
                    content_hash = stored.promidata_hash or ''
            product = transform_family(
                raws,
                a_number=job.external_key,
                content_hash=content_hash,
                supplier_code=job.supplier_code,
                source_url=job.source_url,
                known_categories=self.known_categories,
            )
            if job.entity_type == ENTITY_VARIANT:
                result = self.fanout.apply_variant(product, job.variant_sku)
            else:
                result = self.fanout.apply_product(product, refs)
            status = SyncJobOutcome.STATUS_ADDED if result.created else SyncJobOutcome.STATUS_UPDATED
            for _, url, _ in refs:
                self.documents.pop(url, None)

        for sink_name, error in result.sink_errors.items():
            self.ledger.add_error(job.session_id, sink_name, error, external_key=job.external_key)
        self.ledger.record_outcome(job.session_id, job, status)

    def on_dead_letter(self, job: SyncJob) -> None:
        self.ledger.record_outcome(job.session_id, job, SyncJobOutcome.STATUS_FAILED, error=job.last_error)
        self.ledger.add_error(job.session_id, 'job', job.last_error, external_key=job.external_key)

    def _document(self, url: str):
        raw = self.documents.get(url)
        if raw is None:
            raw = self.fetcher.fetch_json(url, timeout=self.document_timeout)
        return raw


class SyncOrchestrator:
    """
    Runs one sync session for one supplier.

    Phases: fetching_manifest -> diffing -> enqueuing -> draining ->
    finalizing, ending in completed, failed or cancelled. New manifest files
    are fetched first to learn their family; every touched family is then
    synced as one job.
    """

    def __init__(
        self,
        fetcher: ResilientFetcher,
        fanout: FanOut,
        ledger: SessionLedger,
        base_url: str,
        concurrency: int = 4,
        eager: bool = False,
        max_attempts: int = 3,
        lease_timeout: float = 300.0,
        backoff_base: float = 10.0,
        backoff_max: float = 300.0,
        manifest_timeout: Optional[float] = None,
        document_timeout: Optional[float] = None,
        poll_interval: float = 0.5,
    ):
        self.fetcher = fetcher
        self.fanout = fanout
        self.ledger = ledger
        self.base_url = base_url
        self.concurrency = concurrency
        self.eager = eager
        self.max_attempts = max_attempts
        self.lease_timeout = lease_timeout
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.manifest_timeout = manifest_timeout
        self.document_timeout = document_timeout
        self.poll_interval = poll_interval

    def start(self, supplier_code: str, triggered_by: str = 'manual') -> SyncSession:
        """Open a session; raises SyncAlreadyRunning if the supplier has one running."""
        return self.ledger.start_session(supplier_code, triggered_by)

    def run(self, supplier_code: str, triggered_by: str = 'manual') -> SyncSession:
        return self.execute(self.start(supplier_code, triggered_by))

    def execute(self, session: SyncSession) -> SyncSession:
        session_id = session.session_id
        try:
            return self._execute(session)
        except Exception as exc:
            logger.exception("Sync session %s failed unexpectedly.", session_id)
            return self.ledger.fail_session(session_id, f"{exc.__class__.__name__}: {exc}")

    def refresh_variants(self, supplier_code: str, refs: Iterable[tuple],
                         triggered_by: str = 'manual') -> SyncSession:
        """
        Re-sync single variants without a manifest pass.

        `refs` holds ``(a_number, variant_sku, source_url)`` tuples. Every file
        of the variant's family is read so the re-indexed product stays whole.
        """
        session = self.start(supplier_code, triggered_by)
        session_id = session.session_id
        try:
            handler = self._handler()
            queue = self._queue(handler)
            refs = list(refs)
            self.ledger.record_scan(session_id, scanned=len(refs), unchanged=0)
            self.ledger.set_phase(session_id, SyncSession.PHASE_ENQUEUING)
            for a_number, sku, source_url in refs:
                family_refs = tuple(self.fanout.system_of_record.feed_refs(supplier_code, a_number))
                queue.enqueue(self._job(session, ENTITY_VARIANT, ACTION_UPSERT, a_number, source_url,
                                        PRIORITY_CHANGED, variant_sku=sku,
                                        refs=family_refs or ((a_number, source_url, ''),)))
            cancelled = self._drain(session, queue, handler, cancelled=False)
            return self._finalize(session, cancelled)
        except Exception as exc:
            logger.exception("Variant refresh %s failed unexpectedly.", session_id)
            return self.ledger.fail_session(session_id, f"{exc.__class__.__name__}: {exc}")

    # ------------------------------------------------------------------

    def _execute(self, session: SyncSession) -> SyncSession:
        session_id = session.session_id
        supplier_code = session.supplier_code
        system_of_record = self.fanout.system_of_record

        self.ledger.set_phase(session_id, SyncSession.PHASE_FETCHING_MANIFEST)
        try:
            text = self.fetcher.fetch_text(manifest_url(self.base_url), timeout=self.manifest_timeout)
        except FetchError as exc:
            logger.error("Manifest fetch failed for session %s: %s", session_id, exc)
            return self.ledger.fail_session(session_id, str(exc), stage='manifest')

        parsed = parse_manifest(text)
        for error in parsed.errors:
            if f'/{supplier_code}/' in error.line:
                self.ledger.add_error(session_id, 'manifest', str(error))
        entries = filter_for_supplier(parsed.entries, supplier_code)

        self.ledger.set_phase(session_id, SyncSession.PHASE_DIFFING)
        diff = classify(entries, system_of_record.stored_hashes(supplier_code))
        stored_families = system_of_record.families_for(supplier_code)
        self.ledger.record_scan(session_id, scanned=diff.total, unchanged=len(diff.unchanged))

        handler = self._handler()
        queue = self._queue(handler)

        # New files: learn their family before grouping.
        self.ledger.set_phase(session_id, SyncSession.PHASE_ENQUEUING)
        resolve_jobs = [
            self._job(session, ENTITY_PRODUCT, ACTION_RESOLVE, entry.external_key, entry.source_url,
                      PRIORITY_NEW, content_hash=entry.content_hash)
            for entry in diff.new
        ]
        cancelled = self._enqueue(session, queue, resolve_jobs)
        cancelled = self._drain(session, queue, handler, cancelled)

        # After a stop only families whose new files were already fetched are
        # finished; changed and removed families wait for the next run.
        self.ledger.set_phase(session_id, SyncSession.PHASE_ENQUEUING)
        family_jobs = self._family_jobs(session, diff, stored_families, handler.resolved,
                                        include_known=not cancelled)
        if cancelled:
            for job in family_jobs:
                queue.enqueue(job)
        else:
            cancelled = self._enqueue(session, queue, family_jobs)
        cancelled = self._drain(session, queue, handler, cancelled, check_stop=not cancelled)

        return self._finalize(session, cancelled)

    def _family_jobs(self, session: SyncSession, diff: DiffResult, stored_families: dict,
                     resolved: dict, include_known: bool) -> list:
        """
        One job per touched family, carrying every current manifest file of it.

        A family is touched by a resolved new file, or (with `include_known`)
        by a changed or removed file. A touched family with no file left in the
        manifest is removed.
        """
        family_of = {}
        for entry in diff.new:
            if entry.external_key in resolved:
                family_of[entry.external_key] = resolved[entry.external_key]
        for entry in diff.changed + diff.unchanged:
            family_of[entry.external_key] = stored_families.get(entry.external_key, entry.external_key)

        touched = {family_of[entry.external_key] for entry in diff.new if entry.external_key in family_of}
        if include_known:
            touched.update(family_of[entry.external_key] for entry in diff.changed)
            touched.update(stored_families.get(key, key) for key in diff.removed)

        refs_by_family = defaultdict(list)
        for entry in diff.new + diff.changed + diff.unchanged:
            family = family_of.get(entry.external_key)
            if family in touched:
                refs_by_family[family].append(entry.as_ref())

        known_families = set(stored_families.values())
        jobs = []
        for family in sorted(touched):
            refs = tuple(sorted(refs_by_family.get(family, ())))
            if not refs:
                jobs.append(self._job(session, ENTITY_PRODUCT, ACTION_REMOVE, family, '', PRIORITY_REMOVE))
                continue
            priority = PRIORITY_CHANGED if family in known_families else PRIORITY_NEW
            jobs.append(self._job(session, ENTITY_PRODUCT, ACTION_UPSERT, family, refs[0][1], priority,
                                  content_hash=family_hash(refs), refs=refs))
        jobs.sort(key=lambda job: -job.priority)
        return jobs

    def _enqueue(self, session: SyncSession, queue: JobQueue, jobs: list) -> bool:
        """Queue `jobs` in order. Returns True if a stop request interrupted enqueuing."""
        for index, job in enumerate(jobs):
            if index % STOP_CHECK_EVERY == 0 and self.ledger.is_stop_requested(session.session_id):
                logger.info("Stop requested for session %s after enqueuing %d of %d job(s).",
                            session.session_id, index, len(jobs))
                return True
            queue.enqueue(job)

        removals = sum(1 for job in jobs if job.action == ACTION_REMOVE)
        logger.info("Session %s: enqueued %d job(s) (%d removal(s)).", session.session_id, len(jobs), removals)
        return False

    def _drain(self, session: SyncSession, queue: JobQueue, handler: SyncJobHandler,
               cancelled: bool, check_stop: bool = True) -> bool:
        """Work the queue empty. Returns True if the session is cancelled."""
        session_id = session.session_id
        if cancelled and check_stop:
            queue.discard_pending()

        self.ledger.set_phase(session_id, SyncSession.PHASE_DRAINING)
        pool = WorkerPool(queue, handler, concurrency=self.concurrency, poll_interval=self.poll_interval)

        should_cancel = None
        if check_stop:
            def should_cancel():
                return self.ledger.is_stop_requested(session_id)

        if self.eager:
            drained = pool.run_inline(should_cancel=should_cancel)
        else:
            drained = pool.drain(should_cancel=should_cancel, check_interval=self.poll_interval)
        return cancelled or not drained

    def _finalize(self, session: SyncSession, cancelled: bool) -> SyncSession:
        session_id = session.session_id
        self.ledger.set_phase(session_id, SyncSession.PHASE_FINALIZING)
        totals = self.ledger.aggregate_outcomes(session_id)
        if cancelled:
            return self.ledger.finish_session(session_id, SyncSession.STATE_CANCELLED, totals=totals)

        Supplier.objects.filter(code=session.supplier_code).update(last_synced_at=timezone.now())
        return self.ledger.finish_session(session_id, SyncSession.STATE_COMPLETED, totals=totals)

    def _job(self, session: SyncSession, entity_type: str, action: str, key: str, source_url: str,
             priority: int, content_hash: str = '', variant_sku: str = '', refs: tuple = ()) -> SyncJob:
        return SyncJob(
            entity_type=entity_type,
            external_key=key,
            source_url=source_url,
            priority=priority,
            max_attempts=self.max_attempts,
            action=action,
            content_hash=content_hash,
            supplier_code=session.supplier_code,
            session_id=session.session_id,
            variant_sku=variant_sku,
            refs=refs,
        )

    def _handler(self) -> SyncJobHandler:
        known = set(Category.objects.values_list('code', flat=True))
        return SyncJobHandler(
            self.fetcher, self.fanout, self.ledger,
            document_timeout=self.document_timeout,
            known_categories=known or None,
        )

    def _queue(self, handler: SyncJobHandler) -> JobQueue:
        return JobQueue(
            backoff_base=self.backoff_base,
            backoff_max=self.backoff_max,
            lease_timeout=self.lease_timeout,
            on_dead_letter=handler.on_dead_letter,
        )
