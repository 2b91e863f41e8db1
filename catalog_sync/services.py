"""
Control surface for the sync pipeline.

Every method returns a plain dict with a ``success`` flag; errors are logged
and reported in the dict instead of being raised to the caller.
"""
import functools
import logging
import threading
from typing import Optional

import requests
from django.conf import settings
from django.db import transaction

from .exceptions import SessionNotFound, SyncAlreadyRunning, SyncError
from .fanout import FanOut
from .fetcher import FetchError, ResilientFetcher, RetryConfig
from .ledger import SessionLedger
from .manifest import build_category_tree, categories_url, manifest_url, parse_category_file
from .models import Category, ProductVariant, SyncSession
from .orchestrator import SyncOrchestrator
from .sinks import HttpDocumentStoreSink, InMemoryDocumentSink, MeilisearchSink, SystemOfRecord
from .verification import verify_session

logger = logging.getLogger(__name__)


def session_to_dict(session: SyncSession) -> dict:
    return {
        'session_id': session.session_id,
        'supplier_code': session.supplier_code,
        'state': session.state,
        'phase': session.phase,
        'triggered_by': session.triggered_by,
        'started_at': session.started_at.isoformat() if session.started_at else None,
        'ended_at': session.ended_at.isoformat() if session.ended_at else None,
        'duration_seconds': session.duration_seconds,
        'totals': session.totals,
        'stop_requested': session.stop_requested,
        'last_error': session.last_error,
        'error_count': session.error_count,
        'verification_status': session.verification_status,
    }


def _error(message: str, **extra) -> dict:
    return dict({'success': False, 'error': message}, **extra)


class SyncService:
    def __init__(self, orchestrator: SyncOrchestrator, ledger: SessionLedger, fetcher: ResilientFetcher,
                 fanout: FanOut, base_url: str):
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.fetcher = fetcher
        self.fanout = fanout
        self.base_url = base_url

    # ------------------------------------------------------------------
    # Sync lifecycle
    # ------------------------------------------------------------------

    def start_sync(self, supplier_code: str, triggered_by: str = 'manual', background: bool = False) -> dict:
        """
        Start a sync for one supplier.

        With `background=True` the session is opened here and executed on a
        separate thread; the call returns as soon as the session exists.
        """
        try:
            session = self.orchestrator.start(supplier_code, triggered_by)
        except SyncAlreadyRunning as exc:
            logger.warning("Rejected sync start for %s: %s", supplier_code, exc)
            return _error(str(exc), session_id=exc.session_id)

        if background:
            thread = threading.Thread(
                target=self._execute_in_thread, args=(session,),
                name=f"sync-{supplier_code}", daemon=True,
            )
            thread.start()
            return {'success': True, 'session': session_to_dict(session)}

        session = self.orchestrator.execute(session)
        return {'success': session.state != SyncSession.STATE_FAILED, 'session': session_to_dict(session)}

    def _execute_in_thread(self, session: SyncSession):
        from django.db import connections

        try:
            self.orchestrator.execute(session)
        finally:
            connections.close_all()

    def stop_sync(self, supplier_code: str) -> dict:
        session = self.ledger.request_stop(supplier_code)
        if session is None:
            return _error(f"No running sync for supplier {supplier_code}")
        return {'success': True, 'session_id': session.session_id}

    def active_syncs(self) -> dict:
        return {'success': True, 'sessions': [session_to_dict(s) for s in self.ledger.active_sessions()]}

    def sync_status(self, supplier_code: str) -> dict:
        session = self.ledger.latest_session(supplier_code)
        if session is None:
            return _error(f"No sync sessions for supplier {supplier_code}")
        return {'success': True, 'session': session_to_dict(session)}

    def session_status(self, session_id: str) -> dict:
        try:
            session = self.ledger.get_session(session_id)
        except SessionNotFound as exc:
            return _error(str(exc))
        data = session_to_dict(session)
        data['errors'] = [
            {'stage': e.stage, 'external_key': e.external_key, 'message': e.message,
             'created_at': e.created_at.isoformat()}
            for e in self.ledger.recent_errors(session_id)
        ]
        return {'success': True, 'session': data}

    def history(self, supplier_code: Optional[str] = None, limit: int = 20, days: int = 7) -> dict:
        if supplier_code:
            sessions = self.ledger.supplier_history(supplier_code, limit=limit)
            return {'success': True, 'sessions': [session_to_dict(s) for s in sessions]}
        return {'success': True, 'summary': self.ledger.summary(days=days)}

    def verify(self, session_id: str) -> dict:
        try:
            report = verify_session(
                session_id, self.fanout.system_of_record, self.fanout.search_sink, self.fanout.rag_sink,
            )
        except SessionNotFound as exc:
            return _error(str(exc))
        except SyncError as exc:
            logger.error("Verification of %s failed: %s", session_id, exc)
            return _error(str(exc))
        return {'success': True, 'report': report.to_dict()}

    def health(self) -> dict:
        return dict({'success': True}, **self.ledger.pipeline_health())

    def refresh_variant(self, sku: str, triggered_by: str = 'manual') -> dict:
        variant = ProductVariant.objects.select_related('product__supplier').filter(sku=sku).first()
        if variant is None:
            return _error(f"Unknown variant {sku}")
        product = variant.product
        try:
            session = self.orchestrator.refresh_variants(
                product.supplier.code, [(product.a_number, sku, product.source_url)], triggered_by,
            )
        except SyncAlreadyRunning as exc:
            return _error(str(exc), session_id=exc.session_id)
        return {'success': session.state == SyncSession.STATE_COMPLETED, 'session': session_to_dict(session)}

    # ------------------------------------------------------------------
    # Source access
    # ------------------------------------------------------------------

    def test_connection(self) -> dict:
        url = manifest_url(self.base_url)
        try:
            response = self.fetcher.head(url, retry_config=RetryConfig(max_retries=1))
        except FetchError as exc:
            logger.warning("Connection test to %s failed: %s", url, exc)
            return _error(str(exc), url=url)
        return {'success': True, 'url': url, 'status_code': response.status_code}

    def import_categories(self) -> dict:
        url = categories_url(self.base_url)
        try:
            text = self.fetcher.fetch_text(url, timeout=settings.CATALOG_SYNC_MANIFEST_TIMEOUT)
        except FetchError as exc:
            logger.error("Category import from %s failed: %s", url, exc)
            return _error(str(exc), url=url)

        records = parse_category_file(text)
        created = updated = 0
        with transaction.atomic():
            for record in records:
                _, was_created = Category.objects.update_or_create(
                    code=record.code,
                    defaults={'name': record.name, 'parent_code': record.parent_code or ''},
                )
                created += was_created
                updated += not was_created

            # Link parents once every code exists.
            by_code = {category.code: category for category in Category.objects.all()}
            for node in _walk(build_category_tree(records)):
                category = by_code[node.code]
                parent = by_code.get(node.record.parent_code) if node.record.parent_code else None
                if category.parent_id != (parent.pk if parent else None):
                    category.parent = parent
                    category.save(update_fields=['parent'])

        logger.info("Imported %d categories (%d created, %d updated).", len(records), created, updated)
        return {'success': True, 'total': len(records), 'created': created, 'updated': updated}

    def export_products(self, supplier_code: str) -> dict:
        products = self.fanout.system_of_record.export(supplier_code)
        return {'success': True, 'supplier_code': supplier_code, 'count': len(products), 'products': products}


def _walk(nodes):
    for node in nodes:
        yield node
        yield from _walk(node.children)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def _build_sink(backend: str, fetcher: ResilientFetcher, kind: str):
    if kind == 'search':
        if backend == 'meilisearch':
            return MeilisearchSink(
                fetcher, settings.MEILISEARCH_URL, index=settings.MEILISEARCH_INDEX,
                api_key=settings.MEILISEARCH_API_KEY, timeout=settings.CATALOG_SYNC_SINK_TIMEOUT,
            )
        if backend == 'memory':
            return InMemoryDocumentSink(name='search_index')
    else:
        if backend == 'http':
            return HttpDocumentStoreSink(
                fetcher, settings.RAG_STORE_URL, api_key=settings.RAG_STORE_API_KEY,
                timeout=settings.CATALOG_SYNC_SINK_TIMEOUT,
            )
        if backend == 'memory':
            return InMemoryDocumentSink(name='rag_store')
    raise ValueError(f"Unknown {kind} backend {backend!r}")


def build_sync_service(session: Optional[requests.Session] = None) -> SyncService:
    """Construct the fetcher, sinks and orchestrator from Django settings."""
    fetcher = ResilientFetcher(
        session=session or requests.Session(),
        retry_config=RetryConfig(
            max_retries=settings.CATALOG_SYNC_FETCH_MAX_RETRIES,
            base_delay=settings.CATALOG_SYNC_FETCH_BASE_DELAY,
            max_delay=settings.CATALOG_SYNC_FETCH_MAX_DELAY,
        ),
        timeout=settings.CATALOG_SYNC_DOCUMENT_TIMEOUT,
        rate_limit=settings.CATALOG_SYNC_RATE_LIMIT,
    )
    fanout = FanOut(
        SystemOfRecord(),
        _build_sink(settings.CATALOG_SYNC_SEARCH_BACKEND, fetcher, 'search'),
        _build_sink(settings.CATALOG_SYNC_RAG_BACKEND, fetcher, 'rag'),
    )
    ledger = SessionLedger()
    orchestrator = SyncOrchestrator(
        fetcher, fanout, ledger,
        base_url=settings.PROMIDATA_BASE_URL,
        concurrency=settings.CATALOG_SYNC_WORKERS,
        eager=settings.CATALOG_SYNC_EAGER,
        max_attempts=settings.CATALOG_SYNC_MAX_ATTEMPTS,
        lease_timeout=settings.CATALOG_SYNC_LEASE_TIMEOUT,
        backoff_base=settings.CATALOG_SYNC_JOB_BACKOFF_BASE,
        backoff_max=settings.CATALOG_SYNC_JOB_BACKOFF_MAX,
        manifest_timeout=settings.CATALOG_SYNC_MANIFEST_TIMEOUT,
        document_timeout=settings.CATALOG_SYNC_DOCUMENT_TIMEOUT,
    )
    return SyncService(orchestrator, ledger, fetcher, fanout, base_url=settings.PROMIDATA_BASE_URL)


@functools.lru_cache(maxsize=1)
def get_sync_service() -> SyncService:
    """Process-wide service, built on first use."""
    return build_sync_service()


def reset_sync_service():
    get_sync_service.cache_clear()
