import logging

from celery import shared_task

from .models import Supplier
from .services import get_sync_service

logger = logging.getLogger(__name__)


@shared_task(bind=True, name='catalog_sync.sync_supplier')
def sync_supplier_task(self, supplier_code, triggered_by='scheduled'):
    """
    Run one incremental sync for `supplier_code`.

    Steps:
      1. Fetch the manifest and keep the supplier's entries.
      2. Diff their hashes against the system of record.
      3. Queue and process only new, changed and removed products.
      4. Close the session with final counters.
    """
    logger.info("Starting catalog sync for supplier %s (%s).", supplier_code, triggered_by)
    result = get_sync_service().start_sync(supplier_code, triggered_by=triggered_by)
    if not result['success']:
        logger.warning("Catalog sync for %s did not succeed: %s",
                       supplier_code, result.get('error') or result['session']['last_error'])
    return result


@shared_task(bind=True, name='catalog_sync.sync_all_suppliers')
def sync_all_suppliers_task(self, triggered_by='scheduled'):
    """Queue one sync task per active supplier."""
    codes = list(Supplier.objects.filter(is_active=True).order_by('code').values_list('code', flat=True))
    for code in codes:
        sync_supplier_task.delay(code, triggered_by=triggered_by)
    logger.info("Queued catalog sync for %d supplier(s).", len(codes))
    return {'queued': codes}


@shared_task(bind=True, name='catalog_sync.verify_session')
def verify_session_task(self, session_id):
    return get_sync_service().verify(session_id)


@shared_task(bind=True, name='catalog_sync.import_categories')
def import_categories_task(self):
    return get_sync_service().import_categories()
