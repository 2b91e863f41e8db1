from unittest.mock import patch

import pytest
import responses as responses_lib

from catalog_sync.models import Product, Supplier, SyncSession
from catalog_sync.services import reset_sync_service
from catalog_sync.tasks import (
    import_categories_task,
    sync_all_suppliers_task,
    sync_supplier_task,
    verify_session_task,
)

from factories import BASE_URL, CATEGORIES_URL, MANIFEST_URL, SUPPLIER, document_url, manifest_line, product_document


@pytest.fixture(autouse=True)
def override_settings(settings):
    settings.PROMIDATA_BASE_URL = BASE_URL
    settings.CATALOG_SYNC_EAGER = True
    settings.CATALOG_SYNC_SEARCH_BACKEND = 'memory'
    settings.CATALOG_SYNC_RAG_BACKEND = 'memory'
    settings.CATALOG_SYNC_FETCH_MAX_RETRIES = 1
    settings.CATALOG_SYNC_RATE_LIMIT = 0
    reset_sync_service()
    yield
    reset_sync_service()


# ---------------------------------------------------------------------------
# sync_supplier
# ---------------------------------------------------------------------------

@pytest.mark.django_db
@responses_lib.activate
def test_sync_supplier_task_syncs_catalog():
    responses_lib.add(responses_lib.GET, MANIFEST_URL, body=manifest_line('A23-1', 'h1'))
    responses_lib.add(responses_lib.GET, document_url('A23-1'), json=product_document('A23-1'))

    result = sync_supplier_task(SUPPLIER)

    assert result['success'] is True
    assert result['session']['triggered_by'] == 'scheduled'
    assert Product.objects.filter(a_number='A23-1').exists()


@pytest.mark.django_db
@responses_lib.activate
def test_unchanged_catalog_fetches_only_manifest():
    responses_lib.add(responses_lib.GET, MANIFEST_URL, body=manifest_line('A23-1', 'h1'))
    responses_lib.add(responses_lib.GET, document_url('A23-1'), json=product_document('A23-1'))
    sync_supplier_task(SUPPLIER)
    responses_lib.calls.reset()

    result = sync_supplier_task(SUPPLIER)

    assert result['session']['totals']['unchanged'] == 1
    assert [call.request.url for call in responses_lib.calls] == [MANIFEST_URL]


@pytest.mark.django_db
@responses_lib.activate
def test_sync_supplier_task_reports_failure():
    responses_lib.add(responses_lib.GET, MANIFEST_URL, status=500)

    result = sync_supplier_task(SUPPLIER)

    assert result['success'] is False
    assert SyncSession.objects.get().state == SyncSession.STATE_FAILED


# ---------------------------------------------------------------------------
# sync_all_suppliers
# ---------------------------------------------------------------------------

@pytest.mark.django_db
def test_sync_all_suppliers_queues_active_suppliers():
    Supplier.objects.create(code='B11')
    Supplier.objects.create(code='A23')
    Supplier.objects.create(code='Z99', is_active=False)

    with patch('catalog_sync.tasks.sync_supplier_task.delay') as mock_delay:
        result = sync_all_suppliers_task()

    assert result == {'queued': ['A23', 'B11']}
    assert [call.args[0] for call in mock_delay.call_args_list] == ['A23', 'B11']


# ---------------------------------------------------------------------------
# verify_session / import_categories
# ---------------------------------------------------------------------------

@pytest.mark.django_db
@responses_lib.activate
def test_verify_session_task():
    responses_lib.add(responses_lib.GET, MANIFEST_URL, body=manifest_line('A23-1', 'h1'))
    responses_lib.add(responses_lib.GET, document_url('A23-1'), json=product_document('A23-1'))
    session_id = sync_supplier_task(SUPPLIER)['session']['session_id']

    result = verify_session_task(session_id)

    assert result['report']['status'] == 'verified'


@pytest.mark.django_db
@responses_lib.activate
def test_import_categories_task():
    responses_lib.add(responses_lib.GET, CATEGORIES_URL, body='10;Drinkware;\n11;Mugs;10\n')

    assert import_categories_task()['total'] == 2
