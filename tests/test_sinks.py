import json

import pytest
import responses as responses_lib

from catalog_sync.exceptions import DocumentError, SinkError, SkuConflict
from catalog_sync.fetcher import ResilientFetcher, RetryConfig
from catalog_sync.models import Product, ProductVariant, Supplier
from catalog_sync.sinks import HttpDocumentStoreSink, InMemoryDocumentSink, MeilisearchSink, SystemOfRecord
from catalog_sync.transformer import transform_product

from factories import product_document

MEILI_URL = 'http://meili.test:7700'
RAG_URL = 'http://rag.test/api'


def make_product(a_number='A23-100', content_hash='h1', **kwargs):
    return transform_product(product_document(a_number, **kwargs), a_number=a_number,
                             content_hash=content_hash, supplier_code='A23')


@pytest.fixture()
def store():
    return SystemOfRecord()


@pytest.fixture()
def quick_fetcher():
    return ResilientFetcher(retry_config=RetryConfig(max_retries=1))


# ---------------------------------------------------------------------------
# System of record
# ---------------------------------------------------------------------------

@pytest.mark.django_db
class TestSystemOfRecord:
    def test_create_then_noop_then_update(self, store):
        first = store.upsert(make_product())
        again = store.upsert(make_product())
        changed = store.upsert(make_product(content_hash='h2', price=4.0))

        assert (first.created, first.changed) == (True, True)
        assert (again.created, again.changed) == (False, False)
        assert (changed.created, changed.changed) == (False, True)

        product = Product.objects.get(a_number='A23-100')
        assert product.promidata_hash == 'h2'
        assert product.price_tiers[0]['price'] == 4.0
        assert product.available_colors == ['Red', 'Blue']
        assert product.variants.count() == 3
        assert Supplier.objects.filter(code='A23').exists()

    def test_update_replaces_variant_set(self, store):
        store.upsert(make_product())
        store.upsert(make_product(content_hash='h2', children=[{'Sku': 'A23-100-09', 'ColorName': 'Green'}]))

        assert list(ProductVariant.objects.values_list('sku', flat=True)) == ['A23-100-09']

    def test_variant_sku_used_by_other_product_conflicts(self, store):
        store.upsert(make_product('A23-1', children=[{'Sku': 'SHARED-01'}]))

        with pytest.raises(SkuConflict):
            store.upsert(make_product('A23-2', children=[{'Sku': 'SHARED-01'}]))
        assert not Product.objects.filter(a_number='A23-2').exists()

    def test_flat_product_shares_sku_with_its_only_variant(self, store):
        flat = transform_product({'Sku': 'A23-7', 'ProductDetails': {'en': {'Name': 'Pen'}}},
                                 content_hash='h1', supplier_code='A23', a_number='A23-7')

        assert store.upsert(flat).created is True
        assert store.upsert(flat).changed is False
        assert store.upsert(flat.with_hash('h2')).changed is True
        assert store.upsert_variant(flat, 'A23-7').created is False
        assert list(ProductVariant.objects.values_list('sku', flat=True)) == ['A23-7']

    def test_sku_of_flat_product_is_still_unique_in_supplier(self, store):
        store.upsert(make_product('A23-1', children=[{'Sku': 'A23-1'}]))

        with pytest.raises(SkuConflict):
            store.upsert(make_product('A23-2', children=[{'Sku': 'A23-1'}]))

    def test_lookups_and_hashes(self, store):
        store.upsert(make_product('A23-1', content_hash='h1'))
        store.upsert(make_product('A23-2', content_hash='h2'))

        assert store.find_by_key('A23', 'A23-1').promidata_hash == 'h1'
        assert store.find_by_hash('A23', 'h2').a_number == 'A23-2'
        assert store.find_by_key('A23', 'missing') is None
        assert store.stored_hashes('A23') == {'A23-1': 'h1', 'A23-2': 'h2'}
        assert store.hashes_for('A23', ['A23-2', 'nope']) == {'A23-2': 'h2'}
        assert store.count('A23') == 2
        assert store.count('B11') == 0

    def test_feed_entries_follow_the_product_files(self, store):
        refs = (
            ('A23-1-01', 'https://feed.test/A23/A23-1-01.json', 'h1'),
            ('A23-1-02', 'https://feed.test/A23/A23-1-02.json', 'h2'),
        )
        store.upsert(make_product('A23-1', content_hash='family-1'), refs)

        assert store.stored_hashes('A23') == {'A23-1-01': 'h1', 'A23-1-02': 'h2'}
        assert store.families_for('A23') == {'A23-1-01': 'A23-1', 'A23-1-02': 'A23-1'}
        assert store.families_for('A23', ['A23-1-02', 'nope']) == {'A23-1-02': 'A23-1'}
        assert store.feed_refs('A23', 'A23-1') == list(refs)

        store.upsert(make_product('A23-1', content_hash='family-2'), refs[:1])

        assert store.stored_hashes('A23') == {'A23-1-01': 'h1'}
        store.delete('A23', 'A23-1')
        assert store.stored_hashes('A23') == {}

    def test_delete_is_idempotent(self, store):
        store.upsert(make_product())

        assert store.delete('A23', 'A23-100') is True
        assert store.delete('A23', 'A23-100') is False
        assert ProductVariant.objects.count() == 0

    def test_upsert_variant(self, store):
        store.upsert(make_product())
        refreshed = make_product(content_hash='h1', children=[
            {'Sku': 'A23-100-01', 'ColorName': 'Red', 'Size': 'XXL'},
        ])

        result = store.upsert_variant(refreshed, 'A23-100-01')

        assert result.created is False
        assert ProductVariant.objects.get(sku='A23-100-01').size == 'XXL'
        assert ProductVariant.objects.count() == 3

    def test_upsert_variant_requires_known_product_and_sku(self, store):
        with pytest.raises(DocumentError):
            store.upsert_variant(make_product(), 'A23-100-01')
        store.upsert(make_product())
        with pytest.raises(DocumentError):
            store.upsert_variant(make_product(), 'NOT-A-VARIANT')

    def test_export(self, store):
        store.upsert(make_product('A23-2'))
        store.upsert(make_product('A23-1'))

        exported = store.export('A23')

        assert [item['a_number'] for item in exported] == ['A23-1', 'A23-2']
        assert len(exported[0]['variants']) == 3
        assert exported[0]['name'] == {'en': 'Mug A23-1', 'de': 'Tasse A23-1'}


# ---------------------------------------------------------------------------
# Document sinks
# ---------------------------------------------------------------------------

class TestInMemoryDocumentSink:
    def test_roundtrip_and_count(self):
        sink = InMemoryDocumentSink(name='search_index')
        sink.upsert_document({'id': 'A23-1', 'supplier_code': 'A23'})
        sink.upsert_document({'id': 'B11-1', 'supplier_code': 'B11'})

        assert sink.exists('A23-1')
        assert sink.count() == 2
        assert sink.count('A23') == 1
        assert sink.delete_document('A23-1') is True
        assert sink.delete_document('A23-1') is False
        assert sink.keys() == ['B11-1']


class TestMeilisearchSink:
    @responses_lib.activate
    def test_upsert_posts_document_list(self, quick_fetcher):
        responses_lib.add(responses_lib.POST, f'{MEILI_URL}/indexes/products/documents', json={}, status=202)
        sink = MeilisearchSink(quick_fetcher, MEILI_URL, api_key='master-key')

        sink.upsert_document({'id': 'A23-1'})

        request = responses_lib.calls[0].request
        assert 'primaryKey=id' in request.url
        assert json.loads(request.body) == [{'id': 'A23-1'}]
        assert request.headers['Authorization'] == 'Bearer master-key'

    @responses_lib.activate
    def test_missing_document_is_none(self, quick_fetcher):
        responses_lib.add(responses_lib.GET, f'{MEILI_URL}/indexes/products/documents/A23-1', status=404)
        assert MeilisearchSink(quick_fetcher, MEILI_URL).get_document('A23-1') is None

    @responses_lib.activate
    def test_count_by_supplier(self, quick_fetcher):
        responses_lib.add(responses_lib.POST, f'{MEILI_URL}/indexes/products/search',
                          json={'estimatedTotalHits': 7}, status=200)
        assert MeilisearchSink(quick_fetcher, MEILI_URL).count('A23') == 7

    @responses_lib.activate
    def test_server_error_becomes_sink_error(self, quick_fetcher):
        responses_lib.add(responses_lib.POST, f'{MEILI_URL}/indexes/products/documents', status=500)

        with pytest.raises(SinkError, match='search_index'):
            MeilisearchSink(quick_fetcher, MEILI_URL).upsert_document({'id': 'A23-1'})


class TestHttpDocumentStoreSink:
    @responses_lib.activate
    def test_put_get_delete(self, quick_fetcher):
        responses_lib.add(responses_lib.PUT, f'{RAG_URL}/documents/A23-1', json={}, status=200)
        responses_lib.add(responses_lib.GET, f'{RAG_URL}/documents/A23-1',
                          json={'id': 'A23-1', 'promidata_hash': 'h1'}, status=200)
        responses_lib.add(responses_lib.DELETE, f'{RAG_URL}/documents/A23-1', status=404)
        sink = HttpDocumentStoreSink(quick_fetcher, RAG_URL + '/')

        sink.upsert_document({'id': 'A23-1', 'promidata_hash': 'h1'})

        assert sink.get_document('A23-1')['promidata_hash'] == 'h1'
        assert sink.delete_document('A23-1') is False
        assert sink.name == 'rag_store'

    @responses_lib.activate
    def test_count(self, quick_fetcher):
        responses_lib.add(responses_lib.GET, f'{RAG_URL}/documents/count', json={'count': 3}, status=200)
        assert HttpDocumentStoreSink(quick_fetcher, RAG_URL).count('A23') == 3
        assert 'supplier_code=A23' in responses_lib.calls[0].request.url
