import pytest

from catalog_sync.documents import build_rag_document, build_search_document
from catalog_sync.exceptions import SinkError, SkuConflict
from catalog_sync.fanout import FanOut
from catalog_sync.models import Product
from catalog_sync.sinks import InMemoryDocumentSink, SystemOfRecord
from catalog_sync.transformer import transform_product

from factories import product_document


class BrokenSink(InMemoryDocumentSink):
    def upsert_document(self, document):
        raise SinkError(self.name, 'HTTP 503 Service Unavailable')

    def delete_document(self, key):
        raise SinkError(self.name, 'HTTP 503 Service Unavailable')


def make_product(a_number='A23-100', content_hash='h1', supplier_code='A23', **kwargs):
    return transform_product(product_document(a_number, **kwargs), a_number=a_number,
                             content_hash=content_hash, supplier_code=supplier_code)


# ---------------------------------------------------------------------------
# apply_product / remove_product
# ---------------------------------------------------------------------------

@pytest.mark.django_db
class TestFanOut:
    def test_product_lands_in_every_store(self, fanout, search_sink, rag_sink):
        result = fanout.apply_product(make_product())

        assert result.created and result.ok
        assert Product.objects.filter(a_number='A23-100').exists()
        assert search_sink.get_document('A23_A23-100')['promidata_hash'] == 'h1'
        assert rag_sink.get_document('A23_A23-100')['promidata_hash'] == 'h1'

    def test_applying_twice_is_idempotent(self, fanout, search_sink, rag_sink):
        fanout.apply_product(make_product())
        first_search = search_sink.get_document('A23_A23-100')
        first_rag = rag_sink.get_document('A23_A23-100')

        again = fanout.apply_product(make_product())

        assert (again.created, again.changed) == (False, False)
        assert Product.objects.count() == 1
        assert search_sink.get_document('A23_A23-100') == first_search
        assert rag_sink.get_document('A23_A23-100') == first_rag

    def test_secondary_failure_is_collected(self, search_sink):
        fanout = FanOut(SystemOfRecord(), search_sink, BrokenSink(name='rag_store'))

        result = fanout.apply_product(make_product())

        assert not result.ok
        assert list(result.sink_errors) == ['rag_store']
        assert 'HTTP 503' in result.sink_errors['rag_store']
        assert Product.objects.filter(a_number='A23-100').exists()
        assert search_sink.exists('A23_A23-100')

    def test_system_of_record_failure_propagates(self, fanout, search_sink):
        fanout.apply_product(make_product('A23-1', children=[{'Sku': 'SHARED'}]))

        with pytest.raises(SkuConflict):
            fanout.apply_product(make_product('A23-2', children=[{'Sku': 'SHARED'}]))
        assert not search_sink.exists('A23_A23-2'), "Secondary stores are not written after a failed primary write"

    def test_remove_product(self, fanout, search_sink, rag_sink):
        fanout.apply_product(make_product())

        result = fanout.remove_product('A23', 'A23-100')

        assert result.removed and result.ok
        assert not search_sink.exists('A23_A23-100')
        assert not rag_sink.exists('A23_A23-100')
        assert fanout.remove_product('A23', 'A23-100').ok, "Removing an absent key is not an error"

    def test_apply_variant_reindexes_product(self, fanout, search_sink):
        fanout.apply_product(make_product())

        result = fanout.apply_variant(make_product(content_hash='h2'), 'A23-100-02')

        assert result.ok
        assert search_sink.get_document('A23_A23-100')['promidata_hash'] == 'h2'

    def test_same_key_in_two_suppliers_keeps_separate_documents(self, fanout, search_sink, rag_sink):
        fanout.apply_product(make_product('X-1', supplier_code='A23', children=[{'Sku': 'A23-X-1'}]))
        fanout.apply_product(make_product('X-1', supplier_code='B11', children=[{'Sku': 'B11-X-1'}]))

        fanout.remove_product('A23', 'X-1')

        assert not search_sink.exists('A23_X-1')
        assert search_sink.get_document('B11_X-1')['supplier_code'] == 'B11'
        assert rag_sink.exists('B11_X-1')
        assert Product.objects.get(a_number='X-1').supplier.code == 'B11'


# ---------------------------------------------------------------------------
# Document shapes
# ---------------------------------------------------------------------------

class TestDocuments:
    def test_search_document(self):
        document = build_search_document(make_product(price=3.0))

        assert document['id'] == 'A23_A23-100'
        assert document['name_en'] == 'Mug A23-100'
        assert document['name_fr'] is None
        assert document['colors'] == ['Red', 'Blue']
        assert document['variant_skus'] == ['A23-100-01', 'A23-100-02', 'A23-100-03']
        assert (document['price_min'], document['price_max']) == (2.5, 3.0)
        assert document['category'] == 'CAT-10'

    def test_rag_document(self):
        document = build_rag_document(make_product(price=3.0))

        assert document['pricing'] == {'min': 2.5, 'max': 3.0, 'currency': 'EUR'}
        assert document['content'].startswith('Mug A23-100\nCeramic mug, 300 ml.')
        assert 'Colours: Red, Blue' in document['content']
