import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

from .documents import build_rag_document, build_search_document, document_id
from .sinks import DocumentSink, SystemOfRecord, UpsertResult
from .transformer import ProductRecord

logger = logging.getLogger(__name__)


@dataclass
class FanoutResult:
    external_key: str
    system_of_record: Optional[UpsertResult] = None
    removed: bool = False
    sink_errors: dict = field(default_factory=dict)   # sink name -> error text

    @property
    def created(self) -> bool:
        return bool(self.system_of_record and self.system_of_record.created)

    @property
    def changed(self) -> bool:
        return bool(self.system_of_record and self.system_of_record.changed)

    @property
    def ok(self) -> bool:
        return not self.sink_errors


class FanOut:
    """
    Writes one product to every store.

    The system of record is written first and its errors propagate. The search
    index and RAG store are then written concurrently; their errors are
    collected on the result instead of being raised.
    """

    def __init__(self, system_of_record: SystemOfRecord, search_sink: DocumentSink, rag_sink: DocumentSink):
        self.system_of_record = system_of_record
        self.search_sink = search_sink
        self.rag_sink = rag_sink

    def apply_product(self, product: ProductRecord, refs=None) -> FanoutResult:
        result = FanoutResult(external_key=product.external_key)
        result.system_of_record = self.system_of_record.upsert(product, refs)

        self._secondary(result, [
            (self.search_sink, lambda sink: sink.upsert_document(build_search_document(product))),
            (self.rag_sink, lambda sink: sink.upsert_document(build_rag_document(product))),
        ])
        return result

    def apply_variant(self, product: ProductRecord, sku: str) -> FanoutResult:
        """Refresh one variant, then re-index its product (documents aggregate variants)."""
        result = FanoutResult(external_key=product.external_key)
        result.system_of_record = self.system_of_record.upsert_variant(product, sku)

        self._secondary(result, [
            (self.search_sink, lambda sink: sink.upsert_document(build_search_document(product))),
            (self.rag_sink, lambda sink: sink.upsert_document(build_rag_document(product))),
        ])
        return result

    def remove_product(self, supplier_code: str, external_key: str) -> FanoutResult:
        """Delete from all stores. A store that no longer has the key is not an error."""
        result = FanoutResult(external_key=external_key)
        result.removed = self.system_of_record.delete(supplier_code, external_key)
        doc_id = document_id(supplier_code, external_key)

        self._secondary(result, [
            (self.search_sink, lambda sink: sink.delete_document(doc_id)),
            (self.rag_sink, lambda sink: sink.delete_document(doc_id)),
        ])
        return result

    def _secondary(self, result: FanoutResult, operations):
        with ThreadPoolExecutor(max_workers=len(operations)) as executor:
            futures = [(sink, executor.submit(operation, sink)) for sink, operation in operations]
            for sink, future in futures:
                try:
                    future.result()
                except Exception as exc:
                    result.sink_errors[sink.name] = str(exc) or exc.__class__.__name__
                    logger.warning("Write to %s failed for %s: %s", sink.name, result.external_key, exc)
