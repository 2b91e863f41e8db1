import logging
import threading
from dataclasses import asdict, dataclass
from typing import Optional

from django.db import transaction
from django.db.models import Q

from .exceptions import DocumentError, SinkError, SkuConflict
from .fetcher import FetchClientError, FetchError, ResilientFetcher
from .models import FeedEntry, Product, ProductVariant, Supplier
from .transformer import ProductRecord, VariantRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpsertResult:
    created: bool
    changed: bool


# ---------------------------------------------------------------------------
# System of record (Django ORM)
# ---------------------------------------------------------------------------

class SystemOfRecord:
    """Products and variants keyed by (supplier code, a_number)."""

    name = 'system_of_record'

    def upsert(self, product: ProductRecord, refs=None) -> UpsertResult:
        """
        Create or update the product and replace its variants.

        `refs` are the ``(key, url, hash)`` manifest files the product was built
        from; they default to one file named after the product. Writing the same
        record twice leaves the second call a no-op. Raises SkuConflict when a
        SKU is already used elsewhere in the supplier.
        """
        if refs is None:
            refs = ((product.a_number, product.source_url, product.content_hash),)
        fingerprint = product.fingerprint()
        with transaction.atomic():
            supplier, _ = Supplier.objects.get_or_create(code=product.supplier_code)
            existing = (
                Product.objects.select_for_update()
                .filter(supplier=supplier, a_number=product.a_number)
                .first()
            )
            if (
                existing is not None
                and existing.promidata_hash == product.content_hash
                and existing.content_fingerprint == fingerprint
            ):
                self._sync_feed_entries(supplier, existing, refs)
                logger.debug("Product %s unchanged – skipping write.", product.a_number)
                return UpsertResult(created=False, changed=False)

            self._check_sku_conflicts(supplier, product, existing)

            fields = self._product_fields(product, fingerprint)
            if existing is None:
                stored = Product.objects.create(supplier=supplier, a_number=product.a_number, **fields)
            else:
                for name, value in fields.items():
                    setattr(existing, name, value)
                existing.save()
                stored = existing

            self._replace_variants(stored, product.variants)
            self._sync_feed_entries(supplier, stored, refs)

        logger.info("Product %s %s.", product.a_number, 'created' if existing is None else 'updated')
        return UpsertResult(created=existing is None, changed=True)

    def upsert_variant(self, product: ProductRecord, sku: str) -> UpsertResult:
        """Refresh one variant of an already stored product."""
        variant = product.variant(sku)
        if variant is None:
            raise DocumentError(f"Variant {sku} is not part of product {product.a_number}.")

        with transaction.atomic():
            stored = self.find_by_key(product.supplier_code, product.a_number)
            if stored is None:
                raise DocumentError(f"Product {product.a_number} is not stored; sync the product first.")
            if Product.objects.filter(supplier=stored.supplier, sku=sku).exclude(pk=stored.pk).exists():
                raise SkuConflict(f"Variant SKU {sku} is already used by a product of {product.supplier_code}.")
            if ProductVariant.objects.filter(sku=sku).exclude(product=stored).exists():
                raise SkuConflict(f"Variant SKU {sku} belongs to another product.")

            _, created = ProductVariant.objects.update_or_create(
                sku=sku, defaults=dict(self._variant_fields(variant), product=stored),
            )
        return UpsertResult(created=created, changed=True)

    def find_by_key(self, supplier_code: str, a_number: str) -> Optional[Product]:
        return (
            Product.objects.select_related('supplier')
            .filter(supplier__code=supplier_code, a_number=a_number)
            .first()
        )

    def find_by_hash(self, supplier_code: str, content_hash: str) -> Optional[Product]:
        return (
            Product.objects.select_related('supplier')
            .filter(supplier__code=supplier_code, promidata_hash=content_hash)
            .first()
        )

    def delete(self, supplier_code: str, a_number: str) -> bool:
        deleted, _ = Product.objects.filter(supplier__code=supplier_code, a_number=a_number).delete()
        if not deleted:
            logger.debug("Product %s already absent from the system of record.", a_number)
        return bool(deleted)

    def stored_hashes(self, supplier_code: str) -> dict:
        """Manifest key -> hash of every file synced for the supplier."""
        return dict(
            FeedEntry.objects.filter(supplier__code=supplier_code).values_list('external_key', 'content_hash')
        )

    def families_for(self, supplier_code: str, keys=None) -> dict:
        """Manifest key -> a_number of the product the file was synced into; all keys when `keys` is None."""
        entries = FeedEntry.objects.filter(supplier__code=supplier_code)
        if keys is not None:
            entries = entries.filter(external_key__in=list(keys))
        return dict(entries.values_list('external_key', 'product__a_number'))

    def feed_refs(self, supplier_code: str, a_number: str) -> list:
        return [
            tuple(ref) for ref in
            FeedEntry.objects.filter(supplier__code=supplier_code, product__a_number=a_number)
            .order_by('external_key')
            .values_list('external_key', 'source_url', 'content_hash')
        ]

    def hashes_for(self, supplier_code: str, keys) -> dict:
        return dict(
            Product.objects.filter(supplier__code=supplier_code, a_number__in=list(keys))
            .values_list('a_number', 'promidata_hash')
        )

    def count(self, supplier_code: Optional[str] = None) -> int:
        queryset = Product.objects.all()
        if supplier_code:
            queryset = queryset.filter(supplier__code=supplier_code)
        return queryset.count()

    def export(self, supplier_code: str) -> list:
        products = (
            Product.objects.filter(supplier__code=supplier_code)
            .prefetch_related('variants')
            .order_by('a_number')
        )
        return [self._export_product(product) for product in products]

    # ------------------------------------------------------------------

    @staticmethod
    def _check_sku_conflicts(supplier: Supplier, product: ProductRecord, existing: Optional[Product]):
        # A product may share its SKU with one of its own variants (a flat document).
        variant_skus = [variant.sku for variant in product.variants]

        other_products = Product.objects.filter(supplier=supplier)
        if existing is not None:
            other_products = other_products.exclude(pk=existing.pk)
        if other_products.filter(sku=product.sku).exists():
            raise SkuConflict(f"Product SKU {product.sku} is already used in supplier {supplier.code}.")
        if variant_skus and other_products.filter(sku__in=variant_skus).exists():
            raise SkuConflict(f"A variant SKU of {product.a_number} is already used by a product.")

        variant_clash = ProductVariant.objects.filter(
            Q(sku__in=variant_skus) | Q(sku=product.sku, product__supplier=supplier)
        )
        if existing is not None:
            variant_clash = variant_clash.exclude(product=existing)
        clash = variant_clash.values_list('sku', flat=True).first()
        if clash is not None:
            raise SkuConflict(f"SKU {clash} already belongs to a variant of another product.")

    @staticmethod
    def _product_fields(product: ProductRecord, fingerprint: str) -> dict:
        return {
            'sku': product.sku,
            'name': product.name.to_dict(),
            'description': product.description.to_dict(),
            'brand': product.brand or '',
            'currency': product.currency,
            'price_tiers': [asdict(tier) for tier in product.price_tiers],
            'main_image_url': product.main_image_url or '',
            'gallery_image_urls': list(product.gallery_image_urls),
            'category_codes': list(product.category_codes),
            'primary_category_code': product.primary_category_code or '',
            'available_colors': product.available_colors,
            'available_sizes': product.available_sizes,
            'dimensions': dict(product.dimensions),
            'source_url': product.source_url,
            'promidata_hash': product.content_hash,
            'content_fingerprint': fingerprint,
            'is_active': True,
        }

    @staticmethod
    def _variant_fields(variant: VariantRecord) -> dict:
        return {
            'name': variant.name.to_dict(),
            'colour': variant.colour or '',
            'colour_code': variant.colour_code or '',
            'hex_colour': variant.hex_colour or '',
            'size': variant.size or '',
            'material': variant.material.to_dict(),
            'main_image_url': variant.main_image_url or '',
            'gallery_image_urls': list(variant.gallery_image_urls),
            'dimensions': dict(variant.dimensions),
            'is_primary_for_color': variant.is_primary_for_color,
            'is_active': True,
        }

    @staticmethod
    def _sync_feed_entries(supplier: Supplier, stored: Product, refs):
        keys = [key for key, _, _ in refs]
        stored.feed_entries.exclude(external_key__in=keys).delete()
        current = {
            entry.external_key: entry
            for entry in FeedEntry.objects.filter(supplier=supplier, external_key__in=keys)
        }
        for key, source_url, content_hash in refs:
            entry = current.get(key)
            if (
                entry is not None
                and entry.product_id == stored.pk
                and entry.source_url == source_url
                and entry.content_hash == content_hash
            ):
                continue
            FeedEntry.objects.update_or_create(
                supplier=supplier, external_key=key,
                defaults={'product': stored, 'source_url': source_url, 'content_hash': content_hash},
            )

    def _replace_variants(self, stored: Product, variants):
        keep = [variant.sku for variant in variants]
        stored.variants.exclude(sku__in=keep).delete()
        for variant in variants:
            ProductVariant.objects.update_or_create(
                sku=variant.sku, defaults=dict(self._variant_fields(variant), product=stored),
            )

    @staticmethod
    def _export_product(product: Product) -> dict:
        return {
            'a_number': product.a_number,
            'sku': product.sku,
            'name': product.name,
            'description': product.description,
            'brand': product.brand,
            'currency': product.currency,
            'price_tiers': product.price_tiers,
            'main_image_url': product.main_image_url,
            'category_codes': product.category_codes,
            'primary_category_code': product.primary_category_code,
            'available_colors': product.available_colors,
            'available_sizes': product.available_sizes,
            'promidata_hash': product.promidata_hash,
            'last_synced_at': product.last_synced_at.isoformat() if product.last_synced_at else None,
            'variants': [
                {
                    'sku': variant.sku,
                    'colour': variant.colour,
                    'size': variant.size,
                    'is_primary_for_color': variant.is_primary_for_color,
                }
                for variant in product.variants.all()
            ],
        }


# ---------------------------------------------------------------------------
# Document sinks (search index, RAG store)
# ---------------------------------------------------------------------------

class DocumentSink:
    """Keyed document store. Documents carry their key in ``id``."""

    name = 'document_sink'

    def upsert_document(self, document: dict) -> None:
        raise NotImplementedError

    def delete_document(self, key: str) -> bool:
        raise NotImplementedError

    def get_document(self, key: str) -> Optional[dict]:
        raise NotImplementedError

    def count(self, supplier_code: Optional[str] = None) -> int:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        return self.get_document(key) is not None


class InMemoryDocumentSink(DocumentSink):
    """Thread-safe dict-backed sink, used when no external store is configured."""

    def __init__(self, name: str = 'memory'):
        self.name = name
        self._documents = {}
        self._lock = threading.Lock()

    def upsert_document(self, document: dict) -> None:
        with self._lock:
            self._documents[document['id']] = dict(document)

    def delete_document(self, key: str) -> bool:
        with self._lock:
            return self._documents.pop(key, None) is not None

    def get_document(self, key: str) -> Optional[dict]:
        with self._lock:
            document = self._documents.get(key)
            return dict(document) if document is not None else None

    def count(self, supplier_code: Optional[str] = None) -> int:
        with self._lock:
            if supplier_code is None:
                return len(self._documents)
            return sum(1 for doc in self._documents.values() if doc.get('supplier_code') == supplier_code)

    def keys(self) -> list:
        with self._lock:
            return sorted(self._documents)

    def __len__(self):
        return self.count()


class MeilisearchSink(DocumentSink):
    """Meilisearch index accessed over its REST API."""

    name = 'search_index'

    def __init__(self, fetcher: ResilientFetcher, base_url: str, index: str = 'products',
                 api_key: str = '', timeout: Optional[float] = None):
        self._fetcher = fetcher
        self._base_url = base_url.rstrip('/')
        self._index = index
        self._timeout = timeout
        self._headers = {'Content-Type': 'application/json'}
        if api_key:
            self._headers['Authorization'] = f'Bearer {api_key}'

    def _url(self, path: str) -> str:
        return f"{self._base_url}/indexes/{self._index}{path}"

    def _call(self, method: str, path: str, **kwargs):
        try:
            return self._fetcher.fetch_with_retry(
                self._url(path), method=method, timeout=self._timeout, headers=self._headers, **kwargs,
            )
        except FetchClientError as exc:
            if exc.status_code == 404:
                return None
            raise SinkError(self.name, str(exc)) from exc
        except FetchError as exc:
            raise SinkError(self.name, str(exc)) from exc

    def upsert_document(self, document: dict) -> None:
        self._call('POST', '/documents', params={'primaryKey': 'id'}, json=[document])

    def delete_document(self, key: str) -> bool:
        return self._call('DELETE', f'/documents/{key}') is not None

    def get_document(self, key: str) -> Optional[dict]:
        response = self._call('GET', f'/documents/{key}')
        return response.json() if response is not None else None

    def count(self, supplier_code: Optional[str] = None) -> int:
        if supplier_code is None:
            response = self._call('GET', '/stats')
            return int(response.json().get('numberOfDocuments', 0)) if response is not None else 0
        response = self._call(
            'POST', '/search',
            json={'q': '', 'filter': f'supplier_code = "{supplier_code}"', 'limit': 0},
        )
        return int(response.json().get('estimatedTotalHits', 0)) if response is not None else 0


class HttpDocumentStoreSink(DocumentSink):
    """Generic REST document store: ``{base}/documents/{id}`` with PUT/GET/DELETE."""

    def __init__(self, fetcher: ResilientFetcher, base_url: str, api_key: str = '',
                 timeout: Optional[float] = None, name: str = 'rag_store'):
        self.name = name
        self._fetcher = fetcher
        self._base_url = base_url.rstrip('/')
        self._timeout = timeout
        self._headers = {'Content-Type': 'application/json'}
        if api_key:
            self._headers['Authorization'] = f'Bearer {api_key}'

    def _call(self, method: str, url: str, **kwargs):
        try:
            return self._fetcher.fetch_with_retry(
                url, method=method, timeout=self._timeout, headers=self._headers, **kwargs,
            )
        except FetchClientError as exc:
            if exc.status_code == 404:
                return None
            raise SinkError(self.name, str(exc)) from exc
        except FetchError as exc:
            raise SinkError(self.name, str(exc)) from exc

    def upsert_document(self, document: dict) -> None:
        self._call('PUT', f"{self._base_url}/documents/{document['id']}", json=document)

    def delete_document(self, key: str) -> bool:
        return self._call('DELETE', f"{self._base_url}/documents/{key}") is not None

    def get_document(self, key: str) -> Optional[dict]:
        response = self._call('GET', f"{self._base_url}/documents/{key}")
        return response.json() if response is not None else None

    def count(self, supplier_code: Optional[str] = None) -> int:
        params = {'supplier_code': supplier_code} if supplier_code else {}
        response = self._call('GET', f"{self._base_url}/documents/count", params=params)
        return int(response.json().get('count', 0)) if response is not None else 0
