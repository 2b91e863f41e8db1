"""Documents written to the search index and the RAG store for one product."""
from .transformer import LANGUAGES, ProductRecord


def document_id(supplier_code: str, a_number: str) -> str:
    """Id shared by the search and RAG documents of a product, unique across suppliers."""
    return f"{supplier_code}_{a_number}" if supplier_code else a_number


def _price_range(product: ProductRecord):
    prices = [tier.price for tier in product.price_tiers if tier.price_type == 'selling']
    if not prices:
        prices = [tier.price for tier in product.price_tiers]
    if not prices:
        return None, None
    return min(prices), max(prices)


def build_search_document(product: ProductRecord) -> dict:
    """Flat document for the full-text index: one field per language."""
    price_min, price_max = _price_range(product)
    document = {
        'id': document_id(product.supplier_code, product.a_number),
        'sku': product.sku,
        'a_number': product.a_number,
        'supplier_code': product.supplier_code,
        'brand': product.brand,
        'is_active': True,
        'category': product.primary_category_code,
        'category_codes': list(product.category_codes),
        'colors': product.available_colors,
        'sizes': product.available_sizes,
        'hex_colors': sorted({variant.hex_colour for variant in product.variants if variant.hex_colour}),
        'variant_skus': [variant.sku for variant in product.variants],
        'total_variants_count': len(product.variants),
        'price_min': price_min,
        'price_max': price_max,
        'currency': product.currency,
        'main_image_url': product.main_image_url,
        'promidata_hash': product.content_hash,
    }
    for lang in LANGUAGES:
        document[f'name_{lang}'] = product.name.get(lang)
        document[f'description_{lang}'] = product.description.get(lang)
    return document


def _rag_content(product: ProductRecord) -> str:
    lines = [product.name.resolve() or product.sku]
    description = product.description.resolve()
    if description:
        lines.append(description)
    if product.brand:
        lines.append(f"Brand: {product.brand}")
    if product.available_colors:
        lines.append(f"Colours: {', '.join(product.available_colors)}")
    if product.available_sizes:
        lines.append(f"Sizes: {', '.join(product.available_sizes)}")
    price_min, price_max = _price_range(product)
    if price_min is not None:
        lines.append(f"Price: {price_min:.2f}-{price_max:.2f} {product.currency}")
    return '\n'.join(lines)


def build_rag_document(product: ProductRecord) -> dict:
    """Nested document for the semantic store, with a plain-text body for embedding."""
    price_min, price_max = _price_range(product)
    return {
        'id': document_id(product.supplier_code, product.a_number),
        'sku': product.sku,
        'a_number': product.a_number,
        'supplier_code': product.supplier_code,
        'name': product.name.to_dict(),
        'description': product.description.to_dict(),
        'brand': product.brand,
        'category_codes': list(product.category_codes),
        'available_colors': product.available_colors,
        'available_sizes': product.available_sizes,
        'pricing': {'min': price_min, 'max': price_max, 'currency': product.currency},
        'images': {'main': product.main_image_url},
        'content': _rag_content(product),
        'promidata_hash': product.content_hash,
    }
