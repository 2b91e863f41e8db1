import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Iterable, Mapping, Optional

from .exceptions import DocumentError

logger = logging.getLogger(__name__)

# Closed language set, in fallback order.
LANGUAGES = ('en', 'de', 'fr', 'nl', 'es')
DEFAULT_CURRENCY = 'EUR'
UNKNOWN_COLOUR = 'UNKNOWN'

_DIMENSION_FIELDS = {
    'length': 'DimensionsLength',
    'width': 'DimensionsWidth',
    'height': 'DimensionsHeight',
    'diameter': 'DimensionsDiameter',
    'depth': 'DimensionsDepth',
    'weight': 'Weight',
}


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _first(data: Mapping, *keys):
    for key in keys:
        value = data.get(key)
        if value not in (None, '', [], {}):
            return value
    return None


@dataclass(frozen=True)
class LocalizedText:
    """Text per supported language. Missing languages stay None."""

    en: Optional[str] = None
    de: Optional[str] = None
    fr: Optional[str] = None
    nl: Optional[str] = None
    es: Optional[str] = None

    @classmethod
    def from_mapping(cls, value) -> 'LocalizedText':
        """
        Build from a ``{lang: text}`` mapping. Unsupported languages are dropped;
        a bare string is taken as English.
        """
        if isinstance(value, str):
            return cls(en=_clean(value))
        if not isinstance(value, Mapping):
            return cls()
        return cls(**{lang: _clean(value.get(lang)) for lang in LANGUAGES})

    def get(self, lang: str) -> Optional[str]:
        if lang not in LANGUAGES:
            return None
        return getattr(self, lang)

    def resolve(self, preferred: str = 'en') -> Optional[str]:
        """Text in `preferred`, else the first available language in fallback order."""
        text = self.get(preferred)
        if text is not None:
            return text
        for lang in LANGUAGES:
            text = getattr(self, lang)
            if text is not None:
                return text
        return None

    def to_dict(self) -> dict:
        return {lang: getattr(self, lang) for lang in LANGUAGES if getattr(self, lang) is not None}

    def __bool__(self):
        return any(getattr(self, lang) is not None for lang in LANGUAGES)


@dataclass(frozen=True)
class PriceTier:
    quantity: int
    price: float
    currency: str = DEFAULT_CURRENCY
    region: Optional[str] = None
    price_type: str = 'selling'


@dataclass(frozen=True)
class VariantRecord:
    sku: str
    name: LocalizedText = field(default_factory=LocalizedText)
    colour: Optional[str] = None
    colour_code: Optional[str] = None
    hex_colour: Optional[str] = None
    size: Optional[str] = None
    material: LocalizedText = field(default_factory=LocalizedText)
    main_image_url: Optional[str] = None
    gallery_image_urls: tuple = ()
    dimensions: dict = field(default_factory=dict)
    is_primary_for_color: bool = False

    @property
    def colour_key(self) -> str:
        return self.colour_code or self.colour or UNKNOWN_COLOUR

    def to_dict(self) -> dict:
        return {
            'sku': self.sku,
            'name': self.name.to_dict(),
            'colour': self.colour,
            'colour_code': self.colour_code,
            'hex_colour': self.hex_colour,
            'size': self.size,
            'material': self.material.to_dict(),
            'main_image_url': self.main_image_url,
            'gallery_image_urls': list(self.gallery_image_urls),
            'dimensions': dict(self.dimensions),
            'is_primary_for_color': self.is_primary_for_color,
        }


@dataclass(frozen=True)
class ProductRecord:
    a_number: str
    sku: str
    supplier_code: str = ''
    source_url: str = ''
    content_hash: str = ''
    name: LocalizedText = field(default_factory=LocalizedText)
    description: LocalizedText = field(default_factory=LocalizedText)
    brand: Optional[str] = None
    currency: str = DEFAULT_CURRENCY
    price_tiers: tuple = ()
    main_image_url: Optional[str] = None
    gallery_image_urls: tuple = ()
    category_codes: tuple = ()
    primary_category_code: Optional[str] = None
    dimensions: dict = field(default_factory=dict)
    variants: tuple = ()

    @property
    def external_key(self) -> str:
        return self.a_number

    @property
    def available_colors(self) -> list:
        colours = []
        for variant in self.variants:
            if variant.colour and variant.colour not in colours:
                colours.append(variant.colour)
        return colours

    @property
    def available_sizes(self) -> list:
        return sorted({variant.size for variant in self.variants if variant.size})

    def variant(self, sku: str) -> Optional[VariantRecord]:
        for variant in self.variants:
            if variant.sku == sku:
                return variant
        return None

    def with_hash(self, content_hash: str) -> 'ProductRecord':
        return replace(self, content_hash=content_hash)

    def to_dict(self) -> dict:
        return {
            'a_number': self.a_number,
            'sku': self.sku,
            'supplier_code': self.supplier_code,
            'source_url': self.source_url,
            'content_hash': self.content_hash,
            'name': self.name.to_dict(),
            'description': self.description.to_dict(),
            'brand': self.brand,
            'currency': self.currency,
            'price_tiers': [asdict(tier) for tier in self.price_tiers],
            'main_image_url': self.main_image_url,
            'gallery_image_urls': list(self.gallery_image_urls),
            'category_codes': list(self.category_codes),
            'primary_category_code': self.primary_category_code,
            'available_colors': self.available_colors,
            'available_sizes': self.available_sizes,
            'dimensions': dict(self.dimensions),
            'variants': [variant.to_dict() for variant in self.variants],
        }

    def fingerprint(self) -> str:
        """Hash of the canonical content. Feed hash and source URL are excluded."""
        payload = self.to_dict()
        payload.pop('content_hash')
        payload.pop('source_url')
        return compute_hash(payload)


def compute_hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash of a JSON-serialisable dict."""
    serialized = json.dumps(payload, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(serialized.encode('utf-8')).hexdigest()


# ---------------------------------------------------------------------------
# Raw document access
# ---------------------------------------------------------------------------

def _looks_like_product(data) -> bool:
    return isinstance(data, Mapping) and any(
        key in data for key in ('Sku', 'SKU', 'sku', 'ChildProducts', 'ProductDetails', 'Name', 'name')
    )


def normalize_document(data) -> dict:
    """Unwrap list and ``product``/``data`` envelopes around a product document."""
    if _looks_like_product(data):
        return dict(data)
    if isinstance(data, list):
        if data and isinstance(data[0], Mapping):
            return dict(data[0])
        raise DocumentError('Product document is an empty list.')
    if isinstance(data, Mapping):
        if isinstance(data.get('product'), Mapping):
            return dict(data['product'])
        wrapped = data.get('data')
        if isinstance(wrapped, list) and wrapped and isinstance(wrapped[0], Mapping):
            return dict(wrapped[0])
        if isinstance(wrapped, Mapping):
            return dict(wrapped)
        return dict(data)
    raise DocumentError(f'Product document must be an object, got {type(data).__name__}.')


def _language_details(doc: Mapping) -> dict:
    details = doc.get('ProductDetails')
    if not isinstance(details, Mapping):
        return {}
    return {lang: details[lang] for lang in LANGUAGES if isinstance(details.get(lang), Mapping)}


def _non_language_details(doc: Mapping) -> Mapping:
    details = doc.get('NonLanguageDependedProductDetails')
    return details if isinstance(details, Mapping) else {}


def _localized(doc: Mapping, key: str, *fallback_keys) -> LocalizedText:
    details = _language_details(doc)
    text = LocalizedText.from_mapping({lang: details[lang].get(key) for lang in details})
    if text:
        return text
    value = _first(doc, *fallback_keys) if fallback_keys else None
    return LocalizedText.from_mapping(value)


def _configuration_value(doc: Mapping, name: str) -> Optional[str]:
    details = _language_details(doc)
    for lang in LANGUAGES:
        for config in details.get(lang, {}).get('ConfigurationFields') or ():
            if isinstance(config, Mapping) and config.get('ConfigurationName') == name:
                value = _clean(config.get('ConfigurationValue'))
                if value:
                    return value
    return None


def resolve_image_url(value) -> Optional[str]:
    """Accept ``{'Url': ...}``, a bare URL string, or a list of either."""
    if isinstance(value, str):
        return _clean(value)
    if isinstance(value, Mapping):
        return _clean(_first(value, 'Url', 'url', 'URL'))
    if isinstance(value, (list, tuple)):
        for item in value:
            url = resolve_image_url(item)
            if url:
                return url
    return None


def _main_image(doc: Mapping) -> Optional[str]:
    details = _language_details(doc)
    for lang in LANGUAGES:
        if lang in details:
            url = resolve_image_url(details[lang].get('Image'))
            if url:
                return url
    return resolve_image_url(_first(doc, 'MainImage', 'main_image', 'PrimaryImage', 'Image', 'image'))


def _gallery_images(doc: Mapping) -> tuple:
    details = _language_details(doc)
    images = None
    for lang in LANGUAGES:
        if lang in details and details[lang].get('MediaGalleryImages'):
            images = details[lang]['MediaGalleryImages']
            break
    if images is None:
        images = _first(doc, 'GalleryImages', 'gallery_images', 'Images') or ()

    urls = []
    for image in images if isinstance(images, (list, tuple)) else ():
        url = resolve_image_url(image)
        if url and url not in urls:
            urls.append(url)
    return tuple(urls)


def _dimensions(doc: Mapping) -> dict:
    details = _non_language_details(doc)
    dimensions = {}
    for name, source_key in _DIMENSION_FIELDS.items():
        value = details.get(source_key, doc.get(source_key))
        if value in (None, ''):
            continue
        try:
            dimensions[name] = float(value)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-numeric %s value %r.", name, value)
    return dimensions


def _to_quantity(value) -> Optional[int]:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _price_tiers(doc: Mapping) -> tuple:
    prices = doc.get('ProductPriceCountryBased')
    if not isinstance(prices, Mapping):
        return ()

    tiers = []
    for region, region_prices in prices.items():
        if not isinstance(region_prices, Mapping):
            continue
        for source_key, price_type in (('RecommendedSellingPrice', 'selling'), ('GeneralBuyingPrice', 'buying')):
            for info in region_prices.get(source_key) or ():
                if not isinstance(info, Mapping):
                    continue
                quantity = _to_quantity(info.get('Quantity'))
                try:
                    price = float(info.get('Price'))
                except (TypeError, ValueError):
                    continue
                if not quantity:
                    continue
                tiers.append(PriceTier(
                    quantity=quantity,
                    price=price,
                    currency=_clean(info.get('Currency')) or DEFAULT_CURRENCY,
                    region=region,
                    price_type=price_type,
                ))
    return tuple(tiers)


def _category_codes(docs: Iterable[Mapping]) -> list:
    codes = []
    for doc in docs:
        candidates = [_non_language_details(doc).get('Category'), doc.get('Category')]
        candidates.extend(doc.get('Categories') or ())
        for candidate in candidates:
            if isinstance(candidate, Mapping):
                candidate = _first(candidate, 'Code', 'code')
            code = _clean(candidate)
            if code and code not in codes:
                codes.append(code)
    return codes


def _primary_category(codes: list, known_categories=None) -> Optional[str]:
    for code in codes:
        if known_categories is None or code in known_categories:
            return code
    return None


def _a_number(doc: Mapping) -> Optional[str]:
    return _clean(_first(doc, 'a_number', 'ANumber', 'A_Number', 'aNumber', 'Model', 'model', 'ModelNumber'))


def _variant_sku(doc: Mapping) -> Optional[str]:
    return _clean(_first(doc, 'Sku', 'SKU', 'sku', 'SupplierSku'))


def _marked_primary(doc: Mapping) -> bool:
    return bool(_first(doc, 'IsPrimaryForColor', 'is_primary_for_color', 'IsPrimary'))


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------

def _child_documents(doc: Mapping) -> list:
    children = _first(doc, 'ChildProducts', 'childProducts')
    if isinstance(children, list):
        return [child for child in children if isinstance(child, Mapping)]
    return [doc]


def _transform_variant(child: Mapping, parent: Mapping) -> Optional[VariantRecord]:
    sku = _variant_sku(child)
    if not sku:
        logger.warning("Skipping variant without SKU in family %s.", _a_number(parent) or '<unknown>')
        return None

    source = child if _language_details(child) else parent
    non_language = _non_language_details(child)
    colour_name = _configuration_value(source, 'Color') or _clean(
        LocalizedText.from_mapping(_first(child, 'ColorName', 'color_name')).resolve()
    )

    return VariantRecord(
        sku=sku,
        name=_localized(source, 'Name', 'Name', 'name'),
        colour=colour_name,
        colour_code=_clean(_first(child, 'ColorCode', 'color_code') or non_language.get('SearchColor')),
        hex_colour=_clean(non_language.get('HexColor') or child.get('HexColor')),
        size=_configuration_value(source, 'Size') or _clean(_first(child, 'Size', 'size')),
        material=_localized(source, 'Material', 'Material', 'material'),
        main_image_url=_main_image(child) or _main_image(parent),
        gallery_image_urls=_gallery_images(child),
        dimensions=_dimensions(child),
    )


def _mark_primary_per_colour(variants: list, marks: list) -> list:
    """
    Flag exactly one variant per colour: the single marked one, the first of
    several marked ones, or the first encountered when none is marked.
    """
    chosen = {}
    for variant, marked in zip(variants, marks):
        key = variant.colour_key
        if key not in chosen:
            chosen[key] = (variant.sku, marked)
        elif marked and not chosen[key][1]:
            chosen[key] = (variant.sku, True)

    primary_skus = {sku for sku, _ in chosen.values()}
    return [replace(variant, is_primary_for_color=variant.sku in primary_skus) for variant in variants]


def extract_variants(doc: Mapping) -> tuple:
    children = _child_documents(doc)

    seen_skus = {}
    marks = []
    for child in children:
        variant = _transform_variant(child, doc)
        if variant is None:
            continue
        if variant.sku in seen_skus:
            logger.warning("Duplicate variant SKU %s – keeping first occurrence, skipping duplicate.", variant.sku)
            continue
        seen_skus[variant.sku] = variant
        marks.append(_marked_primary(child))

    return tuple(_mark_primary_per_colour(list(seen_skus.values()), marks))


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------

def transform_product(
    raw,
    a_number: Optional[str] = None,
    content_hash: str = '',
    supplier_code: str = '',
    source_url: str = '',
    known_categories=None,
) -> ProductRecord:
    """
    Transform a raw supplier document into a ProductRecord with its variants.

    `a_number` is the family id; when omitted it is read from the document.
    Raises DocumentError when the document has no usable shape or family id.
    """
    doc = normalize_document(raw)
    children = _child_documents(doc)
    base = children[0] if children else doc

    a_number = _clean(a_number) or _a_number(doc) or _a_number(base)
    if not a_number:
        raise DocumentError('Product document has no family id (a_number).')

    variants = extract_variants(doc)
    if not variants:
        logger.warning("Product %s has no variants with a SKU.", a_number)

    text_source = doc if _language_details(doc) else base
    name = _localized(text_source, 'Name', 'Name', 'name')
    if not name:
        logger.warning("Product %s has no name in any supported language.", a_number)

    price_tiers = _price_tiers(doc) or _price_tiers(base)
    codes = _category_codes([doc] + [child for child in children if child is not doc])
    non_language = _non_language_details(doc) or _non_language_details(base)

    return ProductRecord(
        a_number=a_number,
        sku=a_number,
        supplier_code=supplier_code,
        source_url=source_url,
        content_hash=content_hash,
        name=name,
        description=_localized(text_source, 'Description', 'Description', 'description'),
        brand=_clean(non_language.get('Brand') or _first(doc, 'Brand', 'brand')),
        currency=price_tiers[0].currency if price_tiers else DEFAULT_CURRENCY,
        price_tiers=price_tiers,
        main_image_url=_main_image(doc) or _main_image(base) or next(
            (variant.main_image_url for variant in variants if variant.main_image_url), None,
        ),
        gallery_image_urls=_gallery_images(doc) or _gallery_images(base),
        category_codes=tuple(codes),
        primary_category_code=_primary_category(codes, known_categories),
        dimensions=_dimensions(doc) or _dimensions(base),
        variants=variants,
    )


def family_id(raw, default: Optional[str] = None) -> Optional[str]:
    """Family id (a_number) a document declares, else `default`."""
    doc = normalize_document(raw)
    children = _child_documents(doc)
    base = children[0] if children else doc
    return _a_number(doc) or _a_number(base) or _clean(default)


def transform_family(
    raws,
    a_number: str,
    content_hash: str = '',
    supplier_code: str = '',
    source_url: str = '',
    known_categories=None,
) -> ProductRecord:
    """
    Transform every document of one family into a single ProductRecord.

    Product-level fields come from the first document that has them; variants,
    categories and gallery images are merged in document order. A SKU seen in
    an earlier document wins over a later duplicate.
    """
    records = [
        transform_product(
            raw,
            a_number=a_number,
            content_hash=content_hash,
            supplier_code=supplier_code,
            source_url=source_url,
            known_categories=known_categories,
        )
        for raw in raws
    ]
    if not records:
        raise DocumentError(f'Family {a_number} has no documents.')
    if len(records) == 1:
        return records[0]

    variants = {}
    for record in records:
        for variant in record.variants:
            if variant.sku in variants:
                logger.warning("Duplicate variant SKU %s in family %s – keeping first occurrence.",
                               variant.sku, a_number)
                continue
            variants[variant.sku] = variant
    merged = list(variants.values())
    merged = _mark_primary_per_colour(merged, [variant.is_primary_for_color for variant in merged])

    codes = []
    gallery = []
    for record in records:
        codes.extend(code for code in record.category_codes if code not in codes)
        gallery.extend(url for url in record.gallery_image_urls if url not in gallery)

    def first(attribute):
        return next((getattr(record, attribute) for record in records if getattr(record, attribute)), None)

    price_tiers = first('price_tiers') or ()
    return replace(
        records[0],
        name=first('name') or LocalizedText(),
        description=first('description') or LocalizedText(),
        brand=first('brand'),
        currency=price_tiers[0].currency if price_tiers else DEFAULT_CURRENCY,
        price_tiers=price_tiers,
        main_image_url=first('main_image_url'),
        gallery_image_urls=tuple(gallery),
        category_codes=tuple(codes),
        primary_category_code=_primary_category(codes, known_categories),
        dimensions=first('dimensions') or {},
        variants=tuple(merged),
    )
