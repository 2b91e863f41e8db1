BASE_URL = 'https://feed.example.com/Profiles/Live/test-profile'
MANIFEST_URL = f'{BASE_URL}/Import/Import.txt'
CATEGORIES_URL = f'{BASE_URL}/CAT.csv'
SUPPLIER = 'A23'


def document_url(a_number, supplier=SUPPLIER):
    return f'{BASE_URL}/{supplier}/{a_number}.json'


def manifest_line(a_number, content_hash, supplier=SUPPLIER):
    return f'{document_url(a_number, supplier)}|{content_hash}'


def product_document(a_number, price=2.5, name=None, children=None):
    """Supplier document in the feed's nested shape, with two colours by default."""
    if children is None:
        children = [
            {'Sku': f'{a_number}-01', 'ColorName': 'Red', 'ColorCode': 'RD', 'Size': 'M'},
            {'Sku': f'{a_number}-02', 'ColorName': 'Red', 'ColorCode': 'RD', 'Size': 'L'},
            {'Sku': f'{a_number}-03', 'ColorName': 'Blue', 'ColorCode': 'BL', 'Size': 'M'},
        ]
    return {
        'ProductDetails': {
            'en': {'Name': name or f'Mug {a_number}', 'Description': 'Ceramic mug, 300 ml.'},
            'de': {'Name': name or f'Tasse {a_number}', 'Description': 'Keramiktasse, 300 ml.'},
        },
        'NonLanguageDependedProductDetails': {'Brand': 'Acme', 'Category': 'CAT-10'},
        'ProductPriceCountryBased': {
            'BEL': {
                'RecommendedSellingPrice': [
                    {'Quantity': 1, 'Price': price, 'Currency': 'EUR'},
                    {'Quantity': 100, 'Price': price - 0.5, 'Currency': 'EUR'},
                ],
            },
        },
        'ChildProducts': children,
    }
