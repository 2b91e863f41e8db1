"""
Parsers for the supplier feed text files.

Import.txt lists one product document per line as ``url|hash``; CAT.csv holds
the category hierarchy as ``code;name;parent_code``.
"""
import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

_SUPPLIER_CODE_RE = re.compile(r'/([A-Z]\d+)/')
_CATEGORY_HEADER_FIELDS = {'code', 'category_code', 'categorycode', 'cat_code', 'category'}


def manifest_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/Import/Import.txt"


def categories_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/CAT.csv"


@dataclass(frozen=True)
class ManifestEntry:
    source_url: str
    content_hash: str

    @property
    def external_key(self) -> str:
        """Filename stem of the product document: .../A23/A23-100804.json -> A23-100804."""
        path = urlsplit(self.source_url).path
        filename = path.rsplit('/', 1)[-1]
        if filename.lower().endswith('.json'):
            filename = filename[:-5]
        return filename

    @property
    def supplier_code(self) -> str:
        match = _SUPPLIER_CODE_RE.search(self.source_url)
        return match.group(1) if match else ''

    def as_ref(self) -> tuple:
        return (self.external_key, self.source_url, self.content_hash)


def family_hash(refs) -> str:
    """
    Feed hash of a product family from its ``(key, url, hash)`` file refs.

    A single file keeps its own hash; several files hash their sorted
    ``key|hash`` pairs, so the family changes whenever one of its files does.
    """
    pairs = sorted((key, content_hash) for key, _, content_hash in refs)
    if len(pairs) == 1:
        return pairs[0][1]
    payload = '\n'.join(f"{key}|{content_hash}" for key, content_hash in pairs)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


@dataclass(frozen=True)
class ManifestLineError:
    line_number: int
    line: str
    reason: str

    def __str__(self):
        return f"line {self.line_number}: {self.reason} ({self.line!r})"


@dataclass
class ManifestParseResult:
    entries: list = field(default_factory=list)
    errors: list = field(default_factory=list)

    def __iter__(self):
        return iter(self.entries)

    def __len__(self):
        return len(self.entries)


def parse_manifest(text: str) -> ManifestParseResult:
    """
    Parse Import.txt content.

    Blank lines and the CAT.csv reference line are skipped. A malformed line
    is recorded in `errors` and parsing carries on with the next one.
    """
    result = ManifestParseResult()

    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue
        if 'CAT.csv' in line:
            continue

        url, separator, rest = line.partition('|')
        url = url.strip()
        content_hash = rest.split('|', 1)[0].strip()

        if not separator or not content_hash:
            result.errors.append(ManifestLineError(line_number, line, 'missing hash'))
            continue
        if not url:
            result.errors.append(ManifestLineError(line_number, line, 'missing url'))
            continue

        result.entries.append(ManifestEntry(source_url=url, content_hash=content_hash))

    if result.errors:
        logger.warning("Manifest contained %d malformed line(s).", len(result.errors))
    logger.info("Parsed %d manifest entries.", len(result.entries))
    return result


def filter_for_supplier(entries, supplier_code: str) -> list:
    return [entry for entry in entries if entry.supplier_code == supplier_code]


def group_by_supplier(entries) -> dict:
    grouped = {}
    for entry in entries:
        grouped.setdefault(entry.supplier_code, []).append(entry)
    return grouped


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CategoryRecord:
    code: str
    name: str
    parent_code: Optional[str] = None


@dataclass
class CategoryNode:
    record: CategoryRecord
    children: list = field(default_factory=list)
    level: int = 0

    @property
    def code(self) -> str:
        return self.record.code


def _looks_like_header(line: str) -> bool:
    first = line.split(';', 1)[0].strip().lower()
    return first in _CATEGORY_HEADER_FIELDS


def parse_category_file(text: str, has_header: Optional[bool] = None) -> list:
    """
    Parse CAT.csv content into category records.

    `has_header=None` detects a header row by its first column name.
    """
    lines = [line for line in text.splitlines() if line.strip()]
    if lines:
        skip_first = _looks_like_header(lines[0]) if has_header is None else has_header
        if skip_first:
            lines = lines[1:]

    categories = []
    for line in lines:
        parts = [part.strip() for part in line.split(';')]
        if len(parts) < 2 or not parts[0] or not parts[1]:
            logger.debug("Skipping malformed category line %r.", line)
            continue
        parent_code = parts[2] if len(parts) > 2 and parts[2] else None
        categories.append(CategoryRecord(code=parts[0], name=parts[1], parent_code=parent_code))

    logger.info("Parsed %d categories.", len(categories))
    return categories


def build_category_tree(categories) -> list:
    """Return root nodes; categories whose parent is unknown become roots."""
    nodes = {category.code: CategoryNode(record=category) for category in categories}
    roots = []

    for category in categories:
        node = nodes[category.code]
        parent = nodes.get(category.parent_code) if category.parent_code else None
        if parent is not None and parent is not node:
            parent.children.append(node)
        else:
            roots.append(node)

    def _set_levels(node, level):
        node.level = level
        for child in node.children:
            _set_levels(child, level + 1)

    for root in roots:
        _set_levels(root, 0)
    return roots


def category_path(categories, code: str) -> list:
    """Breadcrumb from the root down to `code`."""
    by_code = {category.code: category for category in categories}
    path = []
    seen = set()
    current = by_code.get(code)
    while current is not None and current.code not in seen:
        seen.add(current.code)
        path.insert(0, current)
        current = by_code.get(current.parent_code) if current.parent_code else None
    return path
