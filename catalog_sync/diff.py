import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

logger = logging.getLogger(__name__)


class Classification(str, enum.Enum):
    NEW = 'new'
    CHANGED = 'changed'
    UNCHANGED = 'unchanged'
    REMOVED = 'removed'


@dataclass
class DiffResult:
    new: list = field(default_factory=list)
    changed: list = field(default_factory=list)
    unchanged: list = field(default_factory=list)
    removed: list = field(default_factory=list)   # external keys, sorted

    @property
    def to_sync(self) -> list:
        return self.new + self.changed

    @property
    def total(self) -> int:
        return len(self.new) + len(self.changed) + len(self.unchanged)

    @property
    def efficiency(self) -> float:
        """Percentage of manifest entries that need no fetch."""
        if not self.total:
            return 0.0
        return round(len(self.unchanged) / self.total * 100, 1)

    def classification_of(self, key: str, key_fn: Optional[Callable] = None) -> Optional[Classification]:
        key_fn = key_fn or _default_key
        for bucket, classification in (
            (self.new, Classification.NEW),
            (self.changed, Classification.CHANGED),
            (self.unchanged, Classification.UNCHANGED),
        ):
            if any(key_fn(entry) == key for entry in bucket):
                return classification
        if key in self.removed:
            return Classification.REMOVED
        return None

    def summary(self) -> dict:
        return {
            'new': len(self.new),
            'changed': len(self.changed),
            'unchanged': len(self.unchanged),
            'removed': len(self.removed),
            'efficiency': self.efficiency,
        }


def _default_key(entry) -> str:
    return entry.external_key


def classify(entries, stored_hashes: Mapping[str, Optional[str]], key: Optional[Callable] = None) -> DiffResult:
    """
    Partition manifest entries against the hashes stored in the system-of-record.

    Hashes are compared for exact equality. A stored record without a hash is
    treated as changed. When the manifest lists the same key twice, the first
    entry wins and the rest are ignored.
    """
    key = key or _default_key
    result = DiffResult()
    seen = set()

    for entry in entries:
        entry_key = key(entry)
        if entry_key in seen:
            logger.warning("Duplicate manifest key %s – keeping first occurrence.", entry_key)
            continue
        seen.add(entry_key)

        if entry_key not in stored_hashes:
            result.new.append(entry)
        elif stored_hashes[entry_key] is None or stored_hashes[entry_key] != entry.content_hash:
            result.changed.append(entry)
        else:
            result.unchanged.append(entry)

    result.removed = sorted(stored_key for stored_key in stored_hashes if stored_key not in seen)

    logger.info(
        "Diff: new=%d, changed=%d, unchanged=%d, removed=%d (%.1f%% skipped).",
        len(result.new), len(result.changed), len(result.unchanged),
        len(result.removed), result.efficiency,
    )
    return result
