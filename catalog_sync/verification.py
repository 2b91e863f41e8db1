import logging
from dataclasses import asdict, dataclass, field
from typing import Optional

from django.utils import timezone

from .documents import document_id
from .exceptions import SessionNotFound
from .models import SyncJobOutcome, SyncSession
from .queue import ACTION_REMOVE
from .sinks import DocumentSink, SystemOfRecord

logger = logging.getLogger(__name__)

KIND_MISSING = 'missing'
KIND_UNEXPECTED = 'unexpected'
KIND_HASH_MISMATCH = 'hash_mismatch'

STATUS_VERIFIED = 'verified'
STATUS_DIVERGED = 'diverged'


@dataclass(frozen=True)
class KeyDivergence:
    external_key: str
    sink: str
    kind: str
    expected: Optional[str] = None
    actual: Optional[str] = None


@dataclass
class VerificationReport:
    session_id: str
    supplier_code: str
    checked_keys: int = 0
    divergences: list = field(default_factory=list)
    counts: dict = field(default_factory=dict)
    verified_at: str = ''

    @property
    def status(self) -> str:
        return STATUS_DIVERGED if self.divergences else STATUS_VERIFIED

    def by_sink(self) -> dict:
        totals = {}
        for divergence in self.divergences:
            totals.setdefault(divergence.sink, {}).setdefault(divergence.kind, 0)
            totals[divergence.sink][divergence.kind] += 1
        return totals

    def for_key(self, external_key: str) -> list:
        return [d for d in self.divergences if d.external_key == external_key]

    def to_dict(self) -> dict:
        return {
            'session_id': self.session_id,
            'supplier_code': self.supplier_code,
            'status': self.status,
            'checked_keys': self.checked_keys,
            'divergence_count': len(self.divergences),
            'by_sink': self.by_sink(),
            'counts': self.counts,
            'divergences': [asdict(d) for d in self.divergences],
            'verified_at': self.verified_at,
        }


def _affected_keys(session: SyncSession) -> dict:
    """external_key -> (action, content_hash) of the last successful job per key."""
    affected = {}
    outcomes = session.outcomes.exclude(status=SyncJobOutcome.STATUS_FAILED).order_by('id')
    for outcome in outcomes:
        previous = affected.get(outcome.external_key)
        content_hash = outcome.content_hash or (previous[1] if previous else '')
        affected[outcome.external_key] = (outcome.action, content_hash)
    return affected


def _check_document(sink: DocumentSink, supplier_code: str, key: str, should_exist: bool,
                    expected_hash: Optional[str]):
    document = sink.get_document(document_id(supplier_code, key))
    if should_exist:
        if document is None:
            return KeyDivergence(key, sink.name, KIND_MISSING, expected=expected_hash)
        actual = document.get('promidata_hash')
        if expected_hash is not None and actual != expected_hash:
            return KeyDivergence(key, sink.name, KIND_HASH_MISMATCH, expected=expected_hash, actual=actual)
    elif document is not None:
        return KeyDivergence(key, sink.name, KIND_UNEXPECTED, actual=document.get('promidata_hash'))
    return None


def verify_session(
    session_id: str,
    system_of_record: SystemOfRecord,
    search_sink: DocumentSink,
    rag_sink: DocumentSink,
) -> VerificationReport:
    """
    Read back every key the session wrote or removed and compare the stores.

    The system of record is the reference: its stored hash is what the search
    index and RAG store documents must carry. Nothing is repaired here.
    """
    try:
        session = SyncSession.objects.get(session_id=session_id)
    except SyncSession.DoesNotExist:
        raise SessionNotFound(session_id) from None
    supplier_code = session.supplier_code
    affected = _affected_keys(session)
    stored = system_of_record.hashes_for(supplier_code, affected.keys())

    report = VerificationReport(session_id=session_id, supplier_code=supplier_code, checked_keys=len(affected))

    for key, (action, content_hash) in sorted(affected.items()):
        should_exist = action != ACTION_REMOVE
        if should_exist and key not in stored:
            report.divergences.append(
                KeyDivergence(key, system_of_record.name, KIND_MISSING, expected=content_hash or None)
            )
        elif not should_exist and key in stored:
            report.divergences.append(
                KeyDivergence(key, system_of_record.name, KIND_UNEXPECTED, actual=stored[key])
            )

        expected_hash = stored.get(key, content_hash or None) if should_exist else None
        for sink in (search_sink, rag_sink):
            divergence = _check_document(sink, supplier_code, key, should_exist, expected_hash)
            if divergence is not None:
                report.divergences.append(divergence)

    report.counts = {
        system_of_record.name: system_of_record.count(supplier_code),
        search_sink.name: search_sink.count(supplier_code),
        rag_sink.name: rag_sink.count(supplier_code),
    }
    report.verified_at = timezone.now().isoformat()

    SyncSession.objects.filter(pk=session.pk).update(
        verification_status=report.status, verification_details=report.to_dict(),
    )

    if report.divergences:
        logger.warning("Session %s verification found %d divergence(s): %s",
                       session_id, len(report.divergences), report.by_sink())
    else:
        logger.info("Session %s verified: %d key(s) consistent across all stores.",
                    session_id, report.checked_keys)
    return report
