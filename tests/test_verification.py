import pytest
import responses as responses_lib

from catalog_sync.exceptions import SessionNotFound
from catalog_sync.orchestrator import SyncOrchestrator
from catalog_sync.verification import KIND_HASH_MISMATCH, KIND_MISSING, KIND_UNEXPECTED, verify_session

from factories import BASE_URL, MANIFEST_URL, SUPPLIER, document_url, manifest_line, product_document


@pytest.fixture()
def synced(fetcher, fanout, ledger):
    """Run a sync over three products and return its session."""
    orchestrator = SyncOrchestrator(fetcher, fanout, ledger, base_url=BASE_URL, eager=True)
    with responses_lib.RequestsMock() as mock:
        mock.add(mock.GET, MANIFEST_URL, body='\n'.join(
            manifest_line(key, f'hash-{key}') for key in ('A23-1', 'A23-2', 'A23-3')
        ))
        for key in ('A23-1', 'A23-2', 'A23-3'):
            mock.add(mock.GET, document_url(key), json=product_document(key))
        return orchestrator.run(SUPPLIER)


def verify(session, fanout):
    return verify_session(session.session_id, fanout.system_of_record, fanout.search_sink, fanout.rag_sink)


@pytest.mark.django_db
class TestVerifySession:
    def test_consistent_stores_verify(self, synced, fanout):
        report = verify(synced, fanout)

        assert report.status == 'verified'
        assert report.checked_keys == 3
        assert report.counts == {'system_of_record': 3, 'search_index': 3, 'rag_store': 3}

        synced.refresh_from_db()
        assert synced.verification_status == 'verified'
        assert synced.verification_details['checked_keys'] == 3

    def test_hash_mismatch_in_one_sink(self, synced, fanout, search_sink):
        stale = search_sink.get_document('A23_A23-2')
        stale['promidata_hash'] = 'hash-outdated'
        search_sink.upsert_document(stale)

        report = verify(synced, fanout)

        assert report.status == 'diverged'
        assert len(report.divergences) == 1
        divergence = report.divergences[0]
        assert (divergence.external_key, divergence.sink, divergence.kind) == (
            'A23-2', 'search_index', KIND_HASH_MISMATCH,
        )
        assert divergence.expected == 'hash-A23-2'
        assert divergence.actual == 'hash-outdated'
        assert report.by_sink() == {'search_index': {KIND_HASH_MISMATCH: 1}}

    def test_missing_document(self, synced, fanout, rag_sink):
        rag_sink.delete_document('A23_A23-3')

        report = verify(synced, fanout)

        assert [(d.external_key, d.sink, d.kind) for d in report.divergences] == [
            ('A23-3', 'rag_store', KIND_MISSING),
        ]

    def test_removed_key_still_present_is_unexpected(self, synced, fetcher, fanout, ledger, search_sink):
        orchestrator = SyncOrchestrator(fetcher, fanout, ledger, base_url=BASE_URL, eager=True)
        with responses_lib.RequestsMock() as mock:
            mock.add(mock.GET, MANIFEST_URL, body='\n'.join(
                manifest_line(key, f'hash-{key}') for key in ('A23-1', 'A23-2')
            ))
            second = orchestrator.run(SUPPLIER)
        assert second.removed == 1

        leftover = dict(search_sink.get_document('A23_A23-1'), id='A23_A23-3')
        search_sink.upsert_document(leftover)

        report = verify(second, fanout)

        assert [(d.external_key, d.sink, d.kind) for d in report.for_key('A23-3')] == [
            ('A23-3', 'search_index', KIND_UNEXPECTED),
        ]

    def test_unknown_session(self, fanout):
        with pytest.raises(SessionNotFound):
            verify_session('sess_0_A23_00000000', fanout.system_of_record, fanout.search_sink, fanout.rag_sink)
