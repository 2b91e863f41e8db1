from datetime import timedelta

import pytest
from django.utils import timezone

from catalog_sync.exceptions import SessionNotFound, SyncAlreadyRunning
from catalog_sync.ledger import MAX_STORED_ERRORS, make_session_id
from catalog_sync.models import Supplier, SyncJobOutcome, SyncSession, SyncSessionError
from catalog_sync.queue import SyncJob


def job(key='A23-1', **kwargs):
    return SyncJob(entity_type='product', external_key=key, supplier_code='A23', **kwargs)


def test_session_id_format():
    session_id = make_session_id('A23')
    prefix, timestamp, supplier, suffix = session_id.split('_')

    assert prefix == 'sess'
    assert timestamp.isdigit()
    assert supplier == 'A23'
    assert len(suffix) == 8


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.django_db
class TestLifecycle:
    def test_one_running_session_per_supplier(self, ledger):
        session = ledger.start_session('A23')

        with pytest.raises(SyncAlreadyRunning) as excinfo:
            ledger.start_session('A23', triggered_by='scheduled')
        assert excinfo.value.session_id == session.session_id

        other = ledger.start_session('B11')
        assert other.state == SyncSession.STATE_RUNNING

    def test_new_session_allowed_after_finish(self, ledger):
        session = ledger.start_session('A23')
        ledger.finish_session(session.session_id, SyncSession.STATE_COMPLETED)

        assert ledger.start_session('A23').session_id != session.session_id

    def test_counters_and_phase(self, ledger):
        session = ledger.start_session('A23')
        ledger.set_phase(session.session_id, SyncSession.PHASE_DIFFING)
        ledger.record_scan(session.session_id, scanned=10, unchanged=4)
        ledger.increment(session.session_id, added=2, failed=1)
        ledger.increment(session.session_id, added=1)

        session.refresh_from_db()
        assert session.phase == SyncSession.PHASE_DIFFING
        assert session.totals == {'scanned': 10, 'added': 3, 'updated': 0, 'unchanged': 4,
                                  'removed': 0, 'failed': 1}

    def test_unknown_counter_rejected(self, ledger):
        session = ledger.start_session('A23')
        with pytest.raises(ValueError):
            ledger.increment(session.session_id, bogus=1)

    def test_finished_session_is_immutable(self, ledger):
        session = ledger.start_session('A23')
        finished = ledger.finish_session(session.session_id, SyncSession.STATE_COMPLETED, totals={'added': 2})

        assert ledger.increment(session.session_id, added=5) is False
        assert ledger.set_phase(session.session_id, SyncSession.PHASE_DRAINING) is False
        ledger.finish_session(session.session_id, SyncSession.STATE_FAILED)
        ledger.add_error(session.session_id, 'job', 'late error')

        session.refresh_from_db()
        assert session.state == SyncSession.STATE_COMPLETED
        assert session.added == 2
        assert session.ended_at == finished.ended_at
        assert session.phase == SyncSession.PHASE_IDLE
        assert session.error_count == 0

    def test_fail_session_records_error(self, ledger):
        session = ledger.start_session('A23')
        failed = ledger.fail_session(session.session_id, 'HTTP 500', stage='manifest')

        assert failed.state == SyncSession.STATE_FAILED
        assert failed.last_error == 'HTTP 500'
        assert failed.ended_at is not None
        assert [(e.stage, e.message) for e in ledger.recent_errors(session.session_id)] == [('manifest', 'HTTP 500')]

    def test_error_log_is_bounded(self, ledger):
        session = ledger.start_session('A23')
        for index in range(MAX_STORED_ERRORS + 5):
            ledger.add_error(session.session_id, 'job', f'error {index}', external_key=f'A23-{index}')

        session.refresh_from_db()
        assert SyncSessionError.objects.filter(session=session).count() == MAX_STORED_ERRORS
        assert session.error_count == MAX_STORED_ERRORS + 5
        assert session.last_error == f'error {MAX_STORED_ERRORS + 4}'
        assert not SyncSessionError.objects.filter(message='error 0').exists()

    def test_outcome_counted_once_per_job(self, ledger):
        session = ledger.start_session('A23')
        done = job()

        ledger.record_outcome(session.session_id, done, SyncJobOutcome.STATUS_ADDED)
        ledger.record_outcome(session.session_id, done, SyncJobOutcome.STATUS_ADDED)
        ledger.record_outcome(session.session_id, job('A23-2'), SyncJobOutcome.STATUS_FAILED, error='boom')

        session.refresh_from_db()
        assert session.added == 1
        assert session.failed == 1
        assert ledger.aggregate_outcomes(session.session_id) == {
            'added': 1, 'updated': 0, 'removed': 0, 'failed': 1,
        }

    def test_stop_request(self, ledger):
        assert ledger.request_stop('A23') is None

        session = ledger.start_session('A23')
        assert ledger.is_stop_requested(session.session_id) is False
        ledger.request_stop('A23')
        assert ledger.is_stop_requested(session.session_id) is True


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

@pytest.mark.django_db
class TestQueries:
    def test_get_unknown_session(self, ledger):
        with pytest.raises(SessionNotFound):
            ledger.get_session('sess_0_A23_deadbeef')

    def test_history_and_active(self, ledger):
        first = ledger.start_session('A23')
        ledger.finish_session(first.session_id, SyncSession.STATE_COMPLETED)
        second = ledger.start_session('A23')

        assert [s.session_id for s in ledger.active_sessions()] == [second.session_id]
        assert ledger.latest_session('A23').session_id == second.session_id
        assert {s.session_id for s in ledger.supplier_history('A23')} == {first.session_id, second.session_id}
        assert len(ledger.supplier_history('A23', limit=1)) == 1

    def test_summary(self, ledger):
        for state in (SyncSession.STATE_COMPLETED, SyncSession.STATE_COMPLETED, SyncSession.STATE_FAILED):
            session = ledger.start_session('A23')
            ledger.finish_session(session.session_id, state, last_error='broken' if state == 'failed' else None)

        summary = ledger.summary(days=7)

        assert summary['total_sessions'] == 3
        assert summary['completed'] == 2
        assert summary['failed'] == 1
        assert summary['success_rate'] == 67
        assert summary['recent_failures'][0]['last_error'] == 'broken'


@pytest.mark.django_db
class TestPipelineHealth:
    def test_never_synced_supplier_is_unhealthy(self, ledger):
        Supplier.objects.create(code='A23')

        health = ledger.pipeline_health()

        assert health['status'] == 'degraded'
        assert health['suppliers'][0]['reason'] == 'never synced'

    def test_recent_clean_sync_is_healthy(self, ledger):
        Supplier.objects.create(code='A23')
        session = ledger.start_session('A23')
        ledger.finish_session(session.session_id, SyncSession.STATE_COMPLETED, totals={'added': 10})

        health = ledger.pipeline_health()

        assert health['status'] == 'healthy'
        assert health['suppliers'][0]['healthy'] is True

    def test_failed_stale_and_noisy_sessions_are_unhealthy(self, ledger):
        for code in ('A23', 'B11', 'C42'):
            Supplier.objects.create(code=code)

        failed = ledger.start_session('A23')
        ledger.fail_session(failed.session_id, 'manifest unreachable')

        stale = ledger.start_session('B11')
        ledger.finish_session(stale.session_id, SyncSession.STATE_COMPLETED)
        SyncSession.objects.filter(session_id=stale.session_id).update(
            ended_at=timezone.now() - timedelta(hours=48),
        )

        noisy = ledger.start_session('C42')
        ledger.finish_session(noisy.session_id, SyncSession.STATE_COMPLETED, totals={'added': 5, 'failed': 5})

        health = ledger.pipeline_health(max_age_hours=26, max_failure_ratio=0.1)
        reasons = {entry['supplier_code']: entry['reason'] for entry in health['suppliers']}

        assert health['status'] == 'degraded'
        assert reasons['A23'] == 'manifest unreachable'
        assert reasons['B11'] == 'last sync older than 26h'
        assert reasons['C42'].startswith('failure ratio 50%')
