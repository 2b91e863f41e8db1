import logging
import secrets
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Count, F
from django.utils import timezone

from .exceptions import SessionNotFound, SyncAlreadyRunning
from .models import Supplier, SyncJobOutcome, SyncSession, SyncSessionError

logger = logging.getLogger(__name__)

MAX_STORED_ERRORS = 100

_OUTCOME_COUNTERS = {
    SyncJobOutcome.STATUS_ADDED: 'added',
    SyncJobOutcome.STATUS_UPDATED: 'updated',
    SyncJobOutcome.STATUS_REMOVED: 'removed',
    SyncJobOutcome.STATUS_FAILED: 'failed',
}


def make_session_id(supplier_code: str) -> str:
    timestamp = int(timezone.now().timestamp() * 1000)
    return f"sess_{timestamp}_{supplier_code}_{secrets.token_hex(4)}"


class SessionLedger:
    """
    Persistent record of sync sessions.

    Counter updates are single UPDATE statements with F() expressions and only
    touch sessions that are still running, so finished sessions never change.
    """

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_session(self, supplier_code: str, triggered_by: str = 'manual') -> SyncSession:
        running = self.running_session(supplier_code)
        if running is not None:
            raise SyncAlreadyRunning(supplier_code, running.session_id)
        try:
            with transaction.atomic():
                session = SyncSession.objects.create(
                    session_id=make_session_id(supplier_code),
                    supplier_code=supplier_code,
                    triggered_by=triggered_by,
                )
        except IntegrityError as exc:
            running = self.running_session(supplier_code)
            raise SyncAlreadyRunning(supplier_code, running.session_id if running else '') from exc

        logger.info("Started sync session %s for supplier %s (%s).",
                    session.session_id, supplier_code, triggered_by)
        return session

    def set_phase(self, session_id: str, phase: str) -> bool:
        updated = self._running(session_id).update(phase=phase)
        if updated:
            logger.info("Session %s: phase -> %s.", session_id, phase)
        return bool(updated)

    def record_scan(self, session_id: str, scanned: int, unchanged: int) -> bool:
        return bool(self._running(session_id).update(scanned=scanned, unchanged=unchanged))

    def increment(self, session_id: str, **deltas) -> bool:
        unknown = set(deltas) - set(SyncSession.TOTAL_FIELDS)
        if unknown:
            raise ValueError(f"Unknown session counters: {sorted(unknown)}")
        if not deltas:
            return False
        updates = {name: F(name) + amount for name, amount in deltas.items()}
        return bool(self._running(session_id).update(**updates))

    def add_error(self, session_id: str, stage: str, message: str, external_key: str = '') -> None:
        session = self._running(session_id).first()
        if session is None:
            logger.warning("Dropping error for finished or unknown session %s: %s", session_id, message)
            return

        with transaction.atomic():
            SyncSessionError.objects.create(
                session=session, stage=stage, external_key=external_key, message=message[:2000],
            )
            SyncSession.objects.filter(pk=session.pk).update(
                error_count=F('error_count') + 1, last_error=message[:2000],
            )
            stale_ids = list(
                SyncSessionError.objects.filter(session=session)
                .order_by('-id')
                .values_list('id', flat=True)[MAX_STORED_ERRORS:]
            )
            if stale_ids:
                SyncSessionError.objects.filter(id__in=stale_ids).delete()

    def record_outcome(self, session_id: str, job, status: str, error: str = '') -> Optional[SyncJobOutcome]:
        """
        Store the final result of one job and bump the matching counter.

        A job that already has an outcome is not counted twice.
        """
        session = self._running(session_id).first()
        if session is None:
            logger.warning("Ignoring outcome of job %s for finished or unknown session %s.",
                           job.job_id, session_id)
            return None

        with transaction.atomic():
            outcome, created = SyncJobOutcome.objects.get_or_create(
                session=session,
                job_id=job.job_id,
                defaults={
                    'entity_type': job.entity_type,
                    'action': job.action,
                    'external_key': job.external_key,
                    'source_url': job.source_url,
                    'content_hash': job.content_hash,
                    'status': status,
                    'attempts': job.attempt,
                    'last_error': error,
                },
            )
            if created:
                counter = _OUTCOME_COUNTERS[status]
                SyncSession.objects.filter(pk=session.pk, state=SyncSession.STATE_RUNNING).update(
                    **{counter: F(counter) + 1}
                )
        return outcome

    def request_stop(self, supplier_code: str) -> Optional[SyncSession]:
        session = self.running_session(supplier_code)
        if session is None:
            return None
        self._running(session.session_id).update(stop_requested=True)
        session.stop_requested = True
        logger.info("Stop requested for session %s (supplier %s).", session.session_id, supplier_code)
        return session

    def is_stop_requested(self, session_id: str) -> bool:
        return SyncSession.objects.filter(session_id=session_id, stop_requested=True).exists()

    def finish_session(self, session_id: str, state: str, totals: Optional[dict] = None,
                       last_error: Optional[str] = None) -> SyncSession:
        updates = {'state': state, 'phase': SyncSession.PHASE_IDLE, 'ended_at': timezone.now()}
        if totals:
            updates.update({name: totals[name] for name in SyncSession.TOTAL_FIELDS if name in totals})
        if last_error is not None:
            updates['last_error'] = last_error
        self._running(session_id).update(**updates)

        session = self.get_session(session_id)
        logger.info(
            "Session %s finished as %s: %s",
            session_id, session.state,
            ', '.join(f"{name}={value}" for name, value in session.totals.items()),
        )
        return session

    def fail_session(self, session_id: str, error: str, stage: str = 'session') -> SyncSession:
        self.add_error(session_id, stage, error)
        return self.finish_session(session_id, SyncSession.STATE_FAILED, last_error=error)

    def aggregate_outcomes(self, session_id: str) -> dict:
        """Counts of job outcomes per counter, computed from the outcome rows."""
        rows = (
            SyncJobOutcome.objects.filter(session__session_id=session_id)
            .order_by()
            .values('status')
            .annotate(total=Count('id'))
        )
        totals = {counter: 0 for counter in _OUTCOME_COUNTERS.values()}
        for row in rows:
            totals[_OUTCOME_COUNTERS[row['status']]] = row['total']
        return totals

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> SyncSession:
        try:
            return SyncSession.objects.get(session_id=session_id)
        except SyncSession.DoesNotExist:
            raise SessionNotFound(session_id) from None

    def running_session(self, supplier_code: str) -> Optional[SyncSession]:
        return SyncSession.objects.filter(
            supplier_code=supplier_code, state=SyncSession.STATE_RUNNING,
        ).first()

    def latest_session(self, supplier_code: str) -> Optional[SyncSession]:
        return SyncSession.objects.filter(supplier_code=supplier_code).first()

    def active_sessions(self) -> list:
        return list(SyncSession.objects.filter(state=SyncSession.STATE_RUNNING))

    def supplier_history(self, supplier_code: str, limit: int = 20) -> list:
        return list(SyncSession.objects.filter(supplier_code=supplier_code)[:limit])

    def recent_errors(self, session_id: str) -> list:
        return list(SyncSessionError.objects.filter(session__session_id=session_id))

    def summary(self, days: int = 7) -> dict:
        since = timezone.now() - timedelta(days=days)
        sessions = SyncSession.objects.filter(started_at__gte=since)
        by_state = dict(sessions.order_by().values_list('state').annotate(total=Count('id')))

        total = sum(by_state.values())
        completed = by_state.get(SyncSession.STATE_COMPLETED, 0)
        recent_failures = sessions.filter(state=SyncSession.STATE_FAILED)[:5]

        return {
            'period_days': days,
            'total_sessions': total,
            'completed': completed,
            'failed': by_state.get(SyncSession.STATE_FAILED, 0),
            'cancelled': by_state.get(SyncSession.STATE_CANCELLED, 0),
            'active': SyncSession.objects.filter(state=SyncSession.STATE_RUNNING).count(),
            'success_rate': round(completed / total * 100) if total else 100,
            'recent_failures': [
                {
                    'session_id': session.session_id,
                    'supplier_code': session.supplier_code,
                    'last_error': session.last_error,
                    'started_at': session.started_at.isoformat(),
                }
                for session in recent_failures
            ],
        }

    def pipeline_health(self, max_age_hours: Optional[float] = None,
                        max_failure_ratio: Optional[float] = None) -> dict:
        """
        Judge each known supplier by its latest session.

        A supplier is healthy when that session did not fail, is running or
        ended within `max_age_hours`, and its failed/processed job ratio is at
        most `max_failure_ratio`. The pipeline is healthy only if every
        supplier is.
        """
        if max_age_hours is None:
            max_age_hours = settings.CATALOG_SYNC_HEALTH_MAX_AGE_HOURS
        if max_failure_ratio is None:
            max_failure_ratio = settings.CATALOG_SYNC_HEALTH_MAX_FAILURE_RATIO

        now = timezone.now()
        supplier_codes = list(Supplier.objects.filter(is_active=True).values_list('code', flat=True))
        if not supplier_codes:
            supplier_codes = sorted(set(SyncSession.objects.values_list('supplier_code', flat=True)))

        suppliers = [
            self._supplier_health(code, now, max_age_hours, max_failure_ratio)
            for code in supplier_codes
        ]
        healthy = all(entry['healthy'] for entry in suppliers)
        return {
            'status': 'healthy' if healthy else 'degraded',
            'active_syncs': SyncSession.objects.filter(state=SyncSession.STATE_RUNNING).count(),
            'suppliers': suppliers,
            'checked_at': now.isoformat(),
        }

    def _supplier_health(self, supplier_code, now, max_age_hours, max_failure_ratio) -> dict:
        session = self.latest_session(supplier_code)
        entry = {'supplier_code': supplier_code, 'healthy': False, 'reason': '', 'session_id': None,
                 'state': None, 'failure_ratio': None}
        if session is None:
            entry['reason'] = 'never synced'
            return entry

        processed = session.added + session.updated + session.removed + session.failed
        failure_ratio = session.failed / processed if processed else 0.0
        entry.update(session_id=session.session_id, state=session.state, failure_ratio=round(failure_ratio, 3))

        reference = session.ended_at or session.started_at
        is_recent = session.state == SyncSession.STATE_RUNNING or (
            reference is not None and now - reference <= timedelta(hours=max_age_hours)
        )

        if session.state == SyncSession.STATE_FAILED:
            entry['reason'] = session.last_error or 'last sync failed'
        elif not is_recent:
            entry['reason'] = f'last sync older than {max_age_hours:g}h'
        elif failure_ratio > max_failure_ratio:
            entry['reason'] = f'failure ratio {failure_ratio:.0%} above {max_failure_ratio:.0%}'
        else:
            entry['healthy'] = True
        return entry

    # ------------------------------------------------------------------

    @staticmethod
    def _running(session_id: str):
        return SyncSession.objects.filter(session_id=session_id, state=SyncSession.STATE_RUNNING)
