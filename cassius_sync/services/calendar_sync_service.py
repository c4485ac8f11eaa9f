from datetime import datetime
from typing import List, Optional
from sqlalchemy import or_
from sqlalchemy.orm import Session
import logging

from cassius_sync.database.models import Appointment, SyncIntegration, utcnow
from cassius_sync.errors import AppError, AuthExpiredError, NotFoundError
from cassius_sync.integrations.google_calendar import CalendarAdapter
from cassius_sync.integrations.retry import Backoff
from cassius_sync.models.calendar_event import ExternalEvent, to_utc_naive
from cassius_sync.models.conflict import ConflictCandidate
from cassius_sync.models.sync_status import SyncStatus
from .conflict_detector import ConflictDetector
from .conflict_store import ConflictStore

logger = logging.getLogger(__name__)


def get_integration(session: Session, tenant_id: str, provider: str = 'google') -> Optional[SyncIntegration]:
    return (
        session.query(SyncIntegration)
        .filter(SyncIntegration.tenant_id == tenant_id, SyncIntegration.provider == provider)
        .first()
    )


def appointments_in_window(session: Session, tenant_id: str, calendar_id: str,
                           time_min: datetime, time_max: datetime) -> List[Appointment]:
    """Appointments that could correspond to events of `calendar_id` in the window"""
    return (
        session.query(Appointment)
        .filter(
            Appointment.tenant_id == tenant_id,
            Appointment.date_start >= to_utc_naive(time_min),
            Appointment.date_start < to_utc_naive(time_max),
            or_(Appointment.external_event_id.is_(None), Appointment.external_calendar_id == calendar_id)
        )
        .order_by(Appointment.date_start)
        .all()
    )


def store_refreshed_tokens(adapter: CalendarAdapter, integration: SyncIntegration):
    tokens = adapter.refreshed_tokens()
    if tokens:
        integration.access_token = tokens['access_token']
        if tokens.get('expires_at'):
            integration.token_expires_at = tokens['expires_at']
        logger.info(f"Stored refreshed Google token for tenant {integration.tenant_id}")


class CalendarSyncService:
    """Pushes a tenant's appointments to its Google calendar and checks the calendar for divergences"""

    def __init__(self, session: Session, tenant_id: str, adapter: CalendarAdapter, config,
                 backoff: Optional[Backoff] = None):
        self.session = session
        self.tenant_id = tenant_id
        self.adapter = adapter
        self.config = config
        self.backoff = backoff or Backoff(
            max_retries=config.get('sync.max_retries', 3),
            base_delay=config.get('sync.backoff_base', 1.0)
        )
        self.detector = ConflictDetector(
            marker=config.get('google.event_marker', '[Cassius]'),
            match_window_minutes=config.get('sync.match_window_minutes', 15)
        )

    def get_integration(self) -> SyncIntegration:
        integration = get_integration(self.session, self.tenant_id)
        if integration is None:
            raise NotFoundError("Google Calendar integration")
        return integration

    def sync_now(self) -> SyncStatus:
        """Export pass: internal appointments -> target calendar"""
        integration = self.get_integration()
        if not integration.is_enabled:
            raise AppError("Google Calendar sync is disabled", 400, "SYNC_DISABLED")
        if not integration.target_calendar_id:
            raise AppError("No target calendar selected", 400, "NO_TARGET_CALENDAR")

        calendar_id = integration.target_calendar_id
        appointments = (
            self.session.query(Appointment)
            .filter(Appointment.tenant_id == self.tenant_id)
            .order_by(Appointment.date_start)
            .all()
        )
        logger.info(f"Syncing {len(appointments)} appointments of tenant {self.tenant_id} to {calendar_id}")

        status = SyncStatus()
        try:
            for appointment in appointments:
                try:
                    outcome = self._sync_appointment(calendar_id, appointment)
                except AuthExpiredError:
                    raise
                except AppError as e:
                    logger.error(f"Failed to sync appointment {appointment.id}: {e}")
                    appointment.sync_status = 'ERROR'
                    appointment.sync_error = e.message
                    status.errors.append(f"{appointment.id}: {e.message}")
                    outcome = 'failed'
                status.record(outcome)
                # Linkage must survive an abort later in the pass
                self.session.commit()
        except AuthExpiredError as e:
            self._record_abort(integration, e.message)
            raise
        except Exception as e:
            # Drop the half-synced appointment; earlier ones are already committed
            self.session.rollback()
            self._record_abort(integration, str(e) or type(e).__name__)
            raise

        integration.last_sync_at = utcnow()
        if status.failed:
            integration.sync_error_count = (integration.sync_error_count or 0) + 1
            integration.last_sync_error = f"{status.failed} rendez-vous en erreur: {status.errors[0]}"
        else:
            integration.sync_error_count = 0
            integration.last_sync_error = None
        store_refreshed_tokens(self.adapter, integration)
        self.session.commit()

        logger.info(
            f"Sync finished for tenant {self.tenant_id}: {status.created} created, {status.updated} updated, "
            f"{status.skipped} skipped, {status.failed} failed"
        )
        return status

    def _record_abort(self, integration: SyncIntegration, message: str):
        logger.error(f"Sync aborted for tenant {self.tenant_id}: {message}")
        integration.sync_error_count = (integration.sync_error_count or 0) + 1
        integration.last_sync_error = message
        store_refreshed_tokens(self.adapter, integration)
        self.session.commit()

    def _unlink(self, appointment: Appointment):
        appointment.external_provider = None
        appointment.external_calendar_id = None
        appointment.external_event_id = None
        appointment.sync_status = 'NONE'
        appointment.sync_error = None
        appointment.last_synced_at = utcnow()

    def _sync_appointment(self, calendar_id: str, appointment: Appointment) -> str:
        if appointment.status == 'CANCELLED':
            if not appointment.external_event_id:
                return 'skipped'
            self.backoff.call(
                self.adapter.delete_event,
                appointment.external_calendar_id or calendar_id,
                appointment.external_event_id
            )
            self._unlink(appointment)
            return 'updated'

        linked = appointment.external_event_id is not None
        moved = linked and appointment.external_calendar_id not in (None, calendar_id)
        if linked and not moved and not appointment.edited_since_sync and appointment.sync_status != 'ERROR':
            return 'skipped'

        if moved:
            self.backoff.call(self.adapter.delete_event, appointment.external_calendar_id, appointment.external_event_id)
            self._unlink(appointment)

        event_id = self.backoff.call(self.adapter.upsert_event, calendar_id, appointment)
        appointment.external_provider = 'google'
        appointment.external_calendar_id = calendar_id
        appointment.external_event_id = event_id
        appointment.sync_status = 'SYNCED'
        appointment.sync_error = None
        appointment.last_synced_at = utcnow()
        return 'updated' if linked else 'created'

    def fetch_events(self, calendar_id: str, time_min: datetime, time_max: datetime) -> List[ExternalEvent]:
        return self.backoff.call(self.adapter.list_events, calendar_id, time_min, time_max)

    def find_conflicts(self, calendar_id: str, events: List[ExternalEvent],
                       time_min: datetime, time_max: datetime) -> List[ConflictCandidate]:
        appointments = appointments_in_window(self.session, self.tenant_id, calendar_id, time_min, time_max)
        return self.detector.detect(events, appointments)

    def detect_conflicts(self, time_min: datetime, time_max: datetime, calendar_id: Optional[str] = None,
                         persist: bool = False) -> List[ConflictCandidate]:
        """Run the detector over one window of the calendar"""
        integration = self.get_integration()
        calendar_id = calendar_id or integration.target_calendar_id or 'primary'
        events = self.fetch_events(calendar_id, time_min, time_max)
        candidates = self.find_conflicts(calendar_id, events, time_min, time_max)
        if persist:
            ConflictStore(self.session, self.tenant_id).record_all(candidates)
        store_refreshed_tokens(self.adapter, integration)
        self.session.commit()
        return candidates
