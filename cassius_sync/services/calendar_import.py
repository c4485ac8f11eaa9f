"""
Import of Google Calendar events into the local ImportedEvent cache, with
the same preview/run protocol as the CSV import.
"""

from typing import List, Optional, Dict, Any
from sqlalchemy.orm import Session
import json
import logging

from cassius_sync.database.models import Appointment, ImportedEvent, utcnow
from cassius_sync.errors import UnreadableFileError
from cassius_sync.models.calendar_event import ExternalEvent
from cassius_sync.models.conflict import ConflictCandidate
from cassius_sync.models.imports import ValidationSample, CalendarImportRequest, RunResult
from .calendar_sync_service import CalendarSyncService, store_refreshed_tokens
from .conflict_store import ConflictStore
from .import_pipeline import ImportPipeline

logger = logging.getLogger(__name__)


def serialize_events(events: List[ExternalEvent]) -> str:
    return json.dumps([e.model_dump(mode='json') for e in events], sort_keys=True)


class CalendarImportPipeline(ImportPipeline):
    kind = 'calendar_events'

    def __init__(self, session: Session, tenant_id: str, calendar_id: str, marker: str = '[Cassius]',
                 conflicts: Optional[List[ConflictCandidate]] = None, integration=None, **kwargs):
        super().__init__(session, tenant_id, **kwargs)
        self.calendar_id = calendar_id
        self.marker = marker
        self.conflicts = conflicts or []
        self.integration = integration

    def parse(self, content: str) -> List[ExternalEvent]:
        try:
            items = json.loads(content)
            events = [ExternalEvent.model_validate(item) for item in items]
        except (ValueError, TypeError) as e:
            raise UnreadableFileError(f"Unreadable calendar payload: {e}") from e
        # Our own exported events never come back in
        return [e for e in events if not e.has_marker(self.marker)]

    def _cached(self, external_id: str) -> Optional[ImportedEvent]:
        return (
            self.session.query(ImportedEvent)
            .filter(ImportedEvent.tenant_id == self.tenant_id, ImportedEvent.external_event_id == external_id)
            .first()
        )

    def validate_rows(self, events: List[ExternalEvent]) -> List[ValidationSample]:
        samples = []
        for index, event in enumerate(events, start=1):
            sample = ValidationSample(row=index, raw=event.to_dict())

            if not event.id:
                sample.error('id', "Event without id")
            if event.start is None:
                sample.error('start', "Event without start time")
            elif event.end is not None and event.end < event.start:
                sample.error('end', "Event ends before it starts")

            if event.status == 'cancelled':
                sample.warn('status', "Event is cancelled")
            if event.all_day:
                sample.warn('start', "All-day event")
            if not event.summary.strip():
                sample.warn('summary', "Untitled event")

            if not sample.errors:
                sample.data = event.model_dump(mode='json')
                cached = self._cached(event.id)
                if cached is None:
                    sample.action = 'create'
                else:
                    sample.matched_id = cached.id
                    sample.match_type = 'external_id'
                    sample.action = 'skip' if cached.etag and cached.etag == event.etag else 'update'

            sample.classify()
            samples.append(sample)
        return samples

    def _linked_appointment_id(self, external_id: str) -> Optional[str]:
        appointment = (
            self.session.query(Appointment.id)
            .filter(Appointment.tenant_id == self.tenant_id, Appointment.external_event_id == external_id)
            .first()
        )
        return appointment[0] if appointment else None

    def write_row(self, sample: ValidationSample) -> str:
        event = ExternalEvent.model_validate(sample.data)
        cached = self._cached(event.id)
        if cached is not None and cached.etag and cached.etag == event.etag:
            return 'skipped'

        outcome = 'updated'
        if cached is None:
            cached = ImportedEvent(tenant_id=self.tenant_id, external_event_id=event.id)
            self.session.add(cached)
            outcome = 'created'

        cached.calendar_id = self.calendar_id
        cached.etag = event.etag
        cached.status = event.status
        cached.summary = event.summary
        cached.description = event.description
        cached.location = event.location
        cached.start_at = event.start
        cached.end_at = event.end
        cached.all_day = event.all_day
        cached.html_link = event.html_link
        cached.updated_at_external = event.updated
        cached.last_synced_at = utcnow()
        cached.appointment_id = self._linked_appointment_id(event.id)
        self.session.flush()
        return outcome

    def after_run(self, samples: List[ValidationSample], result: RunResult):
        created = ConflictStore(self.session, self.tenant_id).record_all(self.conflicts)
        result.conflicts = [c.to_dict() for c in created]
        if self.integration is not None:
            self.integration.last_import_at = utcnow()


class CalendarImportService:
    def __init__(self, session: Session, tenant_id: str, sync_service: CalendarSyncService, config,
                 user_id: Optional[str] = None):
        self.session = session
        self.tenant_id = tenant_id
        self.sync_service = sync_service
        self.config = config
        self.user_id = user_id

    def import_events(self, request: CalendarImportRequest) -> Dict[str, Any]:
        """Preview or import one window of the source calendar"""
        integration = self.sync_service.get_integration()
        calendar_id = (
            request.calendar_id
            or integration.source_calendar_id
            or integration.target_calendar_id
            or 'primary'
        )
        marker = self.config.get('google.event_marker', '[Cassius]')

        events = self.sync_service.fetch_events(calendar_id, request.time_min, request.time_max)
        conflicts = self.sync_service.find_conflicts(calendar_id, events, request.time_min, request.time_max)
        store_refreshed_tokens(self.sync_service.adapter, integration)

        pipeline = CalendarImportPipeline(
            self.session,
            self.tenant_id,
            calendar_id,
            marker=marker,
            conflicts=conflicts,
            integration=integration,
            sample_limit=self.config.get('import.sample_limit', 20),
            user_id=self.user_id
        )
        content = serialize_events([e for e in events if not e.has_marker(marker)])

        if request.mode == 'preview':
            result = pipeline.preview(content)
            result.status = 'preview'
            result.conflicts = [c.to_dict() for c in conflicts]
            self.session.commit()
            return {'mode': 'preview', 'calendarId': calendar_id, **result.model_dump(by_alias=True, mode='json')}

        job = pipeline.upload(content, file_name=f"google:{calendar_id}")
        validation = pipeline.validate(job.id)
        result = pipeline.run(job.id)
        logger.info(f"Imported calendar {calendar_id} for tenant {self.tenant_id} as job {job.id}")
        return {
            'mode': 'import',
            'calendarId': calendar_id,
            'jobId': job.id,
            'stats': validation.stats.model_dump(by_alias=True),
            'conflicts': [c.to_dict() for c in conflicts],
            'result': result.model_dump(by_alias=True, mode='json')
        }
