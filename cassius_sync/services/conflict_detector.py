"""
Compare one batch of external events with the internal appointments of the
same window and report where the two diverge.
"""

from datetime import timedelta
from typing import List, Dict, Iterable
import logging

from cassius_sync.database.models import Appointment
from cassius_sync.models.calendar_event import ExternalEvent
from cassius_sync.models.conflict import (
    ConflictCandidate, SOURCE_GOOGLE, REASON_DELETED_EXTERNALLY, REASON_MODIFIED_EXTERNALLY,
    REASON_TENTATIVE_MATCH, REASON_AMBIGUOUS_MATCH
)

logger = logging.getLogger(__name__)


def _appointment_snapshot(appointment: Appointment) -> Dict:
    return {
        'id': appointment.id,
        'title': appointment.title,
        'start': appointment.date_start.isoformat() if appointment.date_start else None,
        'end': appointment.date_end.isoformat() if appointment.date_end else None,
        'status': appointment.status
    }


class ConflictDetector:
    def __init__(self, marker: str = '[Cassius]', match_window_minutes: int = 15):
        self.marker = marker
        self.match_window = timedelta(minutes=match_window_minutes)

    def detect(self, events: Iterable[ExternalEvent], appointments: Iterable[Appointment]) -> List[ConflictCandidate]:
        """Classify every pairing; the result is ordered by event then appointment"""
        events = [e for e in events if e.id and e.status != 'cancelled']
        appointments = [a for a in appointments if a.status != 'CANCELLED']

        present_ids = {e.id for e in events}
        linked = {a.external_event_id: a for a in appointments if a.external_event_id}
        unlinked = [a for a in appointments if not a.external_event_id]

        conflicts = []
        for event in events:
            # Events we exported ourselves
            if event.has_marker(self.marker):
                continue

            appointment = linked.get(event.id)
            if appointment is not None:
                conflict = self._check_modified(event, appointment)
            else:
                conflict = self._check_tentative(event, unlinked)
            if conflict:
                conflicts.append(conflict)

        for external_id, appointment in linked.items():
            if external_id not in present_ids:
                conflicts.append(ConflictCandidate(
                    source=SOURCE_GOOGLE,
                    external_id=external_id,
                    internal_id=appointment.id,
                    reason=REASON_DELETED_EXTERNALLY,
                    payload={'appointment': _appointment_snapshot(appointment)}
                ))

        logger.info(f"Detected {len(conflicts)} conflicts over {len(events)} events and {len(appointments)} appointments")
        return conflicts

    def _differs(self, event: ExternalEvent, appointment: Appointment) -> bool:
        if event.start != appointment.date_start:
            return True
        if event.end and appointment.date_end and event.end != appointment.date_end:
            return True
        return event.summary.strip() != (appointment.title or '').strip()

    def _check_modified(self, event: ExternalEvent, appointment: Appointment):
        if not self._differs(event, appointment):
            return None
        # A pending local edit will be pushed by the next export
        if appointment.edited_since_sync:
            return None
        return ConflictCandidate(
            source=SOURCE_GOOGLE,
            external_id=event.id,
            internal_id=appointment.id,
            reason=REASON_MODIFIED_EXTERNALLY,
            payload={'event': event.to_dict(), 'appointment': _appointment_snapshot(appointment)}
        )

    def _check_tentative(self, event: ExternalEvent, candidates: List[Appointment]):
        if event.start is None or not event.summary.strip():
            return None
        title = event.summary.strip().casefold()
        matches = [
            a for a in candidates
            if (a.title or '').strip().casefold() == title
            and abs(a.date_start - event.start) <= self.match_window
        ]
        if not matches:
            return None
        if len(matches) == 1:
            return ConflictCandidate(
                source=SOURCE_GOOGLE,
                external_id=event.id,
                internal_id=matches[0].id,
                reason=REASON_TENTATIVE_MATCH,
                payload={'event': event.to_dict(), 'appointment': _appointment_snapshot(matches[0])}
            )
        return ConflictCandidate(
            source=SOURCE_GOOGLE,
            external_id=event.id,
            reason=REASON_AMBIGUOUS_MATCH,
            payload={
                'event': event.to_dict(),
                'candidates': [_appointment_snapshot(a) for a in matches]
            }
        )
