from datetime import datetime

import pytest

from cassius_sync.database.models import ImportedEvent, SyncConflict, SyncIntegration, ImportJob
from cassius_sync.errors import UnreadableFileError
from cassius_sync.models.calendar_event import ExternalEvent
from cassius_sync.models.conflict import REASON_TENTATIVE_MATCH
from cassius_sync.services.calendar_import import CalendarImportPipeline, serialize_events
from conftest import TENANT, HEADERS, google_event

WINDOW = {'timeMin': '2025-03-01T00:00:00Z', 'timeMax': '2025-04-01T00:00:00Z'}


@pytest.fixture
def calendar(adapter):
    adapter.add_event(google_event('g1', 'Réunion équipe', datetime(2025, 3, 10, 12, 0)))
    adapter.add_event(google_event('g2', 'Formation implantologie', datetime(2025, 3, 11, 8, 0), minutes=240))
    adapter.add_event(google_event('g3', 'Dentiste perso', datetime(2025, 3, 12, 17, 0)))
    adapter.add_event(google_event('g4', 'Comptable', datetime(2025, 3, 13, 11, 0)))
    adapter.add_event(google_event(
        'g5', '[Cassius] CONSULTATION - Marie Dupont', datetime(2025, 3, 14, 9, 0),
        extendedProperties={'private': {'cassiusAppointmentId': 'appt-1'}}
    ))
    return adapter


def import_events(client, mode, **extra):
    return client.post('/api/integrations/google/import', headers=HEADERS, json={**WINDOW, 'mode': mode, **extra})


def test_preview_skips_exported_events_and_writes_nothing(client, db_manager, integration, calendar):
    response = import_events(client, 'preview')
    assert response.status_code == 200
    body = response.json()
    assert body['mode'] == 'preview'
    assert body['calendarId'] == 'primary'
    assert body['stats']['total'] == 4
    assert body['stats']['toCreate'] == 4
    assert body['conflicts'] == []

    with db_manager.get_session() as s:
        assert s.query(ImportedEvent).count() == 0
        assert s.query(ImportJob).count() == 0


def test_import_then_reimport(client, db_manager, integration, calendar):
    response = import_events(client, 'import')
    assert response.status_code == 200
    body = response.json()
    assert body['mode'] == 'import'
    assert body['result']['created'] == 4
    assert body['result']['total'] == 4
    job_id = body['jobId']

    with db_manager.get_session() as s:
        cached = s.query(ImportedEvent).filter(ImportedEvent.tenant_id == TENANT).all()
        assert sorted(e.external_event_id for e in cached) == ['g1', 'g2', 'g3', 'g4']
        assert all(e.calendar_id == 'primary' for e in cached)
        assert s.get(SyncIntegration, integration).last_import_at is not None
        job = s.get(ImportJob, job_id)
        assert job.kind == 'calendar_events'
        assert job.status == 'completed'

    body = import_events(client, 'import').json()
    assert body['result']['created'] == 0
    assert body['result']['skipped'] == 4

    # A changed event is refreshed
    calendar.calendars['primary']['g1']['summary'] = 'Réunion équipe (annulée)'
    calendar.calendars['primary']['g1']['etag'] = '"etag-g1-2"'
    body = import_events(client, 'import').json()
    assert body['result']['updated'] == 1
    assert body['result']['skipped'] == 3

    response = client.get(f'/api/import/{job_id}/errors', headers=HEADERS)
    assert response.status_code == 200
    assert response.text.strip() == 'ligne;etape;champ;message;donnees'


def test_import_reads_the_requested_calendar(client, integration, calendar):
    calendar.add_event(google_event('b1', 'Bloc', datetime(2025, 3, 10, 8, 0)), calendar_id='bloc')
    body = import_events(client, 'preview', calendarId='bloc').json()
    assert body['calendarId'] == 'bloc'
    assert body['stats']['total'] == 1


def test_tentative_matches_are_persisted_on_import_only(client, db_manager, integration, calendar,
                                                       make_appointment):
    make_appointment(title='Dentiste perso', start=datetime(2025, 3, 12, 17, 5))

    body = import_events(client, 'preview').json()
    assert [c['reason'] for c in body['conflicts']] == [REASON_TENTATIVE_MATCH]
    with db_manager.get_session() as s:
        assert s.query(SyncConflict).count() == 0

    body = import_events(client, 'import').json()
    assert len(body['result']['conflicts']) == 1
    with db_manager.get_session() as s:
        conflict = s.query(SyncConflict).one()
        assert conflict.external_id == 'g3'
        assert conflict.status == 'open'

    # Seen again on the next import, still a single open conflict
    body = import_events(client, 'import').json()
    assert body['result']['conflicts'] == []
    with db_manager.get_session() as s:
        assert s.query(SyncConflict).count() == 1


def test_import_without_integration(client):
    assert import_events(client, 'preview').status_code == 404


def test_event_rows_are_classified(session):
    events = [
        ExternalEvent(id='ok', summary='Réunion', start=datetime(2025, 3, 10, 9), end=datetime(2025, 3, 10, 10)),
        ExternalEvent(id='no-start', summary='Sans horaire'),
        ExternalEvent(id='backwards', summary='Inversé', start=datetime(2025, 3, 10, 9),
                      end=datetime(2025, 3, 10, 8)),
        ExternalEvent(summary='Sans id', start=datetime(2025, 3, 10, 9)),
        ExternalEvent(id='all-day', summary='Congés', start=datetime(2025, 3, 10), end=datetime(2025, 3, 11),
                      all_day=True),
        ExternalEvent(id='untitled', start=datetime(2025, 3, 10, 9)),
        ExternalEvent(id='cancelled', summary='Annulé', status='cancelled', start=datetime(2025, 3, 10, 9)),
        ExternalEvent(id='ours', summary='[Cassius] SUIVI - Hugo Leroy', start=datetime(2025, 3, 10, 9)),
    ]
    pipeline = CalendarImportPipeline(session, TENANT, 'primary', marker='[Cassius]')
    result = pipeline.preview(serialize_events(events))

    assert result.stats.total == 7
    assert result.stats.ok == 1
    assert result.stats.error == 3
    assert result.stats.warning == 3
    assert {s.raw['id'] for s in result.samples.warnings} == {'all-day', 'untitled', 'cancelled'}


def test_unreadable_event_payload(session):
    pipeline = CalendarImportPipeline(session, TENANT, 'primary')
    with pytest.raises(UnreadableFileError):
        pipeline.parse('not json')
    with pytest.raises(UnreadableFileError):
        pipeline.parse('[{"start": "yesterday"}]')
