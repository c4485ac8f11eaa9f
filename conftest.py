import os

# Tests never touch the system keyring
os.environ['PYTHON_KEYRING_BACKEND'] = 'keyring.backends.null.Keyring'

import tempfile
from datetime import datetime, date, timedelta

import pytest
from fastapi.testclient import TestClient

from cassius_sync.api.main import create_app
from cassius_sync.config.manager import ConfigManager
from cassius_sync.database.connection import DatabaseManager
from cassius_sync.database.models import Patient, Appointment, SyncIntegration, utcnow
from cassius_sync.integrations.google_calendar import CalendarAdapter, build_event_body
from cassius_sync.models.calendar_event import ExternalEvent

TENANT = 'tenant-a'
OTHER_TENANT = 'tenant-b'
HEADERS = {'X-Tenant-Id': TENANT, 'X-User-Id': 'user-1'}


class FakeCalendarAdapter(CalendarAdapter):
    """In-memory calendar standing in for Google"""

    def __init__(self, marker='[Cassius]', tz_name='Europe/Paris'):
        self.marker = marker
        self.tz_name = tz_name
        self.calendars = {'primary': {}}
        self.failures = {}
        self.list_failures = []
        self.upserts = []
        self.deletes = []
        self.tokens = None
        self._next_id = 0

    def add_event(self, item, calendar_id='primary'):
        item.setdefault('status', 'confirmed')
        item.setdefault('etag', f'"etag-{item["id"]}"')
        self.calendars.setdefault(calendar_id, {})[item['id']] = item
        return item

    def list_events(self, calendar_id, time_min, time_max):
        if self.list_failures:
            raise self.list_failures.pop(0)
        return [
            ExternalEvent.from_google(item, self.tz_name)
            for item in self.calendars.get(calendar_id, {}).values()
        ]

    def upsert_event(self, calendar_id, appointment):
        if appointment.id in self.failures:
            raise self.failures[appointment.id]
        events = self.calendars.setdefault(calendar_id, {})
        event_id = appointment.external_event_id
        if not event_id or event_id not in events:
            self._next_id += 1
            event_id = f'evt-{self._next_id}'
        body = build_event_body(appointment, self.marker, self.tz_name)
        body['id'] = event_id
        body['etag'] = f'"etag-{event_id}-{len(self.upserts)}"'
        body['status'] = 'confirmed'
        events[event_id] = body
        self.upserts.append((calendar_id, appointment.id, event_id))
        return event_id

    def delete_event(self, calendar_id, external_event_id):
        self.calendars.get(calendar_id, {}).pop(external_event_id, None)
        self.deletes.append((calendar_id, external_event_id))
        return True

    def list_calendars(self):
        return [
            {'id': 'primary', 'summary': 'Cabinet', 'primary': True},
            {'id': 'bloc@group.calendar.google.com', 'summary': 'Bloc opératoire', 'primary': False}
        ]

    def refreshed_tokens(self):
        return self.tokens


def google_event(event_id, summary, start, minutes=30, **extra):
    """A Google API event item with UTC times"""
    item = {
        'id': event_id,
        'summary': summary,
        'start': {'dateTime': start.isoformat() + 'Z'},
        'end': {'dateTime': (start + timedelta(minutes=minutes)).isoformat() + 'Z'},
        'updated': '2025-03-01T08:00:00Z'
    }
    item.update(extra)
    return item


@pytest.fixture
def db_manager():
    """Fresh SQLite database file per test"""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as tmp:
        db_path = tmp.name
    manager = DatabaseManager(db_path)
    manager.init_database()
    try:
        yield manager
    finally:
        manager.engine.dispose()
        os.unlink(db_path)


@pytest.fixture
def session(db_manager):
    session = db_manager.get_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def config():
    with tempfile.TemporaryDirectory() as tmp_dir:
        manager = ConfigManager(env_file=os.path.join(tmp_dir, 'missing.env'))
    manager.set('app.base_url', 'http://app.test')
    manager.set('app.settings_path', '/settings/integrations/google-calendar')
    manager.set('google.client_id', 'test-client-id')
    manager.set('google.client_secret', 'test-client-secret')
    manager.set('google.redirect_uri', 'http://api.test/api/integrations/google/callback')
    manager.set('google.state_secret', 'test-state-secret')
    manager.set('google.event_marker', '[Cassius]')
    manager.set('app.timezone', 'Europe/Paris')
    manager.set('sync.max_retries', 2)
    manager.set('sync.backoff_base', 0)
    manager.set('sync.match_window_minutes', 15)
    manager.set('import.sample_limit', 20)
    return manager


@pytest.fixture
def adapter():
    return FakeCalendarAdapter()


@pytest.fixture
def app(config, db_manager, adapter):
    return create_app(config, db_manager, adapter_factory=lambda integration, cfg: adapter)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def integration(db_manager):
    with db_manager.get_session() as s:
        record = SyncIntegration(
            tenant_id=TENANT,
            provider='google',
            is_enabled=True,
            target_calendar_id='primary',
            target_calendar_name='Cabinet',
            access_token='access-token',
            refresh_token='refresh-token',
            token_expires_at=utcnow() + timedelta(hours=1),
            provider_user_email='cabinet@example.fr'
        )
        s.add(record)
        s.commit()
        return record.id


@pytest.fixture
def make_appointment(db_manager):
    """Create a patient and an appointment; returns the appointment id"""

    def factory(title='Consultation Dupont', start=None, tenant_id=TENANT, **fields):
        start = start or datetime(2025, 3, 10, 9, 0)
        with db_manager.get_session() as s:
            patient = Patient(
                tenant_id=tenant_id,
                nom=fields.pop('nom', 'Dupont'),
                prenom=fields.pop('prenom', 'Marie'),
                date_naissance=date(1975, 2, 14)
            )
            s.add(patient)
            s.flush()
            appointment = Appointment(
                tenant_id=tenant_id,
                patient_id=patient.id,
                title=title,
                type=fields.pop('type', 'CONSULTATION'),
                date_start=start,
                date_end=start + timedelta(minutes=30),
                **fields
            )
            s.add(appointment)
            s.commit()
            return appointment.id

    return factory
