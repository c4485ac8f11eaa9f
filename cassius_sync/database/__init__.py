from cassius_sync.database.base import Base
from cassius_sync.database.connection import DatabaseManager, get_db
from cassius_sync.database.models import (
    Patient, Appointment, SyncIntegration, ImportJob, ImportedEvent, SyncConflict, utcnow
)

__all__ = [
    'Base', 'DatabaseManager', 'get_db', 'Patient', 'Appointment', 'SyncIntegration',
    'ImportJob', 'ImportedEvent', 'SyncConflict', 'utcnow'
]
