from sqlalchemy import (
    Column, Integer, String, Text, Date, DateTime, Boolean, ForeignKey, JSON,
    UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid

from .base import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


APPOINTMENT_TYPES = ('CONSULTATION', 'SUIVI', 'CHIRURGIE', 'CONTROLE', 'URGENCE', 'AUTRE')
APPOINTMENT_STATUSES = ('UPCOMING', 'COMPLETED', 'CANCELLED')
SYNC_STATUSES = ('NONE', 'PENDING', 'SYNCED', 'ERROR')
CONFLICT_STATUSES = ('open', 'resolved', 'ignored')
CONFLICT_SOURCES = ('google', 'cassius')
JOB_STATUSES = ('uploaded', 'validated', 'running', 'completed', 'failed')


class Patient(Base):
    __tablename__ = 'patients'

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, index=True)
    file_number = Column(String)
    ssn = Column(String)
    nom = Column(String, nullable=False)
    prenom = Column(String, nullable=False)
    date_naissance = Column(Date)
    sexe = Column(String)  # HOMME/FEMME
    telephone = Column(String)
    email = Column(String)
    address_full = Column(String)
    code_postal = Column(String)
    ville = Column(String)
    pays = Column(String, default='France')
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    appointments = relationship("Appointment", back_populates="patient", cascade="all, delete-orphan")

    @property
    def full_name(self) -> str:
        return f"{self.prenom} {self.nom}".strip()

    def to_dict(self):
        return {
            'id': self.id,
            'fileNumber': self.file_number,
            'ssn': self.ssn,
            'nom': self.nom,
            'prenom': self.prenom,
            'dateNaissance': _iso(self.date_naissance),
            'sexe': self.sexe,
            'telephone': self.telephone,
            'email': self.email,
            'addressFull': self.address_full,
            'codePostal': self.code_postal,
            'ville': self.ville,
            'pays': self.pays
        }


class Appointment(Base):
    __tablename__ = 'appointments'

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, index=True)
    patient_id = Column(String, ForeignKey('patients.id'), nullable=False)
    type = Column(String, nullable=False, default='CONSULTATION')
    status = Column(String, nullable=False, default='UPCOMING')
    title = Column(String, nullable=False)
    description = Column(Text)
    date_start = Column(DateTime, nullable=False)
    date_end = Column(DateTime)
    # Set explicitly on internal edits; sync bookkeeping must not move it
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    external_provider = Column(String)
    external_calendar_id = Column(String)
    external_event_id = Column(String)
    sync_status = Column(String, nullable=False, default='NONE')
    last_synced_at = Column(DateTime)
    sync_error = Column(Text)

    patient = relationship("Patient", back_populates="appointments")

    def touch(self):
        self.updated_at = utcnow()

    @property
    def edited_since_sync(self) -> bool:
        return self.last_synced_at is None or self.updated_at > self.last_synced_at

    def to_dict(self):
        return {
            'id': self.id,
            'patientId': self.patient_id,
            'type': self.type,
            'status': self.status,
            'title': self.title,
            'dateStart': _iso(self.date_start),
            'dateEnd': _iso(self.date_end),
            'externalEventId': self.external_event_id,
            'syncStatus': self.sync_status,
            'lastSyncedAt': _iso(self.last_synced_at),
            'syncError': self.sync_error
        }


class SyncIntegration(Base):
    __tablename__ = 'calendar_integrations'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'provider', name='calendar_integrations_tenant_provider_uq'),
    )

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)
    provider = Column(String, nullable=False, default='google')
    is_enabled = Column(Boolean, nullable=False, default=True)
    target_calendar_id = Column(String)
    target_calendar_name = Column(String)
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime)
    scope = Column(Text)
    provider_user_email = Column(String)
    last_sync_at = Column(DateTime)
    last_sync_error = Column(Text)
    sync_error_count = Column(Integer, nullable=False, default=0)
    source_calendar_id = Column(String)
    source_calendar_name = Column(String)
    last_import_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self):
        # Tokens never leave the server
        return {
            'id': self.id,
            'provider': self.provider,
            'isEnabled': self.is_enabled,
            'targetCalendarId': self.target_calendar_id,
            'targetCalendarName': self.target_calendar_name,
            'providerUserEmail': self.provider_user_email,
            'lastSyncAt': _iso(self.last_sync_at),
            'lastSyncError': self.last_sync_error,
            'syncErrorCount': self.sync_error_count,
            'sourceCalendarId': self.source_calendar_id,
            'sourceCalendarName': self.source_calendar_name,
            'lastImportAt': _iso(self.last_import_at)
        }


class ImportJob(Base):
    __tablename__ = 'import_jobs'
    __table_args__ = (
        Index('import_jobs_tenant_created_idx', 'tenant_id', 'created_at'),
    )

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)
    user_id = Column(String)
    kind = Column(String, nullable=False, default='patients_csv')
    status = Column(String, nullable=False, default='uploaded')
    file_name = Column(String)
    content = Column(Text, nullable=False)
    file_hash = Column(String, nullable=False)
    validated_hash = Column(String)
    stats = Column(JSON)
    result = Column(JSON)
    samples = Column(JSON)
    failures = Column(JSON)
    error_message = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    validated_at = Column(DateTime)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    def to_dict(self):
        return {
            'jobId': self.id,
            'kind': self.kind,
            'status': self.status,
            'fileName': self.file_name,
            'fileHash': self.file_hash,
            'stats': self.stats,
            'result': self.result,
            'errorMessage': self.error_message,
            'createdAt': _iso(self.created_at),
            'validatedAt': _iso(self.validated_at),
            'startedAt': _iso(self.started_at),
            'completedAt': _iso(self.completed_at)
        }


class ImportedEvent(Base):
    __tablename__ = 'imported_events'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'external_event_id', name='imported_events_tenant_event_uq'),
        Index('imported_events_tenant_time_idx', 'tenant_id', 'start_at', 'end_at'),
    )

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)
    calendar_id = Column(String, nullable=False)
    external_event_id = Column(String, nullable=False)
    etag = Column(String)
    status = Column(String, default='confirmed')
    summary = Column(String)
    description = Column(Text)
    location = Column(String)
    start_at = Column(DateTime)
    end_at = Column(DateTime)
    all_day = Column(Boolean, default=False)
    html_link = Column(String)
    updated_at_external = Column(DateTime)
    last_synced_at = Column(DateTime, default=utcnow)
    appointment_id = Column(String, ForeignKey('appointments.id', ondelete='SET NULL'))
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'calendarId': self.calendar_id,
            'externalEventId': self.external_event_id,
            'status': self.status,
            'summary': self.summary,
            'startAt': _iso(self.start_at),
            'endAt': _iso(self.end_at),
            'allDay': self.all_day,
            'appointmentId': self.appointment_id
        }


class SyncConflict(Base):
    __tablename__ = 'sync_conflicts'
    __table_args__ = (
        Index('sync_conflicts_tenant_status_idx', 'tenant_id', 'status'),
        Index('sync_conflicts_tenant_key_idx', 'tenant_id', 'external_id', 'reason'),
    )

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)
    source = Column(String, nullable=False)
    entity_type = Column(String, nullable=False, default='event')
    external_id = Column(String)
    internal_id = Column(String)
    reason = Column(String, nullable=False)
    payload = Column(JSON)
    fingerprint = Column(String)
    status = Column(String, nullable=False, default='open')
    resolution = Column(String)
    resolved_by = Column(String)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    resolved_at = Column(DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'source': self.source,
            'entityType': self.entity_type,
            'externalId': self.external_id,
            'internalId': self.internal_id,
            'reason': self.reason,
            'payload': self.payload,
            'status': self.status,
            'resolution': self.resolution,
            'resolvedBy': self.resolved_by,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
            'resolvedAt': _iso(self.resolved_at)
        }
