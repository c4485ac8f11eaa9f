from cassius_sync.models.calendar_event import ExternalEvent
from cassius_sync.models.conflict import ConflictCandidate, ConflictUpdate
from cassius_sync.models.imports import (
    ValidationSample, ValidationResult, RunResult, ImportStats, FieldIssue
)
from cassius_sync.models.integration import IntegrationSettings
from cassius_sync.models.sync_status import SyncStatus

__all__ = [
    'ExternalEvent', 'ConflictCandidate', 'ConflictUpdate', 'ValidationSample',
    'ValidationResult', 'RunResult', 'ImportStats', 'FieldIssue', 'IntegrationSettings', 'SyncStatus'
]
