from .calendar_import import CalendarImportPipeline, CalendarImportService
from .calendar_sync_service import CalendarSyncService
from .conflict_detector import ConflictDetector
from .conflict_store import ConflictStore
from .import_pipeline import ImportPipeline, content_hash
from .integration_manager import IntegrationManager, handle_oauth_callback
from .patient_import import PatientImportPipeline

__all__ = [
    'CalendarImportPipeline', 'CalendarImportService', 'CalendarSyncService', 'ConflictDetector',
    'ConflictStore', 'ImportPipeline', 'content_hash', 'IntegrationManager', 'handle_oauth_callback',
    'PatientImportPipeline'
]
