import logging
import traceback
from typing import Optional

from fastapi import FastAPI, APIRouter, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response
from sqlalchemy.orm import Session

from cassius_sync import __version__
from cassius_sync.config.manager import ConfigManager, configure_logging
from cassius_sync.database.connection import DatabaseManager, get_db
from cassius_sync.errors import AppError
from cassius_sync.integrations.oauth import GoogleOAuth
from cassius_sync.models.conflict import ConflictUpdate
from cassius_sync.models.imports import UploadRequest, JobRequest, CalendarImportRequest
from cassius_sync.models.integration import IntegrationSettings
from cassius_sync.services.calendar_import import CalendarImportPipeline, CalendarImportService
from cassius_sync.services.calendar_sync_service import CalendarSyncService
from cassius_sync.services.conflict_store import ConflictStore
from cassius_sync.services.import_pipeline import ImportPipeline
from cassius_sync.services.integration_manager import (
    IntegrationManager, default_adapter_factory, handle_oauth_callback
)
from cassius_sync.services.patient_import import PatientImportPipeline, render_template

logger = logging.getLogger(__name__)

router = APIRouter()


# Dependencies

def get_config(request: Request) -> ConfigManager:
    return request.app.state.config


def get_tenant_id(x_tenant_id: Optional[str] = Header(None)) -> str:
    """Every API call is scoped to the tenant named by the X-Tenant-Id header"""
    if not x_tenant_id or not x_tenant_id.strip():
        raise AppError("Missing X-Tenant-Id header", 400, "MISSING_TENANT")
    return x_tenant_id.strip()


def get_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    return x_user_id


def get_integration_manager(request: Request, db: Session = Depends(get_db),
                            tenant_id: str = Depends(get_tenant_id)) -> IntegrationManager:
    return IntegrationManager(
        db,
        tenant_id,
        request.app.state.config,
        adapter_factory=request.app.state.adapter_factory,
        oauth=request.app.state.oauth
    )


def get_sync_service(manager: IntegrationManager = Depends(get_integration_manager)) -> CalendarSyncService:
    return CalendarSyncService(manager.session, manager.tenant_id, manager.adapter(), manager.config)


def get_patient_pipeline(db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id),
                         user_id: Optional[str] = Depends(get_user_id),
                         config: ConfigManager = Depends(get_config)) -> PatientImportPipeline:
    return PatientImportPipeline(db, tenant_id, sample_limit=config.get('import.sample_limit', 20), user_id=user_id)


def pipeline_for_job(db: Session, tenant_id: str, job_id: str, config: ConfigManager) -> ImportPipeline:
    """The pipeline matching the kind of an existing job"""
    job = PatientImportPipeline(db, tenant_id).get_job(job_id)
    if job.kind == CalendarImportPipeline.kind:
        # Calendar jobs are stored as "google:<calendar id>"
        calendar_id = (job.file_name or '').split(':', 1)[-1]
        return CalendarImportPipeline(
            db, tenant_id, calendar_id, marker=config.get('google.event_marker', '[Cassius]')
        )
    return PatientImportPipeline(db, tenant_id)


def csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type='text/csv; charset=utf-8',
        headers={'Content-Disposition': f'attachment; filename="{filename}"'}
    )


@router.get("/health")
def health_check():
    return {"status": "healthy", "version": __version__}


# Google Calendar integration

@router.get("/api/integrations/google/status")
def integration_status(manager: IntegrationManager = Depends(get_integration_manager)):
    """Configured/connected state and the integration record"""
    return manager.status()


@router.get("/api/integrations/google/connect")
def connect_google(redirect: bool = True, manager: IntegrationManager = Depends(get_integration_manager)):
    url = manager.connect_url()
    if redirect:
        return RedirectResponse(url, status_code=302)
    return {"authUrl": url}


@router.get("/api/integrations/google/callback")
def google_callback(request: Request, code: Optional[str] = None, state: Optional[str] = None,
                    error: Optional[str] = None, db: Session = Depends(get_db)):
    """Consent screen callback; the tenant comes from the signed state"""
    target = handle_oauth_callback(db, request.app.state.config, request.app.state.oauth, code, state, error)
    return RedirectResponse(target, status_code=302)


@router.get("/api/integrations/google/calendars")
def list_google_calendars(manager: IntegrationManager = Depends(get_integration_manager)):
    return {"calendars": manager.list_calendars()}


@router.patch("/api/integrations/google/settings")
def update_google_settings(settings: IntegrationSettings,
                           manager: IntegrationManager = Depends(get_integration_manager)):
    return manager.update_settings(settings)


@router.delete("/api/integrations/google")
def disconnect_google(manager: IntegrationManager = Depends(get_integration_manager)):
    manager.disconnect()
    return {"success": True}


@router.post("/api/integrations/google/sync-now")
def sync_now(service: CalendarSyncService = Depends(get_sync_service)):
    """Export pass, internal appointments to the target calendar"""
    status = service.sync_now()
    return status.model_dump(by_alias=True)


@router.post("/api/integrations/google/import")
def import_google_events(payload: CalendarImportRequest,
                         service: CalendarSyncService = Depends(get_sync_service),
                         user_id: Optional[str] = Depends(get_user_id)):
    importer = CalendarImportService(service.session, service.tenant_id, service, service.config, user_id=user_id)
    return importer.import_events(payload)


# Conflicts

@router.get("/api/sync/conflicts")
def list_conflicts(status: Optional[str] = None, db: Session = Depends(get_db),
                   tenant_id: str = Depends(get_tenant_id)):
    conflicts = ConflictStore(db, tenant_id).list(status)
    return {"conflicts": [c.to_dict() for c in conflicts], "count": len(conflicts)}


@router.patch("/api/sync/conflicts/{conflict_id}")
def update_conflict(conflict_id: str, payload: ConflictUpdate, db: Session = Depends(get_db),
                    tenant_id: str = Depends(get_tenant_id), user_id: Optional[str] = Depends(get_user_id)):
    conflict = ConflictStore(db, tenant_id).update_status(
        conflict_id, payload.status, resolution=payload.resolution, user_id=user_id
    )
    db.commit()
    return conflict.to_dict()


# CSV patient import

@router.post("/api/import/patients/upload")
def upload_patients(payload: UploadRequest, pipeline: PatientImportPipeline = Depends(get_patient_pipeline)):
    job = pipeline.upload(payload.content, payload.file_name)
    return job.to_dict()


@router.post("/api/import/patients/validate")
def validate_patients(payload: JobRequest, pipeline: PatientImportPipeline = Depends(get_patient_pipeline)):
    result = pipeline.validate(payload.job_id)
    return result.model_dump(by_alias=True, mode='json')


@router.post("/api/import/patients/run")
def run_patients(payload: JobRequest, pipeline: PatientImportPipeline = Depends(get_patient_pipeline)):
    result = pipeline.run(payload.job_id)
    return result.model_dump(by_alias=True, mode='json')


@router.get("/api/import/patients/last")
def last_patient_import(pipeline: PatientImportPipeline = Depends(get_patient_pipeline)):
    job = pipeline.last_job()
    return {"job": job.to_dict() if job else None}


@router.get("/api/import/patients/template")
def patient_template():
    return csv_response(render_template(), "modele-import-patients.csv")


@router.get("/api/import/{job_id}")
def get_import_job(job_id: str, db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)):
    return PatientImportPipeline(db, tenant_id).get_job(job_id).to_dict()


@router.get("/api/import/{job_id}/errors")
def import_errors(job_id: str, db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id),
                  config: ConfigManager = Depends(get_config)):
    """CSV of the rejected and failed rows of a job"""
    pipeline = pipeline_for_job(db, tenant_id, job_id, config)
    return csv_response(pipeline.error_report(job_id), f"import-{job_id}-erreurs.csv")


def create_app(config: Optional[ConfigManager] = None, db_manager: Optional[DatabaseManager] = None,
               adapter_factory=None, oauth: Optional[GoogleOAuth] = None) -> FastAPI:
    """Build the API; collaborators are injected so tests can replace them"""
    config = config or ConfigManager()
    if db_manager is None:
        config.ensure_directories()
        db_manager = DatabaseManager(url=config.get('app.database_url'))
        db_manager.init_database()

    app = FastAPI(title="Cassius Sync API", version=__version__)
    app.state.config = config
    app.state.db_manager = db_manager
    app.state.adapter_factory = adapter_factory or default_adapter_factory
    app.state.oauth = oauth or GoogleOAuth(config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.get('app.base_url', 'http://localhost:5000')],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.warning(f"{request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler"""
        logger.error(f"Error processing request {request.method} {request.url.path}: {exc}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    app.include_router(router)
    return app


def serve(host: str = "0.0.0.0", port: int = 8000):
    import uvicorn
    config = ConfigManager()
    configure_logging(config)
    logger.info("Starting Cassius Sync API with uvicorn...")
    uvicorn.run(create_app(config), host=host, port=port, log_level=config.get('development.log_level', 'INFO').lower())


if __name__ == "__main__":
    serve()
