"""
Survey Sync Service
Servicio para sincronizar encuestas entre la base local y Salesforce
"""

from typing import Any, Dict, List, Optional

from contextlib import asynccontextmanager
import structlog

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from pydantic import BaseModel, Field

from survey_sync.config import configure_logging, get_settings
from survey_sync.errors import SESSION_MISSING, SyncOperationError
from survey_sync.logging_utils import ensure_log_context, bind_log_context
from survey_sync.models import MetadataRefreshResult, SurveyRecord
from survey_sync.services.local_store import LocalStore
from survey_sync.services.salesforce_client import SalesforceClient
from survey_sync.services.survey_service import SURVEY_NOT_FOUND, SURVEY_TABLE_MISSING, SurveyService
from survey_sync.services.survey_sync_service import SurveySyncService


survey_service: Optional[SurveyService] = None
survey_sync_service: Optional[SurveySyncService] = None
logger = structlog.get_logger("app")

_ERROR_STATUS = {
    SURVEY_NOT_FOUND: 404,
    SURVEY_TABLE_MISSING: 409,
    SESSION_MISSING: 401,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configuración del ciclo de vida de la aplicación"""
    global survey_service, survey_sync_service

    settings = get_settings()
    configure_logging(settings)

    startup_logger = bind_log_context(logger, ensure_log_context(etapa="startup"))
    startup_logger.info("Iniciando Survey Sync Service")

    store = LocalStore(settings)
    survey_service = SurveyService(settings, store)

    if settings.salesforce_instance_url:
        client = SalesforceClient.from_settings(settings)
        survey_sync_service = SurveySyncService(settings, client, store, survey_service=survey_service)
    else:
        # Sin instancia configurada sólo se exponen las operaciones locales
        startup_logger.warning("SALESFORCE_INSTANCE_URL no configurada; sincronización deshabilitada")

    yield

    shutdown_logger = bind_log_context(logger, ensure_log_context(etapa="shutdown"))
    shutdown_logger.info("Cerrando Survey Sync Service")
    store.engine.dispose()
    survey_service = None
    survey_sync_service = None


app = FastAPI(
    title="Survey Sync Service",
    description="Sincronización de encuestas entre la base local y Salesforce",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(SyncOperationError)
async def sync_error_handler(request: Request, exc: SyncOperationError) -> JSONResponse:
    bind_log_context(
        logger,
        ensure_log_context(etapa="api", error_code=exc.reason),
    ).error("Operación rechazada", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=_ERROR_STATUS.get(exc.reason, 502), content=exc.to_payload())


class MetadataRefreshRequest(BaseModel):
    force: bool = Field(False, description="Reconstruir el esquema aunque el layout no haya cambiado")


class SyncRequest(BaseModel):
    force_metadata: bool = Field(False, description="Forzar reconstrucción del esquema local")


class SurveyUpsertRequest(BaseModel):
    local_id: Optional[int] = Field(default=None, description="Id local para actualizar; vacío para crear")
    remote_id: Optional[str] = Field(default=None, description="Id de Salesforce si la encuesta ya existe")
    fields: Dict[str, Any] = Field(default_factory=dict, description="Valores capturados en el formulario")


class SyncResponse(BaseModel):
    success: bool
    report: dict


def get_survey_service() -> SurveyService:
    if survey_service is None:
        raise HTTPException(status_code=503, detail="Servicio de encuestas no disponible")
    return survey_service


def get_survey_sync_service() -> SurveySyncService:
    if survey_sync_service is None:
        raise HTTPException(status_code=503, detail="Servicio de sincronización no disponible")
    return survey_sync_service


@app.get("/")
async def root():
    """Endpoint raíz"""
    return {
        "message": "Survey Sync Service",
        "status": "running",
        "docs": "/docs"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "survey-sync",
        "sync_enabled": survey_sync_service is not None,
        "version": "1.0.0"
    }


@app.post("/metadata/refresh", response_model=MetadataRefreshResult)
def refresh_metadata(
    payload: MetadataRefreshRequest,
    service: SurveySyncService = Depends(get_survey_sync_service),
) -> MetadataRefreshResult:
    """Descargar tipos de registro, layouts y traducciones."""
    return service.refresh_metadata(force=payload.force)


@app.get("/surveys")
def list_surveys(service: SurveyService = Depends(get_survey_service)) -> List[Dict[str, Any]]:
    """Listar encuestas locales con su tipo de registro."""
    return service.list_surveys()


@app.post("/surveys", response_model=SurveyRecord)
def upsert_survey(
    payload: SurveyUpsertRequest,
    service: SurveyService = Depends(get_survey_service),
) -> SurveyRecord:
    """Crear o actualizar una encuesta local (queda como Unsynced)."""
    record = SurveyRecord(local_id=payload.local_id, remote_id=payload.remote_id, fields=payload.fields)
    return service.upsert_local_survey(record)


@app.post("/surveys/sync", response_model=SyncResponse)
def sync_surveys(service: SurveySyncService = Depends(get_survey_sync_service)) -> SyncResponse:
    """Subir encuestas pendientes a Salesforce."""
    report = service.sync_surveys()
    return SyncResponse(success=True, report=report.to_dict())


@app.post("/surveys/download", response_model=SyncResponse)
def download_surveys(service: SurveySyncService = Depends(get_survey_sync_service)) -> SyncResponse:
    """Reemplazar las encuestas locales por las de Salesforce."""
    downloaded = service.store_online_surveys()
    return SyncResponse(success=True, report={"downloaded_count": downloaded})


@app.post("/sync", response_model=SyncResponse)
def full_sync(
    payload: SyncRequest,
    service: SurveySyncService = Depends(get_survey_sync_service),
) -> SyncResponse:
    """Subida de pendientes, metadatos y descarga completa."""
    report = service.sync(force_metadata=payload.force_metadata)
    return SyncResponse(success=True, report=report.to_dict())


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
