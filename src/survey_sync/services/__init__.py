"""Servicios disponibles en la aplicación de sincronización de encuestas."""

from .local_store import LocalStore, LocalStoreError  # noqa: F401
from .salesforce_client import SalesforceClient, SalesforceResponse  # noqa: F401
from .metadata_service import MetadataService  # noqa: F401
from .survey_service import SurveyService  # noqa: F401
from .survey_sync_service import SurveySyncReport, SurveySyncService  # noqa: F401
from .sync_state import SyncStateRepository  # noqa: F401

__all__ = [
    "LocalStore",
    "LocalStoreError",
    "MetadataService",
    "SalesforceClient",
    "SalesforceResponse",
    "SurveyService",
    "SurveySyncReport",
    "SurveySyncService",
    "SyncStateRepository",
]
