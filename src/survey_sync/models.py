"""
Modelos de datos para la sincronización de encuestas
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


LOCAL_ID_FIELD = "_localId"
SYNC_STATUS_FIELD = "_syncStatus"
REMOTE_ID_FIELD = "Id"

LOCAL_TYPE_INTEGER = "integer"
LOCAL_TYPE_REAL = "real"
LOCAL_TYPE_TEXT = "text"
LOCAL_TYPES = (LOCAL_TYPE_INTEGER, LOCAL_TYPE_REAL, LOCAL_TYPE_TEXT)


class SyncStatus(str, Enum):
    """Estados posibles de una encuesta local"""
    UNSYNCED = "Unsynced"
    SYNCED = "Synced"


class FieldDescriptor(BaseModel):
    """Campo remoto con su representación local"""
    name: str
    remote_type: str
    local_type: str

    @field_validator('local_type')
    def validate_local_type(cls, v: str) -> str:
        if v not in LOCAL_TYPES:
            raise ValueError(f'local_type must be one of: {LOCAL_TYPES}')
        return v


class RecordTypeDescriptor(BaseModel):
    """Tipo de registro activo del objeto de encuestas"""
    id: str = Field(alias="recordTypeId")
    name: str
    label: str
    layout_id: str = Field(alias="layoutId")
    title_field: Optional[str] = Field(default=None, alias="titleFieldName")
    title_field_type: Optional[str] = Field(default=None, alias="titleFieldType")
    title_field_updateable: bool = Field(default=False, alias="titleFieldUpdateable")

    class Config:
        populate_by_name = True

    @field_validator('title_field_updateable', mode='before')
    def coerce_updateable(cls, v: Any) -> bool:
        """SQLite devuelve 0/1 o NULL"""
        return bool(v)


class PageLayoutSection(BaseModel):
    id: str
    layoutId: str
    sectionLabel: Optional[str] = None


class PageLayoutItem(BaseModel):
    sectionId: str
    fieldName: str
    fieldLabel: Optional[str] = None
    fieldType: str


class PicklistValue(BaseModel):
    fieldName: str
    label: Optional[str] = None
    value: str


class Localization(BaseModel):
    locale: Optional[str] = None
    type: Optional[str] = None
    name: Optional[str] = None
    label: str = ""


class SurveyRecord(BaseModel):
    """Encuesta local con identidad local/remota y estado de sincronización"""
    local_id: Optional[int] = None
    remote_id: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.UNSYNCED
    fields: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SurveyRecord":
        """Construye la encuesta a partir de una fila de la tabla ``Survey``."""
        values = dict(row)
        local_id = values.pop(LOCAL_ID_FIELD, None)
        remote_id = values.pop(REMOTE_ID_FIELD, None)
        status = values.pop(SYNC_STATUS_FIELD, None) or SyncStatus.UNSYNCED
        return cls(local_id=local_id, remote_id=remote_id, sync_status=status, fields=values)

    def to_row(self) -> Dict[str, Any]:
        row = dict(self.fields)
        if self.local_id is not None:
            row[LOCAL_ID_FIELD] = self.local_id
        row[REMOTE_ID_FIELD] = self.remote_id
        row[SYNC_STATUS_FIELD] = self.sync_status.value
        return row

    def mark_synced(self, remote_id: Optional[str] = None) -> "SurveyRecord":
        """Única transición del ciclo de vida: ``Unsynced → Synced``."""
        return self.model_copy(
            update={
                "sync_status": SyncStatus.SYNCED,
                "remote_id": remote_id or self.remote_id,
            }
        )


class MetadataRefreshResult(BaseModel):
    """Resultado de la descarga de metadatos"""
    record_types: List[RecordTypeDescriptor]
    field_types: Dict[str, str] = Field(default_factory=dict)
    picklist_values: int = 0
    localizations: int = 0
    layout_signature: str
    layout_changed: bool = False
    schema_rebuilt: bool = False

    class Config:
        populate_by_name = True
