"""Operaciones sobre encuestas guardadas en la base local."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import structlog
from sqlalchemy import or_, select

from survey_sync.config import Settings
from survey_sync.errors import SyncOperationError
from survey_sync.models import (
    LOCAL_ID_FIELD,
    REMOTE_ID_FIELD,
    SYNC_STATUS_FIELD,
    SurveyRecord,
    SyncStatus,
)
from survey_sync.services.local_store import SURVEY_TABLE, LocalStore, record_type_table
from survey_sync.services.metadata_service import RECORD_TYPE_ID_FIELD


SURVEY_TABLE_MISSING = "survey_table_missing"
SURVEY_NOT_FOUND = "survey_not_found"

# Columnas del tipo de registro que se agregan al listado
JOINED_RECORD_TYPE_COLUMNS: Dict[str, str] = {
    "recordTypeName": "name",
    "recordTypeLabel": "label",
    "layoutId": "layoutId",
    "titleFieldName": "titleFieldName",
    "titleFieldType": "titleFieldType",
    "titleFieldUpdateable": "titleFieldUpdateable",
}


def api_timestamp(now: Optional[datetime] = None) -> str:
    """Marca de tiempo ISO 8601 en UTC con milisegundos y sufijo ``Z``."""

    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SurveyService:
    """Consulta y guarda encuestas en la tabla ``Survey``."""

    def __init__(
        self,
        settings: Settings,
        store: LocalStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = structlog.get_logger("survey_sync").bind(servicio="surveys")

    def list_surveys(self) -> List[Dict[str, Any]]:
        """Encuestas locales unidas (LEFT JOIN) con su tipo de registro."""

        survey_table = self.store.get_table(SURVEY_TABLE)
        if survey_table is None:
            return []

        joined = [
            record_type_table.c[column].label(alias)
            for alias, column in JOINED_RECORD_TYPE_COLUMNS.items()
            if alias not in survey_table.c
        ]
        statement = select(survey_table, *joined).select_from(
            survey_table.outerjoin(
                record_type_table,
                survey_table.c[RECORD_TYPE_ID_FIELD] == record_type_table.c.recordTypeId,
            )
        ).order_by(survey_table.c[LOCAL_ID_FIELD])
        return self.store.get_records(statement)

    def get_survey(self, local_id: int) -> Optional[SurveyRecord]:
        survey_table = self._require_survey_table()
        rows = self.store.get_records(
            select(survey_table).where(survey_table.c[LOCAL_ID_FIELD] == local_id)
        )
        return SurveyRecord.from_row(rows[0]) if rows else None

    def upsert_local_survey(self, survey: SurveyRecord) -> SurveyRecord:
        """Guarda la encuesta como ``Unsynced`` con el contacto y la fecha de captura.

        Con ``local_id`` actualiza la fila existente; sin él inserta una nueva.
        """

        self._require_survey_table()
        fields = dict(survey.fields)
        fields[self.settings.user_contact_field] = self.settings.user_contact_id
        fields[self.settings.survey_date_field] = api_timestamp(self._clock())
        record = survey.model_copy(update={"fields": fields, "sync_status": SyncStatus.UNSYNCED})

        row = record.to_row()
        if record.remote_id is None:
            row.pop(REMOTE_ID_FIELD, None)

        if record.local_id is not None:
            updated = self.store.update_record(SURVEY_TABLE, row, record.local_id)
            if not updated:
                raise SyncOperationError(
                    SURVEY_NOT_FOUND,
                    f"No existe la encuesta local {record.local_id}",
                )
            self.logger.debug("Encuesta local actualizada", etapa="guardar_encuesta", local_id=record.local_id)
            return self.get_survey(record.local_id) or record

        local_id = self.store.insert_record(SURVEY_TABLE, row)
        self.logger.debug("Encuesta local creada", etapa="guardar_encuesta", local_id=local_id)
        saved = self.get_survey(local_id) if local_id is not None else None
        return saved or record.model_copy(update={"local_id": local_id})

    def get_unsynced_surveys(self) -> List[SurveyRecord]:
        survey_table = self.store.get_table(SURVEY_TABLE)
        if survey_table is None:
            return []
        status_column = survey_table.c[SYNC_STATUS_FIELD]
        rows = self.store.get_records(
            select(survey_table)
            .where(or_(status_column.is_(None), status_column == SyncStatus.UNSYNCED.value))
            .order_by(survey_table.c[LOCAL_ID_FIELD])
        )
        return [SurveyRecord.from_row(row) for row in rows]

    def update_survey_status_synced(
        self,
        surveys: Sequence[SurveyRecord],
        remote_ids: Optional[Mapping[int, str]] = None,
    ) -> int:
        """Marca las encuestas como ``Synced`` y guarda el Id remoto cuando se conoce."""

        local_ids = [s.local_id for s in surveys if s.local_id is not None]
        if not local_ids:
            return 0
        if not remote_ids:
            return self.store.update_field_value(
                SURVEY_TABLE, SYNC_STATUS_FIELD, SyncStatus.SYNCED.value, local_ids
            )

        updated = 0
        for survey in surveys:
            if survey.local_id is None:
                continue
            synced = survey.mark_synced(remote_ids.get(survey.local_id))
            updated += self.store.update_record(
                SURVEY_TABLE,
                {REMOTE_ID_FIELD: synced.remote_id, SYNC_STATUS_FIELD: synced.sync_status.value},
                survey.local_id,
            )
        return updated

    def _require_survey_table(self):
        survey_table = self.store.get_table(SURVEY_TABLE)
        if survey_table is None:
            raise SyncOperationError(
                SURVEY_TABLE_MISSING,
                "La tabla de encuestas no existe; descarga los metadatos primero",
            )
        return survey_table


__all__ = [
    "SurveyService",
    "JOINED_RECORD_TYPE_COLUMNS",
    "SURVEY_NOT_FOUND",
    "SURVEY_TABLE_MISSING",
    "api_timestamp",
]
