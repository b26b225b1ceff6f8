"""Sincronización de encuestas entre la base local y Salesforce.

El único estado que se sigue es ``_syncStatus`` (``Unsynced → Synced``): una
encuesta pasa a ``Synced`` sólo cuando el lote completo en el que viajó fue
aceptado. La descarga reemplaza por completo la tabla local.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog
from sqlalchemy import Table

from survey_sync.config import Settings
from survey_sync.errors import (
    BATCH_UPLOAD_FAILED,
    COMPOSITE_FAILED,
    SESSION_MISSING,
    SyncOperationError,
)
from survey_sync.logging_utils import bind_log_context, ensure_log_context, sync_run_context
from survey_sync.models import (
    LOCAL_ID_FIELD,
    REMOTE_ID_FIELD,
    SYNC_STATUS_FIELD,
    FieldDescriptor,
    MetadataRefreshResult,
    SurveyRecord,
    SyncStatus,
)
from survey_sync.services.field_mapping import build_descriptor_map, to_local_record
from survey_sync.services.local_store import (
    PAGE_LAYOUT_ITEM_TABLE,
    SURVEY_TABLE,
    LocalStore,
)
from survey_sync.services.metadata_service import MetadataService, background_fields
from survey_sync.services.salesforce_client import (
    COLLECTIONS_BATCH_SIZE,
    COMPOSITE_TREE_BATCH_SIZE,
    SalesforceClient,
    soql_quote,
)
from survey_sync.services.survey_service import JOINED_RECORD_TYPE_COLUMNS, SurveyService
from survey_sync.services.sync_state import SyncStateRepository


LOCAL_ONLY_FIELDS = (LOCAL_ID_FIELD, SYNC_STATUS_FIELD, REMOTE_ID_FIELD)


@dataclass
class SurveySyncReport:
    sobject_type: str
    request_id: Optional[str] = None
    uploaded_count: int = 0
    created_count: int = 0
    updated_count: int = 0
    downloaded_count: int = 0
    discarded_unsynced: int = 0
    schema_rebuilt: bool = False
    errors: List[Dict[str, Any]] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sobject_type": self.sobject_type,
            "request_id": self.request_id,
            "uploaded_count": self.uploaded_count,
            "created_count": self.created_count,
            "updated_count": self.updated_count,
            "downloaded_count": self.downloaded_count,
            "discarded_unsynced": self.discarded_unsynced,
            "schema_rebuilt": self.schema_rebuilt,
            "errors": self.errors,
            "duration_seconds": self.duration_seconds,
        }


def _chunks(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    return [items[start:start + size] for start in range(0, len(items), size)]


class SurveySyncService:
    """Orquesta descarga, subida y reconstrucción del esquema de encuestas."""

    def __init__(
        self,
        settings: Settings,
        client: SalesforceClient,
        store: LocalStore,
        *,
        metadata_service: Optional[MetadataService] = None,
        survey_service: Optional[SurveyService] = None,
        state_repository: Optional[SyncStateRepository] = None,
    ):
        self.settings = settings
        self.client = client
        self.store = store
        self.state_repository = state_repository or SyncStateRepository(Path(settings.sync_state_path))
        self.metadata_service = metadata_service or MetadataService(
            settings, client, store, state_repository=self.state_repository
        )
        self.survey_service = survey_service or SurveyService(settings, store)
        self.logger = structlog.get_logger("survey_sync").bind(servicio="survey_sync")

    @property
    def sobject_type(self) -> str:
        return self.settings.survey_object

    # ------------------------------------------------------------------
    # Esquema
    # ------------------------------------------------------------------
    def build_survey_field_descriptors(self) -> Dict[str, FieldDescriptor]:
        """Campos del layout, campos título y campos de fondo (únicos por nombre)."""

        layout_fields = [
            (row["fieldName"], row["fieldType"])
            for row in self.store.get_all_records(PAGE_LAYOUT_ITEM_TABLE)
        ]
        title_fields = [
            (rt.title_field, rt.title_field_type)
            for rt in self.metadata_service.get_record_types()
            if rt.title_field
        ]
        return build_descriptor_map([*layout_fields, *title_fields, *background_fields(self.settings)])

    def prepare_survey_table(self) -> Table:
        descriptors = self.build_survey_field_descriptors()
        return self.store.prepare_table(SURVEY_TABLE, descriptors.values())

    def refresh_metadata(self, *, force: bool = False) -> MetadataRefreshResult:
        """Descarga metadatos y reconstruye ``Survey`` si el layout cambió."""

        result = self.metadata_service.refresh_metadata(force=force)
        if result.layout_changed or not self.store.table_exists(SURVEY_TABLE):
            discarded = self._count_unsynced()
            if discarded:
                self.logger.warning(
                    "⚠️ Se descartan encuestas sin sincronizar al reconstruir el esquema",
                    etapa="esquema",
                    records_skipped=discarded,
                )
            self.prepare_survey_table()
            result = result.model_copy(update={"schema_rebuilt": True})
        return result

    # ------------------------------------------------------------------
    # Descarga
    # ------------------------------------------------------------------
    def store_online_surveys(self, *, rebuild_schema: bool = True) -> int:
        """Reemplaza las encuestas locales por las del usuario en Salesforce."""

        contact_id = self.settings.user_contact_id
        if not contact_id:
            raise SyncOperationError(SESSION_MISSING, "No hay contacto de usuario en la sesión")

        descriptors = self.build_survey_field_descriptors()
        logger = bind_log_context(
            self.logger,
            ensure_log_context(etapa="descarga", sobject_type=self.sobject_type),
        )

        discarded = self._count_unsynced()
        if discarded:
            logger.warning("⚠️ La descarga reemplaza encuestas sin sincronizar", records_skipped=discarded)

        if rebuild_schema or not self.store.table_exists(SURVEY_TABLE):
            self.store.prepare_table(SURVEY_TABLE, descriptors.values())
        else:
            self.store.clear_table(SURVEY_TABLE)

        field_list = ",".join([REMOTE_ID_FIELD, *descriptors.keys()])
        soql = (
            f"SELECT {field_list} FROM {self.sobject_type} "
            f"WHERE {self.settings.user_contact_field} = '{soql_quote(contact_id)}'"
        )
        records = self.client.query(soql)

        rows = []
        for record in records:
            row = to_local_record(record, descriptors)
            row[REMOTE_ID_FIELD] = record.get(REMOTE_ID_FIELD)
            row[SYNC_STATUS_FIELD] = SyncStatus.SYNCED.value
            rows.append(row)

        saved = self.store.save_records(SURVEY_TABLE, rows)
        self.state_repository.mark_downloaded(self.sobject_type)
        logger.info("✅ Encuestas descargadas", records_processed=saved)
        return saved

    # ------------------------------------------------------------------
    # Subida
    # ------------------------------------------------------------------
    def readonly_title_fields(self) -> List[str]:
        return [
            rt.title_field
            for rt in self.metadata_service.get_record_types()
            if rt.title_field and not rt.title_field_updateable
        ]

    def upload_descriptors(self) -> Dict[str, FieldDescriptor]:
        """Descriptores de la tabla ``FieldType`` sin los títulos de sólo lectura."""

        readonly_titles = set(self.readonly_title_fields())
        field_types = self.metadata_service.get_field_types()
        return {
            name: descriptor
            for name, descriptor in build_descriptor_map(field_types.items()).items()
            if name not in readonly_titles
        }

    def layout_field_names(self) -> List[str]:
        """Campos del formulario; son los únicos que una actualización puede vaciar."""

        return [row["fieldName"] for row in self.store.get_all_records(PAGE_LAYOUT_ITEM_TABLE)]

    @staticmethod
    def strip_local_fields(fields: Mapping[str, Any], readonly_fields: Sequence[str] = ()) -> Dict[str, Any]:
        """Quita campos locales, títulos de sólo lectura y columnas unidas del tipo de registro."""

        excluded = {*LOCAL_ONLY_FIELDS, *readonly_fields, *JOINED_RECORD_TYPE_COLUMNS.keys()}
        return {key: value for key, value in fields.items() if key not in excluded}

    def upload_surveys(self, surveys: Sequence[SurveyRecord], report: Optional[SurveySyncReport] = None) -> Dict[int, str]:
        """Sube encuestas por lotes y marca cada lote aceptado como ``Synced``.

        Las encuestas sin Id remoto se crean (composite tree); las que ya tienen
        Id se actualizan (sObject Collections), enviando ``null`` en los campos
        del formulario que quedaron vacíos. Un lote con errores detiene la
        subida con un único ``SyncOperationError`` (``batch_upload_failed``);
        los lotes previos ya quedaron sincronizados.
        """

        report = report or SurveySyncReport(sobject_type=self.sobject_type)
        descriptors = self.upload_descriptors()
        readonly = self.readonly_title_fields()
        clearable = self.layout_field_names()

        creates = [s for s in surveys if not s.remote_id]
        updates = [s for s in surveys if s.remote_id]
        remote_ids: Dict[int, str] = {}

        for batch in _chunks(creates, COMPOSITE_TREE_BATCH_SIZE):
            payload = [self.strip_local_fields(s.fields, readonly) for s in batch]
            response = self.client.create_records(self.sobject_type, payload, descriptors)
            batch_ids = self._created_ids(batch, response)
            self.survey_service.update_survey_status_synced(batch, batch_ids)
            remote_ids.update(batch_ids)
            report.created_count += len(batch)
            report.uploaded_count += len(batch)
            self._log_batch("creacion", len(batch))

        for batch in _chunks(updates, COLLECTIONS_BATCH_SIZE):
            payload = [self.strip_local_fields(s.fields, readonly) for s in batch]
            results = self.client.update_records(
                self.sobject_type,
                payload,
                descriptors,
                remote_ids=[s.remote_id for s in batch],
                clear_fields=clearable,
            )
            self._check_update_results(batch, results)
            batch_ids = {s.local_id: s.remote_id for s in batch if s.local_id is not None}
            self.survey_service.update_survey_status_synced(batch, batch_ids)
            remote_ids.update(batch_ids)
            report.updated_count += len(batch)
            report.uploaded_count += len(batch)
            self._log_batch("actualizacion", len(batch))

        if surveys:
            self.state_repository.mark_uploaded(self.sobject_type)
        return remote_ids

    def _created_ids(self, batch: Sequence[SurveyRecord], response: Mapping[str, Any]) -> Dict[int, str]:
        results = response.get("results", []) or []
        by_reference = {r.get("referenceId"): r for r in results}

        if response.get("hasErrors") or len(results) < len(batch):
            errors = [
                {
                    "local_id": survey.local_id,
                    "errors": by_reference.get(f"ref{index}", {}).get("errors", []),
                }
                for index, survey in enumerate(batch)
                if by_reference.get(f"ref{index}", {}).get("errors")
            ]
            self._raise_batch_failure(len(batch), errors)

        return {
            survey.local_id: by_reference[f"ref{index}"].get("id")
            for index, survey in enumerate(batch)
            if survey.local_id is not None and f"ref{index}" in by_reference
        }

    def _check_update_results(self, batch: Sequence[SurveyRecord], results: Sequence[Mapping[str, Any]]) -> None:
        failed = [
            {"local_id": survey.local_id, "errors": result.get("errors", [])}
            for survey, result in zip(batch, results)
            if not result.get("success")
        ]
        if failed or len(results) < len(batch):
            self._raise_batch_failure(len(batch), failed)

    def _raise_batch_failure(self, batch_size: int, errors: List[Dict[str, Any]]) -> None:
        bind_log_context(
            self.logger,
            ensure_log_context(
                etapa="subida",
                sobject_type=self.sobject_type,
                batch_size=batch_size,
                error_code=BATCH_UPLOAD_FAILED,
            ),
        ).error("❌ Lote rechazado por Salesforce", records_skipped=batch_size, record_errors=errors)
        raise SyncOperationError(
            BATCH_UPLOAD_FAILED,
            f"Salesforce rechazó el lote de {batch_size} encuestas",
            origin="upload",
            details=errors,
        )

    def _log_batch(self, kind: str, batch_size: int) -> None:
        bind_log_context(
            self.logger,
            ensure_log_context(etapa="subida", sobject_type=self.sobject_type, batch_size=batch_size),
        ).info("✅ Lote aceptado", tipo_lote=kind, records_processed=batch_size)

    # ------------------------------------------------------------------
    # Campos título
    # ------------------------------------------------------------------
    def fetch_surveys_with_title_fields(self, survey_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Obtiene los campos título de encuestas remotas por Id.

        Raises:
            SyncOperationError: ``composite`` si alguna sub-respuesta no es 200.
        """

        title_fields = sorted({
            rt.title_field for rt in self.metadata_service.get_record_types() if rt.title_field
        })
        if not title_fields:
            return {survey_id: {} for survey_id in survey_ids}
        if not survey_ids:
            return {}

        composite = self.client.fetch_records_by_ids(self.sobject_type, list(survey_ids), ",".join(title_fields))
        responses = composite.get("compositeResponse", [])

        failed = next((r for r in responses if r.get("httpStatusCode") != 200), None)
        if failed is not None:
            body = failed.get("body")
            message = None
            if isinstance(body, list) and body and isinstance(body[0], dict):
                message = body[0].get("message")
            self.logger.error(
                "❌ Error en respuesta composite",
                etapa="campos_titulo",
                error_code=COMPOSITE_FAILED,
                status_code=failed.get("httpStatusCode"),
                error_description=message,
            )
            raise SyncOperationError(COMPOSITE_FAILED, message, origin="composite")

        surveys: Dict[str, Dict[str, Any]] = {}
        for response in responses:
            body = dict(response.get("body") or {})
            survey_id = body.pop(REMOTE_ID_FIELD, None)
            body.pop("attributes", None)
            if survey_id:
                surveys[survey_id] = body
        return surveys

    def _apply_title_fields(self, remote_ids: Mapping[int, str], report: SurveySyncReport) -> None:
        if not remote_ids:
            return
        try:
            titles = self.fetch_surveys_with_title_fields(list(remote_ids.values()))
        except SyncOperationError as exc:
            # Las encuestas ya están en Salesforce; el título se recupera en la próxima descarga
            self.logger.warning(
                "⚠️ No se pudieron leer los campos título",
                etapa="campos_titulo",
                error_code=exc.reason,
            )
            report.errors.append(exc.to_payload())
            return

        descriptors = self.build_survey_field_descriptors()
        for local_id, remote_id in remote_ids.items():
            values = to_local_record(titles.get(remote_id, {}), descriptors)
            if values:
                self.store.update_record(SURVEY_TABLE, values, local_id)

    # ------------------------------------------------------------------
    # Orquestación
    # ------------------------------------------------------------------
    def sync_surveys(self) -> SurveySyncReport:
        """Sube las encuestas ``Unsynced`` y actualiza sus campos título."""

        with sync_run_context(self.sobject_type) as request_id:
            start_time = datetime.utcnow()
            report = SurveySyncReport(sobject_type=self.sobject_type, request_id=request_id)
            surveys = self.survey_service.get_unsynced_surveys()
            logger = bind_log_context(
                self.logger,
                ensure_log_context(etapa="subida", sobject_type=self.sobject_type, batch_size=len(surveys)),
            )
            if not surveys:
                logger.info("ℹ️ No hay encuestas pendientes de sincronizar")
                return report

            logger.info("📤 Subiendo encuestas pendientes")
            remote_ids = self.upload_surveys(surveys, report)
            created = {s.local_id: remote_ids[s.local_id] for s in surveys if not s.remote_id and s.local_id in remote_ids}
            self._apply_title_fields(created, report)

            report.duration_seconds = (datetime.utcnow() - start_time).total_seconds()
            logger.info("✅ Encuestas sincronizadas", records_processed=report.uploaded_count)
            return report

    def sync(self, *, force_metadata: bool = False) -> SurveySyncReport:
        """Subida de pendientes, descarga de metadatos y descarga completa."""

        with sync_run_context(self.sobject_type):
            start_time = datetime.utcnow()
            report = self.sync_surveys()
            report.discarded_unsynced = self._count_unsynced()

            metadata_result = self.refresh_metadata(force=force_metadata)
            report.schema_rebuilt = metadata_result.schema_rebuilt
            report.downloaded_count = self.store_online_surveys(rebuild_schema=False)
            report.duration_seconds = (datetime.utcnow() - start_time).total_seconds()

            self.logger.info(
                "🎉 Sincronización completa",
                etapa="fin",
                uploaded_count=report.uploaded_count,
                downloaded_count=report.downloaded_count,
                schema_rebuilt=report.schema_rebuilt,
                duration_seconds=report.duration_seconds,
            )
            return report

    def _count_unsynced(self) -> int:
        if not self.store.table_exists(SURVEY_TABLE):
            return 0
        return len(self.survey_service.get_unsynced_surveys())


__all__ = [
    "SurveySyncService",
    "SurveySyncReport",
    "LOCAL_ONLY_FIELDS",
]
