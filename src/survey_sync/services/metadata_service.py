"""Descarga de metadatos de Salesforce hacia la base local.

Obtiene tipos de registro, layouts de edición, valores de picklist y
traducciones. Cada descarga reemplaza por completo las tablas de metadatos.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from survey_sync.config import Settings
from survey_sync.errors import NO_EDITABLE_FIELDS, NO_RECORD_TYPES, SyncOperationError
from survey_sync.logging_utils import bind_log_context, ensure_log_context
from survey_sync.models import (
    Localization,
    MetadataRefreshResult,
    PageLayoutItem,
    PageLayoutSection,
    PicklistValue,
    RecordTypeDescriptor,
)
from survey_sync.services.local_store import (
    FIELD_TYPE_TABLE,
    LOCALIZATION_TABLE,
    PAGE_LAYOUT_ITEM_TABLE,
    PAGE_LAYOUT_SECTION_TABLE,
    PICKLIST_VALUE_TABLE,
    RECORD_TYPE_TABLE,
    LocalStore,
)
from survey_sync.services.salesforce_client import SalesforceClient
from survey_sync.services.sync_state import SyncStateRepository


MASTER_RECORD_TYPE = "Master"
RECORD_TYPE_ID_FIELD = "RecordTypeId"

LOCALIZATION_QUERY = (
    "SELECT GRMS_Type__c, GRMS_Locale__c, GRMS_OriginalName__c, GRMS_TranslatedLabel__c "
    "FROM GRMS_Localization__mdt"
)


def background_fields(settings: Settings) -> List[Tuple[str, str]]:
    """Campos que la app llena sin mostrarlos en el formulario."""

    return [
        (RECORD_TYPE_ID_FIELD, "reference"),
        (settings.user_contact_field, "reference"),
        (settings.survey_date_field, "date"),
    ]


@dataclass
class PageLayoutResult:
    record_type_id: str
    sections: List[PageLayoutSection] = field(default_factory=list)
    items: List[PageLayoutItem] = field(default_factory=list)
    picklist_values: List[PicklistValue] = field(default_factory=list)
    field_types: Dict[str, str] = field(default_factory=dict)
    layout: Dict[str, Any] = field(default_factory=dict)


def compute_layout_signature(record_type_mappings: Sequence[Dict[str, Any]], layouts: Sequence[Dict[str, Any]]) -> str:
    """Firma estable de los metadatos que determinan el esquema local."""

    payload = json.dumps(
        {"recordTypeMappings": list(record_type_mappings), "layouts": list(layouts)},
        sort_keys=True,
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class MetadataService:
    """Sincroniza los metadatos del objeto de encuestas.

    Los métodos ``fetch_*`` sólo consultan Salesforce; los ``store_*`` además
    guardan el resultado. ``refresh_metadata`` descarga todo primero y después
    reemplaza las tablas locales en una sola transacción, de modo que un fallo
    remoto deja intactos los metadatos anteriores.
    """

    def __init__(
        self,
        settings: Settings,
        client: SalesforceClient,
        store: LocalStore,
        *,
        state_repository: Optional[SyncStateRepository] = None,
    ):
        self.settings = settings
        self.client = client
        self.store = store
        self.state_repository = state_repository or SyncStateRepository(Path(settings.sync_state_path))
        self.logger = structlog.get_logger("survey_sync").bind(servicio="metadata")
        self._last_record_type_mappings: List[Dict[str, Any]] = []

    @property
    def sobject_type(self) -> str:
        return self.settings.survey_object

    # ------------------------------------------------------------------
    # Tipos de registro
    # ------------------------------------------------------------------
    def fetch_record_types(self) -> List[RecordTypeDescriptor]:
        """Tipos de registro activos (excepto ``Master``).

        Raises:
            SyncOperationError: ``no_record_types`` si la organización no tiene ninguno.
        """

        response = self.client.describe_layouts(self.sobject_type)
        mappings = response.get("recordTypeMappings", []) or []
        self._last_record_type_mappings = mappings

        record_types = [
            RecordTypeDescriptor(
                recordTypeId=mapping.get("recordTypeId"),
                name=mapping.get("developerName"),
                label=mapping.get("name"),
                layoutId=mapping.get("layoutId"),
            )
            for mapping in mappings
            if mapping.get("active") and mapping.get("name") != MASTER_RECORD_TYPE
        ]

        if not record_types:
            bind_log_context(
                self.logger,
                ensure_log_context(etapa="tipos_registro", sobject_type=self.sobject_type),
            ).error("❌ El objeto no tiene tipos de registro activos", error_code=NO_RECORD_TYPES)
            raise SyncOperationError(NO_RECORD_TYPES, origin="describe_layouts")
        return record_types

    def store_record_types(self) -> List[RecordTypeDescriptor]:
        record_types = self.fetch_record_types()
        self.store.save_records(
            RECORD_TYPE_TABLE,
            [rt.model_dump(by_alias=True) for rt in record_types],
            upsert_key="name",
        )
        bind_log_context(
            self.logger,
            ensure_log_context(etapa="tipos_registro", sobject_type=self.sobject_type),
        ).info("✅ Tipos de registro guardados", records_processed=len(record_types))
        return record_types

    def with_title_field(self, record_type: RecordTypeDescriptor, layout: Dict[str, Any]) -> RecordTypeDescriptor:
        """Toma el primer campo del panel destacado como título del tipo de registro."""

        details = self._first_highlight_details(layout)
        if details is None:
            return record_type
        return record_type.model_copy(
            update={
                "title_field": details.get("name"),
                "title_field_type": details.get("type"),
                "title_field_updateable": bool(details.get("updateable")),
            }
        )

    def store_record_type_title_field(
        self,
        record_type: RecordTypeDescriptor,
        layout: Dict[str, Any],
    ) -> RecordTypeDescriptor:
        updated = self.with_title_field(record_type, layout)
        if updated is not record_type:
            self.store.save_records(RECORD_TYPE_TABLE, [updated.model_dump(by_alias=True)], upsert_key="name")
        return updated

    @staticmethod
    def _first_highlight_details(layout: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        section = layout.get("highlightsPanelLayoutSection") or {}
        for row in section.get("layoutRows", []) or []:
            for item in row.get("layoutItems", []) or []:
                for component in item.get("layoutComponents", []) or []:
                    details = component.get("details")
                    if component.get("type") == "Field" and details and details.get("name"):
                        return details
        return None

    # ------------------------------------------------------------------
    # Layouts
    # ------------------------------------------------------------------
    def fetch_page_layout(self, record_type_id: str) -> PageLayoutResult:
        """Secciones, campos editables y valores de picklist de un layout.

        Raises:
            SyncOperationError: ``no_editable_fields`` si ningún campo es editable.
        """

        layout = self.client.describe_layout(self.sobject_type, record_type_id)
        sections = [
            section
            for section in layout.get("editLayoutSections", []) or []
            if section.get("useHeading")
        ]

        excluded = {name for name, _ in background_fields(self.settings)}
        result = PageLayoutResult(record_type_id=record_type_id, layout=layout)
        result.sections = [
            PageLayoutSection(
                id=section.get("layoutSectionId"),
                layoutId=section.get("parentLayoutId"),
                sectionLabel=section.get("heading"),
            )
            for section in sections
        ]
        seen_picklist = set()

        for section in sections:
            for row in section.get("layoutRows", []) or []:
                for item in row.get("layoutItems", []) or []:
                    for component in item.get("layoutComponents", []) or []:
                        details = component.get("details") or {}
                        if not self._is_editable_component(component, details, excluded):
                            continue
                        if details.get("type") == "picklist":
                            for value in details.get("picklistValues", []) or []:
                                if not value.get("active"):
                                    continue
                                key = (details["name"], value.get("label"), value.get("value"))
                                if key in seen_picklist:
                                    continue
                                seen_picklist.add(key)
                                result.picklist_values.append(
                                    PicklistValue(fieldName=key[0], label=key[1], value=key[2])
                                )
                        result.items.append(
                            PageLayoutItem(
                                sectionId=section.get("layoutSectionId"),
                                fieldName=details["name"],
                                fieldLabel=details.get("label"),
                                fieldType=details.get("type") or "string",
                            )
                        )

        if not result.items:
            bind_log_context(
                self.logger,
                ensure_log_context(etapa="layout", sobject_type=self.sobject_type, record_type_id=record_type_id),
            ).error("❌ El layout no tiene campos editables", error_code=NO_EDITABLE_FIELDS)
            raise SyncOperationError(NO_EDITABLE_FIELDS, origin="describe_layout")

        result.field_types = {item.fieldName: item.fieldType for item in result.items}
        return result

    def store_page_layout_items(self, record_type_id: str) -> PageLayoutResult:
        result = self.fetch_page_layout(record_type_id)
        self.store.save_records(
            PAGE_LAYOUT_SECTION_TABLE,
            [s.model_dump() for s in result.sections],
            upsert_key="id",
        )
        self.store.save_records(PAGE_LAYOUT_ITEM_TABLE, [i.model_dump() for i in result.items])
        if result.picklist_values:
            self.store.save_records(PICKLIST_VALUE_TABLE, [p.model_dump() for p in result.picklist_values])

        bind_log_context(
            self.logger,
            ensure_log_context(etapa="layout", sobject_type=self.sobject_type, record_type_id=record_type_id),
        ).info(
            "✅ Layout guardado",
            records_processed=len(result.items),
            section_count=len(result.sections),
            picklist_values=len(result.picklist_values),
        )
        return result

    @staticmethod
    def _is_editable_component(component: Dict[str, Any], details: Dict[str, Any], excluded: set) -> bool:
        # Sin espacios vacíos, campos de sólo lectura, lookups ajenos a Contact ni campos de fondo
        if component.get("type") == "EmptySpace" or not details.get("name"):
            return False
        if not details.get("updateable"):
            return False
        reference_to = details.get("referenceTo") or []
        if reference_to and reference_to[0] != "Contact":
            return False
        return details["name"] not in excluded

    # ------------------------------------------------------------------
    # Traducciones
    # ------------------------------------------------------------------
    def fetch_localization(self) -> List[Localization]:
        records = self.client.query(LOCALIZATION_QUERY)
        return [
            Localization(
                locale=record.get("GRMS_Locale__c"),
                type=record.get("GRMS_Type__c"),
                name=record.get("GRMS_OriginalName__c"),
                label=record.get("GRMS_TranslatedLabel__c") or "",
            )
            for record in records
        ]

    def store_localization(self) -> int:
        """Guarda los registros de ``GRMS_Localization__mdt`` (sin búsqueda de etiquetas)."""

        localizations = self.fetch_localization()
        return self.store.save_records(LOCALIZATION_TABLE, [loc.model_dump() for loc in localizations])

    # ------------------------------------------------------------------
    # Orquestación
    # ------------------------------------------------------------------
    def refresh_metadata(self, *, force: bool = False) -> MetadataRefreshResult:
        """Reemplaza todos los metadatos locales y compara la firma de layouts.

        ``layout_changed`` indica si la tabla de encuestas debe reconstruirse.

        Raises:
            SyncOperationError: si falla cualquier consulta remota; en ese caso
                las tablas locales no se modifican.
        """

        logger = bind_log_context(
            self.logger,
            ensure_log_context(etapa="metadatos", sobject_type=self.sobject_type),
        )
        logger.info("🗂️ Iniciando descarga de metadatos", force=force)

        record_types = self.fetch_record_types()
        field_types: Dict[str, str] = {}
        layouts: List[Dict[str, Any]] = []
        sections: Dict[str, PageLayoutSection] = {}
        items: List[PageLayoutItem] = []
        picklist_values: List[PicklistValue] = []
        titled_record_types: List[RecordTypeDescriptor] = []

        for record_type in record_types:
            layout_result = self.fetch_page_layout(record_type.id)
            layouts.append(layout_result.layout)
            for section in layout_result.sections:
                sections.setdefault(section.id, section)
            items.extend(layout_result.items)
            picklist_values.extend(layout_result.picklist_values)
            for name, field_type in layout_result.field_types.items():
                field_types.setdefault(name, field_type)

            titled = self.with_title_field(record_type, layout_result.layout)
            titled_record_types.append(titled)
            if titled.title_field:
                field_types.setdefault(titled.title_field, titled.title_field_type or "string")

        for name, field_type in background_fields(self.settings):
            field_types.setdefault(name, field_type)

        localizations = self.fetch_localization()

        self.store.replace_tables(
            {
                RECORD_TYPE_TABLE: [rt.model_dump(by_alias=True) for rt in titled_record_types],
                PAGE_LAYOUT_SECTION_TABLE: [s.model_dump() for s in sections.values()],
                PAGE_LAYOUT_ITEM_TABLE: [i.model_dump() for i in items],
                PICKLIST_VALUE_TABLE: [p.model_dump() for p in picklist_values],
                FIELD_TYPE_TABLE: [{"name": name, "type": field_type} for name, field_type in field_types.items()],
                LOCALIZATION_TABLE: [loc.model_dump() for loc in localizations],
            }
        )

        signature = compute_layout_signature(self._last_record_type_mappings, layouts)
        previous = self.state_repository.load(self.sobject_type).layout_signature
        layout_changed = force or previous != signature
        self.state_repository.save_layout_signature(self.sobject_type, signature)

        logger.info(
            "🎉 Metadatos actualizados",
            records_processed=len(titled_record_types),
            field_count=len(field_types),
            picklist_values=len(picklist_values),
            localizations=len(localizations),
            layout_changed=layout_changed,
        )
        return MetadataRefreshResult(
            record_types=titled_record_types,
            field_types=field_types,
            picklist_values=len(picklist_values),
            localizations=len(localizations),
            layout_signature=signature,
            layout_changed=layout_changed,
        )

    def get_record_types(self) -> List[RecordTypeDescriptor]:
        return [RecordTypeDescriptor(**row) for row in self.store.get_all_records(RECORD_TYPE_TABLE)]

    def get_field_types(self) -> Dict[str, str]:
        """Tipos remotos guardados en ``FieldType`` (campo → tipo)."""
        return {row["name"]: row["type"] for row in self.store.get_all_records(FIELD_TYPE_TABLE)}


__all__ = [
    "MetadataService",
    "PageLayoutResult",
    "background_fields",
    "compute_layout_signature",
    "LOCALIZATION_QUERY",
]
