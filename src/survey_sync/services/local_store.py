"""Almacén local (SQLite vía SQLAlchemy) para metadatos y encuestas.

Las tablas de metadatos tienen esquema fijo. La tabla ``Survey`` se construye
a partir de descriptores de campos y se reemplaza completa (drop + create)
cuando cambian los layouts remotos.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

import structlog
from sqlalchemy import (
    Boolean,
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    func,
    insert,
    inspect,
    select,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql import Executable

from survey_sync.config import Settings
from survey_sync.models import (
    LOCAL_ID_FIELD,
    LOCAL_TYPE_INTEGER,
    LOCAL_TYPE_REAL,
    REMOTE_ID_FIELD,
    SYNC_STATUS_FIELD,
    FieldDescriptor,
)


RECORD_TYPE_TABLE = "RecordType"
PAGE_LAYOUT_SECTION_TABLE = "PageLayoutSection"
PAGE_LAYOUT_ITEM_TABLE = "PageLayoutItem"
PICKLIST_VALUE_TABLE = "PicklistValue"
FIELD_TYPE_TABLE = "FieldType"
LOCALIZATION_TABLE = "Localization"
SURVEY_TABLE = "Survey"


class LocalStoreError(Exception):
    """Errores de acceso a la base de datos local."""


metadata = MetaData()

record_type_table = Table(
    RECORD_TYPE_TABLE,
    metadata,
    Column("name", String(255), primary_key=True),
    Column("label", String(255)),
    Column("recordTypeId", String(18), nullable=False),
    Column("layoutId", String(18)),
    Column("titleFieldName", String(255)),
    Column("titleFieldType", String(64)),
    Column("titleFieldUpdateable", Boolean, default=False),
)

page_layout_section_table = Table(
    PAGE_LAYOUT_SECTION_TABLE,
    metadata,
    Column("id", String(18), primary_key=True),
    Column("layoutId", String(18)),
    Column("sectionLabel", String(255)),
)

page_layout_item_table = Table(
    PAGE_LAYOUT_ITEM_TABLE,
    metadata,
    Column("_id", Integer, primary_key=True, autoincrement=True),
    Column("sectionId", String(18)),
    Column("fieldName", String(255), nullable=False),
    Column("fieldLabel", String(255)),
    Column("fieldType", String(64)),
)

picklist_value_table = Table(
    PICKLIST_VALUE_TABLE,
    metadata,
    Column("_id", Integer, primary_key=True, autoincrement=True),
    Column("fieldName", String(255), nullable=False),
    Column("label", String(255)),
    Column("value", String(255)),
)

field_type_table = Table(
    FIELD_TYPE_TABLE,
    metadata,
    Column("name", String(255), primary_key=True),
    Column("type", String(64), nullable=False),
)

localization_table = Table(
    LOCALIZATION_TABLE,
    metadata,
    Column("_id", Integer, primary_key=True, autoincrement=True),
    Column("locale", String(16)),
    Column("type", String(64)),
    Column("name", String(255)),
    Column("label", Text),
)


def _column_for(descriptor: FieldDescriptor) -> Column:
    if descriptor.local_type == LOCAL_TYPE_INTEGER:
        return Column(descriptor.name, Integer)
    if descriptor.local_type == LOCAL_TYPE_REAL:
        return Column(descriptor.name, Float)
    return Column(descriptor.name, Text)


def _local_columns() -> List[Column]:
    return [
        Column(LOCAL_ID_FIELD, Integer, primary_key=True, autoincrement=True),
        Column(REMOTE_ID_FIELD, String(18)),
        Column(SYNC_STATUS_FIELD, String(16)),
    ]


class LocalStore:
    """Acceso a tablas locales mediante SQL parametrizado."""

    def __init__(self, settings: Optional[Settings] = None, *, engine: Optional[Engine] = None):
        if engine is None:
            if settings is None:
                raise ValueError("Se requiere settings o engine para inicializar LocalStore")
            url = make_url(settings.local_database_url)
            if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(url)
        self.engine = engine
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.logger = structlog.get_logger("survey_sync").bind(servicio="local_store")
        self._dynamic_tables: Dict[str, Table] = {}
        metadata.create_all(self.engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise LocalStoreError(str(exc)) from exc
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Esquema
    # ------------------------------------------------------------------
    def get_table(self, name: str) -> Optional[Table]:
        """Tabla fija o dinámica; ``None`` si aún no existe."""

        if name in metadata.tables:
            return metadata.tables[name]
        if name in self._dynamic_tables:
            return self._dynamic_tables[name]
        try:
            table = Table(name, MetaData(), autoload_with=self.engine)
        except NoSuchTableError:
            return None
        self._dynamic_tables[name] = table
        return table

    def table_exists(self, name: str) -> bool:
        return inspect(self.engine).has_table(name)

    def column_names(self, name: str) -> List[str]:
        table = self.get_table(name)
        return [column.name for column in table.columns] if table is not None else []

    def prepare_table(self, name: str, descriptors: Iterable[FieldDescriptor]) -> Table:
        """Elimina y vuelve a crear la tabla ``name`` con las columnas indicadas.

        Siempre agrega ``_localId``, ``Id`` y ``_syncStatus``.
        """

        if name in metadata.tables:
            raise LocalStoreError(f"La tabla {name} tiene esquema fijo")

        self.drop_table(name)

        reserved = {LOCAL_ID_FIELD, REMOTE_ID_FIELD, SYNC_STATUS_FIELD}
        columns = _local_columns()
        seen = set(reserved)
        for descriptor in descriptors:
            if descriptor.name in seen:
                continue
            seen.add(descriptor.name)
            columns.append(_column_for(descriptor))

        table = Table(name, MetaData(), *columns, sqlite_autoincrement=True)
        try:
            table.create(self.engine)
        except SQLAlchemyError as exc:
            raise LocalStoreError(str(exc)) from exc

        self._dynamic_tables[name] = table
        self.logger.info(
            "🧱 Tabla local recreada",
            etapa="preparar_tabla",
            table_name=name,
            column_count=len(columns),
        )
        return table

    def drop_table(self, name: str) -> None:
        self._dynamic_tables.pop(name, None)
        table = self.get_table(name)
        if table is None:
            return
        try:
            table.drop(self.engine, checkfirst=True)
        except SQLAlchemyError as exc:
            raise LocalStoreError(str(exc)) from exc
        self._dynamic_tables.pop(name, None)

    # ------------------------------------------------------------------
    # Datos
    # ------------------------------------------------------------------
    def clear_table(self, name: str) -> None:
        table = self.get_table(name)
        if table is None:
            return
        with self._session() as session:
            session.execute(delete(table))

    def save_records(
        self,
        name: str,
        records: Sequence[Mapping[str, Any]],
        upsert_key: Optional[str] = None,
    ) -> int:
        """Inserta ``records``; con ``upsert_key`` reemplaza filas con la misma llave.

        Las claves que no corresponden a una columna se descartan.
        """

        if not records:
            return 0
        table = self._require_table(name)
        payload = self._normalize_payload(table, records)
        if not payload:
            return 0

        with self._session() as session:
            if upsert_key:
                keys = [row.get(upsert_key) for row in payload if row.get(upsert_key) is not None]
                if keys:
                    session.execute(delete(table).where(table.c[upsert_key].in_(keys)))
            session.execute(insert(table), payload)
        return len(payload)

    def replace_tables(self, contents: Mapping[str, Sequence[Mapping[str, Any]]]) -> Dict[str, int]:
        """Vacía y vuelve a llenar varias tablas en una sola transacción.

        Si cualquier escritura falla no se modifica ninguna tabla.
        """

        tables = {name: self._require_table(name) for name in contents}
        saved: Dict[str, int] = {}
        with self._session() as session:
            for name, records in contents.items():
                table = tables[name]
                session.execute(delete(table))
                payload = self._normalize_payload(table, records) if records else []
                if payload:
                    session.execute(insert(table), payload)
                saved[name] = len(payload)
        return saved

    def insert_record(self, name: str, record: Mapping[str, Any]) -> Optional[int]:
        """Inserta un registro y devuelve su llave primaria autogenerada."""

        table = self._require_table(name)
        values = self._filter_columns(table, record)
        with self._session() as session:
            result = session.execute(insert(table).values(**values))
            primary_key = result.inserted_primary_key
        return primary_key[0] if primary_key else None

    def update_record(self, name: str, record: Mapping[str, Any], local_id: int) -> int:
        table = self._require_table(name)
        values = self._filter_columns(table, record)
        values.pop(LOCAL_ID_FIELD, None)
        if not values:
            return 0
        with self._session() as session:
            result = session.execute(
                update(table).where(table.c[LOCAL_ID_FIELD] == local_id).values(**values)
            )
        return result.rowcount

    def update_field_value(self, name: str, field_name: str, value: Any, local_ids: Iterable[int]) -> int:
        table = self._require_table(name)
        ids = list(local_ids)
        if not ids:
            return 0
        with self._session() as session:
            result = session.execute(
                update(table).where(table.c[LOCAL_ID_FIELD].in_(ids)).values({field_name: value})
            )
        return result.rowcount

    def get_all_records(self, name: str) -> List[Dict[str, Any]]:
        table = self.get_table(name)
        if table is None:
            return []
        return self.get_records(select(table))

    def get_records(self, statement: Executable, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self._session() as session:
            rows = session.execute(statement, params or {}).mappings().all()
        return [dict(row) for row in rows]

    def count_records(self, name: str, **filters: Any) -> int:
        table = self.get_table(name)
        if table is None:
            return 0
        statement = select(func.count()).select_from(table)
        for column_name, value in filters.items():
            statement = statement.where(table.c[column_name] == value)
        with self._session() as session:
            return int(session.execute(statement).scalar_one())

    def _require_table(self, name: str) -> Table:
        table = self.get_table(name)
        if table is None:
            raise LocalStoreError(f"La tabla {name} no existe en la base local")
        return table

    @staticmethod
    def _filter_columns(table: Table, record: Mapping[str, Any]) -> Dict[str, Any]:
        return {key: value for key, value in record.items() if key in table.c}

    def _normalize_payload(self, table: Table, records: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        # executemany exige el mismo conjunto de llaves en cada fila
        filtered = [self._filter_columns(table, record) for record in records]
        keys = sorted({key for row in filtered for key in row})
        if not keys:
            return []
        return [{key: row.get(key) for key in keys} for row in filtered]


__all__ = [
    "LocalStore",
    "LocalStoreError",
    "RECORD_TYPE_TABLE",
    "PAGE_LAYOUT_SECTION_TABLE",
    "PAGE_LAYOUT_ITEM_TABLE",
    "PICKLIST_VALUE_TABLE",
    "FIELD_TYPE_TABLE",
    "LOCALIZATION_TABLE",
    "SURVEY_TABLE",
]
