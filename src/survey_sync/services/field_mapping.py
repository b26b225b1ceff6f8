"""Mapeo de campos entre Salesforce y la base local.

La tabla ``REMOTE_TO_LOCAL_TYPES`` decide la columna local de cada tipo remoto;
las funciones ``to_local_record`` y ``to_remote_record`` aplican la coerción de
valores en cada sentido. Los campos sin descriptor se descartan en ambos casos.
"""

from __future__ import annotations

from datetime import date, datetime
from math import isnan
from typing import Any, Collection, Dict, Iterable, Mapping, Optional, Tuple

from survey_sync.models import (
    LOCAL_TYPE_INTEGER,
    LOCAL_TYPE_REAL,
    LOCAL_TYPE_TEXT,
    FieldDescriptor,
)


REMOTE_TO_LOCAL_TYPES: Dict[str, str] = {
    "boolean": LOCAL_TYPE_INTEGER,
    "int": LOCAL_TYPE_INTEGER,
    "double": LOCAL_TYPE_REAL,
    "percent": LOCAL_TYPE_REAL,
    "currency": LOCAL_TYPE_REAL,
}

_TRUE_VALUES = {"1", "true", "yes", "si", "sí"}


def _is_null(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and isnan(value):
        return True
    return False


def _normalize_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    return str(value).strip().lower() in _TRUE_VALUES


def format_api_date(value: Any) -> Optional[str]:
    """Normaliza fechas al formato ``YYYY-MM-DD`` que exige el API.

    Acepta ``date``/``datetime`` y cadenas ISO 8601 (incluido el sufijo ``Z``).
    Devuelve ``None`` cuando el valor no se puede interpretar.
    """

    if _is_null(value):
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        candidate = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            return datetime.fromisoformat(candidate).date().isoformat()
        except ValueError:
            pass
        for fmt in ("%Y-%m-%d", "%Y/%m/%d", "%Y%m%d"):
            try:
                return datetime.strptime(value[:10], fmt).date().isoformat()
            except ValueError:
                continue
    return None


def to_local_type(remote_type: Optional[str]) -> str:
    return REMOTE_TO_LOCAL_TYPES.get((remote_type or "").lower(), LOCAL_TYPE_TEXT)


def build_field_descriptor(name: str, remote_type: Optional[str]) -> FieldDescriptor:
    return FieldDescriptor(
        name=name,
        remote_type=(remote_type or "string").lower(),
        local_type=to_local_type(remote_type),
    )


def build_descriptor_map(fields: Iterable[Tuple[str, Optional[str]]]) -> Dict[str, FieldDescriptor]:
    """Construye descriptores únicos por nombre (gana la primera aparición)."""

    descriptors: Dict[str, FieldDescriptor] = {}
    for name, remote_type in fields:
        if not name or name in descriptors:
            continue
        descriptors[name] = build_field_descriptor(name, remote_type)
    return descriptors


def to_local_record(record: Mapping[str, Any], descriptors: Mapping[str, FieldDescriptor]) -> Dict[str, Any]:
    """Convierte un registro remoto a su representación local.

    Las fechas se conservan tal como llegan; los booleanos se guardan como 1/0.
    """

    local: Dict[str, Any] = {}
    for key, value in record.items():
        if key == "attributes":
            continue
        descriptor = descriptors.get(key)
        if descriptor is None:
            continue
        if _is_null(value):
            local[key] = None
        elif descriptor.remote_type == "boolean":
            local[key] = 1 if _normalize_boolean(value) else 0
        else:
            local[key] = value
    return local


def to_remote_record(
    record: Mapping[str, Any],
    descriptors: Mapping[str, FieldDescriptor],
    clear_fields: Collection[str] = (),
) -> Dict[str, Any]:
    """Convierte un registro local al payload aceptado por Salesforce.

    Los valores nulos se omiten, salvo en ``clear_fields``: ahí se envían como
    ``null`` para que Salesforce vacíe el campo al actualizar.
    """

    remote: Dict[str, Any] = {}
    for key, value in record.items():
        descriptor = descriptors.get(key)
        if descriptor is None:
            continue
        if _is_null(value):
            if key in clear_fields:
                remote[key] = None
            continue
        if descriptor.remote_type == "boolean":
            remote[key] = _normalize_boolean(value)
        elif descriptor.remote_type == "date":
            formatted = format_api_date(value)
            if formatted is None:
                continue
            remote[key] = formatted
        else:
            remote[key] = value
    return remote


__all__ = [
    "REMOTE_TO_LOCAL_TYPES",
    "build_descriptor_map",
    "build_field_descriptor",
    "format_api_date",
    "to_local_record",
    "to_local_type",
    "to_remote_record",
]
