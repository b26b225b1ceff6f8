"""Contexto de logging estructurado para los eventos de sincronización.

Cada evento lleva los campos de ``MANDATORY_FIELDS``; ``sync_run_context``
agrega el ``request_id`` que correlaciona todos los eventos de una corrida.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, Optional

import structlog

# Campos obligatorios en cada evento de sincronización
MANDATORY_FIELDS: Iterable[str] = (
    "request_id",
    "etapa",
    "sobject_type",
    "record_type_id",
    "batch_size",
    "records_processed",
    "records_skipped",
    "error_code",
)


def ensure_log_context(
    base: Optional[Dict[str, Any]] = None,
    *,
    etapa: Optional[str] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    """Genera un contexto de logging con campos obligatorios.

    Args:
        base: Contexto previo a clonar/actualizar.
        etapa: Etapa del proceso actual.
        **overrides: Campos adicionales o reemplazos.

    Returns:
        Diccionario con todos los campos obligatorios presentes (usando ``None`` cuando no se
        proporcionan valores) y los overrides aplicados.
    """

    context: Dict[str, Any] = {field: None for field in MANDATORY_FIELDS}

    if base:
        context.update(base)

    if etapa is not None:
        context["etapa"] = etapa

    context.update(overrides)

    return context


def bind_log_context(
    logger: structlog.stdlib.BoundLogger,
    context: Optional[Dict[str, Any]],
    **extra: Any,
) -> structlog.stdlib.BoundLogger:
    """Devuelve un logger con el contexto obligatorio unido.

    Las claves con valor ``None`` se omiten para no ensuciar los eventos.
    """

    merged: Dict[str, Any] = {}

    if context:
        merged.update(context)

    merged.update(extra)

    filtered = {key: value for key, value in merged.items() if value is not None}

    if not filtered:
        return logger

    return logger.bind(**filtered)


@contextmanager
def sync_run_context(sobject_type: str, *, request_id: Optional[str] = None) -> Iterator[str]:
    """Une ``request_id`` y ``sobject_type`` a todos los eventos de una corrida.

    Cliente, almacén local y servicios comparten así el mismo ``request_id``.
    Una corrida anidada (``sync`` llama a ``sync_surveys``) reutiliza el de la
    corrida exterior.
    """

    current = structlog.contextvars.get_contextvars().get("request_id")
    run_id = request_id or current or uuid.uuid4().hex
    with structlog.contextvars.bound_contextvars(request_id=run_id, sobject_type=sobject_type):
        yield run_id
