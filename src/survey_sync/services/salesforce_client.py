"""Cliente HTTP para el API REST de Salesforce.

Toda llamada pasa por ``_request``: los timeouts, errores de transporte y
respuestas 429/5xx se reintentan con backoff exponencial hasta
``max_attempts``; cualquier otro fallo se propaga como ``SyncOperationError``
con payload ``{"error": "remote_request_failed"}``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Collection, Dict, List, Mapping, Optional, Sequence
from urllib.parse import quote

import httpx
import structlog

from survey_sync.config import Settings
from survey_sync.errors import REMOTE_REQUEST_FAILED, SESSION_MISSING, SyncOperationError
from survey_sync.logging_utils import bind_log_context, ensure_log_context
from survey_sync.models import FieldDescriptor
from survey_sync.services.field_mapping import to_remote_record


COMPOSITE_TREE_BATCH_SIZE = 200
COLLECTIONS_BATCH_SIZE = 200
COMPOSITE_SUBREQUEST_LIMIT = 25

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


@dataclass(frozen=True)
class SalesforceResponse:
    """Resultado de una llamada individual al API."""

    success: bool
    status_code: int
    duration_ms: int
    should_retry: bool
    error_code: Optional[str]
    error_description: Optional[str]
    data: Any


def soql_quote(value: str) -> str:
    """Escapa un literal para incrustarlo entre comillas simples en SOQL."""

    return value.replace("\\", "\\\\").replace("'", "\\'")


def strip_attributes(record: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in record.items() if key != "attributes"}


class SalesforceClient:
    """Cliente síncrono para los recursos REST usados por la sincronización."""

    def __init__(
        self,
        *,
        instance_url: str,
        access_token: Optional[str],
        api_version: str = "v49.0",
        timeout_seconds: int = 30,
        max_attempts: int = 3,
        initial_backoff_seconds: float = 1.0,
        transport: Optional[httpx.BaseTransport] = None,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        if not instance_url:
            raise ValueError("Se requiere instance_url para inicializar SalesforceClient")

        self._instance_url = instance_url.rstrip("/")
        self._access_token = access_token
        self._api_version = api_version
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._initial_backoff_seconds = max(0.0, initial_backoff_seconds)
        self._transport = transport
        self._logger = logger or structlog.get_logger("salesforce_client")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> "SalesforceClient":
        return cls(
            instance_url=settings.salesforce_instance_url,
            access_token=settings.salesforce_access_token,
            api_version=settings.salesforce_api_version,
            timeout_seconds=settings.salesforce_timeout_seconds,
            max_attempts=settings.salesforce_max_attempts,
            initial_backoff_seconds=settings.salesforce_initial_backoff_seconds,
            transport=transport,
        )

    @property
    def api_path(self) -> str:
        return f"/services/data/{self._api_version}"

    # ------------------------------------------------------------------
    # Recursos
    # ------------------------------------------------------------------
    def query(self, soql: str) -> List[Dict[str, Any]]:
        """Ejecuta SOQL y devuelve todos los registros (sin ``attributes``)."""

        records: List[Dict[str, Any]] = []
        data = self._request("GET", f"{self.api_path}/query", params={"q": soql}, etapa="query")
        while True:
            records.extend(strip_attributes(r) for r in data.get("records", []))
            next_url = data.get("nextRecordsUrl")
            if data.get("done", True) or not next_url:
                break
            data = self._request("GET", next_url, etapa="query_more")

        self._logger.debug("Consulta SOQL completada", etapa="query", records_processed=len(records))
        return records

    def describe_layouts(self, sobject_type: str) -> Dict[str, Any]:
        """Mapeos de tipos de registro del objeto (``describe/layouts``)."""

        return self._request(
            "GET",
            f"{self.api_path}/sobjects/{sobject_type}/describe/layouts",
            etapa="describe_layouts",
            sobject_type=sobject_type,
        )

    def describe_layout(self, sobject_type: str, record_type_id: Optional[str]) -> Dict[str, Any]:
        """Layout de página para un tipo de registro."""

        return self._request(
            "GET",
            f"{self.api_path}/sobjects/{sobject_type}/describe/layouts/{record_type_id or ''}",
            etapa="describe_layout",
            sobject_type=sobject_type,
            record_type_id=record_type_id,
        )

    def create_records(
        self,
        sobject_type: str,
        records: Sequence[Mapping[str, Any]],
        descriptors: Mapping[str, FieldDescriptor],
    ) -> Dict[str, Any]:
        """Crea registros con el recurso composite tree.

        Devuelve el cuerpo de la respuesta tal cual; una respuesta 400 con
        ``hasErrors`` no lanza excepción para que el llamador decida.
        """

        body = {
            "records": [
                {
                    **to_remote_record(record, descriptors),
                    "attributes": {"type": sobject_type, "referenceId": f"ref{index}"},
                }
                for index, record in enumerate(records)
            ]
        }
        return self._request(
            "POST",
            f"{self.api_path}/composite/tree/{sobject_type}",
            json_body=body,
            accepted_error_statuses={400},
            etapa="composite_tree",
            sobject_type=sobject_type,
            batch_size=len(records),
        )

    def update_records(
        self,
        sobject_type: str,
        records: Sequence[Mapping[str, Any]],
        descriptors: Mapping[str, FieldDescriptor],
        *,
        remote_ids: Sequence[str],
        clear_fields: Collection[str] = (),
    ) -> List[Dict[str, Any]]:
        """Actualiza registros existentes con sObject Collections (``allOrNone``).

        Los campos de ``clear_fields`` sin valor local se envían como ``null``.
        """

        body = {
            "allOrNone": True,
            "records": [
                {
                    **to_remote_record(record, descriptors, clear_fields),
                    "attributes": {"type": sobject_type},
                    "id": remote_id,
                }
                for record, remote_id in zip(records, remote_ids)
            ],
        }
        data = self._request(
            "PATCH",
            f"{self.api_path}/composite/sobjects",
            json_body=body,
            accepted_error_statuses={400},
            etapa="collections_update",
            sobject_type=sobject_type,
            batch_size=len(records),
        )
        return data if isinstance(data, list) else []

    def fetch_records_by_ids(
        self,
        sobject_type: str,
        record_ids: Sequence[str],
        fields: str,
    ) -> Dict[str, Any]:
        """Lee registros por Id usando el recurso composite (máx. 25 por llamada)."""

        responses: List[Dict[str, Any]] = []
        for start in range(0, len(record_ids), COMPOSITE_SUBREQUEST_LIMIT):
            chunk = record_ids[start:start + COMPOSITE_SUBREQUEST_LIMIT]
            body = {
                "allOrNone": False,
                "compositeRequest": [
                    {
                        "method": "GET",
                        "url": f"{self.api_path}/sobjects/{sobject_type}/{record_id}?fields={quote(fields, safe=',')}",
                        "referenceId": f"ref{start + index}",
                    }
                    for index, record_id in enumerate(chunk)
                ],
            }
            data = self._request(
                "POST",
                f"{self.api_path}/composite",
                json_body=body,
                etapa="composite_fetch",
                sobject_type=sobject_type,
                batch_size=len(chunk),
            )
            responses.extend(data.get("compositeResponse", []))
        return {"compositeResponse": responses}

    # ------------------------------------------------------------------
    # Transporte
    # ------------------------------------------------------------------
    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
        accepted_error_statuses: Collection[int] = (),
        etapa: str,
        **log_fields: Any,
    ) -> Any:
        context = ensure_log_context(etapa=etapa, **log_fields)
        logger = bind_log_context(self._logger, context)

        if not self._access_token:
            logger.error("No hay sesión de Salesforce disponible", error_code=SESSION_MISSING)
            raise SyncOperationError(SESSION_MISSING, "No hay access token de Salesforce", origin=etapa)

        attempt = 0
        while True:
            attempt += 1
            result = self._send_once(method, path, params=params, json_body=json_body, logger=logger)
            if result.success or result.status_code in accepted_error_statuses:
                logger.debug(
                    "Respuesta de Salesforce recibida",
                    status_code=result.status_code,
                    duration_ms=result.duration_ms,
                    attempt=attempt,
                )
                return result.data
            if not result.should_retry or attempt >= self._max_attempts:
                break
            sleep_seconds = self._initial_backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "Reintentando llamada a Salesforce",
                attempt=attempt,
                sleep_seconds=sleep_seconds,
                error_code=result.error_code,
            )
            time.sleep(sleep_seconds)

        logger.error(
            "❌ Llamada a Salesforce fallida",
            status_code=result.status_code,
            attempts=attempt,
            error_code=result.error_code,
            error_description=result.error_description,
        )
        raise SyncOperationError(
            REMOTE_REQUEST_FAILED,
            result.error_description,
            origin=etapa,
            status_code=result.status_code or None,
            details=result.data,
        )

    def _send_once(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]],
        json_body: Optional[Any],
        logger: structlog.stdlib.BoundLogger,
    ) -> SalesforceResponse:
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
        }

        start_time = time.perf_counter()
        try:
            with httpx.Client(
                base_url=self._instance_url,
                timeout=self._timeout_seconds,
                transport=self._transport,
            ) as client:
                response = client.request(method, path, params=params, json=json_body, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("Timeout al llamar a Salesforce", error_code="salesforce_timeout", exception=str(exc))
            return SalesforceResponse(
                success=False,
                status_code=0,
                duration_ms=self._elapsed_ms(start_time),
                should_retry=True,
                error_code="salesforce_timeout",
                error_description="La solicitud a Salesforce excedió el tiempo máximo permitido.",
                data=None,
            )
        except httpx.HTTPError as exc:
            logger.warning("Error HTTP al llamar a Salesforce", error_code="salesforce_http_error", exception=str(exc))
            return SalesforceResponse(
                success=False,
                status_code=0,
                duration_ms=self._elapsed_ms(start_time),
                should_retry=True,
                error_code="salesforce_http_error",
                error_description=f"Error HTTP al comunicarse con Salesforce: {exc}",
                data=None,
            )

        duration_ms = self._elapsed_ms(start_time)
        data = self._safe_json(response)

        if 200 <= response.status_code < 300:
            return SalesforceResponse(
                success=True,
                status_code=response.status_code,
                duration_ms=duration_ms,
                should_retry=False,
                error_code=None,
                error_description=None,
                data=data if data is not None else {},
            )

        if response.status_code == 401:
            error_code = "salesforce_unauthorized"
        else:
            error_code = "salesforce_unexpected_status"

        return SalesforceResponse(
            success=False,
            status_code=response.status_code,
            duration_ms=duration_ms,
            should_retry=response.status_code in _RETRYABLE_STATUS,
            error_code=error_code,
            error_description=self._error_message(data) or f"Salesforce respondió HTTP {response.status_code}",
            data=data,
        )

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.perf_counter() - start_time) * 1000)

    @staticmethod
    def _safe_json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    @staticmethod
    def _error_message(data: Any) -> Optional[str]:
        # Salesforce responde errores como [{"message": ..., "errorCode": ...}]
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return data[0].get("message")
        if isinstance(data, dict):
            return data.get("message")
        return None


__all__ = [
    "SalesforceClient",
    "SalesforceResponse",
    "COMPOSITE_TREE_BATCH_SIZE",
    "COLLECTIONS_BATCH_SIZE",
    "soql_quote",
    "strip_attributes",
]
