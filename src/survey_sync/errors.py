"""Error común para operaciones de sincronización rechazadas."""

from __future__ import annotations

from typing import Any, Dict, Optional


NO_RECORD_TYPES = "no_record_types"
NO_EDITABLE_FIELDS = "no_editable_fields"
COMPOSITE_FAILED = "composite"
BATCH_UPLOAD_FAILED = "batch_upload_failed"
REMOTE_REQUEST_FAILED = "remote_request_failed"
SESSION_MISSING = "session_missing"


class SyncOperationError(Exception):
    """Operación rechazada con un payload ``{"error": reason}``.

    ``reason`` es una etiqueta corta (``no_record_types``, ``composite``...);
    ``message`` y ``details`` son opcionales y sólo se agregan al payload
    cuando existen.
    """

    def __init__(
        self,
        reason: str,
        message: Optional[str] = None,
        *,
        origin: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(message or reason)
        self.reason = reason
        self.message = message
        self.origin = origin
        self.status_code = status_code
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.reason}
        if self.message:
            payload["message"] = self.message
        if self.origin:
            payload["origin"] = self.origin
        if self.details is not None:
            payload["details"] = self.details
        return payload


__all__ = [
    "SyncOperationError",
    "NO_RECORD_TYPES",
    "NO_EDITABLE_FIELDS",
    "COMPOSITE_FAILED",
    "BATCH_UPLOAD_FAILED",
    "REMOTE_REQUEST_FAILED",
    "SESSION_MISSING",
]
