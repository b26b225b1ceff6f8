"""Persistencia ligera del estado de sincronización por objeto."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass
class SyncState:
    layout_signature: Optional[str] = None
    last_metadata_refresh: Optional[str] = None
    last_download: Optional[str] = None
    last_upload: Optional[str] = None


class SyncStateRepository:
    """Guarda en JSON la firma de layouts y las marcas de tiempo de cada objeto."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self, sobject_type: str) -> SyncState:
        data = self._read()
        entry = data.get("objects", {}).get(sobject_type, {})
        return SyncState(
            layout_signature=entry.get("layout_signature"),
            last_metadata_refresh=entry.get("last_metadata_refresh"),
            last_download=entry.get("last_download"),
            last_upload=entry.get("last_upload"),
        )

    def save_layout_signature(self, sobject_type: str, signature: str) -> None:
        self._update(sobject_type, layout_signature=signature, last_metadata_refresh=_utc_now())

    def mark_downloaded(self, sobject_type: str) -> None:
        self._update(sobject_type, last_download=_utc_now())

    def mark_uploaded(self, sobject_type: str) -> None:
        self._update(sobject_type, last_upload=_utc_now())

    def _update(self, sobject_type: str, **values: Any) -> None:
        data = self._read()
        entry = data.setdefault("objects", {}).setdefault(sobject_type, {})
        entry.update(values)
        self._write(data)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return {}

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


__all__ = ["SyncState", "SyncStateRepository"]
