"""Configuraciones comunes de pytest para el servicio de sincronización."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple, Union

import httpx
import pytest
import structlog

# Asegurar que `src/` esté en PYTHONPATH para importar `survey_sync.*`
ROOT_PATH = Path(__file__).resolve().parents[1]
SRC_PATH = ROOT_PATH / "src"

if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from survey_sync.config import Settings  # noqa: E402
from survey_sync.services.local_store import LocalStore  # noqa: E402
from survey_sync.services.salesforce_client import SalesforceClient  # noqa: E402
from survey_sync.services.sync_state import SyncStateRepository  # noqa: E402


INSTANCE_URL = "https://example.my.salesforce.com"
API_PATH = "/services/data/v49.0"
CONTACT_ID = "0035g00000ABCDEAAA"
RECORD_TYPE_ID = "0125g000000AAAAAAA"

Route = Union[httpx.Response, Dict[str, Any], List[Any], Callable[[httpx.Request], httpx.Response]]


class FakeSalesforce:
    """API falso: responde por (método, ruta) y guarda cada solicitud recibida."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self._routes: Dict[Tuple[str, str], List[Route]] = {}

    def add(self, method: str, path: str, *responses: Route) -> None:
        """Registra respuestas en orden; la última se repite."""

        self._routes[(method, f"{API_PATH}{path}")] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json=[{"message": "not found", "errorCode": "NOT_FOUND"}])
        route = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(route):
            return route(request)
        if isinstance(route, httpx.Response):
            return route
        return httpx.Response(200, json=route)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        full_path = f"{API_PATH}{path}"
        return [r for r in self.requests if r.method == method and r.url.path == full_path]

    @staticmethod
    def body(request: httpx.Request) -> Any:
        return json.loads(request.content.decode("utf-8"))


@pytest.fixture(autouse=True)
def clean_structlog_context() -> None:
    """Resetea contexto para evitar fugas entre pruebas."""

    structlog.contextvars.clear_contextvars()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        salesforce_instance_url=INSTANCE_URL,
        salesforce_access_token="00D-token",
        salesforce_initial_backoff_seconds=0,
        user_contact_id=CONTACT_ID,
        local_database_url=f"sqlite:///{tmp_path / 'local.db'}",
        sync_state_path=str(tmp_path / "state" / "sync_state.json"),
        log_file_path=str(tmp_path / "logs" / "survey_sync.log"),
    )


@pytest.fixture
def store(settings: Settings) -> LocalStore:
    local_store = LocalStore(settings)
    yield local_store
    local_store.engine.dispose()


@pytest.fixture
def state_repository(settings: Settings) -> SyncStateRepository:
    return SyncStateRepository(Path(settings.sync_state_path))


@pytest.fixture
def fake_salesforce() -> FakeSalesforce:
    return FakeSalesforce()


@pytest.fixture
def client(settings: Settings, fake_salesforce: FakeSalesforce) -> SalesforceClient:
    return SalesforceClient.from_settings(settings, transport=fake_salesforce.transport())


@pytest.fixture
def describe_layouts_response() -> Dict[str, Any]:
    return {
        "recordTypeMappings": [
            {
                "active": True,
                "name": "Master",
                "developerName": "Master",
                "recordTypeId": "012000000000000AAA",
                "layoutId": "00h000000000000AAA",
            },
            {
                "active": True,
                "name": "Site Visit",
                "developerName": "Site_Visit",
                "recordTypeId": RECORD_TYPE_ID,
                "layoutId": "00h5g000000AAAAAAA",
            },
            {
                "active": False,
                "name": "Retired",
                "developerName": "Retired",
                "recordTypeId": "0125g000000BBBBBBB",
                "layoutId": "00h5g000000BBBBBBB",
            },
        ]
    }


def _field(name: str, field_type: str, *, updateable: bool = True, reference_to=None, **extra: Any) -> Dict[str, Any]:
    return {
        "layoutComponents": [
            {
                "type": "Field",
                "details": {
                    "name": name,
                    "label": name.replace("__c", "").replace("_", " "),
                    "type": field_type,
                    "updateable": updateable,
                    "referenceTo": reference_to or [],
                    **extra,
                },
            }
        ]
    }


@pytest.fixture
def describe_layout_response() -> Dict[str, Any]:
    return {
        "editLayoutSections": [
            {
                "useHeading": True,
                "layoutSectionId": "01B5g000000SEC1AAA",
                "parentLayoutId": "00h5g000000AAAAAAA",
                "heading": "Visit",
                "layoutRows": [
                    {
                        "layoutItems": [
                            _field("Visited__c", "boolean"),
                            {"layoutComponents": [{"type": "EmptySpace"}]},
                            _field("Visit_Date__c", "date"),
                            _field("Score__c", "double"),
                            _field(
                                "Status__c",
                                "picklist",
                                picklistValues=[
                                    {"active": True, "label": "Open", "value": "Open"},
                                    {"active": False, "label": "Legacy", "value": "Legacy"},
                                    {"active": True, "label": "Closed", "value": "Closed"},
                                ],
                            ),
                        ]
                    },
                    {
                        "layoutItems": [
                            _field("CreatedById", "reference", updateable=False, reference_to=["User"]),
                            _field("Account__c", "reference", reference_to=["Account"]),
                            _field("Survey_Taker__c", "reference", reference_to=["Contact"]),
                            _field("Witness__c", "reference", reference_to=["Contact"]),
                        ]
                    },
                ],
            },
            {
                "useHeading": False,
                "layoutSectionId": "01B5g000000SEC2AAA",
                "parentLayoutId": "00h5g000000AAAAAAA",
                "heading": "System",
                "layoutRows": [{"layoutItems": [_field("Hidden__c", "string")]}],
            },
        ],
        "highlightsPanelLayoutSection": {
            "layoutRows": [{"layoutItems": [_field("Name", "string", updateable=False)]}]
        },
    }


@pytest.fixture
def localization_response() -> Dict[str, Any]:
    return {
        "totalSize": 1,
        "done": True,
        "records": [
            {
                "attributes": {"type": "GRMS_Localization__mdt"},
                "GRMS_Type__c": "Field",
                "GRMS_Locale__c": "es",
                "GRMS_OriginalName__c": "Visited__c",
                "GRMS_TranslatedLabel__c": "¿Visitó el sitio?",
            }
        ],
    }


@pytest.fixture
def metadata_routes(
    fake_salesforce: FakeSalesforce,
    describe_layouts_response: Dict[str, Any],
    describe_layout_response: Dict[str, Any],
    localization_response: Dict[str, Any],
) -> FakeSalesforce:
    """Registra las rutas de metadatos y una consulta de encuestas vacía."""

    fake_salesforce.add("GET", "/sobjects/Survey__c/describe/layouts", describe_layouts_response)
    fake_salesforce.add("GET", f"/sobjects/Survey__c/describe/layouts/{RECORD_TYPE_ID}", describe_layout_response)

    def query(request: httpx.Request) -> httpx.Response:
        soql = request.url.params["q"]
        if "GRMS_Localization__mdt" in soql:
            return httpx.Response(200, json=localization_response)
        return httpx.Response(200, json={"totalSize": 0, "done": True, "records": []})

    fake_salesforce.add("GET", "/query", query)
    return fake_salesforce
