"""Pruebas para `SurveySyncService`: esquema, descarga, subida y campos título."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

import httpx
import pytest

from survey_sync.errors import BATCH_UPLOAD_FAILED, COMPOSITE_FAILED, SESSION_MISSING, SyncOperationError
from survey_sync.models import SurveyRecord, SyncStatus
from survey_sync.services.local_store import (
    FIELD_TYPE_TABLE,
    PAGE_LAYOUT_ITEM_TABLE,
    RECORD_TYPE_TABLE,
    SURVEY_TABLE,
)
from survey_sync.services.survey_service import SurveyService
from survey_sync.services.survey_sync_service import SurveySyncService

from conftest import CONTACT_ID, RECORD_TYPE_ID, FakeSalesforce

FIXED_NOW = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)


@pytest.fixture
def survey_service(settings, store):
    return SurveyService(settings, store, clock=lambda: FIXED_NOW)


@pytest.fixture
def sync_service(settings, client, store, survey_service, state_repository):
    return SurveySyncService(
        settings,
        client,
        store,
        survey_service=survey_service,
        state_repository=state_repository,
    )


@pytest.fixture
def prepared(sync_service, metadata_routes):
    """Metadatos descargados y tabla `Survey` construida."""

    sync_service.refresh_metadata()
    return sync_service


def _add_survey_query(fake: FakeSalesforce, records: List[Dict[str, Any]], localization: Dict[str, Any]) -> None:
    def query(request: httpx.Request) -> httpx.Response:
        soql = request.url.params["q"]
        if "GRMS_Localization__mdt" in soql:
            return httpx.Response(200, json=localization)
        return httpx.Response(200, json={"done": True, "records": records})

    fake.add("GET", "/query", query)


def _composite_titles(fake: FakeSalesforce, titles: Dict[str, str]) -> None:
    def composite(request: httpx.Request) -> httpx.Response:
        responses = []
        for sub in fake.body(request)["compositeRequest"]:
            record_id = sub["url"].split("/")[-1].split("?")[0]
            responses.append(
                {
                    "httpStatusCode": 200,
                    "referenceId": sub["referenceId"],
                    "body": {"attributes": {"type": "Survey__c"}, "Id": record_id, "Name": titles[record_id]},
                }
            )
        return httpx.Response(200, json={"compositeResponse": responses})

    fake.add("POST", "/composite", composite)


def test_build_survey_field_descriptors_combines_sources(prepared):
    descriptors = prepared.build_survey_field_descriptors()

    assert list(descriptors) == [
        "Visited__c",
        "Visit_Date__c",
        "Score__c",
        "Status__c",
        "Witness__c",
        "Name",
        "RecordTypeId",
        "Survey_Taker__c",
        "Survey_Date__c",
    ]
    assert descriptors["Visited__c"].local_type == "integer"
    assert descriptors["Score__c"].local_type == "real"


def test_refresh_metadata_rebuilds_schema_only_when_layout_changes(sync_service, metadata_routes, store):
    first = sync_service.refresh_metadata()
    assert first.schema_rebuilt is True
    assert "Visited__c" in store.column_names(SURVEY_TABLE)

    store.save_records(SURVEY_TABLE, [{"Notes": "x", "_syncStatus": "Synced", "Id": "a01"}])
    second = sync_service.refresh_metadata()

    assert second.schema_rebuilt is False
    assert store.count_records(SURVEY_TABLE) == 1


def test_store_online_surveys_replaces_local_rows(prepared, fake_salesforce, localization_response, store):
    _add_survey_query(
        fake_salesforce,
        [
            {
                "attributes": {"type": "Survey__c"},
                "Id": "a01",
                "Name": "S-0001",
                "Visited__c": True,
                "Visit_Date__c": "2024-01-02",
                "Score__c": 3.5,
                "RecordTypeId": RECORD_TYPE_ID,
                "Survey_Taker__c": CONTACT_ID,
            }
        ],
        localization_response,
    )
    store.save_records(SURVEY_TABLE, [{"Name": "vieja", "_syncStatus": "Unsynced"}])

    assert prepared.store_online_surveys() == 1

    rows = store.get_all_records(SURVEY_TABLE)
    assert len(rows) == 1
    assert rows[0]["Id"] == "a01"
    assert rows[0]["Visited__c"] == 1
    assert rows[0]["Visit_Date__c"] == "2024-01-02"
    assert rows[0]["_syncStatus"] == SyncStatus.SYNCED.value

    soql = fake_salesforce.calls("GET", "/query")[-1].url.params["q"]
    assert soql.startswith("SELECT Id,Visited__c,Visit_Date__c,")
    assert soql.endswith(f"FROM Survey__c WHERE Survey_Taker__c = '{CONTACT_ID}'")


def test_store_online_surveys_requires_contact(prepared, settings):
    settings.user_contact_id = None

    with pytest.raises(SyncOperationError) as excinfo:
        prepared.store_online_surveys()

    assert excinfo.value.reason == SESSION_MISSING


def test_sync_surveys_creates_records_and_marks_synced(prepared, survey_service, fake_salesforce, store):
    for note in ("uno", "dos"):
        survey_service.upsert_local_survey(
            SurveyRecord(
                fields={
                    "Status__c": note,
                    "Visited__c": 1,
                    "Name": "no se envía",
                    "RecordTypeId": RECORD_TYPE_ID,
                }
            )
        )
    fake_salesforce.add(
        "POST",
        "/composite/tree/Survey__c",
        httpx.Response(
            201,
            json={
                "hasErrors": False,
                "results": [{"referenceId": "ref0", "id": "a0A"}, {"referenceId": "ref1", "id": "a0B"}],
            },
        ),
    )
    _composite_titles(fake_salesforce, {"a0A": "S-0001", "a0B": "S-0002"})

    report = prepared.sync_surveys()

    assert report.created_count == 2
    assert report.uploaded_count == 2
    assert report.errors == []

    body = fake_salesforce.body(fake_salesforce.calls("POST", "/composite/tree/Survey__c")[0])
    first = body["records"][0]
    assert first == {
        "Status__c": "uno",
        "Visited__c": True,
        "RecordTypeId": RECORD_TYPE_ID,
        "Survey_Taker__c": CONTACT_ID,
        "Survey_Date__c": "2024-05-06",
        "attributes": {"type": "Survey__c", "referenceId": "ref0"},
    }

    rows = {row["_localId"]: row for row in store.get_all_records(SURVEY_TABLE)}
    assert rows[1]["Id"] == "a0A" and rows[1]["Name"] == "S-0001"
    assert rows[2]["Id"] == "a0B" and rows[2]["Name"] == "S-0002"
    assert {row["_syncStatus"] for row in rows.values()} == {"Synced"}


def test_sync_surveys_batch_failure_keeps_records_unsynced(prepared, survey_service, fake_salesforce):
    survey_service.upsert_local_survey(SurveyRecord(fields={"Status__c": "uno"}))
    survey_service.upsert_local_survey(SurveyRecord(fields={"Status__c": "dos"}))
    fake_salesforce.add(
        "POST",
        "/composite/tree/Survey__c",
        httpx.Response(
            400,
            json={
                "hasErrors": True,
                "results": [
                    {
                        "referenceId": "ref1",
                        "errors": [{"statusCode": "REQUIRED_FIELD_MISSING", "message": "Falta", "fields": ["X__c"]}],
                    }
                ],
            },
        ),
    )

    with pytest.raises(SyncOperationError) as excinfo:
        prepared.sync_surveys()

    payload = excinfo.value.to_payload()
    assert payload["error"] == BATCH_UPLOAD_FAILED
    assert payload["details"] == [
        {"local_id": 2, "errors": [{"statusCode": "REQUIRED_FIELD_MISSING", "message": "Falta", "fields": ["X__c"]}]}
    ]
    assert len(survey_service.get_unsynced_surveys()) == 2


def test_sync_surveys_updates_existing_remote_records(prepared, survey_service, fake_salesforce, store):
    store.save_records(SURVEY_TABLE, [{"Id": "a01", "Status__c": "Open", "_syncStatus": "Synced"}])
    survey_service.upsert_local_survey(SurveyRecord(local_id=1, fields={"Status__c": "Closed"}))
    fake_salesforce.add("PATCH", "/composite/sobjects", [{"id": "a01", "success": True, "errors": []}])

    report = prepared.sync_surveys()

    assert report.updated_count == 1
    assert report.created_count == 0
    body = fake_salesforce.body(fake_salesforce.calls("PATCH", "/composite/sobjects")[0])
    assert body["records"][0]["id"] == "a01"
    assert body["records"][0]["Status__c"] == "Closed"
    assert store.get_all_records(SURVEY_TABLE)[0]["_syncStatus"] == "Synced"
    assert fake_salesforce.calls("POST", "/composite") == []


def test_sync_surveys_update_failure_is_aggregated(prepared, survey_service, fake_salesforce, store):
    store.save_records(SURVEY_TABLE, [{"Id": "a01", "_syncStatus": "Synced"}])
    survey_service.upsert_local_survey(SurveyRecord(local_id=1, fields={"Status__c": "Closed"}))
    fake_salesforce.add(
        "PATCH",
        "/composite/sobjects",
        [{"id": "a01", "success": False, "errors": [{"statusCode": "ENTITY_IS_LOCKED", "message": "locked"}]}],
    )

    with pytest.raises(SyncOperationError) as excinfo:
        prepared.sync_surveys()

    assert excinfo.value.reason == BATCH_UPLOAD_FAILED
    assert store.get_all_records(SURVEY_TABLE)[0]["_syncStatus"] == "Unsynced"


def test_sync_surveys_without_pending_does_nothing(prepared, fake_salesforce):
    report = prepared.sync_surveys()

    assert report.uploaded_count == 0
    assert fake_salesforce.calls("POST", "/composite/tree/Survey__c") == []


def test_title_fetch_failure_is_reported_but_keeps_synced(prepared, survey_service, fake_salesforce, store):
    survey_service.upsert_local_survey(SurveyRecord(fields={"Status__c": "uno"}))
    fake_salesforce.add(
        "POST",
        "/composite/tree/Survey__c",
        httpx.Response(201, json={"hasErrors": False, "results": [{"referenceId": "ref0", "id": "a0A"}]}),
    )
    fake_salesforce.add(
        "POST",
        "/composite",
        {
            "compositeResponse": [
                {"httpStatusCode": 404, "referenceId": "ref0", "body": [{"message": "entity is deleted", "errorCode": "ENTITY_IS_DELETED"}]}
            ]
        },
    )

    report = prepared.sync_surveys()

    assert report.errors == [{"error": COMPOSITE_FAILED, "message": "entity is deleted", "origin": "composite"}]
    assert store.get_all_records(SURVEY_TABLE)[0]["_syncStatus"] == "Synced"


def test_fetch_surveys_with_title_fields_without_titles(sync_service, store):
    assert sync_service.fetch_surveys_with_title_fields(["a01", "a02"]) == {"a01": {}, "a02": {}}


def test_full_sync_uploads_refreshes_and_downloads(prepared, survey_service, fake_salesforce, localization_response, store):
    survey_service.upsert_local_survey(SurveyRecord(fields={"Status__c": "uno"}))
    fake_salesforce.add(
        "POST",
        "/composite/tree/Survey__c",
        httpx.Response(201, json={"hasErrors": False, "results": [{"referenceId": "ref0", "id": "a0A"}]}),
    )
    _composite_titles(fake_salesforce, {"a0A": "S-0001"})
    _add_survey_query(
        fake_salesforce,
        [
            {"Id": "a0A", "Name": "S-0001", "Status__c": "uno"},
            {"Id": "a0Z", "Name": "S-0099", "Status__c": "Closed"},
        ],
        localization_response,
    )

    report = prepared.sync()

    assert report.uploaded_count == 1
    assert report.downloaded_count == 2
    assert report.schema_rebuilt is False
    assert report.discarded_unsynced == 0
    assert sorted(row["Id"] for row in store.get_all_records(SURVEY_TABLE)) == ["a0A", "a0Z"]


def test_full_sync_stops_before_download_when_upload_fails(prepared, survey_service, fake_salesforce, store):
    survey_service.upsert_local_survey(SurveyRecord(fields={"Status__c": "uno"}))
    fake_salesforce.add(
        "POST",
        "/composite/tree/Survey__c",
        httpx.Response(400, json={"hasErrors": True, "results": [{"referenceId": "ref0", "errors": [{"message": "x"}]}]}),
    )
    downloads_before = len(fake_salesforce.calls("GET", "/query"))

    with pytest.raises(SyncOperationError):
        prepared.sync()

    assert len(fake_salesforce.calls("GET", "/query")) == downloads_before
    assert store.count_records(SURVEY_TABLE, _syncStatus="Unsynced") == 1


def test_failed_metadata_refresh_keeps_layout_fields_for_upload(prepared, survey_service, fake_salesforce, store):
    survey_service.upsert_local_survey(SurveyRecord(fields={"Status__c": "Open", "Visited__c": 1, "Name": "local"}))
    fake_salesforce.add(
        "GET",
        f"/sobjects/Survey__c/describe/layouts/{RECORD_TYPE_ID}",
        httpx.Response(500, json=[{"message": "boom", "errorCode": "UNKNOWN"}]),
    )

    with pytest.raises(SyncOperationError):
        prepared.refresh_metadata()

    assert store.count_records(PAGE_LAYOUT_ITEM_TABLE) == 5
    assert store.count_records(RECORD_TYPE_TABLE) == 1

    fake_salesforce.add(
        "POST",
        "/composite/tree/Survey__c",
        httpx.Response(201, json={"hasErrors": False, "results": [{"referenceId": "ref0", "id": "a0A"}]}),
    )
    _composite_titles(fake_salesforce, {"a0A": "S-0001"})

    prepared.sync_surveys()

    record = fake_salesforce.body(fake_salesforce.calls("POST", "/composite/tree/Survey__c")[0])["records"][0]
    assert record["Status__c"] == "Open"
    assert record["Visited__c"] is True
    assert "Name" not in record


def test_sync_surveys_keeps_accepted_batches_when_a_later_batch_fails(prepared, fake_salesforce, store):
    store.save_records(
        SURVEY_TABLE,
        [{"Status__c": f"s{index}", "_syncStatus": "Unsynced"} for index in range(250)],
    )
    tree_calls: List[int] = []

    def tree(request: httpx.Request) -> httpx.Response:
        records = fake_salesforce.body(request)["records"]
        tree_calls.append(len(records))
        if len(tree_calls) == 1:
            results = [{"referenceId": f"ref{i}", "id": f"a0{i:03d}"} for i in range(len(records))]
            return httpx.Response(201, json={"hasErrors": False, "results": results})
        return httpx.Response(
            400,
            json={"hasErrors": True, "results": [{"referenceId": "ref3", "errors": [{"message": "Falta"}]}]},
        )

    fake_salesforce.add("POST", "/composite/tree/Survey__c", tree)

    with pytest.raises(SyncOperationError) as excinfo:
        prepared.sync_surveys()

    assert tree_calls == [200, 50]
    assert excinfo.value.reason == BATCH_UPLOAD_FAILED
    assert excinfo.value.details == [{"local_id": 204, "errors": [{"message": "Falta"}]}]

    rows = {row["_localId"]: row for row in store.get_all_records(SURVEY_TABLE)}
    assert {rows[i]["_syncStatus"] for i in range(1, 201)} == {"Synced"}
    assert rows[1]["Id"] == "a0000"
    assert {rows[i]["_syncStatus"] for i in range(201, 251)} == {"Unsynced"}
    assert all(rows[i]["Id"] is None for i in range(201, 251))


def test_upload_descriptors_come_from_field_type_without_readonly_titles(prepared, store):
    descriptors = prepared.upload_descriptors()

    field_type_names = {row["name"] for row in store.get_all_records(FIELD_TYPE_TABLE)}
    assert set(descriptors) == field_type_names - {"Name"}
    assert descriptors["Visit_Date__c"].remote_type == "date"


def test_update_sends_null_for_cleared_layout_fields(prepared, survey_service, fake_salesforce, store):
    store.save_records(
        SURVEY_TABLE,
        [{"Id": "a01", "Status__c": "Open", "Score__c": 4.0, "_syncStatus": "Synced"}],
    )
    survey_service.upsert_local_survey(SurveyRecord(local_id=1, fields={"Score__c": None}))
    fake_salesforce.add("PATCH", "/composite/sobjects", [{"id": "a01", "success": True, "errors": []}])

    prepared.sync_surveys()

    record = fake_salesforce.body(fake_salesforce.calls("PATCH", "/composite/sobjects")[0])["records"][0]
    assert record["Score__c"] is None
    assert record["Status__c"] == "Open"
    assert "RecordTypeId" not in record
    assert "Name" not in record


def test_sync_report_carries_request_id(prepared):
    report = prepared.sync_surveys()

    assert report.request_id
    assert report.to_dict()["request_id"] == report.request_id
