import pytest
import requests
from fastapi.testclient import TestClient

from conftest import ISSUES_RESULT, FakeAnalyzer, FakeGateway, encounter_payload
from notewatch.api import create_app
from notewatch.config import Settings
from notewatch.db.models import NoteCheckStatus
from notewatch.gateway import VitalSigns
from notewatch.service import build_services


@pytest.fixture
def services(engine, clock):
    services = build_services(
        Settings(database_url="sqlite://"),
        engine=engine,
        analyzer=FakeAnalyzer(),
        http=requests.Session(),
        clock=clock,
    )
    services.credentials.save_credentials("svc-user", "s3cret")
    services.credentials.store_tokens("svc-user", "tok-1", "ref-1")
    return services


@pytest.fixture
def fake_gateway(services):
    fake = FakeGateway()
    services.check_job.gateway = fake
    services.vitals_job.gateway = fake
    return fake


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as client:
        yield client


def _checked(services, result=ISSUES_RESULT):
    return services.records.save_note_check(
        "enc-1",
        status=NoteCheckStatus.COMPLETED,
        checked_by="notewatch",
        fingerprint="sha256:abc",
        analysis_result=result.to_record(),
        issues_found=result.issues_found,
        patient_id="p1",
        patient_name="Pat Doe",
    )


def test_scan_now_queues_manual_scan(client):
    resp = client.post("/jobs/scan", json={"force": True})
    assert resp.status_code == 202
    body = resp.json()
    assert body["id"] == "scan:manual"
    assert body["queue"] == "note-scan"
    assert body["state"] == "waiting"

    assert client.post("/jobs/scan").json()["id"] == "scan:manual"


def test_force_recheck_one_encounter(client, services):
    resp = client.post("/encounters/enc-1/check")
    assert resp.status_code == 202
    assert resp.json()["id"] == "check:enc-1"
    assert services.runtime.get_job("check:enc-1").payload["force"] is True


def test_bulk_recheck(client):
    resp = client.post("/encounters/check", json={"encounter_ids": ["a", "b", "a"]})
    assert resp.status_code == 202
    assert [job["id"] for job in resp.json()] == ["check:a", "check:b"]


def test_bulk_recheck_is_bounded(client):
    ids = [f"enc-{index}" for index in range(101)]
    assert client.post("/encounters/check", json={"encounter_ids": ids}).status_code == 422
    assert client.post("/encounters/check", json={"encounter_ids": []}).status_code == 422


def test_job_stats(client):
    client.post("/encounters/enc-1/check")
    stats = client.get("/jobs/stats").json()
    assert stats["note-check"] == {"waiting": 1, "active": 0, "completed": 0, "failed": 0}
    assert set(stats) == {"note-scan", "note-check", "vital-signs"}


def test_check_details(client, services):
    assert client.get("/encounters/enc-1/check").status_code == 404
    record = _checked(services)
    services.records.mark_issue_invalid("enc-1", record.id, 0, "reviewer")

    body = client.get("/encounters/enc-1/check").json()

    assert body["status"] == "completed"
    assert body["issues_found"] is True
    assert body["invalid_issues"][0]["issue_index"] == 0
    assert body["resolved_issues"] == []
    assert client.get("/encounters/checks").json()[0]["encounter_id"] == "enc-1"


def test_issue_annotations(client, services):
    record = _checked(services)
    url = f"/encounters/enc-1/issues/{record.id}/1/resolved"

    resp = client.post(url, json={"marked_by": "reviewer", "reason": "fixed in chart"})
    assert resp.status_code == 200
    assert resp.json()["issue_type"] == "no_explicit_plan"
    assert services.records.list_resolved_issues("enc-1")[0].reason == "fixed in chart"

    assert client.delete(url).status_code == 204
    assert client.delete(url).status_code == 404


def test_issue_annotation_errors(client, services):
    record = _checked(services)
    body = {"marked_by": "reviewer"}
    assert client.post(f"/encounters/enc-1/issues/{record.id + 7}/0/invalid", json=body).status_code == 404
    assert client.post(f"/encounters/enc-1/issues/{record.id}/9/invalid", json=body).status_code == 400
    assert client.post(f"/encounters/enc-1/issues/{record.id}/0/ignored", json=body).status_code == 422


def test_todo_creation(client, services, fake_gateway):
    assert client.post("/encounters/enc-1/todo").status_code == 404

    _checked(services, result=ISSUES_RESULT.model_copy(update={"status": "ok", "issues": []}))
    assert client.post("/encounters/enc-1/todo").status_code == 400

    _checked(services)
    fake_gateway.encounters["enc-1"] = encounter_payload("enc-1")
    resp = client.post("/encounters/enc-1/todo", json={"created_by": "reviewer"})
    assert resp.status_code == 201
    assert resp.json()["external_task_id"] == "task-1"
    assert resp.json()["created_by"] == "reviewer"

    again = client.post("/encounters/enc-1/todo")
    assert again.json()["external_task_id"] == "task-1"
    assert len(fake_gateway.tasks) == 1


def test_todo_upstream_failure_is_bad_gateway(client, services, fake_gateway):
    _checked(services)
    assert client.post("/encounters/enc-1/todo").status_code == 502


def test_vitals_endpoints(client, fake_gateway):
    fake_gateway.encounters["enc-1"] = encounter_payload("enc-1", status="READY_FOR_STAFF")
    fake_gateway.vitals["enc-1"] = VitalSigns(encounter_id="enc-1")

    resp = client.post("/encounters/enc-1/vitals", params={"patient_id": "p1"})

    assert resp.status_code == 200
    assert resp.json()["message"] == "No historical encounters found"
    assert client.get("/vitals/stats").json() == {"total": 1, "successful": 0, "failed": 1}


def test_metrics_exposition(client):
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "notewatch_jobs_processed_total" in resp.text
