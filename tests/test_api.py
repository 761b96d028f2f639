from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from crm_backup.config import Settings
from crm_backup.routers import backups
from crm_backup.scheduler import BackupScheduler
from crm_backup.schemas import ScheduleConfig

TOKEN = "admin-token"
AUTH = {"X-Admin-Token": TOKEN}


@pytest.fixture
def settings():
    return Settings(admin_token=TOKEN, restore_mode=True)


@pytest.fixture
def client(settings, backup_service, recovery_service):
    app = FastAPI()
    app.include_router(backups.router, prefix="/backups")
    app.state.settings = settings
    app.state.backup_service = backup_service
    app.state.recovery_service = recovery_service
    app.state.backup_scheduler = BackupScheduler(backup_service, ScheduleConfig(enabled=False))
    return TestClient(app)


def _create(client):
    response = client.post("/backups/create", json={}, headers=AUTH)
    assert response.status_code == 201
    return response.json()


def test_requests_without_admin_token_are_forbidden(client):
    assert client.get("/backups/list").status_code == 403
    assert client.get("/backups/list", headers={"X-Admin-Token": "guess"}).status_code == 403


def test_requests_are_forbidden_when_no_token_is_configured(client, settings):
    settings.admin_token = None

    assert client.get("/backups/list", headers=AUTH).status_code == 403


def test_create_and_list_backups(client):
    created = _create(client)

    assert created["tables"] == ["schools", "contacts"]
    assert created["is_verified"] is True

    listed = client.get("/backups/list", headers=AUTH).json()
    assert [b["id"] for b in listed] == [created["id"]]


def test_create_backup_with_no_tables_left_is_bad_request(client):
    response = client.post("/backups/create", json={"exclude_tables": ["schools", "contacts"]}, headers=AUTH)

    assert response.status_code == 400
    assert response.json()["detail"]["kind"] == "InvalidRequest"


def test_create_backup_dump_failure_is_bad_gateway(client, dump_runner):
    dump_runner.fail = True

    response = client.post("/backups/create", json={}, headers=AUTH)

    assert response.status_code == 502
    assert response.json()["detail"]["kind"] == "DumpFailed"
    assert response.json()["detail"]["summary"] == "Connection error"


def test_delete_unknown_backup_is_not_found(client):
    response = client.delete("/backups/nope", headers=AUTH)

    assert response.status_code == 404
    assert response.json()["detail"]["kind"] == "NotFound"


def test_delete_backup(client):
    created = _create(client)

    assert client.delete(f"/backups/{created['id']}", headers=AUTH).status_code == 204
    assert client.get("/backups/list", headers=AUTH).json() == []


def test_verify_backup_reports_tampering(client, backup_service):
    created = _create(client)
    assert client.post(f"/backups/{created['id']}/verify", headers=AUTH).json()["is_valid"] is True

    path = Path(backup_service.backup_dir) / created["filename"]
    path.write_text(path.read_text().replace("schools", "school5"))

    assert client.post(f"/backups/{created['id']}/verify", headers=AUTH).json()["is_valid"] is False


def test_restore_is_forbidden_outside_restore_mode(client, settings):
    created = _create(client)
    settings.restore_mode = False

    response = client.post(f"/backups/{created['id']}/restore", json={}, headers=AUTH)

    assert response.status_code == 403


def test_restore_from_backup(client, inspector):
    created = _create(client)

    response = client.post(f"/backups/{created['id']}/restore", json={"drop_existing": True}, headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["restored_tables"] == ["schools", "contacts"]
    assert sorted(inspector.dropped) == ["contacts", "schools"]


def test_restore_of_tampered_backup_is_conflict_with_result(client, backup_service):
    created = _create(client)
    path = Path(backup_service.backup_dir) / created["filename"]
    path.write_text(path.read_text() + "-- appended\n")

    response = client.post(f"/backups/{created['id']}/restore", json={}, headers=AUTH)

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["kind"] == "IntegrityCheckFailed"
    assert detail["result"]["success"] is False
    assert detail["result"]["backup_id"] == created["id"]


def test_selective_restore(client, restore_runner):
    created = _create(client)

    response = client.post(
        f"/backups/{created['id']}/restore/selective", json={"tables": ["contacts"]}, headers=AUTH
    )

    assert response.status_code == 200
    assert response.json()["restored_tables"] == ["contacts"]
    assert restore_runner.calls[0]["tables"] == ["contacts"]


def test_selective_restore_validation(client):
    created = _create(client)
    url = f"/backups/{created['id']}/restore/selective"

    assert client.post(url, json={"tables": []}, headers=AUTH).status_code == 422
    unknown = client.post(url, json={"tables": ["invoices"]}, headers=AUTH)
    assert unknown.status_code == 400


def test_preview_and_test_restore(client, monkeypatch):
    monkeypatch.setattr("crm_backup.recovery_service.shutil.which", lambda name: f"/usr/bin/{name}")
    created = _create(client)

    preview = client.get(f"/backups/{created['id']}/preview", headers=AUTH).json()
    assert preview["conflicts"] == ["schools", "contacts"]

    report = client.post(f"/backups/{created['id']}/test", headers=AUTH).json()
    assert report["can_restore"] is True
    assert report["issues"] == []


def test_restorable_backups(client):
    created = _create(client)

    restorable = client.get("/backups/restorable", headers=AUTH).json()

    assert [b["id"] for b in restorable] == [created["id"]]


def test_schedule_status_and_config_update(client):
    status = client.get("/backups/schedule/status", headers=AUTH).json()
    assert status["is_running"] is False
    assert status["config"]["enabled"] is False

    response = client.put("/backups/schedule/config", json={"retention_days": 7}, headers=AUTH)
    assert response.status_code == 200
    assert response.json()["retention_days"] == 7
    assert response.json()["enabled"] is False

    invalid = client.put("/backups/schedule/config", json={"interval_seconds": 0}, headers=AUTH)
    assert invalid.status_code == 422


def test_cleanup_endpoint(client):
    _create(client)

    response = client.post("/backups/cleanup", params={"retention_days": 30}, headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {"retention_days": 30, "deleted": []}
