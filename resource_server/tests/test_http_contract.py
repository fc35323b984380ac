from __future__ import annotations

import jwt
import pytest
from fastapi.testclient import TestClient

from resource_server.config import Settings
from resource_server.db import now_ms
from resource_server.errors import PersistenceFailed
from resource_server.main import create_app
from resource_server.tests.fakes import FakeGateway

SECRET = "test-secret"


def _token(role: str = "admin", sub: str = "admin@example.com", secret: str = SECRET) -> str:
    return jwt.encode({"sub": sub, "role": role}, secret, algorithm="HS256")


def _auth(role: str = "admin") -> dict[str, str]:
    return {"Authorization": f"Bearer {_token(role)}"}


@pytest.fixture
def http_gateway() -> FakeGateway:
    return FakeGateway(now_ms)


@pytest.fixture
def client(db_url, http_gateway):
    cfg = Settings(db_url=db_url, jwt_secret=SECRET, scheduler_enabled=False, max_upload_bytes=64)
    app = create_app(cfg, gateway=http_gateway)
    with TestClient(app) as c:
        yield c


def _upload(
    client, name: str = "resume.pdf", body: bytes = b"%PDF-1.7", content_type: str = "application/pdf"
) -> dict:
    resp = client.post(
        "/admin/uploads",
        headers=_auth(),
        files={"file": (name, body, content_type)},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def _create_resource(client, upload_id: str, **extra) -> dict:
    resp = client.post(
        "/admin/resources",
        headers=_auth(),
        json={"upload_id": upload_id, "title": "Resume", "category": "documents", **extra},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health_and_metrics(client):
    assert client.get("/health").json()["ok"] is True
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "counters" in resp.json()
    assert resp.headers["x-request-id"]


def test_admin_routes_require_admin_token(client):
    assert client.post("/admin/resources/refresh-urls").status_code == 401
    bad = {"Authorization": f"Bearer {_token(secret='other')}"}
    assert client.post("/admin/resources/refresh-urls", headers=bad).status_code == 401
    resp = client.post("/admin/resources/refresh-urls", headers=_auth("viewer"))
    assert resp.status_code == 403
    assert resp.json()["detail"]["error"]["code"] == "forbidden"


def test_upload_create_download_flow(client, http_gateway):
    uploaded = _upload(client)
    created = _create_resource(client, uploaded["upload_id"])
    resource_id = created["resource_id"]
    assert created["signed_url"]

    listing = client.get("/api/resources").json()["resources"]
    assert [r["resource_id"] for r in listing] == [resource_id]

    resp = client.post(f"/api/resources/{resource_id}/download")
    assert resp.status_code == 200
    body = resp.json()
    assert body["url"] == created["signed_url"]
    assert body["expires_at"] > now_ms()
    assert http_gateway.sign_count == 1

    fetched = client.get(f"/api/resources/{resource_id}").json()
    assert fetched["download_count"] == 1

    stats = client.get("/api/resources/stats").json()
    assert stats["total_downloads"] == 1
    assert stats["by_category"]["documents"]["total"] == 1

    legacy = client.get(f"/api/v1/resources/{resource_id}")
    assert legacy.status_code == 200


def test_download_unknown_is_404(client):
    resp = client.post("/api/resources/does-not-exist/download")
    assert resp.status_code == 404
    assert resp.json()["detail"]["error"]["code"] == "not_found"


def test_download_without_valid_url_is_503(client, http_gateway):
    uploaded = _upload(client)
    created = _create_resource(client, uploaded["upload_id"])
    http_gateway.fail_keys.add(uploaded["object_key"])
    client.app.state.manager.store.save(
        client.app.state.resources.get(created["resource_id"]).replace(
            url_expires_at=now_ms() - 1000, url_signed_at=now_ms() - 5000
        )
    )

    resp = client.post(f"/api/resources/{created['resource_id']}/download")

    assert resp.status_code == 503
    assert resp.json()["detail"]["error"]["code"] == "signing_failed"


def test_update_delete_and_refresh_urls(client):
    uploaded = _upload(client)
    created = _create_resource(client, uploaded["upload_id"])
    rid = created["resource_id"]

    resp = client.put(f"/admin/resources/{rid}", headers=_auth(), json={"title": "CV"})
    assert resp.status_code == 200
    assert resp.json()["title"] == "CV"
    assert resp.json()["signed_url"] == created["signed_url"]

    resp = client.post("/admin/resources/refresh-urls", headers=_auth())
    assert resp.status_code == 200
    assert resp.json() == {"refreshed": 0}

    resp = client.delete(f"/admin/resources/{rid}", headers=_auth())
    assert resp.status_code == 200
    assert resp.json()["is_active"] is False
    assert client.get(f"/api/resources/{rid}").status_code == 404
    assert client.get("/admin/resources", headers=_auth()).json()["resources"][0]["resource_id"] == rid


def test_upload_limits_and_delete(client, http_gateway):
    resp = client.post(
        "/admin/uploads", headers=_auth(), files={"file": ("big.bin", b"x" * 65, "application/octet-stream")}
    )
    assert resp.status_code == 413

    uploaded = _upload(client)
    assert client.get(f"/api/uploads/{uploaded['upload_id']}").status_code == 200
    _create_resource(client, uploaded["upload_id"])

    resp = client.delete(f"/admin/uploads/{uploaded['upload_id']}", headers=_auth())
    assert resp.status_code == 200
    assert resp.json()["deactivated_resources"] == 1
    assert http_gateway.deleted == [uploaded["object_key"]]
    assert client.get(f"/api/uploads/{uploaded['upload_id']}").status_code == 404
    assert client.get("/api/resources").json()["resources"] == []


def test_admin_stats_and_uploads_summary(client):
    uploaded = _upload(client)
    _upload(client, name="notes.txt", body=b"hello", content_type="text/plain")
    _create_resource(client, uploaded["upload_id"])

    assert client.get("/admin/resources/stats").status_code == 401
    resp = client.get("/admin/resources/stats", headers=_auth())
    assert resp.status_code == 200
    assert resp.json()["total_resources"] == 1
    assert resp.json()["by_category"]["documents"]["active"] == 1

    for prefix in ("/api", "/api/v1"):
        resp = client.get(f"{prefix}/uploads/summary")
        assert resp.status_code == 200
        body = resp.json()
        assert len(body["uploads"]) == 2
        assert body["summary"]["count"] == 2
        assert body["summary"]["total_bytes"] == len(b"%PDF-1.7") + len(b"hello")
        assert body["summary"]["by_content_type"]["text/plain"] == {"count": 1, "total_bytes": 5}


def test_database_failure_is_503(client, monkeypatch):
    def broken_load(resource_id):
        raise PersistenceFailed("database is locked")

    monkeypatch.setattr(client.app.state.resources.store, "load", broken_load)

    resp = client.get("/api/resources/some-id")

    assert resp.status_code == 503
    assert resp.json()["detail"]["error"]["code"] == "storage_unavailable"
