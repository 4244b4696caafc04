"""
Tests for the store HTTP routers.

Status mapping: unknown token 404, expired 410, wrong token shape 400,
partial batch failure 207.
"""

import pytest
from fastapi.testclient import TestClient

from src.store.api import create_app, get_store
from src.store.delete_service import DeletionService
from src.store.errors import DatabaseError
from tests.helpers.fixtures import build_test_model


@pytest.fixture
def client(store):
    app = create_app()
    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def downloaded(store, mirror, fake_civitai_client):
    """Model 100 with versions 200 and 201, on disk and indexed."""
    fake = build_test_model(version_ids=[200, 201])
    fake_civitai_client.add_model(fake)
    mirror.add_version(fake, 200)
    mirror.add_version(fake, 201)
    assert store.scan().value.new_records_added == 2
    return fake


class TestLocalModelsRouter:
    def test_scan(self, client, mirror, sample_model):
        mirror.add_version(sample_model, 200)

        response = client.post("/api/local-models/scan", json={"incremental": False})

        assert response.status_code == 200
        data = response.json()
        assert data["new_records_added"] == 1
        assert data["incremental"] is False

    def test_scan_without_body(self, client):
        response = client.post("/api/local-models/scan")

        assert response.status_code == 200
        assert response.json()["files_scanned"] == 0

    def test_scan_missing_base_directory(self, client, store, base_dir):
        base_dir.rmdir()

        response = client.post("/api/local-models/scan")

        assert response.status_code == 500
        assert response.json()["detail"]["operation"] == "directory-structure"

    def test_consistency(self, client, downloaded, mirror):
        mirror.file_path(downloaded, 201, "model.safetensors").unlink()

        response = client.get("/api/local-models/consistency")

        data = response.json()
        assert data["total"] == 2
        assert data["inconsistent"] == 1

    def test_repair(self, client, downloaded, mirror):
        mirror.file_path(downloaded, 201, "model.safetensors").unlink()

        response = client.post("/api/local-models/repair")

        assert response.status_code == 200
        assert response.json()["repaired"] == 1
        assert client.get("/api/local-models/consistency").json()["inconsistent"] == 0

    def test_versions(self, client, downloaded):
        response = client.get("/api/local-models/versions")

        assert [v["version_id"] for v in response.json()["versions"]] == [200, 201]

    def test_versions_paginated(self, client, downloaded):
        response = client.get("/api/local-models/versions", params={"page": 2, "page_size": 1})

        assert response.status_code == 200
        data = response.json()
        assert [v["version_id"] for v in data["versions"]] == [201]
        assert (data["page"], data["page_size"]) == (2, 1)
        assert (data["total_items"], data["total_pages"]) == (2, 2)

    def test_versions_page_past_end(self, client, downloaded):
        data = client.get("/api/local-models/versions", params={"page": 3, "page_size": 1}).json()

        assert data["versions"] == []
        assert data["total_items"] == 2

    def test_versions_rejects_bad_page(self, client):
        assert client.get("/api/local-models/versions", params={"page": 0}).status_code == 422

    def test_model_with_disk_status(self, client, mirror, sample_model):
        mirror.add_version(sample_model, 200)

        response = client.get("/api/local-models/models/100/with-disk-status")

        assert response.status_code == 200
        data = response.json()
        assert data["model"]["id"] == 100
        assert data["versions_on_disk"] == [{"version_id": 200, "files_on_disk": [2001]}]

    def test_model_with_disk_status_unknown_model(self, client):
        response = client.get("/api/local-models/models/5/with-disk-status")

        assert response.status_code == 502


class TestDeletionRouter:
    def test_request_and_confirm(self, client, downloaded, mirror):
        response = client.post("/api/local-models/delete/request", json={"version_ids": [200]})

        assert response.status_code == 200
        data = response.json()
        assert data["token"].startswith("delete_")
        assert data["items"][0]["exists"] is True

        confirmed = client.post("/api/local-models/delete/confirm", json={"token": data["token"]})

        assert confirmed.status_code == 200
        assert confirmed.json()["database_deleted"] is True
        assert confirmed.json()["model_deleted"] is False
        assert not mirror.version_dir(downloaded, 200).exists()

    def test_request_unknown_version(self, client, downloaded):
        response = client.post("/api/local-models/delete/request", json={"version_ids": [999]})

        assert response.status_code == 502
        assert client.get("/api/local-models/delete/stats").json()["active_tokens"] == 0

    def test_request_version_missing_from_model(self, client, fake_civitai_client, sample_model):
        # Catalog lists the version but the model payload does not include it
        other = build_test_model(model_id=100, version_ids=[300])
        fake_civitai_client.versions[300] = other.version(300)

        response = client.post("/api/local-models/delete/request", json={"version_ids": [300]})

        assert response.status_code == 404
        assert response.json()["detail"]["version_id"] == 300

    def test_empty_request_rejected(self, client):
        response = client.post("/api/local-models/delete/request", json={"version_ids": []})
        assert response.status_code == 422

    def test_confirm_unknown_token(self, client):
        response = client.post("/api/local-models/delete/confirm", json={"token": "delete_nope"})

        assert response.status_code == 404
        assert response.json()["detail"]["reason"] == "missing"

    def test_confirm_twice(self, client, downloaded):
        token = client.post(
            "/api/local-models/delete/request", json={"version_ids": [200]}
        ).json()["token"]

        assert client.post("/api/local-models/delete/confirm", json={"token": token}).status_code == 200
        assert client.post("/api/local-models/delete/confirm", json={"token": token}).status_code == 404

    def test_confirm_expired_token(self, store, client, downloaded, clock):
        store.deletion_service = DeletionService(store.layout, store.database, clock=clock)
        token = client.post(
            "/api/local-models/delete/request", json={"version_ids": [200]}
        ).json()["token"]
        clock.advance(hours=1)

        response = client.post("/api/local-models/delete/confirm", json={"token": token})

        assert response.status_code == 410
        assert response.json()["detail"]["reason"] == "expired"

    def test_single_confirm_of_batch_token(self, client, downloaded):
        token = client.post(
            "/api/local-models/delete/request", json={"version_ids": [200, 201]}
        ).json()["token"]

        response = client.post("/api/local-models/delete/confirm", json={"token": token})
        assert response.status_code == 400

        batch = client.post("/api/local-models/delete/confirm-batch", json={"token": token})
        assert batch.status_code == 200
        assert batch.json()["succeeded"] == 2

    def test_batch_partial_failure(self, store, client, downloaded, monkeypatch):
        real_delete = store.database.delete_model_version

        def _delete(version_id, model_id=None):
            if version_id == 201:
                raise DatabaseError("database is locked", model_id, version_id)
            return real_delete(version_id, model_id)

        monkeypatch.setattr(store.database, "delete_model_version", _delete)
        token = client.post(
            "/api/local-models/delete/request", json={"version_ids": [200, 201]}
        ).json()["token"]

        response = client.post("/api/local-models/delete/confirm-batch", json={"token": token})

        assert response.status_code == 207
        data = response.json()
        assert (data["total"], data["succeeded"], data["failed"]) == (2, 1, 1)
        assert data["failed_items"] == [{"version_id": 201, "error": "database is locked"}]

    def test_direct_delete(self, client, downloaded, mirror):
        response = client.post("/api/local-models/delete/direct", json={"version_ids": [200, 201]})

        assert response.status_code == 200
        assert response.json()["succeeded"] == 2
        assert client.get("/api/local-models/versions").json()["versions"] == []

    def test_stats(self, client, downloaded):
        client.post("/api/local-models/delete/request", json={"version_ids": [200, 201]})

        stats = client.get("/api/local-models/delete/stats").json()

        assert stats["active_tokens"] == 1
        assert stats["total_items"] == 2
