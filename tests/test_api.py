"""Tests for the REST API."""

import pytest
from fastapi.testclient import TestClient

from clinic_migration.api.main import app
from clinic_migration.api.routes.migrations import get_orchestrator

MOCK_RUN = {"clinic_id": "clinic-1", "source_vendor": "mock", "credentials": {"apiKey": "test"}}


@pytest.fixture
def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestMigrationsAPI:
    """Test suite for the migration lifecycle endpoints."""

    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "healthy"}

    def test_create_and_list(self, client):
        created = client.post("/api/migrations", json=MOCK_RUN).json()

        assert created["status"] == "Created"
        assert created["ingest_strategy"] == "api"
        listed = client.get("/api/migrations", params={"clinic_id": "clinic-1"}).json()
        assert listed["total"] == 1
        assert listed["migrations"][0]["id"] == created["id"]

    def test_create_with_uploads(self, client):
        response = client.post("/api/migrations", json={
            "clinic_id": "clinic-1",
            "source_vendor": "csv",
            "files": {"patients.csv": "id,first_name,last_name\n1,Ann,Lee\n"},
        })

        assert response.json()["ingest_strategy"] == "upload"

    def test_create_without_inputs(self, client):
        response = client.post("/api/migrations", json={"clinic_id": "clinic-1"})

        assert response.status_code == 400

    def test_unknown_migration(self, client):
        assert client.get("/api/migrations/nope").status_code == 404

    def test_full_lifecycle(self, client):
        """Test start, approve and the finished run's report, logs and events."""
        migration_id = client.post("/api/migrations", json=MOCK_RUN).json()["id"]

        assert client.post(f"/api/migrations/{migration_id}/start").json()["status"] == "started"
        drafted = client.get(f"/api/migrations/{migration_id}").json()
        assert drafted["status"] == "MappingDrafted"
        assert drafted["mapping_spec_version"] == 1

        approved = client.post(f"/api/migrations/{migration_id}/approve", json={"approver_id": "owner-1"})
        assert approved.json()["approved_by_id"] == "owner-1"

        finished = client.get(f"/api/migrations/{migration_id}").json()
        assert finished["status"] == "Completed"
        assert finished["progress"]["patient"]["imported"] == 4

        report = client.get(f"/api/migrations/{migration_id}/report").json()
        assert report["runId"] == migration_id

        logs = client.get(f"/api/migrations/{migration_id}/logs", params={"status": "duplicate"}).json()
        assert logs["total"] >= 1
        assert "raw_data" not in logs["logs"][0]
        assert logs["summary"]["patient"]["duplicate"] == 1

        events = client.get(f"/api/migrations/{migration_id}/events").json()
        assert events["events"][0]["action"] == "PHASE_STARTED"

    def test_start_twice(self, client, orchestrator):
        migration_id = client.post("/api/migrations", json=MOCK_RUN).json()["id"]
        orchestrator.run_to_approval(migration_id)

        response = client.post(f"/api/migrations/{migration_id}/start")

        assert response.status_code == 400

    def test_approve_before_draft(self, client):
        migration_id = client.post("/api/migrations", json=MOCK_RUN).json()["id"]

        response = client.post(f"/api/migrations/{migration_id}/approve", json={"approver_id": "owner-1"})

        assert response.status_code == 400

    def test_report_before_completion(self, client):
        migration_id = client.post("/api/migrations", json=MOCK_RUN).json()["id"]

        assert client.get(f"/api/migrations/{migration_id}/report").status_code == 400

    def test_resume_at_gate_requires_approval(self, client, orchestrator):
        migration_id = client.post("/api/migrations", json=MOCK_RUN).json()["id"]
        orchestrator.run_to_approval(migration_id)
        client.post(f"/api/migrations/{migration_id}/pause")

        response = client.post(f"/api/migrations/{migration_id}/resume")

        assert response.status_code == 409
        assert response.json()["detail"] == (
            "Pipeline paused at approve_mapping. Call approve_mapping() to continue."
        )

    def test_approve_after_pause_at_gate(self, client, orchestrator):
        """Approval is still the way past the gate once a waiting run is paused."""
        migration_id = client.post("/api/migrations", json=MOCK_RUN).json()["id"]
        orchestrator.run_to_approval(migration_id)
        client.post(f"/api/migrations/{migration_id}/pause")

        response = client.post(f"/api/migrations/{migration_id}/approve", json={"approver_id": "owner-1"})

        assert response.status_code == 200
        assert client.get(f"/api/migrations/{migration_id}").json()["status"] == "Completed"

    def test_pause_and_resume(self, client, orchestrator):
        migration_id = client.post("/api/migrations", json=MOCK_RUN).json()["id"]

        assert client.post(f"/api/migrations/{migration_id}/pause").json() == {"status": "paused"}
        assert client.get(f"/api/migrations/{migration_id}").json()["status"] == "Paused"

        assert client.post(f"/api/migrations/{migration_id}/resume").json() == {"status": "resumed"}
        assert client.get(f"/api/migrations/{migration_id}").json()["status"] == "MappingDrafted"

    def test_pause_paused_run(self, client):
        migration_id = client.post("/api/migrations", json=MOCK_RUN).json()["id"]
        client.post(f"/api/migrations/{migration_id}/pause")

        assert client.post(f"/api/migrations/{migration_id}/pause").status_code == 400
