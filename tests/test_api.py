"""Tests for the HTTP API."""

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from customs_portal.api.main import create_app
from customs_portal.core.store import TargetConfigStore
from customs_portal.service import SubmissionService

from fakes import SAVE_BUTTON, make_declaration, make_target, portal_session


def declaration_json(**kwargs):
    return make_declaration(**kwargs).model_dump(mode="json")


class TestSubmissionAPI:
    """Test cases for the submission and target endpoints."""

    @pytest.fixture
    def save_text(self):
        return {"value": "TD saved successfully. TD Number: TD12345"}

    @pytest.fixture
    def service(self, tmp_path, save_text):
        def factory():
            session = portal_session()
            session.click_effects[SAVE_BUTTON] = save_text["value"]
            return session

        return SubmissionService(
            store=TargetConfigStore([make_target()]),
            advisor=MagicMock(is_available=False),
            session_factory=factory,
            driver_options={"sleep": AsyncMock(), "screenshot_dir": str(tmp_path)},
        )

    @pytest.fixture
    def client(self, service):
        return TestClient(create_app(service=service))

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["components"]["recovery_advisor"] == "disabled"

    def test_submit_and_fetch(self, client):
        response = client.post(
            "/api/v1/submissions",
            json={"target_code": "CAPS", "declaration": declaration_json(), "wait": True},
        )

        assert response.status_code == 202
        record = response.json()
        assert record["status"] == "success"
        assert record["external_reference"] == "TD12345"

        fetched = client.get(f"/api/v1/submissions/{record['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["id"] == record["id"]

    def test_missing_required_data_is_reported(self, client):
        response = client.post(
            "/api/v1/submissions",
            json={"target_code": "CAPS", "declaration": declaration_json(shipper={}), "wait": True},
        )

        record = response.json()
        assert record["status"] == "failed"
        assert record["error_code"] == "missing_required_value"
        assert record["missing_fields"][0]["details"]["field"] == "Supplier Name"

    def test_unknown_target(self, client):
        response = client.post(
            "/api/v1/submissions",
            json={"target_code": "NOPE", "declaration": declaration_json(), "wait": True},
        )

        assert response.status_code == 404
        assert response.json()["error"] == "unknown_target"

    def test_invalid_request_body(self, client):
        response = client.post("/api/v1/submissions", json={"target_code": "CAPS"})

        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"

    def test_unknown_submission(self, client):
        assert client.get(f"/api/v1/submissions/{uuid4()}").status_code == 404
        assert client.post(f"/api/v1/submissions/{uuid4()}/cancel").status_code == 404

    def test_cancel_finished_submission(self, client):
        record = client.post(
            "/api/v1/submissions",
            json={"target_code": "CAPS", "declaration": declaration_json(), "wait": True},
        ).json()

        response = client.post(f"/api/v1/submissions/{record['id']}/cancel")

        assert response.status_code == 200
        assert response.json() == {"submission_id": record["id"], "cancelled": False}

    def test_retry_failed_submission(self, client, save_text):
        save_text["value"] = "Error: CPC invalid"
        failed = client.post(
            "/api/v1/submissions",
            json={"target_code": "CAPS", "declaration": declaration_json(), "wait": True},
        ).json()
        save_text["value"] = "TD saved successfully. TD Number: TD2"

        response = client.post(
            f"/api/v1/submissions/{failed['id']}/retry",
            json={"declaration": declaration_json(), "wait": True},
        )

        assert failed["error_code"] == "portal_rejection"
        assert response.status_code == 202
        assert response.json()["parent_id"] == failed["id"]
        assert response.json()["external_reference"] == "TD2"

    def test_retry_of_successful_submission_conflicts(self, client):
        record = client.post(
            "/api/v1/submissions",
            json={"target_code": "CAPS", "declaration": declaration_json(), "wait": True},
        ).json()

        response = client.post(
            f"/api/v1/submissions/{record['id']}/retry",
            json={"declaration": declaration_json(), "wait": True},
        )

        assert response.status_code == 409
        assert response.json()["error"] == "retry_not_allowed"

    def test_list_targets(self, client):
        response = client.get("/api/v1/targets")

        assert response.status_code == 200
        assert response.json()[0]["code"] == "CAPS"
        assert response.json()[0]["pages"] == ["login", "td_list", "td_entry"]

    def test_connection_test(self, client):
        response = client.post("/api/v1/targets/CAPS/test-connection")

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_preview(self, client):
        response = client.post("/api/v1/targets/CAPS/preview", json={"declaration": declaration_json(lines=1)})

        assert response.status_code == 200
        body = response.json()
        assert body["ready_to_submit"] is True
        assert body["total_fields"] == 6


def test_service_unavailable_without_startup():
    client = TestClient(create_app())

    assert client.get("/api/v1/targets").status_code == 503
    assert client.get("/health").json()["status"] == "degraded"
