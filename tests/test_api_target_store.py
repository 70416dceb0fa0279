"""Tests for the REST-backed target store."""

import json

import pytest
import requests

from clinic_migration.loaders import APITargetStore, InMemoryTargetStore
from clinic_migration.models.migration import MigrationConfig
from clinic_migration.orchestrator import MigrationOrchestrator


def make_response(status_code, body=None):
    response = requests.Response()
    response.status_code = status_code
    response._content = json.dumps(body if body is not None else {}).encode("utf-8")
    return response


class RecordingSession(requests.Session):
    def __init__(self, responses):
        super().__init__()
        self.responses = list(responses)
        self.sent = []

    def get(self, url, **kwargs):
        self.sent.append(("GET", url, kwargs))
        return self.responses.pop(0)

    def post(self, url, **kwargs):
        self.sent.append(("POST", url, kwargs))
        return self.responses.pop(0)


def store_with(*responses, **kwargs):
    session = RecordingSession(responses)
    store = APITargetStore("https://target.test/api/", rate_limit=0, session=session, **kwargs)
    return store, session


class TestAPITargetStore:
    """Test suite for APITargetStore."""

    def test_create_posts_to_clinic_scoped_endpoint(self):
        """Creates POST the payload and return the id from the body."""
        store, session = store_with(make_response(201, {"id": 42}))

        target_id = store.create_patient("clinic-1", {"firstName": "Ann"})

        assert target_id == "42"
        method, url, kwargs = session.sent[0]
        assert method == "POST"
        assert url == "https://target.test/api/clinics/clinic-1/patients"
        assert kwargs["json"] == {"firstName": "Ann"}

    def test_id_read_from_nested_data(self):
        store, _ = store_with(make_response(201, {"data": {"id": "appt-9"}}))

        assert store.create_appointment("clinic-1", {}) == "appt-9"

    def test_missing_id_raises(self):
        """A create that returns no id is a failed write."""
        store, _ = store_with(make_response(201, {}))

        with pytest.raises(ValueError, match="no id"):
            store.create_chart("clinic-1", {})

    def test_http_error_propagates(self):
        store, _ = store_with(make_response(500, {"error": "boom"}))

        with pytest.raises(requests.HTTPError):
            store.create_invoice("clinic-1", {})

    def test_list_unwraps_data_envelope(self):
        store, session = store_with(
            make_response(200, {"data": [{"id": "s1", "name": "Botox"}]}),
            make_response(200, [{"id": "p1"}]),
        )

        assert store.list_services("clinic-1") == [{"id": "s1", "name": "Botox"}]
        assert store.list_patients("clinic-1") == [{"id": "p1"}]
        assert session.sent[0][1] == "https://target.test/api/clinics/clinic-1/services"

    def test_endpoint_override(self):
        store, session = store_with(
            make_response(201, {"id": "c1"}),
            endpoints={"consent": "/v2/{clinic_id}/consent-forms"},
        )

        store.create_consent("clinic-7", {})

        assert session.sent[0][1] == "https://target.test/api/v2/clinic-7/consent-forms"

    @pytest.mark.parametrize("auth_type,header,expected", [
        ("bearer", "Authorization", "Bearer secret"),
        ("header", "X-Api-Key", "secret"),
    ])
    def test_session_auth_headers(self, auth_type, header, expected):
        """The default session carries the configured credentials."""
        store = APITargetStore(
            "https://target.test", api_key="secret", auth_type=auth_type, auth_header="X-Api-Key",
        )

        assert store._session.headers[header] == expected
        assert store._session.headers["Content-Type"] == "application/json"


class TestTargetStoreSelection:
    """The orchestrator picks its target store from the config."""

    def test_target_url_selects_api_store(self, tmp_path):
        config = MigrationConfig(data_dir=str(tmp_path), target_api_url="https://target.test", target_api_key="k")
        orchestrator = MigrationOrchestrator(config)

        assert isinstance(orchestrator.target_store, APITargetStore)
        assert orchestrator.target_store.base_url == "https://target.test"

    def test_default_is_in_memory(self, tmp_path):
        orchestrator = MigrationOrchestrator(MigrationConfig(data_dir=str(tmp_path)))

        assert isinstance(orchestrator.target_store, InMemoryTargetStore)
