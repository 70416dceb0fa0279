"""Tests for source providers."""

import json

import pytest
import requests

from clinic_migration.errors import (
    ConfigurationError,
    SessionExpiredError,
    SourceAccessError,
    UnsupportedEntityError,
)
from clinic_migration.models.record import FetchOptions, SourcePatient
from clinic_migration.models.schema import EntityType
from clinic_migration.providers import (
    PROVIDER_REGISTRY,
    MockProvider,
    RestProvider,
    get_provider,
    register_provider,
)

LOGIN = {"email": "owner@clinic.test", "password": "pw"}


def make_response(status_code, body=None):
    response = requests.Response()
    response.status_code = status_code
    response._content = json.dumps(body or {}).encode("utf-8")
    return response


class FakeSession(requests.Session):
    """requests session replaying canned responses."""

    def __init__(self, responses):
        super().__init__()
        self.responses = list(responses)
        self.sent = []

    def post(self, url, **kwargs):
        self.sent.append(("POST", url, kwargs))
        self.cookies.set("csrf-token", f"tok-{len(self.sent)}")
        return self.responses.pop(0)

    def get(self, url, **kwargs):
        self.sent.append(("GET", url, kwargs))
        return self.responses.pop(0)


def patients_page(*ids, next_cursor=None):
    return make_response(200, {
        "data": [{"sourceId": i, "firstName": "Ann", "lastName": "Lee", "vendorOnly": 1} for i in ids],
        "nextCursor": next_cursor,
        "totalCount": len(ids),
    })


class TestMockProvider:
    """Test suite for the demo clinic provider."""

    def test_cursor_pagination(self):
        provider = MockProvider()

        first = provider.fetch(EntityType.PATIENTS, {}, FetchOptions(limit=2))
        second = provider.fetch(EntityType.PATIENTS, {}, FetchOptions(cursor=first.next_cursor, limit=10))

        assert [p.source_id for p in first.data] == ["mock-p-1", "mock-p-2"]
        assert first.next_cursor == "2"
        assert len(second.data) == 3
        assert second.next_cursor is None
        assert second.total_count == 5

    def test_per_patient_filter(self):
        result = MockProvider().fetch(EntityType.PHOTOS, {}, FetchOptions(patient_source_id="mock-p-2"))

        assert result.data == []

    def test_form_content(self):
        fields = MockProvider().fetch_form_content({}, "mock-form-5")

        assert fields[0].label == "Treatment Type"
        assert MockProvider().fetch_form_content({}, "missing") == []

    @pytest.mark.parametrize("credentials,connected", [
        ({"apiKey": "test"}, True),
        ({"apiKey": "invalid"}, False),
        ({"email": "a@b.c", "password": "invalid"}, False),
        ({"email": "a@b.c", "password": "secret"}, True),
        ({}, False),
    ])
    def test_connection(self, credentials, connected):
        assert MockProvider().test_connection(credentials).connected is connected

    def test_form_content_is_not_paged(self):
        with pytest.raises(UnsupportedEntityError):
            MockProvider().fetch(EntityType.FORM_CONTENT, {})


class TestProviderRegistry:
    """Test suite for provider lookup."""

    def test_lookup_is_case_insensitive(self):
        assert isinstance(get_provider("Mock"), MockProvider)

    def test_unknown_vendor(self):
        with pytest.raises(ConfigurationError):
            get_provider("faxmachine")

    def test_rest_requires_base_url(self):
        with pytest.raises(ConfigurationError):
            get_provider("rest", base_url="")

    def test_unknown_option(self):
        with pytest.raises(ConfigurationError, match="Invalid provider options"):
            get_provider("mock", base_url="https://vendor.test")

    def test_register_provider(self, monkeypatch):
        monkeypatch.setattr("clinic_migration.providers.PROVIDER_REGISTRY", dict(PROVIDER_REGISTRY))
        register_provider("Acme", MockProvider)

        assert isinstance(get_provider("acme"), MockProvider)


class TestRestProvider:
    """Test suite for the session-authenticated REST provider."""

    def test_fetch_page(self):
        http = FakeSession([make_response(200), patients_page("p-1", "p-2", next_cursor="c-2")])
        provider = RestProvider("https://vendor.test/", session=http)

        result = provider.fetch_patients(LOGIN, FetchOptions(cursor="c-1", limit=2))

        assert [p.source_id for p in result.data] == ["p-1", "p-2"]
        assert isinstance(result.data[0], SourcePatient)
        assert result.data[0].raw_data["vendorOnly"] == 1
        assert result.next_cursor == "c-2"

        method, url, kwargs = http.sent[1]
        assert url == "https://vendor.test/api/patients"
        assert kwargs["params"] == {"limit": 2, "cursor": "c-1"}
        assert kwargs["headers"]["csrf-token"] == "tok-1"

    def test_reauthenticates_once_on_401(self):
        """Test that a rejected session is re-established and the request retried."""
        http = FakeSession([
            make_response(200),
            make_response(401),
            make_response(200),
            patients_page("p-1"),
        ])
        provider = RestProvider("https://vendor.test", session=http)

        result = provider.fetch_patients(LOGIN, FetchOptions())

        assert len(result.data) == 1
        assert [m for m, _, _ in http.sent] == ["POST", "GET", "POST", "GET"]
        assert http.sent[3][2]["headers"]["csrf-token"] == "tok-3"

    def test_session_expired_after_retry(self):
        http = FakeSession([make_response(200), make_response(403), make_response(200), make_response(403)])
        provider = RestProvider("https://vendor.test", session=http)

        with pytest.raises(SessionExpiredError):
            provider.fetch_patients(LOGIN, FetchOptions())

    def test_login_rejected(self):
        http = FakeSession([make_response(401)])
        provider = RestProvider("https://vendor.test", session=http)

        with pytest.raises(SourceAccessError) as exc_info:
            provider.fetch_patients(LOGIN, FetchOptions())
        assert exc_info.value.status_code == 401

    def test_server_error(self):
        http = FakeSession([make_response(200), make_response(500)])
        provider = RestProvider("https://vendor.test", session=http)

        with pytest.raises(SourceAccessError) as exc_info:
            provider.fetch_services(LOGIN, FetchOptions())
        assert exc_info.value.status_code == 500

    def test_api_key_uses_bearer_header(self):
        http = FakeSession([patients_page("p-1")])
        provider = RestProvider("https://vendor.test", session=http)

        provider.fetch_patients({"apiKey": "k-1"}, FetchOptions())

        assert http.headers["Authorization"] == "Bearer k-1"
        assert [m for m, _, _ in http.sent] == ["GET"]

    def test_per_patient_param(self):
        http = FakeSession([make_response(200), make_response(200, {"data": []})])
        provider = RestProvider(
            "https://vendor.test",
            capabilities=[EntityType.PHOTOS],
            per_patient=[EntityType.PHOTOS],
            session=http,
        )

        provider.fetch(EntityType.PHOTOS, LOGIN, FetchOptions(patient_source_id="p-7"))

        assert http.sent[1][2]["params"]["patientId"] == "p-7"
        assert EntityType.PHOTOS in provider.per_patient

    def test_undeclared_entity(self):
        provider = RestProvider("https://vendor.test", session=FakeSession([]))

        with pytest.raises(UnsupportedEntityError):
            provider.fetch(EntityType.CHARTS, LOGIN)

    def test_connection_reports_failure(self):
        http = FakeSession([make_response(401)])

        result = RestProvider("https://vendor.test", session=http).test_connection(LOGIN)

        assert not result.connected
        assert "401" in result.error_message

    def test_connection_reads_business(self):
        http = FakeSession([make_response(200), make_response(200, {"businessName": "Glow", "locationId": "l-1"})])

        result = RestProvider("https://vendor.test", session=http).test_connection(LOGIN)

        assert result.connected
        assert result.business_name == "Glow"
