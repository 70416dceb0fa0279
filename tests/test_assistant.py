"""Tests for the migration assistant.

These tests verify that:
- Every use case has a deterministic fallback without an API key
- Assistant answers are validated before they are trusted
- Rate limits fall back and other provider failures surface as AssistantError
"""

import pytest

from clinic_migration.errors import AssistantError, ConfigurationError, MappingSpecError
from clinic_migration.models.schema import CanonicalType, ServiceAction
from clinic_migration.services.assistant import (
    MigrationAssistant,
    detect_data_issues,
    heuristic_mapping_spec,
    match_canonical_field,
)


class ScriptedAssistant(MigrationAssistant):
    """Assistant whose provider call returns a scripted answer or raises."""

    def __init__(self, answer=None, error=None):
        super().__init__(api_key="test-key")
        self.answer = answer
        self.error = error
        self.messages = []

    def _call_llm(self, system_prompt, message, schema_name, schema):
        self.messages.append(message)
        if self.error is not None:
            raise self.error
        return self.answer


class RateLimited(Exception):
    status_code = 429


@pytest.fixture
def safe_context():
    return {"sourceProfile": {"entities": [
        {"type": "patients", "fields": [
            {"name": "id"}, {"name": "fname"}, {"name": "lname"}, {"name": "email"}, {"name": "dob"},
        ]},
        {"type": "appointments", "fields": [
            {"name": "id"}, {"name": "patient_id"}, {"name": "provider"}, {"name": "start"}, {"name": "status"},
        ]},
        {"type": "services", "fields": [{"name": "id"}, {"name": "name"}]},
    ]}}


class TestFallbacks:
    """Test suite for the deterministic paths."""

    def test_offline_ignores_environment_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert not MigrationAssistant(offline=True).enabled
        assert MigrationAssistant().enabled

    def test_unsupported_provider(self):
        with pytest.raises(ConfigurationError):
            MigrationAssistant(provider="cohere")

    def test_heuristic_mapping_spec(self, safe_context):
        spec = heuristic_mapping_spec(safe_context, "mock", version=2)

        assert spec.version == 2
        assert spec.drafted_by == "heuristic"
        assert [m.source_entity for m in spec.entity_mappings] == ["patients", "appointments"]

        patients = spec.mapping_for("patients")
        assert patients.field_for("firstName").source_field == "fname"
        assert patients.field_for("dateOfBirth").transform == "normalizeDate"
        assert patients.field_for("sourceRecordId").source_field == "id"

        appointments = spec.mapping_for("appointments")
        assert appointments.field_for("canonicalPatientId").source_field == "patient_id"
        assert appointments.field_for("providerName").requires_approval is False

    def test_full_name_is_split_and_needs_approval(self):
        spec = heuristic_mapping_spec(
            {"sourceProfile": {"entities": [{"type": "clients", "fields": [{"name": "full_name"}]}]}}, "mock",
        )
        mappings = spec.entity_mappings[0].field_mappings

        assert [(m.target_field, m.transform_context["nameComponent"]) for m in mappings] == [
            ("firstName", "first"), ("lastName", "last"),
        ]
        assert all(m.requires_approval for m in mappings)

    def test_match_canonical_field(self):
        assert match_canonical_field("First_Name", CanonicalType.PATIENT) == "firstName"
        assert match_canonical_field("postal_code", CanonicalType.PATIENT) == "zipCode"
        assert match_canonical_field("favorite_color", CanonicalType.PATIENT) is None

    def test_service_fallback_matches_by_name(self):
        proposal = MigrationAssistant(offline=True).propose_service_mappings(
            [{"sourceId": "s-1", "name": "botox"}, {"sourceId": "s-2", "name": "Hydrafacial"}],
            [{"id": "t-1", "name": "Botox"}],
        )

        first, second = proposal.mappings
        assert first.action == ServiceAction.MAP_EXISTING
        assert first.target_id == "t-1"
        assert second.action == ServiceAction.CREATE_NEW
        assert proposal.needs_input == 0

    def test_discover_counts_and_issues(self):
        result = MigrationAssistant(offline=True).discover({
            "patients": [
                {"sourceId": "p-1", "email": "a@x.com"},
                {"sourceId": "p-2", "email": "A@x.com"},
                {"sourceId": "p-3"},
            ],
            "appointments": [{"sourceId": "a-1", "patientSourceId": "p-9", "providerName": "Dr. A"}],
        })

        assert result.summary == "I found 3 patients, 1 appointments in the source platform."
        descriptions = [i.description for i in result.issues]
        assert "1 patients have no email address" in descriptions
        assert any("duplicate email" in d for d in descriptions)
        assert any(i.severity == "error" for i in result.issues)

    def test_service_and_reference_issues(self):
        """Duplicate service names and dangling service references are reported."""
        issues = detect_data_issues(
            patients=[{"sourceId": "p-1", "email": "a@x.com"}],
            services=[{"sourceId": "s-1", "name": "Botox"}, {"sourceId": "s-2", "name": " botox"}],
            appointments=[{"sourceId": "a-1", "patientSourceId": "p-1", "serviceSourceId": "s-9"}],
        )

        by_type = {(i.entity_type, i.severity): i for i in issues}
        assert by_type[("service", "info")].count == 1
        assert "reference services not found" in by_type[("appointment", "warning")].description
        assert not any(i.severity == "error" for i in issues)

    def test_verification_summary_fallback(self):
        report = MigrationAssistant(offline=True).verification_summary([
            {"entity_type": "patient", "status": "imported"},
            {"entity_type": "patient", "status": "duplicate"},
            {"entity_type": "invoice", "status": "failed"},
        ])

        assert report.summary.startswith("Migration complete. 1 records imported")
        assert report.warnings == ["1 records failed to import. Review the error details for each."]
        patient = next(r for r in report.results if r["entityType"] == "patient")
        assert patient["skipped"] == 1


class TestAssistantAnswers:
    """Test suite for answers coming back from the provider."""

    def test_low_confidence_requires_approval(self):
        assistant = ScriptedAssistant(answer={
            "sourceVendor": "mock",
            "entityMappings": [{
                "sourceEntity": "patients",
                "targetEntity": "patient",
                "fieldMappings": [
                    {"sourceField": "fname", "targetField": "firstName", "confidence": 0.95},
                    {"sourceField": "nick", "targetField": "lastName", "confidence": 0.5},
                ],
            }],
        })
        spec = assistant.draft_mapping_spec({"sourceProfile": {"entities": []}}, "mock", version=3)

        assert spec.version == 3
        assert spec.drafted_by == "assistant"
        flags = {m.target_field: m.requires_approval for m in spec.entity_mappings[0].field_mappings}
        assert flags == {"firstName": False, "lastName": True}

    def test_invalid_spec_is_rejected(self):
        assistant = ScriptedAssistant(answer={
            "entityMappings": [{
                "sourceEntity": "patients",
                "targetEntity": "patient",
                "fieldMappings": [
                    {"sourceField": "x", "targetField": "firstName", "transform": "exec", "confidence": 0.9},
                ],
            }],
        })
        with pytest.raises(MappingSpecError) as exc_info:
            assistant.draft_mapping_spec({}, "mock")
        assert any("allowlist" in e["message"] for e in exc_info.value.errors)

    def test_rate_limit_falls_back(self, safe_context):
        spec = ScriptedAssistant(error=RateLimited()).draft_mapping_spec(safe_context, "mock")
        assert spec.drafted_by == "heuristic"

    def test_provider_failure_raises(self):
        with pytest.raises(AssistantError):
            ScriptedAssistant(error=RuntimeError("boom")).discover({"patients": []})

    def test_malformed_service_answer(self):
        assistant = ScriptedAssistant(answer={"mappings": [{"action": "map_existing"}]})
        with pytest.raises(AssistantError):
            assistant.propose_service_mappings([{"sourceId": "s-1", "name": "Botox"}], [])

    def test_discovery_message_has_no_records(self):
        assistant = ScriptedAssistant(answer={"summary": "All good"})
        result = assistant.discover({"patients": [{"sourceId": "p-1", "email": "zelda@example.com"}]})

        assert result.summary == "All good"
        assert "zelda@example.com" not in assistant.messages[0]

    def test_forms_never_reach_the_provider(self):
        assistant = ScriptedAssistant(error=RuntimeError("must not be called"))
        classifications = assistant.classify_forms([{"sourceId": "f-1", "templateName": "Botox Consent"}])

        assert classifications[0].classification.value == "consent"
        assert assistant.messages == []
