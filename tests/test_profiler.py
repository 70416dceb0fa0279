"""Tests for source profiling.

These tests verify that the profiler:
- Parses CSV and JSON artifacts
- Infers field types from values
- Classifies PHI fields by name
- Finds key candidates and relationship hints
"""

import json

import pytest

from clinic_migration.services.profiler import (
    guess_entity_type,
    infer_type,
    is_phi_field,
    load_records,
    profile_artifacts,
)


@pytest.fixture
def clients_csv():
    return (
        "id,first_name,last_name,email,phone,dob,status\n"
        "c-1,Jane,Doe,jane@example.com,555-123-4567,1990-04-02,active\n"
        "c-2,John,Roe,john@example.com,555-987-6543,1985-03-20,active\n"
        "c-3,Ann,Poe,,555-111-2222,1979-12-01,inactive\n"
        "\n"
    ).encode("utf-8")


@pytest.fixture
def appointments_json():
    return json.dumps({"data": [
        {"sourceId": "a-1", "patientSourceId": "c-1", "status": "booked"},
        {"sourceId": "a-2", "patientSourceId": "c-2", "status": "completed"},
    ]}).encode("utf-8")


class TestHelpers:
    """Test suite for the profiling helpers."""

    @pytest.mark.parametrize("key,expected", [
        ("clients.csv", "patients"),
        ("exports/Bookings.json", "appointments"),
        ("treatments.csv", "services"),
        ("unknown_things.csv", "unknown_things"),
    ])
    def test_guess_entity_type(self, key, expected):
        assert guess_entity_type(key) == expected

    @pytest.mark.parametrize("name,expected", [
        ("firstName", True),
        ("last_name", True),
        ("dateOfBirth", True),
        ("email", True),
        ("homeAddress", True),
        ("status", False),
        ("price", False),
    ])
    def test_is_phi_field(self, name, expected):
        assert is_phi_field(name) is expected

    @pytest.mark.parametrize("values,expected", [
        (["a@b.co", "c@d.org"], "email"),
        (["2024-01-01", "3/4/2024"], "date"),
        (["1", "2.5", "-3"], "number"),
        (["", ""], "unknown"),
        (["a", "b", "a", "b", "a"], "enum"),
        (["alpha", "beta"], "string"),
    ])
    def test_infer_type(self, values, expected):
        assert infer_type(values) == expected

    def test_load_records_skips_blank_csv_rows(self, clients_csv):
        records = load_records("clients.csv", clients_csv)

        assert len(records) == 3
        assert records[2]["email"] == ""

    def test_load_records_unwraps_json(self, appointments_json):
        assert len(load_records("appointments.json", appointments_json)) == 2

    def test_load_records_rejects_scalar_json(self):
        with pytest.raises(ValueError):
            load_records("x.json", b"42")

    def test_semicolon_delimited_csv(self):
        records = load_records("services.csv", b"name;price\nBotox;12\nFiller;600\n")
        assert records == [{"name": "Botox", "price": "12"}, {"name": "Filler", "price": "600"}]


class TestProfileArtifacts:
    """Test suite for whole-source profiles."""

    def test_profile(self, clients_csv, appointments_json):
        profile = profile_artifacts([
            ("clients.csv", clients_csv),
            ("appointments.json", appointments_json),
            ("_profile.json", b"{}"),
            ("photos/ph-1", b"\x89PNG"),
        ])

        assert [e.entity_type for e in profile.entities] == ["patients", "appointments"]

        patients = profile.entity("patients")
        assert patients.record_count == 3
        assert "id" in patients.key_candidates
        email = next(f for f in patients.fields if f.name == "email")
        assert email.is_phi
        assert email.inferred_type == "email"
        assert email.null_rate == pytest.approx(0.33)
        assert email.sample_distribution == "2/3 non-null, 2 unique"
        assert next(f for f in patients.fields if f.name == "dob").inferred_type == "date"
        assert next(f for f in patients.fields if f.name == "phone").inferred_type == "phone"

        appointments = profile.entity("appointments")
        hint = next(h for h in appointments.relationship_hints if h.field == "patientSourceId")
        assert hint.target_entity == "patients"

    def test_phi_classification_map(self, clients_csv):
        profile = profile_artifacts([("clients.csv", clients_csv)])
        assert profile.phi_classification["patients"]["status"] is False
        assert profile.phi_classification["patients"]["first_name"] is True

    def test_unreadable_artifact_is_skipped(self):
        profile = profile_artifacts([("broken.json", b"{not json")])
        assert profile.entities == []
