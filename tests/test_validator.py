"""Tests for canonical record validation."""

import pytest

from clinic_migration.models.record import CanonicalRecord
from clinic_migration.services.validator import CanonicalValidator, VCode


def make_record(entity_type, canonical_id, **data):
    return CanonicalRecord(entity_type, canonical_id, canonical_id, data)


@pytest.fixture
def validator():
    return CanonicalValidator()


@pytest.fixture
def patient():
    return make_record("patient", "pat-1", firstName="Jane", lastName="Doe", email="jane@example.com")


def codes(findings):
    return [f.code for f in findings]


class TestValidateRecord:
    """Test suite for per-record checks."""

    def test_valid_patient(self, validator, patient):
        assert validator.validate_record(patient) == ([], [])

    def test_missing_required_field(self, validator):
        errors, _ = validator.validate_record(make_record("patient", "pat-1", firstName="Jane"))

        assert codes(errors) == [VCode.MISSING_REQUIRED]
        assert errors[0].field == "lastName"

    def test_unknown_entity(self, validator):
        errors, _ = validator.validate_record(make_record("spaceship", "x-1"))
        assert codes(errors) == [VCode.UNKNOWN_ENTITY]

    def test_appointment_codes(self, validator):
        """Test that missing links and providers get their own codes."""
        errors, _ = validator.validate_record(make_record(
            "appointment", "apt-1", startTime="2024-01-10T09:00:00Z", status="booked",
        ))
        assert set(codes(errors)) == {VCode.MISSING_PATIENT_LINK, VCode.MISSING_PROVIDER}

    def test_invalid_start_time_blocks(self, validator):
        errors, _ = validator.validate_record(make_record(
            "appointment", "apt-1", canonicalPatientId="pat-1", providerName="Dr. A",
            startTime="next tuesday", status="booked",
        ))
        assert codes(errors) == [VCode.INVALID_DATE]

    def test_invalid_birth_date_only_warns(self, validator):
        errors, warnings = validator.validate_record(make_record(
            "patient", "pat-1", firstName="Jane", lastName="Doe", dateOfBirth="02/30/1990",
        ))
        assert errors == []
        assert codes(warnings) == [VCode.INVALID_DATE]

    def test_email_and_phone_warnings(self, validator):
        _, warnings = validator.validate_record(make_record(
            "patient", "pat-1", firstName="Jane", lastName="Doe", email="not-an-email", phone="123",
        ))
        assert set(codes(warnings)) == {VCode.INVALID_EMAIL, VCode.INVALID_PHONE}

    def test_chart_without_sections_warns(self, validator):
        errors, warnings = validator.validate_record(make_record(
            "chart", "ch-1", canonicalPatientId="pat-1", providerName="Dr. A", sections=[],
        ))
        assert errors == []
        assert codes(warnings) == [VCode.EMPTY_SECTIONS]

    @pytest.mark.parametrize("total", [-5, "12.00", True])
    def test_invoice_total_must_be_non_negative_number(self, validator, total):
        errors, _ = validator.validate_record(make_record(
            "invoice", "inv-1", canonicalPatientId="pat-1", total=total, lineItems=[{"name": "x"}],
        ))
        assert codes(errors) == [VCode.INVALID_AMOUNT]

    def test_invoice_without_line_items_warns(self, validator):
        errors, warnings = validator.validate_record(make_record(
            "invoice", "inv-1", canonicalPatientId="pat-1", total=0,
        ))
        assert errors == []
        assert codes(warnings) == [VCode.MISSING_LINE_ITEMS]

    def test_photo_needs_artifact_or_url(self, validator):
        errors, _ = validator.validate_record(make_record(
            "photo", "ph-1", canonicalPatientId="pat-1", filename="before.jpg",
        ))
        assert codes(errors) == [VCode.MISSING_REQUIRED]
        assert errors[0].field == "artifactKey"


class TestValidate:
    """Test suite for whole-batch validation."""

    def test_duplicate_canonical_ids(self, validator, patient):
        report = validator.validate_batch([patient, patient])

        assert report["invalidRecords"] == 1
        assert report["errorsByCode"] == {VCode.DUPLICATE_CANONICAL_ID: 1}

    def test_orphaned_reference(self, validator, patient):
        appointment = make_record(
            "appointment", "apt-1", canonicalPatientId="pat-missing", providerName="Dr. A",
            startTime="2024-01-10T09:00:00Z", status="booked",
        )
        outcome = validator.validate([patient, appointment])

        assert not outcome.passed
        assert codes(outcome.referential_errors) == [VCode.ORPHANED_REFERENCE]
        assert outcome.summary == "0 invalid records, 1 referential errors"

    def test_resolver_satisfies_reference(self, validator):
        """Test that a patient loaded by an earlier run resolves through the entity map."""
        appointment = make_record(
            "appointment", "apt-1", canonicalPatientId="pat-old", providerName="Dr. A",
            startTime="2024-01-10T09:00", status="booked",
        )
        outcome = validator.validate([appointment], resolver=lambda t, cid: (t, cid) == ("patient", "pat-old"))
        assert outcome.passed

    def test_sampling_packet_has_counts_only(self, validator, patient):
        packet = validator.validate([patient]).sampling_packet

        assert packet["entityDistribution"] == {"patient": 1}
        assert packet["requiredFieldPresence"]["patient"]["email"] == 1
        assert "Jane" not in str(packet)
