"""Tests for duplicate patient detection.

These tests verify that the detector:
- Matches exact emails case-insensitively
- Matches phones after E.164 normalization
- Flags fuzzy name and date of birth matches for review
- Reports no match otherwise
"""

import pytest

from clinic_migration.services.duplicate_detector import DuplicateDetector, MatchType


@pytest.fixture
def existing_patient(target_store):
    return target_store.seed("patient", "clinic-1", {
        "firstName": "Jonathan",
        "lastName": "Doe",
        "email": "Jon.Doe@Example.com",
        "phone": "(555) 123-4567",
        "dateOfBirth": "1985-03-20",
    })


class TestDuplicateDetector:
    """Test suite for the match tiers."""

    def test_exact_email_match(self, target_store, existing_patient):
        """Test that email matching ignores case and whitespace."""
        detector = DuplicateDetector(target_store)
        result = detector.detect("clinic-1", {"email": " jon.doe@example.com ", "firstName": "X"})

        assert result.is_duplicate
        assert result.match_type == MatchType.EXACT_EMAIL
        assert result.existing_target_id == existing_patient
        assert not result.requires_review

    def test_exact_phone_match(self, target_store, existing_patient):
        """Test that differently formatted phones match after normalization."""
        detector = DuplicateDetector(target_store)
        result = detector.detect("clinic-1", {"phone": "+1 555.123.4567"})

        assert result.is_duplicate
        assert result.match_type == MatchType.EXACT_PHONE
        assert "+15551234567" in result.reasoning

    def test_fuzzy_match_requires_review(self, target_store, existing_patient):
        """Test that a shared first-name prefix, last name and DOB is a fuzzy match."""
        detector = DuplicateDetector(target_store)
        result = detector.detect("clinic-1", {
            "firstName": "Jon",
            "lastName": "doe",
            "dateOfBirth": "03/20/1985",
        })

        assert result.is_duplicate
        assert result.match_type == MatchType.FUZZY_NAME_DOB
        assert result.requires_review

    def test_fuzzy_match_needs_same_dob(self, target_store, existing_patient):
        detector = DuplicateDetector(target_store)
        result = detector.detect("clinic-1", {
            "firstName": "Jonathan",
            "lastName": "Doe",
            "dateOfBirth": "1985-03-21",
        })

        assert not result.is_duplicate

    def test_fuzzy_disabled(self, target_store, existing_patient):
        detector = DuplicateDetector(target_store, fuzzy_enabled=False)
        result = detector.detect("clinic-1", {
            "firstName": "Jonathan",
            "lastName": "Doe",
            "dateOfBirth": "1985-03-20",
        })

        assert not result.is_duplicate

    def test_other_clinic_never_matches(self, target_store, existing_patient):
        """Test that candidates are scoped to the clinic."""
        detector = DuplicateDetector(target_store)
        result = detector.detect("clinic-2", {"email": "jon.doe@example.com"})

        assert not result.is_duplicate
        assert result.reasoning == "No matching patient found"
