"""Tests for staging and promotion into the target store."""

import pytest

from clinic_migration.loaders.memory_loader import InMemoryTargetStore
from clinic_migration.loaders.promoter import PATIENT_NOT_MAPPED, PROMOTE_FAILED, Promoter
from clinic_migration.models.migration import MigrationRun
from clinic_migration.models.record import CanonicalRecord, LogStatus, StagingStatus
from clinic_migration.models.schema import ServiceAction, ServiceMapping


def canonical(entity_type, canonical_id, source_id, data, checksum=None, source_entity=None):
    return CanonicalRecord(
        entity_type=entity_type,
        canonical_id=canonical_id,
        source_record_id=source_id,
        data=data,
        checksum=checksum or f"sum-{source_id}",
        source_entity=source_entity or f"{entity_type}s",
    )


def patient(source_id, first="Ann", last="Lee", **extra):
    data = {"sourceRecordId": source_id, "firstName": first, "lastName": last}
    data.update(extra)
    return canonical("patient", f"can-{source_id}", source_id, data)


def appointment(source_id, patient_canonical_id, **extra):
    data = {
        "sourceRecordId": source_id,
        "canonicalPatientId": patient_canonical_id,
        "providerName": "Dr. Kim",
        "startTime": "2025-06-15T10:00:00",
        "status": "completed",
    }
    data.update(extra)
    return canonical("appointment", f"can-{source_id}", source_id, data)


class FailingTargetStore(InMemoryTargetStore):
    """Target store rejecting one entity type."""

    def __init__(self, failing):
        super().__init__()
        self.failing = failing

    def create(self, entity_type, clinic_id, data):
        if entity_type == self.failing:
            raise RuntimeError(f"{entity_type} write rejected")
        return super().create(entity_type, clinic_id, data)


@pytest.fixture
def run(repository):
    return repository.create_run(MigrationRun(clinic_id="clinic-1", source_vendor="mock"))


@pytest.fixture
def promoter(run, repository, target_store):
    return Promoter(run, repository, target_store, batch_size=2)


class TestPromotion:
    """Test suite for promoting staged records."""

    def test_references_are_resolved_to_target_ids(self, promoter, repository, target_store, run):
        promoter.apply_service_mappings([
            ServiceMapping("s-1", "Botox", ServiceAction.CREATE_NEW, 0.9, "New service"),
        ])
        promoter.stage([patient("p-1"), appointment("a-1", "can-p-1", serviceSourceId="s-1")])

        outcome = promoter.promote()

        assert outcome.results["patient"].imported == 1
        assert outcome.results["appointment"].imported == 1
        patient_id = repository.get_target_id(run.id, "patient", "p-1")
        service_id = repository.get_target_id(run.id, "service", "s-1")
        written = target_store.calls[-1]
        assert written[0] == "appointment"
        assert written[1]["patientId"] == patient_id
        assert written[1]["serviceId"] == service_id
        assert "canonicalPatientId" not in written[1]

    def test_promotion_is_idempotent(self, promoter, repository, target_store, run):
        """Test that re-staging and re-promoting never writes a record twice."""
        promoter.stage([patient("p-1"), patient("p-2", first="Bo")])
        promoter.promote()

        promoter.stage([patient("p-1"), patient("p-2", first="Bo")])
        outcome = promoter.promote()

        assert outcome.results == {}
        assert target_store.count("patient") == 2

        changed = patient("p-1", first="Annie")
        changed.checksum = "sum-changed"
        promoter.stage([changed])
        promoter.promote()

        assert target_store.count("patient") == 2
        assert len(repository.logs(run.id, entity_type="patient")) == 2

    def test_unmapped_patient_reference_is_skipped(self, promoter, repository, run, target_store):
        promoter.stage([appointment("a-1", "can-missing")])

        outcome = promoter.promote()

        assert outcome.results["appointment"].skipped == 1
        entry = repository.staging_entries(run.id, "appointment")[0]
        assert entry.status == StagingStatus.SKIPPED
        assert entry.error_code == PATIENT_NOT_MAPPED
        assert repository.logs(run.id, status=LogStatus.SKIPPED)[0].reasoning == "Patient can-missing not found in mapping"
        assert target_store.count("appointment") == 0

    def test_failed_writes_are_retried(self, run, repository):
        failing = FailingTargetStore("appointment")
        first = Promoter(run, repository, failing)
        first.stage([patient("p-1"), appointment("a-1", "can-p-1")])

        outcome = first.promote()

        assert outcome.results["appointment"].failed == 1
        entry = repository.staging_entries(run.id, "appointment")[0]
        assert entry.status == StagingStatus.FAILED
        assert entry.error_code == PROMOTE_FAILED

        failing.failing = None
        retry = Promoter(run, repository, failing).promote()

        assert retry.results["appointment"].imported == 1
        assert "patient" not in retry.results
        assert failing.count("appointment") == 1

    def test_pause_between_batches(self, run, repository, target_store):
        promoter = Promoter(run, repository, target_store, should_pause=lambda: True)
        promoter.stage([patient("p-1")])

        outcome = promoter.promote()

        assert outcome.paused
        assert target_store.count("patient") == 0

    def test_stage_sets_progress(self, promoter, run):
        promoter.stage([patient("p-1"), patient("p-2"), appointment("a-1", "can-p-1")])

        assert run.progress["patient"].staged == 2
        assert run.progress["appointment"].staged == 1


class TestPatientDuplicates:
    """Test suite for duplicate handling during patient promotion."""

    def test_exact_email_maps_to_existing(self, promoter, repository, target_store, run):
        existing = target_store.seed("patient", "clinic-1", {"firstName": "Ann", "email": "ann@x.com"})
        promoter.stage([patient("p-1", email="ANN@x.com")])

        outcome = promoter.promote()

        assert outcome.results["patient"].duplicate == 1
        assert repository.get_target_id(run.id, "patient", "p-1") == existing
        assert target_store.calls == []

    def test_fuzzy_match_is_queued_for_review(self, promoter, target_store, run):
        existing = target_store.seed(
            "patient", "clinic-1",
            {"firstName": "Sarah", "lastName": "Johnson", "dateOfBirth": "1985-03-15"},
        )
        promoter.stage([patient("p-1", first="Sara", last="Johnson", dateOfBirth="1985-03-15")])

        promoter.promote()

        assert target_store.count("patient") == 2
        review = run.pending_reviews[0]
        assert review.source_id == "p-1"
        assert review.candidate_target_id == existing
        assert review.created_target_id != existing

    def test_fuzzy_match_can_merge(self, run, repository, target_store):
        existing = target_store.seed(
            "patient", "clinic-1",
            {"firstName": "Sarah", "lastName": "Johnson", "dateOfBirth": "1985-03-15"},
        )
        promoter = Promoter(run, repository, target_store, fuzzy_duplicate_action="merge")
        promoter.stage([patient("p-1", first="Sara", last="Johnson", dateOfBirth="1985-03-15")])

        promoter.promote()

        assert repository.get_target_id(run.id, "patient", "p-1") == existing
        assert run.pending_reviews == []


class TestServiceMappings:
    """Test suite for service mapping application."""

    def test_actions(self, promoter, repository, target_store, run):
        result = promoter.apply_service_mappings([
            ServiceMapping("s-1", "Botox", ServiceAction.MAP_EXISTING, 0.95, "Same name", target_id="svc-9"),
            ServiceMapping("s-2", "Peel", ServiceAction.CREATE_NEW, 0.9, "No match"),
            ServiceMapping("s-3", "Old Promo", ServiceAction.SKIP, 0.8, "Inactive"),
            ServiceMapping("s-4", "Mystery", ServiceAction.NEEDS_INPUT, 0.3, "Unclear"),
        ])

        assert (result.duplicate, result.imported, result.skipped) == (1, 1, 2)
        assert repository.get_target_id(run.id, "service", "s-1") == "svc-9"
        assert target_store.calls == [("service", {"name": "Peel", "sourceRecordId": "s-2"})]
        assert repository.get_target_id(run.id, "service", "s-3") is None

    def test_reapplying_skips_migrated_services(self, promoter, target_store):
        mappings = [ServiceMapping("s-2", "Peel", ServiceAction.CREATE_NEW, 0.9, "No match")]
        promoter.apply_service_mappings(mappings)

        result = promoter.apply_service_mappings(mappings)

        assert result.skipped == 1
        assert target_store.count("service") == 1
