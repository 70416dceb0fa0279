"""Staging and promotion of canonical records into the target store."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from datetime import datetime

from .base import LoadResult, TargetStore
from ..models.migration import DuplicateReview, MigrationRun
from ..models.record import (
    CanonicalRecord,
    LogStatus,
    MigrationLogEntry,
    StagingEntry,
    StagingStatus,
)
from ..models.schema import CanonicalType, PROMOTION_ORDER, ServiceAction, ServiceMapping
from ..services.duplicate_detector import DuplicateDetector
from ..storage.repository import MigrationRepository

logger = logging.getLogger(__name__)

PROMOTE_FAILED = "PROMOTE_FAILED"
PATIENT_NOT_MAPPED = "PATIENT_NOT_MAPPED"
SERVICE_ENTITY = "service"

# Canonical reference field -> (referenced entity type, target payload field)
REFERENCE_FIELDS = {
    "canonicalPatientId": (CanonicalType.PATIENT.value, "patientId"),
    "canonicalAppointmentId": (CanonicalType.APPOINTMENT.value, "appointmentId"),
}


class UnresolvedReferenceError(Exception):
    """A dependent record points at a patient that was never promoted."""


@dataclass
class PromotionOutcome:
    results: Dict[str, LoadResult] = field(default_factory=dict)
    paused: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": {k: v.to_dict() for k, v in self.results.items()},
            "paused": self.paused,
        }


class Promoter:
    """
    Loads canonical records into the target store.

    Supports:
    - Staging ledger upserts keyed on (run, entity type, canonical id)
    - Service mappings: map to an existing service, create, or skip
    - Patient duplicate detection with an operator review tier
    - Reference resolution through the entity map's canonical index
    - Batch-boundary progress saves and pause checks

    Promotion is idempotent: a source record already in the entity map is
    never written to the target store again.
    """

    def __init__(
        self,
        run: MigrationRun,
        repository: MigrationRepository,
        target_store: TargetStore,
        batch_size: int = 50,
        fuzzy_duplicate_action: str = "review",
        fuzzy_prefix_length: int = 3,
        should_pause: Optional[Callable[[], bool]] = None,
    ):
        """
        Initialize the promoter.

        Args:
            run: Run being loaded
            repository: Staging ledger, entity map and migration log
            target_store: Destination of promoted records
            batch_size: Records per batch; progress is saved after each
            fuzzy_duplicate_action: ``review`` creates the patient and queues a review,
                ``merge`` maps it onto the candidate
            fuzzy_prefix_length: First-name prefix length for the fuzzy tier
            should_pause: Polled between batches
        """
        self.run = run
        self.repository = repository
        self.target_store = target_store
        self.batch_size = max(1, batch_size)
        self.fuzzy_duplicate_action = fuzzy_duplicate_action
        self.detector = DuplicateDetector(target_store, fuzzy_prefix_length)
        self._should_pause = should_pause or (lambda: False)

    def stage(self, records: List[CanonicalRecord]) -> int:
        """Upsert canonical records into the staging ledger. Returns the number staged."""
        for record in records:
            self.repository.stage(StagingEntry(
                run_id=self.run.id,
                entity_type=record.entity_type,
                canonical_id=record.canonical_id,
                source_record_id=record.source_record_id,
                payload=record.data,
                checksum=record.checksum,
                source_entity=record.source_entity,
            ))

        for canonical_type in PROMOTION_ORDER:
            entries = self.repository.staging_entries(self.run.id, canonical_type.value)
            if entries:
                self.run.progress_for(canonical_type.value).staged = len(entries)
        logger.info(f"Staged {len(records)} canonical records for run {self.run.id}")
        return len(records)

    def apply_service_mappings(self, mappings: List[ServiceMapping]) -> LoadResult:
        """Resolve every source service to a target service id, or skip it."""
        result = LoadResult(entity=SERVICE_ENTITY, started_at=datetime.utcnow())

        for mapping in mappings:
            result.total_attempted += 1
            if self.repository.get_target_id(self.run.id, SERVICE_ENTITY, mapping.source_id):
                self._log(SERVICE_ENTITY, mapping.source_id, LogStatus.SKIPPED, reasoning="Already migrated")
                result.skipped += 1
                continue

            try:
                if mapping.action == ServiceAction.MAP_EXISTING and mapping.target_id:
                    self.repository.upsert_entity_map(self.run.id, SERVICE_ENTITY, mapping.source_id, mapping.target_id)
                    self._log(
                        SERVICE_ENTITY, mapping.source_id, LogStatus.DUPLICATE,
                        target_id=mapping.target_id, reasoning=mapping.reasoning,
                    )
                    result.duplicate += 1
                elif mapping.action == ServiceAction.CREATE_NEW:
                    target_id = self.target_store.create_service(
                        self.run.clinic_id,
                        {"name": mapping.source_name, "sourceRecordId": mapping.source_id},
                    )
                    self.repository.upsert_entity_map(self.run.id, SERVICE_ENTITY, mapping.source_id, target_id)
                    self._log(
                        SERVICE_ENTITY, mapping.source_id, LogStatus.IMPORTED,
                        target_id=target_id, reasoning=mapping.reasoning,
                    )
                    result.imported += 1
                    result.created_ids.append(target_id)
                else:
                    self._log(
                        SERVICE_ENTITY, mapping.source_id, LogStatus.SKIPPED,
                        reasoning=f"Service mapping action {mapping.action.value}: {mapping.reasoning}",
                    )
                    result.skipped += 1
            except Exception as e:
                logger.error(f"Failed to load service {mapping.source_id}: {e}")
                self._log(SERVICE_ENTITY, mapping.source_id, LogStatus.FAILED, error_message=str(e))
                result.failed += 1
                result.errors.append({"record_id": mapping.source_id, "error": str(e)})

        result.completed_at = datetime.utcnow()
        return result

    def promote(self) -> PromotionOutcome:
        """Promote staged records in dependency order."""
        outcome = PromotionOutcome()

        for canonical_type in PROMOTION_ORDER:
            entity = canonical_type.value
            entries = self.repository.staging_entries(
                self.run.id, entity, statuses=(StagingStatus.STAGED, StagingStatus.FAILED),
            )
            if not entries:
                continue

            logger.info(f"Promoting {len(entries)} {entity} records...")
            result = LoadResult(entity=entity, started_at=datetime.utcnow())
            outcome.results[entity] = result

            for i in range(0, len(entries), self.batch_size):
                if self._should_pause():
                    logger.info(f"Load paused for run {self.run.id} before {entity} batch {i // self.batch_size + 1}")
                    self.repository.save_run(self.run)
                    result.completed_at = datetime.utcnow()
                    outcome.paused = True
                    return outcome

                for entry in entries[i:i + self.batch_size]:
                    self._promote_entry(entry, result)
                self.repository.save_run(self.run)

            result.completed_at = datetime.utcnow()
            logger.info(
                f"Promoted {entity}: {result.imported} imported, {result.duplicate} duplicate, "
                f"{result.skipped} skipped, {result.failed} failed"
            )

        return outcome

    def _promote_entry(self, entry: StagingEntry, result: LoadResult) -> None:
        result.total_attempted += 1
        progress = self.run.progress_for(entry.entity_type)

        try:
            if entry.entity_type == CanonicalType.PATIENT.value:
                status, target_id, reasoning = self._promote_patient(entry)
            else:
                status, target_id, reasoning = self._promote_dependent(entry)
        except UnresolvedReferenceError as e:
            entry.status = StagingStatus.SKIPPED
            entry.error_code = PATIENT_NOT_MAPPED
            self.repository.update_staging(entry)
            self._log(entry.entity_type, entry.source_record_id, LogStatus.SKIPPED, reasoning=str(e), raw_data=entry.payload)
            progress.increment(LogStatus.SKIPPED.value)
            result.skipped += 1
            return
        except Exception as e:
            logger.error(f"Failed to promote {entry.entity_type} {entry.source_record_id}: {e}")
            entry.status = StagingStatus.FAILED
            entry.error_code = PROMOTE_FAILED
            self.repository.update_staging(entry)
            self._log(
                entry.entity_type, entry.source_record_id, LogStatus.FAILED,
                error_message=str(e), raw_data=entry.payload,
            )
            progress.increment(LogStatus.FAILED.value)
            result.failed += 1
            result.errors.append({"record_id": entry.source_record_id, "error": str(e), "error_code": PROMOTE_FAILED})
            return

        entry.status = StagingStatus.PROMOTED
        entry.error_code = None
        entry.target_id = target_id
        self.repository.update_staging(entry)
        if status is None:
            return

        self._log(entry.entity_type, entry.source_record_id, status, target_id=target_id, reasoning=reasoning)
        progress.increment(status.value)
        if status == LogStatus.IMPORTED:
            result.imported += 1
            result.created_ids.append(target_id)
        else:
            result.duplicate += 1

    def _promote_patient(self, entry: StagingEntry) -> Tuple[Optional[LogStatus], str, Optional[str]]:
        existing = self.repository.get_target_id(self.run.id, entry.entity_type, entry.source_record_id)
        if existing:
            logger.debug(f"Patient {entry.source_record_id} already mapped to {existing}")
            return None, existing, None

        match = self.detector.detect(self.run.clinic_id, entry.payload)
        if match.is_duplicate and not (match.requires_review and self.fuzzy_duplicate_action == "review"):
            self._map(entry, match.existing_target_id)
            return LogStatus.DUPLICATE, match.existing_target_id, match.reasoning

        target_id = self.target_store.create_patient(self.run.clinic_id, self._payload(entry))
        self._map(entry, target_id)

        if match.is_duplicate:
            self.run.duplicate_reviews.append(DuplicateReview(
                source_id=entry.source_record_id,
                candidate_target_id=match.existing_target_id,
                created_target_id=target_id,
                reasoning=match.reasoning,
            ))
            logger.info(f"Patient {entry.source_record_id} queued for duplicate review")
            return LogStatus.IMPORTED, target_id, f"Created; possible duplicate queued for review. {match.reasoning}"

        return LogStatus.IMPORTED, target_id, match.reasoning

    def _promote_dependent(self, entry: StagingEntry) -> Tuple[Optional[LogStatus], str, Optional[str]]:
        existing = self.repository.get_target_id(self.run.id, entry.entity_type, entry.source_record_id)
        if existing:
            return None, existing, None

        patient_ref = entry.payload.get("canonicalPatientId")
        if patient_ref and not self.repository.find_by_canonical(self.run.id, CanonicalType.PATIENT.value, patient_ref):
            raise UnresolvedReferenceError(f"Patient {patient_ref} not found in mapping")

        target_id = self.target_store.create(entry.entity_type, self.run.clinic_id, self._payload(entry))
        self._map(entry, target_id)
        return LogStatus.IMPORTED, target_id, None

    def _payload(self, entry: StagingEntry) -> Dict[str, Any]:
        """Replace canonical references with target ids."""
        payload = {k: v for k, v in entry.payload.items() if k not in REFERENCE_FIELDS}
        for ref_field, (ref_type, target_field) in REFERENCE_FIELDS.items():
            canonical_id = entry.payload.get(ref_field)
            if canonical_id:
                target_id = self.repository.find_by_canonical(self.run.id, ref_type, canonical_id)
                if target_id:
                    payload[target_field] = target_id

        service_source_id = entry.payload.get("serviceSourceId")
        if service_source_id:
            service_id = self.repository.get_target_id(self.run.id, SERVICE_ENTITY, str(service_source_id))
            if service_id:
                payload["serviceId"] = service_id
        return payload

    def _map(self, entry: StagingEntry, target_id: str) -> None:
        self.repository.upsert_entity_map(
            self.run.id, entry.entity_type, entry.source_record_id, target_id, canonical_id=entry.canonical_id,
        )

    def _log(
        self,
        entity_type: str,
        source_id: str,
        status: LogStatus,
        target_id: Optional[str] = None,
        reasoning: Optional[str] = None,
        error_message: Optional[str] = None,
        raw_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.repository.append_log(MigrationLogEntry(
            run_id=self.run.id,
            entity_type=entity_type,
            source_id=source_id,
            status=status,
            target_id=target_id,
            reasoning=reasoning,
            error_message=error_message,
            raw_data=raw_data,
        ))
