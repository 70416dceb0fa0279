"""Count reconciliation and the final migration report."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.migration import MigrationRun
from ..models.record import LogStatus, MigrationLogEntry, StagingStatus
from ..models.schema import EntityType, MappingSpec
from ..storage.repository import MigrationRepository

logger = logging.getLogger(__name__)


def _percent(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole else 0


# A record logged more than once (retries, resumes) counts once, by its best outcome
_OUTCOME_RANK = {
    LogStatus.IMPORTED: 3,
    LogStatus.DUPLICATE: 3,
    LogStatus.FAILED: 2,
    LogStatus.SKIPPED: 1,
}


def _outcomes(logs: List[MigrationLogEntry]) -> Dict[str, LogStatus]:
    best: Dict[str, LogStatus] = {}
    for entry in logs:
        current = best.get(entry.source_id)
        if current is None or _OUTCOME_RANK[entry.status] > _OUTCOME_RANK[current]:
            best[entry.source_id] = entry.status
    return best


@dataclass
class EntityReconciliation:
    """Counts for one source entity, from ingest through promotion."""
    entity_type: str
    source_count: int = 0
    staged_count: int = 0
    promoted_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0

    @property
    def match_rate(self) -> int:
        return _percent(self.staged_count, self.source_count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entityType": self.entity_type,
            "sourceCount": self.source_count,
            "stagedCount": self.staged_count,
            "promotedCount": self.promoted_count,
            "failedCount": self.failed_count,
            "skippedCount": self.skipped_count,
            "matchRate": self.match_rate,
        }


@dataclass
class ReconciliationReport:
    run_id: str
    entities: List[EntityReconciliation] = field(default_factory=list)
    pending_reviews: int = 0
    verification: Optional[Dict[str, Any]] = None
    completed_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def total_source(self) -> int:
        return sum(e.source_count for e in self.entities)

    @property
    def total_staged(self) -> int:
        return sum(e.staged_count for e in self.entities)

    @property
    def total_promoted(self) -> int:
        return sum(e.promoted_count for e in self.entities)

    @property
    def total_failed(self) -> int:
        return sum(e.failed_count for e in self.entities)

    @property
    def overall_completeness(self) -> int:
        return _percent(self.total_promoted, self.total_source)

    @property
    def unresolved_exceptions(self) -> int:
        return self.total_failed + self.pending_reviews

    @property
    def status(self) -> str:
        return "complete" if self.unresolved_exceptions == 0 else "partial"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "completedAt": self.completed_at.isoformat(),
            "reconciliation": [e.to_dict() for e in self.entities],
            "totalSourceRecords": self.total_source,
            "totalStagedRecords": self.total_staged,
            "totalPromotedRecords": self.total_promoted,
            "totalFailedRecords": self.total_failed,
            "overallCompleteness": self.overall_completeness,
            "pendingReviews": self.pending_reviews,
            "unresolvedExceptions": self.unresolved_exceptions,
            "status": self.status,
            "verification": self.verification,
        }


class Reconciler:
    """
    Compares source counts with the staging ledger and the migration log.

    One entry is produced per source entity: every artifact the mapping spec
    covers, plus services, which are loaded through service mappings rather
    than the staging ledger.
    """

    def __init__(self, repository: MigrationRepository):
        self.repository = repository

    def reconcile(self, run: MigrationRun, spec: Optional[MappingSpec] = None) -> ReconciliationReport:
        report = ReconciliationReport(run_id=run.id, pending_reviews=len(run.pending_reviews))

        source_entities = [m.source_entity for m in spec.entity_mappings] if spec else []
        for entry in self.repository.staging_entries(run.id):
            if entry.source_entity and entry.source_entity not in source_entities:
                source_entities.append(entry.source_entity)

        transform_logs = [e for e in self.repository.logs(run.id) if e.phase == "transform"]
        for source_entity in source_entities:
            report.entities.append(self._reconcile_entity(run, source_entity, transform_logs))

        if EntityType.SERVICES.value in run.entity_counts:
            report.entities.append(self._reconcile_services(run))

        logger.info(
            f"Reconciled run {run.id}: {report.total_promoted}/{report.total_source} promoted, "
            f"{report.unresolved_exceptions} unresolved, status {report.status}"
        )
        return report

    def _reconcile_entity(
        self,
        run: MigrationRun,
        source_entity: str,
        transform_logs: List[MigrationLogEntry],
    ) -> EntityReconciliation:
        staged = [e for e in self.repository.staging_entries(run.id) if e.source_entity == source_entity]
        staged_ids = {e.source_record_id for e in staged}
        outcomes = {
            source_id: status
            for source_id, status in _outcomes([e for e in transform_logs if e.entity_type == source_entity]).items()
            if source_id not in staged_ids
        }

        result = EntityReconciliation(source_entity)
        result.staged_count = len(staged)
        result.promoted_count = sum(1 for e in staged if e.status == StagingStatus.PROMOTED)
        result.failed_count = (
            sum(1 for e in staged if e.status == StagingStatus.FAILED)
            + sum(1 for s in outcomes.values() if s == LogStatus.FAILED)
        )
        result.skipped_count = (
            sum(1 for e in staged if e.status == StagingStatus.SKIPPED)
            + sum(1 for s in outcomes.values() if s == LogStatus.SKIPPED)
        )
        result.source_count = run.entity_counts.get(source_entity, result.staged_count + len(outcomes))
        return result

    def _reconcile_services(self, run: MigrationRun) -> EntityReconciliation:
        outcomes = _outcomes([e for e in self.repository.logs(run.id, entity_type="service") if e.phase == "load"])
        result = EntityReconciliation(EntityType.SERVICES.value)
        result.source_count = run.entity_counts[EntityType.SERVICES.value]
        result.staged_count = len(outcomes)
        result.promoted_count = sum(1 for s in outcomes.values() if s in (LogStatus.IMPORTED, LogStatus.DUPLICATE))
        result.failed_count = sum(1 for s in outcomes.values() if s == LogStatus.FAILED)
        result.skipped_count = sum(1 for s in outcomes.values() if s == LogStatus.SKIPPED)
        return result
