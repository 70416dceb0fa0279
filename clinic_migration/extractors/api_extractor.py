"""Provider API ingest strategy."""

import json
import logging
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime

from .base import BaseExtractor, ExtractionResult
from ..errors import UnsupportedEntityError
from ..models.migration import IngestStrategyType, MigrationRun
from ..models.record import FetchOptions
from ..models.schema import EntityType
from ..providers.base import BaseProvider
from ..storage.artifact_store import ArtifactStore
from ..storage.repository import MigrationRepository

logger = logging.getLogger(__name__)

# Fetch order for top-level entity types; patients first as the join key
TOP_LEVEL_ORDER = [
    EntityType.PATIENTS,
    EntityType.SERVICES,
    EntityType.APPOINTMENTS,
    EntityType.INVOICES,
    EntityType.PHOTOS,
    EntityType.CHARTS,
    EntityType.FORMS,
    EntityType.DOCUMENTS,
]


def _to_wire(record: Any) -> Dict[str, Any]:
    return record.to_dict() if hasattr(record, "to_dict") else dict(record)


class APIExtractor(BaseExtractor):
    """
    Ingests through a read-only provider.

    Supports:
    - Cursor pagination with a checkpoint saved after every page
    - Resume from the saved cursor, merging into the partial artifact
    - Per-patient entity types, iterated over every ingested patient
    - Form content embedded as ``fields`` on each form record
    - Cooperative pause between pages
    """

    strategy = IngestStrategyType.API

    def __init__(
        self,
        run: MigrationRun,
        artifact_store: ArtifactStore,
        provider: BaseProvider,
        credentials: Dict[str, Any],
        repository: Optional[MigrationRepository] = None,
        should_pause: Optional[Callable[[], bool]] = None,
        fetch_limit: int = 50,
    ):
        """
        Initialize the API extractor.

        Args:
            run: Run being ingested
            artifact_store: Where artifacts go
            provider: Source platform provider
            credentials: Decrypted credentials, held only for the duration of the phase
            repository: Used to persist checkpoints
            should_pause: Polled between pages
            fetch_limit: Page size
        """
        super().__init__(run, artifact_store, repository, should_pause)
        self.provider = provider
        self.credentials = credentials
        self.fetch_limit = fetch_limit

    def plan(self) -> Dict[str, List[EntityType]]:
        """Split the provider's capabilities into top-level and per-patient entity types."""
        available = [e for e in TOP_LEVEL_ORDER if self.provider.supports(e)]
        per_patient = [e for e in available if e in self.provider.per_patient and e != EntityType.PATIENTS]
        top_level = [e for e in available if e not in per_patient]
        return {"top_level": top_level, "per_patient": per_patient}

    def extract(self) -> ExtractionResult:
        """Fetch every declared entity type into ``<entity>.json`` artifacts."""
        started_at = datetime.utcnow()
        plan = self.plan()
        logger.info(
            f"API ingest from {self.provider.source}: "
            f"{[e.value for e in plan['top_level']]} top-level, "
            f"{[e.value for e in plan['per_patient']]} per patient"
        )

        for entity_type in plan["top_level"]:
            if not self._ingest_entity(entity_type):
                return self._paused(started_at)

        if plan["per_patient"]:
            patient_ids = [r["sourceId"] for r in self._load_partial(EntityType.PATIENTS).values()]
            for entity_type in plan["per_patient"]:
                if not self._ingest_per_patient(entity_type, patient_ids):
                    return self._paused(started_at)

        result = self.get_extraction_result(self.run.entity_counts, started_at)
        logger.info(f"API ingest complete: {result.entity_counts}")
        return result

    def _paused(self, started_at: datetime) -> ExtractionResult:
        result = self.get_extraction_result(self.run.entity_counts, started_at)
        result.paused = True
        logger.info(f"API ingest paused for run {self.run.id}")
        return result

    def _ingest_entity(self, entity_type: EntityType) -> bool:
        """
        Fetch all pages of one entity type.

        Returns:
            False if a pause was requested before the entity finished
        """
        checkpoint = self.run.checkpoint_for(entity_type.value)
        records = self._load_partial(entity_type)
        if checkpoint.completed:
            logger.info(f"Skipping {entity_type.value}: already ingested ({len(records)} records)")
            self.run.entity_counts[entity_type.value] = len(records)
            return True

        if checkpoint.cursor:
            logger.info(f"Resuming {entity_type.value} from cursor {checkpoint.cursor}")

        while True:
            if self.pause_requested():
                self.save_checkpoint()
                return False

            page = self._fetch(entity_type, FetchOptions(cursor=checkpoint.cursor, limit=self.fetch_limit))
            if page is None:
                checkpoint.completed = True
                self.save_checkpoint()
                return True

            self._merge(entity_type, records, page.data)
            checkpoint.advance(page.next_cursor, len(page.data))
            checkpoint.completed = page.next_cursor is None
            self._write(entity_type, records)
            logger.debug(
                f"Fetched {entity_type.value} page {checkpoint.pages_fetched}: "
                f"{len(page.data)} records, total {len(records)}"
            )
            if checkpoint.completed:
                return True

    def _ingest_per_patient(self, entity_type: EntityType, patient_ids: List[str]) -> bool:
        """Fetch a patient-scoped entity type for every ingested patient."""
        checkpoint = self.run.checkpoint_for(entity_type.value)
        records = self._load_partial(entity_type)
        if checkpoint.completed:
            self.run.entity_counts[entity_type.value] = len(records)
            return True

        for patient_id in patient_ids:
            patient_checkpoint = self.run.checkpoint_for(f"{entity_type.value}:{patient_id}")
            while not patient_checkpoint.completed:
                if self.pause_requested():
                    self.save_checkpoint()
                    return False

                options = FetchOptions(
                    cursor=patient_checkpoint.cursor,
                    limit=self.fetch_limit,
                    patient_source_id=patient_id,
                )
                page = self._fetch(entity_type, options)
                if page is None:
                    patient_checkpoint.completed = True
                    break

                self._merge(entity_type, records, page.data)
                patient_checkpoint.advance(page.next_cursor, len(page.data))
                patient_checkpoint.completed = page.next_cursor is None
                checkpoint.advance(checkpoint.cursor, len(page.data))
                self._write(entity_type, records)

        checkpoint.completed = True
        self._write(entity_type, records)
        return True

    def _fetch(self, entity_type: EntityType, options: FetchOptions):
        try:
            return self.provider.fetch(entity_type, self.credentials, options)
        except UnsupportedEntityError as e:
            self.add_warning(str(e))
            return None

    def _merge(self, entity_type: EntityType, records: Dict[str, Dict[str, Any]], page: List[Any]) -> None:
        """Merge a page into the entity's records keyed by sourceId; re-fetched records replace earlier copies."""
        for item in page:
            record = _to_wire(item)
            if entity_type == EntityType.FORMS and "fields" not in record:
                self._attach_form_content(record)
            records[str(record["sourceId"])] = record

    def _attach_form_content(self, form: Dict[str, Any]) -> None:
        if not self.provider.supports(EntityType.FORM_CONTENT):
            return
        try:
            fields = self.provider.fetch_form_content(self.credentials, form["sourceId"])
        except UnsupportedEntityError as e:
            self.add_warning(str(e))
            return
        form["fields"] = [_to_wire(f) for f in fields]

    def _write(self, entity_type: EntityType, records: Dict[str, Dict[str, Any]]) -> None:
        self.store_json(f"{entity_type.value}.json", list(records.values()))
        self.run.entity_counts[entity_type.value] = len(records)
        self.save_checkpoint()

    def _load_partial(self, entity_type: EntityType) -> Dict[str, Dict[str, Any]]:
        key = f"{entity_type.value}.json"
        if not self.artifact_store.exists(self.run.id, key):
            return {}
        try:
            existing = self.artifact_store.get_json(self.run.id, key)
        except json.JSONDecodeError as e:
            self.add_warning(f"Discarding unreadable partial artifact {key}: {e}")
            return {}
        return {str(r["sourceId"]): r for r in existing}
