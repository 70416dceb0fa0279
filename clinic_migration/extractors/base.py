"""Base extractor interface for the Ingest phase."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime
import logging

from ..models.migration import ArtifactRef, IngestStrategyType, MigrationRun
from ..storage.artifact_store import ArtifactStore
from ..storage.repository import MigrationRepository

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    """Result of an ingest strategy."""
    strategy: IngestStrategyType
    artifacts: List[ArtifactRef] = field(default_factory=list)
    entity_counts: Dict[str, int] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    paused: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def success(self) -> bool:
        """Check if extraction was successful."""
        return len(self.errors) == 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "strategy": self.strategy.value,
            "artifacts": [a.to_dict() for a in self.artifacts],
            "entity_counts": self.entity_counts,
            "errors": self.errors,
            "warnings": self.warnings,
            "paused": self.paused,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }


class BaseExtractor(ABC):
    """
    Base class for all ingest strategies.

    Extractors pull raw source data through one strategy (provider API,
    browser automation, uploaded files) and write it to the artifact store,
    one JSON artifact per entity type. Every stored artifact is tracked on
    the run.
    """

    strategy: IngestStrategyType

    def __init__(
        self,
        run: MigrationRun,
        artifact_store: ArtifactStore,
        repository: Optional[MigrationRepository] = None,
        should_pause: Optional[Callable[[], bool]] = None,
    ):
        """
        Initialize the extractor.

        Args:
            run: Run being ingested; checkpoints and artifact refs are written to it
            artifact_store: Where artifacts go
            repository: Used to persist the run after every checkpoint
            should_pause: Polled between pages; True stops the extractor early
        """
        self.run = run
        self.artifact_store = artifact_store
        self.repository = repository
        self._should_pause = should_pause or (lambda: False)
        self._errors: List[Dict[str, Any]] = []
        self._warnings: List[str] = []

    @abstractmethod
    def extract(self) -> ExtractionResult:
        """
        Ingest everything the strategy can reach.

        Returns:
            ExtractionResult with artifact refs and per-entity record counts
        """
        pass

    def store(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> ArtifactRef:
        ref = self.artifact_store.put(self.run.id, key, data, metadata)
        self.run.add_artifact(ref)
        return ref

    def store_json(self, key: str, payload: Any) -> ArtifactRef:
        ref = self.artifact_store.put_json(self.run.id, key, payload)
        self.run.add_artifact(ref)
        return ref

    def save_checkpoint(self) -> None:
        """Persist the run so a crash resumes from the last completed page."""
        if self.repository:
            self.repository.save_run(self.run)

    def pause_requested(self) -> bool:
        return self._should_pause()

    def add_error(
        self,
        message: str,
        entity_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Add an error to the extraction."""
        error = {
            "message": message,
            "entity_type": entity_type,
            "timestamp": datetime.utcnow().isoformat(),
        }
        if details:
            error.update(details)
        self._errors.append(error)
        logger.error(f"Extraction error: {message}")

    def add_warning(self, message: str) -> None:
        """Add a warning to the extraction."""
        self._warnings.append(message)
        logger.warning(f"Extraction warning: {message}")

    def get_extraction_result(self, entity_counts: Dict[str, int], started_at: datetime) -> ExtractionResult:
        return ExtractionResult(
            strategy=self.strategy,
            artifacts=list(self.run.artifacts),
            entity_counts=dict(entity_counts),
            errors=self._errors.copy(),
            warnings=self._warnings.copy(),
            started_at=started_at,
            completed_at=datetime.utcnow(),
        )
