"""Migration run, checkpoint and configuration models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime
import os
import uuid


class RunStatus(str, Enum):
    """Status of a migration run. Declaration order is the pipeline order."""
    CREATED = "Created"
    INGESTING = "Ingesting"
    INGESTED = "Ingested"
    PROFILING = "Profiling"
    PROFILED = "Profiled"
    DRAFTING_MAPPING = "DraftingMapping"
    MAPPING_DRAFTED = "MappingDrafted"
    MAPPING_APPROVED = "MappingApproved"
    TRANSFORMING = "Transforming"
    TRANSFORMED = "Transformed"
    VALIDATING = "Validating"
    VALIDATED = "Validated"
    LOADING = "Loading"
    LOADED = "Loaded"
    RECONCILING = "Reconciling"
    COMPLETED = "Completed"
    FAILED = "Failed"
    PAUSED = "Paused"


class Phase(str, Enum):
    """Pipeline phases."""
    INGEST = "ingest"
    PROFILE = "profile"
    DRAFT_MAPPING = "draft_mapping"
    APPROVE_MAPPING = "approve_mapping"
    TRANSFORM = "transform"
    VALIDATE = "validate"
    LOAD = "load"
    RECONCILE = "reconcile"


PHASE_ORDER: List[Phase] = [
    Phase.INGEST,
    Phase.PROFILE,
    Phase.DRAFT_MAPPING,
    Phase.APPROVE_MAPPING,
    Phase.TRANSFORM,
    Phase.VALIDATE,
    Phase.LOAD,
    Phase.RECONCILE,
]

# phase -> (status while running, status once finished)
PHASE_STATUSES: Dict[Phase, tuple] = {
    Phase.INGEST: (RunStatus.INGESTING, RunStatus.INGESTED),
    Phase.PROFILE: (RunStatus.PROFILING, RunStatus.PROFILED),
    Phase.DRAFT_MAPPING: (RunStatus.DRAFTING_MAPPING, RunStatus.MAPPING_DRAFTED),
    Phase.APPROVE_MAPPING: (RunStatus.MAPPING_DRAFTED, RunStatus.MAPPING_APPROVED),
    Phase.TRANSFORM: (RunStatus.TRANSFORMING, RunStatus.TRANSFORMED),
    Phase.VALIDATE: (RunStatus.VALIDATING, RunStatus.VALIDATED),
    Phase.LOAD: (RunStatus.LOADING, RunStatus.LOADED),
    Phase.RECONCILE: (RunStatus.RECONCILING, RunStatus.COMPLETED),
}


class IngestStrategyType(str, Enum):
    """Ways raw source data can enter the pipeline."""
    API = "api"  # Authenticated provider API
    BROWSER = "browser"  # Browser automation against the vendor web app
    UPLOAD = "upload"  # Files exported by the clinic


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class ArtifactRef:
    """Stable reference to a stored artifact."""
    run_id: str
    key: str
    hash: str
    size_bytes: int
    stored_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "key": self.key,
            "hash": self.hash,
            "sizeBytes": self.size_bytes,
            "storedAt": self.stored_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArtifactRef":
        return cls(
            run_id=data["runId"],
            key=data["key"],
            hash=data["hash"],
            size_bytes=data["sizeBytes"],
            stored_at=_parse(data.get("storedAt")) or datetime.utcnow(),
        )


@dataclass
class EntityCheckpoint:
    """Resume position for one entity type."""
    entity_type: str
    cursor: Optional[str] = None
    pages_fetched: int = 0
    records_fetched: int = 0
    completed: bool = False
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def advance(self, cursor: Optional[str], records: int) -> None:
        """Record one fetched page."""
        self.cursor = cursor
        self.pages_fetched += 1
        self.records_fetched += records
        self.updated_at = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "cursor": self.cursor,
            "pages_fetched": self.pages_fetched,
            "records_fetched": self.records_fetched,
            "completed": self.completed,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityCheckpoint":
        return cls(
            entity_type=data["entity_type"],
            cursor=data.get("cursor"),
            pages_fetched=data.get("pages_fetched", 0),
            records_fetched=data.get("records_fetched", 0),
            completed=data.get("completed", False),
            updated_at=_parse(data.get("updated_at")) or datetime.utcnow(),
        )


@dataclass
class EntityProgress:
    """Outcome counters for one entity type."""
    total: int = 0
    staged: int = 0
    imported: int = 0
    duplicate: int = 0
    skipped: int = 0
    failed: int = 0

    def increment(self, status: str, amount: int = 1) -> None:
        """Bump the counter named after a log status."""
        setattr(self, status, getattr(self, status) + amount)

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "staged": self.staged,
            "imported": self.imported,
            "duplicate": self.duplicate,
            "skipped": self.skipped,
            "failed": self.failed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityProgress":
        return cls(**{k: int(data.get(k, 0)) for k in cls().to_dict()})


@dataclass
class DuplicateReview:
    """A fuzzy duplicate match waiting for an operator decision."""
    source_id: str
    candidate_target_id: str
    created_target_id: Optional[str]
    reasoning: str
    resolved: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "candidate_target_id": self.candidate_target_id,
            "created_target_id": self.created_target_id,
            "reasoning": self.reasoning,
            "resolved": self.resolved,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DuplicateReview":
        return cls(
            source_id=data["source_id"],
            candidate_target_id=data["candidate_target_id"],
            created_target_id=data.get("created_target_id"),
            reasoning=data.get("reasoning", ""),
            resolved=data.get("resolved", False),
            created_at=_parse(data.get("created_at")) or datetime.utcnow(),
        )


@dataclass
class MigrationRun:
    """One migration attempt for one clinic."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    clinic_id: str = ""
    source_vendor: str = ""
    status: RunStatus = RunStatus.CREATED
    current_phase: Phase = Phase.INGEST

    # Ingest inputs
    ingest_strategy: Optional[IngestStrategyType] = None
    credentials_encrypted: Optional[str] = None
    entry_url: Optional[str] = None
    uploaded_keys: List[str] = field(default_factory=list)

    # Mapping gate
    mapping_spec_version: int = 0
    mapping_approved_at: Optional[datetime] = None
    approved_by_id: Optional[str] = None

    # Checkpoint and progress
    checkpoints: Dict[str, EntityCheckpoint] = field(default_factory=dict)
    progress: Dict[str, EntityProgress] = field(default_factory=dict)
    artifacts: List[ArtifactRef] = field(default_factory=list)
    entity_counts: Dict[str, int] = field(default_factory=dict)
    duplicate_reviews: List[DuplicateReview] = field(default_factory=list)

    # Outcome
    error_message: Optional[str] = None
    report: Optional[Dict[str, Any]] = None

    # Timing
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    metadata: Dict[str, Any] = field(default_factory=dict)

    def checkpoint_for(self, entity_type: str) -> EntityCheckpoint:
        """Get or create the checkpoint for an entity type."""
        if entity_type not in self.checkpoints:
            self.checkpoints[entity_type] = EntityCheckpoint(entity_type=entity_type)
        return self.checkpoints[entity_type]

    def progress_for(self, entity_type: str) -> EntityProgress:
        """Get or create the progress counters for an entity type."""
        if entity_type not in self.progress:
            self.progress[entity_type] = EntityProgress()
        return self.progress[entity_type]

    def add_artifact(self, ref: ArtifactRef) -> None:
        """Track an artifact, replacing any earlier pointer with the same key."""
        self.artifacts = [a for a in self.artifacts if a.key != ref.key]
        self.artifacts.append(ref)

    def artifact(self, key: str) -> Optional[ArtifactRef]:
        for ref in self.artifacts:
            if ref.key == key:
                return ref
        return None

    @property
    def pending_reviews(self) -> List[DuplicateReview]:
        return [r for r in self.duplicate_reviews if not r.resolved]

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "clinic_id": self.clinic_id,
            "source_vendor": self.source_vendor,
            "status": self.status.value,
            "current_phase": self.current_phase.value,
            "ingest_strategy": self.ingest_strategy.value if self.ingest_strategy else None,
            "credentials_encrypted": self.credentials_encrypted,
            "entry_url": self.entry_url,
            "uploaded_keys": self.uploaded_keys,
            "mapping_spec_version": self.mapping_spec_version,
            "mapping_approved_at": _iso(self.mapping_approved_at),
            "approved_by_id": self.approved_by_id,
            "checkpoints": {k: v.to_dict() for k, v in self.checkpoints.items()},
            "progress": {k: v.to_dict() for k, v in self.progress.items()},
            "artifacts": [a.to_dict() for a in self.artifacts],
            "entity_counts": self.entity_counts,
            "duplicate_reviews": [r.to_dict() for r in self.duplicate_reviews],
            "error_message": self.error_message,
            "report": self.report,
            "created_at": self.created_at.isoformat(),
            "started_at": _iso(self.started_at),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": _iso(self.completed_at),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationRun":
        """Create from dictionary representation."""
        strategy = data.get("ingest_strategy")
        return cls(
            id=data["id"],
            clinic_id=data.get("clinic_id", ""),
            source_vendor=data.get("source_vendor", ""),
            status=RunStatus(data.get("status", RunStatus.CREATED.value)),
            current_phase=Phase(data.get("current_phase", Phase.INGEST.value)),
            ingest_strategy=IngestStrategyType(strategy) if strategy else None,
            credentials_encrypted=data.get("credentials_encrypted"),
            entry_url=data.get("entry_url"),
            uploaded_keys=data.get("uploaded_keys", []),
            mapping_spec_version=data.get("mapping_spec_version", 0),
            mapping_approved_at=_parse(data.get("mapping_approved_at")),
            approved_by_id=data.get("approved_by_id"),
            checkpoints={
                k: EntityCheckpoint.from_dict(v) for k, v in data.get("checkpoints", {}).items()
            },
            progress={k: EntityProgress.from_dict(v) for k, v in data.get("progress", {}).items()},
            artifacts=[ArtifactRef.from_dict(a) for a in data.get("artifacts", [])],
            entity_counts=data.get("entity_counts", {}),
            duplicate_reviews=[
                DuplicateReview.from_dict(r) for r in data.get("duplicate_reviews", [])
            ],
            error_message=data.get("error_message"),
            report=data.get("report"),
            created_at=_parse(data.get("created_at")) or datetime.utcnow(),
            started_at=_parse(data.get("started_at")),
            updated_at=_parse(data.get("updated_at")) or datetime.utcnow(),
            completed_at=_parse(data.get("completed_at")),
            metadata=data.get("metadata", {}),
        )


@dataclass
class MigrationConfig:
    """Configuration for a migration."""
    name: str = ""
    clinic_id: str = ""
    source_vendor: str = "mock"

    # Ingest inputs
    strategy: Optional[str] = None  # Override: api, browser, upload
    credentials: Dict[str, Any] = field(default_factory=dict)
    entry_url: Optional[str] = None
    upload_paths: List[str] = field(default_factory=list)

    # Execution options
    data_dir: str = "./data"
    batch_size: int = 50
    fetch_limit: int = 50
    dry_validation_sample: int = 10
    max_entity_attempts: int = 2

    # Duplicate detection
    fuzzy_duplicate_action: str = "review"  # review, merge
    fuzzy_prefix_length: int = 3

    # Assistant options
    use_llm: bool = False
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o"
    llm_api_key: Optional[str] = None

    # Browser automation
    headless: bool = True
    browser_sections: Dict[str, Dict[str, Any]] = field(default_factory=dict)  # entity type -> page config

    # Extra keyword arguments for the source provider, e.g. base_url for "rest"
    provider_options: Dict[str, Any] = field(default_factory=dict)

    # Target system; the in-memory store is used when no URL is set
    target_api_url: Optional[str] = None
    target_api_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation. Secrets are omitted."""
        return {
            "name": self.name,
            "clinic_id": self.clinic_id,
            "source_vendor": self.source_vendor,
            "strategy": self.strategy,
            "entry_url": self.entry_url,
            "upload_paths": self.upload_paths,
            "data_dir": self.data_dir,
            "batch_size": self.batch_size,
            "fetch_limit": self.fetch_limit,
            "dry_validation_sample": self.dry_validation_sample,
            "max_entity_attempts": self.max_entity_attempts,
            "fuzzy_duplicate_action": self.fuzzy_duplicate_action,
            "fuzzy_prefix_length": self.fuzzy_prefix_length,
            "use_llm": self.use_llm,
            "llm_provider": self.llm_provider,
            "llm_model": self.llm_model,
            "headless": self.headless,
            "browser_sections": self.browser_sections,
            "target_api_url": self.target_api_url,
            "provider_options": self.provider_options,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationConfig":
        """Create from dictionary representation."""
        return cls(
            name=data.get("name", ""),
            clinic_id=data.get("clinic_id", ""),
            source_vendor=data.get("source_vendor", "mock"),
            strategy=data.get("strategy"),
            credentials=data.get("credentials", {}),
            entry_url=data.get("entry_url"),
            upload_paths=data.get("upload_paths", []),
            data_dir=data.get("data_dir", "./data"),
            batch_size=data.get("batch_size", 50),
            fetch_limit=data.get("fetch_limit", 50),
            dry_validation_sample=data.get("dry_validation_sample", 10),
            max_entity_attempts=data.get("max_entity_attempts", 2),
            fuzzy_duplicate_action=data.get("fuzzy_duplicate_action", "review"),
            fuzzy_prefix_length=data.get("fuzzy_prefix_length", 3),
            use_llm=data.get("use_llm", False),
            llm_provider=data.get("llm_provider", "openai"),
            llm_model=data.get("llm_model", "gpt-4o"),
            llm_api_key=data.get("llm_api_key"),
            headless=data.get("headless", True),
            browser_sections=data.get("browser_sections", {}),
            provider_options=data.get("provider_options", {}),
            target_api_url=data.get("target_api_url"),
            target_api_key=data.get("target_api_key"),
        )

    @classmethod
    def from_env(cls, **overrides: Any) -> "MigrationConfig":
        """Build a config from MIGRATION_* environment variables."""
        provider = os.environ.get("MIGRATION_LLM_PROVIDER", "openai")
        key_var = "ANTHROPIC_API_KEY" if provider == "anthropic" else "OPENAI_API_KEY"
        data: Dict[str, Any] = {
            "data_dir": os.environ.get("MIGRATION_DATA_DIR", "./data"),
            "llm_provider": provider,
            "llm_api_key": os.environ.get(key_var),
            "use_llm": bool(os.environ.get(key_var)),
            "target_api_url": os.environ.get("MIGRATION_TARGET_API_URL"),
            "target_api_key": os.environ.get("MIGRATION_TARGET_API_KEY"),
        }
        if os.environ.get("MIGRATION_LLM_MODEL"):
            data["llm_model"] = os.environ["MIGRATION_LLM_MODEL"]
        if os.environ.get("MIGRATION_SOURCE_BASE_URL"):
            data["provider_options"] = {"base_url": os.environ["MIGRATION_SOURCE_BASE_URL"]}
        data.update(overrides)
        return cls.from_dict(data)
