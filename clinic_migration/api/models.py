"""Pydantic models for API requests and responses."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime

from ..models.migration import MigrationRun


# Request Models
class MigrationCreate(BaseModel):
    clinic_id: str
    source_vendor: str = "mock"
    strategy: Optional[str] = None
    credentials: Optional[Dict[str, Any]] = None
    entry_url: Optional[str] = None
    files: Dict[str, str] = Field(default_factory=dict)  # filename -> file content


class ApproveRequest(BaseModel):
    approver_id: str
    proceed: bool = True  # Continue with transform through reconcile in the background


# Response Models
class EntityProgressResponse(BaseModel):
    total: int = 0
    staged: int = 0
    imported: int = 0
    duplicate: int = 0
    skipped: int = 0
    failed: int = 0


class MigrationResponse(BaseModel):
    id: str
    clinic_id: str
    source_vendor: str
    status: str
    current_phase: str
    ingest_strategy: Optional[str] = None
    mapping_spec_version: int = 0
    mapping_approved_at: Optional[datetime] = None
    approved_by_id: Optional[str] = None
    entity_counts: Dict[str, int] = Field(default_factory=dict)
    progress: Dict[str, EntityProgressResponse] = Field(default_factory=dict)
    pending_reviews: int = 0
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_run(cls, run: MigrationRun) -> "MigrationResponse":
        return cls(
            id=run.id,
            clinic_id=run.clinic_id,
            source_vendor=run.source_vendor,
            status=run.status.value,
            current_phase=run.current_phase.value,
            ingest_strategy=run.ingest_strategy.value if run.ingest_strategy else None,
            mapping_spec_version=run.mapping_spec_version,
            mapping_approved_at=run.mapping_approved_at,
            approved_by_id=run.approved_by_id,
            entity_counts=run.entity_counts,
            progress={k: EntityProgressResponse(**v.to_dict()) for k, v in run.progress.items()},
            pending_reviews=len(run.pending_reviews),
            error_message=run.error_message,
            created_at=run.created_at,
            updated_at=run.updated_at,
            started_at=run.started_at,
            completed_at=run.completed_at,
        )


class MigrationListResponse(BaseModel):
    migrations: List[MigrationResponse]
    total: int


class LogEntryResponse(BaseModel):
    entity_type: str
    source_id: str
    status: str
    phase: str
    target_id: Optional[str] = None
    reasoning: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime


class LogListResponse(BaseModel):
    logs: List[LogEntryResponse]
    summary: Dict[str, Dict[str, int]]
    total: int


class AuditEventResponse(BaseModel):
    action: str
    phase: Optional[str] = None
    actor_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class EventListResponse(BaseModel):
    events: List[AuditEventResponse]
    total: int
