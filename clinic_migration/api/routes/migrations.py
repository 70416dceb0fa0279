"""Migration run lifecycle endpoints."""

import logging
from typing import Any, Callable, Dict, Optional
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from ..models import (
    ApproveRequest,
    AuditEventResponse,
    EventListResponse,
    LogEntryResponse,
    LogListResponse,
    MigrationCreate,
    MigrationListResponse,
    MigrationResponse,
)
from ...errors import (
    ApprovalRequiredError,
    MigrationError,
    RunNotFoundError,
)
from ...models.migration import MigrationConfig, Phase, RunStatus
from ...models.record import LogStatus
from ...orchestrator import MigrationOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()

_orchestrator: Optional[MigrationOrchestrator] = None


def get_orchestrator() -> MigrationOrchestrator:
    """Process-wide orchestrator configured from the environment."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = MigrationOrchestrator(MigrationConfig.from_env())
    return _orchestrator


def _http_error(error: MigrationError) -> HTTPException:
    if isinstance(error, RunNotFoundError):
        return HTTPException(status_code=404, detail="Migration not found")
    if isinstance(error, ApprovalRequiredError):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


def _get_run_or_404(orchestrator: MigrationOrchestrator, migration_id: str):
    try:
        return orchestrator.repository.get_run(migration_id)
    except RunNotFoundError as e:
        raise _http_error(e)


def run_in_background(task: Callable[[str], Any], migration_id: str) -> None:
    """Run a pipeline step; failures are already recorded on the run."""
    try:
        task(migration_id)
    except ApprovalRequiredError as e:
        logger.info(f"Run {migration_id} waiting for approval: {e}")
    except MigrationError as e:
        logger.error(f"Background task for run {migration_id} failed: {e}")


@router.post("", response_model=MigrationResponse)
async def create_migration(data: MigrationCreate, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Create a new migration run."""
    files = [(name, content.encode("utf-8")) for name, content in data.files.items()]
    try:
        run = orchestrator.create_run(
            clinic_id=data.clinic_id,
            vendor=data.source_vendor,
            credentials=data.credentials,
            entry_url=data.entry_url,
            uploaded_files=files,
            strategy=data.strategy,
        )
    except MigrationError as e:
        raise _http_error(e)
    return MigrationResponse.from_run(run)


@router.get("", response_model=MigrationListResponse)
async def list_migrations(
    clinic_id: Optional[str] = None,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """List migration runs, newest first."""
    runs = orchestrator.repository.list_runs(clinic_id)
    return MigrationListResponse(migrations=[MigrationResponse.from_run(r) for r in runs], total=len(runs))


@router.get("/{migration_id}", response_model=MigrationResponse)
async def get_migration(migration_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Get a specific migration run."""
    return MigrationResponse.from_run(_get_run_or_404(orchestrator, migration_id))


@router.post("/{migration_id}/start")
async def start_migration(
    migration_id: str,
    background_tasks: BackgroundTasks,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """Run ingest, profile and mapping draft in the background."""
    run = _get_run_or_404(orchestrator, migration_id)
    if run.status not in (RunStatus.CREATED, RunStatus.FAILED):
        raise HTTPException(status_code=400, detail=f"Cannot start migration in status: {run.status.value}")

    background_tasks.add_task(run_in_background, orchestrator.run_to_approval, migration_id)
    return {"status": "started", "migration_id": migration_id}


@router.post("/{migration_id}/approve", response_model=MigrationResponse)
async def approve_mapping(
    migration_id: str,
    data: ApproveRequest,
    background_tasks: BackgroundTasks,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """Approve the drafted mapping spec and optionally continue the run."""
    try:
        run = orchestrator.approve_mapping(migration_id, data.approver_id)
    except MigrationError as e:
        raise _http_error(e)

    if data.proceed:
        background_tasks.add_task(run_in_background, orchestrator.run_from_approval, migration_id)
    return MigrationResponse.from_run(run)


@router.post("/{migration_id}/pause")
async def pause_migration(migration_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """Pause a running migration at its next batch boundary."""
    run = _get_run_or_404(orchestrator, migration_id)
    if run.status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.PAUSED):
        raise HTTPException(status_code=400, detail=f"Cannot pause migration in status: {run.status.value}")

    orchestrator.pause(migration_id)
    return {"status": "paused"}


@router.post("/{migration_id}/resume")
async def resume_migration(
    migration_id: str,
    background_tasks: BackgroundTasks,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """Resume a paused or failed migration in the background."""
    run = _get_run_or_404(orchestrator, migration_id)
    if run.status not in (RunStatus.PAUSED, RunStatus.FAILED):
        raise HTTPException(status_code=400, detail=f"Cannot resume migration in status: {run.status.value}")
    if orchestrator.resume_point(run) == Phase.APPROVE_MAPPING and run.mapping_approved_at is None:
        raise HTTPException(
            status_code=409,
            detail="Pipeline paused at approve_mapping. Call approve_mapping() to continue.",
        )

    background_tasks.add_task(run_in_background, orchestrator.resume, migration_id)
    return {"status": "resumed"}


@router.get("/{migration_id}/logs", response_model=LogListResponse)
async def get_logs(
    migration_id: str,
    entity_type: Optional[str] = None,
    status: Optional[LogStatus] = None,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """Per-record outcomes. Raw source payloads are never returned."""
    _get_run_or_404(orchestrator, migration_id)
    entries = orchestrator.repository.logs(migration_id, entity_type=entity_type, status=status)
    return LogListResponse(
        logs=[
            LogEntryResponse(
                entity_type=e.entity_type,
                source_id=e.source_id,
                status=e.status.value,
                phase=e.phase,
                target_id=e.target_id,
                reasoning=e.reasoning,
                error_message=e.error_message,
                created_at=e.created_at,
            )
            for e in entries
        ],
        summary=orchestrator.repository.log_summary(migration_id),
        total=len(entries),
    )


@router.get("/{migration_id}/report")
async def get_report(migration_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    """The reconciliation report of a completed run."""
    run = _get_run_or_404(orchestrator, migration_id)
    if run.report is None:
        raise HTTPException(status_code=400, detail=f"No report yet, migration is {run.status.value}")
    return run.report


@router.get("/{migration_id}/events", response_model=EventListResponse)
async def get_events(migration_id: str, orchestrator: MigrationOrchestrator = Depends(get_orchestrator)):
    """The run's audit trail."""
    _get_run_or_404(orchestrator, migration_id)
    events = orchestrator.repository.events(migration_id)
    return EventListResponse(
        events=[
            AuditEventResponse(
                action=e.action.value,
                phase=e.phase,
                actor_id=e.actor_id,
                details=e.details,
                created_at=e.created_at,
            )
            for e in events
        ],
        total=len(events),
    )
