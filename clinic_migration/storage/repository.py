"""Run repository: runs, mapping specs, entity map, logs, audit trail and staging ledger.

All rows are keyed by run id. The repository is in memory with optional
JSON persistence so separate CLI invocations can resume the same run.
"""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from collections import Counter, defaultdict
from datetime import datetime
import json
import logging
import os
import tempfile
import threading

from ..errors import RunNotFoundError
from ..models.migration import MigrationRun, RunStatus
from ..models.record import (
    AuditAction,
    AuditEvent,
    EntityMapRow,
    LogStatus,
    MigrationLogEntry,
    StagingEntry,
    StagingStatus,
)
from ..models.schema import MappingSpec

logger = logging.getLogger(__name__)

MapKey = Tuple[str, str, str]


class MigrationRepository:
    """
    Persistence for everything the pipeline writes about a run.

    Supports:
    - Runs (never deleted) with a cooperative pause flag
    - Versioned, immutable mapping specs
    - Entity map with upsert semantics on (run, entity type, source id)
    - Append-only migration log and audit trail
    - Staging ledger keyed on (run, entity type, canonical id)
    """

    def __init__(self, path: Optional[str] = None):
        """
        Initialize the repository.

        Args:
            path: Optional JSON file to persist state to after every write
        """
        self.path = Path(path) if path else None
        self._lock = threading.RLock()

        self._runs: Dict[str, Dict[str, Any]] = {}
        self._pause_requests: Set[str] = set()
        self._specs: Dict[str, List[MappingSpec]] = defaultdict(list)
        self._entity_map: Dict[MapKey, EntityMapRow] = {}
        self._canonical_index: Dict[MapKey, str] = {}
        self._logs: List[MigrationLogEntry] = []
        self._events: List[AuditEvent] = []
        self._staging: Dict[MapKey, StagingEntry] = {}

        if self.path and self.path.exists():
            self._load()

    # Runs

    def create_run(self, run: MigrationRun) -> MigrationRun:
        with self._lock:
            self._runs[run.id] = run.to_dict()
            self._flush()
        logger.info(f"Created run {run.id} for clinic {run.clinic_id}")
        return run

    def save_run(self, run: MigrationRun) -> None:
        """Persist the run's current state."""
        with self._lock:
            if run.id not in self._runs:
                raise RunNotFoundError(f"Run not found: {run.id}")
            run.updated_at = datetime.utcnow()
            self._runs[run.id] = run.to_dict()
            self._flush()

    def get_run(self, run_id: str) -> MigrationRun:
        """Get a fresh copy of a run. Raises RunNotFoundError if unknown."""
        with self._lock:
            data = self._runs.get(run_id)
            if data is None:
                raise RunNotFoundError(f"Run not found: {run_id}")
            return MigrationRun.from_dict(data)

    def list_runs(self, clinic_id: Optional[str] = None) -> List[MigrationRun]:
        with self._lock:
            runs = [MigrationRun.from_dict(d) for d in self._runs.values()]
        if clinic_id:
            runs = [r for r in runs if r.clinic_id == clinic_id]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    def request_pause(self, run_id: str) -> None:
        with self._lock:
            if run_id not in self._runs:
                raise RunNotFoundError(f"Run not found: {run_id}")
            self._pause_requests.add(run_id)
            self._runs[run_id]["status"] = RunStatus.PAUSED.value
            self._flush()

    def pause_requested(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._pause_requests

    def clear_pause(self, run_id: str) -> None:
        with self._lock:
            self._pause_requests.discard(run_id)
            self._flush()

    # Mapping specs

    def save_spec(self, run_id: str, spec: MappingSpec) -> MappingSpec:
        """Store a new spec version. Existing versions are never modified."""
        with self._lock:
            versions = self._specs[run_id]
            if any(s.version == spec.version for s in versions):
                raise ValueError(f"Mapping spec version {spec.version} already exists for run {run_id}")
            versions.append(spec)
            self._flush()
        return spec

    def next_spec_version(self, run_id: str) -> int:
        with self._lock:
            return max((s.version for s in self._specs.get(run_id, [])), default=0) + 1

    def get_spec(self, run_id: str, version: Optional[int] = None) -> Optional[MappingSpec]:
        """Get a spec version, or the latest one."""
        with self._lock:
            versions = self._specs.get(run_id, [])
            if not versions:
                return None
            if version is None:
                return max(versions, key=lambda s: s.version)
            for spec in versions:
                if spec.version == version:
                    return spec
            return None

    # Entity map

    def upsert_entity_map(
        self,
        run_id: str,
        entity_type: str,
        source_id: str,
        target_id: str,
        canonical_id: Optional[str] = None,
    ) -> EntityMapRow:
        """Write a source-to-target row. The same key always resolves to one row."""
        key = (run_id, entity_type, source_id)
        with self._lock:
            row = self._entity_map.get(key)
            if row is None:
                row = EntityMapRow(run_id, entity_type, source_id, target_id, canonical_id)
                self._entity_map[key] = row
            else:
                row.target_id = target_id
                row.canonical_id = canonical_id or row.canonical_id
                row.updated_at = datetime.utcnow()
            if row.canonical_id:
                self._canonical_index[(run_id, entity_type, row.canonical_id)] = target_id
            self._flush()
            return row

    def get_target_id(self, run_id: str, entity_type: str, source_id: str) -> Optional[str]:
        with self._lock:
            row = self._entity_map.get((run_id, entity_type, source_id))
            return row.target_id if row else None

    def find_by_canonical(self, run_id: str, entity_type: str, canonical_id: str) -> Optional[str]:
        """Resolve a canonical reference to a target id via the entity map."""
        with self._lock:
            return self._canonical_index.get((run_id, entity_type, canonical_id))

    def entity_map_rows(self, run_id: str, entity_type: Optional[str] = None) -> List[EntityMapRow]:
        with self._lock:
            return [
                row for (rid, etype, _), row in self._entity_map.items()
                if rid == run_id and (entity_type is None or etype == entity_type)
            ]

    # Migration log

    def append_log(self, entry: MigrationLogEntry) -> None:
        with self._lock:
            self._logs.append(entry)
            self._flush()

    def logs(
        self,
        run_id: str,
        entity_type: Optional[str] = None,
        status: Optional[LogStatus] = None,
    ) -> List[MigrationLogEntry]:
        with self._lock:
            return [
                e for e in self._logs
                if e.run_id == run_id
                and (entity_type is None or e.entity_type == entity_type)
                and (status is None or e.status == status)
            ]

    def log_summary(self, run_id: str) -> Dict[str, Dict[str, int]]:
        """Count log entries per entity type and status."""
        summary: Dict[str, Counter] = defaultdict(Counter)
        for entry in self.logs(run_id):
            summary[entry.entity_type][entry.status.value] += 1
        return {entity: dict(counts) for entity, counts in summary.items()}

    # Audit trail

    def record_event(
        self,
        run_id: str,
        action: AuditAction,
        phase: Optional[str] = None,
        actor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(run_id, action, phase, actor_id, details or {})
        with self._lock:
            self._events.append(event)
            self._flush()
        return event

    def events(self, run_id: str) -> List[AuditEvent]:
        with self._lock:
            return [e for e in self._events if e.run_id == run_id]

    # Staging ledger

    def stage(self, entry: StagingEntry) -> StagingEntry:
        """Upsert a canonical record. An unchanged, already promoted record keeps its status."""
        key = (entry.run_id, entry.entity_type, entry.canonical_id)
        with self._lock:
            existing = self._staging.get(key)
            if existing and existing.checksum == entry.checksum and existing.status != StagingStatus.FAILED:
                return existing
            self._staging[key] = entry
            self._flush()
            return entry

    def update_staging(self, entry: StagingEntry) -> None:
        with self._lock:
            entry.updated_at = datetime.utcnow()
            self._staging[(entry.run_id, entry.entity_type, entry.canonical_id)] = entry
            self._flush()

    def staging_entries(
        self,
        run_id: str,
        entity_type: Optional[str] = None,
        statuses: Optional[Iterable[StagingStatus]] = None,
    ) -> List[StagingEntry]:
        wanted = set(statuses) if statuses else None
        with self._lock:
            return [
                e for (rid, etype, _), e in self._staging.items()
                if rid == run_id
                and (entity_type is None or etype == entity_type)
                and (wanted is None or e.status in wanted)
            ]

    # Persistence

    def _flush(self) -> None:
        if not self.path:
            return
        state = {
            "runs": self._runs,
            "pause_requests": sorted(self._pause_requests),
            "specs": {rid: [s.to_dict() for s in specs] for rid, specs in self._specs.items()},
            "entity_map": [row.to_dict() for row in self._entity_map.values()],
            "logs": [e.to_dict() for e in self._logs],
            "events": [e.to_dict() for e in self._events],
            "staging": [e.to_dict() for e in self._staging.values()],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".repo-")
        with os.fdopen(fd, "w") as f:
            json.dump(state, f, default=str)
        os.replace(tmp_name, self.path)

    def _load(self) -> None:
        with open(self.path, "r") as f:
            state = json.load(f)

        self._runs = state.get("runs", {})
        self._pause_requests = set(state.get("pause_requests", []))
        for run_id, specs in state.get("specs", {}).items():
            self._specs[run_id] = [MappingSpec.from_dict(s) for s in specs]
        for data in state.get("entity_map", []):
            row = EntityMapRow.from_dict(data)
            self._entity_map[(row.run_id, row.entity_type, row.source_id)] = row
            if row.canonical_id:
                self._canonical_index[(row.run_id, row.entity_type, row.canonical_id)] = row.target_id
        self._logs = [MigrationLogEntry.from_dict(e) for e in state.get("logs", [])]
        self._events = [AuditEvent.from_dict(e) for e in state.get("events", [])]
        for data in state.get("staging", []):
            entry = StagingEntry.from_dict(data)
            self._staging[(entry.run_id, entry.entity_type, entry.canonical_id)] = entry

        logger.info(f"Loaded {len(self._runs)} runs from {self.path}")
