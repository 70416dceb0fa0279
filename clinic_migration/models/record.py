"""Record models for migration data.

Covers the read-only records a provider returns, the canonical records
produced by Transform, and the rows persisted by the repository.
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime
import re


class LogStatus(str, Enum):
    """Outcome of one record in the migration log."""
    IMPORTED = "imported"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class StagingStatus(str, Enum):
    """Status of a canonical record in the staging ledger."""
    STAGED = "staged"
    PROMOTED = "promoted"
    FAILED = "failed"
    SKIPPED = "skipped"


class AuditAction(str, Enum):
    """Phase transitions and human actions recorded on a run."""
    PHASE_STARTED = "PHASE_STARTED"
    PHASE_COMPLETED = "PHASE_COMPLETED"
    PHASE_FAILED = "PHASE_FAILED"
    MAPPING_DRAFTED = "MAPPING_DRAFTED"
    MAPPING_APPROVED = "MAPPING_APPROVED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    RUN_PAUSED = "RUN_PAUSED"
    RUN_RESUMED = "RUN_RESUMED"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


class WireRecord:
    """Mixin giving source records camelCase wire serialization.

    The wire keys are also the keys of the ingest artifacts, so every
    downstream phase reads ``sourceId``, ``patientSourceId`` and friends.
    """

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, list):
                value = [v.to_dict() if hasattr(v, "to_dict") else v for v in value]
            result[_camel(f.name)] = value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = _snake(key)
            if name in known:
                kwargs[name] = value
        return cls(**kwargs)


@dataclass
class FormField(WireRecord):
    """One answered field of a submitted form."""
    field_id: str
    label: str
    type: str = "text"
    value: Optional[str] = None
    selected_options: Optional[List[str]] = None
    available_options: Optional[List[str]] = None
    sort_order: int = 0


@dataclass
class SourcePatient(WireRecord):
    source_id: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    allergies: Optional[str] = None
    medical_notes: Optional[str] = None
    tags: Optional[List[str]] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SourceService(WireRecord):
    source_id: str
    name: str
    description: Optional[str] = None
    duration: Optional[int] = None
    price: Optional[float] = None
    category: Optional[str] = None
    is_active: bool = True
    raw_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SourceAppointment(WireRecord):
    source_id: str
    patient_source_id: str
    start_time: str
    status: str
    provider_name: Optional[str] = None
    service_source_id: Optional[str] = None
    service_name: Optional[str] = None
    end_time: Optional[str] = None
    notes: Optional[str] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SourceInvoiceLineItem(WireRecord):
    description: str
    quantity: float = 1
    unit_price: float = 0
    total: float = 0
    service_source_id: Optional[str] = None


@dataclass
class SourceInvoice(WireRecord):
    source_id: str
    patient_source_id: str
    status: str
    total: float
    invoice_number: Optional[str] = None
    subtotal: Optional[float] = None
    tax_amount: Optional[float] = None
    notes: Optional[str] = None
    paid_at: Optional[str] = None
    line_items: List[SourceInvoiceLineItem] = field(default_factory=list)
    raw_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SourcePhoto(WireRecord):
    source_id: str
    patient_source_id: str
    url: str
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    category: Optional[str] = None
    caption: Optional[str] = None
    taken_at: Optional[str] = None
    appointment_source_id: Optional[str] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SourceChart(WireRecord):
    source_id: str
    patient_source_id: str
    date: str
    appointment_source_id: Optional[str] = None
    provider_name: Optional[str] = None
    notes: Optional[str] = None
    structured_data: Optional[Dict[str, Any]] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SourceForm(WireRecord):
    source_id: str
    patient_source_id: str
    template_name: str
    template_id: Optional[str] = None
    status: str = "completed"
    is_internal: bool = False
    submitted_at: Optional[str] = None
    submitted_by_name: Optional[str] = None
    submitted_by_role: Optional[str] = None
    appointment_source_id: Optional[str] = None
    fields: Optional[List[FormField]] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SourceDocument(WireRecord):
    source_id: str
    patient_source_id: str
    url: str
    filename: str
    mime_type: Optional[str] = None
    category: Optional[str] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FetchOptions:
    """Cursor pagination options for a provider fetch."""
    cursor: Optional[str] = None
    limit: int = 50
    patient_source_id: Optional[str] = None  # Set for per-patient entity types


@dataclass
class FetchResult:
    """One page of provider records."""
    data: List[Any] = field(default_factory=list)
    next_cursor: Optional[str] = None
    total_count: Optional[int] = None


@dataclass
class ConnectionTestResult:
    connected: bool
    business_name: Optional[str] = None
    location_id: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "businessName": self.business_name,
            "locationId": self.location_id,
            "errorMessage": self.error_message,
        }


@dataclass
class ValidationError:
    """A validation finding on a canonical record."""
    code: str
    entity_type: str
    canonical_id: str
    message: str
    field: Optional[str] = None
    severity: str = "error"  # error, warning

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "code": self.code,
            "entityType": self.entity_type,
            "canonicalId": self.canonical_id,
            "field": self.field,
            "message": self.message,
            "severity": self.severity,
        }


@dataclass
class CanonicalRecord:
    """A normalized record produced by Transform.

    References to other records (``canonicalPatientId``,
    ``canonicalAppointmentId``) hold canonical ids and are only resolved
    to target ids during Load.
    """
    entity_type: str
    canonical_id: str
    source_record_id: str
    data: Dict[str, Any]
    checksum: str = ""
    source_entity: str = ""  # Artifact the record came from, e.g. "forms"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entityType": self.entity_type,
            "canonicalId": self.canonical_id,
            "sourceRecordId": self.source_record_id,
            "sourceEntity": self.source_entity,
            "checksum": self.checksum,
            "record": self.data,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalRecord":
        return cls(
            entity_type=data["entityType"],
            canonical_id=data["canonicalId"],
            source_record_id=data["sourceRecordId"],
            data=data.get("record", {}),
            checksum=data.get("checksum", ""),
            source_entity=data.get("sourceEntity", ""),
        )


@dataclass
class EntityMapRow:
    """Source id to target id for one run and entity type."""
    run_id: str
    entity_type: str
    source_id: str
    target_id: str
    canonical_id: Optional[str] = None
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "entity_type": self.entity_type,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "canonical_id": self.canonical_id,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityMapRow":
        return cls(
            run_id=data["run_id"],
            entity_type=data["entity_type"],
            source_id=data["source_id"],
            target_id=data["target_id"],
            canonical_id=data.get("canonical_id"),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass
class MigrationLogEntry:
    """Append-only outcome of one record in one phase attempt."""
    run_id: str
    entity_type: str
    source_id: str
    status: LogStatus
    target_id: Optional[str] = None
    reasoning: Optional[str] = None
    error_message: Optional[str] = None
    raw_data: Optional[Dict[str, Any]] = None
    phase: str = "load"
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "entity_type": self.entity_type,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "status": self.status.value,
            "reasoning": self.reasoning,
            "error_message": self.error_message,
            "raw_data": self.raw_data,
            "phase": self.phase,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationLogEntry":
        return cls(
            run_id=data["run_id"],
            entity_type=data["entity_type"],
            source_id=data["source_id"],
            status=LogStatus(data["status"]),
            target_id=data.get("target_id"),
            reasoning=data.get("reasoning"),
            error_message=data.get("error_message"),
            raw_data=data.get("raw_data"),
            phase=data.get("phase", "load"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class StagingEntry:
    """A canonical record awaiting or finished with promotion."""
    run_id: str
    entity_type: str
    canonical_id: str
    source_record_id: str
    payload: Dict[str, Any]
    checksum: str
    source_entity: str = ""
    status: StagingStatus = StagingStatus.STAGED
    error_code: Optional[str] = None
    target_id: Optional[str] = None
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "entity_type": self.entity_type,
            "canonical_id": self.canonical_id,
            "source_record_id": self.source_record_id,
            "payload": self.payload,
            "checksum": self.checksum,
            "source_entity": self.source_entity,
            "status": self.status.value,
            "error_code": self.error_code,
            "target_id": self.target_id,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StagingEntry":
        return cls(
            run_id=data["run_id"],
            entity_type=data["entity_type"],
            canonical_id=data["canonical_id"],
            source_record_id=data["source_record_id"],
            payload=data.get("payload", {}),
            checksum=data.get("checksum", ""),
            source_entity=data.get("source_entity", ""),
            status=StagingStatus(data.get("status", "staged")),
            error_code=data.get("error_code"),
            target_id=data.get("target_id"),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass
class AuditEvent:
    """A phase transition or human action on a run."""
    run_id: str
    action: AuditAction
    phase: Optional[str] = None
    actor_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "action": self.action.value,
            "phase": self.phase,
            "actor_id": self.actor_id,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            run_id=data["run_id"],
            action=AuditAction(data["action"]),
            phase=data.get("phase"),
            actor_id=data.get("actor_id"),
            details=data.get("details", {}),
            created_at=datetime.fromisoformat(data["created_at"]),
        )
