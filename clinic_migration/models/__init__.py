"""Data models for the migration pipeline."""

from .schema import (
    EntityType,
    CanonicalType,
    FieldType,
    FieldDefinition,
    EntitySchema,
    CANONICAL_SCHEMA,
    FieldMapping,
    EntityMapping,
    ServiceMapping,
    ServiceAction,
    MappingSpec,
    validate_mapping_spec,
)
from .migration import (
    ArtifactRef,
    DuplicateReview,
    EntityCheckpoint,
    EntityProgress,
    IngestStrategyType,
    MigrationConfig,
    MigrationRun,
    Phase,
    RunStatus,
    PHASE_ORDER,
)
from .record import (
    AuditAction,
    AuditEvent,
    CanonicalRecord,
    ConnectionTestResult,
    EntityMapRow,
    FetchOptions,
    FetchResult,
    FormField,
    LogStatus,
    MigrationLogEntry,
    SourceAppointment,
    SourceChart,
    SourceDocument,
    SourceForm,
    SourceInvoice,
    SourceInvoiceLineItem,
    SourcePatient,
    SourcePhoto,
    SourceService,
    StagingEntry,
    StagingStatus,
    ValidationError,
)

__all__ = [
    "EntityType",
    "CanonicalType",
    "FieldType",
    "FieldDefinition",
    "EntitySchema",
    "CANONICAL_SCHEMA",
    "FieldMapping",
    "EntityMapping",
    "ServiceMapping",
    "ServiceAction",
    "MappingSpec",
    "validate_mapping_spec",
    "ArtifactRef",
    "DuplicateReview",
    "EntityCheckpoint",
    "EntityProgress",
    "IngestStrategyType",
    "MigrationConfig",
    "MigrationRun",
    "Phase",
    "RunStatus",
    "PHASE_ORDER",
    "AuditAction",
    "AuditEvent",
    "CanonicalRecord",
    "ConnectionTestResult",
    "EntityMapRow",
    "FetchOptions",
    "FetchResult",
    "FormField",
    "LogStatus",
    "MigrationLogEntry",
    "SourceAppointment",
    "SourceChart",
    "SourceDocument",
    "SourceForm",
    "SourceInvoice",
    "SourceInvoiceLineItem",
    "SourcePatient",
    "SourcePhoto",
    "SourceService",
    "StagingEntry",
    "StagingStatus",
    "ValidationError",
]
