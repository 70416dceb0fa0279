"""Canonical schema and mapping spec models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime
import json


class EntityType(str, Enum):
    """Source entity types a provider can declare. Values are artifact names."""
    PATIENTS = "patients"
    SERVICES = "services"
    APPOINTMENTS = "appointments"
    INVOICES = "invoices"
    PHOTOS = "photos"
    CHARTS = "charts"
    FORMS = "forms"
    DOCUMENTS = "documents"
    FORM_CONTENT = "form_content"


CORE_ENTITY_TYPES = frozenset({
    EntityType.PATIENTS,
    EntityType.SERVICES,
    EntityType.APPOINTMENTS,
    EntityType.INVOICES,
})

BINARY_ENTITY_TYPES = frozenset({EntityType.PHOTOS, EntityType.DOCUMENTS})


class CanonicalType(str, Enum):
    """Entity types of the canonical (target-shaped) schema."""
    PATIENT = "patient"
    APPOINTMENT = "appointment"
    ENCOUNTER = "encounter"
    CHART = "chart"
    CONSENT = "consent"
    PHOTO = "photo"
    DOCUMENT = "document"
    INVOICE = "invoice"


# Dependencies first
PROMOTION_ORDER: List[CanonicalType] = [
    CanonicalType.PATIENT,
    CanonicalType.APPOINTMENT,
    CanonicalType.ENCOUNTER,
    CanonicalType.CHART,
    CanonicalType.CONSENT,
    CanonicalType.PHOTO,
    CanonicalType.DOCUMENT,
    CanonicalType.INVOICE,
]


class FieldType(str, Enum):
    """Supported canonical field types."""
    STRING = "string"
    DATE = "date"
    DATETIME = "datetime"
    EMAIL = "email"
    PHONE = "phone"
    DECIMAL = "decimal"
    OBJECT = "object"
    ARRAY = "array"
    REFERENCE = "reference"


@dataclass
class FieldDefinition:
    """Definition of a canonical field."""
    name: str
    type: FieldType = FieldType.STRING
    required: bool = False
    references: Optional[CanonicalType] = None  # For REFERENCE fields

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.type.value, "required": self.required}
        if self.references:
            result["references"] = self.references.value
        return result


@dataclass
class EntitySchema:
    """Schema for one canonical entity type."""
    name: CanonicalType
    fields: Dict[str, FieldDefinition] = field(default_factory=dict)

    @property
    def required_fields(self) -> List[str]:
        return [name for name, f in self.fields.items() if f.required]

    @property
    def reference_fields(self) -> Dict[str, CanonicalType]:
        return {name: f.references for name, f in self.fields.items() if f.references}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name.value,
            "fields": {k: v.to_dict() for k, v in self.fields.items()},
        }


def _entity(name: CanonicalType, *specs: tuple) -> EntitySchema:
    fields_: Dict[str, FieldDefinition] = {}
    for spec in specs:
        field_name, field_type = spec[0], spec[1]
        required = len(spec) > 2 and spec[2]
        references = spec[3] if len(spec) > 3 else None
        fields_[field_name] = FieldDefinition(field_name, field_type, required, references)
    return EntitySchema(name=name, fields=fields_)


_PATIENT_REF = ("canonicalPatientId", FieldType.REFERENCE, True, CanonicalType.PATIENT)
_APPOINTMENT_REF = ("canonicalAppointmentId", FieldType.REFERENCE, False, CanonicalType.APPOINTMENT)

CANONICAL_SCHEMA: Dict[CanonicalType, EntitySchema] = {
    CanonicalType.PATIENT: _entity(
        CanonicalType.PATIENT,
        ("sourceRecordId", FieldType.STRING),
        ("firstName", FieldType.STRING, True),
        ("lastName", FieldType.STRING, True),
        ("email", FieldType.EMAIL),
        ("phone", FieldType.PHONE),
        ("dateOfBirth", FieldType.DATE),
        ("gender", FieldType.STRING),
        ("address", FieldType.STRING),
        ("city", FieldType.STRING),
        ("state", FieldType.STRING),
        ("zipCode", FieldType.STRING),
        ("allergies", FieldType.STRING),
        ("medicalNotes", FieldType.STRING),
        ("tags", FieldType.ARRAY),
    ),
    CanonicalType.APPOINTMENT: _entity(
        CanonicalType.APPOINTMENT,
        ("sourceRecordId", FieldType.STRING),
        _PATIENT_REF,
        ("providerName", FieldType.STRING, True),
        ("serviceName", FieldType.STRING),
        ("serviceSourceId", FieldType.STRING),
        ("startTime", FieldType.DATETIME, True),
        ("endTime", FieldType.DATETIME),
        ("status", FieldType.STRING, True),
        ("notes", FieldType.STRING),
    ),
    CanonicalType.ENCOUNTER: _entity(
        CanonicalType.ENCOUNTER,
        ("sourceRecordId", FieldType.STRING),
        _PATIENT_REF,
        _APPOINTMENT_REF,
        ("providerName", FieldType.STRING, True),
        ("date", FieldType.DATE),
        ("notes", FieldType.STRING),
        ("status", FieldType.STRING),
    ),
    CanonicalType.CHART: _entity(
        CanonicalType.CHART,
        ("sourceRecordId", FieldType.STRING),
        _PATIENT_REF,
        _APPOINTMENT_REF,
        ("providerName", FieldType.STRING, True),
        ("chiefComplaint", FieldType.STRING),
        ("date", FieldType.DATE),
        ("notes", FieldType.STRING),
        ("structuredData", FieldType.OBJECT),
        ("sections", FieldType.ARRAY, True),
        ("signedAt", FieldType.DATETIME),
    ),
    CanonicalType.CONSENT: _entity(
        CanonicalType.CONSENT,
        ("sourceRecordId", FieldType.STRING),
        _PATIENT_REF,
        _APPOINTMENT_REF,
        ("templateName", FieldType.STRING, True),
        ("signedAt", FieldType.DATETIME),
        ("signedByName", FieldType.STRING),
        ("content", FieldType.STRING),
        ("status", FieldType.STRING),
    ),
    CanonicalType.PHOTO: _entity(
        CanonicalType.PHOTO,
        ("sourceRecordId", FieldType.STRING),
        _PATIENT_REF,
        _APPOINTMENT_REF,
        ("filename", FieldType.STRING, True),
        ("mimeType", FieldType.STRING),
        ("category", FieldType.STRING),
        ("caption", FieldType.STRING),
        ("takenAt", FieldType.DATETIME),
        ("artifactKey", FieldType.STRING),
        ("url", FieldType.STRING),
    ),
    CanonicalType.DOCUMENT: _entity(
        CanonicalType.DOCUMENT,
        ("sourceRecordId", FieldType.STRING),
        _PATIENT_REF,
        ("filename", FieldType.STRING, True),
        ("mimeType", FieldType.STRING),
        ("category", FieldType.STRING),
        ("artifactKey", FieldType.STRING),
        ("url", FieldType.STRING),
    ),
    CanonicalType.INVOICE: _entity(
        CanonicalType.INVOICE,
        ("sourceRecordId", FieldType.STRING),
        _PATIENT_REF,
        ("invoiceNumber", FieldType.STRING),
        ("status", FieldType.STRING),
        ("total", FieldType.DECIMAL, True),
        ("subtotal", FieldType.DECIMAL),
        ("taxAmount", FieldType.DECIMAL),
        ("notes", FieldType.STRING),
        ("paidAt", FieldType.DATETIME),
        ("lineItems", FieldType.ARRAY),
    ),
}


def canonical_schema_description() -> Dict[str, Any]:
    """Describe the canonical schema for the assistant. Contains no data."""
    return {t.value: s.to_dict()["fields"] for t, s in CANONICAL_SCHEMA.items()}


ALLOWED_TRANSFORMS = frozenset({
    "normalizeDate",
    "normalizePhone",
    "normalizeEmail",
    "trim",
    "toUpper",
    "toLower",
    "mapEnum",
    "splitName",
    "concat",
    "defaultValue",
    "hashToken",
})


class ServiceAction(str, Enum):
    """What to do with a source service at Load."""
    MAP_EXISTING = "map_existing"
    CREATE_NEW = "create_new"
    SKIP = "skip"
    NEEDS_INPUT = "needs_input"


@dataclass
class FieldMapping:
    """Mapping between a source field and a canonical field."""
    source_field: str
    target_field: str
    transform: Optional[str] = None
    transform_context: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 1.0
    requires_approval: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "sourceField": self.source_field,
            "targetField": self.target_field,
            "transform": self.transform,
            "transformContext": self.transform_context,
            "confidence": self.confidence,
            "requiresApproval": self.requires_approval,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMapping":
        """Create from dictionary representation."""
        return cls(
            source_field=data.get("sourceField", ""),
            target_field=data.get("targetField", ""),
            transform=data.get("transform"),
            transform_context=data.get("transformContext") or {},
            confidence=data.get("confidence", 1.0),
            requires_approval=data.get("requiresApproval", False),
        )


@dataclass
class EntityMapping:
    """Mapping from one source artifact to one canonical entity type."""
    source_entity: str
    target_entity: str
    field_mappings: List[FieldMapping] = field(default_factory=list)
    enum_maps: Dict[str, Dict[str, str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "sourceEntity": self.source_entity,
            "targetEntity": self.target_entity,
            "fieldMappings": [m.to_dict() for m in self.field_mappings],
            "enumMaps": self.enum_maps,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityMapping":
        """Create from dictionary representation."""
        return cls(
            source_entity=data.get("sourceEntity", ""),
            target_entity=data.get("targetEntity", ""),
            field_mappings=[FieldMapping.from_dict(m) for m in data.get("fieldMappings", [])],
            enum_maps=data.get("enumMaps") or {},
        )

    def field_for(self, target_field: str) -> Optional[FieldMapping]:
        """Get the mapping that writes a canonical field."""
        for mapping in self.field_mappings:
            if mapping.target_field == target_field:
                return mapping
        return None


@dataclass
class ServiceMapping:
    """Proposed handling of one source service."""
    source_id: str
    source_name: str
    action: ServiceAction
    confidence: float
    reasoning: str
    target_id: Optional[str] = None
    target_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "sourceName": self.source_name,
            "action": self.action.value,
            "targetId": self.target_id,
            "targetName": self.target_name,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceMapping":
        return cls(
            source_id=data["sourceId"],
            source_name=data.get("sourceName", ""),
            action=ServiceAction(data.get("action", "needs_input")),
            confidence=data.get("confidence", 0.0),
            reasoning=data.get("reasoning", ""),
            target_id=data.get("targetId"),
            target_name=data.get("targetName"),
        )


@dataclass
class MappingSpec:
    """Versioned, immutable mapping from source artifacts to the canonical schema."""
    version: int
    source_vendor: str
    entity_mappings: List[EntityMapping] = field(default_factory=list)
    service_mappings: List[ServiceMapping] = field(default_factory=list)
    drafted_by: str = "heuristic"  # heuristic, assistant, operator
    created_at: datetime = field(default_factory=datetime.utcnow)

    def mapping_for(self, source_entity: str) -> Optional[EntityMapping]:
        for mapping in self.entity_mappings:
            if mapping.source_entity == source_entity:
                return mapping
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "version": self.version,
            "sourceVendor": self.source_vendor,
            "entityMappings": [m.to_dict() for m in self.entity_mappings],
            "serviceMappings": [m.to_dict() for m in self.service_mappings],
            "draftedBy": self.drafted_by,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MappingSpec":
        """Create from dictionary representation."""
        created = data.get("createdAt")
        return cls(
            version=data.get("version", 1),
            source_vendor=data.get("sourceVendor", ""),
            entity_mappings=[EntityMapping.from_dict(m) for m in data.get("entityMappings", [])],
            service_mappings=[ServiceMapping.from_dict(m) for m in data.get("serviceMappings", [])],
            drafted_by=data.get("draftedBy", "heuristic"),
            created_at=datetime.fromisoformat(created) if created else datetime.utcnow(),
        )

    @classmethod
    def from_json_file(cls, file_path: str) -> "MappingSpec":
        """Load a spec from a JSON file."""
        with open(file_path, "r") as f:
            return cls.from_dict(json.load(f))


def validate_mapping_spec(spec: Dict[str, Any]) -> List[Dict[str, str]]:
    """Structurally validate a mapping spec in wire form.

    Args:
        spec: The spec as a dictionary (e.g. parsed assistant output)

    Returns:
        List of {path, message} errors; empty when the spec is valid
    """
    errors: List[Dict[str, str]] = []

    def error(path: str, message: str) -> None:
        errors.append({"path": path, "message": message})

    if not isinstance(spec, dict):
        return [{"path": "", "message": "MappingSpec must be an object"}]

    version = spec.get("version")
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        error("version", "version must be a positive integer")
    if not isinstance(spec.get("sourceVendor"), str) or not spec.get("sourceVendor"):
        error("sourceVendor", "sourceVendor is required")

    entity_mappings = spec.get("entityMappings")
    if not isinstance(entity_mappings, list):
        error("entityMappings", "entityMappings must be an array")
        return errors

    valid_types = [t.value for t in CanonicalType]
    for i, em in enumerate(entity_mappings):
        prefix = f"entityMappings[{i}]"
        if not isinstance(em, dict):
            error(prefix, "entity mapping must be an object")
            continue
        if not isinstance(em.get("sourceEntity"), str) or not em.get("sourceEntity"):
            error(f"{prefix}.sourceEntity", "sourceEntity is required")

        target = em.get("targetEntity")
        if target not in valid_types:
            error(f"{prefix}.targetEntity", f"targetEntity must be one of: {', '.join(valid_types)}")
            target_fields: Dict[str, FieldDefinition] = {}
        else:
            target_fields = CANONICAL_SCHEMA[CanonicalType(target)].fields

        field_mappings = em.get("fieldMappings")
        if not isinstance(field_mappings, list):
            error(f"{prefix}.fieldMappings", "fieldMappings must be an array")
            continue

        for j, fm in enumerate(field_mappings):
            f_prefix = f"{prefix}.fieldMappings[{j}]"
            if not isinstance(fm, dict):
                error(f_prefix, "field mapping must be an object")
                continue
            if not isinstance(fm.get("sourceField"), str) or not fm.get("sourceField"):
                error(f"{f_prefix}.sourceField", "sourceField is required")
            target_field = fm.get("targetField")
            if not isinstance(target_field, str) or not target_field:
                error(f"{f_prefix}.targetField", "targetField is required")
            elif target_fields and target_field not in target_fields:
                error(f"{f_prefix}.targetField", f'Unknown field "{target_field}" for {target}')
            transform = fm.get("transform")
            if transform is not None and transform not in ALLOWED_TRANSFORMS:
                error(f"{f_prefix}.transform", f'Transform "{transform}" is not in the allowlist')
            confidence = fm.get("confidence")
            if not isinstance(confidence, (int, float)) or not 0 <= confidence <= 1:
                error(f"{f_prefix}.confidence", "confidence must be between 0 and 1")

        enum_maps = em.get("enumMaps")
        if enum_maps is not None and not isinstance(enum_maps, dict):
            error(f"{prefix}.enumMaps", "enumMaps must be an object")

    return errors
