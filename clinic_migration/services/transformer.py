"""Transformation engine for converting source artifacts to canonical records."""

import re
import os
import hmac
import json
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from dateutil import parser as date_parser

from ..errors import MappingSpecError
from ..models.record import CanonicalRecord
from ..models.schema import (
    ALLOWED_TRANSFORMS,
    CanonicalType,
    EntityMapping,
    EntityType,
    FieldMapping,
)
from .form_classifier import FormClassification, FormKind, build_narrative, classify_form

logger = logging.getLogger(__name__)

DEFAULT_MASKING_SECRET = "dev-secret"

# Canonical fields holding references; values are source ids until Transform
REFERENCE_FIELDS = ("canonicalPatientId", "canonicalAppointmentId")

AMOUNT_FIELDS = ("total", "subtotal", "taxAmount")

_ISO_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_US_DATE_RE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{2,4})$")


def masking_secret() -> str:
    return os.environ.get("MIGRATION_MASKING_SECRET", DEFAULT_MASKING_SECRET)


def generate_canonical_id(clinic_id: str, vendor: str, source_id: str) -> str:
    """Deterministic canonical id of a source record."""
    digest = hashlib.sha256(f"{clinic_id}:{vendor}:{source_id}".encode("utf-8")).hexdigest()
    return digest[:24]


def record_checksum(data: Dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(data, sort_keys=True, default=str).encode("utf-8")).hexdigest()


def normalize_date(value: str) -> str:
    """
    Normalize a date to ``YYYY-MM-DD``.

    ISO strings keep their date part, ``M/D/YY(YY)`` is reordered (two-digit
    years are read as 20YY) and anything else dateutil can parse is
    converted. Unparseable values are returned unchanged.
    """
    value = value.strip()
    if _ISO_RE.match(value):
        return value[:10]

    match = _US_DATE_RE.match(value)
    if match:
        month, day, year = match.groups()
        if len(year) == 2:
            year = f"20{year}"
        return f"{year}-{month.zfill(2)}-{day.zfill(2)}"

    try:
        return date_parser.parse(value).date().isoformat()
    except (ValueError, OverflowError):
        return value


def normalize_phone(value: str) -> str:
    digits = re.sub(r"\D", "", value)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return f"+{digits}"


def normalize_email(value: str) -> str:
    return value.strip().lower()


def split_name(value: str, component: str = "first") -> str:
    parts = value.split()
    if component == "first":
        return parts[0] if parts else ""
    return " ".join(parts[1:])


def hash_token(value: str, secret: Optional[str] = None) -> str:
    """HMAC-SHA256 of a value, truncated to 16 hex chars."""
    key = (secret or masking_secret()).encode("utf-8")
    return hmac.new(key, value.encode("utf-8"), hashlib.sha256).hexdigest()[:16]


@dataclass
class TransformOutcome:
    """Canonical records of one artifact plus the records that did not make it."""
    source_entity: str
    records: List[CanonicalRecord] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for record in self.records:
            counts[record.entity_type] = counts.get(record.entity_type, 0) + 1
        return counts


class TransformEngine:
    """
    Engine for transforming source records to canonical records.

    Supports:
    - The allowlisted transform functions only
    - Enum maps keyed by source field
    - Nested field access with dot notation
    - Deterministic canonical ids and reference conversion
    - Routing of submitted forms to charts or consents
    """

    def __init__(self, clinic_id: str, source_vendor: str, secret: Optional[str] = None):
        """
        Initialize the transform engine.

        Args:
            clinic_id: Clinic the records belong to
            source_vendor: Vendor key used in canonical ids
            secret: Secret for hashToken; defaults to MIGRATION_MASKING_SECRET
        """
        self.clinic_id = clinic_id
        self.source_vendor = source_vendor
        self._secret = secret
        self._transforms = self._register_builtin_transforms()

    def _register_builtin_transforms(self) -> Dict[str, Callable]:
        """Register all built-in transformation functions."""
        transforms = {
            "normalizeDate": lambda v, ctx, rec: normalize_date(v),
            "normalizePhone": lambda v, ctx, rec: normalize_phone(v),
            "normalizeEmail": lambda v, ctx, rec: normalize_email(v),
            "trim": lambda v, ctx, rec: v.strip(),
            "toUpper": lambda v, ctx, rec: v.upper(),
            "toLower": lambda v, ctx, rec: v.lower(),
            "mapEnum": self._transform_map_enum,
            "splitName": lambda v, ctx, rec: split_name(v, ctx.get("nameComponent", "first")),
            "concat": self._transform_concat,
            "defaultValue": lambda v, ctx, rec: v or ctx.get("defaultValue", ""),
            "hashToken": lambda v, ctx, rec: hash_token(v, self._secret),
        }
        return {name: transforms[name] for name in ALLOWED_TRANSFORMS}

    def _transform_map_enum(self, value: str, ctx: Dict[str, Any], record: Dict[str, Any]) -> str:
        return (ctx.get("enumMap") or {}).get(value, value)

    def _transform_concat(self, value: str, ctx: Dict[str, Any], record: Dict[str, Any]) -> str:
        """Join the value with further source fields named in ``concatFields``."""
        parts = [value]
        for name in ctx.get("concatFields") or []:
            extra = self._get_nested_value(record, name)
            if extra not in (None, ""):
                parts.append(str(extra))
        return ctx.get("separator", " ").join(p for p in parts if p)

    def execute_transform(
        self,
        name: str,
        value: Any,
        context: Optional[Dict[str, Any]] = None,
        record: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Execute one allowlisted transform.

        A missing value yields the default for ``defaultValue`` and an empty
        string for every other transform.

        Raises:
            MappingSpecError: If the transform is not allowlisted
        """
        transform = self._transforms.get(name)
        if transform is None:
            raise MappingSpecError(f"Transform not allowed: {name}")
        context = context or {}

        if value is None:
            if name == "defaultValue" and context.get("defaultValue") is not None:
                return context["defaultValue"]
            return ""

        return transform(str(value), context, record or {})

    def transform_record(
        self,
        record: Dict[str, Any],
        mapping: EntityMapping,
        source_entity: str,
    ) -> CanonicalRecord:
        """
        Transform one source record with an entity mapping.

        Args:
            record: Source record in artifact (camelCase) shape
            mapping: Entity mapping to apply
            source_entity: Artifact the record came from

        Returns:
            Canonical record with references converted to canonical ids

        Raises:
            ValueError: If the record has no source id
            MappingSpecError: If the mapping uses a non-allowlisted transform
        """
        source_id = self._source_id(record, mapping)
        data: Dict[str, Any] = {"sourceRecordId": source_id}

        for field_mapping in mapping.field_mappings:
            if field_mapping.target_field in ("sourceRecordId", "canonicalId"):
                continue
            value = self._apply(field_mapping, record, mapping)
            if field_mapping.target_field in REFERENCE_FIELDS and value not in (None, ""):
                value = generate_canonical_id(self.clinic_id, self.source_vendor, str(value))
            if value is not None:
                self._set_nested_value(data, field_mapping.target_field, value)

        self._post_process(mapping.target_entity, data)
        return self._canonical(mapping.target_entity, source_id, data, source_entity)

    def transform_form(
        self,
        record: Dict[str, Any],
        mapping: EntityMapping,
        classification: Optional[FormClassification] = None,
    ) -> Optional[CanonicalRecord]:
        """
        Transform a submitted form into a chart or consent record.

        Returns:
            The canonical record, or None when the form is classified as skip
        """
        classification = classification or classify_form(record)
        if classification.classification == FormKind.SKIP:
            return None

        base = self.transform_record(record, mapping, EntityType.FORMS.value)
        source_id = base.source_record_id

        if classification.classification == FormKind.CLINICAL_CHART:
            chart = classification.chart_data
            submitted_at = record.get("submittedAt")
            data = {
                "sourceRecordId": source_id,
                "canonicalPatientId": base.data.get("canonicalPatientId"),
                "canonicalAppointmentId": base.data.get("canonicalAppointmentId"),
                "providerName": record.get("submittedByName") or base.data.get("signedByName"),
                "chiefComplaint": chart.chief_complaint,
                "date": normalize_date(submitted_at) if submitted_at else None,
                "signedAt": submitted_at,
                "sections": [{
                    "title": chart.treatment_card_title,
                    "templateType": chart.template_type,
                    "narrativeText": chart.narrative_text,
                    "structuredData": chart.structured_data,
                }],
            }
            data = {k: v for k, v in data.items() if v is not None}
            return self._canonical(CanonicalType.CHART.value, source_id, data, EntityType.FORMS.value)

        data = dict(base.data)
        if not data.get("content"):
            data["content"] = build_narrative(record.get("fields") or [])
        return self._canonical(CanonicalType.CONSENT.value, source_id, data, EntityType.FORMS.value)

    def transform_artifact(
        self,
        source_entity: str,
        records: List[Dict[str, Any]],
        mapping: EntityMapping,
        classifications: Optional[Dict[str, FormClassification]] = None,
    ) -> TransformOutcome:
        """
        Transform every record of one artifact.

        Per-record failures are collected and never abort the artifact.
        """
        outcome = TransformOutcome(source_entity)
        classifications = classifications or {}
        is_forms = source_entity == EntityType.FORMS.value

        for record in records:
            source_id = str(record.get("sourceId") or record.get("id") or "")
            try:
                if is_forms:
                    classification = classifications.get(source_id) or classify_form(record)
                    canonical = self.transform_form(record, mapping, classification)
                    if canonical is None:
                        outcome.skipped.append({
                            "source_id": source_id,
                            "reasoning": classification.reasoning,
                            "raw_data": record,
                        })
                        continue
                else:
                    canonical = self.transform_record(record, mapping, source_entity)
                outcome.records.append(canonical)
            except MappingSpecError:
                raise
            except Exception as e:
                logger.error(f"Transform failed for {source_entity} {source_id}: {e}")
                outcome.failed.append({
                    "source_id": source_id,
                    "error_message": str(e),
                    "raw_data": record,
                })

        logger.info(
            f"Transformed {source_entity}: {len(outcome.records)} records, "
            f"{len(outcome.skipped)} skipped, {len(outcome.failed)} failed"
        )
        return outcome

    def _apply(self, field_mapping: FieldMapping, record: Dict[str, Any], mapping: EntityMapping) -> Any:
        value = self._get_nested_value(record, field_mapping.source_field)
        if not field_mapping.transform:
            return value

        context = dict(field_mapping.transform_context or {})
        enum_map = mapping.enum_maps.get(field_mapping.source_field)
        if enum_map and "enumMap" not in context:
            context["enumMap"] = enum_map
        return self.execute_transform(field_mapping.transform, value, context, record)

    def _source_id(self, record: Dict[str, Any], mapping: EntityMapping) -> str:
        id_mapping = mapping.field_for("sourceRecordId")
        value = None
        if id_mapping:
            value = self._get_nested_value(record, id_mapping.source_field)
        if value in (None, ""):
            value = record.get("sourceId") or record.get("id")
        if value in (None, ""):
            raise ValueError("Record has no source id")
        return str(value)

    def _canonical(self, entity_type: str, source_id: str, data: Dict[str, Any], source_entity: str) -> CanonicalRecord:
        return CanonicalRecord(
            entity_type=entity_type,
            canonical_id=generate_canonical_id(self.clinic_id, self.source_vendor, source_id),
            source_record_id=source_id,
            data=data,
            checksum=record_checksum(data),
            source_entity=source_entity,
        )

    def _post_process(self, target_entity: str, data: Dict[str, Any]) -> None:
        """Fill derived canonical fields the mapping cannot express."""
        if target_entity == CanonicalType.CHART.value and not data.get("sections"):
            notes = data.get("notes")
            structured = data.get("structuredData")
            if notes or structured:
                data["sections"] = [{
                    "title": "Notes",
                    "narrativeText": notes or "",
                    "structuredData": structured or {},
                }]
            else:
                data["sections"] = []

        if target_entity == CanonicalType.INVOICE.value:
            for name in AMOUNT_FIELDS:
                value = data.get(name)
                if isinstance(value, str) and value.strip():
                    try:
                        data[name] = float(value)
                    except ValueError:
                        pass  # left as-is; the validator reports V009

    def _get_nested_value(self, data: Dict[str, Any], path: str) -> Any:
        """Get a nested value using dot notation."""
        if not path:
            return None
        if path in data:
            return data[path]

        value: Any = data
        for part in path.split("."):
            if isinstance(value, dict):
                value = value.get(part)
            elif isinstance(value, list) and part.isdigit():
                idx = int(part)
                value = value[idx] if idx < len(value) else None
            else:
                return None
        return value

    def _set_nested_value(self, data: Dict[str, Any], path: str, value: Any) -> None:
        """Set a nested value using dot notation."""
        parts = path.split(".")
        current = data
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        current[parts[-1]] = value
