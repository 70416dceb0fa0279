"""Validation service for canonical records.

These checks are deterministic and are the authority on whether Load may
run. The assistant is advisory only.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from dateutil.parser import isoparse

from ..models.record import CanonicalRecord, ValidationError
from ..models.schema import CANONICAL_SCHEMA, CanonicalType, EntitySchema, FieldType

logger = logging.getLogger(__name__)


class VCode:
    """Validation error codes."""
    UNKNOWN_ENTITY = "V000"
    MISSING_REQUIRED = "V001"
    INVALID_DATE = "V002"
    INVALID_EMAIL = "V003"
    INVALID_PHONE = "V004"
    ORPHANED_REFERENCE = "V005"
    MISSING_PATIENT_LINK = "V006"
    MISSING_PROVIDER = "V007"
    EMPTY_SECTIONS = "V008"
    INVALID_AMOUNT = "V009"
    MISSING_LINE_ITEMS = "V010"
    DUPLICATE_CANONICAL_ID = "V011"


ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}(T\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Date fields whose invalidity blocks Load; other dates only warn
BLOCKING_DATE_FIELDS = {
    (CanonicalType.APPOINTMENT.value, "startTime"),
    (CanonicalType.ENCOUNTER.value, "date"),
}

# A reference resolver answers whether (entity_type, canonical_id) is already loaded
ReferenceResolver = Callable[[str, str], bool]


def _present(value: Any) -> bool:
    return value is not None and value != ""


def is_valid_iso_date(value: str) -> bool:
    if not ISO_DATE_RE.match(value):
        return False
    try:
        isoparse(value)
        return True
    except ValueError:
        return False


@dataclass
class ValidationOutcome:
    """Per-record report, referential errors and the non-PHI sampling packet."""
    report: Dict[str, Any]
    referential_errors: List[ValidationError] = field(default_factory=list)
    sampling_packet: Dict[str, Any] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.report["invalidRecords"] == 0 and not self.referential_errors

    @property
    def summary(self) -> str:
        return (
            f"{self.report['invalidRecords']} invalid records, "
            f"{len(self.referential_errors)} referential errors"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "report": self.report,
            "referentialErrors": [e.to_dict() for e in self.referential_errors],
            "samplingPacket": self.sampling_packet,
        }


class CanonicalValidator:
    """
    Validator for canonical records before loading.

    Supports:
    - Required fields from the canonical schema, with dedicated codes for
      patient links, provider attribution, chart sections and amounts
    - Date, email and phone format checks
    - Invoice amount and line item checks
    - Duplicate canonical ids within a batch
    - Referential integrity against the batch and already-loaded records
    """

    REQUIRED_CODES = {
        "canonicalPatientId": VCode.MISSING_PATIENT_LINK,
        "providerName": VCode.MISSING_PROVIDER,
        "sections": VCode.EMPTY_SECTIONS,
        "total": VCode.INVALID_AMOUNT,
    }

    def validate_record(self, record: CanonicalRecord) -> Tuple[List[ValidationError], List[ValidationError]]:
        """
        Validate one canonical record.

        Returns:
            (errors, warnings)
        """
        errors: List[ValidationError] = []
        warnings: List[ValidationError] = []

        try:
            schema = CANONICAL_SCHEMA[CanonicalType(record.entity_type)]
        except ValueError:
            errors.append(self._error(
                record, VCode.UNKNOWN_ENTITY, f"Unknown entity type: {record.entity_type}",
            ))
            return errors, warnings

        data = record.data
        self._check_required(record, schema, errors, warnings)

        for name, definition in schema.fields.items():
            value = data.get(name)
            if not _present(value):
                continue
            if definition.type in (FieldType.DATE, FieldType.DATETIME):
                if not isinstance(value, str) or not is_valid_iso_date(value):
                    finding = self._error(record, VCode.INVALID_DATE, f"Invalid date format in {name}", name)
                    if (record.entity_type, name) in BLOCKING_DATE_FIELDS:
                        errors.append(finding)
                    else:
                        warnings.append(self._warning(finding))
            elif definition.type == FieldType.EMAIL:
                if not EMAIL_RE.match(str(value)):
                    warnings.append(self._warning(
                        self._error(record, VCode.INVALID_EMAIL, "Invalid email format", name)
                    ))
            elif definition.type == FieldType.PHONE:
                digits = re.sub(r"\D", "", str(value))
                if not 7 <= len(digits) <= 15:
                    warnings.append(self._warning(
                        self._error(record, VCode.INVALID_PHONE, "Invalid phone number length", name)
                    ))
            elif definition.type == FieldType.DECIMAL and name != "total":
                if not self._is_amount(value):
                    warnings.append(self._warning(
                        self._error(record, VCode.INVALID_AMOUNT, f"{name} must be a non-negative number", name)
                    ))

        if record.entity_type == CanonicalType.INVOICE.value:
            total = data.get("total")
            if _present(total) and not self._is_amount(total):
                errors.append(self._error(
                    record, VCode.INVALID_AMOUNT, "Invoice total must be a non-negative number", "total",
                ))
            if not data.get("lineItems"):
                warnings.append(self._warning(self._error(
                    record, VCode.MISSING_LINE_ITEMS, "Invoice has no line items", "lineItems",
                )))

        if record.entity_type in (CanonicalType.PHOTO.value, CanonicalType.DOCUMENT.value):
            if not _present(data.get("artifactKey")) and not _present(data.get("url")):
                errors.append(self._error(
                    record, VCode.MISSING_REQUIRED,
                    f"{record.entity_type.capitalize()} must reference an artifact or url", "artifactKey",
                ))

        return errors, warnings

    def _check_required(
        self,
        record: CanonicalRecord,
        schema: EntitySchema,
        errors: List[ValidationError],
        warnings: List[ValidationError],
    ) -> None:
        label = record.entity_type.capitalize()
        for name in schema.required_fields:
            value = record.data.get(name)
            if name == "sections":
                if not value:
                    warnings.append(self._warning(
                        self._error(record, VCode.EMPTY_SECTIONS, "Chart has no sections", name)
                    ))
                continue
            if _present(value):
                continue
            code = self.REQUIRED_CODES.get(name, VCode.MISSING_REQUIRED)
            if code == VCode.MISSING_PATIENT_LINK:
                message = f"{label} must link to a patient"
            elif code == VCode.MISSING_PROVIDER:
                message = f"{label} must have a provider"
            elif code == VCode.INVALID_AMOUNT:
                message = f"{label} {name} must be a non-negative number"
            else:
                message = f"{label} {name} is required"
            errors.append(self._error(record, code, message, name))

    def validate_batch(self, records: List[CanonicalRecord]) -> Dict[str, Any]:
        """
        Validate a batch of records and produce a report.

        Returns:
            Report with totalRecords, validRecords, invalidRecords,
            warningRecords, errorsByCode, errorsByEntity, errors and warnings
        """
        all_errors: List[ValidationError] = []
        all_warnings: List[ValidationError] = []
        valid = invalid = with_warnings = 0
        seen: Dict[str, str] = {}

        for record in records:
            errors, warnings = self.validate_record(record)

            previous = seen.get(record.canonical_id)
            if previous is not None:
                errors.append(self._error(
                    record, VCode.DUPLICATE_CANONICAL_ID,
                    f"Canonical id also produced by {previous} record",
                ))
            else:
                seen[record.canonical_id] = record.entity_type

            all_errors.extend(errors)
            all_warnings.extend(warnings)
            if errors:
                invalid += 1
            else:
                valid += 1
                if warnings:
                    with_warnings += 1

        errors_by_code: Dict[str, int] = {}
        errors_by_entity: Dict[str, int] = {}
        for error in all_errors:
            errors_by_code[error.code] = errors_by_code.get(error.code, 0) + 1
            errors_by_entity[error.entity_type] = errors_by_entity.get(error.entity_type, 0) + 1

        return {
            "totalRecords": len(records),
            "validRecords": valid,
            "invalidRecords": invalid,
            "warningRecords": with_warnings,
            "errorsByCode": errors_by_code,
            "errorsByEntity": errors_by_entity,
            "errors": [e.to_dict() for e in all_errors],
            "warnings": [w.to_dict() for w in all_warnings],
        }

    def validate_referential_integrity(
        self,
        records: List[CanonicalRecord],
        resolver: Optional[ReferenceResolver] = None,
    ) -> List[ValidationError]:
        """
        Check that every reference resolves in the batch or via the resolver.

        Args:
            records: Canonical records of the run
            resolver: Answers whether a canonical id of an entity type is
                already loaded (the entity map canonical index)
        """
        known: Dict[str, set] = {}
        for record in records:
            known.setdefault(record.entity_type, set()).add(record.canonical_id)

        def resolves(entity_type: str, canonical_id: str) -> bool:
            if canonical_id in known.get(entity_type, ()):
                return True
            return bool(resolver and resolver(entity_type, canonical_id))

        valid_types = {t.value for t in CanonicalType}
        errors = []
        for record in records:
            if record.entity_type not in valid_types:
                continue
            schema = CANONICAL_SCHEMA[CanonicalType(record.entity_type)]
            for name, target in schema.reference_fields.items():
                if record.entity_type == target.value:
                    continue
                reference = record.data.get(name)
                if _present(reference) and not resolves(target.value, reference):
                    errors.append(self._error(
                        record, VCode.ORPHANED_REFERENCE,
                        f"References non-existent {target.value} {reference}", name,
                    ))
        return errors

    def sampling_packet(self, records: List[CanonicalRecord], sample_limit: int = 100) -> Dict[str, Any]:
        """Non-PHI summary: entity distribution and per-field presence counts."""
        distribution: Dict[str, int] = {}
        presence: Dict[str, Dict[str, int]] = {}
        for record in records:
            distribution[record.entity_type] = distribution.get(record.entity_type, 0) + 1
            fields = presence.setdefault(record.entity_type, {})
            for key, value in record.data.items():
                if _present(value):
                    fields[key] = fields.get(key, 0) + 1
        return {
            "totalRecords": len(records),
            "sampledCount": min(len(records), sample_limit),
            "entityDistribution": distribution,
            "requiredFieldPresence": presence,
        }

    def validate(
        self,
        records: List[CanonicalRecord],
        resolver: Optional[ReferenceResolver] = None,
    ) -> ValidationOutcome:
        """Run per-record validation, the referential check and the sampling packet."""
        outcome = ValidationOutcome(
            report=self.validate_batch(records),
            referential_errors=self.validate_referential_integrity(records, resolver),
            sampling_packet=self.sampling_packet(records),
        )
        logger.info(
            f"Validated {len(records)} records: {outcome.report['validRecords']} valid, {outcome.summary}"
        )
        return outcome

    @staticmethod
    def _is_amount(value: Any) -> bool:
        return isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0

    @staticmethod
    def _error(
        record: CanonicalRecord,
        code: str,
        message: str,
        field_name: Optional[str] = None,
    ) -> ValidationError:
        return ValidationError(
            code=code,
            entity_type=record.entity_type,
            canonical_id=record.canonical_id,
            message=message,
            field=field_name,
            severity="error",
        )

    @staticmethod
    def _warning(finding: ValidationError) -> ValidationError:
        finding.severity = "warning"
        return finding
