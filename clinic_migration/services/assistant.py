"""Migration assistant: discovery, service matching, form classification and mapping drafts.

The assistant only ever sees the safe context (field names, types, rates
and count-only distributions), counts, and service catalog names. Every use
case has a deterministic fallback that runs when no API key is configured
or the assistant is rate limited.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..errors import AssistantError, ConfigurationError, MappingSpecError
from ..models.schema import (
    CANONICAL_SCHEMA,
    CanonicalType,
    EntityMapping,
    FieldMapping,
    MappingSpec,
    ServiceAction,
    ServiceMapping,
    validate_mapping_spec,
)
from .form_classifier import FormClassification, classify_form

logger = logging.getLogger(__name__)

TEMPERATURE = 0.2
MAX_TOKENS = 4096
APPROVAL_THRESHOLD = 0.8

SUPPORTED_PROVIDERS = ("openai", "anthropic")

DISCOVERY_SYSTEM_PROMPT = """You are a data migration specialist for medical spa clinics.
You are given entity counts and data quality findings from a clinic's existing platform.
Write a short summary for the clinic owner, as if briefing them. Be specific with numbers.
Respond with JSON: {"summary": "..."}"""

SERVICE_MAPPING_SYSTEM_PROMPT = """You are a data migration specialist matching source platform services
to the target clinic's service catalog.

For each source service choose one action:
- map_existing: confidently matches an existing target service (confidence >= 0.8)
- create_new: no good match exists, create it in the target catalog
- skip: duplicate, inactive or test data that should not be migrated
- needs_input: ambiguous, the operator must decide

Consider name similarity, category alignment and price range.
Respond with JSON: {"mappings": [{"sourceId", "sourceName", "action", "targetId", "targetName",
"confidence", "reasoning"}]}"""

MAPPING_SYSTEM_PROMPT = """You are a data migration specialist drafting a mapping spec from a clinic's
source export to a canonical clinical schema.

Rules:
- You only see metadata: field names, inferred types, null and unique rates, count-only distributions.
- Return a valid MappingSpec as JSON.
- Only use these transforms: normalizeDate, normalizePhone, normalizeEmail, trim, toUpper, toLower,
  mapEnum, splitName, concat, defaultValue, hashToken.
- Any field mapping with confidence below 0.8 must set requiresApproval to true.
- targetEntity must be one of: patient, appointment, encounter, chart, consent, photo, document, invoice.
- References to patients and appointments map to canonicalPatientId and canonicalAppointmentId.

Output format:
{"version": 1, "sourceVendor": "...", "entityMappings": [{"sourceEntity": "...", "targetEntity": "...",
"fieldMappings": [{"sourceField": "...", "targetField": "...", "transform": null, "transformContext": {},
"confidence": 0.9, "requiresApproval": false}], "enumMaps": {}}]}"""

VERIFICATION_SYSTEM_PROMPT = """You are a data migration specialist writing a post-migration verification
summary for a medical spa clinic. You are given record counts per entity type and outcome.
Be reassuring but honest about failures and skipped records.
Respond with JSON: {"summary": "...", "warnings": ["..."]}"""

_SUMMARY_SCHEMA = {
    "type": "object",
    "properties": {"summary": {"type": "string"}},
    "required": ["summary"],
}

_SERVICE_MAPPING_SCHEMA = {
    "type": "object",
    "properties": {
        "mappings": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "sourceId": {"type": "string"},
                    "sourceName": {"type": "string"},
                    "action": {"type": "string", "enum": [a.value for a in ServiceAction]},
                    "targetId": {"type": ["string", "null"]},
                    "targetName": {"type": ["string", "null"]},
                    "confidence": {"type": "number"},
                    "reasoning": {"type": "string"},
                },
                "required": ["sourceId", "action", "confidence", "reasoning"],
            },
        },
    },
    "required": ["mappings"],
}

_MAPPING_SPEC_SCHEMA = {
    "type": "object",
    "properties": {
        "version": {"type": "integer"},
        "sourceVendor": {"type": "string"},
        "entityMappings": {"type": "array", "items": {"type": "object"}},
    },
    "required": ["version", "sourceVendor", "entityMappings"],
}

_VERIFICATION_SCHEMA = {
    "type": "object",
    "properties": {
        "summary": {"type": "string"},
        "warnings": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["summary", "warnings"],
}

ENTITY_ALIASES = {
    "patients": CanonicalType.PATIENT, "patient": CanonicalType.PATIENT,
    "clients": CanonicalType.PATIENT, "client": CanonicalType.PATIENT,
    "appointments": CanonicalType.APPOINTMENT, "appointment": CanonicalType.APPOINTMENT,
    "bookings": CanonicalType.APPOINTMENT,
    "charts": CanonicalType.CHART, "chart": CanonicalType.CHART,
    "encounters": CanonicalType.ENCOUNTER, "encounter": CanonicalType.ENCOUNTER,
    "consents": CanonicalType.CONSENT, "consent": CanonicalType.CONSENT,
    "forms": CanonicalType.CONSENT,
    "photos": CanonicalType.PHOTO, "photo": CanonicalType.PHOTO,
    "documents": CanonicalType.DOCUMENT, "document": CanonicalType.DOCUMENT,
    "invoices": CanonicalType.INVOICE, "invoice": CanonicalType.INVOICE,
}

# Keys are normalized source names (lowercase, no separators)
FIELD_ALIASES = {
    "fname": "firstName",
    "lname": "lastName",
    "dob": "dateOfBirth",
    "birthdate": "dateOfBirth",
    "birthday": "dateOfBirth",
    "phonenumber": "phone",
    "mobile": "phone",
    "cell": "phone",
    "emailaddress": "email",
    "mail": "email",
    "zip": "zipCode",
    "postalcode": "zipCode",
    "provider": "providerName",
    "doctor": "providerName",
    "service": "serviceName",
    "serviceid": "serviceSourceId",
    "start": "startTime",
    "startdate": "startTime",
    "end": "endTime",
    "enddate": "endTime",
    "id": "sourceRecordId",
    "sourceid": "sourceRecordId",
    "patientid": "canonicalPatientId",
    "clientid": "canonicalPatientId",
    "patientsourceid": "canonicalPatientId",
    "appointmentid": "canonicalAppointmentId",
    "appointmentsourceid": "canonicalAppointmentId",
    "submittedat": "signedAt",
    "submittedbyname": "signedByName",
    "name": "filename",
    "contenttype": "mimeType",
    "amount": "total",
    "tax": "taxAmount",
}

# Source fields holding a full name; split into first and last
FULL_NAME_FIELDS = ("name", "fullname", "patientname", "clientname")


def _normalize(name: str) -> str:
    return re.sub(r"[_\-\s]", "", name).lower()


def match_canonical_entity(source_entity: str) -> Optional[CanonicalType]:
    """Canonical entity for a source artifact name, or None (services and unknown artifacts)."""
    return ENTITY_ALIASES.get(source_entity.lower())


def match_canonical_field(source_field: str, target: CanonicalType) -> Optional[str]:
    """Canonical field a source field maps to: a direct name match first, then an alias."""
    fields_ = CANONICAL_SCHEMA[target].fields
    normalized = _normalize(source_field)
    for name in fields_:
        if name.lower() == normalized:
            return name
    alias = FIELD_ALIASES.get(normalized)
    if alias in fields_:
        return alias
    return None


def suggest_transform(source_field: str, target_field: str) -> Tuple[Optional[str], Dict[str, Any]]:
    target = target_field.lower()
    if "date" in target:
        return "normalizeDate", {}
    if target == "phone":
        return "normalizePhone", {}
    if target == "email":
        return "normalizeEmail", {}
    if target_field in ("firstName", "lastName"):
        source = source_field.lower()
        if "full" in source or source == "name":
            component = "first" if target_field == "firstName" else "last"
            return "splitName", {"nameComponent": component}
        return "trim", {}
    return None, {}


def estimate_confidence(source_field: str, target_field: str) -> float:
    source = _normalize(source_field)
    target = target_field.lower()
    if source == target:
        return 0.95
    if source in target or target in source:
        return 0.85
    return 0.6


def heuristic_mapping_spec(safe_context: Dict[str, Any], vendor: str, version: int = 1) -> MappingSpec:
    """
    Draft a mapping spec from field names alone.

    Artifacts without a canonical counterpart (services, unknown files) are
    left unmapped; services are handled by service mappings.
    """
    spec = MappingSpec(version=version, source_vendor=vendor, drafted_by="heuristic")

    for entity in safe_context.get("sourceProfile", {}).get("entities", []):
        source_entity = entity.get("type", "")
        target = match_canonical_entity(source_entity)
        if target is None:
            logger.info(f"No canonical entity for {source_entity}, leaving it unmapped")
            continue

        mapping = EntityMapping(source_entity=source_entity, target_entity=target.value)
        used = set()
        for fld in entity.get("fields", []):
            name = fld.get("name", "")
            if _normalize(name) in FULL_NAME_FIELDS and "firstName" in CANONICAL_SCHEMA[target].fields:
                targets = [t for t in ("firstName", "lastName") if t not in used]
                confidence = 0.6
            else:
                target_field = match_canonical_field(name, target)
                if not target_field or target_field in used:
                    continue
                targets = [target_field]
                confidence = estimate_confidence(name, target_field)

            for target_field in targets:
                transform, context = suggest_transform(name, target_field)
                mapping.field_mappings.append(FieldMapping(
                    source_field=name,
                    target_field=target_field,
                    transform=transform,
                    transform_context=context,
                    confidence=confidence,
                    requires_approval=confidence < APPROVAL_THRESHOLD,
                ))
                used.add(target_field)

        spec.entity_mappings.append(mapping)

    return spec


@dataclass
class DataIssue:
    severity: str  # info, warning, error
    entity_type: str
    description: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity,
            "entityType": self.entity_type,
            "description": self.description,
            "count": self.count,
        }


@dataclass
class DiscoveryResult:
    summary: str
    entities: List[Dict[str, Any]] = field(default_factory=list)
    issues: List[DataIssue] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "entities": self.entities,
            "issues": [i.to_dict() for i in self.issues],
            "recommendations": self.recommendations,
        }


@dataclass
class ServiceMappingProposal:
    mappings: List[ServiceMapping] = field(default_factory=list)

    @property
    def auto_resolved(self) -> int:
        return sum(1 for m in self.mappings if m.action != ServiceAction.NEEDS_INPUT)

    @property
    def needs_input(self) -> int:
        return sum(1 for m in self.mappings if m.action == ServiceAction.NEEDS_INPUT)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mappings": [m.to_dict() for m in self.mappings],
            "autoResolved": self.auto_resolved,
            "needsInput": self.needs_input,
        }


@dataclass
class VerificationReport:
    summary: str
    results: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"summary": self.summary, "results": self.results, "warnings": self.warnings}


def detect_data_issues(
    patients: List[Dict[str, Any]],
    services: List[Dict[str, Any]],
    appointments: List[Dict[str, Any]],
) -> List[DataIssue]:
    """Deterministic data quality findings over source records in artifact shape."""
    issues: List[DataIssue] = []

    no_email = [p for p in patients if not p.get("email")]
    if no_email:
        issues.append(DataIssue(
            "warning", "patient", f"{len(no_email)} patients have no email address", len(no_email),
        ))

    email_counts: Dict[str, int] = {}
    for patient in patients:
        if patient.get("email"):
            email = str(patient["email"]).lower()
            email_counts[email] = email_counts.get(email, 0) + 1
    duplicate_emails = [e for e, c in email_counts.items() if c > 1]
    if duplicate_emails:
        issues.append(DataIssue(
            "warning", "patient",
            f"{len(duplicate_emails)} duplicate email addresses found (possible duplicate patient records)",
            len(duplicate_emails),
        ))

    name_counts: Dict[str, int] = {}
    for service in services:
        name = str(service.get("name") or "").lower().strip()
        name_counts[name] = name_counts.get(name, 0) + 1
    duplicate_services = [n for n, c in name_counts.items() if c > 1]
    if duplicate_services:
        issues.append(DataIssue(
            "info", "service",
            f"{len(duplicate_services)} possible duplicate services detected by name",
            len(duplicate_services),
        ))

    service_ids = {s.get("sourceId") for s in services}
    patient_ids = {p.get("sourceId") for p in patients}

    orphaned_service = [
        a for a in appointments
        if a.get("serviceSourceId") and a["serviceSourceId"] not in service_ids
    ]
    if orphaned_service:
        issues.append(DataIssue(
            "warning", "appointment",
            f"{len(orphaned_service)} appointments reference services not found in source data",
            len(orphaned_service),
        ))

    orphaned_patient = [a for a in appointments if a.get("patientSourceId") not in patient_ids]
    if orphaned_patient:
        issues.append(DataIssue(
            "error", "appointment",
            f"{len(orphaned_patient)} appointments reference patients not found in source data",
            len(orphaned_patient),
        ))

    providers = sorted({a["providerName"] for a in appointments if a.get("providerName")})
    if providers:
        issues.append(DataIssue(
            "info", "appointment",
            f"Found {len(providers)} unique provider names: {', '.join(providers)}",
            len(providers),
        ))

    return issues


class MigrationAssistant:
    """
    External assistant for the advisory steps of a migration.

    Supports:
    - Source discovery summaries over counts and data quality findings
    - Service catalog matching
    - Form classification
    - Mapping spec drafts from the safe context
    - Post-migration verification summaries

    Every answer is advisory: mapping drafts are structurally validated and
    still need human approval before Transform.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o",
        provider: str = "openai",
        offline: bool = False,
    ):
        """
        Initialize the assistant.

        Args:
            api_key: API key for the LLM provider; read from the environment when omitted
            model: Model to use
            provider: LLM provider (openai, anthropic)
            offline: Never call the provider, always use the deterministic fallback
        """
        if provider not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(f"Unsupported assistant provider: {provider}")
        env_var = "ANTHROPIC_API_KEY" if provider == "anthropic" else "OPENAI_API_KEY"
        self.api_key = None if offline else (api_key or os.environ.get(env_var))
        self.model = model
        self.provider = provider

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def discover(self, samples: Dict[str, List[Dict[str, Any]]]) -> DiscoveryResult:
        """
        Summarize what the source holds.

        Args:
            samples: Source records per artifact name (patients, services, ...)
        """
        counts = {name: len(records) for name, records in samples.items()}
        issues = detect_data_issues(
            samples.get("patients", []),
            samples.get("services", []),
            samples.get("appointments", []),
        )
        listed = ", ".join(f"{count} {name}" for name, count in counts.items())
        result = DiscoveryResult(
            summary=f"I found {listed} in the source platform.",
            entities=[{"type": name, "count": count} for name, count in counts.items()],
            issues=issues,
            recommendations=[
                "Review duplicate patient records before importing",
                "Verify service mappings match your current catalog",
            ],
        )

        message = json.dumps({"entityCounts": counts, "issues": [i.to_dict() for i in issues]}, indent=2)
        answer = self._ask(DISCOVERY_SYSTEM_PROMPT, message, "discovery", _SUMMARY_SCHEMA)
        if answer and answer.get("summary"):
            result.summary = answer["summary"]
        return result

    def propose_service_mappings(
        self,
        source_services: List[Dict[str, Any]],
        target_services: List[Dict[str, Any]],
    ) -> ServiceMappingProposal:
        """
        Match source services to the target catalog.

        Args:
            source_services: Source services in artifact shape (sourceId, name, ...)
            target_services: Target services as {id, name} dicts
        """
        message = (
            "SOURCE SERVICES:\n"
            + json.dumps([
                {k: s.get(k) for k in ("sourceId", "name", "category", "price", "duration", "isActive")}
                for s in source_services
            ], indent=2)
            + "\n\nTARGET SERVICES:\n"
            + json.dumps([{"id": t.get("id"), "name": t.get("name")} for t in target_services], indent=2)
        )
        answer = self._ask(SERVICE_MAPPING_SYSTEM_PROMPT, message, "service_mappings", _SERVICE_MAPPING_SCHEMA)
        if answer is not None:
            try:
                return ServiceMappingProposal([ServiceMapping.from_dict(m) for m in answer["mappings"]])
            except (KeyError, TypeError, ValueError) as e:
                raise AssistantError(f"Malformed service mapping response: {e}") from e

        proposal = ServiceMappingProposal()
        for service in source_services:
            name = str(service.get("name") or "")
            match = next(
                (t for t in target_services if str(t.get("name", "")).lower() == name.lower()),
                None,
            )
            if match:
                proposal.mappings.append(ServiceMapping(
                    source_id=service["sourceId"],
                    source_name=name,
                    action=ServiceAction.MAP_EXISTING,
                    confidence=0.95,
                    reasoning=f'Exact name match with "{match["name"]}"',
                    target_id=match["id"],
                    target_name=match["name"],
                ))
            else:
                proposal.mappings.append(ServiceMapping(
                    source_id=service["sourceId"],
                    source_name=name,
                    action=ServiceAction.CREATE_NEW,
                    confidence=0.7,
                    reasoning="No matching service found in the target catalog, will create new",
                ))
        return proposal

    def classify_forms(self, forms: List[Dict[str, Any]]) -> List[FormClassification]:
        """Classify submitted forms. Always deterministic; form content never leaves the process."""
        return [classify_form(form) for form in forms]

    def draft_mapping_spec(
        self,
        safe_context: Dict[str, Any],
        vendor: str,
        version: int = 1,
    ) -> MappingSpec:
        """
        Draft a mapping spec from the safe context.

        Raises:
            MappingSpecError: If the assistant's proposal fails structural validation
        """
        answer = self._ask(MAPPING_SYSTEM_PROMPT, json.dumps(safe_context, indent=2), "mapping_spec", _MAPPING_SPEC_SCHEMA)
        if answer is None:
            spec = heuristic_mapping_spec(safe_context, vendor, version)
            logger.info(f"Drafted heuristic mapping spec with {len(spec.entity_mappings)} entity mappings")
            return spec

        answer["version"] = version
        answer["sourceVendor"] = answer.get("sourceVendor") or vendor
        errors = validate_mapping_spec(answer)
        if errors:
            raise MappingSpecError(f"Assistant mapping spec is invalid ({len(errors)} errors)", errors)

        spec = MappingSpec.from_dict(answer)
        spec.drafted_by = "assistant"
        for entity in spec.entity_mappings:
            for mapping in entity.field_mappings:
                if mapping.confidence < APPROVAL_THRESHOLD:
                    mapping.requires_approval = True
        return spec

    def verification_summary(self, logs: List[Dict[str, Any]]) -> VerificationReport:
        """
        Summarize Load outcomes.

        Args:
            logs: Log entries with entity_type and status
        """
        counts: Dict[str, Dict[str, int]] = {}
        for entry in logs:
            per_entity = counts.setdefault(
                entry["entity_type"], {"imported": 0, "skipped": 0, "failed": 0, "duplicate": 0},
            )
            per_entity[entry["status"]] = per_entity.get(entry["status"], 0) + 1

        results = [
            {
                "entityType": entity,
                "sourceCount": sum(c.values()),
                "imported": c["imported"],
                "skipped": c["skipped"] + c["duplicate"],
                "failed": c["failed"],
            }
            for entity, c in counts.items()
        ]
        imported = sum(r["imported"] for r in results)
        failed = sum(r["failed"] for r in results)
        tail = f"{failed} records failed and may need manual review." if failed else "No failures."
        report = VerificationReport(
            summary=(
                f"Migration complete. {imported} records imported successfully across "
                f"{len(results)} entity types. {tail}"
            ),
            results=results,
            warnings=[f"{failed} records failed to import. Review the error details for each."] if failed else [],
        )

        answer = self._ask(VERIFICATION_SYSTEM_PROMPT, json.dumps(counts, indent=2), "verification", _VERIFICATION_SCHEMA)
        if answer and answer.get("summary"):
            report.summary = answer["summary"]
            report.warnings = list(answer.get("warnings") or report.warnings)
        return report

    def _ask(
        self,
        system_prompt: str,
        message: str,
        schema_name: str,
        schema: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """
        Ask the assistant for a JSON answer.

        Returns:
            The parsed answer, or None when the deterministic fallback should be used

        Raises:
            AssistantError: On an empty or unusable response, or any provider failure
        """
        if not self.enabled:
            logger.debug(f"No assistant API key, using fallback for {schema_name}")
            return None

        try:
            return self._call_llm(system_prompt, message, schema_name, schema)
        except AssistantError:
            raise
        except Exception as e:
            status = getattr(e, "status_code", None) or getattr(e, "status", None)
            if status == 429:
                logger.warning(f"Assistant rate limited, using fallback for {schema_name}")
                return None
            raise AssistantError(f"Migration assistant error: {e}") from e

    def _call_llm(self, system_prompt: str, message: str, schema_name: str, schema: Dict[str, Any]) -> Dict[str, Any]:
        """Call the LLM API."""
        if self.provider == "openai":
            return self._call_openai(system_prompt, message, schema_name, schema)
        return self._call_anthropic(system_prompt, message)

    def _call_openai(self, system_prompt: str, message: str, schema_name: str, schema: Dict[str, Any]) -> Dict[str, Any]:
        """Call OpenAI API."""
        try:
            import openai
        except ImportError:
            raise ImportError("openai package required for the OpenAI assistant")

        client = openai.OpenAI(api_key=self.api_key)
        response = client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": message},
            ],
            temperature=TEMPERATURE,
            max_tokens=MAX_TOKENS,
            response_format={
                "type": "json_schema",
                "json_schema": {"name": schema_name, "schema": schema},
            },
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise AssistantError("Empty response from assistant")
        return json.loads(content)

    def _call_anthropic(self, system_prompt: str, message: str) -> Dict[str, Any]:
        """Call Anthropic API."""
        try:
            import anthropic
        except ImportError:
            raise ImportError("anthropic package required for the Anthropic assistant")

        client = anthropic.Anthropic(api_key=self.api_key)
        response = client.messages.create(
            model=self.model,
            max_tokens=MAX_TOKENS,
            temperature=TEMPERATURE,
            system=system_prompt,
            messages=[{"role": "user", "content": message}],
        )
        content = response.content[0].text if response.content else ""
        if not content:
            raise AssistantError("Empty response from assistant")

        # Extract JSON from response
        json_match = re.search(r'[\[{][\s\S]*[\]}]', content)
        if not json_match:
            raise AssistantError("Assistant response contained no JSON")
        return json.loads(json_match.group())
