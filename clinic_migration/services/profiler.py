"""Source profiling: a non-PHI statistical summary of ingested artifacts."""

import csv
import io
import json
import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

PHI_FIELD_PATTERNS = [
    re.compile(r"^(first|last|middle|full)?_?name$", re.I),
    re.compile(r"^(f|l|m)name$", re.I),
    re.compile(r"email", re.I),
    re.compile(r"phone", re.I),
    re.compile(r"\b(dob|date_?of_?birth|birth_?date|birthday)\b", re.I),
    re.compile(r"\bssn\b", re.I),
    re.compile(r"social_?security", re.I),
    re.compile(r"address", re.I),
    re.compile(r"\bcity\b", re.I),
    re.compile(r"\bstate\b", re.I),
    re.compile(r"\bzip", re.I),
    re.compile(r"\bpostal", re.I),
    re.compile(r"\b(mrn|medical_?record)\b", re.I),
    re.compile(r"\binsurance", re.I),
    re.compile(r"\bpolicy", re.I),
    re.compile(r"\ballerg", re.I),
    re.compile(r"\bmedication", re.I),
    re.compile(r"\bdiagnos", re.I),
]

# camelCase names (firstName, dateOfBirth) are split before matching
_CAMEL_SPLIT = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}(T\d{2}:\d{2})?|^\d{1,2}[/-]\d{1,2}[/-]\d{2,4}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[+]?[\d\s()-]{7,15}$")
NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")
BOOLEAN_VALUES = ("true", "false", "yes", "no", "0", "1")
RELATIONSHIP_RE = re.compile(r"(_id|Id|_key)$")

TYPE_MATCH_THRESHOLD = 0.8
TYPE_SAMPLE_SIZE = 100
ENUM_MAX_UNIQUE = 20
ENUM_MIN_SAMPLES = 5

ENTITY_ALIASES = {
    "patients": "patients", "patient": "patients", "clients": "patients", "client": "patients",
    "appointments": "appointments", "appointment": "appointments", "bookings": "appointments",
    "services": "services", "service": "services", "treatments": "services",
    "charts": "charts", "chart": "charts", "clinical_notes": "charts",
    "invoices": "invoices", "invoice": "invoices", "orders": "invoices",
    "photos": "photos", "photo": "photos", "images": "photos",
    "documents": "documents", "document": "documents", "files": "documents",
    "forms": "forms", "form": "forms",
    "consents": "consents", "consent": "consents",
    "encounters": "encounters", "encounter": "encounters",
}


def is_phi_field(name: str) -> bool:
    snake = _CAMEL_SPLIT.sub("_", name)
    return any(p.search(name) or p.search(snake) for p in PHI_FIELD_PATTERNS)


def guess_entity_type(key: str) -> str:
    """Guess the source entity of an artifact from its key, e.g. ``clients.csv`` -> ``patients``."""
    base = key.rsplit("/", 1)[-1].lower()
    base = re.sub(r"\.(csv|json)$", "", base)
    return ENTITY_ALIASES.get(base, base)


def infer_type(values: List[str]) -> str:
    """Infer a field type from its string values."""
    non_empty = [v for v in values if v not in ("", None)]
    if not non_empty:
        return "unknown"

    sample = non_empty[:TYPE_SAMPLE_SIZE]
    checks = [
        ("email", lambda v: bool(EMAIL_RE.match(v))),
        ("phone", lambda v: bool(PHONE_RE.match(v)) and not DATE_RE.match(v) and len(re.sub(r"\D", "", v)) >= 7),
        ("date", lambda v: bool(DATE_RE.match(v))),
        ("number", lambda v: bool(NUMBER_RE.match(v))),
        ("boolean", lambda v: v.lower() in BOOLEAN_VALUES),
    ]
    for type_name, test in checks:
        if sum(1 for v in sample if test(v)) / len(sample) >= TYPE_MATCH_THRESHOLD:
            return type_name

    if len(set(sample)) <= ENUM_MAX_UNIQUE and len(sample) >= ENUM_MIN_SAMPLES:
        return "enum"
    return "string"


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def load_records(key: str, data: bytes) -> List[Dict[str, Any]]:
    """
    Parse an artifact into records.

    JSON may be an array, a single object, or an object wrapping an array
    under data/records/items/results. Anything else is read as CSV with the
    header row as field names.
    """
    if key.lower().endswith(".json"):
        parsed = json.loads(data.decode("utf-8"))
        if isinstance(parsed, list):
            return parsed
        if isinstance(parsed, dict):
            for wrapper in ("data", "records", "items", "results"):
                if isinstance(parsed.get(wrapper), list):
                    return parsed[wrapper]
            return [parsed]
        raise ValueError(f"Unexpected JSON structure in {key}")

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning(f"UTF-8 decode failed, trying latin-1 for {key}")
        text = data.decode("latin-1")

    try:
        delimiter = csv.Sniffer().sniff(text[:8192], delimiters=",;\t|").delimiter
    except csv.Error:
        delimiter = ","

    records = []
    for row in csv.DictReader(io.StringIO(text), delimiter=delimiter):
        cleaned = {k.strip(): (v or "").strip() for k, v in row.items() if k is not None}
        if any(cleaned.values()):
            records.append(cleaned)
    return records


@dataclass
class FieldProfile:
    name: str
    inferred_type: str
    null_rate: float
    unique_rate: float
    sample_distribution: str
    is_phi: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "inferredType": self.inferred_type,
            "nullRate": self.null_rate,
            "uniqueRate": self.unique_rate,
            "sampleDistribution": self.sample_distribution,
            "isPHI": self.is_phi,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldProfile":
        return cls(
            name=data["name"],
            inferred_type=data.get("inferredType", "unknown"),
            null_rate=data.get("nullRate", 0.0),
            unique_rate=data.get("uniqueRate", 0.0),
            sample_distribution=data.get("sampleDistribution", ""),
            is_phi=data.get("isPHI", False),
        )


@dataclass
class RelationshipHint:
    field: str
    target_entity: str
    target_field: str = "id"
    confidence: float = 0.7

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "targetEntity": self.target_entity,
            "targetField": self.target_field,
            "confidence": self.confidence,
        }


@dataclass
class EntityProfile:
    """Profile of one source artifact."""
    entity_type: str
    source: str
    record_count: int
    fields: List[FieldProfile] = field(default_factory=list)
    key_candidates: List[str] = field(default_factory=list)
    relationship_hints: List[RelationshipHint] = field(default_factory=list)

    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.entity_type,
            "source": self.source,
            "recordCount": self.record_count,
            "fields": [f.to_dict() for f in self.fields],
            "keyCandidates": self.key_candidates,
            "relationshipHints": [h.to_dict() for h in self.relationship_hints],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityProfile":
        return cls(
            entity_type=data["type"],
            source=data.get("source", ""),
            record_count=data.get("recordCount", 0),
            fields=[FieldProfile.from_dict(f) for f in data.get("fields", [])],
            key_candidates=data.get("keyCandidates", []),
            relationship_hints=[
                RelationshipHint(h["field"], h["targetEntity"], h.get("targetField", "id"), h.get("confidence", 0.7))
                for h in data.get("relationshipHints", [])
            ],
        )


@dataclass
class SourceProfile:
    entities: List[EntityProfile] = field(default_factory=list)

    @property
    def phi_classification(self) -> Dict[str, Dict[str, bool]]:
        return {e.entity_type: {f.name: f.is_phi for f in e.fields} for e in self.entities}

    def entity(self, entity_type: str) -> Optional[EntityProfile]:
        for entity in self.entities:
            if entity.entity_type == entity_type:
                return entity
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entities": [e.to_dict() for e in self.entities],
            "phiClassification": self.phi_classification,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceProfile":
        return cls(entities=[EntityProfile.from_dict(e) for e in data.get("entities", [])])


def _relationship_target(name: str) -> str:
    target = RELATIONSHIP_RE.sub("", name)
    target = _CAMEL_SPLIT.sub("_", target).lower()
    # patientSourceId -> patient_source -> patient
    target = re.sub(r"_source$", "", target)
    return "patients" if target in ("patient", "client") else f"{target}s"


def profile_records(key: str, records: List[Dict[str, Any]]) -> EntityProfile:
    """Profile the records of one artifact."""
    field_names: List[str] = []
    for record in records:
        for name in record:
            if name not in field_names:
                field_names.append(name)

    profile = EntityProfile(guess_entity_type(key), key, len(records))
    for name in field_names:
        values = [_stringify(r.get(name)) for r in records]
        non_empty = [v for v in values if v != ""]
        unique = set(non_empty)
        null_rate = 1 - len(non_empty) / max(len(values), 1)
        unique_rate = len(unique) / max(len(non_empty), 1)

        profile.fields.append(FieldProfile(
            name=name,
            inferred_type=infer_type(values),
            null_rate=round(null_rate, 2),
            unique_rate=round(unique_rate, 2),
            sample_distribution=f"{len(non_empty)}/{len(values)} non-null, {len(unique)} unique",
            is_phi=is_phi_field(name),
        ))

        if unique_rate > 0.95 and null_rate < 0.05:
            profile.key_candidates.append(name)
        if RELATIONSHIP_RE.search(name):
            profile.relationship_hints.append(RelationshipHint(name, _relationship_target(name)))

    return profile


def profile_artifacts(artifacts: List[Tuple[str, bytes]]) -> SourceProfile:
    """
    Profile ingested artifacts.

    Args:
        artifacts: (key, content) pairs; ``_``-prefixed and nested (binary) keys are skipped

    Returns:
        SourceProfile
    """
    profile = SourceProfile()
    for key, content in artifacts:
        if key.startswith("_") or "/" in key or key.endswith(".meta.json"):
            continue
        try:
            records = load_records(key, content)
        except ValueError as e:
            logger.warning(f"Skipping unreadable artifact {key}: {e}")
            continue
        entity = profile_records(key, records)
        logger.info(f"Profiled {key}: {entity.record_count} records, {len(entity.fields)} fields")
        profile.entities.append(entity)
    return profile
