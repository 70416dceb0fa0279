"""PHI masking and the safe context handed to the migration assistant.

Only field names, inferred types, rates and count-only distributions cross
to the assistant. Raw values never do.
"""

import re
import hmac
import hashlib
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from ..models.schema import canonical_schema_description
from .profiler import SourceProfile
from .transformer import masking_secret

logger = logging.getLogger(__name__)

REDACTED_DISTRIBUTION = "[distribution available]"

_COUNTS_ONLY_RE = re.compile(r"^\d+/\d+ non-null, ~?\d+ unique$")
_COUNTS_EMBEDDED_RE = re.compile(r"(\d+)\s*(?:/\s*(\d+))?\s*non-null.*?(\d+)\s*unique")
_PERCENT_RE = re.compile(r"^\d+(\.\d+)?% non-null(, ~?\d+ unique( values)?)?$")
_BUCKETS_RE = re.compile(r"^(\d+(\.\d+)?\s*-\s*\d+(\.\d+)?: \d+)(, \d+(\.\d+)?\s*-\s*\d+(\.\d+)?: \d+)*$")

_DATE_LIKE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}|\d{1,2}[/-]\d{1,2}[/-]\d{2,4})")
_ID_KEY_RE = re.compile(r"^(id|.*Id|.*_id)$", re.I)
_FREE_TEXT_MIN_LENGTH = 40

SAFE_KEYS = frozenset({"totalCount", "hasNextPage", "nextCursor", "cursor", "pageInfo"})


def mask_string(value: str) -> str:
    return f"[string len={len(value)}]"


def mask_date(value: str) -> str:
    return "[date]"


def mask_free_text(value: str) -> str:
    return f"[text redacted len={len(value)}]"


def mask_identifier(value: str, secret: Optional[str] = None) -> str:
    """Keyed, non-reversible token for an identifier (16 hex chars)."""
    key = (secret or masking_secret()).encode("utf-8")
    return hmac.new(key, value.encode("utf-8"), hashlib.sha256).hexdigest()[:16]


def sanitize_distribution(distribution: str) -> str:
    """
    Pass count-only distributions and replace anything else.

    ``"12/15 non-null, 9 unique"``, percentage summaries and numeric
    buckets pass. A count summary embedded in other text is reduced to the
    counts. Everything else becomes ``[distribution available]``.
    """
    if not distribution:
        return REDACTED_DISTRIBUTION
    text = distribution.strip()
    if _COUNTS_ONLY_RE.match(text) or _PERCENT_RE.match(text) or _BUCKETS_RE.match(text):
        return text

    match = _COUNTS_EMBEDDED_RE.search(text)
    if match:
        non_null, total, unique = match.groups()
        return f"{non_null}/{total or '?'} non-null, {unique} unique"
    return REDACTED_DISTRIBUTION


class SafeContextBuilder:
    """Builds the only context the assistant is allowed to see."""

    def build_from_profile(
        self,
        profile: Union[SourceProfile, Dict[str, Any]],
        existing_services: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """
        Build the safe context from a source profile.

        Args:
            profile: SourceProfile or its dict form
            existing_services: Target services as {id, name}; passed through

        Returns:
            Dict with sourceProfile, targetSchema and existingServices
        """
        profile_dict = profile.to_dict() if isinstance(profile, SourceProfile) else dict(profile)
        return {
            "sourceProfile": self._sanitize_profile(profile_dict),
            "targetSchema": canonical_schema_description(),
            "existingServices": existing_services,
        }

    def _sanitize_profile(self, profile: Dict[str, Any]) -> Dict[str, Any]:
        entities = []
        for entity in profile.get("entities", []):
            fields = []
            for fld in entity.get("fields", []):
                fields.append({
                    "name": fld.get("name"),
                    "inferredType": fld.get("inferredType"),
                    "nullRate": fld.get("nullRate"),
                    "uniqueRate": fld.get("uniqueRate"),
                    "sampleDistribution": sanitize_distribution(fld.get("sampleDistribution") or ""),
                    "isPHI": fld.get("isPHI", False),
                })
            entities.append({
                "type": entity.get("type"),
                "source": entity.get("source"),
                "recordCount": entity.get("recordCount", 0),
                "fields": fields,
                "keyCandidates": list(entity.get("keyCandidates", [])),
                "relationshipHints": list(entity.get("relationshipHints", [])),
            })
        return {"entities": entities, "phiClassification": profile.get("phiClassification", {})}


class PHIRedactor:
    """
    Masks raw records so they can appear in audit snapshots.

    PHI fields are masked by shape: dates to ``[date]``, identifiers to
    keyed tokens, long text to a redacted length and other strings to a
    typed length. Nested values keep only their shape. Other non-PHI
    values are kept.
    """

    def __init__(self, secret: Optional[str] = None, max_depth: int = 20):
        self._secret = secret
        self.max_depth = max_depth

    def redact_record(self, record: Dict[str, Any], phi_fields: Iterable[str]) -> Dict[str, Any]:
        phi = set(phi_fields)
        redacted: Dict[str, Any] = {}
        for key, value in record.items():
            if key in phi:
                redacted[key] = self._mask_value(key, value)
            elif _ID_KEY_RE.match(key) and isinstance(value, str):
                redacted[key] = mask_identifier(value, self._secret)
            elif isinstance(value, (dict, list)):
                # nested payloads such as form fields may hold patient answers
                redacted[key] = self.redact_shape(value)
            else:
                redacted[key] = value
        return redacted

    def redact_shape(self, data: Any, depth: int = 0) -> Any:
        """Keep the structure of a payload and replace every value."""
        if depth > self.max_depth:
            return "[max depth]"
        if data is None or isinstance(data, bool):
            return data
        if isinstance(data, (int, float)):
            return 0
        if isinstance(data, str):
            return mask_string(data)
        if isinstance(data, list):
            return {
                "__redacted_array": True,
                "length": len(data),
                "sample": [self.redact_shape(item, depth + 1) for item in data[:2]],
            }
        if isinstance(data, dict):
            result = {}
            for key, value in data.items():
                if key in SAFE_KEYS:
                    result[key] = self.redact_shape(value, depth + 1) if isinstance(value, (dict, list)) else value
                elif _ID_KEY_RE.match(key):
                    result[key] = "[id]"
                else:
                    result[key] = self.redact_shape(value, depth + 1)
            return result
        return "[unknown]"

    def _mask_value(self, key: str, value: Any) -> Any:
        if value is None or value == "":
            return value
        if isinstance(value, (dict, list)):
            return self.redact_shape(value)
        text = str(value)
        if _ID_KEY_RE.match(key):
            return mask_identifier(text, self._secret)
        if _DATE_LIKE_RE.match(text):
            return mask_date(text)
        if len(text) >= _FREE_TEXT_MIN_LENGTH or "\n" in text:
            return mask_free_text(text)
        return mask_string(text)

