"""Duplicate patient detection against the target store."""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional
import logging

from .transformer import normalize_date, normalize_phone

if TYPE_CHECKING:
    # loaders import this module
    from ..loaders.base import TargetStore

logger = logging.getLogger(__name__)


class MatchType(str, Enum):
    EXACT_EMAIL = "exact_email"
    EXACT_PHONE = "exact_phone"
    FUZZY_NAME_DOB = "fuzzy_name_dob"


@dataclass
class DuplicateResult:
    """Outcome of matching one source patient."""
    is_duplicate: bool
    reasoning: str
    existing_target_id: Optional[str] = None
    match_type: Optional[MatchType] = None
    requires_review: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_duplicate": self.is_duplicate,
            "existing_target_id": self.existing_target_id,
            "match_type": self.match_type.value if self.match_type else None,
            "reasoning": self.reasoning,
            "requires_review": self.requires_review,
        }


def _clean(value: Any) -> str:
    return str(value or "").strip().lower()


class DuplicateDetector:
    """
    Matches a source patient against the clinic's existing patients.

    Tiers run in order and the first hit wins: exact email, exact phone
    (E.164-normalized), then same date of birth with a similar first name
    and the same last name. Fuzzy hits are flagged for operator review.
    """

    def __init__(self, target_store: "TargetStore", fuzzy_prefix_length: int = 3, fuzzy_enabled: bool = True):
        self.target_store = target_store
        self.fuzzy_prefix_length = fuzzy_prefix_length
        self.fuzzy_enabled = fuzzy_enabled

    def detect(self, clinic_id: str, patient: Dict[str, Any]) -> DuplicateResult:
        """
        Find an existing patient matching a canonical patient record.

        Args:
            clinic_id: Clinic to search
            patient: Record with firstName, lastName, email, phone, dateOfBirth

        Returns:
            DuplicateResult
        """
        existing = self.target_store.list_patients(clinic_id)

        email = _clean(patient.get("email"))
        if email:
            for candidate in existing:
                if _clean(candidate.get("email")) == email:
                    return DuplicateResult(
                        True,
                        f"Matched to existing patient by email ({email})",
                        existing_target_id=candidate["id"],
                        match_type=MatchType.EXACT_EMAIL,
                    )

        phone = patient.get("phone")
        if phone:
            normalized = normalize_phone(str(phone))
            for candidate in existing:
                if candidate.get("phone") and normalize_phone(str(candidate["phone"])) == normalized:
                    return DuplicateResult(
                        True,
                        f"Matched to existing patient by phone ({normalized})",
                        existing_target_id=candidate["id"],
                        match_type=MatchType.EXACT_PHONE,
                    )

        if self.fuzzy_enabled:
            match = self._fuzzy_match(patient, existing)
            if match:
                return DuplicateResult(
                    True,
                    f"Matched to existing patient {match['id']} by similar first name, "
                    f"same last name and date of birth",
                    existing_target_id=match["id"],
                    match_type=MatchType.FUZZY_NAME_DOB,
                    requires_review=True,
                )

        return DuplicateResult(False, "No matching patient found")

    def _fuzzy_match(self, patient: Dict[str, Any], existing: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        dob = patient.get("dateOfBirth")
        if not dob:
            return None
        dob = normalize_date(str(dob))
        first = _clean(patient.get("firstName"))
        last = _clean(patient.get("lastName"))
        prefix = first[: self.fuzzy_prefix_length]

        for candidate in existing:
            if not candidate.get("dateOfBirth") or normalize_date(str(candidate["dateOfBirth"])) != dob:
                continue
            candidate_first = _clean(candidate.get("firstName"))
            first_similar = candidate_first == first or (bool(prefix) and candidate_first.startswith(prefix))
            if first_similar and _clean(candidate.get("lastName")) == last:
                return candidate
        return None
