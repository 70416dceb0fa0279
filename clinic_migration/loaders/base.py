"""Target store boundary and load result model."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging

logger = logging.getLogger(__name__)


@dataclass
class LoadResult:
    """Outcome counters of promoting one entity type."""
    entity: str
    total_attempted: int = 0
    imported: int = 0
    duplicate: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_ids: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def success_rate(self) -> float:
        if self.total_attempted == 0:
            return 0.0
        return (self.imported + self.duplicate) / self.total_attempted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "total_attempted": self.total_attempted,
            "imported": self.imported,
            "duplicate": self.duplicate,
            "skipped": self.skipped,
            "failed": self.failed,
            "success_rate": self.success_rate,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "created_ids": self.created_ids,
            "errors": self.errors,
        }


class TargetStore(ABC):
    """
    The clinic application's domain write operations.

    Each create call is a side effect that returns the new record's id or
    raises. The pipeline prescribes no schema beyond the canonical payload
    it passes in.
    """

    @abstractmethod
    def list_patients(self, clinic_id: str) -> List[Dict[str, Any]]:
        """
        List existing patients of a clinic.

        Returns:
            Dicts with at least id, firstName, lastName, email, phone, dateOfBirth
        """
        pass

    @abstractmethod
    def list_services(self, clinic_id: str) -> List[Dict[str, Any]]:
        """List existing services of a clinic as {id, name} dicts."""
        pass

    @abstractmethod
    def create_patient(self, clinic_id: str, data: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def create_service(self, clinic_id: str, data: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def create_appointment(self, clinic_id: str, data: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def create_encounter(self, clinic_id: str, data: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def create_chart(self, clinic_id: str, data: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def create_consent(self, clinic_id: str, data: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def create_photo(self, clinic_id: str, data: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def create_document(self, clinic_id: str, data: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def create_invoice(self, clinic_id: str, data: Dict[str, Any]) -> str:
        pass

    def create(self, entity_type: str, clinic_id: str, data: Dict[str, Any]) -> str:
        """Dispatch to the create operation of a canonical entity type."""
        creator = getattr(self, f"create_{entity_type}", None)
        if creator is None:
            raise ValueError(f"Target store cannot create entity type: {entity_type}")
        return creator(clinic_id, data)

    def validate_connection(self) -> bool:
        """Validate the connection to the target store."""
        return True
