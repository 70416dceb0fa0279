"""In-memory target store for development, dry runs and tests."""

from collections import defaultdict
from typing import Any, Dict, List, Tuple
import copy
import itertools
import logging
import threading

from .base import TargetStore

logger = logging.getLogger(__name__)


class InMemoryTargetStore(TargetStore):
    """
    Target store keeping records in process memory.

    Every create call is recorded in ``calls`` as ``(entity_type, data)``
    so callers can assert exactly what was written.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.records: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def _create(self, entity_type: str, clinic_id: str, data: Dict[str, Any]) -> str:
        with self._lock:
            target_id = f"{entity_type}-{next(self._ids)}"
            record = copy.deepcopy(data)
            record["id"] = target_id
            record["clinicId"] = clinic_id
            self.records[entity_type][target_id] = record
            self.calls.append((entity_type, copy.deepcopy(data)))
        logger.debug(f"Created {entity_type} {target_id}")
        return target_id

    def _list(self, entity_type: str, clinic_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(r) for r in self.records[entity_type].values()
                if r.get("clinicId") == clinic_id
            ]

    def seed(self, entity_type: str, clinic_id: str, data: Dict[str, Any]) -> str:
        """Add a pre-existing record without recording a create call."""
        target_id = self._create(entity_type, clinic_id, data)
        with self._lock:
            self.calls.pop()
        return target_id

    def count(self, entity_type: str) -> int:
        return len(self.records[entity_type])

    def list_patients(self, clinic_id: str) -> List[Dict[str, Any]]:
        return self._list("patient", clinic_id)

    def list_services(self, clinic_id: str) -> List[Dict[str, Any]]:
        return self._list("service", clinic_id)

    def create_patient(self, clinic_id: str, data: Dict[str, Any]) -> str:
        return self._create("patient", clinic_id, data)

    def create_service(self, clinic_id: str, data: Dict[str, Any]) -> str:
        return self._create("service", clinic_id, data)

    def create_appointment(self, clinic_id: str, data: Dict[str, Any]) -> str:
        return self._create("appointment", clinic_id, data)

    def create_encounter(self, clinic_id: str, data: Dict[str, Any]) -> str:
        return self._create("encounter", clinic_id, data)

    def create_chart(self, clinic_id: str, data: Dict[str, Any]) -> str:
        return self._create("chart", clinic_id, data)

    def create_consent(self, clinic_id: str, data: Dict[str, Any]) -> str:
        return self._create("consent", clinic_id, data)

    def create_photo(self, clinic_id: str, data: Dict[str, Any]) -> str:
        return self._create("photo", clinic_id, data)

    def create_document(self, clinic_id: str, data: Dict[str, Any]) -> str:
        return self._create("document", clinic_id, data)

    def create_invoice(self, clinic_id: str, data: Dict[str, Any]) -> str:
        return self._create("invoice", clinic_id, data)
