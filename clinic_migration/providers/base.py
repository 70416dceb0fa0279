"""Read-only provider contract for source platforms.

A provider exposes paginated fetches for the entity types it declares in
``capabilities``. Callers consult the capability set once at planning time;
the contract has no create, update or delete operations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional
from datetime import datetime
import logging

from ..errors import UnsupportedEntityError
from ..models.record import ConnectionTestResult, FetchOptions, FetchResult, FormField
from ..models.schema import CORE_ENTITY_TYPES, EntityType

logger = logging.getLogger(__name__)


@dataclass
class ProviderSession:
    """Authenticated session state owned by one provider instance."""
    cookies: Dict[str, str] = field(default_factory=dict)
    csrf_token: Optional[str] = None
    authenticated_at: Optional[datetime] = None

    @property
    def is_authenticated(self) -> bool:
        return self.authenticated_at is not None

    def clear(self) -> None:
        self.cookies.clear()
        self.csrf_token = None
        self.authenticated_at = None


class BaseProvider(ABC):
    """
    Base class for all source platform providers.

    Subclasses implement the four core fetches and override the optional
    ones they support, listing each in ``capabilities``.
    """

    source: str = ""
    capabilities: FrozenSet[EntityType] = CORE_ENTITY_TYPES
    # Entity types the vendor scopes by patient; ingest iterates patients for these
    per_patient: FrozenSet[EntityType] = frozenset()

    def supports(self, entity_type: EntityType) -> bool:
        return EntityType(entity_type) in self.capabilities

    @abstractmethod
    def test_connection(self, credentials: Dict[str, Any]) -> ConnectionTestResult:
        """Check that the credentials open a session on the source platform."""
        pass

    @abstractmethod
    def fetch_patients(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        pass

    @abstractmethod
    def fetch_services(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        pass

    @abstractmethod
    def fetch_appointments(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        pass

    @abstractmethod
    def fetch_invoices(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        pass

    def fetch_photos(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        raise UnsupportedEntityError(f"{self.source} does not support photos")

    def fetch_charts(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        raise UnsupportedEntityError(f"{self.source} does not support charts")

    def fetch_forms(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        raise UnsupportedEntityError(f"{self.source} does not support forms")

    def fetch_documents(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        raise UnsupportedEntityError(f"{self.source} does not support documents")

    def fetch_form_content(self, credentials: Dict[str, Any], form_id: str) -> List[FormField]:
        raise UnsupportedEntityError(f"{self.source} does not support form content")

    def fetch(
        self,
        entity_type: EntityType,
        credentials: Dict[str, Any],
        options: Optional[FetchOptions] = None,
    ) -> FetchResult:
        """
        Fetch one page of any declared entity type.

        Raises:
            UnsupportedEntityError: If the entity type is not in capabilities
        """
        entity_type = EntityType(entity_type)
        if not self.supports(entity_type) or entity_type == EntityType.FORM_CONTENT:
            raise UnsupportedEntityError(f"{self.source} does not support {entity_type.value}")

        dispatch: Dict[EntityType, Callable[..., FetchResult]] = {
            EntityType.PATIENTS: self.fetch_patients,
            EntityType.SERVICES: self.fetch_services,
            EntityType.APPOINTMENTS: self.fetch_appointments,
            EntityType.INVOICES: self.fetch_invoices,
            EntityType.PHOTOS: self.fetch_photos,
            EntityType.CHARTS: self.fetch_charts,
            EntityType.FORMS: self.fetch_forms,
            EntityType.DOCUMENTS: self.fetch_documents,
        }
        return dispatch[entity_type](credentials, options or FetchOptions())
