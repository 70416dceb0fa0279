"""Target store backed by the clinic application's REST API."""

import base64
import time
import logging
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import TargetStore

logger = logging.getLogger(__name__)


class APITargetStore(TargetStore):
    """
    Target store for a clinic application exposing REST endpoints.

    Records are POSTed to ``/clinics/{clinic_id}/{entity}s`` (overridable per
    entity) and the created id is read from ``id`` or ``data.id``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        auth_type: str = "bearer",  # bearer, basic, header
        auth_header: str = "Authorization",
        rate_limit: float = 10.0,
        timeout: int = 30,
        endpoints: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the target store.

        Args:
            base_url: Base URL for the API
            api_key: API key for authentication
            auth_type: Type of authentication
            auth_header: Header name for header authentication
            rate_limit: Max requests per second
            timeout: Request timeout in seconds
            endpoints: Mapping of entity -> endpoint path template
            session: Custom requests session
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.auth_type = auth_type
        self.auth_header = auth_header
        self.rate_limit = rate_limit
        self.timeout = timeout
        self.endpoints = endpoints or {}
        self._last_request_time = 0.0
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a requests session with authentication and retries."""
        session = requests.Session()

        if self.api_key:
            if self.auth_type == "bearer":
                session.headers["Authorization"] = f"Bearer {self.api_key}"
            elif self.auth_type == "basic":
                credentials = base64.b64encode(f"{self.api_key}:".encode()).decode()
                session.headers["Authorization"] = f"Basic {credentials}"
            elif self.auth_type == "header":
                session.headers[self.auth_header] = self.api_key

        session.headers["Content-Type"] = "application/json"

        # Default allowed_methods excludes POST: creates are never retried
        retries = Retry(total=3, backoff_factor=1.0, status_forcelist=[429, 500, 502, 503, 504])
        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def _rate_limit_wait(self) -> None:
        """Wait to respect rate limits."""
        if self.rate_limit > 0:
            elapsed = time.time() - self._last_request_time
            wait_time = (1.0 / self.rate_limit) - elapsed
            if wait_time > 0:
                time.sleep(wait_time)
        self._last_request_time = time.time()

    def _url(self, entity: str, clinic_id: str) -> str:
        template = self.endpoints.get(entity, f"/clinics/{{clinic_id}}/{entity}s")
        return f"{self.base_url}{template.format(clinic_id=clinic_id)}"

    def _list(self, entity: str, clinic_id: str) -> List[Dict[str, Any]]:
        self._rate_limit_wait()
        response = self._session.get(self._url(entity, clinic_id), timeout=self.timeout)
        response.raise_for_status()
        body = response.json()
        return body.get("data", []) if isinstance(body, dict) else body

    def _create(self, entity: str, clinic_id: str, data: Dict[str, Any]) -> str:
        self._rate_limit_wait()
        response = self._session.post(self._url(entity, clinic_id), json=data, timeout=self.timeout)
        response.raise_for_status()
        body = response.json() if response.text else {}
        target_id = body.get("id") or (body.get("data") or {}).get("id")
        if not target_id:
            raise ValueError(f"Target API returned no id for created {entity}")
        return str(target_id)

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

    def validate_connection(self) -> bool:
        """Validate connection to the API."""
        try:
            self._rate_limit_wait()
            response = self._session.get(self.base_url, timeout=self.timeout)
            return response.status_code < 500
        except requests.RequestException as e:
            logger.error(f"Target API connection validation failed: {e}")
            return False
