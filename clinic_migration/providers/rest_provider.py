"""Provider for vendors exposing a session-authenticated JSON REST API."""

from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Type
import logging
import time

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import BaseProvider, ProviderSession
from ..errors import ConfigurationError, SessionExpiredError, SourceAccessError
from ..models.record import (
    ConnectionTestResult,
    FetchOptions,
    FetchResult,
    FormField,
    SourceAppointment,
    SourceChart,
    SourceDocument,
    SourceForm,
    SourceInvoice,
    SourcePatient,
    SourcePhoto,
    SourceService,
)
from ..models.schema import CORE_ENTITY_TYPES, EntityType

logger = logging.getLogger(__name__)

AUTH_FAILURE_STATUSES = (401, 403)

RECORD_TYPES: Dict[EntityType, Type] = {
    EntityType.PATIENTS: SourcePatient,
    EntityType.SERVICES: SourceService,
    EntityType.APPOINTMENTS: SourceAppointment,
    EntityType.INVOICES: SourceInvoice,
    EntityType.PHOTOS: SourcePhoto,
    EntityType.CHARTS: SourceChart,
    EntityType.FORMS: SourceForm,
    EntityType.DOCUMENTS: SourceDocument,
}


class RestProvider(BaseProvider):
    """
    Read-only provider for a generic JSON REST vendor.

    Supports:
    - Cookie session login with a CSRF header
    - One re-authentication and retry on 401/403
    - Cursor pagination (``cursor``/``limit`` query params)
    - Per-patient endpoints for vendors that scope entities by patient
    - Retry with backoff on 429 and 5xx responses
    """

    DEFAULT_ENDPOINTS = {
        EntityType.PATIENTS: "/api/patients",
        EntityType.SERVICES: "/api/services",
        EntityType.APPOINTMENTS: "/api/appointments",
        EntityType.INVOICES: "/api/invoices",
        EntityType.PHOTOS: "/api/photos",
        EntityType.CHARTS: "/api/charts",
        EntityType.FORMS: "/api/forms",
        EntityType.DOCUMENTS: "/api/documents",
        EntityType.FORM_CONTENT: "/api/forms/{form_id}/fields",
    }

    def __init__(
        self,
        base_url: Optional[str] = None,
        source: str = "rest",
        capabilities: Optional[Iterable[EntityType]] = None,
        per_patient: Iterable[EntityType] = (),
        endpoints: Optional[Dict[EntityType, str]] = None,
        login_path: str = "/auth/sessions",
        csrf_cookie: str = "csrf-token",
        csrf_header: str = "csrf-token",
        timeout: int = 30,
        max_retries: int = 3,
        backoff_factor: float = 1.0,
        rate_limit: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the provider.

        Args:
            base_url: Vendor API root
            source: Vendor name
            capabilities: Entity types the vendor exposes (core types are always included)
            per_patient: Entity types whose endpoint takes a ``patientId`` filter
            endpoints: Override endpoint paths per entity type
            login_path: Path that accepts ``{email, password}`` and sets the session cookie
            csrf_cookie: Cookie carrying the CSRF token
            csrf_header: Header the CSRF token is echoed in
            timeout: Request timeout in seconds
            max_retries: Transport retries for 429/5xx
            backoff_factor: Backoff between transport retries
            rate_limit: Maximum requests per second
            session: Custom requests session
        """
        if not base_url:
            raise ConfigurationError("RestProvider requires a base_url")
        self.base_url = base_url.rstrip("/")
        self.source = source
        self.capabilities = CORE_ENTITY_TYPES | frozenset(EntityType(e) for e in (capabilities or ()))
        self.per_patient: FrozenSet[EntityType] = frozenset(EntityType(e) for e in per_patient)
        self.endpoints = dict(self.DEFAULT_ENDPOINTS)
        self.endpoints.update({EntityType(k): v for k, v in (endpoints or {}).items()})
        self.login_path = login_path
        self.csrf_cookie = csrf_cookie
        self.csrf_header = csrf_header
        self.timeout = timeout
        self._max_retries = max_retries
        self._backoff_factor = backoff_factor
        self._rate_limit_delay = 1 / rate_limit if rate_limit else 0
        self._last_request_time = 0.0

        self._http = session or self._create_session()
        self.session = ProviderSession()

    def _create_session(self) -> requests.Session:
        """Create a requests session with retry logic."""
        session = requests.Session()
        retries = Retry(
            total=self._max_retries,
            backoff_factor=self._backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "POST"],
        )
        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def _rate_limit(self) -> None:
        """Apply rate limiting."""
        if self._rate_limit_delay > 0:
            elapsed = time.time() - self._last_request_time
            if elapsed < self._rate_limit_delay:
                time.sleep(self._rate_limit_delay - elapsed)
        self._last_request_time = time.time()

    def authenticate(self, credentials: Dict[str, Any]) -> ProviderSession:
        """
        Establish a fresh session.

        Raises:
            SourceAccessError: If the vendor rejects the login
        """
        self.session.clear()
        self._http.cookies.clear()

        if credentials.get("apiKey") and not credentials.get("email"):
            self._http.headers["Authorization"] = f"Bearer {credentials['apiKey']}"
            self.session.authenticated_at = datetime.utcnow()
            return self.session

        try:
            response = self._http.post(
                f"{self.base_url}{self.login_path}",
                json={"email": credentials.get("email"), "password": credentials.get("password")},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise SourceAccessError(f"{self.source} login request failed: {e}") from e

        if response.status_code not in (200, 204):
            raise SourceAccessError(
                f"{self.source} login failed ({response.status_code})",
                status_code=response.status_code,
            )

        self.session.cookies = self._http.cookies.get_dict()
        self.session.csrf_token = self.session.cookies.get(self.csrf_cookie) or response.headers.get(
            self.csrf_header
        )
        self.session.authenticated_at = datetime.utcnow()
        logger.info(f"Authenticated with {self.source}")
        return self.session

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.session.csrf_token:
            headers[self.csrf_header] = self.session.csrf_token
        return headers

    def _send(self, path: str, params: Optional[Dict[str, Any]]) -> requests.Response:
        self._rate_limit()
        try:
            return self._http.get(
                f"{self.base_url}{path}",
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise SourceAccessError(f"{self.source} request to {path} failed: {e}") from e

    def _get(self, credentials: Dict[str, Any], path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET a JSON resource, re-authenticating once on 401/403.

        Raises:
            SessionExpiredError: If the retry after re-authentication is also rejected
            SourceAccessError: On any other HTTP or transport failure
        """
        if not self.session.is_authenticated:
            self.authenticate(credentials)

        response = self._send(path, params)
        if response.status_code in AUTH_FAILURE_STATUSES:
            logger.warning(f"{self.source} session rejected ({response.status_code}), re-authenticating")
            self.authenticate(credentials)
            response = self._send(path, params)
            if response.status_code in AUTH_FAILURE_STATUSES:
                raise SessionExpiredError(
                    f"{self.source} rejected the session after re-authentication",
                    status_code=response.status_code,
                )

        if response.status_code >= 400:
            raise SourceAccessError(
                f"{self.source} GET {path} failed ({response.status_code})",
                status_code=response.status_code,
            )
        return response.json()

    def test_connection(self, credentials: Dict[str, Any]) -> ConnectionTestResult:
        try:
            self.authenticate(credentials)
            me = self._get(credentials, "/api/me")
        except SourceAccessError as e:
            return ConnectionTestResult(False, error_message=str(e))
        return ConnectionTestResult(
            True,
            business_name=me.get("businessName"),
            location_id=me.get("locationId"),
        )

    def _fetch_page(self, entity_type: EntityType, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        params: Dict[str, Any] = {"limit": options.limit}
        if options.cursor:
            params["cursor"] = options.cursor
        if options.patient_source_id:
            params["patientId"] = options.patient_source_id

        body = self._get(credentials, self.endpoints[entity_type], params)
        record_type = RECORD_TYPES[entity_type]
        records = []
        for item in body.get("data", []):
            record = record_type.from_dict(item)
            record.raw_data = item
            records.append(record)

        return FetchResult(
            data=records,
            next_cursor=body.get("nextCursor"),
            total_count=body.get("totalCount"),
        )

    def fetch_patients(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        return self._fetch_page(EntityType.PATIENTS, credentials, options)

    def fetch_services(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        return self._fetch_page(EntityType.SERVICES, credentials, options)

    def fetch_appointments(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        return self._fetch_page(EntityType.APPOINTMENTS, credentials, options)

    def fetch_invoices(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        return self._fetch_page(EntityType.INVOICES, credentials, options)

    def fetch_photos(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        if not self.supports(EntityType.PHOTOS):
            return super().fetch_photos(credentials, options)
        return self._fetch_page(EntityType.PHOTOS, credentials, options)

    def fetch_charts(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        if not self.supports(EntityType.CHARTS):
            return super().fetch_charts(credentials, options)
        return self._fetch_page(EntityType.CHARTS, credentials, options)

    def fetch_forms(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        if not self.supports(EntityType.FORMS):
            return super().fetch_forms(credentials, options)
        return self._fetch_page(EntityType.FORMS, credentials, options)

    def fetch_documents(self, credentials: Dict[str, Any], options: FetchOptions) -> FetchResult:
        if not self.supports(EntityType.DOCUMENTS):
            return super().fetch_documents(credentials, options)
        return self._fetch_page(EntityType.DOCUMENTS, credentials, options)

    def fetch_form_content(self, credentials: Dict[str, Any], form_id: str) -> List[FormField]:
        if not self.supports(EntityType.FORM_CONTENT):
            return super().fetch_form_content(credentials, form_id)
        path = self.endpoints[EntityType.FORM_CONTENT].format(form_id=form_id)
        body = self._get(credentials, path)
        return [FormField.from_dict(item) for item in body.get("data", [])]
