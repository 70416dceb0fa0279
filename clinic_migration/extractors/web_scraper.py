"""Browser automation ingest strategy."""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional
from datetime import datetime

from .base import BaseExtractor, ExtractionResult
from ..errors import SourceAccessError
from ..models.migration import IngestStrategyType, MigrationRun
from ..storage.artifact_store import ArtifactStore
from ..storage.repository import MigrationRepository

logger = logging.getLogger(__name__)

BROWSER_AUDIT_KEY = "_browser_audit.json"
BINARY_ENTITY_TYPES = ("photos", "documents")


@dataclass
class RawRecord:
    """One record read from the vendor web app; binary records carry their file."""
    source_id: str
    entity_type: str
    data: Dict[str, Any]
    binary: Optional[bytes] = None
    extracted_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class EntityDiscovery:
    entity_type: str
    available: bool
    estimated_count: Optional[int] = None
    access_method: str = "navigation"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entityType": self.entity_type,
            "available": self.available,
            "estimatedCount": self.estimated_count,
            "accessMethod": self.access_method,
        }


@dataclass
class BrowserAuditEntry:
    """One browser action: navigate, login, extract or download."""
    action: str
    url: Optional[str] = None
    entity_type: Optional[str] = None
    record_count: Optional[int] = None
    duration_ms: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "url": self.url,
            "entityType": self.entity_type,
            "recordCount": self.record_count,
            "durationMs": self.duration_ms,
        }


class BrowserAgent(ABC):
    """
    Automation agent driving a vendor web app.

    ``extract`` returns a finite iterator that is not restartable once it
    fails; callers restart an entity type by calling ``extract`` again.
    """

    @abstractmethod
    def connect(self, credentials: Dict[str, Any], entry_url: str) -> None:
        pass

    @abstractmethod
    def discover_entities(self) -> List[EntityDiscovery]:
        pass

    @abstractmethod
    def extract(self, entity_type: str) -> Iterator[RawRecord]:
        pass

    @abstractmethod
    def audit_log(self) -> List[BrowserAuditEntry]:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class PlaywrightBrowserAgent(BrowserAgent):
    """
    Browser agent built on Playwright.

    Supports:
    - Form login with configurable selectors
    - Section discovery by navigating each configured path
    - Table extraction and repeated-item extraction
    - Binary downloads for photos and documents

    Each section config has ``path`` and either ``table_selector`` or
    ``item_selector`` with ``field_selectors``, plus optional ``id_field``
    (default ``id``) and ``url_field`` (for binaries, default ``url``).
    """

    def __init__(
        self,
        sections: Dict[str, Dict[str, Any]],
        login: Optional[Dict[str, str]] = None,
        headless: bool = True,
        timeout_ms: int = 30000,
    ):
        """
        Initialize the agent.

        Args:
            sections: Entity type to section config
            login: Selectors for the login form (username_selector, password_selector, submit_selector)
            headless: Whether to run the browser headlessly
            timeout_ms: Default navigation timeout
        """
        self.sections = sections
        self.login = login or {}
        self.headless = headless
        self.timeout_ms = timeout_ms
        self._playwright = None
        self._browser = None
        self._page = None
        self._base_url = ""
        self._audit: List[BrowserAuditEntry] = []

    def connect(self, credentials: Dict[str, Any], entry_url: str) -> None:
        try:
            from playwright.sync_api import sync_playwright
        except ImportError:
            raise ImportError("playwright package required for browser ingest")

        self._base_url = entry_url.rstrip("/")
        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(headless=self.headless)
        self._page = self._browser.new_page()
        self._page.set_default_timeout(self.timeout_ms)

        self._navigate(entry_url)
        if credentials.get("email") and credentials.get("password"):
            self._handle_login(credentials["email"], credentials["password"])

    def discover_entities(self) -> List[EntityDiscovery]:
        discovered = []
        for entity_type, config in self.sections.items():
            self._navigate(self._url(config["path"]))
            selector = config.get("table_selector") or config.get("item_selector")
            available = bool(selector and self._page.query_selector(selector))
            discovered.append(EntityDiscovery(entity_type, available))
        self._audit.append(BrowserAuditEntry("discover", record_count=len(discovered)))
        return discovered

    def extract(self, entity_type: str) -> Iterator[RawRecord]:
        config = self.sections[entity_type]
        started = time.time()
        self._navigate(self._url(config["path"]))

        if config.get("table_selector"):
            rows = self._extract_table(config["table_selector"])
        else:
            rows = self._extract_items(config)

        id_field = config.get("id_field", "id")
        count = 0
        for index, row in enumerate(rows):
            source_id = str(row.get(id_field) or index)
            row.setdefault("sourceId", source_id)
            binary = None
            if entity_type in BINARY_ENTITY_TYPES and row.get(config.get("url_field", "url")):
                binary = self._download(row[config.get("url_field", "url")], entity_type)
            count += 1
            yield RawRecord(source_id, entity_type, row, binary)

        self._audit.append(BrowserAuditEntry(
            "extract",
            url=self._page.url,
            entity_type=entity_type,
            record_count=count,
            duration_ms=int((time.time() - started) * 1000),
        ))

    def audit_log(self) -> List[BrowserAuditEntry]:
        return list(self._audit)

    def close(self) -> None:
        if self._browser:
            self._browser.close()
        if self._playwright:
            self._playwright.stop()
        self._browser = self._page = self._playwright = None

    def _url(self, path: str) -> str:
        return path if path.startswith("http") else f"{self._base_url}/{path.lstrip('/')}"

    def _navigate(self, url: str) -> None:
        started = time.time()
        response = self._page.goto(url)
        self._page.wait_for_load_state("networkidle")
        if response is not None and response.status >= 400:
            raise SourceAccessError(f"Navigation to {url} failed", status_code=response.status)
        self._audit.append(BrowserAuditEntry(
            "navigate", url=url, duration_ms=int((time.time() - started) * 1000),
        ))

    def _handle_login(self, username: str, password: str) -> None:
        """Handle login on the page."""
        username_selector = self.login.get("username_selector", "input[name='email']")
        password_selector = self.login.get("password_selector", "input[name='password']")
        submit_selector = self.login.get("submit_selector", "button[type='submit']")

        self._page.fill(username_selector, username)
        self._page.fill(password_selector, password)
        self._page.click(submit_selector)
        self._page.wait_for_load_state("networkidle")
        self._audit.append(BrowserAuditEntry("login", url=self._page.url))

    def _extract_table(self, table_selector: str) -> List[Dict[str, Any]]:
        """Extract data from a table."""
        records = []

        headers = self._page.query_selector_all(f"{table_selector} th")
        header_texts = [h.text_content().strip() for h in headers]

        for row in self._page.query_selector_all(f"{table_selector} tbody tr"):
            cell_texts = [c.text_content().strip() for c in row.query_selector_all("td")]
            if len(cell_texts) == len(header_texts):
                records.append(dict(zip(header_texts, cell_texts)))

        return records

    def _extract_items(self, config: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Extract data from repeated item elements."""
        records = []
        field_selectors = config.get("field_selectors", {})

        for item in self._page.query_selector_all(config["item_selector"]):
            record = {}
            for field_name, selector in field_selectors.items():
                element = item.query_selector(selector)
                if element:
                    record[field_name] = element.text_content().strip()
            if record:
                records.append(record)

        return records

    def _download(self, url: str, entity_type: str) -> bytes:
        started = time.time()
        response = self._page.request.get(self._url(url))
        if not response.ok:
            raise SourceAccessError(f"Download of {url} failed", status_code=response.status)
        body = response.body()
        self._audit.append(BrowserAuditEntry(
            "download", url=url, entity_type=entity_type,
            duration_ms=int((time.time() - started) * 1000),
        ))
        return body


class WebScraperExtractor(BaseExtractor):
    """
    Ingests through a browser agent.

    Each available entity type is extracted in full; a failure mid-stream
    restarts that entity type from the top, up to ``max_entity_attempts``
    times. An entity type that still fails is recorded as an error and the
    remaining entity types continue.
    """

    strategy = IngestStrategyType.BROWSER

    def __init__(
        self,
        run: MigrationRun,
        artifact_store: ArtifactStore,
        agent: BrowserAgent,
        credentials: Dict[str, Any],
        repository: Optional[MigrationRepository] = None,
        should_pause: Optional[Callable[[], bool]] = None,
        max_entity_attempts: int = 2,
    ):
        super().__init__(run, artifact_store, repository, should_pause)
        self.agent = agent
        self.credentials = credentials
        self.max_entity_attempts = max(1, max_entity_attempts)

    def extract(self) -> ExtractionResult:
        started_at = datetime.utcnow()
        if not self.run.entry_url:
            raise SourceAccessError("Browser ingest requires an entry URL")

        self.agent.connect(self.credentials, self.run.entry_url)
        try:
            discovered = self.agent.discover_entities()
            logger.info(
                f"Browser discovered sections: {[d.entity_type for d in discovered if d.available]}"
            )
            for discovery in discovered:
                if not discovery.available:
                    continue
                if self.pause_requested():
                    self.save_checkpoint()
                    result = self.get_extraction_result(self.run.entity_counts, started_at)
                    result.paused = True
                    return result
                self._extract_entity(discovery.entity_type)
        finally:
            self.store_json(BROWSER_AUDIT_KEY, [e.to_dict() for e in self.agent.audit_log()])
            self.agent.close()
            self.save_checkpoint()

        result = self.get_extraction_result(self.run.entity_counts, started_at)
        logger.info(f"Browser ingest complete: {result.entity_counts}, {len(result.errors)} errors")
        return result

    def _extract_entity(self, entity_type: str) -> None:
        checkpoint = self.run.checkpoint_for(entity_type)
        if checkpoint.completed:
            logger.info(f"Skipping {entity_type}: already ingested")
            return

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_entity_attempts + 1):
            records: Dict[str, Dict[str, Any]] = {}
            try:
                for raw in self.agent.extract(entity_type):
                    data = dict(raw.data)
                    data.setdefault("sourceId", raw.source_id)
                    if raw.binary is not None:
                        key = f"{entity_type}/{raw.source_id}"
                        self.store(key, raw.binary)
                        data["artifactKey"] = key
                    records[raw.source_id] = data
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Browser extraction of {entity_type} failed on attempt "
                    f"{attempt}/{self.max_entity_attempts}: {e}"
                )
                continue

            self.store_json(f"{entity_type}.json", list(records.values()))
            self.run.entity_counts[entity_type] = len(records)
            checkpoint.advance(None, len(records))
            checkpoint.completed = True
            self.save_checkpoint()
            logger.info(f"Extracted {len(records)} {entity_type}")
            return

        self.add_error(
            f"Extraction of {entity_type} failed after {self.max_entity_attempts} attempts: {last_error}",
            entity_type=entity_type,
        )
