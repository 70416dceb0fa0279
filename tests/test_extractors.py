"""Tests for the ingest strategies."""

import pytest

from clinic_migration.errors import SourceAccessError
from clinic_migration.extractors.api_extractor import APIExtractor
from clinic_migration.extractors.upload_extractor import UploadExtractor, count_records
from clinic_migration.extractors.web_scraper import (
    BROWSER_AUDIT_KEY,
    BrowserAgent,
    BrowserAuditEntry,
    EntityDiscovery,
    RawRecord,
    WebScraperExtractor,
)
from clinic_migration.models.migration import MigrationRun
from clinic_migration.models.schema import EntityType
from clinic_migration.providers import MockProvider


@pytest.fixture
def run(repository):
    return repository.create_run(MigrationRun(clinic_id="clinic-1", source_vendor="mock"))


def pause_after(polls):
    """should_pause callback that turns True after a number of polls."""
    state = {"polls": 0}

    def should_pause():
        state["polls"] += 1
        return state["polls"] > polls

    return should_pause


class FakeBrowserAgent(BrowserAgent):
    """Browser agent serving canned sections, optionally failing mid-stream."""

    def __init__(self, sections, failures=None):
        self.sections = sections
        self.failures = dict(failures or {})
        self.extract_calls = []
        self.closed = False
        self.connected_to = None

    def connect(self, credentials, entry_url):
        self.connected_to = entry_url

    def discover_entities(self):
        return [EntityDiscovery(name, bool(rows)) for name, rows in self.sections.items()]

    def extract(self, entity_type):
        self.extract_calls.append(entity_type)
        for index, row in enumerate(self.sections[entity_type]):
            if index == 1 and self.failures.get(entity_type, 0) > 0:
                self.failures[entity_type] -= 1
                raise SourceAccessError("page crashed")
            binary = b"jpeg" if entity_type == "photos" else None
            yield RawRecord(row["id"], entity_type, dict(row), binary)

    def audit_log(self):
        return [BrowserAuditEntry("extract", entity_type=e) for e in self.extract_calls]

    def close(self):
        self.closed = True


class TestAPIExtractor:
    """Test suite for provider API ingest."""

    def test_ingests_every_declared_entity(self, run, artifact_store, repository):
        extractor = APIExtractor(run, artifact_store, MockProvider(), {"apiKey": "test"}, repository)

        result = extractor.extract()

        assert result.success
        assert not result.paused
        assert result.entity_counts["patients"] == 5
        assert result.entity_counts["services"] == 7
        assert result.entity_counts["forms"] == 5
        patients = artifact_store.get_json(run.id, "patients.json")
        assert patients[0]["sourceId"] == "mock-p-1"
        assert patients[0]["firstName"] == "Sarah"

    def test_form_content_is_embedded(self, run, artifact_store):
        APIExtractor(run, artifact_store, MockProvider(), {}).extract()

        forms = {f["sourceId"]: f for f in artifact_store.get_json(run.id, "forms.json")}
        assert forms["mock-form-1"]["fields"][0]["label"] == "I consent to Botox treatment"
        assert forms["mock-form-4"]["fields"] == []

    def test_pause_and_resume_from_cursor(self, run, artifact_store, repository):
        """Test that a paused ingest resumes from the saved cursor without refetching."""
        first = APIExtractor(
            run, artifact_store, MockProvider(), {}, repository,
            should_pause=pause_after(1), fetch_limit=2,
        )
        result = first.extract()

        assert result.paused
        saved = repository.get_run(run.id)
        assert saved.checkpoints["patients"].cursor == "2"
        assert saved.checkpoints["patients"].records_fetched == 2
        assert not saved.checkpoints["patients"].completed

        provider = MockProvider()
        APIExtractor(saved, artifact_store, provider, {}, repository, fetch_limit=2).extract()

        assert provider.calls.count("patients") == 2
        patients = artifact_store.get_json(run.id, "patients.json")
        assert [p["sourceId"] for p in patients] == [f"mock-p-{i}" for i in range(1, 6)]

    def test_completed_entities_are_skipped(self, run, artifact_store):
        APIExtractor(run, artifact_store, MockProvider(), {}).extract()

        provider = MockProvider()
        result = APIExtractor(run, artifact_store, provider, {}).extract()

        assert [c for c in provider.calls if not c.startswith("form_content")] == []
        assert result.entity_counts["patients"] == 5

    def test_per_patient_entities(self, run, artifact_store):
        provider = MockProvider(per_patient=[EntityType.PHOTOS])
        extractor = APIExtractor(run, artifact_store, provider, {})

        assert EntityType.PHOTOS in extractor.plan()["per_patient"]
        result = extractor.extract()

        assert result.entity_counts["photos"] == 2
        assert run.checkpoints["photos:mock-p-1"].completed
        assert provider.calls.count("photos") == 5


class TestWebScraperExtractor:
    """Test suite for browser ingest."""

    def test_extracts_sections_and_binaries(self, run, artifact_store):
        run.entry_url = "https://vendor.test"
        agent = FakeBrowserAgent({
            "patients": [{"id": "p-1", "name": "Ann"}, {"id": "p-2", "name": "Bo"}],
            "photos": [{"id": "ph-1", "url": "/img/1.jpg"}],
            "invoices": [],
        })

        result = WebScraperExtractor(run, artifact_store, agent, {}).extract()

        assert result.entity_counts == {"patients": 2, "photos": 1}
        assert agent.connected_to == "https://vendor.test"
        assert agent.closed
        photos = artifact_store.get_json(run.id, "photos.json")
        assert photos[0]["artifactKey"] == "photos/ph-1"
        assert artifact_store.get(run.id, "photos/ph-1") == b"jpeg"
        assert len(artifact_store.get_json(run.id, BROWSER_AUDIT_KEY)) == 2

    def test_restarts_failed_entity(self, run, artifact_store):
        run.entry_url = "https://vendor.test"
        agent = FakeBrowserAgent(
            {"patients": [{"id": "p-1"}, {"id": "p-2"}, {"id": "p-3"}]},
            failures={"patients": 1},
        )

        result = WebScraperExtractor(run, artifact_store, agent, {}).extract()

        assert result.success
        assert agent.extract_calls == ["patients", "patients"]
        assert result.entity_counts["patients"] == 3

    def test_gives_up_after_max_attempts(self, run, artifact_store):
        run.entry_url = "https://vendor.test"
        agent = FakeBrowserAgent(
            {"patients": [{"id": "p-1"}, {"id": "p-2"}], "services": [{"id": "s-1"}]},
            failures={"patients": 5},
        )

        result = WebScraperExtractor(run, artifact_store, agent, {}, max_entity_attempts=2).extract()

        assert not result.success
        assert result.errors[0]["entity_type"] == "patients"
        assert result.entity_counts == {"services": 1}

    def test_requires_entry_url(self, run, artifact_store):
        with pytest.raises(SourceAccessError):
            WebScraperExtractor(run, artifact_store, FakeBrowserAgent({}), {}).extract()


class TestUploadExtractor:
    """Test suite for uploaded export files."""

    def test_counts_records_per_entity(self, run, artifact_store):
        files = [
            ("exports/clients.csv", b"id,first_name\n1,Ann\n2,Bo\n\n"),
            ("services.json", b'[{"id": "s-1"}]'),
        ]

        result = UploadExtractor(run, artifact_store, files).extract()

        assert result.entity_counts == {"patients": 2, "services": 1}
        assert run.uploaded_keys == ["clients.csv", "services.json"]
        assert artifact_store.exists(run.id, "clients.csv")

    def test_reads_paths(self, run, artifact_store, tmp_path):
        path = tmp_path / "appointments.json"
        path.write_text('{"id": "a-1"}')

        result = UploadExtractor(run, artifact_store, [str(path)]).extract()

        assert result.entity_counts == {"appointments": 1}

    def test_bad_json_is_an_error(self, run, artifact_store):
        result = UploadExtractor(run, artifact_store, [("patients.json", b"{not json")]).extract()

        assert not result.success
        assert result.errors[0]["entity_type"] == "patients"
        assert run.uploaded_keys == []

    def test_rerun_does_not_duplicate_keys(self, run, artifact_store):
        files = [("patients.csv", b"id\n1\n")]
        UploadExtractor(run, artifact_store, files).extract()
        UploadExtractor(run, artifact_store, files).extract()

        assert run.uploaded_keys == ["patients.csv"]
        assert run.entity_counts["patients"] == 1

    def test_no_files_warns(self, run, artifact_store):
        result = UploadExtractor(run, artifact_store, []).extract()

        assert result.warnings == ["No uploaded files to ingest"]

    def test_count_records(self):
        assert count_records("a.json", b"[1, 2, 3]") == 3
        assert count_records("a.csv", b"header\n") == 0
        assert count_records("a.csv", "name\nJos\xe9\n".encode("latin-1")) == 1
