"""Tests for run models, mapping spec validation and strategy resolution."""

from datetime import datetime

import pytest

from clinic_migration.errors import ConfigurationError
from clinic_migration.extractors.resolver import resolve_strategy
from clinic_migration.models.migration import (
    ArtifactRef,
    DuplicateReview,
    IngestStrategyType,
    MigrationConfig,
    MigrationRun,
    Phase,
    RunStatus,
)
from clinic_migration.models.schema import MappingSpec, validate_mapping_spec


def valid_spec():
    return {
        "version": 1,
        "sourceVendor": "mock",
        "entityMappings": [
            {
                "sourceEntity": "patients",
                "targetEntity": "patient",
                "fieldMappings": [
                    {"sourceField": "first_name", "targetField": "firstName", "confidence": 0.9},
                    {
                        "sourceField": "phone",
                        "targetField": "phone",
                        "transform": "normalizePhone",
                        "confidence": 1,
                    },
                ],
            }
        ],
    }


class TestMigrationRun:
    """Test suite for MigrationRun serialization."""

    def test_round_trip_keeps_progress_and_reviews(self):
        run = MigrationRun(clinic_id="clinic-1", source_vendor="mock")
        run.status = RunStatus.MAPPING_DRAFTED
        run.current_phase = Phase.APPROVE_MAPPING
        run.ingest_strategy = IngestStrategyType.API
        run.checkpoint_for("patients").advance("cursor-2", 50)
        run.progress_for("patient").increment("imported", 3)
        run.add_artifact(ArtifactRef(run.id, "patients.json", "abc", 10))
        run.duplicate_reviews.append(DuplicateReview("p-9", "t-1", "t-2", "Fuzzy match"))
        run.mapping_approved_at = datetime(2024, 5, 1, 12, 0)

        restored = MigrationRun.from_dict(run.to_dict())

        assert restored.status == RunStatus.MAPPING_DRAFTED
        assert restored.current_phase == Phase.APPROVE_MAPPING
        assert restored.ingest_strategy == IngestStrategyType.API
        assert restored.checkpoints["patients"].cursor == "cursor-2"
        assert restored.checkpoints["patients"].records_fetched == 50
        assert restored.progress["patient"].imported == 3
        assert restored.artifact("patients.json").hash == "abc"
        assert restored.pending_reviews[0].candidate_target_id == "t-1"
        assert restored.mapping_approved_at == datetime(2024, 5, 1, 12, 0)

    def test_add_artifact_replaces_same_key(self):
        run = MigrationRun()
        run.add_artifact(ArtifactRef(run.id, "patients.json", "old", 1))
        run.add_artifact(ArtifactRef(run.id, "patients.json", "new", 2))

        assert len(run.artifacts) == 1
        assert run.artifact("patients.json").hash == "new"

    def test_resolved_reviews_are_not_pending(self):
        run = MigrationRun()
        run.duplicate_reviews.append(DuplicateReview("p-1", "t-1", None, "", resolved=True))

        assert run.pending_reviews == []


class TestMigrationConfig:
    """Test suite for MigrationConfig."""

    def test_to_dict_omits_secrets(self):
        config = MigrationConfig(credentials={"apiKey": "secret"}, llm_api_key="sk-1")
        data = config.to_dict()

        assert "credentials" not in data
        assert "llm_api_key" not in data

    def test_from_env_uses_llm_key(self, monkeypatch):
        monkeypatch.setenv("MIGRATION_LLM_PROVIDER", "anthropic")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "ak-1")

        config = MigrationConfig.from_env(clinic_id="clinic-1")

        assert config.use_llm
        assert config.llm_provider == "anthropic"
        assert config.llm_api_key == "ak-1"
        assert config.clinic_id == "clinic-1"

    def test_provider_options(self, monkeypatch):
        monkeypatch.setenv("MIGRATION_SOURCE_BASE_URL", "https://vendor.test")

        assert MigrationConfig.from_env().provider_options == {"base_url": "https://vendor.test"}
        config = MigrationConfig.from_dict({"provider_options": {"base_url": "https://other.test"}})
        assert config.to_dict()["provider_options"] == {"base_url": "https://other.test"}

    def test_from_env_without_key_disables_llm(self, monkeypatch):
        monkeypatch.delenv("MIGRATION_LLM_PROVIDER", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        assert not MigrationConfig.from_env().use_llm


class TestValidateMappingSpec:
    """Test suite for structural mapping spec validation."""

    def test_valid_spec(self):
        assert validate_mapping_spec(valid_spec()) == []
        assert MappingSpec.from_dict(valid_spec()).mapping_for("patients").target_entity == "patient"

    def test_not_an_object(self):
        assert validate_mapping_spec([])[0]["path"] == ""

    def test_bad_version_and_vendor(self):
        spec = valid_spec()
        spec["version"] = 0
        spec["sourceVendor"] = ""

        paths = [e["path"] for e in validate_mapping_spec(spec)]
        assert paths == ["version", "sourceVendor"]

    def test_unknown_target_entity(self):
        spec = valid_spec()
        spec["entityMappings"][0]["targetEntity"] = "customer"

        errors = validate_mapping_spec(spec)
        assert errors[0]["path"] == "entityMappings[0].targetEntity"

    def test_unknown_target_field(self):
        spec = valid_spec()
        spec["entityMappings"][0]["fieldMappings"][0]["targetField"] = "nickname"

        errors = validate_mapping_spec(spec)
        assert errors == [{
            "path": "entityMappings[0].fieldMappings[0].targetField",
            "message": 'Unknown field "nickname" for patient',
        }]

    def test_transform_outside_allowlist(self):
        spec = valid_spec()
        spec["entityMappings"][0]["fieldMappings"][1]["transform"] = "eval"

        errors = validate_mapping_spec(spec)
        assert errors[0]["path"] == "entityMappings[0].fieldMappings[1].transform"

    def test_confidence_out_of_range(self):
        spec = valid_spec()
        spec["entityMappings"][0]["fieldMappings"][0]["confidence"] = 1.5

        errors = validate_mapping_spec(spec)
        assert errors[0]["path"] == "entityMappings[0].fieldMappings[0].confidence"


class TestResolveStrategy:
    """Test suite for ingest strategy resolution."""

    def test_override_wins(self):
        assert resolve_strategy("browser", True, True, None) == IngestStrategyType.BROWSER

    def test_upload_before_api(self):
        assert resolve_strategy(None, True, True, "https://x") == IngestStrategyType.UPLOAD

    def test_api_before_browser(self):
        assert resolve_strategy(None, False, True, "https://x") == IngestStrategyType.API

    def test_browser_with_entry_url(self):
        assert resolve_strategy(None, False, False, "https://x") == IngestStrategyType.BROWSER

    def test_nothing_applies(self):
        with pytest.raises(ConfigurationError):
            resolve_strategy(None, False, False)

    def test_unknown_override(self):
        with pytest.raises(ConfigurationError):
            resolve_strategy("fax", False, True)
