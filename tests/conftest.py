"""Shared fixtures for the migration pipeline tests."""

import pytest

from clinic_migration.loaders.memory_loader import InMemoryTargetStore
from clinic_migration.models.migration import MigrationConfig
from clinic_migration.orchestrator import MigrationOrchestrator
from clinic_migration.services.vault import CredentialVault, generate_key
from clinic_migration.storage.artifact_store import LocalArtifactStore
from clinic_migration.storage.repository import MigrationRepository


@pytest.fixture(autouse=True)
def offline_environment(monkeypatch):
    """Keep the assistant on its fallback path and promotion in memory."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("MIGRATION_TARGET_API_URL", raising=False)
    monkeypatch.delenv("MIGRATION_SOURCE_BASE_URL", raising=False)


@pytest.fixture
def repository(tmp_path):
    return MigrationRepository(tmp_path / "runs.json")


@pytest.fixture
def artifact_store(tmp_path):
    return LocalArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def vault():
    return CredentialVault(bytes.fromhex(generate_key()))


@pytest.fixture
def target_store():
    return InMemoryTargetStore()


@pytest.fixture
def config(tmp_path):
    return MigrationConfig(clinic_id="clinic-1", source_vendor="mock", data_dir=str(tmp_path))


@pytest.fixture
def orchestrator(config, repository, artifact_store, target_store, vault):
    """Orchestrator wired to temporary storage and the in-memory target."""
    return MigrationOrchestrator(
        config,
        repository=repository,
        artifact_store=artifact_store,
        target_store=target_store,
        vault=vault,
    )
