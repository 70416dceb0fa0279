"""Persistence for artifacts and pipeline state."""

from .artifact_store import ArtifactStore, LocalArtifactStore, sanitize_key
from .repository import MigrationRepository

__all__ = [
    "ArtifactStore",
    "LocalArtifactStore",
    "sanitize_key",
    "MigrationRepository",
]
