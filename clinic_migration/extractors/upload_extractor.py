"""Uploaded export file ingest strategy."""

import json
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union
from datetime import datetime

from .base import BaseExtractor, ExtractionResult
from ..models.migration import IngestStrategyType, MigrationRun
from ..services.profiler import guess_entity_type
from ..storage.artifact_store import ArtifactStore
from ..storage.repository import MigrationRepository

logger = logging.getLogger(__name__)

UploadedFile = Union[str, Path, Tuple[str, bytes]]


def read_uploaded_files(files: Sequence[UploadedFile]) -> List[Tuple[str, bytes]]:
    """Read uploads into (filename, bytes) pairs keyed by base name."""
    read = []
    for item in files:
        if isinstance(item, tuple):
            name, data = item
            read.append((Path(name).name, data))
        else:
            path = Path(item)
            read.append((path.name, path.read_bytes()))
    return read


def count_records(key: str, data: bytes) -> int:
    """
    Count the records in an export file.

    JSON arrays count their elements and a single JSON object counts as one.
    Anything else is treated as CSV: non-empty lines minus the header.
    """
    if key.lower().endswith(".json"):
        parsed = json.loads(data.decode("utf-8"))
        return len(parsed) if isinstance(parsed, list) else 1

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        text = data.decode("latin-1")
    lines = [line for line in text.splitlines() if line.strip()]
    return max(len(lines) - 1, 0)


class UploadExtractor(BaseExtractor):
    """
    Ingests export files supplied by the clinic.

    Supports:
    - Local file paths
    - In-memory ``(filename, bytes)`` pairs
    - CSV and JSON exports
    """

    strategy = IngestStrategyType.UPLOAD

    def __init__(
        self,
        run: MigrationRun,
        artifact_store: ArtifactStore,
        files: Sequence[UploadedFile],
        repository: Optional[MigrationRepository] = None,
        should_pause: Optional[Callable[[], bool]] = None,
    ):
        super().__init__(run, artifact_store, repository, should_pause)
        self.files = list(files)

    def extract(self) -> ExtractionResult:
        started_at = datetime.utcnow()

        if not self.files:
            self.add_warning("No uploaded files to ingest")

        counts: Dict[str, int] = {}
        for key, data in read_uploaded_files(self.files):
            self.store(key, data)
            entity_type = guess_entity_type(key)
            try:
                count = count_records(key, data)
            except (ValueError, UnicodeDecodeError) as e:
                self.add_error(f"Could not read {key}: {e}", entity_type=entity_type)
                continue
            counts[entity_type] = counts.get(entity_type, 0) + count
            if key not in self.run.uploaded_keys:
                self.run.uploaded_keys.append(key)
            logger.info(f"Stored upload {key}: {count} {entity_type} records")

        self.run.entity_counts.update(counts)
        self.save_checkpoint()
        return self.get_extraction_result(self.run.entity_counts, started_at)

