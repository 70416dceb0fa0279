"""Artifact store for ingested payloads.

Every payload the pipeline ingests or produces is written here and tracked
on the run by an ArtifactRef (key, sha256, size, timestamp).
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional
from datetime import datetime
import hashlib
import json
import logging
import os
import re
import shutil
import tempfile

from ..models.migration import ArtifactRef

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_key(key: str) -> str:
    """Make a key safe for the filesystem, keeping '/'-separated directories."""
    parts = [_UNSAFE_CHARS.sub("_", part) for part in key.split("/") if part not in ("", ".", "..")]
    return "/".join(parts)


class ArtifactStore(ABC):
    """Abstract base class for artifact storage."""

    @abstractmethod
    def put(
        self,
        run_id: str,
        key: str,
        data: bytes,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ArtifactRef:
        """Store bytes under (run, key). Durable before returning."""
        pass

    @abstractmethod
    def get(self, run_id: str, key: str) -> bytes:
        """Read the bytes stored under (run, key). Raises KeyError if absent."""
        pass

    @abstractmethod
    def exists(self, run_id: str, key: str) -> bool:
        pass

    @abstractmethod
    def list(self, run_id: str) -> List[ArtifactRef]:
        """List every artifact of a run."""
        pass

    @abstractmethod
    def delete(self, run_id: str) -> None:
        """Remove every artifact of a run."""
        pass

    def put_json(self, run_id: str, key: str, payload: Any) -> ArtifactRef:
        data = json.dumps(payload, indent=2, default=str).encode("utf-8")
        return self.put(run_id, key, data, {"contentType": "application/json"})

    def get_json(self, run_id: str, key: str) -> Any:
        return json.loads(self.get(run_id, key).decode("utf-8"))


class LocalArtifactStore(ArtifactStore):
    """
    Filesystem artifact store.

    Layout: ``<base_dir>/<run_id>/<sanitized key>`` with an optional
    ``.meta.json`` sidecar holding caller metadata.
    """

    def __init__(self, base_dir: str = "./data/artifacts"):
        self.base_dir = Path(base_dir)

    def _run_dir(self, run_id: str) -> Path:
        return self.base_dir / sanitize_key(run_id)

    def _path(self, run_id: str, key: str) -> Path:
        safe_key = sanitize_key(key)
        if not safe_key:
            raise ValueError(f"Invalid artifact key: {key!r}")
        return self._run_dir(run_id) / safe_key

    def put(
        self,
        run_id: str,
        key: str,
        data: bytes,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ArtifactRef:
        path = self._path(run_id, key)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Write then rename so readers never see a partial file
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        if metadata:
            with open(f"{path}{META_SUFFIX}", "w") as f:
                json.dump(metadata, f)

        ref = ArtifactRef(
            run_id=run_id,
            key=key,
            hash=hashlib.sha256(data).hexdigest(),
            size_bytes=len(data),
            stored_at=datetime.utcnow(),
        )
        logger.debug(f"Stored artifact {run_id}/{key} ({ref.size_bytes} bytes)")
        return ref

    def get(self, run_id: str, key: str) -> bytes:
        path = self._path(run_id, key)
        if not path.is_file():
            raise KeyError(f"Artifact not found: {run_id}/{key}")
        return path.read_bytes()

    def exists(self, run_id: str, key: str) -> bool:
        return self._path(run_id, key).is_file()

    def list(self, run_id: str) -> List[ArtifactRef]:
        run_dir = self._run_dir(run_id)
        if not run_dir.is_dir():
            return []

        refs = []
        for path in sorted(run_dir.rglob("*")):
            if not path.is_file() or path.name.endswith(META_SUFFIX) or path.name.startswith(".tmp-"):
                continue
            data = path.read_bytes()
            refs.append(ArtifactRef(
                run_id=run_id,
                key=path.relative_to(run_dir).as_posix(),
                hash=hashlib.sha256(data).hexdigest(),
                size_bytes=len(data),
                stored_at=datetime.utcfromtimestamp(path.stat().st_mtime),
            ))
        return refs

    def delete(self, run_id: str) -> None:
        shutil.rmtree(self._run_dir(run_id), ignore_errors=True)
