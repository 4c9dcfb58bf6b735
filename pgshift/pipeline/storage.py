"""
Artifact storage for migration runs.

v0: file:// support (local filesystem)

Every artifact written through the store is recorded in ``manifest.json``
with its sha256 digest. Checkpoints keep those digests, so a resumed run can
tell an intact artifact from a missing or edited one.
"""
from __future__ import annotations

import hashlib
import json
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from .errors import ArtifactError

MANIFEST = "manifest.json"
EVENTS = "events.jsonl"


def sha256_file(path: Path) -> str:
    """Digest a file in chunks (data exports can be large)."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ArtifactStore(ABC):
    """Abstract base class for run artifact storage."""

    @abstractmethod
    def path(self, name: str) -> Path:
        """Local path of an artifact (it may not exist yet)."""
        pass

    @abstractmethod
    def exists(self, name: str) -> bool:
        """Check whether an artifact exists."""
        pass

    @abstractmethod
    def write_text(self, name: str, content: str) -> str:
        """Write a text artifact and return its digest."""
        pass

    @abstractmethod
    def write_json(self, name: str, data: Any) -> str:
        """Write a JSON artifact (sorted keys) and return its digest."""
        pass

    @abstractmethod
    def write_once(self, name: str, content: str) -> str:
        """Write an artifact that must not exist yet; return its digest."""
        pass

    @abstractmethod
    def read_text(self, name: str) -> str:
        """Read a text artifact."""
        pass

    @abstractmethod
    def partial_path(self, name: str) -> Path:
        """Scratch path for a tool that writes an artifact itself."""
        pass

    @abstractmethod
    def commit_partial(self, name: str) -> str:
        """Promote a partial file to the named artifact; return its digest."""
        pass

    @abstractmethod
    def discard_partial(self, name: str) -> None:
        """Remove a partial file left by a failed tool run."""
        pass

    @abstractmethod
    def digest(self, name: str) -> Optional[str]:
        """Digest recorded in the manifest for an artifact."""
        pass

    @abstractmethod
    def verify(self, name: str, expected: str) -> bool:
        """Check that an artifact exists and still has the expected digest."""
        pass

    @abstractmethod
    def next_report_name(self) -> str:
        """Name for the next validation report."""
        pass

    @abstractmethod
    def append_event(self, event: Dict[str, Any]) -> None:
        """Append a structured event to events.jsonl."""
        pass

    @abstractmethod
    def get_uri(self) -> str:
        """Get the full URI of this store."""
        pass


class FileArtifactStore(ArtifactStore):
    """Local filesystem artifact store (file:// URIs).

    Structure:
        ./migration-workspace/{run_id}/
        ├── manifest.json          # artifact name -> sha256, size, written_at
        ├── events.jsonl           # structured run events
        ├── ledger.db              # checkpoints, state and freeze transitions
        ├── schema.original.sql    # raw schema export
        ├── schema.sql             # cleaned schema export
        ├── rls_backup.sql         # removed row-level security statements
        ├── data.sql               # data export (COPY format)
        ├── sync_sequences.sql     # setval script
        ├── *_errors.log           # tool stderr per step
        └── reports/               # validation-<n>.json, written once each
    """

    def __init__(self, base_path: Path):
        """Initialize with base path for this run's directory.

        Args:
            base_path: Path to the run's directory
        """
        self.base_path = base_path
        self._ensure_base_structure()

    def _ensure_base_structure(self) -> None:
        """Create the base directory structure."""
        self.base_path.mkdir(parents=True, exist_ok=True)
        (self.base_path / "reports").mkdir(exist_ok=True)

    def _load_manifest(self) -> Dict[str, Dict[str, Any]]:
        manifest_path = self.base_path / MANIFEST
        if not manifest_path.exists():
            return {}
        return json.loads(manifest_path.read_text(encoding="utf-8"))

    def _register(self, name: str) -> str:
        full_path = self.base_path / name
        digest = sha256_file(full_path)
        manifest = self._load_manifest()
        manifest[name] = {
            "sha256": digest,
            "size": full_path.stat().st_size,
            "written_at": datetime.now(timezone.utc).isoformat(),
        }
        (self.base_path / MANIFEST).write_text(
            json.dumps(manifest, indent=2, sort_keys=True), encoding="utf-8"
        )
        return digest

    def path(self, name: str) -> Path:
        return self.base_path / name

    def exists(self, name: str) -> bool:
        return (self.base_path / name).exists()

    def write_text(self, name: str, content: str) -> str:
        full_path = self.base_path / name
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf-8")
        return self._register(name)

    def write_json(self, name: str, data: Any) -> str:
        return self.write_text(name, json.dumps(data, indent=2, sort_keys=True, default=str) + "\n")

    def write_once(self, name: str, content: str) -> str:
        full_path = self.base_path / name
        full_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(full_path, "x", encoding="utf-8") as f:
                f.write(content)
        except FileExistsError:
            raise ArtifactError(
                code="ARTIFACT_EXISTS",
                message=f"Artifact {name} already exists and is immutable",
            )
        return self._register(name)

    def read_text(self, name: str) -> str:
        full_path = self.base_path / name
        if not full_path.exists():
            raise ArtifactError(
                code="ARTIFACT_MISSING",
                message=f"Artifact {name} not found in {self.get_uri()}",
            )
        return full_path.read_text(encoding="utf-8")

    def partial_path(self, name: str) -> Path:
        return self.base_path / f"{name}.partial"

    def commit_partial(self, name: str) -> str:
        partial = self.partial_path(name)
        if not partial.exists():
            raise ArtifactError(
                code="ARTIFACT_MISSING",
                message=f"No partial output for {name}",
            )
        os.replace(partial, self.base_path / name)
        return self._register(name)

    def discard_partial(self, name: str) -> None:
        self.partial_path(name).unlink(missing_ok=True)

    def digest(self, name: str) -> Optional[str]:
        entry = self._load_manifest().get(name)
        return entry["sha256"] if entry else None

    def verify(self, name: str, expected: str) -> bool:
        full_path = self.base_path / name
        if not full_path.exists():
            return False
        return sha256_file(full_path) == expected

    def next_report_name(self) -> str:
        """Name for the next validation report; earlier reports are never reused."""
        existing = sorted((self.base_path / "reports").glob("validation-*.json"))
        return f"reports/validation-{len(existing) + 1}.json"

    def append_event(self, event: Dict[str, Any]) -> None:
        # Add timestamp if not present
        if "timestamp" not in event:
            event["timestamp"] = datetime.now(timezone.utc).isoformat()
        with open(self.base_path / EVENTS, "a", encoding="utf-8") as f:
            f.write(json.dumps(event, default=str) + "\n")

    def get_uri(self) -> str:
        return f"file://{self.base_path}"


def create_artifact_store(uri: str, run_id: str) -> FileArtifactStore:
    """Factory function to create an artifact store for a run.

    Args:
        uri: Workspace root, as a file:// URI or a plain path
        run_id: Run ID to create the run directory for

    Returns:
        Store rooted at ``<workspace>/<run_id>``

    Raises:
        ValueError: If URI scheme is not supported
    """
    parsed = urlparse(uri)

    if parsed.scheme == "file":
        return FileArtifactStore(Path(parsed.path) / run_id)
    elif parsed.scheme == "":
        return FileArtifactStore(Path(uri) / run_id)
    else:
        raise ValueError(
            f"Unsupported storage scheme: {parsed.scheme}. Supported: file://"
        )
