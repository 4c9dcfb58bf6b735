"""
Migration pipeline.

Flow:
1. Preflight: tools, reachability, readiness tier
2. Schema: extract, clean, restore
3. Data: freeze source, export, load with triggers suspended
4. Sequences: capture on the frozen source, apply on the target
5. Validate: independent equivalence checks, report written once per attempt
"""

from .data_transfer import DataArtifact, DataTransferEngine, LoadResult
from .errors import (
    ArtifactError,
    DataTransferError,
    FreezeStateError,
    IllegalTransitionError,
    PhaseError,
    SchemaExtractionError,
    SequenceSyncError,
)
from .orchestrator import MigrationOrchestrator, RunOutcome, RunResult, RunState
from .schema import SchemaArtifact, SchemaTransformer, TargetCapabilities
from .sequences import SequenceSynchronizer
from .session import FreezeState, MigrationSession, open_session, parse_scope
from .storage import ArtifactStore, FileArtifactStore, create_artifact_store
from .validation import CheckResult, ValidationEngine, ValidationReport

__all__ = [
    "ArtifactError",
    "ArtifactStore",
    "CheckResult",
    "DataArtifact",
    "DataTransferEngine",
    "DataTransferError",
    "FileArtifactStore",
    "FreezeState",
    "FreezeStateError",
    "IllegalTransitionError",
    "LoadResult",
    "MigrationOrchestrator",
    "MigrationSession",
    "PhaseError",
    "RunOutcome",
    "RunResult",
    "RunState",
    "SchemaArtifact",
    "SchemaExtractionError",
    "SchemaTransformer",
    "SequenceSyncError",
    "SequenceSynchronizer",
    "TargetCapabilities",
    "ValidationEngine",
    "ValidationReport",
    "create_artifact_store",
    "open_session",
    "parse_scope",
]
