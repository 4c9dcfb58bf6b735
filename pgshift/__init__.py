"""
pgshift

Moves a live PostgreSQL database from a hosted platform to a plain managed
Postgres target, and proves the two are equivalent before cutover.
"""

import importlib.metadata

__version__ = importlib.metadata.version("pgshift")

from .config import Settings, get_settings
from .pipeline.orchestrator import MigrationOrchestrator, RunOutcome, RunResult
from .pipeline.session import MigrationSession, open_session
from .pipeline.validation import ValidationReport

__all__ = [
    "MigrationOrchestrator",
    "MigrationSession",
    "RunOutcome",
    "RunResult",
    "Settings",
    "ValidationReport",
    "get_settings",
    "open_session",
]
