"""
Pipeline error types.

Every error carries a stable ``code`` for programmatic handling and a
human-readable ``message``. Phase errors additionally name the phase they
aborted so the orchestrator can map them onto an exit outcome.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PhaseError(Exception):
    """
    Raised when a pipeline phase cannot complete.

    Attributes:
        code: Stable error code for programmatic handling
        message: Human-readable error description
        phase: Phase that raised ("schema", "data", "sequences", "validation")
        detail: Optional structured context (command, stderr tail, ...)
    """

    phase: str = "unknown"

    def __init__(
        self,
        code: str,
        message: str,
        phase: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        if phase is not None:
            self.phase = phase
        self.detail = detail or {}
        super().__init__(f"{code}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "error": "phase_error",
            "phase": self.phase,
            "code": self.code,
            "message": self.message,
            "detail": self.detail,
        }


class SchemaExtractionError(PhaseError):
    phase = "schema"


class DataTransferError(PhaseError):
    phase = "data"


class FreezeStateError(PhaseError):
    """Raised when an operation needs a freeze state the session is not in."""

    phase = "data"


class SequenceSyncError(PhaseError):
    phase = "sequences"


class ArtifactError(Exception):
    """Raised on artifact overwrite attempts or digest mismatches."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class IllegalTransitionError(Exception):
    """Raised when the run state machine is asked for a transition it does not allow."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Illegal transition: {current} -> {requested}")
