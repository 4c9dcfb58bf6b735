"""
Run Ledger Database Models.

The ledger is the durable record of one migration run: which pipeline steps
completed (checkpoints), how the run state machine moved, and every change
of the source freeze state. It lives in ``ledger.db`` inside the run directory.
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.sql import func

from .base import Base


checkpoint_status_enum = Enum(
    "completed",
    "failed",
    "skipped",
    name="checkpoint_status",
)

freeze_state_enum = Enum(
    "writable",
    "frozen",
    name="freeze_state",
)


class PhaseCheckpointModel(Base):
    """Outcome of one pipeline step.

    A ``completed`` checkpoint together with matching artifact digests lets
    a resumed run skip the step.
    """

    __tablename__ = "phase_checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(64), nullable=False, index=True)

    # Phase ("schema", "data", ...) and the step within it ("schema_extract", ...)
    phase = Column(String(32), nullable=False)
    step = Column(String(64), nullable=False, index=True)
    status = Column(checkpoint_status_enum, nullable=False)

    # Artifact name -> sha256 digest at completion time
    artifacts = Column(JSON, nullable=False, default=dict)

    # Counts, warnings, error detail
    detail = Column(JSON, nullable=True)

    recorded_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
    )

    __table_args__ = (
        Index("ix_phase_checkpoints_run_step", "run_id", "step"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "run_id": self.run_id,
            "phase": self.phase,
            "step": self.step,
            "status": self.status,
            "artifacts": self.artifacts,
            "detail": self.detail,
            "recorded_at": self.recorded_at.isoformat() if self.recorded_at else None,
        }


class StateTransitionModel(Base):
    """One move of the run state machine."""

    __tablename__ = "state_transitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(64), nullable=False, index=True)
    from_state = Column(String(32), nullable=False)
    to_state = Column(String(32), nullable=False)
    note = Column(Text, nullable=True)
    ts = Column(DateTime(timezone=True), nullable=False, default=func.now())

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "run_id": self.run_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "note": self.note,
            "ts": self.ts.isoformat() if self.ts else None,
        }


class FreezeTransitionModel(Base):
    """Audit record of a change to the source's write protection.

    The freeze is the only global mutable state in a migration; every
    transition is recorded with who requested it and why.
    """

    __tablename__ = "freeze_transitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(64), nullable=False, index=True)
    endpoint = Column(String(256), nullable=False)
    old_state = Column(freeze_state_enum, nullable=False)
    new_state = Column(freeze_state_enum, nullable=False)
    actor = Column(String(128), nullable=False)
    note = Column(Text, nullable=True)
    ts = Column(DateTime(timezone=True), nullable=False, default=func.now(), index=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "run_id": self.run_id,
            "endpoint": self.endpoint,
            "old_state": self.old_state,
            "new_state": self.new_state,
            "actor": self.actor,
            "note": self.note,
            "ts": self.ts.isoformat() if self.ts else None,
        }
