"""
Run Ledger Service.

Provides a clean interface for recording and reading the durable state of a
migration run: step checkpoints, state-machine transitions and freeze
transitions.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from .ledger_models import (
    FreezeTransitionModel,
    PhaseCheckpointModel,
    StateTransitionModel,
)


class LedgerService:
    """Service for managing run ledger entries.

    Usage:
        ledger = LedgerService(db_session, run_id="20260101-abcd")
        ledger.record_checkpoint("schema", "schema_extract", "completed", {"schema.sql": "ab12..."})
    """

    def __init__(self, db: Session, run_id: str):
        self.db = db
        self.run_id = run_id

    def record_checkpoint(
        self,
        phase: str,
        step: str,
        status: str,
        artifacts: Optional[Dict[str, str]] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> PhaseCheckpointModel:
        """Record the outcome of a pipeline step.

        Args:
            phase: Phase the step belongs to
            step: Step name (e.g., "schema_extract", "data_load")
            status: "completed", "failed" or "skipped"
            artifacts: Artifact name -> sha256 digest produced by the step
            detail: Optional counts, warnings or error detail

        Returns:
            The created PhaseCheckpointModel
        """
        entry = PhaseCheckpointModel(
            run_id=self.run_id,
            phase=phase,
            step=step,
            status=status,
            artifacts=artifacts or {},
            detail=detail,
            recorded_at=datetime.now(timezone.utc),
        )

        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def latest_checkpoint(self, step: str) -> Optional[PhaseCheckpointModel]:
        """Get the most recent checkpoint for a step, if any."""
        return (
            self.db.query(PhaseCheckpointModel)
            .filter(
                PhaseCheckpointModel.run_id == self.run_id,
                PhaseCheckpointModel.step == step,
            )
            .order_by(desc(PhaseCheckpointModel.id))
            .first()
        )

    def completed_checkpoint(self, step: str) -> Optional[PhaseCheckpointModel]:
        """Get the latest checkpoint for a step only if it completed."""
        checkpoint = self.latest_checkpoint(step)
        if checkpoint is not None and checkpoint.status == "completed":
            return checkpoint
        return None

    def checkpoints(self) -> List[PhaseCheckpointModel]:
        """Get all checkpoints of the run in recording order."""
        return (
            self.db.query(PhaseCheckpointModel)
            .filter(PhaseCheckpointModel.run_id == self.run_id)
            .order_by(PhaseCheckpointModel.id)
            .all()
        )

    def record_transition(
        self, from_state: str, to_state: str, note: Optional[str] = None
    ) -> StateTransitionModel:
        """Record a move of the run state machine."""
        entry = StateTransitionModel(
            run_id=self.run_id,
            from_state=from_state,
            to_state=to_state,
            note=note,
            ts=datetime.now(timezone.utc),
        )

        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def transitions(self) -> List[StateTransitionModel]:
        """Get all state transitions of the run in order."""
        return (
            self.db.query(StateTransitionModel)
            .filter(StateTransitionModel.run_id == self.run_id)
            .order_by(StateTransitionModel.id)
            .all()
        )

    def record_freeze(
        self,
        endpoint: str,
        old_state: str,
        new_state: str,
        actor: str,
        note: Optional[str] = None,
    ) -> FreezeTransitionModel:
        """Record a change of the source write protection.

        Args:
            endpoint: Masked URL of the database whose writability changed
            old_state: "writable" or "frozen"
            new_state: "writable" or "frozen"
            actor: Component or operator that requested the change
            note: Optional human-readable note

        Returns:
            The created FreezeTransitionModel
        """
        entry = FreezeTransitionModel(
            run_id=self.run_id,
            endpoint=endpoint,
            old_state=old_state,
            new_state=new_state,
            actor=actor,
            note=note or f"Freeze state changed: {old_state} -> {new_state}",
            ts=datetime.now(timezone.utc),
        )

        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def freeze_history(self) -> List[FreezeTransitionModel]:
        """Get all freeze transitions of the run in order."""
        return (
            self.db.query(FreezeTransitionModel)
            .filter(FreezeTransitionModel.run_id == self.run_id)
            .order_by(FreezeTransitionModel.id)
            .all()
        )

    def current_freeze_state(self) -> str:
        """Get the freeze state implied by the ledger ("writable" if never frozen)."""
        last = (
            self.db.query(FreezeTransitionModel)
            .filter(FreezeTransitionModel.run_id == self.run_id)
            .order_by(desc(FreezeTransitionModel.id))
            .first()
        )
        return last.new_state if last else "writable"
