"""
Sequence Synchronizer.

Captures the last issued value of every sequence in the migrated schema and
replays it on the target with ``setval(..., true)``: the captured value is
marked as already issued, so the next generated identifier is strictly
greater and cannot collide with a migrated row.
"""
from __future__ import annotations

import json
import logging
from typing import Dict

from ..db.endpoint import Endpoint, split_qualified
from .errors import FreezeStateError, SequenceSyncError
from .session import FreezeState, MigrationSession

logger = logging.getLogger(__name__)

SEQUENCE_STATE = "sequences.json"
SYNC_SCRIPT = "sync_sequences.sql"

# Schema-qualified sequence name -> last issued value
SequenceState = Dict[str, int]


def _literal(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def _ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def render_sync_script(state: SequenceState) -> str:
    """Render the setval script kept in the run directory for inspection."""
    lines = []
    for qualified in sorted(state):
        schema, name = split_qualified(qualified)
        regclass = _literal(f"{_ident(schema)}.{_ident(name)}")
        lines.append(f"SELECT setval({regclass}, {state[qualified]}, true);")
    return "\n".join(lines) + ("\n" if lines else "")


class SequenceSynchronizer:
    """Captures sequence cursors on the source and replays them on the target."""

    def __init__(self, session: MigrationSession):
        self.session = session
        self.store = session.store

    def capture_all(self, source: Endpoint) -> SequenceState:
        """Read every issued sequence value of the migrated schema.

        Raises:
            FreezeStateError: If the source is not frozen (the capture would be stale)
        """
        if self.session.freeze_state is not FreezeState.FROZEN:
            raise FreezeStateError(
                code="SOURCE_NOT_FROZEN",
                message="Sequence capture requires the source to be frozen; "
                "include the data phase in the scope (it freezes the source first)",
                phase="sequences",
            )

        schema = self.session.schema
        state: SequenceState = {}
        skipped = []
        for name, last_value in sorted(source.list_sequences(schema).items()):
            if last_value is None:
                skipped.append(name)
                continue
            state[f"{schema}.{name}"] = last_value

        if skipped:
            logger.info(f"Skipped {len(skipped)} never-used sequences: {', '.join(skipped)}")
        self.store.write_json(SEQUENCE_STATE, state)
        self.store.write_text(SYNC_SCRIPT, render_sync_script(state))
        logger.info(f"Captured {len(state)} sequences")
        return state

    def load(self) -> SequenceState:
        """Read the sequence state captured by an earlier run."""
        return {k: int(v) for k, v in json.loads(self.store.read_text(SEQUENCE_STATE)).items()}

    def apply(self, target: Endpoint, state: SequenceState) -> int:
        """Set every target sequence to its captured value.

        Every sequence is attempted; failures are collected and raised together.

        Returns:
            Number of sequences synchronized

        Raises:
            SequenceSyncError: If any sequence could not be set
        """
        applied = 0
        failures: Dict[str, str] = {}
        for qualified in sorted(state):
            schema, name = split_qualified(qualified, self.session.schema)
            try:
                target.set_sequence(schema, name, state[qualified])
                applied += 1
            except Exception as e:
                logger.error(f"Failed to set {qualified}: {e}")
                failures[qualified] = str(e)

        if failures:
            raise SequenceSyncError(
                code="SEQUENCE_SYNC_FAILED",
                message=f"{len(failures)} of {len(state)} sequences could not be set: "
                f"{', '.join(sorted(failures))}",
                detail={"failures": failures, "applied": applied},
            )

        logger.info(f"{applied} sequences synced")
        return applied
