"""
Data Transfer Engine.

Freezes the source for writes, exports row data in COPY format, replays it
on the target with trigger enforcement suspended, and restores enforcement
afterwards.

The engine owns the session's freeze state. It sets the freeze before any
data leaves the source, so the data export and the later sequence capture
see the same snapshot. It never lifts the freeze on its own: only an explicit
rollback calls ``unfreeze_source``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Tuple

import structlog

from ..db.endpoint import Endpoint
from ..db.pg_tools import PgTools, count_error_markers
from .errors import DataTransferError, FreezeStateError
from .session import FreezeState, MigrationSession

logger = structlog.get_logger()

DATA_DUMP = "data.sql"
DATA_DUMP_ERRORS = "data_dump_errors.log"
DATA_RESTORE_ERRORS = "data_restore_errors.log"

_COPY_RE = re.compile(
    r'^COPY\s+(?:"?(?P<schema>[^".\s]+)"?\.)?"?(?P<table>[^"\s(]+)"?\s*\('
)


@dataclass(frozen=True)
class DataArtifact:
    """Exported row data; immutable once written."""

    name: str
    digest: str
    tables: Tuple[str, ...]
    missing_tables: Tuple[str, ...] = ()


@dataclass
class LoadResult:
    """Outcome of replaying a data artifact on the target."""

    errors: int
    error_log: str
    tables_loaded: Tuple[str, ...]
    triggers_restored: int
    returncode: int


def tables_in_dump(lines: Iterable[str]) -> Tuple[str, ...]:
    """Tables that have a COPY block, in dump (replay) order."""
    tables: List[str] = []
    for line in lines:
        if not line.startswith("COPY "):
            continue
        match = _COPY_RE.match(line)
        if match and match.group("table") not in tables:
            tables.append(match.group("table"))
    return tuple(tables)


class DataTransferEngine:
    """Moves row data from the frozen source to the target."""

    def __init__(self, session: MigrationSession, tools: PgTools):
        self.session = session
        self.tools = tools
        self.store = session.store
        self.logger = logger.bind(run_id=session.run_id, component="data_transfer")

    def _transition(self, new_state: FreezeState, actor: str, note: str) -> None:
        old_state = self.session.freeze_state
        self.session.ledger.record_freeze(
            endpoint=self.session.source.display_url,
            old_state=old_state.value,
            new_state=new_state.value,
            actor=actor,
            note=note,
        )
        self.session.freeze_state = new_state
        self.store.append_event({
            "event": "freeze_state_changed",
            "old_state": old_state.value,
            "new_state": new_state.value,
            "actor": actor,
        })
        self.logger.info(
            "freeze_state_changed",
            old_state=old_state.value,
            new_state=new_state.value,
            actor=actor,
        )

    def freeze_source(self) -> None:
        """Make the source reject writes from new sessions.

        Raises:
            FreezeStateError: If the source still accepts writes afterwards
        """
        source = self.session.source
        if self.session.freeze_state is FreezeState.FROZEN:
            self.logger.info("source_already_frozen", source=source.display_url)
            return

        source.set_read_only(True)
        if not source.is_read_only():
            raise FreezeStateError(
                code="FREEZE_NOT_EFFECTIVE",
                message=f"{source.display_url} still opens read-write sessions after freeze",
            )
        self._transition(
            FreezeState.FROZEN,
            actor="data_transfer",
            note="Source set read-only before data export",
        )

    def unfreeze_source(self, actor: str = "operator", note: str = "Explicit rollback") -> None:
        """Re-enable writes on the source. Only called by an explicit rollback."""
        self.session.source.set_read_only(False)
        self._transition(FreezeState.WRITABLE, actor=actor, note=note)

    def extract_data(self, ordering_hint: Iterable[str] = ()) -> DataArtifact:
        """Export row data of the migrated schema in COPY format.

        Args:
            ordering_hint: Tables declared by the schema artifact; any without
                a COPY block in the export is reported

        Raises:
            FreezeStateError: If the source is not frozen
            DataTransferError: If pg_dump fails
        """
        if self.session.freeze_state is not FreezeState.FROZEN:
            raise FreezeStateError(
                code="SOURCE_NOT_FROZEN",
                message="Data export requires the source to be frozen first",
            )

        partial = self.store.partial_path(DATA_DUMP)
        result = self.tools.dump(
            self.session.source.libpq_url,
            partial,
            [
                "--data-only",
                f"--schema={self.session.schema}",
                "--no-owner",
                "--no-privileges",
                # Replay follows dump order, not FK order; suspend FK triggers
                "--disable-triggers",
            ],
        )
        self.store.write_text(DATA_DUMP_ERRORS, result.stderr)

        if not result.ok:
            self.store.discard_partial(DATA_DUMP)
            raise DataTransferError(
                code="DATA_DUMP_FAILED",
                message=f"pg_dump exited with {result.returncode}",
                detail={"stderr": result.stderr[-2000:], "error_log": DATA_DUMP_ERRORS},
            )

        digest = self.store.commit_partial(DATA_DUMP)
        with open(self.store.path(DATA_DUMP), encoding="utf-8") as f:
            tables = tables_in_dump(f)

        missing = tuple(t for t in ordering_hint if t not in tables)
        if missing:
            self.logger.warning("tables_without_data", tables=list(missing))

        self.logger.info("data_exported", tables=len(tables), artifact=DATA_DUMP)
        return DataArtifact(name=DATA_DUMP, digest=digest, tables=tables, missing_tables=missing)

    def load_data(self, target: Endpoint, artifact: DataArtifact) -> LoadResult:
        """Replay a data artifact on the target.

        Triggers are suspended for the load session and re-enabled on every
        table of the schema afterwards, whether or not the load succeeded.
        Errors are counted, not raised: the caller decides what a partial
        load means.

        Raises:
            DataTransferError: If the artifact no longer matches its digest
        """
        if not self.store.verify(artifact.name, artifact.digest):
            raise DataTransferError(
                code="DATA_ARTIFACT_MODIFIED",
                message=f"{artifact.name} is missing or does not match its recorded digest",
            )

        schema = self.session.schema
        restored = 0
        try:
            result = self.tools.run_script(
                target.libpq_url,
                self.store.path(artifact.name),
                session_options={"session_replication_role": "replica"},
            )
        finally:
            restored = target.enable_all_triggers(schema, target.list_tables(schema))
            self.logger.info("trigger_enforcement_restored", tables=restored)

        self.store.write_text(DATA_RESTORE_ERRORS, result.stderr)
        errors = count_error_markers(result.stderr)
        if errors:
            self.logger.warning(
                "data_restore_errors", errors=errors, error_log=DATA_RESTORE_ERRORS
            )
        else:
            self.logger.info("data_restored", tables=len(artifact.tables))

        return LoadResult(
            errors=errors,
            error_log=DATA_RESTORE_ERRORS,
            tables_loaded=artifact.tables,
            triggers_restored=restored,
            returncode=result.returncode,
        )
