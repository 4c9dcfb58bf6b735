"""
Migration Orchestrator - drives one run through the pipeline.

States:
    idle -> preflight -> schema -> data -> sequences -> validated -> done
    failed is reachable from every non-terminal state.
    schema -> done ends a dry-run; idle -> validated starts a validation-only run.

Each step is checkpointed in the run ledger together with the digests of the
artifacts it produced. On resume a step is skipped only when its checkpoint
completed and every recorded artifact still matches its digest. Validation is
never skipped.

Phase errors stop the run. Artifacts and earlier phases are left in place and
the source freeze is never lifted here; only ``rollback`` does that.
"""
from __future__ import annotations

import traceback
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..audit.coupling import CouplingFinding
from ..config import Settings
from ..db.ledger_models import PhaseCheckpointModel
from ..db.pg_tools import PgTools
from ..policy.preflight import (
    PreflightConfig,
    PreflightError,
    PreflightResult,
    evaluate,
    gather_inputs,
)
from .data_transfer import (
    DATA_DUMP,
    DATA_RESTORE_ERRORS,
    DataArtifact,
    DataTransferEngine,
)
from .errors import IllegalTransitionError, PhaseError
from .schema import (
    CLEAN_SCHEMA,
    RESTORE_ERRORS,
    SchemaArtifact,
    SchemaTransformer,
    TargetCapabilities,
)
from .sequences import SEQUENCE_STATE, SYNC_SCRIPT, SequenceSynchronizer
from .session import FreezeState, MigrationSession
from .validation import ValidationEngine, ValidationReport

logger = structlog.get_logger()


class RunState(str, Enum):
    IDLE = "idle"
    PREFLIGHT = "preflight"
    SCHEMA = "schema"
    DATA = "data"
    SEQUENCES = "sequences"
    VALIDATED = "validated"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = {RunState.DONE, RunState.FAILED}

ALLOWED_TRANSITIONS = {
    RunState.IDLE: {RunState.PREFLIGHT, RunState.VALIDATED, RunState.FAILED},
    RunState.PREFLIGHT: {RunState.SCHEMA, RunState.FAILED},
    RunState.SCHEMA: {RunState.DATA, RunState.DONE, RunState.FAILED},
    RunState.DATA: {RunState.SEQUENCES, RunState.FAILED},
    RunState.SEQUENCES: {RunState.VALIDATED, RunState.FAILED},
    RunState.VALIDATED: {RunState.DONE, RunState.FAILED},
    RunState.DONE: set(),
    RunState.FAILED: set(),
}


class RunOutcome(str, Enum):
    SUCCESS = "success"
    SUCCESS_WITH_WARNINGS = "success_with_warnings"
    FAILURE_PREFLIGHT = "failure_preflight"
    FAILURE_PHASE_SCHEMA = "failure_phase_schema"
    FAILURE_PHASE_DATA = "failure_phase_data"
    FAILURE_PHASE_SEQUENCES = "failure_phase_sequences"
    FAILURE_PHASE_VALIDATION = "failure_phase_validation"

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self]


EXIT_CODES = {
    RunOutcome.SUCCESS: 0,
    RunOutcome.SUCCESS_WITH_WARNINGS: 3,
    RunOutcome.FAILURE_PREFLIGHT: 10,
    RunOutcome.FAILURE_PHASE_SCHEMA: 21,
    RunOutcome.FAILURE_PHASE_DATA: 22,
    RunOutcome.FAILURE_PHASE_SEQUENCES: 23,
    RunOutcome.FAILURE_PHASE_VALIDATION: 24,
}

_PHASE_OUTCOMES = {
    "schema": RunOutcome.FAILURE_PHASE_SCHEMA,
    "data": RunOutcome.FAILURE_PHASE_DATA,
    "sequences": RunOutcome.FAILURE_PHASE_SEQUENCES,
    "validated": RunOutcome.FAILURE_PHASE_VALIDATION,
    "validation": RunOutcome.FAILURE_PHASE_VALIDATION,
}


@dataclass
class RunResult:
    """What one invocation of the orchestrator achieved."""
    run_id: str
    outcome: RunOutcome
    state: RunState
    preflight: Optional[PreflightResult] = None
    report: Optional[ValidationReport] = None
    error: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)
    skipped_steps: List[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code


class MigrationOrchestrator:
    """Runs preflight, the three migration phases and validation for a session."""

    def __init__(
        self,
        session: MigrationSession,
        tools: PgTools,
        settings: Settings,
        auditor: Optional[Callable[[str], CouplingFinding]] = None,
    ):
        self.session = session
        self.tools = tools
        self.settings = settings
        self.auditor = auditor
        self.state = RunState.IDLE
        self.logger = logger.bind(run_id=session.run_id, component="orchestrator")

        capabilities = TargetCapabilities(
            unavailable=frozenset(settings.unavailable_extension_list),
            available=(
                frozenset(settings.supported_extension_list)
                if settings.supported_extension_list
                else None
            ),
        )
        self.transformer = SchemaTransformer(
            store=session.store,
            tools=tools,
            roles=settings.platform_role_list,
            capabilities=capabilities,
            schema=session.schema,
        )
        self.data_engine = DataTransferEngine(session, tools)
        self.synchronizer = SequenceSynchronizer(session)
        self.validator = ValidationEngine(
            store=session.store,
            schema=session.schema,
            workers=settings.validation_workers,
            run_id=session.run_id,
        )

        self._warnings: List[str] = []
        self._skipped: List[str] = []

    # -- state machine -------------------------------------------------------

    def transition(self, new_state: RunState, note: Optional[str] = None) -> None:
        """Move the state machine, recording the move in the ledger.

        Raises:
            IllegalTransitionError: If the move is not allowed from the current state
        """
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise IllegalTransitionError(self.state.value, new_state.value)
        old_state = self.state
        self.session.ledger.record_transition(old_state.value, new_state.value, note)
        self.session.store.append_event(
            {"event": "state_changed", "from": old_state.value, "to": new_state.value, "note": note}
        )
        self.state = new_state
        self.logger.info("state_changed", from_state=old_state.value, to_state=new_state.value)

    # -- checkpoints ---------------------------------------------------------

    def _reusable(self, step: str) -> Optional[PhaseCheckpointModel]:
        """Completed checkpoint for ``step`` whose artifacts are all intact."""
        checkpoint = self.session.ledger.completed_checkpoint(step)
        if checkpoint is None:
            return None
        changed = [
            name
            for name, digest in sorted((checkpoint.artifacts or {}).items())
            if not self.session.store.verify(name, digest)
        ]
        if changed:
            self.logger.warning("checkpoint_stale", step=step, changed=changed)
            return None
        self.logger.info("checkpoint_reused", step=step)
        self._skipped.append(step)
        return checkpoint

    def _checkpoint(
        self,
        phase: str,
        step: str,
        status: str,
        artifacts: Optional[Dict[str, str]] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.session.ledger.record_checkpoint(phase, step, status, artifacts, detail)
        self.session.store.append_event(
            {"event": "checkpoint", "phase": phase, "step": step, "status": status}
        )

    def _digests(self, *names: str) -> Dict[str, str]:
        return {name: self.session.store.digest(name) or "" for name in names}

    def _skip_out_of_scope(self, phase: str, steps: List[str]) -> None:
        for step in steps:
            self._checkpoint(phase, step, "skipped", detail={"reason": "out of scope"})
        self.logger.info("phase_skipped", phase=phase, reason="out of scope")

    # -- phases --------------------------------------------------------------

    def preflight(self) -> PreflightResult:
        """Gather facts and evaluate the gate. Raises PreflightError."""
        inputs = gather_inputs(
            self.settings,
            self.session.source,
            self.session.target,
            self.tools,
            self.auditor,
        )
        return evaluate(
            inputs, PreflightConfig(override_readiness=self.session.override_readiness)
        )

    def _schema_extract(self) -> SchemaArtifact:
        if self._reusable("schema_extract") is not None:
            return self.transformer.load()

        artifact = self.transformer.extract(self.session.source)
        _, blocked = self.transformer.check_extensions(self.session.source.list_extensions())
        artifact = self.transformer.clean(replace(artifact, blocked_extensions=blocked))
        digests = self.transformer.save(artifact)
        self._checkpoint(
            "schema",
            "schema_extract",
            "completed",
            artifacts=digests,
            detail={
                "tables": len(artifact.tables),
                "removed": len(artifact.removed),
                "policies": len(artifact.policies),
                "blocked_extensions": sorted(blocked),
            },
        )
        return artifact

    def _schema_restore(self) -> None:
        if self._reusable("schema_restore") is not None:
            return
        result = self.transformer.restore(self.session.target)
        if result.errors:
            self._warnings.append(
                f"{result.errors} errors during schema restore (see {result.error_log})"
            )
        self._checkpoint(
            "schema",
            "schema_restore",
            "completed",
            artifacts=self._digests(CLEAN_SCHEMA, RESTORE_ERRORS),
            detail={"errors": result.errors, "returncode": result.returncode},
        )

    def _schema_phase(self) -> Optional[SchemaArtifact]:
        if not self.session.in_scope("schema"):
            self._skip_out_of_scope("schema", ["schema_extract", "schema_restore"])
            return None
        artifact = self._schema_extract()
        if artifact.blocked_extensions:
            self._warnings.append(
                "Blocked extensions stripped: " + ", ".join(sorted(artifact.blocked_extensions))
            )
        if not self.session.dry_run:
            self._schema_restore()
        return artifact

    def _data_extract(self, schema_artifact: Optional[SchemaArtifact]) -> DataArtifact:
        checkpoint = None
        if self.session.freeze_state is FreezeState.FROZEN:
            checkpoint = self._reusable("data_extract")
        if checkpoint is not None:
            detail = checkpoint.detail or {}
            return DataArtifact(
                name=DATA_DUMP,
                digest=checkpoint.artifacts[DATA_DUMP],
                tables=tuple(detail.get("tables", [])),
                missing_tables=tuple(detail.get("missing_tables", [])),
            )

        self.data_engine.freeze_source()
        hint = schema_artifact.tables if schema_artifact is not None else ()
        artifact = self.data_engine.extract_data(ordering_hint=hint)
        if artifact.missing_tables:
            self._warnings.append(
                "Tables without data in export: " + ", ".join(artifact.missing_tables)
            )
        self._checkpoint(
            "data",
            "data_extract",
            "completed",
            artifacts={DATA_DUMP: artifact.digest},
            detail={
                "tables": list(artifact.tables),
                "missing_tables": list(artifact.missing_tables),
            },
        )
        return artifact

    def _data_load(self, artifact: DataArtifact) -> None:
        if self._reusable("data_load") is not None:
            return
        try:
            result = self.data_engine.load_data(self.session.target, artifact)
        except PhaseError as e:
            self._checkpoint("data", "data_load", "failed", detail=e.to_dict())
            raise
        if result.errors:
            self._warnings.append(
                f"{result.errors} errors during data load (see {result.error_log})"
            )
        self._checkpoint(
            "data",
            "data_load",
            "completed",
            artifacts={DATA_DUMP: artifact.digest, **self._digests(DATA_RESTORE_ERRORS)},
            detail={
                "errors": result.errors,
                "tables_loaded": len(result.tables_loaded),
                "triggers_restored": result.triggers_restored,
                "returncode": result.returncode,
            },
        )

    def _data_phase(self, schema_artifact: Optional[SchemaArtifact]) -> None:
        if not self.session.in_scope("data"):
            self._skip_out_of_scope("data", ["data_extract", "data_load"])
            return
        artifact = self._data_extract(schema_artifact)
        self._data_load(artifact)

    def _sequence_phase(self) -> None:
        if not self.session.in_scope("sequences"):
            self._skip_out_of_scope("sequences", ["sequence_sync"])
            return
        if self._reusable("sequence_sync") is not None:
            return

        try:
            state = self.synchronizer.capture_all(self.session.source)
            applied = self.synchronizer.apply(self.session.target, state)
        except PhaseError as e:
            self._checkpoint("sequences", "sequence_sync", "failed", detail=e.to_dict())
            raise
        self._checkpoint(
            "sequences",
            "sequence_sync",
            "completed",
            artifacts=self._digests(SEQUENCE_STATE, SYNC_SCRIPT),
            detail={"applied": applied},
        )

    def _validate(self) -> ValidationReport:
        report = self.validator.validate(self.session.source, self.session.target)
        self.session.store.append_event(
            {
                "event": "validation_completed",
                "verdict": report.verdict,
                "report": report.report_name,
                "critical_failures": report.critical_failures,
            }
        )
        return report

    # -- entry points --------------------------------------------------------

    def _fail(
        self, outcome: RunOutcome, error: Dict[str, Any], **kwargs: Any
    ) -> RunResult:
        self.session.store.append_event({"event": "run_failed", "outcome": outcome.value, **error})
        self.logger.error("run_failed", outcome=outcome.value, code=error.get("code"))
        self.transition(RunState.FAILED, note=error.get("message"))
        return RunResult(
            run_id=self.session.run_id,
            outcome=outcome,
            state=self.state,
            error=error,
            warnings=list(self._warnings),
            skipped_steps=list(self._skipped),
            **kwargs,
        )

    def _finish(self, report: Optional[ValidationReport], **kwargs: Any) -> RunResult:
        warnings = list(self._warnings)
        if report is not None:
            warnings += [f"{name}: warn" for name in report.warnings]
            warnings += [f"{name}: inconclusive" for name in report.inconclusive]
        outcome = RunOutcome.SUCCESS_WITH_WARNINGS if warnings else RunOutcome.SUCCESS
        self.transition(RunState.DONE)
        self.logger.info("run_completed", outcome=outcome.value, warnings=len(warnings))
        return RunResult(
            run_id=self.session.run_id,
            outcome=outcome,
            state=self.state,
            report=report,
            warnings=warnings,
            skipped_steps=list(self._skipped),
            **kwargs,
        )

    def _validation_outcome(
        self, report: ValidationReport, preflight: Optional[PreflightResult] = None
    ) -> RunResult:
        if report.verdict == "fail":
            return self._fail(
                RunOutcome.FAILURE_PHASE_VALIDATION,
                {
                    "code": "VALIDATION_FAILED",
                    "message": f"Validation failed: {', '.join(report.failures)}",
                    "report": report.report_name,
                    "critical_failures": report.critical_failures,
                },
                report=report,
                preflight=preflight,
            )
        return self._finish(report, preflight=preflight)

    def run(self) -> RunResult:
        """Execute preflight, the in-scope phases and validation."""
        self.logger.info(
            "run_started",
            dry_run=self.session.dry_run,
            scope=sorted(self.session.scope),
            freeze_state=self.session.freeze_state.value,
        )

        self.transition(RunState.PREFLIGHT)
        try:
            preflight = self.preflight()
        except PreflightError as e:
            return self._fail(RunOutcome.FAILURE_PREFLIGHT, e.to_dict())
        except Exception as e:
            self.logger.error("unexpected_error", state=self.state.value, exc_info=True)
            return self._fail(
                RunOutcome.FAILURE_PREFLIGHT,
                {
                    "code": "UNEXPECTED_ERROR",
                    "message": str(e),
                    "traceback": traceback.format_exc(),
                },
            )
        self._warnings.extend(preflight.warnings)

        try:
            self.transition(RunState.SCHEMA)
            schema_artifact = self._schema_phase()
            if self.session.dry_run:
                self.logger.info("dry_run_stopped", before="data")
                self.transition(RunState.DONE, note="dry-run")
                return RunResult(
                    run_id=self.session.run_id,
                    outcome=(
                        RunOutcome.SUCCESS_WITH_WARNINGS if self._warnings else RunOutcome.SUCCESS
                    ),
                    state=self.state,
                    preflight=preflight,
                    warnings=list(self._warnings),
                    skipped_steps=list(self._skipped),
                )

            self.transition(RunState.DATA)
            self._data_phase(schema_artifact)

            self.transition(RunState.SEQUENCES)
            self._sequence_phase()
        except PhaseError as e:
            return self._fail(_PHASE_OUTCOMES[self.state.value], e.to_dict(), preflight=preflight)
        except Exception as e:
            self.logger.error("unexpected_error", state=self.state.value, exc_info=True)
            return self._fail(
                _PHASE_OUTCOMES.get(self.state.value, RunOutcome.FAILURE_PHASE_SCHEMA),
                {
                    "code": "UNEXPECTED_ERROR",
                    "message": str(e),
                    "traceback": traceback.format_exc(),
                },
                preflight=preflight,
            )

        self.transition(RunState.VALIDATED)
        return self._validation_outcome(self._validate(), preflight=preflight)

    def validate_only(self) -> RunResult:
        """Run validation against the current state of both databases."""
        self.transition(RunState.VALIDATED, note="validation only")
        return self._validation_outcome(self._validate())

    def rollback(self, actor: str = "operator") -> None:
        """Lift the source freeze. The only path that makes the source writable again."""
        self.data_engine.unfreeze_source(actor=actor, note="Explicit rollback")
        self.logger.info("source_unfrozen", actor=actor)
