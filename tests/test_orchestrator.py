"""
Tests for the migration orchestrator.

Verifies:
- the full pipeline end to end against in-memory endpoints
- preflight failures have no side effects
- dry-run writes nothing and a later run resumes from its schema artifact
- scope skipping, checkpoint reuse and stale-artifact detection
- phase failures map to their outcome and keep the source frozen
"""

import json

import pytest

from pgshift.pipeline.errors import IllegalTransitionError
from pgshift.pipeline.orchestrator import (
    EXIT_CODES,
    MigrationOrchestrator,
    RunOutcome,
    RunState,
)
from pgshift.pipeline.schema import CLEAN_SCHEMA, RAW_SCHEMA
from pgshift.pipeline.session import FreezeState, open_session

from conftest import FakePgTools, replicate


def make_orchestrator(settings, source, target, tools, **kwargs) -> MigrationOrchestrator:
    session = open_session(settings, run_id="run-test", source=source, target=target, **kwargs)
    return MigrationOrchestrator(session, tools, settings)


def dump_kinds(tools):
    return [call[1] for call in tools.calls_of("dump")]


class TestFullRun:
    """Tests for a complete, successful run."""

    def test_run_migrates_and_validates(self, settings, source, target, tools):
        result = make_orchestrator(settings, source, target, tools).run()

        assert result.state is RunState.DONE
        assert result.outcome is RunOutcome.SUCCESS_WITH_WARNINGS
        assert result.exit_code == 3
        assert result.report.verdict == "pass"
        assert result.report.warnings == ["extensions"]
        assert target.tables == {"customers": 12, "orders": 1204}
        assert target.sequences["orders_id_seq"] == 5001
        assert any("pgsodium" in w for w in result.warnings)

    def test_source_stays_frozen_after_success(self, settings, source, target, tools):
        orchestrator = make_orchestrator(settings, source, target, tools)
        orchestrator.run()

        assert orchestrator.session.freeze_state is FreezeState.FROZEN
        with pytest.raises(PermissionError):
            source.insert("orders")

    def test_rollback_makes_source_writable(self, settings, source, target, tools):
        orchestrator = make_orchestrator(settings, source, target, tools)
        orchestrator.run()

        orchestrator.rollback(actor="alice")

        source.insert("orders")
        assert orchestrator.session.ledger.current_freeze_state() == "writable"

    def test_states_and_checkpoints_are_recorded(self, settings, source, target, tools):
        orchestrator = make_orchestrator(settings, source, target, tools)
        orchestrator.run()
        ledger = orchestrator.session.ledger

        assert [t.to_state for t in ledger.transitions()] == [
            "preflight", "schema", "data", "sequences", "validated", "done",
        ]
        assert [(c.step, c.status) for c in ledger.checkpoints()] == [
            ("schema_extract", "completed"),
            ("schema_restore", "completed"),
            ("data_extract", "completed"),
            ("data_load", "completed"),
            ("sequence_sync", "completed"),
        ]
        events = [
            json.loads(line)["event"]
            for line in orchestrator.session.store.path("events.jsonl").read_text().splitlines()
        ]
        assert "validation_completed" in events

    def test_sequence_capture_happens_after_freeze(self, settings, source, target, tools):
        make_orchestrator(settings, source, target, tools).run()

        assert source.writes[0] == ("set_read_only", True)
        assert source.writes.count(("set_read_only", True)) == 1


class TestPreflight:
    """Tests for the preflight gate inside a run."""

    def test_failed_preflight_touches_nothing(self, settings, source, target):
        tools = FakePgTools(missing=["pg_dump"])
        result = make_orchestrator(settings, source, target, tools).run()

        assert result.outcome is RunOutcome.FAILURE_PREFLIGHT
        assert result.exit_code == 10
        assert result.error["code"] == "TOOL_MISSING"
        assert result.state is RunState.FAILED
        assert tools.calls_of("dump") == [] and tools.calls_of("psql") == []
        assert source.writes == [] and target.writes == []

    def test_unreachable_target(self, settings, source, target, tools):
        target.reachable = False
        result = make_orchestrator(settings, source, target, tools).run()
        assert result.error["code"] == "TARGET_UNREACHABLE"

    def test_failed_readiness_audit_ends_in_failed(self, settings, source, target, tools):
        settings.project_root = "/nonexistent/app"

        def auditor(root):
            raise FileNotFoundError(f"Project root not found: {root}")

        session = open_session(settings, run_id="run-test", source=source, target=target)
        result = MigrationOrchestrator(session, tools, settings, auditor=auditor).run()

        assert result.outcome is RunOutcome.FAILURE_PREFLIGHT
        assert result.error["code"] == "READINESS_AUDIT_FAILED"
        assert result.state is RunState.FAILED
        assert [t.to_state for t in session.ledger.transitions()] == ["preflight", "failed"]
        assert tools.calls_of("dump") == []

    def test_unexpected_preflight_error_ends_in_failed(self, settings, source, target, tools, monkeypatch):
        def broken():
            raise RuntimeError("tool probe crashed")

        monkeypatch.setattr(tools, "missing_tools", broken)
        result = make_orchestrator(settings, source, target, tools).run()

        assert result.outcome is RunOutcome.FAILURE_PREFLIGHT
        assert result.error["code"] == "UNEXPECTED_ERROR"
        assert result.state is RunState.FAILED


class TestDryRun:
    """Tests for dry-run and resuming after it."""

    def test_dry_run_writes_nothing(self, settings, source, target, tools):
        orchestrator = make_orchestrator(settings, source, target, tools, dry_run=True)
        result = orchestrator.run()

        assert result.state is RunState.DONE
        assert result.exit_code in (0, 3)
        assert orchestrator.session.store.exists(CLEAN_SCHEMA)
        assert target.writes == []
        assert source.writes == []
        assert tools.calls_of("psql") == []
        assert dump_kinds(tools) == ["schema"]

    def test_rerun_after_dry_run_reuses_schema(self, settings, source, target, tools):
        make_orchestrator(settings, source, target, tools, dry_run=True).run()

        result = make_orchestrator(settings, source, target, tools).run()

        assert dump_kinds(tools) == ["schema", "data"]
        assert "schema_extract" in result.skipped_steps
        assert "schema_restore" not in result.skipped_steps
        assert [c[1] for c in tools.calls_of("psql")] == ["schema.sql", "data.sql"]
        assert result.report.verdict == "pass"


class TestScope:
    """Tests for phase scope restriction."""

    def test_out_of_scope_phases_are_skipped_not_failed(self, settings, source, target, tools):
        orchestrator = make_orchestrator(settings, source, target, tools, scope="schema")
        result = orchestrator.run()

        statuses = {c.step: c.status for c in orchestrator.session.ledger.checkpoints()}
        assert statuses == {
            "schema_extract": "completed",
            "schema_restore": "completed",
            "data_extract": "skipped",
            "data_load": "skipped",
            "sequence_sync": "skipped",
        }
        assert source.writes == []
        assert dump_kinds(tools) == ["schema"]
        # Validation still runs and reports the untransferred rows
        assert result.report is not None
        assert result.outcome is RunOutcome.FAILURE_PHASE_VALIDATION

    def test_sequences_only_requires_a_frozen_source(self, settings, source, target, tools):
        target.sequences["orders_id_seq"] = None
        orchestrator = make_orchestrator(settings, source, target, tools, scope="sequences")
        result = orchestrator.run()

        assert result.outcome is RunOutcome.FAILURE_PHASE_SEQUENCES
        assert result.error["code"] == "SOURCE_NOT_FROZEN"
        assert "data phase" in result.error["message"]
        assert orchestrator.session.freeze_state is FreezeState.WRITABLE
        assert source.writes == []
        assert target.sequences["orders_id_seq"] is None

    def test_sequences_only_after_data_run(self, settings, source, target, tools):
        make_orchestrator(settings, source, target, tools, scope="schema,data").run()
        target.sequences["orders_id_seq"] = None

        orchestrator = make_orchestrator(settings, source, target, tools, scope="sequences")
        result = orchestrator.run()

        assert result.report.check("sequences").status == "pass"
        assert target.sequences["orders_id_seq"] == 5001
        assert [w for w in source.writes if w[0] == "set_read_only"] == [("set_read_only", True)]


class TestResume:
    """Tests for checkpoint reuse."""

    def test_completed_run_reuses_every_step_but_validation(self, settings, source, target, tools):
        make_orchestrator(settings, source, target, tools).run()
        calls_before = len(tools.calls)

        result = make_orchestrator(settings, source, target, tools).run()

        assert len(tools.calls) == calls_before
        assert result.skipped_steps == [
            "schema_extract", "schema_restore", "data_extract", "data_load", "sequence_sync",
        ]
        assert result.report.report_name == "reports/validation-2.json"

    def test_edited_artifact_invalidates_checkpoint(self, settings, source, target, tools):
        orchestrator = make_orchestrator(settings, source, target, tools)
        orchestrator.run()
        orchestrator.session.store.path(RAW_SCHEMA).write_text("-- edited\n")

        result = make_orchestrator(settings, source, target, tools).run()

        assert dump_kinds(tools) == ["schema", "data", "schema"]
        assert "schema_extract" not in result.skipped_steps
        assert "data_extract" in result.skipped_steps


class TestPhaseFailures:
    """Tests for failure outcomes."""

    def test_schema_failure(self, settings, source, target):
        tools = FakePgTools(failing_dumps=["schema"])
        orchestrator = make_orchestrator(settings, source, target, tools)
        result = orchestrator.run()

        assert result.outcome is RunOutcome.FAILURE_PHASE_SCHEMA
        assert result.exit_code == 21
        assert result.error["code"] == "SCHEMA_DUMP_FAILED"
        assert not orchestrator.session.store.exists(RAW_SCHEMA)
        assert source.writes == []

    def test_data_failure_keeps_source_frozen(self, settings, source, target):
        tools = FakePgTools(failing_dumps=["data"], on_script=replicate(source, target))
        orchestrator = make_orchestrator(settings, source, target, tools)
        result = orchestrator.run()

        assert result.outcome is RunOutcome.FAILURE_PHASE_DATA
        assert result.exit_code == 22
        assert orchestrator.session.freeze_state is FreezeState.FROZEN
        assert source.read_only
        # Earlier phases are kept
        assert orchestrator.session.store.exists(CLEAN_SCHEMA)

    def test_sequence_failure(self, settings, source, target, tools):
        target.failing_sequences = {"orders_id_seq"}
        orchestrator = make_orchestrator(settings, source, target, tools)
        result = orchestrator.run()

        assert result.outcome is RunOutcome.FAILURE_PHASE_SEQUENCES
        assert result.exit_code == 23
        assert orchestrator.session.ledger.latest_checkpoint("sequence_sync").status == "failed"

    def test_validation_failure(self, settings, source, target):
        load = replicate(source, target)

        def lossy(name):
            load(name)
            if name == "data.sql":
                target.tables["orders"] = 1200

        tools = FakePgTools(on_script=lossy)
        result = make_orchestrator(settings, source, target, tools).run()

        assert result.outcome is RunOutcome.FAILURE_PHASE_VALIDATION
        assert result.exit_code == 24
        assert result.report.check("row_counts").mismatches == ["orders: source=1204, target=1200"]

    def test_unexpected_error_ends_in_failed(self, settings, source, target, tools, monkeypatch):
        def boom():
            raise RuntimeError("catalog read failed")

        monkeypatch.setattr(source, "list_extensions", boom)
        result = make_orchestrator(settings, source, target, tools).run()

        assert result.state is RunState.FAILED
        assert result.outcome is RunOutcome.FAILURE_PHASE_SCHEMA
        assert result.error["code"] == "UNEXPECTED_ERROR"


class TestStateMachine:
    """Tests for transitions and outcomes."""

    def test_illegal_transition_raises(self, settings, source, target, tools):
        orchestrator = make_orchestrator(settings, source, target, tools)
        with pytest.raises(IllegalTransitionError):
            orchestrator.transition(RunState.DATA)

    def test_terminal_states_have_no_exits(self, settings, source, target, tools):
        orchestrator = make_orchestrator(settings, source, target, tools)
        orchestrator.transition(RunState.FAILED)
        with pytest.raises(IllegalTransitionError):
            orchestrator.transition(RunState.PREFLIGHT)

    def test_exit_codes_are_distinct(self):
        assert len(set(EXIT_CODES.values())) == len(RunOutcome)
        assert RunOutcome.SUCCESS.exit_code == 0

    def test_validate_only(self, settings, source, target, tools):
        target.tables.update(source.tables)
        target.sequences.update(source.sequences)
        target.owners = dict(source.owners)
        target.extensions.append("pgsodium")

        result = make_orchestrator(settings, source, target, tools).validate_only()

        assert result.outcome is RunOutcome.SUCCESS
        assert result.state is RunState.DONE
        assert tools.calls == []
