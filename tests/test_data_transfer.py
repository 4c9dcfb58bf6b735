"""Tests for the data transfer engine: freeze, export, load."""

import pytest

from pgshift.db.pg_tools import count_error_markers
from pgshift.pipeline.data_transfer import (
    DATA_DUMP,
    DATA_RESTORE_ERRORS,
    DataArtifact,
    DataTransferEngine,
    tables_in_dump,
)
from pgshift.pipeline.errors import DataTransferError, FreezeStateError
from pgshift.pipeline.session import FreezeState

from conftest import SAMPLE_DATA, FakePgTools


class TestFreeze:
    """Tests for the source freeze."""

    def test_writes_rejected_after_freeze_and_accepted_after_rollback(self, session, tools):
        engine = DataTransferEngine(session, tools)
        session.source.insert("orders")

        engine.freeze_source()
        with pytest.raises(PermissionError):
            session.source.insert("orders")

        engine.unfreeze_source()
        session.source.insert("orders")
        assert session.source.tables["orders"] == 1206

    def test_freeze_is_recorded(self, session, tools):
        DataTransferEngine(session, tools).freeze_source()

        assert session.freeze_state is FreezeState.FROZEN
        history = session.ledger.freeze_history()
        assert [(h.old_state, h.new_state, h.actor) for h in history] == [
            ("writable", "frozen", "data_transfer")
        ]
        assert "s3cret" not in history[0].endpoint

    def test_freeze_twice_is_a_no_op(self, session, tools):
        engine = DataTransferEngine(session, tools)
        engine.freeze_source()
        engine.freeze_source()

        assert session.source.writes.count(("set_read_only", True)) == 1
        assert len(session.ledger.freeze_history()) == 1

    def test_ineffective_freeze_raises(self, session, tools, monkeypatch):
        monkeypatch.setattr(session.source, "is_read_only", lambda: False)

        with pytest.raises(FreezeStateError) as exc_info:
            DataTransferEngine(session, tools).freeze_source()

        assert exc_info.value.code == "FREEZE_NOT_EFFECTIVE"
        assert session.freeze_state is FreezeState.WRITABLE

    def test_rollback_is_recorded_with_actor(self, session, tools):
        engine = DataTransferEngine(session, tools)
        engine.freeze_source()
        engine.unfreeze_source(actor="alice")

        last = session.ledger.freeze_history()[-1]
        assert (last.old_state, last.new_state, last.actor) == ("frozen", "writable", "alice")
        assert session.ledger.current_freeze_state() == "writable"


class TestExtract:
    """Tests for the data export."""

    def test_extract_requires_freeze(self, session, tools):
        with pytest.raises(FreezeStateError) as exc_info:
            DataTransferEngine(session, tools).extract_data()

        assert exc_info.value.code == "SOURCE_NOT_FROZEN"
        assert tools.calls_of("dump") == []

    def test_extract_records_tables_in_dump_order(self, session, tools):
        engine = DataTransferEngine(session, tools)
        engine.freeze_source()

        artifact = engine.extract_data(ordering_hint=("customers", "orders", "audit_log"))

        assert artifact.tables == ("customers", "orders")
        assert artifact.missing_tables == ("audit_log",)
        assert session.store.verify(DATA_DUMP, artifact.digest)
        options = tools.calls_of("dump")[0][3]
        assert "--data-only" in options
        assert "--disable-triggers" in options

    def test_failed_dump_keeps_no_artifact(self, session):
        tools = FakePgTools(failing_dumps=["data"])
        engine = DataTransferEngine(session, tools)
        engine.freeze_source()

        with pytest.raises(DataTransferError) as exc_info:
            engine.extract_data()

        assert exc_info.value.code == "DATA_DUMP_FAILED"
        assert not session.store.exists(DATA_DUMP)
        # The freeze stays in place after a failure
        assert session.freeze_state is FreezeState.FROZEN

    def test_tables_in_dump(self):
        assert tables_in_dump(SAMPLE_DATA.splitlines(True)) == ("customers", "orders")


class TestLoad:
    """Tests for replaying the export on the target."""

    def extracted(self, session, tools) -> DataArtifact:
        engine = DataTransferEngine(session, tools)
        engine.freeze_source()
        return engine.extract_data()

    def test_load_runs_in_replica_mode_and_restores_triggers(self, session, tools):
        session.target.tables.update({"customers": 0, "orders": 0})
        artifact = self.extracted(session, tools)

        result = DataTransferEngine(session, tools).load_data(session.target, artifact)

        _, script, url, options = tools.calls_of("psql")[0]
        assert script == DATA_DUMP
        assert url == session.target.libpq_url
        assert options == {"session_replication_role": "replica"}
        assert ("enable_triggers", ("customers", "orders")) in session.target.writes
        assert result.triggers_restored == 2
        assert result.errors == 0

    def test_triggers_restored_when_load_raises(self, session, tools):
        session.target.tables.update({"orders": 0})
        artifact = self.extracted(session, tools)

        def crash(name):
            raise OSError("psql killed")

        tools.on_script = crash
        with pytest.raises(OSError):
            DataTransferEngine(session, tools).load_data(session.target, artifact)

        assert ("enable_triggers", ("orders",)) in session.target.writes

    def test_errors_are_counted_not_raised(self, session, tools):
        tools.script_stderr[DATA_DUMP] = (
            'psql:/w/data.sql:7: ERROR:  duplicate key value violates unique constraint "orders_pkey"\n'
            "CONTEXT:  COPY orders, line 1\n"
            'psql:/w/data.sql:11: ERROR:  relation "public.audit" does not exist\n'
        )
        artifact = self.extracted(session, tools)

        result = DataTransferEngine(session, tools).load_data(session.target, artifact)

        assert result.errors == 2
        assert result.error_log == DATA_RESTORE_ERRORS
        assert "orders_pkey" in session.store.read_text(DATA_RESTORE_ERRORS)

    def test_modified_artifact_is_refused(self, session, tools):
        artifact = self.extracted(session, tools)
        session.store.path(DATA_DUMP).write_text("TRUNCATE orders;\n")

        with pytest.raises(DataTransferError) as exc_info:
            DataTransferEngine(session, tools).load_data(session.target, artifact)

        assert exc_info.value.code == "DATA_ARTIFACT_MODIFIED"
        assert tools.calls_of("psql") == []


class TestErrorMarkers:
    """Tests for the restore-log error heuristic."""

    def test_counts_error_and_fatal_lines(self):
        log = (
            "ERROR:  syntax error at or near \"x\"\n"
            "psql:/w/data.sql:3: FATAL:  terminating connection\n"
            "psql:/w/data.sql:4: WARNING:  ERROR:  looks similar but is a warning\n"
            "NOTICE:  table has no ERROR rows\n"
        )
        assert count_error_markers(log) == 2

    def test_empty_log(self):
        assert count_error_markers("") == 0
