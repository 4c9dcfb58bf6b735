"""
Validation Engine - independently proves source/target equivalence.

Checks (in report order):
- connectivity of each side
- table set equality
- per-table row counts
- per-sequence cursor equality (critical)
- extension parity (missing extensions are warnings)
- write probe on one representative target table

Verdict Logic:
- FAIL: any check failed
- PASS: otherwise; warnings and inconclusive checks are reported verbatim
  and never counted as passing evidence

The engine only reads (the write probe is rolled back and undoes its
sequence side effect), so running it twice against unchanged systems yields
reports that differ only in ``generated_at``.
"""
from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..db.endpoint import Endpoint
from .storage import ArtifactStore

logger = logging.getLogger(__name__)

PASS = "pass"
FAIL = "fail"
WARN = "warn"
INCONCLUSIVE = "inconclusive"

# SQLSTATEs that say the probe row was rejected by the table's own rules,
# not that the target cannot take writes
_PROBE_INCONCLUSIVE = {
    "23502": "not-null violation",
    "23514": "check violation",
    "23503": "foreign-key violation",
}
_UNIQUE_VIOLATION = "23505"


@dataclass
class CheckResult:
    """Outcome of a single validation check."""
    name: str
    status: str  # "pass", "fail", "warn", "inconclusive"
    message: str = ""
    critical: bool = False
    mismatches: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "critical": self.critical,
            "mismatches": list(self.mismatches),
        }


@dataclass
class ValidationReport:
    """Result of one validation attempt."""
    verdict: str  # "pass" or "fail"
    checks: List[CheckResult]
    generated_at: str
    run_id: Optional[str] = None
    report_name: Optional[str] = None

    def _names(self, status: str) -> List[str]:
        return [c.name for c in self.checks if c.status == status]

    @property
    def critical_failures(self) -> List[str]:
        return [c.name for c in self.checks if c.status == FAIL and c.critical]

    @property
    def failures(self) -> List[str]:
        return self._names(FAIL)

    @property
    def warnings(self) -> List[str]:
        return self._names(WARN)

    @property
    def inconclusive(self) -> List[str]:
        return self._names(INCONCLUSIVE)

    def check(self, name: str) -> CheckResult:
        for result in self.checks:
            if result.name == name:
                return result
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "run_id": self.run_id,
            "verdict": self.verdict,
            "generated_at": self.generated_at,
            "critical_failures": self.critical_failures,
            "failures": self.failures,
            "warnings": self.warnings,
            "inconclusive": self.inconclusive,
            "checks": {c.name: c.to_dict() for c in self.checks},
        }


def _format_pair(name: str, source: Any, target: Any) -> str:
    def show(value: Any) -> str:
        return "missing" if value is None else str(value)

    return f"{name}: source={show(source)}, target={show(target)}"


class ValidationEngine:
    """Compares source and target and writes a validation report.

    Per-table and per-sequence reads run on a bounded thread pool; results
    are sorted by name before they enter the report.
    """

    def __init__(
        self,
        store: ArtifactStore,
        schema: str = "public",
        workers: int = 4,
        run_id: Optional[str] = None,
    ):
        self.store = store
        self.schema = schema
        self.workers = max(1, workers)
        self.run_id = run_id

    def validate(self, source: Endpoint, target: Endpoint) -> ValidationReport:
        """Run every check and write the report.

        Validation failures never raise; they are reported as ``fail``.
        """
        logger.info(f"Validating {source.display_url} against {target.display_url}")

        source_up = source.ping()
        target_up = target.ping()
        checks: List[CheckResult] = [
            self._connectivity("connectivity_source", source, source_up),
            self._connectivity("connectivity_target", target, target_up),
        ]

        both_up = source_up and target_up
        unreachable = ", ".join(
            label for label, up in (("source", source_up), ("target", target_up)) if not up
        )
        skipped = f"Not checked: {unreachable} unreachable"

        if both_up:
            tables = self._guard("table_set", lambda: self._list_table_sets(source, target))
            if isinstance(tables, CheckResult):
                checks.append(tables)
                checks.append(CheckResult("row_counts", INCONCLUSIVE, tables.message))
            else:
                checks.append(self._check_table_set(*tables))
                checks.append(
                    self._guard(
                        "row_counts", lambda: self._check_row_counts(source, target, *tables)
                    )
                )
            checks.append(
                self._guard(
                    "sequences", lambda: self._check_sequences(source, target), critical=True
                )
            )
            checks.append(
                self._guard("extensions", lambda: self._check_extensions(source, target))
            )
        else:
            checks.append(CheckResult("table_set", INCONCLUSIVE, skipped))
            checks.append(CheckResult("row_counts", INCONCLUSIVE, skipped))
            checks.append(CheckResult("sequences", INCONCLUSIVE, skipped, critical=True))
            checks.append(CheckResult("extensions", INCONCLUSIVE, skipped))

        if target_up:
            checks.append(self._guard("write_probe", lambda: self._check_write_probe(target)))
        else:
            checks.append(
                CheckResult("write_probe", INCONCLUSIVE, "Not checked: target unreachable")
            )

        verdict = FAIL if any(c.status == FAIL for c in checks) else PASS
        report = ValidationReport(
            verdict=verdict,
            checks=checks,
            generated_at=datetime.now(timezone.utc).isoformat(),
            run_id=self.run_id,
        )
        report.report_name = self._write_report(report)

        logger.info(
            f"Validation verdict: {verdict} "
            f"(critical={len(report.critical_failures)}, failed={len(report.failures)}, "
            f"warn={len(report.warnings)}, inconclusive={len(report.inconclusive)})"
        )
        return report

    def _guard(
        self,
        name: str,
        check: Callable[[], Any],
        critical: bool = False,
    ) -> Any:
        """Run a check; a read error makes it inconclusive instead of aborting the report."""
        try:
            return check()
        except Exception as e:
            logger.warning(f"Check {name} could not complete: {e}")
            return CheckResult(name, INCONCLUSIVE, f"Check error: {e}", critical=critical)

    def _connectivity(self, name: str, endpoint: Endpoint, up: bool) -> CheckResult:
        if up:
            return CheckResult(name, PASS, f"{endpoint.label} reachable")
        return CheckResult(name, FAIL, f"{endpoint.label} unreachable: {endpoint.display_url}")

    def _list_table_sets(
        self, source: Endpoint, target: Endpoint
    ) -> Tuple[List[str], List[str]]:
        return source.list_tables(self.schema), target.list_tables(self.schema)

    def _check_table_set(self, source_tables: List[str], target_tables: List[str]) -> CheckResult:
        missing = sorted(set(source_tables) - set(target_tables))
        extra = sorted(set(target_tables) - set(source_tables))

        mismatches = [f"missing on target: {t}" for t in missing]
        mismatches += [f"extra on target: {t}" for t in extra]
        if mismatches:
            return CheckResult(
                "table_set",
                FAIL,
                f"{len(missing)} missing, {len(extra)} extra tables",
                mismatches=mismatches,
            )
        return CheckResult("table_set", PASS, f"{len(source_tables)} tables on both sides")

    def _check_row_counts(
        self,
        source: Endpoint,
        target: Endpoint,
        source_tables: List[str],
        target_tables: List[str],
    ) -> CheckResult:
        names = sorted(set(source_tables) | set(target_tables))
        jobs = [("source", source, t) for t in names if t in source_tables]
        jobs += [("target", target, t) for t in names if t in target_tables]

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            counts = list(pool.map(lambda job: self._count(job[1], job[2]), jobs))
        by_side: Dict[Tuple[str, str], Any] = {
            (side, table): count for (side, _, table), count in zip(jobs, counts)
        }

        mismatches = []
        errors = []
        for table in names:
            src = by_side.get(("source", table))
            tgt = by_side.get(("target", table))
            if isinstance(src, Exception) or isinstance(tgt, Exception):
                errors.append(f"{table}: {src if isinstance(src, Exception) else tgt}")
            elif src != tgt:
                mismatches.append(_format_pair(table, src, tgt))

        if mismatches:
            return CheckResult(
                "row_counts",
                FAIL,
                f"{len(mismatches)} of {len(names)} tables differ",
                mismatches=mismatches + errors,
            )
        if errors:
            return CheckResult(
                "row_counts",
                INCONCLUSIVE,
                f"{len(errors)} tables could not be counted",
                mismatches=errors,
            )
        return CheckResult("row_counts", PASS, f"{len(names)} tables match")

    def _count(self, endpoint: Endpoint, table: str) -> Any:
        try:
            return endpoint.count_rows(self.schema, table)
        except Exception as e:
            logger.warning(f"Row count failed on {endpoint.label} for {table}: {e}")
            return e

    def _check_sequences(self, source: Endpoint, target: Endpoint) -> CheckResult:
        with ThreadPoolExecutor(max_workers=min(2, self.workers)) as pool:
            source_future = pool.submit(source.list_sequences, self.schema)
            target_future = pool.submit(target.list_sequences, self.schema)
            source_seqs = source_future.result()
            target_seqs = target_future.result()

        mismatches = []
        for name in sorted(source_seqs):
            if name not in target_seqs:
                mismatches.append(f"{name}: missing on target")
            elif source_seqs[name] != target_seqs[name]:
                mismatches.append(_format_pair(name, source_seqs[name], target_seqs[name]))

        if mismatches:
            return CheckResult(
                "sequences",
                FAIL,
                f"{len(mismatches)} of {len(source_seqs)} sequences differ",
                critical=True,
                mismatches=mismatches,
            )
        return CheckResult(
            "sequences", PASS, f"{len(source_seqs)} sequences match", critical=True
        )

    def _check_extensions(self, source: Endpoint, target: Endpoint) -> CheckResult:
        missing = sorted(set(source.list_extensions()) - set(target.list_extensions()))
        if missing:
            return CheckResult(
                "extensions",
                WARN,
                f"{len(missing)} source extensions not installed on target",
                mismatches=[f"{name}: missing on target" for name in missing],
            )
        return CheckResult("extensions", PASS, "All source extensions present on target")

    def _check_write_probe(self, target: Endpoint) -> CheckResult:
        tables = target.list_tables(self.schema)
        if not tables:
            return CheckResult("write_probe", INCONCLUSIVE, "No tables to probe")

        owners = target.sequence_owners(self.schema)
        table = next((t for t in tables if owners.get(t)), tables[0])
        outcome = target.probe_insert(self.schema, table)

        if outcome.succeeded:
            return CheckResult("write_probe", PASS, f"{table}: insert accepted and rolled back")
        if outcome.sqlstate == _UNIQUE_VIOLATION:
            return CheckResult(
                "write_probe",
                FAIL,
                f"{table}: generated identifier collides with an existing row",
                critical=True,
                mismatches=[f"{table}: {outcome.message}"],
            )
        if outcome.sqlstate in _PROBE_INCONCLUSIVE:
            return CheckResult(
                "write_probe",
                INCONCLUSIVE,
                f"{table}: default row rejected ({_PROBE_INCONCLUSIVE[outcome.sqlstate]})",
                mismatches=[f"{table}: {outcome.message}"],
            )
        return CheckResult(
            "write_probe",
            FAIL,
            f"{table}: insert rejected (SQLSTATE {outcome.sqlstate})",
            mismatches=[f"{table}: {outcome.message}"],
        )

    def _write_report(self, report: ValidationReport) -> str:
        name = self.store.next_report_name()
        content = json.dumps(report.to_dict(), indent=2, sort_keys=True) + "\n"
        self.store.write_once(name, content)
        logger.info(f"Validation report written: {name}")
        return name
