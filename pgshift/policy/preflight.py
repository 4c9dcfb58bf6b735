"""
Preflight gate for a migration run.

This module implements a pure, testable gate that decides whether a run may
touch either database. It returns a PreflightResult (with any warnings) or
raises a PreflightError with a stable error code.

Gate Rules:
- pg_dump and psql must be on PATH
- source and target URLs must be configured
- source and target must answer a trivial query
- the application's coupling tier must not be moderate or high, unless the
  operator overrides readiness
- the source server version and the readiness tier must be readable

Warnings (never blocking):
- pg_dump major version older than the source server major version
- readiness not audited (no project root configured)
- readiness tier blocking but overridden

Facts are gathered separately by ``gather_inputs`` so the rules can be
evaluated without a database.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from ..audit.coupling import BLOCKING_TIERS, CouplingFinding
from ..config import Settings
from ..db.endpoint import Endpoint
from ..db.pg_tools import PgTools

logger = logging.getLogger(__name__)


class PreflightError(Exception):
    """
    Raised when a run fails the preflight gate.

    Attributes:
        code: Stable error code for programmatic handling
        message: Human-readable error description
    """

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")

    def to_dict(self) -> dict:
        """Convert to dict for JSON serialization."""
        return {
            "error": "preflight_failed",
            "code": self.code,
            "message": self.message,
        }


class PreflightConfig(BaseModel):
    """Configuration for preflight evaluation."""

    blocking_tiers: List[str] = sorted(BLOCKING_TIERS)
    override_readiness: bool = False


class PreflightInputs(BaseModel):
    """Facts collected about the environment before a run."""

    missing_tools: List[str] = []
    source_url_set: bool = False
    target_url_set: bool = False
    source_reachable: bool = False
    target_reachable: bool = False
    source_server_version_num: Optional[int] = None
    pg_dump_major: Optional[int] = None
    readiness_tier: Optional[str] = None


class PreflightResult(BaseModel):
    """A passed preflight, with the non-blocking findings."""

    warnings: List[str] = []
    readiness_tier: Optional[str] = None
    source_major: Optional[int] = None
    pg_dump_major: Optional[int] = None


def _validate_tools(missing_tools: List[str]) -> None:
    if missing_tools:
        raise PreflightError(
            code="TOOL_MISSING",
            message=f"Required client tools not found on PATH: {', '.join(missing_tools)}",
        )


def _validate_urls(inputs: PreflightInputs) -> None:
    if not inputs.source_url_set:
        raise PreflightError(
            code="SOURCE_URL_MISSING",
            message="Source URL not set (SOURCE_DB_URL or SUPABASE_DB_URL)",
        )
    if not inputs.target_url_set:
        raise PreflightError(
            code="TARGET_URL_MISSING",
            message="Target URL not set (TARGET_DB_URL or AWS_RDS_URL)",
        )


def _validate_reachability(inputs: PreflightInputs) -> None:
    if not inputs.source_reachable:
        raise PreflightError(code="SOURCE_UNREACHABLE", message="Source database is unreachable")
    if not inputs.target_reachable:
        raise PreflightError(code="TARGET_UNREACHABLE", message="Target database is unreachable")


def _validate_readiness(
    inputs: PreflightInputs, config: PreflightConfig, warnings: List[str]
) -> None:
    tier = inputs.readiness_tier
    if tier is None:
        warnings.append("Readiness not audited: no project root configured")
        return
    if tier not in config.blocking_tiers:
        return
    if config.override_readiness:
        warnings.append(f"Readiness tier '{tier}' blocks migration; overridden by operator")
        return
    raise PreflightError(
        code="READINESS_BLOCKED",
        message=f"Application coupling tier is '{tier}'. "
        "Refactor platform-coupled code or rerun with --override-readiness",
    )


def source_major(server_version_num: Optional[int]) -> Optional[int]:
    """Major version from server_version_num (150004 -> 15)."""
    if server_version_num is None:
        return None
    return server_version_num // 10000


def evaluate(
    inputs: PreflightInputs, config: Optional[PreflightConfig] = None
) -> PreflightResult:
    """
    Evaluate collected facts against the gate rules.

    This is a pure function: no DB access, no subprocesses.

    Args:
        inputs: Facts gathered about tools, endpoints and readiness
        config: Optional gate configuration

    Returns:
        PreflightResult with non-blocking warnings

    Raises:
        PreflightError: If any rule fails
    """
    config = config or PreflightConfig()
    warnings: List[str] = []

    _validate_tools(inputs.missing_tools)
    _validate_urls(inputs)
    _validate_reachability(inputs)

    major = source_major(inputs.source_server_version_num)
    if major is not None and inputs.pg_dump_major is not None and inputs.pg_dump_major < major:
        warnings.append(
            f"pg_dump ({inputs.pg_dump_major}) older than source ({major}); upgrade recommended"
        )

    _validate_readiness(inputs, config, warnings)

    return PreflightResult(
        warnings=warnings,
        readiness_tier=inputs.readiness_tier,
        source_major=major,
        pg_dump_major=inputs.pg_dump_major,
    )


def gather_inputs(
    settings: Settings,
    source: Endpoint,
    target: Endpoint,
    tools: PgTools,
    auditor: Optional[Callable[[str], CouplingFinding]] = None,
) -> PreflightInputs:
    """Collect the facts ``evaluate`` needs. Only reads; never writes.

    Raises:
        PreflightError: If the source version or the readiness tier cannot be read
    """
    missing = tools.missing_tools()
    source_set = bool(settings.source_db_url)
    target_set = bool(settings.target_db_url)
    source_up = source_set and source.ping()
    target_up = target_set and target.ping()

    version_num = None
    if source_up:
        try:
            version_num = source.server_version_num()
        except SQLAlchemyError as e:
            raise PreflightError(
                code="SOURCE_VERSION_UNREADABLE",
                message=f"Could not read the source server version: {e}",
            ) from e
    dump_major = tools.pg_dump_major_version() if not missing else None

    tier = None
    if auditor is not None and settings.project_root:
        try:
            finding = auditor(settings.project_root)
        except OSError as e:
            raise PreflightError(
                code="READINESS_AUDIT_FAILED",
                message=f"Could not audit {settings.project_root}: {e}",
            ) from e
        logger.info(f"Readiness tier: {finding.tier} ({finding.violations} violations)")
        tier = finding.tier

    return PreflightInputs(
        missing_tools=missing,
        source_url_set=source_set,
        target_url_set=target_set,
        source_reachable=source_up,
        target_reachable=target_up,
        source_server_version_num=version_num,
        pg_dump_major=dump_major,
        readiness_tier=tier,
    )
