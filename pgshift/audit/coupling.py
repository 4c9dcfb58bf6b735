"""
Coupling auditor for application code that talks to the source platform.

Scores how tightly a project is bound to the hosted platform's client SDK
and REST surface. The migration pipeline only consumes the resulting
readiness tier.

Categories (counted per matching line):
- sdk_imports: imports of the platform SDK
- sdk_leaked: SDK imports outside lib/auth, lib/storage, lib/realtime
- data_queries: table/RPC access through the SDK
- rest_calls: direct REST endpoint calls
- storage_urls: hardcoded storage URLs (code and SQL)
- rls_refs: row-level security dependencies in SQL
- orm_refs: ORM references (positive signal)
- prototype_markers: PROTOTYPE_ONLY markers in code
- portability_markers: DB_PORTABILITY_VIOLATION markers in code

The two marker counts are informational and never add to the violations.

Layout (presence flags, at the root or under src/):
- auth_abstraction, storage_abstraction, db_abstraction: lib/auth, lib/storage, lib/db
- migrations: a migrations directory anywhere in the tree
- drizzle_config: a drizzle.config.* file anywhere in the tree

Tiers:
- ready: no violations and an ORM in place
- low: fewer than 10 violations
- moderate: fewer than 50 violations
- high: otherwise
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Mapping, Set, Union

CODE_SUFFIXES = {".ts", ".tsx", ".js", ".jsx"}
SQL_SUFFIXES = {".sql"}
EXCLUDED_DIRS = {"node_modules", ".next", "dist", "build", ".git"}
QUARANTINE_DIRS = ("lib/auth/", "lib/storage/", "lib/realtime/")
ABSTRACTION_DIRS = {
    "auth_abstraction": "lib/auth",
    "storage_abstraction": "lib/storage",
    "db_abstraction": "lib/db",
}

BLOCKING_TIERS = {"moderate", "high"}

_SDK_IMPORT_RE = re.compile(r"""from\s*['"]@supabase""")
_DATA_QUERY_RE = re.compile(r"supabase\.(?:from|rpc)\b")
_REST_CALL_RE = re.compile(r"/rest/v1/")
_STORAGE_URL_RE = re.compile(r"supabase\.co/storage")
_RLS_RE = re.compile(r"auth\.uid|auth\.role|auth\.jwt|ENABLE ROW LEVEL")
_ORM_RE = re.compile(r"drizzle|@prisma")
_PROTOTYPE_RE = re.compile(r"PROTOTYPE_ONLY")
_PORTABILITY_RE = re.compile(r"DB_PORTABILITY_VIOLATION")


@dataclass
class CouplingFinding:
    """Category counts, layout flags and the readiness tier derived from them."""

    counts: Dict[str, int] = field(default_factory=dict)
    layout: Dict[str, bool] = field(default_factory=dict)
    violations: int = 0
    tier: str = "low"
    files_scanned: int = 0

    @property
    def blocking(self) -> bool:
        return self.tier in BLOCKING_TIERS

    def to_dict(self) -> Dict[str, object]:
        return {
            "tier": self.tier,
            "violations": self.violations,
            "files_scanned": self.files_scanned,
            "counts": dict(sorted(self.counts.items())),
            "layout": dict(sorted(self.layout.items())),
        }


def _count_lines(pattern: re.Pattern, text: str) -> int:
    return sum(1 for line in text.splitlines() if pattern.search(line))


def _parent_dirs(path: str) -> Set[str]:
    parts = path.split("/")[:-1]
    return {"/".join(parts[: i + 1]) for i in range(len(parts))}


def detect_layout(paths: Iterable[str], directories: Iterable[str] = ()) -> Dict[str, bool]:
    """
    Report which abstraction layers and migration tooling a tree has.

    Args:
        paths: Relative POSIX file paths
        directories: Relative POSIX directory paths, for directories with no scanned files

    Returns:
        Flag name -> present
    """
    paths = list(paths)
    dirs: Set[str] = set(directories)
    for path in paths:
        dirs |= _parent_dirs(path)

    layout = {
        name: location in dirs or f"src/{location}" in dirs
        for name, location in ABSTRACTION_DIRS.items()
    }
    layout["migrations"] = any(d.rsplit("/", 1)[-1] == "migrations" for d in dirs)
    layout["drizzle_config"] = any(
        p.rsplit("/", 1)[-1].startswith("drizzle.config.") for p in paths
    )
    return layout


def tier_for(violations: int, orm_refs: int) -> str:
    if violations == 0 and orm_refs > 0:
        return "ready"
    if violations < 10:
        return "low"
    if violations < 50:
        return "moderate"
    return "high"


def score(files: Mapping[str, str], directories: Iterable[str] = ()) -> CouplingFinding:
    """
    Score a set of source files.

    This is a pure function: no filesystem access.

    Args:
        files: Relative POSIX path -> file text
        directories: Extra relative directory paths for layout detection

    Returns:
        CouplingFinding with counts, layout, violation total and tier
    """
    counts = {
        "sdk_imports": 0,
        "sdk_leaked": 0,
        "data_queries": 0,
        "rest_calls": 0,
        "storage_urls": 0,
        "rls_refs": 0,
        "orm_refs": 0,
        "prototype_markers": 0,
        "portability_markers": 0,
    }
    scanned = 0

    for path, text in sorted(files.items()):
        suffix = os.path.splitext(path)[1].lower()
        is_code = suffix in CODE_SUFFIXES
        is_sql = suffix in SQL_SUFFIXES
        if not (is_code or is_sql):
            continue
        scanned += 1

        if is_code:
            imports = _count_lines(_SDK_IMPORT_RE, text)
            counts["sdk_imports"] += imports
            if not any(q in f"/{path}" for q in QUARANTINE_DIRS):
                counts["sdk_leaked"] += imports
            counts["data_queries"] += _count_lines(_DATA_QUERY_RE, text)
            counts["rest_calls"] += _count_lines(_REST_CALL_RE, text)
            counts["orm_refs"] += _count_lines(_ORM_RE, text)
            counts["prototype_markers"] += _count_lines(_PROTOTYPE_RE, text)
            counts["portability_markers"] += _count_lines(_PORTABILITY_RE, text)
        else:
            counts["rls_refs"] += _count_lines(_RLS_RE, text)
        counts["storage_urls"] += _count_lines(_STORAGE_URL_RE, text)

    violations = (
        counts["data_queries"]
        + counts["rest_calls"]
        + counts["storage_urls"]
        + counts["sdk_leaked"]
    )
    return CouplingFinding(
        counts=counts,
        layout=detect_layout(files, directories),
        violations=violations,
        tier=tier_for(violations, counts["orm_refs"]),
        files_scanned=scanned,
    )


def audit(project_root: Union[str, Path]) -> CouplingFinding:
    """Read the scannable files under ``project_root`` and score them."""
    root = Path(project_root)
    if not root.is_dir():
        raise FileNotFoundError(f"Project root not found: {root}")

    files: Dict[str, str] = {}
    directories = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in EXCLUDED_DIRS)
        current = Path(dirpath)
        directories.extend((current / d).relative_to(root).as_posix() for d in dirnames)
        for filename in filenames:
            full_path = current / filename
            relative = full_path.relative_to(root).as_posix()
            suffix = os.path.splitext(filename)[1].lower()
            if suffix not in CODE_SUFFIXES and suffix not in SQL_SUFFIXES:
                if filename.startswith("drizzle.config."):
                    files[relative] = ""
                continue
            files[relative] = full_path.read_text(encoding="utf-8", errors="replace")

    return score(files, directories)
