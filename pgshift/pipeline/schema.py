"""
Schema Transformer.

Extracts the structural definition of the migrated schema from the source,
strips constructs that only exist on the source platform, and produces a
definition the target can load.

Cleaning works on whole statements. The dump is split on statement
terminators that sit outside string literals, quoted identifiers, comments
and dollar-quoted bodies, so a function body that happens to contain a
semicolon or a role name is never cut apart.

Removed constructs:
- statements naming a source-platform administrative role in a role position
  (owner, grantee, granted role, AUTHORIZATION, FOR ROLE)
- row-level security policies and their ENABLE/FORCE statements (saved to
  rls_backup.sql; they encode authorization the application must re-implement)
- CREATE/COMMENT ON EXTENSION for extensions the target cannot install, plus
  the schema and SECURITY LABEL statements named after them
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from ..db.endpoint import Endpoint
from ..db.pg_tools import PgTools, count_error_markers
from .errors import SchemaExtractionError
from .storage import ArtifactStore

logger = logging.getLogger(__name__)

RAW_SCHEMA = "schema.original.sql"
CLEAN_SCHEMA = "schema.sql"
RLS_BACKUP = "rls_backup.sql"
REMOVED_INDEX = "schema_removed.json"
DUMP_ERRORS = "schema_dump_errors.log"
RESTORE_ERRORS = "schema_restore_errors.log"

_DOLLAR_TAG_RE = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)?\$")
_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_$]*")
_POLICY_RE = re.compile(r"^\s*CREATE\s+POLICY\b", re.IGNORECASE)
_RLS_TOGGLE_RE = re.compile(
    r"^\s*ALTER\s+TABLE\b.*\b(?:ENABLE|FORCE)\s+ROW\s+LEVEL\s+SECURITY\b",
    re.IGNORECASE | re.DOTALL,
)
_EXTENSION_RE = re.compile(
    r"^\s*(?:CREATE\s+EXTENSION(?:\s+IF\s+NOT\s+EXISTS)?|COMMENT\s+ON\s+EXTENSION)\s+([\w-]+)",
    re.IGNORECASE,
)
_CREATE_TABLE_RE = re.compile(
    r"^\s*CREATE\s+(?:UNLOGGED\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?"
    r"(?:([\w$-]+)\s*\.\s*)?([\w$-]+)",
    re.IGNORECASE,
)
# Objects that only exist because an extension does: its schema and its label provider
_EXTENSION_OBJECT_RE = re.compile(
    r"^\s*(?:CREATE\s+SCHEMA(?:\s+IF\s+NOT\s+EXISTS)?|COMMENT\s+ON\s+SCHEMA|SECURITY\s+LABEL\s+FOR)"
    r"\s+([\w-]+)",
    re.IGNORECASE,
)

# Role names are only matched where the grammar expects a role, never in
# column, table or function names
_ROLE_LIST = r"((?:GROUP\s+)?[\w$]+(?:\s*,\s*(?:GROUP\s+)?[\w$]+)*)"
_ROLE_POSITION_RES = (
    re.compile(r"\bOWNER\s+TO\s+" + _ROLE_LIST, re.IGNORECASE),
    re.compile(r"\bAUTHORIZATION\s+" + _ROLE_LIST, re.IGNORECASE),
    re.compile(r"\bSET\s+ROLE\s+" + _ROLE_LIST, re.IGNORECASE),
    re.compile(r"\bFOR\s+(?:ROLE|USER)\s+" + _ROLE_LIST, re.IGNORECASE),
    re.compile(r"\bGRANTED\s+BY\s+" + _ROLE_LIST, re.IGNORECASE),
    re.compile(r"^\s*(?:CREATE|ALTER|DROP)\s+(?:ROLE|USER|GROUP)\s+" + _ROLE_LIST, re.IGNORECASE),
)
_GRANT_RE = re.compile(r"^\s*(?:GRANT|REVOKE|ALTER\s+DEFAULT\s+PRIVILEGES)\b", re.IGNORECASE)
_POLICY_STATEMENT_RE = re.compile(r"^\s*(?:CREATE|ALTER)\s+POLICY\b", re.IGNORECASE)
_GRANTEE_RE = re.compile(r"\b(?:TO|FROM)\s+" + _ROLE_LIST, re.IGNORECASE)
_ON_CLAUSE_RE = re.compile(r"\bON\b", re.IGNORECASE)
_MEMBERSHIP_RE = re.compile(
    r"^\s*(?:GRANT|REVOKE)\s+(?:ADMIN\s+OPTION\s+FOR\s+)?" + _ROLE_LIST + r"\s+(?:TO|FROM)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class RemovedConstruct:
    """A statement taken out of the schema during cleaning."""

    kind: str  # "policy", "extension", "role"
    reason: str
    statement: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "reason": self.reason, "statement": self.statement}


@dataclass(frozen=True)
class TargetCapabilities:
    """Extensions the target platform can or cannot install.

    An extension is blocked if it is known-unavailable, or if an allow-list is
    given and the extension is not on it.
    """

    unavailable: FrozenSet[str] = frozenset()
    available: Optional[FrozenSet[str]] = None

    def supports(self, extension: str) -> bool:
        if extension in self.unavailable:
            return False
        if self.available is not None:
            return extension in self.available
        return True


@dataclass(frozen=True)
class SchemaArtifact:
    """Raw schema export, its cleaned variant and what cleaning removed."""

    raw: str
    cleaned: Optional[str] = None
    removed: Tuple[RemovedConstruct, ...] = ()
    blocked_extensions: FrozenSet[str] = frozenset()
    tables: Tuple[str, ...] = ()

    @property
    def policies(self) -> List[RemovedConstruct]:
        return [r for r in self.removed if r.kind == "policy"]

    def removed_of(self, kind: str) -> List[RemovedConstruct]:
        return [r for r in self.removed if r.kind == kind]


@dataclass
class RestoreResult:
    """Outcome of applying the cleaned schema to the target."""

    errors: int
    error_log: str
    returncode: int


def _blank(chars: List[str], start: int, end: int) -> None:
    for k in range(start, end):
        if chars[k] != "\n":
            chars[k] = " "


def mask_literals(sql: str) -> str:
    """Return ``sql`` with comments, string literals and dollar-quoted bodies blanked.

    The result has the same length (and line structure) as the input. Quote
    characters of double-quoted identifiers are blanked, their content kept.
    """
    chars = list(sql)
    n = len(sql)
    i = 0
    while i < n:
        c = sql[i]
        if c == "-" and sql.startswith("--", i):
            end = sql.find("\n", i)
            end = n if end == -1 else end
            _blank(chars, i, end)
            i = end
        elif c == "/" and sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            end = n if end == -1 else end + 2
            _blank(chars, i, end)
            i = end
        elif c == "'":
            j = i + 1
            while j < n:
                if sql[j] == "'":
                    if j + 1 < n and sql[j + 1] == "'":
                        j += 2
                        continue
                    break
                j += 1
            end = min(j + 1, n)
            _blank(chars, i, end)
            i = end
        elif c == '"':
            j = i + 1
            while j < n:
                if sql[j] == '"':
                    if j + 1 < n and sql[j + 1] == '"':
                        j += 2
                        continue
                    break
                j += 1
            chars[i] = " "
            if j < n:
                chars[j] = " "
            i = j + 1
        elif c == "$":
            match = _DOLLAR_TAG_RE.match(sql, i)
            if match:
                tag = match.group(0)
                close = sql.find(tag, match.end())
                end = n if close == -1 else close + len(tag)
                _blank(chars, i, end)
                i = end
            else:
                i += 1
        else:
            i += 1
    return "".join(chars)


def split_statements(sql: str) -> List[str]:
    """Split a dump into chunks, each ending with one statement terminator.

    Concatenating the chunks gives back ``sql`` exactly. Comment headers that
    precede a statement belong to that statement's chunk.
    """
    masked = mask_literals(sql)
    chunks: List[str] = []
    start = 0
    pos = masked.find(";")
    while pos != -1:
        end = pos + 1
        if end < len(sql) and sql[end] == "\n":
            end += 1
        chunks.append(sql[start:end])
        start = end
        pos = masked.find(";", end)
    if start < len(sql):
        chunks.append(sql[start:])
    return chunks


def declared_tables(sql: str) -> Tuple[str, ...]:
    """Table names declared by CREATE TABLE statements, in dump order."""
    names: List[str] = []
    for chunk in split_statements(sql):
        match = _CREATE_TABLE_RE.match(mask_literals(chunk))
        if match and match.group(2) not in names:
            names.append(match.group(2))
    return tuple(names)


def check_extensions(
    source_extensions: Iterable[str], capabilities: TargetCapabilities
) -> Tuple[FrozenSet[str], FrozenSet[str]]:
    """Classify every source extension as compatible or blocked.

    plpgsql is always present and is ignored. Every other extension lands in
    exactly one of the two returned sets.
    """
    compatible = set()
    blocked = set()
    for extension in source_extensions:
        if not extension or extension == "plpgsql":
            continue
        if capabilities.supports(extension):
            compatible.add(extension)
        else:
            blocked.add(extension)
    return frozenset(compatible), frozenset(blocked)


def role_references(code: str) -> Set[str]:
    """Lower-cased names used in role positions of one masked statement.

    Covers grantees of GRANT/REVOKE and policies, granted roles of a
    membership grant, OWNER TO, AUTHORIZATION, SET ROLE, FOR ROLE,
    GRANTED BY and CREATE/ALTER/DROP ROLE.
    """
    lists = [m.group(1) for pattern in _ROLE_POSITION_RES for m in pattern.finditer(code)]
    if _GRANT_RE.match(code) or _POLICY_STATEMENT_RE.match(code):
        lists += [m.group(1) for m in _GRANTEE_RE.finditer(code)]
    if _GRANT_RE.match(code) and not _ON_CLAUSE_RE.search(code):
        membership = _MEMBERSHIP_RE.match(code)
        if membership:
            lists.append(membership.group(1))

    names = set()
    for role_list in lists:
        names.update(
            word.lower() for word in _WORD_RE.findall(role_list) if word.lower() != "group"
        )
    return names


def _classify(
    chunk: str, roles: FrozenSet[str], blocked: FrozenSet[str]
) -> Optional[RemovedConstruct]:
    code = mask_literals(chunk)
    if not code.strip():
        return None
    statement = chunk.strip()

    if _POLICY_RE.match(code) or _RLS_TOGGLE_RE.match(code):
        return RemovedConstruct(
            kind="policy",
            reason="row-level security is not carried to the target",
            statement=statement,
        )

    match = _EXTENSION_RE.match(code) or _EXTENSION_OBJECT_RE.match(code)
    if match and match.group(1).lower() in blocked:
        return RemovedConstruct(
            kind="extension",
            reason=f"extension {match.group(1).lower()} is not available on the target",
            statement=statement,
        )

    referenced = role_references(code) & roles
    if referenced:
        return RemovedConstruct(
            kind="role",
            reason=f"references source-platform role(s): {', '.join(sorted(referenced))}",
            statement=statement,
        )
    return None


def clean_schema(
    artifact: SchemaArtifact, roles: Iterable[str]
) -> SchemaArtifact:
    """Filter platform-only statements out of a schema artifact.

    Works on the already-cleaned text when present, so cleaning twice is the
    same as cleaning once.
    """
    role_set = frozenset(role.lower() for role in roles)
    blocked = frozenset(ext.lower() for ext in artifact.blocked_extensions)
    source_text = artifact.cleaned if artifact.cleaned is not None else artifact.raw

    kept: List[str] = []
    removed: List[RemovedConstruct] = list(artifact.removed)
    for chunk in split_statements(source_text):
        construct = _classify(chunk, role_set, blocked)
        if construct is None:
            kept.append(chunk)
        else:
            removed.append(construct)

    return replace(
        artifact,
        cleaned="".join(kept),
        removed=tuple(removed),
        tables=artifact.tables or declared_tables(artifact.raw),
    )


class SchemaTransformer:
    """Extracts, cleans and restores the migrated schema."""

    def __init__(
        self,
        store: ArtifactStore,
        tools: PgTools,
        roles: Iterable[str],
        capabilities: TargetCapabilities,
        schema: str = "public",
    ):
        self.store = store
        self.tools = tools
        self.roles = frozenset(roles)
        self.capabilities = capabilities
        self.schema = schema

    def extract(self, source: Endpoint) -> SchemaArtifact:
        """Export structure only, without ownership or privilege metadata.

        Raises:
            SchemaExtractionError: If pg_dump fails; no schema artifact is kept
        """
        partial = self.store.partial_path(RAW_SCHEMA)
        result = self.tools.dump(
            source.libpq_url,
            partial,
            [
                "--schema-only",
                f"--schema={self.schema}",
                "--no-owner",
                "--no-privileges",
                "--no-comments",
            ],
        )
        self.store.write_text(DUMP_ERRORS, result.stderr)

        if not result.ok:
            self.store.discard_partial(RAW_SCHEMA)
            raise SchemaExtractionError(
                code="SCHEMA_DUMP_FAILED",
                message=f"pg_dump exited with {result.returncode} for {source.display_url}",
                detail={"stderr": result.stderr[-2000:], "error_log": DUMP_ERRORS},
            )

        self.store.commit_partial(RAW_SCHEMA)
        raw = self.store.read_text(RAW_SCHEMA)
        tables = declared_tables(raw)
        logger.info(
            f"Schema exported: {len(raw.splitlines())} lines, {len(tables)} tables"
        )
        return SchemaArtifact(raw=raw, tables=tables)

    def check_extensions(
        self, source_extensions: Iterable[str]
    ) -> Tuple[FrozenSet[str], FrozenSet[str]]:
        compatible, blocked = check_extensions(source_extensions, self.capabilities)
        for extension in sorted(compatible):
            logger.info(f"Extension {extension}: available on target")
        for extension in sorted(blocked):
            logger.warning(f"Extension {extension}: not available on target, will be skipped")
        return compatible, blocked

    def clean(self, artifact: SchemaArtifact) -> SchemaArtifact:
        cleaned = clean_schema(artifact, self.roles)
        new_removals = len(cleaned.removed) - len(artifact.removed)
        logger.info(f"Removed {new_removals} platform-specific statements")
        return cleaned

    def save(self, artifact: SchemaArtifact) -> Dict[str, str]:
        """Write the cleaned schema, the policy backup and the removal index.

        Returns:
            Artifact name -> digest for the checkpoint
        """
        if artifact.cleaned is None:
            raise ValueError("Schema artifact has not been cleaned")

        backup = "".join(
            f"-- {p.reason}\n{p.statement}\n\n" for p in artifact.policies
        )
        digests = {
            RAW_SCHEMA: self.store.digest(RAW_SCHEMA) or "",
            CLEAN_SCHEMA: self.store.write_text(CLEAN_SCHEMA, artifact.cleaned),
            RLS_BACKUP: self.store.write_text(RLS_BACKUP, backup),
            REMOVED_INDEX: self.store.write_json(
                REMOVED_INDEX,
                {
                    "blocked_extensions": sorted(artifact.blocked_extensions),
                    "tables": list(artifact.tables),
                    "removed": [r.to_dict() for r in artifact.removed],
                },
            ),
        }
        return digests

    def load(self) -> SchemaArtifact:
        """Rebuild the schema artifact of an earlier run from its files."""
        index = json.loads(self.store.read_text(REMOVED_INDEX))
        return SchemaArtifact(
            raw=self.store.read_text(RAW_SCHEMA),
            cleaned=self.store.read_text(CLEAN_SCHEMA),
            removed=tuple(RemovedConstruct(**r) for r in index["removed"]),
            blocked_extensions=frozenset(index["blocked_extensions"]),
            tables=tuple(index["tables"]),
        )

    def restore(self, target: Endpoint) -> RestoreResult:
        """Apply the cleaned schema to the target, counting error markers."""
        result = self.tools.run_script(target.libpq_url, self.store.path(CLEAN_SCHEMA))
        log = result.stderr
        self.store.write_text(RESTORE_ERRORS, log)
        errors = count_error_markers(log)
        if errors:
            logger.warning(f"{errors} errors during schema restore. Review: {RESTORE_ERRORS}")
        else:
            logger.info("Schema restored")
        return RestoreResult(errors=errors, error_log=RESTORE_ERRORS, returncode=result.returncode)
