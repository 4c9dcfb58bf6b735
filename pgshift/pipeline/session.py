"""
Migration session: everything one end-to-end run works against.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Union

from ..config import Settings
from ..db.base import create_ledger_session
from ..db.endpoint import Endpoint, PostgresEndpoint
from ..db.ledger_service import LedgerService
from .storage import ArtifactStore, create_artifact_store

PHASES = ("schema", "data", "sequences")


class FreezeState(str, Enum):
    """Write protection of the source database."""

    WRITABLE = "writable"
    FROZEN = "frozen"


def parse_scope(raw: Union[str, Iterable[str], None]) -> FrozenSet[str]:
    """
    Parse a phase scope.

    Examples:
        "all" -> {"schema", "data", "sequences"}
        "schema,data" -> {"schema", "data"}
        ["sequences"] -> {"sequences"}

    Raises:
        ValueError: If a phase name is unknown or the scope is empty
    """
    if raw is None:
        return frozenset(PHASES)
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    names = {item.strip().lower() for item in items if item and item.strip()}
    if not names or names == {"all"}:
        return frozenset(PHASES)
    unknown = names - set(PHASES)
    if unknown:
        raise ValueError(
            f"Unknown phase(s): {', '.join(sorted(unknown))}. "
            f"Allowed: {', '.join(PHASES)} or all"
        )
    return frozenset(names)


def new_run_id() -> str:
    """Sortable run ID: UTC timestamp plus a short random suffix."""
    return f"{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%SZ')}-{uuid.uuid4().hex[:6]}"


@dataclass
class MigrationSession:
    """One end-to-end run.

    ``freeze_state`` mirrors the source's write protection. It is changed only
    by the DataTransferEngine, which also records every change in the ledger.
    """

    run_id: str
    source: Endpoint
    target: Endpoint
    store: ArtifactStore
    ledger: LedgerService
    schema: str = "public"
    dry_run: bool = False
    scope: FrozenSet[str] = field(default_factory=lambda: frozenset(PHASES))
    override_readiness: bool = False
    freeze_state: FreezeState = FreezeState.WRITABLE

    def in_scope(self, phase: str) -> bool:
        return phase in self.scope


def open_session(
    settings: Settings,
    run_id: Optional[str] = None,
    dry_run: bool = False,
    scope: Union[str, Iterable[str], None] = None,
    override_readiness: bool = False,
    source: Optional[Endpoint] = None,
    target: Optional[Endpoint] = None,
) -> MigrationSession:
    """Create (or reopen, for an existing run ID) a migration session.

    The freeze state is restored from the run ledger, so a resumed run knows
    the source is still frozen.
    """
    run_id = run_id or new_run_id()
    store = create_artifact_store(settings.workspace_root, run_id)
    ledger = LedgerService(create_ledger_session(store.path("ledger.db")), run_id)

    return MigrationSession(
        run_id=run_id,
        source=source or PostgresEndpoint("source", settings.source_db_url or ""),
        target=target or PostgresEndpoint("target", settings.target_db_url or ""),
        store=store,
        ledger=ledger,
        schema=settings.migrate_schema,
        dry_run=dry_run,
        scope=parse_scope(scope),
        override_readiness=override_readiness,
        freeze_state=FreezeState(ledger.current_freeze_state()),
    )
