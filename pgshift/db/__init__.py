"""Database access for pgshift: migration endpoints, client tools and the run ledger."""

from .base import Base, create_ledger_engine, create_ledger_session, mask_url
from .endpoint import Endpoint, PostgresEndpoint, ProbeOutcome, split_qualified
from .ledger_models import (
    FreezeTransitionModel,
    PhaseCheckpointModel,
    StateTransitionModel,
)
from .ledger_service import LedgerService
from .pg_tools import CommandResult, PgTools

__all__ = [
    "Base",
    "CommandResult",
    "Endpoint",
    "FreezeTransitionModel",
    "LedgerService",
    "PgTools",
    "PhaseCheckpointModel",
    "PostgresEndpoint",
    "ProbeOutcome",
    "StateTransitionModel",
    "create_ledger_engine",
    "create_ledger_session",
    "mask_url",
    "split_qualified",
]
