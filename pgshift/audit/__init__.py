"""Application coupling audit."""

from .coupling import BLOCKING_TIERS, CouplingFinding, audit, score

__all__ = ["BLOCKING_TIERS", "CouplingFinding", "audit", "score"]
