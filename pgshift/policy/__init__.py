"""Run gates."""

from .preflight import (
    PreflightConfig,
    PreflightError,
    PreflightInputs,
    PreflightResult,
    evaluate,
    gather_inputs,
)

__all__ = [
    "PreflightConfig",
    "PreflightError",
    "PreflightInputs",
    "PreflightResult",
    "evaluate",
    "gather_inputs",
]
