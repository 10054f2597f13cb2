from __future__ import annotations

from dataclasses import dataclass

from boltpy.models import (
    AdhocOutcome,
    ApplyOutcome,
    ExecutionOutcome,
    InfoOutcome,
    InstallOutcome,
    PlanOutcome,
)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_TARGET_FAILURE = 2


@dataclass(frozen=True)
class Aggregate:
    exit_code: int
    summary: str


def aggregate(outcome: ExecutionOutcome) -> Aggregate:
    """Derive the process exit code from an execution outcome.

    Ad-hoc runs and tasks exit 2 when any target failed; plans, apply and
    installs exit 1 on failure.
    """
    if isinstance(outcome, AdhocOutcome):
        failed = len(outcome.results.error_set)
        if failed:
            return Aggregate(EXIT_TARGET_FAILURE, f"failed on {failed} of {len(outcome.results)} targets")
        return Aggregate(EXIT_OK, f"succeeded on {len(outcome.results)} targets")
    if isinstance(outcome, ApplyOutcome):
        failed = len(outcome.results.error_set)
        if failed:
            return Aggregate(EXIT_ERROR, f"apply failed on {failed} of {len(outcome.results)} targets")
        return Aggregate(EXIT_OK, f"applied on {len(outcome.results)} targets")
    if isinstance(outcome, PlanOutcome):
        status = outcome.result.status
        return Aggregate(EXIT_OK if outcome.ok else EXIT_ERROR, f"plan {status}")
    if isinstance(outcome, InstallOutcome):
        if outcome.ok:
            return Aggregate(EXIT_OK, f"installed modules into {outcome.moduledir}")
        return Aggregate(EXIT_ERROR, f"failed to install modules into {outcome.moduledir}")
    if isinstance(outcome, InfoOutcome):
        return Aggregate(EXIT_OK if outcome.ok else EXIT_ERROR, "info")
    raise TypeError(f"Unsupported execution outcome {type(outcome).__name__}")
