from __future__ import annotations

import logging

from boltpy.models import (
    Action,
    ExecutionRequest,
    InventoryLike,
    QueryStoreLike,
    RerunStoreLike,
    Subcommand,
    Target,
    TargetingError,
    TargetingKind,
)

_log = logging.getLogger("bolt.targeting")

TARGETING_FLAGS = "'--nodes', '--targets', '--rerun', or '--query'"


def needs_targets(request: ExecutionRequest) -> bool:
    return not (
        request.subcommand is Subcommand.PUPPETFILE or request.action is Action.SHOW
    )


def resolve_targets(
    request: ExecutionRequest,
    *,
    inventory: InventoryLike,
    rerun: RerunStoreLike,
    query_store: QueryStoreLike | None,
) -> list[Target]:
    """Resolve the single targeting source of *request* into targets.

    ``request.target_args`` keeps the identifiers (plans receive them as the
    ``nodes`` parameter) and ``request.targets`` the materialized targets.
    """
    if not needs_targets(request):
        return []

    sources = request.targeting_sources
    if len(sources) > 1:
        raise TargetingError(f"Only one targeting option {TARGETING_FLAGS} may be specified")
    if not sources and request.subcommand is not Subcommand.PLAN:
        raise TargetingError(f"Command requires a targeting option: {TARGETING_FLAGS}")

    identifiers: list[str] = []
    source = request.targeting
    if source is not None:
        if source.kind is TargetingKind.QUERY:
            if query_store is None:
                raise TargetingError("'--query' requires a configured query store")
            identifiers = query_store.query_certnames(str(source.value))
        elif source.kind is TargetingKind.RERUN:
            identifiers = rerun.get_targets(str(source.value))
        else:
            identifiers = list(source.value)

    request.target_args = list(identifiers)
    request.targets = inventory.get_targets(identifiers)
    _log.debug(
        "targets_resolved source=%s num_identifiers=%d num_targets=%d",
        sources[0].flag if sources else None,
        len(identifiers),
        len(request.targets),
    )
    return request.targets
