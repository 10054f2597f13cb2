from __future__ import annotations

import argparse
import json
import logging
import re
from importlib import metadata
from typing import Any, Sequence

from boltpy.grammar import (
    COMMANDS,
    coerce_action,
    coerce_subcommand,
    help_text,
    parse_raw_options,
)
from boltpy.models import (
    Action,
    ExecutionRequest,
    HelpRequested,
    ParamsConflictError,
    Subcommand,
    TargetingKind,
    TargetingSource,
    UsageError,
)
from boltpy.utils import read_arg_source, split_identifiers

_log = logging.getLogger("bolt.request")

_PARAM_PAIR_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_OBJECT_NAME_RE = re.compile(r"([a-z][a-z0-9_]*)?(::[a-z][a-z0-9_]*)*")


def _version() -> str:
    try:
        return metadata.version("boltpy")
    except metadata.PackageNotFoundError:
        return "0.0.0"


def _read_identifiers(raw_values: list[str] | None) -> tuple[str, ...]:
    if not raw_values:
        return ()
    expanded: list[str] = []
    for value in raw_values:
        if value == "-" or value.startswith("@"):
            try:
                text = read_arg_source(value)
            except (OSError, UnicodeDecodeError) as exc:
                raise UsageError(f"Could not read targets from '{value}': {exc}") from exc
            expanded.extend(line.strip() for line in text.splitlines())
        else:
            expanded.append(value)
    return tuple(split_identifiers(expanded))


def _read_params(raw: str) -> dict[str, Any]:
    try:
        text = read_arg_source(raw)
    except (OSError, UnicodeDecodeError) as exc:
        raise UsageError(f"Could not read --params from '{raw}': {exc}") from exc
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise UsageError(f"Unable to parse --params value as JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise UsageError("--params must be a JSON object")
    return {str(key): value for key, value in parsed.items()}


def _targeting_sources(args: argparse.Namespace) -> tuple[TargetingSource, ...]:
    sources: list[TargetingSource] = []
    nodes = _read_identifiers(args.nodes)
    if args.nodes is not None:
        sources.append(TargetingSource(TargetingKind.NODES, nodes))
    targets = _read_identifiers(args.targets)
    if args.targets is not None:
        sources.append(TargetingSource(TargetingKind.TARGETS, targets))
    if args.query is not None:
        sources.append(TargetingSource(TargetingKind.QUERY, str(args.query)))
    if args.rerun is not None:
        sources.append(TargetingSource(TargetingKind.RERUN, str(args.rerun)))
    return tuple(sources)


def _help_requested(remaining: list[str], args: argparse.Namespace) -> str | None:
    if remaining and remaining[0] == "help":
        return remaining[1] if len(remaining) > 1 else None
    if args.help:
        return remaining[0] if remaining else None
    return None


def normalize(argv: Sequence[str]) -> ExecutionRequest:
    """Turn an argument vector into an unvalidated ``ExecutionRequest``."""
    argv = list(argv)
    if not argv:
        raise HelpRequested(help_text(None))

    args = parse_raw_options(argv)
    remaining = [str(item) for item in args.positionals]

    if args.version:
        raise HelpRequested(_version())
    if args.help or (remaining and remaining[0] == "help"):
        raise HelpRequested(help_text(_help_requested(remaining, args)))

    raw_subcommand = remaining.pop(0) if remaining else None
    subcommand = coerce_subcommand(raw_subcommand)
    if subcommand is None:
        raise UsageError(
            f"Expected subcommand '{raw_subcommand or ''}' to be one of "
            f"{', '.join(item.value for item in COMMANDS)}"
        )

    raw_action: str | None = None
    if COMMANDS[subcommand]:
        raw_action = remaining.pop(0) if remaining else None
    obj = remaining.pop(0) if remaining else None

    param_pairs = [item for item in remaining if _PARAM_PAIR_RE.match(item)]
    leftovers = [item for item in remaining if not _PARAM_PAIR_RE.match(item)]

    request = ExecutionRequest(
        subcommand=subcommand,
        action=coerce_action(raw_action),
        action_name=raw_action,
        object=obj,
        param_pairs=param_pairs,
        leftovers=leftovers,
        targeting_sources=_targeting_sources(args),
        noop=bool(args.noop),
        description=args.description,
        code=args.code,
        boltdir=args.boltdir,
        configfile=args.configfile,
        inventoryfile=args.inventoryfile,
        modulepath=args.modulepath.split(":") if args.modulepath else None,
        concurrency=args.concurrency,
        save_rerun=args.save_rerun,
        format=args.format,
        color=args.color,
        verbose=bool(args.verbose),
        debug=bool(args.debug),
        trace=bool(args.trace),
    )
    if args.params is not None:
        request.task_options = _read_params(args.params)
        request.params_parsed = True
    else:
        request.task_options = dict(item.split("=", 1) for item in param_pairs)
        request.params_parsed = False
    return request


def validate(request: ExecutionRequest) -> None:
    """Check grammar and cross-field rules, failing on the first violation."""
    subcommand = request.subcommand
    actions = COMMANDS.get(subcommand)
    if actions is None:
        raise UsageError(
            f"Expected subcommand '{getattr(subcommand, 'value', subcommand)}' to be one of "
            f"{', '.join(item.value for item in COMMANDS)}"
        )

    if actions:
        if request.action_name is None and request.action is None:
            raise UsageError(
                f"Expected an action of the form 'bolt {subcommand.value} <action>'"
            )
        if request.action not in actions:
            shown = request.action_name or (request.action and request.action.value)
            raise UsageError(
                f"Expected action '{shown}' to be one of "
                f"{', '.join(item.value for item in actions)}"
            )

    if subcommand not in (Subcommand.FILE, Subcommand.SCRIPT) and request.leftovers:
        raise UsageError(f"Unknown argument(s) {', '.join(request.leftovers)}")

    if subcommand in (Subcommand.TASK, Subcommand.PLAN) and request.action is Action.RUN:
        if request.object is None:
            raise UsageError(f"Must specify a {subcommand.value} to run")
        # A failed match usually means a parameter was parsed as the object.
        if not _OBJECT_NAME_RE.fullmatch(request.object):
            raise UsageError(f"Invalid {subcommand.value} '{request.object}'")

    if request.boltdir and request.configfile:
        raise UsageError("Only one of '--boltdir' or '--configfile' may be specified")

    if request.noop and not (
        (subcommand is Subcommand.TASK and request.action is Action.RUN)
        or subcommand is Subcommand.APPLY
    ):
        raise UsageError(
            "Option '--noop' may only be specified when running a task or "
            "applying manifest code"
        )

    if subcommand is Subcommand.APPLY:
        if request.object and request.code:
            raise UsageError("--execute is unsupported when specifying a manifest file")
        if not request.object and not request.code:
            raise UsageError("a manifest file or --execute is required")

    if request.params_parsed and request.param_pairs:
        raise ParamsConflictError(
            "Parameters must be specified through either the --params "
            "option or param=value pairs, not both"
        )


def parse_request(argv: Sequence[str]) -> ExecutionRequest:
    request = normalize(argv)
    validate(request)
    _log.debug(
        "request_parsed subcommand=%s action=%s object=%s targeting=%s",
        request.subcommand.value,
        request.action.value if request.action else None,
        request.object,
        [source.flag for source in request.targeting_sources],
    )
    return request
