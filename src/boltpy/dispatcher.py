from __future__ import annotations

import enum
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from boltpy.config import Config
from boltpy.events import build_event
from boltpy.executor import Executor
from boltpy.installer import PuppetfileInstaller
from boltpy.inventory import Inventory
from boltpy.lifecycle import InterruptGuard
from boltpy.models import (
    Action,
    AdhocOutcome,
    ApplyOutcome,
    BoltError,
    EventObserver,
    ExecutionOutcome,
    ExecutionRequest,
    ExecutorLike,
    FileError,
    InfoOutcome,
    InstallerLike,
    InstallOutcome,
    InventoryLike,
    PlanOutcome,
    PlanResult,
    QueryStoreLike,
    RerunStoreLike,
    ResultSet,
    RuntimeFailure,
    RuntimeLike,
    Subcommand,
    UsageError,
)
from boltpy.outputter import LogOutputter, Outputter
from boltpy.puppetdb import PuppetDBClient
from boltpy.rerun import RerunStore
from boltpy.runtime import ModuleRuntime

_log = logging.getLogger("bolt.dispatcher")

PLAN_NODES_CONFLICT = (
    "A plan's 'nodes' parameter may be specified using the --nodes option, but in that "
    "case it must not be specified as a separate nodes=<value> parameter nor included "
    "in the JSON data passed in the --params option"
)


class Strategy(str, enum.Enum):
    SHOW = "show"
    SHOW_MODULES = "show_modules"
    ADHOC = "adhoc"
    TASK = "task"
    PLAN = "plan"
    APPLY = "apply"
    INSTALL = "install"


def select_strategy(subcommand: Subcommand, action: Action | None) -> Strategy:
    if action is Action.SHOW:
        return Strategy.SHOW
    if action is Action.SHOW_MODULES:
        return Strategy.SHOW_MODULES
    if subcommand is Subcommand.PUPPETFILE and action is Action.INSTALL:
        return Strategy.INSTALL
    if subcommand is Subcommand.APPLY:
        return Strategy.APPLY
    if subcommand is Subcommand.PLAN and action is Action.RUN:
        return Strategy.PLAN
    if subcommand is Subcommand.TASK and action is Action.RUN:
        return Strategy.TASK
    if (subcommand, action) in (
        (Subcommand.COMMAND, Action.RUN),
        (Subcommand.SCRIPT, Action.RUN),
        (Subcommand.FILE, Action.UPLOAD),
    ):
        return Strategy.ADHOC
    action_name = action.value if action is not None else None
    raise ValueError(f"No execution strategy for {subcommand.value} {action_name}")


@dataclass(frozen=True)
class RunContext:
    config: Config
    executor: ExecutorLike
    cancel_token: threading.Event
    runtime: RuntimeLike
    inventory: InventoryLike
    query_store: QueryStoreLike | None
    rerun: RerunStoreLike
    outputter: Outputter
    log_outputter: EventObserver
    installer: InstallerLike


ContextFactory = Callable[[ExecutionRequest, Config], RunContext]


def build_context(request: ExecutionRequest, config: Config) -> RunContext:
    """Construct the default collaborators for one invocation."""
    cancel_token = threading.Event()
    return RunContext(
        config=config,
        executor=Executor(
            concurrency=config.concurrency,
            noop=request.noop,
            cancel_token=cancel_token,
        ),
        cancel_token=cancel_token,
        runtime=ModuleRuntime(config.modulepath),
        inventory=Inventory.from_config(config),
        query_store=PuppetDBClient(config.puppetdb),
        rerun=RerunStore(config.rerunfile or config.boltdir.rerun_file, save=config.save_rerun),
        outputter=Outputter.for_format(config.format, config.color, request.verbose, config.trace),
        log_outputter=LogOutputter(verbose=request.verbose, trace=config.trace),
        installer=PuppetfileInstaller(),
    )


def validate_file(kind: str, path: str | Path | None, allow_dir: bool = False) -> None:
    if path is None:
        raise UsageError(f"A {kind} must be specified")
    resolved = Path(path).expanduser()
    if not resolved.exists():
        raise FileError(f"The {kind} '{path}' does not exist", path)
    if not os.access(resolved, os.R_OK):
        raise FileError(f"The {kind} '{path}' is unreadable", path)
    if not resolved.is_file() and not (allow_dir and resolved.is_dir()):
        expected = "file or directory" if allow_dir else "file"
        raise FileError(f"The {kind} '{path}' is not a {expected}", path)
    if resolved.is_dir():
        for child in sorted(resolved.iterdir()):
            validate_file(kind, child, allow_dir)


class Dispatcher:
    """Runs a validated request through the matching execution strategy.

    Every strategy except the informational ones runs under the interrupt
    guard. The executor is shut down and the rerun file updated on every
    path, including failures and interrupts.
    """

    def __init__(self, context: RunContext):
        self.context = context

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        strategy = select_strategy(request.subcommand, request.action)
        self._screen_view(request)

        if strategy in (Strategy.SHOW, Strategy.SHOW_MODULES):
            try:
                return self._show(request, strategy)
            except BoltError as exc:
                self.context.outputter.fatal_error(exc)
                raise

        handlers: dict[Strategy, Callable[[ExecutionRequest], ExecutionOutcome]] = {
            Strategy.ADHOC: self._run_adhoc,
            Strategy.TASK: self._run_adhoc,
            Strategy.PLAN: self._run_plan,
            Strategy.APPLY: self._run_apply,
            Strategy.INSTALL: self._install_puppetfile,
        }
        outcome: ExecutionOutcome | None = None
        try:
            try:
                with InterruptGuard(self.context.cancel_token):
                    self._coerce_params(request)
                    outcome = handlers[strategy](request)
            finally:
                self._finalize(strategy, outcome)
        except BoltError as exc:
            self.context.outputter.fatal_error(exc)
            raise
        self._render(outcome)
        return outcome

    def _screen_view(self, request: ExecutionRequest) -> None:
        inventory = self.context.inventory
        _log.debug(
            "screen_view screen=%s target_nodes=%d inventory_nodes=%d inventory_groups=%d",
            request.screen,
            len(request.targets),
            len(inventory.node_names()),
            len(inventory.group_names()),
        )

    def _show(self, request: ExecutionRequest, strategy: Strategy) -> InfoOutcome:
        runtime = self.context.runtime
        outputter = self.context.outputter
        if strategy is Strategy.SHOW_MODULES:
            outputter.print_module_list(runtime.list_modules())
        elif request.subcommand is Subcommand.TASK:
            if request.object:
                outputter.print_task_info(runtime.get_task_info(request.object))
            else:
                outputter.print_tasks(runtime.list_tasks(), runtime.list_modulepath())
        elif request.object:
            outputter.print_plan_info(runtime.get_plan_info(request.object))
        else:
            outputter.print_plans(runtime.list_plans(), runtime.list_modulepath())
        return InfoOutcome(ok=True)

    def _coerce_params(self, request: ExecutionRequest) -> None:
        if request.subcommand not in (Subcommand.TASK, Subcommand.PLAN):
            return
        if not request.task_options or request.params_parsed or request.object is None:
            return
        request.task_options = self.context.runtime.parse_params(
            request.subcommand.value, request.object, request.task_options
        )

    def _subscribe(self, *, renderer: bool) -> None:
        executor = self.context.executor
        if renderer:
            executor.subscribe(self.context.outputter)
        executor.subscribe(self.context.log_outputter)

    def _run_adhoc(self, request: ExecutionRequest) -> AdhocOutcome:
        context = self.context
        executor = context.executor
        targets = request.targets
        options: dict[str, Any] = {}
        if request.description:
            options["_description"] = request.description

        context.outputter.print_head()
        self._subscribe(renderer=True)
        started = time.perf_counter()
        if request.subcommand is Subcommand.COMMAND:
            if not request.object:
                raise UsageError("Must specify a command to run")
            results = executor.run_command(targets, request.object, options)
        elif request.subcommand is Subcommand.SCRIPT:
            validate_file("script", request.object)
            results = executor.run_script(
                targets, Path(str(request.object)), list(request.leftovers), options
            )
        elif request.subcommand is Subcommand.TASK:
            results = context.runtime.run_task(
                str(request.object),
                targets,
                request.task_options,
                executor,
                context.inventory,
                request.description,
            )
        else:
            destination = request.leftovers[0] if request.leftovers else None
            if destination is None:
                raise UsageError("A destination path must be specified")
            validate_file("source file", request.object, allow_dir=True)
            results = executor.upload_file(targets, Path(str(request.object)), destination, options)
        return AdhocOutcome(results=results, elapsed_sec=time.perf_counter() - started)

    def _run_plan(self, request: ExecutionRequest) -> PlanOutcome:
        context = self.context
        plan_name = str(request.object)
        params = dict(request.task_options)
        if request.target_args:
            if "nodes" in params:
                raise UsageError(PLAN_NODES_CONFLICT)
            params["nodes"] = ",".join(request.target_args)
        if request.noop:
            params["_noop"] = True

        self._subscribe(renderer=context.config.format == "human")
        plan_fields: dict[str, Any] = {"plan": plan_name}
        if request.description:
            plan_fields["description"] = request.description
        context.executor.publish_event(build_event("plan_start", **plan_fields))
        result = context.runtime.run_plan(
            plan_name, params, context.executor, context.inventory, context.query_store
        )
        context.executor.publish_event(build_event("plan_finish", plan=plan_name, status=result.status))
        return PlanOutcome(result=result)

    def _run_apply(self, request: ExecutionRequest) -> ApplyOutcome:
        context = self.context
        executor = context.executor
        code = request.code
        if request.object:
            validate_file("manifest", request.object)
            try:
                code = Path(request.object).expanduser().read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise FileError(
                    f"The manifest '{request.object}' could not be read: {exc}", request.object
                ) from exc
        catalog = context.runtime.parse_manifest(code or "", request.object)

        self._subscribe(renderer=context.config.format == "human")
        # Apply output is rendered like a plan.
        executor.publish_event(build_event("plan_start", plan=None))
        started = time.perf_counter()
        prep = context.runtime.apply_prep(request.targets, executor)
        if not prep.ok:
            raise RuntimeFailure(
                f"apply_prep failed on {len(prep.error_set)} nodes",
                details={"result_set": prep.to_json()},
            )
        results = context.runtime.apply(
            catalog, request.targets, executor, noop=request.noop, catch_errors=True
        )
        return ApplyOutcome(results=results, elapsed_sec=time.perf_counter() - started)

    def _install_puppetfile(self, request: ExecutionRequest) -> InstallOutcome:
        config = self.context.config
        puppetfile = Path(config.puppetfile or config.boltdir.puppetfile)
        if not puppetfile.exists():
            raise FileError(f"Could not find a Puppetfile at {puppetfile}", puppetfile)
        moduledir = Path(config.modulepath[0])
        ok = self.context.installer.install(puppetfile, moduledir)
        return InstallOutcome(ok=ok, puppetfile=puppetfile, moduledir=moduledir)

    def _finalize(self, strategy: Strategy, outcome: ExecutionOutcome | None) -> None:
        self.context.executor.shutdown()
        if strategy is Strategy.INSTALL:
            return

        result: ResultSet | PlanResult | None
        if isinstance(outcome, (AdhocOutcome, ApplyOutcome)):
            result = outcome.results
        elif isinstance(outcome, PlanOutcome):
            result = outcome.result
        else:
            result = self.context.executor.collected_results()
            if not len(result):
                return
        try:
            self.context.rerun.update(result)
        except OSError as exc:
            _log.warning("Could not save rerun data: %s", exc)

    def _render(self, outcome: ExecutionOutcome) -> None:
        outputter = self.context.outputter
        if isinstance(outcome, AdhocOutcome):
            outputter.print_summary(outcome.results, outcome.elapsed_sec)
        elif isinstance(outcome, PlanOutcome):
            outputter.print_plan_result(outcome.result)
        elif isinstance(outcome, ApplyOutcome):
            outputter.print_apply_result(outcome.results, outcome.elapsed_sec)
        elif isinstance(outcome, InstallOutcome):
            outputter.print_puppetfile_result(outcome.ok, outcome.puppetfile, outcome.moduledir)
