from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Mapping, Sequence

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from boltpy.models import BoltError, PlanResult, ResultSet, TargetResult
from boltpy.utils import format_duration


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def _json_text(value: Any) -> str:
    return json.dumps(value, indent=2, sort_keys=True, default=str)


class Outputter:
    """Base renderer. Executors deliver events through ``handle_event``."""

    def __init__(
        self,
        *,
        color: bool = True,
        verbose: bool = False,
        trace: bool = False,
        console: Console | None = None,
        err_console: Console | None = None,
    ):
        self.color = color
        self.verbose = verbose
        self.trace = trace
        self.console = console or Console(highlight=False, no_color=not color)
        self.err_console = err_console or Console(stderr=True, highlight=False, no_color=not color)

    @classmethod
    def for_format(
        cls, format: str, color: bool = True, verbose: bool = False, trace: bool = False
    ) -> "Outputter":
        if format == "json":
            return JsonOutputter(color=color, verbose=verbose, trace=trace)
        if format == "human":
            return HumanOutputter(color=color, verbose=verbose, trace=trace)
        raise ValueError(f"Unsupported output format '{format}'")

    def handle_event(self, event: Mapping[str, Any]) -> None:
        pass

    def print_head(self) -> None:
        pass

    def print_summary(self, results: ResultSet, elapsed_sec: float) -> None:
        raise NotImplementedError

    def print_task_info(self, info: Mapping[str, Any]) -> None:
        raise NotImplementedError

    def print_tasks(self, tasks: Sequence[tuple[str, str | None]], modulepath: Sequence[str]) -> None:
        raise NotImplementedError

    def print_plan_info(self, info: Mapping[str, Any]) -> None:
        raise NotImplementedError

    def print_plans(self, plans: Sequence[tuple[str, str | None]], modulepath: Sequence[str]) -> None:
        raise NotImplementedError

    def print_module_list(self, modules: Mapping[str, Sequence[Mapping[str, Any]]]) -> None:
        raise NotImplementedError

    def print_plan_result(self, result: PlanResult) -> None:
        raise NotImplementedError

    def print_apply_result(self, results: ResultSet, elapsed_sec: float) -> None:
        raise NotImplementedError

    def print_puppetfile_result(self, ok: bool, puppetfile: Path, moduledir: Path) -> None:
        raise NotImplementedError

    def fatal_error(self, error: BaseException) -> None:
        raise NotImplementedError


class HumanOutputter(Outputter):
    def handle_event(self, event: Mapping[str, Any]) -> None:
        event_type = event["type"]
        if event_type == "node_start":
            self.console.print(f"Started on {escape(event['target'].name)}...")
        elif event_type == "node_result":
            self._print_result(event["result"])
        elif event_type == "step_start":
            self.console.print(
                f"Starting: {escape(str(event['step']))} on {_plural(int(event['num_targets']), 'node')}"
            )
        elif event_type == "plan_start":
            # apply publishes an anonymous plan_start
            if event["plan"] is not None:
                self.console.print(f"Starting: plan {escape(str(event['plan']))}")
        elif event_type == "plan_finish":
            self.console.print(f"Finished: plan {escape(str(event['plan']))} ({event['status']})")
        elif event_type == "message":
            self.console.print(str(event["message"]), markup=False)

    def _print_result(self, result: TargetResult) -> None:
        if result.ok:
            self.console.print(f"[green]Finished on {escape(result.target.name)}:[/green]")
        else:
            self.console.print(f"[red]Failed on {escape(result.target.name)}:[/red]")
        error = result.error
        if error is not None:
            self.console.print(f"  [red]{escape(str(error.get('msg', '')))}[/red]")
        value = dict(result.value)
        value.pop("_error", None)
        if "_output" in value and len(value) == 1:
            text = str(value["_output"]).rstrip()
            if text:
                self.console.print(_indent(text), markup=False)
            return
        stdout = str(value.get("stdout", "")).rstrip()
        stderr = str(value.get("stderr", "")).rstrip()
        if stdout or stderr or "exit_code" in value:
            if stdout:
                self.console.print(_indent(f"STDOUT:\n{_indent(stdout)}"), markup=False)
            if stderr:
                self.console.print(_indent(f"STDERR:\n{_indent(stderr)}"), markup=False)
            return
        if value:
            self.console.print(_indent(_json_text(value)), markup=False)

    def print_summary(self, results: ResultSet, elapsed_sec: float) -> None:
        ok_set = results.ok_set
        if len(ok_set):
            self.console.print(
                f"[green]Successful on {_plural(len(ok_set), 'node')}:[/green] {escape(','.join(ok_set.names))}"
            )
        error_set = results.error_set
        if len(error_set):
            self.console.print(
                f"[red]Failed on {_plural(len(error_set), 'node')}:[/red] {escape(','.join(error_set.names))}"
            )
        self.console.print(
            f"Ran on {_plural(len(results), 'node')} in {format_duration(elapsed_sec)}"
        )

    def _info_table(self, title: str, info: Mapping[str, Any]) -> None:
        overview = Table(title=title, show_header=False, box=box.SIMPLE)
        overview.add_column("Field", style="bold cyan")
        overview.add_column("Value")
        overview.add_row("Name", str(info.get("name", "")))
        if info.get("description"):
            overview.add_row("Description", str(info["description"]))
        for key in ("supports_noop", "steps", "file"):
            if key in info:
                overview.add_row(key.replace("_", " ").capitalize(), escape(str(info[key])))
        self.console.print(overview)

        parameters = dict(info.get("parameters") or {})
        if not parameters:
            return
        table = Table(title="Parameters", box=box.SIMPLE)
        table.add_column("Name", style="bold")
        table.add_column("Type")
        table.add_column("Default")
        table.add_column("Description")
        for name in sorted(parameters):
            spec = dict(parameters[name] or {})
            table.add_row(
                escape(name),
                escape(str(spec.get("type", "Any"))),
                "" if "default" not in spec else escape(json.dumps(spec["default"])),
                escape(str(spec.get("description") or "")),
            )
        self.console.print(table)

    def _listing(self, title: str, items: Sequence[tuple[str, str | None]], modulepath: Sequence[str]) -> None:
        table = Table(title=title, box=box.SIMPLE)
        table.add_column("Name", style="bold")
        table.add_column("Description")
        for name, description in items:
            table.add_row(escape(name), escape(description or ""))
        self.console.print(table)
        self.console.print(f"MODULEPATH:\n{':'.join(modulepath)}", markup=False)

    def print_task_info(self, info: Mapping[str, Any]) -> None:
        self._info_table("Task", info)
        self.console.print(
            f"Use 'bolt task run {info.get('name')} --nodes <node-name>' to run this task.",
            markup=False,
        )

    def print_tasks(self, tasks: Sequence[tuple[str, str | None]], modulepath: Sequence[str]) -> None:
        self._listing("Available Tasks", tasks, modulepath)
        self.console.print(
            "Use 'bolt task show <task-name>' to view details and parameters for a specific task.",
            markup=False,
        )

    def print_plan_info(self, info: Mapping[str, Any]) -> None:
        self._info_table("Plan", info)
        self.console.print(f"Use 'bolt plan run {info.get('name')}' to run this plan.", markup=False)

    def print_plans(self, plans: Sequence[tuple[str, str | None]], modulepath: Sequence[str]) -> None:
        self._listing("Available Plans", plans, modulepath)
        self.console.print(
            "Use 'bolt plan show <plan-name>' to view details and parameters for a specific plan.",
            markup=False,
        )

    def print_module_list(self, modules: Mapping[str, Sequence[Mapping[str, Any]]]) -> None:
        for path, entries in modules.items():
            table = Table(title=escape(path), box=box.SIMPLE)
            table.add_column("Module", style="bold")
            table.add_column("Version")
            if not entries:
                table.add_row("(no modules installed)", "")
            for entry in entries:
                table.add_row(escape(str(entry.get("name", ""))), escape(str(entry.get("version") or "")))
            self.console.print(table)

    def print_plan_result(self, result: PlanResult) -> None:
        value = result.to_json()
        if value is None:
            self.console.print("Plan completed successfully with no result")
        else:
            self.console.print(_json_text(value), markup=False)
        if not result.ok:
            self.console.print("[red]Plan failed[/red]")

    def print_apply_result(self, results: ResultSet, elapsed_sec: float) -> None:
        for result in results:
            report = dict(result.value.get("report") or {})
            metrics = dict(report.get("metrics") or {})
            if metrics:
                counts = ", ".join(f"{count} {name}" for name, count in metrics.items())
                self.console.print(f"  {result.target.name}: {counts}", markup=False)
        self.print_summary(results, elapsed_sec)

    def print_puppetfile_result(self, ok: bool, puppetfile: Path, moduledir: Path) -> None:
        if ok:
            self.console.print(
                f"[green]Successfully synced modules from {escape(str(puppetfile))} to {escape(str(moduledir))}[/green]"
            )
        else:
            self.err_console.print(
                f"[red]Failed to sync modules from {escape(str(puppetfile))} to {escape(str(moduledir))}[/red]"
            )

    def fatal_error(self, error: BaseException) -> None:
        self.err_console.print(f"[red]{escape(str(error))}[/red]")
        if self.trace and error.__traceback__ is not None:
            self.err_console.print_exception()


class JsonOutputter(Outputter):
    """Collects results and prints a single JSON document on stdout."""

    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        self._items: list[dict[str, Any]] = []

    def _emit(self, payload: Any) -> None:
        sys.stdout.write(_json_text(payload) + "\n")
        sys.stdout.flush()

    def handle_event(self, event: Mapping[str, Any]) -> None:
        if event["type"] == "node_result":
            self._items.append(event["result"].to_json())

    def print_head(self) -> None:
        self._items = []

    def print_summary(self, results: ResultSet, elapsed_sec: float) -> None:
        items = self._items or results.to_json()
        self._emit({"items": items, "node_count": len(results), "elapsed_time": round(elapsed_sec)})

    def print_task_info(self, info: Mapping[str, Any]) -> None:
        self._emit(dict(info))

    def print_tasks(self, tasks: Sequence[tuple[str, str | None]], modulepath: Sequence[str]) -> None:
        self._emit({"tasks": [list(item) for item in tasks], "modulepath": list(modulepath)})

    def print_plan_info(self, info: Mapping[str, Any]) -> None:
        self._emit(dict(info))

    def print_plans(self, plans: Sequence[tuple[str, str | None]], modulepath: Sequence[str]) -> None:
        self._emit({"plans": [list(item) for item in plans], "modulepath": list(modulepath)})

    def print_module_list(self, modules: Mapping[str, Sequence[Mapping[str, Any]]]) -> None:
        self._emit({path: [dict(entry) for entry in entries] for path, entries in modules.items()})

    def print_plan_result(self, result: PlanResult) -> None:
        self._emit(result.to_json())

    def print_apply_result(self, results: ResultSet, elapsed_sec: float) -> None:
        self.print_summary(results, elapsed_sec)

    def print_puppetfile_result(self, ok: bool, puppetfile: Path, moduledir: Path) -> None:
        self._emit({"success": ok, "puppetfile": str(puppetfile), "moduledir": str(moduledir)})

    def fatal_error(self, error: BaseException) -> None:
        if isinstance(error, BoltError):
            payload = error.to_json()
        else:
            payload = {"kind": "bolt/error", "msg": str(error), "details": {}}
        self._emit({"_error": payload})


class LogOutputter:
    """Forwards executor events to the ``bolt.events`` logger."""

    def __init__(self, *, verbose: bool = False, trace: bool = False):
        self.verbose = verbose
        self.trace = trace
        self._log = logging.getLogger("bolt.events")

    def handle_event(self, event: Mapping[str, Any]) -> None:
        event_type = event["type"]
        if event_type == "node_start":
            self._log.info("node_start target=%s action=%s", event["target"].name, event["action"])
        elif event_type == "node_result":
            result: TargetResult = event["result"]
            level = logging.INFO if result.ok else logging.WARNING
            self._log.log(
                level,
                "node_result target=%s action=%s status=%s",
                result.target.name,
                result.action,
                result.status,
            )
        elif event_type == "step_start":
            self._log.info(
                "step_start plan=%s step=%s num_targets=%s",
                event["plan"],
                event["step"],
                event["num_targets"],
            )
        elif event_type == "plan_start":
            self._log.info("plan_start plan=%s", event["plan"])
        elif event_type == "plan_finish":
            self._log.info("plan_finish plan=%s status=%s", event["plan"], event["status"])
        elif event_type == "message":
            self._log.info("plan_message message=%s", event["message"])


def _indent(text: str, prefix: str = "  ") -> str:
    return "\n".join(prefix + line for line in text.splitlines())
