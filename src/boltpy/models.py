from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Mapping, Protocol, Sequence


class BoltError(RuntimeError):
    """Base error for user-facing failures."""

    kind = "bolt/error"

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None):
        super().__init__(message)
        self.details = dict(details or {})

    def to_json(self) -> dict[str, Any]:
        return {"kind": self.kind, "msg": str(self), "details": self.details}


class UsageError(BoltError):
    """Raised when the command line is malformed."""

    kind = "bolt/cli-error"


class TargetingError(UsageError):
    """Raised when the targeting options are missing or ambiguous."""


class ParamsConflictError(UsageError):
    """Raised when parameters come from both --params and key=value pairs."""


class ConfigError(BoltError):
    kind = "bolt/config-error"


class FileError(BoltError):
    kind = "bolt/file-error"

    def __init__(self, message: str, path: str | Path | None):
        super().__init__(message, details={"path": None if path is None else str(path)})
        self.path = path


class RuntimeFailure(BoltError):
    """Raised when a task, plan or manifest cannot be loaded or run."""

    kind = "bolt/runtime-error"


class QueryError(BoltError):
    kind = "bolt/query-error"


class InstallError(BoltError):
    kind = "bolt/puppetfile-error"


class HelpRequested(Exception):
    """Signals that usage text was printed and the process should exit cleanly."""

    def __init__(self, text: str):
        super().__init__("help requested")
        self.text = text


class Subcommand(str, Enum):
    COMMAND = "command"
    SCRIPT = "script"
    TASK = "task"
    PLAN = "plan"
    FILE = "file"
    PUPPETFILE = "puppetfile"
    APPLY = "apply"


class Action(str, Enum):
    RUN = "run"
    SHOW = "show"
    UPLOAD = "upload"
    INSTALL = "install"
    SHOW_MODULES = "show-modules"


class TargetingKind(str, Enum):
    NODES = "nodes"
    TARGETS = "targets"
    QUERY = "query"
    RERUN = "rerun"


@dataclass(frozen=True)
class TargetingSource:
    kind: TargetingKind
    value: tuple[str, ...] | str

    @property
    def flag(self) -> str:
        return f"--{self.kind.value}"


@dataclass
class ExecutionRequest:
    subcommand: Subcommand
    action: Action | None = None
    action_name: str | None = None
    object: str | None = None
    task_options: dict[str, Any] = field(default_factory=dict)
    params_parsed: bool = False
    param_pairs: list[str] = field(default_factory=list)
    leftovers: list[str] = field(default_factory=list)
    targeting_sources: tuple[TargetingSource, ...] = ()
    target_args: list[str] = field(default_factory=list)
    targets: list["Target"] = field(default_factory=list)
    noop: bool = False
    description: str | None = None
    code: str | None = None
    boltdir: str | None = None
    configfile: str | None = None
    inventoryfile: str | None = None
    modulepath: list[str] | None = None
    concurrency: int | None = None
    save_rerun: bool | None = None
    format: str | None = None
    color: bool | None = None
    verbose: bool = False
    debug: bool = False
    trace: bool = False

    @property
    def targeting(self) -> TargetingSource | None:
        if len(self.targeting_sources) == 1:
            return self.targeting_sources[0]
        return None

    @property
    def screen(self) -> str:
        action = self.action.value if self.action is not None else ""
        screen = f"{self.subcommand.value}_{action}"
        if self.action is Action.SHOW and self.object:
            screen += "_object"
        return screen


@dataclass(frozen=True)
class Target:
    name: str
    uri: str
    transport: str = "ssh"
    host: str | None = None
    port: int | None = None
    user: str | None = None
    options: Mapping[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "uri": self.uri,
            "transport": self.transport,
            "host": self.host,
            "port": self.port,
            "user": self.user,
        }


@dataclass(frozen=True)
class TargetResult:
    target: Target
    status: str
    value: Mapping[str, Any] = field(default_factory=dict)
    action: str = "command"
    object: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @property
    def error(self) -> Mapping[str, Any] | None:
        error = self.value.get("_error")
        return error if isinstance(error, Mapping) else None

    def to_json(self) -> dict[str, Any]:
        return {
            "node": self.target.name,
            "target": self.target.name,
            "action": self.action,
            "object": self.object,
            "status": self.status,
            "result": dict(self.value),
        }

    @classmethod
    def from_error(
        cls,
        target: Target,
        message: str,
        *,
        kind: str = "bolt/run-error",
        action: str = "command",
        object: str | None = None,
    ) -> "TargetResult":
        return cls(
            target=target,
            status="failure",
            value={"_error": {"kind": kind, "msg": message, "details": {}}},
            action=action,
            object=object,
        )


@dataclass(frozen=True)
class ResultSet:
    results: tuple[TargetResult, ...] = ()

    def __iter__(self) -> Iterator[TargetResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)

    @property
    def ok_set(self) -> "ResultSet":
        return ResultSet(tuple(result for result in self.results if result.ok))

    @property
    def error_set(self) -> "ResultSet":
        return ResultSet(tuple(result for result in self.results if not result.ok))

    @property
    def names(self) -> list[str]:
        return [result.target.name for result in self.results]

    def to_json(self) -> list[dict[str, Any]]:
        return [result.to_json() for result in self.results]


@dataclass(frozen=True)
class PlanResult:
    value: Any
    status: str
    result_set: ResultSet | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_json(self) -> Any:
        value = self.value
        if isinstance(value, (ResultSet, TargetResult)):
            return value.to_json()
        return value


@dataclass(frozen=True)
class InfoOutcome:
    ok: bool = True


@dataclass(frozen=True)
class AdhocOutcome:
    results: ResultSet
    elapsed_sec: float

    @property
    def ok(self) -> bool:
        return self.results.ok


@dataclass(frozen=True)
class PlanOutcome:
    result: PlanResult

    @property
    def ok(self) -> bool:
        return self.result.ok


@dataclass(frozen=True)
class ApplyOutcome:
    results: ResultSet
    elapsed_sec: float

    @property
    def ok(self) -> bool:
        return self.results.ok


@dataclass(frozen=True)
class InstallOutcome:
    ok: bool
    puppetfile: Path
    moduledir: Path


ExecutionOutcome = InfoOutcome | AdhocOutcome | PlanOutcome | ApplyOutcome | InstallOutcome


class EventObserver(Protocol):
    def handle_event(self, event: Mapping[str, Any]) -> None: ...


class ExecutorLike(Protocol):
    noop: bool

    def subscribe(self, observer: EventObserver) -> None: ...

    def publish_event(self, event: Mapping[str, Any]) -> None: ...

    def run_command(
        self, targets: Sequence[Target], command: str, options: Mapping[str, Any]
    ) -> ResultSet: ...

    def run_script(
        self,
        targets: Sequence[Target],
        script: Path,
        arguments: Sequence[str],
        options: Mapping[str, Any],
    ) -> ResultSet: ...

    def upload_file(
        self,
        targets: Sequence[Target],
        source: Path,
        destination: str,
        options: Mapping[str, Any],
    ) -> ResultSet: ...

    def run_task(
        self,
        targets: Sequence[Target],
        task: Any,
        arguments: Mapping[str, Any],
        options: Mapping[str, Any],
    ) -> ResultSet: ...

    def collected_results(self) -> ResultSet: ...

    def shutdown(self) -> None: ...


class InventoryLike(Protocol):
    def get_targets(self, identifiers: Sequence[str]) -> list[Target]: ...

    def node_names(self) -> set[str]: ...

    def group_names(self) -> set[str]: ...


class RerunStoreLike(Protocol):
    def get_targets(self, filter: str) -> list[str]: ...

    def update(self, result: ResultSet | PlanResult | None) -> None: ...


class QueryStoreLike(Protocol):
    def query_certnames(self, query: str) -> list[str]: ...


class InstallerLike(Protocol):
    def install(self, puppetfile: Path, moduledir: Path) -> bool: ...


class RuntimeLike(Protocol):
    def parse_params(
        self, kind: str, name: str, params: Mapping[str, Any]
    ) -> dict[str, Any]: ...

    def run_task(
        self,
        name: str,
        targets: Sequence[Target],
        params: Mapping[str, Any],
        executor: ExecutorLike,
        inventory: InventoryLike,
        description: str | None = None,
    ) -> ResultSet: ...

    def run_plan(
        self,
        name: str,
        params: Mapping[str, Any],
        executor: ExecutorLike,
        inventory: InventoryLike,
        query_store: QueryStoreLike | None = None,
    ) -> PlanResult: ...

    def parse_manifest(self, code: str, filename: str | None = None) -> Any: ...

    def apply_prep(self, targets: Sequence[Target], executor: ExecutorLike) -> ResultSet: ...

    def apply(
        self,
        catalog: Any,
        targets: Sequence[Target],
        executor: ExecutorLike,
        *,
        noop: bool = False,
        catch_errors: bool = True,
    ) -> ResultSet: ...

    def get_task_info(self, name: str) -> dict[str, Any]: ...

    def list_tasks(self) -> list[tuple[str, str | None]]: ...

    def get_plan_info(self, name: str) -> dict[str, Any]: ...

    def list_plans(self) -> list[tuple[str, str | None]]: ...

    def list_modules(self) -> dict[str, list[dict[str, Any]]]: ...

    def list_modulepath(self) -> list[str]: ...
