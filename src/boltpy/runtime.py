from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml

from boltpy.events import build_event
from boltpy.executors import TaskSpec
from boltpy.manifest import Catalog, build_apply_result, compile_manifest
from boltpy.models import (
    BoltError,
    ExecutorLike,
    InventoryLike,
    PlanResult,
    QueryStoreLike,
    ResultSet,
    RuntimeFailure,
    Target,
    TargetResult,
)

_log = logging.getLogger("bolt.runtime")

_MODULE_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*$")
_VARIABLE_RE = re.compile(r"\$\{?([a-z_][a-z0-9_]*)\}?")
_INPUT_METHODS = ("both", "environment", "stdin")
_STEP_ACTIONS = ("command", "script", "task", "upload", "message")
APPLY_PREP_PROBE = "uname -sn"


def _qualified_name(module: str, stem: str) -> str:
    return module if stem == "init" else f"{module}::{stem}"


def _unwrap_optional(type_name: str) -> tuple[str, bool]:
    text = type_name.strip()
    if text.startswith("Optional[") and text.endswith("]"):
        return text[len("Optional[") : -1].strip(), True
    return text, False


def _coerce_param(label: str, value: Any, type_name: str | None) -> Any:
    if not isinstance(value, str) or not type_name:
        return value
    inner, _ = _unwrap_optional(type_name)
    base = inner.split("[", 1)[0]
    if base in ("String", "Enum", "Pattern"):
        return value
    try:
        if base == "Integer":
            return int(value)
        if base in ("Float", "Numeric"):
            return float(value)
        if base == "Boolean":
            if value.lower() in ("true", "false"):
                return value.lower() == "true"
            raise ValueError(f"expected true or false, got '{value}'")
    except ValueError as exc:
        raise RuntimeFailure(f"Parameter '{label}' expects a {inner} value: {exc}") from exc
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        if base in ("Array", "Hash", "Tuple", "Struct"):
            raise RuntimeFailure(f"Parameter '{label}' expects a {inner} value as JSON")
        return value
    if base in ("Array", "Tuple") and not isinstance(parsed, list):
        raise RuntimeFailure(f"Parameter '{label}' expects a {inner} value")
    if base in ("Hash", "Struct") and not isinstance(parsed, dict):
        raise RuntimeFailure(f"Parameter '{label}' expects a {inner} value")
    return parsed


def _substitute(value: Any, variables: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        whole = _VARIABLE_RE.fullmatch(value)
        if whole:
            if whole.group(1) not in variables:
                raise RuntimeFailure(f"Unknown variable '${whole.group(1)}'")
            return variables[whole.group(1)]

        def _replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in variables:
                raise RuntimeFailure(f"Unknown variable '${name}'")
            item = variables[name]
            return item if isinstance(item, str) else json.dumps(item, sort_keys=True)

        return _VARIABLE_RE.sub(_replace, value)
    if isinstance(value, list):
        return [_substitute(item, variables) for item in value]
    if isinstance(value, dict):
        return {key: _substitute(item, variables) for key, item in value.items()}
    return value


def _latest_per_target(result_sets: Sequence[ResultSet]) -> ResultSet:
    latest: dict[str, TargetResult] = {}
    for result_set in result_sets:
        for result in result_set:
            latest.pop(result.target.name, None)
            latest[result.target.name] = result
    return ResultSet(tuple(latest.values()))


class ModuleRuntime:
    """Loads tasks, plans and manifests from the directories on the modulepath.

    Tasks are executables in ``<module>/tasks`` with optional ``<task>.json``
    metadata. Plans are YAML documents in ``<module>/plans`` listing steps.
    """

    def __init__(self, modulepath: Sequence[str | Path]):
        self.modulepath = [Path(item) for item in modulepath]

    def list_modulepath(self) -> list[str]:
        return [str(path) for path in self.modulepath]

    def _modules(self) -> dict[str, Path]:
        modules: dict[str, Path] = {}
        for root in self.modulepath:
            if not root.is_dir():
                continue
            for child in sorted(root.iterdir()):
                if child.is_dir() and _MODULE_NAME_RE.match(child.name):
                    modules.setdefault(child.name, child)
        return modules

    # Tasks

    def _task_files(self) -> dict[str, Path]:
        found: dict[str, Path] = {}
        for module, path in self._modules().items():
            tasks_dir = path / "tasks"
            if not tasks_dir.is_dir():
                continue
            for item in sorted(tasks_dir.iterdir()):
                if not item.is_file() or item.suffix in (".json", ".md"):
                    continue
                if not _MODULE_NAME_RE.match(item.stem):
                    continue
                found.setdefault(_qualified_name(module, item.stem), item)
        return found

    def _task_metadata(self, executable: Path) -> dict[str, Any]:
        metadata_path = executable.with_suffix(".json")
        if not metadata_path.exists():
            return {}
        try:
            data = json.loads(metadata_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise RuntimeFailure(f"Invalid task metadata {metadata_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise RuntimeFailure(f"Task metadata {metadata_path} must be a JSON object")
        return data

    def _find_task(self, name: str) -> TaskSpec:
        executable = self._task_files().get(name)
        if executable is None:
            raise RuntimeFailure(
                f"Could not find a task named \"{name}\". For a list of available "
                "tasks, run \"bolt task show\""
            )
        metadata = self._task_metadata(executable)
        input_method = str(metadata.get("input_method", "both"))
        if input_method not in _INPUT_METHODS:
            raise RuntimeFailure(f"Task {name} has invalid input_method '{input_method}'")
        return TaskSpec(
            name=name,
            executable=executable,
            input_method=input_method,
            supports_noop=bool(metadata.get("supports_noop", False)),
            metadata=metadata,
        )

    def list_tasks(self) -> list[tuple[str, str | None]]:
        out: list[tuple[str, str | None]] = []
        for name, executable in sorted(self._task_files().items()):
            description = self._task_metadata(executable).get("description")
            out.append((name, str(description) if description else None))
        return out

    def get_task_info(self, name: str) -> dict[str, Any]:
        task = self._find_task(name)
        return {
            "name": task.name,
            "description": task.metadata.get("description"),
            "parameters": dict(task.metadata.get("parameters") or {}),
            "supports_noop": task.supports_noop,
            "file": str(task.executable),
        }

    # Plans

    def _plan_files(self) -> dict[str, Path]:
        found: dict[str, Path] = {}
        for module, path in self._modules().items():
            plans_dir = path / "plans"
            if not plans_dir.is_dir():
                continue
            for item in sorted(plans_dir.iterdir()):
                if item.is_file() and item.suffix in (".yaml", ".yml") and _MODULE_NAME_RE.match(item.stem):
                    found.setdefault(_qualified_name(module, item.stem), item)
        return found

    def _load_plan(self, name: str) -> dict[str, Any]:
        path = self._plan_files().get(name)
        if path is None:
            raise RuntimeFailure(
                f"Could not find a plan named \"{name}\". For a list of available "
                "plans, run \"bolt plan show\""
            )
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
            raise RuntimeFailure(f"Could not parse plan {name} ({path}): {exc}") from exc
        if not isinstance(data, dict) or not isinstance(data.get("steps", []), list):
            raise RuntimeFailure(f"Plan {name} must be a mapping with a list of 'steps'")
        return data

    def list_plans(self) -> list[tuple[str, str | None]]:
        out: list[tuple[str, str | None]] = []
        for name in sorted(self._plan_files()):
            description = self._load_plan(name).get("description")
            out.append((name, str(description) if description else None))
        return out

    def get_plan_info(self, name: str) -> dict[str, Any]:
        plan = self._load_plan(name)
        return {
            "name": name,
            "description": plan.get("description"),
            "parameters": dict(plan.get("parameters") or {}),
            "steps": len(plan.get("steps") or []),
        }

    # Parameters

    def _schema(self, kind: str, name: str) -> dict[str, Any]:
        if kind == "task":
            metadata = self._find_task(name).metadata
        elif kind == "plan":
            metadata = self._load_plan(name)
        else:
            raise ValueError(f"Unknown parameter schema kind '{kind}'")
        schema = metadata.get("parameters") or {}
        if not isinstance(schema, dict):
            raise RuntimeFailure(f"The parameters of {kind} {name} must be a mapping")
        return {str(key): dict(value or {}) for key, value in schema.items()}

    def parse_params(self, kind: str, name: str, params: Mapping[str, Any]) -> dict[str, Any]:
        """Coerce ``key=value`` strings against the declared parameter types."""
        schema = self._schema(kind, name)
        return {
            key: _coerce_param(key, value, schema.get(key, {}).get("type"))
            for key, value in params.items()
        }

    def _check_params(self, kind: str, name: str, params: Mapping[str, Any]) -> dict[str, Any]:
        schema = self._schema(kind, name)
        label = kind.capitalize()
        checked = dict(params)
        for key in params:
            if key.startswith("_"):
                continue
            if schema and key not in schema:
                raise RuntimeFailure(f"{label} {name} does not accept parameter '{key}'")
        for key, spec in schema.items():
            if key in checked:
                continue
            if "default" in spec:
                checked[key] = spec["default"]
                continue
            _, optional = _unwrap_optional(str(spec.get("type", "Any")))
            if not optional:
                raise RuntimeFailure(f"{label} {name} requires parameter '{key}'")
        return checked

    # Execution

    def run_task(
        self,
        name: str,
        targets: Sequence[Target],
        params: Mapping[str, Any],
        executor: ExecutorLike,
        inventory: InventoryLike,
        description: str | None = None,
    ) -> ResultSet:
        task = self._find_task(name)
        if executor.noop and not task.supports_noop:
            raise RuntimeFailure(f"Task {name} does not support noop")
        arguments = self._check_params("task", name, params)
        options: dict[str, Any] = {}
        if description:
            options["_description"] = description
        return executor.run_task(targets, task, arguments, options)

    def _step_targets(
        self, step: Mapping[str, Any], variables: Mapping[str, Any], inventory: InventoryLike
    ) -> list[Target]:
        raw = _substitute(step.get("targets", "$nodes"), variables)
        if isinstance(raw, str):
            identifiers = [raw]
        elif isinstance(raw, list):
            identifiers = [str(item) for item in raw]
        else:
            raise RuntimeFailure(f"Step targets must be a string or list, got {raw!r}")
        return inventory.get_targets(identifiers)

    def _run_step(
        self,
        plan_name: str,
        step: Mapping[str, Any],
        variables: Mapping[str, Any],
        executor: ExecutorLike,
        inventory: InventoryLike,
    ) -> ResultSet | None:
        actions = [key for key in _STEP_ACTIONS if key in step]
        if len(actions) != 1:
            raise RuntimeFailure(
                f"Each step of plan {plan_name} needs exactly one of {', '.join(_STEP_ACTIONS)}"
            )
        action = actions[0]
        if action == "message":
            executor.publish_event(
                build_event("message", message=str(_substitute(step["message"], variables)))
            )
            return None

        targets = self._step_targets(step, variables, inventory)
        executor.publish_event(
            build_event("step_start", plan=plan_name, step=step.get("name", action), num_targets=len(targets))
        )
        options: dict[str, Any] = {}
        if step.get("description"):
            options["_description"] = str(_substitute(step["description"], variables))

        if action == "command":
            return executor.run_command(targets, str(_substitute(step["command"], variables)), options)
        if action == "script":
            script = self._module_file(str(step["script"]))
            arguments = [str(item) for item in _substitute(step.get("arguments") or [], variables)]
            return executor.run_script(targets, script, arguments, options)
        if action == "upload":
            source = self._module_file(str(step["upload"]))
            if not step.get("destination"):
                raise RuntimeFailure(f"Upload step in plan {plan_name} needs a 'destination'")
            return executor.upload_file(
                targets, source, str(_substitute(step["destination"], variables)), options
            )
        task_name = str(step["task"])
        params = _substitute(dict(step.get("parameters") or {}), variables)
        task = self._find_task(task_name)
        return executor.run_task(targets, task, self._check_params("task", task_name, params), options)

    def _module_file(self, reference: str) -> Path:
        """Resolve ``module/path/in/files`` to a file shipped by a module."""
        module, _, rest = reference.partition("/")
        module_path = self._modules().get(module)
        if module_path is None or not rest:
            raise RuntimeFailure(f"Could not find module file '{reference}'")
        path = module_path / "files" / rest
        if not path.exists():
            raise RuntimeFailure(f"Could not find module file '{reference}' at {path}")
        return path

    def run_plan(
        self,
        name: str,
        params: Mapping[str, Any],
        executor: ExecutorLike,
        inventory: InventoryLike,
        query_store: QueryStoreLike | None = None,
    ) -> PlanResult:
        plan = self._load_plan(name)
        noop = bool(params.get("_noop", False))
        variables: dict[str, Any] = self._check_params(
            "plan", name, {key: value for key, value in params.items() if key != "_noop"}
        )
        result_sets: list[ResultSet] = []

        for index, step in enumerate(plan.get("steps") or [], 1):
            if not isinstance(step, dict):
                raise RuntimeFailure(f"Step {index} of plan {name} must be a mapping")
            step_name = str(step.get("name", f"step_{index}"))
            if noop and "message" not in step:
                _log.info("plan_step_skipped plan=%s step=%s reason=noop", name, step_name)
                continue
            try:
                result_set = self._run_step(name, step, variables, executor, inventory)
            except BoltError as exc:
                _log.error("plan_step_error plan=%s step=%s error=%s", name, step_name, exc)
                return PlanResult(
                    value=exc.to_json(),
                    status="failure",
                    result_set=_latest_per_target(result_sets) if result_sets else None,
                )
            if result_set is None:
                continue
            result_sets.append(result_set)
            variables[step_name] = result_set.to_json()
            if not result_set.ok and not step.get("catch_errors", False):
                failed = result_set.error_set
                return PlanResult(
                    value={
                        "kind": "bolt/run-failure",
                        "msg": f"Plan aborted: step '{step_name}' failed on {len(failed)} nodes",
                        "details": {"step": step_name, "result_set": result_set.to_json()},
                    },
                    status="failure",
                    result_set=_latest_per_target(result_sets),
                )

        value = _substitute(plan["return"], variables) if "return" in plan else None
        return PlanResult(
            value=value,
            status="success",
            result_set=_latest_per_target(result_sets) if result_sets else None,
        )

    # Apply

    def parse_manifest(self, code: str, filename: str | None = None) -> Catalog:
        return compile_manifest(code, filename)

    def apply_prep(self, targets: Sequence[Target], executor: ExecutorLike) -> ResultSet:
        return executor.run_command(targets, APPLY_PREP_PROBE, {"_description": "apply_prep"})

    def apply(
        self,
        catalog: Catalog,
        targets: Sequence[Target],
        executor: ExecutorLike,
        *,
        noop: bool = False,
        catch_errors: bool = True,
    ) -> ResultSet:
        script = catalog.script(noop=noop)
        batch_execute = getattr(executor, "batch_execute", None)
        if batch_execute is None:
            raise RuntimeFailure("The executor does not support applying manifests")
        results: ResultSet = batch_execute(
            targets,
            action="apply",
            obj=catalog.filename,
            operation=lambda transport, target: build_apply_result(
                target, transport.execute(target, script), noop=noop
            ),
        )
        if not catch_errors and not results.ok:
            raise RuntimeFailure(
                f"Apply failed on {len(results.error_set)} nodes",
                details={"result_set": results.to_json()},
            )
        return results

    # Modules

    def list_modules(self) -> dict[str, list[dict[str, Any]]]:
        out: dict[str, list[dict[str, Any]]] = {}
        for root in self.modulepath:
            entries: list[dict[str, Any]] = []
            if root.is_dir():
                for child in sorted(root.iterdir()):
                    if not child.is_dir() or not _MODULE_NAME_RE.match(child.name):
                        continue
                    version: str | None = None
                    metadata_path = child / "metadata.json"
                    if metadata_path.exists():
                        try:
                            version = json.loads(metadata_path.read_text(encoding="utf-8")).get("version")
                        except (OSError, ValueError, AttributeError):
                            _log.warning("Ignoring invalid module metadata %s", metadata_path)
                    entries.append({"name": child.name, "version": version, "path": str(child)})
            out[str(root)] = entries
        return out
