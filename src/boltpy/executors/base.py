from __future__ import annotations

import json
import logging
import os
import shlex
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

from boltpy.models import Target, TargetResult

_log = logging.getLogger("bolt.executors")


@dataclass(frozen=True)
class CommandOutput:
    stdout: str
    stderr: str
    exit_code: int


class RunningProcesses:
    """Tracks the child processes a transport has in flight.

    Children run in their own session so ``terminate_all`` can signal the
    whole process tree. Once terminated, no further child is started.
    """

    def __init__(self, *, grace_sec: float = 0.5):
        self.grace_sec = grace_sec
        self._lock = threading.Lock()
        self._running: set[subprocess.Popen[str]] = set()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def run(
        self,
        args: Sequence[str],
        *,
        stdin: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        with self._lock:
            if self._cancelled:
                raise RuntimeError("Run was cancelled before the process started")
            process = subprocess.Popen(
                list(args),
                stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=dict(env) if env is not None else None,
                start_new_session=True,
            )
            self._running.add(process)
        try:
            try:
                stdout, stderr = process.communicate(stdin, timeout=timeout)
            except subprocess.TimeoutExpired:
                self._stop(process)
                process.communicate()
                raise
        finally:
            with self._lock:
                self._running.discard(process)
        return subprocess.CompletedProcess(list(args), process.returncode, stdout, stderr)

    def terminate_all(self) -> None:
        with self._lock:
            self._cancelled = True
            running = list(self._running)
        for process in running:
            _log.debug("process_terminate pid=%s", process.pid)
            self._stop(process)

    def _stop(self, process: subprocess.Popen[str]) -> None:
        if process.poll() is not None:
            return
        _signal_process_tree(process, signal.SIGTERM)
        try:
            process.wait(timeout=self.grace_sec)
            return
        except subprocess.TimeoutExpired:
            pass
        _signal_process_tree(process, signal.SIGKILL)
        try:
            process.wait(timeout=self.grace_sec)
        except subprocess.TimeoutExpired:
            pass


def _signal_process_tree(process: subprocess.Popen[str], signum: int) -> None:
    if process.poll() is not None:
        return
    if os.name == "posix":
        try:
            pgid = os.getpgid(process.pid)
            if pgid != os.getpgrp():
                os.killpg(pgid, signum)
                return
        except ProcessLookupError:
            return
        except OSError:
            pass
    try:
        process.send_signal(signum)
    except ProcessLookupError:
        return


@dataclass(frozen=True)
class TaskSpec:
    name: str
    executable: Path
    input_method: str = "both"
    supports_noop: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)


def _env_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


def _output_value(output: CommandOutput) -> dict[str, Any]:
    return {
        "stdout": output.stdout,
        "stderr": output.stderr,
        "exit_code": output.exit_code,
    }


def _failure_value(value: dict[str, Any], *, kind: str, message: str) -> dict[str, Any]:
    out = dict(value)
    out["_error"] = {"kind": kind, "msg": message, "details": {"exit_code": value.get("exit_code")}}
    return out


class Transport:
    """Runs operations on one target at a time.

    Subclasses provide ``execute`` and ``copy``; scripts and tasks are built on
    top of those two primitives.
    """

    name = "base"

    def execute(
        self,
        target: Target,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        stdin: str | None = None,
    ) -> CommandOutput:
        raise NotImplementedError

    def copy(self, target: Target, source: Path, destination: str) -> None:
        raise NotImplementedError

    def cancel(self) -> None:
        """Stop work in flight; transports without child processes have none."""

    def _make_tempdir(self, target: Target) -> str:
        output = self.execute(target, "mktemp -d")
        if output.exit_code != 0 or not output.stdout.strip():
            raise RuntimeError(
                f"Could not create a temporary directory on {target.name}: "
                f"{output.stderr.strip()}"
            )
        return output.stdout.strip()

    def _remove_tempdir(self, target: Target, tmpdir: str) -> None:
        output = self.execute(target, f"rm -rf {shlex.quote(tmpdir)}")
        if output.exit_code != 0:
            _log.warning("Could not clean up %s on %s: %s", tmpdir, target.name, output.stderr)

    def run_command(self, target: Target, command: str) -> TargetResult:
        output = self.execute(target, command)
        value = _output_value(output)
        if output.exit_code != 0:
            return TargetResult(
                target=target,
                status="failure",
                value=_failure_value(
                    value,
                    kind="puppetlabs.tasks/command-error",
                    message=f"The command failed with exit code {output.exit_code}",
                ),
                action="command",
                object=command,
            )
        return TargetResult(target=target, status="success", value=value, action="command", object=command)

    def upload(self, target: Target, source: Path, destination: str) -> TargetResult:
        self.copy(target, source, destination)
        return TargetResult(
            target=target,
            status="success",
            value={"_output": f"Uploaded '{source}' to '{target.name}:{destination}'"},
            action="upload",
            object=str(source),
        )

    def run_script(self, target: Target, script: Path, arguments: Sequence[str]) -> TargetResult:
        tmpdir = self._make_tempdir(target)
        try:
            remote_path = f"{tmpdir}/{script.name}"
            self.copy(target, script, remote_path)
            command = " ".join(
                [f"chmod u+x {shlex.quote(remote_path)} &&", shlex.quote(remote_path)]
                + [shlex.quote(arg) for arg in arguments]
            )
            output = self.execute(target, command)
        finally:
            self._remove_tempdir(target, tmpdir)
        value = _output_value(output)
        if output.exit_code != 0:
            return TargetResult(
                target=target,
                status="failure",
                value=_failure_value(
                    value,
                    kind="puppetlabs.tasks/command-error",
                    message=f"The command failed with exit code {output.exit_code}",
                ),
                action="script",
                object=str(script),
            )
        return TargetResult(target=target, status="success", value=value, action="script", object=str(script))

    def run_task(self, target: Target, task: TaskSpec, arguments: Mapping[str, Any]) -> TargetResult:
        env: dict[str, str] = {}
        stdin: str | None = None
        if task.input_method in ("environment", "both"):
            env = {f"PT_{key}": _env_value(value) for key, value in arguments.items()}
        if task.input_method in ("stdin", "both"):
            stdin = json.dumps(dict(arguments), sort_keys=True)

        tmpdir = self._make_tempdir(target)
        try:
            remote_path = f"{tmpdir}/{task.executable.name}"
            self.copy(target, task.executable, remote_path)
            output = self.execute(
                target,
                f"chmod u+x {shlex.quote(remote_path)} && {shlex.quote(remote_path)}",
                env=env,
                stdin=stdin,
            )
        finally:
            self._remove_tempdir(target, tmpdir)

        value: dict[str, Any]
        try:
            parsed = json.loads(output.stdout) if output.stdout.strip() else None
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            value = parsed
        else:
            value = {"_output": output.stdout}

        if output.exit_code != 0 and "_error" not in value:
            value["_error"] = {
                "kind": "puppetlabs.tasks/task-error",
                "msg": f"The task failed with exit code {output.exit_code}",
                "details": {"exit_code": output.exit_code},
            }
        status = "failure" if output.exit_code != 0 or "_error" in value else "success"
        return TargetResult(target=target, status=status, value=value, action="task", object=task.name)
