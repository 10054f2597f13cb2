from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Mapping

from boltpy.executors.base import CommandOutput, RunningProcesses, Transport
from boltpy.models import Target

_log = logging.getLogger("bolt.executors.local")


class LocalTransport(Transport):
    name = "local"

    def __init__(self, *, command_timeout_sec: float | None = None, shell: str = "bash"):
        if command_timeout_sec is not None and command_timeout_sec <= 0:
            raise ValueError("command_timeout_sec must be > 0 when provided")
        self.command_timeout_sec = command_timeout_sec
        self.shell = shell
        self.processes = RunningProcesses()

    def execute(
        self,
        target: Target,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        stdin: str | None = None,
    ) -> CommandOutput:
        child_env = os.environ.copy()
        child_env.update(env or {})
        timeout = target.options.get("command-timeout", self.command_timeout_sec)
        _log.debug("local_execute target=%s command=%s", target.name, command)
        try:
            completed = self.processes.run(
                [self.shell, "-lc", command], stdin=stdin, env=child_env, timeout=timeout
            )
        except subprocess.TimeoutExpired as exc:
            raise RuntimeError(
                f"Command timed out after {timeout} sec on {target.name}: {command}"
            ) from exc
        return CommandOutput(
            stdout=completed.stdout,
            stderr=completed.stderr,
            exit_code=completed.returncode,
        )

    def copy(self, target: Target, source: Path, destination: str) -> None:
        dest = Path(destination).expanduser()
        dest.parent.mkdir(parents=True, exist_ok=True)
        if source.is_dir():
            shutil.copytree(source, dest, dirs_exist_ok=True)
        else:
            shutil.copy2(source, dest)

    def cancel(self) -> None:
        self.processes.terminate_all()
