from __future__ import annotations

import logging
import shlex
import shutil
from pathlib import Path
from typing import Mapping

from boltpy.executors.base import CommandOutput, RunningProcesses, Transport
from boltpy.models import Target

_log = logging.getLogger("bolt.executors.ssh")

DEFAULT_CONNECT_TIMEOUT_SEC = 10


class SshTransport(Transport):
    """Runs operations through the system ``ssh`` and ``scp`` clients."""

    name = "ssh"

    def __init__(self, *, ssh_binary: str = "ssh", scp_binary: str = "scp"):
        self.ssh_binary = ssh_binary
        self.scp_binary = scp_binary
        self.processes = RunningProcesses()

    def _require(self, binary: str) -> None:
        if shutil.which(binary) is None:
            raise RuntimeError(f"{binary} is not installed or not available on PATH")

    def _common_options(self, target: Target) -> list[str]:
        options = target.options
        args = [
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={int(options.get('connect-timeout', DEFAULT_CONNECT_TIMEOUT_SEC))}",
        ]
        if options.get("host-key-check") is False:
            args += ["-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null"]
        private_key = options.get("private-key")
        if private_key:
            args += ["-i", str(Path(str(private_key)).expanduser())]
        return args

    def _destination(self, target: Target) -> str:
        host = target.host or target.name
        return f"{target.user}@{host}" if target.user else host

    def execute(
        self,
        target: Target,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        stdin: str | None = None,
    ) -> CommandOutput:
        self._require(self.ssh_binary)
        remote = command
        if env:
            assignments = " ".join(f"{key}={shlex.quote(value)}" for key, value in env.items())
            remote = f"env {assignments} sh -c {shlex.quote(command)}"
        args = [self.ssh_binary, *self._common_options(target)]
        if target.port is not None:
            args += ["-p", str(target.port)]
        args += [self._destination(target), remote]

        _log.debug("ssh_execute target=%s command=%s", target.name, command)
        completed = self.processes.run(args, stdin=stdin)
        # ssh reserves 255 for its own connection failures.
        if completed.returncode == 255:
            raise RuntimeError(
                f"Failed to connect to {target.name}: {completed.stderr.strip()}"
            )
        return CommandOutput(
            stdout=completed.stdout,
            stderr=completed.stderr,
            exit_code=completed.returncode,
        )

    def copy(self, target: Target, source: Path, destination: str) -> None:
        self._require(self.scp_binary)
        args = [self.scp_binary, "-r", *self._common_options(target)]
        if target.port is not None:
            args += ["-P", str(target.port)]
        args += [str(source), f"{self._destination(target)}:{destination}"]
        completed = self.processes.run(args)
        if completed.returncode != 0:
            raise RuntimeError(
                f"Failed to upload {source} to {target.name}:{destination}: "
                f"{completed.stderr.strip()}"
            )

    def cancel(self) -> None:
        self.processes.terminate_all()
