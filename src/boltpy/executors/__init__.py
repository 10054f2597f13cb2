from boltpy.executors.base import CommandOutput, RunningProcesses, TaskSpec, Transport
from boltpy.executors.local import LocalTransport
from boltpy.executors.ssh import SshTransport

__all__ = [
    "CommandOutput",
    "LocalTransport",
    "RunningProcesses",
    "SshTransport",
    "TaskSpec",
    "Transport",
]


def default_transports() -> dict[str, Transport]:
    return {"local": LocalTransport(), "ssh": SshTransport()}
