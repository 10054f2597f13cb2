"""Command-line orchestration for running commands, tasks and plans on remote nodes."""

from boltpy.cli import BoltCLI, main
from boltpy.request import parse_request

__all__ = ["BoltCLI", "main", "parse_request"]
