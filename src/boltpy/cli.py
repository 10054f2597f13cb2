from __future__ import annotations

import logging
import sys
import time
from typing import Sequence

from boltpy._logging import configure_logging, setup_logging
from boltpy.aggregator import aggregate
from boltpy.config import Config, load_config
from boltpy.dispatcher import ContextFactory, Dispatcher, RunContext, build_context
from boltpy.models import BoltError, ExecutionRequest, HelpRequested
from boltpy.request import parse_request
from boltpy.targeting import resolve_targets

_cli_log = logging.getLogger("bolt.cli")


class BoltCLI:
    def __init__(self, argv: Sequence[str], context_factory: ContextFactory = build_context):
        self.argv = list(argv)
        self.context_factory = context_factory
        self.config: Config | None = None
        self.context: RunContext | None = None

    def parse(self) -> ExecutionRequest:
        """Turn argv into a validated request with its targets resolved.

        Raises ``HelpRequested`` when usage text should be printed. User-facing
        errors are reported here and re-raised.
        """
        try:
            request = parse_request(self.argv)
            self.config = load_config(request)
            configure_logging(self.config.log, verbose=request.verbose, debug=request.debug)
            self.context = self.context_factory(request, self.config)
            resolve_targets(
                request,
                inventory=self.context.inventory,
                rerun=self.context.rerun,
                query_store=self.context.query_store,
            )
        except BoltError as exc:
            if self.context is not None:
                self.context.outputter.fatal_error(exc)
            else:
                print(f"Error: {exc}", file=sys.stderr)
            raise
        return request

    def execute(self, request: ExecutionRequest) -> int:
        if self.context is None:
            raise RuntimeError("BoltCLI.parse() must run before execute()")
        try:
            outcome = Dispatcher(self.context).execute(request)
        finally:
            close = getattr(self.context.query_store, "close", None)
            if close is not None:
                close()
        result = aggregate(outcome)
        _cli_log.info("cli_outcome exit_code=%s summary=%s", result.exit_code, result.summary)
        return result.exit_code


def main(
    argv: Sequence[str] | None = None, *, context_factory: ContextFactory | None = None
) -> int:
    setup_logging()
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    command = raw_argv[0] if raw_argv else "help"
    argv_text = " ".join(raw_argv)
    started = time.perf_counter()
    _cli_log.info("cli_command_start command=%s argv=%s", command, argv_text)

    exit_code = 1
    try:
        cli = BoltCLI(raw_argv, context_factory=context_factory or build_context)
        exit_code = cli.execute(cli.parse())
    except HelpRequested as exc:
        print(exc.text)
        exit_code = 0
    except BoltError as exc:
        _cli_log.error("cli_command_error command=%s kind=%s error=%s", command, exc.kind, exc)
        exit_code = 1
    except KeyboardInterrupt:
        _cli_log.error("cli_command_error command=%s kind=interrupted", command)
        exit_code = 130
    except (RuntimeError, OSError, ValueError) as exc:
        _cli_log.error(
            "cli_command_error command=%s kind=%s error=%s",
            command,
            type(exc).__name__,
            exc,
        )
        print(f"Error: {type(exc).__name__}: {exc}", file=sys.stderr)
        exit_code = 1
    finally:
        duration_sec = time.perf_counter() - started
        _cli_log.info(
            "cli_command_end command=%s exit_code=%s duration_sec=%.3f",
            command,
            exit_code,
            duration_sec,
        )

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
