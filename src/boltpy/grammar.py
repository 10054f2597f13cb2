from __future__ import annotations

import argparse
from typing import NoReturn, Sequence

from boltpy.models import Action, Subcommand, UsageError

COMMANDS: dict[Subcommand, tuple[Action, ...]] = {
    Subcommand.COMMAND: (Action.RUN,),
    Subcommand.SCRIPT: (Action.RUN,),
    Subcommand.TASK: (Action.SHOW, Action.RUN),
    Subcommand.PLAN: (Action.SHOW, Action.RUN),
    Subcommand.FILE: (Action.UPLOAD,),
    Subcommand.PUPPETFILE: (Action.INSTALL, Action.SHOW_MODULES),
    Subcommand.APPLY: (),
}

RERUN_FILTERS = ("all", "failure", "success")
OUTPUT_FORMATS = ("human", "json")

_GLOBAL_OPTIONS = """
Targeting:
  -n, --nodes NODES          Identifies the nodes to target (comma separated,
                             @file to read a file, - to read stdin)
  -t, --targets TARGETS      Identifies the targets to target
  -q, --query QUERY          Query the inventory store to determine the targets
  --rerun FILTER             Retry on nodes from the last run
                             ('all', 'failure', 'success')

Options:
  --description DESC         Description to use for the job
  --params PARAMS            Parameters to a task or plan as json, a json
                             file '@<file>', or on stdin '-'
  --noop                     Execute a task that supports it in noop mode
  -e, --execute CODE         Manifest code to apply to the targets
  --boltdir DIR              Specify what Boltdir to load config from
  --configfile PATH          Specify where to load config from
  -i, --inventoryfile PATH   Specify where to load inventory from
  --modulepath PATHS         List of directories containing modules,
                             separated by ':'
  -c, --concurrency N        Maximum number of simultaneous connections
  --format FORMAT            Output format to use: human or json
  --[no-]color               Whether to show output in color
  --[no-]save-rerun          Whether to update the rerun file after this run
  -v, --verbose              Display verbose logging
  --debug                    Display debug logging
  --trace                    Display error stack traces
  -h, --help                 Display help
  --version                  Display the version
"""

_BANNER = """Usage: bolt <subcommand> <action>

Available subcommands:
  bolt command run <command>       Run a command remotely
  bolt file upload <src> <dest>    Upload a local file or directory
  bolt script run <script>         Upload a local script and run it remotely
  bolt task show                   Show list of available tasks
  bolt task show <task>            Show documentation for task
  bolt task run <task> [params]    Run a task on the targets
  bolt plan show                   Show list of available plans
  bolt plan show <plan>            Show details for plan
  bolt plan run <plan> [params]    Run a plan
  bolt puppetfile install          Install modules from a Puppetfile
  bolt puppetfile show-modules     List modules available to Bolt
  bolt apply <manifest>            Apply a manifest file to the targets
"""

_SUBCOMMAND_BANNERS: dict[Subcommand, str] = {
    Subcommand.COMMAND: """Usage: bolt command run <command> [options]

Run a command on the targets.
""",
    Subcommand.SCRIPT: """Usage: bolt script run <script> [[arg1] ... [argN]] [options]

Upload a local script and run it on the targets. Arguments following the
script are passed to it.
""",
    Subcommand.TASK: """Usage: bolt task <action> <task> [parameters] [options]

Available actions are:
  show                             Show list of available tasks
  show <task>                      Show documentation for task
  run                              Run a task on the targets

Parameters are of the form <parameter>=<value>.
""",
    Subcommand.PLAN: """Usage: bolt plan <action> <plan> [parameters] [options]

Available actions are:
  show                             Show list of available plans
  show <plan>                      Show details for plan
  run                              Run a plan

Parameters are of the form <parameter>=<value>.
""",
    Subcommand.FILE: """Usage: bolt file <action> [options]

Available actions are:
  upload <src> <dest>              Upload local file or directory <src> to <dest>
""",
    Subcommand.PUPPETFILE: """Usage: bolt puppetfile <action> [options]

Available actions are:
  install                          Install modules from a Puppetfile into a Boltdir
  show-modules                     List modules available to Bolt

Install modules into the local Boltdir.
""",
    Subcommand.APPLY: """Usage: bolt apply <manifest.yaml> [options]

Apply the resources in a manifest file (or --execute code) to the targets.
""",
}


def coerce_subcommand(value: str | None) -> Subcommand | None:
    if value is None:
        return None
    try:
        return Subcommand(value)
    except ValueError:
        return None


def coerce_action(value: str | None) -> Action | None:
    if value is None:
        return None
    try:
        return Action(value)
    except ValueError:
        return None


def help_text(subcommand: str | Subcommand | None) -> str:
    """Return usage text for a subcommand, or the general banner."""
    resolved = subcommand if isinstance(subcommand, Subcommand) else coerce_subcommand(subcommand)
    banner = _SUBCOMMAND_BANNERS.get(resolved, _BANNER) if resolved else _BANNER
    return banner + _GLOBAL_OPTIONS


class BoltArgumentParser(argparse.ArgumentParser):
    """Argument parser that raises instead of exiting the process."""

    def error(self, message: str) -> NoReturn:
        raise UsageError(_translate_parser_error(message))


def _translate_parser_error(message: str) -> str:
    if message.startswith("unrecognized arguments:"):
        unknown = message.split(":", 1)[1].strip().split()
        return f"Unknown argument '{unknown[0] if unknown else ''}'"
    if "expected one argument" in message:
        option = message.split(":", 1)[0].replace("argument", "").strip()
        option = option.split("/")[-1]
        return f"Option '{option}' needs a parameter"
    if "invalid choice" in message or "invalid int value" in message:
        option = message.split(":", 1)[0].replace("argument", "").strip()
        option = option.split("/")[-1]
        detail = message.split(":", 1)[1].strip() if ":" in message else message
        return f"Invalid parameter specified for option '{option}': {detail}"
    return message


def build_parser() -> BoltArgumentParser:
    parser = BoltArgumentParser(prog="bolt", add_help=False, allow_abbrev=False)
    parser.add_argument("positionals", nargs="*")

    targeting = parser.add_argument_group("targeting")
    targeting.add_argument("-n", "--nodes", action="append", default=None)
    targeting.add_argument("-t", "--targets", action="append", default=None)
    targeting.add_argument("-q", "--query", default=None)
    targeting.add_argument("--rerun", choices=RERUN_FILTERS, default=None)

    run_opts = parser.add_argument_group("run")
    run_opts.add_argument("--description", default=None)
    run_opts.add_argument("--params", default=None)
    run_opts.add_argument("--noop", action="store_true")
    run_opts.add_argument("-e", "--execute", dest="code", default=None)

    config = parser.add_argument_group("config")
    config.add_argument("--boltdir", default=None)
    config.add_argument("--configfile", default=None)
    config.add_argument("-i", "--inventoryfile", default=None)
    config.add_argument("--modulepath", default=None)
    config.add_argument("-c", "--concurrency", type=int, default=None)
    config.add_argument(
        "--save-rerun",
        dest="save_rerun",
        action=argparse.BooleanOptionalAction,
        default=None,
    )

    display = parser.add_argument_group("display")
    display.add_argument("--format", choices=OUTPUT_FORMATS, default=None)
    display.add_argument("--color", action=argparse.BooleanOptionalAction, default=None)
    display.add_argument("-v", "--verbose", action="store_true")
    display.add_argument("--debug", action="store_true")
    display.add_argument("--trace", action="store_true")
    display.add_argument("-h", "--help", dest="help", action="store_true")
    display.add_argument("--version", action="store_true")
    return parser


def parse_raw_options(argv: Sequence[str]) -> argparse.Namespace:
    """Parse an argument vector into the raw option namespace."""
    parser = build_parser()
    return parser.parse_intermixed_args(list(argv))
