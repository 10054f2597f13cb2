from __future__ import annotations

import io

from rich.console import Console

from boltpy.events import build_event
from boltpy.models import ResultSet, Target, TargetResult
from boltpy.outputter import HumanOutputter


def _outputter() -> tuple[HumanOutputter, io.StringIO, io.StringIO]:
    out, err = io.StringIO(), io.StringIO()
    outputter = HumanOutputter(
        color=False,
        console=Console(file=out, width=200, highlight=False, no_color=True),
        err_console=Console(file=err, width=200, highlight=False, no_color=True),
    )
    return outputter, out, err


def test_bracketed_target_names_are_printed_verbatim() -> None:
    outputter, out, _ = _outputter()
    ok = Target(name="web[1]", uri="web[1]")
    bad = Target(name="[bold]db", uri="[bold]db")
    outputter.handle_event(build_event("node_start", target=ok, action="command"))
    ok_result = TargetResult(ok, "success", {"stdout": "up\n", "exit_code": 0})
    bad_result = TargetResult.from_error(bad, "boom [red]")
    outputter.handle_event(build_event("node_result", target=ok, result=ok_result))
    outputter.handle_event(build_event("node_result", target=bad, result=bad_result))
    outputter.print_summary(ResultSet((ok_result, bad_result)), 1.5)

    text = out.getvalue()
    assert "Started on web[1]..." in text
    assert "Finished on web[1]:" in text
    assert "Failed on [bold]db:" in text
    assert "boom [red]" in text
    assert "Successful on 1 node: web[1]" in text
    assert "Failed on 1 node: [bold]db" in text
    assert "Ran on 2 nodes in 1.50 sec" in text


def test_plan_and_listing_names_are_not_markup() -> None:
    outputter, out, err = _outputter()
    outputter.handle_event(build_event("plan_start", plan="site::[x]"))
    outputter.handle_event(build_event("step_start", plan="site::[x]", step="[b]install", num_targets=2))
    outputter.print_tasks([("pkg::[i]", "Install [things]")], ["/opt/modules"])
    outputter.fatal_error(RuntimeError("bad [value]"))

    text = out.getvalue()
    assert "Starting: plan site::[x]" in text
    assert "Starting: [b]install on 2 nodes" in text
    assert "pkg::[i]" in text
    assert "Install [things]" in text
    assert "bad [value]" in err.getvalue()
