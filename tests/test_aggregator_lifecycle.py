from __future__ import annotations

import logging
import signal
import threading
from pathlib import Path

import pytest

from boltpy.aggregator import EXIT_ERROR, EXIT_OK, EXIT_TARGET_FAILURE, aggregate
from boltpy.lifecycle import INTERRUPT_MESSAGE, InterruptGuard
from boltpy.models import (
    AdhocOutcome,
    ApplyOutcome,
    InfoOutcome,
    InstallOutcome,
    PlanOutcome,
    PlanResult,
    ResultSet,
    Target,
    TargetResult,
)


def _results(*statuses: str) -> ResultSet:
    return ResultSet(
        tuple(
            TargetResult(Target(name=f"n{index}", uri=f"n{index}"), status)
            for index, status in enumerate(statuses)
        )
    )


def test_adhoc_failures_exit_with_target_failure_code() -> None:
    assert aggregate(AdhocOutcome(_results("success", "success"), 0.1)).exit_code == EXIT_OK
    failed = aggregate(AdhocOutcome(_results("success", "failure"), 0.1))
    assert failed.exit_code == EXIT_TARGET_FAILURE
    assert failed.summary == "failed on 1 of 2 targets"


def test_plan_apply_and_install_failures_exit_one() -> None:
    assert aggregate(PlanOutcome(PlanResult(value=None, status="failure"))).exit_code == EXIT_ERROR
    assert aggregate(PlanOutcome(PlanResult(value=1, status="success"))).exit_code == EXIT_OK
    assert aggregate(ApplyOutcome(_results("failure"), 0.2)).exit_code == EXIT_ERROR
    assert aggregate(ApplyOutcome(_results("success"), 0.2)).exit_code == EXIT_OK
    path = Path("Puppetfile")
    assert aggregate(InstallOutcome(False, path, Path("modules"))).exit_code == EXIT_ERROR
    assert aggregate(InstallOutcome(True, path, Path("modules"))).exit_code == EXIT_OK
    assert aggregate(InfoOutcome()).exit_code == EXIT_OK


def test_unknown_outcome_is_rejected() -> None:
    with pytest.raises(TypeError, match="Unsupported execution outcome str"):
        aggregate("done")  # type: ignore[arg-type]


def test_interrupt_guard_cancels_and_restores_handler(caplog: pytest.LogCaptureFixture) -> None:
    previous = signal.getsignal(signal.SIGINT)
    token = threading.Event()
    caplog.set_level(logging.WARNING, logger="bolt.lifecycle")
    with pytest.raises(KeyboardInterrupt):
        with InterruptGuard(token):
            assert signal.getsignal(signal.SIGINT) is not previous
            signal.raise_signal(signal.SIGINT)
    assert token.is_set()
    assert signal.getsignal(signal.SIGINT) is previous
    assert INTERRUPT_MESSAGE in caplog.text


def test_interrupt_guard_is_inert_off_main_thread() -> None:
    previous = signal.getsignal(signal.SIGINT)
    observed: list[object] = []

    def worker() -> None:
        with InterruptGuard(threading.Event()):
            observed.append(signal.getsignal(signal.SIGINT))

    thread = threading.Thread(target=worker)
    thread.start()
    thread.join()
    assert observed == [previous]
    assert signal.getsignal(signal.SIGINT) is previous
