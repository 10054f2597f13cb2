from __future__ import annotations

import json
import os
import shutil
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Mapping

import pytest

from boltpy.events import build_event
from boltpy.executor import Executor
from boltpy.executors import CommandOutput, RunningProcesses, TaskSpec, Transport
from boltpy.models import Target


class _RecordingTransport(Transport):
    name = "local"

    def __init__(self, *, delay_sec: float = 0.0, raise_for: set[str] | None = None):
        self.delay_sec = delay_sec
        self.raise_for = raise_for or set()
        self.calls: list[dict[str, Any]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def execute(
        self,
        target: Target,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        stdin: str | None = None,
    ) -> CommandOutput:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.calls.append({"target": target.name, "command": command, "env": dict(env or {}), "stdin": stdin})
        try:
            if self.delay_sec:
                time.sleep(self.delay_sec)
            if target.name in self.raise_for:
                raise RuntimeError(f"connection refused by {target.name}")
            if command == "mktemp -d":
                return CommandOutput(stdout="/tmp/bolt.xyz\n", stderr="", exit_code=0)
            if "task.sh" in command:
                return CommandOutput(stdout=json.dumps({"installed": True}), stderr="", exit_code=0)
            return CommandOutput(stdout=f"{target.name}\n", stderr="", exit_code=0)
        finally:
            with self._lock:
                self.active -= 1

    def copy(self, target: Target, source: Path, destination: str) -> None:
        with self._lock:
            self.calls.append({"target": target.name, "command": f"copy {source.name} {destination}"})


class _Collector:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def handle_event(self, event: Mapping[str, Any]) -> None:
        self.events.append(dict(event))


class _BrokenObserver:
    def handle_event(self, event: Mapping[str, Any]) -> None:
        raise ValueError("renderer exploded")


def _targets(*names: str) -> list[Target]:
    return [Target(name=name, uri=name, transport="local") for name in names]


def test_run_command_returns_result_per_target_in_order() -> None:
    transport = _RecordingTransport()
    executor = Executor(concurrency=2, transports={"local": transport})
    try:
        results = executor.run_command(_targets("a", "b", "c"), "hostname", {})
    finally:
        executor.shutdown()
    assert results.names == ["a", "b", "c"]
    assert results.ok
    assert [result.value["stdout"] for result in results] == ["a\n", "b\n", "c\n"]


def test_concurrency_bounds_parallel_targets() -> None:
    transport = _RecordingTransport(delay_sec=0.05)
    executor = Executor(concurrency=2, transports={"local": transport})
    try:
        executor.run_command(_targets("a", "b", "c", "d", "e"), "sleep", {})
    finally:
        executor.shutdown()
    assert transport.max_active <= 2


def test_target_exception_becomes_failed_result() -> None:
    transport = _RecordingTransport(raise_for={"b"})
    executor = Executor(concurrency=3, transports={"local": transport})
    try:
        results = executor.run_command(_targets("a", "b"), "id", {})
    finally:
        executor.shutdown()
    assert not results.ok
    assert results.error_set.names == ["b"]
    assert "connection refused by b" in results.error_set.results[0].error["msg"]


def test_unknown_transport_fails_only_that_target() -> None:
    executor = Executor(concurrency=1, transports={"local": _RecordingTransport()})
    try:
        results = executor.run_command(
            [Target(name="a", uri="a", transport="local"), Target(name="b", uri="b", transport="ssh")],
            "id",
            {},
        )
    finally:
        executor.shutdown()
    assert results.ok_set.names == ["a"]
    assert "No transport available for 'ssh'" in results.error_set.results[0].error["msg"]


def test_events_are_published_and_observer_errors_are_ignored() -> None:
    collector = _Collector()
    executor = Executor(concurrency=1, transports={"local": _RecordingTransport()})
    executor.subscribe(_BrokenObserver())
    executor.subscribe(collector)
    try:
        executor.run_command(_targets("a"), "id", {"_description": "check"})
        executor.publish_event(build_event("message", message="hello"))
    finally:
        executor.shutdown()
    assert [event["type"] for event in collector.events] == ["node_start", "node_result", "message"]
    assert collector.events[1]["result"].ok


def test_cancelled_token_skips_unstarted_targets() -> None:
    token = threading.Event()
    token.set()
    transport = _RecordingTransport()
    executor = Executor(concurrency=1, transports={"local": transport}, cancel_token=token)
    try:
        results = executor.run_command(_targets("a", "b"), "id", {})
    finally:
        executor.shutdown()
    assert transport.calls == []
    assert [result.error["kind"] for result in results] == ["bolt/cancelled", "bolt/cancelled"]


def test_run_task_passes_parameters_and_noop(tmp_path: Path) -> None:
    script = tmp_path / "task.sh"
    script.write_text("#!/bin/sh\n", encoding="utf-8")
    transport = _RecordingTransport()
    executor = Executor(concurrency=1, noop=True, transports={"local": transport})
    task = TaskSpec(name="pkg::install", executable=script, supports_noop=True)
    try:
        results = executor.run_task(_targets("a"), task, {"name": "vim", "count": 2}, {})
    finally:
        executor.shutdown()
    assert results.ok
    assert results.results[0].value == {"installed": True}
    run_call = next(call for call in transport.calls if "task.sh" in call["command"] and "copy" not in call["command"])
    assert run_call["env"]["PT_name"] == "vim"
    assert run_call["env"]["PT_count"] == "2"
    assert run_call["env"]["PT__noop"] == "true"
    assert json.loads(run_call["stdin"]) == {"_noop": True, "count": 2, "name": "vim"}


def test_collected_results_keep_latest_per_target() -> None:
    transport = _RecordingTransport(raise_for={"a"})
    executor = Executor(concurrency=1, transports={"local": transport})
    try:
        executor.run_command(_targets("a", "b"), "id", {})
        transport.raise_for = set()
        executor.run_command(_targets("a"), "id", {})
        collected = executor.collected_results()
    finally:
        executor.shutdown()
    assert sorted(collected.names) == ["a", "b"]
    assert collected.ok


def test_shutdown_is_idempotent_and_blocks_new_batches() -> None:
    executor = Executor(concurrency=1, transports={"local": _RecordingTransport()})
    executor.shutdown()
    executor.shutdown()
    with pytest.raises(RuntimeError, match="already been shut down"):
        executor.run_command(_targets("a"), "id", {})


def test_concurrency_must_be_positive() -> None:
    with pytest.raises(ValueError, match="concurrency"):
        Executor(concurrency=0)


class _CancellableTransport(_RecordingTransport):
    def __init__(self) -> None:
        super().__init__()
        self.cancel_calls = 0

    def cancel(self) -> None:
        self.cancel_calls += 1


def test_shutdown_cancels_transports_only_for_interrupted_runs() -> None:
    finished = _CancellableTransport()
    Executor(concurrency=1, transports={"local": finished}).shutdown()
    assert finished.cancel_calls == 0

    token = threading.Event()
    interrupted = _CancellableTransport()
    executor = Executor(concurrency=1, transports={"local": interrupted}, cancel_token=token)
    token.set()
    executor.shutdown()
    executor.shutdown()
    assert interrupted.cancel_calls == 1


@pytest.mark.skipif(shutil.which("sleep") is None or os.name != "posix", reason="POSIX sleep is required")
def test_running_processes_terminate_in_flight_children() -> None:
    processes = RunningProcesses(grace_sec=0.2)
    outcome: dict[str, Any] = {}

    def worker() -> None:
        outcome["completed"] = processes.run(["sleep", "30"])

    thread = threading.Thread(target=worker)
    thread.start()
    deadline = time.monotonic() + 5
    while not processes._running and time.monotonic() < deadline:
        time.sleep(0.01)

    started = time.monotonic()
    processes.terminate_all()
    thread.join(timeout=5)
    assert not thread.is_alive()
    assert time.monotonic() - started < 3
    assert outcome["completed"].returncode != 0
    assert processes.cancelled
    with pytest.raises(RuntimeError, match="cancelled before the process started"):
        processes.run(["true"])


@pytest.mark.skipif(shutil.which("sleep") is None or os.name != "posix", reason="POSIX sleep is required")
def test_running_processes_kill_on_timeout() -> None:
    processes = RunningProcesses(grace_sec=0.2)
    started = time.monotonic()
    with pytest.raises(subprocess.TimeoutExpired):
        processes.run(["sleep", "30"], timeout=0.2)
    assert time.monotonic() - started < 3
    assert processes.run(["echo", "ok"]).stdout == "ok\n"
