from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from boltpy.events import build_event, validate_event
from boltpy.executors import TaskSpec, Transport, default_transports
from boltpy.models import (
    BoltError,
    EventObserver,
    ResultSet,
    Target,
    TargetResult,
)

_log = logging.getLogger("bolt.executor")

TargetOperation = Callable[[Transport, Target], TargetResult]


class Executor:
    """Fans operations out over targets with a bounded thread pool.

    A failure on one target never aborts the others; it becomes a failed
    ``TargetResult``. The cancellation token is checked before each target's
    work starts. Shutting down a cancelled executor stops the child processes
    its transports still have running.
    """

    def __init__(
        self,
        *,
        concurrency: int = 100,
        noop: bool = False,
        transports: Mapping[str, Transport] | None = None,
        cancel_token: threading.Event | None = None,
        poll_interval_sec: float = 0.05,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self.noop = noop
        self.transports = dict(transports) if transports is not None else default_transports()
        self.cancel_token = cancel_token or threading.Event()
        self.poll_interval_sec = poll_interval_sec
        self._pool = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="bolt-target")
        self._observers: list[EventObserver] = []
        self._event_lock = threading.Lock()
        self._results_lock = threading.Lock()
        self._collected: list[TargetResult] = []
        self._shutdown_lock = threading.Lock()
        self._is_shutdown = False

    def subscribe(self, observer: EventObserver) -> None:
        self._observers.append(observer)

    def publish_event(self, event: Mapping[str, Any]) -> None:
        payload = validate_event(event)
        with self._event_lock:
            for observer in list(self._observers):
                try:
                    observer.handle_event(payload)
                except Exception as exc:
                    _log.warning("Ignoring observer error from %s: %s", type(observer).__name__, exc)

    def _transport(self, target: Target) -> Transport:
        transport = self.transports.get(target.transport)
        if transport is None:
            raise BoltError(f"No transport available for '{target.transport}'")
        return transport

    def _run_on_target(
        self, target: Target, action: str, obj: str | None, operation: TargetOperation
    ) -> TargetResult:
        if self.cancel_token.is_set():
            result = TargetResult.from_error(
                target,
                "Run was interrupted before this target was started",
                kind="bolt/cancelled",
                action=action,
                object=obj,
            )
        else:
            self.publish_event(build_event("node_start", target=target, action=action))
            try:
                result = operation(self._transport(target), target)
            except BoltError as exc:
                result = TargetResult.from_error(
                    target, str(exc), kind=exc.kind, action=action, object=obj
                )
            except Exception as exc:
                _log.warning("target_error target=%s action=%s error=%s", target.name, action, exc)
                result = TargetResult.from_error(target, str(exc), action=action, object=obj)
        with self._results_lock:
            self._collected.append(result)
        self.publish_event(build_event("node_result", target=target, result=result))
        return result

    def _await(self, futures: Sequence[Future[TargetResult]]) -> None:
        pending = set(futures)
        while pending:
            _, pending = wait(pending, timeout=self.poll_interval_sec, return_when=FIRST_COMPLETED)

    def batch_execute(
        self,
        targets: Sequence[Target],
        *,
        action: str,
        obj: str | None,
        operation: TargetOperation,
        options: Mapping[str, Any] | None = None,
    ) -> ResultSet:
        if self._is_shutdown:
            raise RuntimeError("Executor has already been shut down")
        description = (options or {}).get("_description")
        _log.info(
            "batch_start action=%s object=%s num_targets=%d description=%s",
            action,
            obj,
            len(targets),
            description,
        )
        futures = [
            self._pool.submit(self._run_on_target, target, action, obj, operation)
            for target in targets
        ]
        self._await(futures)
        results = ResultSet(tuple(future.result() for future in futures))
        _log.info(
            "batch_end action=%s ok=%d failed=%d",
            action,
            len(results.ok_set),
            len(results.error_set),
        )
        return results

    def run_command(
        self, targets: Sequence[Target], command: str, options: Mapping[str, Any]
    ) -> ResultSet:
        return self.batch_execute(
            targets,
            action="command",
            obj=command,
            operation=lambda transport, target: transport.run_command(target, command),
            options=options,
        )

    def run_script(
        self,
        targets: Sequence[Target],
        script: Path,
        arguments: Sequence[str],
        options: Mapping[str, Any],
    ) -> ResultSet:
        script_path = Path(script)
        return self.batch_execute(
            targets,
            action="script",
            obj=str(script_path),
            operation=lambda transport, target: transport.run_script(
                target, script_path, list(arguments)
            ),
            options=options,
        )

    def upload_file(
        self,
        targets: Sequence[Target],
        source: Path,
        destination: str,
        options: Mapping[str, Any],
    ) -> ResultSet:
        source_path = Path(source)
        return self.batch_execute(
            targets,
            action="upload",
            obj=str(source_path),
            operation=lambda transport, target: transport.upload(target, source_path, destination),
            options=options,
        )

    def run_task(
        self,
        targets: Sequence[Target],
        task: TaskSpec,
        arguments: Mapping[str, Any],
        options: Mapping[str, Any],
    ) -> ResultSet:
        task_args = dict(arguments)
        if self.noop:
            task_args["_noop"] = True
        return self.batch_execute(
            targets,
            action="task",
            obj=task.name,
            operation=lambda transport, target: transport.run_task(target, task, task_args),
            options=options,
        )

    def collected_results(self) -> ResultSet:
        """Latest result per target across every batch run so far."""
        with self._results_lock:
            latest: dict[str, TargetResult] = {}
            for result in self._collected:
                latest.pop(result.target.name, None)
                latest[result.target.name] = result
        return ResultSet(tuple(latest.values()))

    def shutdown(self) -> None:
        with self._shutdown_lock:
            if self._is_shutdown:
                return
            self._is_shutdown = True
        _log.debug("executor_shutdown cancelled=%s", self.cancel_token.is_set())
        self._pool.shutdown(wait=False, cancel_futures=True)
        if not self.cancel_token.is_set():
            return
        # Interpreter exit joins the worker threads, so in-flight children
        # must be stopped for an interrupted run to end promptly.
        for transport in self.transports.values():
            try:
                transport.cancel()
            except Exception as exc:
                _log.warning("Could not cancel %s transport: %s", transport.name, exc)
