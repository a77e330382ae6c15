"""
buildloop — task executors and the termination notification channel.

File: src/buildloop/sandbox/executors.py

Purpose
- Define the pluggable ``TaskExecutor`` interface (launch/describe/terminate).
- Provide ``LocalProcessExecutor``: one subprocess per phase run, observed by a
  watcher thread that publishes a ``TerminationEvent`` when the process exits.
- Provide ``TerminationChannel``: the at-least-once queue the signal router drains.

Non-functional requirements
- ``launch`` never waits for the worker; it returns once the process is spawned.
- Launch failures surface synchronously as ``LaunchError``.
- Worker state stays observable from other processes through the pid file and
  the exit marker kept in each worker directory.
"""

from __future__ import annotations

import os
import queue
import signal
import subprocess
import sys
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Final, Protocol, runtime_checkable

import psutil
import structlog

from buildloop.domain.models import Phase, utc_now
from buildloop.sandbox.capacity import CapacityGovernor
from buildloop.sandbox.worker_wrapper import (
    EXIT_MARKER_NAME,
    PID_FILE_NAME,
    read_exit_marker,
    write_exit_marker,
)
from buildloop.utils.fs import atomic_write

WORKER_LOG_NAME: Final[str] = "worker.log"
_WRAPPER_MODULE: Final[str] = "buildloop.sandbox.worker_wrapper"
_TERMINATE_GRACE_SECONDS: Final[float] = 5.0


class LaunchError(RuntimeError):
    """Raised synchronously when a worker cannot be started."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class WorkerState(StrEnum):
    RUNNING = "running"
    EXITED = "exited"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class LaunchRequest:
    """Everything an executor needs to start one phase worker."""

    worker_ref: str
    execution_id: str
    phase: Phase
    attempt_number: int
    input_key: str
    output_key: str
    timeout_seconds: float
    store_root: str | None = None

    def environment(self) -> dict[str, str]:
        env = {
            "BUILDLOOP_PHASE": self.phase.value,
            "BUILDLOOP_EXECUTION_ID": self.execution_id,
            "BUILDLOOP_ATTEMPT": str(self.attempt_number),
            "BUILDLOOP_INPUT_KEY": self.input_key,
            "BUILDLOOP_OUTPUT_KEY": self.output_key,
        }
        if self.store_root is not None:
            env["BUILDLOOP_STORE_ROOT"] = self.store_root
        return env


@dataclass(frozen=True, slots=True)
class WorkerStatus:
    worker_ref: str
    state: WorkerState
    exit_code: int | None = None


@dataclass(frozen=True, slots=True)
class TerminationEvent:
    """Notification that a worker process stopped. May be delivered more than once."""

    worker_ref: str
    exit_code: int | None
    stop_reason: str = "exited"
    occurred_at: datetime = field(default_factory=utc_now)

    @property
    def abnormal(self) -> bool:
        return self.exit_code != 0


class TerminationChannel:
    """Thread-safe at-least-once queue of termination events."""

    def __init__(self) -> None:
        self._queue: queue.Queue[TerminationEvent] = queue.Queue()

    def publish(self, event: TerminationEvent) -> None:
        self._queue.put(event)

    def get(self, timeout: float | None = None) -> TerminationEvent | None:
        try:
            return self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except queue.Empty:
            return None

    def drain(self) -> list[TerminationEvent]:
        events: list[TerminationEvent] = []
        while True:
            event = self.get()
            if event is None:
                return events
            events.append(event)

    def __len__(self) -> int:
        return self._queue.qsize()


@runtime_checkable
class TaskExecutor(Protocol):
    def launch(self, request: LaunchRequest) -> str: ...

    def describe(self, worker_ref: str) -> WorkerStatus: ...

    def terminate(self, worker_ref: str) -> None: ...


@dataclass(slots=True)
class _Tracked:
    process: subprocess.Popen[bytes]
    work_dir: Path
    terminated: bool = False


class LocalProcessExecutor:
    """Run each phase worker as a local subprocess in its own work directory."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        work_root: Path | str,
        channel: TerminationChannel,
        governor: CapacityGovernor | None = None,
        inherit_host_env: bool = False,
        env_overrides: Mapping[str, str] | None = None,
        wrap: bool = True,
        logger: Any | None = None,
    ) -> None:
        self._command = tuple(part for part in command if part.strip())
        self._work_root = Path(work_root)
        self._channel = channel
        self._governor = governor
        self._inherit_host_env = inherit_host_env
        self._env_overrides = dict(env_overrides or {})
        self._wrap = wrap
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.Lock()
        self._tracked: dict[str, _Tracked] = {}

    @property
    def channel(self) -> TerminationChannel:
        return self._channel

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for item in self._tracked.values() if item.process.poll() is None)

    def work_dir_for(self, worker_ref: str) -> Path:
        return self._work_root.joinpath(*worker_ref.split(":"))

    def launch(self, request: LaunchRequest) -> str:
        if not self._command:
            raise LaunchError("no worker command configured ([worker] command is empty)")
        if self._governor is not None:
            decision = self._governor.evaluate(self.active_count())
            if not decision.allowed:
                raise LaunchError(f"capacity exhausted: {decision.reason}")

        work_dir = self.work_dir_for(request.worker_ref)
        argv = list(self._command)
        if self._wrap:
            argv = [sys.executable, "-m", _WRAPPER_MODULE, "--", *argv]
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
            with (work_dir / WORKER_LOG_NAME).open("ab") as log_handle:
                process = subprocess.Popen(
                    argv,
                    cwd=work_dir,
                    env=self._build_environment(request),
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            atomic_write(work_dir / PID_FILE_NAME, str(process.pid))
        except OSError as exc:
            raise LaunchError(f"spawn failed: {exc}") from exc

        with self._lock:
            self._tracked[request.worker_ref] = _Tracked(process=process, work_dir=work_dir)
        watcher = threading.Thread(
            target=self._watch,
            args=(request.worker_ref,),
            name=f"buildloop-watch-{process.pid}",
            daemon=True,
        )
        watcher.start()
        self._logger.info(
            "worker_spawned", worker_ref=request.worker_ref, pid=process.pid, work_dir=work_dir
        )
        return request.worker_ref

    def describe(self, worker_ref: str) -> WorkerStatus:
        with self._lock:
            tracked = self._tracked.get(worker_ref)
        if tracked is not None:
            code = tracked.process.poll()
            if code is None:
                return WorkerStatus(worker_ref=worker_ref, state=WorkerState.RUNNING)
            return WorkerStatus(worker_ref=worker_ref, state=WorkerState.EXITED, exit_code=code)

        # Launched by another process: the exit marker wins, then pid liveness.
        work_dir = self.work_dir_for(worker_ref)
        try:
            payload = read_exit_marker(work_dir)
        except (OSError, ValueError) as exc:
            self._logger.warning("exit_marker_unreadable", worker_ref=worker_ref, error=str(exc))
            return WorkerStatus(worker_ref=worker_ref, state=WorkerState.UNKNOWN)
        if payload is not None:
            exit_code = payload.get("exit_code")
            return WorkerStatus(
                worker_ref=worker_ref,
                state=WorkerState.EXITED,
                exit_code=exit_code if isinstance(exit_code, int) else None,
            )

        pid = self._read_pid(work_dir)
        if pid is None:
            return WorkerStatus(worker_ref=worker_ref, state=WorkerState.UNKNOWN)
        if psutil.pid_exists(pid):
            return WorkerStatus(worker_ref=worker_ref, state=WorkerState.RUNNING)
        return WorkerStatus(worker_ref=worker_ref, state=WorkerState.EXITED, exit_code=None)

    def terminate(self, worker_ref: str) -> None:
        with self._lock:
            tracked = self._tracked.get(worker_ref)
            if tracked is not None:
                tracked.terminated = True
        if tracked is None:
            pid = self._read_pid(self.work_dir_for(worker_ref))
            if pid is None or not psutil.pid_exists(pid):
                self._logger.info("terminate_unknown_worker", worker_ref=worker_ref)
                return
            self._signal_group(pid, signal.SIGTERM)
            self._logger.info("worker_terminated", worker_ref=worker_ref, pid=pid)
            return

        process = tracked.process
        if process.poll() is not None:
            return
        self._signal_group(process.pid, signal.SIGTERM)
        try:
            process.wait(timeout=_TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            self._signal_group(process.pid, signal.SIGKILL)
        self._logger.info("worker_terminated", worker_ref=worker_ref, pid=process.pid)

    def tracked_refs(self) -> list[str]:
        """Worker refs this executor launched whose exit has not been published yet."""
        with self._lock:
            return sorted(self._tracked)

    def shutdown(self) -> None:
        with self._lock:
            refs = [ref for ref, item in self._tracked.items() if item.process.poll() is None]
        for worker_ref in refs:
            self.terminate(worker_ref)

    def _build_environment(self, request: LaunchRequest) -> dict[str, str]:
        if self._inherit_host_env:
            merged = dict(os.environ)
        else:
            merged = {}
            host_path = os.environ.get("PATH")
            if host_path:
                merged["PATH"] = host_path
        merged.update(self._env_overrides)
        merged.update(request.environment())
        return merged

    def _read_pid(self, work_dir: Path) -> int | None:
        try:
            raw = (work_dir / PID_FILE_NAME).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return int(raw) if raw.isdigit() else None

    def _signal_group(self, pid: int, signum: int) -> None:
        # Workers run in their own session, so the pid doubles as the group id.
        try:
            os.killpg(pid, signum)
        except ProcessLookupError:
            return

    def _watch(self, worker_ref: str) -> None:
        with self._lock:
            tracked = self._tracked[worker_ref]
        exit_code = tracked.process.wait()
        stop_reason = "terminated" if tracked.terminated else "exited"
        try:
            if tracked.terminated or read_exit_marker(tracked.work_dir) is None:
                write_exit_marker(tracked.work_dir, exit_code, stop_reason)
        except (OSError, ValueError) as exc:
            self._logger.warning("exit_marker_write_failed", worker_ref=worker_ref, error=str(exc))
        # Exited workers are described from their exit marker from here on.
        with self._lock:
            self._tracked.pop(worker_ref, None)
        self._channel.publish(
            TerminationEvent(worker_ref=worker_ref, exit_code=exit_code, stop_reason=stop_reason)
        )
        self._logger.info(
            "worker_exited", worker_ref=worker_ref, exit_code=exit_code, stop_reason=stop_reason
        )


__all__ = [
    "EXIT_MARKER_NAME",
    "WORKER_LOG_NAME",
    "LaunchError",
    "LaunchRequest",
    "LocalProcessExecutor",
    "TaskExecutor",
    "TerminationChannel",
    "TerminationEvent",
    "WorkerState",
    "WorkerStatus",
]
