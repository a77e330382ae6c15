"""Shared fixtures: a scripted task executor and an in-process pipeline runtime."""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest

from buildloop.config.schema import PipelineConfig
from buildloop.control_plane.runtime import PipelineRuntime, build_runtime
from buildloop.domain.models import JSONValue, Phase
from buildloop.sandbox.executors import (
    LaunchError,
    LaunchRequest,
    TerminationChannel,
    TerminationEvent,
    WorkerState,
    WorkerStatus,
)
from buildloop.storage.object_store import InMemoryObjectStore

if TYPE_CHECKING:
    from collections.abc import Iterator


DEFAULT_OUTPUTS: dict[Phase, dict[str, JSONValue]] = {
    Phase.DECOMPOSE: {"status": "success", "tasks": [{"name": "parse"}, {"name": "emit"}]},
    Phase.ORCHESTRATE: {"status": "success", "built": ["parse", "emit"]},
    Phase.VERIFY: {"status": "pass", "issues": [], "feedback": "all checks green"},
    Phase.DEPLOY: {
        "status": "success",
        "units": [{"name": "tool-a", "status": "success", "artifact_ref": "artifacts/tool-a"}],
    },
}


@dataclass(slots=True)
class WorkerScript:
    """How one scripted worker behaves.

    ``output`` is written to the output key unless ``raw`` is given; ``hold``
    keeps the worker "running" until ``ScriptedExecutor.release`` is called.
    """

    output: dict[str, JSONValue] | None = None
    raw: bytes | None = None
    exit_code: int | None = 0
    launch_error: str | None = None
    duplicates: int = 0
    hold: bool = False
    write_output: bool = True


@dataclass(slots=True)
class ScriptedExecutor:
    """Deterministic ``TaskExecutor`` double publishing on the in-memory channel."""

    channel: TerminationChannel
    store: InMemoryObjectStore
    scripts: dict[Phase, deque[WorkerScript]] = field(default_factory=lambda: defaultdict(deque))
    launched: list[LaunchRequest] = field(default_factory=list)
    terminated: list[str] = field(default_factory=list)
    _held: dict[str, WorkerScript] = field(default_factory=dict)
    _exited: dict[str, int | None] = field(default_factory=dict)

    def script(self, phase: Phase, *steps: WorkerScript) -> None:
        self.scripts[phase].extend(steps)

    def launches_for(self, phase: Phase) -> list[LaunchRequest]:
        return [request for request in self.launched if request.phase is phase]

    def launch(self, request: LaunchRequest) -> str:
        queue = self.scripts[request.phase]
        step = queue.popleft() if queue else WorkerScript()
        if step.launch_error is not None:
            raise LaunchError(step.launch_error)
        self.launched.append(request)
        if step.hold:
            self._held[request.worker_ref] = step
            return request.worker_ref
        self._finish(request, step)
        return request.worker_ref

    def release(self, worker_ref: str) -> None:
        step = self._held.pop(worker_ref)
        request = next(item for item in self.launched if item.worker_ref == worker_ref)
        self._finish(request, WorkerScript(**{**_script_fields(step), "hold": False}))

    def describe(self, worker_ref: str) -> WorkerStatus:
        if worker_ref in self._exited:
            return WorkerStatus(
                worker_ref=worker_ref,
                state=WorkerState.EXITED,
                exit_code=self._exited[worker_ref],
            )
        if worker_ref in self._held:
            return WorkerStatus(worker_ref=worker_ref, state=WorkerState.RUNNING)
        return WorkerStatus(worker_ref=worker_ref, state=WorkerState.UNKNOWN)

    def terminate(self, worker_ref: str) -> None:
        self.terminated.append(worker_ref)
        self._held.pop(worker_ref, None)

    def _finish(self, request: LaunchRequest, step: WorkerScript) -> None:
        if step.raw is not None:
            self.store.put_raw(request.output_key, step.raw)
        elif step.write_output and (step.exit_code == 0 or step.output is not None):
            output = step.output if step.output is not None else DEFAULT_OUTPUTS[request.phase]
            self.store.put_json(request.output_key, output)
        self._exited[request.worker_ref] = step.exit_code
        for _ in range(1 + step.duplicates):
            self.channel.publish(
                TerminationEvent(worker_ref=request.worker_ref, exit_code=step.exit_code)
            )


def _script_fields(step: WorkerScript) -> dict[str, Any]:
    return {
        "output": step.output,
        "raw": step.raw,
        "exit_code": step.exit_code,
        "launch_error": step.launch_error,
        "duplicates": step.duplicates,
        "write_output": step.write_output,
    }


@dataclass(slots=True)
class RecordingLogger:
    """Captures structlog-style calls as ``(level, event, fields)`` tuples."""

    events: list[tuple[str, str, dict[str, object]]] = field(default_factory=list)

    def debug(self, event: str, **kwargs: object) -> None:
        self.events.append(("debug", event, dict(kwargs)))

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append(("info", event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append(("warning", event, dict(kwargs)))

    def error(self, event: str, **kwargs: object) -> None:
        self.events.append(("error", event, dict(kwargs)))

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]


@pytest.fixture
def pipeline_config(tmp_path: Path) -> PipelineConfig:
    state_dir = tmp_path / "state"
    return PipelineConfig(
        max_iterations=3,
        max_cycles=3,
        max_concurrent_builds=3,
        output_grace_seconds=0.0,
        output_poll_interval_seconds=0.0,
        state_db=state_dir / "buildloop.sqlite3",
        object_store_root=state_dir / "objects",
        log_dir=state_dir / "logs",
        worker_command=("true",),
    )


@pytest.fixture
def channel() -> TerminationChannel:
    return TerminationChannel()


@pytest.fixture
def memory_store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def scripted_executor(
    channel: TerminationChannel, memory_store: InMemoryObjectStore
) -> ScriptedExecutor:
    return ScriptedExecutor(channel=channel, store=memory_store)


@pytest.fixture
def runtime(
    pipeline_config: PipelineConfig,
    scripted_executor: ScriptedExecutor,
    channel: TerminationChannel,
    memory_store: InMemoryObjectStore,
) -> Iterator[PipelineRuntime]:
    assembled = build_runtime(
        pipeline_config, executor=scripted_executor, channel=channel, store=memory_store
    )
    yield assembled
    assembled.close()


@pytest.fixture
def recording_logger() -> RecordingLogger:
    return RecordingLogger()
