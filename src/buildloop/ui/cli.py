"""Command-line interface router for buildloop."""

from __future__ import annotations

import argparse
import json
import sys
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Final

import yaml

from buildloop.config import (
    ConfigLoadError,
    ConfigValidationError,
    PipelineConfig,
    effective_config,
    load_config,
)
from buildloop.control_plane import (
    ConcurrencyLimitError,
    PipelineRuntime,
    WaitTimeoutError,
    build_runtime,
)
from buildloop.domain.events import redact_sensitive
from buildloop.domain.models import BuildExecution, ExecutionStatus
from buildloop.main import ExitCode
from buildloop.observability import setup_logging, shutdown_logging
from buildloop.persistence import ExecutionNotFoundError, PhaseRunRepo
from buildloop.ui.render import CLIRenderer, create_renderer

_SUCCESS_STATUSES: Final[frozenset[ExecutionStatus]] = frozenset(
    {
        ExecutionStatus.PENDING,
        ExecutionStatus.RUNNING,
        ExecutionStatus.CANCELLING,
        ExecutionStatus.COMPLETED,
    }
)
_LOG_LEVEL_CHOICES: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    def __init__(self, message: str, exit_code: int = ExitCode.BUILD_FAILED) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = int(exit_code)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="buildloop",
        description=(
            "buildloop — bounded-retry build pipeline controller.\n\n"
            "Common workflows:\n"
            "  buildloop submit spec.yaml --org acme --user dev   Start a build\n"
            "  buildloop run-signals --until-idle                 Advance running builds\n"
            "  buildloop status <execution-id>                    Inspect one build\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to buildloop TOML config (default: ./buildloop.toml if present).",
    )
    common.add_argument(
        "--log-level",
        choices=_LOG_LEVEL_CHOICES,
        default=None,
        help="Override [observability] log_level for this invocation.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # submit --------------------------------------------------------------
    submit_parser = subparsers.add_parser(
        "submit",
        parents=[common],
        help="Start a build from a YAML or JSON build spec",
        description=(
            "Create a build execution and launch its Decompose phase.\n\n"
            "Examples:\n"
            "  buildloop submit spec.yaml --org acme --user dev\n"
            "  buildloop submit spec.json --org acme --user dev --wait --timeout 600\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    submit_parser.add_argument("spec_path", help="Path to the build spec (YAML or JSON)")
    submit_parser.add_argument("--org", required=True, help="Owning organisation id")
    submit_parser.add_argument("--user", required=True, help="Submitting user id")
    submit_parser.add_argument(
        "--wait",
        action="store_true",
        default=False,
        help="Keep processing signals until the build reaches a terminal status",
    )
    submit_parser.add_argument(
        "--timeout", type=float, default=None, help="Give up waiting after SECONDS"
    )
    submit_parser.set_defaults(handler=_cmd_submit)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show one execution with its phase runs and artifacts",
    )
    status_parser.add_argument("execution_id", help="Execution id (exe-...)")
    status_parser.set_defaults(handler=_cmd_status)

    # events --------------------------------------------------------------
    events_parser = subparsers.add_parser(
        "events",
        parents=[common],
        help="Print an execution's phase transition events, oldest first",
    )
    events_parser.add_argument("execution_id", help="Execution id (exe-...)")
    events_parser.set_defaults(handler=_cmd_events)

    # list ----------------------------------------------------------------
    list_parser = subparsers.add_parser(
        "list",
        parents=[common],
        help="List an organisation's executions, newest first",
    )
    list_parser.add_argument("--org", required=True, help="Organisation id")
    list_parser.add_argument("--limit", type=int, default=20, help="Page size (default: 20)")
    list_parser.add_argument("--offset", type=int, default=0, help="Rows to skip (default: 0)")
    list_parser.set_defaults(handler=_cmd_list)

    # cancel --------------------------------------------------------------
    cancel_parser = subparsers.add_parser(
        "cancel",
        parents=[common],
        help="Stop launching further phases for an execution",
    )
    cancel_parser.add_argument("execution_id", help="Execution id (exe-...)")
    cancel_parser.set_defaults(handler=_cmd_cancel)

    # run-signals ---------------------------------------------------------
    signals_parser = subparsers.add_parser(
        "run-signals",
        parents=[common],
        help="Process worker terminations and sweep timeouts",
        description=(
            "Reconcile exited workers, drain the termination channel, and resolve\n"
            "overdue phase runs. Runs one pass unless --until-idle is given.\n\n"
            "Examples:\n"
            "  buildloop run-signals\n"
            "  buildloop run-signals --until-idle --interval 2\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    signals_parser.add_argument(
        "--until-idle",
        action="store_true",
        default=False,
        help="Repeat until no phase run is pending",
    )
    signals_parser.add_argument(
        "--interval", type=float, default=1.0, help="Seconds between passes (default: 1.0)"
    )
    signals_parser.set_defaults(handler=_cmd_run_signals)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
        description=(
            "Display the effective config after merging defaults, file, env, and flags.\n"
            "Sensitive values are redacted."
        ),
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_submit(args: argparse.Namespace) -> int:
    build_spec = _read_build_spec(Path(args.spec_path))
    with _runtime(args) as runtime:
        try:
            execution_id = runtime.controller.start_build(build_spec, args.org, args.user)
        except ConcurrencyLimitError as exc:
            raise CLIError(str(exc), exit_code=ExitCode.BUILD_FAILED) from exc
        except ValueError as exc:
            raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc

        timed_out = False
        if args.wait:
            try:
                execution = runtime.wait_for(execution_id, timeout_seconds=args.timeout)
            except WaitTimeoutError as exc:
                timed_out = True
                print(f"warning: {exc}", file=sys.stderr)
                execution = runtime.controller.get_execution(execution_id)
        else:
            execution = runtime.controller.get_execution(execution_id)

    payload: dict[str, object] = {
        "command": "submit",
        "execution": execution.to_dict(),
        "waited": bool(args.wait),
        "timed_out": timed_out,
    }
    exit_code = _exit_code_for(execution)
    if args.json:
        _emit_json(payload)
        return exit_code

    renderer = _get_renderer(args)
    _render_execution(renderer, execution)
    renderer.next_steps(
        [
            "buildloop run-signals --until-idle",
            f"buildloop status {execution_id}",
            f"buildloop events {execution_id}",
        ]
    )
    return exit_code


def _cmd_status(args: argparse.Namespace) -> int:
    with _runtime(args) as runtime:
        execution = _require_execution(runtime, args.execution_id)
        runs = runtime.controller.list_phase_runs(execution.id)
        artifacts = runtime.controller.list_artifacts(execution.id)

    exit_code = _exit_code_for(execution)
    if args.json:
        _emit_json(
            {
                "command": "status",
                "execution": execution.to_dict(),
                "phase_runs": [run.to_dict() for run in runs],
                "artifacts": [artifact.to_dict() for artifact in artifacts],
            }
        )
        return exit_code

    renderer = _get_renderer(args)
    _render_execution(renderer, execution)
    renderer.table(
        ["PHASE", "ATTEMPT", "CYCLE", "OUTCOME", "REASON"],
        [
            [
                str(run.phase),
                str(run.attempt_number),
                str(run.build_cycle),
                str(run.outcome),
                _truncate(str(run.detail.get("reason") or ""), 40),
            ]
            for run in runs
        ],
        title="Phase runs:",
    )
    renderer.table(
        ["UNIT", "ARTIFACT", "DEPLOYED AT"],
        [
            [artifact.unit_name, artifact.artifact_ref, artifact.deployed_at.isoformat()]
            for artifact in artifacts
        ],
        title="Artifacts:",
    )
    return exit_code


def _cmd_events(args: argparse.Namespace) -> int:
    with _runtime(args) as runtime:
        _require_execution(runtime, args.execution_id)
        events = [
            redact_sensitive(event)
            for event in runtime.controller.stream_phase_events(args.execution_id)
        ]

    if args.json:
        for event in events:
            print(event.to_json())
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.table(
        ["TIME", "EVENT", "PHASE", "ATTEMPT", "DETAIL"],
        [
            [
                event.timestamp.isoformat(timespec="seconds"),
                event.event_type.value,
                "" if event.phase is None else event.phase.value,
                "" if event.attempt_number is None else str(event.attempt_number),
                _truncate(json.dumps(event.payload, sort_keys=True), 60),
            ]
            for event in events
        ],
    )
    return int(ExitCode.SUCCESS)


def _cmd_list(args: argparse.Namespace) -> int:
    with _runtime(args) as runtime:
        try:
            executions = runtime.controller.list_executions(
                args.org, limit=args.limit, offset=args.offset
            )
        except ValueError as exc:
            raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc

    if args.json:
        _emit_json(
            {
                "command": "list",
                "org_id": args.org,
                "executions": [execution.to_dict() for execution in executions],
            }
        )
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    if not executions:
        renderer.text(f"No executions for org {args.org!r}.")
        return int(ExitCode.SUCCESS)
    renderer.table(
        ["ID", "STATUS", "PHASE", "QA", "CYCLE", "CREATED"],
        [
            [
                execution.id,
                str(execution.status),
                "" if execution.current_phase is None else str(execution.current_phase),
                str(execution.qa_iteration),
                str(execution.build_cycle),
                execution.created_at.isoformat(timespec="seconds"),
            ]
            for execution in executions
        ],
    )
    return int(ExitCode.SUCCESS)


def _cmd_cancel(args: argparse.Namespace) -> int:
    with _runtime(args) as runtime:
        _require_execution(runtime, args.execution_id)
        execution = runtime.controller.cancel(args.execution_id)

    if args.json:
        _emit_json({"command": "cancel", "execution": execution.to_dict()})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    _render_execution(renderer, execution)
    if execution.status is ExecutionStatus.CANCELLING:
        renderer.text("\nThe running phase will finish; no further phase will be launched.")
    return int(ExitCode.SUCCESS)


def _cmd_run_signals(args: argparse.Namespace) -> int:
    with _runtime(args) as runtime:
        pending_repo = PhaseRunRepo(runtime.db)
        resolved = runtime.pump()
        passes = 1
        while args.until_idle and pending_repo.list_pending():
            time.sleep(args.interval)
            resolved += runtime.pump()
            passes += 1
        pending = len(pending_repo.list_pending())

    payload: dict[str, object] = {
        "command": "run-signals",
        "passes": passes,
        "resolved": resolved,
        "pending": pending,
    }
    if args.json:
        _emit_json(payload)
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Resolved phase runs", resolved)
    renderer.kv("Still pending", pending)
    return int(ExitCode.SUCCESS)


def _cmd_config(args: argparse.Namespace) -> int:
    redacted = effective_config(_load_config_mapping(args))
    if args.json:
        _emit_json({"command": "config", "config": redacted})
        return int(ExitCode.SUCCESS)

    _get_renderer(args).text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=bool(getattr(args, "no_color", False)))


def _render_execution(renderer: CLIRenderer, execution: BuildExecution) -> None:
    renderer.kv("Execution", execution.id)
    renderer.status("Status", str(execution.status))
    renderer.kv("Org / user", f"{execution.org_id} / {execution.user_id}")
    renderer.kv("Current phase", execution.current_phase or "-")
    renderer.kv(
        "Counters",
        f"qa_iteration={execution.qa_iteration} build_cycle={execution.build_cycle} "
        f"spec_revision={execution.spec_revision}",
    )
    if execution.failure_reason:
        renderer.kv("Failure reason", execution.failure_reason)
    if execution.diagnostic:
        renderer.section("Diagnostic:")
        renderer.text(json.dumps(execution.diagnostic, indent=2, sort_keys=True))


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


# ---------------------------------------------------------------------------
# Helpers: config, runtime and inputs
# ---------------------------------------------------------------------------


def _load_config_mapping(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, object] = {"observability.log_level": args.log_level}
    try:
        return load_config(args.config_path, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc


@contextmanager
def _runtime(args: argparse.Namespace) -> Iterator[PipelineRuntime]:
    """Configure logging and assemble a runtime for one command.

    Workers started by this command keep running after it returns; their exit
    markers are picked up by a later ``run-signals``.
    """

    config = _load_config_mapping(args)
    pipeline = PipelineConfig.from_mapping(config)
    handle = setup_logging(config["observability"], log_dir=pipeline.log_dir)
    try:
        yield build_runtime(pipeline)
    finally:
        shutdown_logging(handle)


def _require_execution(runtime: PipelineRuntime, execution_id: str) -> BuildExecution:
    try:
        return runtime.controller.get_execution(execution_id)
    except ExecutionNotFoundError as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc
    except ValueError as exc:
        raise CLIError(
            f"invalid execution id {execution_id!r}: {exc}", exit_code=ExitCode.CONFIG_ERROR
        ) from exc


def _read_build_spec(path: Path) -> dict[str, object]:
    """Load a build spec document; JSON is accepted as a YAML subset."""

    resolved = path.expanduser()
    try:
        raw = resolved.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise CLIError(f"build spec not found: {resolved}", ExitCode.CONFIG_ERROR) from exc
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise CLIError(
            f"build spec {resolved} is not valid YAML/JSON: {exc}", ExitCode.CONFIG_ERROR
        ) from exc
    if not isinstance(parsed, dict):
        raise CLIError(
            f"build spec {resolved} must be a mapping, got {type(parsed).__name__}",
            ExitCode.CONFIG_ERROR,
        )
    return parsed


def _exit_code_for(execution: BuildExecution) -> int:
    if execution.status in _SUCCESS_STATUSES:
        return int(ExitCode.SUCCESS)
    return int(ExitCode.BUILD_FAILED)


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
