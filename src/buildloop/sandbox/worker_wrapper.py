"""
Run one phase worker command and record how it stopped.

Invoked by ``LocalProcessExecutor`` as
``python -m buildloop.sandbox.worker_wrapper -- <command...>`` inside the
worker's own directory. The exit marker it writes there is what lets a later
process (for example ``buildloop run-signals``) learn that the worker finished
after the launching process has gone away.
"""

from __future__ import annotations

import json
import subprocess
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Final

from buildloop.utils.fs import atomic_write

EXIT_MARKER_NAME: Final[str] = "exit.json"
PID_FILE_NAME: Final[str] = "worker.pid"
SPAWN_FAILED_EXIT_CODE: Final[int] = 127


def write_exit_marker(work_dir: Path, exit_code: int | None, stop_reason: str) -> Path:
    marker = work_dir / EXIT_MARKER_NAME
    atomic_write(
        marker,
        json.dumps({"exit_code": exit_code, "stop_reason": stop_reason}, sort_keys=True),
    )
    return marker


def read_exit_marker(work_dir: Path) -> dict[str, object] | None:
    """Return the marker payload, or ``None`` when the worker has not recorded an exit."""

    try:
        payload = json.loads((work_dir / EXIT_MARKER_NAME).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    if not isinstance(payload, dict):
        raise ValueError(f"exit marker in {work_dir} is not a JSON object")
    return payload


def run_wrapped(command: Sequence[str], *, work_dir: Path) -> int:
    try:
        completed = subprocess.run(list(command), check=False)
    except OSError as exc:
        sys.stderr.write(f"worker spawn failed: {exc}\n")
        write_exit_marker(work_dir, SPAWN_FAILED_EXIT_CODE, "spawn_failed")
        return SPAWN_FAILED_EXIT_CODE
    write_exit_marker(work_dir, completed.returncode, "exited")
    return completed.returncode if completed.returncode >= 0 else 128 - completed.returncode


def main(argv: Sequence[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if args and args[0] == "--":
        args = args[1:]
    if not args:
        sys.stderr.write("usage: python -m buildloop.sandbox.worker_wrapper -- COMMAND...\n")
        return 2
    return run_wrapped(args, work_dir=Path.cwd())


if __name__ == "__main__":
    raise SystemExit(main())
