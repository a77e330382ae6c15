"""Module entrypoint for ``python -m buildloop``."""

from __future__ import annotations

from buildloop.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
