"""
buildloop — package root

File: src/buildloop/__init__.py

Purpose
- Package root for the build pipeline controller: a bounded-retry state machine
  that drives Decompose, Orchestrate, Verify and Deploy workers to a terminal state.

Import boundary rules
- Must not have side effects at import time (no config loading, no logging init).
- Heavy submodules are imported by callers, not re-exported here.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
