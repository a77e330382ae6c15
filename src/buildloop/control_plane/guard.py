"""
Retry-bound decisions for the two nested pipeline loops.

- inner loop: Verify failure -> enrich -> Decompose, bounded by ``max_iterations``
- outer loop: infrastructure failure -> restart from Decompose, bounded by ``max_cycles``

Both checks are pure: the controller passes the counter value it *would*
move to, and only stores it when the guard says ``continue``. That keeps
``qa_iteration <= max_iterations`` and ``build_cycle <= max_cycles`` true for
every persisted record.
"""

from __future__ import annotations

from enum import StrEnum


class GuardDecision(StrEnum):
    CONTINUE = "continue"
    EXHAUSTED = "exhausted"


def _check(counter: int, limit: int, *, counter_name: str, limit_name: str) -> GuardDecision:
    if isinstance(counter, bool) or not isinstance(counter, int):
        raise TypeError(f"{counter_name} must be an int")
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise TypeError(f"{limit_name} must be an int")
    if counter < 1:
        raise ValueError(f"{counter_name} must be >= 1")
    if limit < 1:
        raise ValueError(f"{limit_name} must be >= 1")
    return GuardDecision.CONTINUE if counter <= limit else GuardDecision.EXHAUSTED


def check_iteration(qa_iteration: int, max_iterations: int) -> GuardDecision:
    return _check(
        qa_iteration, max_iterations, counter_name="qa_iteration", limit_name="max_iterations"
    )


def check_cycle(build_cycle: int, max_cycles: int) -> GuardDecision:
    return _check(build_cycle, max_cycles, counter_name="build_cycle", limit_name="max_cycles")


__all__ = ["GuardDecision", "check_cycle", "check_iteration"]
