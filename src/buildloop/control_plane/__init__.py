"""Control-plane public API."""

from buildloop.control_plane.controller import (
    INFRASTRUCTURE_EXHAUSTED,
    VERIFICATION_EXHAUSTED,
    ConcurrencyLimitError,
    PipelineController,
)
from buildloop.control_plane.feedback import FeedbackEnricher
from buildloop.control_plane.guard import GuardDecision, check_cycle, check_iteration
from buildloop.control_plane.runtime import (
    PipelineRuntime,
    WaitTimeoutError,
    build_runtime,
)
from buildloop.control_plane.signals import CompletionSignalRouter, classify_output

__all__ = [
    "INFRASTRUCTURE_EXHAUSTED",
    "VERIFICATION_EXHAUSTED",
    "CompletionSignalRouter",
    "ConcurrencyLimitError",
    "FeedbackEnricher",
    "GuardDecision",
    "PipelineController",
    "PipelineRuntime",
    "WaitTimeoutError",
    "build_runtime",
    "check_cycle",
    "check_iteration",
    "classify_output",
]
