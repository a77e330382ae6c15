"""Host capacity checks consulted before a worker process is spawned."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import psutil
import structlog

from buildloop.domain.models import utc_now

_BYTES_PER_MIB = 1024 * 1024


@dataclass(frozen=True, slots=True)
class HostMetricsSnapshot:
    """Point-in-time host memory reading."""

    captured_at: datetime
    memory_total_bytes: int
    memory_available_bytes: int

    def __post_init__(self) -> None:
        if self.memory_total_bytes < 0 or self.memory_available_bytes < 0:
            raise ValueError("memory readings must be >= 0")
        if self.memory_available_bytes > self.memory_total_bytes:
            raise ValueError("memory_available_bytes cannot exceed memory_total_bytes")

    @property
    def memory_available_mb(self) -> int:
        return self.memory_available_bytes // _BYTES_PER_MIB


class MetricsProvider(Protocol):
    """Source for host snapshots (injectable for tests)."""

    def snapshot(self) -> HostMetricsSnapshot: ...


class PsutilMetricsProvider:
    """Read host memory through ``psutil``."""

    def snapshot(self) -> HostMetricsSnapshot:
        memory = psutil.virtual_memory()
        return HostMetricsSnapshot(
            captured_at=utc_now(),
            memory_total_bytes=int(memory.total),
            memory_available_bytes=int(memory.available),
        )


@dataclass(frozen=True, slots=True)
class CapacityDecision:
    allowed: bool
    active_workers: int
    snapshot: HostMetricsSnapshot
    reason: str | None = None


class CapacityGovernor:
    """Refuse new workers when the active count or free memory crosses a limit."""

    def __init__(
        self,
        *,
        max_active_workers: int,
        min_available_memory_mb: int,
        metrics_provider: MetricsProvider | None = None,
        logger: Any | None = None,
    ) -> None:
        if max_active_workers < 1:
            raise ValueError("max_active_workers must be >= 1")
        if min_available_memory_mb < 0:
            raise ValueError("min_available_memory_mb must be >= 0")
        self._max_active_workers = max_active_workers
        self._min_available_memory_mb = min_available_memory_mb
        self._metrics = metrics_provider or PsutilMetricsProvider()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def evaluate(self, active_workers: int) -> CapacityDecision:
        snapshot = self._metrics.snapshot()
        reason: str | None = None
        if active_workers >= self._max_active_workers:
            reason = (
                f"active worker limit reached ({active_workers}/{self._max_active_workers})"
            )
        elif snapshot.memory_available_mb < self._min_available_memory_mb:
            reason = (
                f"available memory {snapshot.memory_available_mb} MiB is below "
                f"the {self._min_available_memory_mb} MiB floor"
            )
        decision = CapacityDecision(
            allowed=reason is None,
            active_workers=active_workers,
            snapshot=snapshot,
            reason=reason,
        )
        if not decision.allowed:
            self._logger.warning(
                "capacity_exhausted",
                active_workers=active_workers,
                memory_available_mb=snapshot.memory_available_mb,
                reason=reason,
            )
        return decision


def static_metrics(
    *, total_mb: int, available_mb: int, clock: Callable[[], datetime] = utc_now
) -> MetricsProvider:
    """Metrics provider returning a fixed reading."""

    class _Static:
        def snapshot(self) -> HostMetricsSnapshot:
            return HostMetricsSnapshot(
                captured_at=clock(),
                memory_total_bytes=total_mb * _BYTES_PER_MIB,
                memory_available_bytes=available_mb * _BYTES_PER_MIB,
            )

    return _Static()


__all__ = [
    "CapacityDecision",
    "CapacityGovernor",
    "HostMetricsSnapshot",
    "MetricsProvider",
    "PsutilMetricsProvider",
    "static_metrics",
]
