"""Per-stage and per-turn latency metrics.

The collector is append-only: stage calls and turn outcomes are recorded as
they happen, and readers get frozen snapshots. Recording is guarded by a
lock so adapters running in worker threads may report too.
"""

from __future__ import annotations

import math
import threading
from dataclasses import asdict, dataclass
from typing import Any

from voxflow.core.events import Stage


@dataclass(frozen=True)
class StageMetrics:
    """Snapshot of one stage's counters. Latencies are in milliseconds."""

    stage: Stage
    invocations: int = 0
    errors: int = 0
    timeouts: int = 0
    retries: int = 0
    fallbacks: int = 0
    total_ms: float = 0.0
    avg_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    p95_ms: float = 0.0


@dataclass(frozen=True)
class TurnCounters:
    started: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    avg_latency_ms: float = 0.0
    avg_first_token_ms: float = 0.0
    buffer_overflows: int = 0


def _percentile(values: list[float], pct: float) -> float:
    """Nearest-rank percentile."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
    return ordered[rank - 1]


class MetricsCollector:
    """Records stage latencies, failures and turn outcomes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._latencies: dict[Stage, list[float]] = {s: [] for s in Stage}
            self._invocations: dict[Stage, int] = {s: 0 for s in Stage}
            self._errors: dict[Stage, int] = {s: 0 for s in Stage}
            self._timeouts: dict[Stage, int] = {s: 0 for s in Stage}
            self._retries: dict[Stage, int] = {s: 0 for s in Stage}
            self._fallbacks: dict[Stage, int] = {s: 0 for s in Stage}
            self._turn_outcomes: dict[str, int] = {
                "started": 0, "completed": 0, "failed": 0, "cancelled": 0,
            }
            self._turn_latencies: list[float] = []
            self._first_token_latencies: list[float] = []
            self._buffer_overflows = 0

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_invocation(self, stage: Stage) -> None:
        with self._lock:
            self._invocations[stage] += 1

    def record_latency(self, stage: Stage, latency_ms: float) -> None:
        with self._lock:
            self._latencies[stage].append(latency_ms)

    def record_error(self, stage: Stage, kind: str = "fatal") -> None:
        with self._lock:
            self._errors[stage] += 1
            if kind == "timeout":
                self._timeouts[stage] += 1

    def record_retry(self, stage: Stage) -> None:
        with self._lock:
            self._retries[stage] += 1

    def record_fallback(self, stage: Stage) -> None:
        with self._lock:
            self._fallbacks[stage] += 1

    def record_turn_started(self) -> None:
        with self._lock:
            self._turn_outcomes["started"] += 1

    def record_turn(self, status: str, latency_ms: float | None = None) -> None:
        """Record a terminal turn status ("completed", "failed", "cancelled")."""
        with self._lock:
            self._turn_outcomes[status] += 1
            if latency_ms is not None:
                self._turn_latencies.append(latency_ms)

    def record_first_token(self, latency_ms: float) -> None:
        with self._lock:
            self._first_token_latencies.append(latency_ms)

    def record_buffer_overflow(self) -> None:
        with self._lock:
            self._buffer_overflows += 1

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def stage(self, stage: Stage) -> StageMetrics:
        with self._lock:
            values = list(self._latencies[stage])
            return StageMetrics(
                stage=stage,
                invocations=self._invocations[stage],
                errors=self._errors[stage],
                timeouts=self._timeouts[stage],
                retries=self._retries[stage],
                fallbacks=self._fallbacks[stage],
                total_ms=sum(values),
                avg_ms=sum(values) / len(values) if values else 0.0,
                min_ms=min(values) if values else 0.0,
                max_ms=max(values) if values else 0.0,
                p95_ms=_percentile(values, 95.0),
            )

    @property
    def turns(self) -> TurnCounters:
        with self._lock:
            latencies = self._turn_latencies
            first_tokens = self._first_token_latencies
            return TurnCounters(
                started=self._turn_outcomes["started"],
                completed=self._turn_outcomes["completed"],
                failed=self._turn_outcomes["failed"],
                cancelled=self._turn_outcomes["cancelled"],
                avg_latency_ms=sum(latencies) / len(latencies) if latencies else 0.0,
                avg_first_token_ms=(
                    sum(first_tokens) / len(first_tokens) if first_tokens else 0.0
                ),
                buffer_overflows=self._buffer_overflows,
            )

    def snapshot(self) -> dict[str, Any]:
        """Plain-dict view of every counter, keyed by stage name."""
        stages = {}
        for stage in Stage:
            data = asdict(self.stage(stage))
            data["stage"] = stage.value
            stages[stage.value] = data
        return {"stages": stages, "turns": asdict(self.turns)}
