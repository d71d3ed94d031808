from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock

RATE_WINDOW = 240


@dataclass
class PipelinePerf:
    calls: int = 0
    failures: int = 0
    latency_ema_ms: float = 0.0
    completions: deque[float] = field(default_factory=lambda: deque(maxlen=RATE_WINDOW))

    def observe(self, latency_ms: float, now: float, alpha: float) -> None:
        if self.calls == 0:
            self.latency_ema_ms = latency_ms
        else:
            self.latency_ema_ms = alpha * latency_ms + (1.0 - alpha) * self.latency_ema_ms
        self.calls += 1
        self.completions.append(now)

    def calls_per_second(self, now: float) -> float:
        if len(self.completions) < 2:
            return 0.0
        return len(self.completions) / max(1e-6, now - self.completions[0])


class PerformanceTracker:
    """Per-pipeline inference latency (EMA), completed-call rate and failure count."""

    def __init__(self, alpha: float = 0.2) -> None:
        self.alpha = alpha
        self._lock = Lock()
        self._stats: dict[str, PipelinePerf] = {}

    def update(self, pipeline: str, latency_ms: float) -> None:
        now = time.perf_counter()
        with self._lock:
            self._stats.setdefault(pipeline, PipelinePerf()).observe(latency_ms, now, self.alpha)

    def record_failure(self, pipeline: str) -> None:
        with self._lock:
            self._stats.setdefault(pipeline, PipelinePerf()).failures += 1

    def snapshot(self) -> dict[str, dict[str, float]]:
        now = time.perf_counter()
        with self._lock:
            return {
                pipeline: {
                    "calls_per_second": stat.calls_per_second(now),
                    "latency_ms": stat.latency_ema_ms,
                    "calls": float(stat.calls),
                    "failures": float(stat.failures),
                }
                for pipeline, stat in self._stats.items()
            }
