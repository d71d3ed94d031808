from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Sequence, Tuple

from .logger import setup_logger
from .metrics import PerformanceTracker
from .types import Frame


class PipelineState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"


class FrameSource(Protocol):
    def read_frame(self) -> Optional[Frame]:
        ...


@dataclass(frozen=True)
class PipelineStatus:
    name: str
    state: PipelineState
    results: Tuple[Any, ...]
    frame_id: Optional[int]
    last_error: Optional[str]
    consecutive_failures: int
    skipped_ticks: int
    completed_calls: int
    in_flight: bool


class DetectionPipeline:
    """One independently scheduled poll-and-publish loop.

    A timer thread fires ``tick`` every interval. A tick hands the inference
    call to a single-worker executor unless a previous call is still running,
    in which case the tick is dropped. Every stop bumps the generation so that
    completions issued before the stop are discarded instead of published.
    """

    def __init__(
        self,
        name: str,
        infer: Callable[[Frame], Sequence[Any]],
        max_consecutive_failures: int = 25,
        metrics: Optional[PerformanceTracker] = None,
        on_change: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.name = name
        self._infer = infer
        self.max_consecutive_failures = max(0, int(max_consecutive_failures))
        self.metrics = metrics
        self._on_change = on_change
        self.logger = setup_logger(f"{self.__class__.__name__}.{name}")

        self._lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{name}-inference")
        self._closed = False

        self._state = PipelineState.IDLE
        self._generation = 0
        self._frame_source: Optional[FrameSource] = None
        self._interval = 0.1
        self._stop_event: Optional[threading.Event] = None
        self._timer: Optional[threading.Thread] = None
        self._in_flight = False

        self._results: Tuple[Any, ...] = ()
        self._frame_id: Optional[int] = None
        self._last_error: Optional[str] = None
        self._consecutive_failures = 0
        self._skipped_ticks = 0
        self._completed_calls = 0

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def is_polling(self) -> bool:
        return self._state is PipelineState.POLLING

    @property
    def results(self) -> Tuple[Any, ...]:
        return self._results

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def skipped_ticks(self) -> int:
        return self._skipped_ticks

    def status(self) -> PipelineStatus:
        with self._lock:
            return PipelineStatus(
                name=self.name,
                state=self._state,
                results=self._results,
                frame_id=self._frame_id,
                last_error=self._last_error,
                consecutive_failures=self._consecutive_failures,
                skipped_ticks=self._skipped_ticks,
                completed_calls=self._completed_calls,
                in_flight=self._in_flight,
            )

    def start(self, frame_source: FrameSource, interval_ms: int = 100) -> None:
        interval = max(1, int(interval_ms)) / 1000.0
        stop_event = threading.Event()
        with self._lock:
            if self._closed:
                raise RuntimeError(f"{self.name} pipeline is closed.")
            restarted = self._state is PipelineState.POLLING
            previous_event = self._stop_event
            self._state = PipelineState.POLLING
            self._frame_source = frame_source
            self._interval = interval
            self._last_error = None
            self._consecutive_failures = 0
            self._stop_event = stop_event
            self._timer = threading.Thread(
                target=self._run_timer,
                args=(stop_event, interval),
                name=f"{self.name}-poller",
                daemon=True,
            )
            timer = self._timer

        # An in-flight call keeps ``_in_flight`` set across a restart, so the
        # new timer cannot overlap it.
        if previous_event is not None:
            previous_event.set()
        timer.start()
        if restarted:
            self.logger.info("%s detection restarted (interval %.0f ms)", self.name, interval * 1000.0)
        else:
            self.logger.info("%s detection started (interval %.0f ms)", self.name, interval * 1000.0)

    def stop(self) -> bool:
        with self._lock:
            was_polling = self._state is PipelineState.POLLING
            had_results = bool(self._results)
            self._state = PipelineState.IDLE
            self._generation += 1
            self._results = ()
            self._frame_id = None
            self._frame_source = None
            stop_event = self._stop_event
            timer = self._timer
            self._stop_event = None
            self._timer = None

        if stop_event is not None:
            stop_event.set()
        if timer is not None and timer is not threading.current_thread():
            timer.join(timeout=1.0)
        if was_polling:
            self.logger.info("%s detection stopped", self.name)
        if was_polling or had_results:
            self._notify()
        return was_polling

    def close(self) -> None:
        self.stop()
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=False)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self._idle.wait(timeout)

    def tick(self) -> bool:
        """Issue one inference call. Returns False when the tick was a no-op."""
        with self._lock:
            if self._state is not PipelineState.POLLING or self._closed:
                return False
            if self._in_flight:
                self._skipped_ticks += 1
                return False
            self._in_flight = True
            self._idle.clear()
            generation = self._generation
            source = self._frame_source

        try:
            self._executor.submit(self._run_call, generation, source)
        except RuntimeError:
            self._finish_call()
            return False
        return True

    def _run_timer(self, stop_event: threading.Event, interval: float) -> None:
        while not stop_event.wait(interval):
            self.tick()

    def _run_call(self, generation: int, source: FrameSource) -> None:
        try:
            self._execute(generation, source)
        finally:
            self._finish_call()

    def _finish_call(self) -> None:
        with self._lock:
            self._in_flight = False
            self._idle.set()

    def _execute(self, generation: int, source: FrameSource) -> None:
        try:
            frame = source.read_frame()
            if frame is None:
                return
            with self._lock:
                if generation != self._generation or self._state is not PipelineState.POLLING:
                    return
            started = time.perf_counter()
            items = tuple(self._infer(frame))
            latency_ms = (time.perf_counter() - started) * 1000.0
        except Exception as exc:
            self._record_failure(generation, exc)
            return
        self._publish(generation, frame, items, latency_ms)

    def _publish(self, generation: int, frame: Frame, items: Tuple[Any, ...], latency_ms: float) -> None:
        with self._lock:
            if generation != self._generation or self._state is not PipelineState.POLLING:
                discarded = True
            else:
                discarded = False
                self._results = items
                self._frame_id = frame.frame_id
                self._last_error = None
                self._consecutive_failures = 0
                self._completed_calls += 1

        if discarded:
            self.logger.debug("%s result for frame %s discarded after stop", self.name, frame.frame_id)
            return
        if self.metrics is not None:
            self.metrics.update(self.name, latency_ms)
        self._notify()

    def _record_failure(self, generation: int, exc: Exception) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._consecutive_failures += 1
            self._last_error = str(exc)
            failures = self._consecutive_failures
            limit_reached = 0 < self.max_consecutive_failures <= failures

        if self.metrics is not None:
            self.metrics.record_failure(self.name)
        self.logger.warning("%s detection tick failed (%d in a row): %s", self.name, failures, exc)
        if limit_reached:
            self.logger.error(
                "%s detection stopped after %d consecutive failures",
                self.name,
                failures,
            )
            self.stop()
        else:
            self._notify()

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.name)
        except Exception:
            self.logger.exception("%s change listener failed", self.name)
