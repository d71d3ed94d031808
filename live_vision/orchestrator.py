from __future__ import annotations

import threading
from concurrent.futures import Future
from enum import Enum
from typing import Callable, List, Optional, Sequence, Union

import numpy as np

from .capture_manager import CaptureManager, StreamEvent
from .config import DEFAULT_POLL_INTERVAL_MS
from .exceptions import FaceEngineError, ModelUnavailable
from .gallery import IdentityGallery
from .inference_port import FaceEmbedder, InferencePort, ObjectDetector
from .logger import setup_logger
from .matcher import IdentityMatcher, match_embedding
from .metrics import PerformanceTracker
from .pipeline import DetectionPipeline, FrameSource
from .types import DetectionSnapshot, FaceObservation, Frame, ObjectDetection, RecognizedFace


class PipelineKind(str, Enum):
    OBJECT = "object"
    FACE = "face"


SnapshotListener = Callable[[DetectionSnapshot], None]


class DetectionOrchestrator:
    """Drives the object and face pipelines against the live frame source.

    Detection is started automatically once per stream session, as soon as the
    stream is active and both models are ready. A manual stop holds until the
    next session. Both pipelines stop whenever the stream stops.
    """

    def __init__(
        self,
        capture: CaptureManager,
        object_port: InferencePort[ObjectDetector],
        face_port: InferencePort[FaceEmbedder],
        gallery: IdentityGallery,
        interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        max_consecutive_failures: int = 25,
        metrics: Optional[PerformanceTracker] = None,
        auto_start: bool = True,
    ) -> None:
        self.capture = capture
        self.object_port = object_port
        self.face_port = face_port
        self.gallery = gallery
        self.interval_ms = int(interval_ms)
        self.auto_start = auto_start
        self.logger = setup_logger(self.__class__.__name__)

        self._lock = threading.Lock()
        self._listeners: List[SnapshotListener] = []
        self._auto_started_session: Optional[int] = None
        self._closed = False
        self._mismatch_reported: Optional[IdentityMatcher] = None

        self.object_pipeline = DetectionPipeline(
            PipelineKind.OBJECT.value,
            self._detect_objects,
            max_consecutive_failures=max_consecutive_failures,
            metrics=metrics,
            on_change=self._on_pipeline_change,
        )
        self.face_pipeline = DetectionPipeline(
            PipelineKind.FACE.value,
            self._recognize_faces,
            max_consecutive_failures=max_consecutive_failures,
            metrics=metrics,
            on_change=self._on_pipeline_change,
        )

        self.capture.add_state_listener(self._on_stream_event)
        self.object_port.ready.add_done_callback(self._on_port_ready)
        self.face_port.ready.add_done_callback(self._on_port_ready)

    def pipeline(self, kind: Union[PipelineKind, str]) -> DetectionPipeline:
        if PipelineKind(kind) is PipelineKind.OBJECT:
            return self.object_pipeline
        return self.face_pipeline

    def _port(self, kind: Union[PipelineKind, str]) -> InferencePort:
        if PipelineKind(kind) is PipelineKind.OBJECT:
            return self.object_port
        return self.face_port

    @property
    def is_detecting(self) -> bool:
        return self.object_pipeline.is_polling or self.face_pipeline.is_polling

    @property
    def models_ready(self) -> bool:
        return self.object_port.is_ready and self.face_port.is_ready

    def start_pipeline(
        self,
        kind: Union[PipelineKind, str],
        frame_source: Optional[FrameSource] = None,
        interval_ms: Optional[int] = None,
    ) -> None:
        self._port(kind).get()
        self.pipeline(kind).start(
            frame_source if frame_source is not None else self.capture,
            interval_ms if interval_ms is not None else self.interval_ms,
        )

    def stop_pipeline(self, kind: Union[PipelineKind, str]) -> bool:
        return self.pipeline(kind).stop()

    def start_detection(
        self,
        frame_source: Optional[FrameSource] = None,
        interval_ms: Optional[int] = None,
    ) -> None:
        # Check both models up front so a failure never leaves one pipeline running alone.
        self.object_port.get()
        self.face_port.get()
        for kind in PipelineKind:
            self.start_pipeline(kind, frame_source=frame_source, interval_ms=interval_ms)

    def stop_detection(self) -> None:
        for kind in PipelineKind:
            self.stop_pipeline(kind)

    def current_detections(self) -> DetectionSnapshot:
        objects = self.object_pipeline.status()
        faces = self.face_pipeline.status()
        return DetectionSnapshot(
            objects=objects.results,
            faces=faces.results,
            object_state=objects.state.value,
            face_state=faces.state.value,
            object_frame_id=objects.frame_id,
            face_frame_id=faces.frame_id,
            object_error=objects.last_error,
            face_error=faces.last_error,
        )

    def add_listener(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self.capture.remove_state_listener(self._on_stream_event)
        self.object_pipeline.close()
        self.face_pipeline.close()

    def _detect_objects(self, frame: Frame) -> List[ObjectDetection]:
        return self.object_port.get().detect(frame.image)

    def _recognize_faces(self, frame: Frame) -> List[RecognizedFace]:
        observations = self.face_port.get().detect_faces(frame.image)
        # One gallery snapshot per tick: identities and matcher always agree.
        matcher = self.gallery.snapshot().matcher
        if matcher is not None:
            self._check_dimension(matcher, observations)
        return [
            RecognizedFace.from_match(observation, match_embedding(matcher, observation.embedding))
            for observation in observations
        ]

    def _check_dimension(self, matcher: IdentityMatcher, observations: Sequence[FaceObservation]) -> None:
        for observation in observations:
            size = int(np.asarray(observation.embedding).size)
            if size == matcher.dimension:
                continue
            message = (
                f"Stored gallery embeddings have {matcher.dimension} dimensions but the face model "
                f"produces {size}. Remove and re-enroll the stored identities."
            )
            # Logged once per gallery snapshot; every tick still fails.
            if self._mismatch_reported is not matcher:
                self._mismatch_reported = matcher
                self.logger.error(message)
            raise FaceEngineError(message)

    def _on_stream_event(self, event: StreamEvent, capture: CaptureManager) -> None:
        if event is StreamEvent.STOPPED:
            self.stop_detection()
        elif event is StreamEvent.STARTED:
            self._maybe_auto_start()

    def _on_port_ready(self, future: Future) -> None:
        self._maybe_auto_start()

    def _maybe_auto_start(self) -> bool:
        if not self.auto_start:
            return False
        with self._lock:
            if self._closed:
                return False
            if not self.capture.is_streaming or not self.models_ready:
                return False
            session = self.capture.session_id
            if self._auto_started_session == session:
                return False
            self._auto_started_session = session

        self.logger.info("Auto-starting detection for stream session %d", session)
        try:
            self.start_detection()
        except ModelUnavailable as exc:
            self.logger.warning("Auto-start skipped: %s", exc)
            return False
        return True

    def _on_pipeline_change(self, name: str) -> None:
        if not self._listeners:
            return
        snapshot = self.current_detections()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                self.logger.exception("Detection listener failed")
