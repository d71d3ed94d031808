from __future__ import annotations

from typing import Dict, List, Optional

from .capture_manager import CaptureManager
from .config import LiveVisionSettings
from .exceptions import CaptureError
from .gallery import IdentityGallery, SampleImage
from .gallery_store import EmbeddingCipher, GalleryStore
from .inference_port import FaceEmbedder, InferencePort, ObjectDetector
from .logger import setup_logger
from .metrics import PerformanceTracker
from .orchestrator import DetectionOrchestrator
from .types import CameraDevice, DetectionSnapshot, Identity


def _object_detector_loader(settings: LiveVisionSettings):
    def load() -> ObjectDetector:
        from .object_detector import YoloV8Detector

        return YoloV8Detector.from_settings(settings)

    return load


def _face_engine_loader(settings: LiveVisionSettings):
    def load() -> FaceEmbedder:
        from .face_engine import FaceEngine

        return FaceEngine.from_settings(settings)

    return load


class LiveVisionRuntime:
    """Application shell: one camera stream, two detection pipelines and the gallery.

    Every command either returns a plain value or raises a LiveVisionError
    subclass carrying a user-facing message.
    """

    def __init__(
        self,
        settings: LiveVisionSettings,
        capture: CaptureManager,
        object_port: InferencePort[ObjectDetector],
        face_port: InferencePort[FaceEmbedder],
        gallery: IdentityGallery,
        metrics: Optional[PerformanceTracker] = None,
    ) -> None:
        self.settings = settings
        self.capture = capture
        self.object_port = object_port
        self.face_port = face_port
        self.gallery = gallery
        self.metrics = metrics or PerformanceTracker()
        self.logger = setup_logger(self.__class__.__name__)
        self.orchestrator = DetectionOrchestrator(
            capture=capture,
            object_port=object_port,
            face_port=face_port,
            gallery=gallery,
            interval_ms=settings.polling_interval_ms,
            max_consecutive_failures=settings.max_consecutive_failures,
            metrics=self.metrics,
            auto_start=settings.auto_start_detection,
        )

    @classmethod
    def from_settings(cls, settings: Optional[LiveVisionSettings] = None) -> "LiveVisionRuntime":
        settings = settings or LiveVisionSettings.from_env()
        settings.ensure_directories()

        cipher = EmbeddingCipher(settings.gallery_key_path) if settings.gallery_encrypt else None
        store = GalleryStore(settings.gallery_path, cipher=cipher)
        face_port: InferencePort[FaceEmbedder] = InferencePort("face", _face_engine_loader(settings))
        object_port: InferencePort[ObjectDetector] = InferencePort("object", _object_detector_loader(settings))
        return cls(
            settings=settings,
            capture=CaptureManager.from_settings(settings),
            object_port=object_port,
            face_port=face_port,
            gallery=IdentityGallery(store, face_port, threshold=settings.match_threshold),
        )

    def start(self) -> None:
        self.gallery.load()
        self.object_port.load()
        self.face_port.load()
        self.capture.list_devices()
        self.logger.info("Live vision runtime started")

    def close(self) -> None:
        self.orchestrator.close()
        self.capture.close()
        self.logger.info("Live vision runtime stopped")

    # Camera commands

    def list_devices(self) -> List[CameraDevice]:
        return self.capture.list_devices()

    def start_camera(self, device_id: Optional[int] = None) -> None:
        self.capture.start(device_id)

    def stop_camera(self) -> bool:
        return self.capture.stop()

    def switch_camera(self, device_id: int) -> bool:
        return self.capture.switch(device_id)

    # Detection commands

    def start_detection(self) -> None:
        if not self.capture.is_streaming:
            raise CaptureError("Please start the camera first.")
        self.orchestrator.start_detection()

    def stop_detection(self) -> None:
        self.orchestrator.stop_detection()

    def toggle_detection(self) -> bool:
        """Flip detection on or off. Returns True when detection is now running."""
        if self.orchestrator.is_detecting:
            self.stop_detection()
            return False
        self.start_detection()
        return True

    # Enrollment

    def enroll(self, name: str, image: SampleImage) -> Identity:
        return self.gallery.enroll(name, image)

    def enroll_from_camera(self, name: str) -> Identity:
        if not self.capture.is_streaming:
            raise CaptureError("Camera is not running. Start the camera to capture a face.")
        frame = self.capture.read_frame()
        if frame is None:
            raise CaptureError("Could not capture a frame from the camera. Please try again.")
        return self.gallery.enroll(name, frame.image.copy())

    def remove(self, name: str) -> bool:
        return self.gallery.remove(name)

    # Queries

    def known_faces(self) -> List[Dict[str, object]]:
        return self.gallery.summary()

    def current_detections(self) -> DetectionSnapshot:
        return self.orchestrator.current_detections()

    def status(self) -> dict:
        snapshot = self.current_detections()
        width, height, fps = self.capture.profile
        return {
            "models": {
                "object": self.object_port.status,
                "face": self.face_port.status,
            },
            "model_errors": {
                "object": self.object_port.error,
                "face": self.face_port.error,
            },
            "streaming": self.capture.is_streaming,
            "device_id": self.capture.active_device_id,
            "selected_device_id": self.capture.selected_device_id,
            "camera_backend": self.capture.backend_name,
            "camera_profile": {"width": width, "height": height, "fps": fps},
            "camera_error": self.capture.last_error,
            "known_count": len(self.gallery.identities),
            "detecting": self.orchestrator.is_detecting,
            "pipelines": {
                "object": {"state": snapshot.object_state, "error": snapshot.object_error},
                "face": {"state": snapshot.face_state, "error": snapshot.face_error},
            },
            "object_count": len(snapshot.objects),
            "face_count": len(snapshot.faces),
            "known_face_count": snapshot.known_face_count,
            "total_detections": snapshot.total_detections,
            "performance": self.metrics.snapshot(),
        }
