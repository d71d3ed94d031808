import os
import tempfile
import threading
import time

os.environ.setdefault("LIVE_VISION_LOG_DIR", tempfile.mkdtemp(prefix="live-vision-logs-"))

import numpy as np
import pytest

from live_vision.capture_manager import CaptureManager
from live_vision.exceptions import CaptureError
from live_vision.gallery import IdentityGallery
from live_vision.gallery_store import GalleryStore
from live_vision.inference_port import InferencePort
from live_vision.types import CameraDevice, FaceObservation, Frame, ObjectDetection

# Never fires during a test; ticks are driven by hand.
MANUAL_INTERVAL_MS = 60_000


def wait_until(predicate, timeout=2.0, interval=0.005):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def unit_vector(dim, index, scale=1.0):
    vector = np.zeros(dim, dtype=np.float32)
    vector[index] = scale
    return vector


def blank_image(width=64, height=48):
    return np.zeros((height, width, 3), dtype=np.uint8)


class FakeCapture:
    """Stands in for cv2.VideoCapture."""

    def __init__(self, device_id, registry):
        self.device_id = device_id
        self.registry = registry
        self.released = False
        self.fail_reads = False

    def isOpened(self):
        return not self.released

    def read(self):
        if self.released or self.fail_reads:
            return False, None
        return True, blank_image()

    def set(self, prop, value):
        return True

    def get(self, prop):
        return 0

    def release(self):
        if not self.released:
            self.released = True
            self.registry.open_handles.discard(self.device_id)


class FakeCameraRegistry:
    """Opener and discoverer for CaptureManager that never touches real hardware."""

    def __init__(self, device_ids=(0, 1)):
        self.device_ids = list(device_ids)
        self.unavailable = set()
        self.open_handles = set()
        self.max_open = 0
        self.handles = []
        self.discover_error = None
        self.discover_calls = []

    def open(self, device_id):
        if device_id not in self.device_ids or device_id in self.unavailable:
            raise CaptureError(f"Unable to open camera {device_id}.")
        handle = FakeCapture(device_id, self)
        self.open_handles.add(device_id)
        self.max_open = max(self.max_open, len(self.open_handles))
        self.handles.append(handle)
        return handle, "Fake"

    def discover(self, max_index=8, exclude_indices=None):
        self.discover_calls.append(set(exclude_indices or ()))
        if self.discover_error is not None:
            raise self.discover_error
        excluded = exclude_indices or set()
        return [
            CameraDevice(device_id=device_id, label=f"Camera {device_id}", backend="Fake")
            for device_id in self.device_ids
            if device_id not in excluded
        ]

    @property
    def current(self):
        return self.handles[-1]


class GatedModel:
    """Records calls and can hold them in flight until ``release`` is called."""

    def __init__(self):
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.error = None
        self.gated = False
        self.entered = threading.Event()
        self._gate = threading.Event()
        self._lock = threading.Lock()

    def hold(self):
        self.gated = True
        self._gate.clear()
        self.entered.clear()

    def release(self):
        self.gated = False
        self._gate.set()

    def _enter(self):
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.entered.set()
        try:
            if self.gated:
                self._gate.wait(timeout=5.0)
            if self.error is not None:
                raise self.error
        finally:
            with self._lock:
                self.active -= 1


class FakeObjectDetector(GatedModel):
    def __init__(self, detections=None):
        super().__init__()
        self.detections = list(detections or [ObjectDetection("person", 0.9, (1, 2, 10, 20), 0)])

    def detect(self, image):
        self._enter()
        return list(self.detections)


class FakeFaceEmbedder(GatedModel):
    def __init__(self, embeddings=None):
        super().__init__()
        self.embeddings = list(embeddings or [])

    def detect_faces(self, image):
        self._enter()
        return [
            FaceObservation(bbox=(4 * i, 4, 16, 16), embedding=np.asarray(vector, dtype=np.float32), score=0.95)
            for i, vector in enumerate(self.embeddings)
        ]


class CountingFrameSource:
    def __init__(self):
        self.frame_id = 0
        self.exhausted = False

    def read_frame(self):
        if self.exhausted:
            return None
        self.frame_id += 1
        return Frame(frame_id=self.frame_id, timestamp=time.monotonic(), image=blank_image())


@pytest.fixture
def cameras():
    return FakeCameraRegistry()


@pytest.fixture
def capture(cameras):
    manager = CaptureManager(
        default_device_id=0,
        read_fail_threshold=3,
        opener=cameras.open,
        discoverer=cameras.discover,
    )
    yield manager
    manager.close()


@pytest.fixture
def face_model():
    return FakeFaceEmbedder()


@pytest.fixture
def object_model():
    return FakeObjectDetector()


@pytest.fixture
def face_port(face_model):
    return InferencePort.from_model("face", face_model)


@pytest.fixture
def object_port(object_model):
    return InferencePort.from_model("object", object_model)


@pytest.fixture
def store(tmp_path):
    return GalleryStore(tmp_path / "gallery.db")


@pytest.fixture
def gallery(store, face_port):
    instance = IdentityGallery(store, face_port, threshold=0.6)
    instance.load()
    return instance
