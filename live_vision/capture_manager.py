from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Callable, List, Optional

import cv2

from .camera_capture import configure_capture, open_camera_capture
from .camera_discovery import discover_cameras
from .config import LiveVisionSettings
from .exceptions import CaptureError
from .logger import setup_logger
from .types import CameraDevice, Frame


class StreamEvent(str, Enum):
    STARTED = "started"
    STOPPED = "stopped"
    SWITCHED = "switched"


StateListener = Callable[[StreamEvent, "CaptureManager"], None]


class CaptureManager:
    """Owns the single active camera stream and acts as the live frame source.

    All device handle access goes through ``capture_lock``. A new handle is
    only requested after the previous one has been released, so two devices
    are never held open at the same time. State listeners are always invoked
    outside the lock.
    """

    def __init__(
        self,
        frame_width: int = 640,
        frame_height: int = 480,
        frame_fps: int = 30,
        default_device_id: Optional[int] = None,
        scan_max_index: int = 8,
        read_fail_threshold: int = 4,
        opener: Callable[[int], tuple] = open_camera_capture,
        discoverer: Callable[..., List[CameraDevice]] = discover_cameras,
    ) -> None:
        self.frame_width = frame_width
        self.frame_height = frame_height
        self.frame_fps = frame_fps
        self.scan_max_index = scan_max_index
        self.read_fail_threshold = max(1, int(read_fail_threshold))
        self._opener = opener
        self._discoverer = discoverer
        self.logger = setup_logger(self.__class__.__name__)

        self.capture_lock = threading.Lock()
        self._listeners: List[StateListener] = []
        self._cap = None
        self._streaming = False
        self._backend_name: Optional[str] = None
        self._active_device_id: Optional[int] = None
        self._selected_device_id = default_device_id
        self._devices: List[CameraDevice] = []
        self._session_id = 0
        self._frame_counter = 0
        self._read_fail_streak = 0
        self._profile: tuple[int, int, int] = (frame_width, frame_height, frame_fps)
        self.last_error: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: LiveVisionSettings, **kwargs) -> "CaptureManager":
        return cls(
            frame_width=settings.frame_width,
            frame_height=settings.frame_height,
            frame_fps=settings.frame_fps,
            default_device_id=settings.camera_index,
            scan_max_index=settings.camera_scan_max_index,
            read_fail_threshold=settings.read_fail_threshold,
            **kwargs,
        )

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    @property
    def active_device_id(self) -> Optional[int]:
        return self._active_device_id

    @property
    def selected_device_id(self) -> Optional[int]:
        return self._selected_device_id

    @property
    def session_id(self) -> int:
        return self._session_id

    @property
    def backend_name(self) -> Optional[str]:
        return self._backend_name

    @property
    def profile(self) -> tuple[int, int, int]:
        return self._profile

    @property
    def devices(self) -> List[CameraDevice]:
        return list(self._devices)

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def list_devices(self) -> List[CameraDevice]:
        active = self._active_device_id
        exclude = {active} if active is not None else set()
        try:
            found = list(self._discoverer(max_index=self.scan_max_index, exclude_indices=exclude))
        except Exception as exc:
            self.logger.warning("Camera enumeration unavailable: %s", exc)
            return []

        # The open device is excluded from probing; keep its last known descriptor.
        if active is not None and all(device.device_id != active for device in found):
            previous = next((device for device in self._devices if device.device_id == active), None)
            found.append(previous or CameraDevice(device_id=active, label=f"Camera {active}"))
        found.sort(key=lambda device: device.device_id)

        self._devices = found
        if self._selected_device_id is None and found:
            self._selected_device_id = found[0].device_id
        self.logger.info("Found %d camera device(s)", len(found))
        return list(found)

    def start(self, device_id: Optional[int] = None) -> "CaptureManager":
        error: Optional[CaptureError] = None
        with self.capture_lock:
            target = device_id if device_id is not None else self._selected_device_id
            if target is None:
                target = 0
            was_streaming = self._streaming
            self._release_locked()
            try:
                self._open_locked(target)
            except CaptureError as exc:
                self._streaming = False
                self.last_error = str(exc)
                error = exc
            else:
                self._streaming = True
                self._session_id += 1

        if error is not None:
            self.logger.error("Camera start failed: %s", error)
            if was_streaming:
                self._notify(StreamEvent.STOPPED)
            raise error

        self._notify(StreamEvent.STARTED)
        return self

    def stop(self) -> bool:
        with self.capture_lock:
            if not self._streaming and self._cap is None:
                return False
            self._release_locked()
            self._streaming = False
        self.logger.info("Camera stream stopped")
        self._notify(StreamEvent.STOPPED)
        return True

    def switch(self, device_id: int) -> bool:
        """Move the active stream to ``device_id``.

        Without an active stream this only records the selection and returns
        False. ``is_streaming`` stays True throughout a successful switch.
        """
        error: Optional[CaptureError] = None
        with self.capture_lock:
            self._selected_device_id = device_id
            if not self._streaming:
                return False
            if device_id == self._active_device_id and self._cap is not None:
                return True
            previous = self._active_device_id
            self._release_locked()
            try:
                self._open_locked(device_id)
            except CaptureError as exc:
                self._streaming = False
                self.last_error = str(exc)
                error = exc

        if error is not None:
            self.logger.error("Camera switch from %s to %s failed: %s", previous, device_id, error)
            self._notify(StreamEvent.STOPPED)
            raise error

        self.logger.info("Camera stream switched from %s to %s", previous, device_id)
        self._notify(StreamEvent.SWITCHED)
        return True

    def read_frame(self) -> Optional[Frame]:
        """Return the latest frame, or None when nothing is available this tick.

        Raises CaptureError once ``read_fail_threshold`` consecutive reads have
        failed; the stream is torn down before the error propagates.
        """
        with self.capture_lock:
            cap = self._cap
            if cap is None:
                return None
            try:
                ok, image = cap.read()
            except cv2.error:
                ok, image = False, None

            if ok and image is not None:
                self._read_fail_streak = 0
                self._frame_counter += 1
                return Frame(frame_id=self._frame_counter, timestamp=time.monotonic(), image=image)

            self._read_fail_streak += 1
            if self._read_fail_streak < self.read_fail_threshold:
                return None

            message = (
                f"Camera {self._active_device_id} disconnected: "
                f"{self._read_fail_streak} consecutive frame reads failed."
            )
            self._release_locked()
            self._streaming = False
            self.last_error = message

        self.logger.error(message)
        self._notify(StreamEvent.STOPPED)
        raise CaptureError(message)

    def close(self) -> None:
        self.stop()

    def _open_locked(self, device_id: int) -> None:
        try:
            cap, backend_name = self._opener(device_id)
        except CaptureError:
            raise
        except Exception as exc:
            raise CaptureError(f"Unable to open camera {device_id}: {exc}") from exc

        try:
            width, height, fps = configure_capture(cap, self.frame_width, self.frame_height, self.frame_fps)
        except Exception as exc:
            cap.release()
            raise CaptureError(f"Unable to configure camera {device_id}: {exc}") from exc

        cv2.setUseOptimized(True)
        self._cap = cap
        self._backend_name = backend_name
        self._active_device_id = device_id
        self._selected_device_id = device_id
        self._read_fail_streak = 0
        self._profile = (width, height, fps)
        self.last_error = None
        self.logger.info(
            "Camera stream set to device %s via %s backend (%sx%s @ %s FPS)",
            device_id,
            backend_name,
            width,
            height,
            fps,
        )

    def _release_locked(self) -> None:
        cap = self._cap
        self._cap = None
        self._active_device_id = None
        self._backend_name = None
        if cap is not None:
            cap.release()

    def _notify(self, event: StreamEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, self)
            except Exception:
                self.logger.exception("Stream listener failed for %s event", event.value)
