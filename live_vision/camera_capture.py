from __future__ import annotations

import os
import time
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .exceptions import CaptureError

BACKEND_ORDER_ENV = "LIVE_VISION_CAMERA_BACKEND_ORDER"

_BACKEND_ALIASES = {
    "auto": "Auto",
    "any": "Auto",
    "v4l2": "V4L2",
    "dshow": "DirectShow",
    "directshow": "DirectShow",
    "msmf": "Media Foundation",
    "mediafoundation": "Media Foundation",
    "media foundation": "Media Foundation",
}
_BACKEND_CONSTANTS = {
    "Auto": "CAP_ANY",
    "V4L2": "CAP_V4L2",
    "DirectShow": "CAP_DSHOW",
    "Media Foundation": "CAP_MSMF",
}

Backend = Tuple[str, Optional[int]]


def _default_backend_order() -> List[str]:
    # DirectShow is the most reliable choice for Windows webcams.
    if os.name == "nt":
        return ["DirectShow", "Media Foundation", "Auto"]
    return ["Auto", "V4L2"]


def _preferred_backend_order() -> List[str]:
    raw = os.getenv(BACKEND_ORDER_ENV, "")
    names: List[str] = []
    for token in raw.split(","):
        name = _BACKEND_ALIASES.get(token.strip().lower())
        if name and name not in names:
            names.append(name)
    return names or _default_backend_order()


def capture_backends() -> List[Backend]:
    """OpenCV capture APIs to try, in order, without duplicates."""
    candidates: List[Backend] = []
    seen: set[Optional[int]] = set()
    for name in _preferred_backend_order():
        backend = getattr(cv2, _BACKEND_CONSTANTS[name], None)
        if backend not in seen:
            seen.add(backend)
            candidates.append((name, backend))
    return candidates


def create_capture(camera_index: int, backend: Optional[int]) -> cv2.VideoCapture:
    if backend is None:
        return cv2.VideoCapture(camera_index)
    return cv2.VideoCapture(camera_index, backend)


def probe_capture(cap: cv2.VideoCapture, attempts: int = 6, delay: float = 0.03) -> Optional[np.ndarray]:
    """Return the first frame the handle delivers, or None."""
    if not cap.isOpened():
        return None
    for _ in range(attempts):
        ok, frame = cap.read()
        if ok and frame is not None:
            return frame
        time.sleep(delay)
    return None


def open_camera_capture(camera_index: int) -> tuple[cv2.VideoCapture, str]:
    attempted: List[str] = []
    for backend_name, backend in capture_backends():
        attempted.append(backend_name)
        cap = create_capture(camera_index, backend)
        # Some backends report opened=True but never deliver frames.
        if probe_capture(cap) is not None:
            return cap, backend_name
        cap.release()

    raise CaptureError(
        f"Unable to open camera {camera_index}. The device may be unavailable or access was denied. "
        f"Tried backends: {', '.join(attempted) or 'none'}."
    )


def configure_capture(cap: cv2.VideoCapture, width: int, height: int, fps: int) -> tuple[int, int, int]:
    """Request a capture profile and report what the driver actually granted."""
    requested = {
        cv2.CAP_PROP_FRAME_WIDTH: width,
        cv2.CAP_PROP_FRAME_HEIGHT: height,
        cv2.CAP_PROP_FPS: fps,
    }
    for prop, value in requested.items():
        cap.set(prop, value)

    granted = {prop: cap.get(prop) or value for prop, value in requested.items()}
    actual_fps = int(round(granted[cv2.CAP_PROP_FPS]))
    return (
        int(granted[cv2.CAP_PROP_FRAME_WIDTH]),
        int(granted[cv2.CAP_PROP_FRAME_HEIGHT]),
        actual_fps if actual_fps > 0 else fps,
    )
