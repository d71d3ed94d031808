from __future__ import annotations

from typing import List, Optional, Set

import cv2

from .camera_capture import capture_backends, create_capture, probe_capture
from .types import CameraDevice


def probe_device(camera_index: int) -> Optional[CameraDevice]:
    """Describe the camera at ``camera_index`` using the first backend that yields a frame."""
    for backend_name, backend in capture_backends():
        cap = create_capture(camera_index, backend)
        try:
            frame = probe_capture(cap, delay=0.02)
            if frame is None:
                continue
            width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH) or frame.shape[1])
            height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or frame.shape[0])
            fps = float(cap.get(cv2.CAP_PROP_FPS) or 0.0)
        finally:
            cap.release()
        return CameraDevice(
            device_id=camera_index,
            label=f"Camera {camera_index} ({width}x{height}, {backend_name})",
            width=width,
            height=height,
            fps=fps,
            backend=backend_name,
        )
    return None


def discover_cameras(
    max_index: int = 8,
    exclude_indices: Set[int] | None = None,
) -> List[CameraDevice]:
    """Probe capture indices 0..max_index and describe the ones that deliver frames.

    Indices in ``exclude_indices`` are skipped so a device that is already
    open is never grabbed a second time during a rescan.
    """
    excluded = exclude_indices or set()
    cameras: List[CameraDevice] = []
    for camera_index in range(max_index + 1):
        if camera_index in excluded:
            continue
        device = probe_device(camera_index)
        if device is not None:
            cameras.append(device)
    return cameras
