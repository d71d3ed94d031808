from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

ENV_PREFIX = "LIVE_VISION_"


def _env(name: str) -> str | None:
    return os.getenv(ENV_PREFIX + name)


def _int_env(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _path_env(name: str, default: Path) -> Path:
    raw = _env(name)
    if raw is None or not raw.strip():
        return default
    return Path(raw.strip()).expanduser()


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = _path_env("DATA_DIR", BASE_DIR / "data")
LOG_DIR = _path_env("LOG_DIR", BASE_DIR / "logs")
LOG_FORMAT = (_env("LOG_FORMAT") or "text").strip().lower()

DEFAULT_POLL_INTERVAL_MS = 100
DEFAULT_MATCH_THRESHOLD = 0.6
UNKNOWN_LABEL = "unknown"


@dataclass
class LiveVisionSettings:
    # Detection orchestration
    polling_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    match_threshold: float = DEFAULT_MATCH_THRESHOLD
    max_consecutive_failures: int = 25
    auto_start_detection: bool = True

    # Camera
    camera_index: int = 0
    frame_width: int = 640
    frame_height: int = 480
    frame_fps: int = 30
    camera_scan_max_index: int = 8
    read_fail_threshold: int = 4

    # Gallery
    gallery_path: Path = DATA_DIR / "gallery.db"
    gallery_encrypt: bool = False
    gallery_key_path: Path = DATA_DIR / ".gallery.key"

    # Object detector
    object_model: str = "yolov8n.pt"
    object_confidence: float = 0.30
    object_iou: float = 0.45
    object_image_size: int = 640
    object_max_detections: int = 100

    # Face detector / embedder
    face_detection_threshold: float = 0.6
    min_face_size: int = 40
    prefer_gpu: bool = True

    def ensure_directories(self) -> None:
        self.gallery_path.parent.mkdir(parents=True, exist_ok=True)
        if self.gallery_encrypt:
            self.gallery_key_path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls) -> "LiveVisionSettings":
        return cls(
            polling_interval_ms=max(10, _int_env("POLL_INTERVAL_MS", DEFAULT_POLL_INTERVAL_MS)),
            match_threshold=min(2.0, max(0.0, _float_env("MATCH_THRESHOLD", DEFAULT_MATCH_THRESHOLD))),
            max_consecutive_failures=max(0, _int_env("MAX_CONSECUTIVE_FAILURES", 25)),
            auto_start_detection=_bool_env("AUTO_START", True),
            camera_index=max(0, _int_env("CAMERA_INDEX", 0)),
            frame_width=max(160, _int_env("FRAME_WIDTH", 640)),
            frame_height=max(120, _int_env("FRAME_HEIGHT", 480)),
            frame_fps=max(1, _int_env("FRAME_FPS", 30)),
            camera_scan_max_index=max(0, _int_env("CAMERA_SCAN_MAX_INDEX", 8)),
            read_fail_threshold=max(1, _int_env("READ_FAIL_THRESHOLD", 4)),
            gallery_path=_path_env("GALLERY_PATH", DATA_DIR / "gallery.db"),
            gallery_encrypt=_bool_env("GALLERY_ENCRYPT", False),
            gallery_key_path=_path_env("GALLERY_KEY_PATH", DATA_DIR / ".gallery.key"),
            object_model=_env("OBJECT_MODEL") or "yolov8n.pt",
            object_confidence=min(0.95, max(0.05, _float_env("OBJECT_CONFIDENCE", 0.30))),
            object_iou=min(0.95, max(0.1, _float_env("OBJECT_IOU", 0.45))),
            object_image_size=max(256, _int_env("OBJECT_IMAGE_SIZE", 640)),
            object_max_detections=max(1, _int_env("OBJECT_MAX_DETECTIONS", 100)),
            face_detection_threshold=min(0.99, max(0.1, _float_env("FACE_DETECTION_THRESHOLD", 0.6))),
            min_face_size=max(8, _int_env("MIN_FACE_SIZE", 40)),
            prefer_gpu=_bool_env("PREFER_GPU", True),
        )
