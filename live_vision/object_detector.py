from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Sequence

import numpy as np
import torch

from .config import LiveVisionSettings
from .exceptions import DetectorError
from .types import ObjectDetection

try:
    from ultralytics import YOLO
except ImportError:  # pragma: no cover - handled at runtime.
    YOLO = None


def _class_label(names: Any, class_id: int) -> str:
    if isinstance(names, dict):
        return str(names.get(class_id, class_id))
    if isinstance(names, (list, tuple)) and 0 <= class_id < len(names):
        return str(names[class_id])
    return str(class_id)


class YoloV8Detector:
    """Object detector port backed by an ultralytics YOLOv8 checkpoint."""

    def __init__(
        self,
        model_path: str | Path = "yolov8n.pt",
        prefer_gpu: bool = True,
        conf_threshold: float = 0.30,
        iou_threshold: float = 0.45,
        classes: Optional[Sequence[int]] = None,
        img_size: int = 640,
        max_detections: int = 100,
    ) -> None:
        if YOLO is None:
            raise DetectorError("ultralytics is not installed. Install it with: pip install ultralytics")

        self.model_path = str(model_path)
        self.conf_threshold = conf_threshold
        self.iou_threshold = iou_threshold
        self.classes = list(classes) if classes else None
        self.img_size = img_size
        self.max_detections = max_detections

        self._use_cuda = bool(prefer_gpu and torch.cuda.is_available())
        self._device = "cuda:0" if self._use_cuda else "cpu"

        try:
            self.model = YOLO(self.model_path)
        except Exception as exc:
            raise DetectorError(f"Could not load YOLO weights '{self.model_path}': {exc}") from exc

    @classmethod
    def from_settings(cls, settings: LiveVisionSettings) -> "YoloV8Detector":
        return cls(
            model_path=settings.object_model,
            prefer_gpu=settings.prefer_gpu,
            conf_threshold=settings.object_confidence,
            iou_threshold=settings.object_iou,
            img_size=settings.object_image_size,
            max_detections=settings.object_max_detections,
        )

    @property
    def device_name(self) -> str:
        if self._use_cuda:
            return f"cuda ({torch.cuda.get_device_name(0)})"
        return "cpu"

    @property
    def model_name(self) -> str:
        return Path(self.model_path).name

    def detect(self, image: np.ndarray) -> list[ObjectDetection]:
        try:
            results = self.model.predict(
                source=image,
                conf=self.conf_threshold,
                iou=self.iou_threshold,
                classes=self.classes,
                imgsz=self.img_size,
                max_det=self.max_detections,
                device=self._device,
                half=self._use_cuda,
                verbose=False,
            )
        except Exception as exc:
            raise DetectorError(f"Object detection failed: {exc}") from exc

        if not results or results[0].boxes is None:
            return []

        result = results[0]
        height, width = image.shape[:2]
        detections: list[ObjectDetection] = []
        for box in result.boxes:
            detection = self._to_detection(box, result.names, width, height)
            if detection is not None:
                detections.append(detection)
        return detections

    @staticmethod
    def _to_detection(box: Any, names: Any, width: int, height: int) -> Optional[ObjectDetection]:
        left, top, right, bottom = (int(round(value)) for value in box.xyxy[0].tolist())
        left, top = max(0, left), max(0, top)
        right, bottom = min(width, right), min(height, bottom)
        # Boxes that collapse after clipping to the frame are dropped.
        if right <= left or bottom <= top:
            return None

        class_id = int(box.cls.item())
        return ObjectDetection(
            label=_class_label(names, class_id),
            confidence=min(1.0, max(0.0, float(box.conf.item()))),
            bbox=(left, top, right - left, bottom - top),
            class_id=class_id,
        )
