import threading
from dataclasses import dataclass
from typing import List, Optional

import cv2
import numpy as np
import torch
import torch.nn.functional as f
import torchvision.models as models
from torchvision.models import ResNet18_Weights

from .config import LiveVisionSettings
from .exceptions import FaceEngineError
from .types import BBox, FaceObservation

try:
    import mediapipe as mp
except Exception:  # pragma: no cover - runtime dependency guard
    mp = None

EMBED_INPUT_SIZE = 224
IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)


@dataclass
class _FaceCandidate:
    crop: np.ndarray
    bbox: BBox
    score: float
    landmarks: np.ndarray


def square_face_crop(rgb: np.ndarray, left: int, top: int, right: int, bottom: int, margin: float = 1.05):
    """Cut a square region centred on the detector box.

    A square crop keeps the embedder input stable while the detector box
    jitters between frames. Returns the crop and its (x, y, w, h) box.
    """
    height, width = rgb.shape[:2]
    side = int(max(right - left, bottom - top, 1) * margin)
    centre_x = (left + right) // 2
    centre_y = (top + bottom) // 2

    x0 = max(0, centre_x - side // 2)
    y0 = max(0, centre_y - side // 2)
    x1 = min(width, x0 + side)
    y1 = min(height, y0 + side)
    if x1 <= x0 or y1 <= y0:
        return None, (left, top, right - left, bottom - top)
    return rgb[y0:y1, x0:x1], (x0, y0, x1 - x0, y1 - y0)


class FaceEngine:
    """MediaPipe face detection followed by a ResNet-18 embedder.

    Embeddings are L2-normalised 512-d vectors, so the Euclidean distance
    between two of them lies in [0, 2]. Calls are serialized because the
    MediaPipe graph is shared by the live face pipeline and enrollment.
    """

    def __init__(
        self,
        device: Optional[str] = None,
        detection_threshold: float = 0.6,
        min_face_size: int = 40,
    ):
        if mp is None:
            raise FaceEngineError("mediapipe is not installed. Install it with: pip install mediapipe")

        self.device = torch.device(device or ("cuda" if torch.cuda.is_available() else "cpu"))
        self.detection_threshold = detection_threshold
        self.min_face_size = min_face_size
        self._lock = threading.Lock()

        if self.device.type == "cuda":
            torch.backends.cudnn.benchmark = True

        try:
            self.detector = mp.solutions.face_detection.FaceDetection(
                model_selection=1,
                min_detection_confidence=detection_threshold,
            )
            backbone = models.resnet18(weights=ResNet18_Weights.DEFAULT)
            backbone.fc = torch.nn.Identity()
            self.embedder = backbone.eval().to(self.device)
        except Exception as exc:
            raise FaceEngineError(f"Could not initialise face models: {exc}") from exc

        self._mean = torch.tensor(IMAGENET_MEAN, dtype=torch.float32, device=self.device).view(1, 3, 1, 1)
        self._std = torch.tensor(IMAGENET_STD, dtype=torch.float32, device=self.device).view(1, 3, 1, 1)
        self._clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        self._focus_mask = self._build_focus_mask(EMBED_INPUT_SIZE)

    @classmethod
    def from_settings(cls, settings: LiveVisionSettings) -> "FaceEngine":
        return cls(
            device=None if settings.prefer_gpu else "cpu",
            detection_threshold=settings.face_detection_threshold,
            min_face_size=settings.min_face_size,
        )

    @property
    def device_name(self) -> str:
        return str(self.device)

    def detect_faces(self, image: np.ndarray) -> List[FaceObservation]:
        if image.ndim == 2:
            image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

        with self._lock:
            candidates = self._locate_faces(rgb)
            if not candidates:
                return []
            embeddings = self._embed([candidate.crop for candidate in candidates])

        return [
            FaceObservation(
                bbox=candidate.bbox,
                embedding=embedding,
                landmarks=candidate.landmarks,
                score=candidate.score,
            )
            for candidate, embedding in zip(candidates, embeddings)
        ]

    def _locate_faces(self, rgb: np.ndarray) -> List[_FaceCandidate]:
        try:
            result = self.detector.process(rgb)
        except Exception as exc:
            raise FaceEngineError(f"Face detection failed: {exc}") from exc

        height, width = rgb.shape[:2]
        candidates: List[_FaceCandidate] = []
        for detection in result.detections or []:
            score = float(detection.score[0]) if detection.score else 0.0
            if score < self.detection_threshold:
                continue

            location = detection.location_data
            rel = location.relative_bounding_box
            left = max(0, int(rel.xmin * width))
            top = max(0, int(rel.ymin * height))
            right = min(width, left + int(rel.width * width))
            bottom = min(height, top + int(rel.height * height))
            if min(right - left, bottom - top) < self.min_face_size:
                continue

            crop, bbox = square_face_crop(rgb, left, top, right, bottom)
            if crop is None or crop.size == 0:
                continue

            # Eyes, nose tip, mouth centre and both ear tragions, in pixels.
            keypoints = np.array(
                [(point.x * width, point.y * height) for point in location.relative_keypoints],
                dtype=np.float32,
            ).reshape(-1, 2)
            candidates.append(_FaceCandidate(crop=crop, bbox=bbox, score=score, landmarks=keypoints))
        return candidates

    def _embed(self, crops: List[np.ndarray]) -> np.ndarray:
        try:
            batch = torch.stack(
                [torch.from_numpy(self._prepare(crop)).permute(2, 0, 1) for crop in crops]
            ).to(self.device, dtype=torch.float32)
            batch = (batch / 255.0 - self._mean) / self._std

            with torch.inference_mode():
                if self.device.type == "cuda":
                    with torch.autocast(device_type="cuda", dtype=torch.float16):
                        features = self.embedder(batch)
                else:
                    features = self.embedder(batch)
                return f.normalize(features.float(), p=2, dim=1).cpu().numpy().astype(np.float32)
        except Exception as exc:
            raise FaceEngineError(f"Embedding generation failed: {exc}") from exc

    def _prepare(self, crop: np.ndarray) -> np.ndarray:
        size = EMBED_INPUT_SIZE
        upscale = crop.shape[0] < size or crop.shape[1] < size
        resized = cv2.resize(crop, (size, size), interpolation=cv2.INTER_CUBIC if upscale else cv2.INTER_AREA)

        # Equalise luma only, then fade the corners to the mean colour.
        luma, red_diff, blue_diff = cv2.split(cv2.cvtColor(resized, cv2.COLOR_RGB2YCrCb))
        equalised = cv2.merge([self._clahe.apply(luma), red_diff, blue_diff])
        balanced = cv2.cvtColor(equalised, cv2.COLOR_YCrCb2RGB).astype(np.float32)

        background = balanced.mean(axis=(0, 1), keepdims=True)
        focused = balanced * self._focus_mask + background * (1.0 - self._focus_mask)
        return np.clip(focused, 0.0, 255.0).astype(np.uint8)

    @staticmethod
    def _build_focus_mask(size: int) -> np.ndarray:
        mask = np.zeros((size, size), dtype=np.float32)
        centre = size // 2
        cv2.ellipse(mask, (centre, centre), (int(size * 0.375), int(size * 0.446)), 0, 0, 360, 1.0, -1)
        return cv2.GaussianBlur(mask, (0, 0), sigmaX=6.0, sigmaY=6.0)[..., None]
