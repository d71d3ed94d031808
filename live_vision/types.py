from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from .config import UNKNOWN_LABEL

# (x, y, w, h) in frame-pixel coordinates.
BBox = Tuple[int, int, int, int]


@dataclass(frozen=True)
class Frame:
    frame_id: int
    timestamp: float
    image: np.ndarray = field(repr=False)

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])


@dataclass(frozen=True)
class CameraDevice:
    device_id: int
    label: str
    width: int = 0
    height: int = 0
    fps: float = 0.0
    backend: str = "unknown"


@dataclass
class ObjectDetection:
    label: str
    confidence: float
    bbox: BBox
    class_id: int = -1


@dataclass
class FaceObservation:
    bbox: BBox
    embedding: np.ndarray = field(repr=False)
    landmarks: Optional[np.ndarray] = field(default=None, repr=False)
    score: float = 1.0


@dataclass(frozen=True, eq=False)
class Identity:
    name: str
    embeddings: Tuple[np.ndarray, ...] = field(repr=False)

    @property
    def sample_count(self) -> int:
        return len(self.embeddings)

    def with_embedding(self, embedding: np.ndarray) -> "Identity":
        return Identity(name=self.name, embeddings=self.embeddings + (embedding,))


@dataclass(frozen=True)
class MatchResult:
    name: str
    distance: float
    is_known: bool

    @property
    def confidence(self) -> float:
        return float(min(1.0, max(0.0, 1.0 - self.distance)))

    @classmethod
    def unknown(cls, distance: float = 1.0) -> "MatchResult":
        return cls(name=UNKNOWN_LABEL, distance=float(distance), is_known=False)


@dataclass(frozen=True)
class RecognizedFace:
    bbox: BBox
    name: str
    distance: float
    confidence: float
    is_known: bool
    score: float = 1.0
    landmarks: Optional[np.ndarray] = field(default=None, repr=False, compare=False)

    @classmethod
    def from_match(cls, observation: FaceObservation, match: MatchResult) -> "RecognizedFace":
        return cls(
            bbox=observation.bbox,
            name=match.name,
            distance=match.distance,
            confidence=match.confidence,
            is_known=match.is_known,
            score=observation.score,
            landmarks=observation.landmarks,
        )


@dataclass(frozen=True)
class DetectionSnapshot:
    objects: Tuple[ObjectDetection, ...] = ()
    faces: Tuple[RecognizedFace, ...] = ()
    object_state: str = "idle"
    face_state: str = "idle"
    object_frame_id: Optional[int] = None
    face_frame_id: Optional[int] = None
    object_error: Optional[str] = None
    face_error: Optional[str] = None

    @property
    def known_face_count(self) -> int:
        return sum(1 for face in self.faces if face.is_known)

    @property
    def total_detections(self) -> int:
        return len(self.objects) + self.known_face_count
