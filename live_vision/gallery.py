from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import cv2
import numpy as np

from .config import DEFAULT_MATCH_THRESHOLD
from .exceptions import AmbiguousFace, EnrollmentError, NoFaceDetected, StorageCorrupt
from .gallery_store import GalleryStore
from .inference_port import FaceEmbedder, InferencePort
from .logger import setup_logger
from .matcher import IdentityMatcher, match_embedding
from .types import Identity, MatchResult

SampleImage = Union[np.ndarray, str, Path]


@dataclass(frozen=True)
class GallerySnapshot:
    identities: Tuple[Identity, ...] = ()
    matcher: Optional[IdentityMatcher] = None


class IdentityGallery:
    """Durable set of enrolled identities plus the matcher derived from it.

    Identities and matcher live together in one immutable GallerySnapshot that
    is swapped by a single assignment, so readers never see storage and index
    out of step. Mutations are serialized by ``lock`` and persist before the
    swap; a failed write leaves the current snapshot in place.
    """

    def __init__(
        self,
        store: GalleryStore,
        face_port: InferencePort[FaceEmbedder],
        threshold: float = DEFAULT_MATCH_THRESHOLD,
    ) -> None:
        self.store = store
        self.face_port = face_port
        self.threshold = float(threshold)
        self.lock = threading.Lock()
        self._snapshot = GallerySnapshot()
        self.logger = setup_logger(self.__class__.__name__)

    def load(self) -> int:
        try:
            identities = self.store.load()
        except StorageCorrupt as exc:
            self.logger.error("Gallery store is corrupt, starting with an empty gallery: %s", exc)
            quarantined = self.store.reset()
            if quarantined is not None:
                self.logger.warning("Corrupt gallery database moved to %s", quarantined)
            identities = []

        with self.lock:
            self._snapshot = self._build_snapshot(identities)
        self.logger.info("Loaded %d known face(s) from gallery", len(identities))
        return len(identities)

    def snapshot(self) -> GallerySnapshot:
        return self._snapshot

    @property
    def identities(self) -> Tuple[Identity, ...]:
        return self._snapshot.identities

    @property
    def matcher(self) -> Optional[IdentityMatcher]:
        return self._snapshot.matcher

    def names(self) -> List[str]:
        return [identity.name for identity in self._snapshot.identities]

    def embedding_count(self, name: str) -> int:
        identity = self._find(self._snapshot.identities, name)
        return identity.sample_count if identity is not None else 0

    def summary(self) -> List[Dict[str, object]]:
        return [{"name": identity.name, "samples": identity.sample_count} for identity in self._snapshot.identities]

    def match(self, embedding: np.ndarray) -> MatchResult:
        return match_embedding(self._snapshot.matcher, embedding)

    def enroll(self, name: str, sample_image: SampleImage) -> Identity:
        name = (name or "").strip()
        if not name:
            raise EnrollmentError("Please enter a person's name first.")

        image = self._read_image(sample_image)
        engine = self.face_port.get()
        observations = engine.detect_faces(image)
        if not observations:
            raise NoFaceDetected("No face detected in the image. Please use a clear photo with a visible face.")
        if len(observations) > 1:
            raise AmbiguousFace(
                f"{len(observations)} faces detected. Please use an image with only one face."
            )

        embedding = np.asarray(observations[0].embedding, dtype=np.float32).reshape(-1).copy()
        if embedding.size == 0 or not np.isfinite(embedding).all():
            raise EnrollmentError("The face model returned an invalid embedding. Please try another photo.")
        embedding.setflags(write=False)

        with self.lock:
            current = self._snapshot
            matcher = current.matcher
            if matcher is not None and matcher.dimension != embedding.size:
                raise EnrollmentError(
                    f"Face embedding has {embedding.size} dimensions but the gallery uses {matcher.dimension}. "
                    "Remove the stored identities to enroll with this model."
                )

            existing = self._find(current.identities, name)
            if existing is None:
                identity = Identity(name=name, embeddings=(embedding,))
                identities = current.identities + (identity,)
            else:
                identity = existing.with_embedding(embedding)
                identities = tuple(identity if item.name == name else item for item in current.identities)

            self.store.save(list(identities))
            self._snapshot = self._build_snapshot(identities)

        if existing is None:
            self.logger.info("Enrolled new person %s", name)
        else:
            self.logger.info("Added sample %d for %s", identity.sample_count, name)
        return identity

    def remove(self, name: str) -> bool:
        with self.lock:
            current = self._snapshot
            if self._find(current.identities, name) is None:
                return False
            identities = tuple(item for item in current.identities if item.name != name)
            self.store.save(list(identities))
            self._snapshot = self._build_snapshot(identities)

        self.logger.info("Removed %s from known faces (%d remaining)", name, len(identities))
        return True

    def _build_snapshot(self, identities) -> GallerySnapshot:
        identities = tuple(identities)
        return GallerySnapshot(
            identities=identities,
            matcher=IdentityMatcher.from_identities(identities, threshold=self.threshold),
        )

    @staticmethod
    def _find(identities: Tuple[Identity, ...], name: str) -> Optional[Identity]:
        return next((identity for identity in identities if identity.name == name), None)

    @staticmethod
    def _read_image(sample_image: SampleImage) -> np.ndarray:
        if isinstance(sample_image, np.ndarray):
            if sample_image.ndim not in (2, 3) or sample_image.size == 0:
                raise EnrollmentError("Sample image is empty or malformed.")
            return sample_image

        path = Path(sample_image)
        image = cv2.imread(str(path))
        if image is None:
            raise EnrollmentError(f"Failed to load image {path}.")
        return image
