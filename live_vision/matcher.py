from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .config import DEFAULT_MATCH_THRESHOLD, UNKNOWN_LABEL
from .types import Identity, MatchResult


class IdentityMatcher:
    """Frozen nearest-neighbour index over every enrolled embedding.

    Each embedding is its own row, so an identity with several samples matches
    whenever any one of them is the closest. Build a new instance after every
    gallery mutation.
    """

    def __init__(self, labeled: Sequence[Tuple[str, np.ndarray]], threshold: float = DEFAULT_MATCH_THRESHOLD):
        if not labeled:
            raise ValueError("IdentityMatcher requires at least one labeled embedding.")
        self.threshold = float(threshold)
        self._names: List[str] = [name for name, _ in labeled]
        matrix = np.vstack([np.asarray(vector, dtype=np.float32).reshape(-1) for _, vector in labeled])
        if not np.isfinite(matrix).all():
            raise ValueError("IdentityMatcher embeddings must be finite.")
        matrix.setflags(write=False)
        self._matrix = matrix  # (K, D)

    @classmethod
    def from_identities(
        cls,
        identities: Iterable[Identity],
        threshold: float = DEFAULT_MATCH_THRESHOLD,
    ) -> Optional["IdentityMatcher"]:
        labeled = [(identity.name, vector) for identity in identities for vector in identity.embeddings]
        if not labeled:
            return None
        return cls(labeled, threshold=threshold)

    @property
    def size(self) -> int:
        return int(self._matrix.shape[0])

    @property
    def dimension(self) -> int:
        return int(self._matrix.shape[1])

    def match(self, embedding: np.ndarray) -> MatchResult:
        query = np.asarray(embedding, dtype=np.float32).reshape(-1)
        if query.shape[0] != self.dimension:
            raise ValueError(f"Embedding has {query.shape[0]} dimensions; gallery uses {self.dimension}.")
        if not np.isfinite(query).all():
            raise ValueError("Embedding contains non-finite values.")

        distances = np.linalg.norm(self._matrix - query, axis=1)
        idx = int(np.argmin(distances))
        best = float(distances[idx])
        # Closeness alone does not imply identity; NaN never compares above the threshold.
        if not np.isfinite(best) or best > self.threshold:
            return MatchResult(name=UNKNOWN_LABEL, distance=best, is_known=False)
        return MatchResult(name=self._names[idx], distance=best, is_known=True)


def match_embedding(matcher: Optional[IdentityMatcher], embedding: np.ndarray) -> MatchResult:
    if matcher is None:
        return MatchResult.unknown()
    return matcher.match(embedding)
