"""
Fingerprint Matching

One capability, two strategies:

- EmbeddingMatcher: vector distance below a threshold.
- HashLandmarkMatcher: identical hash fast path, then a Hamming gate,
  then a normalized landmark distance.

A deployment picks one with `build_matcher(settings)`. Fingerprints of the
other variant are rejected with FingerprintMismatchError instead of
silently comparing as "no match".
"""

import logging
import math
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from faceblur.config import DistanceMetric, FingerprintKind, Settings
from faceblur.errors import FingerprintMismatchError
from faceblur.fingerprint import (
    FINGERPRINT_TYPES, EmbeddingFingerprint, Fingerprint, HashFingerprint
)

logger = logging.getLogger(__name__)


class Matcher:
    """Interface that matching strategies must follow."""

    kind: FingerprintKind

    def compare(self, a: Fingerprint, b: Fingerprint) -> bool:
        raise NotImplementedError

    def accepts(self, fingerprint: Fingerprint) -> bool:
        return isinstance(fingerprint, FINGERPRINT_TYPES[self.kind])

    def check(self, fingerprint: Fingerprint) -> None:
        if not self.accepts(fingerprint):
            raise FingerprintMismatchError(
                f"{type(self).__name__} cannot compare {type(fingerprint).__name__}"
            )

    def find_match(
        self,
        candidates: Sequence[Fingerprint],
        references: Sequence[Fingerprint]
    ) -> Optional[Tuple[int, int]]:
        """
        Return (candidate_index, reference_index) of the first match.

        Any candidate matching any reference is enough, so the scan stops
        at the first hit.
        """
        for i, candidate in enumerate(candidates):
            for j, reference in enumerate(references):
                if self.compare(candidate, reference):
                    return i, j
        return None

    def matches_any(
        self,
        candidates: Sequence[Fingerprint],
        references: Sequence[Fingerprint]
    ) -> bool:
        return self.find_match(candidates, references) is not None


# ============================================================================
# Embedding strategy
# ============================================================================

class EmbeddingMatcher(Matcher):
    """
    Distance-threshold comparison of identity vectors.

    Default thresholds:
    - Euclidean: 0.6 (dlib standard)
    - Manhattan: 6.0 (approximate equivalent for 128-dim vectors)
    - Cosine: 0.4
    """

    kind = FingerprintKind.EMBEDDING

    DEFAULT_THRESHOLDS: Dict[DistanceMetric, float] = {
        DistanceMetric.EUCLIDEAN: 0.6,
        DistanceMetric.MANHATTAN: 6.0,
        DistanceMetric.COSINE: 0.4,
    }

    def __init__(
        self,
        threshold: Optional[float] = None,
        metric: DistanceMetric = DistanceMetric.EUCLIDEAN
    ):
        self.metric = DistanceMetric(metric)
        self.threshold = threshold if threshold is not None else self.DEFAULT_THRESHOLDS[self.metric]

    def calculate_distance(self, encoding1: np.ndarray, encoding2: np.ndarray) -> float:
        """
        Distance between two equal-length vectors.

        Formulas:
        - Euclidean (L2): d = sqrt(sum((a_i - b_i)^2))
        - Manhattan (L1): d = sum(|a_i - b_i|)
        - Cosine: d = 1 - (a.b) / (|a| * |b|)
        """
        if encoding1.shape != encoding2.shape:
            raise FingerprintMismatchError(
                f"Embedding length mismatch: {encoding1.shape[0]} vs {encoding2.shape[0]}"
            )

        if self.metric == DistanceMetric.EUCLIDEAN:
            return float(np.linalg.norm(encoding1 - encoding2))

        elif self.metric == DistanceMetric.MANHATTAN:
            return float(np.sum(np.abs(encoding1 - encoding2)))

        elif self.metric == DistanceMetric.COSINE:
            norm_product = np.linalg.norm(encoding1) * np.linalg.norm(encoding2)
            if norm_product == 0:
                return 1.0
            return float(1 - (np.dot(encoding1, encoding2) / norm_product))

        else:
            raise ValueError(f"Unknown metric: {self.metric}")

    def compare(self, a: EmbeddingFingerprint, b: EmbeddingFingerprint) -> bool:
        self.check(a)
        self.check(b)
        return self.calculate_distance(a.embedding, b.embedding) < self.threshold


# ============================================================================
# Hash + landmark strategy
# ============================================================================

def hamming_distance(a: str, b: str) -> int:
    """Number of differing positions between two equal-length bit strings."""
    if len(a) != len(b):
        raise FingerprintMismatchError(f"Hash length mismatch: {len(a)} vs {len(b)}")
    return sum(1 for x, y in zip(a, b) if x != y)


def landmark_distance(a, b) -> float:
    """Euclidean distance of the flattened landmark lists, divided by coordinate count."""
    flat_a = [c for point in a for c in point]
    flat_b = [c for point in b for c in point]
    if len(flat_a) != len(flat_b):
        raise FingerprintMismatchError(
            f"Landmark count mismatch: {len(flat_a) // 2} vs {len(flat_b) // 2}"
        )
    if not flat_a:
        return 0.0
    squared = sum((x - y) ** 2 for x, y in zip(flat_a, flat_b))
    return math.sqrt(squared) / len(flat_a)


class HashLandmarkMatcher(Matcher):
    """
    Two-stage comparison of landmark hashes.

    1. Identical hashes match.
    2. Normalized Hamming distance must clear `hash_gate` before the
       landmark distance is computed against `landmark_threshold`.
    """

    kind = FingerprintKind.HASH

    def __init__(self, hash_gate: float = 0.3, landmark_threshold: float = 0.15):
        self.hash_gate = hash_gate
        self.landmark_threshold = landmark_threshold

    def compare(self, a: HashFingerprint, b: HashFingerprint) -> bool:
        self.check(a)
        self.check(b)

        if a.hash == b.hash:
            return True

        normalized = hamming_distance(a.hash, b.hash) / len(a.hash)
        if normalized >= self.hash_gate:
            return False

        return landmark_distance(a.landmarks, b.landmarks) < self.landmark_threshold


def build_matcher(settings: Settings) -> Matcher:
    """Instantiate the strategy configured for this deployment."""
    if settings.fingerprint_kind == FingerprintKind.EMBEDDING:
        matcher = EmbeddingMatcher(threshold=settings.match_threshold, metric=settings.distance_metric)
        logger.info("Matcher: embedding/%s threshold=%.3f", matcher.metric.value, matcher.threshold)
        return matcher

    matcher = HashLandmarkMatcher(
        hash_gate=settings.hash_gate,
        landmark_threshold=settings.landmark_threshold,
    )
    logger.info(
        "Matcher: hash gate=%.2f landmark threshold=%.3f",
        matcher.hash_gate, matcher.landmark_threshold,
    )
    return matcher
