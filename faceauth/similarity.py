"""
Similarity Scorer: compare 128-D face descriptors by euclidean distance.

Descriptors produced by the dlib face recognition network live in a space
where same-person distances sit well below 0.6. The raw distance is mapped
to a 0-100 similarity percentage with a piecewise-linear calibration:

    distance    similarity
    0.0         100
    0.4         90
    0.6         70
    0.8         40
    1.2         0   (floored at 0 beyond)

The knots are configuration (see the "similarity" section of config.yaml)
and can be recalibrated without code changes.

Usage:
    from faceauth.similarity import distance, similarity, compare

    d = distance(live_descriptor, stored_descriptor)
    percent = similarity(d)             # int in [0, 100]
    result = compare(live_descriptor, stored_descriptor)
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_DISTANCES = (0.0, 0.4, 0.6, 0.8, 1.2)
DEFAULT_SCORES = (100.0, 90.0, 70.0, 40.0, 0.0)


@dataclass
class MatchResult:
    """
    Result of comparing two descriptors.

    Attributes:
        score: Similarity percentage, integer in [0, 100].
        distance: Euclidean distance between the descriptors.
        details: Extra values useful for logging and auditing.
    """

    score: int
    distance: float
    details: Dict[str, Any] = field(default_factory=dict)


class SimilarityCalibration:
    """
    Piecewise-linear distance -> similarity mapping.

    Args:
        distances: Knot distances, strictly increasing, starting at 0.
        scores: Similarity at each knot, never increasing, within [0, 100].
    """

    def __init__(
        self,
        distances: Sequence[float] = DEFAULT_DISTANCES,
        scores: Sequence[float] = DEFAULT_SCORES,
    ):
        distances = [float(d) for d in distances]
        scores = [float(s) for s in scores]

        if len(distances) != len(scores) or len(distances) < 2:
            raise ValueError(
                f"Calibration needs at least two knots with matching lengths, "
                f"got {len(distances)} distances and {len(scores)} scores"
            )
        if distances[0] != 0.0:
            raise ValueError(f"First calibration knot must be at distance 0, got {distances[0]}")
        if any(b <= a for a, b in zip(distances, distances[1:])):
            raise ValueError(f"Calibration distances must strictly increase: {distances}")
        if any(b > a for a, b in zip(scores, scores[1:])):
            raise ValueError(f"Calibration scores must not increase: {scores}")
        if any(s < 0.0 or s > 100.0 for s in scores):
            raise ValueError(f"Calibration scores must be within [0, 100]: {scores}")

        self.distances = np.array(distances, dtype=np.float64)
        self.scores = np.array(scores, dtype=np.float64)

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "SimilarityCalibration":
        """Build a calibration from the "similarity" config section."""
        if config is None:
            config = {}
        return cls(
            distances=config.get("distances", DEFAULT_DISTANCES),
            scores=config.get("scores", DEFAULT_SCORES),
        )

    def __call__(self, dist: float) -> int:
        if dist < 0 or math.isnan(dist):
            raise ValueError(f"Distance must be a non-negative number, got {dist}")

        # Beyond the last knot np.interp holds the last score (the floor).
        value = float(np.interp(dist, self.distances, self.scores))
        value = max(0.0, min(100.0, value))

        # Round half up so that e.g. 89.5 -> 90 regardless of parity.
        return int(math.floor(value + 0.5))


_default_calibration = SimilarityCalibration()


def distance(d1: np.ndarray, d2: np.ndarray) -> float:
    """
    Euclidean distance between two descriptors.

    Raises:
        ValueError: If the descriptors have different lengths.
    """
    a = np.asarray(d1, dtype=np.float64).ravel()
    b = np.asarray(d2, dtype=np.float64).ravel()

    if a.shape[0] != b.shape[0]:
        raise ValueError(
            f"Descriptor dimension mismatch: {a.shape[0]} vs {b.shape[0]}"
        )

    return float(np.linalg.norm(a - b))


def similarity(dist: float, calibration: Optional[SimilarityCalibration] = None) -> int:
    """Map a euclidean distance to an integer similarity percentage."""
    if calibration is None:
        calibration = _default_calibration
    return calibration(dist)


def compare(
    d1: np.ndarray,
    d2: np.ndarray,
    calibration: Optional[SimilarityCalibration] = None,
) -> MatchResult:
    """Compute distance and similarity between two descriptors in one call."""
    dist = distance(d1, d2)
    score = similarity(dist, calibration)

    logger.debug(f"Face comparison - distance: {dist:.3f}, similarity: {score}%")

    return MatchResult(
        score=score,
        distance=dist,
        details={"method": "euclidean_piecewise"},
    )
