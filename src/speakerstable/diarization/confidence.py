from __future__ import annotations

from dataclasses import asdict, dataclass

import numpy as np

from ..config import ConfidenceConfig
from .embeddings import dominant_dimension, pairwise_cosine_distances
from .logger import logger
from .models import DiarizationResult


@dataclass(frozen=True)
class SpeakerCountEstimate:
    confidence: float
    min_speakers: int
    max_speakers: int
    speaker_count: int
    average_distance: float | None = None
    minimum_distance: float | None = None

    @property
    def speaker_range(self) -> tuple[int, int]:
        return (self.min_speakers, self.max_speakers)

    def as_dict(self) -> dict[str, float | int | None]:
        return asdict(self)


class ConfidenceEstimator:
    """Score how much to trust the number of speakers in a result."""

    def __init__(self, config: ConfidenceConfig | None = None):
        self.config = config or ConfidenceConfig()

    def estimate(self, result: DiarizationResult) -> SpeakerCountEstimate:
        """Derive confidence and a plausible speaker-count range.

        Average pairwise distance between database entries picks the band:
        above 0.6 is 0.95 with an exact count, 0.4-0.6 is 0.80 exact,
        0.25-0.4 is 0.60 with ``(n-1, n)`` and anything tighter is 0.40 with
        ``(1, n)``.  Any pair closer than ``over_segmentation_distance``
        pulls the lower bound to ``n-1`` and caps confidence.  Entries whose
        size differs from the most common one are left out.
        """

        database = result.speaker_database
        vectors = [database[spk] for spk in sorted(database) if database[spk].size > 0]
        dim = dominant_dimension(vectors)
        kept = [vec for vec in vectors if vec.size == dim]
        if len(kept) < len(vectors):
            logger.warning(
                "Ignoring %d speaker embedding(s) whose size differs from %d",
                len(vectors) - len(kept),
                dim,
            )
        vectors = kept
        n = len(vectors)
        if n == 0:
            return SpeakerCountEstimate(confidence=0.0, min_speakers=0, max_speakers=0, speaker_count=0)
        if n == 1:
            return SpeakerCountEstimate(
                confidence=self.config.single_speaker_confidence,
                min_speakers=1,
                max_speakers=1,
                speaker_count=1,
            )

        distances = pairwise_cosine_distances(vectors)
        upper = distances[np.triu_indices(n, k=1)]
        avg_distance = float(upper.mean())
        min_distance = float(upper.min())

        if avg_distance > 0.6:
            confidence, low = 0.95, n
        elif avg_distance >= 0.4:
            confidence, low = 0.80, n
        elif avg_distance >= 0.25:
            confidence, low = 0.60, n - 1
        else:
            confidence, low = 0.40, 1

        if min_distance < self.config.over_segmentation_distance:
            low = min(low, n - 1)
            confidence = min(confidence, self.config.over_segmentation_cap)

        low = max(1, low)
        return SpeakerCountEstimate(
            confidence=float(min(max(confidence, 0.0), 1.0)),
            min_speakers=low,
            max_speakers=n,
            speaker_count=n,
            average_distance=avg_distance,
            minimum_distance=min_distance,
        )


__all__ = ["ConfidenceEstimator", "SpeakerCountEstimate"]
