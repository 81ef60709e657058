from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

import numpy as np


def _as_vector(values: Any) -> np.ndarray:
    return np.asarray(values, dtype=np.float32).reshape(-1)


@dataclass
class Segment:
    """One speaker turn as reported by the engine.

    ``speaker_id`` is session-local and may drift between chunks until the
    profile accumulator corrects it.
    """

    speaker_id: str
    embedding: np.ndarray
    start: float
    end: float
    quality: float = 1.0

    def __post_init__(self) -> None:
        self.speaker_id = str(self.speaker_id)
        self.embedding = _as_vector(self.embedding)
        self.start = float(self.start)
        self.end = float(self.end)
        self.quality = float(min(max(self.quality, 0.0), 1.0))
        if not self.end > self.start:
            raise ValueError(
                f"segment end ({self.end:.3f}) must be greater than start ({self.start:.3f})"
            )

    @property
    def duration(self) -> float:
        return self.end - self.start

    def relabel(self, speaker_id: str) -> Segment:
        return replace(self, speaker_id=speaker_id)

    def shifted(self, offset: float) -> Segment:
        return replace(self, start=self.start + offset, end=self.end + offset)

    def to_dict(self) -> dict[str, Any]:
        return {
            "speaker_id": self.speaker_id,
            "start": round(self.start, 6),
            "end": round(self.end, 6),
            "quality": self.quality,
            "embedding": self.embedding.tolist(),
        }


@dataclass
class DiarizationResult:
    """Ordered segments plus one representative embedding per speaker label.

    Segments are always kept sorted by ``start``; every operation that
    produces a new result goes through the constructor or
    :meth:`with_segments`, so the ordering never has to be re-derived.
    """

    segments: list[Segment] = field(default_factory=list)
    speaker_database: dict[str, np.ndarray] = field(default_factory=dict)
    timings: dict[str, float] | None = None

    def __post_init__(self) -> None:
        self.segments = sorted(self.segments, key=lambda s: (s.start, s.end))
        self.speaker_database = {
            str(key): _as_vector(value) for key, value in self.speaker_database.items()
        }

    @property
    def speaker_ids(self) -> list[str]:
        return sorted({seg.speaker_id for seg in self.segments})

    @property
    def speaker_count(self) -> int:
        return len(self.speaker_ids)

    @property
    def duration(self) -> float:
        if not self.segments:
            return 0.0
        return max(seg.end for seg in self.segments) - self.segments[0].start

    def with_segments(
        self,
        segments: Iterable[Segment],
        speaker_database: Mapping[str, np.ndarray] | None = None,
    ) -> DiarizationResult:
        database = self.speaker_database if speaker_database is None else speaker_database
        return DiarizationResult(
            segments=list(segments),
            speaker_database=dict(database),
            timings=dict(self.timings) if self.timings is not None else None,
        )

    def copy(self) -> DiarizationResult:
        return DiarizationResult(
            segments=[replace(seg, embedding=seg.embedding.copy()) for seg in self.segments],
            speaker_database={k: v.copy() for k, v in self.speaker_database.items()},
            timings=dict(self.timings) if self.timings is not None else None,
        )

    def segments_between(self, start: float, end: float) -> list[Segment]:
        return [seg for seg in self.segments if seg.end >= start and seg.start <= end]

    def dominant_speaker(self, start: float, end: float) -> str | None:
        """Return the speaker with the most talk time inside ``[start, end]``."""

        totals: dict[str, float] = {}
        for seg in self.segments_between(start, end):
            overlap = min(seg.end, end) - max(seg.start, start)
            if overlap <= 0:
                continue
            totals[seg.speaker_id] = totals.get(seg.speaker_id, 0.0) + overlap
        if not totals:
            return None
        return max(sorted(totals), key=lambda spk: totals[spk])

    def talk_time(self) -> dict[str, float]:
        totals: dict[str, float] = {}
        for seg in self.segments:
            totals[seg.speaker_id] = totals.get(seg.speaker_id, 0.0) + seg.duration
        return totals

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "segments": [seg.to_dict() for seg in self.segments],
            "speaker_database": {k: v.tolist() for k, v in self.speaker_database.items()},
        }
        if self.timings is not None:
            payload["timings"] = dict(self.timings)
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DiarizationResult:
        from .engine import coerce_engine_output

        return coerce_engine_output(data)


@dataclass
class SpeakerProfile:
    """Rolling average of a speaker's recent embeddings within a session."""

    speaker_id: str
    max_embeddings: int = 20
    embeddings: deque = field(init=False)
    average_embedding: np.ndarray | None = field(init=False, default=None)

    def __post_init__(self) -> None:
        self.embeddings = deque(maxlen=self.max_embeddings)

    def add(self, embedding: np.ndarray) -> None:
        self.embeddings.append(_as_vector(embedding))
        self.average_embedding = np.mean(np.vstack(self.embeddings), axis=0).astype(np.float32)

    @property
    def sample_count(self) -> int:
        return len(self.embeddings)


__all__ = ["Segment", "DiarizationResult", "SpeakerProfile"]
