"""Boundary with the black-box diarization engine.

Engines are free to return either a :class:`DiarizationResult` or a plain
mapping shaped like::

    {
        "segments": [{"speaker_id": "S1", "embedding": [...], "start": 0.0,
                      "end": 1.2, "quality": 0.8}, ...],
        "speaker_database": {"S1": [...]},
        "timings": {"segmentation": 0.12},
    }

camelCase keys (``speakerId``, ``speakerDatabase``, ``startTime`` ...) are
accepted as well.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

import numpy as np

from .embeddings import average_embeddings
from .logger import logger
from .models import DiarizationResult, Segment


@runtime_checkable
class DiarizationEngine(Protocol):
    def diarize(self, samples: np.ndarray) -> DiarizationResult | Mapping[str, Any]: ...


def _first(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _coerce_segment(raw: Any) -> Segment | None:
    if isinstance(raw, Segment):
        return raw
    if not isinstance(raw, Mapping):
        logger.debug("Skipping non-mapping segment payload: %r", type(raw))
        return None
    try:
        return Segment(
            speaker_id=str(_first(raw, "speaker_id", "speakerId", "speaker")),
            embedding=_first(raw, "embedding", default=[]),
            start=float(_first(raw, "start", "startTime", "start_time")),
            end=float(_first(raw, "end", "endTime", "end_time")),
            quality=float(_first(raw, "quality", "qualityScore", "quality_score", default=1.0)),
        )
    except (TypeError, ValueError) as exc:
        logger.debug("Dropping invalid engine segment %r: %s", raw, exc)
        return None


def coerce_engine_output(output: DiarizationResult | Mapping[str, Any]) -> DiarizationResult:
    """Normalise raw engine output into a sorted :class:`DiarizationResult`.

    Segments with ``end <= start`` are dropped.  Labels that appear on
    segments but are missing from the database get the mean of their
    segment embeddings.
    """

    if isinstance(output, DiarizationResult):
        return output
    if not isinstance(output, Mapping):
        raise TypeError(f"engine returned unsupported payload type {type(output).__name__}")

    segments = []
    for raw in _first(output, "segments", default=[]) or []:
        seg = _coerce_segment(raw)
        if seg is not None:
            segments.append(seg)

    raw_db = _first(output, "speaker_database", "speakerDatabase", default={}) or {}
    database = {str(k): np.asarray(v, dtype=np.float32).reshape(-1) for k, v in raw_db.items()}
    for speaker_id in {seg.speaker_id for seg in segments} - set(database):
        vectors = [s.embedding for s in segments if s.speaker_id == speaker_id and s.embedding.size]
        if vectors:
            database[speaker_id] = average_embeddings(vectors)

    timings = _first(output, "timings", default=None)
    if timings is not None:
        timings = {str(k): float(v) for k, v in dict(timings).items()}
    return DiarizationResult(segments=segments, speaker_database=database, timings=timings)


__all__ = ["DiarizationEngine", "coerce_engine_output"]
