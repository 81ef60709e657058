from __future__ import annotations

from .confidence import ConfidenceEstimator, SpeakerCountEstimate
from .engine import DiarizationEngine, coerce_engine_output
from .fusion import MultiScaleFusion, final_profile_based_merge
from .models import DiarizationResult, Segment, SpeakerProfile
from .postprocess import (
    PostProcessor,
    PostProcessStats,
    enforce_minimum_segment_duration,
    merge_similar_speakers,
    smooth_rapid_speaker_switches,
)
from .profiles import ProfileAccumulator
from .session import DiarizationSession
from .stabilizer import SpeakerStabilizer, StabilizationStats
from .stream import BufferStats, ChunkStream, StreamWorker

__all__ = [
    "BufferStats",
    "ChunkStream",
    "ConfidenceEstimator",
    "DiarizationEngine",
    "DiarizationResult",
    "DiarizationSession",
    "MultiScaleFusion",
    "PostProcessStats",
    "PostProcessor",
    "ProfileAccumulator",
    "Segment",
    "SpeakerCountEstimate",
    "SpeakerProfile",
    "SpeakerStabilizer",
    "StabilizationStats",
    "StreamWorker",
    "coerce_engine_output",
    "enforce_minimum_segment_duration",
    "final_profile_based_merge",
    "merge_similar_speakers",
    "smooth_rapid_speaker_switches",
]
