"""
speakerstable: session-scoped speaker consolidation for streaming diarization
"""

__version__ = "0.3.0"

from .config import SessionConfig, build_session_config
from .diarization import (
    ConfidenceEstimator,
    DiarizationResult,
    DiarizationSession,
    MultiScaleFusion,
    PostProcessor,
    ProfileAccumulator,
    Segment,
)
from .errors import SpeakerStableError
from .voiceprints import VoicePrintStore

__all__ = [
    "__version__",
    "ConfidenceEstimator",
    "DiarizationResult",
    "DiarizationSession",
    "MultiScaleFusion",
    "PostProcessor",
    "ProfileAccumulator",
    "Segment",
    "SessionConfig",
    "SpeakerStableError",
    "VoicePrintStore",
    "build_session_config",
]
