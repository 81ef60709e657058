from __future__ import annotations

from .manager import (
    ConfirmedParticipant,
    Priority,
    RecommendationType,
    VoiceLearningRecommendation,
    VoiceMatch,
    VoicePrintStore,
)
from .store import InMemoryPersonStore, JsonPersonStore, PersonStore, PersonVoicePrint

__all__ = [
    "VoicePrintStore",
    "VoiceMatch",
    "ConfirmedParticipant",
    "VoiceLearningRecommendation",
    "RecommendationType",
    "Priority",
    "PersonStore",
    "PersonVoicePrint",
    "InMemoryPersonStore",
    "JsonPersonStore",
]
