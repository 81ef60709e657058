"""Unified error types for speaker consolidation.

Streaming diarization fails in a handful of well understood ways: the engine
chokes on a chunk, a caller hands over an embedding of the wrong size, the
recording is too short to refine, the engine was never wired up, or the
voice-print store cannot be written.  Each case gets its own exception so that
callers can decide between "log and continue" and "surface to the user"
without parsing messages.  All of them carry an optional stage identifier and
a JSON serialisable context payload.
"""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "SpeakerStableError",
    "EngineFailure",
    "InvalidEmbeddingDimension",
    "InsufficientAudio",
    "NotInitialized",
    "PersistenceFailure",
    "ConfigurationError",
    "attach_context",
    "coerce_stage_error",
]


@dataclass(eq=False)
class SpeakerStableError(RuntimeError):
    """Base class for consolidation failures.

    Attributes
    ----------
    message:
        Human readable description of the failure.
    stage:
        Optional component identifier (``"stream"``, ``"fusion"``...).
    context:
        JSON serialisable dictionary with granular diagnostics.
    cause:
        Underlying exception (kept for debugging, not included in ``__str__``).
    """

    message: str
    stage: str | None = None
    context: MutableMapping[str, Any] = field(default_factory=dict)
    cause: Exception | None = None

    def __post_init__(self) -> None:
        if self.context is None:
            self.context = {}

    def __str__(self) -> str:  # pragma: no cover - trivial
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class EngineFailure(SpeakerStableError):
    """The diarization engine failed on one chunk or window (recoverable)."""


class InvalidEmbeddingDimension(SpeakerStableError, ValueError):
    """An embedding did not have the configured fixed dimension."""


class InsufficientAudio(SpeakerStableError):
    """Not enough recorded audio to run post-session refinement."""


class NotInitialized(SpeakerStableError):
    """The diarization engine is unavailable."""


class PersistenceFailure(SpeakerStableError):
    """The voice-print store could not be written or read."""


class ConfigurationError(SpeakerStableError, ValueError):
    """Raised when configuration validation fails."""


def attach_context(
    error: SpeakerStableError,
    context: Mapping[str, Any] | None,
) -> SpeakerStableError:
    """Merge ``context`` into ``error.context`` preserving existing keys."""

    if not context:
        return error
    for key, value in context.items():
        error.context.setdefault(key, value)
    return error


def coerce_stage_error(
    stage: str,
    message: str,
    *,
    context: Mapping[str, Any] | None = None,
    cause: Exception | None = None,
) -> EngineFailure:
    """Create :class:`EngineFailure` with a rich context payload."""

    payload: MutableMapping[str, Any] = {}
    if context:
        payload.update(context)
    if cause:
        payload.setdefault("cause", repr(cause))
    return EngineFailure(message=message, stage=stage, context=payload, cause=cause)
