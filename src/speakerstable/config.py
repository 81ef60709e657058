"""Configuration defaults for session-scoped speaker consolidation.

Every threshold used by the consolidation layer lives here so it can be tuned
per deployment.  None of the defaults has been validated on a public corpus.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from dataclasses import fields as dataclass_fields
from dataclasses import is_dataclass
from pathlib import Path
from typing import Any

from .errors import ConfigurationError


def _ensure_numeric_range(
    name: str,
    value: float,
    *,
    ge: float | None = None,
    gt: float | None = None,
    le: float | None = None,
    lt: float | None = None,
) -> None:
    """Validate numeric range constraints for configuration fields."""

    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a number")
    if ge is not None and value < ge:
        raise ConfigurationError(f"{name} must be >= {ge}")
    if gt is not None and value <= gt:
        raise ConfigurationError(f"{name} must be > {gt}")
    if le is not None and value > le:
        raise ConfigurationError(f"{name} must be <= {le}")
    if lt is not None and value >= lt:
        raise ConfigurationError(f"{name} must be < {lt}")


def _validate_positive_int(name: str, value: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ConfigurationError(f"{name} must be an integer > 0")


def bool_env(name: str) -> bool | None:
    val = os.getenv(name)
    if val is None:
        return None
    norm = val.strip().lower()
    if norm in {"1", "true", "yes", "on"}:
        return True
    if norm in {"0", "false", "no", "off"}:
        return False
    return None


@dataclass
class StreamConfig:
    sample_rate: int = 16000
    chunk_duration: float = 5.0
    overlap_duration: float = 1.5
    max_buffer_duration: float = 60.0
    min_flush_duration: float = 1.0
    keep_recording: bool = True
    queue_size: int = 4
    backpressure: str = "block"

    def __post_init__(self) -> None:
        _validate_positive_int("sample_rate", self.sample_rate)
        _validate_positive_int("queue_size", self.queue_size)
        _ensure_numeric_range("chunk_duration", self.chunk_duration, gt=0.0)
        _ensure_numeric_range("overlap_duration", self.overlap_duration, ge=0.0)
        _ensure_numeric_range("min_flush_duration", self.min_flush_duration, ge=0.0)
        if self.overlap_duration >= self.chunk_duration:
            raise ConfigurationError("overlap_duration must be smaller than chunk_duration")
        _ensure_numeric_range(
            "max_buffer_duration", self.max_buffer_duration, ge=self.chunk_duration
        )
        policy = str(self.backpressure).lower()
        if policy not in {"block", "drop_oldest"}:
            raise ConfigurationError("backpressure must be one of ['block', 'drop_oldest']")
        self.backpressure = policy

    @property
    def chunk_samples(self) -> int:
        return int(round(self.chunk_duration * self.sample_rate))

    @property
    def hop_samples(self) -> int:
        return int(round((self.chunk_duration - self.overlap_duration) * self.sample_rate))

    @property
    def max_buffer_samples(self) -> int:
        return int(round(self.max_buffer_duration * self.sample_rate))


@dataclass
class PostProcessConfig:
    # Stricter than the engine's own clustering default (0.65).
    merge_threshold: float = 0.35
    min_segment_duration: float = 0.6
    same_speaker_gap: float = 0.5
    smoothing_window: float = 2.0
    max_switch_duration: float = 2.0

    def __post_init__(self) -> None:
        _ensure_numeric_range("merge_threshold", self.merge_threshold, ge=0.0, le=2.0)
        _ensure_numeric_range("min_segment_duration", self.min_segment_duration, ge=0.0)
        _ensure_numeric_range("same_speaker_gap", self.same_speaker_gap, ge=0.0)
        _ensure_numeric_range("smoothing_window", self.smoothing_window, ge=0.0)
        _ensure_numeric_range("max_switch_duration", self.max_switch_duration, ge=0.0)


@dataclass
class ProfileConfig:
    max_embeddings: int = 20
    min_duration: float = 1.0
    min_quality: float = 0.5
    match_threshold: float = 0.4
    improvement_margin: float = 0.1

    def __post_init__(self) -> None:
        _validate_positive_int("max_embeddings", self.max_embeddings)
        _ensure_numeric_range("min_duration", self.min_duration, ge=0.0)
        _ensure_numeric_range("min_quality", self.min_quality, ge=0.0, le=1.0)
        _ensure_numeric_range("match_threshold", self.match_threshold, ge=0.0, le=2.0)
        _ensure_numeric_range("improvement_margin", self.improvement_margin, ge=0.0)


@dataclass
class FusionConfig:
    short_window: float = 3.0
    short_hop: float = 1.5
    long_window: float = 8.0
    long_hop: float = 4.0
    mapping_threshold: float = 0.5
    window_merge_threshold: float = 0.35
    final_merge_threshold: float = 0.35
    min_refinement_duration: float = 5.0

    def __post_init__(self) -> None:
        for name in ("short_window", "short_hop", "long_window", "long_hop"):
            _ensure_numeric_range(name, getattr(self, name), gt=0.0)
        if self.short_hop > self.short_window:
            raise ConfigurationError("short_hop must be <= short_window")
        if self.long_hop > self.long_window:
            raise ConfigurationError("long_hop must be <= long_window")
        _ensure_numeric_range("mapping_threshold", self.mapping_threshold, ge=0.0, le=2.0)
        _ensure_numeric_range(
            "window_merge_threshold", self.window_merge_threshold, ge=0.0, le=2.0
        )
        _ensure_numeric_range("final_merge_threshold", self.final_merge_threshold, ge=0.0, le=2.0)
        _ensure_numeric_range("min_refinement_duration", self.min_refinement_duration, ge=0.0)


@dataclass
class ConfidenceConfig:
    single_speaker_confidence: float = 0.9
    over_segmentation_distance: float = 0.3
    over_segmentation_cap: float = 0.7

    def __post_init__(self) -> None:
        _ensure_numeric_range(
            "single_speaker_confidence", self.single_speaker_confidence, ge=0.0, le=1.0
        )
        _ensure_numeric_range(
            "over_segmentation_distance", self.over_segmentation_distance, ge=0.0, le=2.0
        )
        _ensure_numeric_range("over_segmentation_cap", self.over_segmentation_cap, ge=0.0, le=1.0)


@dataclass
class VoicePrintConfig:
    embedding_dim: int = 256
    max_stored_embeddings: int = 10
    match_threshold: float = 0.7
    max_merge_weight: float = 0.3
    confirmed_boost: float = 1.5
    confirmed_weight_cap: float = 0.5
    penalty: float = 0.05
    confidence_floor: float = 0.3
    samples_for_full_confidence: int = 10
    store_path: Path | None = None

    def __post_init__(self) -> None:
        _validate_positive_int("embedding_dim", self.embedding_dim)
        _validate_positive_int("max_stored_embeddings", self.max_stored_embeddings)
        _validate_positive_int("samples_for_full_confidence", self.samples_for_full_confidence)
        _ensure_numeric_range("match_threshold", self.match_threshold, ge=0.0, le=1.0)
        _ensure_numeric_range("max_merge_weight", self.max_merge_weight, gt=0.0, le=1.0)
        _ensure_numeric_range("confirmed_boost", self.confirmed_boost, ge=1.0)
        _ensure_numeric_range("confirmed_weight_cap", self.confirmed_weight_cap, gt=0.0, le=1.0)
        _ensure_numeric_range("penalty", self.penalty, ge=0.0, le=1.0)
        _ensure_numeric_range("confidence_floor", self.confidence_floor, ge=0.0, le=1.0)
        if self.store_path is not None:
            self.store_path = Path(self.store_path)


@dataclass
class SessionConfig:
    """Validated configuration for one recording session."""

    stream: StreamConfig = dataclass_field(default_factory=StreamConfig)
    postprocess: PostProcessConfig = dataclass_field(default_factory=PostProcessConfig)
    profiles: ProfileConfig = dataclass_field(default_factory=ProfileConfig)
    fusion: FusionConfig = dataclass_field(default_factory=FusionConfig)
    confidence: ConfidenceConfig = dataclass_field(default_factory=ConfidenceConfig)
    voiceprints: VoicePrintConfig = dataclass_field(default_factory=VoicePrintConfig)
    enable_stabilizer: bool = False
    event_log_path: Path | None = None

    def __post_init__(self) -> None:
        if self.event_log_path is not None:
            self.event_log_path = Path(self.event_log_path)
        env_stabilizer = bool_env("SPEAKERSTABLE_STABILIZER")
        if env_stabilizer is not None:
            self.enable_stabilizer = env_stabilizer
        self.enable_stabilizer = bool(self.enable_stabilizer)

    def model_dump(self) -> dict[str, Any]:
        """Return the configuration as a nested dictionary."""

        data: dict[str, Any] = {}
        for item in dataclass_fields(self):
            value = getattr(self, item.name)
            if is_dataclass(value):
                data[item.name] = {f.name: getattr(value, f.name) for f in dataclass_fields(value)}
            else:
                data[item.name] = value
        return data


_SECTIONS: dict[str, type] = {
    "stream": StreamConfig,
    "postprocess": PostProcessConfig,
    "profiles": ProfileConfig,
    "fusion": FusionConfig,
    "confidence": ConfidenceConfig,
    "voiceprints": VoicePrintConfig,
}


def build_session_config(
    overrides: Mapping[str, Any] | SessionConfig | None = None,
) -> SessionConfig:
    """Return a validated session configuration merged with overrides.

    Overrides may be nested (``{"stream": {"chunk_duration": 4.0}}``) or use
    dotted keys (``{"stream.chunk_duration": 4.0}``).  ``None`` values are
    ignored so CLI options can be passed through unconditionally.
    """

    if isinstance(overrides, SessionConfig):
        return overrides
    merged = SessionConfig().model_dump()
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        section, _, attr = key.partition(".")
        if attr:
            if section not in _SECTIONS or attr not in merged[section]:
                raise ConfigurationError(f"Unknown configuration key: {key}")
            merged[section][attr] = value
        elif section in _SECTIONS and isinstance(value, Mapping):
            for sub_key, sub_value in value.items():
                if sub_key not in merged[section]:
                    raise ConfigurationError(f"Unknown configuration key: {section}.{sub_key}")
                if sub_value is not None:
                    merged[section][sub_key] = sub_value
        elif section in merged and section not in _SECTIONS:
            merged[section] = value
        else:
            raise ConfigurationError(f"Unknown configuration key: {key}")

    sections = {name: cls(**merged.pop(name)) for name, cls in _SECTIONS.items()}
    return SessionConfig(**sections, **merged)


__all__ = [
    "StreamConfig",
    "PostProcessConfig",
    "ProfileConfig",
    "FusionConfig",
    "ConfidenceConfig",
    "VoicePrintConfig",
    "SessionConfig",
    "build_session_config",
    "bool_env",
]
