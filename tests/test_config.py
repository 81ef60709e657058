from __future__ import annotations

from pathlib import Path

import pytest

from speakerstable.config import (
    PostProcessConfig,
    SessionConfig,
    StreamConfig,
    build_session_config,
)
from speakerstable.errors import ConfigurationError


def test_defaults_match_documented_thresholds():
    config = build_session_config()

    assert config.postprocess.merge_threshold == pytest.approx(0.35)
    assert config.postprocess.min_segment_duration == pytest.approx(0.6)
    assert config.profiles.match_threshold == pytest.approx(0.4)
    assert config.fusion.mapping_threshold == pytest.approx(0.5)
    assert config.voiceprints.match_threshold == pytest.approx(0.7)
    assert config.stream.chunk_samples == 80000
    assert config.stream.hop_samples == 56000


def test_dotted_and_nested_overrides():
    config = build_session_config(
        {
            "stream.chunk_duration": 4.0,
            "postprocess": {"merge_threshold": 0.3, "smoothing_window": None},
            "event_log_path": "logs/events.jsonl",
        }
    )

    assert config.stream.chunk_duration == pytest.approx(4.0)
    assert config.postprocess.merge_threshold == pytest.approx(0.3)
    assert config.postprocess.smoothing_window == pytest.approx(2.0)
    assert config.event_log_path == Path("logs/events.jsonl")


def test_session_config_passes_through():
    config = SessionConfig()

    assert build_session_config(config) is config


@pytest.mark.parametrize(
    "overrides",
    [
        {"stream.unknown": 1},
        {"nonsense": True},
        {"postprocess": {"typo": 1.0}},
    ],
)
def test_unknown_keys_are_rejected(overrides):
    with pytest.raises(ConfigurationError):
        build_session_config(overrides)


def test_invalid_values_are_rejected():
    with pytest.raises(ConfigurationError):
        StreamConfig(overlap_duration=5.0, chunk_duration=5.0)
    with pytest.raises(ConfigurationError):
        StreamConfig(backpressure="spill")
    with pytest.raises(ConfigurationError):
        PostProcessConfig(merge_threshold=-0.1)
    with pytest.raises(ValueError):
        build_session_config({"voiceprints.embedding_dim": 0})


def test_stabilizer_env_toggle(monkeypatch):
    monkeypatch.setenv("SPEAKERSTABLE_STABILIZER", "off")
    assert build_session_config({"enable_stabilizer": True}).enable_stabilizer is False

    monkeypatch.setenv("SPEAKERSTABLE_STABILIZER", "maybe")
    assert build_session_config({"enable_stabilizer": True}).enable_stabilizer is True
