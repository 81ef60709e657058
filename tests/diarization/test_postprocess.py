"""Tests for the merge / absorb / smooth cleanup stages."""

from __future__ import annotations

import numpy as np
import pytest

from speakerstable.config import PostProcessConfig
from speakerstable.diarization.models import DiarizationResult, Segment
from speakerstable.diarization.postprocess import (
    PostProcessor,
    PostProcessStats,
    enforce_minimum_segment_duration,
    merge_similar_speakers,
    smooth_rapid_speaker_switches,
)


def _unit(*values: float) -> np.ndarray:
    vec = np.asarray(values, dtype=np.float32)
    return vec / np.linalg.norm(vec)


def _at_distance(distance: float) -> np.ndarray:
    """Unit vector at ``distance`` (cosine) from ``[1, 0, 0, 0]``."""

    cos = 1.0 - distance
    return np.asarray([cos, np.sqrt(1.0 - cos**2), 0.0, 0.0], dtype=np.float32)


E_A = _unit(1, 0, 0, 0)
E_B = _unit(0, 1, 0, 0)
E_C = _unit(0, 0, 1, 0)


def _seg(speaker: str, start: float, end: float, embedding: np.ndarray | None = None, quality: float = 0.9) -> Segment:
    emb = embedding if embedding is not None else E_A
    return Segment(speaker_id=speaker, embedding=emb, start=start, end=end, quality=quality)


def test_close_speakers_merge_into_lowest_label():
    near = _at_distance(0.1)
    result = DiarizationResult(
        segments=[_seg("S1", 0.0, 2.0, E_A), _seg("S2", 2.0, 4.0, near), _seg("S1", 4.0, 6.0, E_A)],
        speaker_database={"S1": E_A, "S2": near},
    )

    stats = PostProcessStats()
    merged = merge_similar_speakers(result, 0.35, stats=stats)

    assert list(merged.speaker_database) == ["S1"]
    assert [seg.speaker_id for seg in merged.segments] == ["S1", "S1", "S1"]
    assert stats.merged_speakers == 1
    expected = (E_A + near) / 2.0
    assert np.allclose(merged.speaker_database["S1"], expected)


def test_distant_speakers_are_kept_apart():
    result = DiarizationResult(
        segments=[_seg("S1", 0.0, 2.0, E_A), _seg("S2", 2.0, 4.0, E_B)],
        speaker_database={"S1": E_A, "S2": E_B},
    )

    merged = merge_similar_speakers(result, 0.35)

    assert merged is result
    assert merged.speaker_ids == ["S1", "S2"]


def test_merge_is_transitive_across_chains():
    # A-B and B-C are under threshold, A-C is not; all three must end up together.
    a = _unit(1.0, 0.0, 0.0, 0.0)
    b = _unit(1.0, 0.55, 0.0, 0.0)
    c = _unit(1.0, 1.3, 0.0, 0.0)
    result = DiarizationResult(
        segments=[_seg("A", 0, 1, a), _seg("B", 1, 2, b), _seg("C", 2, 3, c)],
        speaker_database={"A": a, "B": b, "C": c},
    )
    threshold = 0.15
    assert 1.0 - float(a @ b) < threshold
    assert 1.0 - float(b @ c) < threshold
    assert 1.0 - float(a @ c) > threshold

    merged = merge_similar_speakers(result, threshold)

    assert merged.speaker_ids == ["A"]
    assert list(merged.speaker_database) == ["A"]


def test_merge_is_idempotent():
    near = _at_distance(0.2)
    result = DiarizationResult(
        segments=[
            _seg("S3", 0.0, 1.5, near),
            _seg("S1", 1.5, 3.0, E_A),
            _seg("S2", 3.0, 5.0, E_B),
            _seg("S4", 5.0, 6.0, _at_distance(0.3)),
        ],
        speaker_database={"S1": E_A, "S2": E_B, "S3": near, "S4": _at_distance(0.3)},
    )

    once = merge_similar_speakers(result, 0.35)
    twice = merge_similar_speakers(once, 0.35)

    assert twice.speaker_ids == once.speaker_ids
    assert [s.speaker_id for s in twice.segments] == [s.speaker_id for s in once.segments]
    for label, vec in once.speaker_database.items():
        assert np.allclose(twice.speaker_database[label], vec)


def test_short_fragment_is_absorbed_into_predecessor():
    result = DiarizationResult(
        segments=[_seg("A", 0.0, 0.3), _seg("B", 0.3, 0.5, E_B), _seg("A", 0.5, 1.0)],
        speaker_database={"A": E_A, "B": E_B},
    )

    stats = PostProcessStats()
    cleaned = enforce_minimum_segment_duration(result, 0.6, stats=stats)

    assert len(cleaned.segments) == 1
    only = cleaned.segments[0]
    assert only.speaker_id == "A"
    assert only.start == pytest.approx(0.0)
    assert only.end == pytest.approx(1.0)
    assert stats.absorbed_segments >= 1


def test_short_first_segment_is_kept():
    result = DiarizationResult(
        segments=[_seg("B", 0.0, 0.2, E_B), _seg("A", 0.2, 3.0)],
        speaker_database={"A": E_A, "B": E_B},
    )

    cleaned = enforce_minimum_segment_duration(result, 0.6)

    assert [s.speaker_id for s in cleaned.segments] == ["B", "A"]


def test_same_speaker_segments_join_across_small_gap():
    result = DiarizationResult(
        segments=[_seg("A", 0.0, 2.0, quality=0.6), _seg("A", 2.3, 4.0, quality=0.8)],
        speaker_database={"A": E_A},
    )

    cleaned = enforce_minimum_segment_duration(result, 0.6, same_speaker_gap=0.5)

    assert len(cleaned.segments) == 1
    assert cleaned.segments[0].end == pytest.approx(4.0)
    assert cleaned.segments[0].quality == pytest.approx(0.8)


def test_duration_floor_holds_after_postprocessing():
    result = DiarizationResult(
        segments=[
            _seg("A", 0.0, 1.2),
            _seg("B", 1.2, 1.4, E_B),
            _seg("C", 1.4, 1.9, E_C),
            _seg("B", 1.9, 3.5, E_B),
            _seg("A", 3.5, 3.6),
            _seg("C", 3.6, 6.0, E_C),
        ],
        speaker_database={"A": E_A, "B": E_B, "C": E_C},
    )

    cleaned = PostProcessor(PostProcessConfig(min_segment_duration=0.6)).run(result)

    assert all(seg.duration >= 0.6 for seg in cleaned.segments[1:])
    starts = [seg.start for seg in cleaned.segments]
    assert starts == sorted(starts)


def test_long_span_switch_is_not_smoothed():
    result = DiarizationResult(
        segments=[_seg("A", 0.0, 3.0), _seg("B", 3.0, 4.0, E_B), _seg("A", 4.0, 8.0)],
        speaker_database={"A": E_A, "B": E_B},
    )

    smoothed = smooth_rapid_speaker_switches(result, 2.0)

    assert [s.speaker_id for s in smoothed.segments] == ["A", "B", "A"]


def test_shorter_switch_with_span_over_window_is_not_smoothed():
    result = DiarizationResult(
        segments=[_seg("A", 0.0, 3.0), _seg("B", 3.0, 3.5, E_B), _seg("A", 3.5, 4.5)],
        speaker_database={"A": E_A, "B": E_B},
    )

    smoothed = smooth_rapid_speaker_switches(result, 2.0)

    assert len(smoothed.segments) == 3


@pytest.mark.parametrize(
    ("last_end", "collapsed"),
    [(2.0, False), (1.99, True)],
)
def test_smoothing_span_boundary_is_strict(last_end, collapsed):
    result = DiarizationResult(
        segments=[_seg("A", 0.0, 0.8), _seg("B", 0.8, 1.2, E_B), _seg("A", 1.2, last_end)],
        speaker_database={"A": E_A, "B": E_B},
    )

    smoothed = smooth_rapid_speaker_switches(result, 2.0)

    if collapsed:
        assert len(smoothed.segments) == 1
        assert smoothed.segments[0].speaker_id == "A"
        assert smoothed.segments[0].end == pytest.approx(last_end)
    else:
        assert [s.speaker_id for s in smoothed.segments] == ["A", "B", "A"]


def test_postprocessor_records_stats_and_timing():
    near = _at_distance(0.05)
    result = DiarizationResult(
        segments=[_seg("S1", 0.0, 3.0, E_A), _seg("S2", 3.0, 6.0, near)],
        speaker_database={"S1": E_A, "S2": near},
    )

    processor = PostProcessor()
    cleaned = processor.run(result)

    assert cleaned.speaker_ids == ["S1"]
    assert len(cleaned.segments) == 1
    assert processor.last_stats.merged_speakers == 1
    assert processor.last_stats.joined_segments == 1
    assert "postprocess_ms" in cleaned.timings
    assert result.timings is None


def test_failing_stage_returns_input(monkeypatch):
    import speakerstable.diarization.postprocess as postprocess

    def _boom(*_args, **_kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(postprocess, "pairwise_cosine_distances", _boom)
    result = DiarizationResult(
        segments=[_seg("S1", 0.0, 1.0, E_A), _seg("S2", 1.0, 2.0, E_B)],
        speaker_database={"S1": E_A, "S2": E_B},
    )

    assert merge_similar_speakers(result, 0.35) is result
