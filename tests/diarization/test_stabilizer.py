from __future__ import annotations

import numpy as np
import pytest

from speakerstable.diarization.models import DiarizationResult, Segment
from speakerstable.diarization.stabilizer import SpeakerStabilizer

EMB = np.ones(3, dtype=np.float32)


def _result(*spans):
    segments = [Segment(spk, EMB, start, end) for spk, start, end in spans]
    return DiarizationResult(segments=segments, speaker_database={spk: EMB for spk, _, _ in spans})


def test_change_needs_consecutive_confirmation():
    stabilizer = SpeakerStabilizer(required_consecutive=2)

    assert stabilizer.stabilize("A", None) == "A"
    assert stabilizer.stabilize("B", "A") == "A"
    assert stabilizer.stabilize("B", "A") == "B"
    assert stabilizer.stats.committed_changes == 1
    assert stabilizer.stats.suppressed_changes == 1
    assert stabilizer.stats.suppression_rate == pytest.approx(0.5)


def test_single_blip_is_suppressed_in_sequence():
    stabilizer = SpeakerStabilizer()
    result = _result(("A", 0.0, 2.0), ("B", 2.0, 3.0), ("A", 3.0, 5.0))

    stable = stabilizer.stabilize_sequence(result)

    assert [s.speaker_id for s in stable.segments] == ["A", "A", "A"]
    assert list(stable.speaker_database) == ["A"]
    assert [s.end for s in stable.segments] == [2.0, 3.0, 5.0]


def test_sustained_change_is_committed():
    stabilizer = SpeakerStabilizer()
    result = _result(("A", 0.0, 2.0), ("B", 2.0, 3.0), ("B", 3.0, 4.0), ("B", 4.0, 6.0))

    stable = stabilizer.stabilize_sequence(result)

    assert [s.speaker_id for s in stable.segments] == ["A", "A", "B", "B"]


def test_short_segments_inherit_current_label():
    stabilizer = SpeakerStabilizer(required_consecutive=1, short_segment_sec=0.3)
    result = _result(("A", 0.0, 2.0), ("C", 2.0, 2.2), ("B", 2.2, 4.0))

    stable = stabilizer.stabilize_sequence(result)

    assert [s.speaker_id for s in stable.segments] == ["A", "A", "B"]
    assert stabilizer.stats.short_segments_inherited == 1


def test_temporal_smooth_relabels_short_middle():
    stabilizer = SpeakerStabilizer()
    result = _result(("A", 0.0, 2.0), ("B", 2.0, 2.4), ("A", 2.4, 5.0), ("B", 5.0, 7.0))

    smoothed = stabilizer.temporal_smooth(result, min_duration_for_change=0.5)

    assert [s.speaker_id for s in smoothed.segments] == ["A", "A", "A", "B"]
    assert stabilizer.stats.temporal_smooths == 1


def test_invalid_hysteresis():
    with pytest.raises(ValueError):
        SpeakerStabilizer(required_consecutive=0)
