from __future__ import annotations

from dataclasses import asdict, dataclass

from .models import DiarizationResult


@dataclass
class StabilizationStats:
    stable_segments: int = 0
    pending_changes: int = 0
    committed_changes: int = 0
    suppressed_changes: int = 0
    short_segments_inherited: int = 0
    temporal_smooths: int = 0

    @property
    def suppression_rate(self) -> float:
        total = self.committed_changes + self.suppressed_changes
        return self.suppressed_changes / total if total else 0.0

    def as_dict(self) -> dict[str, float]:
        data = asdict(self)
        data["suppression_rate"] = round(self.suppression_rate, 4)
        return data


class SpeakerStabilizer:
    """Hysteresis on speaker labels.

    A label change is only committed after ``required_consecutive``
    segments agree on the new label; until then the current label is kept.
    """

    def __init__(self, required_consecutive: int = 2, short_segment_sec: float = 0.3):
        if required_consecutive < 1:
            raise ValueError("required_consecutive must be >= 1")
        self.required_consecutive = required_consecutive
        self.short_segment_sec = short_segment_sec
        self.stats = StabilizationStats()
        self._pending: str | None = None
        self._pending_count = 0

    def reset(self) -> None:
        self._pending = None
        self._pending_count = 0
        self.stats = StabilizationStats()

    def stabilize(self, raw_label: str, current_label: str | None) -> str:
        current = raw_label if current_label is None else current_label
        if raw_label == current:
            self._pending = None
            self._pending_count = 0
            self.stats.stable_segments += 1
            return current

        if raw_label == self._pending:
            self._pending_count += 1
        else:
            self._pending = raw_label
            self._pending_count = 1
        self.stats.pending_changes += 1

        if self._pending_count >= self.required_consecutive:
            self._pending = None
            self._pending_count = 0
            self.stats.committed_changes += 1
            return raw_label

        self.stats.suppressed_changes += 1
        return current

    def stabilize_sequence(self, result: DiarizationResult) -> DiarizationResult:
        """Relabel a whole result; boundaries are left untouched."""

        self._pending = None
        self._pending_count = 0
        current: str | None = None
        segments = []
        for seg in result.segments:
            if seg.duration < self.short_segment_sec and current is not None:
                self.stats.short_segments_inherited += 1
                segments.append(seg.relabel(current))
                continue
            current = self.stabilize(seg.speaker_id, current)
            segments.append(seg if seg.speaker_id == current else seg.relabel(current))
        vanished = set(result.speaker_ids) - {seg.speaker_id for seg in segments}
        database = {k: v for k, v in result.speaker_database.items() if k not in vanished}
        return result.with_segments(segments, database)

    def temporal_smooth(
        self, result: DiarizationResult, min_duration_for_change: float = 0.5
    ) -> DiarizationResult:
        """Relabel the middle of A-B-A when B is shorter than ``min_duration_for_change``."""

        segments = list(result.segments)
        if len(segments) < 3:
            return result
        for i in range(1, len(segments) - 1):
            prev, curr, nxt = segments[i - 1], segments[i], segments[i + 1]
            if (
                prev.speaker_id == nxt.speaker_id
                and curr.speaker_id != prev.speaker_id
                and curr.duration < min_duration_for_change
            ):
                segments[i] = curr.relabel(prev.speaker_id)
                self.stats.temporal_smooths += 1
        return result.with_segments(segments)


__all__ = ["SpeakerStabilizer", "StabilizationStats"]
