"""Deterministic cleanup of a single diarization result.

The stages always run in the same order: merge identities first, then drop
fragments, then remove noise switches that survive fragment removal.  Each
stage is a pure function of a :class:`DiarizationResult`; if a stage fails
internally it logs and hands back its input untouched.
"""

from __future__ import annotations

import functools
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace

from ..config import PostProcessConfig
from .disjoint_set import DisjointSet
from .embeddings import average_embeddings, pairwise_cosine_distances
from .logger import logger
from .models import DiarizationResult, Segment


@dataclass
class PostProcessStats:
    merged_speakers: int = 0
    absorbed_segments: int = 0
    joined_segments: int = 0
    smoothed_switches: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def _stage(name: str) -> Callable:
    def decorator(func: Callable[..., DiarizationResult]) -> Callable[..., DiarizationResult]:
        @functools.wraps(func)
        def wrapper(result: DiarizationResult, *args, **kwargs) -> DiarizationResult:
            try:
                return func(result, *args, **kwargs)
            except Exception as exc:
                logger.warning("%s failed, keeping input unchanged: %s", name, exc)
                return result

        return wrapper

    return decorator


@_stage("merge_similar_speakers")
def merge_similar_speakers(
    result: DiarizationResult,
    merge_threshold: float = 0.35,
    *,
    stats: PostProcessStats | None = None,
) -> DiarizationResult:
    """Union database entries closer than ``merge_threshold`` (cosine distance).

    Unions are transitive and always fold the higher-sorted label into the
    lower one.  Merged entries are re-averaged and compared again until no
    pair is below the threshold, which makes the stage idempotent.
    """

    members = {
        label: [label] for label, vec in result.speaker_database.items() if vec.size > 0
    }
    if len(members) < 2:
        return result

    current = {label: result.speaker_database[label] for label in members}
    while len(current) > 1:
        labels = sorted(current)
        distances = pairwise_cosine_distances([current[label] for label in labels])
        ds = DisjointSet(labels)
        changed = False
        for i in range(len(labels)):
            for j in range(i + 1, len(labels)):
                if distances[i, j] < merge_threshold:
                    changed = ds.union(labels[i], labels[j]) or changed
        if not changed:
            break
        regrouped: dict[str, list[str]] = {}
        for root, group in ds.groups().items():
            regrouped[root] = [orig for label in group for orig in members[label]]
        members = regrouped
        current = {
            root: average_embeddings(result.speaker_database[m] for m in group)
            for root, group in members.items()
        }

    mapping = {orig: root for root, group in members.items() for orig in group}
    merged = sum(len(group) - 1 for group in members.values())
    if merged == 0:
        return result
    if stats is not None:
        stats.merged_speakers += merged
    for root, group in sorted(members.items()):
        if len(group) > 1:
            logger.debug("Merged speakers %s into %s", sorted(group), root)

    database = {
        label: vec for label, vec in result.speaker_database.items() if label not in mapping
    }
    database.update(current)
    segments = [seg.relabel(mapping.get(seg.speaker_id, seg.speaker_id)) for seg in result.segments]
    return result.with_segments(segments, database)


@_stage("enforce_minimum_segment_duration")
def enforce_minimum_segment_duration(
    result: DiarizationResult,
    min_duration: float = 0.6,
    *,
    same_speaker_gap: float = 0.5,
    stats: PostProcessStats | None = None,
) -> DiarizationResult:
    """Absorb fragments shorter than ``min_duration`` into their predecessor.

    A short segment with no predecessor is kept as is.  Afterwards adjacent
    segments of the same speaker separated by less than ``same_speaker_gap``
    are joined, keeping the higher quality score.
    """

    if not result.segments:
        return result

    absorbed: list[Segment] = []
    for seg in result.segments:
        if seg.duration < min_duration and absorbed:
            prev = absorbed[-1]
            absorbed[-1] = replace(prev, end=max(prev.end, seg.end))
            if stats is not None:
                stats.absorbed_segments += 1
        else:
            absorbed.append(seg)

    joined: list[Segment] = []
    for seg in absorbed:
        if joined:
            prev = joined[-1]
            if prev.speaker_id == seg.speaker_id and seg.start - prev.end < same_speaker_gap:
                joined[-1] = replace(
                    prev, end=max(prev.end, seg.end), quality=max(prev.quality, seg.quality)
                )
                if stats is not None:
                    stats.joined_segments += 1
                continue
        joined.append(seg)

    return result.with_segments(joined)


@_stage("smooth_rapid_speaker_switches")
def smooth_rapid_speaker_switches(
    result: DiarizationResult,
    window_seconds: float = 2.0,
    *,
    max_switch_duration: float = 2.0,
    stats: PostProcessStats | None = None,
) -> DiarizationResult:
    """Collapse A-B-A triples where B is brief and the whole span is short.

    A triple is collapsed only when B lasts less than ``max_switch_duration``
    and ``A.start`` to the second ``A.end`` is strictly less than
    ``window_seconds``.  The same index is examined again after a collapse.
    """

    segments = list(result.segments)
    if len(segments) < 3:
        return result

    i = 0
    collapsed = 0
    while i + 2 < len(segments):
        first, middle, last = segments[i], segments[i + 1], segments[i + 2]
        if (
            first.speaker_id == last.speaker_id
            and middle.speaker_id != first.speaker_id
            and middle.duration < max_switch_duration
            and last.end - first.start < window_seconds
        ):
            segments[i : i + 3] = [
                replace(
                    first,
                    end=max(first.end, middle.end, last.end),
                    quality=max(first.quality, last.quality),
                )
            ]
            collapsed += 1
            continue
        i += 1

    if not collapsed:
        return result
    if stats is not None:
        stats.smoothed_switches += collapsed
    return result.with_segments(segments)


class PostProcessor:
    """Run the three cleanup stages with one configuration."""

    def __init__(self, config: PostProcessConfig | None = None):
        self.config = config or PostProcessConfig()
        self.last_stats = PostProcessStats()

    def run(self, result: DiarizationResult) -> DiarizationResult:
        cfg = self.config
        stats = PostProcessStats()
        started = time.perf_counter()
        out = merge_similar_speakers(result, cfg.merge_threshold, stats=stats)
        out = enforce_minimum_segment_duration(
            out,
            cfg.min_segment_duration,
            same_speaker_gap=cfg.same_speaker_gap,
            stats=stats,
        )
        out = smooth_rapid_speaker_switches(
            out,
            cfg.smoothing_window,
            max_switch_duration=cfg.max_switch_duration,
            stats=stats,
        )
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if out is result:
            out = result.with_segments(result.segments)
        out.timings = {**(out.timings or {}), "postprocess_ms": elapsed_ms}
        self.last_stats = stats
        logger.debug("Post-processing: %s (%.1f ms)", stats.as_dict(), elapsed_ms)
        return out


__all__ = [
    "PostProcessStats",
    "PostProcessor",
    "merge_similar_speakers",
    "enforce_minimum_segment_duration",
    "smooth_rapid_speaker_switches",
]
