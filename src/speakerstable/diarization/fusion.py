"""Post-session multi-scale refinement.

Once recording has stopped the complete audio is re-diarized twice: with
short windows (precise boundaries) and with long windows (stable
embeddings).  Short-scale labels are mapped onto their nearest long-scale
counterpart, the fused result goes through the regular post-processing
pipeline, and database entries that both resolve to the same accumulated
session profile are merged as a last step.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor

import numpy as np

from ..config import FusionConfig
from ..errors import (
    EngineFailure,
    InsufficientAudio,
    NotInitialized,
    attach_context,
    coerce_stage_error,
)
from .disjoint_set import DisjointSet
from .embeddings import average_embeddings, nearest
from .engine import DiarizationEngine, coerce_engine_output
from .logger import logger
from .models import DiarizationResult, Segment
from .postprocess import PostProcessor, merge_similar_speakers


def _window_starts(total: int, window: int, hop: int) -> list[int]:
    if total <= window:
        return [0]
    starts = list(range(0, total - window + 1, hop))
    if starts[-1] + window < total:
        starts.append(total - window)
    return starts


def final_profile_based_merge(
    result: DiarizationResult,
    profiles: Mapping[str, np.ndarray],
    threshold: float = 0.35,
) -> DiarizationResult:
    """Merge database entries that independently best-match the same profile.

    Each entry is matched to its nearest profile average; entries whose
    nearest profile is the same and closer than ``threshold`` collapse into
    the lowest-sorted label.
    """

    if len(result.speaker_database) < 2 or not profiles:
        return result
    try:
        claims: dict[str, list[str]] = {}
        for label in sorted(result.speaker_database):
            profile_id, dist = nearest(result.speaker_database[label], dict(profiles))
            if profile_id is not None and dist < threshold:
                claims.setdefault(profile_id, []).append(label)

        ds = DisjointSet(result.speaker_database)
        changed = False
        for profile_id, labels in claims.items():
            for other in labels[1:]:
                changed = ds.union(labels[0], other) or changed
            if len(labels) > 1:
                logger.info("Final merge: %s all match profile %s", labels, profile_id)
        if not changed:
            return result

        mapping = ds.mapping()
        database = {
            root: average_embeddings(result.speaker_database[m] for m in members)
            for root, members in ds.groups().items()
        }
        segments = [
            seg.relabel(mapping.get(seg.speaker_id, seg.speaker_id)) for seg in result.segments
        ]
        return result.with_segments(segments, database)
    except Exception as exc:
        logger.warning("final_profile_based_merge failed, keeping input unchanged: %s", exc)
        return result


class MultiScaleFusion:
    def __init__(
        self,
        engine: DiarizationEngine | None,
        config: FusionConfig | None = None,
        *,
        postprocessor: PostProcessor | None = None,
        sample_rate: int = 16000,
    ):
        self.engine = engine
        self.config = config or FusionConfig()
        self.postprocessor = postprocessor or PostProcessor()
        self.sample_rate = sample_rate
        self.window_failures = 0

    def diarize_scale(
        self, audio: np.ndarray, window_sec: float, hop_sec: float, scale: str
    ) -> DiarizationResult:
        """Diarize fixed windows and stitch them into one result on the session timeline.

        Each window only contributes the central part it owns (half a hop of
        overlap on either side goes to its neighbours).  Window-local labels
        are unified across windows by embedding similarity and renamed
        ``<scale>_<n>`` in order of first appearance.
        """

        if self.engine is None:
            raise NotInitialized("diarization engine unavailable", stage="fusion")
        sr = self.sample_rate
        window = max(1, int(round(window_sec * sr)))
        hop = max(1, int(round(hop_sec * sr)))
        total = int(audio.size)
        starts = _window_starts(total, window, hop)
        margin = (window - hop) / 2.0

        segments: list[Segment] = []
        database: dict[str, np.ndarray] = {}
        for k, start in enumerate(starts):
            chunk = audio[start : start + window]
            offset = start / sr
            own_start = (start + margin) / sr if k > 0 else 0.0
            own_end = (starts[k + 1] + margin) / sr if k + 1 < len(starts) else total / sr
            try:
                local = coerce_engine_output(self.engine.diarize(chunk))
            except Exception as exc:
                self.window_failures += 1
                failure = coerce_stage_error(
                    "fusion",
                    f"{scale} window at {offset:.1f}s failed",
                    context={"window_sec": window_sec},
                    cause=exc,
                )
                logger.warning("%s: %s", failure, exc)
                continue
            prefix = f"{scale}{k}:"
            for label, vec in local.speaker_database.items():
                database[prefix + label] = vec
            for seg in local.segments:
                seg_start = max(seg.start + offset, own_start)
                seg_end = min(seg.end + offset, own_end)
                if seg_end <= seg_start:
                    continue
                segments.append(
                    Segment(
                        speaker_id=prefix + seg.speaker_id,
                        embedding=seg.embedding,
                        start=seg_start,
                        end=seg_end,
                        quality=seg.quality,
                    )
                )

        stitched = DiarizationResult(segments=segments, speaker_database=database)
        unified = merge_similar_speakers(stitched, self.config.window_merge_threshold)
        return self._rename(unified, scale)

    @staticmethod
    def _rename(result: DiarizationResult, scale: str) -> DiarizationResult:
        order: list[str] = []
        for seg in result.segments:
            if seg.speaker_id not in order:
                order.append(seg.speaker_id)
        for label in sorted(result.speaker_database):
            if label not in order:
                order.append(label)
        names = {label: f"{scale}_{i + 1}" for i, label in enumerate(order)}
        segments = [seg.relabel(names[seg.speaker_id]) for seg in result.segments]
        database = {names[k]: v for k, v in result.speaker_database.items()}
        return result.with_segments(segments, database)

    def map_scales(
        self, short: DiarizationResult, long: DiarizationResult
    ) -> dict[str, str]:
        """Map each short-scale label to its nearest long-scale label (or itself)."""

        mapping: dict[str, str] = {}
        for label in sorted(short.speaker_database):
            target, dist = nearest(short.speaker_database[label], long.speaker_database)
            if target is not None and dist < self.config.mapping_threshold:
                mapping[label] = target
            else:
                mapping[label] = label
                logger.debug(
                    "Short-scale %s kept (nearest long-scale distance %.3f)", label, dist
                )
        return mapping

    def fuse(self, short: DiarizationResult, long: DiarizationResult) -> DiarizationResult:
        mapping = self.map_scales(short, long)
        segments = [seg.relabel(mapping.get(seg.speaker_id, seg.speaker_id)) for seg in short.segments]
        database = dict(long.speaker_database)
        for label, target in mapping.items():
            if target == label:
                database[label] = short.speaker_database[label]
        referenced = {seg.speaker_id for seg in segments}
        database = {k: v for k, v in database.items() if k in referenced}
        return DiarizationResult(segments=segments, speaker_database=database)

    def refine(
        self,
        audio: np.ndarray,
        profiles: Mapping[str, np.ndarray] | None = None,
    ) -> DiarizationResult:
        audio = np.asarray(audio, dtype=np.float32).reshape(-1)
        duration = audio.size / self.sample_rate
        if duration < self.config.min_refinement_duration:
            raise InsufficientAudio(
                f"refinement needs {self.config.min_refinement_duration:.1f}s, got {duration:.1f}s",
                stage="fusion",
                context={"duration_sec": round(duration, 3)},
            )
        cfg = self.config
        started = time.perf_counter()
        short = self.diarize_scale(audio, cfg.short_window, cfg.short_hop, "short")
        if not short.segments:
            raise attach_context(
                EngineFailure("short-scale pass produced no segments", stage="fusion"),
                {"window_failures": self.window_failures, "duration_sec": round(duration, 3)},
            )
        long = self.diarize_scale(audio, cfg.long_window, cfg.long_hop, "long")
        fused = self.fuse(short, long)
        cleaned = self.postprocessor.run(fused)
        refined = final_profile_based_merge(cleaned, profiles or {}, cfg.final_merge_threshold)
        elapsed = time.perf_counter() - started
        refined.timings = {**(refined.timings or {}), "refine_sec": elapsed}
        logger.info(
            "Refinement: %d segments, %d speakers (short=%d, long=%d) in %.2fs",
            len(refined.segments),
            refined.speaker_count,
            short.speaker_count,
            long.speaker_count,
            elapsed,
        )
        return refined

    def refine_async(
        self,
        audio: np.ndarray,
        profiles: Mapping[str, np.ndarray] | None = None,
    ) -> Future:
        """Run :meth:`refine` once on a dedicated thread over a frozen audio copy."""

        frozen = np.array(audio, dtype=np.float32, copy=True).reshape(-1)
        frozen_profiles = {k: np.array(v, copy=True) for k, v in (profiles or {}).items()}
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="refine")
        try:
            return executor.submit(self.refine, frozen, frozen_profiles)
        finally:
            executor.shutdown(wait=False)


__all__ = ["MultiScaleFusion", "final_profile_based_merge"]
