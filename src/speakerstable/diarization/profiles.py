from __future__ import annotations

import threading
from collections.abc import Mapping
from types import MappingProxyType

import numpy as np

from ..config import ProfileConfig
from .embeddings import average_embeddings, cosine_distance, nearest
from .logger import logger
from .models import DiarizationResult, SpeakerProfile


class ProfileAccumulator:
    """Rolling per-speaker embedding profiles for one session.

    Profiles are created the first time a speaker produces a qualifying
    segment (long enough, good enough) and are only cleared by :meth:`reset`.
    They are used to undo label drift: the engine re-clusters the whole
    buffer on every chunk, so one person can come back as ``S2`` after being
    ``S1`` a few seconds earlier.
    """

    def __init__(self, config: ProfileConfig | None = None):
        self.config = config or ProfileConfig()
        self._profiles: dict[str, SpeakerProfile] = {}
        self._lock = threading.RLock()
        self.remapped_segments = 0

    @property
    def profiles(self) -> Mapping[str, SpeakerProfile]:
        return MappingProxyType(self._profiles)

    def averages(self) -> dict[str, np.ndarray]:
        with self._lock:
            return {
                spk: prof.average_embedding.copy()
                for spk, prof in self._profiles.items()
                if prof.average_embedding is not None
            }

    def reset(self) -> None:
        with self._lock:
            self._profiles.clear()
            self.remapped_segments = 0

    def accumulate(self, result: DiarizationResult) -> int:
        """Fold qualifying segment embeddings into the speakers' profiles.

        Returns the number of embeddings added.
        """

        cfg = self.config
        added = 0
        with self._lock:
            for seg in result.segments:
                if seg.duration < cfg.min_duration or seg.quality <= cfg.min_quality:
                    continue
                if seg.embedding.size == 0:
                    continue
                profile = self._profiles.get(seg.speaker_id)
                if profile is None:
                    profile = SpeakerProfile(seg.speaker_id, max_embeddings=cfg.max_embeddings)
                    self._profiles[seg.speaker_id] = profile
                    logger.info("New speaker profile: %s", seg.speaker_id)
                elif profile.embeddings and profile.embeddings[0].size != seg.embedding.size:
                    logger.warning(
                        "Skipping %d-value embedding for %s (profile has %d)",
                        seg.embedding.size,
                        seg.speaker_id,
                        profile.embeddings[0].size,
                    )
                    continue
                profile.add(seg.embedding)
                added += 1
        return added

    def best_match(self, embedding: np.ndarray) -> tuple[str | None, float]:
        return nearest(embedding, self.averages())

    def match_against_profiles(self, result: DiarizationResult) -> DiarizationResult:
        """Relabel segments whose embedding clearly belongs to another profile.

        A segment moves to its nearest profile only when that distance is
        below ``match_threshold`` and beats the distance to the profile of its
        current label by at least ``improvement_margin``.  A label without a
        profile counts as infinitely far away.  Equal distances resolve to the
        lowest profile id.
        """

        cfg = self.config
        averages = self.averages()
        if not averages or not result.segments:
            return result

        segments = []
        moved = 0
        for seg in result.segments:
            if seg.embedding.size == 0:
                segments.append(seg)
                continue
            best_id, best_dist = nearest(seg.embedding, averages)
            if best_id is None or best_id == seg.speaker_id:
                segments.append(seg)
                continue
            current = averages.get(seg.speaker_id)
            current_dist = (
                cosine_distance(seg.embedding, current) if current is not None else float("inf")
            )
            if best_dist < cfg.match_threshold and current_dist - best_dist >= cfg.improvement_margin:
                segments.append(seg.relabel(best_id))
                moved += 1
            else:
                segments.append(seg)

        if not moved:
            return result
        with self._lock:
            self.remapped_segments += moved
        logger.debug("Profile matching relabelled %d segment(s)", moved)

        referenced = {seg.speaker_id for seg in segments}
        database = {
            spk: vec for spk, vec in result.speaker_database.items() if spk in referenced
        }
        for spk in referenced - set(database):
            if spk in averages:
                database[spk] = averages[spk]
            else:
                database[spk] = average_embeddings(
                    s.embedding for s in segments if s.speaker_id == spk
                )
        return result.with_segments(segments, database)


__all__ = ["ProfileAccumulator"]
