"""Cross-session voice-print enrollment and matching.

Every mutation is a per-person read-modify-write against the
:class:`~speakerstable.voiceprints.store.PersonStore`; a lock per person
serialises them so concurrent enrollments never lose an update.  Write
failures are logged and the in-memory record is not rolled back: voice
prints are running statistics that correct themselves on the next save.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, IntEnum

import numpy as np

from ..config import VoicePrintConfig
from ..diarization.embeddings import average_embeddings, cosine_similarity
from ..errors import InvalidEmbeddingDimension, PersistenceFailure
from ..logging_utils import get_logger
from .store import InMemoryPersonStore, PersonStore, PersonVoicePrint

logger = get_logger("voiceprints")


@dataclass(frozen=True)
class VoiceMatch:
    person_id: str
    name: str | None
    similarity: float
    score: float


@dataclass
class ConfirmedParticipant:
    """A meeting participant whose identity the user confirmed."""

    person_id: str
    speaker_id: str
    embeddings: list[np.ndarray] = field(default_factory=list)
    speaking_duration: float = 0.0
    name: str | None = None


class RecommendationType(str, Enum):
    NO_SAMPLES = "no_samples"
    NEEDS_MORE_SAMPLES = "needs_more_samples"


class Priority(IntEnum):
    HIGH = 0
    MEDIUM = 1
    LOW = 2


@dataclass(frozen=True)
class VoiceLearningRecommendation:
    person_id: str
    name: str
    kind: RecommendationType
    priority: Priority
    message: str


class VoicePrintStore:
    def __init__(self, store: PersonStore | None = None, config: VoicePrintConfig | None = None):
        self.config = config or VoicePrintConfig()
        self.store: PersonStore = store if store is not None else InMemoryPersonStore()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.persistence_failures = 0

    # ------------------------------------------------------------------
    # helpers

    def _person_lock(self, person_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(person_id)
            if lock is None:
                lock = self._locks[person_id] = threading.Lock()
            return lock

    def _validate(self, embedding: np.ndarray) -> np.ndarray:
        vec = np.asarray(embedding, dtype=np.float32).reshape(-1)
        if vec.size != self.config.embedding_dim:
            raise InvalidEmbeddingDimension(
                f"embedding has {vec.size} values, expected {self.config.embedding_dim}",
                stage="voiceprints",
                context={"dimension": int(vec.size)},
            )
        if not np.all(np.isfinite(vec)):
            raise InvalidEmbeddingDimension(
                "embedding contains non-finite values", stage="voiceprints"
            )
        return vec

    def _persist(self, record: PersonVoicePrint) -> None:
        try:
            self.store.set(record)
        except PersistenceFailure as exc:
            self.persistence_failures += 1
            logger.warning("Voice print for %s not saved: %s", record.display_name, exc)

    # ------------------------------------------------------------------
    # enrollment

    def enroll(
        self,
        embedding: np.ndarray,
        person_id: str,
        *,
        name: str | None = None,
        confirmed: bool = False,
    ) -> PersonVoicePrint:
        """Blend ``embedding`` into the person's stored average.

        The blend weight is ``min(0.3, 1 / (sample_count + 1))``, boosted by
        1.5 for user-confirmed samples and capped at 0.5.  Confidence is
        ``0.7 * min(sample_count / 10, 1) + 0.3 * similarity(new, previous)``.
        """

        cfg = self.config
        vec = self._validate(embedding)
        with self._person_lock(person_id):
            record = self.store.get(person_id) or PersonVoicePrint(person_id=person_id)
            if name and not record.name:
                record.name = name
            existing = record.average_embedding
            if existing is None or record.sample_count == 0:
                merged = vec.copy()
                consistency = 1.0
            else:
                weight = min(cfg.max_merge_weight, 1.0 / (record.sample_count + 1))
                if confirmed:
                    weight = min(weight * cfg.confirmed_boost, cfg.confirmed_weight_cap)
                merged = (existing * (1.0 - weight) + vec * weight).astype(np.float32)
                consistency = cosine_similarity(vec, existing)

            record.stored_embeddings.append(vec)
            del record.stored_embeddings[: -cfg.max_stored_embeddings]
            record.average_embedding = merged
            record.sample_count += 1
            sample_term = min(record.sample_count / cfg.samples_for_full_confidence, 1.0)
            record.confidence = float(min(max(0.7 * sample_term + 0.3 * consistency, 0.0), 1.0))
            record.last_update = datetime.now(tz=UTC)
            self._persist(record)

        logger.info(
            "Enrolled voice sample for %s (samples=%d, confidence=%.3f)",
            record.display_name,
            record.sample_count,
            record.confidence,
        )
        return record

    def enroll_many(
        self,
        embeddings: Iterable[np.ndarray],
        person_id: str,
        *,
        name: str | None = None,
        confirmed: bool = False,
    ) -> PersonVoicePrint | None:
        vectors = [self._validate(e) for e in embeddings]
        if not vectors:
            return None
        return self.enroll(average_embeddings(vectors), person_id, name=name, confirmed=confirmed)

    def record_incorrect_match(self, person_id: str) -> PersonVoicePrint | None:
        """Lower confidence after a rejected match; the stored embedding is untouched."""

        cfg = self.config
        with self._person_lock(person_id):
            record = self.store.get(person_id)
            if record is None:
                logger.warning("Incorrect-match feedback for unknown person %s", person_id)
                return None
            if record.confidence > cfg.confidence_floor:
                record.confidence = max(cfg.confidence_floor, record.confidence - cfg.penalty)
                record.last_update = datetime.now(tz=UTC)
                self._persist(record)
        return record

    # ------------------------------------------------------------------
    # matching

    def _best(self, vec: np.ndarray, candidates: Iterable[PersonVoicePrint]) -> VoiceMatch | None:
        best: VoiceMatch | None = None
        for record in sorted(candidates, key=lambda r: r.person_id):
            if record.average_embedding is None:
                continue
            similarity = cosine_similarity(vec, record.average_embedding)
            score = similarity * record.confidence
            if score > self.config.match_threshold and (best is None or score > best.score):
                best = VoiceMatch(record.person_id, record.name, similarity, score)
        return best

    def score(self, embedding: np.ndarray, person_id: str) -> VoiceMatch | None:
        """Similarity and confidence-weighted score against one person, unthresholded."""

        vec = self._validate(embedding)
        record = self.store.get(person_id)
        if record is None or record.average_embedding is None:
            return None
        similarity = cosine_similarity(vec, record.average_embedding)
        return VoiceMatch(record.person_id, record.name, similarity, similarity * record.confidence)

    def match(self, embedding: np.ndarray) -> VoiceMatch | None:
        vec = self._validate(embedding)
        found = self._best(vec, self.store.all())
        if found is not None:
            logger.info("Voice match: %s (score %.3f)", found.name or found.person_id, found.score)
        return found

    def match_many(
        self,
        embeddings: Mapping[str, np.ndarray],
        expected_names: Iterable[str] = (),
    ) -> dict[str, VoiceMatch]:
        """Match several speakers, trying the expected attendees first.

        The global search is only used for a speaker when nobody in the
        expected pool clears the threshold.
        """

        pool: dict[str, PersonVoicePrint] = {}
        for expected in expected_names:
            people = self.store.find_by_name_contains(expected)
            if people:
                pool.setdefault(people[0].person_id, people[0])
            else:
                logger.debug("No stored voice print matches expected name %r", expected)

        everyone: list[PersonVoicePrint] | None = None
        matches: dict[str, VoiceMatch] = {}
        for speaker_id in sorted(embeddings):
            try:
                vec = self._validate(embeddings[speaker_id])
            except InvalidEmbeddingDimension as exc:
                logger.warning("Skipping %s: %s", speaker_id, exc)
                continue
            found = self._best(vec, pool.values()) if pool else None
            if found is None:
                if everyone is None:
                    everyone = self.store.all()
                found = self._best(vec, everyone)
            if found is not None:
                matches[speaker_id] = found
        return matches

    # ------------------------------------------------------------------
    # progressive learning

    def needs_more_samples(self, record: PersonVoicePrint) -> bool:
        return record.sample_count < 3 or record.confidence < 0.8

    def improve_from_meeting(self, participants: Iterable[ConfirmedParticipant]) -> list[str]:
        """Enroll the confirmed participants of a finished meeting."""

        improved: list[str] = []
        for participant in participants:
            if not participant.embeddings:
                continue
            try:
                self.enroll_many(
                    participant.embeddings,
                    participant.person_id,
                    name=participant.name,
                    confirmed=True,
                )
            except InvalidEmbeddingDimension as exc:
                logger.warning("Not learning from %s: %s", participant.person_id, exc)
                continue
            improved.append(participant.person_id)
        return improved

    def learning_recommendations(
        self, known_people: Mapping[str, str] | None = None
    ) -> list[VoiceLearningRecommendation]:
        """Suggest who needs more voice samples.

        ``known_people`` maps person ids to display names for people that may
        not have a voice print yet.
        """

        records = {r.person_id: r for r in self.store.all()}
        names = dict(known_people or {})
        recs: list[VoiceLearningRecommendation] = []
        for person_id in sorted(set(names) | set(records)):
            record = records.get(person_id)
            name = names.get(person_id) or (record.display_name if record else person_id)
            if record is None or record.sample_count == 0:
                recs.append(
                    VoiceLearningRecommendation(
                        person_id,
                        name,
                        RecommendationType.NO_SAMPLES,
                        Priority.HIGH,
                        f"No voice samples yet. Record a meeting with {name} to enable voice recognition.",
                    )
                )
            elif self.needs_more_samples(record):
                missing = max(3 - record.sample_count, 1)
                recs.append(
                    VoiceLearningRecommendation(
                        person_id,
                        name,
                        RecommendationType.NEEDS_MORE_SAMPLES,
                        Priority.MEDIUM,
                        f"{name} needs {missing} more voice sample(s) for reliable recognition.",
                    )
                )
        return sorted(recs, key=lambda r: (r.priority, r.person_id))

    def preload(self, person_ids: Iterable[str]) -> dict[str, np.ndarray]:
        loaded: dict[str, np.ndarray] = {}
        for person_id in person_ids:
            record = self.store.get(person_id)
            if record is not None and record.average_embedding is not None:
                loaded[person_id] = record.average_embedding
        return loaded

    def clear_all(self) -> int:
        """Privacy reset: delete every stored voice print."""

        removed = 0
        for record in self.store.all():
            with self._person_lock(record.person_id):
                try:
                    self.store.delete(record.person_id)
                except PersistenceFailure as exc:
                    self.persistence_failures += 1
                    logger.warning("Voice print for %s not removed on disk: %s", record.display_name, exc)
                removed += 1
        logger.info("Cleared %d voice print(s)", removed)
        return removed


__all__ = [
    "VoicePrintStore",
    "VoiceMatch",
    "ConfirmedParticipant",
    "VoiceLearningRecommendation",
    "RecommendationType",
    "Priority",
]
