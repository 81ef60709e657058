"""Enrollment, matching and feedback for cross-session voice prints."""

from __future__ import annotations

import threading

import numpy as np
import pytest

from speakerstable.config import VoicePrintConfig
from speakerstable.errors import InvalidEmbeddingDimension, PersistenceFailure
from speakerstable.voiceprints import (
    ConfirmedParticipant,
    InMemoryPersonStore,
    Priority,
    RecommendationType,
    VoicePrintStore,
)

DIM = 8


def _vec(*head: float) -> np.ndarray:
    out = np.zeros(DIM, dtype=np.float32)
    out[: len(head)] = head
    return out


ALICE = _vec(1.0, 0.2, 0.1)
BOB = _vec(0.0, 0.1, 1.0, 0.3)


@pytest.fixture
def prints() -> VoicePrintStore:
    return VoicePrintStore(config=VoicePrintConfig(embedding_dim=DIM))


def test_repeated_enrollment_raises_confidence_and_matches(prints):
    first = prints.enroll(ALICE, "p1", name="Alice Liddell")
    second = prints.enroll(ALICE, "p1")

    assert first.confidence == pytest.approx(0.37)
    assert second.confidence == pytest.approx(0.44)
    assert second.confidence > first.confidence
    assert second.name == "Alice Liddell"

    scored = prints.score(ALICE, "p1")
    assert scored.similarity == pytest.approx(1.0, abs=1e-6)
    assert scored.score == pytest.approx(0.44, abs=1e-4)
    # Below the 0.7 acceptance score after only two samples.
    assert prints.match(ALICE) is None


def test_match_accepted_once_confidence_is_high_enough(prints):
    confidences = [prints.enroll(ALICE, "p1", name="Alice").confidence for _ in range(6)]

    assert confidences == sorted(confidences)
    found = prints.match(ALICE)
    assert found is not None
    assert found.person_id == "p1"
    assert found.similarity == pytest.approx(1.0, abs=1e-6)
    assert found.score > 0.7


def test_confidence_is_capped(prints):
    for _ in range(15):
        record = prints.enroll(ALICE, "p1")

    assert record.confidence <= 1.0
    assert record.confidence == pytest.approx(1.0, abs=1e-6)
    assert len(record.stored_embeddings) == 10
    assert record.sample_count == 15


def test_new_sample_blends_with_bounded_weight(prints):
    prints.enroll(ALICE, "p1")
    record = prints.enroll(BOB, "p1")

    # Second sample: weight = min(0.3, 1/2) = 0.3.
    assert np.allclose(record.average_embedding, ALICE * 0.7 + BOB * 0.3, atol=1e-6)


def test_confirmed_sample_gets_boosted_weight(prints):
    prints.enroll(ALICE, "p1")
    record = prints.enroll(BOB, "p1", confirmed=True)

    # 0.3 * 1.5 = 0.45, below the 0.5 cap.
    assert np.allclose(record.average_embedding, ALICE * 0.55 + BOB * 0.45, atol=1e-6)


def test_wrong_dimension_is_rejected_without_mutation(prints):
    prints.enroll(ALICE, "p1")

    with pytest.raises(InvalidEmbeddingDimension):
        prints.enroll(np.ones(DIM + 1, dtype=np.float32), "p1")
    with pytest.raises(InvalidEmbeddingDimension):
        prints.enroll(np.full(DIM, np.nan, dtype=np.float32), "p1")

    assert prints.store.get("p1").sample_count == 1


def test_incorrect_match_feedback_respects_floor(prints):
    prints.enroll(ALICE, "p1")  # confidence 0.37

    assert prints.record_incorrect_match("p1").confidence == pytest.approx(0.32)
    assert prints.record_incorrect_match("p1").confidence == pytest.approx(0.30)
    assert prints.record_incorrect_match("p1").confidence == pytest.approx(0.30)
    assert np.allclose(prints.store.get("p1").average_embedding, ALICE)
    assert prints.record_incorrect_match("missing") is None


def test_match_many_prefers_expected_attendees(prints):
    for _ in range(8):
        prints.enroll(ALICE, "p1", name="Alice")
        prints.enroll(ALICE, "p2", name="Alicia Other")
        prints.enroll(BOB, "p3", name="Bob")

    matches = prints.match_many({"S2": BOB, "S1": ALICE, "S9": np.ones(3)}, ["alicia"])

    assert matches["S1"].person_id == "p2"
    # Bob was not expected but is still found through the global search.
    assert matches["S2"].person_id == "p3"
    assert "S9" not in matches


def test_global_match_breaks_ties_on_lowest_id(prints):
    for _ in range(8):
        prints.enroll(ALICE, "p2")
        prints.enroll(ALICE, "p1")

    assert prints.match(ALICE).person_id == "p1"


def test_concurrent_enrollment_does_not_lose_updates(prints):
    def _worker():
        for _ in range(25):
            prints.enroll(ALICE, "p1")

    threads = [threading.Thread(target=_worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert prints.store.get("p1").sample_count == 100


def test_learning_recommendations(prints):
    prints.enroll(ALICE, "p1", name="Alice")
    for _ in range(12):
        prints.enroll(BOB, "p3", name="Bob")

    recs = prints.learning_recommendations({"p1": "Alice", "p2": "Carol", "p3": "Bob"})

    assert [(r.person_id, r.kind, r.priority) for r in recs] == [
        ("p2", RecommendationType.NO_SAMPLES, Priority.HIGH),
        ("p1", RecommendationType.NEEDS_MORE_SAMPLES, Priority.MEDIUM),
    ]
    assert "Carol" in recs[0].message
    assert prints.needs_more_samples(prints.store.get("p1"))
    assert not prints.needs_more_samples(prints.store.get("p3"))


def test_improve_from_meeting_enrolls_confirmed_participants(prints):
    participants = [
        ConfirmedParticipant("p1", "S1", [ALICE, ALICE * 1.1], 42.0, name="Alice"),
        ConfirmedParticipant("p2", "S2", [], 3.0),
        ConfirmedParticipant("p3", "S3", [np.ones(3)], 5.0),
    ]

    assert prints.improve_from_meeting(participants) == ["p1"]
    assert prints.store.get("p1").sample_count == 1
    assert prints.store.get("p2") is None


def test_preload_and_clear_all(prints):
    prints.enroll(ALICE, "p1")
    prints.enroll(BOB, "p3")

    loaded = prints.preload(["p1", "p3", "unknown"])
    assert set(loaded) == {"p1", "p3"}

    assert prints.clear_all() == 2
    assert prints.store.all() == []


class _FailingStore(InMemoryPersonStore):
    def set(self, record):
        raise PersistenceFailure("disk full", stage="voiceprints")


def test_persistence_failure_is_logged_not_raised():
    prints = VoicePrintStore(_FailingStore(), VoicePrintConfig(embedding_dim=DIM))

    record = prints.enroll(ALICE, "p1")

    assert record.sample_count == 1
    assert prints.persistence_failures == 1
