from __future__ import annotations

import json
from datetime import UTC, datetime

import numpy as np
import pytest

from speakerstable.config import VoicePrintConfig
from speakerstable.errors import PersistenceFailure
from speakerstable.voiceprints import InMemoryPersonStore, JsonPersonStore, PersonStore, PersonVoicePrint, VoicePrintStore


def _record(person_id: str = "p1", name: str | None = "Ada Lovelace") -> PersonVoicePrint:
    rng = np.random.default_rng(3)
    vectors = [rng.standard_normal(256).astype(np.float32) for _ in range(3)]
    return PersonVoicePrint(
        person_id=person_id,
        name=name,
        stored_embeddings=vectors,
        average_embedding=np.mean(np.vstack(vectors), axis=0).astype(np.float32),
        confidence=0.61,
        sample_count=3,
        last_update=datetime(2026, 1, 5, 9, 30, tzinfo=UTC),
    )


def test_stores_satisfy_protocol(tmp_path):
    assert isinstance(InMemoryPersonStore(), PersonStore)
    assert isinstance(JsonPersonStore(tmp_path / "prints.json"), PersonStore)


def test_in_memory_store_returns_copies():
    store = InMemoryPersonStore()
    record = _record()
    store.set(record)

    fetched = store.get("p1")
    fetched.average_embedding[:] = 0.0
    fetched.stored_embeddings.clear()

    again = store.get("p1")
    assert np.array_equal(again.average_embedding, record.average_embedding)
    assert len(again.stored_embeddings) == 3


def test_name_search_is_case_insensitive():
    store = InMemoryPersonStore([_record("p2", "Grace Hopper"), _record("p1", "Ada Lovelace"), _record("p3", None)])

    assert [r.person_id for r in store.find_by_name_contains("LOVE")] == ["p1"]
    assert [r.person_id for r in store.find_by_name_contains("a")] == ["p1", "p2"]
    assert store.find_by_name_contains("  ") == []


def test_json_store_round_trip_is_bit_identical(tmp_path):
    path = tmp_path / "prints.json"
    record = _record()
    JsonPersonStore(path).set(record)

    restored = JsonPersonStore(path).get("p1")

    assert restored.average_embedding.tobytes() == record.average_embedding.tobytes()
    for got, want in zip(restored.stored_embeddings, record.stored_embeddings, strict=True):
        assert got.tobytes() == want.tobytes()
    assert restored.name == "Ada Lovelace"
    assert restored.confidence == pytest.approx(0.61)
    assert restored.sample_count == 3
    assert restored.last_update == record.last_update


def test_json_store_layout(tmp_path):
    path = tmp_path / "nested" / "prints.json"
    store = JsonPersonStore(path)
    store.set(_record())
    store.set(_record("p2", "Grace Hopper"))
    store.delete("p2")

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["metadata"]["schema_version"] == 1
    assert payload["metadata"]["total_persons"] == 1
    assert list(payload["persons"]) == ["p1"]
    assert not path.with_suffix(".tmp").exists()


def test_corrupt_store_raises(tmp_path):
    path = tmp_path / "prints.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(PersistenceFailure):
        JsonPersonStore(path)


def test_unreadable_person_entry_is_skipped(tmp_path):
    path = tmp_path / "prints.json"
    good = {k: v for k, v in _record().to_dict().items() if k != "person_id"}
    path.write_text(
        json.dumps({"metadata": {}, "persons": {"p1": good, "bad": {"average_embedding": "!!"}}}),
        encoding="utf-8",
    )

    store = JsonPersonStore(path)

    assert [r.person_id for r in store.all()] == ["p1"]


def test_manager_persists_through_json_store(tmp_path):
    path = tmp_path / "prints.json"
    embedding = np.linspace(-1.0, 1.0, 16, dtype=np.float32)
    manager = VoicePrintStore(JsonPersonStore(path), VoicePrintConfig(embedding_dim=16))
    manager.enroll(embedding, "p1", name="Ada")

    reloaded = VoicePrintStore(JsonPersonStore(path), VoicePrintConfig(embedding_dim=16))
    record = reloaded.store.get("p1")

    assert record.sample_count == 1
    assert record.average_embedding.tobytes() == embedding.tobytes()
