"""Storage contract for cross-session voice prints.

A store only knows how to get, set and search :class:`PersonVoicePrint`
records; all learning logic lives in :mod:`speakerstable.voiceprints.manager`.
Embeddings are written as base64 of little-endian float32 bytes so a stored
vector reads back bit-identical.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import numpy as np

from ..diarization.embeddings import decode_embedding, encode_embedding
from ..errors import PersistenceFailure
from ..logging_utils import get_logger

logger = get_logger("voiceprints")

SCHEMA_VERSION = 1


def _iso_now() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds")


@dataclass
class PersonVoicePrint:
    person_id: str
    name: str | None = None
    stored_embeddings: list[np.ndarray] = field(default_factory=list)
    average_embedding: np.ndarray | None = None
    confidence: float = 0.0
    sample_count: int = 0
    last_update: datetime | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.person_id

    def copy(self) -> PersonVoicePrint:
        return PersonVoicePrint(
            person_id=self.person_id,
            name=self.name,
            stored_embeddings=[v.copy() for v in self.stored_embeddings],
            average_embedding=None if self.average_embedding is None else self.average_embedding.copy(),
            confidence=self.confidence,
            sample_count=self.sample_count,
            last_update=self.last_update,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "person_id": self.person_id,
            "name": self.name,
            "embeddings": [encode_embedding(v) for v in self.stored_embeddings],
            "average_embedding": (
                None if self.average_embedding is None else encode_embedding(self.average_embedding)
            ),
            "confidence": float(self.confidence),
            "sample_count": int(self.sample_count),
            "last_update": (
                None if self.last_update is None else self.last_update.isoformat(timespec="seconds")
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PersonVoicePrint:
        average = data.get("average_embedding")
        last_update = data.get("last_update")
        return cls(
            person_id=str(data["person_id"]),
            name=data.get("name"),
            stored_embeddings=[decode_embedding(v) for v in data.get("embeddings") or []],
            average_embedding=decode_embedding(average) if average else None,
            confidence=float(data.get("confidence", 0.0)),
            sample_count=int(data.get("sample_count", 0)),
            last_update=datetime.fromisoformat(last_update) if last_update else None,
        )


@runtime_checkable
class PersonStore(Protocol):
    def get(self, person_id: str) -> PersonVoicePrint | None: ...

    def set(self, record: PersonVoicePrint) -> None: ...

    def delete(self, person_id: str) -> None: ...

    def all(self) -> list[PersonVoicePrint]: ...

    def find_by_name_contains(self, substring: str) -> list[PersonVoicePrint]: ...


class InMemoryPersonStore:
    """Dictionary-backed store; hands out copies so callers cannot alias state."""

    def __init__(self, records: Iterable[PersonVoicePrint] = ()):
        self._lock = threading.RLock()
        self._records: dict[str, PersonVoicePrint] = {r.person_id: r.copy() for r in records}

    def get(self, person_id: str) -> PersonVoicePrint | None:
        with self._lock:
            record = self._records.get(person_id)
            return record.copy() if record is not None else None

    def set(self, record: PersonVoicePrint) -> None:
        with self._lock:
            self._records[record.person_id] = record.copy()

    def delete(self, person_id: str) -> None:
        with self._lock:
            self._records.pop(person_id, None)

    def all(self) -> list[PersonVoicePrint]:
        with self._lock:
            return [self._records[k].copy() for k in sorted(self._records)]

    def find_by_name_contains(self, substring: str) -> list[PersonVoicePrint]:
        needle = substring.casefold().strip()
        if not needle:
            return []
        return [r for r in self.all() if r.name and needle in r.name.casefold()]


class JsonPersonStore(InMemoryPersonStore):
    """JSON file store, rewritten atomically on every change."""

    def __init__(self, path: str | Path):
        super().__init__()
        self.path = Path(path)
        self._metadata: dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceFailure(
                f"could not read voice-print store {self.path}", stage="voiceprints", cause=exc
            ) from exc
        if not isinstance(data, dict):
            logger.warning("Voice-print store expected a JSON object at %s", self.path)
            return
        self._metadata = dict(data.get("metadata") or {})
        for person_id, payload in (data.get("persons") or {}).items():
            try:
                record = PersonVoicePrint.from_dict({"person_id": person_id, **payload})
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable voice print %s: %s", person_id, exc)
                continue
            self._records[record.person_id] = record

    def save(self) -> None:
        with self._lock:
            now = _iso_now()
            self._metadata.setdefault("created_at", now)
            self._metadata["updated_at"] = now
            self._metadata["schema_version"] = SCHEMA_VERSION
            self._metadata["total_persons"] = len(self._records)
            payload = {
                "metadata": self._metadata,
                "persons": {
                    pid: {k: v for k, v in rec.to_dict().items() if k != "person_id"}
                    for pid, rec in sorted(self._records.items())
                },
            }
            temp_path = self.path.with_suffix(".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                temp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
                temp_path.replace(self.path)
            except OSError as exc:
                temp_path.unlink(missing_ok=True)
                raise PersistenceFailure(
                    f"could not write voice-print store {self.path}",
                    stage="voiceprints",
                    cause=exc,
                ) from exc

    def set(self, record: PersonVoicePrint) -> None:
        super().set(record)
        self.save()

    def delete(self, person_id: str) -> None:
        super().delete(person_id)
        self.save()


__all__ = ["PersonVoicePrint", "PersonStore", "InMemoryPersonStore", "JsonPersonStore"]
