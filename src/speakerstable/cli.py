"""Command line interface for offline consolidation and the voice-print store."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import numpy as np
import typer

from .config import build_session_config
from .diarization import ConfidenceEstimator, DiarizationResult, PostProcessor
from .errors import SpeakerStableError
from .logging_utils import _make_json_safe
from .voiceprints import JsonPersonStore, VoicePrintStore

app = typer.Typer(help="Speaker consolidation tools for diarization results.")
voiceprints_app = typer.Typer(help="Inspect and update the voice-print store.")
app.add_typer(voiceprints_app, name="voiceprints")

DEFAULT_STORE = Path.home() / ".speakerstable" / "voiceprints.json"


def _echo(payload: Any) -> None:
    typer.echo(json.dumps(_make_json_safe(payload), indent=2))


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"'{path}' is not valid JSON: {exc}") from exc


def _load_result(path: Path) -> DiarizationResult:
    data = _read_json(path)
    if not isinstance(data, dict):
        raise typer.BadParameter(f"'{path}' must contain a JSON object with 'segments'")
    return DiarizationResult.from_dict(data)


def _load_embedding(path: Path) -> np.ndarray:
    data = _read_json(path)
    if isinstance(data, dict):
        data = data.get("embedding")
    if not isinstance(data, list) or not data:
        raise typer.BadParameter(f"'{path}' must contain a list of floats or {{'embedding': [...]}}")
    return np.asarray(data, dtype=np.float32)


def _open_store(store: Path, embedding_dim: int) -> VoicePrintStore:
    config = build_session_config({"voiceprints.embedding_dim": embedding_dim}).voiceprints
    try:
        return VoicePrintStore(JsonPersonStore(store), config)
    except SpeakerStableError as exc:
        raise typer.BadParameter(str(exc)) from exc


@app.command()
def postprocess(
    result_file: Path = typer.Argument(..., exists=True, readable=True, help="Diarization result JSON"),
    merge_threshold: float | None = typer.Option(None, help="Cosine distance below which speakers merge"),
    min_segment_duration: float | None = typer.Option(None, help="Shortest segment kept as-is (s)"),
    smoothing_window: float | None = typer.Option(None, help="A-B-A smoothing window (s)"),
) -> None:
    """Merge, absorb and smooth a saved diarization result."""

    config = build_session_config(
        {
            "postprocess.merge_threshold": merge_threshold,
            "postprocess.min_segment_duration": min_segment_duration,
            "postprocess.smoothing_window": smoothing_window,
        }
    )
    processor = PostProcessor(config.postprocess)
    cleaned = processor.run(_load_result(result_file))
    payload = cleaned.to_dict()
    payload["stats"] = processor.last_stats.as_dict()
    _echo(payload)


@app.command()
def confidence(
    result_file: Path = typer.Argument(..., exists=True, readable=True, help="Diarization result JSON"),
) -> None:
    """Estimate how trustworthy the speaker count of a result is."""

    estimate = ConfidenceEstimator(build_session_config().confidence).estimate(_load_result(result_file))
    _echo(estimate.as_dict())


@voiceprints_app.command("list")
def list_voiceprints(
    store: Path = typer.Option(DEFAULT_STORE, help="Voice-print store JSON"),
    embedding_dim: int = typer.Option(256, help="Embedding dimension"),
) -> None:
    manager = _open_store(store, embedding_dim)
    people = [
        {
            "person_id": record.person_id,
            "name": record.name,
            "sample_count": record.sample_count,
            "confidence": round(record.confidence, 4),
            "needs_more_samples": manager.needs_more_samples(record),
            "last_update": record.last_update,
        }
        for record in manager.store.all()
    ]
    _echo(people)


@voiceprints_app.command("clear")
def clear_voiceprints(
    store: Path = typer.Option(DEFAULT_STORE, help="Voice-print store JSON"),
    yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt"),
) -> None:
    """Delete every stored voice print."""

    if not yes:
        typer.confirm(f"Delete all voice prints in {store}?", abort=True)
    manager = _open_store(store, 256)
    _echo({"removed": manager.clear_all()})


@voiceprints_app.command("match")
def match_voiceprint(
    embedding_file: Path = typer.Argument(..., exists=True, readable=True, help="Embedding JSON"),
    store: Path = typer.Option(DEFAULT_STORE, help="Voice-print store JSON"),
    embedding_dim: int = typer.Option(256, help="Embedding dimension"),
) -> None:
    manager = _open_store(store, embedding_dim)
    try:
        found = manager.match(_load_embedding(embedding_file))
    except SpeakerStableError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if found is None:
        _echo({"match": None})
        return
    _echo(
        {
            "match": {
                "person_id": found.person_id,
                "name": found.name,
                "similarity": round(found.similarity, 4),
                "score": round(found.score, 4),
            }
        }
    )


@voiceprints_app.command("enroll")
def enroll_voiceprint(
    person_id: str = typer.Argument(..., help="Person identifier"),
    embedding_file: Path = typer.Argument(..., exists=True, readable=True, help="Embedding JSON"),
    name: str | None = typer.Option(None, help="Display name"),
    confirmed: bool = typer.Option(False, help="Sample was confirmed by the user"),
    store: Path = typer.Option(DEFAULT_STORE, help="Voice-print store JSON"),
    embedding_dim: int = typer.Option(256, help="Embedding dimension"),
) -> None:
    manager = _open_store(store, embedding_dim)
    try:
        record = manager.enroll(
            _load_embedding(embedding_file), person_id, name=name, confirmed=confirmed
        )
    except SpeakerStableError as exc:
        raise typer.BadParameter(str(exc)) from exc
    _echo(
        {
            "person_id": record.person_id,
            "name": record.name,
            "sample_count": record.sample_count,
            "confidence": round(record.confidence, 4),
        }
    )


def main() -> None:  # pragma: no cover - entry point
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
