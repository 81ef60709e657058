"""Session-scoped wiring of the consolidation components.

One :class:`DiarizationSession` is created per recording and handed around
explicitly.  Nothing here is a process-wide singleton, so two recordings can
never see each other's buffers or profiles.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import Future

import numpy as np

from ..config import SessionConfig, build_session_config
from ..errors import EngineFailure, InsufficientAudio, NotInitialized
from ..logging_utils import JSONLWriter
from .confidence import ConfidenceEstimator, SpeakerCountEstimate
from .engine import DiarizationEngine
from .fusion import MultiScaleFusion
from .logger import logger
from .models import DiarizationResult
from .postprocess import PostProcessor
from .profiles import ProfileAccumulator
from .stabilizer import SpeakerStabilizer
from .stream import ChunkStream, StreamWorker


class DiarizationSession:
    def __init__(
        self,
        engine: DiarizationEngine | None,
        config: SessionConfig | Mapping | None = None,
        *,
        voiceprints=None,
        on_result: Callable[[DiarizationResult], None] | None = None,
    ):
        self.config = build_session_config(config)
        self.engine = engine
        if voiceprints is None and self.config.voiceprints.store_path is not None:
            from ..voiceprints import JsonPersonStore, VoicePrintStore

            voiceprints = VoicePrintStore(
                JsonPersonStore(self.config.voiceprints.store_path), self.config.voiceprints
            )
        self.voiceprints = voiceprints
        self.on_result = on_result

        self.stream = ChunkStream(engine, self.config.stream)
        self.postprocessor = PostProcessor(self.config.postprocess)
        self.profiles = ProfileAccumulator(self.config.profiles)
        self.estimator = ConfidenceEstimator(self.config.confidence)
        self.fusion = MultiScaleFusion(
            engine,
            self.config.fusion,
            postprocessor=PostProcessor(self.config.postprocess),
            sample_rate=self.config.stream.sample_rate,
        )
        self.stabilizer = SpeakerStabilizer() if self.config.enable_stabilizer else None
        self._worker = StreamWorker(self.stream, on_result=self._handle)
        self._events = (
            JSONLWriter(self.config.event_log_path) if self.config.event_log_path else None
        )
        self._lock = threading.Lock()
        self._live = False
        self._latest: DiarizationResult | None = None
        self.final_result: DiarizationResult | None = None

    @property
    def live(self) -> bool:
        return self._live

    @property
    def latest_result(self) -> DiarizationResult | None:
        with self._lock:
            return self._latest

    def _emit(self, event: str, **payload) -> None:
        if self._events is not None:
            self._events.emit({"event": event, **payload})

    # ------------------------------------------------------------------
    # live capture

    def start(self) -> None:
        if self.engine is None:
            raise NotInitialized("diarization engine unavailable", stage="session")
        if self._live:
            return
        self._worker.start()
        self._live = True
        self._emit("start", config=self.config.model_dump())
        logger.info("Diarization session started")

    def feed(self, samples: np.ndarray) -> None:
        """Hand captured samples to the processing thread (safe from any thread)."""

        self._worker.submit(samples)

    def process(self, raw: DiarizationResult) -> DiarizationResult:
        """Clean one engine result and reconcile it with the session profiles."""

        cleaned = self.postprocessor.run(raw)
        corrected = self.profiles.match_against_profiles(cleaned)
        self.profiles.accumulate(corrected)
        if self.stabilizer is not None:
            corrected = self.stabilizer.stabilize_sequence(corrected)
        return corrected

    def _handle(self, raw: DiarizationResult) -> None:
        result = self.process(raw)
        with self._lock:
            self._latest = result
        self._emit(
            "chunk",
            segments=len(result.segments),
            speakers=result.speaker_ids,
            timings=result.timings or {},
            stats=self.postprocessor.last_stats.as_dict(),
        )
        if self.on_result is not None:
            self.on_result(result)

    def stop(self, timeout: float | None = None) -> DiarizationResult | None:
        """Stop capture, wait for the in-flight engine call, then flush the tail.

        If the worker is still busy after ``timeout`` the session stays live,
        nothing is flushed and the latest result is returned; call ``stop``
        again to finish.
        """

        if not self._live:
            return self.latest_result
        if not self._worker.stop(timeout=timeout):
            logger.warning("Diarization session still processing; call stop() again to finish")
            return self.latest_result
        self._live = False
        tail = self.stream.flush()
        if tail is not None:
            self._handle(tail)
        stats = self.stream.stats()
        self._emit("stop", buffer=stats.describe(), dropped=self._worker.dropped_blocks)
        logger.info("Diarization session stopped: %s", stats.describe())
        return self.latest_result

    # ------------------------------------------------------------------
    # post-session

    def refine(self) -> Future:
        if self._live:
            raise RuntimeError("refinement cannot run while the session is live")
        return self.fusion.refine_async(self.stream.recording(), self.profiles.averages())

    def finalize(self, timeout: float | None = None) -> DiarizationResult | None:
        """Run refinement and fall back to the last live result if it cannot run."""

        try:
            refined = self.refine().result(timeout=timeout)
        except InsufficientAudio as exc:
            logger.info("Skipping refinement: %s", exc)
            refined = None
        except (EngineFailure, NotInitialized) as exc:
            logger.warning("Refinement failed, keeping live result: %s", exc)
            refined = None
        self.final_result = refined if refined is not None else self.latest_result
        if self.final_result is not None:
            self._emit(
                "final",
                refined=refined is not None,
                speakers=self.final_result.speaker_ids,
                confidence=self.confidence().as_dict(),
            )
        return self.final_result

    def confidence(self, result: DiarizationResult | None = None) -> SpeakerCountEstimate:
        target = result or self.final_result or self.latest_result or DiarizationResult()
        return self.estimator.estimate(target)

    def identify(self, expected_names: Iterable[str] = ()) -> dict:
        """Match the current speakers against stored voice prints."""

        if self.voiceprints is None:
            return {}
        target = self.final_result or self.latest_result
        if target is None:
            return {}
        return self.voiceprints.match_many(target.speaker_database, expected_names)

    def enroll_confirmed(self, assignments: Mapping[str, str]) -> list[str]:
        """Enroll speakers the user confirmed (speaker id -> person id)."""

        target = self.final_result or self.latest_result
        if self.voiceprints is None or target is None:
            return []
        enrolled = []
        for speaker_id, person_id in assignments.items():
            embedding = target.speaker_database.get(speaker_id)
            if embedding is None:
                logger.warning("No embedding for confirmed speaker %s", speaker_id)
                continue
            self.voiceprints.enroll(embedding, person_id, confirmed=True)
            enrolled.append(person_id)
        return enrolled

    def reset(self) -> None:
        if self._live:
            raise RuntimeError("stop the session before resetting it")
        self.stream.reset()
        self.profiles.reset()
        if self.stabilizer is not None:
            self.stabilizer.reset()
        with self._lock:
            self._latest = None
        self.final_result = None


__all__ = ["DiarizationSession"]
