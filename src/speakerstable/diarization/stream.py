"""Cumulative audio buffer feeding the diarization engine.

The engine is always run over the whole retained buffer (up to
``max_buffer_duration``) rather than over the newest chunk alone: clustering
needs long context to keep labels stable, so every call yields a fresh
full-history result instead of an incremental delta.  A new call is made
each time ``chunk_duration - overlap_duration`` seconds of new audio have
arrived, which keeps ``overlap_duration`` seconds of the previous chunk in
view across every boundary.
"""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np

from ..config import StreamConfig
from ..errors import EngineFailure, NotInitialized, coerce_stage_error
from .engine import DiarizationEngine, coerce_engine_output
from .logger import logger
from .models import DiarizationResult


@dataclass(frozen=True)
class BufferStats:
    duration: float
    sample_count: int
    rms: float
    start_time: float
    total_duration: float
    chunks_processed: int
    failures: int

    def describe(self) -> str:
        return (
            f"Duration: {self.duration:.1f}s ({self.sample_count} samples), "
            f"RMS: {self.rms:.4f}, start: {self.start_time:.1f}s, "
            f"chunks: {self.chunks_processed}, failures: {self.failures}"
        )


class ChunkStream:
    """Single-writer cumulative buffer; not thread-safe on its own.

    Use :class:`StreamWorker` when samples arrive on a capture thread.
    """

    def __init__(self, engine: DiarizationEngine | None, config: StreamConfig | None = None):
        self.engine = engine
        self.config = config or StreamConfig()
        self._buffer = np.zeros(0, dtype=np.float32)
        self._recording: list[np.ndarray] = []
        self._buffer_start = 0
        self._total = 0
        self._next_trigger = self.config.chunk_samples
        self._processed_until = 0
        self.chunks_processed = 0
        self.failures = 0
        self.last_error: EngineFailure | None = None
        self.last_result: DiarizationResult | None = None
        self._warned_no_engine = False

    @property
    def sample_rate(self) -> int:
        return self.config.sample_rate

    @property
    def buffered_duration(self) -> float:
        return self._buffer.size / self.sample_rate

    @property
    def total_duration(self) -> float:
        return self._total / self.sample_rate

    @property
    def buffer_start_time(self) -> float:
        return self._buffer_start / self.sample_rate

    def append_samples(self, samples: np.ndarray) -> list[DiarizationResult]:
        """Append mono float32 samples and run the engine for every completed chunk."""

        data = np.asarray(samples, dtype=np.float32).reshape(-1)
        results: list[DiarizationResult] = []
        while data.size:
            take = min(data.size, self._next_trigger - self._total)
            self._push(data[:take])
            data = data[take:]
            if self._total >= self._next_trigger:
                self._next_trigger += self.config.hop_samples
                result = self._process()
                if result is not None:
                    results.append(result)
        return results

    def flush(self) -> DiarizationResult | None:
        """Process audio that arrived after the last full chunk, if there is enough."""

        pending = self._total - self._processed_until
        if pending <= 0 or pending < self.config.min_flush_duration * self.sample_rate:
            return None
        return self._process()

    def recording(self) -> np.ndarray:
        """Frozen copy of everything appended since the last reset."""

        if not self._recording:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(self._recording).copy()

    def reset(self) -> None:
        self._buffer = np.zeros(0, dtype=np.float32)
        self._recording.clear()
        self._buffer_start = 0
        self._total = 0
        self._next_trigger = self.config.chunk_samples
        self._processed_until = 0
        self.chunks_processed = 0
        self.failures = 0
        self.last_error = None
        self.last_result = None

    def stats(self) -> BufferStats:
        rms = float(np.sqrt(np.mean(self._buffer**2))) if self._buffer.size else 0.0
        return BufferStats(
            duration=self.buffered_duration,
            sample_count=int(self._buffer.size),
            rms=rms,
            start_time=self.buffer_start_time,
            total_duration=self.total_duration,
            chunks_processed=self.chunks_processed,
            failures=self.failures,
        )

    def _push(self, data: np.ndarray) -> None:
        if not data.size:
            return
        if self.config.keep_recording:
            self._recording.append(data.copy())
        self._buffer = np.concatenate([self._buffer, data])
        self._total += data.size
        overflow = self._buffer.size - self.config.max_buffer_samples
        if overflow > 0:
            self._buffer = self._buffer[overflow:]
            self._buffer_start += overflow

    def _process(self) -> DiarizationResult | None:
        if self.engine is None:
            if not self._warned_no_engine:
                logger.warning("No diarization engine configured; buffering audio only")
                self._warned_no_engine = True
            return None
        window = self._buffer.copy()
        offset = self.buffer_start_time
        started = time.perf_counter()
        try:
            raw = self.engine.diarize(window)
            result = coerce_engine_output(raw)
        except Exception as exc:
            self.failures += 1
            self.last_error = coerce_stage_error(
                "stream",
                f"engine failed on chunk ending at {self.total_duration:.1f}s",
                context={"buffer_sec": round(window.size / self.sample_rate, 3)},
                cause=exc,
            )
            logger.warning("%s: %s (buffer retained)", self.last_error, exc)
            return None
        finally:
            self._processed_until = self._total
        elapsed = time.perf_counter() - started

        if offset:
            result = result.with_segments(seg.shifted(offset) for seg in result.segments)
        result.timings = {
            **(result.timings or {}),
            "engine_sec": elapsed,
            "buffer_sec": window.size / self.sample_rate,
            "buffer_start_sec": offset,
        }
        self.chunks_processed += 1
        self.last_result = result
        logger.debug(
            "Chunk %d: %d segments, %d speakers in %.2fs",
            self.chunks_processed,
            len(result.segments),
            result.speaker_count,
            elapsed,
        )
        return result


_STOP = object()


class StreamWorker:
    """Serialise buffer mutation and engine calls onto one background thread.

    Capture threads call :meth:`submit`; the worker thread is the only caller
    of :meth:`ChunkStream.append_samples`.  The queue is bounded: the
    ``block`` policy makes producers wait, ``drop_oldest`` discards the
    oldest queued block instead.
    """

    def __init__(
        self,
        stream: ChunkStream,
        *,
        on_result: Callable[[DiarizationResult], None] | None = None,
        queue_size: int | None = None,
        backpressure: str | None = None,
    ):
        self.stream = stream
        self.on_result = on_result
        self.backpressure = backpressure or stream.config.backpressure
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size or stream.config.queue_size)
        self._thread: threading.Thread | None = None
        self._accepting = False
        self._stop_requested = False
        self._submit_lock = threading.Lock()
        self.dropped_blocks = 0
        self.callback_errors = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.stream.engine is None:
            raise NotInitialized("diarization engine unavailable", stage="stream")
        if self._stop_requested:
            raise RuntimeError("stream worker is still stopping; call stop() again first")
        if self.running:
            return
        self._accepting = True
        self._thread = threading.Thread(target=self._run, name="chunk-stream-worker", daemon=True)
        self._thread.start()

    def submit(self, samples: np.ndarray) -> None:
        if not self._accepting:
            raise RuntimeError("stream worker is not accepting samples")
        block = np.asarray(samples, dtype=np.float32).reshape(-1).copy()
        if self.backpressure == "block":
            self._queue.put(block)
            return
        with self._submit_lock:
            if not self._accepting:
                raise RuntimeError("stream worker is not accepting samples")
            while True:
                try:
                    self._queue.put_nowait(block)
                    return
                except queue.Full:
                    try:
                        oldest = self._queue.get_nowait()
                        self._queue.task_done()
                    except queue.Empty:
                        continue
                    self.dropped_blocks += 1
                    if oldest is _STOP:
                        # The stop marker outranks late audio.
                        self._queue.put(_STOP)
                        logger.warning("Stream worker is stopping; dropped incoming block")
                        return
                    logger.warning(
                        "Processing behind capture; dropped oldest queued block (%d total)",
                        self.dropped_blocks,
                    )

    def stop(self, timeout: float | None = None) -> bool:
        """Stop accepting samples, drain the queue and join the worker.

        Returns ``False`` if the worker is still busy after ``timeout``.  The
        worker then keeps sole ownership of the stream and ``stop`` can be
        called again to finish the join.
        """

        if self._thread is None:
            return True
        with self._submit_lock:
            self._accepting = False
            if not self._stop_requested:
                self._enqueue_stop()
                self._stop_requested = True
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Stream worker did not finish within %.1fs", timeout or 0.0)
            return False
        self._thread = None
        self._stop_requested = False
        self._discard_pending()
        return True

    def _enqueue_stop(self) -> None:
        if self.backpressure == "block":
            self._queue.put(_STOP)
            return
        while True:
            try:
                self._queue.put_nowait(_STOP)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self._queue.task_done()
                except queue.Empty:
                    continue
                self.dropped_blocks += 1

    def _discard_pending(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return
            self._queue.task_done()
            self.dropped_blocks += 1

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                for result in self.stream.append_samples(item):
                    self._deliver(result)
            finally:
                self._queue.task_done()

    def _deliver(self, result: DiarizationResult) -> None:
        if self.on_result is None:
            return
        try:
            self.on_result(result)
        except Exception as exc:
            self.callback_errors += 1
            logger.error("Result handler failed: %s", exc, exc_info=True)


__all__ = ["BufferStats", "ChunkStream", "StreamWorker"]
