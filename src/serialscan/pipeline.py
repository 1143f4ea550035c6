"""
Per-frame scan pipeline.

Sequences AmbiguityResolver -> SerialValidator -> TemporalConsensusTracker
for each frame of OCR candidates.  At most one frame is in flight: a frame
that arrives while another is processing is dropped and reported as BUSY.

Classes:
    FrameStatus       - Outcome of a process_frame call
    FrameResult       - Everything the UI needs from one frame
    SerialScanPipeline - The orchestrator
    ScanWorker        - Single-thread executor feeding the pipeline
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple

from serialscan.cache import LRUCache
from serialscan.candidates import (
    CorrectedCandidate,
    RawCandidate,
    StabilityResult,
    StabilityState,
    ValidationOutcome,
)
from serialscan.config import ScannerConfig
from serialscan.consensus import MSG_SCANNING, TemporalConsensusTracker
from serialscan.events import EventBus
from serialscan.motion import MotionSource
from serialscan.recognition import AmbiguityResolver, SerialValidator

log = logging.getLogger(__name__)


class FrameStatus(Enum):
    PROCESSED = "processed"
    BUSY = "busy"  # Dropped: another frame was in flight
    NO_CANDIDATE = "no_candidate"  # Nothing survived validation


@dataclass(frozen=True)
class FrameResult:
    """Result of pushing one frame through the pipeline."""

    status: FrameStatus
    stability: StabilityResult
    validation: Optional[ValidationOutcome] = None
    corrected: Tuple[CorrectedCandidate, ...] = ()
    processing_time: float = 0.0  # seconds


class SerialScanPipeline:
    """
    Orchestrates resolution, validation and temporal consensus.

    Example:
        pipeline = SerialScanPipeline()
        result = pipeline.process_frame(candidates)
        if result.stability.should_lock:
            submit(result.stability.stable_candidate)
    """

    def __init__(
        self,
        config: Optional[ScannerConfig] = None,
        motion_source: Optional[MotionSource] = None,
        events: Optional[EventBus] = None,
    ):
        """
        Args:
            config: Scanner options (defaults to ScannerConfig())
            motion_source: Device motion input passed to the tracker
            events: Shared event bus; a private one is created if omitted
        """
        self.config = config or ScannerConfig()
        self.config.validate()
        self.events = events if events is not None else EventBus()

        minimum_length, maximum_length = self.config.length_bounds
        self.resolver = AmbiguityResolver(
            cache=LRUCache(self.config.resolver_cache_size),
            events=self.events,
        )
        self.validator = SerialValidator(
            minimum_length=minimum_length,
            maximum_length=maximum_length,
            use_strict_validation=self.config.use_strict_validation,
            cache=LRUCache(self.config.validation_cache_size),
            events=self.events,
        )
        self.tracker = TemporalConsensusTracker(
            buffer_capacity=self.config.buffer_capacity,
            consensus_window=self.config.consensus_window,
            required_stable_frames=self.config.required_stable_frames,
            stability_window_duration=self.config.stability_window_duration,
            lock_duration=self.config.lock_duration,
            confidence_threshold=self.config.confidence_threshold,
            max_edit_distance=self.config.max_edit_distance,
            recency_bonus_span=self.config.recency_bonus_span,
            motion_source=motion_source,
            events=self.events,
        )

        self._busy = threading.Lock()

    def process_frame(
        self,
        candidates: Sequence[RawCandidate],
        now: Optional[float] = None,
    ) -> FrameResult:
        """
        Process one frame's OCR candidates.

        Args:
            candidates: Raw OCR candidates from every image variant of the frame
            now: Frame timestamp in seconds (defaults to time.monotonic())

        Returns:
            FrameResult; status BUSY if another frame is still processing
        """
        if now is None:
            now = time.monotonic()

        if not self._busy.acquire(blocking=False):
            log.debug("Frame dropped, pipeline busy")
            self.events.emit("frame_busy", timestamp=now)
            return FrameResult(
                status=FrameStatus.BUSY,
                stability=StabilityResult(StabilityState.SEEKING, None, MSG_SCANNING, False, 0.0),
            )

        try:
            t0 = time.perf_counter()
            corrected = self.resolver.resolve(candidates)
            outcome = self.validator.validate(corrected)

            if outcome.best is None:
                status = FrameStatus.NO_CANDIDATE
                stability = self.tracker.snapshot(now)
            else:
                status = FrameStatus.PROCESSED
                stability = self.tracker.track(outcome.best, now)
            elapsed = time.perf_counter() - t0
        finally:
            self._busy.release()

        self.events.emit(
            "frame_processed",
            timestamp=now,
            status=status.value,
            state=stability.state.value,
            candidates=len(candidates),
            valid=len(outcome.all_valid),
        )
        return FrameResult(
            status=status,
            stability=stability,
            validation=outcome,
            corrected=tuple(corrected),
            processing_time=elapsed,
        )

    def reset(self) -> None:
        """Clear resolver and validator caches, the tracker buffer and motion state.

        Only call between frames.
        """
        self.resolver.reset()
        self.validator.reset()
        self.tracker.reset()
        if self.tracker.motion_source is not None:
            self.tracker.motion_source.reset()
        log.debug("Pipeline reset")

    def force_unlock(self) -> None:
        self.tracker.force_unlock()

    def is_locked(self, now: Optional[float] = None) -> bool:
        return self.tracker.is_locked(now)

    @property
    def is_busy(self) -> bool:
        return self._busy.locked()


class ScanWorker:
    """
    Runs pipeline frames on a single dedicated worker thread, one at a time
    in submission order, off the caller's thread.

    Args:
        pipeline: The pipeline to feed
    """

    def __init__(self, pipeline: SerialScanPipeline):
        self.pipeline = pipeline
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="serialscan")

    def submit(
        self,
        candidates: Sequence[RawCandidate],
        now: Optional[float] = None,
    ) -> "Future[FrameResult]":
        return self._executor.submit(self._run, list(candidates), now)

    def _run(self, candidates: Sequence[RawCandidate], now: Optional[float]) -> FrameResult:
        result = self.pipeline.process_frame(candidates, now)
        budget = self.pipeline.config.max_frame_seconds
        if result.processing_time > budget:
            log.warning(
                "Frame took %.2fs (budget %.2fs)", result.processing_time, budget
            )
        return result

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "ScanWorker":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()
