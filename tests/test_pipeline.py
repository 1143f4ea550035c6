"""Tests for serialscan.pipeline and serialscan.config."""

import logging

import pytest

from serialscan.candidates import RawCandidate, RejectionReason, StabilityState
from serialscan.config import ScannerConfig
from serialscan.events import EventBus, ScanEvent, ScanObserver, ScanStats
from serialscan.motion import ImuMotionSource, MotionReading, MotionSource
from serialscan.pipeline import FrameStatus, ScanWorker, SerialScanPipeline


def frame(*texts, confidence=0.95):
    return [
        RawCandidate(text=t, ocr_confidence=confidence, observation_index=i)
        for i, t in enumerate(texts)
    ]


class ReentrantMotion(MotionSource):
    """Pushes a second frame into the pipeline while the first is in flight."""

    def __init__(self):
        self.pipeline = None
        self.inner_results = []

    def is_stable(self) -> bool:
        if self.pipeline is not None:
            self.inner_results.append(self.pipeline.process_frame(frame("C02J08XYZ01"), now=0.0))
        return True


class FailingObserver(ScanObserver):
    def on_event(self, event: ScanEvent) -> None:
        raise RuntimeError("observer failure")


# ---------------------------------------------------------------------------
# ScannerConfig
# ---------------------------------------------------------------------------


class TestScannerConfig:
    def test_defaults_valid(self):
        ScannerConfig().validate()

    def test_strict_bounds(self):
        assert ScannerConfig().length_bounds == (10, 12)
        assert ScannerConfig(use_strict_validation=True).length_bounds == (12, 12)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"minimum_length": 13},
            {"minimum_length": 0},
            {"buffer_capacity": 0},
            {"consensus_window": 11},
            {"required_stable_frames": 12},
            {"confidence_threshold": 1.2},
            {"lock_duration": -1.0},
            {"max_edit_distance": -1},
            {"validation_cache_size": 0},
            {"max_frame_seconds": 0.0},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            ScannerConfig(**kwargs).validate()

    def test_pipeline_validates_config(self):
        with pytest.raises(ValueError):
            SerialScanPipeline(ScannerConfig(minimum_length=13))


# ---------------------------------------------------------------------------
# SerialScanPipeline
# ---------------------------------------------------------------------------


class TestSerialScanPipeline:
    @pytest.fixture
    def pipeline(self):
        return SerialScanPipeline()

    def test_noisy_frames_converge(self, pipeline):
        """Misread variants resolve to one serial and stabilize in three frames."""
        results = [
            pipeline.process_frame(frame("C02JO8XYZ0I"), now=0.0),
            pipeline.process_frame(frame("C02JQ8XYZ01"), now=1.0),
            pipeline.process_frame(frame("C02JQ8XYZ0l"), now=2.0),
        ]

        assert all(r.status == FrameStatus.PROCESSED for r in results)
        assert {r.validation.best.cleaned_text for r in results} == {"C02J08XYZ01"}
        assert results[-1].stability.state == StabilityState.STABILIZING
        assert results[-1].stability.stable_candidate == "C02J08XYZ01"

    def test_clean_lock(self, pipeline):
        for t in range(4):
            result = pipeline.process_frame(frame("C02J08XYZ01"), now=float(t))

        assert result.stability.state == StabilityState.LOCKED
        assert result.stability.should_lock is True
        assert pipeline.is_locked(3.5) is True

        pipeline.force_unlock()
        assert pipeline.is_locked(3.5) is False

    def test_best_candidate_tracked(self, pipeline):
        result = pipeline.process_frame(
            frame("hello", "C02J08XYZ01", "ABCDEFGHJKLM"), now=0.0
        )

        assert result.validation.best.cleaned_text == "C02J08XYZ01"
        reasons = [r.reason for r in result.validation.rejected]
        assert reasons == [RejectionReason.INVALID_LENGTH, RejectionReason.PATTERN_MISMATCH]
        assert len(result.corrected) == 3

    def test_no_candidate(self, pipeline):
        result = pipeline.process_frame(frame("hello"), now=0.0)

        assert result.status == FrameStatus.NO_CANDIDATE
        assert result.stability.state == StabilityState.SEEKING
        assert pipeline.tracker.observations == []

    def test_empty_frame(self, pipeline):
        result = pipeline.process_frame([], now=0.0)
        assert result.status == FrameStatus.NO_CANDIDATE

    def test_strict_mode(self):
        pipeline = SerialScanPipeline(ScannerConfig(use_strict_validation=True))

        assert pipeline.process_frame(frame("C02J08XYZ01"), now=0.0).status == (
            FrameStatus.NO_CANDIDATE
        )
        assert pipeline.process_frame(frame("C02XK1ABJHD5"), now=1.0).status == (
            FrameStatus.PROCESSED
        )

    def test_busy_frame_dropped(self):
        motion = ReentrantMotion()
        stats = ScanStats()
        events = EventBus()
        events.attach(stats)
        pipeline = SerialScanPipeline(motion_source=motion, events=events)
        motion.pipeline = pipeline

        outer = pipeline.process_frame(frame("C02J08XYZ01"), now=0.0)

        assert outer.status == FrameStatus.PROCESSED
        assert [r.status for r in motion.inner_results] == [FrameStatus.BUSY]
        assert pipeline.is_busy is False
        assert len(pipeline.tracker.observations) == 1
        assert stats.get_stats()["busy_dropped"] == 1

    def test_reset(self, pipeline):
        for t in range(3):
            pipeline.process_frame(frame("C02JQ8XYZ01"), now=float(t))
        assert len(pipeline.resolver.cache) > 0
        assert len(pipeline.validator.cache) > 0

        pipeline.reset()

        assert len(pipeline.resolver.cache) == 0
        assert len(pipeline.validator.cache) == 0
        assert pipeline.tracker.observations == []
        assert pipeline.tracker.current_state == StabilityState.SEEKING

    def test_reset_clears_motion(self):
        motion = ImuMotionSource()
        motion.update(MotionReading((0.5, 0.0, 0.0), (0.0, 0.0, 0.0)))
        pipeline = SerialScanPipeline(motion_source=motion)
        result = pipeline.process_frame(frame("C02J08XYZ01"), now=0.0)
        assert result.stability.guidance_message == "Hold device steady"

        pipeline.reset()

        assert motion.is_stable() is True
        assert motion.last_reading is None

    def test_stats_observer(self):
        events = EventBus()
        stats = ScanStats()
        events.attach(stats)
        pipeline = SerialScanPipeline(events=events)

        pipeline.process_frame(frame("C02JQ8XYZ01"), now=0.0)
        pipeline.process_frame(frame("bad"), now=0.5)
        for t in range(1, 5):
            pipeline.process_frame(frame("C02J08XYZ01"), now=float(t))

        result = stats.get_stats()
        assert result["frames"] == 6
        assert result["corrected"] == 1
        assert result["rejected"] == 1
        assert result["locks"] == 1
        assert stats.rejection_reasons["invalid_length"] == 1

        events.detach(stats)
        pipeline.process_frame(frame("C02J08XYZ01"), now=5.0)
        assert stats.get_stats()["frames"] == 6

    def test_failing_observer_does_not_break_frames(self):
        events = EventBus()
        events.attach(FailingObserver())
        pipeline = SerialScanPipeline(events=events)

        result = pipeline.process_frame(frame("C02JQ8XYZ01"), now=0.0)

        assert result.status == FrameStatus.PROCESSED
        assert events.observers == []


# ---------------------------------------------------------------------------
# ScanWorker
# ---------------------------------------------------------------------------


class TestScanWorker:
    def test_submit(self):
        pipeline = SerialScanPipeline()
        with ScanWorker(pipeline) as worker:
            futures = [worker.submit(frame("C02J08XYZ01"), now=float(t)) for t in range(4)]
            results = [f.result(timeout=5) for f in futures]

        assert [r.status for r in results] == [FrameStatus.PROCESSED] * 4
        assert results[-1].stability.state == StabilityState.LOCKED

    def test_slow_frame_logged(self, caplog):
        pipeline = SerialScanPipeline(ScannerConfig(max_frame_seconds=1e-12))
        worker = ScanWorker(pipeline)

        with caplog.at_level(logging.WARNING, logger="serialscan.pipeline"):
            worker.submit(frame("C02J08XYZ01"), now=0.0).result(timeout=5)
        worker.shutdown()

        assert "Frame took" in caplog.text
