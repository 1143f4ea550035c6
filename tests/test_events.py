"""Tests for serialscan.events and serialscan.cache."""

import logging

import pytest

from serialscan.cache import LRUCache, NullCache
from serialscan.events import EventBus, LoggingObserver, ScanEvent, ScanObserver, ScanStats


class RecordingObserver(ScanObserver):
    def __init__(self):
        self.events = []

    def on_event(self, event: ScanEvent) -> None:
        self.events.append(event)


class FailingObserver(ScanObserver):
    def __init__(self):
        self.calls = 0

    def on_event(self, event: ScanEvent) -> None:
        self.calls += 1
        raise RuntimeError("boom")


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------


class TestEventBus:
    def test_emit_reaches_observers(self):
        bus = EventBus()
        recorder = RecordingObserver()
        bus.attach(recorder)

        bus.emit("reset", timestamp=1.5, component="tracker")

        assert recorder.events == [ScanEvent("reset", 1.5, {"component": "tracker"})]

    def test_default_timestamp(self):
        bus = EventBus()
        recorder = RecordingObserver()
        bus.attach(recorder)

        bus.emit("frame_busy")
        assert recorder.events[0].timestamp > 0

    def test_attach_once(self):
        bus = EventBus()
        recorder = RecordingObserver()
        bus.attach(recorder)
        bus.attach(recorder)

        bus.emit("reset")
        assert len(recorder.events) == 1

    def test_detach(self):
        bus = EventBus()
        recorder = RecordingObserver()
        bus.attach(recorder)
        bus.detach(recorder)
        bus.detach(recorder)

        bus.emit("reset")
        assert recorder.events == []
        assert bus.observers == []

    def test_failing_observer_detached(self, caplog):
        bus = EventBus()
        failing = FailingObserver()
        recorder = RecordingObserver()
        bus.attach(failing)
        bus.attach(recorder)

        with caplog.at_level(logging.ERROR, logger="serialscan.events"):
            bus.emit("reset")
            bus.emit("reset")

        assert failing.calls == 1
        assert len(recorder.events) == 2
        assert bus.observers == [recorder]
        assert "detaching" in caplog.text


# ---------------------------------------------------------------------------
# LoggingObserver
# ---------------------------------------------------------------------------


class TestLoggingObserver:
    def test_routine_events_at_debug(self, caplog):
        observer = LoggingObserver(logger=logging.getLogger("scan.test"))

        with caplog.at_level(logging.DEBUG, logger="scan.test"):
            observer.on_event(ScanEvent("state_changed", 0.0, {"state": "candidate"}))

        record = caplog.records[0]
        assert record.levelno == logging.DEBUG
        assert "state_changed state=candidate" in record.getMessage()

    def test_lock_events_at_info(self, caplog):
        observer = LoggingObserver(logger=logging.getLogger("scan.test"))

        with caplog.at_level(logging.DEBUG, logger="scan.test"):
            observer.on_event(ScanEvent("locked", 0.0, {"serial": "C02J08XYZ01"}))

        assert caplog.records[0].levelno == logging.INFO


# ---------------------------------------------------------------------------
# ScanStats
# ---------------------------------------------------------------------------


class TestScanStats:
    @pytest.fixture
    def stats(self):
        return ScanStats()

    def test_counts(self, stats):
        for kind, payload in [
            ("frame_processed", {}),
            ("frame_processed", {}),
            ("frame_busy", {}),
            ("candidate_corrected", {}),
            ("candidate_rejected", {"reason": "invalid_length"}),
            ("candidate_rejected", {"reason": "invalid_length"}),
            ("candidate_rejected", {"reason": "pattern_mismatch"}),
            ("locked", {}),
            ("unlocked", {}),
        ]:
            stats.on_event(ScanEvent(kind, 0.0, payload))

        result = stats.get_stats()
        assert result["frames"] == 2
        assert result["busy_dropped"] == 1
        assert result["corrected"] == 1
        assert result["rejected"] == 3
        assert result["rejected_per_frame"] == pytest.approx(1.5)
        assert result["locks"] == 1
        assert result["unlocks"] == 1
        assert result["mean_frames_to_lock"] == pytest.approx(2.0)
        assert stats.rejection_reasons["invalid_length"] == 2

    def test_reset_stats(self, stats):
        stats.on_event(ScanEvent("frame_processed", 0.0))
        stats.reset_stats()

        assert stats.get_stats()["frames"] == 0
        assert not stats.rejection_reasons


# ---------------------------------------------------------------------------
# Caches
# ---------------------------------------------------------------------------


class TestLRUCache:
    def test_evicts_oldest(self):
        cache = LRUCache(2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.put("c", 3)

        assert "a" not in cache
        assert len(cache) == 2
        assert cache.get_stats()["evictions"] == 1

    def test_get_refreshes_entry(self):
        cache = LRUCache(2)
        cache.put("a", 1)
        cache.put("b", 2)
        assert cache.get("a") == 1
        cache.put("c", 3)

        assert "a" in cache
        assert "b" not in cache

    def test_hit_miss_stats(self):
        cache = LRUCache(4)
        cache.put("a", 1)
        cache.get("a")
        cache.get("missing")

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_pct"] == pytest.approx(50.0)

    def test_clear(self):
        cache = LRUCache(4)
        cache.put("a", 1)
        cache.clear()
        assert len(cache) == 0

    def test_bad_size(self):
        with pytest.raises(ValueError):
            LRUCache(0)

    def test_null_cache(self):
        cache = NullCache()
        cache.put("a", 1)

        assert cache.get("a") is None
        assert len(cache) == 0
        assert "a" not in cache
