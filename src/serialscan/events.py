"""Structured scan events and the observers that consume them.

Components never log metrics or diagnostics globally.  They emit
:class:`ScanEvent` objects on an :class:`EventBus`; callers attach whatever
observers they need (logging, statistics, UI telemetry) and detach them
when done.

Event kinds:
    frame_processed      - a frame went through the full pipeline
    frame_busy           - a frame was dropped by the single-flight guard
    candidate_corrected  - the resolver substituted at least one character
    candidate_rejected   - the validator rejected a candidate
    state_changed        - the consensus state machine moved
    locked               - a serial was locked
    unlocked             - a lock expired or was forced off
    reset                - pipeline or tracker state was cleared
"""

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanEvent:
    """A single structured event."""

    kind: str
    timestamp: float
    payload: Dict[str, Any] = field(default_factory=dict)


class ScanObserver:
    """Base class for event consumers."""

    def on_event(self, event: ScanEvent) -> None:
        raise NotImplementedError


class EventBus:
    """Fan-out of scan events to attached observers.

    An observer that raises is detached so a faulty consumer cannot break
    frame processing.
    """

    def __init__(self):
        self._observers: List[ScanObserver] = []

    def attach(self, observer: ScanObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def detach(self, observer: ScanObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    @property
    def observers(self) -> List[ScanObserver]:
        return list(self._observers)

    def emit(self, kind: str, timestamp: Optional[float] = None, **payload: Any) -> None:
        if not self._observers:
            return
        event = ScanEvent(
            kind=kind,
            timestamp=time.monotonic() if timestamp is None else timestamp,
            payload=payload,
        )
        for observer in list(self._observers):
            try:
                observer.on_event(event)
            except Exception:
                log.exception("Observer %r failed on %s; detaching", observer, kind)
                self.detach(observer)


class LoggingObserver(ScanObserver):
    """Forwards events to a standard library logger.

    Args:
        logger: Target logger (defaults to this module's logger).
        level: Level for routine events; lock/unlock use INFO at minimum.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, level: int = logging.DEBUG):
        self.logger = logger or log
        self.level = level

    def on_event(self, event: ScanEvent) -> None:
        level = self.level
        if event.kind in ("locked", "unlocked"):
            level = max(level, logging.INFO)
        details = " ".join(f"{k}={v}" for k, v in sorted(event.payload.items()))
        self.logger.log(level, "%s %s", event.kind, details)


class ScanStats(ScanObserver):
    """Counts pipeline activity for diagnostics dashboards."""

    def __init__(self):
        self.reset_stats()

    def on_event(self, event: ScanEvent) -> None:
        kind = event.kind
        if kind == "frame_processed":
            self.stats["frames"] += 1
            self._frames_since_unlock += 1
        elif kind == "frame_busy":
            self.stats["busy_dropped"] += 1
        elif kind == "candidate_corrected":
            self.stats["corrected"] += 1
        elif kind == "candidate_rejected":
            self.stats["rejected"] += 1
            reason = event.payload.get("reason")
            if reason is not None:
                self.rejection_reasons[str(reason)] += 1
        elif kind == "locked":
            self.stats["locks"] += 1
            self._frames_to_lock.append(self._frames_since_unlock)
            self._frames_since_unlock = 0
        elif kind == "unlocked":
            self.stats["unlocks"] += 1
            self._frames_since_unlock = 0
        elif kind == "reset":
            self.stats["resets"] += 1
            self._frames_since_unlock = 0

    def get_stats(self) -> Dict[str, float]:
        """Get scan statistics."""
        frames = max(self.stats["frames"], 1)
        mean_frames_to_lock = (
            sum(self._frames_to_lock) / len(self._frames_to_lock)
            if self._frames_to_lock
            else 0.0
        )
        return {
            "frames": self.stats["frames"],
            "busy_dropped": self.stats["busy_dropped"],
            "corrected": self.stats["corrected"],
            "rejected": self.stats["rejected"],
            "rejected_per_frame": self.stats["rejected"] / frames,
            "locks": self.stats["locks"],
            "unlocks": self.stats["unlocks"],
            "resets": self.stats["resets"],
            "mean_frames_to_lock": mean_frames_to_lock,
        }

    def reset_stats(self) -> None:
        """Reset statistics."""
        self.stats = {
            "frames": 0,
            "busy_dropped": 0,
            "corrected": 0,
            "rejected": 0,
            "locks": 0,
            "unlocks": 0,
            "resets": 0,
        }
        self.rejection_reasons: Counter = Counter()
        self._frames_to_lock: List[int] = []
        self._frames_since_unlock = 0
