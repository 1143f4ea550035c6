"""Multi-frame temporal consensus for serial readings.

Exact-text frequency voting seeds the clusters; seeds are then merged by
Levenshtein distance so a single residual OCR error per frame still counts
as agreement.

State machine::

    SEEKING -> CANDIDATE -> STABILIZING -> LOCKED
       ^                                     |
       +------- lock timeout / force_unlock -+

Classes:
    TrackedObservation       - A validated candidate with its arrival time
    CandidateCluster         - Observations within edit distance of a representative
    TemporalConsensusTracker - Ring buffer + clustering + state machine
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, FrozenSet, List, Optional, Sequence

import editdistance
import numpy as np

from serialscan.candidates import (
    StabilityResult,
    StabilityState,
    StableConsensus,
    ValidatedCandidate,
)
from serialscan.events import EventBus
from serialscan.motion import MotionSource

log = logging.getLogger(__name__)

# Guidance shown to the user for each outcome
MSG_SCANNING = "Scanning for serial number..."
MSG_HOLD_STEADY = "Hold device steady"
MSG_CANDIDATE = "Potential serial detected"
MSG_STABILIZING = "Hold steady to confirm..."
MSG_LOCKED = "Serial number captured!"

# Reset to SEEKING is always allowed and bypasses this table
LEGAL_TRANSITIONS: Dict[StabilityState, FrozenSet[StabilityState]] = {
    StabilityState.SEEKING: frozenset({StabilityState.CANDIDATE, StabilityState.STABILIZING}),
    StabilityState.CANDIDATE: frozenset({StabilityState.SEEKING, StabilityState.STABILIZING}),
    StabilityState.STABILIZING: frozenset(
        {StabilityState.SEEKING, StabilityState.CANDIDATE, StabilityState.LOCKED}
    ),
    StabilityState.LOCKED: frozenset({StabilityState.SEEKING}),
}


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance between two strings."""
    return int(editdistance.eval(a, b))


# ---------------------------------------------------------------------------
# Clustering
# ---------------------------------------------------------------------------


@dataclass
class TrackedObservation:
    """A validated candidate in the tracker's ring buffer."""

    candidate: ValidatedCandidate
    timestamp: float

    @property
    def text(self) -> str:
        return self.candidate.cleaned_text


@dataclass
class CandidateCluster:
    """Observations whose text is within the edit-distance limit of ``representative``."""

    representative: str
    members: List[TrackedObservation] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.members)

    @property
    def span(self) -> float:
        """Seconds between the first and last member."""
        if not self.members:
            return 0.0
        times = [m.timestamp for m in self.members]
        return max(times) - min(times)

    @property
    def mean_confidence(self) -> float:
        if not self.members:
            return 0.0
        return float(np.mean([m.candidate.composite_score for m in self.members]))


def cluster_observations(
    observations: Sequence[TrackedObservation],
    max_edit_distance: int = 1,
) -> List[CandidateCluster]:
    """
    Group observations by text similarity.

    Exact texts are first counted (frequency seeding); seeds are then
    visited most frequent first (ties: earliest seen) and each joins the
    first cluster whose representative is within *max_edit_distance*,
    otherwise it starts a new cluster.  The representative of a cluster is
    therefore its most frequent exact reading.

    Returns:
        Clusters in creation order, members sorted by timestamp
    """
    seeds: Dict[str, List[TrackedObservation]] = {}
    for obs in observations:
        seeds.setdefault(obs.text, []).append(obs)

    # sorted() is stable, so equal counts keep first-seen order
    ordered = sorted(seeds.items(), key=lambda kv: -len(kv[1]))

    clusters: List[CandidateCluster] = []
    for text, members in ordered:
        for cluster in clusters:
            if edit_distance(text, cluster.representative) <= max_edit_distance:
                cluster.members.extend(members)
                break
        else:
            clusters.append(CandidateCluster(representative=text, members=list(members)))

    for cluster in clusters:
        cluster.members.sort(key=lambda m: m.timestamp)
    return clusters


# ---------------------------------------------------------------------------
# TemporalConsensusTracker
# ---------------------------------------------------------------------------


class TemporalConsensusTracker:
    """
    Decides when enough consistent evidence exists to lock a serial.

    Each ``track()`` call appends to a bounded ring buffer, clusters the most
    recent *consensus_window* entries and scores the largest cluster:

        stability = cluster_size / window_size (+ recency_bonus if the
                    cluster spans >= recency_bonus_span seconds), max 1.0

    Below *confidence_threshold* the tracker reports CANDIDATE.  At or above
    it, the same cluster must hold for *stability_window_duration*
    seconds (STABILIZING) before the tracker LOCKS the held text.  A
    cluster counts as the same while it still contains the held text or its
    representative is within *max_edit_distance* of it.  A lock is sticky until
    *lock_duration* passes or ``force_unlock()`` is called.

    Calls must be serialized; the tracker does no locking of its own.
    """

    def __init__(
        self,
        buffer_capacity: int = 10,
        consensus_window: int = 5,
        required_stable_frames: int = 3,
        stability_window_duration: float = 1.0,
        lock_duration: float = 2.0,
        confidence_threshold: float = 0.8,
        max_edit_distance: int = 1,
        recency_bonus: float = 0.1,
        recency_bonus_span: float = 0.5,
        motion_source: Optional[MotionSource] = None,
        events: Optional[EventBus] = None,
    ):
        """
        Args:
            buffer_capacity: Ring buffer size (oldest evicted first)
            consensus_window: Most recent entries considered for clustering
            required_stable_frames: Minimum buffered frames before any consensus
            stability_window_duration: Seconds a majority must hold to lock
            lock_duration: Seconds a lock stays valid
            confidence_threshold: Minimum cluster stability for STABILIZING/LOCKED
            max_edit_distance: Cluster membership limit (Levenshtein)
            recency_bonus: Stability bonus for clusters spanning enough time
            recency_bonus_span: Seconds a cluster must span to earn the bonus
            motion_source: Device motion input; None means always stable
            events: Bus for state_changed/locked/unlocked/reset events
        """
        if buffer_capacity <= 0:
            raise ValueError(f"buffer_capacity must be > 0, got {buffer_capacity}")
        if not 0 < consensus_window <= buffer_capacity:
            raise ValueError(
                f"consensus_window must be in (0, {buffer_capacity}], got {consensus_window}"
            )
        if not 0 < required_stable_frames <= buffer_capacity:
            raise ValueError(
                f"required_stable_frames must be in (0, {buffer_capacity}], "
                f"got {required_stable_frames}"
            )
        if stability_window_duration < 0 or lock_duration < 0 or recency_bonus_span < 0:
            raise ValueError("durations must be >= 0")
        if not 0.0 <= confidence_threshold <= 1.0:
            raise ValueError(f"confidence_threshold must be within [0, 1], got {confidence_threshold}")
        if max_edit_distance < 0:
            raise ValueError(f"max_edit_distance must be >= 0, got {max_edit_distance}")

        self.buffer_capacity = buffer_capacity
        self.consensus_window = consensus_window
        self.required_stable_frames = required_stable_frames
        self.stability_window_duration = stability_window_duration
        self.lock_duration = lock_duration
        self.confidence_threshold = confidence_threshold
        self.max_edit_distance = max_edit_distance
        self.recency_bonus = recency_bonus
        self.recency_bonus_span = recency_bonus_span
        self.motion_source = motion_source
        self.events = events

        self._buffer: Deque[TrackedObservation] = deque(maxlen=buffer_capacity)
        self._state = StabilityState.SEEKING
        self._consensus: Optional[StableConsensus] = None
        self._stability_start: Optional[float] = None
        self._locked_time: Optional[float] = None

    # -- public API ---------------------------------------------------------

    @property
    def current_state(self) -> StabilityState:
        return self._state

    @property
    def consensus(self) -> Optional[StableConsensus]:
        return self._consensus

    @property
    def observations(self) -> List[TrackedObservation]:
        return list(self._buffer)

    def track(self, candidate: ValidatedCandidate, now: Optional[float] = None) -> StabilityResult:
        """
        Add one frame's best candidate and update the state machine.

        Args:
            candidate: Best validated candidate of the frame
            now: Frame timestamp in seconds (defaults to time.monotonic())

        Returns:
            StabilityResult for the UI layer
        """
        if now is None:
            now = time.monotonic()

        self._expire_lock(now)
        self._buffer.append(TrackedObservation(candidate, now))

        # Motion short-circuit leaves state and consensus untouched
        if not self._device_stable():
            return StabilityResult(StabilityState.SEEKING, None, MSG_HOLD_STEADY, False, 0.0)

        if self._state == StabilityState.LOCKED:
            return self._locked_result(now)

        if len(self._buffer) < self.required_stable_frames:
            self._transition(StabilityState.SEEKING, now)
            return StabilityResult(StabilityState.SEEKING, None, MSG_SCANNING, False, 0.0)

        window = list(self._buffer)[-self.consensus_window :]
        clusters = cluster_observations(window, self.max_edit_distance)
        best = max(clusters, key=lambda c: c.size)
        stability = self._stability(best, len(window))
        confidence = best.mean_confidence

        if stability < self.confidence_threshold or best.size < self.required_stable_frames:
            # Agreement lost: stabilization must start over
            self._consensus = None
            self._stability_start = None
            self._transition(StabilityState.CANDIDATE, now)
            return StabilityResult(
                StabilityState.CANDIDATE, best.representative, MSG_CANDIDATE, False, confidence
            )

        if self._consensus is None or not self._holds(best, self._consensus.serial_text):
            self._stability_start = now
            self._consensus = StableConsensus(
                serial_text=best.representative,
                overall_confidence=confidence,
                stability_duration=0.0,
                frame_count=best.size,
            )
            self._transition(StabilityState.STABILIZING, now)
            return StabilityResult(
                StabilityState.STABILIZING, best.representative, MSG_STABILIZING, False, confidence
            )

        duration = now - self._stability_start
        self._consensus.overall_confidence = confidence
        self._consensus.stability_duration = duration
        self._consensus.frame_count = best.size

        if duration >= self.stability_window_duration:
            self._locked_time = now
            self._transition(StabilityState.LOCKED, now)
            log.debug("Locked %s after %.2fs", self._consensus.serial_text, duration)
            if self.events is not None:
                self.events.emit(
                    "locked",
                    timestamp=now,
                    serial=self._consensus.serial_text,
                    confidence=round(confidence, 3),
                    frames=best.size,
                )
            return self._locked_result(now)

        self._transition(StabilityState.STABILIZING, now)
        return StabilityResult(
            StabilityState.STABILIZING,
            self._consensus.serial_text,
            MSG_STABILIZING,
            False,
            confidence,
        )

    def snapshot(self, now: Optional[float] = None) -> StabilityResult:
        """
        Report the current state without adding evidence.

        Used for frames that produced no valid candidate.
        """
        if now is None:
            now = time.monotonic()
        self._expire_lock(now)

        if not self._device_stable():
            return StabilityResult(StabilityState.SEEKING, None, MSG_HOLD_STEADY, False, 0.0)
        if self._state == StabilityState.LOCKED:
            return self._locked_result(now)
        if self._state == StabilityState.STABILIZING and self._consensus is not None:
            return StabilityResult(
                self._state,
                self._consensus.serial_text,
                MSG_STABILIZING,
                False,
                self._consensus.overall_confidence,
            )
        if self._state == StabilityState.CANDIDATE:
            return StabilityResult(self._state, None, MSG_CANDIDATE, False, 0.0)
        return StabilityResult(StabilityState.SEEKING, None, MSG_SCANNING, False, 0.0)

    def is_locked(self, now: Optional[float] = None) -> bool:
        """True while a lock is held; an expired lock resets the tracker."""
        if now is None:
            now = time.monotonic()
        self._expire_lock(now)
        return self._state == StabilityState.LOCKED

    def force_unlock(self) -> None:
        """Manual override for a user-initiated re-scan."""
        was_locked = self._state == StabilityState.LOCKED
        self.reset()
        log.debug("Tracker force unlocked")
        if was_locked and self.events is not None:
            self.events.emit("unlocked", reason="forced")

    def reset(self) -> None:
        """Clear the buffer and return to SEEKING."""
        self._buffer.clear()
        self._consensus = None
        self._stability_start = None
        self._locked_time = None
        self._state = StabilityState.SEEKING
        log.debug("Tracker reset")
        if self.events is not None:
            self.events.emit("reset", component="tracker")

    # -- internals ----------------------------------------------------------

    def _device_stable(self) -> bool:
        if self.motion_source is None:
            return True
        return self.motion_source.is_stable()

    def _holds(self, cluster: CandidateCluster, text: str) -> bool:
        """True if *cluster* is still the cluster that produced *text*."""
        if any(m.text == text for m in cluster.members):
            return True
        return edit_distance(cluster.representative, text) <= self.max_edit_distance

    def _stability(self, cluster: CandidateCluster, window_size: int) -> float:
        ratio = cluster.size / max(window_size, 1)
        if cluster.span >= self.recency_bonus_span:
            ratio += self.recency_bonus
        return min(1.0, ratio)

    def _expire_lock(self, now: float) -> None:
        if self._state != StabilityState.LOCKED or self._locked_time is None:
            return
        if now - self._locked_time >= self.lock_duration:
            log.debug("Lock expired after %.2fs", now - self._locked_time)
            if self.events is not None:
                self.events.emit("unlocked", timestamp=now, reason="timeout")
            self.reset()

    def _locked_result(self, now: float) -> StabilityResult:
        consensus = self._consensus
        consensus.stability_duration = now - self._stability_start
        return StabilityResult(
            StabilityState.LOCKED,
            consensus.serial_text,
            MSG_LOCKED,
            True,
            consensus.overall_confidence,
        )

    def _transition(self, new_state: StabilityState, now: float) -> None:
        old_state = self._state
        if new_state == old_state:
            return
        if new_state not in LEGAL_TRANSITIONS[old_state]:
            raise RuntimeError(f"Illegal transition {old_state.value} -> {new_state.value}")
        self._state = new_state
        if self.events is not None:
            self.events.emit(
                "state_changed",
                timestamp=now,
                previous=old_state.value,
                state=new_state.value,
            )
