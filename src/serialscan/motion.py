"""Device motion sources consulted by the consensus tracker.

A motion source answers one question, ``is_stable()``.  Having no data is
never an error: a source without readings reports stable.

Classes:
    MotionReading        - One IMU sample (user acceleration + rotation rate)
    MotionSource         - Interface
    ImuMotionSource      - Thresholds the latest IMU sample
    FrameMotionEstimator - Image-based fallback: mean absolute difference
                           between consecutive downscaled grayscale frames
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np


@dataclass(frozen=True)
class MotionReading:
    """A single device-motion sample."""

    user_acceleration: Tuple[float, float, float]  # g, gravity removed
    rotation_rate: Tuple[float, float, float]  # rad/s
    timestamp: float = 0.0

    @property
    def acceleration_magnitude(self) -> float:
        return float(np.linalg.norm(self.user_acceleration))

    @property
    def rotation_magnitude(self) -> float:
        return float(np.linalg.norm(self.rotation_rate))


class MotionSource:
    """Interface for anything that can tell whether the device is still."""

    def is_stable(self) -> bool:
        raise NotImplementedError

    def reset(self) -> None:
        pass


class ImuMotionSource(MotionSource):
    """Judges stability from the most recent IMU reading.

    Args:
        threshold: Maximum acceleration and rotation magnitude for "stable".
    """

    def __init__(self, threshold: float = 0.1):
        if threshold <= 0:
            raise ValueError(f"threshold must be > 0, got {threshold}")
        self.threshold = threshold
        self.last_reading: Optional[MotionReading] = None

    def update(self, reading: MotionReading) -> None:
        self.last_reading = reading

    def is_stable(self) -> bool:
        reading = self.last_reading
        if reading is None:
            return True
        return (
            reading.acceleration_magnitude < self.threshold
            and reading.rotation_magnitude < self.threshold
        )

    def reset(self) -> None:
        self.last_reading = None


class FrameMotionEstimator(MotionSource):
    """Estimates camera shake from consecutive frames.

    Frames are converted to grayscale and downscaled before differencing so
    sensor noise and resolution do not dominate the score.

    Args:
        threshold: Mean absolute gray-level difference above which the
            device is considered moving.
        working_size: (width, height) frames are resized to.
    """

    def __init__(self, threshold: float = 8.0, working_size: Tuple[int, int] = (160, 120)):
        if threshold <= 0:
            raise ValueError(f"threshold must be > 0, got {threshold}")
        self.threshold = threshold
        self.working_size = working_size
        self._previous: Optional[np.ndarray] = None
        self.last_score: Optional[float] = None

    def update(self, frame: np.ndarray) -> Optional[float]:
        """Feed a BGR or grayscale frame.

        Returns:
            Motion score against the previous frame, or None for the first frame.
        """
        if frame.ndim == 3:
            gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        else:
            gray = frame
        small = cv2.resize(gray, self.working_size, interpolation=cv2.INTER_AREA)

        if self._previous is None:
            self._previous = small
            return None

        diff = cv2.absdiff(small, self._previous)
        self._previous = small
        self.last_score = float(np.mean(diff))
        return self.last_score

    def is_stable(self) -> bool:
        if self.last_score is None:
            return True
        return self.last_score < self.threshold

    def reset(self) -> None:
        self._previous = None
        self.last_score = None
