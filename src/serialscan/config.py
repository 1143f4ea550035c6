"""Scanner configuration."""

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class ScannerConfig:
    """Constructor-time options for every pipeline component.

    ``use_strict_validation`` narrows the accepted length to exactly 12
    characters regardless of ``minimum_length``/``maximum_length``.
    """

    # Validation
    minimum_length: int = 10
    maximum_length: int = 12
    use_strict_validation: bool = False

    # Temporal consensus
    buffer_capacity: int = 10
    consensus_window: int = 5
    required_stable_frames: int = 3
    stability_window_duration: float = 1.0  # seconds
    lock_duration: float = 2.0  # seconds
    confidence_threshold: float = 0.8
    max_edit_distance: int = 1
    recency_bonus_span: float = 0.5  # seconds

    # Caches
    validation_cache_size: int = 1000
    resolver_cache_size: int = 1000

    # Worker
    max_frame_seconds: float = 2.0

    @property
    def length_bounds(self) -> Tuple[int, int]:
        """(minimum, maximum) length the validator will accept."""
        if self.use_strict_validation:
            return 12, 12
        return self.minimum_length, self.maximum_length

    def validate(self) -> None:
        """Raise ValueError if the configuration is unusable."""
        if self.minimum_length <= 0:
            raise ValueError(f"minimum_length must be > 0, got {self.minimum_length}")
        if self.minimum_length > self.maximum_length:
            raise ValueError(
                f"minimum_length ({self.minimum_length}) must be <= "
                f"maximum_length ({self.maximum_length})"
            )
        for name in (
            "buffer_capacity",
            "consensus_window",
            "required_stable_frames",
            "validation_cache_size",
            "resolver_cache_size",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be > 0, got {value}")
        if self.consensus_window > self.buffer_capacity:
            raise ValueError(
                f"consensus_window ({self.consensus_window}) must be <= "
                f"buffer_capacity ({self.buffer_capacity})"
            )
        if self.required_stable_frames > self.buffer_capacity:
            raise ValueError(
                f"required_stable_frames ({self.required_stable_frames}) must be <= "
                f"buffer_capacity ({self.buffer_capacity})"
            )
        for name in (
            "stability_window_duration",
            "lock_duration",
            "recency_bonus_span",
        ):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} must be >= 0, got {value}")
        if self.max_frame_seconds <= 0:
            raise ValueError(f"max_frame_seconds must be > 0, got {self.max_frame_seconds}")
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError(
                f"confidence_threshold must be within [0, 1], got {self.confidence_threshold}"
            )
        if self.max_edit_distance < 0:
            raise ValueError(f"max_edit_distance must be >= 0, got {self.max_edit_distance}")
