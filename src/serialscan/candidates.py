"""Data model for the serial scanning pipeline.

Per-frame data flows strictly downstream:

    RawCandidate -> CorrectedCandidate -> ValidatedCandidate -> StabilityResult

All candidate types are immutable; the only state that outlives a frame is
held inside the consensus tracker and the caches.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


# ---------------------------------------------------------------------------
# OCR input
# ---------------------------------------------------------------------------


class SourcePass(Enum):
    """Which OCR pass produced a candidate."""

    FAST = "fast"
    ACCURATE = "accurate"


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in normalized image coordinates."""

    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0


@dataclass(frozen=True)
class RawCandidate:
    """One OCR guess for one frame."""

    text: str
    ocr_confidence: float
    bounding_box: BoundingBox = field(default_factory=BoundingBox)
    source_pass: SourcePass = SourcePass.FAST
    image_index: int = 0
    is_inverted: bool = False  # Read from a polarity-inverted image
    alternative_rank: int = 0  # 0 = top OCR guess
    observation_index: int = 0


# ---------------------------------------------------------------------------
# Ambiguity resolution output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Correction:
    """A single per-position character substitution."""

    original: str
    replacement: str
    position: int


@dataclass(frozen=True)
class CorrectedCandidate:
    """Raw candidate after confusion-table character correction.

    ``resolved_text`` always has the same length as the original text.
    """

    original: RawCandidate
    resolved_text: str
    adjusted_confidence: float
    corrections: Tuple[Correction, ...] = ()
    character_confidences: Tuple[float, ...] = ()

    @property
    def has_adjustments(self) -> bool:
        return len(self.corrections) > 0


# ---------------------------------------------------------------------------
# Validation output
# ---------------------------------------------------------------------------


class RejectionReason(Enum):
    """Why a candidate failed serial validation."""

    INVALID_LENGTH = "invalid_length"
    INVALID_CHARACTERS = "invalid_characters"
    PATTERN_MISMATCH = "pattern_mismatch"


class ValidationLevel(Enum):
    """Candidate classification by composite score."""

    ACCEPT = "accept"
    BORDERLINE = "borderline"
    REJECT = "reject"


@dataclass(frozen=True)
class ValidatedCandidate:
    """Corrected candidate with a validity verdict and composite score."""

    corrected: CorrectedCandidate
    cleaned_text: str
    is_valid: bool
    composite_score: float
    level: ValidationLevel
    pattern_name: Optional[str] = None
    pattern_confidence: float = 0.0
    rejection_reason: Optional[RejectionReason] = None

    @property
    def raw(self) -> RawCandidate:
        return self.corrected.original

    @property
    def alternative_rank(self) -> int:
        return self.corrected.original.alternative_rank

    @property
    def observation_index(self) -> int:
        return self.corrected.original.observation_index

    @classmethod
    def from_text(
        cls,
        text: str,
        composite_score: float,
        level: ValidationLevel = ValidationLevel.ACCEPT,
    ) -> "ValidatedCandidate":
        """Build a valid candidate directly from a serial string.

        Useful for feeding the consensus tracker without running the
        resolver and validator first.
        """
        raw = RawCandidate(text=text, ocr_confidence=composite_score)
        corrected = CorrectedCandidate(
            original=raw,
            resolved_text=text,
            adjusted_confidence=composite_score,
            character_confidences=tuple(1.0 for _ in text),
        )
        return cls(
            corrected=corrected,
            cleaned_text=text.strip().upper(),
            is_valid=True,
            composite_score=composite_score,
            level=level,
        )


@dataclass(frozen=True)
class RejectedCandidate:
    """Candidate that failed validation, with the reason as data."""

    corrected: CorrectedCandidate
    cleaned_text: str
    reason: RejectionReason
    invalid_characters: Tuple[str, ...] = ()
    expected_length: Tuple[int, int] = (10, 12)

    @property
    def description(self) -> str:
        if self.reason == RejectionReason.INVALID_LENGTH:
            lo, hi = self.expected_length
            expected = f"{lo}" if lo == hi else f"{lo}-{hi}"
            return (
                f"Invalid length: {len(self.cleaned_text)} "
                f"(expected {expected} characters)"
            )
        if self.reason == RejectionReason.INVALID_CHARACTERS:
            return "Invalid characters: " + ", ".join(self.invalid_characters)
        return "Does not match Apple serial pattern"


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of validating one frame's candidates."""

    best: Optional[ValidatedCandidate]
    all_valid: Tuple[ValidatedCandidate, ...] = ()
    rejected: Tuple[RejectedCandidate, ...] = ()


# ---------------------------------------------------------------------------
# Temporal consensus output
# ---------------------------------------------------------------------------


class StabilityState(Enum):
    """Consensus state machine states, in progression order."""

    SEEKING = "seeking"
    CANDIDATE = "candidate"
    STABILIZING = "stabilizing"
    LOCKED = "locked"


@dataclass
class StableConsensus:
    """The tracker's running belief about the serial on screen."""

    serial_text: str
    overall_confidence: float
    stability_duration: float  # Seconds the text has held the majority
    frame_count: int  # Votes for the text in the current window


@dataclass(frozen=True)
class StabilityResult:
    """Per-frame verdict surfaced to the UI layer."""

    state: StabilityState
    stable_candidate: Optional[str]
    guidance_message: str
    should_lock: bool
    confidence: float
