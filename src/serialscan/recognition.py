"""
Recognition components for SerialScan.

- AmbiguityResolver: Maps characters outside the serial alphabet onto their
  most likely in-alphabet counterpart using a confusion-penalty table
- SerialValidator: Length/alphabet/pattern checks, composite scoring and
  best-candidate selection

Both components are deterministic: identical inputs always give identical
outputs.  Their caches only memoize per-string work.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple, Union

from serialscan.cache import LRUCache, NullCache
from serialscan.candidates import (
    CorrectedCandidate,
    Correction,
    RawCandidate,
    RejectedCandidate,
    RejectionReason,
    ValidatedCandidate,
    ValidationLevel,
    ValidationOutcome,
)
from serialscan.events import EventBus

log = logging.getLogger(__name__)

Cache = Union[LRUCache, NullCache]

# Apple serial alphabet: A-Z without I, O, Q, plus digits (33 characters)
SERIAL_ALPHABET: FrozenSet[str] = frozenset("ABCDEFGHJKLMNPRSTUVWXYZ0123456789")

# Character -> [(alternate, misread penalty)].  Lower penalty = more likely.
CONFUSION_TABLE: Dict[str, List[Tuple[str, float]]] = {
    "0": [("O", 0.3), ("D", 0.2), ("Q", 0.4)],
    # 0 ranked ahead of D (0.3/0.2 in older tables) so O, Q and 0 readings agree
    "O": [("0", 0.2), ("D", 0.3), ("Q", 0.4)],
    "D": [("0", 0.2), ("O", 0.2)],
    "Q": [("0", 0.4), ("O", 0.4)],
    "1": [("I", 0.3), ("l", 0.4)],
    "I": [("1", 0.3), ("l", 0.3)],
    "l": [("1", 0.4), ("I", 0.3)],
    "2": [("Z", 0.2)],
    "Z": [("2", 0.2)],
    "5": [("S", 0.3)],
    "S": [("5", 0.3)],
    "6": [("G", 0.2)],
    "G": [("6", 0.2)],
    "8": [("B", 0.3)],
    "B": [("8", 0.3)],
}

# Fallback for glyphs missing from the confusion table
DIRECT_MAPPING: Dict[str, str] = {
    "I": "1",
    "i": "1",
    "O": "0",
    "o": "0",
    "Q": "0",
    "q": "0",
    "l": "1",
}

DIRECT_MAPPING_CONFIDENCE = 0.5


# ---------------------------------------------------------------------------
# Ambiguity Resolution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResolvedText:
    """Per-string resolution result (cacheable, candidate independent)."""

    text: str
    corrections: Tuple[Correction, ...]
    character_confidences: Tuple[float, ...]
    invalid_count: int


class AmbiguityResolver:
    """
    Corrects characters that fall outside the serial alphabet.

    Resolution is a per-position substitution; it never inserts or deletes
    characters.  Text that is not a serial at all is left alone so that the
    validator can reject it.
    """

    def __init__(
        self,
        confusion_table: Optional[Dict[str, List[Tuple[str, float]]]] = None,
        alphabet: FrozenSet[str] = SERIAL_ALPHABET,
        alphabet_penalty: float = 0.1,
        adjustment_penalty: float = 0.05,
        cache: Optional[Cache] = None,
        events: Optional[EventBus] = None,
    ):
        """
        Args:
            confusion_table: Character -> [(alternate, penalty)] table
            alphabet: Permitted serial characters
            alphabet_penalty: Confidence penalty per still-invalid character
            adjustment_penalty: Confidence penalty per substitution made
            cache: Per-string memo (LRUCache or NullCache)
            events: Bus for ``candidate_corrected`` events
        """
        if alphabet_penalty < 0 or adjustment_penalty < 0:
            raise ValueError("penalties must be >= 0")
        self.confusion_table = confusion_table if confusion_table is not None else CONFUSION_TABLE
        self.alphabet = alphabet
        self.alphabet_penalty = alphabet_penalty
        self.adjustment_penalty = adjustment_penalty
        self.cache = cache if cache is not None else LRUCache(1000)
        self.events = events

        self.stats = {"total": 0, "with_adjustments": 0}

    def resolve(self, candidates: Sequence[RawCandidate]) -> List[CorrectedCandidate]:
        """
        Resolve a frame's raw candidates.

        Args:
            candidates: Raw OCR candidates

        Returns:
            One CorrectedCandidate per input, in input order
        """
        return [self.resolve_one(c) for c in candidates]

    def resolve_one(self, candidate: RawCandidate) -> CorrectedCandidate:
        self.stats["total"] += 1
        resolved = self.resolve_text(candidate.text)

        adjusted = (
            candidate.ocr_confidence
            - self.alphabet_penalty * resolved.invalid_count
            - self.adjustment_penalty * len(resolved.corrections)
        )
        adjusted = max(0.0, min(1.0, adjusted))

        if resolved.corrections:
            self.stats["with_adjustments"] += 1
            if self.events is not None:
                self.events.emit(
                    "candidate_corrected",
                    original=candidate.text,
                    resolved=resolved.text,
                    corrections=len(resolved.corrections),
                )

        return CorrectedCandidate(
            original=candidate,
            resolved_text=resolved.text,
            adjusted_confidence=adjusted,
            corrections=resolved.corrections,
            character_confidences=resolved.character_confidences,
        )

    def resolve_text(self, text: str) -> ResolvedText:
        """Resolve a bare string, left to right."""
        cached = self.cache.get(text)
        if cached is not None:
            return cached

        chars: List[str] = []
        confidences: List[float] = []
        corrections: List[Correction] = []

        for position, char in enumerate(text):
            replacement, confidence = self._resolve_character(char)
            chars.append(replacement)
            confidences.append(confidence)
            if replacement != char:
                corrections.append(Correction(char, replacement, position))

        resolved_text = "".join(chars)
        result = ResolvedText(
            text=resolved_text,
            corrections=tuple(corrections),
            character_confidences=tuple(confidences),
            invalid_count=sum(1 for c in resolved_text if c not in self.alphabet),
        )
        self.cache.put(text, result)
        return result

    def _resolve_character(self, char: str) -> Tuple[str, float]:
        """Return (character, per-character confidence)."""
        if char in self.alphabet:
            return char, 1.0

        confusions = self.confusion_table.get(char)
        if confusions:
            # Permitted alternates first, then lowest penalty
            ranked = sorted(confusions, key=lambda c: (c[0] not in self.alphabet, c[1]))
            best, penalty = ranked[0]
            if best in self.alphabet:
                return best, 1.0 - penalty

        mapped = DIRECT_MAPPING.get(char)
        if mapped is not None and mapped in self.alphabet:
            return mapped, DIRECT_MAPPING_CONFIDENCE

        return char, 1.0

    def get_stats(self) -> Dict[str, float]:
        """Get resolution statistics."""
        total = max(self.stats["total"], 1)
        return {
            "total": self.stats["total"],
            "with_adjustments": self.stats["with_adjustments"],
            "with_adjustments_pct": 100 * self.stats["with_adjustments"] / total,
        }

    def reset(self) -> None:
        """Clear the per-string cache and statistics."""
        self.cache.clear()
        self.stats = {"total": 0, "with_adjustments": 0}


# ---------------------------------------------------------------------------
# Serial Validation
# ---------------------------------------------------------------------------


_LETTER = "[A-HJ-NPR-Z]"
_SERIAL_CHAR = "[A-HJ-NPR-Z0-9]"


@dataclass(frozen=True)
class SerialPattern:
    """Named accepted serial layout."""

    name: str
    regex: "re.Pattern"
    strict: bool  # Also accepted in strict mode

    def matches(self, text: str) -> bool:
        return self.regex.fullmatch(text) is not None


# Ordered: the first matching pattern names the candidate.  Every layout
# needs at least one digit.
DEFAULT_PATTERNS: Tuple[SerialPattern, ...] = (
    SerialPattern("letter_then_digits", re.compile(f"{_LETTER}[0-9]{{9,11}}"), True),
    SerialPattern(
        "prefix_letters", re.compile(f"{_LETTER}{{2}}[0-9]{{2}}{_SERIAL_CHAR}{{8}}"), True
    ),
    SerialPattern("standard", re.compile(f"(?=.*[0-9]){_SERIAL_CHAR}{{12}}"), True),
    SerialPattern("legacy", re.compile(f"(?=.*[0-9]){_SERIAL_CHAR}{{11}}"), False),
    SerialPattern("flexible", re.compile(f"(?=.*[0-9]){_SERIAL_CHAR}{{10,12}}"), False),
)

KNOWN_PREFIXES: Tuple[str, ...] = ("C02", "C07", "C17", "F17", "DMP")


@dataclass(frozen=True)
class SerialCheck:
    """Candidate-independent verdict on a cleaned string."""

    cleaned: str
    is_valid: bool
    reason: Optional[RejectionReason] = None
    invalid_characters: Tuple[str, ...] = ()
    pattern_name: Optional[str] = None
    pattern_confidence: float = 0.0


class SerialValidator:
    """
    Validates corrected candidates as Apple serial numbers.

    Checks, in order:
    - Length within [minimum_length, maximum_length]
    - Every character in the serial alphabet
    - First matching accepted pattern

    Valid candidates get a composite score blending OCR confidence with
    pattern confidence, minus inverted-image and alternative-rank penalties.
    """

    ACCEPT_THRESHOLD = 0.85
    BORDERLINE_THRESHOLD = 0.70

    OCR_WEIGHT = 0.6
    PATTERN_WEIGHT = 0.4
    INVERSION_PENALTY = 0.1
    ALTERNATIVE_PENALTY = 0.05

    def __init__(
        self,
        minimum_length: Optional[int] = None,
        maximum_length: Optional[int] = None,
        use_strict_validation: bool = False,
        patterns: Sequence[SerialPattern] = DEFAULT_PATTERNS,
        known_prefixes: Sequence[str] = KNOWN_PREFIXES,
        alphabet: FrozenSet[str] = SERIAL_ALPHABET,
        cache: Optional[Cache] = None,
        events: Optional[EventBus] = None,
    ):
        """
        Args:
            minimum_length: Shortest accepted serial (12 strict, 10 flexible)
            maximum_length: Longest accepted serial
            use_strict_validation: Only accept 12-character layouts
            patterns: Ordered accepted patterns
            known_prefixes: Device serial prefixes that raise pattern confidence
            alphabet: Permitted serial characters
            cache: Per-string verdict memo (LRUCache or NullCache)
            events: Bus for ``candidate_rejected`` events
        """
        if minimum_length is None:
            minimum_length = 12 if use_strict_validation else 10
        if maximum_length is None:
            maximum_length = 12
        if minimum_length <= 0:
            raise ValueError(f"minimum_length must be > 0, got {minimum_length}")
        if minimum_length > maximum_length:
            raise ValueError(
                f"minimum_length ({minimum_length}) > maximum_length ({maximum_length})"
            )

        self.minimum_length = minimum_length
        self.maximum_length = maximum_length
        self.use_strict_validation = use_strict_validation
        self.patterns = tuple(p for p in patterns if p.strict or not use_strict_validation)
        self.known_prefixes = tuple(known_prefixes)
        self.alphabet = alphabet
        self.cache = cache if cache is not None else LRUCache(1000)
        self.events = events

    def validate(self, candidates: Sequence[CorrectedCandidate]) -> ValidationOutcome:
        """
        Validate a frame's corrected candidates.

        Args:
            candidates: Output of AmbiguityResolver.resolve

        Returns:
            ValidationOutcome with the best valid candidate (if any), all
            valid candidates ranked best first, and rejections in input order
        """
        valid: List[ValidatedCandidate] = []
        rejected: List[RejectedCandidate] = []

        for corrected in candidates:
            validated, rejection = self._judge(corrected)
            if rejection is None:
                valid.append(validated)
            else:
                rejected.append(rejection)

        # Highest score, then top OCR rank, then earliest observation
        valid.sort(key=lambda v: (-v.composite_score, v.alternative_rank, v.observation_index))

        return ValidationOutcome(
            best=valid[0] if valid else None,
            all_valid=tuple(valid),
            rejected=tuple(rejected),
        )

    def validate_one(self, corrected: CorrectedCandidate) -> ValidatedCandidate:
        """Validate a single corrected candidate."""
        validated, _ = self._judge(corrected)
        return validated

    def validate_text(self, text: str) -> SerialCheck:
        """
        Check a bare string without any OCR metadata.

        Returns:
            SerialCheck with the verdict and pattern details
        """
        cleaned = text.strip().upper()
        cached = self.cache.get(cleaned)
        if cached is not None:
            return cached
        check = self._check(cleaned)
        self.cache.put(cleaned, check)
        return check

    def _judge(
        self, corrected: CorrectedCandidate
    ) -> Tuple[ValidatedCandidate, Optional[RejectedCandidate]]:
        check = self.validate_text(corrected.resolved_text)
        score = self.composite_score(corrected, check.pattern_confidence)

        validated = ValidatedCandidate(
            corrected=corrected,
            cleaned_text=check.cleaned,
            is_valid=check.is_valid,
            composite_score=score,
            level=self._level(score) if check.is_valid else ValidationLevel.REJECT,
            pattern_name=check.pattern_name,
            pattern_confidence=check.pattern_confidence,
            rejection_reason=check.reason,
        )

        if check.is_valid:
            return validated, None

        if self.events is not None:
            self.events.emit(
                "candidate_rejected",
                text=check.cleaned,
                reason=check.reason.value,
            )
        rejection = RejectedCandidate(
            corrected=corrected,
            cleaned_text=check.cleaned,
            reason=check.reason,
            invalid_characters=check.invalid_characters,
            expected_length=(self.minimum_length, self.maximum_length),
        )
        return validated, rejection

    def _check(self, cleaned: str) -> SerialCheck:
        if not (self.minimum_length <= len(cleaned) <= self.maximum_length):
            return SerialCheck(cleaned, False, RejectionReason.INVALID_LENGTH)

        invalid = sorted({c for c in cleaned if c not in self.alphabet})
        if invalid:
            return SerialCheck(
                cleaned,
                False,
                RejectionReason.INVALID_CHARACTERS,
                invalid_characters=tuple(invalid),
            )

        for pattern in self.patterns:
            if pattern.matches(cleaned):
                return SerialCheck(
                    cleaned,
                    True,
                    pattern_name=pattern.name,
                    pattern_confidence=self.pattern_confidence(cleaned),
                )

        return SerialCheck(cleaned, False, RejectionReason.PATTERN_MISMATCH)

    def pattern_confidence(self, serial: str) -> float:
        """How much a string looks like a device serial, in [0.5, 0.8]."""
        confidence = 0.5

        if 10 <= len(serial) <= 12:
            confidence += 0.1

        # Serials mix letters and digits
        letters = sum(1 for c in serial if c.isalpha())
        digits = sum(1 for c in serial if c.isdigit())
        if letters >= 3 and digits >= 3:
            confidence += 0.1

        if serial[:3] in self.known_prefixes:
            confidence += 0.1

        return min(confidence, 1.0)

    def composite_score(self, corrected: CorrectedCandidate, pattern_confidence: float) -> float:
        raw = corrected.original
        score = (
            self.OCR_WEIGHT * raw.ocr_confidence
            + self.PATTERN_WEIGHT * pattern_confidence
            - (self.INVERSION_PENALTY if raw.is_inverted else 0.0)
            - self.ALTERNATIVE_PENALTY * raw.alternative_rank
        )
        return max(0.0, min(1.0, score))

    def _level(self, score: float) -> ValidationLevel:
        if score >= self.ACCEPT_THRESHOLD:
            return ValidationLevel.ACCEPT
        if score >= self.BORDERLINE_THRESHOLD:
            return ValidationLevel.BORDERLINE
        return ValidationLevel.REJECT

    def reset(self) -> None:
        """Clear the verdict cache."""
        self.cache.clear()
