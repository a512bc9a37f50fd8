"""
Rules IR - detector values and the findings they produce.

This module defines the core data structures shared by built-in detectors,
Hy detectors, the scheduler and the aggregator.
"""

from typing import Callable, Optional, Sequence, Tuple, TYPE_CHECKING
from dataclasses import dataclass, field
from enum import Enum

from model.utils import SourceSpan

if TYPE_CHECKING:
    from rules.eval_context import DetectorContext


ID = str


class Severity(Enum):
    """Finding severity levels, ordered from lowest to highest."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_string(cls, s: str) -> "Severity":
        """Parse severity from string."""
        s_lower = s.lower().strip()
        for sev in cls:
            if sev.value == s_lower:
                return sev
        raise ValueError(f"Unknown severity: {s}")

    @property
    def level(self) -> int:
        """Numeric level for comparison (higher = more severe)."""
        levels = {
            Severity.LOW: 1,
            Severity.MEDIUM: 2,
            Severity.HIGH: 3,
            Severity.CRITICAL: 4,
        }
        return levels[self]

    def __ge__(self, other: "Severity") -> bool:
        return self.level >= other.level

    def __gt__(self, other: "Severity") -> bool:
        return self.level > other.level

    def __le__(self, other: "Severity") -> bool:
        return self.level <= other.level

    def __lt__(self, other: "Severity") -> bool:
        return self.level < other.level


class Confidence(Enum):
    """How sure a detector is about a finding. Only used to break dedup ties."""

    POSSIBLE = "possible"
    LIKELY = "likely"
    CERTAIN = "certain"

    @property
    def level(self) -> int:
        return {Confidence.POSSIBLE: 1, Confidence.LIKELY: 2, Confidence.CERTAIN: 3}[self]

    @classmethod
    def from_string(cls, s: str) -> "Confidence":
        s_lower = s.lower().strip()
        for conf in cls:
            if conf.value == s_lower:
                return conf
        raise ValueError(f"Unknown confidence: {s}")


class Category(Enum):
    """Vulnerability taxonomy."""

    ACCESS_CONTROL = "access-control"
    REENTRANCY = "reentrancy"
    ORACLE = "oracle"
    AMM_INVARIANT = "amm-invariant"
    TOKEN_STANDARD = "token-standard"
    BRIDGE = "bridge"
    RESTAKING = "restaking"
    PROXY_UPGRADE = "proxy-upgrade"
    SIGNATURE_REPLAY = "signature-replay"
    GAS_GRIEFING = "gas-griefing"
    LOW_LEVEL_CALL = "low-level-call"
    ARITHMETIC = "arithmetic"
    RANDOMNESS = "randomness"
    INHERITANCE = "inheritance"

    @classmethod
    def from_string(cls, s: str) -> "Category":
        s_lower = s.lower().strip().replace("_", "-")
        for cat in cls:
            if cat.value == s_lower:
                return cat
        raise ValueError(f"Unknown category: {s}")


# =============================================================================
# Findings
# =============================================================================


@dataclass(frozen=True)
class Location:
    """Where a finding points: contract, optional function, source span."""

    contract: str
    function: Optional[str]
    span: SourceSpan

    def to_dict(self) -> dict:
        return {"contract": self.contract, "function": self.function, "span": self.span.to_dict()}

    def __str__(self) -> str:
        member = f".{self.function}" if self.function else ""
        return f"{self.contract}{member} ({self.span})"


@dataclass(frozen=True)
class RawFinding:
    """What a detector emits. The scheduler stamps the detector id and category."""

    severity: Severity
    location: Location
    message: str
    confidence: Confidence = Confidence.LIKELY
    evidence: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Finding:
    """A finding attributed to the detector that produced it."""

    detector_id: ID
    category: Category
    severity: Severity
    location: Location
    message: str
    confidence: Confidence = Confidence.LIKELY
    evidence: Tuple[str, ...] = ()

    @classmethod
    def from_raw(cls, raw: RawFinding, detector: "Detector", severity: Severity) -> "Finding":
        return cls(
            detector_id=detector.id,
            category=detector.category,
            severity=severity,
            location=raw.location,
            message=raw.message,
            confidence=raw.confidence,
            evidence=tuple(raw.evidence),
        )

    def to_dict(self) -> dict:
        return {
            "detector": self.detector_id,
            "category": self.category.value,
            "severity": self.severity.value,
            "confidence": self.confidence.value,
            "location": self.location.to_dict(),
            "message": self.message,
            "evidence": list(self.evidence),
        }


@dataclass(frozen=True)
class SubsumptionRule:
    """
    `general` subsumes `specific` when both fire on overlapping spans of the
    same contract/function. Each side names a detector id or a category value.
    """

    general: str
    specific: str
    relation: str = "subsumes"

    def matches_general(self, finding: Finding) -> bool:
        return self.general in (finding.detector_id, finding.category.value)

    def matches_specific(self, finding: Finding) -> bool:
        return self.specific in (finding.detector_id, finding.category.value)


# =============================================================================
# Detector
# =============================================================================


EvaluateFn = Callable[["DetectorContext"], Sequence[RawFinding]]
AppliesFn = Callable[["DetectorContext"], bool]


def _always(ctx: "DetectorContext") -> bool:
    return True


@dataclass(frozen=True)
class Detector:
    """
    A detector is a value: metadata plus a pure evaluation function.

    evaluate(ctx) must not mutate ctx.program or ctx.index.
    applies(ctx) lets the scheduler skip irrelevant (contract, detector) pairs.
    """

    id: ID
    category: Category
    severity: Severity
    description: str
    evaluate: EvaluateFn = field(compare=False)
    applies: AppliesFn = field(default=_always, compare=False)
    source: str = "builtin"  # "builtin" or path of the Hy file

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category.value,
            "severity": self.severity.value,
            "description": self.description,
            "source": self.source,
        }


def clamp_severity(requested: Severity, declared: Severity, evidence: Sequence[str]) -> Severity:
    """
    Severity a finding is emitted with.

    Never above the detector's declared severity; Critical needs at least two
    evidence entries, otherwise it is demoted to High.
    """
    severity = requested if requested <= declared else declared
    if severity == Severity.CRITICAL and len(evidence) < 2:
        severity = Severity.HIGH
    return severity
