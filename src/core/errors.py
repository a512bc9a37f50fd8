"""
Error taxonomy for the scan engine.

Every error the engine reports derives from KestrelError. Errors raised while
scanning are collected into the ScanReport next to the findings, so a caller
can tell a clean scan from an incomplete one:

- MalformedInputError: the parse tree of a compilation unit is unusable (fatal
  for that unit, other units are still scanned)
- CyclicInheritanceError: a contract cannot be linearized (fatal for that
  contract, other contracts in the unit are still scanned)
- DetectorExecutionError: one detector invocation failed (scan continues)
- PartialScanError: the deadline or the worker pool cut work short
"""

from typing import Optional, Sequence


class KestrelError(Exception):
    """Base class for all engine errors."""

    kind = "error"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": str(self)}


class MalformedInputError(KestrelError):
    """Raised when a parse tree violates the structural invariants of the Program Model."""

    kind = "malformed-input"

    def __init__(self, message: str, unit: Optional[str] = None):
        self.unit = unit
        prefix = f"{unit}: " if unit else ""
        super().__init__(f"{prefix}{message}")

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": str(self), "unit": self.unit}


class CyclicInheritanceError(KestrelError):
    """Raised when a contract's inheritance graph has a cycle or no consistent linearization."""

    kind = "cyclic-inheritance"

    def __init__(self, contract: str, cycle: Sequence[str], reason: str = "inheritance cycle"):
        self.contract = contract
        self.cycle = tuple(cycle)
        super().__init__(f"{contract}: {reason} ({' -> '.join(self.cycle)})")

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": str(self), "contract": self.contract, "cycle": list(self.cycle)}


class DetectorExecutionError(KestrelError):
    """A single detector invocation raised or timed out. Wraps the underlying cause."""

    kind = "detector-execution"

    def __init__(self, detector_id: str, contract: str, cause: BaseException):
        self.detector_id = detector_id
        self.contract = contract
        self.cause = cause
        super().__init__(f"detector '{detector_id}' failed on {contract}: {type(cause).__name__}: {cause}")

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": str(self),
            "detector": self.detector_id,
            "contract": self.contract,
            "cause": type(self.cause).__name__,
        }


class PartialScanError(KestrelError):
    """Work items were never scheduled (deadline expiry or worker pool failure)."""

    kind = "partial-scan"

    def __init__(self, contract: str, pending: int, reason: str):
        self.contract = contract
        self.pending = pending
        self.reason = reason
        super().__init__(f"{contract}: {pending} detector(s) not run ({reason})")

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": str(self),
            "contract": self.contract,
            "pending": self.pending,
            "reason": self.reason,
        }


class DuplicateDetectorIdError(KestrelError):
    """Raised when registering a detector whose id is already registered."""

    kind = "duplicate-detector"


class UnknownDetectorError(KestrelError, KeyError):
    """Raised when enabling, disabling or fetching an id that is not registered."""

    kind = "unknown-detector"

    def __str__(self) -> str:
        return Exception.__str__(self)


class DetectorLoadError(KestrelError):
    """Raised when a Hy detector file cannot be loaded."""

    kind = "detector-load"
