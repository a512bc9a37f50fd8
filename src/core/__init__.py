from core.errors import (
    KestrelError,
    MalformedInputError,
    CyclicInheritanceError,
    DetectorExecutionError,
    PartialScanError,
    DuplicateDetectorIdError,
    UnknownDetectorError,
    DetectorLoadError,
)
from core.utils import debug, info, warn, error

__all__ = [
    "KestrelError",
    "MalformedInputError",
    "CyclicInheritanceError",
    "DetectorExecutionError",
    "PartialScanError",
    "DuplicateDetectorIdError",
    "UnknownDetectorError",
    "DetectorLoadError",
    "debug",
    "info",
    "warn",
    "error",
]
