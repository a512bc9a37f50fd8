"""
Detector engine: IR types, registry and Hy loader.

Built-in detectors live in semantic/; extra detectors can be written in Hy.
"""

from rules.ir import (
    Category,
    Confidence,
    Detector,
    Finding,
    Location,
    RawFinding,
    Severity,
    SubsumptionRule,
)
from rules.registry import DetectorFilter, Registry
from rules.hy_loader import load_hy_detectors, register_detector

__all__ = [
    # IR types
    "Category",
    "Confidence",
    "Detector",
    "Finding",
    "Location",
    "RawFinding",
    "Severity",
    "SubsumptionRule",
    # Registry
    "DetectorFilter",
    "Registry",
    # Hy detectors
    "load_hy_detectors",
    "register_detector",
]
