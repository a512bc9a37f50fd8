"""
CLI helper functions: input collection, Hy detector loading, listings.
"""

from pathlib import Path
from typing import List

from core.errors import DetectorLoadError, DuplicateDetectorIdError
from core.utils import debug, error
from rules.hy_loader import load_hy_detectors
from rules.ir import Detector
from rules.registry import Registry

# Directories that never hold parse trees worth scanning
SKIP_DIRS = {"node_modules", ".git", "cache", "out", "artifacts"}


def collect_input_files(input_path: str) -> List[str]:
    """Collect parse-tree .json files from a path (file or directory)."""
    path = Path(input_path)
    if not path.exists():
        return []
    if path.is_file():
        return [str(path)]
    input_files = []
    for file_path in path.rglob("*.json"):
        if any(part in SKIP_DIRS for part in file_path.relative_to(path).parts[:-1]):
            continue
        input_files.append(str(file_path))
    return sorted(input_files)


def collect_detector_files(detector_path: str) -> List[str]:
    """Collect .hy detector files from a path (file or directory)."""
    path = Path(detector_path)
    if not path.exists():
        return []
    if path.is_file():
        return [str(path)]
    detector_files = []
    for file_path in path.rglob("*.hy"):
        # Skip private files (starting with _)
        if not file_path.name.startswith("_"):
            detector_files.append(str(file_path))
    return sorted(detector_files)


def load_detector_paths(registry: Registry, detector_paths: List[str]) -> List[Detector]:
    """
    Load Hy detectors from files/directories into `registry`.

    Raises DetectorLoadError if a path holds no detector files or a file fails
    to load; DuplicateDetectorIdError if a detector id is already registered.
    """
    loaded: List[Detector] = []
    for detector_path in detector_paths:
        files = collect_detector_files(detector_path)
        if not files:
            raise DetectorLoadError(f"No detector files found at: {detector_path}")
        for detector_file in files:
            detectors = load_hy_detectors(detector_file)
            debug(f"Loaded {len(detectors)} detector(s) from {detector_file}")
            for detector in detectors:
                try:
                    registry.register(detector)
                except DuplicateDetectorIdError as e:
                    error(f"{detector_file}: {e}")
                    raise
            loaded.extend(detectors)
    return loaded


def print_detectors(registry: Registry) -> None:
    print(f"Available detectors ({len(registry)}):\n")
    for detector in registry:
        sev = detector.severity.value.upper()
        hy_tag = " [HY]" if detector.source != "builtin" else ""
        print(f"  {detector.id}{hy_tag} [{sev}] ({detector.category.value})")
        print(f"    {detector.description or '(no description)'}\n")


def print_categories(registry: Registry) -> None:
    categories = registry.categories()
    print(f"Available categories ({len(categories)}):\n")
    for category in sorted(categories, key=lambda c: c.value):
        count = sum(1 for d in registry if d.category == category)
        print(f"  {category.value} ({count} detectors)")
