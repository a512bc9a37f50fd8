"""
CLI utilities: input collection, Hy detector loading, listings.
"""

from cli.helpers import (
    collect_input_files,
    collect_detector_files,
    load_detector_paths,
    print_detectors,
    print_categories,
)

__all__ = [
    "collect_input_files",
    "collect_detector_files",
    "load_detector_paths",
    "print_detectors",
    "print_categories",
]
