"""
Hy Detectors Loader - Load detectors written in Hy.

Detectors are written in Hy (a Lisp dialect) and compiled to Python at load
time. A detector file calls `register-detector` once per detector:

    (import rules.hy_loader [register-detector])

    (defn evaluate [ctx]
      (lfor f (.public-functions ctx) ...))

    (register-detector
      :id "my-detector"
      :category "access-control"
      :severity "medium"
      :description "..."
      :evaluate evaluate)

Usage:
    from rules.hy_loader import load_hy_detectors
    detectors = load_hy_detectors("detectors/hygiene.hy")
"""

import threading
from pathlib import Path
from typing import Callable, List, Optional, Union

from core.errors import DetectorLoadError
from core.utils import debug
from rules.ir import Category, Detector, Severity


# Collectors of the loads in progress; register-detector appends to the innermost one
_collectors: List[List[Detector]] = []
_load_lock = threading.RLock()
_current_path: List[str] = []


def register_detector(
    id: str,
    category: Union[str, Category],
    severity: Union[str, Severity],
    evaluate: Callable,
    description: str = "",
    applies: Optional[Callable] = None,
) -> Detector:
    """
    Register a detector from a Hy file. Only valid while load_hy_detectors runs.

    Args:
        id: unique detector id
        category: category value ("access-control", ...) or Category
        severity: severity name ("high", ":high", ...) or Severity
        evaluate: (ctx: DetectorContext) -> list of RawFinding
        applies: optional (ctx: DetectorContext) -> bool
    """
    if not _collectors:
        raise DetectorLoadError(f"register-detector '{id}' called outside load_hy_detectors")
    if not callable(evaluate):
        raise DetectorLoadError(f"detector '{id}': evaluate is not callable")
    kwargs = {}
    if applies is not None:
        kwargs["applies"] = applies
    try:
        detector = Detector(
            id=str(id),
            category=category if isinstance(category, Category) else Category.from_string(str(category).lstrip(":")),
            severity=severity if isinstance(severity, Severity) else severity_from_keyword(str(severity)),
            description=description,
            evaluate=evaluate,
            source=_current_path[-1],
            **kwargs,
        )
    except ValueError as e:
        raise DetectorLoadError(f"detector '{id}': {e}") from e
    _collectors[-1].append(detector)
    return detector


def _ensure_hy_imported():
    """Ensure Hy is installed and importable."""
    try:
        import hy
        import hy.importer

        return hy
    except ImportError:
        raise ImportError("Hy is not installed. Install with: pip install hy\nRequired version: hy>=0.28.0")


def load_hy_detectors(path: str) -> List[Detector]:
    """
    Load all detectors from a single .hy file.

    Args:
        path: Path to .hy file

    Returns:
        Detectors registered by the file, in registration order

    Raises:
        DetectorLoadError: the file is missing, fails to run, or registers nothing
    """
    hy = _ensure_hy_imported()

    abs_path = str(Path(path).resolve())
    if not Path(abs_path).is_file():
        raise DetectorLoadError(f"Hy detector file not found: {path}")

    # Execute the Hy file - this triggers register-detector calls
    with _load_lock:
        collected: List[Detector] = []
        _collectors.append(collected)
        _current_path.append(abs_path)
        try:
            hy.importer.runhy.run_path(abs_path)
        except DetectorLoadError:
            raise
        except Exception as e:
            raise DetectorLoadError(f"Failed to load Hy detectors from {path}: {e}") from e
        finally:
            _collectors.pop()
            _current_path.pop()

    if not collected:
        raise DetectorLoadError(f"{path} registers no detectors")
    debug(f"hy: loaded {len(collected)} detector(s) from {path}")
    return collected


def severity_from_keyword(kw: str) -> Severity:
    """
    Convert Hy keyword to Severity enum.

    Args:
        kw: Keyword like ":high", ":critical", "high", etc.

    Returns:
        Severity enum value
    """
    # Strip leading colon if present (Hy keyword)
    return Severity.from_string(kw.lstrip(":"))
