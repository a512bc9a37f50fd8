"""
Detector registry.

An explicit, constructed collection of detectors keyed by id. There is no
process-wide registry: every scan gets the Registry instance it is handed, so
concurrent scans never share detector state.

Usage:
    registry = Registry()
    registry.register(detector)
    selected = registry.select(DetectorFilter(categories={Category.REENTRANCY}))
"""

from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterator, List, Optional, Union

from core.errors import DuplicateDetectorIdError, UnknownDetectorError
from core.utils import debug
from rules.ir import Category, Detector, Severity


@dataclass(frozen=True)
class DetectorFilter:
    """
    Declarative detector selection. Empty/None fields do not filter.

    min_severity compares against the detector's declared severity.
    """

    ids: Optional[FrozenSet[str]] = None
    categories: Optional[FrozenSet[Category]] = None
    min_severity: Optional[Severity] = None
    exclude_ids: FrozenSet[str] = frozenset()

    def __call__(self, detector: Detector) -> bool:
        if self.ids and detector.id not in self.ids:
            return False
        if self.categories and detector.category not in self.categories:
            return False
        if self.min_severity is not None and detector.severity < self.min_severity:
            return False
        return detector.id not in self.exclude_ids


SelectFilter = Union[DetectorFilter, Callable[[Detector], bool], None]


class Registry:
    """Detectors in registration order, with enable/disable toggles."""

    def __init__(self):
        self._detectors: Dict[str, Detector] = {}
        self._order: Dict[str, int] = {}
        self._disabled: set = set()

    def register(self, detector: Detector) -> None:
        """Add a detector. Raises DuplicateDetectorIdError if the id is taken."""
        if detector.id in self._detectors:
            raise DuplicateDetectorIdError(f"detector '{detector.id}' is already registered")
        self._order[detector.id] = len(self._order)
        self._detectors[detector.id] = detector
        debug(f"registry: registered {detector.id} ({detector.category.value}, {detector.severity.value})")

    def register_all(self, detectors) -> None:
        for detector in detectors:
            self.register(detector)

    def get(self, detector_id: str) -> Detector:
        if detector_id not in self._detectors:
            raise UnknownDetectorError(f"unknown detector '{detector_id}'")
        return self._detectors[detector_id]

    def select(self, flt: SelectFilter = None) -> List[Detector]:
        """Enabled detectors accepted by `flt`, in registration order."""
        selected = []
        for detector in self._detectors.values():
            if detector.id in self._disabled:
                continue
            if flt is not None and not flt(detector):
                continue
            selected.append(detector)
        return selected

    def disable(self, detector_id: str) -> None:
        self.get(detector_id)
        self._disabled.add(detector_id)

    def enable(self, detector_id: str) -> None:
        self.get(detector_id)
        self._disabled.discard(detector_id)

    def is_enabled(self, detector_id: str) -> bool:
        self.get(detector_id)
        return detector_id not in self._disabled

    def disabled_ids(self) -> List[str]:
        """Disabled detector ids in registration order."""
        return [d for d in self._detectors if d in self._disabled]

    def ids(self) -> List[str]:
        return list(self._detectors)

    def categories(self) -> List[Category]:
        """Categories with at least one registered detector, in first-registration order."""
        seen: List[Category] = []
        for detector in self._detectors.values():
            if detector.category not in seen:
                seen.append(detector.category)
        return seen

    def order_of(self, detector_id: str) -> int:
        """Registration position, used as the ordering tie-break for findings."""
        if detector_id not in self._order:
            raise UnknownDetectorError(f"unknown detector '{detector_id}'")
        return self._order[detector_id]

    def __len__(self) -> int:
        return len(self._detectors)

    def __iter__(self) -> Iterator[Detector]:
        return iter(list(self._detectors.values()))

    def __contains__(self, detector_id: object) -> bool:
        return detector_id in self._detectors
