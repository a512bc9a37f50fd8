"""
Scan orchestration.

One scan of one or more compilation units:

1. Build the Program Model (MalformedInputError is fatal for that unit only)
2. Build the Fact Index (contracts that cannot be linearized are recorded as errors)
3. Select detectors from the registry and run them through the Scheduler
   (one deadline covers the whole scan; units reached after it are not indexed)
4. Aggregate all units' findings into one ordered, grouped Finding Set

Everything that kept the scan from being complete ends up in ScanReport.errors.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from aggregator import Aggregator, FindingGroup
from analysis.fact_index import build_fact_index
from core.config import EngineConfig
from core.errors import KestrelError, MalformedInputError, PartialScanError
from core.utils import debug, info
from model.builder import build_program, load_program
from model.ir import ProgramModel
from rules.ir import Finding, Severity, SubsumptionRule
from rules.registry import Registry, SelectFilter
from scheduler import Scheduler
from semantic.checker import DEFAULT_SUBSUMPTIONS, default_registry

# A unit is a path to a JSON parse tree, an in-memory parse tree, or a built model
ScanInput = Union[str, "os.PathLike[str]", Dict[str, Any], ProgramModel]


@dataclass
class ScanReport:
    """Findings of a scan plus what kept it from being complete."""

    findings: List[Finding] = field(default_factory=list)
    groups: List[FindingGroup] = field(default_factory=list)
    errors: List[KestrelError] = field(default_factory=list)
    units: List[str] = field(default_factory=list)
    units_scanned: int = 0
    contracts_scanned: int = 0
    detectors_run: List[str] = field(default_factory=list)
    detectors_disabled: List[str] = field(default_factory=list)
    skipped_items: int = 0
    duplicates_merged: int = 0

    @property
    def is_complete(self) -> bool:
        """True when every unit, contract and detector invocation finished cleanly."""
        return not self.errors

    def severity_counts(self) -> Dict[str, int]:
        """Finding count per severity, most severe first (zero counts included)."""
        counts = {s.value: 0 for s in sorted(Severity, key=lambda s: -s.level)}
        for finding in self.findings:
            counts[finding.severity.value] += 1
        return counts

    def category_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for finding in self.findings:
            counts[finding.category.value] = counts.get(finding.category.value, 0) + 1
        return dict(sorted(counts.items()))

    def detector_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for finding in self.findings:
            counts[finding.detector_id] = counts.get(finding.detector_id, 0) + 1
        return dict(sorted(counts.items()))

    def errors_of_kind(self, kind: str) -> List[KestrelError]:
        return [e for e in self.errors if e.kind == kind]

    def exit_code(self, threshold: Severity = Severity.HIGH) -> int:
        """
        0 = no findings at/above threshold
        1 = findings at/above threshold
        2 = no input could be scanned
        """
        if self.units and self.units_scanned == 0:
            return 2
        if any(f.severity >= threshold for f in self.findings):
            return 1
        return 0

    def to_dict(self) -> dict:
        return {
            "complete": self.is_complete,
            "units": list(self.units),
            "units_scanned": self.units_scanned,
            "contracts_scanned": self.contracts_scanned,
            "findings": [f.to_dict() for f in self.findings],
            "groups": [g.to_dict() for g in self.groups],
            "errors": [e.to_dict() for e in self.errors],
            "summary": {
                "total": len(self.findings),
                "severity": self.severity_counts(),
                "category": self.category_counts(),
                "detector": self.detector_counts(),
                "detectors_run": list(self.detectors_run),
                "detectors_disabled": list(self.detectors_disabled),
                "skipped_items": self.skipped_items,
                "duplicates_merged": self.duplicates_merged,
            },
        }


class Engine:
    """
    Scans compilation units with the detectors of a registry.

    The engine holds no per-scan state; one Engine can run many scans, and
    scans with different registries never share detector state.
    """

    def __init__(
        self,
        registry: Optional[Registry] = None,
        config: Optional[EngineConfig] = None,
        subsumptions: Sequence[SubsumptionRule] = DEFAULT_SUBSUMPTIONS,
    ):
        self.registry = registry if registry is not None else default_registry()
        self.config = config or EngineConfig()
        self.subsumptions = tuple(subsumptions)

    def scan(self, unit: ScanInput, flt: SelectFilter = None) -> ScanReport:
        """Scan a single compilation unit."""
        return self.scan_many([unit], flt)

    def scan_many(self, units: Iterable[ScanInput], flt: SelectFilter = None) -> ScanReport:
        """Scan several compilation units into one report. A broken unit does not stop the others."""
        detectors = self.registry.select(flt)
        report = ScanReport(
            detectors_run=[d.id for d in detectors],
            detectors_disabled=self.registry.disabled_ids(),
        )
        scheduler = Scheduler(self.config)
        findings: List[Finding] = []
        clock = self.config.clock
        deadline_at = clock() + self.config.deadline if self.config.deadline is not None else None

        for unit in units:
            name = _unit_name(unit)
            report.units.append(name)
            try:
                program = _load(unit, name)
            except MalformedInputError as e:
                info(f"skipping {name}: {e}")
                report.errors.append(e)
                continue

            if deadline_at is not None and clock() >= deadline_at:
                info(f"skipping {name}: scan deadline exceeded")
                if detectors:
                    report.errors.extend(
                        PartialScanError(c.name, len(detectors), "deadline exceeded") for c in program.contracts
                    )
                continue

            index = build_fact_index(program, workers=self.config.workers)
            failures = [index.failures[cid] for cid in sorted(index.failures)]
            report.errors.extend(failures)
            indexed = [c for c in program.contracts if index.is_indexed(c.id)]
            if program.contracts and not indexed:
                info(f"skipping {name}: no contract could be linearized")
                continue
            report.units_scanned += 1
            report.contracts_scanned += len(indexed)

            debug(f"scan: {name}: {len(indexed)} contract(s), {len(detectors)} detector(s)")
            scheduled = scheduler.run(program, index, detectors, deadline_at)
            findings.extend(scheduled.findings)
            report.errors.extend(scheduled.errors)
            report.skipped_items += scheduled.skipped

        aggregator = Aggregator(self.subsumptions, self._order_of, self.config.min_severity)
        aggregated = aggregator.aggregate(findings)
        report.findings = aggregated.findings
        report.groups = aggregated.groups
        report.duplicates_merged = aggregated.duplicates_merged
        return report

    def _order_of(self, detector_id: str) -> int:
        return self.registry.order_of(detector_id)


def _unit_name(unit: ScanInput) -> str:
    if isinstance(unit, ProgramModel):
        return unit.unit
    if isinstance(unit, dict):
        return str(unit.get("absolutePath") or "<memory>")
    return os.fspath(unit)


def _load(unit: ScanInput, name: str) -> ProgramModel:
    if isinstance(unit, ProgramModel):
        return unit
    if isinstance(unit, dict):
        return build_program(unit, name)
    return load_program(os.fspath(unit))
