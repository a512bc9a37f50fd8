"""
Finding aggregator.

Turns the scheduler's raw finding stream into the final finding set:

1. Merge exact duplicates (same detector, same location): keep the highest confidence.
2. Drop findings below min_severity.
3. Order: severity descending, contract, function, span start, detector
   registration order, detector id, message.
4. Group findings by (contract, function, span).
5. Record subsumption relations between findings of the same contract/function
   whose spans overlap. Both findings stay; the relation is an index pair.
6. Each group's severity is the max of its members. Individual severities never change.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core.utils import debug
from model.utils import SourceSpan
from rules.ir import Finding, Location, Severity, SubsumptionRule

OrderFn = Callable[[str], int]


@dataclass(frozen=True)
class Subsumption:
    """findings[general] subsumes findings[specific]; indices into AggregateResult.findings."""

    general: int
    specific: int
    relation: str = "subsumes"

    def to_dict(self) -> dict:
        return {"general": self.general, "specific": self.specific, "relation": self.relation}


@dataclass(frozen=True)
class FindingGroup:
    """Findings reported at the same contract, function and span."""

    contract: str
    function: Optional[str]
    span: SourceSpan
    members: Tuple[int, ...]  # indices into AggregateResult.findings
    severity: Severity
    subsumptions: Tuple[Subsumption, ...] = ()

    def to_dict(self) -> dict:
        return {
            "contract": self.contract,
            "function": self.function,
            "span": self.span.to_dict(),
            "severity": self.severity.value,
            "members": list(self.members),
            "subsumptions": [s.to_dict() for s in self.subsumptions],
        }


@dataclass
class AggregateResult:
    findings: List[Finding] = field(default_factory=list)
    groups: List[FindingGroup] = field(default_factory=list)
    duplicates_merged: int = 0
    filtered_out: int = 0

    def group_of(self, index: int) -> Optional[FindingGroup]:
        for group in self.groups:
            if index in group.members:
                return group
        return None


def _no_order(detector_id: str) -> int:
    return 0


class Aggregator:
    """
    Stateless apart from its configuration; safe to reuse across scans.

    order_of maps a detector id to its registration position
    (Registry.order_of); unknown ids sort after known ones.
    """

    def __init__(
        self,
        rules: Sequence[SubsumptionRule] = (),
        order_of: Optional[OrderFn] = None,
        min_severity: Optional[Severity] = None,
    ):
        self.rules = tuple(rules)
        self.order_of = order_of or _no_order
        self.min_severity = min_severity

    def aggregate(self, findings: Sequence[Finding]) -> AggregateResult:
        result = AggregateResult()
        unique, result.duplicates_merged = self.merge_duplicates(findings)

        if self.min_severity is not None:
            kept = [f for f in unique if f.severity >= self.min_severity]
            result.filtered_out = len(unique) - len(kept)
            unique = kept

        result.findings = sorted(unique, key=self.sort_key)
        result.groups = self._group(result.findings)
        debug(
            f"aggregator: {len(result.findings)} finding(s) in {len(result.groups)} group(s), "
            f"{result.duplicates_merged} duplicate(s) merged, {result.filtered_out} below threshold"
        )
        return result

    # =========================================================================
    # Steps
    # =========================================================================

    @staticmethod
    def merge_duplicates(findings: Sequence[Finding]) -> Tuple[List[Finding], int]:
        """Collapse findings of one detector at one location; the highest confidence wins, first on ties."""
        best: Dict[Tuple[str, Location], Finding] = {}
        order: List[Tuple[str, Location]] = []
        merged = 0
        for finding in findings:
            key = (finding.detector_id, finding.location)
            current = best.get(key)
            if current is None:
                best[key] = finding
                order.append(key)
                continue
            merged += 1
            if finding.confidence.level > current.confidence.level:
                best[key] = finding
        return [best[k] for k in order], merged

    def sort_key(self, finding: Finding):
        loc = finding.location
        return (
            -finding.severity.level,
            loc.contract,
            loc.function or "",
            loc.span.file,
            loc.span.start,
            self._order(finding.detector_id),
            finding.detector_id,
            finding.message,
        )

    def _order(self, detector_id: str) -> int:
        try:
            return self.order_of(detector_id)
        except KeyError:
            return 1 << 30

    def _group(self, findings: List[Finding]) -> List[FindingGroup]:
        members: Dict[Tuple[str, Optional[str], SourceSpan], List[int]] = {}
        for i, finding in enumerate(findings):
            loc = finding.location
            members.setdefault((loc.contract, loc.function, loc.span), []).append(i)

        relations = self._subsumptions(findings)
        groups = []
        for (contract, function, span), indices in members.items():
            index_set = set(indices)
            groups.append(
                FindingGroup(
                    contract=contract,
                    function=function,
                    span=span,
                    members=tuple(indices),
                    severity=max((findings[i].severity for i in indices), key=lambda s: s.level),
                    subsumptions=tuple(r for r in relations if r.specific in index_set),
                )
            )
        # members are ascending, so groups follow the finding order
        groups.sort(key=lambda g: g.members[0])
        return groups

    def _subsumptions(self, findings: List[Finding]) -> List[Subsumption]:
        """Index pairs (general, specific) for every rule matching an overlapping pair."""
        if not self.rules:
            return []
        by_scope: Dict[Tuple[str, Optional[str]], List[int]] = {}
        for i, finding in enumerate(findings):
            by_scope.setdefault((finding.location.contract, finding.location.function), []).append(i)

        relations = []
        for indices in by_scope.values():
            for i in indices:
                for j in indices:
                    a, b = findings[i], findings[j]
                    if i == j or a.detector_id == b.detector_id:
                        continue
                    if not a.location.span.overlaps(b.location.span):
                        continue
                    for rule in self.rules:
                        if rule.matches_general(a) and rule.matches_specific(b):
                            relations.append(Subsumption(i, j, rule.relation))
                            break
        relations.sort(key=lambda r: (r.specific, r.general))
        return relations
