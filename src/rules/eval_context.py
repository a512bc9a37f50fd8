"""
Evaluation context for detectors.

This provides a unified context object that built-in and Hy detectors use to
access the Program Model, the Fact Index and the contract under analysis.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from model.ir import Contract, Function, Node, ProgramModel, StateVariable
from model.utils import SourceSpan
from analysis.fact_index import FactIndex
from rules.ir import Confidence, Location, RawFinding, Severity


@dataclass(frozen=True)
class DetectorContext:
    """
    Context passed to detector evaluate/applies functions.

    Provides read-only access to:
    - the Program Model of the compilation unit
    - the Fact Index built for it
    - the contract this work item is about

    Usage in Hy detectors:
        (defn evaluate [ctx]
          (lfor f (.public-functions ctx)
                :if (not (.has-access-control (. ctx index) (. f id)))
                (.report ctx :severity "high" :function f :message "...")))
    """

    program: ProgramModel
    index: FactIndex
    contract: Contract

    # =========================================================================
    # Accessors
    # =========================================================================

    def functions(self) -> List[Function]:
        """Functions declared by the contract (inherited ones are analyzed on their own contract)."""
        return self.program.functions_of(self.contract)

    def public_functions(self) -> List[Function]:
        """Externally callable functions with a body."""
        return [f for f in self.functions() if f.is_public and f.body is not None]

    def resolved_functions(self) -> List[Function]:
        """Every function visible on the contract, most-derived definition first."""
        ids = self.index.resolved_functions.get(self.contract.id, ())
        return [self.program.functions[i] for i in ids]

    def state_variables(self) -> List[StateVariable]:
        return self.program.state_variables_of(self.contract)

    def visible_state_variables(self) -> List[StateVariable]:
        """State variables of the contract and its bases."""
        ids = self.index.state_variables.get(self.contract.id, {})
        return [self.program.state_variables[i] for i in sorted(ids.values())]

    def state_variable(self, var_id: int) -> StateVariable:
        return self.program.state_variables[var_id]

    def resolve_state_var(self, name: str) -> Optional[StateVariable]:
        var_id = self.index.resolve_state_var(self.contract.id, name)
        return self.program.state_variables[var_id] if var_id is not None else None

    def node(self, node_id: int) -> Node:
        return self.program.node(node_id)

    def linearization(self) -> List[Contract]:
        return [self.program.contract(c) for c in self.index.linearization.get(self.contract.id, ())]

    def inherits_from(self, name: str) -> bool:
        """True if `name` is a declared base anywhere up the hierarchy (also bases outside the unit)."""
        for contract in self.linearization():
            if name in contract.bases:
                return True
        return False

    # =========================================================================
    # Reporting
    # =========================================================================

    def location(self, function: Optional[Function] = None, span: Optional[SourceSpan] = None) -> Location:
        if span is None:
            span = function.span if function is not None else self.contract.span
        return Location(self.contract.name, function.name if function is not None else None, span)

    def report(
        self,
        severity: Severity,
        message: str,
        function: Optional[Function] = None,
        span: Optional[SourceSpan] = None,
        evidence: Sequence[str] = (),
        confidence: Confidence = Confidence.LIKELY,
    ) -> RawFinding:
        """Build a RawFinding located in this contract (and optionally a function)."""
        if isinstance(severity, str):
            severity = Severity.from_string(severity)
        if isinstance(confidence, str):
            confidence = Confidence.from_string(confidence)
        return RawFinding(
            severity=severity,
            location=self.location(function, span),
            message=message,
            confidence=confidence,
            evidence=tuple(evidence),
        )
