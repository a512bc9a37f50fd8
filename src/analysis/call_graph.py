"""
Call graph analysis.

Resolves the calls of each function from its evaluation-order event stream:
- internal edges (internal, super, library calls into code of this unit)
- external call sites (calls that hand control to another contract)

CallGraph IR:
- Direct edges and reverse edges as sorted tuples (deterministic)
- Pre-computed transitive callees for efficient queries
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from model.ir import Call, CallKind, Expr, Function, Identifier, IndexAccess, Literal, MemberAccess, ProgramModel
from model.utils import SourceSpan
from analysis.state_access import CALL, AccessEvent


# =============================================================================
# CallGraph IR
# =============================================================================


@dataclass(frozen=True)
class ExternalCallSite:
    """A call that leaves the contract (external or low-level)."""

    node_id: int
    function_id: int
    kind: CallKind
    target: str  # rendered receiver: "msg.sender", "token", "IERC20(t)"
    member: str  # "call", "delegatecall", "transfer", ...
    transfers_value: bool
    is_delegatecall: bool
    ordinal: int  # position among the function's external calls, in evaluation order
    span: SourceSpan

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "function_id": self.function_id,
            "kind": self.kind.value,
            "target": self.target,
            "member": self.member,
            "transfers_value": self.transfers_value,
            "is_delegatecall": self.is_delegatecall,
            "ordinal": self.ordinal,
        }


@dataclass(frozen=True)
class InternalCallSite:
    """A resolved call into code of this unit."""

    node_id: int
    callee_id: int
    span: SourceSpan
    calls_before: int  # external calls observed before this call

    @property
    def after_external_call(self) -> bool:
        return self.calls_before > 0


@dataclass
class CallGraph:
    """
    Pre-computed call graph with transitive relationships.

    Built once after every function has been resolved, stored in the FactIndex.
    """

    # Direct edges: caller -> (callees)
    callees: Dict[int, Tuple[int, ...]] = field(default_factory=dict)
    # Reverse edges: callee -> (callers)
    callers: Dict[int, Tuple[int, ...]] = field(default_factory=dict)
    # Pre-computed transitive callees: func -> (all reachable callees)
    transitive_callees: Dict[int, Tuple[int, ...]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "callees": {str(k): list(v) for k, v in sorted(self.callees.items())},
            "callers": {str(k): list(v) for k, v in sorted(self.callers.items())},
            "transitive_callees": {str(k): list(v) for k, v in sorted(self.transitive_callees.items())},
        }


def build_call_graph_ir(direct: Dict[int, Sequence[int]]) -> CallGraph:
    """Build the CallGraph IR from direct caller -> callee edges."""
    cg = CallGraph()
    callers: Dict[int, Set[int]] = {}
    for caller, callees in direct.items():
        cg.callees[caller] = tuple(sorted(set(callees)))
        for callee in callees:
            callers.setdefault(callee, set()).add(caller)
    cg.callers = {k: tuple(sorted(v)) for k, v in callers.items()}

    # Pre-compute transitive callees for each function
    for func in cg.callees:
        reachable: Set[int] = set()
        stack = list(cg.callees[func])
        while stack:
            callee = stack.pop()
            if callee in reachable:
                continue
            reachable.add(callee)
            stack.extend(cg.callees.get(callee, ()))
        cg.transitive_callees[func] = tuple(sorted(reachable))
    return cg


# =============================================================================
# Call resolution
# =============================================================================


def render_expr(expr: Optional[Expr]) -> str:
    """Compact source-like rendering used for call targets and messages."""
    if expr is None:
        return ""
    if isinstance(expr, Identifier):
        return expr.name
    if isinstance(expr, MemberAccess):
        return f"{render_expr(expr.base)}.{expr.member}"
    if isinstance(expr, IndexAccess):
        return f"{render_expr(expr.base)}[{render_expr(expr.index)}]"
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, Call):
        args = ", ".join(render_expr(a) for a in expr.args)
        return f"{render_expr(expr.callee)}({args})"
    name = getattr(expr, "type_name", None)
    if name:
        return str(name)
    return "<expr>"


class CallResolver:
    """
    Resolves internal calls made inside one contract.

    `order` is the contract's linearization (most-derived first). Overloads
    are disambiguated by argument count only.
    """

    def __init__(self, program: ProgramModel, order: Sequence[int], linearizations: Dict[int, Tuple[int, ...]]):
        self.program = program
        self.order = tuple(order)
        self.linearizations = linearizations

    def resolve(self, caller: Function, call: Call) -> Optional[int]:
        callee = call.callee
        nargs = len(call.args)
        if call.kind == CallKind.INTERNAL:
            if isinstance(callee, Identifier):
                return self._lookup(self._search_order(caller), callee.name, nargs)
            if isinstance(callee, MemberAccess) and isinstance(callee.base, Identifier):
                base = self.program.contract_by_name(callee.base.name)
                if base is not None:
                    return self._lookup(self.linearizations.get(base.id, (base.id,)), callee.member, nargs)
            return None
        if call.kind == CallKind.SUPER and isinstance(callee, MemberAccess):
            order = self._search_order(caller)
            own = order.index(caller.contract_id) if caller.contract_id in order else 0
            return self._lookup(order[own + 1 :], callee.member, nargs)
        if call.kind == CallKind.LIBRARY and isinstance(callee, MemberAccess):
            if isinstance(callee.base, Identifier):
                lib = self.program.contract_by_name(callee.base.name)
                if lib is not None and lib.is_library:
                    return self._lookup((lib.id,), callee.member, nargs)
            # `using L for T`: receiver becomes the first argument
            for lib_name in self._using_for():
                lib = self.program.contract_by_name(lib_name)
                if lib is not None:
                    found = self._lookup((lib.id,), callee.member, nargs + 1)
                    if found is not None:
                        return found
        return None

    def _search_order(self, caller: Function) -> Tuple[int, ...]:
        contract = self.program.contract(caller.contract_id)
        if contract.is_library:
            return (contract.id,)
        return self.order

    def _using_for(self) -> List[str]:
        names: List[str] = []
        for contract_id in self.order:
            for name in self.program.contract(contract_id).using_for:
                if name not in names:
                    names.append(name)
        return names

    def _lookup(self, order: Sequence[int], name: str, nargs: int) -> Optional[int]:
        fallback = None
        for contract_id in order:
            for func in self.program.functions_of(self.program.contract(contract_id)):
                if func.name != name:
                    continue
                if len(func.parameters) == nargs:
                    return func.id
                if fallback is None:
                    fallback = func.id
        return fallback


def collect_calls(
    function: Function, events: List[AccessEvent], resolver: CallResolver
) -> Tuple[Tuple[int, ...], Tuple[ExternalCallSite, ...], Tuple[InternalCallSite, ...]]:
    """
    Extract (internal callee ids, external call sites, internal call sites)
    of one function from its evaluation-order events.
    """
    callees: List[int] = []
    internal_sites: List[InternalCallSite] = []
    external: List[ExternalCallSite] = []
    for event in events:
        if event.kind != CALL:
            continue
        call: Call = event.node  # type: ignore[assignment]
        if call.kind.leaves_contract:
            external.append(
                ExternalCallSite(
                    node_id=call.id,
                    function_id=function.id,
                    kind=call.kind,
                    target=render_expr(call.receiver),
                    member=call.name,
                    transfers_value=call.transfers_value,
                    is_delegatecall=call.name in ("delegatecall", "callcode"),
                    ordinal=len(external),
                    span=call.span,
                )
            )
            continue
        callee_id = resolver.resolve(function, call)
        if callee_id is not None:
            if callee_id not in callees:
                callees.append(callee_id)
            internal_sites.append(InternalCallSite(call.id, callee_id, call.span, calls_before=len(external)))
    return tuple(sorted(callees)), tuple(external), tuple(internal_sites)
