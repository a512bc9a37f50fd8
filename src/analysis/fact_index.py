"""
Fact Index - every derived fact detectors consume, built once per scan.

Build order:
1. Linearize every contract (memoized; cyclic contracts recorded as failures)
2. Index each contract's own functions: evaluation-order walk -> state access,
   call ordering, call sites, guards. Contracts are independent work items and
   may run on a thread pool; results are merged in contract-id order.
3. Whole-unit facts: call graph IR, transitive writes, privileged variables.

The index is read-only once built. to_dict() is canonical so that
fingerprint() is identical across rebuilds of the same Program Model.
"""

import hashlib
import json
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from core.errors import CyclicInheritanceError
from core.utils import debug
from model.ir import Function, ProgramModel, VarDecl, walk
from analysis.call_graph import (
    CallGraph,
    CallResolver,
    ExternalCallSite,
    InternalCallSite,
    build_call_graph_ir,
    collect_calls,
)
from analysis.guards import NO_GUARDS, FunctionGuards, compute_guards
from analysis.inheritance import (
    Linearizer,
    StorageSlot,
    find_shadowing,
    resolve_functions,
    resolve_state_variables,
    storage_layout,
)
from analysis.state_access import (
    EMPTY_ACCESS,
    CallOrdering,
    EvaluationWalker,
    StateAccess,
    StateWrite,
    summarize_access,
)


# =============================================================================
# Index IR
# =============================================================================


@dataclass
class _FunctionFacts:
    access: StateAccess
    orderings: Dict[int, CallOrdering]
    callees: Tuple[int, ...]
    external_calls: Tuple[ExternalCallSite, ...]
    internal_sites: Tuple[InternalCallSite, ...]
    guards: FunctionGuards


@dataclass
class _ContractFacts:
    contract_id: int
    resolved_functions: Tuple[int, ...]
    storage_layout: Tuple[StorageSlot, ...]
    shadowing: Tuple[Tuple[int, int], ...]
    state_variables: Dict[str, int]
    functions: Dict[int, _FunctionFacts] = field(default_factory=dict)


@dataclass(frozen=True)
class FactIndex:
    """Derived facts for one Program Model. Keys are arena ids."""

    call_graph: CallGraph
    external_calls: Dict[int, Tuple[ExternalCallSite, ...]]
    internal_call_sites: Dict[int, Tuple[InternalCallSite, ...]]
    state_access: Dict[int, StateAccess]
    call_ordering: Dict[Tuple[int, int], CallOrdering]  # (function id, call node id)
    transitive_writes: Dict[int, Tuple[int, ...]]
    guards: Dict[int, FunctionGuards]
    linearization: Dict[int, Tuple[int, ...]]
    resolved_functions: Dict[int, Tuple[int, ...]]
    storage_layout: Dict[int, Tuple[StorageSlot, ...]]
    shadowing: Dict[int, Tuple[Tuple[int, int], ...]]
    privileged_vars: Dict[int, Tuple[int, ...]]  # contract id -> state vars compared to msg.sender
    state_variables: Dict[int, Dict[str, int]]  # contract id -> visible name -> var id
    failures: Dict[int, CyclicInheritanceError]

    # =========================================================================
    # Queries
    # =========================================================================

    def is_indexed(self, contract_id: int) -> bool:
        return contract_id not in self.failures

    def callees(self, function_id: int) -> Tuple[int, ...]:
        return self.call_graph.callees.get(function_id, ())

    def callers(self, function_id: int) -> Tuple[int, ...]:
        return self.call_graph.callers.get(function_id, ())

    def transitive_callees(self, function_id: int) -> Tuple[int, ...]:
        return self.call_graph.transitive_callees.get(function_id, ())

    def external_calls_of(self, function_id: int) -> Tuple[ExternalCallSite, ...]:
        return self.external_calls.get(function_id, ())

    def internal_calls_of(self, function_id: int) -> Tuple[InternalCallSite, ...]:
        return self.internal_call_sites.get(function_id, ())

    def access(self, function_id: int) -> StateAccess:
        return self.state_access.get(function_id, EMPTY_ACCESS)

    def ordering(self, function_id: int, call_node_id: int) -> Optional[CallOrdering]:
        return self.call_ordering.get((function_id, call_node_id))

    def writes_after_external_call(self, function_id: int) -> Tuple[StateWrite, ...]:
        return self.access(function_id).writes_after_external_call()

    def guards_of(self, function_id: int) -> FunctionGuards:
        return self.guards.get(function_id, NO_GUARDS)

    def has_access_control(self, function_id: int) -> bool:
        """Own guards, or guards of any internal callee (modifiers and checks run on internal calls too)."""
        if self.guards_of(function_id).has_access_control:
            return True
        return any(self.guards_of(c).has_access_control for c in self.transitive_callees(function_id))

    def has_reentrancy_guard(self, function_id: int) -> bool:
        return self.guards_of(function_id).reentrancy_guard

    def resolve_state_var(self, contract_id: int, name: str) -> Optional[int]:
        return self.state_variables.get(contract_id, {}).get(name)

    def transitive_external_calls(self, function_id: int) -> Tuple[ExternalCallSite, ...]:
        calls = list(self.external_calls_of(function_id))
        for callee in self.transitive_callees(function_id):
            calls.extend(self.external_calls_of(callee))
        return tuple(calls)

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self) -> dict:
        def keyed(d: dict, conv: Callable) -> dict:
            return {str(k): conv(v) for k, v in sorted(d.items())}

        return {
            "call_graph": self.call_graph.to_dict(),
            "external_calls": keyed(self.external_calls, lambda v: [s.to_dict() for s in v]),
            "internal_call_sites": keyed(
                self.internal_call_sites,
                lambda v: [[s.node_id, s.callee_id, s.calls_before] for s in v],
            ),
            "state_access": keyed(self.state_access, lambda v: v.to_dict()),
            "call_ordering": {f"{f}:{n}": o.to_dict() for (f, n), o in sorted(self.call_ordering.items())},
            "transitive_writes": keyed(self.transitive_writes, list),
            "guards": keyed(self.guards, lambda v: v.to_dict()),
            "linearization": keyed(self.linearization, list),
            "resolved_functions": keyed(self.resolved_functions, list),
            "storage_layout": keyed(self.storage_layout, lambda v: [s.to_dict() for s in v]),
            "shadowing": keyed(self.shadowing, lambda v: [list(p) for p in v]),
            "privileged_vars": keyed(self.privileged_vars, list),
            "failures": keyed(self.failures, lambda v: v.to_dict()),
        }

    def fingerprint(self) -> str:
        """SHA-256 of the canonical JSON form."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# =============================================================================
# Builder
# =============================================================================


def _local_names(function: Function) -> Set[str]:
    names = {p.name for p in function.parameters + function.returns if p.name}
    if function.body is not None:
        for node in walk(function.body):
            if isinstance(node, VarDecl):
                names.update(n for n in node.names if n)
    return names


def _index_contract(
    program: ProgramModel, contract_id: int, linearizations: Dict[int, Tuple[int, ...]]
) -> _ContractFacts:
    order = linearizations[contract_id]
    contract = program.contract(contract_id)
    facts = _ContractFacts(
        contract_id=contract_id,
        resolved_functions=resolve_functions(program, order),
        storage_layout=storage_layout(program, order),
        shadowing=find_shadowing(program, order),
        state_variables=resolve_state_variables(program, order),
    )
    resolver = CallResolver(program, order, linearizations)
    modifier_cache: Dict = {}

    for function in program.functions_of(contract):
        local_names = _local_names(function)

        def resolve_var(name: str, _locals=local_names) -> Optional[int]:
            if name in _locals:
                return None
            return facts.state_variables.get(name)

        events = EvaluationWalker(resolve_var).walk(function.body)
        access, orderings = summarize_access(events)
        callees, external, internal_sites = collect_calls(function, events, resolver)
        guards = compute_guards(program, function, order, resolve_var, modifier_cache)
        facts.functions[function.id] = _FunctionFacts(access, orderings, callees, external, internal_sites, guards)

    debug(f"fact index: {contract.name}: {len(facts.functions)} functions, {len(facts.storage_layout)} slots")
    return facts


def build_fact_index(program: ProgramModel, workers: int = 1) -> FactIndex:
    """
    Build the Fact Index of a Program Model.

    Contracts that cannot be linearized are recorded in `failures` and
    contribute no facts; every other contract is still indexed.
    """
    linearizer = Linearizer(program)
    linearizations: Dict[int, Tuple[int, ...]] = {}
    failures: Dict[int, CyclicInheritanceError] = {}
    for contract in program.contracts:
        try:
            linearizations[contract.id] = linearizer.linearize(contract.id)
        except CyclicInheritanceError as e:
            debug(f"fact index: {e}")
            failures[contract.id] = e

    todo = [c.id for c in program.contracts if c.id in linearizations]
    if workers > 1 and len(todo) > 1:
        with ThreadPoolExecutor(max_workers=min(workers, len(todo))) as pool:
            results: List[_ContractFacts] = list(
                pool.map(lambda cid: _index_contract(program, cid, linearizations), todo)
            )
    else:
        results = [_index_contract(program, cid, linearizations) for cid in todo]

    return _merge(results, linearizations, failures)


def _merge(
    results: List[_ContractFacts],
    linearizations: Dict[int, Tuple[int, ...]],
    failures: Dict[int, CyclicInheritanceError],
) -> FactIndex:
    direct: Dict[int, Tuple[int, ...]] = {}
    external_calls: Dict[int, Tuple[ExternalCallSite, ...]] = {}
    internal_sites: Dict[int, Tuple[InternalCallSite, ...]] = {}
    state_access: Dict[int, StateAccess] = {}
    call_ordering: Dict[Tuple[int, int], CallOrdering] = {}
    guards: Dict[int, FunctionGuards] = {}

    for contract_facts in sorted(results, key=lambda r: r.contract_id):
        for fid, ff in sorted(contract_facts.functions.items()):
            direct[fid] = ff.callees
            state_access[fid] = ff.access
            guards[fid] = ff.guards
            if ff.external_calls:
                external_calls[fid] = ff.external_calls
            if ff.internal_sites:
                internal_sites[fid] = ff.internal_sites
            for call_id, ordering in ff.orderings.items():
                call_ordering[(fid, call_id)] = ordering

    call_graph = build_call_graph_ir(direct)

    transitive_writes: Dict[int, Tuple[int, ...]] = {}
    for fid, access in state_access.items():
        writes = set(access.writes)
        for callee in call_graph.transitive_callees.get(fid, ()):
            if callee in state_access:
                writes.update(state_access[callee].writes)
        transitive_writes[fid] = tuple(sorted(writes))

    ordered = sorted(results, key=lambda r: r.contract_id)
    privileged_vars: Dict[int, Tuple[int, ...]] = {}
    for r in ordered:
        privileged: Set[int] = set()
        for fid in r.resolved_functions:
            if fid in guards:
                privileged.update(guards[fid].privileged_vars)
        privileged_vars[r.contract_id] = tuple(sorted(privileged))

    return FactIndex(
        call_graph=call_graph,
        external_calls=external_calls,
        internal_call_sites=internal_sites,
        state_access=state_access,
        call_ordering=call_ordering,
        transitive_writes=transitive_writes,
        guards=guards,
        linearization=dict(sorted(linearizations.items())),
        resolved_functions={r.contract_id: r.resolved_functions for r in ordered},
        storage_layout={r.contract_id: r.storage_layout for r in ordered},
        shadowing={r.contract_id: r.shadowing for r in ordered},
        privileged_vars=privileged_vars,
        state_variables={r.contract_id: r.state_variables for r in ordered},
        failures=dict(sorted(failures.items())),
    )
