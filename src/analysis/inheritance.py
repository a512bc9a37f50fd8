"""
Inheritance resolution.

Per contract:
- C3 linearization (Solidity order: most-derived first, bases merged right to left)
- resolved member functions (most-derived definition of each signature wins)
- storage layout with Solidity packing rules
- state-variable shadowing pairs

Bases that are not declared in the compilation unit (imported libraries) are
skipped: they contribute no members we can see.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from core.errors import CyclicInheritanceError
from model.ir import ProgramModel, StateVariable


# =============================================================================
# Linearization
# =============================================================================


class Linearizer:
    """
    Memoized C3 linearization over the contracts of one ProgramModel.

    Results (and failures) are cached by contract id, so each contract is
    linearized once no matter how many derived contracts reach it.
    """

    def __init__(self, program: ProgramModel):
        self.program = program
        self._memo: Dict[int, Tuple[int, ...]] = {}
        self._failed: Dict[int, CyclicInheritanceError] = {}

    def linearize(self, contract_id: int) -> Tuple[int, ...]:
        """Linearized contract ids, most-derived first. Raises CyclicInheritanceError."""
        return self._linearize(contract_id, [])

    def _linearize(self, contract_id: int, stack: List[int]) -> Tuple[int, ...]:
        if contract_id in self._memo:
            return self._memo[contract_id]
        if contract_id in self._failed:
            raise self._failed[contract_id]

        contract = self.program.contract(contract_id)
        if contract_id in stack:
            start = stack.index(contract_id)
            cycle = [self.program.contract(c).name for c in stack[start:]] + [contract.name]
            raise CyclicInheritanceError(contract.name, cycle)

        base_ids = self._base_ids(contract_id)
        stack.append(contract_id)
        try:
            base_orders = [list(self._linearize(base_id, stack)) for base_id in reversed(base_ids)]
            merged = _c3_merge(base_orders + [list(reversed(base_ids))])
            if merged is None:
                names = [self.program.contract(b).name for b in base_ids]
                raise CyclicInheritanceError(contract.name, names, reason="no consistent linearization")
        except CyclicInheritanceError as e:
            if e.contract != contract.name:
                if contract.name in e.cycle:
                    e = CyclicInheritanceError(contract.name, e.cycle)
                else:
                    e = CyclicInheritanceError(
                        contract.name, e.cycle, reason=f"inherits from unresolvable contract {e.contract}"
                    )
            self._failed[contract_id] = e
            raise e
        finally:
            stack.pop()

        result = (contract_id,) + tuple(merged)
        self._memo[contract_id] = result
        return result

    def _base_ids(self, contract_id: int) -> List[int]:
        ids = []
        for name in self.program.contract(contract_id).bases:
            base = self.program.contract_by_name(name)
            if base is not None and base.id not in ids:
                ids.append(base.id)
        return ids


def _c3_merge(sequences: List[List[int]]) -> Optional[List[int]]:
    """Standard C3 merge. Returns None when no consistent order exists."""
    result: List[int] = []
    seqs = [list(s) for s in sequences if s]
    while seqs:
        for seq in seqs:
            head = seq[0]
            if not any(head in s[1:] for s in seqs):
                break
        else:
            return None
        result.append(head)
        seqs = [[c for c in s if c != head] for s in seqs]
        seqs = [s for s in seqs if s]
    return result


# =============================================================================
# Member resolution
# =============================================================================


def resolve_functions(program: ProgramModel, order: Sequence[int]) -> Tuple[int, ...]:
    """
    Function ids visible on the most-derived contract of `order`.

    Walks most-derived first; the first definition of each signature wins.
    Constructors are never inherited.
    """
    seen = set()
    resolved = []
    for depth, contract_id in enumerate(order):
        for func in program.functions_of(program.contract(contract_id)):
            if func.is_constructor and depth > 0:
                continue
            key = (func.kind, func.signature)
            if key in seen:
                continue
            seen.add(key)
            resolved.append(func.id)
    return tuple(resolved)


def resolve_state_variables(program: ProgramModel, order: Sequence[int]) -> Dict[str, int]:
    """Name -> state variable id as seen from the most-derived contract."""
    by_name: Dict[str, int] = {}
    for contract_id in order:
        for var in program.state_variables_of(program.contract(contract_id)):
            by_name.setdefault(var.name, var.id)
    return by_name


def find_shadowing(program: ProgramModel, order: Sequence[int]) -> Tuple[Tuple[int, int], ...]:
    """(derived var id, shadowed base var id) pairs for the head contract of `order`."""
    if not order:
        return ()
    head = program.contract(order[0])
    pairs = []
    for var in program.state_variables_of(head):
        for base_id in order[1:]:
            base_var = _var_named(program, base_id, var.name)
            if base_var is not None:
                pairs.append((var.id, base_var.id))
                break
    return tuple(pairs)


def _var_named(program: ProgramModel, contract_id: int, name: str) -> Optional[StateVariable]:
    for var in program.state_variables_of(program.contract(contract_id)):
        if var.name == name:
            return var
    return None


# =============================================================================
# Storage layout
# =============================================================================


@dataclass(frozen=True)
class StorageSlot:
    """Position of one state variable in contract storage."""

    slot: int
    offset: int  # byte offset inside the slot
    size: int  # bytes; 32 for full-slot types
    var_id: int
    contract_id: int  # declaring contract

    def to_dict(self) -> dict:
        return {
            "slot": self.slot,
            "offset": self.offset,
            "size": self.size,
            "var_id": self.var_id,
            "contract_id": self.contract_id,
        }


_INT_RE = re.compile(r"^u?int(\d*)$")
_BYTES_RE = re.compile(r"^bytes(\d+)$")


def type_size(type_name: str, program: Optional[ProgramModel] = None) -> Tuple[int, bool]:
    """
    (size in bytes, packable) for a declared type.

    Full-slot types (mappings, dynamic arrays, strings, structs, unknown user
    types) report (32, False) and never share a slot.
    """
    t = type_name.strip()
    for prefix in ("contract ", "interface "):
        if t.startswith(prefix):
            return 20, True
    if t.startswith("enum "):
        return 1, True
    if t.startswith("mapping(") or t.endswith("]") or t in ("string", "bytes") or t.startswith("struct "):
        return 32, False
    if t in ("address", "address payable"):
        return 20, True
    if t == "bool":
        return 1, True
    m = _INT_RE.match(t)
    if m:
        bits = int(m.group(1) or 256)
        return bits // 8, True
    m = _BYTES_RE.match(t)
    if m:
        return int(m.group(1)), True
    if program is not None and program.contract_by_name(t) is not None:
        return 20, True
    return 32, False


def storage_layout(program: ProgramModel, order: Sequence[int]) -> Tuple[StorageSlot, ...]:
    """
    Storage layout of the head contract of `order`.

    Variables are laid out most-base first, each contract's variables in
    declaration order. Constants and immutables take no slot.
    """
    slots: List[StorageSlot] = []
    slot = 0
    offset = 0
    for contract_id in reversed(order):
        for var in program.state_variables_of(program.contract(contract_id)):
            if not var.in_storage:
                continue
            size, packable = type_size(var.type_name, program)
            if not packable:
                if offset > 0:
                    slot += 1
                slots.append(StorageSlot(slot, 0, 32, var.id, contract_id))
                slot += 1
                offset = 0
                continue
            if offset + size > 32:
                slot += 1
                offset = 0
            slots.append(StorageSlot(slot, offset, size, var.id, contract_id))
            offset += size
            if offset == 32:
                slot += 1
                offset = 0
    return tuple(slots)
