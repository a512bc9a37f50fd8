"""
Guard tracking for functions.

FunctionGuards record which authorization checks protect a function:
- "sender" - condition comparing msg.sender (or an auth call taking msg.sender)
- "tx.origin" - condition comparing tx.origin (flawed authentication)
- access modifiers - invoked modifiers whose body checks the sender, or
  modifiers not declared in this unit whose name says they do (onlyOwner, ...)
- reentrancy guard - nonReentrant-style modifiers

Checks are looked up in the function body and in the bodies of its resolved
modifiers. Only condition positions count: `if (...)`, `require(...)`,
`assert(...)` and ternary conditions.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from model.ir import (
    BinaryOp,
    Call,
    CallKind,
    Conditional,
    Expr,
    Function,
    Identifier,
    If,
    IndexAccess,
    MemberAccess,
    Modifier,
    Node,
    ProgramModel,
    root_identifier,
    walk,
)

ACCESS_MODIFIER_RE = re.compile(
    r"^(only|auth|requires?auth|restricted|admin|owner|governance|whenowner|ownerorgov|isauthorized|requiresrole)",
    re.IGNORECASE,
)
REENTRANCY_GUARD_RE = re.compile(r"nonreentrant|noreentran|reentrancyguard|^lock$|^locked$|^mutex$", re.IGNORECASE)
AUTH_CALL_RE = re.compile(
    r"^(hasrole|_checkrole|_checkowner|_onlyowner|isauthorized|_isauthorized|isowner|_isowner|authorized|"
    r"cancall|isoperator|_authorize\w*|_requireowner|_checkauth\w*|requireauth\w*|isadmin|_isadmin)$",
    re.IGNORECASE,
)

_COMPARISONS = {"==", "!="}


def is_msg_sender(expr: Optional[Expr]) -> bool:
    """`msg.sender` or `_msgSender()`"""
    if isinstance(expr, MemberAccess):
        return isinstance(expr.base, Identifier) and expr.base.name == "msg" and expr.member == "sender"
    if isinstance(expr, Call):
        return expr.name == "_msgSender" and not expr.args
    return False


def is_tx_origin(expr: Optional[Expr]) -> bool:
    return (
        isinstance(expr, MemberAccess)
        and isinstance(expr.base, Identifier)
        and expr.base.name == "tx"
        and expr.member == "origin"
    )


@dataclass(frozen=True)
class FunctionGuards:
    """Authorization facts for one function."""

    checks_sender: bool = False
    checks_tx_origin: bool = False
    tx_origin_sites: Tuple[int, ...] = ()  # node ids of tx.origin comparisons
    access_modifiers: Tuple[str, ...] = ()
    reentrancy_guard: bool = False
    privileged_vars: Tuple[int, ...] = ()  # state vars compared against msg.sender

    @property
    def has_access_control(self) -> bool:
        """
        Any authorization check, tx.origin comparisons included.

        A tx.origin-guarded function is restricted, only unsafely; it is reported
        by tx-origin-authentication and not again as missing access control.
        """
        return self.checks_sender or self.checks_tx_origin or bool(self.access_modifiers)

    def guard_kinds(self) -> List[str]:
        kinds = []
        if self.checks_sender:
            kinds.append("sender")
        if self.checks_tx_origin:
            kinds.append("tx.origin")
        kinds.extend(f"modifier:{m}" for m in self.access_modifiers)
        if self.reentrancy_guard:
            kinds.append("reentrancy-guard")
        return kinds

    def to_dict(self) -> dict:
        return {
            "checks_sender": self.checks_sender,
            "checks_tx_origin": self.checks_tx_origin,
            "tx_origin_sites": list(self.tx_origin_sites),
            "access_modifiers": list(self.access_modifiers),
            "reentrancy_guard": self.reentrancy_guard,
            "privileged_vars": list(self.privileged_vars),
        }


NO_GUARDS = FunctionGuards()


def condition_exprs(root: Optional[Node]) -> Iterator[Expr]:
    """Expressions in condition position within a subtree."""
    if root is None:
        return
    for node in walk(root):
        if isinstance(node, If):
            yield node.condition
        elif isinstance(node, Conditional):
            yield node.condition
        elif isinstance(node, Call) and node.kind == CallKind.BUILTIN and node.name in ("require", "assert"):
            if node.args:
                yield node.args[0]


@dataclass
class _BodyChecks:
    sender: bool = False
    tx_origin_sites: Tuple[int, ...] = ()
    privileged: Tuple[int, ...] = ()


def _scan_body(body: Optional[Node], resolve_var: Callable[[str], Optional[int]]) -> _BodyChecks:
    sender = False
    tx_sites: List[int] = []
    privileged: Set[int] = set()

    def mark_privileged(expr: Optional[Expr]) -> None:
        root = root_identifier(expr) if expr is not None else None
        if root is not None:
            var_id = resolve_var(root.name)
            if var_id is not None:
                privileged.add(var_id)

    for cond in condition_exprs(body):
        for node in walk(cond):
            if isinstance(node, BinaryOp) and node.op in _COMPARISONS:
                left_sender, right_sender = is_msg_sender(node.left), is_msg_sender(node.right)
                left_origin, right_origin = is_tx_origin(node.left), is_tx_origin(node.right)
                if (left_sender or right_sender) and (left_origin or right_origin):
                    # tx.origin == msg.sender: EOA check, not authentication
                    continue
                if left_sender or right_sender:
                    sender = True
                    mark_privileged(node.right if left_sender else node.left)
                elif left_origin or right_origin:
                    tx_sites.append(node.id)
                    mark_privileged(node.right if left_origin else node.left)
            elif isinstance(node, IndexAccess) and is_msg_sender(node.index):
                sender = True
                mark_privileged(node.base)
            elif isinstance(node, Call) and AUTH_CALL_RE.match(node.name):
                sender = True
    # auth helpers called as statements: _checkOwner(); _checkRole(ROLE);
    if body is not None:
        for node in walk(body):
            if isinstance(node, Call) and node.kind in (CallKind.INTERNAL, CallKind.SUPER) and AUTH_CALL_RE.match(node.name):
                sender = True
    return _BodyChecks(sender, tuple(sorted(tx_sites)), tuple(sorted(privileged)))


def resolve_modifier(program: ProgramModel, order: Sequence[int], name: str) -> Optional[Modifier]:
    """Most-derived modifier named `name` along a linearization."""
    for contract_id in order:
        for modifier in program.modifiers_of(program.contract(contract_id)):
            if modifier.name == name:
                return modifier
    return None


def compute_guards(
    program: ProgramModel,
    function: Function,
    order: Sequence[int],
    resolve_var: Callable[[str], Optional[int]],
    modifier_cache: Optional[Dict[int, _BodyChecks]] = None,
) -> FunctionGuards:
    """Guard facts of one function, looking through its resolved modifiers."""
    if modifier_cache is None:
        modifier_cache = {}
    own = _scan_body(function.body, resolve_var)
    sender = own.sender
    tx_sites = list(own.tx_origin_sites)
    privileged = set(own.privileged)
    access_modifiers: List[str] = []
    reentrancy_guard = False

    for invocation in function.modifiers:
        if REENTRANCY_GUARD_RE.search(invocation.name):
            reentrancy_guard = True
            continue
        modifier = resolve_modifier(program, order, invocation.name)
        if modifier is None:
            if ACCESS_MODIFIER_RE.match(invocation.name):
                access_modifiers.append(invocation.name)
            continue
        if modifier.id not in modifier_cache:
            modifier_cache[modifier.id] = _scan_body(modifier.body, resolve_var)
        checks = modifier_cache[modifier.id]
        privileged.update(checks.privileged)
        tx_sites.extend(checks.tx_origin_sites)
        if checks.sender or checks.tx_origin_sites:
            access_modifiers.append(invocation.name)

    return FunctionGuards(
        checks_sender=sender,
        checks_tx_origin=bool(tx_sites),
        tx_origin_sites=tuple(sorted(set(tx_sites))),
        access_modifiers=tuple(access_modifiers),
        reentrancy_guard=reentrancy_guard,
        privileged_vars=tuple(sorted(privileged)),
    )
