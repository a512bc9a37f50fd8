"""
Helper functions shared by the built-in detectors.

Contains structural matchers over the Program Model (calls, loops, unchecked
blocks, conditions), a light parameter-taint approximation, and naming
heuristics for privileged state.
"""

import re
from typing import Iterator, List, Optional, Set

from analysis.guards import condition_exprs
from model.ir import (
    Assignment,
    Block,
    Call,
    CallKind,
    Contract,
    Expr,
    ExprStmt,
    Function,
    Identifier,
    Literal,
    Loop,
    MemberAccess,
    Node,
    ProgramModel,
    StateVariable,
    VarDecl,
    walk,
)
from model.utils import SourceSpan
from rules.eval_context import DetectorContext

PRIVILEGED_NAME_RE = re.compile(
    r"owner|admin|governance|governor|operator|guardian|minter|pauser|implementation|treasury|"
    r"feerecipient|feeto|signer|keeper|manager|controller|authority|oracle|beneficiary",
    re.IGNORECASE,
)
NONCE_NAME_RE = re.compile(r"nonce|used|executed|processed|consumed|claimed|replay|seen", re.IGNORECASE)
ENTROPY_MEMBERS = {"timestamp", "difficulty", "prevrandao", "coinbase", "number"}


# =============================================================================
# Traversal helpers
# =============================================================================


def body_nodes(function: Function) -> Iterator[Node]:
    """Every node of a function body (empty for functions without a body)."""
    if function.body is not None:
        yield from walk(function.body)


def calls_in(root: Optional[Node]) -> List[Call]:
    if root is None:
        return []
    return [n for n in walk(root) if isinstance(n, Call)]


def function_calls(function: Function) -> List[Call]:
    return calls_in(function.body)


def identifiers_in(expr: Optional[Node]) -> Set[str]:
    if expr is None:
        return set()
    return {n.name for n in walk(expr) if isinstance(n, Identifier)}


def derives_from(expr: Optional[Node], names: Set[str]) -> bool:
    """True if any identifier inside `expr` is one of `names`."""
    return bool(identifiers_in(expr) & names)


def in_loop(program: ProgramModel, node_id: int) -> bool:
    return any(isinstance(a, Loop) for a in program.ancestors(node_id))


def in_unchecked(program: ProgramModel, node_id: int) -> bool:
    return any(isinstance(a, Block) and a.unchecked for a in program.ancestors(node_id))


def is_discarded(program: ProgramModel, node: Node) -> bool:
    """Expression whose value is thrown away (`token.transfer(a, b);`)."""
    return isinstance(program.parent_of(node.id), ExprStmt)


def condition_names(function: Function) -> Set[str]:
    """Identifiers used in condition position anywhere in the function body."""
    names: Set[str] = set()
    for cond in condition_exprs(function.body):
        names |= identifiers_in(cond)
    return names


def conditions_mention(function: Function, predicate) -> bool:
    for cond in condition_exprs(function.body):
        if any(predicate(n) for n in walk(cond)):
            return True
    return False


# =============================================================================
# Parameter taint (intra-procedural, flow-insensitive)
# =============================================================================


def caller_controlled_names(function: Function) -> Set[str]:
    """
    Parameters plus locals assigned from them.

    `address t = target;` makes `t` caller-controlled too. One pass in
    document order; good enough for the straight-line code detectors target.
    """
    names = {p.name for p in function.parameters if p.name}
    for node in body_nodes(function):
        if isinstance(node, VarDecl) and node.value is not None and derives_from(node.value, names):
            names.update(n for n in node.names if n)
        elif isinstance(node, Assignment) and isinstance(node.target, Identifier):
            if derives_from(node.value, names):
                names.add(node.target.name)
    return names


def _is_msg_data(node: Node) -> bool:
    return isinstance(node, MemberAccess) and isinstance(node.base, Identifier) and node.base.name == "msg" and node.member == "data"


def is_caller_controlled(expr: Optional[Expr], function: Function) -> bool:
    if expr is None:
        return False
    if any(_is_msg_data(n) for n in walk(expr)):
        return True
    return derives_from(expr, caller_controlled_names(function))


# =============================================================================
# Expression shapes
# =============================================================================


def is_zero_address(expr: Optional[Expr]) -> bool:
    """`address(0)` or a literal zero."""
    if isinstance(expr, Literal):
        return expr.value in ("0", "0x0", "0x0000000000000000000000000000000000000000")
    if isinstance(expr, Call) and expr.kind == CallKind.TYPE_CONVERSION and len(expr.args) == 1:
        return is_zero_address(expr.args[0])
    return False


def is_literal_zero(expr: Optional[Expr]) -> bool:
    return isinstance(expr, Literal) and expr.value in ("0", "0x0", "0x00")


def is_block_member(expr: Optional[Node], members=ENTROPY_MEMBERS) -> bool:
    return (
        isinstance(expr, MemberAccess)
        and isinstance(expr.base, Identifier)
        and expr.base.name == "block"
        and expr.member in members
    )


def is_this_balance(expr: Optional[Node]) -> bool:
    """`address(this).balance` or `token.balanceOf(address(this))`"""
    if isinstance(expr, MemberAccess) and expr.member == "balance":
        return _is_address_this(expr.base)
    if isinstance(expr, Call) and expr.name == "balanceOf" and len(expr.args) == 1:
        return _is_address_this(expr.args[0])
    return False


def _is_address_this(expr: Optional[Node]) -> bool:
    if isinstance(expr, Identifier):
        return expr.name == "this"
    if isinstance(expr, Call) and expr.kind == CallKind.TYPE_CONVERSION and len(expr.args) == 1:
        return _is_address_this(expr.args[0])
    return False


# =============================================================================
# Naming heuristics
# =============================================================================


def is_privileged_var(ctx: DetectorContext, var: StateVariable) -> bool:
    """Compared against msg.sender somewhere, or named like an authority slot."""
    if var.id in ctx.index.privileged_vars.get(ctx.contract.id, ()):
        return True
    return bool(PRIVILEGED_NAME_RE.search(var.name))


def privileged_writes(ctx: DetectorContext, function: Function) -> List[StateVariable]:
    """Privileged state variables written by the function or its internal callees."""
    written = ctx.index.transitive_writes.get(function.id, ())
    return [ctx.state_variable(v) for v in written if is_privileged_var(ctx, ctx.state_variable(v))]


def is_proxy_like(ctx: DetectorContext) -> bool:
    """Contract that forwards calls with delegatecall from fallback, or is named/built like a proxy."""
    contract = ctx.contract
    if "proxy" in contract.name.lower():
        return True
    for function in ctx.functions():
        if function.kind == "fallback" and any(c.name == "delegatecall" for c in function_calls(function)):
            return True
    return any(b in ("UUPSUpgradeable", "ERC1967Proxy", "TransparentUpgradeableProxy", "Proxy") for b in contract.bases)


def is_upgradeable(ctx: DetectorContext) -> bool:
    contract = ctx.contract
    for c in ctx.linearization() or [contract]:
        if "upgradeable" in c.name.lower():
            return True
        if any(b == "Initializable" or b.endswith("Upgradeable") for b in c.bases):
            return True
    return False


def has_code(ctx: DetectorContext) -> bool:
    """Applicability: skip interfaces and contracts without any implemented function."""
    if ctx.contract.is_interface:
        return False
    return any(f.body is not None for f in ctx.functions())


def line_of(span: SourceSpan) -> str:
    return f"line {span.line}" if span.line else f"offset {span.start}"
