"""
Arithmetic and randomness checks.

Contains checks for:
- unchecked-arithmetic: caller or storage values combined inside `unchecked { }`
- divide-before-multiply: precision lost by dividing first
- weak-randomness: randomness derived from block fields
"""

from typing import List, Set

from model.ir import Assignment, BinaryOp, Call, Expr, Function, Identifier, Node, TupleExpr, VarDecl, walk
from rules.eval_context import DetectorContext
from rules.ir import Confidence, RawFinding, Severity
from semantic.helpers import body_nodes, identifiers_in, in_unchecked, is_block_member

OVERFLOW_OPS = {"+", "-", "*"}
OVERFLOW_ASSIGN_OPS = {"+=", "-=", "*="}
HASH_CALLS = {"keccak256", "sha256", "sha3"}
RANDOM_MEMBERS = {"timestamp", "difficulty", "prevrandao", "coinbase", "number"}


def _unparen(expr: Expr) -> Expr:
    while isinstance(expr, TupleExpr) and len(expr.components) == 1 and expr.components[0] is not None:
        expr = expr.components[0]
    return expr


def _is_overflow_op(node: Node) -> bool:
    if isinstance(node, BinaryOp):
        return node.op in OVERFLOW_OPS
    return isinstance(node, Assignment) and node.op in OVERFLOW_ASSIGN_OPS


def _tainted_operands(ctx: DetectorContext, function: Function, node: Node) -> Set[str]:
    params = {p.name for p in function.parameters if p.name}
    names = set()
    for name in identifiers_in(node):
        if name in params or ctx.resolve_state_var(name) is not None:
            names.add(name)
    return names


def check_unchecked_arithmetic(ctx: DetectorContext) -> List[RawFinding]:
    """+, - or * on parameters or storage inside an unchecked block."""
    findings = []
    for function in ctx.functions():
        for node in body_nodes(function):
            if not _is_overflow_op(node) or not in_unchecked(ctx.program, node.id):
                continue
            # report the outermost expression only
            if _is_overflow_op(ctx.program.parent_of(node.id)):
                continue
            names = _tainted_operands(ctx, function, node)
            if not names:
                continue
            operands = ", ".join(f"`{n}`" for n in sorted(names))
            findings.append(
                ctx.report(
                    Severity.MEDIUM,
                    f"arithmetic on {operands} in an unchecked block of `{function.name}` can wrap around silently",
                    function=function,
                    span=node.span,
                    evidence=("overflow checks disabled by `unchecked`", f"operands {operands} are not constants"),
                )
            )
    return findings


def _division_names(function: Function) -> Set[str]:
    """Locals assigned directly from a division."""
    names = set()
    for node in body_nodes(function):
        if isinstance(node, VarDecl) and node.value is not None and _is_division(node.value):
            names.update(n for n in node.names if n)
        elif isinstance(node, Assignment) and node.op == "=" and isinstance(node.target, Identifier):
            if _is_division(node.value):
                names.add(node.target.name)
    return names


def _is_division(expr: Expr) -> bool:
    expr = _unparen(expr)
    return isinstance(expr, BinaryOp) and expr.op == "/"


def check_divide_before_multiply(ctx: DetectorContext) -> List[RawFinding]:
    """Result of an integer division multiplied afterwards."""
    findings = []
    for function in ctx.functions():
        divided = _division_names(function)
        for node in body_nodes(function):
            if not isinstance(node, BinaryOp) or node.op != "*":
                continue
            operands = [_unparen(node.left), _unparen(node.right)]
            direct = any(_is_division(o) for o in operands)
            via = [o.name for o in operands if isinstance(o, Identifier) and o.name in divided]
            if not direct and not via:
                continue
            evidence = "division nested in the product" if direct else f"`{via[0]}` holds a division result"
            findings.append(
                ctx.report(
                    Severity.LOW,
                    f"`{function.name}` multiplies after dividing; the truncated remainder is scaled up",
                    function=function,
                    span=node.span,
                    evidence=(evidence,),
                )
            )
    return findings


def _entropy(node: Node) -> bool:
    if is_block_member(node, RANDOM_MEMBERS):
        return True
    return isinstance(node, Call) and node.name == "blockhash"


def _is_random_sink(node: Node) -> bool:
    if isinstance(node, BinaryOp):
        return node.op == "%"
    return isinstance(node, Call) and node.name in HASH_CALLS


def check_weak_randomness(ctx: DetectorContext) -> List[RawFinding]:
    """Modulo or hash over block fields used as a random source."""
    findings = []
    for function in ctx.functions():
        covered: Set[int] = set()
        for node in body_nodes(function):
            if node.id in covered or not _is_random_sink(node):
                continue
            sources = [n for n in walk(node) if _entropy(n)]
            if not sources:
                continue
            covered.update(n.id for n in walk(node))
            source = sources[0]
            label = "blockhash" if isinstance(source, Call) else f"block.{source.member}"  # type: ignore[attr-defined]
            modulo = isinstance(node, BinaryOp)
            findings.append(
                ctx.report(
                    Severity.HIGH,
                    f"`{function.name}` derives randomness from `{label}`, which miners and validators can influence",
                    function=function,
                    span=node.span,
                    evidence=(f"entropy source `{label}`",),
                    confidence=Confidence.LIKELY if modulo else Confidence.POSSIBLE,
                )
            )
    return findings
