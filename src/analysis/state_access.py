"""
State read/write tracking in evaluation order.

One walk per function body produces an ordered event stream (reads, writes,
calls). Everything order-sensitive in the Fact Index is derived from it:
- StateAccess: read/write sets and write sites
- StateWrite.after_external_call: was an external call observed before the write
- CallOrdering: writes before/after each external call site

Evaluation order follows Solidity semantics closely enough for ordering facts:
call arguments before the call, right-hand side before the assignment target.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from model.ir import (
    Assignment,
    Block,
    Call,
    CallKind,
    Conditional,
    ElementaryType,
    Emit,
    Expr,
    ExprStmt,
    Identifier,
    If,
    IndexAccess,
    Loop,
    MemberAccess,
    NewExpr,
    Node,
    Return,
    Revert,
    Stmt,
    Try,
    TupleExpr,
    UnaryOp,
    VarDecl,
    BinaryOp,
    root_identifier,
)
from model.utils import SourceSpan


READ = "read"
WRITE = "write"
CALL = "call"

_MUTATING_UNARY = {"++", "--", "delete"}
_ARRAY_MUTATORS = {"push", "pop"}


@dataclass(frozen=True)
class AccessEvent:
    """One step of the evaluation-order stream."""

    kind: str  # READ, WRITE or CALL
    node: Node
    var_id: int = -1


@dataclass(frozen=True)
class StateWrite:
    """A state-variable write site."""

    var_id: int
    node_id: int
    span: SourceSpan
    after_external_call: bool
    calls_before: int  # external calls observed before this write

    def to_dict(self) -> dict:
        return {
            "var_id": self.var_id,
            "node_id": self.node_id,
            "after_external_call": self.after_external_call,
            "calls_before": self.calls_before,
        }


@dataclass(frozen=True)
class StateAccess:
    """Read and write sets of one function (direct accesses only)."""

    reads: Tuple[int, ...]
    writes: Tuple[int, ...]
    write_sites: Tuple[StateWrite, ...]

    def writes_after_external_call(self) -> Tuple[StateWrite, ...]:
        return tuple(w for w in self.write_sites if w.after_external_call)

    def to_dict(self) -> dict:
        return {
            "reads": list(self.reads),
            "writes": list(self.writes),
            "write_sites": [w.to_dict() for w in self.write_sites],
        }


EMPTY_ACCESS = StateAccess((), (), ())


@dataclass(frozen=True)
class CallOrdering:
    """State variables written before/after one external call site."""

    writes_before: Tuple[int, ...]
    writes_after: Tuple[int, ...]

    def to_dict(self) -> dict:
        return {"writes_before": list(self.writes_before), "writes_after": list(self.writes_after)}


# Resolves an identifier to a state variable id, None for locals and unknown names
VarResolver = Callable[[str], Optional[int]]


class EvaluationWalker:
    """Flattens a statement tree into AccessEvents in evaluation order."""

    def __init__(self, resolve_var: VarResolver):
        self.resolve_var = resolve_var
        self.events: List[AccessEvent] = []

    def walk(self, stmt: Optional[Stmt]) -> List[AccessEvent]:
        if stmt is not None:
            self._stmt(stmt)
        return self.events

    # =========================================================================
    # Statements
    # =========================================================================

    def _stmt(self, stmt: Stmt) -> None:
        if isinstance(stmt, Block):
            for s in stmt.stmts:
                self._stmt(s)
        elif isinstance(stmt, ExprStmt):
            self._expr(stmt.expr)
        elif isinstance(stmt, VarDecl):
            if stmt.value is not None:
                self._expr(stmt.value)
        elif isinstance(stmt, If):
            self._expr(stmt.condition)
            self._stmt(stmt.then_branch)
            if stmt.else_branch is not None:
                self._stmt(stmt.else_branch)
        elif isinstance(stmt, Loop):
            if stmt.init is not None:
                self._stmt(stmt.init)
            if stmt.kind == "do":
                self._stmt(stmt.body)
                if stmt.condition is not None:
                    self._expr(stmt.condition)
            else:
                if stmt.condition is not None:
                    self._expr(stmt.condition)
                self._stmt(stmt.body)
                if stmt.step is not None:
                    self._expr(stmt.step)
        elif isinstance(stmt, Return):
            if stmt.value is not None:
                self._expr(stmt.value)
        elif isinstance(stmt, Emit):
            self._expr(stmt.call)
        elif isinstance(stmt, Revert):
            if stmt.call is not None:
                self._expr(stmt.call)
        elif isinstance(stmt, Try):
            self._expr(stmt.call)
            for clause in stmt.clauses:
                self._stmt(clause)
        # InlineAssembly, Placeholder, Jump, UnknownStmt: nothing observable

    # =========================================================================
    # Expressions
    # =========================================================================

    def _expr(self, expr: Optional[Expr]) -> None:
        if expr is None:
            return
        if isinstance(expr, Identifier):
            var_id = self.resolve_var(expr.name)
            if var_id is not None:
                self.events.append(AccessEvent(READ, expr, var_id))
        elif isinstance(expr, MemberAccess):
            self._expr(expr.base)
        elif isinstance(expr, IndexAccess):
            self._expr(expr.base)
            self._expr(expr.index)
        elif isinstance(expr, BinaryOp):
            self._expr(expr.left)
            self._expr(expr.right)
        elif isinstance(expr, UnaryOp):
            if expr.op in _MUTATING_UNARY:
                self._write(expr.operand, expr, read_first=expr.op != "delete")
            else:
                self._expr(expr.operand)
        elif isinstance(expr, Assignment):
            self._expr(expr.value)
            self._write(expr.target, expr, read_first=expr.op != "=")
        elif isinstance(expr, Call):
            self._call(expr)
        elif isinstance(expr, Conditional):
            self._expr(expr.condition)
            self._expr(expr.true_expr)
            self._expr(expr.false_expr)
        elif isinstance(expr, TupleExpr):
            for c in expr.components:
                self._expr(c)
        # Literal, NewExpr, ElementaryType, Unknown: no state access

    def _call(self, call: Call) -> None:
        callee = call.callee
        if isinstance(callee, MemberAccess):
            self._expr(callee.base)
        elif not isinstance(callee, (Identifier, NewExpr, ElementaryType)):
            self._expr(callee)
        self._expr(call.value)
        self._expr(call.gas)
        for arg in call.args:
            self._expr(arg)
        self.events.append(AccessEvent(CALL, call))
        if call.kind == CallKind.BUILTIN and call.name in _ARRAY_MUTATORS and call.receiver is not None:
            root = root_identifier(call.receiver)
            if root is not None:
                var_id = self.resolve_var(root.name)
                if var_id is not None:
                    self.events.append(AccessEvent(WRITE, call, var_id))

    def _write(self, target: Expr, node: Expr, read_first: bool) -> None:
        if isinstance(target, TupleExpr):
            for c in target.components:
                if c is not None:
                    self._write(c, node, read_first)
            return
        # index expressions inside the target are plain reads: balances[msg.sender] -> msg.sender
        inner = target
        while isinstance(inner, (IndexAccess, MemberAccess)):
            if isinstance(inner, IndexAccess):
                self._expr(inner.index)
            inner = inner.base
        if not isinstance(inner, Identifier):
            self._expr(inner)
            return
        var_id = self.resolve_var(inner.name)
        if var_id is None:
            return
        if read_first:
            self.events.append(AccessEvent(READ, inner, var_id))
        self.events.append(AccessEvent(WRITE, node, var_id))


def is_external_call_event(event: AccessEvent) -> bool:
    return event.kind == CALL and event.node.kind.leaves_contract  # type: ignore[attr-defined]


def summarize_access(events: List[AccessEvent]) -> Tuple[StateAccess, Dict[int, CallOrdering]]:
    """
    Build the StateAccess of a function and the CallOrdering of each of its
    external call sites (keyed by call node id).
    """
    reads = set()
    writes = set()
    write_sites: List[StateWrite] = []
    call_ids: List[int] = []
    calls_seen = 0

    for event in events:
        if event.kind == READ:
            reads.add(event.var_id)
        elif event.kind == WRITE:
            writes.add(event.var_id)
            write_sites.append(
                StateWrite(
                    var_id=event.var_id,
                    node_id=event.node.id,
                    span=event.node.span,
                    after_external_call=calls_seen > 0,
                    calls_before=calls_seen,
                )
            )
        elif is_external_call_event(event):
            call_ids.append(event.node.id)
            calls_seen += 1

    orderings: Dict[int, CallOrdering] = {}
    for ordinal, call_id in enumerate(call_ids):
        before = sorted({w.var_id for w in write_sites if w.calls_before <= ordinal})
        after = sorted({w.var_id for w in write_sites if w.calls_before > ordinal})
        orderings[call_id] = CallOrdering(tuple(before), tuple(after))

    access = StateAccess(tuple(sorted(reads)), tuple(sorted(writes)), tuple(write_sites))
    return access, orderings
