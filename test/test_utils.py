"""Shared test utilities.

Builders for solc-shaped parse trees (compact AST JSON). Every node gets its
own `src` range so findings at different nodes never share a location.
"""
import itertools
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from analysis.fact_index import FactIndex, build_fact_index
from core.config import EngineConfig
from model.builder import build_program
from model.ir import Function, Node, ProgramModel
from pipeline import Engine, ScanReport
from rules.ir import Category, Detector, Finding, Severity
from rules.registry import DetectorFilter, Registry
from semantic.checker import default_registry

__all__ = [
    "ident", "member", "index", "lit", "binop", "unop", "assign", "call", "msg_sender", "tuple_", "elem",
    "expr_stmt", "block", "var_decl", "if_", "for_", "while_", "ret", "emit", "require", "placeholder",
    "assembly", "param", "state_var", "function", "modifier", "event", "contract", "source_unit",
    "build", "index_of", "scan", "findings_of", "function_named", "nodes_of", "make_detector", "FakeClock",
]

Ast = Dict[str, Any]
ExprLike = Union[Ast, str]

_positions = itertools.count(1)
_contract_ids = itertools.count(1000)


def _src() -> str:
    """Disjoint `start:length:file` ranges, one per node."""
    return f"{next(_positions) * 10}:8:0"


def _node(node_type: str, **fields) -> Ast:
    node = {"nodeType": node_type, "src": _src()}
    node.update(fields)
    return node


def _e(value: ExprLike) -> Ast:
    """Strings are shorthand for identifiers."""
    return ident(value) if isinstance(value, str) else value


# =============================================================================
# Expressions
# =============================================================================


def ident(name: str) -> Ast:
    return _node("Identifier", name=name)


def member(base: ExprLike, name: str) -> Ast:
    return _node("MemberAccess", expression=_e(base), memberName=name)


def index(base: ExprLike, idx: Optional[ExprLike]) -> Ast:
    return _node("IndexAccess", baseExpression=_e(base), indexExpression=_e(idx) if idx is not None else None)


def lit(value: Any, kind: str = "number") -> Ast:
    return _node("Literal", value=str(value), kind=kind)


def binop(left: ExprLike, op: str, right: ExprLike) -> Ast:
    return _node("BinaryOperation", operator=op, leftExpression=_e(left), rightExpression=_e(right))


def unop(op: str, operand: ExprLike, prefix: bool = True) -> Ast:
    return _node("UnaryOperation", operator=op, subExpression=_e(operand), prefix=prefix)


def assign(target: ExprLike, value: ExprLike, op: str = "=") -> Ast:
    return _node("Assignment", operator=op, leftHandSide=_e(target), rightHandSide=_e(value))


def call(callee: ExprLike, *args: ExprLike, value: Optional[ExprLike] = None, gas: Optional[ExprLike] = None) -> Ast:
    """`callee(args)`, or `callee{value: v, gas: g}(args)` when options are given."""
    expression = _e(callee)
    names, options = [], []
    if value is not None:
        names.append("value")
        options.append(_e(value))
    if gas is not None:
        names.append("gas")
        options.append(_e(gas))
    if names:
        expression = _node("FunctionCallOptions", expression=expression, names=names, options=options)
    return _node("FunctionCall", expression=expression, arguments=[_e(a) for a in args])


def msg_sender() -> Ast:
    return member("msg", "sender")


def tuple_(*components: Optional[ExprLike]) -> Ast:
    return _node("TupleExpression", components=[_e(c) if c is not None else None for c in components])


def elem(type_name: str) -> Ast:
    """Elementary type name used as a conversion: `address(...)`."""
    return _node("ElementaryTypeNameExpression", typeName=type_name)


# =============================================================================
# Statements
# =============================================================================


def expr_stmt(expression: ExprLike) -> Ast:
    return _node("ExpressionStatement", expression=_e(expression))


def _stmt(value: Union[Ast, List[Ast]]) -> Ast:
    return block(*value) if isinstance(value, list) else value


def block(*stmts: Ast, unchecked: bool = False) -> Ast:
    return _node("UncheckedBlock" if unchecked else "Block", statements=list(stmts))


def var_decl(names: Union[str, Sequence[Optional[str]]], type_name: Union[str, Sequence[str]], value: Optional[ExprLike] = None) -> Ast:
    """`T name = value;` or, with sequences, `(T a, , T b) = value;` (None leaves a hole)."""
    if isinstance(names, str):
        names, type_name = [names], [type_name]  # type: ignore[list-item]
    declarations: List[Optional[Ast]] = []
    for name, t in zip(names, type_name):
        declarations.append(None if name is None else _node("VariableDeclaration", name=name, typeName=t))
    node = _node("VariableDeclarationStatement", declarations=declarations)
    if value is not None:
        node["initialValue"] = _e(value)
    return node


def if_(condition: ExprLike, then: Union[Ast, List[Ast]], otherwise: Union[Ast, List[Ast], None] = None) -> Ast:
    node = _node("IfStatement", condition=_e(condition), trueBody=_stmt(then))
    if otherwise is not None:
        node["falseBody"] = _stmt(otherwise)
    return node


def for_(init: Optional[Ast], condition: Optional[ExprLike], step: Optional[ExprLike], body: Union[Ast, List[Ast]]) -> Ast:
    node = _node("ForStatement", body=_stmt(body))
    if init is not None:
        node["initializationExpression"] = init
    if condition is not None:
        node["condition"] = _e(condition)
    if step is not None:
        node["loopExpression"] = expr_stmt(step)
    return node


def while_(condition: ExprLike, body: Union[Ast, List[Ast]]) -> Ast:
    return _node("WhileStatement", condition=_e(condition), body=_stmt(body))


def ret(value: Optional[ExprLike] = None) -> Ast:
    node = _node("Return")
    if value is not None:
        node["expression"] = _e(value)
    return node


def emit(event_call: Ast) -> Ast:
    return _node("EmitStatement", eventCall=event_call)


def require(condition: ExprLike, message: Optional[str] = None) -> Ast:
    args = [_e(condition)]
    if message is not None:
        args.append(lit(message, kind="string"))
    return expr_stmt(call("require", *args))


def placeholder() -> Ast:
    return _node("PlaceholderStatement")


def assembly(text: str = "") -> Ast:
    return _node("InlineAssembly", operations=text)


# =============================================================================
# Declarations
# =============================================================================


def param(name: str, type_name: str) -> Ast:
    return _node("VariableDeclaration", name=name, typeName=type_name)


def state_var(name: str, type_name: str, value: Optional[ExprLike] = None, constant: bool = False, visibility: str = "internal") -> Ast:
    node = _node(
        "VariableDeclaration",
        name=name,
        typeName=type_name,
        visibility=visibility,
        mutability="constant" if constant else "mutable",
        constant=constant,
    )
    if value is not None:
        node["value"] = _e(value)
    return node


def function(
    name: str,
    body: Union[Ast, List[Ast], None] = None,
    params: Iterable[Ast] = (),
    returns: Iterable[Ast] = (),
    visibility: str = "public",
    mutability: str = "nonpayable",
    modifiers: Iterable[Union[str, Ast]] = (),
    kind: str = "function",
    virtual: bool = False,
    override: bool = False,
) -> Ast:
    """Function definition; `body=None` declares it without implementation."""
    node = _node(
        "FunctionDefinition",
        name=name,
        kind=kind,
        visibility=visibility,
        stateMutability=mutability,
        virtual=virtual,
        parameters=_node("ParameterList", parameters=list(params)),
        returnParameters=_node("ParameterList", parameters=list(returns)),
        modifiers=[_invocation(m) for m in modifiers],
    )
    if override:
        node["overrides"] = _node("OverrideSpecifier", overrides=[])
    if body is not None:
        node["body"] = _stmt(body)
    return node


def _invocation(value: Union[str, Ast]) -> Ast:
    if isinstance(value, str):
        return _node("ModifierInvocation", modifierName=ident(value), arguments=[])
    return value


def modifier(name: str, body: Union[Ast, List[Ast]], params: Iterable[Ast] = ()) -> Ast:
    return _node(
        "ModifierDefinition",
        name=name,
        parameters=_node("ParameterList", parameters=list(params)),
        body=_stmt(body),
    )


def event(name: str) -> Ast:
    return _node("EventDefinition", name=name)


def contract(name: str, *members: Ast, bases: Sequence[str] = (), kind: str = "contract", abstract: bool = False) -> Ast:
    return _node(
        "ContractDefinition",
        id=next(_contract_ids),
        name=name,
        contractKind=kind,
        abstract=abstract,
        baseContracts=[_node("InheritanceSpecifier", baseName=_node("IdentifierPath", name=b)) for b in bases],
        nodes=list(members),
    )


def source_unit(*contracts: Ast, path: str = "Test.sol") -> Ast:
    return {"nodeType": "SourceUnit", "src": "0:0:0", "absolutePath": path, "nodes": list(contracts)}


# =============================================================================
# Pipeline shortcuts
# =============================================================================


def build(*contracts: Ast, path: str = "Test.sol") -> ProgramModel:
    """Program Model of a unit holding `contracts`."""
    return build_program(source_unit(*contracts, path=path))


def index_of(program: ProgramModel) -> FactIndex:
    return build_fact_index(program)


def scan(
    tree: Union[Ast, ProgramModel, List[Union[Ast, str]]],
    detectors: Optional[Iterable[str]] = None,
    registry: Optional[Registry] = None,
    **config,
) -> ScanReport:
    """
    Scan one unit (or a list of units) inline.

    `detectors` limits the run to those ids; config keywords go to EngineConfig.
    """
    config.setdefault("workers", 1)
    engine = Engine(registry or default_registry(), EngineConfig(**config))
    flt = DetectorFilter(ids=frozenset(detectors)) if detectors else None
    if isinstance(tree, list):
        return engine.scan_many(tree, flt)
    return engine.scan(tree, flt)


def findings_of(report: ScanReport, detector_id: str) -> List[Finding]:
    return [f for f in report.findings if f.detector_id == detector_id]


def function_named(program: ProgramModel, name: str, contract_name: Optional[str] = None) -> Function:
    for func in program.functions:
        if func.name != name:
            continue
        if contract_name is None or program.contract(func.contract_id).name == contract_name:
            return func
    raise KeyError(name)


def nodes_of(program: ProgramModel, node_type: type) -> List[Node]:
    """Every node of a type, in arena (document) order."""
    return [n for n in program.nodes if isinstance(n, node_type)]


def make_detector(
    id: str = "test-detector",
    category: Category = Category.ACCESS_CONTROL,
    severity: Severity = Severity.MEDIUM,
    evaluate=None,
    applies=None,
) -> Detector:
    """Create a Detector for testing (reports nothing unless `evaluate` is given)."""
    kwargs = {}
    if applies is not None:
        kwargs["applies"] = applies
    return Detector(
        id=id,
        category=category,
        severity=severity,
        description=f"{id} (test)",
        evaluate=evaluate or (lambda ctx: []),
        **kwargs,
    )


class FakeClock:
    """Monotonic clock driven by the test."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
