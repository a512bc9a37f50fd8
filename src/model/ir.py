"""
Program Model - typed tree for one compilation unit.

The model is designed for structural pattern matching, not full Solidity semantics.
We care about:
- Contracts, their members and declared inheritance
- Function calls and how they leave the contract (internal, external, low-level)
- Assignments and other state mutations (read/write sets)
- Control flow structure (conditions, loops, unchecked blocks, assembly)

We deliberately ignore:
- Type checking / overload resolution beyond argument counts
- Struct layouts, enums, user-defined value types
- Yul inside inline assembly (kept as opaque text)

Ownership: ProgramModel owns flat arenas for contracts, functions, modifiers,
state variables and tree nodes. Every back-reference (function -> contract,
node -> parent, node -> owner) is a plain integer index into an arena.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from model.utils import SourceSpan


# =============================================================================
# Base node
# =============================================================================


@dataclass(eq=False)
class Node:
    """Base tree node. Every node has an arena id unique within the compilation unit."""

    id: int
    span: SourceSpan


# =============================================================================
# Expressions
# =============================================================================


class CallKind(Enum):
    """How a call leaves (or stays inside) the calling contract."""

    INTERNAL = "internal"
    EXTERNAL = "external"
    LOW_LEVEL = "low-level"
    LIBRARY = "library"
    BUILTIN = "builtin"
    TYPE_CONVERSION = "type-conversion"
    CONTRACT_CREATION = "contract-creation"
    EVENT = "event"
    SUPER = "super"

    @property
    def leaves_contract(self) -> bool:
        """Calls that hand control to code outside the contract."""
        return self in (CallKind.EXTERNAL, CallKind.LOW_LEVEL)


@dataclass(eq=False)
class Expr(Node):
    """Base expression."""


@dataclass(eq=False)
class Identifier(Expr):
    """Name reference: `owner`, `msg`, `amount`"""

    name: str


@dataclass(eq=False)
class MemberAccess(Expr):
    """Member access: `msg.sender`, `token.balanceOf`"""

    base: Expr
    member: str


@dataclass(eq=False)
class IndexAccess(Expr):
    """Index access: `balances[msg.sender]`, `arr[i]`"""

    base: Expr
    index: Optional[Expr]


@dataclass(eq=False)
class Literal(Expr):
    """Literal value: `42`, `true`, `"abc"`, `0x00`"""

    value: str
    kind: str  # "number", "bool", "string", "hexString", "address"


@dataclass(eq=False)
class BinaryOp(Expr):
    """Binary operation: `a + b`, `x == y`"""

    op: str
    left: Expr
    right: Expr


@dataclass(eq=False)
class UnaryOp(Expr):
    """Unary operation: `!x`, `-y`, `i++`, `delete x`"""

    op: str
    operand: Expr
    prefix: bool = True


@dataclass(eq=False)
class Assignment(Expr):
    """Assignment: `x = v`, `balances[a] -= amount`"""

    op: str  # "=", "+=", "-=", ...
    target: Expr
    value: Expr


@dataclass(eq=False)
class Call(Expr):
    """
    Function call: `foo(a)`, `token.transfer(to, amt)`, `addr.call{value: v}(data)`

    kind is assigned by the builder from the shape of the callee.
    value/gas hold the `{value: ..., gas: ...}` call options when present.
    """

    callee: Expr
    args: List[Expr]
    kind: CallKind
    names: List[str] = field(default_factory=list)
    value: Optional[Expr] = None
    gas: Optional[Expr] = None

    @property
    def name(self) -> str:
        """Called function or member name (`transfer` for `token.transfer(...)`)."""
        if isinstance(self.callee, MemberAccess):
            return self.callee.member
        if isinstance(self.callee, Identifier):
            return self.callee.name
        if isinstance(self.callee, NewExpr):
            return self.callee.type_name
        if isinstance(self.callee, ElementaryType):
            return self.callee.type_name
        return ""

    @property
    def receiver(self) -> Optional[Expr]:
        """Expression the member is called on (`token` for `token.transfer(...)`)."""
        if isinstance(self.callee, MemberAccess):
            return self.callee.base
        return None

    @property
    def transfers_value(self) -> bool:
        """True for calls that move native currency."""
        if self.value is not None:
            return True
        return self.kind == CallKind.LOW_LEVEL and self.name in ("send", "transfer")


@dataclass(eq=False)
class Conditional(Expr):
    """Ternary: `c ? a : b`"""

    condition: Expr
    true_expr: Expr
    false_expr: Expr


@dataclass(eq=False)
class TupleExpr(Expr):
    """Tuple: `(a, b)`, `(bool ok, )` components may be None"""

    components: List[Optional[Expr]]


@dataclass(eq=False)
class NewExpr(Expr):
    """Contract creation / array allocation callee: `new Vault`"""

    type_name: str


@dataclass(eq=False)
class ElementaryType(Expr):
    """Elementary type used as a value, the callee of `address(x)`, `uint256(y)`"""

    type_name: str


@dataclass(eq=False)
class Unknown(Expr):
    """Placeholder for expression node types the builder does not model."""

    raw: str


# =============================================================================
# Statements
# =============================================================================


@dataclass(eq=False)
class Stmt(Node):
    """Base statement."""


@dataclass(eq=False)
class Block(Stmt):
    """Statement block, `unchecked { ... }` when unchecked is set."""

    stmts: List[Stmt]
    unchecked: bool = False


@dataclass(eq=False)
class ExprStmt(Stmt):
    """Expression statement: `foo();` (result discarded)"""

    expr: Expr


@dataclass(eq=False)
class VarDecl(Stmt):
    """Local declaration: `uint x = v;`, `(bool ok, bytes memory data) = ...;`"""

    names: List[Optional[str]]
    types: List[str]
    value: Optional[Expr]


@dataclass(eq=False)
class If(Stmt):
    """If statement."""

    condition: Expr
    then_branch: Stmt
    else_branch: Optional[Stmt] = None


@dataclass(eq=False)
class Loop(Stmt):
    """Loop: for / while / do-while"""

    kind: str  # "for", "while", "do"
    condition: Optional[Expr]
    body: Stmt
    init: Optional[Stmt] = None
    step: Optional[Expr] = None


@dataclass(eq=False)
class Return(Stmt):
    """Return: `return v;`, `return;`"""

    value: Optional[Expr]


@dataclass(eq=False)
class Emit(Stmt):
    """Event emission: `emit Transfer(a, b, v);`"""

    call: Expr


@dataclass(eq=False)
class Revert(Stmt):
    """Revert with custom error: `revert Unauthorized();`"""

    call: Optional[Expr]


@dataclass(eq=False)
class InlineAssembly(Stmt):
    """Inline assembly block, kept as opaque text."""

    text: str


@dataclass(eq=False)
class Placeholder(Stmt):
    """Modifier placeholder: `_;`"""


@dataclass(eq=False)
class Try(Stmt):
    """try/catch: the external call plus the success/catch blocks."""

    call: Expr
    clauses: List[Stmt]


@dataclass(eq=False)
class Jump(Stmt):
    """break / continue"""

    kind: str


@dataclass(eq=False)
class UnknownStmt(Stmt):
    """Placeholder for statement node types the builder does not model."""

    raw: str


# =============================================================================
# Declarations
# =============================================================================


@dataclass
class Parameter:
    """Function, modifier or return parameter."""

    name: str
    type_name: str


@dataclass(eq=False)
class ModifierInvocation:
    """Modifier applied to a function: `onlyOwner`, `onlyRole(ADMIN)`"""

    name: str
    args: List[Expr]
    span: SourceSpan


@dataclass(eq=False)
class StateVariable:
    """Contract storage variable (constants and immutables take no storage slot)."""

    id: int
    name: str
    type_name: str
    visibility: str
    contract_id: int  # non-owning back-reference
    span: SourceSpan
    constant: bool = False
    immutable: bool = False
    value: Optional[Expr] = None

    @property
    def in_storage(self) -> bool:
        return not (self.constant or self.immutable)


@dataclass(eq=False)
class Function:
    """Function definition (including constructor, fallback and receive)."""

    id: int
    name: str
    kind: str  # "function", "constructor", "fallback", "receive"
    visibility: str  # "public", "external", "internal", "private"
    mutability: str  # "pure", "view", "payable", "nonpayable"
    contract_id: int  # non-owning back-reference
    parameters: List[Parameter]
    returns: List[Parameter]
    modifiers: List[ModifierInvocation]
    body: Optional[Block]
    span: SourceSpan
    is_virtual: bool = False
    overrides: bool = False  # declared with `override`

    @property
    def is_public(self) -> bool:
        """Callable from outside the contract."""
        return self.visibility in ("public", "external") or self.kind in ("fallback", "receive")

    @property
    def is_view(self) -> bool:
        return self.mutability in ("view", "pure")

    @property
    def is_payable(self) -> bool:
        return self.mutability == "payable" or self.kind == "receive"

    @property
    def is_constructor(self) -> bool:
        return self.kind == "constructor"

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(p.type_name for p in self.parameters)})"

    def modifier_names(self) -> List[str]:
        return [m.name for m in self.modifiers]


@dataclass(eq=False)
class Modifier:
    """Modifier definition."""

    id: int
    name: str
    contract_id: int  # non-owning back-reference
    parameters: List[Parameter]
    body: Optional[Block]
    span: SourceSpan


@dataclass(eq=False)
class Contract:
    """Contract, interface or library."""

    id: int
    source_id: int  # id attribute from the parse tree
    name: str
    kind: str  # "contract", "interface", "library", "abstract"
    bases: List[str]  # as declared, left to right
    function_ids: List[int]
    modifier_ids: List[int]
    state_variable_ids: List[int]
    span: SourceSpan
    events: List[str] = field(default_factory=list)
    using_for: List[str] = field(default_factory=list)

    @property
    def is_interface(self) -> bool:
        return self.kind == "interface"

    @property
    def is_library(self) -> bool:
        return self.kind == "library"


# Owner of a tree node: ("function", id), ("modifier", id) or ("state_variable", id)
Owner = Tuple[str, int]


@dataclass(eq=False)
class ProgramModel:
    """One compilation unit. Owns every declaration and node through its arenas."""

    unit: str
    contracts: List[Contract]
    functions: List[Function]
    modifiers: List[Modifier]
    state_variables: List[StateVariable]
    nodes: List[Node]
    parents: List[int]  # node id -> parent node id, -1 for roots
    owners: List[Owner]  # node id -> owning declaration
    _by_name: Dict[str, int] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        if not self._by_name:
            self._by_name = {c.name: c.id for c in self.contracts}

    def contract(self, contract_id: int) -> Contract:
        return self.contracts[contract_id]

    def contract_by_name(self, name: str) -> Optional[Contract]:
        idx = self._by_name.get(name)
        return self.contracts[idx] if idx is not None else None

    def contract_of(self, function: Function) -> Contract:
        return self.contracts[function.contract_id]

    def functions_of(self, contract: Contract) -> List[Function]:
        return [self.functions[i] for i in contract.function_ids]

    def modifiers_of(self, contract: Contract) -> List[Modifier]:
        return [self.modifiers[i] for i in contract.modifier_ids]

    def state_variables_of(self, contract: Contract) -> List[StateVariable]:
        return [self.state_variables[i] for i in contract.state_variable_ids]

    def node(self, node_id: int) -> Node:
        return self.nodes[node_id]

    def parent_of(self, node_id: int) -> Optional[Node]:
        parent = self.parents[node_id]
        return self.nodes[parent] if parent >= 0 else None

    def owner_of(self, node_id: int) -> Owner:
        return self.owners[node_id]

    def ancestors(self, node_id: int) -> Iterator[Node]:
        """Parent chain of a node, innermost first."""
        parent = self.parents[node_id]
        while parent >= 0:
            yield self.nodes[parent]
            parent = self.parents[parent]


# =============================================================================
# Helpers
# =============================================================================


def children(node: Node) -> Iterator[Node]:
    """Direct child nodes in declaration-field order."""
    for f in fields(node):
        if f.name in ("id", "span"):
            continue
        value = getattr(node, f.name)
        if isinstance(value, Node):
            yield value
        elif isinstance(value, list):
            for item in value:
                if isinstance(item, Node):
                    yield item


def walk(node: Node) -> Iterator[Node]:
    """Pre-order traversal of a subtree, node included."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(list(children(current))))


def root_identifier(expr: Expr) -> Optional[Identifier]:
    """
    Innermost base identifier of an lvalue-like expression.

    `balances[msg.sender].amount` -> `balances`, `x` -> `x`
    """
    while True:
        if isinstance(expr, Identifier):
            return expr
        if isinstance(expr, (IndexAccess, MemberAccess)):
            expr = expr.base
        else:
            return None
